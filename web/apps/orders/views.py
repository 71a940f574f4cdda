"""HTTP views for the orders app.

Views are kept small: they resolve the caller from the bearer token,
validate the body with Pydantic, delegate to the lifecycle components
from ``providers`` and shape the result with the read schemas.

Errors are mapped in one place (``OrdersAPIView.handle_exception``):
domain errors become ``{"detail": CODE, ...context}`` with the status in
``ERROR_STATUS``, validation errors 400, and processor transport failures
503 ``UPSTREAM_UNAVAILABLE``.

Idempotency: the checkout endpoint honours ``Idempotency-Key``. The first
request runs and stores its response; retries with the same payload replay
it with an ``Idempotent-Replay: true`` header, and reuse with a different
payload is rejected with 409.
"""

import json
import logging

import httpx
import stripe
from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import CartLine, OrderSnapshot, OrderStatus
from .errors import (
    AuthError,
    CheckoutExpired,
    Contention,
    EmptyCart,
    IllegalTransition,
    InsufficientStock,
    ItemUnavailable,
    NotFoundError,
    OrderError,
    PaymentFailed,
    ReservationReleased,
    ShopClosed,
    ShopNotPayable,
    Unauthorized,
)
from .http_adapters import SIGNATURE_HEADER, CircuitOpenError
from .idempotency import discard, finalize, get_or_create_idempotent, scoped_key
from .identity import current_user
from .providers import get_coordinator, get_identity, get_notifier, get_processor
from .schemas import CheckoutDTO, CheckoutReadDTO, OnboardDTO, OrderReadDTO, TransitionDTO

logger = logging.getLogger("orders")

ERROR_STATUS = {
    InsufficientStock: 422,
    ItemUnavailable: 422,
    EmptyCart: 422,
    ShopNotPayable: 409,
    ShopClosed: 409,
    Contention: 409,
    IllegalTransition: 409,
    ReservationReleased: 409,
    PaymentFailed: 402,
    CheckoutExpired: 410,
    Unauthorized: 403,
    AuthError: 401,
    NotFoundError: 404,
}

UPSTREAM_ERRORS = (httpx.HTTPError, CircuitOpenError, stripe.StripeError)


def error_status(err: OrderError) -> int:
    for cls in type(err).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_400_BAD_REQUEST


def order_body(order) -> dict:
    snap = order if isinstance(order, OrderSnapshot) else OrderSnapshot.from_order(order)
    return OrderReadDTO.from_snapshot(snap).model_dump(mode="json")


def validation_body(exc: ValidationError) -> dict:
    return {"detail": "VALIDATION_ERROR", "errors": json.loads(exc.json(include_url=False))}


class OrdersAPIView(APIView):
    """Base view: scoped throttling and the domain error mapping."""

    throttle_classes = [ScopedRateThrottle]

    def actor(self) -> str:
        return current_user(self.request, get_identity())

    def handle_exception(self, exc):
        if isinstance(exc, OrderError):
            return Response(exc.as_dict(), status=error_status(exc))
        if isinstance(exc, ValidationError):
            return Response(validation_body(exc), status=status.HTTP_400_BAD_REQUEST)
        if isinstance(exc, UPSTREAM_ERRORS):
            logger.exception("payment processor unavailable", extra={"path": self.request.path})
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return super().handle_exception(exc)


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class CheckoutView(OrdersAPIView):
    """Start a checkout: hold stock, authorize payment, return the handle.

    Responses:
        - 201 with the provisional order id, totals and client secret.
        - Replayed status and body, plus ``Idempotent-Replay: true``, for a
          retry with the same ``Idempotency-Key`` and payload.
        - 409 ``IDEMPOTENCY_CONFLICT`` / ``IDEMPOTENCY_IN_PROGRESS``.
        - 400 validation, 401, 404, 409, 422, 402 per ``ERROR_STATUS``.
        - 503 ``UPSTREAM_UNAVAILABLE`` when the processor cannot be reached;
          not stored, so the client may retry with the same key.
    """

    throttle_scope = "checkout"

    def post(self, request):
        customer_id = self.actor()
        dto = CheckoutDTO.model_validate(request.data)

        rec = None
        idem_key = request.headers.get("Idempotency-Key")
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(scoped_key(customer_id, idem_key), dto.model_dump(mode="json"))
            except ValueError as e:
                return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            result = get_coordinator().checkout(
                customer_id=customer_id,
                shop_id=str(dto.shop_id),
                cart_lines=[CartLine(str(line.item_id), line.quantity) for line in dto.lines],
                pickup_time=dto.pickup_time,
            )
        except OrderError as e:
            if rec:
                finalize(rec, error_status(e), e.as_dict())
            raise
        except Exception:
            if rec:
                discard(rec)
            raise

        body = CheckoutReadDTO(
            order_id=result.order_id,
            status=result.status,
            authorization_id=result.payment.authorization_id,
            client_secret=result.payment.client_secret,
            subtotal=result.subtotal,
            tax=result.tax,
            total=result.total,
            currency=result.currency,
            amount_minor=result.amount_minor,
            expires_at=result.expires_at,
        ).model_dump(mode="json")
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=result.order_id)
        return Response(body, status=status.HTTP_201_CREATED)


class ConfirmCheckoutView(OrdersAPIView):
    """Client reports its payment confirmation finished.

    200 with the placed order, or 202 while the processor still reports
    the authorization as pending.
    """

    throttle_scope = "checkout"

    def post(self, request, oid):
        order = get_coordinator().confirm_checkout(str(oid), customer_id=self.actor())
        if order.status is OrderStatus.PENDING_PAYMENT:
            return Response(
                {"order_id": order.id, "status": order.status.value, "expires_at": order.expires_at.isoformat()},
                status=status.HTTP_202_ACCEPTED,
            )
        return Response(order_body(order), status=status.HTTP_200_OK)


class PaymentWebhookView(OrdersAPIView):
    """Signed payment processor events (authorization outcome, account updates)."""

    throttle_classes = []

    def post(self, request):
        signature = request.headers.get("Stripe-Signature") or request.headers.get(SIGNATURE_HEADER)
        try:
            event = get_processor().parse_event(request.body, signature)
        except ValueError as e:
            logger.warning("webhook rejected", extra={"error": str(e)})
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        get_coordinator().handle_payment_event(event)
        return Response({"received": True})


class OrdersCollectionView(OrdersAPIView):
    """The caller's order history, newest first, paginated."""

    throttle_scope = "orders_read"

    def get(self, request):
        snapshots = get_notifier().customer_history(self.actor())
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return Response({"detail": "INVALID_PAGE"}, status=status.HTTP_400_BAD_REQUEST)
        if page_size < 1:
            return Response({"detail": "INVALID_PAGE"}, status=status.HTTP_400_BAD_REQUEST)
        p = Paginator(snapshots, page_size)
        page_obj = p.get_page(page)
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [order_body(s) for s in page_obj.object_list],
            },
            status=status.HTTP_200_OK,
        )


class RetrieveOrderView(OrdersAPIView):
    throttle_scope = "orders_read"

    def get(self, request, oid):
        order = get_notifier().get_order(str(oid), self.actor())
        return Response(order_body(order), status=status.HTTP_200_OK)


class OrderStatusView(OrdersAPIView):
    """Shop-owner (or admin) status command."""

    throttle_scope = "orders_write"

    def post(self, request, oid):
        actor_id = self.actor()
        dto = TransitionDTO.model_validate(request.data)
        order = get_notifier().request_transition(str(oid), dto.status, actor_id, note=dto.note)
        return Response(order_body(order), status=status.HTTP_200_OK)


def _statuses(raw: str):
    if not raw:
        return None
    try:
        return [OrderStatus(s.strip()) for s in raw.split(",") if s.strip()]
    except ValueError:
        return False


class ShopOrdersView(OrdersAPIView):
    """Shop queue with long polling.

    Query params:
        status: Comma-separated statuses to include (default: all).
        since: ``version`` from a previous response; the request waits for
            the queue to change.
        wait: Seconds to wait for a change, capped by
            ``ORDER_FEED_MAX_WAIT_SECONDS``.
    """

    throttle_scope = "shop_queue"

    def get(self, request, sid):
        actor_id = self.actor()
        statuses = _statuses(request.GET.get("status", ""))
        if statuses is False:
            return Response({"detail": "INVALID_STATUS"}, status=status.HTTP_400_BAD_REQUEST)
        try:
            wait = float(request.GET.get("wait", 0))
        except ValueError:
            return Response({"detail": "INVALID_WAIT"}, status=status.HTTP_400_BAD_REQUEST)
        wait = max(0.0, min(wait, getattr(settings, "ORDER_FEED_MAX_WAIT_SECONDS", 25.0)))

        page = get_notifier().poll(
            str(sid),
            since=request.GET.get("since") or None,
            timeout=wait,
            statuses=statuses,
            actor_id=actor_id,
        )
        return Response({"version": page.version, "orders": [order_body(s) for s in page.orders]})


class MerchantOnboardView(OrdersAPIView):
    throttle_scope = "orders_write"

    def post(self, request, sid):
        actor_id = self.actor()
        dto = OnboardDTO.model_validate(request.data)
        url = get_coordinator().onboard_shop(
            str(sid), actor_id, dto.email, str(dto.refresh_url), dto.return_url
        )
        return Response({"url": url}, status=status.HTTP_200_OK)


class MerchantSyncView(OrdersAPIView):
    throttle_scope = "orders_write"

    def post(self, request, sid):
        shop = get_coordinator().sync_merchant_account(str(sid), self.actor())
        return Response(
            {
                "shop_id": shop.id,
                "merchant_account": shop.merchant_account,
                "charges_enabled": shop.charges_enabled,
                "payouts_enabled": shop.payouts_enabled,
                "details_submitted": shop.details_submitted,
            }
        )
