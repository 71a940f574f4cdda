"""Payment coordinator.

The only component that talks to the payment processor and the only one
that creates orders. A checkout runs in two halves around the customer's
card entry:

1. ``checkout``: validate the shop, hold stock for every cart line (all or
   nothing), price the order from the held items, ask the processor for an
   authorization, and store a provisional ``pending_payment`` order. The
   caller gets the client-confirmable payment handle back.
2. ``confirm_checkout`` (client says it is done) or
   ``handle_payment_event`` (processor webhook): on authorization commit
   the holds and move the order to ``pending``, which makes it visible; on
   decline or timeout release the holds and cancel the provisional order.

No lock or transaction is held between the two halves. Reservation expiry
bounds the wait, and ``expire_stale`` (run by the sweeper) cancels
provisional orders nobody confirmed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from .domain import (
    Actor,
    AuthorizationOutcome,
    CartLine,
    DataStore,
    MerchantAccountStatus,
    Order,
    OrderLine,
    OrderStatus,
    PaymentEvent,
    PaymentEventType,
    PaymentHandle,
    PaymentProcessor,
    Shop,
    utcnow,
)
from .errors import (
    CheckoutExpired,
    EmptyCart,
    IllegalTransition,
    ItemUnavailable,
    NotFoundError,
    PaymentFailed,
    ReservationReleased,
    ShopClosed,
    ShopNotPayable,
    Unauthorized,
)
from .ledger import InventoryLedger
from .state_machine import OrderStateMachine

logger = logging.getLogger("orders")

CENT = Decimal("0.01")
REASON_PAYMENT_FAILED = "payment_failed"
REASON_EXPIRED = "expired"


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def compute_totals(lines: Iterable[OrderLine], tax_rate: Decimal) -> Totals:
    """Price a set of order lines.

    Subtotal and tax are each rounded half-up to cents before they are
    added, so ``total == subtotal + tax`` holds exactly.
    """
    subtotal = to_cents(sum((line.line_total for line in lines), Decimal("0")))
    tax = to_cents(subtotal * tax_rate)
    return Totals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def merge_cart(cart_lines: Iterable[CartLine]) -> list[CartLine]:
    """Collapse repeated items into one line, keeping first-seen order."""
    quantities: dict[str, int] = {}
    for line in cart_lines:
        if line.quantity <= 0:
            raise ValueError("INVALID_QUANTITY")
        quantities[line.item_id] = quantities.get(line.item_id, 0) + line.quantity
    return [CartLine(item_id, qty) for item_id, qty in quantities.items()]


@dataclass(frozen=True)
class CheckoutResult:
    """What the client needs to confirm payment for a provisional order."""

    order_id: str
    status: OrderStatus
    payment: PaymentHandle
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    amount_minor: int
    expires_at: datetime


class PaymentCoordinator:
    """Sequence reservation, authorization and order materialization.

    Args:
        store: Data store for shops, items and orders.
        ledger: Inventory reservation ledger.
        state_machine: Order state machine.
        processor: Payment processor port.
        tax_rate: Tax applied to the subtotal.
        application_fee_rate: Platform cut of the total, withheld from the
            transfer to the shop's merchant account.
        currency: Lower-case ISO currency code for every charge.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store: DataStore,
        ledger: InventoryLedger,
        state_machine: OrderStateMachine,
        processor: PaymentProcessor,
        tax_rate: Decimal = Decimal("0.0825"),
        application_fee_rate: Decimal = Decimal("0.05"),
        currency: str = "usd",
        clock: Callable = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.state_machine = state_machine
        self.processor = processor
        self.tax_rate = Decimal(tax_rate)
        self.application_fee_rate = Decimal(application_fee_rate)
        self.currency = currency.lower()
        self.clock = clock

    # ---------------- checkout ---------------- #

    def _payable_shop(self, shop_id: str) -> Shop:
        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("shop", shop_id)
        if not shop.merchant_account or not shop.charges_enabled:
            raise ShopNotPayable(shop_id)
        if not shop.is_open:
            raise ShopClosed(shop_id)
        return shop

    def checkout(
        self,
        customer_id: str,
        shop_id: str,
        cart_lines: Iterable[CartLine],
        pickup_time: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """Hold stock and request a payment authorization for a cart.

        Returns:
            CheckoutResult: Provisional order id, payment handle and totals.

        Raises:
            EmptyCart: No lines.
            NotFoundError: Unknown shop or item.
            ShopNotPayable: Merchant account cannot take charges.
            ShopClosed: The shop is not taking orders.
            InsufficientStock, ItemUnavailable, Contention: First line that
                could not be held; every hold taken so far is released.
        """
        cart = merge_cart(cart_lines)
        if not cart:
            raise EmptyCart()
        shop = self._payable_shop(shop_id)

        order_id = str(uuid.uuid4())
        held = []
        lines = []
        try:
            for line in cart:
                item = self.store.get_item(line.item_id)
                if item is None:
                    raise NotFoundError("item", line.item_id)
                if item.shop_id != shop.id:
                    raise ItemUnavailable(line.item_id)
                held.append(self.ledger.reserve(item.id, line.quantity, order_id))
                lines.append(OrderLine(item_id=item.id, name=item.name, unit_price=item.price, quantity=line.quantity))
        except Exception:
            self.ledger.release_all(held)
            raise

        totals = compute_totals(lines, self.tax_rate)
        amount_minor = minor_units(totals.total)
        fee_minor = minor_units(totals.total * self.application_fee_rate)

        try:
            handle = self.processor.create_authorization(
                amount_minor=amount_minor,
                currency=self.currency,
                merchant_account=shop.merchant_account,
                application_fee_minor=fee_minor,
                metadata={"order_id": order_id, "shop_id": shop.id, "customer_id": customer_id},
                idempotency_key=idempotency_key or order_id,
            )
        except Exception:
            logger.exception("authorization request failed", extra={"order_id": order_id, "shop_id": shop.id})
            self.ledger.release_all(held)
            raise

        now = self.clock()
        order = Order(
            id=order_id,
            shop_id=shop.id,
            customer_id=customer_id,
            lines=lines,
            subtotal=totals.subtotal,
            tax=totals.tax,
            total=totals.total,
            currency=self.currency,
            amount_minor=amount_minor,
            application_fee_minor=fee_minor,
            payment_ref=handle.authorization_id,
            created_at=now,
            updated_at=now,
            expires_at=min(r.expires_at for r in held),
            pickup_time=pickup_time,
        )
        try:
            self.store.add_order(order)
        except Exception:
            logger.exception("provisional order not stored", extra={"order_id": order_id})
            self.ledger.release_all(held)
            self._void(handle.authorization_id, order_id)
            raise

        logger.info(
            "checkout started",
            extra={"order_id": order_id, "shop_id": shop.id, "amount_minor": amount_minor, "authorization_id": handle.authorization_id},
        )
        return CheckoutResult(
            order_id=order_id,
            status=order.status,
            payment=handle,
            subtotal=totals.subtotal,
            tax=totals.tax,
            total=totals.total,
            currency=self.currency,
            amount_minor=amount_minor,
            expires_at=order.expires_at,
        )

    # ---------------- confirmation ---------------- #

    def _order(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    @staticmethod
    def _settled(order: Order) -> Optional[Order]:
        """Return the order if its checkout already finished, raise if it failed."""
        if order.status is OrderStatus.PENDING_PAYMENT:
            return None
        if order.is_visible:
            return order
        if order.cancel_reason == REASON_EXPIRED:
            raise CheckoutExpired(order.id)
        raise PaymentFailed(order.id, stage="confirmation", reason=order.cancel_reason)

    def confirm_checkout(self, order_id: str, customer_id: Optional[str] = None) -> Order:
        """Ask the processor how the client's confirmation went and settle the order.

        Safe to call repeatedly: a placed order is returned unchanged.

        Raises:
            NotFoundError: Unknown order.
            Unauthorized: ``customer_id`` given and not the order's customer.
            PaymentFailed: The authorization was declined.
            CheckoutExpired: The payment window closed first.
        """
        order = self._order(order_id)
        if customer_id is not None and order.customer_id != customer_id:
            raise Unauthorized(customer_id, resource="order")
        settled = self._settled(order)
        if settled:
            return settled

        outcome = self.processor.confirm_authorization(order.payment_ref)
        if outcome is AuthorizationOutcome.AUTHORIZED:
            return self._place(order)
        if outcome is AuthorizationOutcome.DECLINED:
            self._abandon(order, REASON_PAYMENT_FAILED)
            raise PaymentFailed(order.id, stage="confirmation", reason="declined")
        return order

    def handle_payment_event(self, event: PaymentEvent) -> Optional[Order]:
        """Apply a verified processor webhook event.

        Webhooks are acknowledged whatever the outcome, so failures that
        belong to the customer (declines, expiry) are recorded on the order
        rather than raised.
        """
        if event.type is PaymentEventType.ACCOUNT_UPDATED:
            self._sync_by_account(event.object_id)
            return None
        if event.type not in (PaymentEventType.AUTHORIZATION_SUCCEEDED, PaymentEventType.AUTHORIZATION_FAILED):
            logger.info("payment event ignored", extra={"event_type": event.type.value})
            return None

        order = self.store.get_order_by_payment_ref(event.object_id)
        if order is None:
            logger.warning("payment event for unknown authorization", extra={"authorization_id": event.object_id})
            return None

        succeeded = event.type is PaymentEventType.AUTHORIZATION_SUCCEEDED
        if order.status is not OrderStatus.PENDING_PAYMENT:
            if succeeded and not order.is_visible:
                # money authorized for a checkout that already gave up
                self._void(order.payment_ref, order.id)
            return order

        if not succeeded:
            self._abandon(order, REASON_PAYMENT_FAILED)
            return self._order(order.id)
        try:
            return self._place(order)
        except (CheckoutExpired, PaymentFailed):
            return self._order(order.id)

    def _place(self, order: Order) -> Order:
        """Commit the holds and make the order visible."""
        if self.clock() >= order.expires_at:
            self._abandon(order, REASON_EXPIRED, void=True)
            raise CheckoutExpired(order.id)

        try:
            for res in self.store.reservations_for_order(order.id):
                self.ledger.commit(res.id)
        except (ReservationReleased, NotFoundError):
            # a hold was swept before the payment landed
            self._abandon(order, REASON_EXPIRED, void=True)
            # holds this call committed after the abandon read them
            self.ledger.release_all(self.store.reservations_for_order(order.id))
            raise CheckoutExpired(order.id)

        try:
            placed = self.state_machine.transition(order.id, OrderStatus.PENDING, Actor.PAYMENT_COORDINATOR)
        except IllegalTransition:
            fresh = self._order(order.id)
            if fresh.status is OrderStatus.CANCELLED and not fresh.is_visible:
                # cancelled underneath us; undo what this call committed
                self.ledger.release_all(self.store.reservations_for_order(order.id))
            return self._settled(fresh) or fresh

        logger.info("order placed", extra={"order_id": order.id, "shop_id": order.shop_id})
        return placed

    def _abandon(self, order: Order, reason: str, void: bool = False) -> None:
        """Cancel a provisional order and give its stock back."""
        try:
            self.state_machine.transition(
                order.id, OrderStatus.CANCELLED, Actor.PAYMENT_COORDINATOR, cancel_reason=reason
            )
        except IllegalTransition:
            logger.info("checkout already settled", extra={"order_id": order.id})
            fresh = self._order(order.id)
            if fresh.status is OrderStatus.CANCELLED and not fresh.is_visible:
                self.ledger.release_all(self.store.reservations_for_order(order.id))
            return

        self.ledger.release_all(self.store.reservations_for_order(order.id))
        if void:
            self._void(order.payment_ref, order.id)
        logger.info("checkout abandoned", extra={"order_id": order.id, "reason": reason})

    def _void(self, authorization_id: Optional[str], order_id: str) -> None:
        if not authorization_id:
            return
        try:
            self.processor.cancel_authorization(authorization_id)
        except Exception:
            # uncaptured authorizations lapse at the processor
            logger.exception("authorization void failed", extra={"order_id": order_id, "authorization_id": authorization_id})

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Cancel provisional orders whose payment window has closed.

        Returns:
            int: Number of orders cancelled.
        """
        now = now or self.clock()
        expired = 0
        for order in self.store.stale_orders(now):
            self._abandon(order, REASON_EXPIRED, void=True)
            if self._order(order.id).status is OrderStatus.CANCELLED:
                expired += 1
        return expired

    # ---------------- merchant accounts ---------------- #

    def _owned_shop(self, shop_id: str, actor_id: Optional[str]) -> Shop:
        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("shop", shop_id)
        if actor_id is not None and shop.owner_id != actor_id:
            raise Unauthorized(actor_id, resource="shop")
        return shop

    def onboard_shop(self, shop_id: str, actor_id: str, email: str, refresh_url: str, return_url: str) -> str:
        """Create the shop's merchant account if needed and return an onboarding link."""
        shop = self._owned_shop(shop_id, actor_id)
        account_ref = shop.merchant_account
        if not account_ref:
            account_ref = self.processor.create_merchant_account(email)
            self.store.save_merchant_status(shop.id, MerchantAccountStatus(account_ref=account_ref))
            logger.info("merchant account created", extra={"shop_id": shop.id, "account_ref": account_ref})
        return self.processor.create_onboarding_link(account_ref, refresh_url, return_url)

    def sync_merchant_account(self, shop_id: str, actor_id: Optional[str] = None) -> Shop:
        """Refresh the shop's capability flags from the processor."""
        shop = self._owned_shop(shop_id, actor_id)
        if not shop.merchant_account:
            raise ShopNotPayable(shop_id)
        status = self.processor.retrieve_merchant_account(shop.merchant_account)
        return self.store.save_merchant_status(shop.id, status)

    def _sync_by_account(self, account_ref: str) -> None:
        shop = self.store.find_shop_by_merchant_account(account_ref)
        if shop is None:
            logger.warning("account event for unknown merchant", extra={"account_ref": account_ref})
            return
        status = self.processor.retrieve_merchant_account(account_ref)
        self.store.save_merchant_status(shop.id, status)
        logger.info(
            "merchant account synced",
            extra={"shop_id": shop.id, "charges_enabled": status.charges_enabled, "payouts_enabled": status.payouts_enabled},
        )
