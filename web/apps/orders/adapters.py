"""In-process stub adapters for the orders domain ports.

These stubs implement ``DataStore`` and ``PaymentProcessor`` without a
database or network calls. They are intended for unit tests and local
development where deterministic behavior is useful and external services
are not required.

``InMemoryDataStore`` keeps the conditional-update contract of the real
store: each write is atomic on its own and applies only when the expected
value still matches, so concurrency tests against it exercise the same
retry paths as production. ``atomic()`` groups nothing and rolls nothing
back; callers already undo their own partial work.
"""

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .domain import (
    AuthorizationOutcome,
    Item,
    MerchantAccountStatus,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentEventType,
    PaymentHandle,
    Reservation,
    ReservationState,
    Shop,
    StatusChange,
)


class InMemoryDataStore:
    """Dict-backed ``DataStore``. Returned entities are copies."""

    def __init__(self):
        self._lock = threading.RLock()
        self.shops: Dict[str, Shop] = {}
        self.items: Dict[str, Item] = {}
        self.reservations: Dict[str, Reservation] = {}
        self.orders: Dict[str, Order] = {}
        self.status_changes: List[StatusChange] = []

    @contextmanager
    def atomic(self):
        yield self

    # seeding
    def add_shop(self, shop: Shop) -> Shop:
        with self._lock:
            self.shops[shop.id] = copy.deepcopy(shop)
        return shop

    def add_item(self, item: Item) -> Item:
        with self._lock:
            self.items[item.id] = copy.deepcopy(item)
        return item

    # shops
    def get_shop(self, shop_id):
        with self._lock:
            shop = self.shops.get(shop_id)
            return copy.deepcopy(shop) if shop else None

    def find_shop_by_merchant_account(self, account_ref):
        with self._lock:
            for shop in self.shops.values():
                if shop.merchant_account == account_ref:
                    return copy.deepcopy(shop)
        return None

    def save_merchant_status(self, shop_id, status: MerchantAccountStatus):
        with self._lock:
            shop = self.shops.get(shop_id)
            if shop is None:
                return None
            shop.merchant_account = status.account_ref
            shop.charges_enabled = status.charges_enabled
            shop.payouts_enabled = status.payouts_enabled
            shop.details_submitted = status.details_submitted
            return copy.deepcopy(shop)

    # items
    def get_item(self, item_id):
        with self._lock:
            item = self.items.get(item_id)
            return copy.deepcopy(item) if item else None

    def update_item_stock(self, item_id, expected_version, stock_count, reserved):
        with self._lock:
            item = self.items.get(item_id)
            if item is None or item.version != expected_version:
                return False
            item.stock = replace(item.stock, count=stock_count)
            item.reserved = reserved
            item.version += 1
            return True

    # reservations
    def add_reservation(self, reservation):
        with self._lock:
            self.reservations[reservation.id] = copy.deepcopy(reservation)

    def get_reservation(self, reservation_id):
        with self._lock:
            res = self.reservations.get(reservation_id)
            return copy.deepcopy(res) if res else None

    def update_reservation_state(self, reservation_id, expected, new):
        with self._lock:
            res = self.reservations.get(reservation_id)
            if res is None or res.state is not expected:
                return False
            res.state = new
            return True

    def reservations_for_order(self, order_id):
        with self._lock:
            found = [r for r in self.reservations.values() if r.order_id == order_id]
            return copy.deepcopy(sorted(found, key=lambda r: r.created_at))

    def expired_reservations(self, now):
        with self._lock:
            found = [
                r for r in self.reservations.values()
                if r.state is ReservationState.HELD and r.expires_at <= now
            ]
            return copy.deepcopy(found)

    # orders
    def add_order(self, order):
        with self._lock:
            self.orders[order.id] = copy.deepcopy(order)

    def get_order(self, order_id):
        with self._lock:
            order = self.orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def get_order_by_payment_ref(self, payment_ref):
        with self._lock:
            for order in self.orders.values():
                if order.payment_ref == payment_ref:
                    return copy.deepcopy(order)
        return None

    def update_order_status(self, order_id, expected, new, at, placed_at=None, cancel_reason=None):
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status is not expected:
                return False
            order.status = new
            order.updated_at = at
            if placed_at is not None:
                order.placed_at = placed_at
            if cancel_reason is not None:
                order.cancel_reason = cancel_reason
            return True

    def add_status_change(self, change):
        with self._lock:
            self.status_changes.append(change)

    def list_orders(self, shop_id=None, customer_id=None, statuses: Optional[Iterable[OrderStatus]] = None):
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            found = [
                o for o in self.orders.values()
                if o.is_visible
                and (shop_id is None or o.shop_id == shop_id)
                and (customer_id is None or o.customer_id == customer_id)
                and (wanted is None or o.status in wanted)
            ]
            return copy.deepcopy(sorted(found, key=lambda o: o.created_at, reverse=True))

    def stale_orders(self, now):
        with self._lock:
            found = [
                o for o in self.orders.values()
                if o.status is OrderStatus.PENDING_PAYMENT and o.expires_at <= now
            ]
            return copy.deepcopy(found)


class PaymentProcessorStub:
    """Stub implementation of ``PaymentProcessor``.

    Approves authorizations with a positive amount. Every authorization is
    confirmed as ``AUTHORIZED`` unless a test marks it otherwise with
    ``decline()`` or ``leave_pending()``. Webhook payloads are plain JSON
    ``{"type": ..., "object_id": ...}`` and are accepted without a
    signature.
    """

    def __init__(self):
        self.authorizations: Dict[str, dict] = {}
        self.accounts: Dict[str, MerchantAccountStatus] = {}
        self.cancelled: List[str] = []
        self._by_key: Dict[str, str] = {}

    def create_authorization(self, amount_minor, currency, merchant_account, application_fee_minor,
                             metadata=None, idempotency_key=None) -> PaymentHandle:
        if amount_minor <= 0:
            raise ValueError("INVALID_AMOUNT")
        if idempotency_key and idempotency_key in self._by_key:
            auth_id = self._by_key[idempotency_key]
            return PaymentHandle(auth_id, self.authorizations[auth_id]["client_secret"])

        auth_id = f"auth_{uuid.uuid4().hex}"
        self.authorizations[auth_id] = {
            "amount_minor": amount_minor,
            "currency": currency,
            "merchant_account": merchant_account,
            "application_fee_minor": application_fee_minor,
            "metadata": dict(metadata or {}),
            "client_secret": f"{auth_id}_secret",
            "outcome": AuthorizationOutcome.AUTHORIZED,
        }
        if idempotency_key:
            self._by_key[idempotency_key] = auth_id
        return PaymentHandle(auth_id, self.authorizations[auth_id]["client_secret"])

    def decline(self, authorization_id: str) -> None:
        self.authorizations[authorization_id]["outcome"] = AuthorizationOutcome.DECLINED

    def leave_pending(self, authorization_id: str) -> None:
        self.authorizations[authorization_id]["outcome"] = AuthorizationOutcome.PENDING

    def confirm_authorization(self, authorization_id) -> AuthorizationOutcome:
        return self.authorizations[authorization_id]["outcome"]

    def cancel_authorization(self, authorization_id) -> None:
        self.cancelled.append(authorization_id)

    def parse_event(self, payload: bytes, signature=None) -> PaymentEvent:
        data = json.loads(payload)
        try:
            event_type = PaymentEventType(data.get("type"))
        except ValueError:
            event_type = PaymentEventType.OTHER
        return PaymentEvent(type=event_type, object_id=str(data.get("object_id", "")), data=data)

    def create_merchant_account(self, email: str) -> str:
        ref = f"acct_{uuid.uuid4().hex[:16]}"
        self.accounts[ref] = MerchantAccountStatus(account_ref=ref)
        return ref

    def enable_account(self, account_ref: str) -> None:
        self.accounts[account_ref] = MerchantAccountStatus(
            account_ref=account_ref, charges_enabled=True, payouts_enabled=True, details_submitted=True
        )

    def create_onboarding_link(self, account_ref, refresh_url, return_url) -> str:
        return f"https://connect.invalid/onboarding/{account_ref}"

    def retrieve_merchant_account(self, account_ref) -> MerchantAccountStatus:
        return self.accounts.get(account_ref, MerchantAccountStatus(account_ref=account_ref))
