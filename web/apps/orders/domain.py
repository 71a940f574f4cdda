"""Domain models and ports for the order lifecycle.

This module contains the dataclasses shared by the ledger, the state
machine, the payment coordinator and the notifier, plus the protocol
definitions (ports) for the external collaborators: the relational data
store, the payment processor and the identity provider. Nothing in here
touches Django, HTTP or a payment SDK; concrete adapters live in
``repository``, ``adapters``, ``http_adapters``, ``stripe_adapter`` and
``identity``.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class StockKind(str, Enum):
    TRACKED = "tracked"
    UNLIMITED = "unlimited"
    HIDDEN = "hidden"


class ReservationState(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class OrderStatus(str, Enum):
    """Lifecycle statuses of an order.

    ``PENDING_PAYMENT`` is internal: an order in that status is provisional
    and never returned by history or queue queries.
    """

    PENDING_PAYMENT = "pending_payment"
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class Actor(str, Enum):
    """Roles allowed to drive order transitions."""

    PAYMENT_COORDINATOR = "payment_coordinator"
    SHOP_OWNER = "shop_owner"
    ADMIN = "admin"


class AuthorizationOutcome(str, Enum):
    AUTHORIZED = "authorized"
    DECLINED = "declined"
    PENDING = "pending"


class PaymentEventType(str, Enum):
    AUTHORIZATION_SUCCEEDED = "authorization.succeeded"
    AUTHORIZATION_FAILED = "authorization.failed"
    ACCOUNT_UPDATED = "account.updated"
    OTHER = "other"


# ---- Value objects ----
@dataclass(frozen=True)
class StockPolicy:
    """Per-item rule for how stock is counted.

    Use the constructors instead of building instances by hand:
    ``StockPolicy.tracked(5)``, ``StockPolicy.unlimited()``,
    ``StockPolicy.hidden()``. ``count`` is only meaningful for tracked
    items.
    """

    kind: StockKind
    count: int = 0

    def __post_init__(self):
        if self.kind is StockKind.TRACKED and self.count < 0:
            raise ValueError("NEGATIVE_STOCK")

    @classmethod
    def tracked(cls, count: int) -> "StockPolicy":
        return cls(StockKind.TRACKED, count)

    @classmethod
    def unlimited(cls) -> "StockPolicy":
        return cls(StockKind.UNLIMITED)

    @classmethod
    def hidden(cls) -> "StockPolicy":
        return cls(StockKind.HIDDEN)

    @property
    def is_tracked(self) -> bool:
        return self.kind is StockKind.TRACKED

    @property
    def is_hidden(self) -> bool:
        return self.kind is StockKind.HIDDEN


@dataclass(frozen=True)
class CartLine:
    """A line of the customer's cart as submitted at checkout."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class OrderLine:
    """Snapshot of an item taken at checkout.

    Name and price are copied so later edits (or deletion) of the live item
    never change what the customer was charged for.
    """

    item_id: str
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PaymentHandle:
    """Client-confirmable handle returned by the payment processor."""

    authorization_id: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class MerchantAccountStatus:
    account_ref: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


@dataclass(frozen=True)
class PaymentEvent:
    """A verified, processor-neutral webhook event.

    Attributes:
        type: Normalized event type.
        object_id: Authorization id or merchant account ref the event is about.
        data: Raw event object as delivered by the processor.
    """

    type: PaymentEventType
    object_id: str
    data: dict = field(default_factory=dict)


# ---- Entities ----
@dataclass
class Shop:
    id: str
    owner_id: str
    name: str
    address: str = ""
    is_open: bool = True
    merchant_account: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


@dataclass
class Item:
    """A sellable item of a shop.

    Attributes:
        stock: Stock policy; for tracked items ``stock.count`` is the durable
            count left after every committed reservation.
        reserved: Sum of the quantities of ``held`` reservations.
        version: Bumped on every stock write; conditional updates key on it.
        deleted: Soft-delete flag. Deleted items cannot be reserved.
    """

    id: str
    shop_id: str
    name: str
    price: Decimal
    stock: StockPolicy
    description: str = ""
    reserved: int = 0
    version: int = 0
    deleted: bool = False

    @property
    def available(self) -> int:
        return max(0, self.stock.count - self.reserved)

    @property
    def is_sellable(self) -> bool:
        return not self.deleted and not self.stock.is_hidden


@dataclass
class Reservation:
    """A time-bounded hold on an item's stock for one checkout attempt.

    ``tracked`` records whether the hold counted against stock when it was
    taken, so releasing or committing it undoes exactly what reserving did
    even if the item's policy changed in between.
    """

    id: str
    item_id: str
    order_id: str
    quantity: int
    created_at: datetime
    expires_at: datetime
    state: ReservationState = ReservationState.HELD
    tracked: bool = True


@dataclass
class Order:
    id: str
    shop_id: str
    customer_id: str
    lines: List[OrderLine]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    amount_minor: int
    application_fee_minor: int
    payment_ref: Optional[str]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    pickup_time: Optional[datetime] = None
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    placed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @property
    def is_visible(self) -> bool:
        return self.placed_at is not None


@dataclass(frozen=True)
class StatusChange:
    order_id: str
    from_status: OrderStatus
    to_status: OrderStatus
    actor_id: Optional[str]
    created_at: datetime
    note: str = ""


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order handed to shop-owner and customer views."""

    order_id: str
    shop_id: str
    customer_id: str
    status: OrderStatus
    total: Decimal
    currency: str
    pickup_time: Optional[datetime]
    lines: tuple
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderSnapshot":
        return cls(
            order_id=order.id,
            shop_id=order.shop_id,
            customer_id=order.customer_id,
            status=order.status,
            total=order.total,
            currency=order.currency,
            pickup_time=order.pickup_time,
            lines=tuple(order.lines),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# ---- Ports (DIP) ----
class DataStore(Protocol):
    """Port describing the relational data store used by the domain.

    Every ``update_*`` method is a conditional write: it applies only when
    the stored value still matches the expected one and returns whether a
    row was changed. Implementations must never fall back to an
    unconditional write.
    """

    def atomic(self) -> AbstractContextManager:
        """Return a context manager grouping writes into one short transaction."""
        raise NotImplementedError()

    # shops
    def get_shop(self, shop_id: str) -> Optional[Shop]:
        raise NotImplementedError()

    def find_shop_by_merchant_account(self, account_ref: str) -> Optional[Shop]:
        raise NotImplementedError()

    def save_merchant_status(self, shop_id: str, status: MerchantAccountStatus) -> Optional[Shop]:
        """Store the merchant account ref and capability flags of a shop."""
        raise NotImplementedError()

    # items
    def get_item(self, item_id: str) -> Optional[Item]:
        raise NotImplementedError()

    def update_item_stock(self, item_id: str, expected_version: int, stock_count: int, reserved: int) -> bool:
        """Set stock count and held total if ``version`` still equals ``expected_version``.

        A successful write increments the version.
        """
        raise NotImplementedError()

    # reservations
    def add_reservation(self, reservation: Reservation) -> None:
        raise NotImplementedError()

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        raise NotImplementedError()

    def update_reservation_state(
        self, reservation_id: str, expected: ReservationState, new: ReservationState
    ) -> bool:
        raise NotImplementedError()

    def reservations_for_order(self, order_id: str) -> List[Reservation]:
        raise NotImplementedError()

    def expired_reservations(self, now: datetime) -> List[Reservation]:
        """Held reservations whose ``expires_at`` is at or before ``now``."""
        raise NotImplementedError()

    # orders
    def add_order(self, order: Order) -> None:
        raise NotImplementedError()

    def get_order(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def get_order_by_payment_ref(self, payment_ref: str) -> Optional[Order]:
        raise NotImplementedError()

    def update_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        at: datetime,
        placed_at: Optional[datetime] = None,
        cancel_reason: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError()

    def add_status_change(self, change: StatusChange) -> None:
        raise NotImplementedError()

    def list_orders(
        self,
        shop_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        """Visible orders matching the filters, newest first."""
        raise NotImplementedError()

    def stale_orders(self, now: datetime) -> List[Order]:
        """Provisional orders whose payment window closed at or before ``now``."""
        raise NotImplementedError()


class PaymentProcessor(Protocol):
    """Port describing the payment processor.

    Implementations raise their transport errors as-is; business outcomes
    (declines) are returned, not raised.
    """

    def create_authorization(
        self,
        amount_minor: int,
        currency: str,
        merchant_account: str,
        application_fee_minor: int,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentHandle:
        """Request an authorization that the client confirms later.

        Args:
            amount_minor: Total to charge, in minor currency units.
            currency: Lower-case ISO currency code (e.g. 'usd').
            merchant_account: Connected account receiving the transfer.
            application_fee_minor: Platform fee withheld from the transfer.
            metadata: Opaque key/values echoed back in webhook events.
            idempotency_key: Optional key making retries of the request safe.

        Returns:
            PaymentHandle: Authorization id and client secret.
        """
        raise NotImplementedError()

    def confirm_authorization(self, authorization_id: str) -> AuthorizationOutcome:
        raise NotImplementedError()

    def cancel_authorization(self, authorization_id: str) -> None:
        raise NotImplementedError()

    def parse_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """Verify a webhook payload and return it as a ``PaymentEvent``.

        Raises:
            ValueError: When the signature or the payload is invalid.
        """
        raise NotImplementedError()

    def create_merchant_account(self, email: str) -> str:
        raise NotImplementedError()

    def create_onboarding_link(self, account_ref: str, refresh_url: str, return_url: str) -> str:
        raise NotImplementedError()

    def retrieve_merchant_account(self, account_ref: str) -> MerchantAccountStatus:
        raise NotImplementedError()


class IdentityProvider(Protocol):
    """Port resolving session tokens to user ids."""

    def verify_token(self, token: str) -> str:
        """Return the user id carried by ``token``.

        Raises:
            AuthError: When the token is missing, expired or invalid.
        """
        raise NotImplementedError()
