"""Domain errors for the order lifecycle.

Every error is a ``ValueError`` whose string value is a short machine code
(``str(err) == "INSUFFICIENT_STOCK"``), so callers can branch on the code
the same way they did with plain ``ValueError("CODE")``. Context that the
caller needs to recover (which item, how many units are left, which status
the order is in) travels as attributes and is exposed by ``as_dict()`` for
HTTP response bodies.
"""


class OrderError(ValueError):
    """Base class for rejected order-lifecycle operations."""

    code = "ORDER_ERROR"

    def __init__(self, **context):
        super().__init__(self.code)
        self.context = context

    def as_dict(self) -> dict:
        body = {"detail": self.code}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class NotFoundError(OrderError):
    """A referenced reservation, order, item or shop does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        super().__init__(entity=entity, id=str(entity_id))
        self.entity = entity
        self.entity_id = entity_id


class StockError(OrderError):
    """Base class for reservation refusals tied to one item."""


class InsufficientStock(StockError):
    """Not enough unreserved stock; the caller may lower the quantity."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id, requested: int, available: int):
        super().__init__(item_id=str(item_id), requested=requested, available=available)
        self.item_id = item_id
        self.requested = requested
        self.available = available


class ItemUnavailable(StockError):
    """The item is hidden or deleted and cannot be sold."""

    code = "ITEM_UNAVAILABLE"

    def __init__(self, item_id):
        super().__init__(item_id=str(item_id))
        self.item_id = item_id


class Contention(OrderError):
    """Lost the optimistic-concurrency race more times than allowed."""

    code = "CONTENTION"

    def __init__(self, item_id, attempts: int):
        super().__init__(item_id=str(item_id), attempts=attempts)
        self.item_id = item_id
        self.attempts = attempts


class ReservationReleased(OrderError):
    """A commit was requested for a reservation that was already released."""

    code = "RESERVATION_RELEASED"

    def __init__(self, reservation_id):
        super().__init__(reservation_id=str(reservation_id))
        self.reservation_id = reservation_id


class EmptyCart(OrderError):
    code = "EMPTY_CART"


class ShopNotPayable(OrderError):
    """The shop's merchant account cannot accept charges yet."""

    code = "SHOP_NOT_PAYABLE"

    def __init__(self, shop_id):
        super().__init__(shop_id=str(shop_id))
        self.shop_id = shop_id


class ShopClosed(OrderError):
    code = "SHOP_CLOSED"

    def __init__(self, shop_id):
        super().__init__(shop_id=str(shop_id))
        self.shop_id = shop_id


class PaymentFailed(OrderError):
    """The payment was declined or the processor refused the request."""

    code = "PAYMENT_FAILED"

    def __init__(self, order_id=None, stage: str = "authorization", reason: str | None = None):
        super().__init__(order_id=str(order_id) if order_id else None, stage=stage, reason=reason)
        self.order_id = order_id
        self.stage = stage
        self.reason = reason


class CheckoutExpired(OrderError):
    """No payment confirmation arrived inside the reservation window."""

    code = "CHECKOUT_EXPIRED"

    def __init__(self, order_id):
        super().__init__(order_id=str(order_id))
        self.order_id = order_id


class IllegalTransition(OrderError):
    """The requested status change is not an edge of the order lifecycle."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, order_id, current, target):
        super().__init__(
            order_id=str(order_id),
            current=getattr(current, "value", current),
            target=getattr(target, "value", target),
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class Unauthorized(OrderError):
    """The actor is neither the order's customer nor the shop owner."""

    code = "UNAUTHORIZED"

    def __init__(self, actor_id=None, resource: str | None = None):
        super().__init__(resource=resource)
        self.actor_id = actor_id


class AuthError(OrderError):
    """Missing, expired or malformed identity token."""

    code = "AUTH_REQUIRED"

    def __init__(self, reason: str = "missing token"):
        super().__init__(reason=reason)
        self.reason = reason
