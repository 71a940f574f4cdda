"""Order state machine.

Owns the canonical status of an order. ``TRANSITIONS`` lists every legal
edge together with the roles allowed to take it; anything else is an
``IllegalTransition`` and leaves the order untouched.

Writes are conditional on the status that was read, so two concurrent
commands against the same order cannot both succeed. A command that loses
the race is re-validated against the fresh status and rejected if it is no
longer legal; it is never retried blindly.
"""

import logging
from typing import Callable, Optional

from .domain import Actor, DataStore, Order, OrderStatus, StatusChange, utcnow
from .errors import IllegalTransition, NotFoundError

logger = logging.getLogger("orders")

S = OrderStatus
_OWNER_OR_ADMIN = frozenset({Actor.SHOP_OWNER, Actor.ADMIN})

TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], frozenset] = {
    (S.PENDING_PAYMENT, S.PENDING): frozenset({Actor.PAYMENT_COORDINATOR}),
    (S.PENDING_PAYMENT, S.CANCELLED): frozenset({Actor.PAYMENT_COORDINATOR}),
    (S.PENDING, S.ACCEPTED): frozenset({Actor.SHOP_OWNER}),
    (S.ACCEPTED, S.PREPARING): frozenset({Actor.SHOP_OWNER}),
    (S.PREPARING, S.READY): frozenset({Actor.SHOP_OWNER}),
    (S.READY, S.COMPLETED): frozenset({Actor.SHOP_OWNER}),
    (S.PENDING, S.CANCELLED): _OWNER_OR_ADMIN,
    (S.ACCEPTED, S.CANCELLED): _OWNER_OR_ADMIN,
    (S.PREPARING, S.CANCELLED): _OWNER_OR_ADMIN,
}


def is_allowed(current: OrderStatus, target: OrderStatus, actor: Actor) -> bool:
    """True if ``actor`` may move an order from ``current`` to ``target``."""
    return actor in TRANSITIONS.get((current, target), frozenset())


def next_statuses(current: OrderStatus, actor: Actor) -> list[OrderStatus]:
    """Statuses ``actor`` may move an order to from ``current``."""
    return [to for (frm, to), actors in TRANSITIONS.items() if frm is current and actor in actors]


class OrderStateMachine:
    """Apply validated status transitions to orders in a ``DataStore``.

    Args:
        store: Data store holding the orders.
        on_change: Called with the updated ``Order`` after every successful
            transition; the notifier's change feed hooks in here.
        clock: Returns the current aware datetime.
    """

    def __init__(self, store: DataStore, on_change: Optional[Callable[[Order], None]] = None, clock: Callable = utcnow):
        self.store = store
        self.on_change = on_change
        self.clock = clock

    def get(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    def transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: Actor,
        actor_id: Optional[str] = None,
        note: str = "",
        cancel_reason: Optional[str] = None,
    ) -> Order:
        """Move an order to ``target``.

        Args:
            order_id: Order to transition.
            target: Desired status.
            actor: Role issuing the command.
            actor_id: User id recorded in the status history, if any.
            note: Free text recorded in the status history.
            cancel_reason: Stored on the order when ``target`` is cancelled.

        Returns:
            Order: The order as stored after the transition.

        Raises:
            NotFoundError: Unknown order id.
            IllegalTransition: The edge does not exist, the actor may not take
                it, or a concurrent command changed the status first.
        """
        target = OrderStatus(target)
        order = self.get(order_id)
        current = order.status

        if not is_allowed(current, target, actor):
            logger.info(
                "transition rejected",
                extra={"order_id": order_id, "current": current.value, "target": target.value, "actor": actor.value},
            )
            raise IllegalTransition(order_id, current, target)

        now = self.clock()
        placed_at = now if current is S.PENDING_PAYMENT and target is S.PENDING else None
        if target is not S.CANCELLED:
            cancel_reason = None

        with self.store.atomic():
            applied = self.store.update_order_status(
                order_id, current, target, now, placed_at=placed_at, cancel_reason=cancel_reason
            )
            if applied:
                self.store.add_status_change(
                    StatusChange(
                        order_id=order_id,
                        from_status=current,
                        to_status=target,
                        actor_id=actor_id,
                        created_at=now,
                        note=note,
                    )
                )

        if not applied:
            fresh = self.get(order_id)
            logger.info(
                "transition lost race",
                extra={"order_id": order_id, "expected": current.value, "found": fresh.status.value},
            )
            raise IllegalTransition(order_id, fresh.status, target)

        order.status = target
        order.updated_at = now
        if placed_at:
            order.placed_at = placed_at
        if cancel_reason:
            order.cancel_reason = cancel_reason

        logger.info(
            "order transitioned",
            extra={"order_id": order_id, "from": current.value, "to": target.value, "actor": actor.value},
        )
        if self.on_change:
            self.on_change(order)
        return order
