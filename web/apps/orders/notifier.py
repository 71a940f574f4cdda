"""Fulfillment notifier: the read side of the order lifecycle.

Shop-owner queues and customer views observe orders only through this
module. Changes are pushed through ``OrderChangeFeed`` (an in-process
condition variable bumped by the state machine) and, because a gunicorn
deployment runs several processes that do not share that feed, every wait
is bounded by ``poll_interval`` so a change made in another process shows
up within one polling period.

Owner commands flow the other way: ``request_transition`` checks that the
caller owns the order's shop and hands the command to the state machine.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .domain import Actor, DataStore, Order, OrderSnapshot, OrderStatus
from .errors import NotFoundError, Unauthorized
from .state_machine import OrderStateMachine


class OrderChangeFeed:
    """Per-shop change counters with blocking waits."""

    def __init__(self):
        self._cond = threading.Condition()
        self._versions: dict[str, int] = {}

    def publish(self, order: Order) -> None:
        with self._cond:
            self._versions[order.shop_id] = self._versions.get(order.shop_id, 0) + 1
            self._cond.notify_all()

    def version(self, shop_id: str) -> int:
        with self._cond:
            return self._versions.get(shop_id, 0)

    def wait(self, shop_id: str, seen: int, timeout: float) -> int:
        """Block until the shop's counter moves past ``seen`` or ``timeout`` elapses."""
        with self._cond:
            self._cond.wait_for(lambda: self._versions.get(shop_id, 0) != seen, timeout=timeout)
            return self._versions.get(shop_id, 0)


@dataclass(frozen=True)
class FeedPage:
    """One observation of a shop's queue.

    Attributes:
        version: Digest of the observed set; pass it back as ``since`` to
            wait for the next change.
        orders: Snapshots, newest first.
    """

    version: str
    orders: list


def snapshot_digest(snapshots: Iterable[OrderSnapshot]) -> str:
    """Deterministic SHA-256 of the (id, status, updated_at) of each snapshot."""
    body = json.dumps(
        [[s.order_id, s.status.value, s.updated_at.isoformat()] for s in snapshots],
        separators=(",", ":"),
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class FulfillmentNotifier:
    def __init__(
        self,
        store: DataStore,
        state_machine: OrderStateMachine,
        feed: Optional[OrderChangeFeed] = None,
        poll_interval: float = 10.0,
        admin_ids: Iterable[str] = (),
    ):
        self.store = store
        self.state_machine = state_machine
        self.feed = feed or OrderChangeFeed()
        self.poll_interval = poll_interval
        self.admin_ids = frozenset(admin_ids)

    # ---------------- authorization ---------------- #

    def _visible_order(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        # provisional orders do not exist for anyone outside checkout
        if order is None or not order.is_visible:
            raise NotFoundError("order", order_id)
        return order

    def _owns_shop(self, shop_id: str, actor_id: str) -> bool:
        shop = self.store.get_shop(shop_id)
        return shop is not None and shop.owner_id == actor_id

    def _require_owner(self, shop_id: str, actor_id: str) -> None:
        if actor_id in self.admin_ids:
            return
        if not self._owns_shop(shop_id, actor_id):
            raise Unauthorized(actor_id, resource="shop")

    # ---------------- reads ---------------- #

    def get_order(self, order_id: str, actor_id: str) -> Order:
        """Return an order to its customer, its shop's owner or an admin."""
        order = self._visible_order(order_id)
        if order.customer_id == actor_id or actor_id in self.admin_ids:
            return order
        if not self._owns_shop(order.shop_id, actor_id):
            raise Unauthorized(actor_id, resource="order")
        return order

    def customer_history(self, customer_id: str) -> list[OrderSnapshot]:
        return [OrderSnapshot.from_order(o) for o in self.store.list_orders(customer_id=customer_id)]

    def shop_history(self, shop_id: str, actor_id: str, statuses: Optional[Iterable[OrderStatus]] = None) -> list[OrderSnapshot]:
        self._require_owner(shop_id, actor_id)
        return self._snapshots(shop_id, statuses)

    def _snapshots(self, shop_id: str, statuses) -> list[OrderSnapshot]:
        orders = self.store.list_orders(shop_id=shop_id, statuses=statuses)
        return [OrderSnapshot.from_order(o) for o in orders]

    def poll(
        self,
        shop_id: str,
        since: Optional[str] = None,
        timeout: float = 0.0,
        statuses: Optional[Iterable[OrderStatus]] = None,
        actor_id: Optional[str] = None,
    ) -> FeedPage:
        """Return the shop's queue once it differs from ``since``.

        With ``since`` None (or a stale digest) this returns immediately.
        Otherwise it waits up to ``timeout`` seconds for a change and then
        returns whatever the queue looks like, changed or not. When
        ``actor_id`` is given it must own the shop (or be an admin).
        """
        if actor_id is not None:
            self._require_owner(shop_id, actor_id)
        statuses = list(statuses) if statuses is not None else None
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            seen = self.feed.version(shop_id)
            snapshots = self._snapshots(shop_id, statuses)
            page = FeedPage(snapshot_digest(snapshots), snapshots)
            if since is None or page.version != since:
                return page
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return page
            self.feed.wait(shop_id, seen, min(remaining, self.poll_interval))

    def subscribe(self, shop_id: str, statuses: Optional[Iterable[OrderStatus]] = None) -> Iterator[list[OrderSnapshot]]:
        """Yield the shop's queue now and again after every change.

        The iterator never ends. Dropping it and calling ``subscribe`` again
        starts over with the full current set.
        """
        statuses = list(statuses) if statuses is not None else None
        since = None
        while True:
            page = self.poll(shop_id, since=since, timeout=self.poll_interval, statuses=statuses)
            if page.version != since:
                since = page.version
                yield page.orders

    # ---------------- commands ---------------- #

    def request_transition(self, order_id: str, target: OrderStatus, actor_id: str, note: str = "") -> Order:
        """Relay a shop-side status command to the state machine.

        Admins may only cancel; everyone else must own the order's shop.

        Raises:
            NotFoundError: Unknown (or still provisional) order.
            Unauthorized: ``actor_id`` does not own the shop.
            IllegalTransition: The state machine rejected the command.
        """
        order = self._visible_order(order_id)
        if self._owns_shop(order.shop_id, actor_id):
            actor = Actor.SHOP_OWNER
        elif actor_id in self.admin_ids:
            actor = Actor.ADMIN
        else:
            raise Unauthorized(actor_id, resource="order")
        return self.state_machine.transition(order_id, target, actor, actor_id=actor_id, note=note)
