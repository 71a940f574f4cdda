"""Inventory reservation ledger.

Holds stock for in-flight checkouts so concurrent buyers cannot oversell a
tracked item. Holds are rows (``Reservation``) with an expiry, not open
transactions, so nothing is locked while a customer types card details.

Every stock mutation is a conditional write keyed on the item's
``version``: read the item, compute the new counters, write them only if
nobody else wrote in between. A lost race re-reads and tries again, up to
``max_retries`` times, then gives up with ``Contention``.
"""

import logging
import uuid
from datetime import timedelta
from typing import Callable, Iterable, Optional

from .domain import DataStore, Item, Reservation, ReservationState, utcnow
from .errors import (
    Contention,
    InsufficientStock,
    ItemUnavailable,
    NotFoundError,
    ReservationReleased,
)

logger = logging.getLogger("orders")

DEFAULT_TTL = timedelta(minutes=15)


class InventoryLedger:
    """Reserve, commit and release stock holds against a ``DataStore``."""

    def __init__(
        self,
        store: DataStore,
        ttl: timedelta = DEFAULT_TTL,
        max_retries: int = 5,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.ttl = ttl
        self.max_retries = max(1, max_retries)
        self.clock = clock

    # ---------------- stock writes ---------------- #

    def _write_stock(self, item_id: str, change: Callable[[Item], tuple[int, int]]) -> Optional[Item]:
        """Apply ``change`` to the item's (stock count, held total) conditionally.

        ``change`` receives the freshly read item and returns the new
        counters; it may raise to abort. Returns the item as read before
        the successful write, or None when the item no longer exists.

        Raises:
            Contention: When every attempt lost the race.
        """
        for attempt in range(1, self.max_retries + 1):
            item = self.store.get_item(item_id)
            if item is None:
                return None
            count, reserved = change(item)
            if self.store.update_item_stock(item_id, item.version, count, reserved):
                return item
            logger.info(
                "stock write lost race",
                extra={"item_id": item_id, "attempt": attempt, "version": item.version},
            )
        raise Contention(item_id, self.max_retries)

    # ---------------- operations ---------------- #

    def reserve(self, item_id: str, quantity: int, order_id: str) -> Reservation:
        """Hold ``quantity`` units of an item for the checkout ``order_id``.

        Unlimited items always succeed and do not touch stock counters.

        Raises:
            NotFoundError: The item does not exist.
            ItemUnavailable: The item is hidden or deleted.
            InsufficientStock: Fewer than ``quantity`` unheld units remain.
            Contention: Lost the conditional write too many times.
        """
        if quantity <= 0:
            raise ValueError("INVALID_QUANTITY")

        item = self.store.get_item(item_id)
        if item is None:
            raise NotFoundError("item", item_id)
        if not item.is_sellable:
            raise ItemUnavailable(item_id)

        now = self.clock()
        reservation = Reservation(
            id=str(uuid.uuid4()),
            item_id=item_id,
            order_id=order_id,
            quantity=quantity,
            created_at=now,
            expires_at=now + self.ttl,
            tracked=item.stock.is_tracked,
        )

        if not reservation.tracked:
            self.store.add_reservation(reservation)
            return reservation

        def hold(current: Item) -> tuple[int, int]:
            if not current.is_sellable:
                raise ItemUnavailable(item_id)
            if current.available < quantity:
                raise InsufficientStock(item_id, requested=quantity, available=current.available)
            return current.stock.count, current.reserved + quantity

        with self.store.atomic():
            if self._write_stock(item_id, hold) is None:
                raise NotFoundError("item", item_id)
            self.store.add_reservation(reservation)

        logger.info(
            "stock reserved",
            extra={"item_id": item_id, "reservation_id": reservation.id, "order_id": order_id, "quantity": quantity},
        )
        return reservation

    def commit(self, reservation_id: str) -> Reservation:
        """Turn a held reservation into a permanent stock decrement.

        Committing an already committed reservation is a no-op.

        Raises:
            NotFoundError: Unknown reservation id.
            ReservationReleased: The hold was released (expired, cart change,
                payment failure) before the commit arrived.
            Contention: Lost the conditional stock write too many times.
        """
        res = self.store.get_reservation(reservation_id)
        if res is None:
            raise NotFoundError("reservation", reservation_id)
        if res.state is ReservationState.COMMITTED:
            return res
        if res.state is ReservationState.RELEASED:
            raise ReservationReleased(reservation_id)

        with self.store.atomic():
            # Claim the row first so a concurrent sweep cannot release it.
            if not self.store.update_reservation_state(reservation_id, ReservationState.HELD, ReservationState.COMMITTED):
                return self.commit(reservation_id)

            if res.tracked:
                def consume(current: Item) -> tuple[int, int]:
                    count = current.stock.count - res.quantity if current.stock.is_tracked else current.stock.count
                    return count, max(0, current.reserved - res.quantity)

                try:
                    item = self._write_stock(res.item_id, consume)
                except Contention:
                    self.store.update_reservation_state(
                        reservation_id, ReservationState.COMMITTED, ReservationState.HELD
                    )
                    raise
                if item is None:
                    logger.warning(
                        "committed reservation for a deleted item",
                        extra={"item_id": res.item_id, "reservation_id": reservation_id},
                    )

        res.state = ReservationState.COMMITTED
        logger.info(
            "reservation committed",
            extra={"reservation_id": reservation_id, "item_id": res.item_id, "order_id": res.order_id},
        )
        return res

    def release(self, reservation_id: str) -> None:
        """Give a held reservation's units back. Idempotent.

        Releasing a released reservation does nothing; releasing a committed
        one does nothing either and is logged as a conflict.

        Raises:
            NotFoundError: Unknown reservation id.
        """
        res = self.store.get_reservation(reservation_id)
        if res is None:
            raise NotFoundError("reservation", reservation_id)
        self._release(res)

    def _release(self, res: Reservation) -> bool:
        """Release ``res`` if it is still held. Returns whether this call freed it."""
        if res.state is ReservationState.RELEASED:
            return False
        if res.state is ReservationState.COMMITTED:
            logger.warning(
                "release ignored, reservation already committed",
                extra={"reservation_id": res.id, "order_id": res.order_id},
            )
            return False

        with self.store.atomic():
            if not self.store.update_reservation_state(res.id, ReservationState.HELD, ReservationState.RELEASED):
                current = self.store.get_reservation(res.id)
                return self._release(current) if current else False

            if res.tracked:
                def give_back(current: Item) -> tuple[int, int]:
                    return current.stock.count, max(0, current.reserved - res.quantity)

                try:
                    self._write_stock(res.item_id, give_back)
                except Contention:
                    self.store.update_reservation_state(
                        res.id, ReservationState.RELEASED, ReservationState.HELD
                    )
                    raise

        res.state = ReservationState.RELEASED
        logger.info(
            "reservation released",
            extra={"reservation_id": res.id, "item_id": res.item_id, "order_id": res.order_id},
        )
        return True

    def restore(self, res: Reservation) -> bool:
        """Undo a commit whose order was never placed.

        Only the payment coordinator calls this, for a checkout that
        committed some holds and then lost its payment. The units go back
        into the item's stock count.
        """
        if res.state is not ReservationState.COMMITTED:
            return False
        with self.store.atomic():
            if not self.store.update_reservation_state(res.id, ReservationState.COMMITTED, ReservationState.RELEASED):
                return False
            if res.tracked:
                def put_back(current: Item) -> tuple[int, int]:
                    count = current.stock.count + res.quantity if current.stock.is_tracked else current.stock.count
                    return count, current.reserved

                try:
                    self._write_stock(res.item_id, put_back)
                except Contention:
                    self.store.update_reservation_state(
                        res.id, ReservationState.RELEASED, ReservationState.COMMITTED
                    )
                    raise
        res.state = ReservationState.RELEASED
        logger.warning(
            "committed reservation restored to stock",
            extra={"reservation_id": res.id, "item_id": res.item_id, "order_id": res.order_id},
        )
        return True

    def release_all(self, reservations: Iterable[Reservation]) -> list[Exception]:
        """Best-effort undo of a checkout's holds.

        Held reservations are released and committed ones restored. Used for
        compensation, where the caller is already failing with a more
        meaningful error, so failures are logged and returned, not raised;
        remaining holds expire through the sweep.
        """
        errors = []
        for res in reservations:
            try:
                if res.state is ReservationState.COMMITTED:
                    self.restore(res)
                else:
                    self._release(res)
            except Exception as e:
                logger.exception(
                    "compensating release failed",
                    extra={"reservation_id": res.id, "order_id": res.order_id},
                )
                errors.append(e)
        return errors

    def sweep(self, now=None) -> int:
        """Release every held reservation whose expiry has passed.

        Returns:
            int: Number of reservations released by this sweep.
        """
        now = now or self.clock()
        released = 0
        for res in self.store.expired_reservations(now):
            try:
                if self._release(res):
                    released += 1
            except Contention:
                # retried on the next cycle
                logger.warning("sweep could not release reservation", extra={"reservation_id": res.id})
        if released:
            logger.info("reservation sweep released holds", extra={"released": released})
        return released
