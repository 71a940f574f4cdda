"""Unit tests for the inventory reservation ledger.

The ledger runs against ``InMemoryDataStore``, whose conditional writes
behave like the ORM store's, so the retry and contention paths are the
same ones production takes.
"""

import threading
import uuid
from decimal import Decimal

import pytest

from apps.orders.adapters import InMemoryDataStore
from apps.orders.domain import Item, ReservationState, StockPolicy
from apps.orders.errors import (
    Contention,
    InsufficientStock,
    ItemUnavailable,
    NotFoundError,
    ReservationReleased,
)
from apps.orders.ledger import InventoryLedger


@pytest.fixture
def ledger(store, clock):
    return InventoryLedger(store, max_retries=20, clock=clock)


def oid():
    return str(uuid.uuid4())


def test_tracked_two_units_scenario(ledger, store, make_item):
    """Customer 1 holds both units, customer 2 is refused, then succeeds after the release."""
    item = make_item(stock=StockPolicy.tracked(2))

    first = ledger.reserve(item.id, 2, oid())
    assert first.state is ReservationState.HELD

    with pytest.raises(InsufficientStock) as e:
        ledger.reserve(item.id, 1, oid())
    assert e.value.available == 0
    assert e.value.requested == 1
    assert str(e.value) == "INSUFFICIENT_STOCK"

    ledger.release(first.id)  # customer 1's payment failed

    second = ledger.reserve(item.id, 1, oid())
    assert second.state is ReservationState.HELD
    assert store.get_item(item.id).reserved == 1


def test_concurrent_reserves_never_oversell(ledger, store, make_item):
    item = make_item(stock=StockPolicy.tracked(6))
    results = []
    lock = threading.Lock()
    start = threading.Barrier(10)

    def worker():
        start.wait()
        try:
            ledger.reserve(item.id, 1, oid())
            outcome = "ok"
        except InsufficientStock:
            outcome = "insufficient"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 6
    assert results.count("insufficient") == 4
    stored = store.get_item(item.id)
    assert stored.reserved == 6
    assert stored.available == 0
    held = [r for r in store.reservations.values() if r.state is ReservationState.HELD]
    assert sum(r.quantity for r in held) == 6


def test_unlimited_item_never_touches_stock(ledger, store, make_item):
    item = make_item(stock=StockPolicy.unlimited())
    res = ledger.reserve(item.id, 500, oid())
    assert res.tracked is False
    stored = store.get_item(item.id)
    assert stored.reserved == 0
    assert stored.version == 0


def test_hidden_and_deleted_items_are_unavailable(ledger, store, make_item):
    hidden = make_item(stock=StockPolicy.hidden())
    with pytest.raises(ItemUnavailable):
        ledger.reserve(hidden.id, 1, oid())

    deleted = make_item()
    store.items[deleted.id].deleted = True
    with pytest.raises(ItemUnavailable):
        ledger.reserve(deleted.id, 1, oid())


def test_reserve_unknown_item_and_bad_quantity(ledger, make_item):
    with pytest.raises(NotFoundError):
        ledger.reserve(str(uuid.uuid4()), 1, oid())
    item = make_item()
    with pytest.raises(ValueError) as e:
        ledger.reserve(item.id, 0, oid())
    assert str(e.value) == "INVALID_QUANTITY"


def test_commit_consumes_stock_once(ledger, store, make_item):
    item = make_item(stock=StockPolicy.tracked(5))
    res = ledger.reserve(item.id, 3, oid())

    ledger.commit(res.id)
    ledger.commit(res.id)  # no-op

    stored = store.get_item(item.id)
    assert stored.stock.count == 2
    assert stored.reserved == 0
    assert store.get_reservation(res.id).state is ReservationState.COMMITTED


def test_release_is_idempotent_and_ignores_committed(ledger, store, make_item):
    item = make_item(stock=StockPolicy.tracked(4))
    res = ledger.reserve(item.id, 2, oid())

    ledger.release(res.id)
    ledger.release(res.id)
    stored = store.get_item(item.id)
    assert stored.reserved == 0
    assert stored.available == 4

    other = ledger.reserve(item.id, 1, oid())
    ledger.commit(other.id)
    ledger.release(other.id)  # logged, not raised
    stored = store.get_item(item.id)
    assert stored.stock.count == 3
    assert stored.reserved == 0
    assert store.get_reservation(other.id).state is ReservationState.COMMITTED


def test_commit_after_release_is_rejected(ledger, make_item):
    item = make_item()
    res = ledger.reserve(item.id, 1, oid())
    ledger.release(res.id)
    with pytest.raises(ReservationReleased):
        ledger.commit(res.id)


def test_unknown_reservation(ledger):
    with pytest.raises(NotFoundError):
        ledger.commit("missing")
    with pytest.raises(NotFoundError):
        ledger.release("missing")


def test_sweep_releases_expired_holds(ledger, store, clock, make_item):
    item = make_item(stock=StockPolicy.tracked(1))
    stale = ledger.reserve(item.id, 1, oid())

    clock.advance(minutes=5)
    assert ledger.sweep() == 0

    clock.advance(minutes=11)
    assert ledger.sweep() == 1
    assert store.get_reservation(stale.id).state is ReservationState.RELEASED

    fresh = ledger.reserve(item.id, 1, oid())
    assert fresh.state is ReservationState.HELD
    assert ledger.sweep() == 0


def test_release_all_restores_committed_units(ledger, store, make_item):
    a = make_item(stock=StockPolicy.tracked(3))
    b = make_item(stock=StockPolicy.tracked(3))
    order_id = oid()
    ra = ledger.reserve(a.id, 2, order_id)
    rb = ledger.reserve(b.id, 1, order_id)
    ledger.commit(ra.id)

    errors = ledger.release_all(store.reservations_for_order(order_id))

    assert errors == []
    assert store.get_item(a.id).stock.count == 3
    assert store.get_item(b.id).reserved == 0
    assert store.get_reservation(ra.id).state is ReservationState.RELEASED
    assert store.get_reservation(rb.id).state is ReservationState.RELEASED


class AlwaysLosingStore(InMemoryDataStore):
    """Every conditional stock write loses the race."""

    def update_item_stock(self, item_id, expected_version, stock_count, reserved):
        return False


def test_contention_after_max_retries(clock, payable_shop):
    store = AlwaysLosingStore()
    store.add_shop(payable_shop)
    item = store.add_item(Item(id=oid(), shop_id=payable_shop.id, name="Mocha", price=Decimal("4.50"), stock=StockPolicy.tracked(3)))
    ledger = InventoryLedger(store, max_retries=3, clock=clock)

    with pytest.raises(Contention) as e:
        ledger.reserve(item.id, 1, oid())
    assert e.value.attempts == 3
    assert store.reservations == {}
