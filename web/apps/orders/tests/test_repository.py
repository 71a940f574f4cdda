"""ORM-backed DataStore tests: conditional writes and visibility rules."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from apps.orders.adapters import PaymentProcessorStub
from apps.orders.coordinator import PaymentCoordinator
from apps.orders.domain import CartLine, Order, OrderLine, OrderStatus, Reservation, ReservationState
from apps.orders.ledger import InventoryLedger
from apps.orders.models import ItemModel, OrderModel, OrderStatusChangeModel
from apps.orders.repository import DjangoDataStore
from apps.orders.state_machine import OrderStateMachine

pytestmark = pytest.mark.django_db


@pytest.fixture
def repo():
    return DjangoDataStore()


def new_order(shop_id, status=OrderStatus.PENDING_PAYMENT, customer_id="cust-1"):
    now = timezone.now()
    return Order(
        id=str(uuid.uuid4()),
        shop_id=shop_id,
        customer_id=customer_id,
        lines=[
            OrderLine(item_id=str(uuid.uuid4()), name="Latte", unit_price=Decimal("4.00"), quantity=2),
            OrderLine(item_id=str(uuid.uuid4()), name="Scone", unit_price=Decimal("2.00"), quantity=1),
        ],
        subtotal=Decimal("10.00"),
        tax=Decimal("0.83"),
        total=Decimal("10.83"),
        currency="usd",
        amount_minor=1083,
        application_fee_minor=54,
        payment_ref=f"auth_{uuid.uuid4().hex}",
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(minutes=15),
        status=status,
        placed_at=None if status is OrderStatus.PENDING_PAYMENT else now,
    )


def test_item_stock_write_is_conditional_on_version(repo, db_item):
    item = db_item(stock_count=5)
    loaded = repo.get_item(str(item.id))
    assert loaded.available == 5

    assert repo.update_item_stock(loaded.id, 0, 5, 2) is True
    assert repo.update_item_stock(loaded.id, 0, 5, 3) is False

    fresh = repo.get_item(loaded.id)
    assert (fresh.reserved, fresh.version) == (2, 1)


def test_reservation_state_write_is_conditional(repo, db_item):
    item = db_item()
    now = timezone.now()
    res = Reservation(
        id=str(uuid.uuid4()),
        item_id=str(item.id),
        order_id=str(uuid.uuid4()),
        quantity=1,
        created_at=now,
        expires_at=now - timedelta(seconds=1),
    )
    repo.add_reservation(res)

    assert [r.id for r in repo.expired_reservations(now)] == [res.id]
    assert repo.update_reservation_state(res.id, ReservationState.HELD, ReservationState.RELEASED)
    assert not repo.update_reservation_state(res.id, ReservationState.HELD, ReservationState.COMMITTED)
    assert repo.get_reservation(res.id).state is ReservationState.RELEASED
    assert repo.expired_reservations(now) == []


def test_orders_round_trip_with_lines_and_internal_id(repo, db_shop):
    first = new_order(str(db_shop.id))
    second = new_order(str(db_shop.id))
    repo.add_order(first)
    repo.add_order(second)

    loaded = repo.get_order(first.id)
    assert [(line.name, line.quantity) for line in loaded.lines] == [("Latte", 2), ("Scone", 1)]
    assert loaded.total == Decimal("10.83")
    assert repo.get_order_by_payment_ref(second.payment_ref).id == second.id

    ids = sorted(OrderModel.objects.values_list("internal_id", flat=True))
    assert ids[1] == ids[0] + 1


def test_list_orders_hides_provisional(repo, db_shop):
    provisional = new_order(str(db_shop.id))
    placed = new_order(str(db_shop.id), status=OrderStatus.READY)
    repo.add_order(provisional)
    repo.add_order(placed)

    assert [o.id for o in repo.list_orders(shop_id=str(db_shop.id))] == [placed.id]
    assert repo.list_orders(statuses=[OrderStatus.PENDING]) == []
    assert [o.id for o in repo.stale_orders(timezone.now() + timedelta(hours=1))] == [provisional.id]


def test_order_status_write_is_conditional(repo, db_shop):
    order = new_order(str(db_shop.id))
    repo.add_order(order)
    now = timezone.now()

    assert repo.update_order_status(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING, now, placed_at=now)
    assert not repo.update_order_status(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, now)
    assert repo.get_order(order.id).is_visible


def test_checkout_and_confirm_against_the_database(repo, db_shop, db_item):
    item = db_item(price="10.00", stock_count=3)
    machine = OrderStateMachine(repo)
    coordinator = PaymentCoordinator(repo, InventoryLedger(repo), machine, PaymentProcessorStub())

    result = coordinator.checkout("cust-1", str(db_shop.id), [CartLine(str(item.id), 2)])
    assert ItemModel.objects.get(id=item.id).reserved == 2

    order = coordinator.confirm_checkout(result.order_id)

    assert order.status is OrderStatus.PENDING
    item.refresh_from_db()
    assert (item.stock_count, item.reserved) == (1, 0)
    change = OrderStatusChangeModel.objects.get(order_id=result.order_id)
    assert (change.from_status, change.to_status) == ("pending_payment", "pending")
