"""Unit tests for the payment coordinator.

These tests drive checkout end to end against the in-memory store and the
stub processor: pricing, all-or-nothing holds, confirmation through the
client and through webhooks, expiry, and merchant onboarding.
"""

import json
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from apps.orders.coordinator import (
    REASON_EXPIRED,
    REASON_PAYMENT_FAILED,
    PaymentCoordinator,
    compute_totals,
    merge_cart,
)
from apps.orders.domain import (
    CartLine,
    OrderLine,
    OrderStatus,
    PaymentEvent,
    PaymentEventType,
    ReservationState,
    Shop,
    StockPolicy,
)
from apps.orders.errors import (
    CheckoutExpired,
    EmptyCart,
    InsufficientStock,
    ItemUnavailable,
    NotFoundError,
    PaymentFailed,
    ShopClosed,
    ShopNotPayable,
    Unauthorized,
)
from apps.orders.ledger import InventoryLedger
from apps.orders.state_machine import OrderStateMachine


@pytest.fixture
def coordinator(store, processor, clock):
    ledger = InventoryLedger(store, clock=clock)
    machine = OrderStateMachine(store, clock=clock)
    return PaymentCoordinator(store, ledger, machine, processor, clock=clock)


def held(store, order_id):
    return [r for r in store.reservations_for_order(order_id) if r.state is ReservationState.HELD]


def test_ten_dollar_cart_is_charged_1083_and_placed(coordinator, store, processor, payable_shop, make_item):
    item = make_item(price="10.00", stock=StockPolicy.tracked(5))

    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])

    assert result.subtotal == Decimal("10.00")
    assert result.tax == Decimal("0.83")
    assert result.total == Decimal("10.83")
    assert result.amount_minor == 1083
    auth = processor.authorizations[result.payment.authorization_id]
    assert auth["amount_minor"] == 1083
    assert auth["application_fee_minor"] == 54
    assert auth["merchant_account"] == "acct_test"
    assert auth["currency"] == "usd"
    assert store.list_orders() == []  # provisional

    order = coordinator.confirm_checkout(result.order_id, customer_id="cust-1")

    assert order.status is OrderStatus.PENDING
    assert order.total == Decimal("10.83")
    assert order.payment_ref == result.payment.authorization_id
    assert [o.id for o in store.list_orders()] == [result.order_id]
    stored = store.get_item(item.id)
    assert stored.stock.count == 4
    assert stored.reserved == 0


def test_checkout_is_all_or_nothing(coordinator, store, processor, payable_shop, make_item):
    plenty = make_item(stock=StockPolicy.tracked(10))
    scarce = make_item(stock=StockPolicy.tracked(1), name="Cortado")

    with pytest.raises(InsufficientStock) as e:
        coordinator.checkout("cust-1", payable_shop.id, [CartLine(plenty.id, 3), CartLine(scarce.id, 2)])

    assert e.value.item_id == scarce.id
    assert [r for r in store.reservations.values() if r.state is ReservationState.HELD] == []
    assert store.get_item(plenty.id).reserved == 0
    assert store.orders == {}
    assert processor.authorizations == {}


def test_declined_payment_leaves_no_visible_order(coordinator, store, processor, payable_shop, make_item):
    item = make_item(stock=StockPolicy.tracked(2))
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 2)])
    processor.decline(result.payment.authorization_id)

    with pytest.raises(PaymentFailed):
        coordinator.confirm_checkout(result.order_id)

    order = store.get_order(result.order_id)
    assert order.status is OrderStatus.CANCELLED
    assert order.cancel_reason == REASON_PAYMENT_FAILED
    assert order.payment_ref is not None
    assert store.list_orders() == []
    assert store.list_orders(customer_id="cust-1") == []
    assert store.get_item(item.id).available == 2

    # a retry of the confirmation reports the same failure
    with pytest.raises(PaymentFailed):
        coordinator.confirm_checkout(result.order_id)


def test_processor_error_releases_holds(store, clock, payable_shop, make_item):
    class Unreachable:
        def create_authorization(self, **kwargs):
            raise ConnectionError("processor down")

    ledger = InventoryLedger(store, clock=clock)
    coordinator = PaymentCoordinator(store, ledger, OrderStateMachine(store, clock=clock), Unreachable(), clock=clock)
    item = make_item(stock=StockPolicy.tracked(3))

    with pytest.raises(ConnectionError):
        coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 3)])

    assert store.get_item(item.id).reserved == 0
    assert store.orders == {}


def test_pending_authorization_keeps_order_provisional(coordinator, store, processor, payable_shop, make_item):
    item = make_item()
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])
    processor.leave_pending(result.payment.authorization_id)

    order = coordinator.confirm_checkout(result.order_id)

    assert order.status is OrderStatus.PENDING_PAYMENT
    assert len(held(store, result.order_id)) == 1


def test_confirm_after_window_closed_expires(coordinator, store, processor, clock, payable_shop, make_item):
    item = make_item(stock=StockPolicy.tracked(1))
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])

    clock.advance(minutes=16)
    with pytest.raises(CheckoutExpired):
        coordinator.confirm_checkout(result.order_id)

    order = store.get_order(result.order_id)
    assert order.status is OrderStatus.CANCELLED
    assert order.cancel_reason == REASON_EXPIRED
    assert processor.cancelled == [result.payment.authorization_id]
    assert store.get_item(item.id).available == 1


def test_confirm_by_another_customer_is_unauthorized(coordinator, payable_shop, make_item):
    item = make_item()
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])
    with pytest.raises(Unauthorized):
        coordinator.confirm_checkout(result.order_id, customer_id="cust-2")


def test_expire_stale_cancels_unconfirmed_checkouts(coordinator, store, clock, payable_shop, make_item):
    item = make_item(stock=StockPolicy.tracked(2))
    stale = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])
    clock.advance(minutes=10)
    fresh = coordinator.checkout("cust-2", payable_shop.id, [CartLine(item.id, 1)])

    clock.advance(minutes=6)
    assert coordinator.expire_stale() == 1

    assert store.get_order(stale.order_id).cancel_reason == REASON_EXPIRED
    assert store.get_order(fresh.order_id).status is OrderStatus.PENDING_PAYMENT
    assert held(store, stale.order_id) == []
    assert store.get_item(item.id).reserved == 1


def test_webhook_success_places_order_once(coordinator, store, payable_shop, make_item):
    item = make_item(stock=StockPolicy.tracked(3))
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 2)])
    event = PaymentEvent(PaymentEventType.AUTHORIZATION_SUCCEEDED, result.payment.authorization_id)

    first = coordinator.handle_payment_event(event)
    second = coordinator.handle_payment_event(event)
    confirmed = coordinator.confirm_checkout(result.order_id)

    assert first.status is OrderStatus.PENDING
    assert second.status is OrderStatus.PENDING
    assert confirmed.status is OrderStatus.PENDING
    assert store.get_item(item.id).stock.count == 1
    assert len(store.status_changes) == 1


def test_webhook_failure_cancels(coordinator, store, payable_shop, make_item):
    item = make_item()
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])

    order = coordinator.handle_payment_event(
        PaymentEvent(PaymentEventType.AUTHORIZATION_FAILED, result.payment.authorization_id)
    )

    assert order.status is OrderStatus.CANCELLED
    assert order.cancel_reason == REASON_PAYMENT_FAILED
    assert store.get_item(item.id).reserved == 0


def test_late_success_after_expiry_voids_authorization(coordinator, store, processor, clock, payable_shop, make_item):
    item = make_item()
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(item.id, 1)])
    clock.advance(minutes=20)
    coordinator.expire_stale()
    processor.cancelled.clear()

    order = coordinator.handle_payment_event(
        PaymentEvent(PaymentEventType.AUTHORIZATION_SUCCEEDED, result.payment.authorization_id)
    )

    assert order.status is OrderStatus.CANCELLED
    assert processor.cancelled == [result.payment.authorization_id]


def test_confirmation_racing_expiry_gives_committed_stock_back(
    coordinator, store, clock, payable_shop, make_item, monkeypatch
):
    latte = make_item(stock=StockPolicy.tracked(5))
    scone = make_item(stock=StockPolicy.tracked(5), name="Scone")
    result = coordinator.checkout("cust-1", payable_shop.id, [CartLine(latte.id, 1), CartLine(scone.id, 1)])

    fetch = store.reservations_for_order
    commit = coordinator.ledger.commit
    committed = []

    def fetch_then_commit(order_id):
        # the sweeper reads the holds, then the confirmation commits the first one
        rows = fetch(order_id)
        monkeypatch.setattr(store, "reservations_for_order", fetch)
        commit(committed[0])
        return rows

    def commit_while_expiring(reservation_id):
        if committed:
            return commit(reservation_id)
        committed.append(reservation_id)
        monkeypatch.setattr(store, "reservations_for_order", fetch_then_commit)
        coordinator.expire_stale(now=clock() + timedelta(minutes=16))
        return store.get_reservation(reservation_id)

    monkeypatch.setattr(coordinator.ledger, "commit", commit_while_expiring)

    with pytest.raises(CheckoutExpired):
        coordinator.confirm_checkout(result.order_id)

    order = store.get_order(result.order_id)
    assert order.status is OrderStatus.CANCELLED
    assert order.cancel_reason == REASON_EXPIRED
    assert all(r.state is ReservationState.RELEASED for r in store.reservations_for_order(result.order_id))
    for item in (latte, scone):
        stored = store.get_item(item.id)
        assert (stored.stock.count, stored.reserved) == (5, 0)


def test_unknown_authorization_event_is_ignored(coordinator):
    assert coordinator.handle_payment_event(PaymentEvent(PaymentEventType.AUTHORIZATION_SUCCEEDED, "auth_nope")) is None


def test_shop_and_cart_checks(coordinator, store, payable_shop, make_item):
    with pytest.raises(EmptyCart):
        coordinator.checkout("cust-1", payable_shop.id, [])
    with pytest.raises(NotFoundError):
        coordinator.checkout("cust-1", str(uuid.uuid4()), [CartLine("x", 1)])

    unpaid = store.add_shop(Shop(id=str(uuid.uuid4()), owner_id="owner-2", name="New Shop"))
    with pytest.raises(ShopNotPayable):
        coordinator.checkout("cust-1", unpaid.id, [CartLine("x", 1)])

    store.shops[payable_shop.id].is_open = False
    with pytest.raises(ShopClosed):
        coordinator.checkout("cust-1", payable_shop.id, [CartLine("x", 1)])


def test_item_from_another_shop_is_unavailable(coordinator, store, payable_shop, make_item):
    other = store.add_shop(
        Shop(id=str(uuid.uuid4()), owner_id="owner-2", name="Other", merchant_account="acct_2", charges_enabled=True)
    )
    foreign = make_item(shop=other)
    local = make_item()

    with pytest.raises(ItemUnavailable):
        coordinator.checkout("cust-1", payable_shop.id, [CartLine(local.id, 1), CartLine(foreign.id, 1)])
    assert store.get_item(local.id).reserved == 0


def test_repeated_lines_are_merged():
    merged = merge_cart([CartLine("a", 1), CartLine("b", 2), CartLine("a", 3)])
    assert merged == [CartLine("a", 4), CartLine("b", 2)]
    with pytest.raises(ValueError):
        merge_cart([CartLine("a", 0)])


def test_totals_round_half_up():
    lines = [OrderLine("a", "Drip", Decimal("3.10"), 1)]
    totals = compute_totals(lines, Decimal("0.0825"))
    assert totals.tax == Decimal("0.26")  # 0.25575
    assert totals.total == totals.subtotal + totals.tax


def test_onboarding_creates_account_once(coordinator, store, processor):
    shop = store.add_shop(Shop(id=str(uuid.uuid4()), owner_id="owner-9", name="Fresh Roast"))

    link = coordinator.onboard_shop(shop.id, "owner-9", "o@example.com", "https://a/refresh", "app://return")
    again = coordinator.onboard_shop(shop.id, "owner-9", "o@example.com", "https://a/refresh", "app://return")

    account = store.get_shop(shop.id).merchant_account
    assert account.startswith("acct_")
    assert link == again
    assert list(processor.accounts) == [account]
    with pytest.raises(Unauthorized):
        coordinator.onboard_shop(shop.id, "intruder", "x@example.com", "https://a/r", "app://r")


def test_account_updated_event_syncs_capabilities(coordinator, store, processor):
    shop = store.add_shop(Shop(id=str(uuid.uuid4()), owner_id="owner-9", name="Fresh Roast"))
    coordinator.onboard_shop(shop.id, "owner-9", "o@example.com", "https://a/refresh", "app://return")
    account = store.get_shop(shop.id).merchant_account
    processor.enable_account(account)

    event = processor.parse_event(json.dumps({"type": "account.updated", "object_id": account}).encode(), None)
    coordinator.handle_payment_event(event)

    synced = store.get_shop(shop.id)
    assert synced.charges_enabled and synced.payouts_enabled


def test_sync_requires_an_account(coordinator, store):
    shop = store.add_shop(Shop(id=str(uuid.uuid4()), owner_id="owner-9", name="Fresh Roast"))
    with pytest.raises(ShopNotPayable):
        coordinator.sync_merchant_account(shop.id, "owner-9")
