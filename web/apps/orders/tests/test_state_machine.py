"""Unit tests for the order state machine transition table."""

import itertools

import pytest

from apps.orders.domain import Actor, OrderStatus
from apps.orders.errors import IllegalTransition, NotFoundError
from apps.orders.state_machine import TRANSITIONS, OrderStateMachine, is_allowed, next_statuses

S = OrderStatus

OWNER_EDGES = {
    (S.PENDING, S.ACCEPTED),
    (S.ACCEPTED, S.PREPARING),
    (S.PREPARING, S.READY),
    (S.READY, S.COMPLETED),
    (S.PENDING, S.CANCELLED),
    (S.ACCEPTED, S.CANCELLED),
    (S.PREPARING, S.CANCELLED),
}


@pytest.fixture
def machine(store, clock):
    return OrderStateMachine(store, clock=clock)


@pytest.mark.parametrize("current,target", list(itertools.product(list(S), repeat=2)))
def test_owner_transition_legality_over_all_pairs(machine, store, make_order, current, target):
    order = make_order(status=current)
    if (current, target) in OWNER_EDGES:
        out = machine.transition(order.id, target, Actor.SHOP_OWNER, actor_id="owner-1")
        assert out.status is target
        assert store.get_order(order.id).status is target
    else:
        with pytest.raises(IllegalTransition) as e:
            machine.transition(order.id, target, Actor.SHOP_OWNER, actor_id="owner-1")
        assert e.value.current is current
        assert store.get_order(order.id).status is current
        assert store.status_changes == []


def test_admin_may_only_cancel():
    assert next_statuses(S.PENDING, Actor.ADMIN) == [S.CANCELLED]
    assert next_statuses(S.READY, Actor.ADMIN) == []
    assert not is_allowed(S.PENDING, S.ACCEPTED, Actor.ADMIN)


def test_only_the_coordinator_leaves_pending_payment():
    for actor in (Actor.SHOP_OWNER, Actor.ADMIN):
        assert next_statuses(S.PENDING_PAYMENT, actor) == []
    assert set(next_statuses(S.PENDING_PAYMENT, Actor.PAYMENT_COORDINATOR)) == {S.PENDING, S.CANCELLED}


def test_terminal_statuses_have_no_exits():
    for (frm, _to) in TRANSITIONS:
        assert not frm.is_terminal


def test_placing_sets_placed_at_and_records_history(machine, store, make_order, clock):
    changes = []
    machine.on_change = changes.append
    order = make_order(status=S.PENDING_PAYMENT)
    assert not store.get_order(order.id).is_visible

    clock.advance(seconds=30)
    placed = machine.transition(order.id, S.PENDING, Actor.PAYMENT_COORDINATOR)

    assert placed.placed_at == clock()
    assert store.get_order(order.id).is_visible
    assert [c.id for c in changes] == [order.id]
    (change,) = store.status_changes
    assert (change.from_status, change.to_status) == (S.PENDING_PAYMENT, S.PENDING)


def test_cancel_reason_only_stored_on_cancel(machine, store, make_order):
    order = make_order(status=S.PENDING)
    machine.transition(order.id, S.ACCEPTED, Actor.SHOP_OWNER, cancel_reason="ignored")
    assert store.get_order(order.id).cancel_reason is None
    machine.transition(order.id, S.CANCELLED, Actor.SHOP_OWNER, cancel_reason="out_of_milk")
    assert store.get_order(order.id).cancel_reason == "out_of_milk"


def test_lost_race_is_rejected_with_fresh_status(machine, store, make_order):
    order = make_order(status=S.PENDING)
    real_get = store.get_order
    calls = {"n": 0}

    def racing_get(order_id):
        calls["n"] += 1
        snapshot = real_get(order_id)
        if calls["n"] == 1:
            # another command cancels between our read and our write
            store.update_order_status(order_id, S.PENDING, S.CANCELLED, snapshot.updated_at)
        return snapshot

    store.get_order = racing_get
    with pytest.raises(IllegalTransition) as e:
        machine.transition(order.id, S.ACCEPTED, Actor.SHOP_OWNER)
    assert e.value.current is S.CANCELLED
    assert real_get(order.id).status is S.CANCELLED


def test_unknown_order(machine):
    with pytest.raises(NotFoundError):
        machine.transition("missing", S.ACCEPTED, Actor.SHOP_OWNER)
