"""Tests for the order status state machine."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.aggregate import ACTIVE_STATUSES, TERMINAL_STATUSES, TRANSITIONS, OrderAggregate
from app.errors import InvalidTransition
from app.models import Order, OrderStatus

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_order(status=OrderStatus.PENDING, **overrides):
    fields = dict(
        id="order-1", receipt_number="RCP-20261018-0000000A", buyer_id="buyer-1",
        seller_id="seller-1", product_id="prod-1", total_amount=Decimal("500"),
        status=status, created_at=datetime(2026, 10, 17, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Order(**fields)


def test_status_sets_partition_all_statuses():
    assert ACTIVE_STATUSES | TERMINAL_STATUSES == set(OrderStatus)
    assert not ACTIVE_STATUSES & TERMINAL_STATUSES


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize("source,target", [
    (OrderStatus.PENDING, OrderStatus.CONFIRMED),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
])
def test_allowed_transitions(source, target):
    updated = OrderAggregate(make_order(source)).transition(target, NOW, "admin-1")

    assert updated.status is target
    assert updated.updated_at == NOW


@pytest.mark.parametrize("source,target", [
    (OrderStatus.PENDING, OrderStatus.SHIPPED),
    (OrderStatus.PENDING, OrderStatus.DELIVERED),
    (OrderStatus.PENDING, OrderStatus.PENDING),
    (OrderStatus.CONFIRMED, OrderStatus.PENDING),
    (OrderStatus.SHIPPED, OrderStatus.CONFIRMED),
    (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
    (OrderStatus.CANCELLED, OrderStatus.PENDING),
    (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
])
def test_rejected_transitions(source, target):
    with pytest.raises(InvalidTransition) as exc_info:
        OrderAggregate(make_order(source)).transition(target, NOW, "admin-1")

    assert exc_info.value.message == (
        f"Cannot change order status from {source.value} to {target.value}"
    )


def test_confirm_records_actor_time_and_notes():
    order = make_order()

    updated = OrderAggregate(order).transition(
        OrderStatus.CONFIRMED, NOW, "admin-1", notes="Called buyer, pickup at gate 2"
    )

    assert updated.confirmed_by == "admin-1"
    assert updated.confirmed_at == NOW
    assert updated.notes == "Called buyer, pickup at gate 2"
    # the original is left untouched
    assert order.status is OrderStatus.PENDING
    assert order.confirmed_by is None


def test_ship_keeps_existing_tracking_number_when_none_given():
    order = make_order(OrderStatus.CONFIRMED, tracking_number="TRK-1")

    updated = OrderAggregate(order).transition(OrderStatus.SHIPPED, NOW, "admin-1")

    assert updated.tracking_number == "TRK-1"


def test_ship_sets_tracking_number():
    updated = OrderAggregate(make_order(OrderStatus.CONFIRMED)).transition(
        OrderStatus.SHIPPED, NOW, "admin-1", tracking_number="TRK-42"
    )

    assert updated.tracking_number == "TRK-42"


def test_immutable_fields_survive_transitions():
    order = make_order()
    agg = OrderAggregate(order)
    for target in (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        agg = OrderAggregate(agg.transition(target, NOW, "admin-1"))

    final = agg.order
    assert (final.buyer_id, final.seller_id, final.product_id, final.total_amount) == (
        order.buyer_id, order.seller_id, order.product_id, order.total_amount
    )
    assert not agg.is_active
