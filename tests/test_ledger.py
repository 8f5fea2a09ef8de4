import threading

import pytest

from orderflow.errors import (
    ALREADY_ASSIGNED_MESSAGE,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from orderflow.ledger import ActionResult
from orderflow.models import (
    AssignmentStatus,
    FulfillmentType,
    Location,
    OrderStatus,
    PaymentMethod,
)


@pytest.fixture
def ledger(system):
    return system.ledger


def test_accept_claims_without_moving_the_order(ledger, system, add_order, add_rider, dispatcher):
    add_rider("x")
    order = add_order()
    assignment = ledger.accept(order.id, "x")

    stored = system.store.get_order(order.id)
    assert stored.status == OrderStatus.READY_FOR_PICKUP
    assert stored.assigned_rider_id == "x"
    assert assignment.status == AssignmentStatus.ASSIGNED
    assert ledger.current_orders("x") == 1
    assert [n.title for n in dispatcher.for_user(order.user_id)] == ["Order accepted by rider!"]


def test_second_rider_cannot_accept_a_taken_order(ledger, add_order, add_rider):
    add_rider("x")
    add_rider("y")
    order = add_order()
    ledger.accept(order.id, "x")

    with pytest.raises(ConflictError) as exc:
        ledger.accept(order.id, "y")
    assert exc.value.message == "already assigned to another rider"
    assert ledger.current_orders("y") == 0


def test_failed_accept_reports_a_display_message(ledger, add_order, add_rider):
    add_rider("x")
    add_rider("y")
    order = add_order()
    ledger.accept(order.id, "x")

    result = ActionResult.capture(ledger.accept, order.id, "y")
    assert not result.ok
    assert result.error == "conflict"
    assert result.message == ALREADY_ASSIGNED_MESSAGE


def test_accept_is_idempotent_for_the_same_rider(ledger, add_order, add_rider, dispatcher):
    add_rider("x")
    order = add_order()
    first = ledger.accept(order.id, "x")
    second = ledger.accept(order.id, "x")

    assert first.id == second.id
    assert ledger.current_orders("x") == 1
    assert len(dispatcher.for_user(order.user_id)) == 1


def test_concurrent_accepts_have_exactly_one_winner(ledger, system, add_order, add_rider):
    riders = [f"r{i}" for i in range(8)]
    for rider_id in riders:
        add_rider(rider_id)
    order = add_order()

    barrier = threading.Barrier(len(riders))
    results = {}

    def accept(rider_id):
        barrier.wait()
        results[rider_id] = ActionResult.capture(ledger.accept, order.id, rider_id)

    threads = [threading.Thread(target=accept, args=(r,)) for r in riders]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r, res in results.items() if res.ok]
    assert len(winners) == 1
    assert all(res.message == ALREADY_ASSIGNED_MESSAGE for r, res in results.items() if not res.ok)
    active = [a for a in system.store.assignments_for_order(order.id) if a.is_active]
    assert [a.rider_id for a in active] == winners


def test_concurrent_accepts_never_exceed_capacity(ledger, system, add_order, add_rider):
    add_rider("x", capacity=2)
    orders = [add_order() for _ in range(6)]
    barrier = threading.Barrier(len(orders))
    results = []

    def accept(order_id):
        barrier.wait()
        results.append(ActionResult.capture(ledger.accept, order_id, "x"))

    threads = [threading.Thread(target=accept, args=(o.id,)) for o in orders]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.ok) == 2
    assert system.store.count_active_assignments("x") == 2


def test_engine_wide_cap_applies_to_accept(ledger, system, add_order, add_rider):
    add_rider("x", capacity=5)
    system.config.update({"max_orders_per_rider": 1})
    ledger.accept(add_order().id, "x")
    with pytest.raises(ConflictError) as exc:
        ledger.accept(add_order().id, "x")
    assert exc.value.message == "rider at capacity"


def test_pickup_orders_cannot_be_accepted(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order(fulfillment_type=FulfillmentType.PICKUP)
    with pytest.raises(ValidationError):
        ledger.accept(order.id, "x")


def test_unverified_prepaid_orders_cannot_be_accepted(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order(payment_method=PaymentMethod.GCASH)
    with pytest.raises(ValidationError) as exc:
        ledger.accept(order.id, "x")
    assert exc.value.message == "payment not verified"


def test_orders_outside_kitchen_stages_cannot_be_accepted(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order(status=OrderStatus.PENDING)
    with pytest.raises(ValidationError):
        ledger.accept(order.id, "x")


def test_accept_unknown_rider(ledger, add_order):
    with pytest.raises(NotFoundError):
        ledger.accept(add_order().id, "ghost")


def test_pickup_moves_order_out_for_delivery(ledger, system, add_order, add_rider, clock):
    add_rider("x")
    order = add_order()
    ledger.accept(order.id, "x")

    updated = ledger.mark_picked_up(order.id, "x")
    assert updated.status == OrderStatus.OUT_FOR_DELIVERY
    assert system.store.active_assignment_for_order(order.id).picked_up_at == clock.now

    again = ledger.mark_picked_up(order.id, "x")
    assert again.status == OrderStatus.OUT_FOR_DELIVERY
    assert len(system.lifecycle.get_tracking(order.id)) == 1


def test_pickup_requires_order_ready(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order(status=OrderStatus.PREPARING)
    ledger.accept(order.id, "x")
    with pytest.raises(ValidationError):
        ledger.mark_picked_up(order.id, "x")


def test_rider_cannot_act_on_another_riders_order(ledger, add_order, add_rider):
    add_rider("x")
    add_rider("y")
    order = add_order()
    ledger.accept(order.id, "x")

    with pytest.raises(PermissionDeniedError):
        ledger.mark_picked_up(order.id, "y")
    ledger.mark_picked_up(order.id, "x")
    with pytest.raises(PermissionDeniedError):
        ledger.mark_delivered(order.id, "y")


def test_pickup_without_assignment_is_not_found(ledger, add_order, add_rider):
    add_rider("x")
    with pytest.raises(NotFoundError):
        ledger.mark_picked_up(add_order().id, "x")


def test_delivery_requires_pickup(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order()
    ledger.accept(order.id, "x")
    with pytest.raises(ValidationError) as exc:
        ledger.mark_delivered(order.id, "x")
    assert exc.value.message == "order must be picked up first"


def test_delivery_frees_capacity_and_keeps_history(ledger, system, add_order, add_rider, dispatcher):
    add_rider("x")
    order = add_order()
    ledger.accept(order.id, "x")
    ledger.mark_picked_up(order.id, "x")

    delivered = ledger.mark_delivered(order.id, "x", proof_ref="photo-123")
    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.proof_of_delivery_ref == "photo-123"
    assert ledger.current_orders("x") == 0

    [row] = system.store.assignments_for_order(order.id)
    assert row.status == AssignmentStatus.DELIVERED
    assert row.proof_ref == "photo-123"
    assert dispatcher.for_user(order.user_id)[-1].title == f"Order {order.order_number} - Delivered"

    assert ledger.mark_delivered(order.id, "x").status == OrderStatus.DELIVERED
    assert [t.status for t in system.lifecycle.get_tracking(order.id)] == [
        OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED,
    ]


def _out_for_delivery(ledger, add_order, add_rider, rider_id="x", **kwargs):
    add_rider(rider_id)
    order = add_order(**kwargs)
    ledger.accept(order.id, rider_id)
    ledger.mark_picked_up(order.id, rider_id)
    return order


def test_cod_collection_verifies_payment_once(ledger, system, add_order, add_rider):
    order = _out_for_delivery(ledger, add_order, add_rider)
    add_rider("y")

    verified = ledger.verify_cod_payment(order.id, "x")
    assert verified.payment_verified
    assert system.store.latest_payment(order.id).verified_by == "x"

    for rider_id in ("x", "y"):
        with pytest.raises(ValidationError) as exc:
            ledger.verify_cod_payment(order.id, rider_id)
        assert exc.value.message == "already verified"


def test_cod_collection_requires_out_for_delivery(ledger, add_order, add_rider):
    add_rider("x")
    order = add_order()
    ledger.accept(order.id, "x")
    with pytest.raises(ValidationError) as exc:
        ledger.verify_cod_payment(order.id, "x")
    assert exc.value.message == "order must be out for delivery"


def test_cod_collection_rejects_prepaid_orders(ledger, add_order, add_rider):
    order = _out_for_delivery(
        ledger, add_order, add_rider, payment_method=PaymentMethod.CARD, payment_verified=True,
    )
    result = ActionResult.capture(ledger.verify_cod_payment, order.id, "x")
    assert result.message == "This order is not a COD payment"


def test_cod_collection_by_another_rider_is_denied(ledger, add_order, add_rider):
    order = _out_for_delivery(ledger, add_order, add_rider)
    add_rider("y")
    with pytest.raises(PermissionDeniedError):
        ledger.verify_cod_payment(order.id, "y")


def test_cancelling_an_order_frees_the_rider(ledger, system, add_order, add_rider):
    add_rider("x", capacity=1)
    order = add_order()
    ledger.accept(order.id, "x")

    system.lifecycle.cancel(order.id, "customer called", "admin-1")
    assert ledger.current_orders("x") == 0
    assert system.store.get_order(order.id).assigned_rider_id is None
    ledger.accept(add_order().id, "x")


def test_admin_delivery_frees_the_riders_slot(ledger, system, add_order, add_rider, clock):
    add_rider("x", capacity=1)
    order = add_order()
    ledger.accept(order.id, "x")

    system.lifecycle.transition(order.id, OrderStatus.DELIVERED, "admin-1")

    assert ledger.current_orders("x") == 0
    row = system.store.assignments_for_order(order.id)[0]
    assert row.status == AssignmentStatus.DELIVERED
    assert row.delivered_at == clock.now
    assert system.engine.run_sweep().assigned == 0
    add_order()
    assert system.engine.run_sweep().assigned == 1


def test_rider_can_finish_an_order_an_admin_sent_out(ledger, system, add_order, add_rider):
    add_rider("x")
    order = add_order()
    ledger.accept(order.id, "x")

    system.lifecycle.transition(order.id, OrderStatus.OUT_FOR_DELIVERY, "admin-1")
    assert system.store.active_assignment_for_order(order.id).picked_up_at is not None

    delivered = ledger.mark_delivered(order.id, "x")
    assert delivered.status == OrderStatus.DELIVERED
    assert ledger.current_orders("x") == 0



def test_set_availability_updates_location_and_activity(ledger, add_rider, clock):
    add_rider("x")
    rider = ledger.set_availability("x", False, Location(14.6, 121.0))
    assert not rider.is_available
    assert rider.current_location == Location(14.6, 121.0)
    assert rider.last_active == clock.now


def test_available_orders_are_unclaimed_and_oldest_first(ledger, add_order, add_rider):
    add_rider("x")
    newer = add_order(age_minutes=2)
    older = add_order(age_minutes=20)
    taken = add_order(age_minutes=30)
    add_order(fulfillment_type=FulfillmentType.PICKUP)
    add_order(status=OrderStatus.PENDING)
    ledger.accept(taken.id, "x")

    assert [o.id for o in ledger.get_available_orders()] == [older.id, newer.id]


def test_active_assignments_listing(ledger, add_order, add_rider):
    order = _out_for_delivery(ledger, add_order, add_rider)
    second = add_order()
    ledger.accept(second.id, "x")
    assert [a.order_id for a in ledger.get_active_assignments("x")] == [order.id, second.id]


def test_rider_stats(ledger, add_order, add_rider, clock):
    order = _out_for_delivery(ledger, add_order, add_rider)
    clock.advance(18)
    ledger.mark_delivered(order.id, "x")
    ledger.accept(add_order().id, "x")

    stats = ledger.get_rider_stats("x")
    assert stats["total_deliveries"] == 2
    assert stats["completed_deliveries"] == 1
    assert stats["pending_deliveries"] == 1
    assert stats["total_earnings"] == 50.0
    assert stats["today_earnings"] == 50.0
    assert stats["average_delivery_time_mins"] == pytest.approx(18)
