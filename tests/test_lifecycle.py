import pytest

from orderflow.errors import NotFoundError, PermissionDeniedError, ValidationError
from orderflow.models import NotificationKind, OrderStatus, PaymentMethod, PaymentStatus
from orderflow.roles import AdminActor, CustomerActor, RiderActor


@pytest.fixture
def lifecycle(system):
    return system.lifecycle


def test_transition_stamps_milestone_and_tracks(lifecycle, add_order, clock):
    order = add_order(status=OrderStatus.PENDING)
    updated = lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1", notes="kitchen started")

    assert updated.status == OrderStatus.PREPARING
    assert updated.prepared_at == clock.now
    assert updated.updated_at == clock.now
    [entry] = lifecycle.get_tracking(order.id)
    assert (entry.status, entry.actor_id, entry.notes) == (OrderStatus.PREPARING, "admin-1", "kitchen started")


def test_transition_notifies_customer_with_status_message(lifecycle, add_order, dispatcher):
    order = add_order(status=OrderStatus.PENDING)
    lifecycle.transition(order.id, "preparing", "admin-1")

    [note] = dispatcher.for_user(order.user_id)
    assert note.title == f"Order {order.order_number} - Preparing"
    assert note.message == "Your order is now being prepared in our kitchen."
    assert note.kind == NotificationKind.ORDER_UPDATE
    assert note.related_order_id == order.id


def test_same_status_transition_is_a_no_op(lifecycle, add_order, dispatcher):
    order = add_order(status=OrderStatus.PENDING)
    lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")
    lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")

    assert len(lifecycle.get_tracking(order.id)) == 1
    assert len(dispatcher.for_user(order.user_id)) == 1


def test_backward_transition_is_invalid(lifecycle, add_order):
    order = add_order(status=OrderStatus.READY_FOR_PICKUP)
    with pytest.raises(ValidationError) as exc:
        lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")
    assert exc.value.message == "invalid transition"


def test_forward_skip_is_allowed(lifecycle, add_order):
    order = add_order(status=OrderStatus.READY_FOR_PICKUP)
    assert lifecycle.transition(order.id, OrderStatus.DELIVERED, "admin-1").status == OrderStatus.DELIVERED


def test_unverified_card_order_cannot_be_prepared_until_verified(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.CARD)
    with pytest.raises(ValidationError) as exc:
        lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")
    assert exc.value.message == "payment not verified"
    assert lifecycle.get_order(order.id).status == OrderStatus.PENDING

    lifecycle.verify_payment(order.id, "admin-1")
    assert lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1").status == OrderStatus.PREPARING


def test_cod_order_with_pending_payment_may_be_prepared(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.COD)
    assert lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1").status == OrderStatus.PREPARING


def test_failed_cod_payment_blocks_progress(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING, payment_status=PaymentStatus.FAILED)
    with pytest.raises(ValidationError):
        lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")


def test_confirmed_is_an_alias_for_preparing(lifecycle, add_order, clock):
    order = add_order(status=OrderStatus.PENDING)
    updated = lifecycle.transition(order.id, "confirmed", "admin-1")
    assert updated.status == OrderStatus.PREPARING
    assert updated.confirmed_at == clock.now


def test_unknown_status_is_rejected(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING)
    with pytest.raises(ValidationError):
        lifecycle.transition(order.id, "teleported", "admin-1")


def test_unknown_order_is_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.transition("missing", OrderStatus.PREPARING, "admin-1")


@pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_terminal_orders_cannot_be_cancelled(lifecycle, add_order, terminal):
    order = add_order(status=terminal)
    with pytest.raises(ValidationError) as exc:
        lifecycle.cancel(order.id, "changed my mind", "admin-1")
    assert exc.value.message == "cannot cancel terminal order"


def test_cancel_records_reason(lifecycle, add_order, clock):
    order = add_order(status=OrderStatus.PREPARING)
    cancelled = lifecycle.cancel(order.id, "out of stock", "admin-1")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancelled_at == clock.now
    assert cancelled.cancellation_reason == "out of stock"


def test_transition_to_cancelled_goes_through_cancel(lifecycle, add_order):
    order = add_order(status=OrderStatus.DELIVERED)
    with pytest.raises(ValidationError) as exc:
        lifecycle.transition(order.id, OrderStatus.CANCELLED, "admin-1")
    assert exc.value.message == "cannot cancel terminal order"


def test_terminal_orders_never_move(lifecycle, add_order):
    order = add_order(status=OrderStatus.CANCELLED)
    with pytest.raises(ValidationError):
        lifecycle.transition(order.id, OrderStatus.DELIVERED, "admin-1")


def test_customer_may_cancel_own_pending_order(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING)
    cancelled = lifecycle.request_cancellation(CustomerActor(order.user_id), order.id, "too slow")
    assert cancelled.status == OrderStatus.CANCELLED
    assert lifecycle.get_tracking(order.id)[-1].actor_id == order.user_id


def test_customer_cannot_cancel_once_preparing(lifecycle, add_order):
    order = add_order(status=OrderStatus.PREPARING)
    with pytest.raises(ValidationError):
        lifecycle.request_cancellation(CustomerActor(order.user_id), order.id, "too slow")


def test_customer_cannot_cancel_someone_elses_order(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING)
    with pytest.raises(PermissionDeniedError):
        lifecycle.request_cancellation(CustomerActor("someone-else"), order.id, "")


def test_rider_cannot_cancel_and_admin_can(lifecycle, add_order):
    order = add_order(status=OrderStatus.OUT_FOR_DELIVERY)
    with pytest.raises(PermissionDeniedError):
        lifecycle.request_cancellation(RiderActor("u-r1", "r1"), order.id, "")
    assert lifecycle.request_cancellation(AdminActor("admin-1"), order.id, "").status == OrderStatus.CANCELLED


def test_unknown_actor_type_fails_loudly(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING)
    with pytest.raises(TypeError):
        lifecycle.request_cancellation(object(), order.id, "")


def test_verify_payment_stamps_transaction_and_notifies(lifecycle, add_order, system, dispatcher, clock):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.GCASH, total=320.0)
    verified = lifecycle.verify_payment(order.id, "admin-1")

    assert verified.payment_verified
    assert verified.payment_status == PaymentStatus.VERIFIED
    payment = system.store.latest_payment(order.id)
    assert (payment.amount, payment.verified_by, payment.verified_at) == (320.0, "admin-1", clock.now)
    [note] = dispatcher.for_user(order.user_id)
    assert note.kind == NotificationKind.PAYMENT
    assert note.message == "Your payment has been verified successfully."


def test_verify_payment_twice_is_rejected(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.GCASH)
    lifecycle.verify_payment(order.id, "admin-1")
    with pytest.raises(ValidationError) as exc:
        lifecycle.verify_payment(order.id, "admin-2")
    assert exc.value.message == "already verified"


def test_refund_requires_verified_payment(lifecycle, add_order):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.CARD)
    with pytest.raises(ValidationError):
        lifecycle.update_payment_status(order.id, PaymentStatus.REFUNDED, "admin-1")

    lifecycle.verify_payment(order.id, "admin-1")
    refunded = lifecycle.update_payment_status(order.id, PaymentStatus.REFUNDED, "admin-1")
    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert not refunded.payment_verified


def test_failed_payment_notifies_once(lifecycle, add_order, dispatcher):
    order = add_order(status=OrderStatus.PENDING, payment_method=PaymentMethod.PAYPAL)
    lifecycle.update_payment_status(order.id, PaymentStatus.FAILED, "admin-1")
    lifecycle.update_payment_status(order.id, PaymentStatus.FAILED, "admin-1")

    notes = dispatcher.for_user(order.user_id)
    assert [n.message for n in notes] == ["Your payment failed. Please try again or contact support."]


def test_proof_can_only_be_attached_to_delivered_orders(lifecycle, add_order):
    order = add_order(status=OrderStatus.OUT_FOR_DELIVERY)
    with pytest.raises(ValidationError):
        lifecycle.attach_delivery_proof(order.id, "proof-1")
    lifecycle.transition(order.id, OrderStatus.DELIVERED, "r1")
    assert lifecycle.attach_delivery_proof(order.id, "proof-1").proof_of_delivery_ref == "proof-1"
