# orderflow/lifecycle.py
"""
Order Lifecycle Manager.

Owns the order status state machine and the payment fields:

    pending -> preparing -> ready_for_pickup -> out_for_delivery -> delivered
         \\__________\\________________\\___________________\\--> cancelled

Rules enforced here:
- Progress is monotonic. Any forward step along the chain is allowed (a
  pickup order goes ready_for_pickup -> delivered); backward moves are not,
  and terminal orders never move again.
- Payment gating: an order can only move past ``pending`` once its payment is
  cleared (verified, or COD with payment still pending).
- Same-status calls are no-ops: no write, no audit entry, no notification.
- Every genuine change is committed with a compare-and-swap on the previous
  status, so two concurrent callers cannot both apply a change.

Delivery eligibility (fulfillment type, rider assignment) is the assignment
layer's business, not this module's.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import ConflictError, PermissionDeniedError, ValidationError
from .models import (
    ORDER_FLOW,
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    TrackingEntry,
)
from .notifications import Notifier
from .roles import Actor, AdminActor, CustomerActor, RiderActor, actor_id, unknown_actor
from .store import Store, new_id
from .utils import utcnow

logger = logging.getLogger(__name__)

MILESTONE_FIELDS: Dict[OrderStatus, str] = {
    OrderStatus.PREPARING: "prepared_at",
    OrderStatus.READY_FOR_PICKUP: "pickup_ready_at",
    OrderStatus.OUT_FOR_DELIVERY: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}
"""Timestamp stamped on entry into each status."""

MAX_WRITE_ATTEMPTS = 5


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if ``target`` is reachable from ``current`` in the state machine."""
    if current.is_terminal:
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return ORDER_FLOW.index(target) > ORDER_FLOW.index(current)


def requires_cleared_payment(target: OrderStatus) -> bool:
    return target != OrderStatus.CANCELLED and ORDER_FLOW.index(target) >= ORDER_FLOW.index(
        OrderStatus.PREPARING
    )


class OrderLifecycleManager:
    """
    Applies status and payment transitions to orders.

    Attributes:
        store: Record store (orders, payments, audit trail)
        notifier: Best-effort customer notification sink
        clock: Returns the current time (injectable for tests)
    """

    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    # ---- status --------------------------------------------------------------

    def transition(
        self,
        order_id: str,
        target_status: Union[OrderStatus, str],
        actor_id: str,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``target_status``.

        ``"confirmed"`` is accepted as a label for PREPARING. Moving to
        CANCELLED goes through ``cancel`` with ``notes`` as the reason.

        Returns:
            The order as stored after the call

        Raises:
            ValidationError: Unknown status, unreachable target ("invalid
                transition") or uncleared payment ("payment not verified")
            NotFoundError: Unknown order id
        """
        target, via_confirmed = self._parse_status(target_status)

        for _ in range(MAX_WRITE_ATTEMPTS):
            order = self.store.require_order(order_id)
            if order.status == target:
                return order
            if target == OrderStatus.CANCELLED:
                return self.cancel(order_id, notes or "", actor_id)
            if not can_transition(order.status, target):
                raise ValidationError(
                    "invalid transition",
                    f"Order cannot move from {order.status.value} to {target.value}",
                )
            if requires_cleared_payment(target) and not order.payment_cleared:
                raise ValidationError(
                    "payment not verified",
                    "Payment must be verified before the order can be prepared",
                )

            now = self.clock()
            changes: Dict[str, Any] = {
                "status": target,
                "updated_at": now,
                MILESTONE_FIELDS[target]: now,
            }
            if via_confirmed:
                changes["confirmed_at"] = now

            if self.store.update_order_if(order_id, {"status": order.status}, changes):
                return self._after_status_change(order_id, order.status, actor_id, notes)
            logger.debug(f"Order {order_id} changed underneath transition, retrying")

        raise ConflictError(
            f"order {order_id} kept changing during transition",
            "The order was updated by someone else, please retry",
        )

    def cancel(self, order_id: str, reason: str, actor_id: str) -> Order:
        """
        Cancel a non-terminal order.

        Raises:
            ValidationError: "cannot cancel terminal order" for delivered or
                already-cancelled orders
            NotFoundError: Unknown order id
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            order = self.store.require_order(order_id)
            if order.status.is_terminal:
                raise ValidationError(
                    "cannot cancel terminal order",
                    f"A {order.status.value} order cannot be cancelled",
                )
            now = self.clock()
            changes = {
                "status": OrderStatus.CANCELLED,
                "updated_at": now,
                "cancelled_at": now,
                "cancellation_reason": reason or None,
            }
            if self.store.update_order_if(order_id, {"status": order.status}, changes):
                return self._after_status_change(order_id, order.status, actor_id, reason or None)

        raise ConflictError(
            f"order {order_id} kept changing during cancellation",
            "The order was updated by someone else, please retry",
        )

    def request_cancellation(self, actor: Actor, order_id: str, reason: str) -> Order:
        """
        Cancel on behalf of ``actor``.

        Admins may cancel any non-terminal order. Customers may cancel their
        own orders while they are still pending. Riders cannot cancel orders.
        """
        if isinstance(actor, AdminActor):
            return self.cancel(order_id, reason, actor_id(actor))
        if isinstance(actor, CustomerActor):
            order = self.store.require_order(order_id)
            if order.user_id != actor.user_id:
                raise PermissionDeniedError(
                    f"customer {actor.user_id} does not own order {order_id}",
                    "You can only cancel your own orders",
                )
            if order.status != OrderStatus.PENDING and not order.status.is_terminal:
                raise ValidationError(
                    "order already in preparation",
                    "This order is already being prepared and can no longer be cancelled",
                )
            return self.cancel(order_id, reason, actor_id(actor))
        if isinstance(actor, RiderActor):
            raise PermissionDeniedError(
                "riders cannot cancel orders", "Riders cannot cancel orders"
            )
        unknown_actor(actor)

    def _after_status_change(
        self, order_id: str, previous: OrderStatus, actor_id: str, notes: Optional[str]
    ) -> Order:
        order = self.store.require_order(order_id)
        self.store.add_tracking(TrackingEntry(
            order_id=order_id,
            status=order.status,
            actor_id=actor_id,
            timestamp=order.updated_at or self.clock(),
            notes=notes,
        ))
        logger.info(f"Order {order.order_number}: {previous.value} -> {order.status.value} by {actor_id}")
        self.notifier.order_status_changed(order)
        return order

    @staticmethod
    def _parse_status(value: Union[OrderStatus, str]):
        try:
            return OrderStatus.parse(value)
        except ValueError:
            raise ValidationError(f"unknown order status: {value}", "Unknown order status") from None

    # ---- payment -------------------------------------------------------------

    def verify_payment(self, order_id: str, actor_id: str) -> Order:
        """
        Mark the order's payment as verified (admin proof check or rider COD collection).

        The latest PaymentTransaction is stamped with the verifier; one is
        created from the order total if none exists yet.

        Raises:
            ValidationError: "already verified"
            NotFoundError: Unknown order id
        """
        order = self.store.require_order(order_id)
        if order.payment_verified:
            raise ValidationError("already verified", "Payment has already been verified")

        now = self.clock()
        committed = self.store.update_order_if(
            order_id,
            {"payment_verified": False},
            {"payment_verified": True, "payment_status": PaymentStatus.VERIFIED, "updated_at": now},
        )
        if not committed:
            raise ValidationError("already verified", "Payment has already been verified")

        payment = self.store.latest_payment(order_id)
        if payment is None:
            payment = self.store.add_payment(PaymentTransaction(
                id=new_id(),
                order_id=order_id,
                amount=order.total_amount,
                method=order.payment_method,
                created_at=now,
            ))
        self.store.update_payment(payment.id, {
            "status": PaymentStatus.VERIFIED,
            "verified_by": actor_id,
            "verified_at": now,
        })

        order = self.store.require_order(order_id)
        logger.info(f"Payment for order {order.order_number} verified by {actor_id}")
        self.notifier.payment_status_changed(order)
        return order

    def update_payment_status(
        self, order_id: str, status: PaymentStatus, actor_id: str
    ) -> Order:
        """
        Record a failed or refunded payment.

        Same-status calls are no-ops. Use ``verify_payment`` for verification.
        """
        if status == PaymentStatus.VERIFIED:
            return self.verify_payment(order_id, actor_id)
        if status == PaymentStatus.PENDING:
            raise ValidationError(
                "payment cannot return to pending", "Payment cannot be reset to pending"
            )

        order = self.store.require_order(order_id)
        if order.payment_status == status:
            return order
        if status == PaymentStatus.REFUNDED and order.payment_status != PaymentStatus.VERIFIED:
            raise ValidationError(
                "only verified payments can be refunded", "Only verified payments can be refunded"
            )

        now = self.clock()
        committed = self.store.update_order_if(
            order_id,
            {"payment_status": order.payment_status},
            {"payment_status": status, "payment_verified": False, "updated_at": now},
        )
        if not committed:
            raise ConflictError(
                f"payment of order {order_id} changed concurrently",
                "The payment was updated by someone else, please retry",
            )

        payment = self.store.latest_payment(order_id)
        if payment is not None:
            self.store.update_payment(payment.id, {"status": status})

        order = self.store.require_order(order_id)
        logger.info(f"Payment for order {order.order_number} marked {status.value} by {actor_id}")
        self.notifier.payment_status_changed(order)
        return order

    def attach_delivery_proof(self, order_id: str, proof_ref: str) -> Order:
        """Store an opaque proof-of-delivery reference on a delivered order."""
        order = self.store.require_order(order_id)
        if order.status != OrderStatus.DELIVERED:
            raise ValidationError(
                "proof requires a delivered order", "Proof can only be attached to delivered orders"
            )
        if order.proof_of_delivery_ref == proof_ref:
            return order
        self.store.update_order_if(
            order_id,
            {"status": OrderStatus.DELIVERED},
            {"proof_of_delivery_ref": proof_ref, "updated_at": self.clock()},
        )
        return self.store.require_order(order_id)

    # ---- queries -------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        return self.store.require_order(order_id)

    def get_tracking(self, order_id: str) -> List[TrackingEntry]:
        """Audit trail of genuine status changes, oldest first."""
        self.store.require_order(order_id)
        return sorted(self.store.tracking_for_order(order_id), key=lambda t: t.timestamp)
