# orderflow/ledger.py
"""
Rider Assignment Ledger.

Tracks what each rider is carrying and drives the rider side of a
DeliveryAssignment:

    Assigned -> Picked Up -> Delivered
        \\--> (released by a reassignment or a cancelled order)

A rider's ``current_orders`` is never stored: it is the number of
assignments attached to the rider with no ``delivered_at``. Capacity is
enforced by the store's ``claim_assignment``, which re-counts inside the same
atomic step that attaches the rider, so two callers can never both take the
last slot.

Rider actions are idempotent for the rider that already performed them, so a
retried request (or a duplicate event) never double-fires notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import config
from .config import ConfigHolder
from .errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    already_assigned,
)
from .events import ChangeEvent, Entity, EventBus
from .lifecycle import OrderLifecycleManager
from .models import (
    DeliveryAssignment,
    FulfillmentType,
    Location,
    Order,
    OrderStatus,
    Rider,
)
from .notifications import Notifier
from .scoring import effective_capacity
from .store import ClaimOutcome, ClaimResult, Store
from .utils import minutes_between, utcnow

logger = logging.getLogger(__name__)


ASSIGNABLE_STATUSES = frozenset({OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP})
"""Order statuses in which a rider may be attached."""

OPEN_STATUSES = frozenset({OrderStatus.PENDING}) | ASSIGNABLE_STATUSES
"""Statuses of delivery orders that still need a rider eventually."""


def is_assignable(order: Order) -> bool:
    """
    Order-side eligibility: kitchen stage, delivery fulfillment, payment cleared.

    The "no active assignment" half of eligibility lives in the store and is
    re-checked atomically at claim time.
    """
    return (
        order.status in ASSIGNABLE_STATUSES
        and order.fulfillment_type == FulfillmentType.DELIVERY
        and order.payment_cleared
    )


@dataclass(frozen=True)
class ActionResult:
    """
    Structured outcome of a rider or admin action, ready for display.

    Attributes:
        ok: Whether the action succeeded
        message: Sentence to show the user
        error: Error kind ("validation", "conflict", ...) when not ok
        value: Return value of the action when ok
    """
    ok: bool
    message: str
    error: Optional[str] = None
    value: Any = None

    @classmethod
    def capture(
        cls, fn: Callable[..., Any], *args: Any, success_message: str = "Done", **kwargs: Any
    ) -> "ActionResult":
        """
        Run ``fn`` and convert expected failures into a failed result.

        ExternalServiceError and unexpected exceptions still propagate.
        """
        try:
            value = fn(*args, **kwargs)
        except (ValidationError, ConflictError, NotFoundError, PermissionDeniedError) as e:
            logger.info(f"{getattr(fn, '__name__', 'action')} rejected ({e.kind}): {e.message}")
            return cls(ok=False, message=e.user_message, error=e.kind)
        return cls(ok=True, message=success_message, value=value)


class RiderAssignmentLedger:
    """
    Per-rider load accounting and rider-initiated assignment actions.

    Attributes:
        store: Record store
        lifecycle: Order state machine (all order status changes go through it)
        notifier: Best-effort notification sink
        config: Shared live assignment config (for the engine-wide capacity cap)
        clock: Returns the current time
    """

    def __init__(
        self,
        store: Store,
        lifecycle: OrderLifecycleManager,
        notifier: Notifier,
        config_holder: Optional[ConfigHolder] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.config = config_holder or ConfigHolder()
        self.clock = clock
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---- capacity ------------------------------------------------------------

    def capacity_for(self, rider: Rider) -> int:
        return effective_capacity(rider, self.config.get())

    def current_orders(self, rider_id: str) -> int:
        """Undelivered assignments currently attached to the rider."""
        self.store.require_rider(rider_id)
        return self.store.count_active_assignments(rider_id)

    def has_capacity(self, rider_id: str) -> bool:
        rider = self.store.require_rider(rider_id)
        return self.store.count_active_assignments(rider_id) < self.capacity_for(rider)

    def claim(self, order_id: str, rider_id: str, notes: Optional[str] = None) -> ClaimResult:
        """
        Attach ``rider_id`` to the order if it is free and the rider has room.

        This is the single commit point shared by the automatic sweep, the
        admin override and rider self-accept.
        """
        rider = self.store.require_rider(rider_id)
        result = self.store.claim_assignment(
            order_id,
            rider_id,
            capacity=self.capacity_for(rider),
            now=self.clock(),
            notes=notes,
            allowed_statuses=ASSIGNABLE_STATUSES,
        )
        logger.debug(f"Claim {order_id} for {rider_id}: {result.outcome.value}")
        return result

    def release(self, order_id: str, rider_id: str) -> bool:
        """Detach ``rider_id`` from the order unless it has already been picked up."""
        return self.store.release_assignment(order_id, rider_id)

    # ---- rider actions -------------------------------------------------------

    def accept(self, order_id: str, rider_id: str) -> DeliveryAssignment:
        """
        Rider self-assigns an available order.

        The order status is left unchanged: accepting is a rider-side claim,
        the order only moves to ``out_for_delivery`` at pickup.

        Raises:
            ConflictError: The order is held by another rider ("already
                assigned to another rider") or the rider is full
            ValidationError: The order is not a deliverable, payment-cleared
                order in the kitchen stages
            NotFoundError: Unknown order or rider
        """
        order = self.store.require_order(order_id)
        if order.fulfillment_type != FulfillmentType.DELIVERY:
            raise ValidationError(
                "pickup orders are not delivered by riders",
                "This order will be collected by the customer",
            )
        if not order.payment_cleared:
            raise ValidationError(
                "payment not verified", "Payment must be verified before the order can be delivered"
            )

        result = self.claim(order_id, rider_id)
        if result.outcome == ClaimOutcome.ALREADY_HELD:
            return result.assignment
        if result.outcome == ClaimOutcome.ORDER_TAKEN:
            raise already_assigned()
        if result.outcome == ClaimOutcome.RIDER_AT_CAPACITY:
            raise ConflictError(
                "rider at capacity", "You already have the maximum number of active orders"
            )
        if result.outcome == ClaimOutcome.ORDER_UNAVAILABLE:
            raise ValidationError(
                "order not available for assignment",
                f"This order is {order.status.value} and can no longer be accepted",
            )

        order = self.store.require_order(order_id)
        logger.info(f"Rider {rider_id} accepted order {order.order_number}")
        self.notifier.order_accepted(order)
        return result.assignment

    def mark_picked_up(self, order_id: str, rider_id: str) -> Order:
        """
        Record that the rider collected the order; moves it to ``out_for_delivery``.

        Raises:
            PermissionDeniedError: The assignment belongs to another rider
            ValidationError: The order is not ready for pickup
            NotFoundError: No assignment for this order
        """
        assignment = self._assignment_for(order_id, rider_id)
        if assignment.picked_up_at is not None:
            return self.store.require_order(order_id)

        order = self.store.require_order(order_id)
        if order.status != OrderStatus.READY_FOR_PICKUP:
            raise ValidationError(
                "order must be ready for pickup", "This order is not ready for pickup yet"
            )

        now = self.clock()
        stamped = self.store.update_assignment_if(
            assignment.id,
            {"rider_id": rider_id, "picked_up_at": None, "delivered_at": None},
            {"picked_up_at": now},
        )
        if not stamped:
            return self._settle_lost_write(order_id, rider_id, "picked_up_at")

        try:
            order = self.lifecycle.transition(order_id, OrderStatus.OUT_FOR_DELIVERY, rider_id)
        except Exception:
            self.store.update_assignment_if(assignment.id, {"picked_up_at": now}, {"picked_up_at": None})
            raise
        logger.info(f"Rider {rider_id} picked up order {order.order_number}")
        return order

    def mark_delivered(self, order_id: str, rider_id: str, proof_ref: Optional[str] = None) -> Order:
        """
        Record the delivery; moves the order to ``delivered``.

        Stamping ``delivered_at`` is what frees the rider's capacity slot.

        Raises:
            ValidationError: "order must be picked up first"
            PermissionDeniedError: The assignment belongs to another rider
            NotFoundError: No assignment for this order
        """
        assignment = self._assignment_for(order_id, rider_id)
        if assignment.delivered_at is not None:
            return self.store.require_order(order_id)
        if assignment.picked_up_at is None:
            raise ValidationError(
                "order must be picked up first", "Please mark the order as picked up first"
            )

        now = self.clock()
        stamped = self.store.update_assignment_if(
            assignment.id,
            {"rider_id": rider_id, "delivered_at": None},
            {"delivered_at": now, "proof_ref": proof_ref},
        )
        if not stamped:
            return self._settle_lost_write(order_id, rider_id, "delivered_at")

        try:
            order = self.lifecycle.transition(order_id, OrderStatus.DELIVERED, rider_id)
        except Exception:
            self.store.update_assignment_if(
                assignment.id, {"delivered_at": now}, {"delivered_at": None, "proof_ref": None}
            )
            raise
        if proof_ref:
            order = self.lifecycle.attach_delivery_proof(order_id, proof_ref)
        logger.info(f"Rider {rider_id} delivered order {order.order_number}")
        return order

    def verify_cod_payment(self, order_id: str, rider_id: str) -> Order:
        """
        Rider confirms cash was collected for a COD order out for delivery.

        Raises:
            ValidationError: Not a COD order, "already verified", or "order
                must be out for delivery"
            PermissionDeniedError: The order is being delivered by another rider
        """
        order = self.store.require_order(order_id)
        if not order.is_cod:
            raise ValidationError("not a COD order", "This order is not a COD payment")
        if order.payment_verified:
            raise ValidationError("already verified", "Payment has already been verified")
        if order.status != OrderStatus.OUT_FOR_DELIVERY:
            raise ValidationError(
                "order must be out for delivery",
                "Cash can only be collected once the order is out for delivery",
            )
        self._assignment_for(order_id, rider_id)
        return self.lifecycle.verify_payment(order_id, rider_id)

    def _assignment_for(self, order_id: str, rider_id: str) -> DeliveryAssignment:
        """The rider's current (or delivered) assignment for the order."""
        self.store.require_rider(rider_id)
        rows = self.store.assignments_for_order(order_id)
        if not rows:
            self.store.require_order(order_id)
            raise NotFoundError(
                f"no assignment for order {order_id}", "This order has not been assigned to a rider"
            )

        active = next((a for a in rows if a.is_active), None)
        if active is not None:
            if active.rider_id != rider_id:
                raise PermissionDeniedError(
                    f"order {order_id} is assigned to rider {active.rider_id}, not {rider_id}",
                    "This order is assigned to another rider",
                )
            return active

        delivered = [a for a in rows if a.rider_id == rider_id and a.delivered_at is not None]
        if delivered:
            return max(delivered, key=lambda a: a.delivered_at)
        raise PermissionDeniedError(
            f"rider {rider_id} holds no assignment for order {order_id}",
            "This order is not assigned to you",
        )

    def _settle_lost_write(self, order_id: str, rider_id: str, stamp: str) -> Order:
        # Someone else changed the row between our read and write. A duplicate
        # request by the same rider has already done the work; anything else
        # is a genuine conflict.
        current = self._assignment_for(order_id, rider_id)
        if getattr(current, stamp) is not None:
            return self.store.require_order(order_id)
        raise ConflictError(
            f"assignment for order {order_id} changed concurrently",
            "This delivery was updated by someone else, please retry",
        )

    # ---- order status sync ---------------------------------------------------

    def attach(self, events: EventBus) -> None:
        """
        Subscribe to order changes so the assignment follows the order.

        A cancelled order frees its rider's slot. An order moved to
        ``out_for_delivery`` or ``delivered`` by someone other than the rider
        (an admin) gets the matching stamps on its active assignment, so the
        rider can still finish the delivery and the slot is freed on delivery.
        """
        if self._unsubscribe is None:
            self._unsubscribe = events.subscribe(Entity.ORDER, self._on_order_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_order_changed(self, event: ChangeEvent) -> None:
        if not event.changed("status"):
            return
        status = event.after.status
        if status not in (OrderStatus.CANCELLED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED):
            return
        active = self.store.active_assignment_for_order(event.record_id)
        if active is None:
            return

        if status == OrderStatus.CANCELLED:
            if self.store.release_assignment(event.record_id, active.rider_id, allow_picked_up=True):
                logger.info(f"Released rider {active.rider_id} from cancelled order {event.record_id}")
            return

        now = self.clock()
        if active.picked_up_at is None:
            self.store.update_assignment_if(
                active.id,
                {"rider_id": active.rider_id, "picked_up_at": None},
                {"picked_up_at": event.after.picked_up_at or now},
            )
        if status == OrderStatus.DELIVERED:
            if self.store.update_assignment_if(
                active.id,
                {"rider_id": active.rider_id, "delivered_at": None},
                {"delivered_at": event.after.delivered_at or now},
            ):
                logger.info(f"Order {event.record_id} delivered outside the rider flow, freed rider {active.rider_id}")

    # ---- rider views ---------------------------------------------------------

    def set_availability(
        self, rider_id: str, is_available: bool, location: Optional[Location] = None
    ) -> Rider:
        changes: Dict[str, Any] = {"is_available": is_available, "last_active": self.clock()}
        if location is not None:
            changes["current_location"] = location
        rider = self.store.update_rider(rider_id, changes)
        logger.info(f"Rider {rider_id} is now {'available' if is_available else 'offline'}")
        return rider

    def get_active_assignments(self, rider_id: str) -> List[DeliveryAssignment]:
        self.store.require_rider(rider_id)
        return sorted(
            self.store.assignments_for_rider(rider_id, active_only=True),
            key=lambda a: a.assigned_at,
        )

    def get_available_orders(self) -> List[Order]:
        """Assignable orders with no rider attached, oldest first."""
        orders = [
            o for o in self.store.list_orders(ASSIGNABLE_STATUSES)
            if is_assignable(o) and self.store.active_assignment_for_order(o.id) is None
        ]
        return sorted(orders, key=lambda o: (o.created_at, o.id))

    def get_unassigned_open_orders(self) -> List[Order]:
        """Delivery orders not yet out of the kitchen stages with no rider attached."""
        orders = [
            o for o in self.store.list_orders(OPEN_STATUSES)
            if o.fulfillment_type == FulfillmentType.DELIVERY
            and self.store.active_assignment_for_order(o.id) is None
        ]
        return sorted(orders, key=lambda o: (o.created_at, o.id))

    def get_rider_stats(self, rider_id: str) -> Dict[str, Any]:
        """
        Delivery counts and earnings for one rider.

        Earnings are a flat ``DELIVERY_FEE_PER_ORDER`` per completed delivery.
        """
        self.store.require_rider(rider_id)
        assignments = self.store.assignments_for_rider(rider_id)
        delivered = [a for a in assignments if a.delivered_at is not None]

        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = [a for a in delivered if a.delivered_at >= start_of_day]

        timed = [a for a in delivered if a.picked_up_at is not None]
        average = (
            sum(minutes_between(a.picked_up_at, a.delivered_at) for a in timed) / len(timed)
            if timed else 0.0
        )

        return {
            "total_deliveries": len(assignments),
            "completed_deliveries": len(delivered),
            "pending_deliveries": len(assignments) - len(delivered),
            "available_orders": len(self.get_available_orders()),
            "total_earnings": len(delivered) * config.DELIVERY_FEE_PER_ORDER,
            "today_earnings": len(today) * config.DELIVERY_FEE_PER_ORDER,
            "average_delivery_time_mins": average,
        }
