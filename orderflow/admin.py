# orderflow/admin.py
"""
Admin override gateway.

Manual assignment and reassignment bypass scoring but not the invariants:
they commit through the same ``RiderAssignmentLedger.claim`` conditional
write as the automatic sweep, so an admin racing a sweep (or a rider
self-accepting) can never produce a second active assignment or push a
rider past capacity.

Also hosts the admin read models (dashboard, per-rider load, history,
performance) and the hot-reloadable assignment config.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import config
from .config import AssignmentConfig
from .dispatch import AssignmentEngine
from .errors import ConflictError, ValidationError, already_assigned
from .ledger import RiderAssignmentLedger, is_assignable
from .models import DeliveryAssignment, Order, SweepResult
from .roles import Actor, require_admin
from .scoring import effective_capacity
from .store import ClaimOutcome, ClaimResult, Store
from .utils import minutes_between, utcnow

logger = logging.getLogger(__name__)

RECENT_DELIVERIES_WINDOW = 10
"""Number of latest deliveries averaged for a rider's delivery time."""


class AdminOverrideGateway:
    """
    Admin-only assignment operations and dashboards.

    Attributes:
        store: Record store
        engine: Assignment engine (sweeps, stats, live config)
        ledger: Capacity accounting and the shared claim primitive
        clock: Returns the current time
    """

    def __init__(
        self,
        store: Store,
        engine: AssignmentEngine,
        ledger: RiderAssignmentLedger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.ledger = ledger
        self.clock = clock

    # ---- overrides -----------------------------------------------------------

    def manual_assign(self, actor: Actor, order_id: str, rider_id: str) -> DeliveryAssignment:
        """
        Assign an order to a specific rider, skipping scoring.

        Raises:
            PermissionDeniedError: The actor is not an admin
            ConflictError: The order already has another rider, or the rider is full
            ValidationError: The order is not eligible for assignment
            NotFoundError: Unknown order or rider
        """
        admin = require_admin(actor)
        order = self._require_assignable(order_id)
        self._require_capacity(rider_id)

        result = self.ledger.claim(order_id, rider_id, notes=f"Manually assigned by {admin.user_id}")
        if result.outcome == ClaimOutcome.ALREADY_HELD:
            return result.assignment
        self._raise_unless_claimed(result, order)

        logger.info(f"Admin {admin.user_id} assigned order {order.order_number} to rider {rider_id}")
        self._notify_rider(
            rider_id, order_id, "New Order Assigned", "You have been assigned a new delivery order."
        )
        return result.assignment

    def reassign_order(self, actor: Actor, order_id: str, new_rider_id: str) -> DeliveryAssignment:
        """
        Move an order's assignment to ``new_rider_id``.

        The old rider is released first and the new one claimed second; if the
        claim fails the old rider is claimed back. Orders already picked up
        cannot be reassigned.

        Raises:
            PermissionDeniedError: The actor is not an admin
            ValidationError: Order picked up or otherwise not assignable
            ConflictError: New rider is full, or the assignment changed underneath
            NotFoundError: Unknown order or rider
        """
        admin = require_admin(actor)
        self.store.require_rider(new_rider_id)
        current = self.store.active_assignment_for_order(order_id)

        if current is not None and current.rider_id == new_rider_id:
            return current
        if current is not None and current.picked_up_at is not None:
            raise ValidationError(
                "order already picked up", "This order has already been picked up and cannot be reassigned"
            )
        order = self._require_assignable(order_id)
        self._require_capacity(new_rider_id)

        old_rider_id = current.rider_id if current is not None else None
        if old_rider_id is not None and not self.ledger.release(order_id, old_rider_id):
            raise ConflictError(
                f"assignment of order {order_id} changed during reassignment",
                "The assignment was changed by someone else, please retry",
            )

        result = self.ledger.claim(order_id, new_rider_id, notes=f"Reassigned by {admin.user_id}")
        if result.outcome not in (ClaimOutcome.CLAIMED, ClaimOutcome.ALREADY_HELD):
            if old_rider_id is not None:
                self._restore(order_id, old_rider_id, current.notes)
            self._raise_unless_claimed(result, order)

        logger.info(
            f"Admin {admin.user_id} reassigned order {order.order_number} "
            f"from {old_rider_id or 'nobody'} to {new_rider_id}"
        )
        self._notify_rider(
            new_rider_id, order_id, "Order Reassigned", "An order has been reassigned to you."
        )
        return result.assignment

    def trigger_auto_assignment(self, actor: Actor) -> SweepResult:
        """Run one assignment sweep on an admin's request."""
        admin = require_admin(actor)
        logger.info(f"Admin {admin.user_id} triggered an assignment sweep")
        return self.engine.run_sweep()

    def _require_assignable(self, order_id: str) -> Order:
        order = self.store.require_order(order_id)
        if not is_assignable(order):
            raise ValidationError(
                "order not eligible for assignment",
                f"Order {order.order_number} cannot be assigned to a rider right now",
            )
        return order

    def _require_capacity(self, rider_id: str) -> None:
        if not self.ledger.has_capacity(rider_id):
            raise ConflictError("rider at capacity", "This rider already has the maximum number of orders")

    @staticmethod
    def _raise_unless_claimed(result: ClaimResult, order: Order) -> None:
        if result.outcome == ClaimOutcome.CLAIMED:
            return
        if result.outcome in (ClaimOutcome.ORDER_TAKEN, ClaimOutcome.ALREADY_HELD):
            raise already_assigned()
        if result.outcome == ClaimOutcome.RIDER_AT_CAPACITY:
            raise ConflictError("rider at capacity", "This rider already has the maximum number of orders")
        raise ValidationError(
            "order not eligible for assignment",
            f"Order {order.order_number} cannot be assigned to a rider right now",
        )

    def _restore(self, order_id: str, rider_id: str, notes: Optional[str]) -> None:
        restored = self.ledger.claim(order_id, rider_id, notes=notes)
        if restored.succeeded:
            logger.info(f"Restored rider {rider_id} on order {order_id} after failed reassignment")
        else:
            logger.warning(
                f"Could not restore rider {rider_id} on order {order_id} "
                f"({restored.outcome.value}); the order is left for the next sweep"
            )

    def _notify_rider(self, rider_id: str, order_id: str, title: str, message: str) -> None:
        rider = self.store.get_rider(rider_id)
        if rider is not None:
            self.ledger.notifier.rider_assigned(rider.user_id, order_id, title, message)

    # ---- configuration -------------------------------------------------------

    def update_assignment_config(self, actor: Actor, updates: Mapping[str, Any]) -> AssignmentConfig:
        """
        Merge ``updates`` into the live config, persist it and apply it from the next sweep.

        Raises:
            ValidationError: Unknown keys or out-of-range values (nothing is changed)
        """
        admin = require_admin(actor)
        new_config = self.engine.config.merged(updates)
        self.store.put_setting(config.ASSIGNMENT_CONFIG_KEY, new_config.to_dict())
        self.engine.set_config(new_config)
        logger.info(f"Admin {admin.user_id} updated the assignment config")
        return new_config

    def get_assignment_config(self) -> AssignmentConfig:
        """The persisted config if one was saved, otherwise the engine's live config."""
        stored = self.store.get_setting(config.ASSIGNMENT_CONFIG_KEY)
        if stored is None:
            return self.engine.config
        return AssignmentConfig.from_dict(stored)

    # ---- dashboards ----------------------------------------------------------

    def get_assignment_dashboard(self) -> Dict[str, Any]:
        """
        Engine stats plus the assignment rate (% of in-progress orders with a
        rider) and the mean wait from order creation to assignment.
        """
        stats = self.engine.get_assignment_stats()
        rate = (
            stats.assigned_orders / stats.total_orders * 100
            if stats.total_orders > 0 else 0.0
        )

        waits = []
        for assignment in self.store.list_assignments():
            if not assignment.is_active:
                continue
            order = self.store.get_order(assignment.order_id)
            if order is not None:
                waits.append(minutes_between(order.created_at, assignment.assigned_at))

        dashboard = asdict(stats)
        dashboard["assignment_rate"] = rate
        dashboard["average_assignment_time_mins"] = sum(waits) / len(waits) if waits else 0.0
        return dashboard

    def get_rider_assignment_stats(self) -> List[Dict[str, Any]]:
        """Current load and recent delivery speed for every rider."""
        cfg = self.engine.config
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        stats = []
        for rider in self.store.list_riders():
            assignments = self.store.assignments_for_rider(rider.id)
            delivered = sorted(
                (a for a in assignments if a.delivered_at is not None),
                key=lambda a: a.delivered_at,
                reverse=True,
            )
            recent = [a for a in delivered if a.picked_up_at is not None][:RECENT_DELIVERIES_WINDOW]
            average = (
                sum(minutes_between(a.picked_up_at, a.delivered_at) for a in recent) / len(recent)
                if recent else 0.0
            )
            stats.append({
                "rider_id": rider.id,
                "rider_name": rider.name or "Unknown Rider",
                "current_orders": sum(1 for a in assignments if a.is_active),
                "max_orders": effective_capacity(rider, cfg),
                "completed_today": sum(1 for a in delivered if a.delivered_at >= start_of_day),
                "average_delivery_time_mins": average,
                "is_available": rider.is_available,
                "last_active": rider.seen_at,
            })
        return stats

    def get_unassigned_orders(self) -> List[Order]:
        """Delivery orders that could be assigned right now, oldest first."""
        return self.engine.get_eligible_orders()

    def get_assignment_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent assignments first, joined with order and rider details."""
        assignments = sorted(
            self.store.list_assignments(), key=lambda a: a.assigned_at, reverse=True
        )[:max(limit, 0)]

        history = []
        for assignment in assignments:
            order = self.store.get_order(assignment.order_id)
            rider = self.store.get_rider(assignment.rider_id) if assignment.rider_id else None
            history.append({
                "assignment_id": assignment.id,
                "order_id": assignment.order_id,
                "order_number": order.order_number if order else None,
                "order_status": order.status.value if order else None,
                "total_amount": order.total_amount if order else None,
                "rider_id": assignment.rider_id,
                "rider_name": rider.name if rider else None,
                "status": assignment.status.value,
                "assigned_at": assignment.assigned_at,
                "picked_up_at": assignment.picked_up_at,
                "delivered_at": assignment.delivered_at,
                "notes": assignment.notes,
            })
        return history

    def get_rider_performance_metrics(self, rider_id: str, days: int = 30) -> Dict[str, Any]:
        """Deliveries, completion rate, delivery speed and earnings over the last ``days``."""
        self.store.require_rider(rider_id)
        since = self.clock() - timedelta(days=days)
        assignments = [
            a for a in self.store.assignments_for_rider(rider_id) if a.assigned_at >= since
        ]
        completed = [a for a in assignments if a.delivered_at is not None]
        timed = [a for a in completed if a.picked_up_at is not None]

        return {
            "total_deliveries": len(assignments),
            "completed_deliveries": len(completed),
            "completion_rate": len(completed) / len(assignments) * 100 if assignments else 0.0,
            "average_delivery_time_mins": (
                sum(minutes_between(a.picked_up_at, a.delivered_at) for a in timed) / len(timed)
                if timed else 0.0
            ),
            "earnings": len(completed) * config.DELIVERY_FEE_PER_ORDER,
        }
