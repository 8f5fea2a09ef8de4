# orderflow/store.py
"""
Transactional record store used by every engine component.

The engine never holds a lock across a read-then-write. Every contended
write goes through a conditional primitive that re-checks its precondition
atomically inside the store and reports success or failure instead of
raising:

- ``update_order_if`` / ``update_assignment_if``: "UPDATE ... WHERE col = expected"
- ``claim_assignment``: attach a rider to an order only if no rider is attached
  and the rider is below capacity
- ``release_assignment``: detach a rider only if it is still that rider

``InMemoryStore`` implements the contract with a single re-entrant lock and
hands out detached copies, so mutating a returned record never changes
stored state.
"""

from __future__ import annotations

import abc
import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import NotFoundError
from .events import ChangeAction, ChangeEvent, Entity, EventBus
from .models import (
    DeliveryAssignment,
    Order,
    OrderStatus,
    PaymentTransaction,
    Rider,
    TrackingEntry,
)


class ClaimOutcome(Enum):
    CLAIMED = "claimed"                  # A rider was attached by this call
    ALREADY_HELD = "already_held"        # The same rider already holds the order
    ORDER_TAKEN = "order_taken"          # Another rider holds the order
    RIDER_AT_CAPACITY = "rider_at_capacity"
    ORDER_UNAVAILABLE = "order_unavailable"  # Order left the assignable statuses


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    assignment: Optional[DeliveryAssignment] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (ClaimOutcome.CLAIMED, ClaimOutcome.ALREADY_HELD)


def new_id() -> str:
    return str(uuid.uuid4())


class Store(abc.ABC):
    """Abstract record store. See the module docstring for the write contract."""

    # ---- orders -------------------------------------------------------------

    @abc.abstractmethod
    def add_order(self, order: Order) -> Order: ...

    @abc.abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abc.abstractmethod
    def list_orders(self, statuses: Optional[Iterable[OrderStatus]] = None) -> List[Order]: ...

    @abc.abstractmethod
    def update_order_if(
        self, order_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> bool: ...

    # ---- riders -------------------------------------------------------------

    @abc.abstractmethod
    def add_rider(self, rider: Rider) -> Rider: ...

    @abc.abstractmethod
    def get_rider(self, rider_id: str) -> Optional[Rider]: ...

    @abc.abstractmethod
    def list_riders(self, available_only: bool = False) -> List[Rider]: ...

    @abc.abstractmethod
    def update_rider(self, rider_id: str, changes: Mapping[str, Any]) -> Rider: ...

    # ---- delivery assignments -----------------------------------------------

    @abc.abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[DeliveryAssignment]: ...

    @abc.abstractmethod
    def list_assignments(self) -> List[DeliveryAssignment]: ...

    @abc.abstractmethod
    def assignments_for_order(self, order_id: str) -> List[DeliveryAssignment]: ...

    @abc.abstractmethod
    def assignments_for_rider(
        self, rider_id: str, active_only: bool = False
    ) -> List[DeliveryAssignment]: ...

    @abc.abstractmethod
    def claim_assignment(
        self,
        order_id: str,
        rider_id: str,
        capacity: int,
        now: datetime,
        notes: Optional[str] = None,
        allowed_statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> ClaimResult: ...

    @abc.abstractmethod
    def release_assignment(
        self, order_id: str, rider_id: str, allow_picked_up: bool = False
    ) -> bool: ...

    @abc.abstractmethod
    def update_assignment_if(
        self, assignment_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> bool: ...

    # ---- payments -----------------------------------------------------------

    @abc.abstractmethod
    def add_payment(self, payment: PaymentTransaction) -> PaymentTransaction: ...

    @abc.abstractmethod
    def latest_payment(self, order_id: str) -> Optional[PaymentTransaction]: ...

    @abc.abstractmethod
    def update_payment(self, payment_id: str, changes: Mapping[str, Any]) -> PaymentTransaction: ...

    # ---- audit trail & settings ---------------------------------------------

    @abc.abstractmethod
    def add_tracking(self, entry: TrackingEntry) -> None: ...

    @abc.abstractmethod
    def tracking_for_order(self, order_id: str) -> List[TrackingEntry]: ...

    @abc.abstractmethod
    def get_setting(self, key: str) -> Optional[Any]: ...

    @abc.abstractmethod
    def put_setting(self, key: str, value: Any) -> None: ...

    # ---- derived helpers (shared by all implementations) -------------------

    def active_assignment_for_order(self, order_id: str) -> Optional[DeliveryAssignment]:
        """The row with a rider attached and no delivery yet, if any."""
        for assignment in self.assignments_for_order(order_id):
            if assignment.is_active:
                return assignment
        return None

    def count_active_assignments(self, rider_id: str) -> int:
        """A rider's ``currentOrders``: undelivered assignments attached to them."""
        return len(self.assignments_for_rider(rider_id, active_only=True))

    def require_order(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found", "Order not found")
        return order

    def require_rider(self, rider_id: str) -> Rider:
        rider = self.get_rider(rider_id)
        if rider is None:
            raise NotFoundError(f"rider {rider_id} not found", "Rider not found")
        return rider


def _matches(record: Any, expected: Mapping[str, Any]) -> bool:
    return all(getattr(record, name) == value for name, value in expected.items())


def _apply(record: Any, changes: Mapping[str, Any]) -> None:
    for name, value in changes.items():
        if not hasattr(record, name):
            raise AttributeError(f"{type(record).__name__} has no field '{name}'")
        setattr(record, name, value)


class InMemoryStore(Store):
    """
    Thread-safe in-process store.

    All state lives behind one RLock; change events are published after the
    lock is released so subscribers may call back into the store.
    """

    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events or EventBus()
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._riders: Dict[str, Rider] = {}
        self._assignments: Dict[str, DeliveryAssignment] = {}
        self._payments: Dict[str, PaymentTransaction] = {}
        self._tracking: List[TrackingEntry] = []
        self._settings: Dict[str, Any] = {}

    def _publish(self, pending: List[ChangeEvent]) -> None:
        for event in pending:
            self.events.publish(event)

    @staticmethod
    def _event(entity: Entity, record_id: str, before: Any, after: Any) -> ChangeEvent:
        action = ChangeAction.INSERT if before is None else ChangeAction.UPDATE
        return ChangeEvent(entity, action, record_id, before, copy.copy(after))

    # ---- orders -------------------------------------------------------------

    def add_order(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Duplicate order id: {order.id}")
            self._orders[order.id] = copy.copy(order)
            event = self._event(Entity.ORDER, order.id, None, order)
        self._publish([event])
        return copy.copy(order)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.copy(order) if order is not None else None

    def list_orders(self, statuses: Optional[Iterable[OrderStatus]] = None) -> List[Order]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.copy(o) for o in self._orders.values()
                if wanted is None or o.status in wanted
            ]

    def update_order_if(
        self, order_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found", "Order not found")
            if not _matches(order, expected):
                return False
            before = copy.copy(order)
            _apply(order, changes)
            event = self._event(Entity.ORDER, order_id, before, order)
        self._publish([event])
        return True

    # ---- riders -------------------------------------------------------------

    def add_rider(self, rider: Rider) -> Rider:
        with self._lock:
            if rider.id in self._riders:
                raise ValueError(f"Duplicate rider id: {rider.id}")
            self._riders[rider.id] = copy.copy(rider)
            event = self._event(Entity.RIDER, rider.id, None, rider)
        self._publish([event])
        return copy.copy(rider)

    def get_rider(self, rider_id: str) -> Optional[Rider]:
        with self._lock:
            rider = self._riders.get(rider_id)
            return copy.copy(rider) if rider is not None else None

    def list_riders(self, available_only: bool = False) -> List[Rider]:
        with self._lock:
            return [
                copy.copy(r) for r in self._riders.values()
                if r.is_available or not available_only
            ]

    def update_rider(self, rider_id: str, changes: Mapping[str, Any]) -> Rider:
        with self._lock:
            rider = self._riders.get(rider_id)
            if rider is None:
                raise NotFoundError(f"rider {rider_id} not found", "Rider not found")
            before = copy.copy(rider)
            _apply(rider, changes)
            updated = copy.copy(rider)
            event = self._event(Entity.RIDER, rider_id, before, rider)
        self._publish([event])
        return updated

    # ---- delivery assignments -----------------------------------------------

    def get_assignment(self, assignment_id: str) -> Optional[DeliveryAssignment]:
        with self._lock:
            assignment = self._assignments.get(assignment_id)
            return copy.copy(assignment) if assignment is not None else None

    def list_assignments(self) -> List[DeliveryAssignment]:
        with self._lock:
            return [copy.copy(a) for a in self._assignments.values()]

    def assignments_for_order(self, order_id: str) -> List[DeliveryAssignment]:
        with self._lock:
            return [copy.copy(a) for a in self._assignments.values() if a.order_id == order_id]

    def assignments_for_rider(
        self, rider_id: str, active_only: bool = False
    ) -> List[DeliveryAssignment]:
        with self._lock:
            return [
                copy.copy(a) for a in self._assignments.values()
                if a.rider_id == rider_id and (a.is_active or not active_only)
            ]

    def _active_for_order(self, order_id: str) -> Optional[DeliveryAssignment]:
        for assignment in self._assignments.values():
            if assignment.order_id == order_id and assignment.is_active:
                return assignment
        return None

    def claim_assignment(
        self,
        order_id: str,
        rider_id: str,
        capacity: int,
        now: datetime,
        notes: Optional[str] = None,
        allowed_statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> ClaimResult:
        pending: List[ChangeEvent] = []
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found", "Order not found")
            if rider_id not in self._riders:
                raise NotFoundError(f"rider {rider_id} not found", "Rider not found")

            active = self._active_for_order(order_id)
            if active is not None:
                if active.rider_id == rider_id:
                    return ClaimResult(ClaimOutcome.ALREADY_HELD, copy.copy(active))
                return ClaimResult(ClaimOutcome.ORDER_TAKEN, copy.copy(active))

            if allowed_statuses is not None and order.status not in set(allowed_statuses):
                return ClaimResult(ClaimOutcome.ORDER_UNAVAILABLE)

            current = sum(1 for a in self._assignments.values() if a.rider_id == rider_id and a.is_active)
            if current >= capacity:
                return ClaimResult(ClaimOutcome.RIDER_AT_CAPACITY)

            # Reuse a row released by a reassignment before inserting a new one
            released = next(
                (a for a in self._assignments.values()
                 if a.order_id == order_id and a.rider_id is None and a.delivered_at is None),
                None,
            )
            if released is not None:
                before = copy.copy(released)
                released.rider_id = rider_id
                released.assigned_at = now
                released.notes = notes if notes is not None else released.notes
                claimed = released
            else:
                before = None
                claimed = DeliveryAssignment(
                    id=new_id(), order_id=order_id, assigned_at=now,
                    rider_id=rider_id, notes=notes,
                )
                self._assignments[claimed.id] = claimed
            pending.append(self._event(Entity.ASSIGNMENT, claimed.id, before, claimed))

            order_before = copy.copy(order)
            order.assigned_rider_id = rider_id
            pending.append(self._event(Entity.ORDER, order_id, order_before, order))
            result = ClaimResult(ClaimOutcome.CLAIMED, copy.copy(claimed))
        self._publish(pending)
        return result

    def release_assignment(
        self, order_id: str, rider_id: str, allow_picked_up: bool = False
    ) -> bool:
        pending: List[ChangeEvent] = []
        with self._lock:
            active = self._active_for_order(order_id)
            if active is None or active.rider_id != rider_id:
                return False
            if active.picked_up_at is not None and not allow_picked_up:
                return False
            before = copy.copy(active)
            active.rider_id = None
            pending.append(self._event(Entity.ASSIGNMENT, active.id, before, active))

            order = self._orders.get(order_id)
            if order is not None and order.assigned_rider_id == rider_id:
                order_before = copy.copy(order)
                order.assigned_rider_id = None
                pending.append(self._event(Entity.ORDER, order_id, order_before, order))
        self._publish(pending)
        return True

    def update_assignment_if(
        self, assignment_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> bool:
        with self._lock:
            assignment = self._assignments.get(assignment_id)
            if assignment is None:
                raise NotFoundError(f"assignment {assignment_id} not found", "Delivery assignment not found")
            if not _matches(assignment, expected):
                return False
            before = copy.copy(assignment)
            _apply(assignment, changes)
            event = self._event(Entity.ASSIGNMENT, assignment_id, before, assignment)
        self._publish([event])
        return True

    # ---- payments -----------------------------------------------------------

    def add_payment(self, payment: PaymentTransaction) -> PaymentTransaction:
        with self._lock:
            self._payments[payment.id] = copy.copy(payment)
            event = self._event(Entity.PAYMENT, payment.id, None, payment)
        self._publish([event])
        return copy.copy(payment)

    def latest_payment(self, order_id: str) -> Optional[PaymentTransaction]:
        with self._lock:
            candidates = [p for p in self._payments.values() if p.order_id == order_id]
            if not candidates:
                return None
            return copy.copy(max(candidates, key=lambda p: p.created_at))

    def update_payment(self, payment_id: str, changes: Mapping[str, Any]) -> PaymentTransaction:
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise NotFoundError(f"payment {payment_id} not found", "Payment not found")
            before = copy.copy(payment)
            _apply(payment, changes)
            updated = copy.copy(payment)
            event = self._event(Entity.PAYMENT, payment_id, before, payment)
        self._publish([event])
        return updated

    # ---- audit trail & settings ---------------------------------------------

    def add_tracking(self, entry: TrackingEntry) -> None:
        with self._lock:
            self._tracking.append(entry)

    def tracking_for_order(self, order_id: str) -> List[TrackingEntry]:
        with self._lock:
            return [t for t in self._tracking if t.order_id == order_id]

    def get_setting(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._settings.get(key))

    def put_setting(self, key: str, value: Any) -> None:
        with self._lock:
            before = self._settings.get(key)
            self._settings[key] = copy.deepcopy(value)
            event = ChangeEvent(
                Entity.SETTING,
                ChangeAction.INSERT if before is None else ChangeAction.UPDATE,
                key, before, copy.deepcopy(value),
            )
        self._publish([event])
