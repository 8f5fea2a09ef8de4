# orderflow/models.py
"""
Core domain models for the order lifecycle and delivery-assignment engine.

This module defines the records the engine reads and writes through the store:
- Order: A customer order moving through the kitchen/delivery state machine
- DeliveryAssignment: The join record binding one order to one rider
- Rider: A courier with availability, location and capacity
- PaymentTransaction: A payment attempt for an order (latest one wins)

plus the small value types shared by the components (locations, tracking
entries, sweep results and statistics).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import config


class OrderStatus(Enum):
    """Lifecycle states for an order. DELIVERED and CANCELLED are terminal."""
    PENDING = "pending"                    # Placed, awaiting kitchen/payment
    PREPARING = "preparing"                # Kitchen is working on it
    READY_FOR_PICKUP = "ready_for_pickup"  # Waiting for a rider or the customer
    OUT_FOR_DELIVERY = "out_for_delivery"  # Rider has collected it
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @classmethod
    def parse(cls, value: Any) -> Tuple["OrderStatus", bool]:
        """
        Parse a status label into (status, was_confirmed_alias).

        Accepts enum members, the snake_case values and the display labels the
        storefront uses ("Ready for Pickup"). The customer-facing "confirmed"
        label collapses onto PREPARING.

        Raises:
            ValueError: If the label is not a known status
        """
        if isinstance(value, cls):
            return value, False
        label = str(value).strip().lower().replace(" ", "_")
        if label == "confirmed":
            return cls.PREPARING, True
        return cls(label), False


ORDER_FLOW: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)
"""Forward chain of the order state machine (CANCELLED hangs off every non-terminal state)."""


class FulfillmentType(Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(Enum):
    COD = "cod"
    GCASH = "gcash"
    CARD = "card"
    PAYPAL = "paypal"

    @classmethod
    def parse(cls, value: Any) -> "PaymentMethod":
        if isinstance(value, cls):
            return value
        label = str(value).strip().lower()
        if label == "credit_card":
            return cls.CARD
        return cls(label)


class PaymentStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    REFUNDED = "refunded"


class AssignmentStatus(Enum):
    """Rider-side sub-states of a DeliveryAssignment (derived from its timestamps)."""
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    PICKED_UP = "Picked Up"
    DELIVERED = "Delivered"


class NotificationKind(Enum):
    ORDER_UPDATE = "order_update"
    PAYMENT = "payment"
    DELIVERY = "delivery"
    ASSIGNMENT = "assignment"
    SYSTEM = "system"


@dataclass(frozen=True)
class Location:
    """A (latitude, longitude) point in decimal degrees."""
    lat: float
    lng: float


@dataclass
class Order:
    """
    A customer order.

    Attributes:
        id: Unique identifier
        order_number: Human-facing number printed on receipts
        user_id: The customer who placed the order (notification recipient)
        status: Current lifecycle state
        fulfillment_type: Rider delivery or customer pickup
        payment_method/payment_status/payment_verified: Payment gating fields
        subtotal..total_amount: Monetary fields, all non-negative
        delivery_location: Coordinates of the delivery address, if known
        assigned_rider_id: Read-only projection of the active assignment

    Milestone timestamps are set by the lifecycle manager on entry to the
    matching status and are never cleared.
    """
    id: str
    order_number: str
    user_id: str
    created_at: datetime
    status: OrderStatus = OrderStatus.PENDING
    fulfillment_type: FulfillmentType = FulfillmentType.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_verified: bool = False

    subtotal: float = 0.0
    delivery_fee: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0

    delivery_location: Optional[Location] = None
    assigned_rider_id: Optional[str] = None

    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    pickup_ready_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    proof_of_delivery_ref: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("subtotal", "delivery_fee", "tax_amount", "discount_amount", "total_amount"):
            if getattr(self, name) < 0:
                raise ValueError(f"Order {self.id}: {name} must be non-negative")
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD

    @property
    def payment_cleared(self) -> bool:
        """True if the order may be worked on: verified, or COD still awaiting cash."""
        return self.payment_verified or (
            self.is_cod and self.payment_status == PaymentStatus.PENDING
        )

    def __repr__(self) -> str:
        return f"Order({self.id}, {self.status.value})"


@dataclass
class DeliveryAssignment:
    """
    Binds one order to one rider for a single delivery attempt.

    A row is *active* while ``rider_id`` is set and ``delivered_at`` is empty;
    at most one active row may exist per order. Delivered rows are kept as
    history and never deleted.
    """
    id: str
    order_id: str
    assigned_at: datetime
    rider_id: Optional[str] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    proof_ref: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.rider_id is not None and self.delivered_at is None

    @property
    def status(self) -> AssignmentStatus:
        if self.delivered_at is not None:
            return AssignmentStatus.DELIVERED
        if self.rider_id is None:
            return AssignmentStatus.UNASSIGNED
        if self.picked_up_at is not None:
            return AssignmentStatus.PICKED_UP
        return AssignmentStatus.ASSIGNED

    def __repr__(self) -> str:
        return f"DeliveryAssignment({self.order_id}->{self.rider_id}, {self.status.value})"


@dataclass
class Rider:
    """
    A delivery rider.

    ``current_orders`` is not stored here: it is derived from the active
    assignments in the store (see ``Store.count_active_assignments``).
    """
    id: str
    user_id: str
    created_at: datetime
    name: str = ""
    is_available: bool = True
    current_location: Optional[Location] = None
    capacity: int = config.DEFAULT_RIDER_CAPACITY
    last_active: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"Rider {self.id}: capacity must be at least 1")

    @property
    def seen_at(self) -> datetime:
        """Last activity timestamp, falling back to the record creation time."""
        return self.last_active or self.created_at

    def __repr__(self) -> str:
        state = "available" if self.is_available else "offline"
        return f"Rider({self.id}, {state}, capacity={self.capacity})"


@dataclass
class PaymentTransaction:
    """A payment attempt. Several may exist per order; the latest is authoritative."""
    id: str
    order_id: str
    amount: float
    method: PaymentMethod
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None


@dataclass(frozen=True)
class TrackingEntry:
    """One audit-trail record of a genuine order status change."""
    order_id: str
    status: OrderStatus
    actor_id: str
    timestamp: datetime
    notes: Optional[str] = None


@dataclass
class SweepResult:
    """
    Outcome of one assignment sweep.

    Attributes:
        assigned: Orders committed to a rider in this sweep
        failed: Orders whose processing raised an error
        unassigned_orders: Open delivery orders still without a rider after the sweep
        skipped: Orders another caller claimed while the sweep was running
        errors: Human-readable per-order error descriptions
        assignments: (order_id, rider_id) pairs committed in this sweep
    """
    assigned: int = 0
    failed: int = 0
    unassigned_orders: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    assignments: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "assigned": self.assigned,
            "failed": self.failed,
            "unassignedOrders": self.unassigned_orders,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class AssignmentStats:
    total_orders: int
    assigned_orders: int
    unassigned_orders: int
    available_riders: int
    busy_riders: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalOrders": self.total_orders,
            "assignedOrders": self.assigned_orders,
            "unassignedOrders": self.unassigned_orders,
            "availableRiders": self.available_riders,
            "busyRiders": self.busy_riders,
        }
