# orderflow/__init__.py

from .models import (
    Order,
    Rider,
    DeliveryAssignment,
    PaymentTransaction,
    Location,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
    FulfillmentType,
    SweepResult,
)
from .config import AssignmentConfig, ScoringWeights, ConfigHolder
from .errors import (
    OrderflowError,
    ValidationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ExternalServiceError,
)
from .roles import CustomerActor, AdminActor, RiderActor
from .store import Store, InMemoryStore
from .lifecycle import OrderLifecycleManager
from .ledger import RiderAssignmentLedger, ActionResult
from .dispatch import AssignmentEngine, AutoSweepTrigger
from .admin import AdminOverrideGateway
from .system import OrderflowSystem, build_system

__version__ = "1.0.0"

__all__ = [
    # Models
    "Order",
    "Rider",
    "DeliveryAssignment",
    "PaymentTransaction",
    "Location",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "FulfillmentType",
    "SweepResult",
    # Config
    "AssignmentConfig",
    "ScoringWeights",
    "ConfigHolder",
    # Errors
    "OrderflowError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "PermissionDeniedError",
    "ExternalServiceError",
    # Actors
    "CustomerActor",
    "AdminActor",
    "RiderActor",
    # Core
    "Store",
    "InMemoryStore",
    "OrderLifecycleManager",
    "RiderAssignmentLedger",
    "ActionResult",
    "AssignmentEngine",
    "AutoSweepTrigger",
    "AdminOverrideGateway",
    "OrderflowSystem",
    "build_system",
]
