# orderflow/errors.py
"""
Error taxonomy for the order lifecycle and delivery-assignment engine.

ValidationError and ConflictError are expected outcomes (illegal transition,
lost race) and are surfaced to the caller as the operation's result.
NotFoundError aborts the single operation that raised it. ExternalServiceError
is raised by collaborators (notifications, distance service) and is never
allowed to roll back a committed state change.
"""

from __future__ import annotations

from typing import Optional


class OrderflowError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        message: Short machine-oriented description (stable, used in tests/logs)
        user_message: Sentence suitable for direct display to a rider or admin
    """
    kind: str = "error"

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message[:1].upper() + message[1:]


class ValidationError(OrderflowError):
    """Illegal state transition, failed guard or repeated one-shot action."""
    kind = "validation"


class ConflictError(OrderflowError):
    """An assignment race was lost or a rider was full at claim time."""
    kind = "conflict"


class NotFoundError(OrderflowError):
    """Unknown order, rider or assignment id."""
    kind = "not_found"


class PermissionDeniedError(OrderflowError):
    """The acting user may not operate on this resource."""
    kind = "permission"


class ExternalServiceError(OrderflowError):
    """A collaborator (notification sink, distance service) failed."""
    kind = "external"


ALREADY_ASSIGNED_MESSAGE = "This order has already been assigned to another rider"


def already_assigned() -> ConflictError:
    return ConflictError("already assigned to another rider", ALREADY_ASSIGNED_MESSAGE)
