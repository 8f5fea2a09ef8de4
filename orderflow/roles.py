# orderflow/roles.py
"""
Closed set of actors that can drive the engine.

Every caller is exactly one of CustomerActor, AdminActor or RiderActor.
Dispatch on the actor type goes through ``isinstance`` chains that end in
``unknown_actor`` so that adding a fourth role fails loudly everywhere it
is not handled.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NoReturn, Union

from .errors import PermissionDeniedError


@dataclass(frozen=True)
class CustomerActor:
    user_id: str


@dataclass(frozen=True)
class AdminActor:
    user_id: str


@dataclass(frozen=True)
class RiderActor:
    user_id: str
    rider_id: str


Actor = Union[CustomerActor, AdminActor, RiderActor]


def unknown_actor(actor: object) -> NoReturn:
    raise TypeError(f"Unknown actor type: {type(actor).__name__}")


def actor_id(actor: Actor) -> str:
    """Identifier recorded in the audit trail for this actor."""
    if isinstance(actor, (CustomerActor, AdminActor)):
        return actor.user_id
    if isinstance(actor, RiderActor):
        return actor.rider_id
    unknown_actor(actor)


def role_name(actor: Actor) -> str:
    if isinstance(actor, CustomerActor):
        return "customer"
    if isinstance(actor, AdminActor):
        return "admin"
    if isinstance(actor, RiderActor):
        return "rider"
    unknown_actor(actor)


def require_admin(actor: Actor) -> AdminActor:
    """Return the actor if it is an admin, otherwise raise PermissionDeniedError."""
    if isinstance(actor, AdminActor):
        return actor
    if isinstance(actor, (CustomerActor, RiderActor)):
        raise PermissionDeniedError(
            f"{role_name(actor)} cannot perform admin actions",
            "Only admins can perform this action",
        )
    unknown_actor(actor)

