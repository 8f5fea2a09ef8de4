# orderflow/scoring.py
"""
Scoring functions for rider-to-order matching.

Each (order, rider) pair gets a weighted score from three factors, each
normalized to [0, 1]:

    distance     = 1 - min(distance_km, radius) / radius
    availability = 1 - current_orders / capacity
    urgency      = 1 - min(age_minutes, 30) / 30

    score = distance * Wd + availability * Wa + urgency * Wu

Key Design Principles:
1. Higher score = better match
2. Weights are not normalized, so scores only rank candidates within one sweep
3. Everything here is pure; distances are looked up by the caller
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from . import config
from .config import AssignmentConfig
from .models import Rider


@dataclass
class RiderCandidate:
    """
    A rider in a sweep's candidate pool.

    ``current_orders`` is the sweep's working copy of the rider's active
    assignment count; the engine bumps it after every match so one sweep
    cannot over-assign the same rider.
    """
    rider: Rider
    current_orders: int
    capacity: int

    @property
    def has_room(self) -> bool:
        return self.current_orders < self.capacity

    def __repr__(self) -> str:
        return f"RiderCandidate({self.rider.id}, {self.current_orders}/{self.capacity})"


@dataclass(frozen=True)
class RiderScore:
    """Score of one rider for one order, with its components kept for logging."""
    rider_id: str
    distance_km: float
    distance: float
    availability: float
    urgency: float
    total: float


def effective_capacity(rider: Rider, assignment_config: AssignmentConfig) -> int:
    """A rider's own capacity, capped by the engine-wide maximum."""
    return min(rider.capacity, assignment_config.max_orders_per_rider)


def distance_score(distance_km: float, radius_km: float) -> float:
    """
    Proximity score: 1.0 on top of the address, 0.0 at or beyond the radius.

    Example:
        >>> distance_score(2.0, 10.0)
        0.8
    """
    return 1 - min(max(distance_km, 0.0), radius_km) / radius_km


def availability_score(current_orders: int, capacity: int) -> float:
    """
    Spare-capacity score: 1.0 for an idle rider, 0.0 for a full one.

    Example:
        >>> round(availability_score(2, 3), 3)
        0.333
    """
    if capacity <= 0:
        return 0.0
    return 1 - min(current_orders, capacity) / capacity


def urgency_score(age_minutes: float, window_minutes: float = config.URGENCY_WINDOW_MINS) -> float:
    """
    Freshness score: 1.0 for a brand-new order, 0.0 once it is ``window_minutes`` old.

    Orders stamped in the future (clock skew) count as brand new.
    """
    age = min(max(age_minutes, 0.0), window_minutes)
    return 1 - age / window_minutes


def calculate_rider_score(
    candidate: RiderCandidate,
    distance_km: float,
    age_minutes: float,
    assignment_config: AssignmentConfig,
) -> RiderScore:
    """
    Score a candidate rider for an order.

    Args:
        candidate: Rider with the sweep's current view of their load
        distance_km: Rider-to-delivery distance from the DistanceProvider
        age_minutes: Minutes since the order was created
        assignment_config: Weights and radius snapshot for this sweep

    Returns:
        RiderScore with the weighted total and the three components
    """
    weights = assignment_config.weights
    d = distance_score(distance_km, assignment_config.assignment_radius_km)
    a = availability_score(candidate.current_orders, candidate.capacity)
    u = urgency_score(age_minutes)
    total = d * weights.distance + a * weights.availability + u * weights.urgency
    return RiderScore(
        rider_id=candidate.rider.id,
        distance_km=distance_km,
        distance=d,
        availability=a,
        urgency=u,
        total=total,
    )


def rank_key(candidate: RiderCandidate, score: RiderScore) -> Tuple[float, int, datetime, str]:
    """
    Sort key for candidates: best first.

    Highest score wins; ties go to the rider with fewer current orders, then
    to the one active earliest. Scores are rounded so float noise does not
    defeat the tie-break.
    """
    return (-round(score.total, 9), candidate.current_orders, candidate.rider.seen_at, candidate.rider.id)
