# orderflow/config.py
"""
Configuration parameters for the order lifecycle and delivery-assignment engine.

This module centralizes all tunable parameters, making it easy to:
- Adjust rider capacity and the matching radius
- Fine-tune the weighted rider scoring
- Configure notification retry and road-distance behavior

The module-level constants are defaults. The assignment engine works from an
``AssignmentConfig`` snapshot that admins can replace at runtime without a
redeploy (see ``AdminOverrideGateway.update_assignment_config``).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Final, Mapping, Optional, Tuple

from .errors import ValidationError

# =============================================================================
# CAPACITY AND MATCHING RADIUS
# =============================================================================

MAX_ORDERS_PER_RIDER: int = 3
"""Maximum concurrent undelivered assignments per rider (engine-wide cap)."""

DEFAULT_RIDER_CAPACITY: Final[int] = 3
"""Capacity given to a rider record when none is specified."""

ASSIGNMENT_RADIUS_KM: float = 10.0
"""
Distance (km) at which the distance score bottoms out at zero.
Riders further away are still candidates, they just earn no distance credit.
"""

# =============================================================================
# SCORING WEIGHTS
# =============================================================================
# Higher score = better match. The weights are NOT required to sum to 1, so
# absolute scores only mean something relative to other scores in one sweep.

W_DISTANCE: float = 0.4
"""Weight for proximity of the rider to the delivery address."""

W_AVAILABILITY: float = 0.3
"""Weight for spare rider capacity. Higher = spread load across the fleet."""

W_URGENCY: float = 0.3
"""Weight for order freshness (see URGENCY_WINDOW_MINS)."""

URGENCY_WINDOW_MINS: Final[float] = 30.0
"""Order age (minutes) at which the urgency score reaches zero."""

# =============================================================================
# SWEEP EXECUTION
# =============================================================================

SCORING_WORKERS: int = 4
"""
Worker threads used to precompute rider distances for a sweep.
Distance lookups may hit the network (OSRM); the scoring itself is pure.
"""

# =============================================================================
# NOTIFICATIONS
# =============================================================================

NOTIFICATION_RETRY_DELAYS: Tuple[float, ...] = (0.8, 2.0)
"""
Delays (seconds) before each extra delivery attempt of a notification.
Two extra attempts after the first one; failures after that are dropped.
"""

NOTIFICATION_WORKERS: int = 2
"""Threads delivering notifications in the background (retries included)."""

# =============================================================================
# ROAD DISTANCE (OSRM) CONFIGURATION
# =============================================================================

OSRM_SERVER_URL: str = "https://router.project-osrm.org"
"""
OSRM server URL. Options:
- "https://router.project-osrm.org" (public demo, rate-limited)
- "http://localhost:5000" (local Docker instance)
"""

OSRM_TIMEOUT_SECONDS: float = 5.0
"""Timeout for OSRM API requests. Fail fast so a sweep is never stalled."""

OSRM_CACHE_SIZE: int = 10000
"""Maximum number of route results to cache. Prevents repeated API calls."""

HAVERSINE_FALLBACK_MULTIPLIER: float = 1.4
"""
Multiplier applied to Haversine distance when OSRM fails.
Typical city roads are 1.3-1.5x longer than straight-line distance.
"""

MISSING_LOCATION_DISTANCE_KM: Final[float] = 1_000_000.0
"""Sentinel distance returned when either point has no coordinates."""

# =============================================================================
# RIDER EARNINGS
# =============================================================================

DELIVERY_FEE_PER_ORDER: Final[float] = 50.0
"""Flat rider earning per completed delivery."""

ASSIGNMENT_CONFIG_KEY: Final[str] = "assignment_config"
"""Store settings key under which the admin-edited engine config is persisted."""


@dataclass(frozen=True)
class ScoringWeights:
    """Relative weights of the three rider-scoring factors."""
    distance: float = W_DISTANCE
    availability: float = W_AVAILABILITY
    urgency: float = W_URGENCY


@dataclass(frozen=True)
class AssignmentConfig:
    """
    Snapshot of the assignment engine's tunables.

    Instances are immutable; use ``merged`` to derive an updated copy. The
    engine takes one snapshot at the start of every sweep, so a config change
    applies from the next sweep onwards.

    Attributes:
        max_orders_per_rider: Engine-wide cap on concurrent assignments
        assignment_radius_km: Radius used to normalize the distance score
        weights: Scoring weights (not normalized)
    """
    max_orders_per_rider: int = MAX_ORDERS_PER_RIDER
    assignment_radius_km: float = ASSIGNMENT_RADIUS_KM
    weights: ScoringWeights = field(default_factory=ScoringWeights)

    def validate(self) -> "AssignmentConfig":
        """Raise ValidationError if any value is out of range; return self."""
        if self.max_orders_per_rider < 1:
            raise ValidationError("max_orders_per_rider must be at least 1")
        if self.assignment_radius_km <= 0:
            raise ValidationError("assignment_radius_km must be positive")
        for name, value in asdict(self.weights).items():
            if value < 0:
                raise ValidationError(f"weight '{name}' must not be negative")
        return self

    def merged(self, updates: Optional[Mapping[str, Any]]) -> "AssignmentConfig":
        """
        Return a new config with ``updates`` applied.

        Accepts both the snake_case field names and the camelCase keys used by
        admin clients (``maxOrdersPerRider``, ``assignmentRadius``,
        ``priorityWeight`` with ``riderAvailability``/``orderUrgency``).
        Nested weight updates may be partial.
        """
        if not updates:
            return self

        data = _normalize_keys(updates)
        weights = self.weights
        if data.get("weights"):
            weights = ScoringWeights(**{**asdict(self.weights), **data["weights"]})

        merged = AssignmentConfig(
            max_orders_per_rider=int(data.get("max_orders_per_rider", self.max_orders_per_rider)),
            assignment_radius_km=float(data.get("assignment_radius_km", self.assignment_radius_km)),
            weights=weights,
        )
        return merged.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary (persisted in store settings)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AssignmentConfig":
        """Build a config from a (possibly partial) dictionary over the defaults."""
        return cls().merged(data)


_TOP_LEVEL_ALIASES: Dict[str, str] = {
    "maxOrdersPerRider": "max_orders_per_rider",
    "assignmentRadius": "assignment_radius_km",
    "assignment_radius": "assignment_radius_km",
    "priorityWeight": "weights",
    "priority_weight": "weights",
}

_WEIGHT_ALIASES: Dict[str, str] = {
    "riderAvailability": "availability",
    "rider_availability": "availability",
    "orderUrgency": "urgency",
    "order_urgency": "urgency",
}


def _normalize_keys(updates: Mapping[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for key, value in updates.items():
        name = _TOP_LEVEL_ALIASES.get(key, key)
        if name == "weights":
            if value is None:
                continue
            data["weights"] = {
                _WEIGHT_ALIASES.get(w_key, w_key): float(w_value)
                for w_key, w_value in dict(value).items()
            }
        elif name in ("max_orders_per_rider", "assignment_radius_km"):
            data[name] = value
        else:
            raise ValidationError(f"unknown assignment config key: {key}")
    for w_key in data.get("weights", {}):
        if w_key not in ("distance", "availability", "urgency"):
            raise ValidationError(f"unknown scoring weight: {w_key}")
    return data


class ConfigHolder:
    """
    Thread-safe holder of the live AssignmentConfig.

    The engine, the ledger and the admin gateway share one holder; replacing
    its value is how configuration is hot-reloaded.
    """

    def __init__(self, initial: Optional[AssignmentConfig] = None) -> None:
        self._config = (initial or AssignmentConfig()).validate()
        self._lock = threading.Lock()

    def get(self) -> AssignmentConfig:
        with self._lock:
            return self._config

    def set(self, new_config: AssignmentConfig) -> AssignmentConfig:
        new_config.validate()
        with self._lock:
            self._config = new_config
        return new_config

    def update(self, updates: Mapping[str, Any]) -> AssignmentConfig:
        """Merge a partial update into the live config and return the result."""
        with self._lock:
            self._config = self._config.merged(updates)
            return self._config
