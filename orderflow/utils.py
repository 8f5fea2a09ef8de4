# orderflow/utils.py
"""
Utility functions for the order lifecycle and delivery-assignment engine.

Provides geographic calculations (the DistanceProvider implementations the
assignment engine is wired with), time helpers and the bounded retry policy
used for best-effort notification delivery.
"""

from __future__ import annotations

import math
import logging
import time as _time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple, TypeVar

import requests

from . import config
from .models import Location

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")


class DistanceProvider(Protocol):
    """Pure distance lookup. Must not raise for missing coordinates."""

    def distance_km(self, a: Optional[Location], b: Optional[Location]) -> float:
        ...


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees

    Returns:
        Distance in kilometers between the two points

    Example:
        >>> round(haversine_distance(14.5995, 120.9842, 14.6091, 121.0223), 2)
        4.24
    """
    # Convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(math.sqrt(a))

    # Radius of Earth in kilometers
    r = 6371
    return c * r


class HaversineDistanceProvider:
    """Straight-line distance. The default provider; never touches the network."""

    def distance_km(self, a: Optional[Location], b: Optional[Location]) -> float:
        if a is None or b is None:
            return config.MISSING_LOCATION_DISTANCE_KM
        return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def _get_cache_key(a: Location, b: Location) -> Tuple[float, float, float, float]:
    """Create a cache key with rounded coordinates (5 decimal places ~ 1m precision)."""
    return (round(a.lat, 5), round(a.lng, 5), round(b.lat, 5), round(b.lng, 5))


class OsrmDistanceProvider:
    """
    Road distance from an OSRM routing server.

    Results are cached per coordinate pair (both directions). Any request or
    parsing failure falls back to Haversine distance times
    ``config.HAVERSINE_FALLBACK_MULTIPLIER``, so lookups never raise.

    Note:
        OSRM expects coordinates in lon,lat order (not lat,lon).
    """

    def __init__(
        self,
        server_url: str = config.OSRM_SERVER_URL,
        timeout: float = config.OSRM_TIMEOUT_SECONDS,
        cache_size: int = config.OSRM_CACHE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.cache_size = cache_size
        self._session = session or requests.Session()
        self._cache: Dict[Tuple[float, float, float, float], float] = {}

    def distance_km(self, a: Optional[Location], b: Optional[Location]) -> float:
        if a is None or b is None:
            return config.MISSING_LOCATION_DISTANCE_KM

        result = self.route_distance(a, b)
        if result is not None:
            return result

        logger.debug("Falling back to Haversine distance with multiplier")
        return haversine_distance(a.lat, a.lng, b.lat, b.lng) * config.HAVERSINE_FALLBACK_MULTIPLIER

    def route_distance(self, a: Location, b: Location) -> Optional[float]:
        """
        Query OSRM for the driving distance between two points.

        Returns:
            Distance in km if successful, None if the request failed
        """
        cache_key = _get_cache_key(a, b)
        if cache_key in self._cache:
            return self._cache[cache_key]

        # Roads are often bidirectional with the same distance
        reverse_key = _get_cache_key(b, a)
        if reverse_key in self._cache:
            return self._cache[reverse_key]

        try:
            url = (
                f"{self.server_url}/route/v1/driving/"
                f"{a.lng},{a.lat};{b.lng},{b.lat}"
                f"?overview=false"
            )
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

            if data.get("code") != "Ok" or not data.get("routes"):
                logger.warning(f"OSRM returned no route: {data.get('code')}")
                return None

            distance_km = data["routes"][0]["distance"] / 1000
        except requests.exceptions.Timeout:
            logger.warning("OSRM request timed out")
            return None
        except requests.exceptions.RequestException as e:
            logger.warning(f"OSRM request failed: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"OSRM response parsing failed: {e}")
            return None

        if len(self._cache) >= self.cache_size:
            # Drop the oldest 10% of entries
            for key in list(self._cache.keys())[:max(1, self.cache_size // 10)]:
                del self._cache[key]
        self._cache[cache_key] = distance_km
        return distance_km

    def clear_cache(self) -> int:
        """Clear the route cache, returning how many entries were dropped."""
        count = len(self._cache)
        self._cache = {}
        return count


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock for every component."""
    return datetime.now(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> float:
    """Minutes elapsed from ``start`` to ``end`` (negative if end is earlier)."""
    return (end - start).total_seconds() / 60


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with an explicit delay schedule.

    ``delays`` holds the wait before each *extra* attempt, so the total number
    of attempts is ``len(delays) + 1``.
    """
    delays: Sequence[float] = field(default_factory=lambda: tuple(config.NOTIFICATION_RETRY_DELAYS))
    retry_on: Tuple[type, ...] = (Exception,)

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    @classmethod
    def exponential(cls, attempts: int, base_delay: float, factor: float = 2.0) -> "RetryPolicy":
        return cls(delays=tuple(base_delay * factor**i for i in range(attempts - 1)))

    def call(
        self,
        fn: Callable[[], T],
        sleep: Callable[[float], None] = _time.sleep,
        on_failure: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Call ``fn`` until it succeeds or the attempts run out.

        Args:
            fn: Zero-argument callable to invoke
            sleep: Sleep function (injectable for tests)
            on_failure: Called with (attempt_number, exception) after each failure

        Returns:
            The first successful result of ``fn``

        Raises:
            The exception of the last attempt if every attempt failed
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except self.retry_on as e:
                if on_failure is not None:
                    on_failure(attempt, e)
                if attempt >= self.max_attempts:
                    raise
                sleep(self.delays[attempt - 1])
