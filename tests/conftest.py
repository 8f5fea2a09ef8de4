from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from orderflow.models import (
    FulfillmentType,
    Location,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Rider,
)
from orderflow.notifications import InMemoryDispatcher
from orderflow.roles import AdminActor
from orderflow.system import build_system
from orderflow.utils import RetryPolicy

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now += timedelta(minutes=minutes)
        return self.now


class FixedDistanceProvider:
    """Distance looked up by rider location; unknown locations are far away."""

    def __init__(self, by_rider_location: Optional[Dict[Location, float]] = None, default: float = 5.0) -> None:
        self.by_rider_location = dict(by_rider_location or {})
        self.default = default
        self.calls = 0

    def distance_km(self, a: Optional[Location], b: Optional[Location]) -> float:
        self.calls += 1
        if a is None or b is None:
            return 1_000_000.0
        return self.by_rider_location.get(a, self.default)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def distances():
    return FixedDistanceProvider()


@pytest.fixture
def dispatcher():
    return InMemoryDispatcher()


@pytest.fixture
def system(clock, distances, dispatcher):
    return build_system(
        dispatcher=dispatcher,
        distance_provider=distances,
        clock=clock,
        retry=RetryPolicy(delays=(0.0, 0.0)),
        sleep=lambda _: None,
        auto_sweep=False,
        workers=2,
        inline_notifications=True,
    )


@pytest.fixture
def admin():
    return AdminActor(user_id="admin-1")


@pytest.fixture
def add_order(system, clock):
    counter = {"n": 0}

    def _add(
        order_id: Optional[str] = None,
        status: OrderStatus = OrderStatus.READY_FOR_PICKUP,
        payment_method: PaymentMethod = PaymentMethod.COD,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_verified: bool = False,
        fulfillment_type: FulfillmentType = FulfillmentType.DELIVERY,
        age_minutes: float = 5,
        location: Optional[Location] = Location(14.55, 121.02),
        total: float = 250.0,
    ) -> Order:
        counter["n"] += 1
        oid = order_id or f"o{counter['n']}"
        return system.store.add_order(Order(
            id=oid,
            order_number=f"ORD-{oid}",
            user_id=f"cust-{oid}",
            created_at=clock.now - timedelta(minutes=age_minutes),
            status=status,
            fulfillment_type=fulfillment_type,
            payment_method=payment_method,
            payment_status=payment_status,
            payment_verified=payment_verified,
            total_amount=total,
            delivery_location=location,
        ))

    return _add


@pytest.fixture
def add_rider(system, clock):
    def _add(
        rider_id: str,
        location: Optional[Location] = Location(14.56, 121.02),
        capacity: int = 3,
        is_available: bool = True,
        last_active_minutes_ago: Optional[float] = None,
    ) -> Rider:
        last_active = (
            clock.now - timedelta(minutes=last_active_minutes_ago)
            if last_active_minutes_ago is not None else None
        )
        return system.store.add_rider(Rider(
            id=rider_id,
            user_id=f"user-{rider_id}",
            created_at=clock.now - timedelta(days=30),
            name=f"Rider {rider_id}",
            is_available=is_available,
            current_location=location,
            capacity=capacity,
            last_active=last_active,
        ))

    return _add
