# orderflow/loader.py
"""
CSV scenario loading.

A scenario is a pair of CSV files (orders and riders) that is loaded into a
store so a sweep can be run against it from the command line.

orders.csv columns:
    order_id, order_number, user_id, created_at, status, fulfillment_type,
    payment_method, payment_status, payment_verified, total_amount,
    delivery_lat, delivery_lng

riders.csv columns:
    rider_id, user_id, name, is_available, lat, lng, capacity, last_active

Timestamps are 'YYYY-MM-DD HH:MM:SS' in UTC. Empty coordinates mean the
location is unknown.
"""

from __future__ import annotations

import csv
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from . import config
from .models import (
    FulfillmentType,
    Location,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Rider,
)
from .store import Store

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUE_VALUES = {"1", "true", "yes", "y"}


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value.strip(), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def _parse_location(lat: Optional[str], lng: Optional[str]) -> Optional[Location]:
    if not (lat or "").strip() or not (lng or "").strip():
        return None
    return Location(float(lat), float(lng))


def _order_from_row(row: Dict[str, str]) -> Order:
    created_at = parse_timestamp(row["created_at"])
    status, via_confirmed = OrderStatus.parse(row.get("status") or "pending")
    return Order(
        id=row["order_id"],
        order_number=row.get("order_number") or row["order_id"],
        user_id=row.get("user_id", ""),
        created_at=created_at,
        status=status,
        fulfillment_type=FulfillmentType(row.get("fulfillment_type") or "delivery"),
        payment_method=PaymentMethod.parse(row.get("payment_method") or "cod"),
        payment_status=PaymentStatus(row.get("payment_status") or "pending"),
        payment_verified=_parse_bool(row.get("payment_verified")),
        total_amount=float(row.get("total_amount") or 0),
        delivery_location=_parse_location(row.get("delivery_lat"), row.get("delivery_lng")),
        confirmed_at=created_at if via_confirmed else None,
    )


def _rider_from_row(row: Dict[str, str], loaded_at: datetime) -> Rider:
    last_active = row.get("last_active")
    return Rider(
        id=row["rider_id"],
        user_id=row.get("user_id") or row["rider_id"],
        created_at=loaded_at,
        name=row.get("name", ""),
        is_available=_parse_bool(row.get("is_available", "true")),
        current_location=_parse_location(row.get("lat"), row.get("lng")),
        capacity=int(row.get("capacity") or config.DEFAULT_RIDER_CAPACITY),
        last_active=parse_timestamp(last_active) if (last_active or "").strip() else None,
    )


def load_scenario(order_file: str, rider_file: str) -> Tuple[List[Rider], List[Order]]:
    """
    Load riders and orders from CSV files.

    Args:
        order_file: Path to orders CSV
        rider_file: Path to riders CSV

    Returns:
        Tuple of (riders, orders) lists

    Raises:
        FileNotFoundError: If files don't exist
        ValueError: If file format is invalid
    """
    if not os.path.exists(order_file):
        raise FileNotFoundError(f"Order file not found: {order_file}")
    if not os.path.exists(rider_file):
        raise FileNotFoundError(f"Rider file not found: {rider_file}")

    orders: List[Order] = []
    with open(order_file, "r", newline="") as f:
        for row in csv.DictReader(f):
            try:
                orders.append(_order_from_row(row))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid order data in {order_file}: {e}") from e

    # Riders without a last_active stamp rank after active ones on ties
    loaded_at = max((o.created_at for o in orders), default=datetime.now(timezone.utc))
    riders: List[Rider] = []
    with open(rider_file, "r", newline="") as f:
        for row in csv.DictReader(f):
            try:
                riders.append(_rider_from_row(row, loaded_at))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid rider data in {rider_file}: {e}") from e

    return riders, orders


def populate_store(store: Store, riders: List[Rider], orders: List[Order]) -> None:
    """Insert a loaded scenario into ``store``."""
    for rider in riders:
        store.add_rider(rider)
    for order in orders:
        store.add_order(order)
