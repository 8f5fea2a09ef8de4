#!/usr/bin/env python3
# main.py
"""
Command-Line Interface for the order lifecycle and delivery-assignment engine.

Loads an orders/riders scenario from CSV into an in-memory store, runs one
assignment sweep and prints who got what.

Usage:
    python main.py                                   # Run with the bundled scenario
    python main.py --orders o.csv --riders r.csv     # Run a specific scenario
    python main.py --radius 5 --weights 0.5 0.3 0.2  # Override engine config
    python main.py --osrm                            # Use road distances (network)
    python main.py --verbose                         # Show per-candidate scoring

Exit Codes:
    0: Success
    1: Data loading error
    2: Sweep error
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Ensure the orderflow package is importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from orderflow.config import AssignmentConfig
from orderflow.errors import OrderflowError
from orderflow.loader import load_scenario, parse_timestamp, populate_store
from orderflow.models import Order, SweepResult
from orderflow.system import OrderflowSystem, build_system
from orderflow.utils import OsrmDistanceProvider, utcnow

logger = logging.getLogger("orderflow.cli")

DEFAULT_ORDERS = "data/orders.csv"
DEFAULT_RIDERS = "data/riders.csv"


def print_header() -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  ORDERFLOW - Delivery Assignment Sweep")
    print("  Weighted distance / availability / urgency matching")
    print("=" * 60 + "\n")


def print_sweep_result(result: SweepResult, orders: Dict[str, Order]) -> None:
    """Print the sweep counters and the committed assignments."""
    print("\n" + "=" * 60)
    print("  SWEEP RESULT")
    print("=" * 60 + "\n")
    for label, value in (
        ("Assigned", result.assigned),
        ("Skipped (claimed elsewhere)", result.skipped),
        ("Failed", result.failed),
        ("Unassigned orders", result.unassigned_orders),
    ):
        print(f"  {label:<28} {value}")

    if result.assignments:
        print("\n  Assignments:")
        for order_id, rider_id in result.assignments:
            number = orders[order_id].order_number if order_id in orders else order_id
            print(f"    {number:<14} -> {rider_id}")

    if result.errors:
        print("\n  Errors:")
        for error in result.errors:
            print(f"    - {error}")


def print_rider_table(rows: List[Dict[str, Any]]) -> None:
    """Print per-rider load after the sweep."""
    print("\n| Rider          | Name                 | Load  | Available |")
    print("|" + "-" * 16 + "|" + "-" * 22 + "|" + "-" * 7 + "|" + "-" * 11 + "|")
    for row in rows:
        load = f"{row['current_orders']}/{row['max_orders']}"
        available = "yes" if row["is_available"] else "no"
        print(f"| {row['rider_id']:<14} | {row['rider_name'][:20]:<20} | {load:^5} | {available:^9} |")
    print("\n" + "=" * 60 + "\n")


def build_config(args: argparse.Namespace) -> AssignmentConfig:
    updates: Dict[str, Any] = {}
    if args.radius is not None:
        updates["assignment_radius_km"] = args.radius
    if args.max_orders is not None:
        updates["max_orders_per_rider"] = args.max_orders
    if args.weights is not None:
        distance, availability, urgency = args.weights
        updates["weights"] = {"distance": distance, "availability": availability, "urgency": urgency}
    return AssignmentConfig().merged(updates)


def load_data_safe(order_file: str, rider_file: str) -> Optional[tuple]:
    """
    Load a scenario with graceful error handling.

    Returns:
        Tuple of (riders, orders) or None if error
    """
    try:
        riders, orders = load_scenario(order_file, rider_file)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load data: {e}")
        return None
    print(f"Loaded {len(orders)} orders and {len(riders)} riders")
    return riders, orders


def run_sweep_safe(system: OrderflowSystem) -> Optional[SweepResult]:
    try:
        return system.engine.run_sweep()
    except OrderflowError as e:
        print(f"ERROR: Sweep failed: {e.user_message}")
        logger.debug("Sweep failure", exc_info=True)
        return None


def main() -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="Orderflow delivery-assignment CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                    # Bundled scenario
  python main.py --orders o.csv --riders r.csv      # Custom scenario
  python main.py --weights 0.4 0.3 0.3 --radius 10  # Explicit engine config
        """
    )
    parser.add_argument("--orders", "-o", default=DEFAULT_ORDERS, help=f"Orders CSV (default: {DEFAULT_ORDERS})")
    parser.add_argument("--riders", "-r", default=DEFAULT_RIDERS, help=f"Riders CSV (default: {DEFAULT_RIDERS})")
    parser.add_argument("--radius", type=float, help="Assignment radius in km (default: 10)")
    parser.add_argument("--max-orders", type=int, help="Max concurrent orders per rider (default: 3)")
    parser.add_argument(
        "--weights",
        nargs=3,
        type=float,
        metavar=("DISTANCE", "AVAILABILITY", "URGENCY"),
        help="Scoring weights (default: 0.4 0.3 0.3)",
    )
    parser.add_argument(
        "--at",
        help="Sweep time 'YYYY-MM-DD HH:MM:SS' UTC (default: latest order creation time)",
    )
    parser.add_argument("--osrm", action="store_true", help="Use OSRM road distances instead of Haversine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed scoring output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    print_header()

    try:
        assignment_config = build_config(args)
    except OrderflowError as e:
        print(f"ERROR: Invalid configuration: {e.user_message}")
        return 1

    data = load_data_safe(args.orders, args.riders)
    if data is None:
        return 1
    riders, orders = data

    try:
        sweep_time = parse_timestamp(args.at) if args.at else max(
            (o.created_at for o in orders), default=None
        )
    except ValueError as e:
        print(f"ERROR: Invalid --at value: {e}")
        return 1

    system = build_system(
        distance_provider=OsrmDistanceProvider() if args.osrm else None,
        assignment_config=assignment_config,
        clock=(lambda: sweep_time) if sweep_time else utcnow,
        auto_sweep=False,
    )
    populate_store(system.store, riders, orders)

    try:
        result = run_sweep_safe(system)
        if result is None:
            return 2

        print_sweep_result(result, {o.id: o for o in orders})
        print_rider_table(system.admin.get_rider_assignment_stats())
        return 0
    finally:
        system.close()


if __name__ == "__main__":
    sys.exit(main())
