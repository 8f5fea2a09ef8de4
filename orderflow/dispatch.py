# orderflow/dispatch.py
"""
Assignment Engine for automatic rider-to-order matching.

One *sweep* walks every eligible order oldest-first and commits it to the
best-scoring rider in the candidate pool:

1. **Eligibility**: kitchen stage (preparing / ready_for_pickup), delivery
   fulfillment, payment cleared, no rider attached.
2. **Candidate pool**: available riders below their effective capacity.
3. **Scoring**: weighted distance / availability / urgency (see scoring.py).
4. **Greedy commit**: the winner's working ``current_orders`` is bumped
   before the next order is scored, so one sweep cannot over-assign a rider.

Commits go through ``RiderAssignmentLedger.claim``, the same conditional
write used by rider self-accept and the admin override. A lost claim never
aborts the sweep: a rider that filled up concurrently hands the order to the
next-best candidate; an order someone else took is counted as skipped.

Distance lookups are the only step that may block on I/O, so they are
precomputed for all (order, rider) pairs on a small thread pool before the
(sequential) matching pass starts.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from . import config
from .config import AssignmentConfig, ConfigHolder
from .events import ChangeAction, ChangeEvent, Entity, EventBus
from .ledger import RiderAssignmentLedger, is_assignable
from .models import AssignmentStats, Order, OrderStatus, SweepResult
from .notifications import Notifier
from .scoring import RiderCandidate, RiderScore, calculate_rider_score, effective_capacity, rank_key
from .store import ClaimOutcome, Store
from .utils import DistanceProvider, HaversineDistanceProvider, minutes_between, utcnow

logger = logging.getLogger(__name__)

DistanceTable = Dict[Tuple[str, str], float]

IN_PROGRESS_STATUSES = (
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.OUT_FOR_DELIVERY,
)


class AssignmentEngine:
    """
    Scores and matches unassigned delivery orders to available riders.

    Attributes:
        store: Record store
        ledger: Rider capacity accounting and the shared claim primitive
        distance_provider: Rider-to-address distance lookup
        notifier: Best-effort notification sink
        clock: Returns the current time
        workers: Thread pool size for distance precomputation
    """

    def __init__(
        self,
        store: Store,
        ledger: RiderAssignmentLedger,
        distance_provider: Optional[DistanceProvider] = None,
        notifier: Optional[Notifier] = None,
        config_holder: Optional[ConfigHolder] = None,
        clock: Callable[[], datetime] = utcnow,
        workers: int = config.SCORING_WORKERS,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.distance_provider = distance_provider or HaversineDistanceProvider()
        self.notifier = notifier or ledger.notifier
        self._config = config_holder or ledger.config
        self.clock = clock
        self.workers = max(1, workers)

    # ---- configuration -------------------------------------------------------

    @property
    def config(self) -> AssignmentConfig:
        """Live config; each sweep works from the snapshot taken at its start."""
        return self._config.get()

    def set_config(self, new_config: AssignmentConfig) -> AssignmentConfig:
        logger.info(f"Assignment config replaced: {new_config}")
        return self._config.set(new_config)

    def update_config(self, updates: Dict) -> AssignmentConfig:
        updated = self._config.update(updates)
        logger.info(f"Assignment config updated: {updated}")
        return updated

    def reload_config(self) -> AssignmentConfig:
        """Re-read the persisted config from store settings (no-op if none is stored)."""
        stored = self.store.get_setting(config.ASSIGNMENT_CONFIG_KEY)
        if stored is None:
            return self.config
        return self.set_config(AssignmentConfig.from_dict(stored))

    # ---- pool building -------------------------------------------------------

    def is_eligible(self, order: Order) -> bool:
        return is_assignable(order) and self.store.active_assignment_for_order(order.id) is None

    def get_eligible_orders(self) -> List[Order]:
        """Eligible orders, oldest first."""
        return self.ledger.get_available_orders()

    def get_candidate_pool(self, assignment_config: Optional[AssignmentConfig] = None) -> List[RiderCandidate]:
        """Available riders with spare capacity, with their current load."""
        cfg = assignment_config or self.config
        pool = []
        for rider in self.store.list_riders(available_only=True):
            candidate = RiderCandidate(
                rider=rider,
                current_orders=self.store.count_active_assignments(rider.id),
                capacity=effective_capacity(rider, cfg),
            )
            if candidate.has_room:
                pool.append(candidate)
        return pool

    # ---- scoring -------------------------------------------------------------

    def _distance(self, order: Order, candidate: RiderCandidate) -> float:
        try:
            return self.distance_provider.distance_km(
                candidate.rider.current_location, order.delivery_location
            )
        except Exception as e:
            logger.warning(
                f"Distance lookup failed for order {order.id} / rider {candidate.rider.id}: {e}"
            )
            return config.MISSING_LOCATION_DISTANCE_KM

    def precompute_distances(
        self, orders: List[Order], candidates: List[RiderCandidate]
    ) -> DistanceTable:
        """Distance for every (order, rider) pair, looked up in parallel per order."""
        if not orders or not candidates:
            return {}

        def row(order: Order) -> List[Tuple[Tuple[str, str], float]]:
            return [((order.id, c.rider.id), self._distance(order, c)) for c in candidates]

        table: DistanceTable = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(orders))) as pool:
            for pairs in pool.map(row, orders):
                table.update(pairs)
        logger.debug(f"Precomputed {len(table)} rider distances")
        return table

    def score_candidates(
        self,
        order: Order,
        candidates: List[RiderCandidate],
        distances: Optional[DistanceTable] = None,
        assignment_config: Optional[AssignmentConfig] = None,
        now: Optional[datetime] = None,
    ) -> List[Tuple[RiderCandidate, RiderScore]]:
        """
        Score every candidate with spare capacity for ``order``, best first.

        Returns:
            (candidate, score) pairs sorted by ``scoring.rank_key``
        """
        cfg = assignment_config or self.config
        now = now or self.clock()
        age = minutes_between(order.created_at, now)

        scored = []
        for candidate in candidates:
            if not candidate.has_room:
                continue
            key = (order.id, candidate.rider.id)
            distance_km = distances[key] if distances and key in distances else self._distance(order, candidate)
            score = calculate_rider_score(candidate, distance_km, age, cfg)
            logger.debug(
                f"  {order.id} <- {candidate.rider.id}: total={score.total:.3f} "
                f"(d={score.distance:.2f}@{distance_km:.1f}km, a={score.availability:.2f}, u={score.urgency:.2f})"
            )
            scored.append((candidate, score))

        scored.sort(key=lambda pair: rank_key(pair[0], pair[1]))
        return scored

    def find_best_rider(self, order_id: str) -> Optional[RiderScore]:
        """Best-scoring rider for one order against the current pool, without committing."""
        order = self.store.require_order(order_id)
        ranked = self.score_candidates(order, self.get_candidate_pool())
        return ranked[0][1] if ranked else None

    # ---- sweep ---------------------------------------------------------------

    def run_sweep(self) -> SweepResult:
        """
        Assign every eligible order to its best available rider.

        Never raises for a single order: per-order errors are counted in
        ``failed`` and described in ``errors``.
        """
        cfg = self.config
        now = self.clock()
        result = SweepResult()

        orders = self.get_eligible_orders()
        if not orders:
            logger.info("No eligible orders for assignment")
            result.unassigned_orders = len(self.ledger.get_unassigned_open_orders())
            return result

        candidates = self.get_candidate_pool(cfg)
        logger.info(f"Sweep started: {len(orders)} eligible orders, {len(candidates)} candidate riders")
        distances = self.precompute_distances(orders, candidates)

        for order in orders:
            try:
                self._assign_order(order, candidates, distances, cfg, now, result)
            except Exception as e:
                logger.exception(f"Error assigning order {order.id}")
                result.failed += 1
                result.errors.append(f"Order {order.id}: {e}")

        result.unassigned_orders = len(self.ledger.get_unassigned_open_orders())
        logger.info(
            f"Sweep completed: {result.assigned} assigned, {result.skipped} skipped, "
            f"{result.failed} failed, {result.unassigned_orders} unassigned"
        )
        return result

    auto_assign_orders = run_sweep

    def _assign_order(
        self,
        order: Order,
        candidates: List[RiderCandidate],
        distances: DistanceTable,
        cfg: AssignmentConfig,
        now: datetime,
        result: SweepResult,
    ) -> None:
        ranked = self.score_candidates(order, candidates, distances, cfg, now)
        if not ranked:
            logger.info(f"No rider with spare capacity for order {order.order_number}")
            return

        for candidate, score in ranked:
            claim = self.ledger.claim(
                order.id, candidate.rider.id, notes=f"Auto-assigned (score {score.total:.2f})"
            )
            if claim.outcome == ClaimOutcome.CLAIMED:
                candidate.current_orders += 1
                result.assigned += 1
                result.assignments.append((order.id, candidate.rider.id))
                logger.info(
                    f"Assigned order {order.order_number} to rider {candidate.rider.id} "
                    f"(score {score.total:.3f})"
                )
                self.notifier.rider_assigned(
                    candidate.rider.user_id,
                    order.id,
                    "New Order Available",
                    f"Order {order.order_number} has been assigned to you.",
                )
                return
            if claim.outcome == ClaimOutcome.RIDER_AT_CAPACITY:
                # Filled up by a concurrent caller; the pool's view was stale
                logger.info(f"Rider {candidate.rider.id} filled up concurrently, trying next candidate")
                candidate.current_orders = candidate.capacity
                continue
            logger.info(f"Order {order.order_number} was claimed elsewhere ({claim.outcome.value})")
            result.skipped += 1
            return

        logger.info(f"All candidates for order {order.order_number} filled up during the sweep")

    # ---- statistics ----------------------------------------------------------

    def get_assignment_stats(self) -> AssignmentStats:
        in_progress = self.store.list_orders(IN_PROGRESS_STATUSES)
        active = [a for a in self.store.list_assignments() if a.is_active]
        return AssignmentStats(
            total_orders=len(in_progress),
            assigned_orders=len(active),
            unassigned_orders=len(self.ledger.get_unassigned_open_orders()),
            available_riders=len(self.store.list_riders(available_only=True)),
            busy_riders=len({a.rider_id for a in active}),
        )


class AutoSweepTrigger:
    """
    Runs one sweep whenever an order's status changes to ``ready_for_pickup``.

    Duplicate or out-of-order change events only cause extra sweeps, which
    are harmless: a sweep never re-assigns an order that already has a rider.
    """

    def __init__(self, engine: AssignmentEngine) -> None:
        self.engine = engine
        self.last_result: Optional[SweepResult] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, events: EventBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = events.subscribe(Entity.ORDER, self.on_order_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_order_changed(self, event: ChangeEvent) -> None:
        if event.action != ChangeAction.UPDATE:
            return
        if not event.changed("status") or event.after.status != OrderStatus.READY_FOR_PICKUP:
            return
        logger.info(f"Order {event.record_id} is ready for pickup, running assignment sweep")
        self.last_result = self.engine.run_sweep()
