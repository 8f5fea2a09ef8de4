# orderflow/system.py
"""
Wiring of the engine components around one store.

``build_system`` is the composition root used by the CLI and the tests: it
creates every component with shared collaborators (one event bus, one
notifier, one live config) and subscribes the event-driven parts.
"""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from . import config
from .admin import AdminOverrideGateway
from .config import AssignmentConfig, ConfigHolder
from .dispatch import AssignmentEngine, AutoSweepTrigger
from .ledger import RiderAssignmentLedger
from .lifecycle import OrderLifecycleManager
from .notifications import LoggingDispatcher, NotificationDispatcher, Notifier
from .store import InMemoryStore, Store
from .utils import DistanceProvider, RetryPolicy, utcnow


@dataclass
class OrderflowSystem:
    store: Store
    config: ConfigHolder
    notifier: Notifier
    lifecycle: OrderLifecycleManager
    ledger: RiderAssignmentLedger
    engine: AssignmentEngine
    admin: AdminOverrideGateway
    trigger: Optional[AutoSweepTrigger] = None
    notify_executor: Optional[ThreadPoolExecutor] = None

    def close(self) -> None:
        """Wait for queued notifications and stop the background sender, if this system owns one."""
        if self.trigger is not None:
            self.trigger.detach()
        self.ledger.detach()
        if self.notify_executor is not None:
            self.notify_executor.shutdown(wait=True)
            self.notify_executor = None


def build_system(
    store: Optional[InMemoryStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    distance_provider: Optional[DistanceProvider] = None,
    assignment_config: Optional[AssignmentConfig] = None,
    clock: Callable[[], datetime] = utcnow,
    retry: Optional[RetryPolicy] = None,
    sleep: Optional[Callable[[float], None]] = None,
    auto_sweep: bool = True,
    workers: int = config.SCORING_WORKERS,
    executor: Optional[Executor] = None,
    inline_notifications: bool = False,
) -> OrderflowSystem:
    """
    Create a fully wired engine.

    Args:
        store: Store to use (a fresh InMemoryStore by default)
        dispatcher: Notification sink (logs notifications by default)
        distance_provider: Distance lookup (Haversine by default)
        assignment_config: Initial engine config (module defaults otherwise)
        clock: Time source shared by every component
        retry: Notification retry policy
        sleep: Sleep used between notification retries
        auto_sweep: Run a sweep whenever an order becomes ready for pickup
        workers: Distance precomputation threads
        executor: Runs notification delivery (a private thread pool by default,
            shut down by ``OrderflowSystem.close``)
        inline_notifications: Deliver notifications on the calling thread
            instead; retry sleeps then block the caller
    """
    store = store or InMemoryStore()
    holder = ConfigHolder(assignment_config)

    notifier_kwargs = {"sleep": sleep} if sleep is not None else {}
    owned_executor = None
    if executor is None and not inline_notifications:
        owned_executor = ThreadPoolExecutor(
            max_workers=config.NOTIFICATION_WORKERS, thread_name_prefix="orderflow-notify"
        )
        executor = owned_executor
    notifier = Notifier(
        dispatcher or LoggingDispatcher(),
        retry=retry,
        executor=None if inline_notifications else executor,
        **notifier_kwargs,
    )

    lifecycle = OrderLifecycleManager(store, notifier, clock=clock)
    ledger = RiderAssignmentLedger(store, lifecycle, notifier, config_holder=holder, clock=clock)
    engine = AssignmentEngine(
        store,
        ledger,
        distance_provider=distance_provider,
        notifier=notifier,
        config_holder=holder,
        clock=clock,
        workers=workers,
    )
    admin = AdminOverrideGateway(store, engine, ledger, clock=clock)

    ledger.attach(store.events)
    trigger = None
    if auto_sweep:
        trigger = AutoSweepTrigger(engine)
        trigger.attach(store.events)

    return OrderflowSystem(
        store=store,
        config=holder,
        notifier=notifier,
        lifecycle=lifecycle,
        ledger=ledger,
        engine=engine,
        admin=admin,
        trigger=trigger,
        notify_executor=owned_executor,
    )
