# orderflow/events.py
"""
Entity-change event channel.

The store publishes one ChangeEvent per committed write. Consumers (the
automatic sweep trigger, UI refreshers, audit sinks) subscribe per entity
without knowing which store or transport produced the change.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Entity(Enum):
    ORDER = "orders"
    ASSIGNMENT = "delivery_assignments"
    RIDER = "riders"
    PAYMENT = "payment_transactions"
    SETTING = "system_settings"


class ChangeAction(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    A committed change to one record.

    ``before``/``after`` are detached copies of the record; ``before`` is None
    for inserts.
    """
    entity: Entity
    action: ChangeAction
    record_id: str
    before: Optional[Any]
    after: Any

    def changed(self, attribute: str) -> bool:
        """True if ``attribute`` differs between before and after (always True for inserts)."""
        if self.before is None:
            return True
        return getattr(self.before, attribute, None) != getattr(self.after, attribute, None)


Handler = Callable[[ChangeEvent], None]


class EventBus:
    """
    In-process publish/subscribe channel.

    Handlers run synchronously on the publishing thread, after the store has
    released its lock. A failing handler is logged and does not affect the
    publisher or the other handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Entity, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, entity: Entity, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for changes to ``entity``. Returns an unsubscribe callable."""
        with self._lock:
            self._handlers.setdefault(entity, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(entity, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.entity, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Change handler failed for {event.entity.value}/{event.record_id}")
