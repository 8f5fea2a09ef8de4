# orderflow/notifications.py
"""
Best-effort notification delivery.

The engine talks to a NotificationDispatcher (push, SMS, in-app inbox...)
through ``Notifier``, which applies the bounded retry policy and then drops
the message. A failed notification is logged, never raised: it must not roll
back or block the state change that triggered it.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from .errors import ExternalServiceError
from .models import NotificationKind, Order, OrderStatus, PaymentStatus
from .utils import RetryPolicy

logger = logging.getLogger(__name__)


STATUS_MESSAGES: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Your order has been received and is being processed.",
    OrderStatus.PREPARING: "Your order is now being prepared in our kitchen.",
    OrderStatus.READY_FOR_PICKUP: "Your order is ready for pickup!",
    OrderStatus.OUT_FOR_DELIVERY: "Your order is out for delivery and on its way to you.",
    OrderStatus.DELIVERED: "Your order has been delivered successfully. Enjoy your meal!",
    OrderStatus.CANCELLED: "Your order has been cancelled. If you have any questions, please contact us.",
}

STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.PREPARING: "Preparing",
    OrderStatus.READY_FOR_PICKUP: "Ready for Pickup",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

PAYMENT_MESSAGES: Dict[PaymentStatus, str] = {
    PaymentStatus.VERIFIED: "Your payment has been verified successfully.",
    PaymentStatus.FAILED: "Your payment failed. Please try again or contact support.",
    PaymentStatus.REFUNDED: "Your payment has been refunded successfully.",
}


class NotificationDispatcher(Protocol):
    def send(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: NotificationKind,
        related_order_id: Optional[str] = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class Notification:
    user_id: str
    title: str
    message: str
    kind: NotificationKind
    related_order_id: Optional[str] = None


class InMemoryDispatcher:
    """Collects notifications in a list (inbox-style sink, also handy for tests)."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []
        self._lock = threading.Lock()

    def send(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: NotificationKind,
        related_order_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.sent.append(Notification(user_id, title, message, kind, related_order_id))

    def for_user(self, user_id: str) -> List[Notification]:
        with self._lock:
            return [n for n in self.sent if n.user_id == user_id]


class LoggingDispatcher:
    """Writes notifications to the log instead of delivering them."""

    def send(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: NotificationKind,
        related_order_id: Optional[str] = None,
    ) -> None:
        logger.info(f"[notify:{kind.value}] {user_id}: {title} - {message}")


class Notifier:
    """
    Fire-and-forget wrapper around a NotificationDispatcher.

    Each message is attempted once plus one retry per entry of the retry
    policy's delay schedule. When an executor is given, delivery runs on it
    and ``send`` returns immediately; otherwise it runs inline.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        retry: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.retry = retry or RetryPolicy()
        self.executor = executor
        self._sleep = sleep

    def send(
        self,
        user_id: Optional[str],
        title: str,
        message: str,
        kind: NotificationKind,
        related_order_id: Optional[str] = None,
    ) -> None:
        if not user_id:
            logger.debug(f"Skipping '{title}' notification without recipient")
            return
        note = Notification(user_id, title, message, kind, related_order_id)
        if self.executor is not None:
            self.executor.submit(self._deliver, note)
        else:
            self._deliver(note)

    def _deliver(self, note: Notification) -> bool:
        def attempt() -> None:
            try:
                self.dispatcher.send(
                    note.user_id, note.title, note.message, note.kind, note.related_order_id
                )
            except ExternalServiceError:
                raise
            except Exception as e:
                raise ExternalServiceError(f"notification dispatch failed: {e}") from e

        def on_failure(attempt_no: int, error: BaseException) -> None:
            logger.warning(
                f"Notification '{note.title}' to {note.user_id} failed "
                f"(attempt {attempt_no}/{self.retry.max_attempts}): {error}"
            )

        try:
            self.retry.call(attempt, sleep=self._sleep, on_failure=on_failure)
            return True
        except ExternalServiceError:
            logger.warning(f"Dropping notification '{note.title}' to {note.user_id}")
            return False

    # ---- message builders ----------------------------------------------------

    def order_status_changed(self, order: Order) -> None:
        label = STATUS_LABELS[order.status]
        message = STATUS_MESSAGES.get(
            order.status, f"Your order status has been updated to {label}."
        )
        self.send(
            order.user_id,
            f"Order {order.order_number} - {label}",
            message,
            NotificationKind.ORDER_UPDATE,
            order.id,
        )

    def payment_status_changed(self, order: Order) -> None:
        message = PAYMENT_MESSAGES.get(
            order.payment_status,
            f"Your payment status has been updated to {order.payment_status.value}.",
        )
        self.send(
            order.user_id,
            f"Payment Update - Order {order.order_number}",
            message,
            NotificationKind.PAYMENT,
            order.id,
        )

    def order_accepted(self, order: Order) -> None:
        self.send(
            order.user_id,
            "Order accepted by rider!",
            f"Order {order.order_number} has been accepted and will be picked up soon.",
            NotificationKind.DELIVERY,
            order.id,
        )

    def rider_assigned(self, rider_user_id: str, order_id: str, title: str, message: str) -> None:
        self.send(rider_user_id, title, message, NotificationKind.ASSIGNMENT, order_id)
