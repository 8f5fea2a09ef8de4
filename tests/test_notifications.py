import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from orderflow.models import NotificationKind, Order, OrderStatus
from orderflow.notifications import InMemoryDispatcher, Notifier
from orderflow.system import build_system
from orderflow.utils import RetryPolicy


class FlakyDispatcher(InMemoryDispatcher):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def send(self, user_id, title, message, kind, related_order_id=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("push gateway unavailable")
        super().send(user_id, title, message, kind, related_order_id)


def test_retries_with_staggered_delays_then_delivers():
    dispatcher = FlakyDispatcher(failures=2)
    sleeps = []
    notifier = Notifier(dispatcher, sleep=sleeps.append)

    notifier.send("u1", "Hello", "World", NotificationKind.SYSTEM)

    assert dispatcher.attempts == 3
    assert sleeps == [0.8, 2.0]
    assert [n.title for n in dispatcher.sent] == ["Hello"]


def test_gives_up_after_two_extra_attempts(caplog):
    dispatcher = FlakyDispatcher(failures=10)
    notifier = Notifier(dispatcher, sleep=lambda _: None)

    with caplog.at_level(logging.WARNING, logger="orderflow.notifications"):
        notifier.send("u1", "Hello", "World", NotificationKind.SYSTEM)

    assert dispatcher.attempts == 3
    assert dispatcher.sent == []
    assert "Dropping notification 'Hello'" in caplog.text


class GatedDispatcher(InMemoryDispatcher):
    """Blocks every send until released, then fails it."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
        self.attempts = 0

    def send(self, user_id, title, message, kind, related_order_id=None):
        self.started.set()
        self.release.wait(timeout=5)
        self.attempts += 1
        raise ConnectionError("push gateway unavailable")


def test_failing_dispatcher_does_not_hold_up_the_transition(clock):
    dispatcher = GatedDispatcher()
    sleeps = []
    system = build_system(dispatcher=dispatcher, clock=clock, sleep=sleeps.append, auto_sweep=False)
    order = system.store.add_order(Order(id="o1", order_number="1001", user_id="c1", created_at=clock.now))

    updated = system.lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")

    assert updated.status == OrderStatus.PREPARING
    assert system.store.get_order(order.id).status == OrderStatus.PREPARING
    assert dispatcher.started.wait(timeout=5)
    assert dispatcher.attempts == 0

    dispatcher.release.set()
    system.close()
    assert dispatcher.attempts == 3
    assert sleeps == [0.8, 2.0]


def test_inline_notifications_run_on_the_calling_thread(clock):
    dispatcher = InMemoryDispatcher()
    system = build_system(dispatcher=dispatcher, clock=clock, auto_sweep=False, inline_notifications=True)
    order = system.store.add_order(Order(id="o1", order_number="1001", user_id="c1", created_at=clock.now))

    system.lifecycle.transition(order.id, OrderStatus.PREPARING, "admin-1")

    assert system.notify_executor is None
    assert [n.user_id for n in dispatcher.sent] == ["c1"]



def test_missing_recipient_is_skipped():
    dispatcher = InMemoryDispatcher()
    Notifier(dispatcher).send("", "Hello", "World", NotificationKind.SYSTEM)
    assert dispatcher.sent == []


def test_delivery_can_run_on_an_executor():
    dispatcher = InMemoryDispatcher()
    with ThreadPoolExecutor(max_workers=1) as executor:
        notifier = Notifier(dispatcher, executor=executor)
        notifier.send("u1", "Hello", "World", NotificationKind.SYSTEM)
    assert len(dispatcher.sent) == 1


def test_exponential_retry_policy():
    policy = RetryPolicy.exponential(attempts=4, base_delay=0.5)
    assert policy.max_attempts == 4
    assert list(policy.delays) == [0.5, 1.0, 2.0]


def test_retry_policy_reraises_last_error():
    calls = []

    def always_fails():
        calls.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        RetryPolicy(delays=(0.0,)).call(always_fails, sleep=lambda _: None)
    assert len(calls) == 2
