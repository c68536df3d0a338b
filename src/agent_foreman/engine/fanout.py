"""Bounded publish/subscribe topic with independent, drop-on-lag cursors.

Every subscriber owns a bounded backlog. ``publish`` appends to each backlog
and never waits for a consumer: when a backlog is full its oldest item is
discarded and the subscriber's next ``receive`` returns ``Lagged`` with the
number of discarded items, after which delivery continues in order.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Lagged:
    """Delivered instead of items a slow subscriber missed."""

    missed: int


class TopicClosedError(RuntimeError):
    """Raised by ``receive`` once the topic is closed and the backlog drained."""


class Subscription(Generic[T]):
    """One independent cursor over a ``BoundedTopic``."""

    def __init__(self, topic: BoundedTopic[T], *, capacity: int) -> None:
        self._topic = topic
        self._capacity = capacity
        self._items: deque[T] = deque()
        self._missed = 0
        self._closed = False
        self._condition = threading.Condition()

    def receive(self, timeout: float | None = None) -> T | Lagged | None:
        """Return the next item, a ``Lagged`` notice, or None when ``timeout`` expires."""

        with self._condition:
            ready = self._condition.wait_for(
                lambda: bool(self._items) or self._missed > 0 or self._closed,
                timeout=timeout,
            )
            if not ready:
                return None
            if self._missed:
                missed, self._missed = self._missed, 0
                return Lagged(missed)
            if self._items:
                return self._items.popleft()
            raise TopicClosedError(f"Topic {self._topic.name!r} is closed")

    def close(self) -> None:
        """Detach from the topic and discard the pending backlog."""

        self._topic._detach(self)
        with self._condition:
            self._items.clear()
            self._missed = 0
            self._closed = True
            self._condition.notify_all()

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _offer(self, item: T) -> None:
        with self._condition:
            if self._closed:
                return
            if len(self._items) >= self._capacity:
                self._items.popleft()
                self._missed += 1
            self._items.append(item)
            self._condition.notify_all()

    def _mark_closed(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()


class BoundedTopic(Generic[T]):
    """Single-producer-friendly, many-consumer broadcast channel."""

    def __init__(self, name: str, *, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Topic capacity must be positive, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._lock = threading.Lock()
        self._subscribers: list[Subscription[T]] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, *, capacity: int | None = None) -> Subscription[T]:
        """Attach a new cursor that sees every item published from now on."""

        subscription: Subscription[T] = Subscription(self, capacity=capacity or self.capacity)
        with self._lock:
            if self._closed:
                subscription._mark_closed()
                return subscription
            self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T) -> int:
        """Deliver ``item`` to every current subscriber; return how many received it."""

        with self._lock:
            if self._closed:
                return 0
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(item)
        return len(subscribers)

    def close(self) -> None:
        """Stop accepting items; subscribers drain their backlog, then see closure."""

        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._mark_closed()

    def _detach(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)


def consume(
    subscription: Subscription[T],
    handler: Callable[[T], object],
    stop_event: threading.Event,
    *,
    name: str,
    poll_seconds: float = 0.5,
) -> None:
    """Feed every received item to ``handler`` until stopped or the topic closes.

    A failing ``handler`` call is logged and the loop continues. Items already
    queued when ``stop_event`` is set are still handled before returning.
    """

    logger.info("%s started", name)
    while not stop_event.is_set():
        try:
            item = subscription.receive(timeout=poll_seconds)
        except TopicClosedError:
            logger.info("%s topic closed", name)
            return
        if item is not None:
            _dispatch(item, handler, name=name)
    drained = drain_pending(subscription, handler, name=name)
    logger.info("%s stopped (%s pending items handled)", name, drained)


def drain_pending(
    subscription: Subscription[T],
    handler: Callable[[T], object],
    *,
    name: str,
) -> int:
    """Handle everything currently queued without waiting; return the count."""

    handled = 0
    while True:
        try:
            item = subscription.receive(timeout=0)
        except TopicClosedError:
            return handled
        if item is None:
            return handled
        _dispatch(item, handler, name=name)
        handled += 1


def _dispatch(item: T | Lagged, handler: Callable[[T], object], *, name: str) -> None:
    if isinstance(item, Lagged):
        logger.warning("%s lagged by %s events", name, item.missed)
        return
    try:
        handler(item)
    except Exception:
        logger.exception("%s failed to handle %r", name, item)
