"""Progress reporting primitives shared by the stages and the orchestrator."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from ..models import utcnow
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "ProgressBus",
    "ProgressCallback",
    "ProgressEvent",
    "ThrottledProgress",
]

ProgressCallback = Callable[[str, float], None]


@dataclass(slots=True)
class ProgressEvent:
    """A single progress notification published on the bus."""

    scope: str
    message: str
    percent: float
    session_id: str | None = None
    file_id: str | None = None
    stage: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


class ProgressBus:
    """Thread-safe publish/subscribe channel for progress events.

    The presentation layer subscribes once and receives every event pushed by the orchestrator,
    rather than polling the session on a timer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[ProgressEvent], None]] = []

    def subscribe(self, handler: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        """Register ``handler`` and return a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for handler in subscribers:
            try:
                handler(event)
            except Exception:  # pragma: no cover - subscriber bugs must not stop the pipeline
                LOGGER.exception("Progress subscriber %r raised; continuing.", handler)


class ThrottledProgress:
    """Rate-limits and monotonises a ``(message, percent)`` callback.

    Updates are forwarded only when at least ``min_interval`` seconds passed or the percentage
    moved by ``min_delta`` since the last forwarded update. A new message at an unchanged
    percentage is forwarded too. Values never go backwards and 100% is delivered once.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        *,
        min_interval: float = 0.5,
        min_delta: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._min_interval = min_interval
        self._min_delta = min_delta
        self._clock = clock
        self._last_sent_at: float | None = None
        self._last_percent = 0.0
        self._sent_percent: float | None = None
        self._sent_message: str | None = None

    @property
    def percent(self) -> float:
        return self._last_percent

    def __call__(self, message: str, percent: float) -> None:
        percent = max(self._last_percent, min(100.0, max(0.0, float(percent))))
        self._last_percent = percent
        if self._callback is None:
            return

        now = self._clock()
        if self._sent_percent is not None:
            if percent >= 100.0:
                if self._sent_percent >= 100.0:
                    return
            elif percent == self._sent_percent:
                if message == self._sent_message:
                    return
            elif (
                percent - self._sent_percent < self._min_delta
                and self._last_sent_at is not None
                and now - self._last_sent_at < self._min_interval
            ):
                return

        self._last_sent_at = now
        self._sent_percent = percent
        self._sent_message = message
        self._callback(message, round(percent, 1))
