# events.py
from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from .log import get_logger
from .model import (
    CleanupAttempt,
    RunStatus,
    StepDefinition,
    StepResult,
    TrackedResource,
)

log = get_logger("events")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RunStarted:
    run_id: str
    workflow_id: str
    total_steps: int
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class StepStarted:
    run_id: str
    step: StepDefinition
    index: int
    total: int
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class StepCompleted:
    run_id: str
    result: StepResult
    hints: tuple = ()
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ResourceTracked:
    run_id: str
    resource: TrackedResource
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class CleanupStarted:
    run_id: str
    resources: int
    definitions: int
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class CleanupResult:
    run_id: str
    attempt: CleanupAttempt
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RunCompleted:
    run_id: str
    workflow_id: str
    status: RunStatus
    cleanup_complete: bool
    leftovers: tuple = ()
    at: datetime = field(default_factory=_now)


Event = Union[RunStarted, StepStarted, StepCompleted, ResourceTracked, CleanupStarted, CleanupResult, RunCompleted]
Subscriber = Callable[[Event], None]


class EventBus:
    """
    Append-only, ordered event log with synchronous subscribers.

    Publishing never fails from the publisher's point of view: a subscriber
    that raises is logged and the event is dropped for that subscriber only.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Event] = []
        self._subscribers: List[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
            handlers = list(self._subscribers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                log.exception("event subscriber %r failed on %s; dropped", handler, type(event).__name__)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def of_type(self, kind: type) -> List[Event]:
        return [e for e in self.events if isinstance(e, kind)]


class QueueSubscriber:
    """
    Hands events to another thread (e.g. a UI loop) through a bounded queue.

    Never blocks the publisher: when the queue is full the event is dropped.
    """

    def __init__(self, maxsize: int = 1000):
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class BackgroundDispatcher:
    """
    Runs a slow subscriber (a terminal renderer, a log shipper) on its own
    thread so `EventBus.publish` returns as soon as the event is queued.

    Events reach `handler` in publish order. `close()` waits until every
    queued event has been handled.
    """

    def __init__(self, handler: Subscriber, maxsize: int = 0):
        self.handler = handler
        self._queue = QueueSubscriber(maxsize=maxsize)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def dropped(self) -> int:
        return self._queue.dropped

    def __call__(self, event: Event) -> None:
        self._queue(event)

    def start(self) -> "BackgroundDispatcher":
        if self._thread is None:
            self._thread = threading.Thread(target=self._drain, name="demoflow-events", daemon=True)
            self._thread.start()
        return self

    def _drain(self) -> None:
        while True:
            event = self._queue.get(timeout=0.1)
            if event is None:
                if self._stop.is_set():
                    return
                continue
            try:
                self.handler(event)
            except Exception:
                log.exception("event subscriber %r failed on %s; dropped", self.handler, type(event).__name__)

    def close(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
