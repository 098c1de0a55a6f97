"""
Progress events for sync runs.

A ProgressBroadcaster fans events out to its current subscribers. Each run
publishes through its own RunProgress, which maps phase-local progress onto
fixed percentage bands and never lets the percentage go backwards.
"""

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Union

from pydantic import BaseModel, Field

from config import config

logger = logging.getLogger("drive_mirror.progress")


class ProgressPhase(str, Enum):
    PAGE_LOADED = "page_loaded"
    ENTRY_PROCESSED = "entry_processed"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


TERMINAL_PHASES = (ProgressPhase.COMPLETE, ProgressPhase.ERROR)


class ProgressEvent(BaseModel):
    phase: ProgressPhase
    total: int = 0
    done: int = 0
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message: Optional[str] = None
    payload: Optional[Any] = None
    run_id: Optional[str] = None
    scope: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_sse(self) -> str:
        return f"event: {self.phase.value}\ndata: {self.model_dump_json()}\n\n"


@dataclass(frozen=True)
class PhaseBand:
    start: float
    end: float

    def at(self, done: int, total: int) -> float:
        if total <= 0:
            return self.start
        fraction = min(max(done / total, 0.0), 1.0)
        return round(self.start + (self.end - self.start) * fraction, 2)


COUNTING_BAND = PhaseBand(0.0, 5.0)
FETCHING_BAND = PhaseBand(5.0, 60.0)
PERSISTING_BAND = PhaseBand(60.0, 95.0)
GRANTS_BAND = PhaseBand(95.0, 100.0)


class Subscription:
    """
    A subscriber backed by a bounded queue, consumed by a transport (e.g. SSE).

    Delivery never blocks the publisher: when the queue is full the event is
    dropped for this subscriber.
    """

    _CLOSED = object()

    def __init__(self, max_queue: int = config.SYNC_SUBSCRIBER_QUEUE_SIZE):
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._closed = threading.Event()
        self._last_percent = 0.0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            raise

    def close(self) -> None:
        self._closed.set()
        try:
            self._queue.put_nowait(self._CLOSED)
        except queue.Full:
            pass  # consumer sees the closed flag on its next timeout

    def next_event(self, timeout: float) -> Optional[ProgressEvent]:
        """Next queued event, a heartbeat after `timeout` seconds of silence, or None once closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            if self.closed:
                return None
            return ProgressEvent(
                phase=ProgressPhase.HEARTBEAT,
                percent=self._last_percent,
                message="keep-alive",
            )
        if item is self._CLOSED:
            return None
        if item.phase not in TERMINAL_PHASES:
            self._last_percent = item.percent
        else:
            self._last_percent = 0.0
        return item

    def events(
        self,
        heartbeat_interval: float = config.SYNC_HEARTBEAT_SECONDS,
        stop_on_terminal: bool = False,
    ) -> Iterator[ProgressEvent]:
        while True:
            event = self.next_event(heartbeat_interval)
            if event is None:
                return
            yield event
            if stop_on_terminal and event.is_terminal:
                return


class CallbackSubscription:
    """A subscriber that receives events by direct call on the publishing thread."""

    def __init__(self, callback: Callable[[ProgressEvent], None]):
        self.callback = callback

    def deliver(self, event: ProgressEvent) -> None:
        self.callback(event)

    def close(self) -> None:
        pass


class AsyncSubscription:
    """
    A subscriber consumed from an asyncio event loop.

    Publishers run on worker threads, so events are handed to the loop with
    call_soon_threadsafe; waiting for the next event holds no executor thread.
    Must be created on the loop that consumes it.
    """

    _CLOSED = object()

    def __init__(self, max_queue: int = config.SYNC_SUBSCRIBER_QUEUE_SIZE, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue" = asyncio.Queue(maxsize=max_queue)
        self._closed = False
        self._last_percent = 0.0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Dropped progress event for stream subscriber", extra={"dropped": self.dropped})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._enqueue, self._CLOSED)

    async def next_event(self, timeout: float) -> Optional[ProgressEvent]:
        """Next queued event, a heartbeat after `timeout` seconds of silence, or None once closed."""
        if self._closed and self._queue.empty():
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            if self._closed:
                return None
            return ProgressEvent(
                phase=ProgressPhase.HEARTBEAT,
                percent=self._last_percent,
                message="keep-alive",
            )
        if item is self._CLOSED:
            return None
        self._last_percent = 0.0 if item.is_terminal else item.percent
        return item


Subscriber = Union[Subscription, CallbackSubscription, AsyncSubscription]


class ProgressBroadcaster:
    """
    Synchronous fan-out of progress events.

    Subscribers registered mid-run only see events published after they
    registered. A failing subscriber is logged and skipped; it never
    affects the run that published the event.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(
        self,
        callback: Optional[Callable[[ProgressEvent], None]] = None,
        max_queue: int = config.SYNC_SUBSCRIBER_QUEUE_SIZE,
    ) -> Subscriber:
        subscriber = CallbackSubscription(callback) if callback else Subscription(max_queue=max_queue)
        return self.add(subscriber)

    def add(self, subscriber: Subscriber) -> Subscriber:
        """Register an already built subscriber, e.g. an AsyncSubscription."""
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        subscriber.close()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber.deliver(event)
            except Exception as e:
                logger.warning(
                    "Dropped progress event for subscriber",
                    extra={"phase": event.phase.value, "run_id": event.run_id, "error": repr(e)},
                )


class RunProgress:
    """Publishes one run's events with a non-decreasing percentage."""

    def __init__(self, broadcaster: ProgressBroadcaster, run_id: str, scope: Optional[str] = None):
        self.broadcaster = broadcaster
        self.run_id = run_id
        self.scope = scope
        self._percent = 0.0
        self._lock = threading.Lock()

    @property
    def percent(self) -> float:
        return self._percent

    def emit(
        self,
        phase: ProgressPhase,
        percent: float,
        total: int = 0,
        done: int = 0,
        message: Optional[str] = None,
        payload: Optional[Any] = None,
    ) -> ProgressEvent:
        with self._lock:
            self._percent = max(self._percent, min(max(percent, 0.0), 100.0))
            event = ProgressEvent(
                phase=phase,
                total=total,
                done=done,
                percent=self._percent,
                message=message,
                payload=payload,
                run_id=self.run_id,
                scope=self.scope,
            )
        self.broadcaster.publish(event)
        return event
