import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal
from uuid import UUID

from prometheus_client import CollectorRegistry, Counter


logger = logging.getLogger(__name__)


EventTypeValueType = Literal["job_completed", "job_failed", "job_stalled"]


@dataclass(frozen=True)
class LifecycleEvent:
    type: EventTypeValueType
    queue: str
    job_id: UUID
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = field(default=0)
    final: bool = field(default=False)
    """For ``job_failed``: True when no retry is scheduled."""
    error: str | None = field(default=None)


Listener = Callable[[LifecycleEvent], None]


class EventBus:
    """Bounded channel of lifecycle events between workers and the monitor.

    Publishing never blocks a worker. When the monitor falls behind and
    the buffer is full, new events are dropped and counted.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: queue.Queue[LifecycleEvent] = queue.Queue(maxsize=maxsize)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def publish(self, event: LifecycleEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1
            logger.warning(
                f"Event buffer full, dropped {event.type} for job {event.job_id}"
            )
            return False
        return True

    def get(self, timeout: float | None = None) -> LifecycleEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> LifecycleEvent | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class Monitor:
    """Consumes lifecycle events into metrics and registered listeners."""

    def __init__(
        self,
        bus: EventBus,
        registry: CollectorRegistry | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.bus = bus
        self.registry = registry or CollectorRegistry()
        self.poll_interval = poll_interval
        self.listeners: list[Listener] = []
        self.stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self.events_total = Counter(
            "drudge_job_events_total",
            "Job lifecycle events by queue and type",
            ["queue", "event"],
            registry=self.registry,
        )
        self.events_dropped_total = Counter(
            "drudge_events_dropped_total",
            "Lifecycle events dropped because the buffer was full",
            registry=self.registry,
        )
        self._dropped_seen = 0

    def add_listener(self, fn: Listener) -> Listener:
        """Register a callback receiving every event. Usable as a decorator."""
        self.listeners.append(fn)
        return fn

    def handle(self, event: LifecycleEvent) -> None:
        self.events_total.labels(queue=event.queue, event=event.type).inc()
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Event listener {listener!r} failed on {event.type}"
                )

    def drain(self) -> int:
        """Process all pending events on the calling thread."""
        processed = 0
        while (event := self.bus.get_nowait()) is not None:
            self.handle(event)
            processed += 1
        self._sync_dropped()
        return processed

    def run(self) -> None:
        logger.info("Starting event monitor")
        while not self.stop_event.is_set():
            event = self.bus.get(timeout=self.poll_interval)
            if event is not None:
                self.handle(event)
            self._sync_dropped()
        self.drain()
        logger.info("Event monitor stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="drudge-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _sync_dropped(self) -> None:
        dropped = self.bus.dropped
        if dropped > self._dropped_seen:
            self.events_dropped_total.inc(dropped - self._dropped_seen)
            self._dropped_seen = dropped
