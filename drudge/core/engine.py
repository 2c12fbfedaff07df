import inspect
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Engine as SQLEngine, create_engine
from sqlalchemy.engine.url import URL

from drudge.config import QueueSettings, Settings, resolve_import
from drudge.core import common
from drudge.core.base import DecoratedCallable, Handler
from drudge.core.broker import Broker
from drudge.core.maintenance import StallMonitor
from drudge.core.monitoring import EventBus, Monitor
from drudge.core.scheduler import Scheduler
from drudge.core.store import JobStore
from drudge.core.worker import WorkerPool
from drudge.errors import ValidationError
from drudge.models.job import Job
from drudge.models.queue_config import BackoffPolicy, QueueConfig
from drudge.models.trigger import JobTemplate, Trigger


logger = logging.getLogger(__name__)


class Engine:
    """The job engine of one process.

    Holds the queue configurations, the handler registry and every moving
    part: the broker, the worker pools, the stall monitor, the scheduler
    and the lifecycle event monitor. Create one at process start and pass
    it to whatever needs to enqueue or inspect jobs.

    Examples:

        >>> engine = Engine("sqlite:///jobs.db")
        >>> engine.add_queue(QueueConfig("newsProcessing", concurrency=2))
        >>> @engine.handler("newsProcessing")
        ... def process_news(payload, progress):
        ...     progress(50)
        ...     return {"success": True}
        >>> engine.create_all()
        >>> engine.start()
        >>> engine.enqueue("newsProcessing", {"articleId": "A1"})

    Args:
        engine_or_url (Engine | str | URL): SQLAlchemy engine or database
            connection string.
        settings (Settings | None): Timing and sizing settings. Queues,
            handlers and triggers listed there are not loaded, use
            ``from_settings()`` for that.
        **kwargs: Additional keyword arguments to pass to SQLAlchemy's
            ``create_engine()`` function
    """

    def __init__(
        self,
        engine_or_url: SQLEngine | str | URL,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> None:
        if isinstance(engine_or_url, SQLEngine):
            self.db = engine_or_url
        else:
            self.db = create_engine(engine_or_url, **kwargs)
        self.settings = settings or Settings(queues={}, triggers={})

        self.queues: dict[str, QueueConfig] = {}
        self.handlers: dict[str, Handler] = {}
        self.pools: dict[str, WorkerPool] = {}

        self.store = JobStore(self.db)
        self.broker = Broker(
            self.store, self.queues, lease_duration=self.settings.lease_duration
        )
        self.bus = EventBus(self.settings.event_buffer)
        self.monitor = Monitor(self.bus)
        self.stall_monitor = StallMonitor(self, interval=self.settings.stall_interval)
        self.scheduler = Scheduler(
            self,
            interval=self.settings.scheduler_interval,
            timezone=self.settings.timezone,
        )
        self.started_at: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "Engine":
        """Build an engine with the queues, handlers and triggers of ``settings``.

        Handlers and trigger templates are given as ``"module:function"``
        import paths and are resolved here.

        Raises:
            ValidationError: An import path can't be resolved or refers to
                an unknown queue.
        """
        engine = cls(settings.database_url, settings, **kwargs)
        engine.configure_queues(settings.queues)
        for queue, path in settings.handlers.items():
            engine.register_handler(queue, resolve_import(path))
        engine.create_all()
        for name, trigger_settings in settings.triggers.items():
            engine.scheduler.register(trigger_settings.to_trigger(name))
        return engine

    @property
    def running(self) -> bool:
        return self.started_at is not None

    def add_queue(self, config: QueueConfig) -> QueueConfig:
        """Make a queue known to the engine.

        When the engine is running and the queue already has a handler,
        its workers start right away.
        """
        if config.name in self.queues:
            raise ValidationError(f"Queue {config.name!r} is already configured")
        self.queues[config.name] = config
        logger.debug(f"Added queue {config.name} with concurrency {config.concurrency}")
        self._start_pool(config.name)
        return config

    def configure_queues(
        self, queues: Mapping[str, QueueConfig | QueueSettings | dict[str, Any]]
    ) -> None:
        """Apply a queue catalog, e.g. after a configuration reload.

        New queues are added. For known queues, attempts, backoff, lease
        and paused flag are updated in place. Concurrency changes take
        effect after a restart.
        """
        for name, value in queues.items():
            config = self._to_queue_config(name, value)
            current = self.queues.get(name)
            if current is None:
                self.add_queue(config)
                continue
            if current.concurrency != config.concurrency:
                logger.warning(
                    f"Concurrency of queue {name} changes to {config.concurrency} after a restart"
                )
            current.max_attempts = config.max_attempts
            current.backoff = config.backoff
            current.lease_duration = config.lease_duration
            current.paused = config.paused

    def register_handler(self, queue: str, fn: Callable[..., Any]) -> Handler:
        """Register the function processing jobs of ``queue``.

        The handler is called with the job payload and a progress callback.
        A handler accepting a single argument is called with the payload
        only. Whatever it returns becomes the job result, whatever it raises
        fails the attempt.

        Raises:
            ValidationError: The queue is not configured.
        """
        self.broker.config(queue)
        if not callable(fn):
            raise ValidationError(f"Handler for {queue!r} must be callable")

        handler = fn if self._accepts_progress(fn) else self._payload_only(fn)
        if queue in self.handlers:
            logger.warning(f"Replacing handler of queue {queue}")
        self.handlers[queue] = handler
        self._start_pool(queue)
        return handler

    def handler(self, queue: str) -> Callable[[DecoratedCallable], DecoratedCallable]:
        """Decorator form of ``register_handler()``."""

        def decorator(fn: DecoratedCallable) -> DecoratedCallable:
            self.register_handler(queue, fn)
            return fn

        return decorator

    def add_trigger(
        self,
        name: str,
        cron: str,
        queue: str,
        job_template: JobTemplate | Any = None,
        now: datetime | int | None = None,
        **job_options: Any,
    ) -> Trigger:
        """Register a cron trigger producing jobs into ``queue``.

        Examples:

            >>> engine.add_trigger(
            ...     "dailyDigest",
            ...     "0 8 * * *",
            ...     "userDigest",
            ...     lambda tick: [{"userId": u} for u in subscribers()],
            ... )

        Raises:
            ValidationError: Bad cron, unknown queue or duplicate name.
        """
        trigger = Trigger(
            name=name,
            cron=cron,
            queue=queue,
            job_template=job_template,
            job_options=job_options,
        )
        return self.scheduler.register(trigger, now=now)

    def enqueue(
        self,
        queue: str,
        payload: Any | None = None,
        priority: int | None = None,
        delay: int | timedelta | None = None,
        run_at: datetime | int | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | dict[str, Any] | int | None = None,
        job_id: Any = None,
        now: datetime | int | None = None,
    ) -> Job:
        return self.broker.enqueue(
            queue,
            payload,
            priority=priority,
            delay=delay,
            run_at=run_at,
            max_attempts=max_attempts,
            backoff=backoff,
            job_id=job_id,
            now=now,
        )

    def pause(self, queue: str) -> QueueConfig:
        """Stop claiming new jobs from ``queue``. Running jobs finish."""
        config = self.broker.config(queue)
        config.paused = True
        logger.info(f"Paused queue {queue}")
        return config

    def resume(self, queue: str) -> QueueConfig:
        config = self.broker.config(queue)
        config.paused = False
        logger.info(f"Resumed queue {queue}")
        return config

    def start(self) -> None:
        """Start the monitor, the worker pools, the stall monitor and the
        scheduler, each on its own threads. Returns immediately."""
        if self.running:
            return
        self.started_at = time.monotonic()
        self.monitor.start()
        for queue in self.queues:
            self._start_pool(queue)
        missing = [q for q in self.queues if q not in self.handlers]
        if missing:
            logger.debug(f"No handlers registered for queues {missing}")
        self.stall_monitor.start()
        self.scheduler.start()
        logger.info(f"Engine started with {len(self.pools)} worker pools")

    def stop(self, wait: bool = True) -> None:
        """Shut down gracefully.

        The scheduler stops first so no new jobs are produced, then the
        workers finish their in-flight jobs, and the remaining lifecycle
        events are drained into the monitor.
        """
        if not self.running:
            return
        logger.info("Stopping engine")
        self.scheduler.stop()
        for pool in self.pools.values():
            pool.stop(wait=wait)
        self.pools.clear()
        self.stall_monitor.stop()
        self.monitor.stop()
        self.started_at = None
        logger.info("Engine stopped")

    def health(self) -> dict[str, Any]:
        """Queue depths, trigger states and uptime of this process."""
        uptime = time.monotonic() - self.started_at if self.running else 0.0
        return {
            "status": "ok" if self.running else "stopped",
            "uptime": round(uptime, 3),
            "queues": self.broker.stats(),
            "triggers": self.scheduler.states(),
        }

    def create_all(self) -> None:
        self.store.create_all()

    def drop_all(self) -> None:
        self.store.drop_all()

    def _start_pool(self, queue: str) -> None:
        if not self.running or queue in self.pools or queue not in self.handlers:
            return
        pool = WorkerPool(
            self,
            self.queues[queue],
            poll_interval=self.settings.poll_interval,
            max_poll_interval=self.settings.max_poll_interval,
        )
        self.pools[queue] = pool
        pool.start()

    @staticmethod
    def _to_queue_config(
        name: str, value: QueueConfig | QueueSettings | dict[str, Any]
    ) -> QueueConfig:
        common.validate_queue_name(name)
        if isinstance(value, QueueConfig):
            return value
        if isinstance(value, dict):
            try:
                value = QueueSettings.model_validate(value)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid settings for queue {name!r}: {exc}")
        return value.to_config(name)

    @staticmethod
    def _accepts_progress(fn: Callable[..., Any]) -> bool:
        try:
            signature = inspect.signature(fn)
        except (TypeError, ValueError):
            return True
        positional = 0
        for param in signature.parameters.values():
            if param.kind == param.VAR_POSITIONAL:
                return True
            if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
                positional += 1
        return positional >= 2

    @staticmethod
    def _payload_only(fn: Callable[..., Any]) -> Handler:
        def handler(payload: Any, progress: Callable[[int | float], None]) -> Any:
            return fn(payload)

        handler.__wrapped__ = fn
        return handler
