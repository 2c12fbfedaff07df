import logging
import os
import socket
import time
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from drudge.core.monitoring import LifecycleEvent
from drudge.errors import (
    ConflictError,
    HandlerError,
    StopWorker,
    ValidationError,
)
from drudge.models.job import Job
from drudge.models.queue_config import QueueConfig

if TYPE_CHECKING:
    from drudge.core.engine import Engine


logger = logging.getLogger(__name__)


class Worker:
    """One claim, execute, report loop over a single queue.

    While the queue is empty or paused, the worker sleeps between polls,
    doubling the sleep from ``poll_interval`` up to ``max_poll_interval``.
    A successful claim resets it.
    """

    def __init__(
        self,
        engine: "Engine",
        queue: str,
        slot: int = 0,
        poll_interval: int = 1000,
        max_poll_interval: int = 5000,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.slot = slot
        self.poll_interval = poll_interval
        self.max_poll_interval = max(poll_interval, max_poll_interval)
        self.worker_id = (
            f"{socket.gethostname()}:{os.getpid()}:{queue}:{slot}:{uuid4().hex[:8]}"
        )
        self.stop_event = Event()
        self.current_job: Job | None = None

    def run(self) -> None:
        """Process jobs until stopped."""
        logger.info(f"Starting worker {self.worker_id}")
        sleep = self.poll_interval
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except StopWorker:
                logger.debug(f"Worker {self.worker_id} interrupted by StopWorker signal")
                return
            except KeyboardInterrupt:
                logger.info(f"Worker {self.worker_id} interrupted by KeyboardInterrupt signal")
                return
            except SQLAlchemyError:
                logger.exception(f"Worker {self.worker_id} lost the job store, backing off")
                processed = False

            if processed:
                sleep = self.poll_interval
            else:
                self.stop_event.wait(sleep / 1000)
                sleep = min(sleep * 2, self.max_poll_interval)
        logger.info(f"Worker {self.worker_id} stopped")

    def run_once(self) -> bool:
        """Claim and execute at most one job.

        Returns:
            bool: True if a job was processed.
        """
        if self.engine.broker.config(self.queue).paused:
            return False

        job = self.engine.broker.claim_next(self.queue, self.worker_id)
        if not job:
            return False

        self.execute(job)
        return True

    def execute(self, job: Job) -> None:
        """Run the queue's handler on a claimed job and record the outcome."""
        handler = self.engine.handlers[self.queue]
        self.current_job = job
        started = time.monotonic()

        def progress(value: int | float) -> None:
            self.current_job = self.engine.broker.report_progress(
                job, self.worker_id, value
            )

        stop = False
        try:
            try:
                result = handler(job.payload, progress)
            except StopWorker:
                result = None
                stop = True
            except KeyboardInterrupt:
                # Put the job back untouched, somebody else will pick it up
                self.engine.broker.release(job, self.worker_id)
                raise
            except Exception as exc:
                self._fail(job, HandlerError(job.id, exc))
                return

            logger.debug(
                f"Job {job.id} ran for {time.monotonic() - started:.2f} seconds"
            )
            self._complete(job, result)
        finally:
            self.current_job = None

        if stop:
            raise StopWorker

    def stop(self) -> None:
        """Request the worker to stop.

        The worker stops after finishing the current job or after the
        current wait period is over.
        """
        self.stop_event.set()

    def _complete(self, job: Job, result: Any) -> None:
        try:
            completed = self.engine.broker.complete(job, self.worker_id, result)
        except ValidationError as exc:
            self._fail(job, HandlerError(job.id, exc))
            return
        except ConflictError as exc:
            logger.warning(f"Discarding result of job {job.id}: {exc}")
            return

        self.engine.bus.publish(
            LifecycleEvent(
                type="job_completed",
                queue=job.queue,
                job_id=job.id,
                attempts=completed.attempts,
            )
        )

    def _fail(self, job: Job, error: HandlerError) -> None:
        logger.error(
            f"Failed to process job {job.id} (attempt {job.attempts + 1}): {error.failure_reason}",
            exc_info=error.original,
        )
        try:
            failed = self.engine.broker.fail(job, self.worker_id, error)
        except ConflictError as exc:
            logger.warning(f"Discarding failure of job {job.id}: {exc}")
            return

        self.engine.bus.publish(
            LifecycleEvent(
                type="job_failed",
                queue=job.queue,
                job_id=job.id,
                attempts=failed.attempts,
                final=failed.state == self.engine.broker.FAILED,
                error=error.failure_reason,
            )
        )


class WorkerPool:
    """Up to ``concurrency`` workers of one queue, each on its own thread."""

    def __init__(
        self,
        engine: "Engine",
        config: QueueConfig,
        poll_interval: int = 1000,
        max_poll_interval: int = 5000,
    ) -> None:
        self.engine = engine
        self.config = config
        self.workers = [
            Worker(
                engine,
                config.name,
                slot,
                poll_interval=poll_interval,
                max_poll_interval=max_poll_interval,
            )
            for slot in range(config.concurrency)
        ]
        self.executor: ThreadPoolExecutor | None = None
        self.futures: list[Future] = []

    @property
    def running(self) -> bool:
        return any(not future.done() for future in self.futures)

    def start(self) -> None:
        if self.running:
            return
        logger.info(
            f"Starting {len(self.workers)} workers for queue {self.config.name}"
        )
        for worker in self.workers:
            worker.stop_event.clear()
        self.executor = ThreadPoolExecutor(
            max_workers=len(self.workers),
            thread_name_prefix=f"drudge-{self.config.name}",
        )
        self.futures = [self.executor.submit(w.run) for w in self.workers]

    def stop(self, wait: bool = True) -> None:
        """Stop all workers. In-flight jobs finish first when ``wait``."""
        for worker in self.workers:
            worker.stop()
        if self.executor:
            self.executor.shutdown(wait=wait)
            self.executor = None
        for future in self.futures:
            if future.done() and future.exception():
                logger.error(
                    f"Worker of queue {self.config.name} crashed",
                    exc_info=future.exception(),
                )
        logger.info(f"Workers for queue {self.config.name} stopped")
