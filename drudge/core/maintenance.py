import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from drudge.core.monitoring import LifecycleEvent
from drudge.errors import StallError
from drudge.models.job import Job

if TYPE_CHECKING:
    from drudge.core.engine import Engine


logger = logging.getLogger(__name__)


class StallMonitor:
    """Periodic sweep recovering stalled jobs and promoting delayed ones.

    A job is stalled when it is "active" and its lease expired without a
    heartbeat. It goes back to "waiting" with its attempt count unchanged
    and a ``job_stalled`` event is published.
    """

    def __init__(self, engine: "Engine", interval: int = 5000) -> None:
        self.engine = engine
        self.interval = interval
        self.stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: datetime | int | None = None) -> list[Job]:
        """Run one recovery pass over the engine's queues.

        Returns:
            list[Job]: The jobs returned to "waiting".
        """
        queues = tuple(self.engine.queues)
        if not queues:
            return []

        recovered = self.engine.broker.recover_stalled(*queues, now=now)
        for job in recovered:
            error = StallError(job.queue, job.id, job.claimed_at)
            logger.warning(str(error))
            self.engine.bus.publish(
                LifecycleEvent(
                    type="job_stalled",
                    queue=job.queue,
                    job_id=job.id,
                    attempts=job.attempts,
                    error=str(error),
                )
            )

        self.engine.broker.promote_delayed(*queues, now=now)
        return recovered

    def run(self) -> None:
        logger.info(f"Starting stall monitor, sweeping every {self.interval} ms")
        while not self.stop_event.wait(self.interval / 1000):
            try:
                self.sweep()
            except SQLAlchemyError:
                logger.exception("Stall sweep failed, retrying on next interval")
        logger.info("Stall monitor stopped")

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="drudge-stall-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
