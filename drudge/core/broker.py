import logging
from datetime import datetime, timedelta
from uuid import UUID
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from drudge.core import common
from drudge.core.base import BaseBroker
from drudge.core.store import JobStore
from drudge.errors import ConflictError, HandlerError, ValidationError
from drudge.models.job import Job
from drudge.models.params import ClaimParams, EnqueueParams
from drudge.models.queue_config import BackoffPolicy, QueueConfig
from drudge.models.queue_stats import QueueStats
from drudge.models.raw_job import RawJob


logger = logging.getLogger(__name__)


class Broker(BaseBroker):
    """Per-queue ordering and atomic claim on top of the job store.

    Examples:

        >>> broker = Broker(store, {"news": QueueConfig("news")})
        >>> job = broker.enqueue("news", {"articleId": "A1"})
        >>> claimed = broker.claim_next("news", worker_id="worker-1")
        >>> broker.complete(claimed, "worker-1", {"success": True})

    Args:
        store (JobStore): Where job records live.
        queues (dict[str, QueueConfig]): Known queues by name. The mapping is
            shared with the engine, queues added there are visible here.
        lease_duration (int): Default claim lease in milliseconds, used for
            queues that don't configure their own.
    """

    MAX_CLAIM_CONFLICTS = 16

    def __init__(
        self,
        store: JobStore,
        queues: dict[str, QueueConfig] | None = None,
        lease_duration: int = 30 * 1000,
    ) -> None:
        self.store = store
        self.queues = queues if queues is not None else {}
        self.lease_duration = lease_duration

    def config(self, queue: str) -> QueueConfig:
        """Return the configuration of a known queue.

        Raises:
            ValidationError: The queue is not configured.
        """
        common.validate_queue_name(queue)
        try:
            return self.queues[queue]
        except KeyError:
            raise ValidationError(f"Unknown queue {queue!r}")

    def lease_for(self, queue: str) -> int:
        return self.config(queue).lease_duration or self.lease_duration

    def prepare(
        self,
        queue: str,
        payload: Any | None = None,
        priority: int | None = None,
        delay: int | timedelta | None = None,
        run_at: datetime | int | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | dict[str, Any] | int | None = None,
        job_id: UUID | str | None = None,
        now: datetime | int | None = None,
    ) -> EnqueueParams:
        """Validate enqueue arguments against the queue's defaults."""
        return common.parse_enqueue_params(
            self.config(queue),
            payload,
            priority=priority,
            delay=delay,
            run_at=run_at,
            max_attempts=max_attempts,
            backoff=backoff,
            job_id=job_id,
            now=now,
        )

    def enqueue(
        self,
        queue: str,
        payload: Any | None = None,
        priority: int | None = None,
        delay: int | timedelta | None = None,
        run_at: datetime | int | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | dict[str, Any] | int | None = None,
        job_id: UUID | str | None = None,
        now: datetime | int | None = None,
    ) -> Job:
        """Create a job and make it claimable.

        The job is "waiting" right away, or "delayed" when ``run_at`` or
        ``delay`` put it in the future.

        Examples:

            Enqueue a job for immediate processing
            >>> broker.enqueue("newsProcessing", {"articleId": "A1"})

            Run it in five seconds, ahead of other waiting jobs
            >>> broker.enqueue("newsProcessing", "A2", delay=5000, priority=-1)

        Args:
            queue (str): Name of a configured queue.
            payload (Any | None): Handler input, stored with ``json.dumps()``.
            priority (int | None): Lower values are claimed first.
                Defaults to 0.
            delay (int | timedelta | None): Postpone eligibility, added to
                ``run_at``.
            run_at (datetime | int | None): Earliest claim time (UTC).
                Defaults to now.
            max_attempts (int | None): Defaults to the queue setting.
            backoff (BackoffPolicy | dict | int | None): Retry delay policy.
                A bare number is a fixed delay in milliseconds. Defaults to
                the queue setting.
            job_id (UUID | str | None): Use this ID instead of a random one.
            now (datetime | int | None): Creation time. Defaults to now.

        Raises:
            ValidationError: Unknown queue or malformed options.

        Returns:
            Job: The created job.
        """
        params = self.prepare(
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
        job = self.store.create(params)
        logger.debug(f"Enqueued job {job.id} in {queue} as {job.state}")
        return job

    def claim_next(
        self,
        queue: str,
        worker_id: str,
        lease_duration: int | timedelta | None = None,
        now: datetime | int | None = None,
        promote: bool = True,
    ) -> Job | None:
        """Claim the head-of-line waiting job and lock it for processing.

        The job is selected by priority, then creation order, and marked
        "active" with a lease held by ``worker_id``. Two claimers never get
        the same job: the state change only applies while the job is still
        "waiting", and a claimer that loses the race moves on to the next
        candidate.

        Args:
            queue (str): Queue name.
            worker_id (str): Identifies the lock owner.
            lease_duration (int | timedelta | None): How long the claim
                stays valid without a heartbeat. Defaults to the queue
                setting.
            now (datetime | int | None): Claim time. Defaults to now.
            promote (bool): Move due delayed jobs to "waiting" first.

        Returns:
            (Job | None): The claimed job or None if nothing is eligible.
        """
        config = self.config(queue)
        now_ms = common.to_ms(now)
        if promote:
            self.promote_delayed(queue, now=now_ms)

        lease = (
            common.to_duration_ms(lease_duration, "lease_duration")
            or config.lease_duration
            or self.lease_duration
        )
        p = ClaimParams(
            queue=queue,
            worker_id=worker_id,
            now_ms=now_ms,
            lease_duration_ms=lease,
            lease_expires_at_ms=self._lease_expiry(now_ms, lease),
        )

        for _ in range(self.MAX_CLAIM_CONFLICTS):
            with Session(self.store.engine) as session:
                select_head_stmt = (
                    select(RawJob.id)
                    .where(
                        RawJob.queue == p.queue,
                        RawJob.state == self.WAITING,
                    )
                    .order_by(RawJob.priority, RawJob.seq)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = session.execute(select_head_stmt).scalar()
                if job_id is None:
                    logger.debug(f"No job available in queue {p.queue}")
                    return None

                try:
                    job = self.store.update_state(
                        job_id,
                        self.WAITING,
                        session=session,
                        **self._claim_values(
                            p.worker_id,
                            p.now_ms,
                            p.lease_duration_ms,
                            p.lease_expires_at_ms,
                        ),
                    )
                except ConflictError:
                    logger.debug(
                        f"Job {job_id} was claimed by someone else, trying the next one"
                    )
                    continue

                session.commit()
                logger.debug(f"Job {job.id} claimed by {p.worker_id}")
                return job

        logger.warning(
            f"Gave up claiming from {queue} after {self.MAX_CLAIM_CONFLICTS} conflicts"
        )
        return None

    def promote_delayed(
        self, *queues: str, now: datetime | int | None = None
    ) -> int:
        """Move delayed jobs whose ``run_at`` has passed to "waiting".

        Args:
            queues (str): One or more queue names. Defaults to all queues.
            now (datetime | int | None): Defaults to now.

        Returns:
            int: Number of jobs promoted.
        """
        now_ms = common.to_ms(now)
        with Session(self.store.engine) as session:
            where_clause = (
                RawJob.state == self.DELAYED,
                RawJob.run_at <= now_ms,
            )
            if queues:
                where_clause = (RawJob.queue.in_(queues),) + where_clause

            stmt = (
                update(RawJob)
                .where(*where_clause)
                .values(state=self.WAITING, state_changed_at=now_ms)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount:
                logger.debug(f"Promoted {result.rowcount} delayed jobs")
            return result.rowcount

    def report_progress(
        self,
        job: Job,
        worker_id: str,
        progress: int | float,
        now: datetime | int | None = None,
    ) -> Job:
        """Record progress of an active job and renew its lease for the
        length chosen when it was claimed.

        Raises:
            ValidationError: Progress is not between 0 and 100.
            ConflictError: The worker no longer holds the job.
        """
        value = common.validate_progress(progress)
        now_ms = common.to_ms(now)
        return self.store.update_state(
            job.id,
            self.ACTIVE,
            worker_id,
            **self._progress_values(
                value,
                self._lease_expiry(
                    now_ms, job.lease_duration or self.lease_for(job.queue)
                ),
            ),
        )

    def complete(
        self,
        job: Job,
        worker_id: str,
        result: Any | None = None,
        now: datetime | int | None = None,
    ) -> Job:
        """Mark an active job as completed with the handler's result.

        Raises:
            ValidationError: The result is not JSON serializable.
            ConflictError: The worker no longer holds the job, e.g. the
                lease expired and the job was recovered.
        """
        try:
            serialized_result = Job.serialize(result)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Result is not JSON serializable: {exc}")

        finished_at_ms = common.to_ms(now)
        completed = self.store.update_state(
            job.id,
            self.ACTIVE,
            worker_id,
            **self._completed_values(job, serialized_result, finished_at_ms),
        )
        logger.debug(
            f"Job {job.id} completed (attempt {completed.attempts})"
        )
        return completed

    def fail(
        self,
        job: Job,
        worker_id: str,
        error: HandlerError | BaseException | str,
        now: datetime | int | None = None,
    ) -> Job:
        """Record a failed attempt of an active job.

        The job goes to "delayed" until its backoff elapses, or to
        "failed" when this was its last allowed attempt.

        Raises:
            ConflictError: The worker no longer holds the job.
        """
        if not isinstance(error, HandlerError):
            if isinstance(error, str):
                error = RuntimeError(error)
            error = HandlerError(job.id, error)

        finished_at_ms = common.to_ms(now)
        failed = self.store.update_state(
            job.id,
            self.ACTIVE,
            worker_id,
            **self._failed_values(job, error, finished_at_ms),
        )
        if failed.state == self.FAILED:
            logger.debug(
                f"Job {job.id} has exhausted its {failed.max_attempts} attempts"
            )
        else:
            logger.debug(f"Rescheduling job {job.id} at {failed.run_at}")
        return failed

    def release(
        self, job: Job, worker_id: str, now: datetime | int | None = None
    ) -> bool:
        """Give a claimed job back to "waiting" without counting an attempt.

        Returns:
            bool: True if the worker still held the job.
        """
        try:
            self.store.update_state(
                job.id,
                self.ACTIVE,
                worker_id,
                **self._released_values(common.to_ms(now)),
            )
        except ConflictError:
            return False
        return True

    def recover_stalled(
        self, *queues: str, now: datetime | int | None = None
    ) -> list[Job]:
        """Return active jobs with an expired lease to "waiting".

        The attempt count is left unchanged: the worker is presumed dead,
        the handler did not fail.

        Args:
            queues (str): One or more queue names. Defaults to all queues.
            now (datetime | int | None): Defaults to now.

        Returns:
            list[Job]: The recovered jobs.
        """
        now_ms = common.to_ms(now)
        with Session(self.store.engine) as session:
            where_clause = (
                RawJob.state == self.ACTIVE,
                RawJob.lock_expires_at <= now_ms,
            )
            if queues:
                where_clause = (RawJob.queue.in_(queues),) + where_clause
            stmt = select(RawJob.id, RawJob.lock_owner).where(*where_clause)
            candidates = session.execute(stmt).all()

        recovered: list[Job] = []
        for job_id, lock_owner in candidates:
            try:
                job = self.store.update_state(
                    job_id,
                    self.ACTIVE,
                    lock_owner,
                    where=(RawJob.lock_expires_at <= now_ms,),
                    **self._released_values(now_ms),
                )
            except ConflictError:
                # Completed or renewed in the meantime
                logger.debug(f"Job {job_id} is no longer stalled")
                continue
            recovered.append(job)
        return recovered

    def retry_all(self, queue: str, now: datetime | int | None = None) -> int:
        """Put every failed job of the queue back to "waiting".

        Attempts are reset to zero.

        Returns:
            int: Number of jobs retried.
        """
        self.config(queue)
        now_ms = common.to_ms(now)
        with Session(self.store.engine) as session:
            stmt = (
                update(RawJob)
                .where(RawJob.queue == queue, RawJob.state == self.FAILED)
                .values(**self._retry_values(now_ms))
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            logger.info(f"Retried {result.rowcount} failed jobs in {queue}")
            return result.rowcount

    def clean(
        self,
        queue: str,
        grace: int | timedelta = 3600 * 1000,
        now: datetime | int | None = None,
    ) -> int:
        """Delete completed and failed jobs that finished over ``grace`` ago.

        Args:
            queue (str): Queue name.
            grace (int | timedelta): Minimum age in milliseconds.
                Defaults to 1 hour.
            now (datetime | int | None): Defaults to now.

        Returns:
            int: Number of jobs deleted.
        """
        self.config(queue)
        grace_ms = common.to_duration_ms(grace, "grace")
        cutoff_ms = common.to_ms(now) - grace_ms
        with Session(self.store.engine) as session:
            stmt = delete(RawJob).where(
                RawJob.queue == queue,
                RawJob.state.in_(self.TERMINAL_STATES),
                RawJob.finished_at < cutoff_ms,
            )
            result = session.execute(stmt)
            session.commit()
            logger.info(f"Cleaned {result.rowcount} finished jobs from {queue}")
            return result.rowcount

    def cancel(self, queue: str, job_id: UUID | str) -> bool:
        """Remove a job before it is claimed.

        Only "waiting" and "delayed" jobs can be cancelled. For anything
        else, this method has no effect.

        Returns:
            bool: True if the job was removed.
        """
        self.config(queue)
        job_id = common.validate_job_id(job_id)
        with Session(self.store.engine) as session:
            stmt = delete(RawJob).where(
                RawJob.id == job_id,
                RawJob.queue == queue,
                RawJob.state.in_(self.PENDING_STATES),
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def get(self, queue: str, job_id: UUID | str) -> Job | None:
        self.config(queue)
        return self.store.get(common.validate_job_id(job_id), queue)

    def count(self, queue: str, state: str) -> int:
        self.config(queue)
        return self.store.count_by_state(queue, state)

    def jobs(self, *queues: str) -> list[Job]:
        for queue in queues:
            self.config(queue)
        return self.store.jobs(*queues)

    def stats(self, *queues: str) -> dict[str, QueueStats]:
        """Per-state counts for every configured queue, including empty ones."""
        for queue in queues:
            self.config(queue)
        names = queues or tuple(self.queues)
        stats = self.store.stats(*names)
        return {name: stats.get(name, QueueStats(name=name)) for name in names}
