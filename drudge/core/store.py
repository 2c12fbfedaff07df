import logging
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import Engine, case, delete, desc, func, select, update
from sqlalchemy.orm import Session

from drudge.core import common
from drudge.core.base import BaseBroker
from drudge.errors import ConflictError
from drudge.models.base_sql import BaseSQL
from drudge.models.job import Job
from drudge.models.params import EnqueueParams
from drudge.models.queue_stats import QueueStats
from drudge.models.raw_job import RawJob


logger = logging.getLogger(__name__)


class JobStore:
    """Persistent record of every job.

    Each public method runs in its own short transaction unless a
    ``session`` is passed in, in which case the caller owns the commit.
    State transitions go through ``update_state()``, which only applies
    when the stored state (and lock owner, for active jobs) still matches
    what the caller expects.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, params: EnqueueParams) -> Job:
        with Session(self.engine) as session:
            jobs = self.create_many(session, [params])
            session.commit()
            return jobs[0]

    def create_many(
        self, session: Session, params_list: Iterable[EnqueueParams]
    ) -> list[Job]:
        """Insert jobs inside the caller's transaction."""
        raw_jobs = [RawJob.from_enqueue_params(p) for p in params_list]
        session.add_all(raw_jobs)
        session.flush()
        return [Job.from_raw_job(raw_job) for raw_job in raw_jobs]

    def get(self, job_id: UUID, queue: str | None = None) -> Job | None:
        with Session(self.engine) as session:
            raw_job = self._select_raw(session, job_id, queue)
            if not raw_job:
                return None
            return Job.from_raw_job(raw_job)

    def update_state(
        self,
        job_id: UUID,
        expected_state: str,
        expected_owner: str | None = None,
        session: Session | None = None,
        where: tuple = (),
        **values: Any,
    ) -> Job:
        """Apply a transition guarded by the expected current state.

        Args:
            job_id (UUID): Job ID.
            expected_state (str): The state the caller last observed.
            expected_owner (str | None): For active jobs, the worker the
                caller believes holds the lock.
            session (Session | None): Run inside this transaction instead
                of a new one. The caller commits.
            where (tuple): Additional guard conditions.
            **values: Columns to set, ``state`` included.

        Raises:
            ConflictError: The job is gone, or its state or owner changed
                since the caller read it.

        Returns:
            Job: The job as stored after the transition.
        """
        if session is None:
            with Session(self.engine) as own_session:
                job = self.update_state(
                    job_id,
                    expected_state,
                    expected_owner,
                    session=own_session,
                    where=where,
                    **values,
                )
                own_session.commit()
                return job

        where_clause = (
            RawJob.id == job_id,
            RawJob.state == expected_state,
        ) + tuple(where)
        if expected_owner is not None:
            where_clause += (RawJob.lock_owner == expected_owner,)

        stmt = (
            update(RawJob)
            .where(*where_clause)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            raise ConflictError(job_id, expected_state, expected_owner)

        raw_job = self._select_raw(session, job_id)
        session.refresh(raw_job)
        return Job.from_raw_job(raw_job)

    def list_by_state(
        self, queue: str, state: str, limit: int | None = None
    ) -> list[Job]:
        """List jobs of a queue in a state, in claim order."""
        common.validate_state(state)
        with Session(self.engine) as session:
            stmt = (
                select(RawJob)
                .where(RawJob.queue == queue, RawJob.state == state)
                .order_by(RawJob.priority, RawJob.seq)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [Job.from_raw_job(raw_job) for raw_job in session.scalars(stmt)]

    def count_by_state(self, queue: str, state: str) -> int:
        common.validate_state(state)
        with Session(self.engine) as session:
            stmt = select(func.count(RawJob.seq)).where(
                RawJob.queue == queue, RawJob.state == state
            )
            return session.execute(stmt).scalar() or 0

    def delete(self, ids: Iterable[UUID]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        with Session(self.engine) as session:
            stmt = delete(RawJob).where(RawJob.id.in_(ids))
            result = session.execute(stmt)
            session.commit()
            return result.rowcount

    def jobs(self, *queues: str) -> list[Job]:
        """List all jobs from latest to oldest.

        Args:
            queues (str): One or more queue names. Defaults to all queues.
        """
        with Session(self.engine) as session:
            stmt = select(RawJob)
            if queues:
                stmt = stmt.where(RawJob.queue.in_(queues))
            stmt = stmt.order_by(desc(RawJob.seq))
            return [Job.from_raw_job(raw_job) for raw_job in session.scalars(stmt)]

    def stats(self, *queues: str) -> dict[str, QueueStats]:
        """Count jobs per state for queues that have any jobs.

        Args:
            queues (str): One or more queue names. Defaults to all queues.
        """
        with Session(self.engine) as session:
            stats: dict[str, QueueStats] = {}
            stmt = select(
                RawJob.queue,
                func.sum(case((RawJob.state == BaseBroker.WAITING, 1), else_=0)),
                func.sum(case((RawJob.state == BaseBroker.ACTIVE, 1), else_=0)),
                func.sum(case((RawJob.state == BaseBroker.COMPLETED, 1), else_=0)),
                func.sum(case((RawJob.state == BaseBroker.FAILED, 1), else_=0)),
                func.sum(case((RawJob.state == BaseBroker.DELAYED, 1), else_=0)),
            )
            if queues:
                stmt = stmt.where(RawJob.queue.in_(queues))
            stmt = stmt.group_by(RawJob.queue)

            for row in session.execute(stmt):
                queue_stats = QueueStats.from_row(tuple(row))
                stats[queue_stats.name] = queue_stats
            return stats

    def create_all(self) -> None:
        """Create the tables and indexes if they do not exist."""
        BaseSQL.metadata.create_all(self.engine, checkfirst=True)

    def drop_all(self) -> None:
        """Drop the tables and indexes if they exist."""
        BaseSQL.metadata.drop_all(self.engine, checkfirst=True)

    @staticmethod
    def _select_raw(
        session: Session, job_id: UUID, queue: str | None = None
    ) -> RawJob | None:
        stmt = select(RawJob).where(RawJob.id == job_id)
        if queue is not None:
            stmt = stmt.where(RawJob.queue == queue)
        return session.execute(stmt).scalars().first()
