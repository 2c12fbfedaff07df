import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4, UUID
from typing import Any

from .base_job import BaseJob, JobStateValueType
from .queue_config import BackoffPolicy
from .raw_job import RawJob


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, timezone.utc)


@dataclass
class Job(BaseJob):
    id: UUID = field(default_factory=uuid4)
    """The unique identifier for the job.

    UUID4 is generated on the client side when the job is created and never
    changes afterwards.
    """
    queue: str = field(default="default")
    """The name of the queue that owns the job."""
    payload: Any | None = field(default=None)
    """The data passed to the handler."""
    state: JobStateValueType | None = field(default=None)
    """The state of the job.

    New jobs are "waiting", or "delayed" when scheduled for later. A worker
    claiming the job marks it "active". A successful run ends in
    "completed". A failed run puts the job back to "delayed" until its
    backoff elapses, or ends in "failed" once ``max_attempts`` is reached.
    A stalled "active" job goes back to "waiting".
    """
    priority: int = field(default=0)
    """Ordering hint among waiting jobs. Lower values are claimed first,
    ties are broken by creation order."""
    attempts: int = field(default=0)
    """The number of finished attempts. A stalled run does not count."""
    max_attempts: int = field(default=3)
    """The job becomes "failed" when a failure brings ``attempts`` here."""
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    """Delay policy applied before a failed job becomes eligible again."""
    progress: int = field(default=0)
    """Last reported completion percentage, 0 to 100."""
    result: Any | None = field(default=None)
    """What the handler returned. Set once, on completion."""
    failure_reason: str | None = field(default=None)
    """The error message of the last failed attempt."""
    failure_trace: str | None = field(default=None)
    """The stack trace of the last failed attempt."""
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """A delayed job is not eligible for claim before this time."""
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    """The time when the job was enqueued.

    Represented as a datetime object in UTC. In database, this is stored as
    a Unix epoch timestamp in milliseconds in UTC timezone.
    """
    claimed_at: datetime | None = field(default=None)
    """The time when the job was last claimed by a worker."""
    lease_duration: int | None = field(default=None)
    """Milliseconds a claim stays valid without a heartbeat, fixed when the
    job is claimed."""
    finished_at: datetime | None = field(default=None)
    """The time when the job reached "completed" or "failed"."""
    state_changed_at: datetime | None = field(default=None)
    """The time of the last state transition."""
    lock_owner: str | None = field(default=None)
    """The worker holding the active claim."""
    lock_expires_at: datetime | None = field(default=None)
    """The claim is considered stale after this time."""

    @staticmethod
    def from_raw_job(raw_job: RawJob) -> "Job":
        return Job(
            id=raw_job.id,
            queue=raw_job.queue,
            payload=Job.deserialize(raw_job.payload),
            state=raw_job.state,
            priority=raw_job.priority,
            attempts=raw_job.attempts,
            max_attempts=raw_job.max_attempts,
            backoff=BackoffPolicy(
                type=raw_job.backoff_type,
                delay=raw_job.backoff_delay,
                max_delay=raw_job.backoff_max_delay,
            ),
            progress=raw_job.progress,
            result=Job.deserialize(raw_job.result),
            failure_reason=raw_job.failure_reason,
            failure_trace=raw_job.failure_trace,
            run_at=_from_ms(raw_job.run_at),
            created_at=_from_ms(raw_job.created_at),
            claimed_at=_from_ms(raw_job.claimed_at),
            lease_duration=raw_job.lease_duration,
            finished_at=_from_ms(raw_job.finished_at),
            state_changed_at=_from_ms(raw_job.state_changed_at),
            lock_owner=raw_job.lock_owner,
            lock_expires_at=_from_ms(raw_job.lock_expires_at),
        )

    @staticmethod
    def serialize(value: Any | None) -> str | None:
        """Serialize a payload or a result for storage.

        Every value, strings included, goes through ``json.dumps()`` so it
        reads back with the same type. ``None`` is stored as NULL.
        """
        if value is None:
            return None
        return json.dumps(value)

    @staticmethod
    def deserialize(serialized: str | None) -> Any | None:
        if serialized is None:
            return None
        return json.loads(serialized)
