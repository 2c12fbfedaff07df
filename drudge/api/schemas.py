from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from drudge.models.job import Job
from drudge.models.queue_stats import QueueStats
from drudge.models.trigger import TriggerState


class BackoffOptions(BaseModel):
    type: Literal["fixed", "exponential"] = "exponential"
    delay: int = Field(default=1000, ge=0)
    maxDelay: int | None = Field(default=None, ge=0)


class EnqueueOptions(BaseModel):
    """Per-job options, named the way producers already send them."""

    model_config = ConfigDict(extra="forbid")

    priority: int | None = None
    delay: int | None = Field(default=None, ge=0, description="Milliseconds")
    attempts: int | None = Field(default=None, ge=1)
    backoff: int | BackoffOptions | None = Field(
        default=None, description="Retry policy, a bare number is a fixed delay"
    )

    def backoff_value(self) -> int | dict[str, Any] | None:
        if isinstance(self.backoff, BackoffOptions):
            return self.backoff.model_dump(exclude_none=True)
        return self.backoff


class EnqueueRequest(BaseModel):
    data: Any = None
    options: EnqueueOptions = Field(default_factory=EnqueueOptions)


class EnqueueResponse(BaseModel):
    jobId: str
    queue: str


class JobResponse(BaseModel):
    id: str
    queue: str
    data: Any = None
    state: str
    progress: int
    result: Any = None
    failureReason: str | None = None
    attempts: int
    maxAttempts: int
    createdAt: datetime | None = None
    finishedAt: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=str(job.id),
            queue=job.queue,
            data=job.payload,
            state=job.state,
            progress=job.progress,
            result=job.result,
            failureReason=job.failure_reason,
            attempts=job.attempts,
            maxAttempts=job.max_attempts,
            createdAt=job.created_at,
            finishedAt=job.finished_at,
        )


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueCounts":
        return cls(**stats.counts())


class RetryResponse(BaseModel):
    retriedCount: int


class QueueStateResponse(BaseModel):
    queue: str
    paused: bool


class TriggerHealth(BaseModel):
    cron: str
    queue: str
    running: bool
    lastFiredAt: datetime | None = None
    nextDueAt: datetime | None = None
    lastError: str | None = None

    @classmethod
    def from_state(cls, state: TriggerState) -> "TriggerHealth":
        return cls(
            cron=state.cron,
            queue=state.queue,
            running=state.running,
            lastFiredAt=state.last_fired_at,
            nextDueAt=state.next_due_at,
            lastError=state.last_error,
        )


class HealthResponse(BaseModel):
    status: str
    uptime: float
    queues: dict[str, QueueCounts]
    triggers: dict[str, TriggerHealth]
