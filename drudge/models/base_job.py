from dataclasses import dataclass
from datetime import datetime
from uuid import UUID
from typing import Any, Literal

from .queue_config import BackoffPolicy


JobStateValueType = Literal[
    "waiting",
    "delayed",
    "active",
    "completed",
    "failed",
]


@dataclass
class BaseJob:
    id: UUID
    queue: str
    payload: Any | None
    state: JobStateValueType | None
    priority: int
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy
    progress: int
    result: Any | None
    failure_reason: str | None
    failure_trace: str | None
    run_at: datetime
    created_at: datetime
    claimed_at: datetime | None
    finished_at: datetime | None
    state_changed_at: datetime | None
    lock_owner: str | None
    lock_expires_at: datetime | None
