from dataclasses import dataclass
from uuid import UUID

from .queue_config import BackoffPolicy


@dataclass
class EnqueueParams:
    job_id: UUID
    queue: str
    serialized_payload: str | None
    state: str
    priority: int
    max_attempts: int
    backoff: BackoffPolicy
    created_at_ms: int
    run_at_ms: int


@dataclass
class ClaimParams:
    queue: str
    worker_id: str
    now_ms: int
    lease_duration_ms: int
    lease_expires_at_ms: int
