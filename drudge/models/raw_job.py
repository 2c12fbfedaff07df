from uuid import uuid4, UUID
from typing import Optional

from sqlalchemy import BigInteger, Index, Integer, String, Uuid
from sqlalchemy.orm import mapped_column, Mapped

from .params import EnqueueParams
from .base_sql import BaseSQL


class RawJob(BaseSQL):
    __tablename__ = "jobs"
    __table_args__ = (
        # Head-of-line lookup for the claim: queue, state, priority, FIFO
        Index("ix_jobs_claim_order", "queue", "state", "priority", "seq"),
    )

    # SQLite only autoincrements a column declared exactly as INTEGER
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True, default=uuid4
    )
    queue: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payload: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    state: Mapped[str] = mapped_column(
        String(30), nullable=False, default="waiting", index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3
    )
    backoff_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="exponential"
    )
    backoff_delay: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=1000
    )
    backoff_max_delay: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=12 * 3600 * 1000
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(
        String, nullable=True
    )
    failure_trace: Mapped[Optional[str]] = mapped_column(
        String, nullable=True
    )
    run_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, index=True
    )
    created_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False
    )
    claimed_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    lease_duration: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    finished_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    state_changed_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    lock_owner: Mapped[Optional[str]] = mapped_column(
        String, nullable=True, index=True
    )
    lock_expires_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, index=True
    )

    @staticmethod
    def from_enqueue_params(enqueue_params: EnqueueParams) -> "RawJob":
        return RawJob(
            id=enqueue_params.job_id,
            queue=enqueue_params.queue,
            payload=enqueue_params.serialized_payload,
            state=enqueue_params.state,
            priority=enqueue_params.priority,
            attempts=0,
            max_attempts=enqueue_params.max_attempts,
            backoff_type=enqueue_params.backoff.type,
            backoff_delay=enqueue_params.backoff.delay,
            backoff_max_delay=enqueue_params.backoff.max_delay,
            progress=0,
            run_at=enqueue_params.run_at_ms,
            created_at=enqueue_params.created_at_ms,
            state_changed_at=enqueue_params.created_at_ms,
        )
