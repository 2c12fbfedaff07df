from datetime import datetime, timezone, timedelta
from uuid import UUID, uuid4
from typing import Any

from drudge.core.base import BaseBroker
from drudge.errors import ValidationError
from drudge.models.job import Job
from drudge.models.params import EnqueueParams
from drudge.models.queue_config import BackoffPolicy, QueueConfig


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_ms(value: datetime | int | None) -> int:
    """Convert a UTC datetime or epoch milliseconds to epoch milliseconds.

    ``None`` means now.
    """
    if value is None:
        return now_ms()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise ValidationError("Expected a datetime or epoch milliseconds")


def to_duration_ms(value: int | timedelta | None, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        value = int(value.total_seconds() * 1000)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative number of milliseconds")
    return value


def validate_queue_name(queue: str) -> None:
    if not queue or not isinstance(queue, str):
        raise ValidationError("Queue name must be a non-empty string")


def validate_job_id(job_id: UUID | str) -> UUID:
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError:
        raise ValidationError(f"Job ID must be a UUID, got {job_id!r}")


def validate_state(state: str) -> None:
    if state not in BaseBroker.STATES:
        raise ValidationError(f"Unknown job state {state!r}")


def validate_progress(progress: int | float) -> int:
    if isinstance(progress, bool) or not isinstance(progress, (int, float)):
        raise ValidationError("Progress must be a number between 0 and 100")
    if progress < 0 or progress > 100:
        raise ValidationError("Progress must be a number between 0 and 100")
    return int(round(progress))


def parse_enqueue_params(
    config: QueueConfig,
    payload: Any | None = None,
    priority: int | None = None,
    delay: int | timedelta | None = None,
    run_at: datetime | int | None = None,
    max_attempts: int | None = None,
    backoff: BackoffPolicy | dict[str, Any] | int | None = None,
    job_id: UUID | str | None = None,
    now: datetime | int | None = None,
) -> EnqueueParams:
    if priority is None:
        priority = 0
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority must be an integer")

    max_attempts = config.max_attempts if max_attempts is None else max_attempts
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ValidationError("attempts must be an integer")
    if max_attempts < 1:
        raise ValidationError("attempts must be at least 1")

    backoff_policy = BackoffPolicy.parse(backoff, default=config.backoff)

    # Determine when the job becomes eligible for claim
    created_at_ms = to_ms(now)
    run_at_ms = to_ms(run_at) if run_at is not None else created_at_ms
    delay_ms = to_duration_ms(delay, "delay")
    if delay_ms:
        run_at_ms += delay_ms

    state = BaseBroker.DELAYED if run_at_ms > created_at_ms else BaseBroker.WAITING

    try:
        serialized_payload = Job.serialize(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Payload is not JSON serializable: {exc}")

    return EnqueueParams(
        job_id=validate_job_id(job_id) if job_id is not None else uuid4(),
        queue=config.name,
        serialized_payload=serialized_payload,
        state=state,
        priority=priority,
        max_attempts=max_attempts,
        backoff=backoff_policy,
        created_at_ms=created_at_ms,
        run_at_ms=run_at_ms,
    )
