from datetime import timedelta
from typing import Any, Callable, TypeVar

from drudge.errors import HandlerError
from drudge.models.base_job import BaseJob


DecoratedCallable = TypeVar("DecoratedCallable", bound=Callable[..., Any])
ProgressCallback = Callable[[int | float], None]
Handler = Callable[[Any, ProgressCallback], Any]


class BaseBroker:
    """State names and transition values shared by the broker components."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)
    TERMINAL_STATES = (COMPLETED, FAILED)
    PENDING_STATES = (WAITING, DELAYED)

    @staticmethod
    def _claim_values(
        worker_id: str,
        now_ms: int,
        lease_duration_ms: int,
        lease_expires_at_ms: int,
    ) -> dict[str, Any]:
        return {
            "state": BaseBroker.ACTIVE,
            "lock_owner": worker_id,
            "claimed_at": now_ms,
            "lease_duration": lease_duration_ms,
            "lock_expires_at": lease_expires_at_ms,
            "state_changed_at": now_ms,
        }

    @staticmethod
    def _progress_values(
        progress: int, lease_expires_at_ms: int
    ) -> dict[str, Any]:
        return {"progress": progress, "lock_expires_at": lease_expires_at_ms}

    @staticmethod
    def _completed_values(
        job: BaseJob, serialized_result: str | None, finished_at_ms: int
    ) -> dict[str, Any]:
        return {
            "state": BaseBroker.COMPLETED,
            "attempts": job.attempts + 1,
            "result": serialized_result,
            "failure_reason": None,
            "failure_trace": None,
            "finished_at": finished_at_ms,
            "state_changed_at": finished_at_ms,
            "lock_owner": None,
            "lock_expires_at": None,
        }

    @staticmethod
    def _failed_values(
        job: BaseJob, error: HandlerError, finished_at_ms: int
    ) -> dict[str, Any]:
        attempt_num = job.attempts + 1
        values = {
            "attempts": attempt_num,
            "failure_reason": error.failure_reason,
            "failure_trace": error.failure_trace,
            "state_changed_at": finished_at_ms,
            "lock_owner": None,
            "lock_expires_at": None,
        }

        if attempt_num >= job.max_attempts:
            # Out of attempts, the job won't be retried automatically
            values["state"] = BaseBroker.FAILED
            values["finished_at"] = finished_at_ms
            return values

        # Schedule the next attempt after the backoff delay
        delay = job.backoff.delay_for(job.attempts)
        values["state"] = BaseBroker.DELAYED
        values["run_at"] = finished_at_ms + delay
        return values

    @staticmethod
    def _released_values(now_ms: int) -> dict[str, Any]:
        return {
            "state": BaseBroker.WAITING,
            "lock_owner": None,
            "lock_expires_at": None,
            "state_changed_at": now_ms,
        }

    @staticmethod
    def _retry_values(now_ms: int) -> dict[str, Any]:
        return {
            "state": BaseBroker.WAITING,
            "attempts": 0,
            "progress": 0,
            "result": None,
            "failure_reason": None,
            "failure_trace": None,
            "finished_at": None,
            "run_at": now_ms,
            "state_changed_at": now_ms,
        }

    @staticmethod
    def _lease_expiry(now_ms: int, lease_duration: int | timedelta) -> int:
        if isinstance(lease_duration, timedelta):
            lease_duration = int(lease_duration.total_seconds() * 1000)
        return now_ms + lease_duration
