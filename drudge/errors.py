import traceback
from datetime import datetime
from uuid import UUID


class DrudgeError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(DrudgeError, ValueError):
    """Bad input from a caller: unknown queue, malformed options or payload.

    This is the only error that crosses the HTTP boundary synchronously.
    """


class ConflictError(DrudgeError):
    """A guarded state update did not match the stored state or owner.

    The caller re-reads the job and retries, or abandons the operation.
    """

    def __init__(
        self,
        job_id: UUID,
        expected_state: str,
        expected_owner: str | None = None,
    ) -> None:
        self.job_id = job_id
        self.expected_state = expected_state
        self.expected_owner = expected_owner
        message = f"Job {job_id} is no longer {expected_state}"
        if expected_owner:
            message += f" under {expected_owner}"
        super().__init__(message)


class HandlerError(DrudgeError):
    """A handler raised while processing a job."""

    def __init__(self, job_id: UUID, original: BaseException) -> None:
        self.job_id = job_id
        self.original = original
        super().__init__(f"Handler failed for job {job_id}: {original}")
        self.__cause__ = original

    @property
    def failure_reason(self) -> str:
        return str(self.original) or type(self.original).__name__

    @property
    def failure_trace(self) -> str:
        return "".join(traceback.format_exception(self.original))


class StallError(DrudgeError):
    """A claimed job's lease expired without completion or heartbeat."""

    def __init__(
        self, queue: str, job_id: UUID, claimed_at: datetime | None
    ) -> None:
        self.queue = queue
        self.job_id = job_id
        self.claimed_at = claimed_at
        super().__init__(
            f"Job {job_id} in {queue} stalled, lease taken at {claimed_at} expired"
        )


class TriggerGenerationError(DrudgeError):
    """A trigger's job template raised while materializing a tick."""

    def __init__(self, trigger: str, original: BaseException) -> None:
        self.trigger = trigger
        self.original = original
        super().__init__(f"Trigger {trigger} failed to generate jobs: {original}")
        self.__cause__ = original


class StopWorker(BaseException):
    """Raised inside a handler to stop the worker loop that runs it.

    The current job is still recorded as completed.
    """

    pass
