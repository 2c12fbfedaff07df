from dataclasses import dataclass, field
from typing import Any, Literal

from drudge.errors import ValidationError


BackoffTypeValueType = Literal["fixed", "exponential"]


@dataclass(frozen=True)
class BackoffPolicy:
    type: BackoffTypeValueType = field(default="exponential")
    """Either ``"fixed"`` or ``"exponential"``."""
    delay: int = field(default=1000)
    """Delay in milliseconds.

    For the fixed policy this is the delay before every retry. For the
    exponential policy this is the base: the delay is calculated as
    ``delay * 2 ** attempts``, where ``attempts`` is the number of attempts
    made before the failing one.
    """
    max_delay: int = field(default=12 * 3600 * 1000)
    """The delay between retries won't exceed this value (milliseconds)."""

    def __post_init__(self) -> None:
        if self.type not in ("fixed", "exponential"):
            raise ValidationError(
                f"Unknown backoff type {self.type!r}, expected 'fixed' or 'exponential'"
            )
        if not isinstance(self.delay, int) or self.delay < 0:
            raise ValidationError("Backoff delay must be a non-negative integer")
        if not isinstance(self.max_delay, int) or self.max_delay < self.delay:
            raise ValidationError("Backoff max_delay cannot be less than delay")

    def delay_for(self, attempts: int) -> int:
        """Milliseconds to wait before the next attempt."""
        if self.type == "fixed":
            return self.delay
        # Keep the exponent bounded, the cap kicks in long before that
        planned_delay = self.delay * 2 ** min(attempts, 32)
        return min(planned_delay, self.max_delay)

    @staticmethod
    def parse(
        value: "BackoffPolicy | dict[str, Any] | int | None",
        default: "BackoffPolicy | None" = None,
    ) -> "BackoffPolicy":
        """Build a policy from job options.

        A bare number means a fixed delay in milliseconds. A mapping accepts
        ``type``, ``delay`` and ``max_delay`` (or ``maxDelay``) keys.
        Missing keys are taken from ``default``.
        """
        default = default or BackoffPolicy()
        if value is None:
            return default
        if isinstance(value, BackoffPolicy):
            return value
        if isinstance(value, bool):
            raise ValidationError("Backoff must be a number or a mapping")
        if isinstance(value, int):
            return BackoffPolicy(
                type="fixed",
                delay=value,
                max_delay=max(value, default.max_delay),
            )
        if isinstance(value, dict):
            delay = value.get("delay", default.delay)
            max_delay = value.get(
                "max_delay", value.get("maxDelay", default.max_delay)
            )
            if isinstance(delay, int) and isinstance(max_delay, int):
                max_delay = max(delay, max_delay)
            return BackoffPolicy(
                type=value.get("type", default.type),
                delay=delay,
                max_delay=max_delay,
            )
        raise ValidationError("Backoff must be a number or a mapping")


@dataclass
class QueueConfig:
    name: str
    """Unique name of the queue."""
    concurrency: int = field(default=1)
    """Maximum number of jobs processed in parallel by this process."""
    max_attempts: int = field(default=3)
    """Default ceiling on execution attempts for jobs of this queue."""
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    """Default retry delay policy for jobs of this queue."""
    lease_duration: int | None = field(default=None)
    """Claim lease in milliseconds. Falls back to the engine-wide setting."""
    paused: bool = field(default=False)
    """While set, workers of this queue claim no new jobs."""

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValidationError("Queue name must be a non-empty string")
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ValidationError("Queue concurrency must be a positive integer")
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer")
        if self.lease_duration is not None and self.lease_duration <= 0:
            raise ValidationError("lease_duration must be positive")
