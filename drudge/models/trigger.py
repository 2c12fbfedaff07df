from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable


JobTemplate = Callable[[datetime], Any]


@dataclass
class Trigger:
    name: str
    """Unique name of the trigger."""
    cron: str
    """Five-field crontab expression, e.g. ``"0 8 * * *"``."""
    queue: str
    """The queue that receives the materialized jobs."""
    job_template: JobTemplate | Any = field(default=None)
    """Payload generator called with the tick time.

    It may return a single payload, a list of payloads (one job each) or
    ``None`` for no jobs at all. A non-callable value is used as a static
    payload.
    """
    job_options: dict[str, Any] = field(default_factory=dict)
    """Enqueue options applied to every materialized job, e.g. ``priority``."""

    def generate(self, tick: datetime) -> list[Any]:
        if callable(self.job_template):
            generated = self.job_template(tick)
        else:
            generated = self.job_template
        if generated is None:
            return []
        if isinstance(generated, list):
            return generated
        return [generated]


@dataclass
class TriggerState:
    name: str
    cron: str
    queue: str
    running: bool
    last_tick_at: datetime | None
    last_fired_at: datetime | None
    next_due_at: datetime | None
    last_error: str | None
