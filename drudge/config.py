import importlib
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from drudge.errors import ValidationError
from drudge.models.queue_config import BackoffPolicy, QueueConfig
from drudge.models.trigger import Trigger


class BackoffSettings(BaseModel):
    type: Literal["fixed", "exponential"] = "exponential"
    delay: int = Field(default=1000, ge=0)
    max_delay: int = Field(default=12 * 3600 * 1000, ge=0)

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            type=self.type,
            delay=self.delay,
            max_delay=max(self.delay, self.max_delay),
        )


class QueueSettings(BaseModel):
    concurrency: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    lease_duration: int | None = Field(default=None, gt=0)
    paused: bool = False

    def to_config(self, name: str) -> QueueConfig:
        return QueueConfig(
            name=name,
            concurrency=self.concurrency,
            max_attempts=self.max_attempts,
            backoff=self.backoff.to_policy(),
            lease_duration=self.lease_duration,
            paused=self.paused,
        )


class TriggerSettings(BaseModel):
    cron: str
    queue: str
    template: str | None = None
    """Import path (``"module:function"``) of the job template callable."""
    payload: Any = None
    """Static payload, used when no template is set. A list enqueues one
    job per item."""
    options: dict[str, Any] = Field(default_factory=dict)

    def to_trigger(self, name: str) -> Trigger:
        job_template = resolve_import(self.template) if self.template else self.payload
        return Trigger(
            name=name,
            cron=self.cron,
            queue=self.queue,
            job_template=job_template,
            job_options=dict(self.options),
        )


DEFAULT_QUEUES = (
    "newsProcessing",
    "newsAggregation",
    "contentAnalysis",
    "userDigest",
    "tierUpgrade",
    "userCleanup",
    "analytics",
    "reporting",
    "metrics",
    "emailQueue",
    "pushQueue",
    "backup",
    "cleanup",
    "optimization",
    "aiProcessing",
    "recommendations",
    "dataImport",
    "dataExport",
)


def _default_queues() -> dict[str, QueueSettings]:
    return {name: QueueSettings() for name in DEFAULT_QUEUES}


def _default_triggers() -> dict[str, TriggerSettings]:
    # Day-of-week numbers follow crontab: 0 is Sunday, 1 is Monday
    return {
        "weeklyAnalytics": TriggerSettings(
            cron="0 9 * * 1",
            queue="analytics",
            payload={"type": "comprehensive", "period": "weekly", "filters": {}},
        ),
        "newsAggregation": TriggerSettings(
            cron="0 * * * *",
            queue="newsAggregation",
            template="drudge.templates:news_aggregation",
        ),
        "dailyBackup": TriggerSettings(
            cron="0 2 * * *",
            queue="backup",
            payload={"type": "incremental", "destination": "s3"},
        ),
        "weeklyBackup": TriggerSettings(
            cron="0 3 * * 0",
            queue="backup",
            payload={"type": "full", "destination": "s3"},
        ),
        "dailyCleanup": TriggerSettings(
            cron="0 4 * * *",
            queue="cleanup",
            payload=[
                {"target": "old_logs", "options": {"days": 30}},
                {"target": "expired_sessions", "options": {}},
                {"target": "temp_files", "options": {}},
            ],
        ),
    }


class Settings(BaseSettings):
    """Process-wide configuration, read from ``DRUDGE_*`` environment
    variables and an optional ``.env`` file.

    Nested values (``queues``, ``handlers``, ``triggers``) are given as JSON,
    e.g. ``DRUDGE_HANDLERS='{"newsProcessing": "app.jobs:process_news"}'``.
    All durations are in milliseconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="DRUDGE_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_url: str = "sqlite:///drudge.db"
    internal_token: str = ""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    lease_duration: int = Field(default=30 * 1000, gt=0)
    stall_interval: int = Field(default=5 * 1000, gt=0)
    poll_interval: int = Field(default=1000, gt=0)
    max_poll_interval: int = Field(default=5 * 1000, gt=0)
    scheduler_interval: int = Field(default=1000, gt=0)
    clean_grace: int = Field(default=3600 * 1000, ge=0)
    event_buffer: int = Field(default=1000, gt=0)
    timezone: str = "UTC"

    queues: dict[str, QueueSettings] = Field(default_factory=_default_queues)
    handlers: dict[str, str] = Field(default_factory=dict)
    triggers: dict[str, TriggerSettings] = Field(default_factory=_default_triggers)

    def queue_configs(self) -> dict[str, QueueConfig]:
        return {name: queue.to_config(name) for name, queue in self.queues.items()}


@lru_cache
def get_settings() -> Settings:
    return Settings()


def resolve_import(path: str) -> Any:
    """Load an object from a ``"package.module:attribute"`` path."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValidationError(
            f"Import path {path!r} must look like 'package.module:attribute'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValidationError(f"Cannot import {module_name!r}: {exc}")

    target: Any = module
    for name in attribute.split("."):
        try:
            target = getattr(target, name)
        except AttributeError:
            raise ValidationError(f"{module_name!r} has no attribute {attribute!r}")
    return target
