from .base_sql import BaseSQL
from .job import Job
from .queue_config import BackoffPolicy, QueueConfig
from .queue_stats import QueueStats
from .raw_job import RawJob
from .raw_trigger import RawTrigger
from .trigger import Trigger, TriggerState


__all__ = [
    "BaseSQL",
    "Job",
    "BackoffPolicy",
    "QueueConfig",
    "QueueStats",
    "RawJob",
    "RawTrigger",
    "Trigger",
    "TriggerState",
]
