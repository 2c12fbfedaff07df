from .core import Engine, LifecycleEvent
from .errors import StopWorker, ValidationError
from .models import BackoffPolicy, Job, QueueConfig, QueueStats, Trigger


__all__ = [
    "Engine",
    "LifecycleEvent",
    "StopWorker",
    "ValidationError",
    "BackoffPolicy",
    "Job",
    "QueueConfig",
    "QueueStats",
    "Trigger",
]
