from .engine import Engine
from .broker import Broker
from .store import JobStore
from .monitoring import EventBus, LifecycleEvent, Monitor


__all__ = ["Engine", "Broker", "JobStore", "EventBus", "LifecycleEvent", "Monitor"]
