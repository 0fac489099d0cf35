"""Fleet state, instance backends and health evaluation."""

from .backend import InstanceBackend, InMemoryBackend
from .health import (
    BaseHealthEvaluator,
    HealthEvaluator,
    HttpHealthEvaluator,
    StaticHealthEvaluator,
)
from .models import BackendInstance, InstanceRecord
from .state_store import FleetStateStore

__all__ = [
    "InstanceBackend",
    "InMemoryBackend",
    "BaseHealthEvaluator",
    "HealthEvaluator",
    "HttpHealthEvaluator",
    "StaticHealthEvaluator",
    "BackendInstance",
    "InstanceRecord",
    "FleetStateStore",
]
