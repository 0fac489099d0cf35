"""
fleetroll: build-and-deploy pipeline with rolling fleet replacement

Turns a source reference into a machine image, binds it to a new template
version and replaces a fleet's instances with it in checkpointed batches
without letting in-service capacity drop below a configured floor.
"""

__version__ = "1.0.0"

# Core exports
from .core.enums import HealthState, LifecycleState, PipelineState, PlanStatus
from .core.types import (
    FleetConfig,
    FleetrollConfig,
    RefreshPreferences,
    TimeoutConfig,
)

__all__ = [
    "__version__",
    "HealthState",
    "LifecycleState",
    "PipelineState",
    "PlanStatus",
    "FleetConfig",
    "FleetrollConfig",
    "RefreshPreferences",
    "TimeoutConfig",
]
