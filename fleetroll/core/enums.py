"""Core enumerations for fleetroll.

Separated from types.py to break circular dependencies. This module contains
only enum definitions with no dependencies on other core modules.
"""

from enum import Enum


class ArtifactStatus(Enum):
    """Build artifact status."""

    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


class LifecycleState(Enum):
    """Instance lifecycle state."""

    PENDING = "pending"
    IN_SERVICE = "in_service"
    DRAINING = "draining"
    TERMINATED = "terminated"


class HealthState(Enum):
    """Instance health as reported by the load balancing layer."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class PlanStatus(Enum):
    """Replacement plan status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PlanStatus.RUNNING


class PipelineStage(Enum):
    """Pipeline stage."""

    SOURCE = "source"
    BUILD = "build"
    DEPLOY = "deploy"


class PipelineState(Enum):
    """Pipeline run state machine."""

    IDLE = "idle"
    SOURCE_FETCHED = "source_fetched"
    BUILDING = "building"
    BUILD_SUCCEEDED = "build_succeeded"
    BUILD_FAILED = "build_failed"
    DEPLOYING = "deploying"
    COMPLETED = "completed"
    FAILED = "failed"
