"""Instance records tracked by the fleet state store."""

from dataclasses import dataclass, replace

from ..core.enums import HealthState, LifecycleState


@dataclass(frozen=True)
class InstanceRecord:
    """Immutable view of one instance at a point in time."""

    id: str
    template_version: int
    lifecycle_state: LifecycleState
    health: HealthState
    launch_time: float

    def with_changes(self, **changes) -> "InstanceRecord":
        return replace(self, **changes)

    @property
    def is_active(self) -> bool:
        """Counts toward the fleet (anything not Terminated)."""
        return self.lifecycle_state is not LifecycleState.TERMINATED

    @property
    def is_in_service(self) -> bool:
        return self.lifecycle_state is LifecycleState.IN_SERVICE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.template_version,
            "state": self.lifecycle_state.value,
            "health": self.health.value,
            "launch_time": self.launch_time,
        }


@dataclass(frozen=True)
class BackendInstance:
    """Instance as reported by an ``InstanceBackend``."""

    instance_id: str
    version: int
    launch_time: float
