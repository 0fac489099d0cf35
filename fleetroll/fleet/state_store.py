"""Fleet state store: authoritative record of every instance in a fleet."""

import threading
from typing import Dict, List, Optional, Union

from ..core.enums import HealthState, LifecycleState
from ..core.errors import UnknownInstanceError
from ..core.log import get_logger, log_fleet_event
from ..core.value_objects import FleetId
from .backend import InstanceBackend
from .models import InstanceRecord

logger = get_logger(__name__)


class FleetStateStore:
    """Thread-safe record of a fleet's instances.

    Every read and write of the records holds the same re-entrant lock and
    records are immutable, so ``snapshot()`` always returns a consistent
    view: no instance counted twice and none omitted while a mutation is in
    flight. Launch and terminate call the backend outside the lock, so reads
    are never blocked by a slow provider. Terminated instances are kept as
    history.
    """

    def __init__(self, fleet_id: Union[FleetId, str], backend: InstanceBackend) -> None:
        self.fleet_id = fleet_id if isinstance(fleet_id, FleetId) else FleetId(fleet_id)
        self._backend = backend
        self._instances: Dict[str, InstanceRecord] = {}
        self._lock = threading.RLock()

    # Mutations

    def launch(self, version: int, count: int) -> List[str]:
        """Launch ``count`` instances on ``version`` and record them as Pending.

        Raises:
            LaunchError: Backend refused the launch
            LaunchAmbiguousError: Outcome unknown; call ``refresh()`` before retrying
        """
        launched = self._backend.launch_instances(version, count)
        ids = []
        with self._lock:
            for instance in launched:
                self._instances[instance.instance_id] = InstanceRecord(
                    id=instance.instance_id,
                    template_version=instance.version,
                    lifecycle_state=LifecycleState.PENDING,
                    health=HealthState.UNKNOWN,
                    launch_time=instance.launch_time,
                )
                ids.append(instance.instance_id)
        log_fleet_event(
            logger, "launch", str(self.fleet_id), version=version, instance_ids=ids
        )
        return ids

    def terminate(self, instance_ids: List[str]) -> None:
        """Drain then terminate instances.

        Records move to Draining before the backend call and to Terminated
        after it succeeds. If the backend raises they stay Draining. The
        backend is called without holding the store lock.
        """
        if not instance_ids:
            return
        with self._lock:
            for instance_id in instance_ids:
                self._require(instance_id)
            for instance_id in instance_ids:
                self._instances[instance_id] = self._instances[instance_id].with_changes(
                    lifecycle_state=LifecycleState.DRAINING
                )
        self._backend.terminate_instances(list(instance_ids))
        with self._lock:
            for instance_id in instance_ids:
                self._instances[instance_id] = self._instances[instance_id].with_changes(
                    lifecycle_state=LifecycleState.TERMINATED
                )
        log_fleet_event(
            logger, "terminate", str(self.fleet_id), instance_ids=list(instance_ids)
        )

    def mark_in_service(self, instance_id: str) -> None:
        """Record a healthy instance as serving traffic."""
        with self._lock:
            record = self._require(instance_id)
            self._instances[instance_id] = record.with_changes(
                lifecycle_state=LifecycleState.IN_SERVICE,
                health=HealthState.HEALTHY,
            )

    def set_health(self, instance_id: str, health: HealthState) -> None:
        with self._lock:
            record = self._require(instance_id)
            self._instances[instance_id] = record.with_changes(health=health)

    def refresh(self) -> List[str]:
        """Reconcile with the backend.

        Instances the backend runs but the store does not know are adopted as
        Pending; tracked active instances the backend no longer runs become
        Terminated.

        Returns:
            Ids of newly adopted instances
        """
        with self._lock:
            running = {i.instance_id: i for i in self._backend.describe_instances()}
            adopted = []
            for instance_id, instance in running.items():
                if instance_id in self._instances:
                    continue
                self._instances[instance_id] = InstanceRecord(
                    id=instance_id,
                    template_version=instance.version,
                    lifecycle_state=LifecycleState.PENDING,
                    health=HealthState.UNKNOWN,
                    launch_time=instance.launch_time,
                )
                adopted.append(instance_id)
            for instance_id, record in list(self._instances.items()):
                if record.is_active and instance_id not in running:
                    self._instances[instance_id] = record.with_changes(
                        lifecycle_state=LifecycleState.TERMINATED
                    )
        if adopted:
            log_fleet_event(
                logger, "adopted", str(self.fleet_id), instance_ids=adopted
            )
        return adopted

    # Reads

    def snapshot(self) -> List[InstanceRecord]:
        """Consistent copy of all records, including terminated history."""
        with self._lock:
            return list(self._instances.values())

    def list(self) -> List[InstanceRecord]:
        """Active instances only."""
        return [record for record in self.snapshot() if record.is_active]

    def get(self, instance_id: str) -> InstanceRecord:
        with self._lock:
            return self._require(instance_id)

    def count(
        self,
        state: Optional[LifecycleState] = None,
        version: Optional[int] = None,
    ) -> int:
        """Count instances matching a lifecycle state and/or version."""
        with self._lock:
            return sum(
                1
                for record in self._instances.values()
                if (state is None or record.lifecycle_state is state)
                and (version is None or record.template_version == version)
            )

    def in_service_count(self) -> int:
        return self.count(state=LifecycleState.IN_SERVICE)

    def _require(self, instance_id: str) -> InstanceRecord:
        try:
            return self._instances[instance_id]
        except KeyError:
            raise UnknownInstanceError(
                f"Instance {instance_id} is not tracked by fleet {self.fleet_id}"
            ) from None
