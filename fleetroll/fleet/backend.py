"""Instance backends: the adapters that actually create and destroy machines."""

import itertools
import threading
from typing import Dict, Iterable, List, Optional, Protocol

from ..core.errors import LaunchError
from ..core.time import Clock, SystemClock
from .models import BackendInstance


class InstanceBackend(Protocol):
    """Protocol for machine providers."""

    def launch_instances(self, version: int, count: int) -> List[BackendInstance]:
        """Launch ``count`` instances of a template version.

        Raises:
            LaunchError: Launch was refused
            LaunchAmbiguousError: Outcome unknown; caller must reconcile
        """

    def terminate_instances(self, instance_ids: Iterable[str]) -> None:
        """Terminate instances. Unknown ids are ignored."""

    def describe_instances(self) -> List[BackendInstance]:
        """All instances the provider currently runs."""


class InMemoryBackend:
    """Backend that keeps machines in a dictionary.

    Used by the simulator and tests; ``capacity`` bounds the number of
    running instances to model provider quotas.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        capacity: Optional[int] = None,
        id_prefix: str = "i-",
    ) -> None:
        self._clock = clock or SystemClock()
        self._capacity = capacity
        self._id_prefix = id_prefix
        self._counter = itertools.count(1)
        self._running: Dict[str, BackendInstance] = {}
        self._lock = threading.Lock()
        self.launch_calls = 0
        self.terminate_calls = 0

    def launch_instances(self, version: int, count: int) -> List[BackendInstance]:
        if count < 1:
            raise LaunchError(f"Cannot launch {count} instances")
        with self._lock:
            self.launch_calls += 1
            if self._capacity is not None and len(self._running) + count > self._capacity:
                raise LaunchError(
                    f"Launching {count} instances would exceed capacity {self._capacity}",
                    details={"running": len(self._running)},
                )
            launched = []
            for _ in range(count):
                instance = BackendInstance(
                    instance_id=f"{self._id_prefix}{next(self._counter):06d}",
                    version=version,
                    launch_time=self._clock.wall_time(),
                )
                self._running[instance.instance_id] = instance
                launched.append(instance)
            return launched

    def terminate_instances(self, instance_ids: Iterable[str]) -> None:
        with self._lock:
            self.terminate_calls += 1
            for instance_id in instance_ids:
                if instance_id not in self._running:
                    continue
                del self._running[instance_id]

    def describe_instances(self) -> List[BackendInstance]:
        with self._lock:
            return list(self._running.values())

    def is_running(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._running
