"""Deterministic stand-ins for time, health and instance providers."""

import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..core.enums import HealthState
from ..core.errors import LaunchAmbiguousError
from ..fleet.backend import InMemoryBackend
from ..fleet.health import BaseHealthEvaluator
from ..fleet.models import BackendInstance
from ..fleet.state_store import FleetStateStore


class FakeClock:
    """Clock whose ``sleep`` advances time instantly.

    Every sleep is recorded, and ``on_sleep`` callbacks run after time has
    advanced so tests can change the world during a warmup or bake.
    """

    def __init__(self, start: float = 0.0, epoch: float = 1_700_000_000.0) -> None:
        self._now = start
        self._epoch = epoch
        self._lock = threading.Lock()
        self.sleeps: List[float] = []
        self._callbacks: List[Callable[[float], None]] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def wall_time(self) -> float:
        with self._lock:
            return self._epoch + self._now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self._now += max(0.0, seconds)
            self.sleeps.append(seconds)
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(seconds)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def on_sleep(self, callback: Callable[[float], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)


class ScriptedHealthEvaluator(BaseHealthEvaluator):
    """Health evaluator driven by explicit rules.

    Resolution order: a per-instance override, then membership in the set of
    instances marked failing, then ``default``. ``fail_next(n)`` marks the
    next ``n`` instances it has never seen before as permanently unhealthy.
    """

    def __init__(self, default: HealthState = HealthState.HEALTHY) -> None:
        self.default = default
        self._overrides: Dict[str, HealthState] = {}
        self._failing: Set[str] = set()
        self._seen: Set[str] = set()
        self._fail_budget = 0
        self._lock = threading.Lock()
        self.checks: List[str] = []

    def set(self, instance_id: str, state: HealthState) -> None:
        with self._lock:
            self._overrides[instance_id] = state

    def fail_next(self, count: int) -> None:
        with self._lock:
            self._fail_budget += count

    def check(self, instance_id: str) -> HealthState:
        with self._lock:
            self.checks.append(instance_id)
            if instance_id not in self._seen:
                self._seen.add(instance_id)
                if self._fail_budget > 0:
                    self._fail_budget -= 1
                    self._failing.add(instance_id)
            if instance_id in self._overrides:
                return self._overrides[instance_id]
            if instance_id in self._failing:
                return HealthState.UNHEALTHY
            return self.default


class AmbiguousLaunchBackend(InMemoryBackend):
    """In-memory backend whose next launches report an unknown outcome.

    With ``launch_anyway`` the instances are created before the error is
    raised, as when a provider call times out after succeeding.
    """

    def __init__(self, ambiguous_launches: int = 1, launch_anyway: bool = True, **kwargs) -> None:
        super().__init__(**kwargs)
        self.ambiguous_launches = ambiguous_launches
        self.launch_anyway = launch_anyway

    def launch_instances(self, version: int, count: int) -> List[BackendInstance]:
        if self.ambiguous_launches <= 0:
            return super().launch_instances(version, count)
        self.ambiguous_launches -= 1
        if self.launch_anyway:
            super().launch_instances(version, count)
        raise LaunchAmbiguousError(
            f"Launch of {count} instances timed out", version=version, count=count
        )


def seed_fleet(store: FleetStateStore, version: int, count: int) -> List[str]:
    """Launch ``count`` instances on ``version`` straight into service."""
    instance_ids = store.launch(version, count)
    for instance_id in instance_ids:
        store.mark_in_service(instance_id)
    return instance_ids


def ids_of(records: Iterable) -> List[str]:
    return [record.id for record in records]


class InServiceSampler:
    """Records the fleet's in-service count whenever it is called.

    Registered as a sleep callback and an event handler it observes the
    fleet at every suspension point and every engine event.
    """

    def __init__(self, store: FleetStateStore) -> None:
        self._store = store
        self.samples: List[int] = []

    def __call__(self, *_args) -> None:
        self.samples.append(self._store.in_service_count())

    @property
    def minimum(self) -> Optional[int]:
        return min(self.samples) if self.samples else None
