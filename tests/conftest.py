"""Shared fixtures for fleetroll tests.

Time is always simulated: engines and stores get a ``FakeClock`` so warmups
and bakes complete without real sleeping.
"""

import os
from typing import Callable, Generator
from unittest.mock import patch

import pytest

from fleetroll.core.events import EventRecorder
from fleetroll.core.types import RefreshPreferences
from fleetroll.fleet.backend import InMemoryBackend
from fleetroll.fleet.state_store import FleetStateStore
from fleetroll.rollout.engine import RollingReplacementEngine
from fleetroll.testing.fakes import FakeClock, ScriptedHealthEvaluator


@pytest.fixture(autouse=True)
def clean_environment() -> Generator[None, None, None]:
    """Hide FLEETROLL_ variables from the developer's shell."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("FLEETROLL_")}
    with patch.dict(os.environ, env, clear=True):
        yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock) -> InMemoryBackend:
    return InMemoryBackend(clock=clock)


@pytest.fixture
def store(backend) -> FleetStateStore:
    return FleetStateStore("web", backend)


@pytest.fixture
def health() -> ScriptedHealthEvaluator:
    return ScriptedHealthEvaluator()


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def engine(health, clock, events) -> Generator[RollingReplacementEngine, None, None]:
    engine = RollingReplacementEngine(health, clock=clock, events=events)
    try:
        yield engine
    finally:
        engine.shutdown()


@pytest.fixture
def make_preferences() -> Callable[..., RefreshPreferences]:
    """Factory for preferences with short, test-friendly timings."""

    def _make(**overrides) -> RefreshPreferences:
        values = {
            "min_healthy_percentage": 90.0,
            "instance_warmup": 60.0,
            "checkpoint_delay": 600.0,
            "checkpoint_percentages": (100.0,),
            "max_launch_retries": 2,
            "health_poll_interval": 10.0,
        }
        values.update(overrides)
        return RefreshPreferences(**values)

    return _make
