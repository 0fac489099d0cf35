"""Testing utilities for fleetroll."""

from .fakes import (
    AmbiguousLaunchBackend,
    FakeClock,
    InServiceSampler,
    ScriptedHealthEvaluator,
    ids_of,
    seed_fleet,
)
from .sandbox import create_sandbox, fake_image_builder, sandbox

__all__ = [
    # Fakes
    "AmbiguousLaunchBackend",
    "FakeClock",
    "InServiceSampler",
    "ScriptedHealthEvaluator",
    "ids_of",
    "seed_fleet",
    # Sandboxes
    "create_sandbox",
    "fake_image_builder",
    "sandbox",
]
