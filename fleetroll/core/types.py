"""Configuration models for fleetroll."""

import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import (
    ArtifactStatus,
    HealthState,
    LifecycleState,
    PipelineStage,
    PipelineState,
    PlanStatus,
)
from .errors import ConfigurationError


class RefreshPreferences(BaseModel):
    """Rolling replacement parameters for one plan.

    Immutable: every plan receives its own explicit copy instead of reading
    process-wide state.
    """

    model_config = ConfigDict(frozen=True)

    min_healthy_percentage: float = 90.0
    instance_warmup: float = 300.0
    checkpoint_delay: float = 3600.0
    checkpoint_percentages: Tuple[float, ...] = (100.0,)
    max_launch_retries: int = 2
    health_poll_interval: float = 15.0

    def min_healthy_count(self, desired_count: int) -> int:
        """Capacity floor for a fleet of ``desired_count`` instances."""
        return math.ceil(desired_count * self.min_healthy_percentage / 100)

    def validate_for(self, desired_count: int) -> None:
        """Reject parameters that cannot drive a plan.

        Raises:
            ConfigurationError: On any malformed value
        """
        if desired_count < 1:
            raise ConfigurationError(
                f"desired_count must be at least 1, got {desired_count}"
            )
        if not 0 <= self.min_healthy_percentage <= 100:
            raise ConfigurationError(
                "min_healthy_percentage must be within [0, 100], "
                f"got {self.min_healthy_percentage}"
            )
        checkpoints = self.checkpoint_percentages
        if not checkpoints:
            raise ConfigurationError("checkpoint_percentages must not be empty")
        for value in checkpoints:
            if not 0 < value <= 100:
                raise ConfigurationError(
                    f"checkpoint percentage {value} is outside (0, 100]"
                )
        for previous, current in zip(checkpoints, checkpoints[1:]):
            if current < previous:
                raise ConfigurationError(
                    f"checkpoint_percentages must be non-decreasing: {list(checkpoints)}"
                )
        if checkpoints[-1] != 100:
            raise ConfigurationError(
                f"checkpoint_percentages must end at 100: {list(checkpoints)}"
            )
        if self.instance_warmup < 0 or self.checkpoint_delay < 0:
            raise ConfigurationError("instance_warmup and checkpoint_delay must be >= 0")
        if self.health_poll_interval <= 0:
            raise ConfigurationError("health_poll_interval must be positive")
        if self.max_launch_retries < 0:
            raise ConfigurationError("max_launch_retries must be >= 0")


class FleetConfig(BaseModel):
    """Static description of the managed fleet."""

    fleet_id: str = "default"
    desired_count: int = 2
    instance_settings: Dict[str, Any] = Field(default_factory=dict)
    health_check_path: str = "/health"
    health_check_port: int = 3000


class TimeoutConfig(BaseModel):
    """Centralized timeouts."""

    health_check_request: float = 5.0
    build_command: float = 3600.0


class FleetrollConfig(BaseModel):
    """Main configuration."""

    fleet: FleetConfig = Field(default_factory=FleetConfig)
    refresh: RefreshPreferences = Field(default_factory=RefreshPreferences)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    deploy_enabled: bool = True
    build_command: Optional[List[str]] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @model_validator(mode="after")
    def validate_config(self) -> "FleetrollConfig":
        """Validate configuration consistency. No side effects."""
        self.refresh.validate_for(self.fleet.desired_count)  # pylint: disable=no-member
        if self.timeouts.build_command <= 0:  # pylint: disable=no-member
            raise ConfigurationError("Build command timeout must be positive")
        return self


__all__ = [
    "ArtifactStatus",
    "HealthState",
    "LifecycleState",
    "PipelineStage",
    "PipelineState",
    "PlanStatus",
    "RefreshPreferences",
    "FleetConfig",
    "TimeoutConfig",
    "FleetrollConfig",
]
