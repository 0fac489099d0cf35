"""Error hierarchy for fleetroll."""

from typing import Optional, Dict, Any


class FleetrollError(Exception):
    """Base exception for all fleetroll errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration Errors
class ConfigurationError(FleetrollError):
    """Malformed configuration or plan parameters."""


# Pipeline Errors
class PipelineError(FleetrollError):
    """Base class for pipeline errors."""


class SourceError(PipelineError):
    """Source stage could not resolve a commit."""


class BuildFailure(PipelineError):
    """Build stage did not produce a Ready artifact."""

    def __init__(self, message: str, commit_ref: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.commit_ref = commit_ref


# Artifact and Template Errors
class ArtifactError(FleetrollError):
    """Base class for artifact registry errors."""


class ArtifactNotFoundError(ArtifactError):
    """Artifact id is not known to the registry."""


class ArtifactNotReadyError(ArtifactError):
    """Artifact is not in the Ready state."""


class ArtifactTransitionError(ArtifactError):
    """Illegal artifact status transition."""


class VersionNotFoundError(FleetrollError):
    """Template version does not exist."""


# Fleet Errors
class FleetError(FleetrollError):
    """Base class for fleet mutation errors."""


class LaunchError(FleetError):
    """Backend refused to launch instances."""


class LaunchAmbiguousError(LaunchError):
    """Launch outcome unknown (e.g. backend timeout)."""

    def __init__(self, message: str, version: int, count: int,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.version = version
        self.count = count


class TerminateError(FleetError):
    """Backend refused to terminate instances."""


class UnknownInstanceError(FleetError):
    """Instance id is not tracked by the fleet store."""


# Rollout Errors
class RolloutError(FleetrollError):
    """Base class for replacement plan errors."""


class HealthTimeout(RolloutError):
    """A batch slot did not become healthy within its retry budget."""

    def __init__(self, message: str, attempts: int, instance_ids: Optional[list] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.attempts = attempts
        self.instance_ids = instance_ids or []


class ConcurrentPlanConflict(RolloutError):
    """A plan is already running for the fleet."""

    def __init__(self, message: str, fleet_id: str, running_plan_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.fleet_id = fleet_id
        self.running_plan_id = running_plan_id


class CancellationRequested(RolloutError):
    """Cooperative cancellation observed at a batch boundary."""


class RollbackError(RolloutError):
    """No rollback target is available."""


# Process Errors
class ProcessError(FleetrollError):
    """External command failed to run."""


class ProcessTimeoutError(ProcessError):
    """External command timed out."""

    def __init__(self, message: str, timeout: float, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.timeout = timeout
