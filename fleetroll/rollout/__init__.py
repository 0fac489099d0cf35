"""Rolling replacement of fleet instances."""

from .engine import RollingReplacementEngine
from .plan import CheckpointStep, ReplacementPlan, preview_schedule
from .rollback import current_target_version, select_rollback_target

__all__ = [
    "RollingReplacementEngine",
    "CheckpointStep",
    "ReplacementPlan",
    "preview_schedule",
    "current_target_version",
    "select_rollback_target",
]
