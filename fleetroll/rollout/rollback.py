"""Rollback target selection."""

from typing import Optional

from ..core.enums import LifecycleState
from ..core.errors import RollbackError, VersionNotFoundError
from ..fleet.state_store import FleetStateStore
from ..templates.versions import TemplateVersion, TemplateVersionManager
from .engine import RollingReplacementEngine


def current_target_version(
    engine: RollingReplacementEngine, store: FleetStateStore
) -> Optional[int]:
    """Version the fleet is currently rolling to or running.

    The running or most recent plan wins; a fleet that has never had a plan
    falls back to the newest version among its in-service instances.
    """
    plan = engine.status(str(store.fleet_id))
    if plan is not None:
        return plan.target_version
    serving = [
        record.template_version
        for record in store.list()
        if record.lifecycle_state is LifecycleState.IN_SERVICE
    ]
    return max(serving) if serving else None


def select_rollback_target(
    versions: TemplateVersionManager,
    current_version: Optional[int],
    to_version: Optional[int] = None,
) -> TemplateVersion:
    """Pick the version a rollback should replace the fleet with.

    Args:
        versions: Version history
        current_version: Version the fleet currently targets
        to_version: Explicit target; defaults to the version created just
            before ``current_version``

    Raises:
        RollbackError: No prior version exists or the target is current
    """
    if current_version is None:
        raise RollbackError("Fleet has no current version to roll back from")

    if to_version is not None:
        try:
            target = versions.get(to_version)
        except VersionNotFoundError as e:
            raise RollbackError(str(e), details={"to_version": to_version}) from e
        if target.id == current_version:
            raise RollbackError(
                f"Version {to_version} is already the current target",
                details={"to_version": to_version},
            )
        return target

    try:
        target = versions.previous(current_version)
    except VersionNotFoundError as e:
        raise RollbackError(str(e), details={"current_version": current_version}) from e
    if target is None:
        raise RollbackError(
            f"Version {current_version} has no earlier version to roll back to",
            details={"current_version": current_version},
        )
    return target
