"""Replacement plan state and batch scheduling arithmetic."""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.enums import PlanStatus
from ..core.errors import RolloutError
from ..core.types import RefreshPreferences


def checkpoint_target(desired_count: int, percentage: float) -> int:
    """Number of replaced instances required to pass a checkpoint."""
    return math.ceil(desired_count * percentage / 100)


def batch_size_for(remaining: int, in_service: int, min_healthy_count: int) -> int:
    """Size of the next batch.

    ``remaining`` is how many replacements the current checkpoint still
    needs; the slack is how far in-service capacity sits above the floor.
    At least one instance is always launched so a fleet sitting exactly on
    its floor still makes progress (launches happen before terminations).
    """
    slack = in_service - min_healthy_count
    return max(1, min(remaining, slack))


@dataclass
class ReplacementPlan:
    """A running or finished rolling replacement of one fleet.

    Parameters are fixed at creation; ``status``, ``replaced_count`` and the
    terminal ``reason`` are updated by the engine under ``_lock`` so status
    queries from other threads see consistent values.
    """

    plan_id: str
    fleet_id: str
    target_version: int
    desired_count: int
    preferences: RefreshPreferences
    started_at: float
    status: PlanStatus = PlanStatus.RUNNING
    replaced_count: int = 0
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    finished_at: Optional[float] = None
    current_checkpoint: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def min_healthy_percentage(self) -> float:
        return self.preferences.min_healthy_percentage

    @property
    def instance_warmup(self) -> float:
        return self.preferences.instance_warmup

    @property
    def checkpoint_delay(self) -> float:
        return self.preferences.checkpoint_delay

    @property
    def checkpoint_percentages(self) -> Tuple[float, ...]:
        return self.preferences.checkpoint_percentages

    @property
    def min_healthy_count(self) -> int:
        return self.preferences.min_healthy_count(self.desired_count)

    @property
    def is_running(self) -> bool:
        return self.status is PlanStatus.RUNNING

    def advance(self, count: int) -> None:
        """Record ``count`` more replaced instances."""
        if count < 0:
            raise RolloutError(f"replaced_count cannot decrease (advance by {count})")
        with self._lock:
            self.replaced_count = min(self.desired_count, self.replaced_count + count)

    def enter_checkpoint(self, percentage: float) -> None:
        with self._lock:
            self.current_checkpoint = percentage

    def finish(
        self,
        status: PlanStatus,
        reason: str,
        finished_at: float,
        error_kind: Optional[str] = None,
    ) -> None:
        """Move to a terminal status. A plan finishes exactly once."""
        if not status.is_terminal:
            raise RolloutError(f"{status.value} is not a terminal status")
        with self._lock:
            if self.status.is_terminal:
                raise RolloutError(
                    f"Plan {self.plan_id} already finished as {self.status.value}"
                )
            self.status = status
            self.reason = reason
            self.error_kind = error_kind
            self.finished_at = finished_at

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "plan_id": self.plan_id,
                "fleet_id": self.fleet_id,
                "target_version": self.target_version,
                "desired_count": self.desired_count,
                "min_healthy_percentage": self.min_healthy_percentage,
                "instance_warmup": self.instance_warmup,
                "checkpoint_delay": self.checkpoint_delay,
                "checkpoint_percentages": list(self.checkpoint_percentages),
                "status": self.status.value,
                "replaced_count": self.replaced_count,
                "current_checkpoint": self.current_checkpoint,
                "reason": self.reason,
                "error_kind": self.error_kind,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
            }


@dataclass(frozen=True)
class CheckpointStep:
    """One checkpoint of a previewed schedule."""

    percentage: float
    target_replaced: int
    batches: Tuple[int, ...]
    bake_seconds: float


def preview_schedule(
    desired_count: int,
    preferences: RefreshPreferences,
    in_service: Optional[int] = None,
    already_replaced: int = 0,
) -> List[CheckpointStep]:
    """Checkpoints and batch sizes a plan would follow if every batch turns healthy.

    ``in_service`` defaults to ``desired_count`` (a steady fleet). Each batch
    adds new capacity and then removes the same number of old instances, so
    in-service capacity only grows when the fleet started under-sized.

    Raises:
        ConfigurationError: If the preferences are malformed
    """
    preferences.validate_for(desired_count)
    floor = preferences.min_healthy_count(desired_count)
    in_service = desired_count if in_service is None else in_service
    old_remaining = max(0, in_service - min(already_replaced, in_service))
    replaced = min(already_replaced, desired_count)

    steps = []
    for percentage in preferences.checkpoint_percentages:
        target = checkpoint_target(desired_count, percentage)
        batches = []
        while replaced < target:
            size = batch_size_for(target - replaced, in_service, floor)
            batches.append(size)
            in_service += size
            removable = min(size, old_remaining, max(0, in_service - floor))
            in_service -= removable
            old_remaining -= removable
            replaced += size
        bake = preferences.checkpoint_delay if percentage < 100 else 0.0
        steps.append(
            CheckpointStep(
                percentage=percentage,
                target_replaced=target,
                batches=tuple(batches),
                bake_seconds=bake,
            )
        )
    return steps
