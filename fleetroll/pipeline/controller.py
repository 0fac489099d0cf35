"""Pipeline controller: Source -> Build -> Deploy."""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..core.enums import PipelineStage, PipelineState, PlanStatus
from ..core.errors import (
    BuildFailure,
    ConcurrentPlanConflict,
    SourceError,
    VersionNotFoundError,
)
from ..core.events import EventKind, EventRecorder, RolloutEvent
from ..core.log import get_logger, log_context, log_pipeline_event
from ..core.time import Clock, SystemClock
from ..core.types import RefreshPreferences
from ..fleet.state_store import FleetStateStore
from ..rollout.engine import RollingReplacementEngine
from ..rollout.plan import ReplacementPlan
from ..rollout.rollback import current_target_version, select_rollback_target
from ..templates.artifacts import ArtifactRegistry
from ..templates.versions import TemplateVersion, TemplateVersionManager
from ..utils.crypto import prefixed_id
from .stages import BuildStage, SourceStage

logger = get_logger(__name__)

_STAGE_OF = {
    PipelineState.SOURCE_FETCHED: PipelineStage.SOURCE,
    PipelineState.BUILDING: PipelineStage.BUILD,
    PipelineState.BUILD_SUCCEEDED: PipelineStage.BUILD,
    PipelineState.BUILD_FAILED: PipelineStage.BUILD,
    PipelineState.DEPLOYING: PipelineStage.DEPLOY,
    PipelineState.COMPLETED: PipelineStage.DEPLOY,
}


@dataclass
class PipelineRun:
    """One execution of the pipeline and where it ended."""

    run_id: str
    source_ref: str
    started_at: float
    state: PipelineState = PipelineState.IDLE
    commit_ref: Optional[str] = None
    artifact_id: Optional[str] = None
    template_version: Optional[int] = None
    plan_id: Optional[str] = None
    plan_status: Optional[PlanStatus] = None
    deploy_skipped: bool = False
    reason: Optional[str] = None
    finished_at: Optional[float] = None
    transitions: List[PipelineState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in (PipelineState.COMPLETED, PipelineState.BUILD_SUCCEEDED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source_ref": self.source_ref,
            "state": self.state.value,
            "commit_ref": self.commit_ref,
            "artifact_id": self.artifact_id,
            "template_version": self.template_version,
            "plan_id": self.plan_id,
            "plan_status": self.plan_status.value if self.plan_status else None,
            "deploy_skipped": self.deploy_skipped,
            "reason": self.reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class DeployResult:
    """Outcome of the deploy stage.

    ``plan`` is the plan that now governs the fleet; when ``created_plan`` is
    False it is the earlier completed plan and nothing was mutated.
    """

    version: TemplateVersion
    plan: ReplacementPlan
    created_plan: bool


class PipelineController:
    """Runs stages strictly in sequence for a single fleet.

    Only one deploy, rollback or trigger-driven deploy may be active at a
    time; a second request while one is active raises
    ``ConcurrentPlanConflict`` instead of queueing.
    """

    def __init__(
        self,
        source: SourceStage,
        build: BuildStage,
        artifacts: ArtifactRegistry,
        versions: TemplateVersionManager,
        engine: RollingReplacementEngine,
        store: FleetStateStore,
        clock: Optional[Clock] = None,
        events: Optional[EventRecorder] = None,
        deploy_enabled: bool = True,
        instance_settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._source = source
        self._build = build
        self.artifacts = artifacts
        self.versions = versions
        self.engine = engine
        self.store = store
        self._clock = clock or SystemClock()
        self.events = events or engine.events
        self.deploy_enabled = deploy_enabled
        self._instance_settings = dict(instance_settings or {})
        self._deploy_lock = threading.Lock()
        self._runs: List[PipelineRun] = []
        self._runs_lock = threading.Lock()

    @property
    def fleet_id(self) -> str:
        return str(self.store.fleet_id)

    def runs(self) -> List[PipelineRun]:
        """All runs, most recent first."""
        with self._runs_lock:
            return list(reversed(self._runs))

    def trigger(
        self,
        source_ref: str,
        desired_count: int,
        preferences: RefreshPreferences,
    ) -> PipelineRun:
        """Run Source, Build and (if enabled) Deploy.

        A failed build ends the run in BUILD_FAILED without touching the
        fleet. A deploy whose plan fails or is cancelled ends in FAILED. An
        error escaping the deploy also ends the run in FAILED before it
        propagates.

        Raises:
            ConcurrentPlanConflict: A deploy for this fleet is already active
        """
        self._reject_if_deploying()
        run = PipelineRun(
            run_id=prefixed_id("run"),
            source_ref=source_ref,
            started_at=self._clock.wall_time(),
        )
        with self._runs_lock:
            self._runs.append(run)

        with log_context(run_id=run.run_id, fleet_id=self.fleet_id):
            try:
                run.commit_ref = self._source.fetch(source_ref)
            except SourceError as e:
                self._end(run, PipelineState.FAILED, f"SourceError: {e}")
                return run
            self._transition(run, PipelineState.SOURCE_FETCHED)

            self._transition(run, PipelineState.BUILDING)
            try:
                artifact = self._build.build(run.commit_ref)
            except BuildFailure as e:
                self._end(run, PipelineState.BUILD_FAILED, f"BuildFailure: {e}")
                return run
            run.artifact_id = artifact.id
            self._transition(run, PipelineState.BUILD_SUCCEEDED)

            if not self.deploy_enabled:
                run.deploy_skipped = True
                self._end(run, PipelineState.BUILD_SUCCEEDED, "deploy disabled")
                return run

            self._transition(run, PipelineState.DEPLOYING)
            try:
                result = self.deploy(artifact.id, desired_count, preferences)
            except Exception as e:
                self._end(run, PipelineState.FAILED, f"{type(e).__name__}: {e}")
                raise

            run.template_version = result.version.id
            plan = result.plan
            run.plan_id = plan.plan_id
            run.plan_status = plan.status
            if plan.status is PlanStatus.COMPLETED:
                self._end(run, PipelineState.COMPLETED, plan.reason)
            else:
                self._end(run, PipelineState.FAILED, plan.reason)
        return run

    def deploy(
        self,
        artifact_id: str,
        desired_count: int,
        preferences: RefreshPreferences,
    ) -> DeployResult:
        """Roll the fleet to ``artifact_id``, blocking until the plan is terminal.

        An artifact already bound to the fleet's current target version is
        not given a new version: if the last plan on it completed nothing
        happens, otherwise that version is targeted again.

        Raises:
            ArtifactNotReadyError: The artifact is not Ready
            ConcurrentPlanConflict: A deploy for this fleet is already active
        """
        artifact = self.artifacts.get(artifact_id)
        with self._deploying():
            current = current_target_version(self.engine, self.store)
            version = None
            if current is not None:
                try:
                    candidate = self.versions.get(current)
                except VersionNotFoundError:
                    candidate = None
                if candidate is not None and candidate.artifact_ref == artifact.id:
                    version = candidate

            if version is not None:
                last = self.engine.last_plan(self.fleet_id)
                if (
                    last is not None
                    and last.target_version == version.id
                    and last.status is PlanStatus.COMPLETED
                ):
                    log_pipeline_event(
                        logger,
                        "deploy_noop",
                        artifact_id=artifact.id,
                        template_version=version.id,
                    )
                    return DeployResult(version=version, plan=last, created_plan=False)
                logger.info(
                    "Re-targeting existing version %d for artifact %s", version.id, artifact.id
                )
            else:
                version = self.versions.create_version(artifact, self._instance_settings)

            plan = self.engine.execute(self.store, version.id, desired_count, preferences)
            return DeployResult(version=version, plan=plan, created_plan=True)

    def rollback(
        self,
        desired_count: int,
        preferences: RefreshPreferences,
        to_version: Optional[int] = None,
    ) -> ReplacementPlan:
        """Replace the fleet with a prior template version.

        Raises:
            RollbackError: No prior version is available
            ConcurrentPlanConflict: A deploy for this fleet is already active
        """
        with self._deploying():
            current = current_target_version(self.engine, self.store)
            target = select_rollback_target(self.versions, current, to_version)
            log_pipeline_event(
                logger, "rollback", from_version=current, to_version=target.id
            )
            return self.engine.execute(self.store, target.id, desired_count, preferences)

    def cancel(self) -> bool:
        """Request cancellation of the fleet's running plan."""
        return self.engine.cancel(self.fleet_id)

    # Internals

    def _reject_if_deploying(self) -> None:
        if self._deploy_lock.locked() or self.engine.is_running(self.fleet_id):
            running = self.engine.status(self.fleet_id)
            running_id = running.plan_id if running is not None and running.is_running else None
            raise ConcurrentPlanConflict(
                f"Fleet {self.fleet_id} is already deploying",
                fleet_id=self.fleet_id,
                running_plan_id=running_id,
            )

    @contextmanager
    def _deploying(self) -> Iterator[None]:
        if not self._deploy_lock.acquire(blocking=False):
            self._reject_if_deploying()
            raise ConcurrentPlanConflict(
                f"Fleet {self.fleet_id} is already deploying", fleet_id=self.fleet_id
            )
        try:
            yield
        finally:
            self._deploy_lock.release()

    def _transition(self, run: PipelineRun, state: PipelineState) -> None:
        previous = run.state
        run.state = state
        run.transitions.append(state)
        log_pipeline_event(
            logger, state.value, run.run_id, previous=previous.value
        )
        stage = _STAGE_OF.get(state)
        self.events.publish(
            RolloutEvent(
                kind=EventKind.STAGE_CHANGED,
                subject_id=run.run_id,
                timestamp=self._clock.wall_time(),
                attributes={
                    "state": state.value,
                    "previous_state": previous.value,
                    "stage": stage.value if stage else None,
                    "fleet_id": self.fleet_id,
                },
            )
        )

    def _end(self, run: PipelineRun, state: PipelineState, reason: Optional[str]) -> None:
        run.reason = reason
        run.finished_at = self._clock.wall_time()
        if run.state is not state:
            self._transition(run, state)
        if state in (PipelineState.FAILED, PipelineState.BUILD_FAILED):
            logger.error("Pipeline run %s ended %s: %s", run.run_id, state.value, reason)

