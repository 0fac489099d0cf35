"""Tests for PipelineController."""

import threading
from unittest.mock import patch

import pytest

from fleetroll.core.enums import HealthState, LifecycleState, PipelineState, PlanStatus
from fleetroll.core.errors import (
    ArtifactNotReadyError,
    ConcurrentPlanConflict,
    RollbackError,
)
from fleetroll.core.events import EventKind
from fleetroll.pipeline.controller import PipelineController
from fleetroll.pipeline.stages import CallableBuildStage, StaticSource
from fleetroll.templates.artifacts import ArtifactRegistry
from fleetroll.templates.versions import TemplateVersionManager
from fleetroll.testing.fakes import seed_fleet


class FlakyBuilder:
    """Builder that fails for commits listed in ``broken``."""

    def __init__(self):
        self.broken = set()
        self.calls = []

    def __call__(self, commit_ref):
        self.calls.append(commit_ref)
        if commit_ref in self.broken:
            raise RuntimeError(f"compile error in {commit_ref}")
        return f"ami-{commit_ref}"


@pytest.fixture
def builder():
    return FlakyBuilder()


@pytest.fixture
def artifacts(clock):
    return ArtifactRegistry(clock)


@pytest.fixture
def versions(clock):
    return TemplateVersionManager(clock)


@pytest.fixture
def controller(artifacts, versions, engine, store, clock, builder):
    return PipelineController(
        source=StaticSource(),
        build=CallableBuildStage(artifacts, builder),
        artifacts=artifacts,
        versions=versions,
        engine=engine,
        store=store,
        clock=clock,
    )


class TestTrigger:
    """Full pipeline runs."""

    def test_successful_run_deploys_new_version(self, controller, store, make_preferences):
        run = controller.trigger("abc123", 2, make_preferences())

        assert run.state is PipelineState.COMPLETED
        assert run.transitions == [
            PipelineState.SOURCE_FETCHED,
            PipelineState.BUILDING,
            PipelineState.BUILD_SUCCEEDED,
            PipelineState.DEPLOYING,
            PipelineState.COMPLETED,
        ]
        assert run.commit_ref == "abc123"
        assert run.template_version == 1
        assert run.plan_status is PlanStatus.COMPLETED
        assert run.succeeded
        assert store.count(state=LifecycleState.IN_SERVICE, version=1) == 2

    def test_build_failure_never_touches_fleet(
        self, controller, engine, backend, store, builder, versions, make_preferences
    ):
        seed_fleet(store, 1, 3)
        builder.broken.add("bad")
        launches, terminations = backend.launch_calls, backend.terminate_calls

        run = controller.trigger("bad", 3, make_preferences())

        assert run.state is PipelineState.BUILD_FAILED
        assert run.reason.startswith("BuildFailure:")
        assert PipelineState.DEPLOYING not in run.transitions
        assert backend.launch_calls == launches
        assert backend.terminate_calls == terminations
        assert engine.last_plan("web") is None
        assert versions.latest() is None

    def test_source_error_fails_run(self, controller, builder, make_preferences):
        run = controller.trigger("   ", 2, make_preferences())

        assert run.state is PipelineState.FAILED
        assert run.reason.startswith("SourceError:")
        assert builder.calls == []

    def test_deploy_disabled_stops_after_build(
        self, controller, backend, versions, make_preferences
    ):
        controller.deploy_enabled = False

        run = controller.trigger("abc123", 2, make_preferences())

        assert run.state is PipelineState.BUILD_SUCCEEDED
        assert run.deploy_skipped
        assert run.artifact_id is not None
        assert versions.latest() is None
        assert backend.launch_calls == 0

    def test_failed_plan_fails_run(self, controller, health, store, make_preferences):
        prefs = make_preferences(min_healthy_percentage=50, max_launch_retries=0)
        controller.trigger("aaa", 2, prefs)
        health.default = HealthState.UNHEALTHY

        run = controller.trigger("bbb", 2, prefs)

        assert run.state is PipelineState.FAILED
        assert run.plan_status is PlanStatus.FAILED
        assert run.reason.startswith("HealthTimeout:")
        assert store.count(state=LifecycleState.IN_SERVICE, version=1) == 2

    def test_unexpected_deploy_error_fails_run_and_propagates(
        self, controller, backend, store, make_preferences
    ):
        with patch.object(
            backend, "launch_instances", side_effect=RuntimeError("provider crashed")
        ):
            with pytest.raises(RuntimeError, match="provider crashed"):
                controller.trigger("abc123", 2, make_preferences())

        run = controller.runs()[0]
        assert run.state is PipelineState.FAILED
        assert run.transitions[-2:] == [PipelineState.DEPLOYING, PipelineState.FAILED]
        assert run.reason == "RuntimeError: provider crashed"
        assert run.finished_at is not None
        assert store.count() == 0
        assert not controller.engine.is_running(controller.fleet_id)

    def test_stage_events_published(self, controller, events, make_preferences):
        run = controller.trigger("abc123", 1, make_preferences())

        stage_events = events.history(EventKind.STAGE_CHANGED)
        assert [e.attributes["state"] for e in stage_events] == [
            s.value for s in run.transitions
        ]
        assert all(e.subject_id == run.run_id for e in stage_events)
        assert stage_events[0].attributes["stage"] == "source"

    def test_runs_history_most_recent_first(self, controller, make_preferences):
        first = controller.trigger("aaa", 1, make_preferences())
        second = controller.trigger("bbb", 1, make_preferences())

        assert controller.runs() == [second, first]


class TestDeploy:
    """Deploy stage entry."""

    def test_redeploying_completed_artifact_is_noop(
        self, controller, backend, versions, make_preferences
    ):
        run = controller.trigger("abc123", 2, make_preferences())
        launches = backend.launch_calls

        result = controller.deploy(run.artifact_id, 2, make_preferences())

        assert result.created_plan is False
        assert result.plan.plan_id == run.plan_id
        assert result.version.id == run.template_version
        assert len(versions.history()) == 1
        assert backend.launch_calls == launches

    def test_redeploying_after_failed_plan_retargets_same_version(
        self, controller, health, store, versions, make_preferences
    ):
        prefs = make_preferences(min_healthy_percentage=50, max_launch_retries=0)
        controller.trigger("aaa", 2, prefs)
        health.default = HealthState.UNHEALTHY
        run = controller.trigger("bbb", 2, prefs)
        assert run.state is PipelineState.FAILED
        health.default = HealthState.HEALTHY

        result = controller.deploy(run.artifact_id, 2, prefs)

        assert result.created_plan is True
        assert result.version.id == run.template_version
        assert result.plan.status is PlanStatus.COMPLETED
        assert len(versions.history()) == 2
        assert {r.template_version for r in store.list()} == {2}

    def test_building_artifact_cannot_be_deployed(self, controller, artifacts, make_preferences):
        artifact = artifacts.begin("abc123")

        with pytest.raises(ArtifactNotReadyError):
            controller.deploy(artifact.id, 2, make_preferences())

    def test_new_artifact_creates_new_version(self, controller, versions, make_preferences):
        controller.trigger("aaa", 1, make_preferences())
        run = controller.trigger("bbb", 1, make_preferences())

        assert run.template_version == 2
        assert versions.get(2).image_id == "ami-bbb"


class TestRollback:
    """Rolling back to an earlier version."""

    def test_rollback_to_previous_version(self, controller, store, make_preferences):
        controller.trigger("aaa", 2, make_preferences())
        controller.trigger("bbb", 2, make_preferences())

        plan = controller.rollback(2, make_preferences())

        assert plan.target_version == 1
        assert plan.status is PlanStatus.COMPLETED
        assert {r.template_version for r in store.list()} == {1}

    def test_rollback_without_history_fails(self, controller, make_preferences):
        controller.trigger("aaa", 1, make_preferences())

        with pytest.raises(RollbackError):
            controller.rollback(1, make_preferences())


class TestConcurrency:
    """One deploy at a time."""

    def test_trigger_during_active_deploy_is_rejected(
        self, controller, health, clock, make_preferences
    ):
        health.default = HealthState.UNKNOWN
        deploying = threading.Event()
        release = threading.Event()

        def block(_seconds):
            deploying.set()
            release.wait(5)

        clock.on_sleep(block)
        result = {}
        worker = threading.Thread(
            target=lambda: result.setdefault(
                "run", controller.trigger("aaa", 1, make_preferences())
            )
        )
        worker.start()
        try:
            assert deploying.wait(5)

            with pytest.raises(ConcurrentPlanConflict):
                controller.trigger("bbb", 1, make_preferences())
            with pytest.raises(ConcurrentPlanConflict):
                controller.rollback(1, make_preferences())
        finally:
            health.default = HealthState.HEALTHY
            release.set()
            worker.join(5)

        assert result["run"].state is PipelineState.COMPLETED
        assert len(controller.runs()) == 1

    def test_cancel_without_plan(self, controller):
        assert controller.cancel() is False
