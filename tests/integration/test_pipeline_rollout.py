"""End-to-end pipeline runs against the in-memory sandbox."""

import pytest

from fleetroll.core.enums import LifecycleState, PipelineState, PlanStatus
from fleetroll.core.events import EventKind
from fleetroll.core.types import FleetrollConfig, RefreshPreferences
from fleetroll.testing.fakes import InServiceSampler, ScriptedHealthEvaluator
from fleetroll.testing.sandbox import sandbox

pytestmark = pytest.mark.integration

PREFERENCES = RefreshPreferences(
    min_healthy_percentage=90,
    instance_warmup=300,
    checkpoint_delay=600,
    checkpoint_percentages=(50, 100),
    max_launch_retries=1,
    health_poll_interval=15,
)


@pytest.fixture
def health():
    return ScriptedHealthEvaluator()


@pytest.fixture
def env(health):
    config = FleetrollConfig(fleet={"fleet_id": "web", "desired_count": 10})
    with sandbox(config, seed_version_ref="release-1", health=health) as ctx:
        yield ctx


@pytest.fixture
def sampler(env):
    sampler = InServiceSampler(env.store)
    env.clock.on_sleep(sampler)
    env.events.subscribe(sampler)
    return sampler


def _versions_in_service(store):
    return sorted(
        r.template_version
        for r in store.list()
        if r.lifecycle_state is LifecycleState.IN_SERVICE
    )


class TestRelease:
    """Building and rolling out a new release."""

    def test_checkpointed_release_keeps_capacity(self, env, sampler):
        run = env.controller.trigger("release-2", 10, PREFERENCES)

        assert run.state is PipelineState.COMPLETED
        assert run.template_version == 2
        assert _versions_in_service(env.store) == [2] * 10
        assert sampler.minimum >= 9
        assert env.clock.sleeps == [600]

        checkpoints = env.events.history(EventKind.CHECKPOINT_REACHED)
        assert [e.attributes["percentage"] for e in checkpoints] == [50, 100]
        assert [e.counts["replaced_count"] for e in checkpoints] == [5, 10]

        batches = env.events.history(EventKind.BATCH_REPLACED)
        assert [e.counts["batch_size"] for e in batches] == [1] * 10

        (terminal,) = env.events.history(EventKind.PLAN_TERMINAL)
        assert terminal.attributes["status"] == PlanStatus.COMPLETED.value

    def test_unhealthy_release_leaves_old_fleet_serving(self, env, health, sampler):
        health.fail_next(2)
        launches = env.backend.launch_calls

        run = env.controller.trigger("release-2", 10, PREFERENCES)

        assert run.state is PipelineState.FAILED
        assert run.plan_status is PlanStatus.FAILED
        assert run.reason.startswith("HealthTimeout:")
        assert _versions_in_service(env.store) == [1] * 10
        assert sampler.minimum >= 9
        assert env.backend.launch_calls - launches == 2

    def test_retry_after_failure_reuses_version(self, env, health):
        health.fail_next(2)
        failed = env.controller.trigger("release-2", 10, PREFERENCES)

        result = env.controller.deploy(failed.artifact_id, 10, PREFERENCES)

        assert result.created_plan
        assert result.version.id == failed.template_version
        assert result.plan.status is PlanStatus.COMPLETED
        assert _versions_in_service(env.store) == [2] * 10

    def test_failed_build_does_not_touch_fleet(self):
        def builder(commit_ref):
            if commit_ref == "broken":
                raise RuntimeError("image bake failed")
            return f"ami-{commit_ref}"

        config = FleetrollConfig(fleet={"fleet_id": "web", "desired_count": 4})
        with sandbox(config, seed_version_ref="release-1", builder=builder) as ctx:
            before = {r.id for r in ctx.store.list()}

            run = ctx.controller.trigger("broken", 4, PREFERENCES)

            assert run.state is PipelineState.BUILD_FAILED
            assert {r.id for r in ctx.store.list()} == before
            assert ctx.engine.last_plan("web") is None


class TestRollback:
    """Returning to the previous release."""

    def test_rollback_after_release(self, env, sampler):
        env.controller.trigger("release-2", 10, PREFERENCES)

        plan = env.controller.rollback(10, PREFERENCES)

        assert plan.status is PlanStatus.COMPLETED
        assert plan.target_version == 1
        assert _versions_in_service(env.store) == [1] * 10
        assert sampler.minimum >= 9

    def test_cancel_mid_release_then_resume(self, env):
        requested = []

        def cancel_at_first_bake(seconds):
            if seconds == 600 and not requested:
                requested.append(env.controller.cancel())

        env.clock.on_sleep(cancel_at_first_bake)

        cancelled = env.controller.trigger("release-2", 10, PREFERENCES)

        assert requested == [True]
        assert cancelled.plan_status is PlanStatus.CANCELLED
        assert env.store.count(state=LifecycleState.IN_SERVICE, version=2) == 5
        assert env.store.in_service_count() == 10

        resumed = env.controller.deploy(cancelled.artifact_id, 10, PREFERENCES)

        assert resumed.plan.status is PlanStatus.COMPLETED
        assert resumed.plan.replaced_count == 10
        assert _versions_in_service(env.store) == [2] * 10
