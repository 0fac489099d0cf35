"""Rolling replacement engine.

Replaces every instance of a fleet with instances of a target template
version in checkpointed batches, never letting in-service capacity drop
below the plan's floor. New capacity is always launched and confirmed
healthy before any old capacity is removed.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Set

from ..core.enums import HealthState, LifecycleState, PlanStatus
from ..core.errors import (
    CancellationRequested,
    ConcurrentPlanConflict,
    ConfigurationError,
    FleetError,
    HealthTimeout,
    LaunchAmbiguousError,
    RolloutError,
)
from ..core.events import EventKind, EventRecorder, RolloutEvent
from ..core.log import get_logger, log_context, log_rollout_event
from ..core.time import Clock, SystemClock, poll_until
from ..core.types import RefreshPreferences
from ..fleet.health import HealthEvaluator
from ..fleet.models import InstanceRecord
from ..fleet.state_store import FleetStateStore
from ..utils.crypto import prefixed_id
from .plan import (
    CheckpointStep,
    ReplacementPlan,
    batch_size_for,
    checkpoint_target,
    preview_schedule,
)

logger = get_logger(__name__)


def oldest_first(records: List[InstanceRecord]) -> List[InstanceRecord]:
    """Order instances for retirement: earliest launch, then id."""
    return sorted(records, key=lambda r: (r.launch_time, r.id))


class RollingReplacementEngine:
    """Drives replacement plans, at most one running plan per fleet.

    The engine owns no fleet state; each call receives the fleet's
    ``FleetStateStore`` and explicit ``RefreshPreferences``. Warmup polling
    and checkpoint bakes suspend through the injected ``Clock``.
    """

    def __init__(
        self,
        health_evaluator: HealthEvaluator,
        clock: Optional[Clock] = None,
        events: Optional[EventRecorder] = None,
        max_workers: int = 4,
    ) -> None:
        self._health = health_evaluator
        self._clock = clock or SystemClock()
        self.events = events or EventRecorder()
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._registry_lock = threading.Lock()
        self._fleet_locks: Dict[str, threading.Lock] = {}
        self._active: Dict[str, ReplacementPlan] = {}
        self._last: Dict[str, ReplacementPlan] = {}
        self._cancel_flags: Dict[str, threading.Event] = {}

    # Public API

    def execute(
        self,
        store: FleetStateStore,
        target_version: int,
        desired_count: int,
        preferences: RefreshPreferences,
    ) -> ReplacementPlan:
        """Run a plan to a terminal status on the calling thread.

        Raises:
            ConcurrentPlanConflict: A plan is already running for the fleet
        """
        plan = self._begin(store, target_version, desired_count, preferences)
        self._run_and_release(store, plan)
        return plan

    def start(
        self,
        store: FleetStateStore,
        target_version: int,
        desired_count: int,
        preferences: RefreshPreferences,
    ) -> "Future[ReplacementPlan]":
        """Start a plan on a worker thread.

        The plan is registered before this returns, so ``status()`` sees it
        immediately and a second ``start`` for the same fleet conflicts.

        Raises:
            ConcurrentPlanConflict: A plan is already running for the fleet
        """
        plan = self._begin(store, target_version, desired_count, preferences)
        try:
            return self._get_executor().submit(self._run_and_release, store, plan)
        except RuntimeError:
            self._release(str(store.fleet_id), plan)
            raise

    def cancel(self, fleet_id: str) -> bool:
        """Request cancellation of the fleet's running plan.

        Takes effect at the next batch boundary; an in-flight batch always
        finishes its launch, health and termination steps first.

        Returns:
            True if a running plan will observe the request
        """
        with self._registry_lock:
            plan = self._active.get(str(fleet_id))
            flag = self._cancel_flags.get(str(fleet_id))
        if plan is None or flag is None:
            return False
        flag.set()
        log_rollout_event(logger, "cancel_requested", plan.plan_id)
        return True

    def is_running(self, fleet_id: str) -> bool:
        with self._registry_lock:
            return str(fleet_id) in self._active

    def status(self, fleet_id: str) -> Optional[ReplacementPlan]:
        """The running plan for the fleet, else the most recent finished one."""
        with self._registry_lock:
            fleet_key = str(fleet_id)
            return self._active.get(fleet_key) or self._last.get(fleet_key)

    def last_plan(self, fleet_id: str) -> Optional[ReplacementPlan]:
        """The most recent finished plan for the fleet."""
        with self._registry_lock:
            return self._last.get(str(fleet_id))

    def preview(
        self,
        desired_count: int,
        preferences: RefreshPreferences,
        in_service: Optional[int] = None,
    ) -> List[CheckpointStep]:
        return preview_schedule(desired_count, preferences, in_service=in_service)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool used by ``start``."""
        with self._registry_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # Plan registry

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._registry_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="fleetroll-plan"
                )
            return self._executor

    def _begin(
        self,
        store: FleetStateStore,
        target_version: int,
        desired_count: int,
        preferences: RefreshPreferences,
    ) -> ReplacementPlan:
        fleet_key = str(store.fleet_id)
        with self._registry_lock:
            lock = self._fleet_locks.setdefault(fleet_key, threading.Lock())
            if not lock.acquire(blocking=False):
                running = self._active.get(fleet_key)
                running_id = running.plan_id if running else None
                raise ConcurrentPlanConflict(
                    f"Fleet {fleet_key} already has a running plan {running_id}",
                    fleet_id=fleet_key,
                    running_plan_id=running_id,
                )
            plan = ReplacementPlan(
                plan_id=prefixed_id("plan"),
                fleet_id=fleet_key,
                target_version=target_version,
                desired_count=desired_count,
                preferences=preferences,
                started_at=self._clock.wall_time(),
            )
            self._active[fleet_key] = plan
            self._cancel_flags[fleet_key] = threading.Event()

        log_rollout_event(
            logger,
            "started",
            plan.plan_id,
            fleet_id=fleet_key,
            target_version=target_version,
            desired_count=desired_count,
        )
        self._publish(EventKind.PLAN_STARTED, plan, {"desired_count": desired_count})
        return plan

    def _release(self, fleet_key: str, plan: ReplacementPlan) -> None:
        with self._registry_lock:
            if self._active.get(fleet_key) is plan:
                del self._active[fleet_key]
                self._cancel_flags.pop(fleet_key, None)
            self._last[fleet_key] = plan
            self._fleet_locks[fleet_key].release()

    def _run_and_release(self, store: FleetStateStore, plan: ReplacementPlan) -> ReplacementPlan:
        try:
            with log_context(plan_id=plan.plan_id, fleet_id=plan.fleet_id):
                self._run(store, plan)
        finally:
            self._release(plan.fleet_id, plan)
        return plan

    # Plan execution

    def _run(self, store: FleetStateStore, plan: ReplacementPlan) -> None:
        with self._registry_lock:
            cancel_flag = self._cancel_flags[plan.fleet_id]
        try:
            plan.preferences.validate_for(plan.desired_count)
            if plan.target_version < 1:
                raise ConfigurationError(
                    f"target_version must be a positive version id, got {plan.target_version}"
                )
            plan.advance(self._count_replaced(store, plan.target_version, plan.desired_count))
            for percentage in plan.checkpoint_percentages:
                self._run_checkpoint(store, plan, percentage, cancel_flag)
            self._retire_surplus(store, plan)
        except CancellationRequested as e:
            self._finish(store, plan, PlanStatus.CANCELLED, e)
        except (ConfigurationError, HealthTimeout, FleetError, RolloutError) as e:
            self._finish(store, plan, PlanStatus.FAILED, e)
        except Exception as e:
            self._finish(store, plan, PlanStatus.FAILED, e)
            raise
        else:
            self._finish(store, plan, PlanStatus.COMPLETED)

    def _run_checkpoint(
        self,
        store: FleetStateStore,
        plan: ReplacementPlan,
        percentage: float,
        cancel_flag: threading.Event,
    ) -> None:
        plan.enter_checkpoint(percentage)
        target = checkpoint_target(plan.desired_count, percentage)
        while plan.replaced_count < target:
            if cancel_flag.is_set():
                raise CancellationRequested(
                    f"Plan {plan.plan_id} cancelled after {plan.replaced_count} replacements"
                )
            self._replace_batch(store, plan, target)

        self._publish(
            EventKind.CHECKPOINT_REACHED,
            plan,
            {"replaced_count": plan.replaced_count, "target_replaced": target},
            {"percentage": percentage},
        )
        if percentage < 100 and plan.checkpoint_delay > 0:
            logger.info(
                "Plan %s baking %.0fs at checkpoint %s%%",
                plan.plan_id,
                plan.checkpoint_delay,
                percentage,
            )
            self._clock.sleep(plan.checkpoint_delay)

    def _replace_batch(self, store: FleetStateStore, plan: ReplacementPlan, target: int) -> None:
        floor = plan.min_healthy_count
        in_service = store.in_service_count()
        size = batch_size_for(target - plan.replaced_count, in_service, floor)
        logger.debug(
            "Plan %s batch of %d (in_service=%d floor=%d)",
            plan.plan_id,
            size,
            in_service,
            floor,
        )

        self._launch_healthy_batch(store, plan, size)
        retired = self._retire_old(store, plan, size)

        plan.advance(size)
        self._publish(
            EventKind.BATCH_REPLACED,
            plan,
            {
                "batch_size": size,
                "terminated": len(retired),
                "replaced_count": plan.replaced_count,
                "desired_count": plan.desired_count,
                "in_service": store.in_service_count(),
            },
        )

    def _launch_healthy_batch(
        self, store: FleetStateStore, plan: ReplacementPlan, size: int
    ) -> List[str]:
        """Launch ``size`` slots and return once every slot is InService.

        A slot whose instance is not healthy when warmup expires has that
        instance terminated and a replacement launched, until the slot has
        used up ``max_launch_retries``.

        Raises:
            HealthTimeout: A slot exhausted its retries
        """
        slots = self._launch(store, plan, size)
        attempts = [0] * len(slots)
        healthy: Set[str] = set()

        while True:
            waiting = [instance_id for instance_id in slots if instance_id not in healthy]
            if not waiting:
                return slots
            healthy |= self._await_warmup(store, plan, waiting)
            failed = [i for i, instance_id in enumerate(slots) if instance_id not in healthy]
            if not failed:
                return slots

            failed_ids = [slots[i] for i in failed]
            logger.warning(
                "Plan %s: %d instance(s) not healthy after warmup: %s",
                plan.plan_id,
                len(failed_ids),
                failed_ids,
            )
            store.terminate(failed_ids)
            for i in failed:
                attempts[i] += 1

            exhausted = [i for i in failed if attempts[i] > plan.preferences.max_launch_retries]
            if exhausted:
                raise HealthTimeout(
                    f"{len(exhausted)} slot(s) failed health checks "
                    f"{plan.preferences.max_launch_retries + 1} time(s)",
                    attempts=max(attempts),
                    instance_ids=failed_ids,
                )

            replacements = self._launch(store, plan, len(failed))
            for i, instance_id in zip(failed, replacements):
                slots[i] = instance_id

    def _launch(self, store: FleetStateStore, plan: ReplacementPlan, count: int) -> List[str]:
        """Launch ``count`` instances, adopting any from an ambiguous attempt."""
        launched: List[str] = []
        attempts = 0
        while len(launched) < count:
            known = {record.id for record in store.snapshot()}
            try:
                launched.extend(store.launch(plan.target_version, count - len(launched)))
            except LaunchAmbiguousError as e:
                attempts += 1
                store.refresh()
                adopted = [
                    record.id
                    for record in store.snapshot()
                    if record.id not in known
                    and record.template_version == plan.target_version
                    and record.lifecycle_state is LifecycleState.PENDING
                ]
                log_rollout_event(
                    logger,
                    "launch_ambiguous",
                    plan.plan_id,
                    requested=e.count,
                    adopted=adopted,
                )
                launched.extend(adopted[: count - len(launched)])
                if len(launched) < count and attempts > plan.preferences.max_launch_retries:
                    raise
        return launched

    def _await_warmup(
        self, store: FleetStateStore, plan: ReplacementPlan, instance_ids: List[str]
    ) -> Set[str]:
        """Poll health until all instances are InService or warmup expires."""
        healthy: Set[str] = set()

        def all_in_service() -> bool:
            remaining = [i for i in instance_ids if i not in healthy]
            try:
                states = self._health.check_many(remaining)
            except Exception as e:  # pylint: disable=broad-except
                logger.warning(
                    "Plan %s: health evaluation failed, treating %d instance(s) as unknown: %s",
                    plan.plan_id,
                    len(remaining),
                    e,
                )
                states = {instance_id: HealthState.UNKNOWN for instance_id in remaining}
            for instance_id, state in states.items():
                if state is HealthState.HEALTHY:
                    store.mark_in_service(instance_id)
                    healthy.add(instance_id)
                else:
                    store.set_health(instance_id, state)
            return len(healthy) == len(instance_ids)

        poll_until(
            self._clock,
            all_in_service,
            timeout=plan.instance_warmup,
            interval=plan.preferences.health_poll_interval,
        )
        return healthy

    def _retire_old(self, store: FleetStateStore, plan: ReplacementPlan, count: int) -> List[str]:
        """Terminate up to ``count`` old instances without crossing the floor."""
        floor = plan.min_healthy_count
        candidates = oldest_first(
            [
                record
                for record in store.list()
                if record.template_version != plan.target_version
                and record.lifecycle_state is not LifecycleState.DRAINING
            ]
        )
        in_service = store.in_service_count()
        selected = []
        for record in candidates:
            if len(selected) >= count:
                break
            if record.is_in_service:
                if in_service - 1 < floor:
                    continue
                in_service -= 1
            selected.append(record.id)
        store.terminate(selected)
        return selected

    def _retire_surplus(self, store: FleetStateStore, plan: ReplacementPlan) -> None:
        remaining = [
            record for record in store.list() if record.template_version != plan.target_version
        ]
        if remaining:
            retired = self._retire_old(store, plan, len(remaining))
            logger.info("Plan %s retired %d surplus instance(s)", plan.plan_id, len(retired))

    @staticmethod
    def _count_replaced(store: FleetStateStore, version: int, desired_count: int) -> int:
        """Instances already serving on the target version."""
        serving = store.count(state=LifecycleState.IN_SERVICE, version=version)
        return min(serving, desired_count)

    def _finish(
        self,
        store: FleetStateStore,
        plan: ReplacementPlan,
        status: PlanStatus,
        error: Optional[BaseException] = None,
    ) -> None:
        if error is None:
            reason = f"replaced {plan.replaced_count}/{plan.desired_count} instances"
            error_kind = None
        else:
            error_kind = type(error).__name__
            reason = f"{error_kind}: {error}"
        plan.finish(status, reason, self._clock.wall_time(), error_kind=error_kind)

        log_rollout_event(
            logger,
            status.value.lower(),
            plan.plan_id,
            status=status.value,
            reason=reason,
            replaced_count=plan.replaced_count,
        )
        self._publish(
            EventKind.PLAN_TERMINAL,
            plan,
            {
                "replaced_count": plan.replaced_count,
                "desired_count": plan.desired_count,
                "in_service": store.in_service_count(),
            },
            {"status": status.value, "reason": reason},
        )

    def _publish(
        self,
        kind: EventKind,
        plan: ReplacementPlan,
        counts: Dict[str, int],
        attributes: Optional[Dict[str, object]] = None,
    ) -> None:
        self.events.publish(
            RolloutEvent(
                kind=kind,
                subject_id=plan.plan_id,
                timestamp=self._clock.wall_time(),
                counts=counts,
                attributes=dict(attributes or {}, fleet_id=plan.fleet_id),
            )
        )
