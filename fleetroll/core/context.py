"""Application context for explicit dependency management.

``ApplicationContext`` is the single immutable container wiring a
configuration to the components that act on it. Nothing is global: callers
create a context and pass its parts where they are needed.

Usage:
    config = load_config(Path("fleetroll.yml"))
    ctx = ApplicationContext.create(config, backend=my_backend,
                                    address_resolver=lookup_private_ip)
    run = ctx.controller.trigger("main", config.fleet.desired_count, config.refresh)
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from .errors import ConfigurationError
from .events import EventRecorder
from .time import Clock, SystemClock
from .types import FleetrollConfig

if TYPE_CHECKING:
    from ..fleet.backend import InstanceBackend
    from ..fleet.health import HealthEvaluator
    from ..fleet.state_store import FleetStateStore
    from ..pipeline.controller import PipelineController
    from ..pipeline.stages import BuildStage, SourceStage
    from ..rollout.engine import RollingReplacementEngine
    from ..templates.artifacts import ArtifactRegistry
    from ..templates.versions import TemplateVersionManager


@dataclass(frozen=True)
class ApplicationContext:
    """Immutable application-wide context containing all dependencies."""

    config: FleetrollConfig
    clock: Clock
    events: EventRecorder
    backend: "InstanceBackend"
    store: "FleetStateStore"
    health: "HealthEvaluator"
    engine: "RollingReplacementEngine"
    artifacts: "ArtifactRegistry"
    versions: "TemplateVersionManager"
    controller: "PipelineController"

    @classmethod
    def create(
        cls,
        config: FleetrollConfig,
        *,
        backend: "InstanceBackend",
        health_evaluator: Optional["HealthEvaluator"] = None,
        address_resolver: Optional[Callable[[str], Optional[str]]] = None,
        clock: Optional[Clock] = None,
        source: Optional["SourceStage"] = None,
        builder: Optional[Callable[[str], str]] = None,
        events: Optional[EventRecorder] = None,
    ) -> "ApplicationContext":
        """Wire every component from ``config``.

        The build stage is ``builder`` wrapped in a ``CallableBuildStage`` if
        given, else ``config.build_command`` run by a ``CommandBuildStage``.
        Without an explicit ``health_evaluator`` instances are probed over
        HTTP at the addresses ``address_resolver`` returns.

        Raises:
            ConfigurationError: Neither a builder nor a build command is set
        """
        # Import here to avoid circular dependencies at module level
        from ..fleet.health import HttpHealthEvaluator
        from ..fleet.state_store import FleetStateStore
        from ..pipeline.controller import PipelineController
        from ..pipeline.stages import CallableBuildStage, CommandBuildStage, StaticSource
        from ..rollout.engine import RollingReplacementEngine
        from ..templates.artifacts import ArtifactRegistry
        from ..templates.versions import TemplateVersionManager

        clock = clock or SystemClock()
        events = events or EventRecorder()
        artifacts = ArtifactRegistry(clock)
        versions = TemplateVersionManager(clock)

        build: "BuildStage"
        if builder is not None:
            build = CallableBuildStage(artifacts, builder)
        elif config.build_command:
            build = CommandBuildStage(
                artifacts, config.build_command, timeout=config.timeouts.build_command
            )
        else:
            raise ConfigurationError("No build stage configured: set build_command")

        if health_evaluator is None:
            health_evaluator = HttpHealthEvaluator(
                address_resolver or (lambda _instance_id: None),
                path=config.fleet.health_check_path,
                port=config.fleet.health_check_port,
                timeout_config=config.timeouts,
            )

        store = FleetStateStore(config.fleet.fleet_id, backend)
        engine = RollingReplacementEngine(health_evaluator, clock=clock, events=events)
        controller = PipelineController(
            source=source or StaticSource(),
            build=build,
            artifacts=artifacts,
            versions=versions,
            engine=engine,
            store=store,
            clock=clock,
            events=events,
            deploy_enabled=config.deploy_enabled,
            instance_settings=config.fleet.instance_settings,
        )
        return cls(
            config=config,
            clock=clock,
            events=events,
            backend=backend,
            store=store,
            health=health_evaluator,
            engine=engine,
            artifacts=artifacts,
            versions=versions,
            controller=controller,
        )

    def shutdown(self) -> None:
        self.engine.shutdown()
