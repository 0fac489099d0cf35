"""Main CLI entry point for fleetroll."""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import typer
from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console
from rich.table import Table

from ..core.config import load_config
from ..core.errors import ConfigurationError, FleetrollError
from ..core.events import EventKind
from ..core.log import add_file_logging, configure_logging, get_logger
from ..core.types import FleetrollConfig, RefreshPreferences


class GlobalCliOptions(BaseModel):
    """Global CLI options that can be used across all commands."""

    verbose: int = Field(0, description="Increase verbosity level")
    config_file: Optional[Path] = Field(None, description="Configuration file path")
    log_level: str = Field(
        "WARNING", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    model_config = ConfigDict(use_enum_values=True)


app = typer.Typer(
    name="fleetroll",
    help="Build-and-deploy pipeline with rolling fleet replacement",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)
console = Console()
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity level"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR) - explicit level",
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
) -> None:
    """fleetroll: roll a fleet to a freshly built image without losing capacity."""
    if verbose > 0 and log_level is not None:
        console.print("[red]Error: Cannot specify both --verbose and --log-level[/red]")
        raise typer.Exit(1)

    if log_level is None:
        resolved_log_level = (
            "DEBUG" if verbose >= 2 else "INFO" if verbose == 1 else "WARNING"
        )
    else:
        resolved_log_level = log_level.upper()

    cli_options = GlobalCliOptions(
        verbose=verbose,
        config_file=config_file,
        log_level=resolved_log_level,
    )
    ctx.ensure_object(dict)
    ctx.obj["cli_options"] = cli_options

    configure_logging(
        level=cli_options.log_level, enable_console=True, enable_json=False
    )


def _load(ctx: typer.Context, **overrides: Any) -> FleetrollConfig:
    options: Optional[GlobalCliOptions] = (ctx.obj or {}).get("cli_options")
    config_file = options.config_file if options else None
    try:
        loaded = load_config(config_file=config_file, **overrides)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    if loaded.log_file:
        add_file_logging(loaded.log_file, loaded.log_level.upper())
    return loaded


def _parse_checkpoints(value: Optional[str]) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    try:
        return tuple(float(part) for part in value.split(",") if part.strip())
    except ValueError:
        raise typer.BadParameter(
            f"checkpoints must be comma-separated numbers, got {value!r}"
        ) from None


def _preferences(
    base: RefreshPreferences,
    min_healthy: Optional[float],
    checkpoints: Optional[str],
) -> RefreshPreferences:
    updates: Dict[str, Any] = {}
    if min_healthy is not None:
        updates["min_healthy_percentage"] = min_healthy
    parsed = _parse_checkpoints(checkpoints)
    if parsed is not None:
        updates["checkpoint_percentages"] = parsed
    return base.model_copy(update=updates)


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__

    table = Table(title="fleetroll Version Information")
    table.add_column("Component", style="cyan")
    table.add_column("Version", style="green")
    table.add_row("fleetroll", __version__)
    try:
        import pydantic

        table.add_row("pydantic", pydantic.__version__)
    except ImportError:
        table.add_row("pydantic", "[red]Not installed[/red]")
    try:
        import aiohttp

        table.add_row("aiohttp", aiohttp.__version__)
    except ImportError:
        table.add_row("aiohttp", "[red]Not installed[/red]")
    console.print(table)


@app.command()
def config(ctx: typer.Context) -> None:
    """Show current configuration."""
    current_config = _load(ctx)
    refresh = current_config.refresh
    table = Table(title="fleetroll Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Fleet", current_config.fleet.fleet_id)
    table.add_row("Desired Count", str(current_config.fleet.desired_count))
    table.add_row("Min Healthy", f"{refresh.min_healthy_percentage}%")
    table.add_row(
        "Min Healthy Count",
        str(refresh.min_healthy_count(current_config.fleet.desired_count)),
    )
    table.add_row("Instance Warmup", f"{refresh.instance_warmup}s")
    table.add_row("Checkpoint Delay", f"{refresh.checkpoint_delay}s")
    table.add_row(
        "Checkpoints", ", ".join(f"{p:g}%" for p in refresh.checkpoint_percentages)
    )
    table.add_row("Max Launch Retries", str(refresh.max_launch_retries))
    table.add_row("Health Poll Interval", f"{refresh.health_poll_interval}s")
    table.add_row(
        "Health Check",
        f":{current_config.fleet.health_check_port}{current_config.fleet.health_check_path}",
    )
    table.add_row("Deploy Enabled", str(current_config.deploy_enabled))
    if current_config.build_command:
        table.add_row("Build Command", " ".join(current_config.build_command))
    table.add_row("Build Timeout", f"{current_config.timeouts.build_command}s")
    table.add_row("Log Level", current_config.log_level)
    console.print(table)


@app.command()
def preview(
    ctx: typer.Context,
    desired_count: Optional[int] = typer.Option(
        None, "--desired-count", "-n", help="Fleet size (defaults to configuration)"
    ),
    min_healthy: Optional[float] = typer.Option(
        None, "--min-healthy", help="Minimum healthy percentage"
    ),
    checkpoints: Optional[str] = typer.Option(
        None, "--checkpoints", help="Comma-separated checkpoint percentages, e.g. 50,100"
    ),
    in_service: Optional[int] = typer.Option(
        None, "--in-service", help="Instances in service now (defaults to desired count)"
    ),
) -> None:
    """Show the batches and bakes a replacement would go through."""
    from ..rollout.plan import preview_schedule

    current_config = _load(ctx)
    count = desired_count if desired_count is not None else current_config.fleet.desired_count
    preferences = _preferences(current_config.refresh, min_healthy, checkpoints)
    try:
        steps = preview_schedule(count, preferences, in_service=in_service)
    except ConfigurationError as e:
        console.print(f"[red]Invalid plan: {e}[/red]")
        raise typer.Exit(1)

    table = Table(
        title=f"Replacement of {count} instances "
        f"(floor {preferences.min_healthy_count(count)})"
    )
    table.add_column("Checkpoint", style="cyan")
    table.add_column("Replaced", style="green")
    table.add_column("Batches")
    table.add_column("Bake", style="yellow")
    for step in steps:
        table.add_row(
            f"{step.percentage:g}%",
            str(step.target_replaced),
            " ".join(str(size) for size in step.batches) or "-",
            f"{step.bake_seconds:g}s" if step.bake_seconds else "-",
        )
    console.print(table)


@app.command()
def simulate(
    ctx: typer.Context,
    source_ref: str = typer.Argument("main", help="Source reference to build"),
    desired_count: Optional[int] = typer.Option(
        None, "--desired-count", "-n", help="Fleet size (defaults to configuration)"
    ),
    min_healthy: Optional[float] = typer.Option(
        None, "--min-healthy", help="Minimum healthy percentage"
    ),
    checkpoints: Optional[str] = typer.Option(
        None, "--checkpoints", help="Comma-separated checkpoint percentages, e.g. 50,100"
    ),
    unhealthy: int = typer.Option(
        0, "--unhealthy", help="Number of new instances that never turn healthy"
    ),
    seed: bool = typer.Option(
        True, "--seed/--no-seed", help="Start from a fleet already running an older version"
    ),
) -> None:
    """Run the full pipeline against an in-memory fleet with simulated time."""
    from ..testing.fakes import ScriptedHealthEvaluator
    from ..testing.sandbox import sandbox

    overrides: Dict[str, Any] = {}
    if desired_count is not None:
        overrides["fleet"] = {"desired_count": desired_count}
    current_config = _load(ctx, **overrides)
    preferences = _preferences(current_config.refresh, min_healthy, checkpoints)

    health = ScriptedHealthEvaluator()
    try:
        with sandbox(
            current_config,
            seed_version_ref="previous" if seed else None,
            health=health,
        ) as env:
            health.fail_next(unhealthy)
            run = env.controller.trigger(
                source_ref, current_config.fleet.desired_count, preferences
            )
            history = env.events.history()
            simulated_seconds = env.clock.now()
            active = env.store.list()
    except FleetrollError as e:
        console.print(f"[red]Simulation error: {e}[/red]")
        raise typer.Exit(1)

    events = Table(title="Events")
    events.add_column("Event", style="cyan")
    events.add_column("Detail")
    for event in history:
        if event.kind is EventKind.STAGE_CHANGED:
            detail = event.attributes.get("state", "")
        elif event.kind is EventKind.CHECKPOINT_REACHED:
            detail = (
                f"{event.attributes.get('percentage'):g}% "
                f"replaced={event.counts.get('replaced_count')}"
            )
        else:
            detail = " ".join(f"{k}={v}" for k, v in event.counts.items())
        events.add_row(event.kind.value, str(detail))
    console.print(events)

    summary = Table(title="Pipeline Run")
    summary.add_column("Field", style="cyan")
    summary.add_column("Value", style="green")
    summary.add_row("State", run.state.value)
    summary.add_row("Template Version", str(run.template_version or "-"))
    summary.add_row("Plan", run.plan_id or "-")
    summary.add_row("Plan Status", run.plan_status.value if run.plan_status else "-")
    summary.add_row("Reason", run.reason or "-")
    summary.add_row(
        "Active Instances",
        ", ".join(f"{r.id}@v{r.template_version}" for r in active) or "-",
    )
    summary.add_row("Simulated Time", f"{simulated_seconds:g}s")
    console.print(summary)

    if not run.succeeded:
        raise typer.Exit(1)


def cli_main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except (RuntimeError, OSError, ValueError, ImportError) as e:
        logger.error("Unexpected error: %s", e)
        console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
