"""stagehand CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from stagehand.observability import close_file_logging, configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

if TYPE_CHECKING:
    from stagehand.models.pipeline import PipelineRun
    from stagehand.pipeline import GateHook, PipelineConfig, PipelineOrchestrator

app = typer.Typer(
    name="stagehand",
    help="stagehand: release-build pipeline coordinator.",
    no_args_is_help=True,
)
console = Console()

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False
_config_path: Path | None = None

STATUS_ICONS = {
    "succeeded": "[green]✓[/green] succeeded",
    "success": "[green]✓[/green] success",
    "pending": "[dim]○[/dim] pending",
    "running": "[yellow]…[/yellow] running",
    "failed": "[red]✗[/red] failed",
    "failure": "[red]✗[/red] failure",
    "skipped": "[dim]-[/dim] skipped",
}


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable file logging to {state_dir}/logs/debug.jsonl.",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Pipeline config file or directory (default: ./pipeline.yaml).",
            envvar="STAGEHAND_CONFIG",
        ),
    ] = None,
) -> None:
    """stagehand: release-build pipeline coordinator."""
    global _verbose, _log_enabled, _config_path
    _verbose = verbose
    _log_enabled = log
    _config_path = config

    # Configure console logging (file logging configured once the state dir is known)
    configure_logging(verbosity=verbose)


def _configure_run_logging(config: PipelineConfig) -> None:
    """Configure file logging if --log flag was set."""
    if _log_enabled:
        configure_logging(
            verbosity=_verbose,
            log_to_file=True,
            log_dir=config.state_dir / "logs",
        )
        atexit.register(close_file_logging)


def _load_config() -> PipelineConfig:
    """Load the pipeline config, exit with error if it can't be loaded."""
    from stagehand.pipeline.config import PipelineConfigError, load_pipeline_config

    try:
        return load_pipeline_config(_config_path)
    except PipelineConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("Run 'stagehand init' to create a pipeline.yaml.")
        raise typer.Exit(1) from None


def _print_problems(problems: list[str]) -> None:
    console.print(f"[red]Error:[/red] Invalid stage graph ({len(problems)} problem(s))")
    for problem in problems:
        console.print(f"  [red]✗[/red] {problem}")


def _get_orchestrator(
    config: PipelineConfig,
    gate: GateHook | None = None,
    fail_fast: bool | None = None,
) -> PipelineOrchestrator:
    """Get a pipeline orchestrator, exit with error if the graph is invalid."""
    from stagehand.errors import GraphValidationError
    from stagehand.pipeline import PipelineOrchestrator

    try:
        return PipelineOrchestrator(config, gate, fail_fast=fail_fast)
    except GraphValidationError as e:
        _print_problems(e.problems)
        raise typer.Exit(1) from None


def _results_table(run: PipelineRun) -> Table:
    from stagehand.pipeline.summary import format_duration

    table = Table(title=f"Run {run.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Target")
    table.add_column("Outcome", style="bold")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", style="dim", justify="right")

    for result in run.results:
        table.add_row(
            result.stage,
            result.target,
            STATUS_ICONS.get(result.outcome, result.outcome),
            "-" if result.exit_code is None else str(result.exit_code),
            format_duration(result.duration_seconds) if result.outcome != "skipped" else "-",
        )
    return table


def _print_run(run: PipelineRun, publish_stage: str) -> None:
    from stagehand.pipeline.summary import build_run_summary

    console.print()
    console.print(_results_table(run))
    console.print()
    for line in build_run_summary(run, publish_stage):
        console.print(f"  {line}")
    for error in run.errors:
        console.print(f"  [red]✗[/red] {error}")
    console.print()


@app.command()
def version() -> None:
    """Show version information."""
    from stagehand import __version__

    console.print(f"stagehand v{__version__}")


@app.command()
def init(
    path: Annotated[
        Path,
        typer.Argument(help="Directory or file to write (default: ./pipeline.yaml)."),
    ] = Path(),
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Pipeline name (default: directory name)."),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing pipeline.yaml."),
    ] = False,
) -> None:
    """Write a default pipeline.yaml.

    The default pipeline builds the engine on linux, windows and macos,
    the wasm bundle on linux and the IDE on all three targets, then
    publishes the draft release.
    """
    from stagehand.pipeline.config import (
        CONFIG_FILENAME,
        create_default_config,
        write_pipeline_config,
    )

    config_file = path / CONFIG_FILENAME if path.is_dir() or path.suffix == "" else path
    if config_file.exists() and not force:
        console.print(f"[red]Error:[/red] '{config_file}' already exists (use --force)")
        raise typer.Exit(1)

    pipeline_name = name or config_file.parent.resolve().name or "release"
    written = write_pipeline_config(create_default_config(pipeline_name), config_file)

    console.print(f"[green]✓[/green] Created pipeline: [bold]{pipeline_name}[/bold]")
    console.print(f"  Location: {written.absolute()}")
    console.print()
    console.print("Next steps:")
    console.print("  stagehand validate")
    console.print("  stagehand run")


@app.command()
def validate() -> None:
    """Load the config and validate the stage graph."""
    from stagehand.errors import GraphValidationError
    from stagehand.pipeline.graph import StageGraph

    config = _load_config()
    try:
        graph = StageGraph.from_config(config)
    except GraphValidationError as e:
        _print_problems(e.problems)
        raise typer.Exit(1) from None

    console.print(
        f"[green]✓[/green] Pipeline [bold]{config.name}[/bold] is valid: "
        f"{len(graph)} stage(s), {graph.instance_count()} instance(s)"
    )
    console.print()
    console.print(Markdown(graph.plan_table()))


@app.command()
def plan() -> None:
    """Show the execution layers of a run.

    Stages in the same layer may run concurrently, limited by each
    target's max_parallel.
    """
    config = _load_config()
    orchestrator = _get_orchestrator(config)

    table = Table(title=f"Plan: {config.name}")
    table.add_column("Step", style="cyan", justify="right")
    table.add_column("Stages", style="bold")
    table.add_column("Instances", style="dim")

    def instances(names: list[str], specs: dict[str, list[str]]) -> str:
        return ", ".join(f"{name}@{target}" for name in names for target in specs[name])

    resolver = config.resolver
    publish = config.publish
    targets = {spec.name: list(spec.targets) for spec in orchestrator.graph}
    targets[resolver.name] = list(resolver.targets)
    targets[publish.name] = list(publish.targets)

    rows = [[resolver.name], *orchestrator.graph.layers(), [publish.name]]
    for index, layer in enumerate(rows):
        table.add_row(str(index), ", ".join(layer), instances(layer, targets))

    console.print()
    console.print(table)
    console.print()
    limits = ", ".join(f"{name}={t.max_parallel}" for name, t in config.targets.items())
    console.print(f"  Target limits: {limits}")
    console.print(f"  Fail fast: {'yes' if config.fail_fast else 'no'}")


def _confirm_publish(run: PipelineRun) -> bool:
    context = run.context
    label = f"{context.version} ({context.release_id})" if context is not None else run.run_id
    return typer.confirm(f"All stages succeeded. Publish release {label}?", default=False)


@app.command()
def run(
    fail_fast: Annotated[
        bool | None,
        typer.Option(
            "--fail-fast/--no-fail-fast",
            help="Stop launching stages after the first failure (default: from config).",
        ),
    ] = None,
    confirm_publish: Annotated[
        bool,
        typer.Option("--confirm-publish", help="Ask before publishing the release."),
    ] = False,
) -> None:
    """Execute a full pipeline run.

    Resolves the version and draft release, runs every stage on every
    target it declares, then publishes the release if everything succeeded.

    Examples:
        stagehand run
        stagehand -v --log run --no-fail-fast
        stagehand run --confirm-publish
    """
    from stagehand.pipeline.gates import ConfirmGate

    config = _load_config()
    _configure_run_logging(config)

    log = get_logger(__name__)

    gate = ConfirmGate(_confirm_publish) if confirm_publish else None
    orchestrator = _get_orchestrator(config, gate, fail_fast)

    console.print()
    console.print(
        f"[bold]Running pipeline:[/bold] {config.name} "
        f"({len(orchestrator.graph)} stage(s), {orchestrator.graph.instance_count()} instance(s))"
    )

    result = asyncio.run(orchestrator.run())
    log.debug("run_finished", run_id=result.run_id, status=result.status)

    _print_run(result, config.publish.name)
    if result.status != "succeeded":
        console.print("[red]Pipeline run failed.[/red]")
        raise typer.Exit(1)
    console.print("[green]✓[/green] [bold]Pipeline run complete![/bold]")


@app.command()
def status(
    run_id: Annotated[
        str | None,
        typer.Argument(help="Run ID to show (default: latest run)."),
    ] = None,
) -> None:
    """Show a stored run report."""
    from stagehand.pipeline.store import RunStore, RunStoreError

    config = _load_config()
    store = RunStore(config.state_dir)

    try:
        stored = store.load(run_id) if run_id is not None else store.latest()
    except RunStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if stored is None:
        console.print("No runs recorded yet.")
        return

    table = Table(title=f"Pipeline Status: {stored.pipeline}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status", style="bold")

    for stage_name, stage_status in stored.statuses.items():
        table.add_row(stage_name, STATUS_ICONS.get(stage_status, stage_status))

    console.print()
    console.print(table)
    console.print(f"  Run: {stored.run_id} ({stored.status})")
    started = stored.started_at.strftime("%Y-%m-%d %H:%M:%S")
    console.print(f"  Started: {started}")
    _print_run(stored, config.publish.name)


@app.command()
def publish(
    release_version: Annotated[
        str,
        typer.Option("--version", help="Version of the release."),
    ],
    release_id: Annotated[
        str,
        typer.Option("--release-id", help="ID of the draft release to publish."),
    ],
) -> None:
    """Publish an existing draft release.

    Re-invokes only the publish step, for manual resolution after a failed
    publish. A release that was already published is not published again.
    """
    from pydantic import ValidationError

    from stagehand.models.pipeline import ReleaseContext

    config = _load_config()
    _configure_run_logging(config)

    try:
        context = ReleaseContext(version=release_version, release_id=release_id)
    except ValidationError:
        console.print("[red]Error:[/red] --version and --release-id must not be empty")
        raise typer.Exit(1) from None

    orchestrator = _get_orchestrator(config)
    result = asyncio.run(orchestrator.publish(context))

    _print_run(result, config.publish.name)
    if result.status != "succeeded":
        console.print(f"[red]Release {release_id} was not published.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Release [bold]{release_id}[/bold] is published.")


@app.command()
def doctor() -> None:
    """Check that the pipeline can run on this machine.

    Validates the config, locates every program the stages invoke and
    checks that every declared secret is set.
    """
    console.print("[bold]stagehand Doctor[/bold]")
    console.print()

    config = _load_config()

    all_ok = _check_graph(config)
    all_ok &= _check_programs(config)
    all_ok &= _check_secrets(config)

    console.print()
    if all_ok:
        console.print("[green]All checks passed![/green]")
    else:
        console.print("[yellow]Some checks failed.[/yellow]")
        raise typer.Exit(1)


def _check_graph(config: PipelineConfig) -> bool:
    """Check the stage graph."""
    from stagehand.errors import GraphValidationError
    from stagehand.pipeline.graph import StageGraph

    console.print("[bold]Pipeline[/bold]")
    try:
        graph = StageGraph.from_config(config)
    except GraphValidationError as e:
        for problem in e.problems:
            console.print(f"  [red]✗[/red] {problem}")
        console.print()
        return False

    console.print(f"  [green]✓[/green] {config.name}: {len(graph)} stage(s)")
    console.print()
    return True


def program_names(config: PipelineConfig) -> list[str]:
    """Programs the coordinator itself launches, in first-use order.

    A target with a wrapper runs commands remotely, so only the wrapper's
    program has to exist locally.
    """
    names: dict[str, None] = {}
    for spec in (config.resolver, *config.stages, config.publish):
        for target in spec.targets:
            target_config = config.targets.get(target)
            if target_config is not None and target_config.wrapper:
                names[target_config.wrapper[0]] = None
                continue
            for argv in spec.commands:
                names[argv[0]] = None
    return list(names)


def _check_programs(config: PipelineConfig) -> bool:
    """Check that every program is on PATH."""
    console.print("[bold]Programs[/bold]")

    all_ok = True
    for name in program_names(config):
        location = shutil.which(name)
        if location:
            console.print(f"  [green]✓[/green] {name}: {location}")
        else:
            console.print(f"  [red]✗[/red] {name}: Not found on PATH")
            all_ok = False

    console.print()
    return all_ok


def _check_secrets(config: PipelineConfig) -> bool:
    """Check that every declared secret is set (values are never shown)."""
    from stagehand.pipeline.runner import MissingSecretError, resolve_secrets

    console.print("[bold]Secrets[/bold]")

    all_ok = True
    any_secret = False
    for spec in (config.resolver, *config.stages, config.publish):
        if not spec.secrets:
            continue
        any_secret = True
        try:
            resolve_secrets(spec)
        except MissingSecretError as e:
            console.print(f"  [red]✗[/red] {spec.name}: missing {', '.join(e.missing)}")
            all_ok = False
        else:
            console.print(f"  [green]✓[/green] {spec.name}: {len(spec.secrets)} secret(s) set")

    if not any_secret:
        console.print("  [dim]○[/dim] No secrets declared")

    console.print()
    return all_ok


if __name__ == "__main__":
    app()
