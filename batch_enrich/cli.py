"""CLI entry point for the batch enrichment engine."""

import asyncio
import dataclasses
import importlib
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from . import __version__
from .checkpoint import (
    CheckpointManager,
    compute_config_hash,
    create_incremental_state,
    delete_checkpoint,
    detect_new_items,
    is_state_outdated,
    list_checkpoints,
    load_incremental_state,
    reset_incremental_state,
    save_incremental_state,
    update_state_with_enriched_guids,
)
from .core.config import EnrichConfig, get_config
from .orchestration import (
    UNROUTED_KIND,
    EnrichmentBinding,
    EnrichmentRunner,
    OutcomeStatus,
    ProgressCallbacks,
    RunnerConfig,
    RunnerResult,
)
from .output import load_items, write_items
from .types.errors import CheckpointError, ConfigMismatchError
from .types.incremental import IncrementalState, RunStats
from .types.items import WorkItem

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# CLI app
app = typer.Typer(
    name="batch-enrich",
    help="Resumable, rate-limited batch enrichment of work items",
    add_completion=False,
)

console = Console()


class RichProgressCallbacks(ProgressCallbacks):
    """Renders runner progress with Rich: an overall bar plus one per kind."""

    def __init__(self, progress: Progress, task: TaskID):
        self._progress = progress
        self._task = task
        self._kind_tasks: dict[str, TaskID] = {}

    def on_run_start(self, total: int, already_processed: int) -> None:
        self._progress.update(self._task, total=total, completed=already_processed)

    def on_kind_total(self, kind: str, total: int) -> None:
        if kind == UNROUTED_KIND:
            return
        self._kind_tasks[kind] = self._progress.add_task(f"  {kind}", total=total)

    def on_item_start(self, kind: str, label: str) -> None:
        self._progress.update(self._task, description=f"{kind}: {label}")

    def on_item_complete(self, kind: str) -> None:
        self._progress.advance(self._task)
        if kind in self._kind_tasks:
            self._progress.advance(self._kind_tasks[kind])

    def on_checkpoint_start(self) -> None:
        self._progress.update(self._task, description="Writing checkpoint...")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"batch-enrich version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        help="Show version and exit",
    ),
) -> None:
    """Batch enrichment engine - resumable enrichment with checkpoints."""
    pass


def _apply_log_level(verbose: bool, quiet: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif quiet:
        logging.getLogger().setLevel(logging.WARNING)


def _resolve_config(
    checkpoint_dir: Optional[Path] = None,
    rate_limit: Optional[int] = None,
    max_retries: Optional[int] = None,
    checkpoint_interval: Optional[int] = None,
    concurrency: Optional[int] = None,
    force_refresh: bool = False,
) -> EnrichConfig:
    """Environment config with CLI overrides applied."""
    config = get_config()
    overrides = {
        "checkpoint_dir": checkpoint_dir,
        "rate_limit_delay_ms": rate_limit,
        "max_retries": max_retries,
        "checkpoint_interval": checkpoint_interval,
        "max_concurrent_items": concurrency,
    }
    config = dataclasses.replace(
        config, **{key: value for key, value in overrides.items() if value is not None}
    )
    if force_refresh:
        config = dataclasses.replace(config, force_refresh=True)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    return config


def load_bindings(spec: str, config: EnrichConfig) -> list[EnrichmentBinding]:
    """Import a binding factory given as ``module:callable`` and call it.

    Raises:
        ValueError: If the reference is malformed or the factory returns nothing.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Bindings must be given as module:callable, got {spec!r}")

    factory = getattr(importlib.import_module(module_name), attr)
    bindings = list(factory(config))
    if not bindings:
        raise ValueError(f"{spec} returned no enrichment bindings")
    return bindings


def _load_run_items(input_path: Path, output: Path, resume: bool) -> list[WorkItem]:
    """Items to run over; a resumed run continues from the partial output.

    Raises:
        ValueError: If the output file holds a different batch than the input.
    """
    items = load_items(input_path)
    if not (resume and output.exists()):
        return items

    previous = load_items(output)
    if [item.guid for item in previous] != [item.guid for item in items]:
        raise ValueError(
            f"{output} does not hold the same items as {input_path}; "
            "remove it or choose another --output to resume"
        )
    console.print(f"Resuming with enriched items from {output}")
    return previous


def _save_partial(output: Path, items: list[WorkItem]) -> None:
    try:
        write_items(output, items)
    except OSError as e:
        console.print(f"[red]Failed to write partial results to {output}: {e}[/red]")
        return
    console.print(f"Partial results written to {output}")


def _load_known_state(state_file: Path, config_hash: str) -> Optional[IncrementalState]:
    state = load_incremental_state(state_file)
    if state is None:
        console.print(f"No incremental state at {state_file}; enriching every item")
        return None

    if state.config_hash and state.config_hash != config_hash:
        console.print(
            "[yellow]Incremental state was written under another configuration; "
            "enriching every item[/yellow]"
        )
        return None

    if is_state_outdated(state):
        console.print(
            f"[yellow]Incremental state is older than a week "
            f"(last run {state.last_enriched_at:%Y-%m-%d})[/yellow]"
        )
    return state


def _save_known_state(
    state_file: Path,
    state: Optional[IncrementalState],
    items: list[WorkItem],
    result: RunnerResult,
) -> None:
    failed = {failed.guid for failed in result.failed_items}
    done = [item.guid for item in items if item.guid not in failed]
    stats = RunStats(
        processed_count=result.total_processed,
        failed_count=result.total_failed,
        start_time=result.started_at,
        end_time=result.completed_at,
    )
    base = state or create_incremental_state(config_hash=result.config_hash)
    updated = update_state_with_enriched_guids(base, done, stats)
    save_incremental_state(updated.model_copy(update={"config_hash": result.config_hash}), state_file)
    logger.info(f"Incremental state now covers {updated.total_items} items")


@app.command()
def run(
    input_path: Path = typer.Option(
        ...,
        "--input",
        "-i",
        exists=True,
        dir_okay=False,
        help="Input JSON file of work items",
    ),
    bindings_spec: str = typer.Option(
        ...,
        "--bindings",
        "-b",
        help="Binding factory as module:callable, called with the config",
    ),
    output: Path = typer.Option(
        Path("./items.enriched.json"),
        "--output",
        "-o",
        help="Output JSON file path",
    ),
    checkpoint_dir: Optional[Path] = typer.Option(
        None,
        "--checkpoint-dir",
        "-c",
        help="Checkpoint directory",
    ),
    resume: bool = typer.Option(False, "--resume", help="Resume from last checkpoint"),
    incremental: bool = typer.Option(
        False,
        "--incremental",
        help="Only enrich items not recorded in the state file",
    ),
    state_file: Optional[Path] = typer.Option(
        None,
        "--state-file",
        help="Incremental state file",
    ),
    reset_state: bool = typer.Option(
        False,
        "--reset-state",
        help="Delete the incremental state file before running",
    ),
    force_refresh: bool = typer.Option(
        False,
        "--force-refresh",
        help="Re-enrich even if already done",
    ),
    rate_limit: Optional[int] = typer.Option(
        None,
        "--rate-limit",
        help="Delay between API calls (milliseconds)",
    ),
    max_retries: Optional[int] = typer.Option(
        None,
        "--max-retries",
        help="Max retries on retryable API errors",
    ),
    checkpoint_interval: Optional[int] = typer.Option(
        None,
        "--checkpoint-interval",
        help="Write checkpoint every N items",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        help="Items processed concurrently",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show warnings"),
) -> None:
    """Enrich work items with checkpointing and rate limiting."""
    _apply_log_level(verbose, quiet)
    config = _resolve_config(
        checkpoint_dir, rate_limit, max_retries, checkpoint_interval, concurrency, force_refresh
    )

    if state_file is not None:
        config = dataclasses.replace(config, state_file=state_file)

    try:
        items = _load_run_items(input_path, output, resume)
        bindings = load_bindings(bindings_spec, config)
    except (ValueError, ImportError, AttributeError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"Loaded {len(items):,} items from {input_path}")

    if reset_state and reset_incremental_state(config.state_file):
        console.print(f"Reset incremental state {config.state_file}")

    state: Optional[IncrementalState] = None
    known_guids: Optional[set[str]] = None
    if incremental:
        state = _load_known_state(config.state_file, compute_config_hash(config.hash_input()))
        if state is not None:
            known_guids = set(state.enriched_guids)
        new_guids = detect_new_items([item.guid for item in items], state)
        console.print(f"Incremental mode: {len(new_guids):,} new of {len(items):,} items")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task("Enriching...", total=len(items))
        runner = EnrichmentRunner(
            bindings,
            RunnerConfig.from_enrich_config(
                config,
                RichProgressCallbacks(progress, task),
                before_checkpoint=lambda: write_items(output, items),
            ),
        )
        try:
            result = asyncio.run(runner.run(items, resume=resume, known_guids=known_guids))
        except ConfigMismatchError as e:
            console.print(f"[red]{e}[/red]")
            console.print("Use a matching configuration or run `batch-enrich clean`.")
            raise typer.Exit(1)
        except CheckpointError as e:
            console.print(f"[red]Checkpoint failure:[/red] {e}")
            _save_partial(output, items)
            raise typer.Exit(2)
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted; checkpoint saved for completed items.[/yellow]")
            _save_partial(output, items)
            raise typer.Exit(130)

        progress.update(task, description="Writing output...")
        write_items(output, items)

    if incremental:
        try:
            _save_known_state(config.state_file, state, items, result)
        except CheckpointError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(2)

    _print_summary(result, runner.checkpoint_manager.path, output)


def _print_summary(result: RunnerResult, path: Path, output: Path) -> None:
    table = Table(title="Enrichment Summary")
    table.add_column("Outcome", style="cyan")
    table.add_column("Items", justify="right")
    for status in OutcomeStatus:
        table.add_row(status.value, str(result.count(status)))
    console.print(table)

    if result.failed_items:
        failures = Table(title="Failed Items")
        failures.add_column("Index", justify="right")
        failures.add_column("GUID")
        failures.add_column("Kind")
        failures.add_column("Error", style="red")
        for failed in result.failed_items:
            failures.add_row(str(failed.index), failed.guid, failed.kind, failed.error)
        console.print(failures)

    console.print()
    console.print(f"[bold]Processed:[/bold] {result.total_processed:,}")
    console.print(f"[bold]Failed:[/bold] {result.total_failed:,}")
    console.print(f"[bold]Checkpoints written:[/bold] {result.checkpoints_written}")
    console.print(f"[bold]Duration:[/bold] {result.duration_seconds:.1f}s")
    console.print(f"[bold]Checkpoint:[/bold] {path}")
    console.print(f"[bold]Output:[/bold] {output}")


@app.command()
def status(
    checkpoint_dir: Optional[Path] = typer.Option(
        None,
        "--checkpoint-dir",
        "-c",
        help="Checkpoint directory",
    ),
) -> None:
    """Show the checkpoint for the current configuration."""
    config = _resolve_config(checkpoint_dir)
    manager = CheckpointManager(config.checkpoint_dir, compute_config_hash(config.hash_input()))

    try:
        checkpoint = manager.load()
    except CheckpointError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    if checkpoint is None:
        console.print(f"[yellow]No checkpoint at {manager.path}[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Checkpoint {manager.config_hash[:8]}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Last processed index", str(checkpoint.last_processed_index))
    table.add_row("Resume at", str(checkpoint.last_processed_index + 1))
    table.add_row("Processed", str(checkpoint.total_processed))
    table.add_row("Failed", str(checkpoint.total_failed))
    table.add_row("Completed", "yes" if checkpoint.completed else "no")
    table.add_row("Created", checkpoint.created_at.isoformat())
    for kind, count in sorted(checkpoint.stats.enrichments_by_kind.items()):
        table.add_row(f"  {kind}", str(count))
    console.print(table)


@app.command("config-hash")
def config_hash() -> None:
    """Print the hash of the current enrichment configuration."""
    config = _resolve_config()
    console.print(compute_config_hash(config.hash_input()))


@app.command()
def clean(
    checkpoint_dir: Optional[Path] = typer.Option(
        None,
        "--checkpoint-dir",
        "-c",
        help="Checkpoint directory",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all checkpoint files."""
    config = _resolve_config(checkpoint_dir)
    paths = list_checkpoints(config.checkpoint_dir)
    if not paths:
        console.print("No checkpoints to delete.")
        return

    if not yes and not typer.confirm(f"Delete {len(paths)} checkpoint(s)?"):
        raise typer.Exit(1)

    for path in paths:
        try:
            delete_checkpoint(path)
        except OSError as e:
            console.print(f"[red]Failed to delete {path}: {e}[/red]")
            raise typer.Exit(2)
        console.print(f"Deleted {path}")


# Alias commands
app.command("hash")(config_hash)


if __name__ == "__main__":
    app()
