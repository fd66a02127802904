"""
PHASEKEEPER CLI — The Interface

  phasekeeper init T1 --task-dir tasks/T1 --phase Setup --phase Build
  phasekeeper validate --task-dir tasks/T1 [--strict] [--write]
  phasekeeper status --task-dir tasks/T1
  phasekeeper run --task-dir tasks/T1
  phasekeeper batch --tasks-root tasks --workers 4
  phasekeeper checkpoints T1
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from phasekeeper.identity import BANNER, __codename__, __tagline__, __version__
from phasekeeper.audit_logger import AuditLogger
from phasekeeper.checkpoint import CheckpointManager
from phasekeeper.config_loader import load_config, validate_api_keys
from phasekeeper.event_bus import EventBus
from phasekeeper.execution_io import ExecutionRecordError, ExecutionStore, read_raw, write_json
from phasekeeper.model_selector import EXECUTION_STEP, ModelSelector
from phasekeeper.parallel import run_parallel
from phasekeeper.prompts import detect_execution_state
from phasekeeper.runner import TaskRunner
from phasekeeper.schema import new_execution_record
from phasekeeper.validator import CriticalValidationError, SchemaValidationError, SchemaValidator

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".phasekeeper" / ".env")

app = typer.Typer(
    name="phasekeeper",
    help=f"{__codename__} — {__tagline__}\nResilient execution state for phased tasks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {"completed": "green", "in_progress": "yellow", "pending": "cyan", "blocked": "magenta"}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    task_id: str = typer.Argument(..., help="Task identifier, e.g. TASK1"),
    task_dir: Path = typer.Option(..., "--task-dir", "-d", help="Folder that will hold the execution record"),
    title: Optional[str] = typer.Option(None, "--title", help="Human-readable task title"),
    phases: Optional[List[str]] = typer.Option(None, "--phase", "-p", help="Phase name (repeatable, in order)"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing record"),
):
    """Write a freshly seeded execution record."""
    config = load_config(Path.cwd())
    path = task_dir / config.workspace.execution_file
    if path.exists() and not force:
        console.print(f"[red]Execution record already exists: {path}[/]")
        raise typer.Exit(1)

    record = new_execution_record(task_id, title or task_id, phases or None)
    write_json(path, record)
    console.print(f"[green]Initialized {task_id}[/] → {path}")
    for phase in record["phases"]:
        console.print(f"  [dim]Phase {phase['id']}: {phase['name']}[/]")


@app.command()
def validate(
    task_dir: Path = typer.Option(..., "--task-dir", "-d", help="Task folder"),
    strict: bool = typer.Option(False, "--strict", help="Fail on any defect"),
    write: bool = typer.Option(False, "--write", "-w", help="Save the repaired record"),
):
    """Validate (and optionally repair) an execution record."""
    config = load_config(Path.cwd())
    path = task_dir / config.workspace.execution_file
    validator = SchemaValidator()

    try:
        raw = read_raw(path)
        result = validator.validate(raw, sanitize_input=True, repair=True)
    except (ExecutionRecordError, CriticalValidationError) as e:
        console.print(f"[red]Critical: {e}[/]")
        raise typer.Exit(1)

    if result.valid:
        console.print(f"[green]{path} is valid[/]")
        return

    console.print(f"[yellow]{len(result.errors)} issue(s) in {path}:[/]")
    for error in result.errors:
        console.print(f"  [dim]- {error}[/]")
    if result.repaired_data is not None and not result.remaining_errors:
        console.print("[green]All issues are repairable.[/]")

    if write:
        try:
            ExecutionStore(validator).save(path, raw, lenient=not strict)
        except SchemaValidationError as e:
            console.print(f"[red]Not written: {e}[/]")
            raise typer.Exit(1)
        console.print(f"[green]Repaired record written to {path}[/]")

    if strict:
        raise typer.Exit(1)


@app.command()
def status(
    task_dir: Path = typer.Option(..., "--task-dir", "-d", help="Task folder"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working tree holding the checkpoints"),
):
    """Show the state, tier and resume point of a task."""
    work = (cwd or Path.cwd()).resolve()
    config = load_config(work)
    try:
        record = ExecutionStore().load(task_dir / config.workspace.execution_file)
    except (ExecutionRecordError, CriticalValidationError) as e:
        console.print(f"[red]Critical: {e}[/]")
        raise typer.Exit(1)

    blueprint_path = task_dir / config.workspace.blueprint_file
    blueprint = blueprint_path.read_text(encoding="utf-8") if blueprint_path.exists() else None
    tier, model = ModelSelector(config).select(EXECUTION_STEP, record, blueprint)
    task_id = record.get("task", task_dir.name)
    phases = record.get("phases") or []
    current = record.get("currentPhase") or {}
    next_phase = CheckpointManager(work).get_next_phase(task_id, max(len(phases), 1))

    table = Table(title=f"Task {task_id}", border_style="cyan")
    table.add_column("Property")
    table.add_column("Value")
    rec_status = record.get("status", "?")
    table.add_row("Status", f"[{STATUS_COLORS.get(rec_status, 'red')}]{rec_status}[/]")
    table.add_row("Attempts", str(record.get("attempts", 0)))
    table.add_row("State", detect_execution_state(record).value)
    table.add_row("Tier", f"{tier} ({model})")
    table.add_row("Current phase", f"{current.get('id', '-')}: {current.get('name', '-')}")
    table.add_row("Resume from", f"Phase {next_phase}")
    table.add_row("Pending fixes", ", ".join(record.get("pendingFixes") or []) or "-")
    console.print(table)

    keys = validate_api_keys()
    if not any(keys.values()):
        console.print("[dim]No model API key found in the environment.[/]")


@app.command()
def run(
    task_dir: Path = typer.Option(..., "--task-dir", "-d", help="Task folder"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working tree the actor works in"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one iteration of a task."""
    _print_banner()
    _configure_logging(verbose)

    work = (cwd or Path.cwd()).resolve()
    config = load_config(work)
    bus = EventBus()
    AuditLogger(str(work / config.workspace.audit_log), bus)

    try:
        result = TaskRunner(work, config=config, bus=bus).run(task_dir)
    except (ExecutionRecordError, CriticalValidationError) as e:
        console.print(f"[red]Critical: {e}[/]")
        raise typer.Exit(1)

    state = result.get("status", "unknown")
    console.print(f"\n[bold {STATUS_COLORS.get(state, 'red')}]Status: {state}[/]")
    if result.get("error"):
        console.print(f"[dim]{result['error']}[/]")
    if result.get("checkpoints"):
        console.print(f"[dim]Checkpoints: {', '.join(c[:7] for c in result['checkpoints'])}[/]")
    if state in ("error", "blocked"):
        raise typer.Exit(1)


@app.command()
def batch(
    tasks_root: Path = typer.Option(..., "--tasks-root", "-t", help="Folder of task folders"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working tree the actors work in"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent tasks"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one iteration of every task under a folder, in parallel."""
    _print_banner()
    _configure_logging(verbose)

    work = (cwd or Path.cwd()).resolve()
    config = load_config(work)

    if not tasks_root.exists():
        console.print(f"[red]Tasks folder not found: {tasks_root}[/]")
        raise typer.Exit(1)

    task_dirs = sorted(
        d for d in tasks_root.iterdir()
        if d.is_dir() and (d / config.workspace.execution_file).exists()
    )
    if not task_dirs:
        console.print(f"[red]No execution records found under {tasks_root}[/]")
        raise typer.Exit(1)

    bus = EventBus()
    AuditLogger(str(work / config.workspace.audit_log), bus)
    results = run_parallel(work, task_dirs, max_workers=workers, config=config, bus=bus)

    if any(r.get("status") in ("error", "blocked") for r in results):
        raise typer.Exit(1)


@app.command()
def checkpoints(
    task_id: str = typer.Argument(..., help="Task identifier"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working tree holding the checkpoints"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Max checkpoints to show"),
):
    """List the phase checkpoints recorded in git history."""
    work = (cwd or Path.cwd()).resolve()
    config = load_config(work)
    found = CheckpointManager(work).get_all_checkpoints(
        task_id, limit=limit or config.limits.checkpoint_history_limit
    )

    if not found:
        console.print(f"[dim]No checkpoints for {task_id}[/]")
        return

    table = Table(title=f"Checkpoints for {task_id}", border_style="cyan")
    table.add_column("Commit")
    table.add_column("Phase")
    table.add_column("Name")
    for cp in found:
        table.add_row(cp.commit_hash[:7], str(cp.phase_number), cp.phase_name)
    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
