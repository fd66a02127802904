"""
PHASEKEEPER Parallel Runner

One worker per independent task, all in the same working tree.
Each task owns its own execution record; the only shared resource
is the git repository, and checkpoint commits into it are serialised
by the per-repository lock in phasekeeper.checkpoint. Threads (not
processes) so every worker sees that lock.
"""

from __future__ import annotations

import concurrent.futures
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.table import Table

from phasekeeper.actor import Actor
from phasekeeper.config_loader import PhaseKeeperConfig, load_config
from phasekeeper.event_bus import EventBus
from phasekeeper.runner import TaskRunner

console = Console()

STATUS_COLORS = {"completed": "green", "in_progress": "yellow", "blocked": "magenta"}


def _run_single_task(
    task_dir: Path,
    repo_path: Path,
    config: PhaseKeeperConfig,
    actor: Actor | None,
    bus: EventBus | None,
) -> dict[str, Any]:
    """One runner iteration; any failure becomes an error row."""
    try:
        runner = TaskRunner(repo_path, config=config, actor=actor, bus=bus)
        return runner.run(task_dir)
    except Exception as e:
        logger.error(f"[PARALLEL] {task_dir.name} failed: {e}")
        return {
            "task_id": task_dir.name,
            "status": "error",
            "error": str(e),
        }


def run_parallel(
    repo_path: Path,
    task_dirs: list[Path],
    max_workers: int = 3,
    config: PhaseKeeperConfig | None = None,
    actor: Actor | None = None,
    bus: EventBus | None = None,
) -> list[dict[str, Any]]:
    """Run one iteration of every task in `task_dirs`, `max_workers` at a time."""
    repo_path = repo_path.resolve()
    config = config or load_config(repo_path)

    _print_parallel_header(len(task_dirs), max_workers)
    results: list[dict[str, Any]] = []

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_dir = {
            executor.submit(_run_single_task, td, repo_path, config, actor, bus): td
            for td in task_dirs
        }

        for future in concurrent.futures.as_completed(future_to_dir):
            task_dir = future_to_dir[future]
            try:
                result = future.result()
            except Exception as e:
                result = {"task_id": task_dir.name, "status": "error", "error": str(e)}
            results.append(result)
            _log_task_completion(result, task_dir)

    _print_parallel_summary(results)
    return results


# --- Helpers ---

def _print_parallel_header(count: int, workers: int):
    console.print(f"\n[bold]PHASEKEEPER batch: {count} tasks, {workers} workers[/]\n")


def _log_task_completion(result: dict, task_dir: Path):
    status = result.get("status", "unknown")
    task_id = result.get("task_id", task_dir.name)
    console.print(f"  [{STATUS_COLORS.get(status, 'red')}]{task_id}: {status}[/]")


def _print_parallel_summary(results: list[dict]) -> None:
    table = Table(title="Batch Results", border_style="cyan")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("State")
    table.add_column("Tier")
    table.add_column("Phase")
    table.add_column("Checkpoints")

    for r in sorted(results, key=lambda r: str(r.get("task_id", ""))):
        status = r.get("status", "unknown")
        table.add_row(
            str(r.get("task_id", "?")),
            f"[{STATUS_COLORS.get(status, 'red')}]{status}[/]",
            str(r.get("state") or "-"),
            str(r.get("tier") or "-"),
            str(r.get("current_phase") or "-"),
            str(len(r.get("checkpoints") or [])),
        )

    console.print(table)
    done = sum(1 for r in results if r.get("status") == "completed")
    console.print(f"\n[bold]{done}/{len(results)} completed[/]")
