"""
PHASEKEEPER Runner — one iteration of one task.

It is NOT smart. It is deterministic.

  load → attempts+1 → pre-conditions → phase gate → select directive/tier
       → invoke actor → reload → reconcile changes → completion check
       → save → checkpoint completed phases

Actor failures never escape: they are recorded into the execution
record and reported in the result. Critical record errors propagate.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.panel import Panel

from phasekeeper.actor import Actor, LiteLLMActor
from phasekeeper.checkpoint import CheckpointManager
from phasekeeper.config_loader import PhaseKeeperConfig, load_config
from phasekeeper.event_bus import EventBus
from phasekeeper.execution_io import ExecutionStore
from phasekeeper.model_selector import EXECUTION_STEP, ModelSelector
from phasekeeper.phase_gate import enforce_phase_gate
from phasekeeper.prompts import PromptSelector
from phasekeeper.security import SecurityPolicy
from phasekeeper.tracking import validate_completion, verify_changes, verify_preconditions

console = Console()

ACTOR_FAILURE = "actor-invocation"


def completion_of(record: dict[str, Any]) -> dict[str, Any]:
    """The record's completion block, created when absent or null."""
    if not isinstance(record.get("completion"), dict):
        record["completion"] = {"status": "pending_validation"}
    return record["completion"]


class TaskRunner:
    """
    Drives a single task record through one actor iteration.

    Every collaborator can be injected; defaults are built from config.
    """

    def __init__(
        self,
        cwd: Path,
        config: PhaseKeeperConfig | None = None,
        actor: Actor | None = None,
        store: ExecutionStore | None = None,
        bus: EventBus | None = None,
        policy: SecurityPolicy | None = None,
        checkpoints: CheckpointManager | None = None,
    ):
        self.cwd = Path(cwd).resolve()
        self.config = config or load_config(self.cwd)
        self.policy = policy or SecurityPolicy()
        self.actor = actor or LiteLLMActor(self.config)
        self.store = store or ExecutionStore()
        self.bus = bus or EventBus()
        self.checkpoints = checkpoints or CheckpointManager(self.cwd)
        self.models = ModelSelector(self.config)
        self.prompts = PromptSelector(
            execution_file=self.config.workspace.execution_file,
            review_file=self.config.workspace.review_file,
        )

    def record_path(self, task_dir: Path) -> Path:
        return Path(task_dir) / self.config.workspace.execution_file

    def _blueprint(self, task_dir: Path) -> str | None:
        path = Path(task_dir) / self.config.workspace.blueprint_file
        return path.read_text(encoding="utf-8") if path.exists() else None

    def _emit(self, event_type: str, task_id: str, payload: dict[str, Any] | None = None) -> None:
        self.bus.emit(event_type, "runner", {"task_id": task_id, **(payload or {})})

    def run(self, task_dir: Path, task_id: str | None = None) -> dict[str, Any]:
        """Execute one iteration for the task in `task_dir`."""
        task_dir = Path(task_dir).resolve()
        record_path = self.record_path(task_dir)

        record = self.store.load(record_path)
        task_id = task_id or record.get("task") or task_dir.name
        self._emit("record_loaded", task_id, {"status": record.get("status"), "attempts": record.get("attempts")})

        result: dict[str, Any] = {
            "task_id": task_id,
            "status": "pending",
            "state": None,
            "tier": None,
            "model": None,
            "current_phase": None,
            "checkpoints": [],
            "error": None,
        }

        record["attempts"] = (record.get("attempts") or 0) + 1
        attempts_before = record["attempts"]

        # ── 1. Pre-conditions (hard stop) ──
        report = verify_preconditions(
            record,
            policy=self.policy,
            timeout=self.config.limits.precondition_timeout,
            cwd=self.cwd,
        )
        if report.blocked:
            self.store.save(record_path, record)
            self._emit("preconditions_blocked", task_id, {"check": report.failed_check})
            result.update(status="blocked", error=f"Pre-condition failed: {report.failed_check}")
            return result

        # ── 2. Phase gate ──
        if not enforce_phase_gate(record):
            self._emit("phase_gate_demoted", task_id, {"current_phase": record.get("currentPhase")})

        # ── 3. Directive + tier ──
        # Chosen from the record as it was left; a blocked record gets the block directive.
        selection = self.prompts.select(record, task_folder=str(task_dir), working_folder=str(self.cwd))
        tier, model = self.models.select(EXECUTION_STEP, record, self._blueprint(task_dir))
        result.update(state=selection.state.value, tier=tier, model=model)
        self._emit("directive_selected", task_id, {"state": selection.state.value, "tier": tier, "model": model})

        record["status"] = "in_progress"
        record = self.store.save(record_path, record)
        result["current_phase"] = (record.get("currentPhase") or {}).get("id")

        console.print(Panel(
            f"[bold]Task:[/] {task_id}  |  [bold]Attempt:[/] {attempts_before}\n"
            f"[bold]State:[/] {selection.state.value}  |  [bold]Tier:[/] {tier} ({model})",
            title="PHASEKEEPER",
            border_style="cyan",
        ))

        # ── 4. Actor ──
        try:
            self.actor.invoke(selection.prompt, model=model, cwd=self.cwd, record_path=record_path)
        except Exception as e:
            logger.error(f"[RUNNER] Actor failed for {task_id}: {e}")
            self._emit("actor_failed", task_id, {"error": str(e)})
            if self.store.record_error(record_path, e, failed_validation=ACTOR_FAILURE):
                self._emit("error_recorded", task_id, {"failed_validation": ACTOR_FAILURE})
            result.update(status="error", error=str(e))
            return result

        # ── 5. Reload what the actor wrote ──
        latest = self.store.load(record_path)
        latest["attempts"] = max(latest.get("attempts") or 0, attempts_before)

        # ── 6. Reconcile declared artifacts with git ──
        ignore = [".phasekeeper"]
        try:
            ignore.append(str(task_dir.relative_to(self.checkpoints.repo_root)))
        except ValueError:
            pass
        changes = verify_changes(latest, self.checkpoints.changed_files(), ignore=ignore)
        if not changes.valid:
            deviations = completion_of(latest).setdefault("deviations", [])
            if changes.undeclared:
                deviations.append(f"Undeclared changes in git: {', '.join(changes.undeclared)}")
            if changes.missing:
                deviations.append(f"Declared in artifacts but not modified: {', '.join(changes.missing)}")

        # ── 7. Completion ──
        if validate_completion(latest):
            latest["status"] = "completed"
            completion_of(latest)["status"] = "completed"
            logger.info(f"[RUNNER] {task_id} completed")
        else:
            logger.info(f"[RUNNER] {task_id} remains {latest.get('status')}")

        latest = self.store.save(record_path, latest)
        result["status"] = latest.get("status")
        result["current_phase"] = (latest.get("currentPhase") or {}).get("id")

        # ── 8. Checkpoints ──
        result["checkpoints"] = self._checkpoint_phases(task_id, latest)

        if latest.get("status") == "completed":
            self._emit("task_completed", task_id, {"attempts": latest.get("attempts")})
        return result

    def _checkpoint_phases(self, task_id: str, record: dict[str, Any]) -> list[str]:
        """Commit every completed phase still missing a checkpoint, in order."""
        created: list[str] = []
        phases = sorted(record.get("phases") or [], key=lambda p: p.get("id", 0))
        for phase in phases:
            if phase.get("status") != "completed":
                break
            if self.checkpoints.has_checkpoint(task_id, phase["id"]):
                continue
            # Every completed phase gets its own marker commit, even on a clean tree.
            outcome = self.checkpoints.create_checkpoint(
                task_id, phase["id"], phase.get("name") or f"Phase {phase['id']}",
                allow_empty=True,
            )
            if not outcome.success:
                # Resume point simply does not advance; retried next iteration.
                break
            if outcome.commit_hash:
                created.append(outcome.commit_hash)
                self._emit("checkpoint_created", task_id, {
                    "phase": phase["id"],
                    "commit": outcome.commit_hash,
                })
        return created
