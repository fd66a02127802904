"""
PHASEKEEPER Directive Selector

Picks one of four execution states from the record and assembles the
directive for the actor:

    base.md  +  ---  +  <state>.md (with state evidence injected)

Selection has no side effects; templates are read once per selector.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger


TEMPLATE_DIR = Path(__file__).parent
SECTION_SEPARATOR = "\n\n---\n\n"


class ExecutionState(str, Enum):
    FIRST_EXECUTION = "first-execution"
    ERROR_RECOVERY = "error-recovery"
    BLOCKED_DEPENDENCY = "blocked-dependency"
    BLOCKED_EXECUTION = "blocked-execution"


@dataclass
class DirectiveSelection:
    state: ExecutionState
    prompt: str
    base_prompt: str
    specific_prompt: str


def detect_execution_state(record: dict[str, Any]) -> ExecutionState:
    """
    Classify the record. First match wins:

      1. status == "blocked"            → BLOCKED_EXECUTION
      2. completion.blockedBy non-empty → BLOCKED_DEPENDENCY
      3. errorHistory / pendingFixes    → ERROR_RECOVERY
      4. otherwise                      → FIRST_EXECUTION
    """
    if record.get("status") == "blocked":
        return ExecutionState.BLOCKED_EXECUTION

    completion = record.get("completion") or {}
    blocked_by = completion.get("blockedBy") if isinstance(completion, dict) else None
    if isinstance(blocked_by, list) and blocked_by:
        return ExecutionState.BLOCKED_DEPENDENCY

    if record.get("errorHistory") or record.get("pendingFixes"):
        return ExecutionState.ERROR_RECOVERY

    return ExecutionState.FIRST_EXECUTION


# ---------------------------------------------------------------------------
# State evidence
# ---------------------------------------------------------------------------

def build_error_details(record: dict[str, Any]) -> str:
    lines: list[str] = []

    pending = record.get("pendingFixes") or []
    if pending:
        lines.append("### Pending Fixes (validations that failed):")
        for i, fix in enumerate(pending, 1):
            lines.append(f"{i}. `{fix}`")
        lines.append("")

    last_error = (record.get("completion") or {}).get("lastError")
    if last_error:
        lines.append("### Last Error:")
        lines.append(f"> {last_error}")
        lines.append("")

    history = record.get("errorHistory") or []
    if history:
        lines.append("### Error History (most recent first):")
        for i, entry in enumerate(reversed(history[-3:]), 1):
            lines.append(f"{i}. **{entry.get('failedValidation') or 'unknown'}** - {entry.get('message', '')}")
            if entry.get("timestamp"):
                lines.append(f"   - Time: {entry['timestamp']}")
        lines.append("")

    lines.append(f"### Attempt: {record.get('attempts') or 1}")
    return "\n".join(lines)


def build_blocked_by_details(record: dict[str, Any], review_path: Path | None = None) -> str:
    lines = ["### Issues to Fix:"]
    for i, issue in enumerate((record.get("completion") or {}).get("blockedBy") or [], 1):
        lines.append(f"{i}. {issue}")
    lines.append("")

    lines.append("### Additional Context:")
    if review_path is not None and review_path.exists():
        lines.append(f"- Check `{review_path}` for detailed analysis")
    lines.append("- Check `errorHistory` for timeline")
    return "\n".join(lines)


def build_block_reason(record: dict[str, Any]) -> str:
    lines: list[str] = []
    completion = record.get("completion") or {}

    summary = completion.get("summary") or []
    if summary:
        lines.append("### Block Summary:")
        lines.extend(f"- {s}" for s in summary)
        lines.append("")

    deviations = completion.get("deviations") or []
    if deviations:
        lines.append("### Details:")
        lines.extend(f"- {d}" for d in deviations)
        lines.append("")

    current = record.get("currentPhase")
    if current:
        lines.append(f"### Blocked at: Phase {current.get('id')} - {current.get('name')}")
        if current.get("lastAction"):
            lines.append(f"Last action: {current['lastAction']}")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------

class PromptSelector:
    """Loads directive templates and renders the one matching a record."""

    def __init__(
        self,
        template_dir: Path | None = None,
        execution_file: str = "execution.json",
        review_file: str = "CODE_REVIEW.md",
    ):
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR
        self.execution_file = execution_file
        self.review_file = review_file
        self._templates: dict[str, str] = {}

    def load_template(self, name: str) -> str:
        if name not in self._templates:
            path = self.template_dir / f"{name}.md"
            if not path.exists():
                raise FileNotFoundError(f"Prompt file not found: {path}")
            self._templates[name] = path.read_text(encoding="utf-8")
        return self._templates[name]

    def _fill_paths(self, text: str, task_folder: str, working_folder: str) -> str:
        return (
            text.replace("{{taskFolder}}", task_folder)
            .replace("{{workingFolder}}", working_folder)
            .replace("{{executionFile}}", self.execution_file)
        )

    def select(
        self,
        record: dict[str, Any],
        task_folder: str = "",
        working_folder: str = "",
    ) -> DirectiveSelection:
        state = detect_execution_state(record)

        base = self._fill_paths(self.load_template("base"), task_folder, working_folder)
        specific = self._fill_paths(self.load_template(state.value), task_folder, working_folder)

        if state == ExecutionState.ERROR_RECOVERY:
            specific = specific.replace("{{errorDetails}}", build_error_details(record))
        elif state == ExecutionState.BLOCKED_DEPENDENCY:
            review_path = Path(task_folder) / self.review_file if task_folder else None
            specific = specific.replace("{{blockedByDetails}}", build_blocked_by_details(record, review_path))
        elif state == ExecutionState.BLOCKED_EXECUTION:
            specific = specific.replace("{{blockReason}}", build_block_reason(record))

        logger.debug(f"[SELECTOR] {record.get('task', '?')} → {state.value}")
        return DirectiveSelection(
            state=state,
            prompt=f"{base}{SECTION_SEPARATOR}{specific}",
            base_prompt=base,
            specific_prompt=specific,
        )
