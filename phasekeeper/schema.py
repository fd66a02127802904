"""
PHASEKEEPER Execution Record — the one persisted document per task.

The record is written by an untrusted producer (the external actor),
so these models describe the *accepted* shape only: unknown keys are
forbidden and every scalar is checked strictly. Repair lives in
phasekeeper.repair; these models never coerce.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SCHEMA_MARKER = "execution-schema-v1"
SCHEMA_VERSION = "1.0"

RECORD_STATUSES = ("pending", "in_progress", "completed", "blocked")
PHASE_STATUSES = ("pending", "in_progress", "completed")
COMPLETION_STATUSES = ("pending_validation", "completed", "blocked")
CONFIDENCE_LEVELS = ("LOW", "MEDIUM", "HIGH")
ARTIFACT_TYPES = ("created", "modified")

RecordStatus = Literal["pending", "in_progress", "completed", "blocked"]
PhaseStatus = Literal["pending", "in_progress", "completed"]
CompletionStatus = Literal["pending_validation", "completed", "blocked"]
Confidence = Literal["LOW", "MEDIUM", "HIGH"]
ArtifactType = Literal["created", "modified"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_iso_datetime(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Nested records
# ---------------------------------------------------------------------------

class CurrentPhase(_Strict):
    id: int = Field(ge=1)
    name: str
    last_action: Optional[str] = Field(default=None, alias="lastAction")


class PreCondition(_Strict):
    check: str
    command: str
    expected: str
    passed: bool
    evidence: Optional[str] = None


class PhaseItem(_Strict):
    description: str
    completed: bool
    source: Optional[str] = None
    evidence: Optional[str] = None


class Phase(_Strict):
    id: int = Field(ge=1)
    name: str
    status: PhaseStatus
    pre_conditions: list[PreCondition] = Field(default_factory=list, alias="preConditions")
    items: list[PhaseItem] = Field(default_factory=list)


class SuccessCriterion(_Strict):
    criterion: str
    command: str
    expected: Optional[str] = None
    passed: bool
    evidence: Optional[str] = None


class Uncertainty(_Strict):
    id: str = Field(pattern=r"^U\d+$")
    topic: str
    assumption: str
    confidence: Confidence
    resolution: Optional[str] = None
    resolved_confidence: Optional[Confidence] = Field(default=None, alias="resolvedConfidence")


class Artifact(_Strict):
    type: ArtifactType
    path: str
    verified: bool
    verification: Optional[str] = None


class ErrorEntry(_Strict):
    timestamp: str
    message: str
    failed_validation: Optional[str] = Field(default=None, alias="failedValidation")
    stack: Optional[str] = None
    phase: Optional[str] = None


class Completion(_Strict):
    status: CompletionStatus
    summary: list[str] = Field(default_factory=list)
    deviations: list[str] = Field(default_factory=list)
    for_future_tasks: list[str] = Field(default_factory=list, alias="forFutureTasks")
    blocked_by: Optional[list[str]] = Field(default=None, alias="blockedBy")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    failed_validation: Optional[str] = Field(default=None, alias="failedValidation")
    code_review_passed: Optional[bool] = Field(default=None, alias="codeReviewPassed")


class Cleanup(_Strict):
    debug_logs_removed: bool = Field(alias="debugLogsRemoved")
    formatting_consistent: bool = Field(alias="formattingConsistent")
    dead_code_removed: bool = Field(alias="deadCodeRemoved")


class BeyondTheBasics(_Strict):
    extras: list[str] = Field(default_factory=list)
    edge_cases: list[str] = Field(default_factory=list, alias="edgeCases")
    downstream_impact: dict[str, str] = Field(default_factory=dict, alias="downstreamImpact")
    cleanup: Optional[Cleanup] = None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

class ExecutionRecord(_Strict):
    """The persisted progress of one task."""

    schema_marker: Literal["execution-schema-v1"] = Field(alias="$schema")
    version: str
    task: str
    title: str
    status: RecordStatus
    started: str
    attempts: int = Field(ge=0)

    current_phase: Optional[CurrentPhase] = Field(default=None, alias="currentPhase")
    phases: list[Phase] = Field(default_factory=list)
    success_criteria: list[SuccessCriterion] = Field(default_factory=list, alias="successCriteria")
    uncertainties: list[Uncertainty] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    error_history: list[ErrorEntry] = Field(default_factory=list, alias="errorHistory")
    pending_fixes: list[str] = Field(default_factory=list, alias="pendingFixes")
    completion: Optional[Completion] = None
    beyond_the_basics: Optional[BeyondTheBasics] = Field(default=None, alias="beyondTheBasics")

    @field_validator("started")
    @classmethod
    def _started_is_datetime(cls, value: str) -> str:
        if not is_iso_datetime(value):
            raise ValueError("Invalid date-time format")
        return value

    @model_validator(mode="after")
    def _current_phase_exists(self) -> "ExecutionRecord":
        if self.current_phase and self.phases:
            if self.current_phase.id not in {p.id for p in self.phases}:
                raise ValueError(
                    f"currentPhase.id {self.current_phase.id} does not reference a phase"
                )
        return self


# JSON keys of every record type, used by the repairer to strip unknown fields.
def field_keys(model: type[BaseModel]) -> tuple[str, ...]:
    return tuple(f.alias or name for name, f in model.model_fields.items())


def new_execution_record(
    task_id: str,
    title: str,
    phases: list[str] | None = None,
) -> dict[str, Any]:
    """Seed the record for a freshly materialised task."""
    phase_names = phases or ["Implementation"]
    return {
        "$schema": SCHEMA_MARKER,
        "version": SCHEMA_VERSION,
        "task": task_id,
        "title": title,
        "status": "pending",
        "started": utc_now(),
        "attempts": 0,
        "currentPhase": {"id": 1, "name": phase_names[0]},
        "phases": [
            {"id": i, "name": name, "status": "pending", "preConditions": [], "items": []}
            for i, name in enumerate(phase_names, 1)
        ],
        "successCriteria": [],
        "uncertainties": [],
        "artifacts": [],
        "errorHistory": [],
        "pendingFixes": [],
        "completion": {
            "status": "pending_validation",
            "summary": [],
            "deviations": [],
            "forFutureTasks": [],
        },
        "beyondTheBasics": {
            "extras": [],
            "edgeCases": [],
            "downstreamImpact": {},
            "cleanup": {
                "debugLogsRemoved": False,
                "formattingConsistent": False,
                "deadCodeRemoved": False,
            },
        },
    }
