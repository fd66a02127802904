"""
PHASEKEEPER Repairer — heal, don't reject.

Field-level, type-aware repair of an execution record that failed
schema validation for non-critical reasons. For every record type:

  - missing required fields are filled from a typed default or from
    the best synonym the actor actually wrote (`file` for `path`, ...)
  - enum fields snap to the nearest valid value
  - wrong-typed scalars are coerced (numbers to strings, scalars to lists)
  - every key not declared by the schema is dropped

Repair is idempotent: repairing repaired data changes nothing.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Callable

from loguru import logger

from phasekeeper.schema import (
    ARTIFACT_TYPES,
    COMPLETION_STATUSES,
    CONFIDENCE_LEVELS,
    PHASE_STATUSES,
    RECORD_STATUSES,
    SCHEMA_MARKER,
    SCHEMA_VERSION,
    Artifact,
    BeyondTheBasics,
    Cleanup,
    Completion,
    CurrentPhase,
    ErrorEntry,
    ExecutionRecord,
    Phase,
    PhaseItem,
    PreCondition,
    SuccessCriterion,
    Uncertainty,
    field_keys,
    is_iso_datetime,
    utc_now,
)

_UNCERTAINTY_ID = re.compile(r"^U\d+$")

# Synonyms the actor tends to write instead of the declared value.
_STATUS_SYNONYMS = {
    "done": "completed",
    "complete": "completed",
    "finished": "completed",
    "success": "completed",
    "in-progress": "in_progress",
    "in progress": "in_progress",
    "inprogress": "in_progress",
    "active": "in_progress",
    "started": "in_progress",
    "running": "in_progress",
    "todo": "pending",
    "not_started": "pending",
}

_ARTIFACT_SYNONYMS = {
    "create": "created",
    "new": "created",
    "added": "created",
    "add": "created",
    "modify": "modified",
    "updated": "modified",
    "changed": "modified",
    "edited": "modified",
}

_COMPLETION_SYNONYMS = {
    "pending": "pending_validation",
    "in_progress": "pending_validation",
    "done": "completed",
    "complete": "completed",
}


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


def _opt_str(value: Any) -> str | None:
    return None if value is None else _to_str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1", "passed", "ok")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _to_int(value: Any, default: int, minimum: int = 0) -> int:
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int):
        result = value
    elif isinstance(value, float):
        result = int(value)
    elif isinstance(value, str):
        digits = re.search(r"-?\d+", value)
        result = int(digits.group()) if digits else default
    else:
        result = default
    return max(minimum, result)


def _to_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [_to_str(v) for v in value if v is not None]


def _normalize_enum(value: Any, allowed: tuple[str, ...], default: str,
                    synonyms: dict[str, str] | None = None, upper: bool = False) -> str:
    if not isinstance(value, str):
        return default
    key = value.strip()
    key = key.upper() if upper else key.lower()
    if key in allowed:
        return key
    if synonyms and key in synonyms:
        return synonyms[key]
    if not upper:
        snake = key.replace("-", "_").replace(" ", "_")
        if snake in allowed:
            return snake
    return default


def _first(item: dict, *keys: str) -> Any:
    """Value of the first key present with a non-empty value."""
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _strip(item: dict, model: type) -> dict:
    allowed = field_keys(model)
    return {k: v for k, v in item.items() if k in allowed}


def _repair_list(value: Any, repair_item: Callable[[dict, int], dict | None]) -> list[dict]:
    if value is None:
        return []
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    repaired = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            logger.debug(f"[REPAIR] Dropping non-object list entry: {item!r}")
            continue
        fixed = repair_item(item, index)
        if fixed is not None:
            repaired.append(fixed)
    return repaired


# ---------------------------------------------------------------------------
# Item-level repair
# ---------------------------------------------------------------------------

def repair_precondition(item: dict, index: int = 0) -> dict:
    fixed = {
        "check": _to_str(_first(item, "check", "description", "name") or f"Pre-condition {index + 1}"),
        "command": _to_str(item.get("command")),
        "expected": _to_str(item.get("expected")),
        "passed": _to_bool(item.get("passed")),
    }
    if "evidence" in item:
        fixed["evidence"] = _opt_str(item["evidence"])
    return _strip(fixed, PreCondition)


def repair_phase_item(item: dict, index: int = 0) -> dict:
    fixed = {
        "description": _to_str(_first(item, "description", "name", "task")),
        "completed": _to_bool(item.get("completed")),
    }
    for key in ("source", "evidence"):
        if key in item:
            fixed[key] = _opt_str(item[key])
    return _strip(fixed, PhaseItem)


def repair_phase(item: dict, index: int = 0) -> dict:
    phase_id = _to_int(item.get("id"), default=index + 1, minimum=1)
    fixed = {
        "id": phase_id,
        "name": _to_str(_first(item, "name", "title", "description") or f"Phase {phase_id}"),
        "status": _normalize_enum(item.get("status"), PHASE_STATUSES, "pending", _STATUS_SYNONYMS),
    }
    if "preConditions" in item:
        fixed["preConditions"] = _repair_list(item["preConditions"], repair_precondition)
    if "items" in item:
        fixed["items"] = _repair_list(item["items"], repair_phase_item)
    return _strip(fixed, Phase)


def repair_success_criterion(item: dict, index: int = 0) -> dict:
    fixed = {
        "criterion": _to_str(
            _first(item, "criterion", "description", "name", "check") or f"Criterion {index + 1}"
        ),
        "command": _to_str(item.get("command")),
        "passed": _to_bool(item.get("passed")),
    }
    for key in ("expected", "evidence"):
        if key in item:
            fixed[key] = _opt_str(item[key])
    return _strip(fixed, SuccessCriterion)


def repair_uncertainty(item: dict, index: int = 0) -> dict:
    uid = item.get("id")
    if not isinstance(uid, str) or not _UNCERTAINTY_ID.match(uid):
        uid = f"U{index + 1}"
    fixed = {
        "id": uid,
        "topic": _to_str(_first(item, "topic", "title", "description") or "Unspecified"),
        "assumption": _to_str(item.get("assumption")),
        "confidence": _normalize_enum(item.get("confidence"), CONFIDENCE_LEVELS, "MEDIUM", upper=True),
    }
    if "resolution" in item:
        fixed["resolution"] = _opt_str(item["resolution"])
    if "resolvedConfidence" in item:
        # An unrecognised resolved confidence is cleared, not guessed.
        resolved = item["resolvedConfidence"]
        if resolved is not None:
            resolved = _normalize_enum(resolved, CONFIDENCE_LEVELS, "", upper=True) or None
        fixed["resolvedConfidence"] = resolved
    return _strip(fixed, Uncertainty)


def repair_artifact(item: dict, index: int = 0) -> dict | None:
    path = _first(item, "path", "file")
    if path is None:
        logger.debug(f"[REPAIR] Dropping artifact without a path: {item!r}")
        return None
    fixed = {
        "type": _normalize_enum(item.get("type"), ARTIFACT_TYPES, "modified", _ARTIFACT_SYNONYMS),
        "path": _to_str(path),
        "verified": _to_bool(item.get("verified")),
    }
    if "verification" in item:
        fixed["verification"] = _opt_str(item["verification"])
    return _strip(fixed, Artifact)


def repair_error_entry(item: dict, index: int = 0) -> dict:
    timestamp = item.get("timestamp")
    fixed = {
        "timestamp": timestamp if isinstance(timestamp, str) and timestamp else utc_now(),
        "message": _to_str(_first(item, "message", "error")),
    }
    for key in ("failedValidation", "stack", "phase"):
        if key in item:
            fixed[key] = _opt_str(item[key])
    return _strip(fixed, ErrorEntry)


def repair_current_phase(item: Any, phases: list[dict]) -> dict | None:
    if not isinstance(item, dict):
        if not phases:
            return None
        item = {}
    phase_id = _to_int(item.get("id"), default=1, minimum=1)
    known = {p["id"]: p for p in phases}
    if known and phase_id not in known:
        incomplete = sorted(pid for pid, p in known.items() if p["status"] != "completed")
        phase_id = incomplete[0] if incomplete else max(known)
        logger.debug(f"[REPAIR] currentPhase re-pointed to Phase {phase_id}")
        name = known[phase_id]["name"]
    else:
        name = _first(item, "name") or (known[phase_id]["name"] if phase_id in known else f"Phase {phase_id}")
    fixed = {"id": phase_id, "name": _to_str(name)}
    if "lastAction" in item:
        fixed["lastAction"] = _opt_str(item["lastAction"])
    return _strip(fixed, CurrentPhase)


def repair_completion(item: Any) -> dict | None:
    if item is None:
        return None
    if not isinstance(item, dict):
        item = {"summary": item}
    fixed: dict[str, Any] = {
        "status": _normalize_enum(
            item.get("status"), COMPLETION_STATUSES, "pending_validation", _COMPLETION_SYNONYMS
        ),
    }
    for key in ("summary", "deviations", "forFutureTasks"):
        if key in item:
            fixed[key] = _to_str_list(item[key])
    if "blockedBy" in item:
        fixed["blockedBy"] = None if item["blockedBy"] is None else _to_str_list(item["blockedBy"])
    for key in ("lastError", "failedValidation"):
        if key in item:
            fixed[key] = _opt_str(item[key])
    if "codeReviewPassed" in item:
        value = item["codeReviewPassed"]
        fixed["codeReviewPassed"] = None if value is None else _to_bool(value)
    return _strip(fixed, Completion)


def repair_beyond_the_basics(item: Any) -> dict | None:
    if not isinstance(item, dict):
        return None
    fixed: dict[str, Any] = {}
    for key in ("extras", "edgeCases"):
        if key in item:
            fixed[key] = _to_str_list(item[key])
    if "downstreamImpact" in item:
        impact = item["downstreamImpact"]
        fixed["downstreamImpact"] = (
            {_to_str(k): _to_str(v) for k, v in impact.items()} if isinstance(impact, dict) else {}
        )
    cleanup = item.get("cleanup")
    if isinstance(cleanup, dict):
        fixed["cleanup"] = _strip(
            {key: _to_bool(cleanup.get(key)) for key in field_keys(Cleanup)}, Cleanup
        )
    return _strip(fixed, BeyondTheBasics)


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


# ---------------------------------------------------------------------------
# Record-level repair
# ---------------------------------------------------------------------------

def repair_record(data: dict[str, Any]) -> dict[str, Any]:
    """
    Return a repaired deep copy of an execution record.

    Top-level required fields get typed defaults; every array-of-record
    and nested record field is repaired item by item; unknown top-level
    keys are dropped.
    """
    src = copy.deepcopy(data)

    version = src.get("version")
    started = src.get("started")
    task = _first(src, "task", "taskId", "id")

    repaired: dict[str, Any] = {
        "$schema": SCHEMA_MARKER,
        "version": _to_str(version) if version not in (None, "") else SCHEMA_VERSION,
        "task": _to_str(task) if task is not None else "UNKNOWN",
        "title": _to_str(_first(src, "title", "name") or task or "Untitled task"),
        "status": _normalize_enum(src.get("status"), RECORD_STATUSES, "pending", _STATUS_SYNONYMS),
        "started": started if is_iso_datetime(started) else utc_now(),
        "attempts": _to_int(src.get("attempts"), default=0, minimum=0),
    }

    phases = _repair_list(src.get("phases"), repair_phase)
    if "phases" in src:
        repaired["phases"] = phases
    if "currentPhase" in src:
        current = repair_current_phase(src["currentPhase"], phases)
        if current is not None:
            repaired["currentPhase"] = current

    for key, repair_item in (
        ("successCriteria", repair_success_criterion),
        ("uncertainties", repair_uncertainty),
        ("artifacts", repair_artifact),
        ("errorHistory", repair_error_entry),
    ):
        if key in src:
            repaired[key] = _repair_list(src[key], repair_item)

    if "pendingFixes" in src:
        repaired["pendingFixes"] = _dedupe(_to_str_list(src["pendingFixes"]))

    completion = repair_completion(src.get("completion"))
    if completion is not None:
        repaired["completion"] = completion

    extras = repair_beyond_the_basics(src.get("beyondTheBasics"))
    if extras is not None:
        repaired["beyondTheBasics"] = extras

    dropped = sorted(set(src) - set(field_keys(ExecutionRecord)) - {"taskId", "id", "name"})
    if dropped:
        logger.debug(f"[REPAIR] Dropped unknown fields: {dropped}")

    return repaired
