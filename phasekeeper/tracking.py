"""
PHASEKEEPER Tracking — record bookkeeping around an actor iteration.

  - artifacts / uncertainties appended in the record's own shape
  - phase pre-conditions executed (deny-listed commands never run)
  - completion rules checked
  - declared artifacts reconciled with what git says changed
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from phasekeeper.schema import CONFIDENCE_LEVELS
from phasekeeper.security import SecurityPolicy


# ---------------------------------------------------------------------------
# Artifacts & uncertainties
# ---------------------------------------------------------------------------

def track_artifacts(
    record: dict[str, Any],
    created: Iterable[str] = (),
    modified: Iterable[str] = (),
) -> None:
    artifacts = record.setdefault("artifacts", [])
    for path in created:
        artifacts.append({"type": "created", "path": path, "verified": False})
        logger.debug(f"[TRACK] artifact created: {path}")
    for path in modified:
        artifacts.append({"type": "modified", "path": path, "verified": False})
        logger.debug(f"[TRACK] artifact modified: {path}")


def track_uncertainty(record: dict[str, Any], topic: str, assumption: str, confidence: str) -> str:
    """Append an open uncertainty and return its U<n> id."""
    if confidence not in CONFIDENCE_LEVELS:
        raise ValueError(f"confidence must be one of {CONFIDENCE_LEVELS}, got {confidence!r}")
    uncertainties = record.setdefault("uncertainties", [])
    uid = f"U{len(uncertainties) + 1}"
    uncertainties.append({
        "id": uid,
        "topic": topic,
        "assumption": assumption,
        "confidence": confidence,
        "resolution": None,
        "resolvedConfidence": None,
    })
    logger.info(f"[TRACK] uncertainty {uid}: {topic} ({confidence})")
    return uid


# ---------------------------------------------------------------------------
# Pre-conditions
# ---------------------------------------------------------------------------

@dataclass
class PreconditionReport:
    passed: bool
    blocked: bool
    failed_check: str | None = None


def _is_informational(command: str) -> bool:
    return command.strip() == "true" or command.startswith('echo "no command')


def verify_preconditions(
    record: dict[str, Any],
    policy: SecurityPolicy | None = None,
    timeout: float = 5.0,
    cwd: Path | None = None,
) -> PreconditionReport:
    """
    Run every phase pre-condition in order, writing passed/evidence back.

    The first failure blocks the record (status=blocked) and stops.
    """
    policy = policy or SecurityPolicy()

    for phase in record.get("phases") or []:
        for pc in phase.get("preConditions") or []:
            check = pc.get("check") or "unknown"
            command = pc.get("command")

            if not isinstance(command, str) or not command.strip():
                pc["passed"] = True
                pc["evidence"] = "No command specified - auto-passed"
                continue
            if _is_informational(command):
                pc["passed"] = True
                pc["evidence"] = "Informational pre-condition - auto-passed"
                continue

            if policy.is_dangerous_command(command):
                pc["passed"] = False
                pc["evidence"] = "Command rejected: contains dangerous patterns"
            else:
                logger.debug(f"[TRACK] pre-condition '{check}': {command}")
                try:
                    result = subprocess.run(
                        command, shell=True, cwd=cwd,
                        capture_output=True, text=True, timeout=timeout,
                    )
                    expected = pc.get("expected") or ""
                    pc["evidence"] = result.stdout.strip()
                    if result.returncode != 0:
                        pc["passed"] = False
                        pc["evidence"] = (result.stderr.strip() or pc["evidence"]
                                          or f"Command exited with {result.returncode}")
                    else:
                        pc["passed"] = expected == "" or expected in result.stdout
                except subprocess.TimeoutExpired:
                    pc["passed"] = False
                    pc["evidence"] = f"Command timed out after {timeout:g}s"

            if not pc["passed"]:
                logger.warning(f"[TRACK] Pre-condition FAILED: {check}. Evidence: {pc['evidence']}")
                record["status"] = "blocked"
                return PreconditionReport(passed=False, blocked=True, failed_check=check)

    return PreconditionReport(passed=True, blocked=False)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def validate_completion(record: dict[str, Any]) -> bool:
    """True only when every phase, item, check, artifact and cleanup flag is done."""
    for phase in record.get("phases") or []:
        if phase.get("status") != "completed":
            logger.debug(f"[TRACK] incomplete: phase {phase.get('id')} is {phase.get('status')}")
            return False
        if any(item.get("completed") is not True for item in phase.get("items") or []):
            logger.debug(f"[TRACK] incomplete: phase {phase.get('id')} has open items")
            return False
        if any(pc.get("passed") is not True for pc in phase.get("preConditions") or []):
            logger.debug(f"[TRACK] incomplete: phase {phase.get('id')} has failing pre-conditions")
            return False

    if any(a.get("verified") is not True for a in record.get("artifacts") or []):
        logger.debug("[TRACK] incomplete: unverified artifacts")
        return False
    if any(c.get("passed") is not True for c in record.get("successCriteria") or []):
        logger.debug("[TRACK] incomplete: success criteria not met")
        return False

    cleanup = (record.get("beyondTheBasics") or {}).get("cleanup") or {}
    if any(cleanup.get(flag) is False for flag in ("debugLogsRemoved", "formattingConsistent", "deadCodeRemoved")):
        logger.debug("[TRACK] incomplete: cleanup not done")
        return False

    return True


# ---------------------------------------------------------------------------
# Change reconciliation
# ---------------------------------------------------------------------------

def normalize_path(path: str) -> str:
    path = path.replace("\\", "/").strip()
    while path.startswith("./"):
        path = path[2:]
    return path


@dataclass
class ChangeReport:
    actual: list[str] = field(default_factory=list)
    declared: list[str] = field(default_factory=list)
    undeclared: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.undeclared and not self.missing


def verify_changes(
    record: dict[str, Any],
    changed_files: Iterable[str],
    ignore: Iterable[str] = (),
) -> ChangeReport:
    """
    Compare declared artifacts with what the VCS reports as changed.

    Paths under any `ignore` prefix (e.g. the task folder itself) are
    left out of the comparison.
    """
    prefixes = [normalize_path(p).rstrip("/") for p in ignore if p]

    def _ignored(path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in prefixes)

    actual = list(dict.fromkeys(
        p for p in (normalize_path(f) for f in changed_files) if p and not _ignored(p)
    ))
    declared = list(dict.fromkeys(
        normalize_path(a["path"]) for a in record.get("artifacts") or []
        if a.get("type") in ("created", "modified") and isinstance(a.get("path"), str)
    ))

    report = ChangeReport(
        actual=actual,
        declared=declared,
        undeclared=[f for f in actual if f not in declared],
        missing=[f for f in declared if f not in actual],
    )
    if report.undeclared:
        logger.warning(f"[TRACK] Changed but not declared: {', '.join(report.undeclared)}")
    if report.missing:
        logger.warning(f"[TRACK] Declared but not changed: {', '.join(report.missing)}")
    return report
