"""
PHASEKEEPER Phase Gate

Phase N may only be current once phase N-1 is completed.
When the actor jumps ahead, the pointer is pulled back to the
first phase that still has work left.
"""

from __future__ import annotations

from typing import Any

from loguru import logger


def _phase_name(phase: dict[str, Any] | None, phase_id: int) -> str:
    if phase and phase.get("name"):
        return phase["name"]
    return f"Phase {phase_id}"


def _find_phase(record: dict[str, Any], phase_id: int) -> dict[str, Any] | None:
    for phase in record.get("phases") or []:
        if isinstance(phase, dict) and phase.get("id") == phase_id:
            return phase
    return None


def enforce_phase_gate(record: dict[str, Any]) -> bool:
    """
    Check the current-phase pointer against the phase list.

    Mutates `record["currentPhase"]` when the gate fails.
    Returns True if the gate passed, False if the pointer was demoted.
    """
    current = record.get("currentPhase") or {}
    current_id = current.get("id")
    if not isinstance(current_id, int) or current_id <= 1:
        return True

    prev_phase = _find_phase(record, current_id - 1)
    if prev_phase is None:
        return True

    logger.debug(f"[GATE] Phase {current_id - 1} status is {prev_phase.get('status')}")
    if prev_phase.get("status") == "completed":
        return True

    logger.warning(f"[GATE] Phase {current_id - 1} not completed, demoting currentPhase")
    incomplete = sorted(
        (p for p in record.get("phases") or []
         if isinstance(p, dict) and isinstance(p.get("id"), int) and p.get("status") != "completed"),
        key=lambda p: p["id"],
    )
    if incomplete:
        target = incomplete[0]
        record["currentPhase"] = {"id": target["id"], "name": _phase_name(target, target["id"])}
    else:
        record["currentPhase"] = {"id": current_id - 1, "name": _phase_name(prev_phase, current_id - 1)}

    logger.info(f"[GATE] currentPhase reset to Phase {record['currentPhase']['id']}")
    return False


def update_phase_progress(record: dict[str, Any], phase_id: int, status: str) -> None:
    """Set a phase's status and move the pointer forward (never back)."""
    phase = _find_phase(record, phase_id)
    if phase is not None:
        phase["status"] = status

    current = record.get("currentPhase")
    if isinstance(current, dict) and isinstance(current.get("id"), int) and current["id"] < phase_id:
        current["id"] = phase_id
        current["name"] = _phase_name(phase, phase_id)


def phase_order_violations(record: dict[str, Any]) -> list[int]:
    """Ids of phases marked completed while an earlier phase is not."""
    violations = []
    seen_incomplete = False
    phases = sorted(
        (p for p in record.get("phases") or [] if isinstance(p, dict) and isinstance(p.get("id"), int)),
        key=lambda p: p["id"],
    )
    for phase in phases:
        if phase.get("status") == "completed":
            if seen_incomplete:
                violations.append(phase["id"])
        else:
            seen_incomplete = True
    return violations
