import copy

import pytest

from phasekeeper.repair import repair_record
from phasekeeper.schema import SCHEMA_MARKER, is_iso_datetime
from phasekeeper.security import SecurityPolicy
from phasekeeper.validator import (
    MISSING,
    CriticalValidationError,
    SchemaValidator,
    format_errors,
    sanitize,
)


@pytest.fixture
def validator():
    return SchemaValidator()


def _messy_record() -> dict:
    return {
        "task": "T7",
        "title": "Payments",
        "status": "In-Progress",
        "started": "yesterday",
        "attempts": "2",
        "currentPhase": {"id": 9, "name": "Ghost", "mood": "tired"},
        "phases": [
            {"id": 1, "name": "Setup", "status": "done",
             "preConditions": [{"description": "has git", "command": "git --version", "expected": 2, "passed": "yes"}]},
            {"id": 2, "title": "Build", "status": "wip", "items": [{"task": "write code", "completed": 1}]},
        ],
        "uncertainties": [{"id": "first", "topic": "auth", "assumption": "JWT", "confidence": "high",
                           "resolution": None, "resolvedConfidence": "maybe"}],
        "artifacts": [{"file": "./src/pay.py", "type": "new"}, {"type": "created"}, "junk"],
        "errorHistory": [{"error": "boom"}],
        "pendingFixes": ["lint", "lint", "tests"],
        "completion": {"status": "done", "summary": "all good", "deviations": None, "extra": 1},
        "beyondTheBasics": {"extras": "docs", "cleanup": {"debugLogsRemoved": "true"}},
        "hallucinated": {"nested": True},
    }


# ---------------------------------------------------------------------------
# Sanitize
# ---------------------------------------------------------------------------

def test_sanitize_drops_missing_keeps_null():
    data = {
        "a": MISSING,
        "b": None,
        "c": [1, MISSING, None, {"d": MISSING, "e": None}],
        "f": {"g": {"h": MISSING, "i": 0}},
    }
    assert sanitize(data) == {
        "b": None,
        "c": [1, None, {"e": None}],
        "f": {"g": {"i": 0}},
    }


def test_missing_is_falsy_singleton():
    assert not MISSING
    assert type(MISSING)() is MISSING
    assert repr(MISSING) == "MISSING"


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

def test_seeded_record_is_valid(validator, seeded_record):
    result = validator.validate(seeded_record)
    assert result.valid
    assert result.errors == []
    assert result.repaired_data is None


def test_empty_record_is_repaired_to_defaults(validator):
    result = validator.validate({}, sanitize_input=True, repair=True)

    assert not result.valid
    assert "root: Missing required field 'status'" in result.errors
    repaired = result.repaired_data
    assert repaired["status"] == "pending"
    assert repaired["attempts"] == 0
    assert is_iso_datetime(repaired["started"])
    assert repaired["$schema"] == SCHEMA_MARKER
    assert result.remaining_errors == []
    assert validator.validate(repaired).valid


def test_non_object_input(validator):
    assert validator.validate(None).errors == ["Input data is null"]
    result = validator.validate([1, 2], repair=True)
    assert result.errors == ["Input data must be an object"]
    assert result.repaired_data is None


def test_sanitized_data_is_reported(validator, seeded_record):
    seeded_record["title"] = MISSING
    result = validator.validate(seeded_record, sanitize_input=True)
    assert "title" not in result.sanitized_data
    assert "root: Missing required field 'title'" in result.errors
    assert result.data is result.sanitized_data


def test_error_messages_name_path_and_reason(validator, seeded_record):
    seeded_record["phases"][1]["status"] = "wip"
    seeded_record["attempts"] = -1
    seeded_record["bogus"] = 1
    seeded_record["uncertainties"] = [
        {"id": "X1", "topic": "t", "assumption": "a", "confidence": "LOW"}
    ]
    errors = validator.check(seeded_record)

    assert any(e.startswith("phases.1.status: Invalid value. Allowed values:") for e in errors)
    assert "attempts: Value must be >= 0" in errors
    assert "root: Unknown property 'bogus'" in errors
    assert any(e.startswith("uncertainties.0.id: Value does not match pattern") for e in errors)


def test_current_phase_must_reference_a_phase(validator, seeded_record):
    seeded_record["currentPhase"] = {"id": 7, "name": "Nope"}
    errors = validator.check(seeded_record)
    assert errors == ["root: currentPhase.id 7 does not reference a phase"]

    result = validator.validate(seeded_record, repair=True)
    assert result.repaired_data["currentPhase"] == {"id": 1, "name": "Setup"}


def test_wrong_types_are_reported():
    errors = format_errors([
        {"loc": ("title",), "type": "string_type", "msg": "x"},
        {"loc": ("phases",), "type": "list_type", "msg": "x"},
        {"loc": ("started",), "type": "value_error", "msg": "x", "ctx": {"error": ValueError("Invalid date-time format")}},
    ])
    assert errors == ["title: Expected string", "phases: Expected array", "started: Invalid date-time format"]


def test_critical_errors_raise_even_with_repair(seeded_record):
    validator = SchemaValidator(policy=SecurityPolicy(critical_patterns=["unknown property"]))
    seeded_record["surprise"] = True
    with pytest.raises(CriticalValidationError) as exc_info:
        validator.validate(seeded_record, repair=True)
    assert "Unknown property 'surprise'" in str(exc_info.value)
    assert exc_info.value.errors == ["root: Unknown property 'surprise'"]


def test_reset_rebuilds_adapter(validator):
    first = validator.adapter
    assert validator.adapter is first
    validator.reset()
    assert validator.adapter is not first


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

def test_repair_heals_messy_record(validator):
    result = validator.validate(_messy_record(), sanitize_input=True, repair=True)
    fixed = result.repaired_data

    assert result.remaining_errors == []
    assert fixed["status"] == "in_progress"
    assert fixed["attempts"] == 2
    assert is_iso_datetime(fixed["started"])
    assert "hallucinated" not in fixed

    setup, build = fixed["phases"]
    assert setup["status"] == "completed"
    assert setup["preConditions"] == [
        {"check": "has git", "command": "git --version", "expected": "2", "passed": True}
    ]
    assert build["name"] == "Build"
    assert build["status"] == "pending"
    assert build["items"] == [{"description": "write code", "completed": True}]

    # Unknown phase id is re-pointed at the first incomplete phase.
    assert fixed["currentPhase"] == {"id": 2, "name": "Build"}

    assert fixed["uncertainties"] == [{
        "id": "U1", "topic": "auth", "assumption": "JWT", "confidence": "HIGH",
        "resolution": None, "resolvedConfidence": None,
    }]
    assert fixed["artifacts"] == [{"type": "created", "path": "./src/pay.py", "verified": False}]
    assert fixed["errorHistory"][0]["message"] == "boom"
    assert fixed["pendingFixes"] == ["lint", "tests"]
    assert fixed["completion"] == {"status": "completed", "summary": ["all good"], "deviations": []}
    assert fixed["beyondTheBasics"] == {
        "extras": ["docs"],
        "cleanup": {"debugLogsRemoved": True, "formattingConsistent": False, "deadCodeRemoved": False},
    }


def test_invalid_enums_fall_back_to_defaults():
    fixed = repair_record({
        "status": "exploded",
        "phases": [{"id": 1, "name": "A", "status": "??"}],
        "uncertainties": [{"topic": "t", "assumption": "a", "confidence": "very"}],
        "artifacts": [{"path": "a.py", "type": "deleted"}],
    })
    assert fixed["status"] == "pending"
    assert fixed["phases"][0]["status"] == "pending"
    assert fixed["uncertainties"][0]["confidence"] == "MEDIUM"
    assert fixed["artifacts"][0]["type"] == "modified"


def test_repair_is_idempotent():
    once = repair_record(_messy_record())
    assert repair_record(once) == once


def test_repair_leaves_valid_record_unchanged(seeded_record):
    original = copy.deepcopy(seeded_record)
    assert repair_record(seeded_record) == original
    assert seeded_record == original


def test_explicit_nulls_survive_the_pipeline(validator, seeded_record):
    seeded_record["completion"]["lastError"] = None
    seeded_record["uncertainties"] = [{
        "id": "U1", "topic": "t", "assumption": "a", "confidence": "LOW",
        "resolution": None, "resolvedConfidence": None,
    }]
    result = validator.validate(seeded_record, sanitize_input=True, repair=True)
    assert result.valid
    assert result.sanitized_data["completion"]["lastError"] is None
