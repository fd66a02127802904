"""
PHASEKEEPER Schema Validator

Pipeline applied to every execution record before business logic
touches it:

    sanitize  →  validate  →  (critical? raise)  →  repair

The validator is an explicit object. Components receive one instead of
reaching for a process-wide cache; `reset()` / `reload()` exist so tests
can swap the schema.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError

from phasekeeper.repair import repair_record
from phasekeeper.schema import ExecutionRecord
from phasekeeper.security import SecurityPolicy


class _Missing:
    """Marker for a field the producer left absent (as opposed to null)."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class CriticalValidationError(Exception):
    """A defect that must never be auto-healed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class SchemaValidationError(Exception):
    """Non-critical defects surfaced in strict mode."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized_data: dict[str, Any] | None = None
    repaired_data: dict[str, Any] | None = None
    # Errors still present after repair; empty when repair fully healed the record.
    remaining_errors: list[str] = field(default_factory=list)

    @property
    def data(self) -> Any:
        """Best available data: repaired, else sanitized, else None."""
        if self.repaired_data is not None:
            return self.repaired_data
        return self.sanitized_data


# ---------------------------------------------------------------------------
# Sanitize
# ---------------------------------------------------------------------------

def sanitize(value: Any) -> Any:
    """
    Recursively drop MISSING values from dicts and lists.

    Explicit None survives: null means "intentionally cleared",
    MISSING means "never written".
    """
    if isinstance(value, dict):
        return {k: sanitize(v) for k, v in value.items() if v is not MISSING}
    if isinstance(value, list):
        return [sanitize(v) for v in value if v is not MISSING]
    return value


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------

_TYPE_NAMES = {
    "string_type": "string",
    "int_type": "integer",
    "int_from_float": "integer",
    "bool_type": "boolean",
    "list_type": "array",
    "dict_type": "object",
    "model_type": "object",
    "model_attributes_type": "object",
    "float_type": "number",
    "none_required": "null",
}


def _dotted(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc) if loc else "root"


def format_errors(errors: list[dict[str, Any]]) -> list[str]:
    """Render pydantic error dicts as `path: reason` strings."""
    formatted = []
    for error in errors:
        loc = tuple(error.get("loc", ()))
        kind = error.get("type", "")
        ctx = error.get("ctx") or {}
        path = _dotted(loc)
        parent = _dotted(loc[:-1])
        last = loc[-1] if loc else ""

        if kind == "missing":
            formatted.append(f"{parent}: Missing required field '{last}'")
        elif kind == "extra_forbidden":
            formatted.append(f"{parent}: Unknown property '{last}'")
        elif kind in ("literal_error", "enum"):
            formatted.append(f"{path}: Invalid value. Allowed values: {ctx.get('expected', '')}")
        elif kind in _TYPE_NAMES:
            formatted.append(f"{path}: Expected {_TYPE_NAMES[kind]}")
        elif kind == "greater_than_equal":
            formatted.append(f"{path}: Value must be >= {ctx.get('ge')}")
        elif kind == "string_pattern_mismatch":
            formatted.append(f"{path}: Value does not match pattern {ctx.get('pattern')}")
        elif kind == "value_error":
            formatted.append(f"{path}: {ctx.get('error', error.get('msg', ''))}")
        else:
            formatted.append(f"{path}: {error.get('msg', kind)}")
    return formatted


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class SchemaValidator:
    """
    Validates (and optionally repairs) execution records.

    Only errors matching the policy's critical patterns are raised;
    everything else is reported in the result and, with repair enabled,
    healed.
    """

    def __init__(
        self,
        schema: type[BaseModel] = ExecutionRecord,
        policy: SecurityPolicy | None = None,
    ):
        self.schema = schema
        self.policy = policy or SecurityPolicy()
        self._adapter: TypeAdapter | None = None

    @property
    def adapter(self) -> TypeAdapter:
        if self._adapter is None:
            self._adapter = TypeAdapter(self.schema)
        return self._adapter

    def reset(self) -> None:
        """Drop the compiled schema; it is rebuilt on next use."""
        self._adapter = None

    def reload(self, schema: type[BaseModel]) -> None:
        self.schema = schema
        self.reset()

    def check(self, data: Any) -> list[str]:
        """Structural check only. Returns formatted errors (empty when valid)."""
        if data is None:
            return ["Input data is null"]
        if not isinstance(data, dict):
            return ["Input data must be an object"]
        payload = json.dumps(data, default=str)
        try:
            self.adapter.validate_json(payload, strict=True)
        except ValidationError as e:
            return format_errors(e.errors(include_url=False))
        return []

    def validate(self, data: Any, sanitize_input: bool = False, repair: bool = False) -> ValidationResult:
        """
        Validate a record.

        Args:
            data: Raw record (normally parsed JSON).
            sanitize_input: Drop MISSING values before validating.
            repair: Repair non-critical defects into `repaired_data`.

        Raises:
            CriticalValidationError: If any error matches a critical pattern,
                regardless of `repair`.
        """
        working = sanitize(data) if sanitize_input else data
        result = ValidationResult(valid=False)
        if sanitize_input and isinstance(working, dict):
            result.sanitized_data = working

        errors = self.check(working)
        if not errors:
            result.valid = True
            return result

        result.errors = errors
        critical = [e for e in errors if self.policy.is_critical_error(e)]
        if critical:
            raise CriticalValidationError(critical)

        if repair and isinstance(working, dict):
            repaired = repair_record(working)
            result.repaired_data = repaired
            result.remaining_errors = self.check(repaired)
            if result.remaining_errors:
                logger.warning(f"[SCHEMA] Repair left {len(result.remaining_errors)} issue(s): "
                               f"{'; '.join(result.remaining_errors)}")
            else:
                logger.debug(f"[SCHEMA] Repaired {len(errors)} issue(s)")

        return result
