"""
PHASEKEEPER Execution I/O

Loads and saves the execution record through the validator/repairer,
and records failures into the record without throwing away progress.

Lenient mode (default) heals non-critical defects and carries on.
Strict mode surfaces every defect as SchemaValidationError.
Critical defects always raise.
"""

from __future__ import annotations

import json
import os
import tempfile
import traceback
from pathlib import Path
from typing import Any

from loguru import logger

from phasekeeper.schema import utc_now
from phasekeeper.validator import (
    CriticalValidationError,
    SchemaValidationError,
    SchemaValidator,
    ValidationResult,
)


class ExecutionRecordError(Exception):
    """The record file is missing, unreadable, or not structured data."""


def write_json(path: Path, data: Any) -> None:
    """Write JSON through a temp file + rename so readers never see half a record."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def read_raw(path: Path) -> Any:
    """Read and parse the record file without any validation."""
    path = Path(path)
    if not path.exists():
        raise ExecutionRecordError(f"Execution record not found at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ExecutionRecordError(f"Cannot read execution record at {path}: {e}") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ExecutionRecordError(f"Failed to parse execution record {path}: {e}") from e


def _stack_excerpt(error: BaseException) -> str | None:
    if error.__traceback__ is None:
        return None
    lines = "".join(traceback.format_exception(type(error), error, error.__traceback__)).strip().splitlines()
    return "\n".join(lines[-3:]) if lines else None


class ExecutionStore:
    """Reads and writes execution records for one or many tasks."""

    def __init__(self, validator: SchemaValidator | None = None):
        self.validator = validator or SchemaValidator()

    def _validate(self, record: Any) -> ValidationResult:
        return self.validator.validate(record, sanitize_input=True, repair=True)

    def load(self, path: Path, lenient: bool = True) -> dict[str, Any]:
        """
        Load, validate and repair a record.

        Raises:
            ExecutionRecordError: File missing, unreadable, unparseable,
                or its top level is not an object.
            CriticalValidationError: A critical schema defect.
            SchemaValidationError: Any defect, when lenient is False.
        """
        path = Path(path)
        record = read_raw(path)
        if not isinstance(record, dict):
            raise ExecutionRecordError(
                f"Failed to parse execution record {path}: top-level value must be an object"
            )

        result = self._validate(record)
        if not result.valid:
            message = "; ".join(result.errors)
            if not lenient:
                raise SchemaValidationError(result.errors)
            logger.warning(f"[EXEC-IO] Non-critical record issues in {path.name} (auto-fixed): {message}")

        return result.data if result.data is not None else record

    def save(self, path: Path, record: dict[str, Any], lenient: bool = True) -> dict[str, Any]:
        """
        Validate, repair and write a record. Returns what was written.

        A recoverable defect never blocks the write in lenient mode;
        a critical one always does.
        """
        path = Path(path)
        result = self._validate(record)
        if not result.valid:
            message = "; ".join(result.errors)
            if not lenient:
                raise SchemaValidationError(result.errors)
            logger.warning(f"[EXEC-IO] Saving {path.name} with non-critical issues (auto-fixed): {message}")

        data = result.data if result.data is not None else record
        write_json(path, data)
        return data

    def record_error(
        self,
        path: Path,
        error: BaseException | str,
        failed_validation: str = "unknown",
    ) -> bool:
        """
        Append a failure to the record instead of resetting it.

        Prior phases, artifacts and completion data are left untouched;
        the failure lands in errorHistory and pendingFixes so the next
        iteration targets exactly what broke. Best-effort: never raises,
        returns False when nothing could be recorded.
        """
        path = Path(path)
        if not path.exists():
            return False

        message = str(error) if not isinstance(error, str) else error
        stack = _stack_excerpt(error) if isinstance(error, BaseException) else None

        try:
            record = read_raw(path)
            if not isinstance(record, dict):
                logger.warning(f"[EXEC-IO] Could not record error: {path.name} is not an object")
                return False

            history = record.get("errorHistory")
            if not isinstance(history, list):
                history = []
            history.append({
                "timestamp": utc_now(),
                "message": message,
                "failedValidation": failed_validation,
                "stack": stack,
            })
            record["errorHistory"] = history

            fixes = record.get("pendingFixes")
            if not isinstance(fixes, list):
                fixes = []
            if failed_validation not in fixes:
                fixes.append(failed_validation)
            record["pendingFixes"] = fixes

            # Phases, artifacts and summary stay as they are; only the flags move.
            record["status"] = "in_progress"
            completion = record.get("completion")
            if not isinstance(completion, dict):
                completion = {}
            completion["status"] = "pending_validation"
            completion["lastError"] = message
            completion["failedValidation"] = failed_validation
            record["completion"] = completion

            write_json(path, record)
            logger.info(f"[EXEC-IO] Recorded error for {failed_validation}, state preserved for retry")
            return True
        except Exception as e:
            logger.warning(f"[EXEC-IO] Could not record error: {e}")
            return False


__all__ = [
    "CriticalValidationError",
    "ExecutionRecordError",
    "ExecutionStore",
    "SchemaValidationError",
    "read_raw",
    "write_json",
]
