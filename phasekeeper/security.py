"""
PHASEKEEPER Security Policy — the stop/continue gate.

Two pattern tables decide whether the engine may keep going:
  - dangerous commands are never executed on the actor's behalf
  - critical errors are never auto-healed, they halt the operation

Everything that matches neither table is considered recoverable.
"""

from __future__ import annotations

import re
from typing import Iterable, Pattern


DANGEROUS_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"sudo\s+", re.IGNORECASE),
    re.compile(r">\s*/dev/", re.IGNORECASE),
    re.compile(r"\|\s*sh\b", re.IGNORECASE),
    re.compile(r"\|\s*bash\b", re.IGNORECASE),
    re.compile(r"eval\s+", re.IGNORECASE),
    re.compile(r"curl.*\|\s*sh", re.IGNORECASE),
)

CRITICAL_ERROR_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"\.json not found", re.IGNORECASE),
    re.compile(r"file not found", re.IGNORECASE),
    re.compile(r"not found at", re.IGNORECASE),
    re.compile(r"failed to parse", re.IGNORECASE),
    re.compile(r"syntax error", re.IGNORECASE),
    re.compile(r"unexpected token", re.IGNORECASE),
    re.compile(r"json parse error", re.IGNORECASE),
    re.compile(r"cannot read", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"enoent", re.IGNORECASE),
)


def _compile(patterns: Iterable[str | Pattern[str]]) -> list[Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]


class SecurityPolicy:
    """
    Pluggable deny-list / critical-list.

    Callers hold an instance instead of importing the tables, so a runner
    can extend the policy without touching the validator or the store.
    """

    def __init__(
        self,
        dangerous_patterns: Iterable[str | Pattern[str]] | None = None,
        critical_patterns: Iterable[str | Pattern[str]] | None = None,
    ):
        self.dangerous_patterns = _compile(
            DANGEROUS_PATTERNS if dangerous_patterns is None else dangerous_patterns
        )
        self.critical_patterns = _compile(
            CRITICAL_ERROR_PATTERNS if critical_patterns is None else critical_patterns
        )

    def add_dangerous_pattern(self, pattern: str | Pattern[str]) -> None:
        self.dangerous_patterns.extend(_compile([pattern]))

    def add_critical_pattern(self, pattern: str | Pattern[str]) -> None:
        self.critical_patterns.extend(_compile([pattern]))

    def is_dangerous_command(self, command: object) -> bool:
        """True if the shell command matches the deny-list."""
        if not command or not isinstance(command, str):
            return False
        return any(p.search(command) for p in self.dangerous_patterns)

    def is_critical_error(self, message: object) -> bool:
        """True if the error must abort instead of being repaired or retried."""
        if not message or not isinstance(message, str):
            return False
        return any(p.search(message) for p in self.critical_patterns)


_DEFAULT_POLICY = SecurityPolicy()


def is_dangerous_command(command: object) -> bool:
    return _DEFAULT_POLICY.is_dangerous_command(command)


def is_critical_error(message: object) -> bool:
    return _DEFAULT_POLICY.is_critical_error(message)
