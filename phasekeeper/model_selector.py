"""
PHASEKEEPER Model Selector — which capability tier runs next.

Tiers:
  fast   → cheapest, quickest
  medium → balanced default
  hard   → most capable, most expensive

The execution step is "dynamic": its tier is resolved per iteration
from the record. Review/sweep steps are "escalation": fast on the
first try, hard afterwards.
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger

from phasekeeper.config_loader import VALID_TIERS, PhaseKeeperConfig


EXECUTION_STEP = 5
HEAVIEST_TIER = "hard"
FLOOR_TIER = "fast"

STEP_DEFAULTS: dict[int, str] = {
    0: "medium",      # clarification
    1: "hard",        # prompt generation
    2: "hard",        # decomposition
    3: "medium",      # dependency analysis
    4: "medium",      # record seeding + split analysis
    5: "dynamic",     # task execution
    6: "escalation",  # code review
    7: "escalation",  # bug sweep
    8: "fast",        # commit / PR message
}

_DIFFICULTY_TAG = re.compile(r"@difficulty[ \t]+(fast|medium|hard)\b", re.IGNORECASE)


def get_default_tier(step: int) -> str:
    """Static table lookup, ignoring every override."""
    return STEP_DEFAULTS.get(step, "medium")


def is_escalation_step(step: int) -> bool:
    return get_default_tier(step) == "escalation"


def parse_difficulty_tag(text: str | None) -> str | None:
    """Extract `@difficulty <tier>` from a task's blueprint text."""
    if not text:
        return None
    match = _DIFFICULTY_TAG.search(text)
    return match.group(1).lower() if match else None


def score_complexity(record: dict[str, Any], blueprint: str | None = None) -> str:
    """Bucket a record into a tier from its size and history."""
    phases = len(record.get("phases") or [])
    artifacts = len(record.get("artifacts") or [])
    attempts = record.get("attempts") or 0
    open_uncertainties = any(
        isinstance(u, dict) and u.get("resolution") is None
        for u in record.get("uncertainties") or []
    )
    blueprint_lines = len(blueprint.split("\n")) if blueprint else 0

    if phases > 3 or artifacts > 5 or blueprint_lines > 300 or attempts > 2 or open_uncertainties:
        return "hard"
    if phases > 1 or artifacts > 2 or blueprint_lines > 100:
        return "medium"
    return FLOOR_TIER


class ModelSelector:
    """
    Resolves a tier, then a LiteLLM model id, for a step.

    Precedence for the dynamic step (first match wins):
      1. attempts >= escalation_threshold  → hard
      2. global override
      3. per-step override
      4. @difficulty tag in the blueprint
      5. complexity score
      6. fast
    """

    def __init__(self, config: PhaseKeeperConfig | None = None):
        self.config = config or PhaseKeeperConfig()

    @property
    def threshold(self) -> int:
        return self.config.limits.escalation_threshold

    def step_tier(self, step: int) -> str:
        """Configured tier or marker for a step: global > per-step > default."""
        overrides = self.config.overrides
        if overrides.global_tier in VALID_TIERS:
            return overrides.global_tier
        step_override = overrides.step_tiers.get(step)
        if step_override:
            return step_override
        return get_default_tier(step)

    def select_tier(
        self,
        step: int = EXECUTION_STEP,
        record: dict[str, Any] | None = None,
        blueprint: str | None = None,
    ) -> str:
        record = record or {}
        attempts = record.get("attempts") or 0

        if attempts >= self.threshold:
            logger.info(f"[MODEL] Escalating to {HEAVIEST_TIER}: {attempts} attempts (threshold {self.threshold})")
            return HEAVIEST_TIER

        tier = self.step_tier(step)
        if tier in VALID_TIERS:
            return tier
        if tier == "escalation":
            return FLOOR_TIER if attempts <= 1 else HEAVIEST_TIER

        declared = parse_difficulty_tag(blueprint)
        if declared:
            logger.debug(f"[MODEL] Using declared difficulty: {declared}")
            return declared

        scored = score_complexity(record, blueprint)
        logger.debug(f"[MODEL] Complexity score → {scored}")
        return scored

    def resolve_model(self, tier: str) -> str:
        """Map a tier to its configured LiteLLM model id."""
        if tier not in VALID_TIERS:
            raise ValueError(f"Unknown tier: {tier!r}")
        return getattr(self.config.models, tier)

    def select(
        self,
        step: int = EXECUTION_STEP,
        record: dict[str, Any] | None = None,
        blueprint: str | None = None,
    ) -> tuple[str, str]:
        """Returns (tier, model_id)."""
        tier = self.select_tier(step, record, blueprint)
        return tier, self.resolve_model(tier)
