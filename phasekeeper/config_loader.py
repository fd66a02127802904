"""
Configuration loader for PHASEKEEPER.
Merges defaults with per-repo .phasekeeper/config.yaml overrides,
then applies environment variable tier overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field


VALID_TIERS = ("fast", "medium", "hard")
STEP_MARKERS = ("dynamic", "escalation")

GLOBAL_TIER_ENV = "PHASEKEEPER_MODEL"
_STEP_TIER_ENV = re.compile(r"^PHASEKEEPER_STEP(\d+)_MODEL$")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ModelsConfig(BaseModel):
    fast: str = "anthropic/claude-3-5-haiku-latest"
    medium: str = "anthropic/claude-sonnet-4-20250514"
    hard: str = "anthropic/claude-opus-4-20250514"


class LimitsConfig(BaseModel):
    escalation_threshold: int = 3
    precondition_timeout: float = 5.0
    checkpoint_history_limit: int = 10
    max_tokens_per_task: int = 400_000
    max_dollars_per_task: float = 15.0


class WorkspaceConfig(BaseModel):
    execution_file: str = "execution.json"
    blueprint_file: str = "BLUEPRINT.md"
    review_file: str = "CODE_REVIEW.md"
    audit_log: str = ".phasekeeper/logs/audit.jsonl"


class OverridesConfig(BaseModel):
    global_tier: str | None = None
    step_tiers: dict[int, str] = Field(default_factory=dict)


class PhaseKeeperConfig(BaseModel):
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    overrides: OverridesConfig = Field(default_factory=OverridesConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Collect tier overrides from the environment.

    PHASEKEEPER_MODEL accepts fast|medium|hard.
    PHASEKEEPER_STEP<N>_MODEL additionally accepts dynamic|escalation.
    Anything else is ignored with a warning.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    global_tier = environ.get(GLOBAL_TIER_ENV)
    if global_tier:
        if global_tier in VALID_TIERS:
            overrides["global_tier"] = global_tier
        else:
            logger.warning(f"[CONFIG] Ignoring {GLOBAL_TIER_ENV}={global_tier!r} (expected one of {VALID_TIERS})")

    step_tiers: dict[int, str] = {}
    for key, value in environ.items():
        match = _STEP_TIER_ENV.match(key)
        if not match or not value:
            continue
        if value in VALID_TIERS + STEP_MARKERS:
            step_tiers[int(match.group(1))] = value
        else:
            logger.warning(f"[CONFIG] Ignoring {key}={value!r}")

    if step_tiers:
        overrides["step_tiers"] = step_tiers
    return overrides


def load_config(repo_path: Path | None = None, environ: dict[str, str] | None = None) -> PhaseKeeperConfig:
    """
    Load config by merging:
      1. Built-in defaults (phasekeeper/config.yaml)
      2. Repo-level overrides (<repo>/.phasekeeper/config.yaml)
      3. Environment variable tier overrides
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".phasekeeper" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides win over both files
    from_env = env_overrides(environ)
    if from_env:
        base = _deep_merge(base, {"overrides": from_env})

    return PhaseKeeperConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
