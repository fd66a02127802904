"""
PHASEKEEPER Actor — the external worker behind a text-prompt interface.

The engine only knows the `Actor` protocol. The bundled
`LiteLLMActor` routes the directive through LiteLLM, tracks spend,
and writes whatever JSON object the model returns straight into the
execution record. The record is repaired on the next load, so the
actor never has to produce perfect output.
"""

from __future__ import annotations

import json
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from phasekeeper.config_loader import PhaseKeeperConfig
from phasekeeper.execution_io import write_json


class ActorError(Exception):
    pass


class BudgetExceededError(Exception):
    pass


class ActorResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    record_written: bool = False


class Actor(Protocol):
    def invoke(
        self,
        directive: str,
        *,
        model: str,
        cwd: Path,
        record_path: Path,
    ) -> ActorResponse:
        ...


# ---------------------------------------------------------------------------
# Spend ledger
# ---------------------------------------------------------------------------

@dataclass
class TaskSpend:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


class BudgetTracker:
    """
    Token + dollar spend, kept per task id.

    One actor serves every task in a batch, so the limits apply to
    each task's own ledger rather than to the actor as a whole.
    """

    def __init__(self, max_tokens: int = 400_000, max_dollars: float = 15.0):
        self.max_tokens = max_tokens
        self.max_dollars = max_dollars
        self._ledger: dict[str, TaskSpend] = {}
        self._lock = threading.Lock()

    def spend(self, task_id: str) -> TaskSpend:
        with self._lock:
            return self._ledger.setdefault(task_id, TaskSpend())

    def exceeded(self, task_id: str) -> bool:
        spent = self.spend(task_id)
        return spent.total_tokens >= self.max_tokens or spent.estimated_cost >= self.max_dollars

    def record(self, task_id: str, response: Any) -> TaskSpend:
        """Charge the usage of one LiteLLM response to `task_id`."""
        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ACTOR] Cost unavailable: {e}")
            cost = 0.0

        usage = getattr(response, "usage", None)
        spent = self.spend(task_id)
        with self._lock:
            if usage:
                spent.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
                spent.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
                spent.total_tokens += getattr(usage, "total_tokens", 0) or 0
            spent.estimated_cost += cost
            spent.call_count += 1
        return spent

    def summary(self, task_id: str) -> dict:
        spent = self.spend(task_id)
        return {
            "task_id": task_id,
            "total_tokens": spent.total_tokens,
            "estimated_cost": round(spent.estimated_cost, 4),
            "call_count": spent.call_count,
            "tokens_remaining": max(0, self.max_tokens - spent.total_tokens),
            "dollars_remaining": round(max(0.0, self.max_dollars - spent.estimated_cost), 4),
        }


def record_task_id(record_path: Path) -> str:
    """The `task` field of the record on disk, else its folder name."""
    try:
        data = json.loads(Path(record_path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("task"), str) and data["task"]:
        return data["task"]
    return Path(record_path).parent.name


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def strip_markdown(content: str) -> str:
    """Remove ``` or ```json wrappers."""
    content = content.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content)
    return content.strip()


def extract_outer_json(text: str) -> str | None:
    """First top-level JSON object, tracked by brace depth (string-aware)."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_record_json(content: str) -> dict[str, Any]:
    """
    Pull the execution record out of a model response.

    Raises:
        ActorError: No JSON object could be recovered.
    """
    extracted = extract_outer_json(strip_markdown(content))
    if not extracted:
        raise ActorError("Actor response contained no JSON object")
    try:
        data = json.loads(extracted)
    except json.JSONDecodeError as e:
        raise ActorError(f"Actor returned malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise ActorError("Actor response JSON is not an object")
    return data


# ---------------------------------------------------------------------------
# LiteLLM actor
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are the execution worker for a phased task.

You MUST respond with the full, updated execution record as a single JSON
object. No prose outside the JSON. Keep every field you were given; only
add to errorHistory, never remove from it.
"""


class LiteLLMActor:
    """Vendor-agnostic actor backed by LiteLLM."""

    def __init__(
        self,
        config: PhaseKeeperConfig | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ):
        self.config = config or PhaseKeeperConfig()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.budget = BudgetTracker(
            max_tokens=self.config.limits.max_tokens_per_task,
            max_dollars=self.config.limits.max_dollars_per_task,
        )
        litellm.suppress_debug_info = True

    def build_messages(self, directive: str, record_path: Path) -> list[dict[str, str]]:
        current = record_path.read_text(encoding="utf-8") if record_path.exists() else "{}"
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"{directive}\n\n## Current execution record\n\n```json\n{current}\n```"},
        ]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_not_exception_type(BudgetExceededError),
        reraise=True,
    )
    def complete(self, model: str, messages: list[dict[str, str]], task_id: str = "default") -> ActorResponse:
        if self.budget.exceeded(task_id):
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary(task_id)}")

        start = time.monotonic()
        logger.debug(f"[ACTOR] → {model} ({len(messages)} messages)")
        response = litellm.completion(
            model=model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        elapsed_ms = int((time.monotonic() - start) * 1000)
        spent = self.budget.record(task_id, response)

        usage = getattr(response, "usage", None)
        logger.debug(
            f"[ACTOR] {task_id} complete: {spent.total_tokens} tokens, "
            f"${spent.estimated_cost:.4f}, {elapsed_ms}ms"
        )
        return ActorResponse(
            content=response.choices[0].message.content or "",
            model=model,
            tokens_used=getattr(usage, "total_tokens", 0) or 0,
            cost=spent.estimated_cost,
            latency_ms=elapsed_ms,
        )

    def invoke(
        self,
        directive: str,
        *,
        model: str,
        cwd: Path,
        record_path: Path,
    ) -> ActorResponse:
        """Send the directive, then write the returned record as-is."""
        record_path = Path(record_path)
        task_id = record_task_id(record_path)
        try:
            response = self.complete(model, self.build_messages(directive, record_path), task_id)
        except BudgetExceededError:
            raise
        except Exception as e:
            raise ActorError(f"Model call failed: {e}") from e

        data = parse_record_json(response.content)
        write_json(record_path, data)
        response.record_written = True
        logger.info(f"[ACTOR] {model} rewrote {record_path.name}")
        return response
