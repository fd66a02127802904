import json
from types import SimpleNamespace

import pytest
from tenacity import wait_none

from phasekeeper.actor import (
    ActorError,
    BudgetExceededError,
    BudgetTracker,
    LiteLLMActor,
    extract_outer_json,
    parse_record_json,
    record_task_id,
    strip_markdown,
)
from phasekeeper.config_loader import LimitsConfig, PhaseKeeperConfig


def _response(content, total_tokens=15):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=total_tokens - 10, total_tokens=total_tokens),
    )


@pytest.fixture
def fake_litellm(monkeypatch):
    calls = []
    replies = []

    def completion(**kwargs):
        calls.append(kwargs)
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return _response(reply)

    monkeypatch.setattr("phasekeeper.actor.litellm.completion", completion)
    monkeypatch.setattr("phasekeeper.actor.litellm.completion_cost", lambda completion_response: 0.01)
    monkeypatch.setattr(LiteLLMActor.complete.retry, "wait", wait_none())
    return SimpleNamespace(calls=calls, replies=replies)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def test_strip_markdown():
    assert strip_markdown('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_markdown('  {"a": 1}  ') == '{"a": 1}'


def test_extract_outer_json_ignores_braces_in_strings():
    text = 'Here you go: {"note": "use } and { freely", "n": {"x": 1}} trailing'
    assert json.loads(extract_outer_json(text)) == {"note": "use } and { freely", "n": {"x": 1}}


def test_extract_outer_json_handles_escaped_quotes():
    text = '{"msg": "say \\"}\\" now"}'
    assert json.loads(extract_outer_json(text)) == {"msg": 'say "}" now'}


@pytest.mark.parametrize("text", ["no json", '{"open": 1'])
def test_extract_outer_json_without_object(text):
    assert extract_outer_json(text) is None


def test_parse_record_json_errors():
    with pytest.raises(ActorError, match="no JSON object"):
        parse_record_json("I could not do it.")
    with pytest.raises(ActorError, match="malformed JSON"):
        parse_record_json("{'single': 'quotes'}")


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

def test_budget_tracker_accumulates_per_task(monkeypatch):
    monkeypatch.setattr("phasekeeper.actor.litellm.completion_cost", lambda completion_response: 0.5)
    tracker = BudgetTracker(max_tokens=100, max_dollars=1.0)

    tracker.record("T1", _response("{}", total_tokens=40))
    assert tracker.summary("T1")["total_tokens"] == 40
    assert not tracker.exceeded("T1")

    tracker.record("T1", _response("{}", total_tokens=40))
    assert tracker.spend("T1").call_count == 2
    assert tracker.exceeded("T1")
    assert tracker.summary("T1")["dollars_remaining"] == 0.0

    assert not tracker.exceeded("T2")
    assert tracker.summary("T2")["call_count"] == 0


def test_budget_tracker_without_cost(monkeypatch):
    def no_cost(completion_response):
        raise ValueError("unknown model")

    monkeypatch.setattr("phasekeeper.actor.litellm.completion_cost", no_cost)
    tracker = BudgetTracker()
    spent = tracker.record("T1", _response("{}"))
    assert spent.estimated_cost == 0.0
    assert spent.call_count == 1


def test_record_task_id(tmp_path):
    path = tmp_path / "auth" / "execution.json"
    assert record_task_id(path) == "auth"
    path.parent.mkdir()
    path.write_text("not json")
    assert record_task_id(path) == "auth"
    path.write_text('{"task": "T7"}')
    assert record_task_id(path) == "T7"


# ---------------------------------------------------------------------------
# LiteLLM actor
# ---------------------------------------------------------------------------

def test_invoke_writes_returned_record(fake_litellm, tmp_path):
    path = tmp_path / "execution.json"
    path.write_text('{"task": "T1", "attempts": 1}')
    fake_litellm.replies.append('Done.\n```json\n{"task": "T1", "attempts": 1, "status": "in_progress"}\n```')

    response = LiteLLMActor().invoke("Do the work", model="fake/model", cwd=tmp_path, record_path=path)

    assert response.record_written
    assert response.tokens_used == 15
    assert json.loads(path.read_text())["status"] == "in_progress"

    call = fake_litellm.calls[0]
    assert call["model"] == "fake/model"
    assert call["messages"][0]["role"] == "system"
    assert "Do the work" in call["messages"][1]["content"]
    assert '"attempts": 1' in call["messages"][1]["content"]


def test_transient_failures_are_retried(fake_litellm, tmp_path):
    path = tmp_path / "execution.json"
    fake_litellm.replies.extend([ConnectionError("reset"), '{"task": "T1"}'])

    LiteLLMActor().invoke("go", model="m", cwd=tmp_path, record_path=path)

    assert len(fake_litellm.calls) == 2
    assert json.loads(path.read_text()) == {"task": "T1"}


def test_persistent_failure_becomes_actor_error(fake_litellm, tmp_path):
    fake_litellm.replies.extend([ConnectionError("down")] * 3)
    with pytest.raises(ActorError, match="Model call failed: down"):
        LiteLLMActor().invoke("go", model="m", cwd=tmp_path, record_path=tmp_path / "execution.json")
    assert len(fake_litellm.calls) == 3


def test_unparseable_reply_leaves_record_alone(fake_litellm, tmp_path):
    path = tmp_path / "execution.json"
    path.write_text('{"task": "T1"}')
    fake_litellm.replies.append("Sorry, I cannot help with that.")

    with pytest.raises(ActorError):
        LiteLLMActor().invoke("go", model="m", cwd=tmp_path, record_path=path)
    assert path.read_text() == '{"task": "T1"}'


def test_budget_exhaustion_is_not_retried(fake_litellm, tmp_path):
    config = PhaseKeeperConfig(limits=LimitsConfig(max_tokens_per_task=10))
    actor = LiteLLMActor(config)
    path = tmp_path / "execution.json"
    path.write_text('{"task": "T1"}')
    fake_litellm.replies.append('{"task": "T1"}')
    actor.invoke("go", model="m", cwd=tmp_path, record_path=path)

    with pytest.raises(BudgetExceededError):
        actor.invoke("again", model="m", cwd=tmp_path, record_path=path)
    assert len(fake_litellm.calls) == 1


def test_one_task_exhausting_its_budget_does_not_stop_another(fake_litellm, tmp_path):
    actor = LiteLLMActor(PhaseKeeperConfig(limits=LimitsConfig(max_tokens_per_task=10)))
    first = tmp_path / "T1" / "execution.json"
    second = tmp_path / "T2" / "execution.json"
    for path, task in [(first, "T1"), (second, "T2")]:
        path.parent.mkdir()
        path.write_text(json.dumps({"task": task}))
    fake_litellm.replies.extend(['{"task": "T1"}', '{"task": "T2"}'])

    actor.invoke("go", model="m", cwd=tmp_path, record_path=first)
    with pytest.raises(BudgetExceededError):
        actor.invoke("go", model="m", cwd=tmp_path, record_path=first)

    actor.invoke("go", model="m", cwd=tmp_path, record_path=second)
    assert json.loads(second.read_text()) == {"task": "T2"}
    assert actor.budget.summary("T1")["call_count"] == 1
    assert actor.budget.summary("T2")["call_count"] == 1
