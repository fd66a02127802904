from phasekeeper.config_loader import env_overrides, load_config, validate_api_keys


def test_defaults_load(tmp_path):
    config = load_config(tmp_path, environ={})
    assert config.limits.escalation_threshold == 3
    assert config.workspace.execution_file == "execution.json"
    assert config.overrides.global_tier is None
    assert config.overrides.step_tiers == {}


def test_repo_override_is_deep_merged(tmp_path):
    (tmp_path / ".phasekeeper").mkdir()
    (tmp_path / ".phasekeeper" / "config.yaml").write_text(
        "models:\n  hard: openai/gpt-4o\nlimits:\n  escalation_threshold: 5\n"
    )
    config = load_config(tmp_path, environ={})

    assert config.models.hard == "openai/gpt-4o"
    assert config.models.fast == "anthropic/claude-3-5-haiku-latest"
    assert config.limits.escalation_threshold == 5
    assert config.limits.precondition_timeout == 5


def test_empty_repo_override_is_harmless(tmp_path):
    (tmp_path / ".phasekeeper").mkdir()
    (tmp_path / ".phasekeeper" / "config.yaml").write_text("")
    assert load_config(tmp_path, environ={}).limits.escalation_threshold == 3


def test_env_overrides():
    overrides = env_overrides({
        "PHASEKEEPER_MODEL": "hard",
        "PHASEKEEPER_STEP5_MODEL": "escalation",
        "PHASEKEEPER_STEP8_MODEL": "medium",
        "UNRELATED": "fast",
    })
    assert overrides == {"global_tier": "hard", "step_tiers": {5: "escalation", 8: "medium"}}


def test_invalid_env_values_are_ignored():
    assert env_overrides({
        "PHASEKEEPER_MODEL": "dynamic",
        "PHASEKEEPER_STEP5_MODEL": "turbo",
        "PHASEKEEPER_STEPX_MODEL": "fast",
    }) == {}


def test_env_wins_over_repo_file(tmp_path):
    (tmp_path / ".phasekeeper").mkdir()
    (tmp_path / ".phasekeeper" / "config.yaml").write_text("overrides:\n  global_tier: fast\n")
    config = load_config(tmp_path, environ={"PHASEKEEPER_MODEL": "medium"})
    assert config.overrides.global_tier == "medium"


def test_api_key_report(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    keys = validate_api_keys()
    assert keys["ANTHROPIC_API_KEY"] is True
    assert keys["OPENAI_API_KEY"] is False
