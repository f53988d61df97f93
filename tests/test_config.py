"""Tests for the layered config loader."""

import pytest
import yaml

from chatloop.config import ChatloopConfig, load_config, validate_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("CHATLOOP_"):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    data = {
        "llm": {"model": "file-model", "temperature": 0.2, "unknown_key": "ignored"},
        "loop": {"max_iterations": 4},
        "profiles": {
            "local": {
                "llm": {
                    "model": "llama",
                    "api_base": "http://localhost:8000/v1/chat/completions",
                },
            },
        },
    }
    path = tmp_path / "chatloop.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config()
        assert cfg.llm.model == "gpt-4o"
        assert cfg.llm.request_timeout_seconds == 300.0
        assert cfg.loop.max_iterations == 10
        assert cfg.loop.clarification_tool == "ask_user"

    def test_missing_file_is_ignored(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.llm.model == "gpt-4o"

    def test_file_values(self, config_file):
        cfg = load_config(config_file)
        assert cfg.llm.model == "file-model"
        assert cfg.llm.temperature == 0.2
        assert cfg.loop.max_iterations == 4
        assert "local" in cfg.profiles

    def test_profile_overlay(self, config_file):
        cfg = load_config(config_file, profile="local")
        assert cfg.llm.model == "llama"
        assert cfg.llm.api_base.startswith("http://localhost:8000")
        # values the profile does not touch survive
        assert cfg.llm.temperature == 0.2

    def test_unknown_profile_is_noop(self, config_file):
        assert load_config(config_file, profile="nope").llm.model == "file-model"

    def test_env_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("CHATLOOP_LLM_MODEL", "env-model")
        monkeypatch.setenv("CHATLOOP_LOOP_MAX_ITERATIONS", "7")
        monkeypatch.setenv("CHATLOOP_AUDIT_ENABLED", "false")
        monkeypatch.setenv("CHATLOOP_AUDIT_REDACTION", "sk-\\w+, ghp_\\w+")
        cfg = load_config(config_file)
        assert cfg.llm.model == "env-model"
        assert cfg.loop.max_iterations == 7
        assert cfg.audit.enabled is False
        assert cfg.audit.redaction_patterns == ["sk-\\w+", "ghp_\\w+"]

    def test_cli_overrides_env(self, monkeypatch):
        monkeypatch.setenv("CHATLOOP_LLM_MODEL", "env-model")
        cfg = load_config(cli_overrides={"llm.model": "flag-model"})
        assert cfg.llm.model == "flag-model"

    def test_unknown_override_key(self):
        with pytest.raises(AttributeError, match="Unknown config key"):
            load_config(cli_overrides={"llm.nonsense": 1})

    def test_session_override(self):
        cfg = ChatloopConfig()
        cfg.set_override("loop.max_clarifications", 2)
        assert cfg.loop.max_clarifications == 2
        assert cfg.get_override("loop.max_clarifications") == 2
        assert "_overrides" not in cfg.to_dict()

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "sk-123")
        cfg = load_config(cli_overrides={"llm.api_key_env": "MY_KEY"})
        assert cfg.api_key() == "sk-123"


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert validate_config(ChatloopConfig()) == []

    def test_reports_each_problem(self):
        cfg = ChatloopConfig()
        cfg.llm.request_timeout_seconds = 0
        cfg.loop.max_iterations = 0
        cfg.audit.redaction_patterns = ["("]
        cfg.logging.level = "chatty"

        problems = validate_config(cfg)

        assert len(problems) == 4
        assert any("request_timeout_seconds" in p for p in problems)
        assert any("invalid regex" in p for p in problems)
        assert any("unknown level" in p for p in problems)
