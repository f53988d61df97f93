"""Tests for the offline CLI commands."""

import asyncio

import pytest
import yaml
from typer.testing import CliRunner

from chatloop.cli.app import app
from chatloop.cli.chat import parse_answer
from chatloop.llm.types import Message
from chatloop.session.store import ConversationStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("CHATLOOP_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("CHATLOOP_STORE_DB_PATH", str(tmp_path / "conv.db"))


class TestCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "chatloop-core v0.1.0" in result.output

    def test_config_validate_defaults(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid" in result.output

    def test_config_validate_reports_problems(self, tmp_path):
        (tmp_path / "chatloop.yaml").write_text(yaml.safe_dump({"loop": {"max_iterations": 0}}))
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert "max_iterations" in result.output

    def test_config_show(self, tmp_path):
        (tmp_path / "chatloop.yaml").write_text(yaml.safe_dump({"llm": {"model": "shown-model"}}))
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "shown-model" in result.output

    def test_tools_list(self):
        result = runner.invoke(app, ["tools", "list"])
        assert result.exit_code == 0
        assert "ask_user" in result.output

    def test_tools_info_unknown(self):
        result = runner.invoke(app, ["tools", "info", "nope"])
        assert result.exit_code == 1
        assert "Tool not found" in result.output

    def test_conversations_list_and_delete(self, tmp_path):
        async def seed():
            store = ConversationStore(str(tmp_path / "conv.db"))
            await store.init()
            await store.save_history("conv-1", [Message(role="user", content="hi")])
            await store.close()

        asyncio.run(seed())

        result = runner.invoke(app, ["conversations", "list"])
        assert result.exit_code == 0
        assert "conv-1" in result.output

        result = runner.invoke(app, ["conversations", "delete", "conv-1"])
        assert result.exit_code == 0
        assert "Deleted conversation" in result.output


class TestParseAnswer:
    def test_empty_is_skipped(self):
        assert parse_answer({"inputType": "text"}, "  ") == (None, True)

    def test_option_number(self):
        payload = {
            "inputType": "single_select",
            "options": [{"label": "Yes", "value": "yes"}, {"label": "No", "value": "no"}],
        }
        assert parse_answer(payload, "2") == ("no", False)

    def test_multi_select(self):
        payload = {
            "inputType": "multi_select",
            "options": [{"label": "A", "value": "a"}, {"label": "B", "value": "b"}],
        }
        assert parse_answer(payload, "1, 2") == (["a", "b"], False)

    def test_number(self):
        assert parse_answer({"inputType": "number"}, "42") == (42.0, False)

    def test_free_text(self):
        assert parse_answer({"inputType": "text"}, "blue") == ("blue", False)
