"""Tests for ConversationStore."""

import pytest

from chatloop.llm.types import ImageData, Message, ToolCall
from chatloop.session.store import SCHEMA_VERSION, ConversationStore


@pytest.fixture
async def store(tmp_path):
    s = ConversationStore(str(tmp_path / "nested" / "conversations.db"))
    await s.init()
    yield s
    await s.close()


def _history():
    return [
        Message(role="user", content="show me"),
        Message(
            role="assistant",
            content=None,
            tool_calls=[ToolCall(id="c1", name="shot", arguments={"w": 2}, metadata={"sig": "x"})],
        ),
        Message(
            role="tool",
            content="Retrieved image: a.png",
            tool_call_id="c1",
            name="shot",
            image_data=ImageData(base64="AAAA", format="image/png", filename="a.png"),
        ),
        Message(role="assistant", content="Here it is", tool_source="renderer"),
    ]


class TestConversationStore:
    async def test_schema_version(self, store):
        assert await store.get_schema_version() == SCHEMA_VERSION

    async def test_reinit_is_idempotent(self, tmp_path):
        path = str(tmp_path / "c.db")
        for _ in range(2):
            s = ConversationStore(path)
            await s.init()
            assert await s.get_schema_version() == SCHEMA_VERSION
            await s.close()

    async def test_history_round_trip(self, store):
        await store.save_history("c", _history())
        loaded = await store.load_history("c")

        assert [m.role for m in loaded] == ["user", "assistant", "tool", "assistant"]
        assert loaded[1].tool_calls[0].arguments == {"w": 2}
        assert loaded[1].tool_calls[0].metadata == {"sig": "x"}
        assert loaded[2].image_data.filename == "a.png"
        assert loaded[3].tool_source == "renderer"

    async def test_save_replaces(self, store):
        await store.save_history("c", _history())
        await store.save_history("c", [Message(role="user", content="fresh")])
        loaded = await store.load_history("c")
        assert len(loaded) == 1
        assert loaded[0].content == "fresh"

    async def test_unknown_conversation(self, store):
        assert await store.load_history("nope") is None

    async def test_list_conversations(self, store):
        await store.save_history("a", [])
        await store.save_history("b", [])
        ids = {c["conversation_id"] for c in await store.list_conversations()}
        assert ids == {"a", "b"}

    async def test_pending_clarifications(self, store):
        await store.add_pending_clarification(
            "c", "q1", tool_call_id="call_1", tool_name="ask_user", request={"question": "?"}
        )
        await store.add_pending_clarification(
            "c", "q2", tool_call_id="call_2", tool_name="ask_user", request={"question": "!"}
        )

        assert await store.list_pending_clarifications("c") == ["q1", "q2"]
        pending = await store.get_pending_clarification("c", "q1")
        assert pending["tool_call_id"] == "call_1"
        assert pending["request"] == {"question": "?"}

        popped = await store.pop_pending_clarification("c", "q1")
        assert popped["question_id"] == "q1"
        assert await store.pop_pending_clarification("c", "q1") is None
        assert await store.list_pending_clarifications("c") == ["q2"]

    async def test_pending_is_scoped_to_conversation(self, store):
        await store.add_pending_clarification(
            "c", "q1", tool_call_id="call_1", tool_name="ask_user", request={}
        )
        assert await store.get_pending_clarification("other", "q1") is None

    async def test_delete_conversation(self, store):
        await store.save_history("c", _history())
        await store.add_pending_clarification(
            "c", "q1", tool_call_id="call_1", tool_name="ask_user", request={}
        )
        await store.delete_conversation("c")
        assert await store.load_history("c") is None
        assert await store.list_pending_clarifications("c") == []

    async def test_in_memory(self):
        s = ConversationStore(":memory:")
        await s.init()
        await s.save_history("m", [Message(role="user", content="hi")])
        assert (await s.load_history("m"))[0].content == "hi"
        await s.close()
