"""Tests for DeltaAccumulator and the argument merge/repair helpers."""

import json

import pytest

from chatloop.errors import ArgumentRepairError
from chatloop.llm.accumulator import (
    DeltaAccumulator,
    merge_arguments,
    parse_arguments,
    repair_arguments,
)
from chatloop.llm.types import StreamEvent, ToolCallDelta
from chatloop.session.broadcaster import Broadcaster


@pytest.fixture
def events():
    return []


@pytest.fixture
def acc(events):
    b = Broadcaster()
    b.add_listener(events.append)
    return DeltaAccumulator(b, "conv-a")


def _tool(index=0, **kwargs) -> StreamEvent:
    return StreamEvent(tool_calls=[ToolCallDelta(index=index, **kwargs)])


class TestMergeArguments:
    def test_plain_concatenation(self):
        assert merge_arguments('{"a":', "1}") == '{"a":1}'

    def test_placeholder_buffer_is_replaced(self):
        assert merge_arguments("{}", '{"a":1}') == '{"a":1}'
        assert merge_arguments("", '{"a":') == '{"a":'

    def test_placeholder_fragment_is_dropped(self):
        assert merge_arguments('{"a":1', "{}") == '{"a":1'
        assert merge_arguments('{"a":1', "  ") == '{"a":1'

    def test_none_fragment(self):
        assert merge_arguments('{"a":1}', None) == '{"a":1}'


class TestRepairArguments:
    def test_valid_input_unchanged(self):
        assert repair_arguments('{"a": 1}') == '{"a": 1}'

    def test_repair_is_idempotent(self):
        once = repair_arguments('"a": 1')
        assert repair_arguments(once) == once

    def test_glued_objects(self):
        assert json.loads(repair_arguments('{"a":1}{"b":2}')) == {"a": 1, "b": 2}

    def test_missing_braces(self):
        assert json.loads(repair_arguments('"a": 1}')) == {"a": 1}
        assert json.loads(repair_arguments('{"a": 1')) == {"a": 1}

    def test_blank_is_empty_object(self):
        assert repair_arguments("   ") == "{}"

    def test_unrepairable(self):
        with pytest.raises(ArgumentRepairError):
            repair_arguments('{"a": [1, 2')

    def test_parse_arguments(self):
        assert parse_arguments('{"x": "y"') == {"x": "y"}


class TestDeltaAccumulator:
    def test_content_is_forwarded_live(self, acc, events):
        acc.feed(StreamEvent(content=["Hel"]))
        assert [e.payload["content"] for e in events] == ["Hel"]
        acc.feed(StreamEvent(content=["lo", ""]))
        acc.feed(StreamEvent(finish_reason="stop", complete=True))

        result = acc.result()
        assert result.content == "Hello"
        assert result.is_final
        assert result.finish_reason == "stop"
        assert result.complete
        assert len(events) == 2

    def test_thinking_image_and_grounding_events(self, acc, events):
        acc.feed(StreamEvent(
            thinking=["pondering"],
            images=[{"mime": "image/png", "data": "AA=="}],
            grounding_metadata={"sources": ["a"]},
        ))
        assert [e.event_type for e in events] == ["thinking", "image", "grounding"]
        assert acc.result().content == ""

    def test_arguments_split_across_deltas(self, acc):
        acc.feed(_tool(id="call_1", name="search", arguments='{"a":'))
        acc.feed(_tool(arguments="1}"))
        acc.feed(StreamEvent(finish_reason="tool_calls", complete=True))

        call = acc.result().tool_calls[0]
        assert call.id == "call_1"
        assert call.name == "search"
        assert call.arguments == {"a": 1}
        assert call.raw_arguments == '{"a":1}'

    def test_empty_object_delta_does_not_corrupt(self, acc):
        acc.feed(_tool(id="c", name="search", arguments="{}"))
        acc.feed(_tool(arguments='{"q": "cats"}'))
        acc.feed(_tool(arguments="{}"))

        assert acc.result().tool_calls[0].arguments == {"q": "cats"}

    def test_dict_arguments_accepted(self, acc):
        acc.feed(_tool(id="c", name="search", arguments={"q": "dogs"}))
        assert acc.result().tool_calls[0].arguments == {"q": "dogs"}

    def test_parallel_calls_keep_index_order(self, acc):
        acc.feed(_tool(index=1, id="b", name="second", arguments="{}"))
        acc.feed(_tool(index=0, id="a", name="first", arguments="{}"))

        assert [c.name for c in acc.result().tool_calls] == ["first", "second"]

    def test_missing_id_is_synthesized(self, acc):
        acc.feed(_tool(index=3, name="lookup", arguments="{}"))
        assert acc.result().tool_calls[0].id == "call_3"

    def test_blank_name_is_dropped(self, acc):
        acc.feed(_tool(index=0, id="a", name="  ", arguments="{}"))
        acc.feed(_tool(index=1, id="b", name="real", arguments="{}"))

        calls = acc.result().tool_calls
        assert [c.name for c in calls] == ["real"]

    def test_unrepairable_arguments_become_empty(self, acc):
        acc.feed(_tool(id="a", name="broken", arguments='{"list": [1, 2'))

        result = acc.result()
        assert result.tool_calls[0].arguments == {}
        assert result.repairs and "broken" in result.repairs[0]

    def test_metadata_is_kept(self, acc):
        acc.feed(_tool(id="a", name="x", arguments="{}", metadata={"thought_signature": "sig"}))
        acc.feed(StreamEvent(metadata={"usage": {"total_tokens": 5}}))

        result = acc.result()
        assert result.tool_calls[0].metadata == {"thought_signature": "sig"}
        assert result.metadata == {"usage": {"total_tokens": 5}}

    def test_tool_call_finish_without_slots_is_final(self, acc):
        acc.feed(StreamEvent(content=["nothing to call"], finish_reason="tool_calls"))
        assert acc.result().is_final
