"""Tests for OpenAICompatProvider request building and stream parsing."""

import json

import pytest

from chatloop.llm.providers.openai_compat import DEFAULT_URL, OpenAICompatProvider
from chatloop.llm.types import ImageData, Message, ModelConfig, RequestOptions, ToolCall


@pytest.fixture
def provider():
    return OpenAICompatProvider()


@pytest.fixture
def model():
    return ModelConfig(id="gpt-test", provider="openai-compat")


class TestBuildRequest:
    def test_basic(self, provider, model):
        req = provider.build_request(
            model, [Message(role="user", content="hi")], "sk-abc", RequestOptions()
        )
        assert req.url == DEFAULT_URL
        assert req.method == "POST"
        assert req.headers["Authorization"] == "Bearer sk-abc"
        assert req.body["model"] == "gpt-test"
        assert req.body["messages"] == [{"role": "user", "content": "hi"}]
        assert req.body["temperature"] == 0.7
        assert req.body["max_tokens"] == 4096
        assert "tools" not in req.body
        assert "response_format" not in req.body

    def test_no_key_no_auth_header(self, provider, model):
        req = provider.build_request(model, [], "", RequestOptions())
        assert "Authorization" not in req.headers

    def test_model_overrides(self, provider):
        model = ModelConfig(
            id="alias",
            provider="openai-compat",
            model="real-name",
            url="http://localhost:8000/v1/chat/completions",
            temperature=0.1,
            max_tokens=100,
            extra={"top_p": 0.5},
        )
        req = provider.build_request(model, [], "", RequestOptions(temperature=0.9))
        assert req.url == "http://localhost:8000/v1/chat/completions"
        assert req.body["model"] == "real-name"
        assert req.body["temperature"] == 0.1
        assert req.body["max_tokens"] == 100
        assert req.body["top_p"] == 0.5

    def test_tools_and_json_mode(self, provider, model):
        tools = [{"type": "function", "function": {"name": "x", "parameters": {}}}]
        req = provider.build_request(
            model, [], "", RequestOptions(tools=tools, response_format="json")
        )
        assert req.body["tools"] == tools
        assert req.body["tool_choice"] == "auto"
        assert req.body["response_format"] == {"type": "json_object"}

    def test_tool_round_trip_messages(self, provider, model):
        call = ToolCall(
            id="call_1",
            name="lookup",
            arguments={"q": "x"},
            metadata={"extra_content": {"google": {"thought_signature": "sig"}}},
        )
        history = [
            Message(role="user", content="find x"),
            Message(role="assistant", content=None, tool_calls=[call]),
            Message(role="tool", content='{"found": true}', tool_call_id="call_1", name="lookup"),
        ]
        wire = provider.build_request(model, history, "", RequestOptions()).body["messages"]

        assistant = wire[1]
        assert assistant["content"] is None
        wire_call = assistant["tool_calls"][0]
        assert wire_call["id"] == "call_1"
        assert wire_call["function"] == {"name": "lookup", "arguments": '{"q": "x"}'}
        assert wire_call["extra_content"] == {"google": {"thought_signature": "sig"}}
        assert wire[2] == {
            "role": "tool",
            "tool_call_id": "call_1",
            "content": '{"found": true}',
            "name": "lookup",
        }

    def test_tool_images_follow_the_tool_block(self, provider, model):
        img = ImageData(base64="AAAA", format="image/png", filename="a.png")
        history = [
            Message(role="user", content="look"),
            Message(role="assistant", tool_calls=[
                ToolCall(id="c1", name="shot", arguments={}),
                ToolCall(id="c2", name="shot", arguments={}),
            ]),
            Message(role="tool", content="Retrieved image: a.png", tool_call_id="c1", image_data=img),
            Message(role="tool", content="Retrieved image: a.png", tool_call_id="c2", image_data=img),
            Message(role="assistant", content="Two screenshots"),
        ]
        wire = provider.build_request(model, history, "", RequestOptions()).body["messages"]

        assert [m["role"] for m in wire] == ["user", "assistant", "tool", "tool", "user", "assistant"]
        parts = wire[4]["content"]
        assert parts[0]["type"] == "text"
        assert [p["image_url"]["url"] for p in parts[1:]] == ["data:image/png;base64,AAAA"] * 2

    def test_user_image(self, provider, model):
        msg = Message(role="user", content="what is this?", image_data=ImageData(base64="BBBB"))
        wire = provider.build_request(model, [msg], "", RequestOptions()).body["messages"]
        assert wire[0]["content"][0] == {"type": "text", "text": "what is this?"}
        assert wire[0]["content"][1]["image_url"]["url"] == "data:image/jpeg;base64,BBBB"


class TestParseEvent:
    def test_content_delta(self, provider):
        ev = provider.parse_event(json.dumps({"choices": [{"delta": {"content": "Hi"}}]}))
        assert ev.content == ["Hi"]
        assert not ev.complete
        assert not ev.error

    def test_done_marker(self, provider):
        assert provider.parse_event("[DONE]").complete

    def test_empty_payload(self, provider):
        ev = provider.parse_event("")
        assert not ev.complete and not ev.content

    def test_finish_reason_normalized(self, provider):
        ev = provider.parse_event(json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}))
        assert ev.finish_reason == "tool_calls"
        assert ev.complete

    def test_tool_call_delta_with_metadata(self, provider):
        data = {
            "choices": [{
                "delta": {
                    "tool_calls": [{
                        "index": 1,
                        "id": "call_9",
                        "type": "function",
                        "function": {"name": "search", "arguments": '{"q":'},
                        "extra_content": {"sig": "abc"},
                    }]
                }
            }]
        }
        ev = provider.parse_event(json.dumps(data))
        delta = ev.tool_calls[0]
        assert delta.index == 1
        assert delta.id == "call_9"
        assert delta.name == "search"
        assert delta.arguments == '{"q":'
        assert delta.metadata == {"extra_content": {"sig": "abc"}}

    def test_reasoning_content(self, provider):
        ev = provider.parse_event(json.dumps({"choices": [{"delta": {"reasoning_content": "hmm"}}]}))
        assert ev.thinking == ["hmm"]

    def test_non_streaming_message(self, provider):
        ev = provider.parse_event(json.dumps({"choices": [{"message": {"content": "whole"}}]}))
        assert ev.content == ["whole"]
        assert ev.complete

    def test_malformed_json(self, provider):
        ev = provider.parse_event("{not json")
        assert ev.error
        assert "Error parsing OpenAI response" in ev.error_message

    def test_inline_error(self, provider):
        ev = provider.parse_event(json.dumps({"error": {"message": "Rate limit reached"}}))
        assert ev.error
        assert ev.error_message == "Rate limit reached"

    def test_no_choices(self, provider):
        ev = provider.parse_event(json.dumps({"usage": {"total_tokens": 3}, "choices": []}))
        assert not ev.error and not ev.content
