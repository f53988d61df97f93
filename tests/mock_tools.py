"""Mock tool implementations for testing."""

import asyncio

from chatloop.tools.base import Tool
from chatloop.types import ToolContext


class EchoTool(Tool):
    def __init__(self):
        self.calls: list[dict] = []

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes the input message back."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Message to echo"},
            },
            "required": ["message"],
        }

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        self.calls.append(kwargs)
        return {"echo": kwargs.get("message", "")}


class WriteTool(Tool):
    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Writes content to a file path."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to write"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, context: ToolContext, /, **kwargs) -> str:
        return f"Wrote to {kwargs.get('path', '')}"


class ContextTool(Tool):
    """Returns what it saw in its ``ToolContext``."""

    @property
    def name(self) -> str:
        return "whoami"

    @property
    def description(self) -> str:
        return "Reports the calling conversation and user."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        return {
            "conversation": context.conversation_id,
            "user": context.user,
            "config": context.app_config,
        }


class FailingTool(Tool):
    @property
    def name(self) -> str:
        return "fail"

    @property
    def description(self) -> str:
        return "Always raises."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ToolContext, /, **kwargs):
        raise RuntimeError("boom")


class ImageTool(Tool):
    @property
    def name(self) -> str:
        return "screenshot"

    @property
    def description(self) -> str:
        return "Returns a tiny screenshot."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        return {
            "status": "ok",
            "result": {
                "imageData": {
                    "type": "image",
                    "format": "image/png",
                    "base64": "iVBORw0KGgo=",
                    "filename": "shot.png",
                }
            },
        }


class SlowTool(Tool):
    """Blocks until cancelled; records whether its cleanup ran."""

    def __init__(self):
        self.started = False
        self.cleaned_up = False

    @property
    def name(self) -> str:
        return "slow"

    @property
    def description(self) -> str:
        return "Never finishes on its own."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ToolContext, /, **kwargs):
        self.started = True
        try:
            await asyncio.Event().wait()
        finally:
            self.cleaned_up = True


class StreamingAnswerTool(Tool):
    """Passthrough tool that streams its answer in fragments."""

    def __init__(self, fragments=None, fail_after: int | None = None):
        self.fragments = fragments if fragments is not None else ["Part 1 ", "Part 2"]
        self.fail_after = fail_after
        self.calls = 0

    @property
    def name(self) -> str:
        return "stream_answer"

    @property
    def description(self) -> str:
        return "Answers the question directly, streaming to the user."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {"query": {"type": "string"}},
        }

    @property
    def passthrough(self) -> bool:
        return True

    async def execute(self, context: ToolContext, /, **kwargs):
        self.calls += 1

        async def gen():
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i >= self.fail_after:
                    raise ConnectionError("upstream closed")
                yield fragment

        return gen()


class StaticPassthroughTool(Tool):
    """Passthrough tool that returns a fixed (non-streaming) value."""

    def __init__(self, value, name: str = "static_answer"):
        self.value = value
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Returns a canned answer."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    @property
    def passthrough(self) -> bool:
        return True

    async def execute(self, context: ToolContext, /, **kwargs):
        return self.value


class DottedNameTool(Tool):
    """Tool whose id is not a valid provider function name."""

    @property
    def name(self) -> str:
        return "3d render/preview"

    @property
    def description(self) -> str:
        return "Has an awkward name."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ToolContext, /, **kwargs) -> str:
        return "rendered"


class ExtraKeysTool(Tool):
    """Tool whose schema explicitly allows additional properties."""

    @property
    def name(self) -> str:
        return "extra_keys"

    @property
    def description(self) -> str:
        return "Accepts extra keys."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "base_param": {"type": "string"},
            },
            "required": ["base_param"],
            "additionalProperties": True,
        }

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        return kwargs


class AnnotateTool(Tool):
    """Tool with an argument named ``context``."""

    @property
    def name(self) -> str:
        return "annotate"

    @property
    def description(self) -> str:
        return "Attaches a note to the conversation."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "note": {"type": "string"},
                "context": {"type": "string"},
            },
            "required": ["note", "context"],
        }

    async def execute(self, context: ToolContext, /, **kwargs) -> dict:
        return {
            "conversation": context.conversation_id,
            "note": kwargs["note"],
            "context": kwargs["context"],
        }
