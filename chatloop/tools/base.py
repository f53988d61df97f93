from abc import ABC, abstractmethod
from typing import Any

from chatloop.types import ToolContext


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("additionalProperties", False)
    return s


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @property
    def requires_user_input(self) -> bool:
        return False

    @property
    def passthrough(self) -> bool:
        return False

    @abstractmethod
    async def execute(self, context: ToolContext, /, **kwargs) -> Any:
        """
        Run the tool.

        Regular tools return any JSON-serializable value.  Passthrough tools
        may also return an async iterator of text fragments, an
        ``httpx.Response`` opened in streaming mode, or a plain string.
        """

    def to_openai_schema(self, name: str | None = None) -> dict:
        return {
            "type": "function",
            "function": {
                "name": name or self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }
