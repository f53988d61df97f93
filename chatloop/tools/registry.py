from __future__ import annotations

import inspect
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Iterable

from chatloop.llm.types import normalize_tool_name
from chatloop.tools.base import Tool
from chatloop.types import ToolContext


@dataclass(frozen=True)
class ToolDescriptor:
    """Registration-time view of a tool, capability flags included."""

    tool_id: str
    name: str
    requires_user_input: bool
    passthrough: bool
    tool: Tool

    def to_openai_schema(self) -> dict:
        return self.tool.to_openai_schema(self.name)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, ToolDescriptor] = {}
        self._by_name: dict[str, str] = {}

    def register(self, tool: Tool, *, overwrite: bool = False) -> ToolDescriptor:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        descriptor = ToolDescriptor(
            tool_id=tool.name,
            name=normalize_tool_name(tool.name),
            requires_user_input=bool(tool.requires_user_input),
            passthrough=bool(tool.passthrough),
            tool=tool,
        )
        self._tools[tool.name] = descriptor
        self._by_name[descriptor.name] = tool.name
        return descriptor

    def get(self, name: str) -> Tool | None:
        d = self.resolve(name)
        return d.tool if d else None

    def resolve(self, name: str) -> ToolDescriptor | None:
        """Look up by tool id first, then by the provider-safe name."""
        d = self._tools.get(name)
        if d is not None:
            return d
        tool_id = self._by_name.get(normalize_tool_name(name))
        return self._tools.get(tool_id) if tool_id else None

    def require(self, name: str) -> ToolDescriptor:
        d = self.resolve(name)
        if not d:
            raise KeyError(name)
        return d

    def list(self) -> list[ToolDescriptor]:
        return sorted(self._tools.values(), key=lambda d: d.tool_id)

    def select(self, tool_ids: Iterable[str] | None) -> list[ToolDescriptor]:
        """Descriptors for *tool_ids* (all tools when ``None``); unknown ids are skipped."""
        if tool_ids is None:
            return self.list()
        selected = []
        for tool_id in tool_ids:
            d = self.resolve(tool_id)
            if d is not None and d not in selected:
                selected.append(d)
        return selected

    def to_openai_schema(self, tool_ids: Iterable[str] | None = None) -> list[dict]:
        return [d.to_openai_schema() for d in self.select(tool_ids)]

    async def run(self, tool_id: str, args: dict, context: ToolContext) -> Any:
        """Execute *tool_id*; raises ``KeyError`` for unknown tools."""
        d = self.require(tool_id)
        return await d.tool.execute(context, **args)

    def load_plugins(
        self,
        *,
        enabled: bool,
        group: str = "chatloop.tools",
        allow_distributions: set[str] | None = None,
        allow_tools: set[str] | None = None,
        **dependencies: Any,
    ) -> int:
        """Load tools from entry points, optionally injecting dependencies.

        Each keyword in *dependencies* is passed to a tool class's
        ``__init__`` when the signature declares a parameter of that name.
        Tools that don't declare it are constructed without it.
        """
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            dist = getattr(ep, "dist", None)
            dist_name = getattr(dist, "name", None)
            if allow_distributions and dist_name and dist_name not in allow_distributions:
                continue
            if allow_tools and ep.name not in allow_tools:
                continue
            tool_cls = ep.load()
            sig = inspect.signature(tool_cls)
            kwargs = {k: v for k, v in dependencies.items() if k in sig.parameters}
            self.register(tool_cls(**kwargs))
            loaded += 1
        return loaded
