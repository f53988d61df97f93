"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from chatloop.session.events import (
    EVENT_ACTION_START,
    EVENT_CONTENT_CHUNK,
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_THINKING,
    EVENT_TOOL_CALL_END,
    EVENT_TOOL_CALL_START,
    SOURCE_TOOL,
    ChatEvent,
)
from chatloop.tools.registry import ToolDescriptor


class OutputFormatter:
    """Rich-based output formatting for the chatloop CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[ToolDescriptor]) -> None:
        if not tools:
            self.console.print("[dim]No tools registered.[/dim]")
            return

        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Id", style="cyan", no_wrap=True)
        table.add_column("Wire name", no_wrap=True)
        table.add_column("Kind", no_wrap=True)
        table.add_column("Description")

        for d in tools:
            if d.requires_user_input:
                kind = Text("clarification", style="magenta")
            elif d.passthrough:
                kind = Text("passthrough", style="yellow")
            else:
                kind = Text("regular", style="green")
            table.add_row(d.tool_id, d.name, kind, d.tool.description)

        self.console.print(table)

    def format_tool_info(self, descriptor: ToolDescriptor) -> None:
        self.console.print(Panel(
            f"[bold]{descriptor.tool_id}[/bold]\n\n"
            f"[dim]Wire name:[/dim] {descriptor.name}\n"
            f"[dim]Requires user input:[/dim] {descriptor.requires_user_input}\n"
            f"[dim]Passthrough:[/dim] {descriptor.passthrough}\n\n"
            f"{descriptor.tool.description}",
            title=f"Tool: {descriptor.tool_id}",
        ))
        schema_json = json.dumps(descriptor.tool.parameters, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

    def format_conversation_list(self, conversations: list[dict]) -> None:
        if not conversations:
            self.console.print("[dim]No conversations found.[/dim]")
            return

        table = Table(title="Conversations")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Updated", no_wrap=True)
        for c in conversations:
            table.add_row(c.get("conversation_id", "?"), c.get("updated_at", "?"))
        self.console.print(table)

    def format_clarification(self, payload: dict[str, Any]) -> None:
        lines = [f"[bold magenta]?[/bold magenta] {payload.get('question', '')}"]
        if payload.get("context"):
            lines.append(f"  [dim]{payload['context']}[/dim]")
        for i, option in enumerate(payload.get("options") or [], start=1):
            lines.append(f"  {i}. {option.get('label')}")
        hints = []
        if payload.get("inputType") == "multi_select":
            hints.append("comma-separated numbers")
        if payload.get("allowOther"):
            hints.append("or type your own answer")
        if payload.get("allowSkip"):
            hints.append("empty to skip")
        if hints:
            lines.append(f"  [dim]({'; '.join(hints)})[/dim]")
        self.console.print("\n".join(lines))

    def render_event(self, event: ChatEvent) -> None:
        """Live rendering of one broadcaster event."""
        p = event.payload
        etype = event.event_type

        if etype == EVENT_CONTENT_CHUNK:
            style = "yellow" if p.get("source") == SOURCE_TOOL else None
            self.console.print(p.get("content", ""), end="", markup=False, style=style)
        elif etype == EVENT_THINKING:
            self.console.print(p.get("content", ""), end="", markup=False, style="dim italic")
        elif etype == EVENT_ACTION_START:
            self.console.print(f"\n[dim]{p.get('message', '')}[/dim]")
        elif etype == EVENT_TOOL_CALL_START:
            args = json.dumps(p.get("tool_input", {}), default=str)[:80]
            self.console.print(f"  [cyan]-> {p.get('tool_name', '?')}[/cyan]({args})")
        elif etype == EVENT_TOOL_CALL_END:
            status = "[red]FAILED[/red]" if p.get("error") else "[green]OK[/green]"
            self.console.print(f"  [cyan]<- {p.get('tool_name', '?')}[/cyan] {status}")
        elif etype == EVENT_ERROR:
            self.console.print(f"\n[red]Error:[/red] {p.get('message', '')}")
        elif etype == EVENT_DONE:
            if p.get("truncated"):
                self.console.print(
                    "\n[yellow]Stopped after the maximum number of tool rounds.[/yellow]"
                )
            else:
                self.console.print()
