"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from rich.console import Console

from chatloop.cli.output import OutputFormatter
from chatloop.llm.types import Message, ModelConfig
from chatloop.orchestrator.core import Orchestrator
from chatloop.session.events import EVENT_CLARIFICATION, ChatEvent
from chatloop.types import TurnResult, TurnStatus


def parse_answer(payload: dict[str, Any], raw: str) -> tuple[Any, bool]:
    """
    Turn typed input into an answer for *payload*.

    Returns ``(answer, skipped)``.  Option numbers are mapped to option
    values; anything else is passed through as free text.
    """
    raw = raw.strip()
    if not raw:
        return None, True

    options = payload.get("options") or []
    input_type = payload.get("inputType")

    def pick(token: str) -> Any:
        if token.isdigit() and 1 <= int(token) <= len(options):
            return options[int(token) - 1]["value"]
        return token

    if input_type == "multi_select":
        return [pick(t.strip()) for t in raw.split(",") if t.strip()], False
    if input_type == "single_select":
        return pick(raw), False
    if input_type == "number":
        try:
            return float(raw), False
        except ValueError:
            return raw, False
    return raw, False


class ChatHandler:
    """
    Manages the interactive chat loop.

    Renders broadcaster events as they arrive and prompts for clarification
    answers when the orchestrator pauses.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        model: ModelConfig,
        console: Console | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.model = model
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.history: list[Message] = []
        self._pending: dict[str, Any] | None = None
        self._running = True
        orchestrator.broadcaster.add_listener(self._on_event)

    def _on_event(self, event: ChatEvent) -> None:
        if event.conversation_id != self.conversation_id:
            return
        if event.event_type == EVENT_CLARIFICATION:
            self._pending = event.payload
            return
        self.formatter.render_event(event)

    async def _prompt(self, label: str) -> str:
        return await asyncio.get_event_loop().run_in_executor(
            None, lambda: input(label).strip()
        )

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        cmd = command.strip().split(None, 1)[0].lower()

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.orchestrator.registry.list())
            return True

        if cmd == "/reset":
            await self.orchestrator.end_conversation(self.conversation_id)
            self.history = []
            self.conversation_id = str(uuid.uuid4())
            self.console.print("[dim]Started a new conversation.[/dim]")
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /reset    - Forget this conversation and start over\n"
                "  /tools    - List available tools\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> TurnResult:
        """Run one user message through the orchestrator, answering clarifications inline."""
        self.history.append(Message(role="user", content=user_input))
        result = await self.orchestrator.submit_turn(
            self.conversation_id, self.history, self.model
        )
        while result.status == TurnStatus.PAUSED and self._pending:
            payload, self._pending = self._pending, None
            self.console.print()
            self.formatter.format_clarification(payload)
            try:
                raw = await self._prompt("answer> ")
            except (EOFError, KeyboardInterrupt):
                raw = ""
            answer, skipped = parse_answer(payload, raw)
            result = await self.orchestrator.respond_to_clarification(
                self.conversation_id, payload["questionId"], answer, skipped=skipped
            )
        self.history = list(result.history)
        return result

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]chatloop[/bold] - tool-calling chat\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await self._prompt("you> ")
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                if await self.handle_command(user_input):
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
