"""
Main CLI application for chatloop.

Usage:
    chatloop chat [--model NAME] [--profile NAME] [--conversation ID]
    chatloop conversations list|delete
    chatloop tools list|info
    chatloop config show|validate
    chatloop version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from chatloop.config import ChatloopConfig, load_config, validate_config

app = typer.Typer(name="chatloop", help="Chatloop - tool-calling LLM conversation CLI")
conversations_app = typer.Typer(help="Conversation management")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(conversations_app, name="conversations")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "chatloop.yaml",
        Path.cwd() / "chatloop.yml",
        Path.home() / ".config" / "chatloop" / "config.yaml",
        Path.home() / ".chatloop" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _build_registry(cfg: ChatloopConfig):
    """Registry with the built-in clarification tool plus any enabled plugins."""
    from chatloop.tools.clarification import AskUserTool
    from chatloop.tools.registry import ToolRegistry

    registry = ToolRegistry()
    registry.register(AskUserTool())
    try:
        registry.load_plugins(
            enabled=cfg.plugins.enabled,
            allow_distributions=set(cfg.plugins.allow_distributions) if cfg.plugins.allow_distributions else None,
            allow_tools=set(cfg.plugins.allow_tools) if cfg.plugins.allow_tools else None,
        )
    except Exception:
        logger.exception("Failed to load tool plugins")
    return registry


async def _setup_stack(cfg: ChatloopConfig, conversation_id: str | None = None):
    """Wire up the full stack for chat."""
    from chatloop.cli.chat import ChatHandler
    from chatloop.llm.providers.openai_compat import OpenAICompatProvider
    from chatloop.llm.router import ProviderRouter
    from chatloop.llm.transport import ProviderTransport, RequestThrottler
    from chatloop.llm.types import ModelConfig
    from chatloop.orchestrator.core import Orchestrator
    from chatloop.session.audit import InteractionLogger
    from chatloop.session.broadcaster import Broadcaster
    from chatloop.session.store import ConversationStore

    store = ConversationStore(cfg.store.db_path)
    await store.init()

    audit = InteractionLogger(
        cfg.audit.path,
        enabled=cfg.audit.enabled,
        max_size_mb=cfg.audit.max_size_mb,
        keep_files=cfg.audit.keep_files,
        redaction_patterns=cfg.audit.redaction_patterns,
    )

    router = ProviderRouter()
    router.register_provider(OpenAICompatProvider(default_url=cfg.llm.api_base))

    transport = ProviderTransport(
        throttler=RequestThrottler(cfg.llm.max_concurrent_requests),
        max_retries=cfg.llm.max_retries,
        timeout=cfg.llm.request_timeout_seconds,
    )

    orchestrator = Orchestrator(
        router,
        transport,
        _build_registry(cfg),
        Broadcaster(),
        store=store,
        audit=audit,
        max_iterations=cfg.loop.max_iterations,
        max_clarifications=cfg.loop.max_clarifications,
        request_timeout=cfg.llm.request_timeout_seconds,
        clarification_tool=cfg.loop.clarification_tool,
        system_prompt=cfg.loop.system_prompt,
        default_language=cfg.localization.default_language,
        temperature=cfg.llm.temperature,
        max_tokens=cfg.llm.max_tokens,
    )

    api_key = cfg.api_key()
    if not api_key:
        console.print(
            f"[yellow]Warning:[/yellow] {cfg.llm.api_key_env} is not set; "
            "requests will be sent without credentials."
        )

    model = ModelConfig(
        id=cfg.llm.model,
        provider=cfg.llm.provider,
        url=cfg.llm.api_base,
        api_key=api_key,
        temperature=cfg.llm.temperature,
        max_tokens=cfg.llm.max_tokens,
        extra=dict(cfg.llm.extra),
    )

    handler = ChatHandler(orchestrator, model, console=console, conversation_id=conversation_id)
    if conversation_id:
        history = await store.load_history(conversation_id)
        if history:
            handler.history = history
            console.print(f"[dim]Resumed {conversation_id} ({len(history)} messages).[/dim]")
    return handler, orchestrator


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    model: Optional[str] = typer.Option(None, help="Model name"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Resume conversation ID"),
):
    """Start an interactive chat session."""
    from chatloop.logging_config import setup_logging

    overrides = {"llm.model": model} if model else None
    cfg = load_config(_get_config_path(), profile=profile, cli_overrides=overrides)
    setup_logging(cfg.logging)

    problems = validate_config(cfg)
    if problems:
        for p in problems:
            console.print(f"[red]Config error:[/red] {p}")
        raise typer.Exit(1)

    async def _run():
        handler, orchestrator = await _setup_stack(cfg, conversation)
        try:
            await handler.run_loop()
        finally:
            await orchestrator.close()

    asyncio.run(_run())


@conversations_app.command("list")
def conversations_list():
    """List stored conversations."""

    async def _run():
        from chatloop.cli.output import OutputFormatter
        from chatloop.session.store import ConversationStore

        cfg = load_config(_get_config_path())
        store = ConversationStore(cfg.store.db_path)
        await store.init()
        conversations = await store.list_conversations()
        formatter = OutputFormatter(console)
        formatter.format_conversation_list(conversations)
        await store.close()

    asyncio.run(_run())


@conversations_app.command("delete")
def conversations_delete(conversation_id: str = typer.Argument(..., help="Conversation ID")):
    """Delete a conversation and any pending clarifications."""

    async def _run():
        from chatloop.session.store import ConversationStore

        cfg = load_config(_get_config_path())
        store = ConversationStore(cfg.store.db_path)
        await store.init()
        await store.delete_conversation(conversation_id)
        console.print(f"Deleted conversation: {conversation_id}")
        await store.close()

    asyncio.run(_run())


@tools_app.command("list")
def tools_list():
    """List registered tools."""
    from chatloop.cli.output import OutputFormatter

    registry = _build_registry(load_config(_get_config_path()))
    formatter = OutputFormatter(console)
    formatter.format_tool_list(registry.list())


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool id or wire name")):
    """Show tool details and schema."""
    from chatloop.cli.output import OutputFormatter

    registry = _build_registry(load_config(_get_config_path()))
    descriptor = registry.resolve(tool_name)
    if descriptor is None:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)

    formatter = OutputFormatter(console)
    formatter.format_tool_info(descriptor)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective configuration."""
    from chatloop.cli.output import OutputFormatter

    cfg = load_config(_get_config_path(), profile=profile)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate():
    """Validate configuration."""
    config_path = _get_config_path()
    try:
        cfg = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)

    problems = validate_config(cfg)
    if problems:
        for p in problems:
            console.print(f"[red]Config error:[/red] {p}")
        raise typer.Exit(1)

    source = str(config_path) if config_path else "defaults"
    console.print(f"[green]Config is valid.[/green] [dim]({source})[/dim]")


@app.command()
def version():
    """Show version."""
    console.print("chatloop-core v0.1.0")


def main():
    app()


if __name__ == "__main__":
    main()
