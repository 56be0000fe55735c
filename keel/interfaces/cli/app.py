"""Keel CLI Application.

Commands:
    inspect: Analyze a saved conversation and preview a context strategy
    chat: Run one message through the agent loop and stream the events
    serve: Start the HTTP API server
    config: Print the resolved settings with secrets masked

Usage:
    keel inspect conversation.json --strategy hybrid --target-tokens 4000
    keel chat "Which deploys failed today?" --verbose
    keel serve --port 8000

Example:
    $ keel --debug inspect history.json --strategy sliding-window
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from keel import __version__
from keel.agent.events import EventType, StreamEvent
from keel.agent.llm import AnthropicReasoningEngine
from keel.agent.loop import AgentLoop, AgentRequest
from keel.config.settings import get_settings
from keel.context.messages import ContextStrategy, Message
from keel.context.strategies import ContextStrategyManager, StrategyOptions
from keel.core.exceptions import KeelError
from keel.telemetry.logging import setup_logging


# =============================================================================
# Constants
# =============================================================================

COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
}

STRATEGY_CHOICES = [s.value for s in ContextStrategy]


def colorize(text: str, color: str) -> str:
    """Apply ANSI color to text."""
    if not sys.stdout.isatty():
        return text
    return f"{COLORS.get(color, '')}{text}{COLORS['reset']}"


def load_messages(path: Path) -> list[Message]:
    """Read messages from a JSON list or an object with a ``messages`` list."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise click.BadParameter("expected a JSON list of messages", param_hint="FILE")
    return [Message.from_dict(item) for item in data]


def _scaled_manager(target_tokens: Optional[int]) -> ContextStrategyManager:
    settings = get_settings()
    manager = ContextStrategyManager.from_settings(settings)
    if target_tokens is not None:
        config = manager.window.config
        compression = min(config.compression_threshold, target_tokens)
        manager.window.update_config(
            max_tokens=max(config.max_tokens, target_tokens + 1),
            target_tokens=target_tokens,
            compression_threshold=compression,
            retrieval_threshold=min(config.retrieval_threshold, compression),
        )
    return manager


# =============================================================================
# CLI Application
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="keel")
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """Keel - conversational agent runtime with a token budget engine."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    settings = get_settings()
    setup_logging("DEBUG" if debug else settings.log_level, settings.log_file)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--strategy", "-s",
    default=None,
    type=click.Choice(STRATEGY_CHOICES),
    help="Apply this strategy and show the result"
)
@click.option("--target-tokens", "-t", type=click.IntRange(min=1), default=None, help="Override the target size")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output")
def inspect(file: Path, strategy: Optional[str], target_tokens: Optional[int], as_json: bool) -> None:
    """Analyze a saved conversation.

    Example:
        keel inspect history.json --strategy hybrid --target-tokens 4000
    """
    try:
        messages = load_messages(file)
        manager = _scaled_manager(target_tokens)
    except (KeelError, ValueError, KeyError) as e:
        raise click.ClickException(str(e))

    output: dict[str, Any] = {"stats": manager.context_stats(messages)}
    if strategy:
        result = asyncio.run(manager.apply_strategy(
            messages,
            StrategyOptions(strategy=ContextStrategy(strategy)),
        ))
        output["result"] = result.to_dict()

    if as_json:
        click.echo(json.dumps(output, indent=2, default=str))
        return

    stats = output["stats"]
    click.echo(colorize("Conversation", "bold"))
    click.echo(f"  Messages:     {stats['message_count']}")
    click.echo(f"  Tokens:       {stats['total_tokens']} / {stats['max_tokens']} "
               f"({stats['utilization'] * 100:.1f}%)")
    click.echo(f"  Recommended:  {stats['recommended_strategy']}")
    click.echo(f"  Compression:  {'needed' if stats['needs_compression'] else 'not needed'}")
    click.echo(f"  Retrieval:    {'needed' if stats['needs_retrieval'] else 'not needed'}")

    if "result" in output:
        result_data = output["result"]
        click.echo()
        click.echo(colorize(f"Applied {result_data['strategy']}", "bold"))
        click.echo(f"  Messages:     {result_data['stats']['original_messages']} -> "
                   f"{result_data['stats']['processed_messages']}")
        click.echo(f"  Tokens:       {result_data['stats']['original_tokens']} -> "
                   f"{result_data['stats']['processed_tokens']}")
        click.echo(f"  Saved:        {colorize(str(result_data['tokens_saved']), 'green')}")
        click.echo(f"  Steps:        {', '.join(result_data['steps']) or '-'}")


def _render_event(event: StreamEvent) -> None:
    data = event.payload
    if event.event_type is EventType.TEXT:
        click.echo(data["content"], nl=False)
    elif event.event_type is EventType.THINKING:
        click.echo(colorize(data["content"], "dim"), nl=False)
    elif event.event_type is EventType.TOOL:
        summary = data.get("param_summary", "")
        click.echo(colorize(f"\n[tool] {data['name']}({summary})", "cyan"))
    elif event.event_type is EventType.TOOL_RESULT:
        mark = colorize("ok", "green") if data["success"] else colorize("failed", "red")
        click.echo(f"[result] {data['name']}: {mark} ({data['duration_ms']:.0f}ms)")
    elif event.event_type is EventType.DONE:
        usage = data.get("usage", {})
        click.echo()
        click.echo(colorize(
            f"[done] {data['iterations']} iterations, {len(data['tool_calls'])} tool calls, "
            f"{usage.get('total_tokens', 0)} tokens",
            "dim",
        ))
    elif event.event_type is EventType.ERROR:
        click.echo(colorize(f"\n[error] {data['message']}", "red"), err=True)


@cli.command()
@click.argument("message")
@click.option("--system", "system_prompt", default=None, help="System prompt override")
@click.option("--conversation-id", "-c", default=None, help="Conversation identifier")
def chat(message: str, system_prompt: Optional[str], conversation_id: Optional[str]) -> None:
    """Run one message through the agent loop.

    Example:
        keel chat "Summarize the open incidents"
    """
    settings = get_settings()
    try:
        loop = AgentLoop.from_settings(settings, engine=AnthropicReasoningEngine.from_settings(settings))
    except KeelError as e:
        raise click.ClickException(e.message)

    async def run() -> bool:
        request = AgentRequest(
            message=message,
            conversation_id=conversation_id,
            system_prompt=system_prompt,
        )
        failed = False
        async for event in loop.stream(request, queue_size=settings.agent.stream_queue_size):
            _render_event(event)
            failed = failed or event.event_type is EventType.ERROR
        return not failed

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, type=int, help="Port to listen on")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the HTTP API server."""
    from keel.interfaces.api.server import run_server

    run_server(host=host, port=port, reload=reload)


@cli.command()
def config() -> None:
    """Print the resolved settings."""
    click.echo(json.dumps(get_settings().to_dict(), indent=2, default=str))


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()


__all__ = ["cli", "main", "load_messages"]
