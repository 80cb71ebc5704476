"""AgentBridge main entry point — CLI interface and pipeline wiring.

Commands:
  agentbridge start            Run the pipeline against an interactive console chat
  agentbridge chat "message"   Send one message through the pipeline
  agentbridge status           Show configuration and enabled agents
"""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from agentbridge import __version__
from agentbridge.config import BridgeConfig, load_config
from agentbridge.engine.pipeline import Pipeline
from agentbridge.gateway.channels.cli import ConsoleChannel
from agentbridge.gateway.message import Platform, UnifiedMessage
from agentbridge.gateway.queue import IngressQueue
from agentbridge.memory.store import ConversationStore

console = Console()


# ─── Bridge ──────────────────────────────────────────────────────


class AgentBridge:
    """Wires the queue, pipeline and conversation store together."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.queue = IngressQueue(config.pipeline.queue_size)
        self.store = (
            ConversationStore(config.database_path)
            if config.pipeline.persist_conversations
            else None
        )
        self.pipeline = Pipeline.from_config(config, store=self.store)

    async def startup(self) -> None:
        """Initialize all components."""
        if self.store:
            await self.store.connect()

    async def shutdown(self) -> None:
        """Clean up all components."""
        self.pipeline.stop()
        await self.pipeline.drain()
        await self.pipeline.agents.close()
        if self.store:
            await self.store.close()


# ─── CLI Commands ────────────────────────────────────────────────


def _setup_logging(verbose: bool = False) -> None:
    """Configure structured logging with Rich."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


_platform_option = click.option(
    "--platform",
    "-p",
    type=click.Choice(Platform.ALL),
    default=Platform.LARK,
    show_default=True,
    help="Platform whose formatting rules replies follow.",
)


@click.group()
@click.version_option(__version__, prog_name="AgentBridge")
def cli() -> None:
    """AgentBridge — bridge chat platforms to LLM agents."""
    pass


@cli.command()
@_platform_option
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def start(platform: str, verbose: bool) -> None:
    """Chat with the configured agents from the terminal."""
    _setup_logging(verbose)
    asyncio.run(_run_interactive(platform))


@cli.command()
@click.argument("message")
@_platform_option
@click.option("--session", "-s", default="console", help="Chat handle to use.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def chat(message: str, platform: str, session: str, verbose: bool) -> None:
    """Process a single message and print the reply."""
    _setup_logging(verbose)
    asyncio.run(_run_one_shot(message, platform, session))


@cli.command()
def status() -> None:
    """Show configuration and agent status."""
    config = load_config()
    agents = config.agents
    console.print("[bold cyan]AgentBridge Status[/]\n")
    console.print(f"  Version: {__version__}")
    console.print(f"  Config: {config.config_dir}")
    console.print(f"  Conversation store: {config.database_path}")
    console.print(f"  Queue size: {config.pipeline.queue_size}")
    console.print(f"  Max concurrency: {config.pipeline.max_concurrency}")
    console.print(f"  Primary agent: {agents.primary}")
    console.print()

    checks = [
        ("Dify", agents.dify.enabled, agents.dify.api_key, agents.dify.api_base),
        ("Coze", agents.coze.enabled, agents.coze.api_key, agents.coze.api_base),
    ]
    for name, enabled, key, base in checks:
        if not enabled:
            console.print(f"  ⏸  {name}: [dim]disabled[/]")
        elif key:
            console.print(f"  ✅ {name}: [green]{base}[/]")
        else:
            console.print(f"  ❌ {name}: [red]enabled but no API key[/]")

    for name in Platform.ALL:
        p = config.platform(name)
        limit = p.max_message_length or "unlimited"
        console.print(f"  {name}: {'enabled' if p.enabled else 'disabled'} (max length {limit})")


# ─── Async Runners ───────────────────────────────────────────────


async def _run_interactive(platform: str) -> None:
    """Run the pipeline with the console standing in for a platform."""
    config = load_config()
    bridge = AgentBridge(config)
    await bridge.startup()

    channel = ConsoleChannel(platform)
    bridge.pipeline.register_sender(platform, channel)
    consumer = asyncio.create_task(bridge.pipeline.run(bridge.queue))

    try:
        await channel.listen(bridge.queue)
    except KeyboardInterrupt:
        console.print("\n[dim]Shutting down...[/]")
    finally:
        bridge.pipeline.stop()
        await consumer
        await bridge.shutdown()


async def _run_one_shot(message_text: str, platform: str, session: str) -> None:
    """Process a single message and print the reply."""
    config = load_config()
    bridge = AgentBridge(config)
    await bridge.startup()

    try:
        channel = ConsoleChannel(platform, session_id=session)
        bridge.pipeline.register_sender(platform, channel)
        message = UnifiedMessage.text_message(
            platform, session, channel.user_id, message_text
        )
        result = await bridge.pipeline.process_message(message)
        if not result.delivered:
            console.print(f"[red]Reply not delivered ({result.state.value})[/]")
    finally:
        await bridge.shutdown()


# ─── Direct execution ───────────────────────────────────────────

if __name__ == "__main__":
    cli()
