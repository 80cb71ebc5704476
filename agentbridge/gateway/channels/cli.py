"""Console channel — terminal stand-in for a chat platform using Rich."""

from __future__ import annotations

import asyncio

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from agentbridge import __version__
from agentbridge.gateway.channels.base import BaseChannel
from agentbridge.gateway.message import UnifiedMessage
from agentbridge.gateway.queue import IngressQueue

console = Console()


class ConsoleChannel(BaseChannel):
    """Reads chat lines from stdin and prints replies.

    Messages are tagged with the platform being simulated, so replies go
    through that platform's formatting (e.g. WeCom chunking).
    """

    def __init__(self, platform: str, session_id: str = "console", user_id: str = "console:local") -> None:
        self._platform = platform
        self.session_id = session_id
        self.user_id = user_id

    @property
    def platform(self) -> str:
        return self._platform

    async def listen(self, queue: IngressQueue) -> None:
        """Read lines until 'exit' or EOF and push them to the queue.

        Type 'exit' or 'quit' to stop. Ctrl+C also works.
        """
        console.print(
            Panel(
                Text.from_markup(
                    f"[bold cyan]AgentBridge[/] v{__version__} as [bold]{self.platform}[/] — "
                    "Type a message, or [bold]exit[/] to quit."
                ),
                border_style="cyan",
            )
        )
        while True:
            try:
                user_input = await asyncio.to_thread(console.input, "[bold green]you >[/] ")
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "/exit", "/quit"):
                console.print("[dim]Goodbye![/]")
                break

            queue.push(
                UnifiedMessage.text_message(
                    self.platform, self.session_id, self.user_id, user_input
                )
            )

    async def send(self, session_id: str, text: str) -> None:
        """Print one reply chunk to the terminal."""
        console.print()
        console.print(
            Panel(
                Markdown(text),
                title=f"[bold cyan]{self.platform}[/] [dim]{session_id}[/]",
                border_style="blue",
                padding=(1, 2),
            )
        )
        console.print()
