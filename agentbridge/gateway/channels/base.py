"""Base channel interface — platform senders and listeners inherit from this."""

from __future__ import annotations

from abc import ABC, abstractmethod

from agentbridge.gateway.queue import IngressQueue


class ChannelError(Exception):
    """A platform refused or failed to deliver a message."""


class PlatformSender(ABC):
    """Anything that can deliver reply text to a platform chat."""

    @abstractmethod
    async def send(self, session_id: str, text: str) -> None:
        """Send one piece of text to a chat.

        Args:
            session_id: The platform chat handle the message came from.
            text: Text to deliver, already within the platform's length limit.

        Raises:
            ChannelError: if the platform did not accept the message.
        """
        ...


class BaseChannel(PlatformSender):
    """Abstract base for platform channels.

    Each channel must:
    1. Convert its native events to UnifiedMessage and push them (listen)
    2. Deliver reply text back to the chat (send)
    """

    @property
    @abstractmethod
    def platform(self) -> str:
        """Return the platform tag this channel serves (e.g., 'lark', 'wecom')."""
        ...

    @abstractmethod
    async def listen(self, queue: IngressQueue) -> None:
        """Push inbound messages into the queue until the channel closes."""
        ...

    async def start(self) -> None:
        """Start the channel (e.g., connect to API, open socket). Override if needed."""

    async def stop(self) -> None:
        """Stop the channel gracefully. Override if needed."""
