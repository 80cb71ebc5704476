"""Ingress queue — bounded buffer between platform listeners and the pipeline."""

from __future__ import annotations

import asyncio
import logging

from agentbridge.gateway.message import UnifiedMessage

logger = logging.getLogger(__name__)


class IngressQueue:
    """Bounded message queue that drops instead of blocking the producer.

    Platform listeners push from their event callbacks and must never stall,
    so a push against a full queue discards the message.
    """

    def __init__(self, maxsize: int = 100) -> None:
        if maxsize <= 0:
            raise ValueError("Queue size must be positive.")
        self._queue: asyncio.Queue[UnifiedMessage] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    @property
    def dropped(self) -> int:
        """Number of messages discarded because the queue was full."""
        return self._dropped

    def __len__(self) -> int:
        return self._queue.qsize()

    def push(self, message: UnifiedMessage) -> bool:
        """Enqueue a message without blocking.

        Returns False if the queue was full and the message was dropped.
        """
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                f"Ingress queue full ({self.maxsize}), dropping message "
                f"from {message.platform}:{message.session_id}"
            )
            return False
        return True

    async def pop(self) -> UnifiedMessage:
        """Wait for the next message. Cancel the awaiting task to stop waiting."""
        return await self._queue.get()

    def try_pop(self) -> UnifiedMessage | None:
        """Return the next message if one is ready, else None."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
