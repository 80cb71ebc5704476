"""Streaming response assembler — folds server-sent events into one AgentResponse.

Both backends stream ``data:`` frames. Dify sends one JSON event per line;
Coze sends ``event:``/``data:`` pairs terminated by a blank line. Each decoded
event is handed to a backend-specific parser that returns an AgentEvent.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from agentbridge.gateway.message import (
    AGENT,
    CONVERSATION_ID,
    MESSAGE_ID,
    AgentResponse,
)
from agentbridge.engine.agents.base import AgentStreamError

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Sorry, I was unable to understand the request."

DATA_PREFIX = "data:"
EVENT_PREFIX = "event:"
DONE_SENTINEL = "[DONE]"


@dataclass
class AgentEvent:
    """The part of an AgentResponse carried by one stream event."""

    text: str = ""
    replace: bool = False          # text is the full answer so far, not a delta
    image_urls: list[str] = field(default_factory=list)
    conversation_id: str = ""
    message_id: str = ""
    error: str = ""
    done: bool = False


EventParser = Callable[[dict, str], AgentEvent]


class StreamAssembler:
    """Accumulates parsed events for a single agent response.

    Args:
        parser: Backend parser, called as ``parser(data, event_name)``.
        batched: True when frames are grouped and flushed by a blank line.
        agent: Backend name recorded in the response metadata.
    """

    def __init__(self, parser: EventParser, batched: bool = False, agent: str = "") -> None:
        self._parser = parser
        self._batched = batched
        self._agent = agent
        # Answer text per message id, in arrival order
        self._segments: dict[str, str] = {}
        self._segment_key = ""
        self._image_urls: list[str] = []
        self._conversation_id = ""
        self._message_id = ""
        self._event_name = ""
        self._pending: str | None = None
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self._segments.values())

    def feed_line(self, line: str) -> None:
        """Consume one line of the response body."""
        if self.done:
            return
        line = line.strip()

        if not line:
            if self._batched:
                self._flush()
            return

        if line.startswith(EVENT_PREFIX):
            self._event_name = line[len(EVENT_PREFIX):].strip()
            return

        if not line.startswith(DATA_PREFIX):
            return

        data = line[len(DATA_PREFIX):].strip()
        if data.strip('"') == DONE_SENTINEL:
            self._flush()
            self.done = True
            return

        if self._batched:
            self._pending = data
        else:
            self._handle(data)

    def _flush(self) -> None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            self._handle(pending)
        self._event_name = ""

    def _handle(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping undecodable stream frame: {e}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Skipping non-object stream frame: {data[:100]}")
            return

        event = self._parser(payload, self._event_name)
        if not self._batched:
            self._event_name = ""
        self.apply(event)

    def apply(self, event: AgentEvent) -> None:
        """Fold one parsed event into the running response.

        A replacing event overwrites only the text of its own message, so a
        reply made of several answer messages keeps all of them. Events
        without a message id belong to the last message seen.
        """
        if event.error:
            raise AgentStreamError(event.error)

        key = event.message_id or self._segment_key
        self._segment_key = key
        if event.replace:
            if event.text:
                self._segments[key] = event.text
        elif event.text:
            self._segments[key] = self._segments.get(key, "") + event.text

        for url in event.image_urls:
            if url not in self._image_urls:
                self._image_urls.append(url)

        if event.conversation_id and not self._conversation_id:
            self._conversation_id = event.conversation_id
        if event.message_id and not self._message_id:
            self._message_id = event.message_id

        if event.done:
            self.done = True

    def finish(self) -> AgentResponse:
        """Flush pending frames and build the final response."""
        self._flush()

        content = self.text
        if not content and not self._image_urls:
            content = FALLBACK_TEXT

        response = AgentResponse(content=content, image_urls=list(self._image_urls))
        if self._conversation_id:
            response.metadata[CONVERSATION_ID] = self._conversation_id
        if self._message_id:
            response.metadata[MESSAGE_ID] = self._message_id
        if self._agent:
            response.metadata[AGENT] = self._agent
        return response

    async def assemble(self, lines: AsyncIterator[str]) -> AgentResponse:
        """Consume lines until the sentinel or end of stream.

        Transport errors raised by ``lines`` propagate to the caller.
        """
        async for line in lines:
            self.feed_line(line)
            if self.done:
                break
        return self.finish()
