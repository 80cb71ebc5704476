"""Unified message schema — the canonical format shared by platforms and agents.

Every platform listener normalizes its inbound event into a UnifiedMessage.
Agent backends only ever see an AgentRequest and answer with an AgentResponse.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


class Platform:
    """Platform tags carried on every UnifiedMessage."""

    LARK = "lark"
    WECOM = "wecom"

    ALL = (LARK, WECOM)


class MessageType:
    """Message content kinds. The type fully determines how content is read."""

    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    FILE = "file"
    VIDEO = "video"


# Metadata keys
CONVERSATION_ID = "conversation_id"
CONVERSATION_AGENT = "conversation_agent"
MESSAGE_ID = "message_id"
AGENT = "agent"
ADDITIONAL_IMAGES = "additional_images"
IMAGE_KEY = "image_key"      # Lark image handle
MEDIA_ID = "media_id"        # WeCom media handle
PLATFORM = "platform"

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def is_uuid(value: str | None) -> bool:
    """Check for the canonical 8-4-4-4-12 hexadecimal form.

    Agent backends only accept conversation identifiers they issued
    themselves, and those always have this shape. Platform chat handles
    (e.g. Lark's ``oc_xxx``) never do.
    """
    if not value:
        return False
    return _UUID_RE.match(value.lower()) is not None


@dataclass
class UnifiedMessage:
    """The canonical message that flows through the whole pipeline.

    ``content`` is plain text for text messages. For image messages it is an
    absolute URL, a ``data:image/...;base64,`` URI or a bare base64 blob.
    """

    platform: str = ""
    session_id: str = ""                            # Platform chat handle, not a UUID
    user_id: str = ""
    content: str = ""
    message_type: str = MessageType.TEXT
    metadata: dict[str, str] = field(default_factory=dict)
    timestamp: int | None = None

    @classmethod
    def text_message(
        cls, platform: str, session_id: str, user_id: str, content: str
    ) -> UnifiedMessage:
        """Create a text message."""
        return cls(
            platform=platform,
            session_id=session_id,
            user_id=user_id,
            content=content,
            message_type=MessageType.TEXT,
        )

    @classmethod
    def image_message(
        cls, platform: str, session_id: str, user_id: str, image_data: str
    ) -> UnifiedMessage:
        """Create an image message from base64 data or a URL."""
        return cls(
            platform=platform,
            session_id=session_id,
            user_id=user_id,
            content=image_data,
            message_type=MessageType.IMAGE,
        )

    @property
    def is_text(self) -> bool:
        return self.message_type == MessageType.TEXT

    @property
    def is_image(self) -> bool:
        return self.message_type == MessageType.IMAGE


@dataclass
class AgentRequest:
    """Agent-agnostic request built fresh for every inbound message."""

    query: str = ""
    image_urls: list[str] = field(default_factory=list)   # base64 payloads or URLs
    session_id: str = ""
    user_id: str = ""
    system_prompt: str = ""
    contexts: list[dict] = field(default_factory=list)    # Prior turns, oldest first
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class AgentResponse:
    """Agent-agnostic response assembled from one completed stream."""

    content: str = ""
    image_urls: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def conversation_id(self) -> str:
        return self.metadata.get(CONVERSATION_ID, "")
