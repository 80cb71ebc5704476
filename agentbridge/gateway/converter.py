"""Message converter — translates between UnifiedMessage and agent formats.

All content-interpretation heuristics live here: image shape detection,
conversation identifier validation, text normalization and chunking.
The converter has no state and is shared by every pipeline task.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Sequence

from agentbridge.gateway.message import (
    ADDITIONAL_IMAGES,
    CONVERSATION_AGENT,
    CONVERSATION_ID,
    IMAGE_KEY,
    MEDIA_ID,
    PLATFORM,
    AgentRequest,
    AgentResponse,
    MessageType,
    UnifiedMessage,
    is_uuid,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_LEN = 2048

# Strings longer than this without a URL scheme are taken as bare base64.
# There is no byte-signature check, so long non-image text can be misread.
BASE64_MIN_LEN = 100

DATA_URI_PREFIX = "data:image/"
DEFAULT_DATA_URI = "data:image/png;base64,"

_SPLIT_BOUNDARIES = frozenset("\n。！？.!?")

# Image reference kinds returned by classify_image
IMAGE_DATA_URI = "data_uri"
IMAGE_BASE64 = "base64"
IMAGE_URL = "url"


def classify_image(value: str) -> str | None:
    """Classify an image reference as data URI, bare base64 or remote URL.

    Returns None when the value has none of these shapes.
    """
    if not value:
        return None
    if value.startswith(DATA_URI_PREFIX):
        return IMAGE_DATA_URI
    if value.startswith("http"):
        return IMAGE_URL
    if len(value) > BASE64_MIN_LEN:
        return IMAGE_BASE64
    return None


def is_base64_image(value: str) -> bool:
    """Check if an image reference carries inline data that needs uploading."""
    return classify_image(value) in (IMAGE_DATA_URI, IMAGE_BASE64)


def extract_base64_image(content: str) -> str | None:
    """Return the raw base64 payload of a data URI or bare base64 string."""
    if content.startswith(DATA_URI_PREFIX):
        _, sep, payload = content.partition(",")
        return payload if sep and payload else None

    if len(content) <= BASE64_MIN_LEN:
        return None
    try:
        base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        return None
    return content


def decode_image(value: str) -> bytes:
    """Decode a data URI or bare base64 image into bytes.

    Raises ValueError if the value is not valid base64 image data.
    """
    payload = value
    if value.startswith(DATA_URI_PREFIX):
        payload = extract_base64_image(value)
    if not payload or payload.startswith("http"):
        raise ValueError("Not a base64 image.")
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e


def image_mime_type(value: str) -> str:
    """Return the MIME type declared by a data URI, defaulting to PNG."""
    if value.startswith(DATA_URI_PREFIX):
        mime = value[len("data:"):].split(";", 1)[0].split(",", 1)[0]
        if mime.startswith("image/"):
            return mime
    return "image/png"


def continuation_id(request: AgentRequest, agent: str) -> str:
    """Pick the conversation identifier to send to ``agent``, if any.

    A stored ``conversation_id`` that is not a UUID is purged from the
    request metadata so it is never retried. One issued by a different
    backend is left in place but not forwarded. The platform session
    handle is never used, even when it happens to look like a UUID.
    """
    cid = request.metadata.get(CONVERSATION_ID, "")
    if cid and not is_uuid(cid):
        logger.info(f"Purging invalid conversation id {cid!r}")
        del request.metadata[CONVERSATION_ID]
        cid = ""

    issuer = request.metadata.get(CONVERSATION_AGENT, "")
    if cid and issuer and issuer != agent:
        cid = ""

    return cid


class MessageConverter:
    """Stateless converter between the unified model and agent formats."""

    def to_agent_request(self, message: UnifiedMessage) -> AgentRequest:
        """Build an AgentRequest from a (normalized) UnifiedMessage.

        A ``conversation_id`` that the agent did not issue is dropped so the
        agent opens a fresh conversation instead of rejecting the request.
        """
        request = AgentRequest(
            query=message.content,
            session_id=message.session_id,
            user_id=message.user_id,
        )

        for key, value in message.metadata.items():
            if key == CONVERSATION_ID and not is_uuid(value):
                logger.debug(f"Dropping non-agent conversation id {value!r}")
                continue
            request.metadata[key] = value

        if message.is_image:
            kind = classify_image(message.content)
            if kind in (IMAGE_DATA_URI, IMAGE_BASE64):
                payload = extract_base64_image(message.content)
                if payload:
                    request.image_urls.append(payload)
                else:
                    logger.warning("Unrecognized image payload, continuing as text-only")
            elif kind == IMAGE_URL:
                request.image_urls.append(message.content)

            # Platform handles are resolved later by the media collaborator.
            for handle_key in (MEDIA_ID, IMAGE_KEY):
                if handle := message.metadata.get(handle_key):
                    request.metadata[handle_key] = handle
                    request.metadata[PLATFORM] = message.platform

        elif message.is_text:
            # Lark can deliver the downloaded image piggybacked on a text event.
            if message.metadata.get(IMAGE_KEY) and is_base64_image(message.content):
                request.image_urls.append(message.content)

        return request

    def from_agent_response(
        self, response: AgentResponse, original: UnifiedMessage
    ) -> UnifiedMessage:
        """Build the reply UnifiedMessage for an agent response."""
        reply = UnifiedMessage(
            platform=original.platform,
            session_id=original.session_id,
            user_id=original.user_id,
            content=response.content,
            message_type=MessageType.TEXT,
            metadata=dict(response.metadata),
        )

        if response.image_urls:
            reply.message_type = MessageType.IMAGE
            reply.content = response.image_urls[0]
            if len(response.image_urls) > 1:
                reply.metadata[ADDITIONAL_IMAGES] = ",".join(response.image_urls[1:])

        return reply

    def normalize_content(self, message: UnifiedMessage) -> None:
        """Normalize message content in place."""
        if message.is_text:
            content = message.content.strip()
            content = content.replace("\r\n", "\n").replace("\r", "\n")
            message.content = content

        elif message.is_image:
            content = message.content
            if (
                not content.startswith("http")
                and not content.startswith(DATA_URI_PREFIX)
                and len(content) > BASE64_MIN_LEN
            ):
                message.content = DEFAULT_DATA_URI + content

    def split_long_text(self, text: str, max_len: int = DEFAULT_MAX_LEN) -> list[str]:
        """Split text into chunks of at most ``max_len`` characters.

        Each non-final chunk ends on the last newline or sentence mark found
        in the back half of its window, or at the raw window edge if there
        is none. Joining the chunks gives back the original text.
        """
        if max_len <= 0:
            max_len = DEFAULT_MAX_LEN

        if len(text) <= max_len:
            return [text]

        chunks: list[str] = []
        start = 0
        length = len(text)

        while start < length:
            end = min(start + max_len, length)

            if end < length:
                for i in range(end, start + max_len // 2, -1):
                    if text[i - 1] in _SPLIT_BOUNDARIES:
                        end = i
                        break

            chunks.append(text[start:end])
            start = end

        return chunks

    def merge_messages(
        self, messages: Sequence[UnifiedMessage]
    ) -> UnifiedMessage | None:
        """Merge several messages into one text message.

        Metadata keys keep the first value seen.
        """
        if not messages:
            return None
        if len(messages) == 1:
            return messages[0]

        first = messages[0]
        merged = UnifiedMessage(
            platform=first.platform,
            session_id=first.session_id,
            user_id=first.user_id,
            content="".join(m.content for m in messages if m.is_text),
            message_type=MessageType.TEXT,
        )

        for message in messages:
            for key, value in message.metadata.items():
                merged.metadata.setdefault(key, value)

        return merged
