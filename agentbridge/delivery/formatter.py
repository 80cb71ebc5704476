"""Delivery formatter — shape replies for each platform."""

from __future__ import annotations

from agentbridge.gateway.converter import MessageConverter
from agentbridge.gateway.message import IMAGE_KEY, MEDIA_ID, MessageType, UnifiedMessage

IMAGE_PLACEHOLDER = "[Image]"


def format_for_platform(
    message: UnifiedMessage, converter: MessageConverter, max_length: int = 0
) -> list[str]:
    """Return the texts to send, in order, for one reply.

    Args:
        message: The reply to deliver.
        converter: Used to split text replies.
        max_length: The platform's message length ceiling, 0 for none.

    Returns:
        One entry per send. Only text replies on a length-limited platform
        produce more than one. Content is sent as is, even when empty.
    """
    if max_length > 0 and message.is_text:
        return converter.split_long_text(message.content, max_length)

    return [message.content]


def format_for_lark(message: UnifiedMessage) -> dict:
    """Build a Lark ``post`` rich-text body for a reply.

    Images need an uploaded ``image_key``; without one a placeholder is sent.
    """
    row: list[dict] = []
    if message.message_type == MessageType.TEXT:
        row.append({"tag": "text", "text": message.content})
    elif message.message_type == MessageType.IMAGE:
        if image_key := message.metadata.get(IMAGE_KEY):
            row.append({"tag": "img", "image_key": image_key})
        else:
            row.append({"tag": "text", "text": IMAGE_PLACEHOLDER})

    return {
        "zh_cn": {
            "title": "",
            "content": [row] if row else [],
        }
    }


def format_for_wecom(message: UnifiedMessage) -> dict:
    """Build a WeCom application message body for a reply.

    Images need an uploaded ``media_id``; without one a placeholder is sent.
    """
    if message.message_type == MessageType.IMAGE:
        if media_id := message.metadata.get(MEDIA_ID):
            return {"msgtype": "image", "image": {"media_id": media_id}}
        return {"msgtype": "text", "text": {"content": IMAGE_PLACEHOLDER}}

    return {"msgtype": "text", "text": {"content": message.content}}
