"""Coze agent backend — v3 chat API with SSE streaming.

Coze frames are ``event:``/``data:`` pairs separated by a blank line.
``conversation.message.delta`` carries an answer delta while
``conversation.message.completed`` repeats the full answer, so the
completed event replaces the accumulated text instead of appending to it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import httpx

from agentbridge.config import CozeConfig
from agentbridge.engine.agents.base import (
    AgentAuthError,
    AgentConfigError,
    AgentError,
    AgentHTTPError,
    AgentStreamError,
    BaseAgent,
)
from agentbridge.engine.agents.stream import AgentEvent, StreamAssembler
from agentbridge.gateway.converter import (
    continuation_id,
    decode_image,
    image_mime_type,
    is_base64_image,
)
from agentbridge.gateway.message import AgentRequest, AgentResponse

logger = logging.getLogger(__name__)

AGENT_NAME = "coze"

# Stream event names
MESSAGE_DELTA = "conversation.message.delta"
MESSAGE_COMPLETED = "conversation.message.completed"
CHAT_FAILED = "conversation.chat.failed"
ERROR = "error"
DONE = "done"

_ROLES = ("user", "assistant")
_CONTENT_TYPES = ("text", "object_string")


@dataclass
class CozeMessage:
    """One entry of ``additional_messages``."""

    role: str
    content: str
    content_type: str = "text"

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unknown Coze role: {self.role}")
        if self.content_type not in _CONTENT_TYPES:
            raise ValueError(f"Unknown Coze content type: {self.content_type}")

    def to_json(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "content_type": self.content_type,
        }


@dataclass
class CozeChatPayload:
    """Request for ``POST /v3/chat``.

    The current user turn is assembled by :meth:`to_json` from the query,
    remote image URLs and uploaded file ids. ``conversation_id`` travels
    as a query parameter, not in the body.
    """

    bot_id: str
    user_id: str
    query: str = ""
    image_urls: list[str] = field(default_factory=list)
    file_ids: list[str] = field(default_factory=list)
    pending_uploads: list[str] = field(default_factory=list)
    history: list[dict] = field(default_factory=list)
    conversation_id: str = ""
    custom_variables: dict[str, str] = field(default_factory=dict)
    stream: bool = True
    auto_save_history: bool = True

    def __post_init__(self) -> None:
        if not self.bot_id:
            raise ValueError("Coze payload needs a bot_id")
        if not self.user_id:
            raise ValueError("Coze payload needs a user_id")
        if not self.query and not self.image_urls and not self.pending_uploads:
            raise ValueError("Coze payload needs a query or an image")

    def attach_upload(self, file_id: str) -> None:
        self.file_ids.append(file_id)

    @property
    def params(self) -> dict[str, str]:
        return {"conversation_id": self.conversation_id} if self.conversation_id else {}

    def current_message(self) -> CozeMessage:
        """Build the user turn, multimodal when images are attached."""
        if not self.image_urls and not self.file_ids:
            return CozeMessage(role="user", content=self.query)

        items: list[dict] = []
        if self.query:
            items.append({"type": "text", "text": self.query})
        items.extend({"type": "image", "file_url": url} for url in self.image_urls)
        items.extend({"type": "image", "file_id": fid} for fid in self.file_ids)
        return CozeMessage(
            role="user",
            content=json.dumps(items, ensure_ascii=False),
            content_type="object_string",
        )

    def to_json(self) -> dict:
        data: dict = {
            "bot_id": self.bot_id,
            "user_id": self.user_id,
            "stream": self.stream,
            "auto_save_history": self.auto_save_history,
            "additional_messages": [
                *(dict(turn) for turn in self.history),
                self.current_message().to_json(),
            ],
        }
        if self.custom_variables:
            data["custom_variables"] = dict(self.custom_variables)
        return data


def build_coze_payload(request: AgentRequest, bot_id: str, user_id: str = "") -> CozeChatPayload:
    """Map an AgentRequest onto the Coze v3 chat body."""
    query = request.query
    if request.image_urls and (is_base64_image(query) or query in request.image_urls):
        query = ""

    payload = CozeChatPayload(
        bot_id=bot_id,
        user_id=user_id or request.user_id or request.session_id,
        query=query,
        image_urls=[u for u in request.image_urls if u.startswith("http")],
        pending_uploads=[u for u in request.image_urls if not u.startswith("http")],
        history=list(request.contexts),
        conversation_id=continuation_id(request, AGENT_NAME),
    )
    if request.system_prompt:
        payload.custom_variables["system_prompt"] = request.system_prompt
    return payload


def _object_string_parts(content: str) -> tuple[str, list[str]]:
    """Split an object_string answer into its text and image URLs."""
    try:
        items = json.loads(content)
    except json.JSONDecodeError:
        return content, []
    if not isinstance(items, list):
        return content, []

    texts, images = [], []
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            texts.append(item.get("text", ""))
        elif item.get("type") == "image":
            if url := item.get("file_url") or item.get("url"):
                images.append(url)
    return "".join(texts), images


def parse_coze_event(data: dict, event: str = "") -> AgentEvent:
    """Extract the partial response carried by one Coze stream event."""
    result = AgentEvent(conversation_id=str(data.get("conversation_id") or ""))

    if event in (CHAT_FAILED, ERROR):
        err = data.get("last_error") or data
        result.error = f"Coze error {err.get('code', '')}: {err.get('msg', '')}"
        return result

    if event == DONE:
        result.done = True
        return result

    if event.startswith("conversation.message."):
        result.message_id = str(data.get("id") or "")
        # follow_up and verbose messages are not part of the answer
        if data.get("type", "answer") != "answer":
            return result

        content = data.get("content") or ""
        if event == MESSAGE_DELTA:
            result.text = content
        elif event == MESSAGE_COMPLETED:
            if data.get("content_type") == "object_string":
                content, result.image_urls = _object_string_parts(content)
            result.text = content
            result.replace = True
        return result

    if event:
        return result

    # Frames without an event line
    result.message_id = str(data.get("message_id") or "")
    delta = data.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        result.text = delta["content"]
    elif isinstance(data.get("content"), str):
        result.text = data["content"]
    return result


class CozeAgent(BaseAgent):
    """Coze bot backend."""

    def __init__(
        self, config: CozeConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_base,
            headers={"Authorization": f"Bearer {config.api_key}"},
            timeout=config.timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return AGENT_NAME

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        """Start a streaming chat and assemble the answer."""
        if not self.config.api_key:
            raise AgentConfigError("Coze API key is empty")

        try:
            payload = build_coze_payload(request, self.config.bot_id, self.config.user_id)
        except ValueError as e:
            raise AgentError(f"Cannot build Coze request: {e}") from e

        try:
            for image in payload.pending_uploads:
                file_id = await self._upload(image)
                if file_id:
                    payload.attach_upload(file_id)

            async with self._client.stream(
                "POST",
                "/v3/chat",
                json=payload.to_json(),
                params=payload.params,
                headers={"Accept": "text/event-stream"},
            ) as resp:
                if resp.status_code == 401:
                    raise AgentAuthError("Coze API authentication failed, check the API key")
                if resp.status_code != 200:
                    body = (await resp.aread()).decode(errors="replace")
                    raise AgentHTTPError(resp.status_code, body)

                # Request-level errors come back as a plain JSON body.
                if "text/event-stream" not in resp.headers.get("content-type", "text/event-stream"):
                    body = (await resp.aread()).decode(errors="replace")
                    self._raise_for_body(body)

                assembler = StreamAssembler(parse_coze_event, batched=True, agent=self.name)
                return await assembler.assemble(resp.aiter_lines())
        except httpx.HTTPError as e:
            raise AgentError(f"Coze request failed: {e}") from e

    @staticmethod
    def _raise_for_body(body: str) -> None:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise AgentStreamError(f"Unexpected Coze response: {body[:200]}") from None
        raise AgentStreamError(f"Coze error {data.get('code', '')}: {data.get('msg', body[:200])}")

    async def _upload(self, image: str) -> str:
        """Upload a base64 image and return its file id, or "" if unusable."""
        try:
            data = decode_image(image)
        except ValueError as e:
            logger.warning(f"Skipping image upload: {e}")
            return ""

        mime = image_mime_type(image)
        resp = await self._client.post(
            "/v1/files/upload",
            files={"file": (f"image.{mime.split('/')[-1]}", data, mime)},
        )
        if resp.status_code == 401:
            raise AgentAuthError("Coze API authentication failed, check the API key")
        if not resp.is_success:
            raise AgentHTTPError(resp.status_code, resp.text)

        body = resp.json()
        if body.get("code", 0) != 0:
            raise AgentError(f"Coze upload failed: {body.get('msg', '')}")
        return (body.get("data") or {}).get("id", "")

    async def close(self) -> None:
        await self._client.aclose()
