"""Dify agent backend — chat-messages API with SSE streaming.

Each ``data:`` line carries one JSON event. ``message``/``agent_message``
events hold an answer delta; ``message_file`` carries generated images.
Base64 images are uploaded through ``/files/upload`` first and referenced
by the returned file id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from agentbridge.config import DifyConfig
from agentbridge.engine.agents.base import (
    AgentAuthError,
    AgentConfigError,
    AgentError,
    AgentHTTPError,
    BaseAgent,
)
from agentbridge.engine.agents.stream import AgentEvent, StreamAssembler
from agentbridge.gateway.converter import (
    continuation_id,
    decode_image,
    image_mime_type,
    is_base64_image,
)
from agentbridge.gateway.message import AgentRequest, AgentResponse, is_uuid

logger = logging.getLogger(__name__)

AGENT_NAME = "dify"

# Used when the message carried only an image; Dify requires a query.
DEFAULT_IMAGE_QUERY = "Please look at this image."

_RESPONSE_MODES = ("streaming", "blocking")
_TRANSFER_METHODS = ("remote_url", "local_file")


@dataclass
class DifyFile:
    """A file reference attached to a Dify chat message."""

    transfer_method: str
    url: str = ""
    upload_file_id: str = ""
    type: str = "image"

    def __post_init__(self) -> None:
        if self.transfer_method not in _TRANSFER_METHODS:
            raise ValueError(f"Unknown transfer method: {self.transfer_method}")
        if self.transfer_method == "remote_url" and not self.url:
            raise ValueError("remote_url file needs a url")
        if self.transfer_method == "local_file" and not self.upload_file_id:
            raise ValueError("local_file file needs an upload_file_id")

    def to_json(self) -> dict:
        data = {"type": self.type, "transfer_method": self.transfer_method}
        if self.transfer_method == "remote_url":
            data["url"] = self.url
        else:
            data["upload_file_id"] = self.upload_file_id
        return data


@dataclass
class DifyChatPayload:
    """Request body for ``POST /chat-messages``.

    ``pending_uploads`` holds base64 images that must be uploaded and
    attached with :meth:`attach_upload`; they are never serialized.
    """

    query: str
    user: str
    inputs: dict = field(default_factory=dict)
    response_mode: str = "streaming"
    conversation_id: str = ""
    files: list[DifyFile] = field(default_factory=list)
    pending_uploads: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.query:
            raise ValueError("Dify payload needs a query")
        if not self.user:
            raise ValueError("Dify payload needs a user")
        if self.response_mode not in _RESPONSE_MODES:
            raise ValueError(f"Unknown response mode: {self.response_mode}")
        if self.conversation_id and not is_uuid(self.conversation_id):
            raise ValueError(f"Not a Dify conversation id: {self.conversation_id}")

    def attach_upload(self, file_id: str) -> None:
        self.files.append(DifyFile(transfer_method="local_file", upload_file_id=file_id))

    def to_json(self) -> dict:
        data: dict = {
            "query": self.query,
            "user": self.user,
            "inputs": dict(self.inputs),
            "response_mode": self.response_mode,
        }
        if self.conversation_id:
            data["conversation_id"] = self.conversation_id
        if self.files:
            data["files"] = [f.to_json() for f in self.files]
        return data


def _render_contexts(contexts: list[dict]) -> str:
    lines = []
    for turn in contexts:
        role = turn.get("role", "user")
        content = turn.get("content", "")
        if content:
            lines.append(f"{role}: {content}")
    return "\n".join(lines)


def build_dify_payload(
    request: AgentRequest, user: str = "", inputs: dict | None = None
) -> DifyChatPayload:
    """Map an AgentRequest onto the Dify chat-messages body.

    Prior turns are rendered ahead of the current query since Dify keeps
    its own history per conversation and has no messages array.
    """
    query = request.query
    if request.image_urls and (
        not query or is_base64_image(query) or query in request.image_urls
    ):
        query = DEFAULT_IMAGE_QUERY

    if request.contexts:
        history = _render_contexts(request.contexts)
        if history:
            query = f"{history}\n\n{query}"

    payload_inputs = dict(inputs or {})
    if request.system_prompt:
        payload_inputs["system_prompt"] = request.system_prompt

    payload = DifyChatPayload(
        query=query,
        user=user or request.session_id or request.user_id,
        inputs=payload_inputs,
        conversation_id=continuation_id(request, AGENT_NAME),
    )

    for image in request.image_urls:
        if image.startswith("http"):
            payload.files.append(DifyFile(transfer_method="remote_url", url=image))
        else:
            payload.pending_uploads.append(image)

    return payload


def parse_dify_event(data: dict, event: str = "") -> AgentEvent:
    """Extract the partial response carried by one Dify stream event."""
    kind = data.get("event", event)
    result = AgentEvent(
        conversation_id=data.get("conversation_id") or "",
        message_id=data.get("message_id") or "",
    )

    if kind == "error":
        result.error = f"Dify error {data.get('code', '')}: {data.get('message', '')}"
    elif kind == "message_replace":
        result.text = data.get("answer") or ""
        result.replace = True
    elif kind == "message_file":
        if data.get("type") == "image" and data.get("url"):
            result.image_urls.append(data["url"])
    elif kind == "message_end":
        result.done = True
    elif isinstance(data.get("answer"), str):
        result.text = data["answer"]

    # Blocking-mode responses list generated files inline.
    for item in data.get("files") or []:
        if isinstance(item, dict) and item.get("type") == "image" and item.get("url"):
            result.image_urls.append(item["url"])

    return result


class DifyAgent(BaseAgent):
    """Dify chat app backend."""

    def __init__(
        self, config: DifyConfig, transport: httpx.AsyncBaseTransport | None = None
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
        """Send a chat message and assemble the streamed answer."""
        if not self.config.api_key:
            raise AgentConfigError("Dify API key is empty")

        try:
            payload = build_dify_payload(request, user=self.config.user_id)
        except ValueError as e:
            raise AgentError(f"Cannot build Dify request: {e}") from e

        if payload.conversation_id:
            logger.info(f"Continuing Dify conversation {payload.conversation_id}")
        else:
            logger.info("No Dify conversation id, a new conversation will be created")

        try:
            for image in payload.pending_uploads:
                file_id = await self._upload(image, payload.user)
                if file_id:
                    payload.attach_upload(file_id)

            async with self._client.stream(
                "POST", "/chat-messages", json=payload.to_json()
            ) as resp:
                if resp.status_code == 401:
                    raise AgentAuthError("Dify API authentication failed, check the API key")
                if resp.status_code != 200:
                    body = (await resp.aread()).decode(errors="replace")
                    raise AgentHTTPError(resp.status_code, body)

                assembler = StreamAssembler(parse_dify_event, agent=self.name)
                return await assembler.assemble(resp.aiter_lines())
        except httpx.HTTPError as e:
            raise AgentError(f"Dify request failed: {e}") from e

    async def _upload(self, image: str, user: str) -> str:
        """Upload a base64 image and return its file id, or "" if unusable."""
        try:
            data = decode_image(image)
        except ValueError as e:
            logger.warning(f"Skipping image upload: {e}")
            return ""

        mime = image_mime_type(image)
        resp = await self._client.post(
            "/files/upload",
            files={"file": (f"image.{mime.split('/')[-1]}", data, mime)},
            data={"user": user},
        )
        if resp.status_code == 401:
            raise AgentAuthError("Dify API authentication failed, check the API key")
        if not resp.is_success:
            raise AgentHTTPError(resp.status_code, resp.text)
        return resp.json().get("id", "")

    async def close(self) -> None:
        await self._client.aclose()
