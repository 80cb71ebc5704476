"""Message pipeline — the orchestrator between platforms and agent backends.

Pipeline per message:
    dequeue → normalize → convert → invoke agent (one fallback hop)
    → convert reply → reconcile conversation identity → dispatch

Messages are processed concurrently with no ordering guarantee, even
within one chat. Agent and dispatch failures never escape a message task:
the user always gets a reply, and a failed send is logged, not retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

import httpx

from agentbridge.config import BridgeConfig
from agentbridge.delivery.formatter import format_for_platform
from agentbridge.engine.agents.router import AgentRouter
from agentbridge.gateway.channels.base import PlatformSender
from agentbridge.gateway.converter import DEFAULT_MAX_LEN, MessageConverter
from agentbridge.gateway.message import (
    AGENT,
    CONVERSATION_AGENT,
    CONVERSATION_ID,
    AgentResponse,
    Platform,
    UnifiedMessage,
    is_uuid,
)
from agentbridge.gateway.queue import IngressQueue
from agentbridge.gateway.router import SenderRegistry
from agentbridge.memory.store import ConversationStore

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, something went wrong while processing your message: {error}"


class MessageState(str, Enum):
    """Processing states of one message."""

    DEQUEUED = "dequeued"
    NORMALIZED = "normalized"
    CONVERTED = "converted"
    AGENT_SUCCEEDED = "agent_succeeded"
    AGENT_FAILED = "agent_failed"
    RESPONSE_CONVERTED = "response_converted"
    IDENTITY_RECONCILED = "identity_reconciled"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass
class ProcessResult:
    """Outcome of processing one message."""

    states: list[MessageState] = field(default_factory=list)
    reply: UnifiedMessage | None = None
    sent: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def state(self) -> MessageState | None:
        """The last state reached."""
        return self.states[-1] if self.states else None

    @property
    def delivered(self) -> bool:
        return self.state == MessageState.DISPATCHED


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class Pipeline:
    """Consumes the ingress queue and drives every message to a reply.

    Args:
        agents: Router holding the primary and fallback agent backends.
        converter: Shared stateless converter.
        senders: Registry of platform senders.
        store: Optional conversation store so agent conversation ids
            survive between turns of the same chat.
        max_concurrency: Upper bound on messages processed at once.
        max_lengths: Message length ceiling per platform tag.
    """

    def __init__(
        self,
        agents: AgentRouter,
        converter: MessageConverter | None = None,
        senders: SenderRegistry | None = None,
        store: ConversationStore | None = None,
        max_concurrency: int = 32,
        max_lengths: dict[str, int] | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive.")
        self.agents = agents
        self.converter = converter or MessageConverter()
        self.senders = senders or SenderRegistry()
        self.store = store
        self.max_lengths = (
            max_lengths if max_lengths is not None else {Platform.WECOM: DEFAULT_MAX_LEN}
        )
        self._slots = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        store: ConversationStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Pipeline:
        """Build a pipeline with the configured agents and limits."""
        return cls(
            agents=AgentRouter.from_config(config.agents, transport=transport),
            store=store,
            max_concurrency=config.pipeline.max_concurrency,
            max_lengths=config.max_message_lengths(),
        )

    def register_sender(self, platform: str, sender: PlatformSender) -> None:
        """Register the sender used to deliver replies for a platform."""
        self.senders.register(platform, sender)

    @property
    def in_flight(self) -> int:
        """Number of message tasks still running."""
        return len(self._tasks)

    # ─── Consumer loop ───────────────────────────────────────────

    async def run(self, queue: IngressQueue) -> None:
        """Dequeue messages and spawn a task for each until stop() is called.

        In-flight message tasks are not cancelled by stop(); await drain()
        to wait for them.
        """
        self._stop.clear()
        stop_waiter = asyncio.create_task(self._stop.wait())
        pop: asyncio.Task | None = None
        logger.info("Pipeline started")
        try:
            while not self._stop.is_set():
                pop = asyncio.create_task(queue.pop())
                await asyncio.wait({pop, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not pop.done():
                    break
                await self._spawn(pop.result())
        finally:
            if pop is not None and not pop.done():
                pop.cancel()
            stop_waiter.cancel()
            logger.info("Pipeline stopped")

    def stop(self) -> None:
        """Signal the consumer loop to stop dequeuing."""
        self._stop.set()

    async def drain(self) -> None:
        """Wait for every in-flight message task to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _spawn(self, message: UnifiedMessage) -> None:
        await self._slots.acquire()
        task = asyncio.create_task(self._run_one(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_one(self, message: UnifiedMessage) -> None:
        try:
            await self.process_message(message)
        except Exception:
            logger.exception(
                f"Unhandled error processing message from {message.platform}:{message.session_id}"
            )
        finally:
            self._slots.release()

    # ─── Per-message processing ──────────────────────────────────

    async def process_message(self, message: UnifiedMessage) -> ProcessResult:
        """Drive one message from normalization to dispatch."""
        result = ProcessResult(states=[MessageState.DEQUEUED])
        logger.info(
            f"Processing message platform={message.platform} session={message.session_id} "
            f"type={message.message_type} content={_preview(message.content)!r}"
        )

        self.converter.normalize_content(message)
        result.states.append(MessageState.NORMALIZED)

        await self._restore_identity(message)
        request = self.converter.to_agent_request(message)
        result.states.append(MessageState.CONVERTED)

        try:
            response = await self.agents.invoke(request)
            result.states.append(MessageState.AGENT_SUCCEEDED)
        except Exception as e:
            result.error = str(e) or type(e).__name__
            logger.error(f"Failed to get agent response: {result.error}")
            response = AgentResponse(content=ERROR_REPLY.format(error=result.error))
            result.states.append(MessageState.AGENT_FAILED)

        reply = self.converter.from_agent_response(response, message)
        result.reply = reply
        result.states.append(MessageState.RESPONSE_CONVERTED)

        if not result.error:
            await self._reconcile_identity(message, reply, response)
            result.states.append(MessageState.IDENTITY_RECONCILED)

        result.states.append(await self._dispatch(reply, result.sent))
        return result

    async def _restore_identity(self, message: UnifiedMessage) -> None:
        """Purge an invalid stored id, or load the last one for this chat."""
        cid = message.metadata.get(CONVERSATION_ID)
        if cid is not None and not is_uuid(cid):
            logger.info(f"Purging invalid conversation id {cid!r} for {message.session_id}")
            message.metadata.pop(CONVERSATION_ID, None)
            message.metadata.pop(CONVERSATION_AGENT, None)
            cid = None

        if cid or self.store is None:
            return
        try:
            stored = await self.store.get(message.platform, message.session_id)
        except Exception as e:
            logger.warning(f"Conversation store lookup failed: {e}")
            return
        if stored:
            message.metadata[CONVERSATION_ID], agent = stored
            if agent:
                message.metadata[CONVERSATION_AGENT] = agent

    async def _reconcile_identity(
        self, message: UnifiedMessage, reply: UnifiedMessage, response: AgentResponse
    ) -> None:
        """Keep a valid agent conversation id for the next turn, purge an invalid one."""
        cid = response.metadata.get(CONVERSATION_ID, "")
        if not cid:
            return

        agent = response.metadata.get(AGENT, "")
        if is_uuid(cid):
            for metadata in (message.metadata, reply.metadata):
                metadata[CONVERSATION_ID] = cid
                if agent:
                    metadata[CONVERSATION_AGENT] = agent
        else:
            logger.info(f"Agent returned non-UUID conversation id {cid!r}, not keeping it")
            for metadata in (message.metadata, reply.metadata):
                metadata.pop(CONVERSATION_ID, None)
                metadata.pop(CONVERSATION_AGENT, None)

        if self.store is None:
            return
        try:
            if is_uuid(cid):
                await self.store.save(message.platform, message.session_id, cid, agent)
            else:
                await self.store.forget(message.platform, message.session_id)
        except Exception as e:
            logger.warning(f"Conversation store update failed: {e}")

    async def _dispatch(self, reply: UnifiedMessage, sent: list[str]) -> MessageState:
        """Send the reply through the platform sender, chunk by chunk."""
        sender = self.senders.get(reply.platform)
        if sender is None:
            logger.warning(f"No sender registered for platform {reply.platform!r}")
            return MessageState.DISPATCH_FAILED

        chunks = format_for_platform(
            reply, self.converter, self.max_lengths.get(reply.platform, 0)
        )
        for index, chunk in enumerate(chunks, start=1):
            try:
                await sender.send(reply.session_id, chunk)
            except Exception as e:
                logger.error(
                    f"Failed to send message to {reply.platform}:{reply.session_id} "
                    f"(chunk {index}/{len(chunks)}): {e}"
                )
                return MessageState.DISPATCH_FAILED
            sent.append(chunk)

        logger.info(
            f"Message sent to {reply.platform}:{reply.session_id} in {len(chunks)} part(s)"
        )
        return MessageState.DISPATCHED
