"""Tests for the message pipeline and the bridge wiring."""

from __future__ import annotations

import asyncio

import pytest

from agentbridge.config import BridgeConfig
from agentbridge.engine.agents.base import AgentError, BaseAgent
from agentbridge.engine.agents.router import AgentRouter
from agentbridge.engine.pipeline import ERROR_REPLY, MessageState, Pipeline
from agentbridge.gateway.channels.base import ChannelError, PlatformSender
from agentbridge.gateway.message import (
    AgentRequest,
    AgentResponse,
    MessageType,
    Platform,
    UnifiedMessage,
)
from agentbridge.gateway.queue import IngressQueue
from agentbridge.main import AgentBridge
from agentbridge.memory.store import ConversationStore

VALID_CID = "550e8400-e29b-41d4-a716-446655440000"


class FakeSender(PlatformSender):
    def __init__(self, fail_on: int | None = None):
        self.sent: list[tuple[str, str]] = []
        self.fail_on = fail_on
        self.attempts = 0

    async def send(self, session_id: str, text: str) -> None:
        self.attempts += 1
        if self.fail_on is not None and self.attempts == self.fail_on:
            raise ChannelError("platform rejected the message")
        self.sent.append((session_id, text))


class ScriptedAgent(BaseAgent):
    """Agent that answers from a fixed response or raises."""

    def __init__(
        self,
        name: str = "dify",
        content: str = "ok",
        metadata: dict | None = None,
        image_urls: list[str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self._name = name
        self.content = content
        self.metadata = metadata or {}
        self.image_urls = image_urls or []
        self.error = error
        self.delay = delay
        self.requests: list[AgentRequest] = []
        self.active = 0
        self.max_active = 0

    @property
    def name(self) -> str:
        return self._name

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error:
                raise self.error
            metadata = {"agent": self._name, **self.metadata}
            return AgentResponse(
                content=self.content, image_urls=list(self.image_urls), metadata=metadata
            )
        finally:
            self.active -= 1


def _pipeline(*agents: BaseAgent, store=None, **kwargs) -> tuple[Pipeline, FakeSender, FakeSender]:
    pipeline = Pipeline(AgentRouter(*agents), store=store, **kwargs)
    lark, wecom = FakeSender(), FakeSender()
    pipeline.register_sender(Platform.LARK, lark)
    pipeline.register_sender(Platform.WECOM, wecom)
    return pipeline, lark, wecom


def _text(content: str, platform: str = Platform.LARK, session: str = "oc_chat") -> UnifiedMessage:
    return UnifiedMessage.text_message(platform, session, "ou_user", content)


# ─── Processing Tests ────────────────────────────────────────────

class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_end_to_end(self):
        agent = ScriptedAgent(content="Hi there")
        pipeline, lark, _ = _pipeline(agent)

        result = await pipeline.process_message(_text("  hello\r\nworld  "))

        assert agent.requests[0].query == "hello\nworld"
        assert agent.requests[0].session_id == "oc_chat"
        assert lark.sent == [("oc_chat", "Hi there")]
        assert result.delivered
        assert result.states == [
            MessageState.DEQUEUED,
            MessageState.NORMALIZED,
            MessageState.CONVERTED,
            MessageState.AGENT_SUCCEEDED,
            MessageState.RESPONSE_CONVERTED,
            MessageState.IDENTITY_RECONCILED,
            MessageState.DISPATCHED,
        ]

    @pytest.mark.asyncio
    async def test_fallback_reply(self):
        primary = ScriptedAgent("dify", error=AgentError("dify down"))
        secondary = ScriptedAgent("coze", content="from coze")
        pipeline, lark, _ = _pipeline(primary, secondary)

        result = await pipeline.process_message(_text("hello"))

        assert lark.sent == [("oc_chat", "from coze")]
        assert MessageState.AGENT_SUCCEEDED in result.states

    @pytest.mark.asyncio
    async def test_all_agents_fail(self):
        primary = ScriptedAgent("dify", error=AgentError("dify down"))
        secondary = ScriptedAgent("coze", error=AgentError("coze down"))
        pipeline, lark, _ = _pipeline(primary, secondary)

        result = await pipeline.process_message(_text("hello"))

        assert lark.sent == [("oc_chat", ERROR_REPLY.format(error="coze down"))]
        assert result.error == "coze down"
        assert MessageState.AGENT_FAILED in result.states
        assert MessageState.IDENTITY_RECONCILED not in result.states
        assert result.delivered

    @pytest.mark.asyncio
    async def test_no_agent_enabled(self):
        pipeline, lark, _ = _pipeline()
        result = await pipeline.process_message(_text("hello"))
        assert MessageState.AGENT_FAILED in result.states
        assert len(lark.sent) == 1

    @pytest.mark.asyncio
    async def test_image_reply(self):
        agent = ScriptedAgent(content="", image_urls=["https://x/1.png", "https://x/2.png"])
        pipeline, lark, _ = _pipeline(agent)

        result = await pipeline.process_message(_text("draw"))

        assert result.reply.message_type == MessageType.IMAGE
        assert result.reply.metadata["additional_images"] == "https://x/2.png"
        assert lark.sent == [("oc_chat", "https://x/1.png")]

    @pytest.mark.asyncio
    async def test_image_message_reaches_agent(self):
        agent = ScriptedAgent(content="a cat")
        pipeline, _, _ = _pipeline(agent)
        raw = "iVBORw0KGgo" + "A" * 120
        message = UnifiedMessage.image_message(Platform.WECOM, "wc_chat", "u", raw)

        await pipeline.process_message(message)

        assert message.content.startswith("data:image/png;base64,")
        assert agent.requests[0].image_urls == [raw]


# ─── Identity Tests ──────────────────────────────────────────────

class TestConversationIdentity:
    @pytest.mark.asyncio
    async def test_valid_id_kept(self):
        agent = ScriptedAgent(metadata={"conversation_id": VALID_CID})
        pipeline, _, _ = _pipeline(agent)
        message = _text("hello")

        result = await pipeline.process_message(message)

        assert message.metadata["conversation_id"] == VALID_CID
        assert message.metadata["conversation_agent"] == "dify"
        assert result.reply.metadata["conversation_id"] == VALID_CID

    @pytest.mark.asyncio
    async def test_invalid_returned_id_purged(self):
        agent = ScriptedAgent(metadata={"conversation_id": "7381"})
        pipeline, _, _ = _pipeline(agent)
        message = _text("hello")

        result = await pipeline.process_message(message)

        assert "conversation_id" not in message.metadata
        assert "conversation_id" not in result.reply.metadata

    @pytest.mark.asyncio
    async def test_platform_handle_never_forwarded(self):
        agent = ScriptedAgent()
        pipeline, _, _ = _pipeline(agent)
        message = _text("hello")
        message.metadata["conversation_id"] = "oc_chat"

        await pipeline.process_message(message)

        assert "conversation_id" not in agent.requests[0].metadata
        assert "conversation_id" not in message.metadata

    @pytest.mark.asyncio
    async def test_id_survives_between_turns(self, tmp_path):
        store = ConversationStore(tmp_path / "conversations.db")
        await store.connect()
        try:
            agent = ScriptedAgent(metadata={"conversation_id": VALID_CID})
            pipeline, _, _ = _pipeline(agent, store=store)

            await pipeline.process_message(_text("first"))
            await pipeline.process_message(_text("second"))

            assert "conversation_id" not in agent.requests[0].metadata
            assert agent.requests[1].metadata["conversation_id"] == VALID_CID
            assert agent.requests[1].metadata["conversation_agent"] == "dify"
            assert await store.get(Platform.LARK, "oc_chat") == (VALID_CID, "dify")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_invalid_id_forgotten(self, tmp_path):
        store = ConversationStore(tmp_path / "conversations.db")
        await store.connect()
        try:
            await store.save(Platform.LARK, "oc_chat", VALID_CID, "dify")
            agent = ScriptedAgent(metadata={"conversation_id": "not-a-uuid"})
            pipeline, _, _ = _pipeline(agent, store=store)

            await pipeline.process_message(_text("hello"))

            assert await store.get(Platform.LARK, "oc_chat") is None
        finally:
            await store.close()


# ─── Dispatch Tests ──────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_no_sender(self):
        pipeline = Pipeline(AgentRouter(ScriptedAgent()))
        result = await pipeline.process_message(_text("hello"))
        assert result.state == MessageState.DISPATCH_FAILED
        assert not result.delivered

    @pytest.mark.asyncio
    async def test_wecom_reply_split(self):
        agent = ScriptedAgent(content="x" * 5000)
        pipeline, _, wecom = _pipeline(agent)

        result = await pipeline.process_message(_text("hello", platform=Platform.WECOM))

        assert [len(text) for _, text in wecom.sent] == [2048, 2048, 904]
        assert "".join(text for _, text in wecom.sent) == "x" * 5000
        assert result.delivered

    @pytest.mark.asyncio
    async def test_lark_reply_not_split(self):
        agent = ScriptedAgent(content="x" * 5000)
        pipeline, lark, _ = _pipeline(agent)

        await pipeline.process_message(_text("hello"))

        assert len(lark.sent) == 1

    @pytest.mark.asyncio
    async def test_send_failure_stops_remaining_chunks(self):
        agent = ScriptedAgent(content="x" * 5000)
        pipeline = Pipeline(AgentRouter(agent))
        wecom = FakeSender(fail_on=2)
        pipeline.register_sender(Platform.WECOM, wecom)

        result = await pipeline.process_message(_text("hello", platform=Platform.WECOM))

        assert wecom.attempts == 2
        assert len(wecom.sent) == 1
        assert result.sent == [wecom.sent[0][1]]
        assert result.state == MessageState.DISPATCH_FAILED

    @pytest.mark.asyncio
    async def test_empty_reply_sent_unchanged(self):
        agent = ScriptedAgent(content="")
        pipeline, lark, _ = _pipeline(agent)
        await pipeline.process_message(_text("hello"))
        assert lark.sent == [("oc_chat", "")]


# ─── Consumer Loop Tests ─────────────────────────────────────────

async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestConsumerLoop:
    @pytest.mark.asyncio
    async def test_run_processes_queue(self):
        agent = ScriptedAgent(content="pong")
        pipeline, lark, wecom = _pipeline(agent)
        queue = IngressQueue(10)
        queue.push(_text("ping", session="a"))
        queue.push(_text("ping", session="b", platform=Platform.WECOM))

        consumer = asyncio.create_task(pipeline.run(queue))
        await _wait_for(lambda: len(lark.sent) + len(wecom.sent) == 2)
        pipeline.stop()
        await asyncio.wait_for(consumer, 1.0)
        await pipeline.drain()

        assert lark.sent == [("a", "pong")]
        assert wecom.sent == [("b", "pong")]
        assert pipeline.in_flight == 0

    @pytest.mark.asyncio
    async def test_stop_while_idle(self):
        pipeline, _, _ = _pipeline(ScriptedAgent())
        consumer = asyncio.create_task(pipeline.run(IngressQueue(1)))
        await asyncio.sleep(0.01)
        pipeline.stop()
        await asyncio.wait_for(consumer, 1.0)
        assert consumer.done()

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        agent = ScriptedAgent(delay=0.02)
        pipeline, lark, _ = _pipeline(agent, max_concurrency=2)
        queue = IngressQueue(10)
        for i in range(5):
            queue.push(_text(f"m{i}", session=f"s{i}"))

        consumer = asyncio.create_task(pipeline.run(queue))
        await _wait_for(lambda: len(lark.sent) == 5)
        pipeline.stop()
        await asyncio.wait_for(consumer, 1.0)

        assert agent.max_active == 2

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight(self):
        agent = ScriptedAgent(delay=0.05)
        pipeline, lark, _ = _pipeline(agent)
        queue = IngressQueue(10)
        queue.push(_text("slow"))

        consumer = asyncio.create_task(pipeline.run(queue))
        await _wait_for(lambda: agent.active == 1)
        pipeline.stop()
        await asyncio.wait_for(consumer, 1.0)
        await pipeline.drain()

        assert lark.sent == [("oc_chat", "ok")]

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            Pipeline(AgentRouter(), max_concurrency=0)


# ─── Bridge Wiring Tests ─────────────────────────────────────────

class TestAgentBridge:
    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path)
        bridge = AgentBridge(config)
        await bridge.startup()
        try:
            assert bridge.queue.maxsize == config.pipeline.queue_size
            assert bridge.pipeline.max_lengths[Platform.WECOM] == 2048
        finally:
            await bridge.shutdown()
        assert (tmp_path / "conversations.db").exists()

    @pytest.mark.asyncio
    async def test_without_persistence(self, tmp_path):
        config = BridgeConfig(config_dir=tmp_path)
        config.pipeline.persist_conversations = False
        bridge = AgentBridge(config)
        await bridge.startup()
        await bridge.shutdown()
        assert bridge.store is None
