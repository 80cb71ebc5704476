"""Agent router — primary backend with a single fallback hop.

The primary backend is tried first. If it fails and the other backend is
enabled, that one gets exactly one attempt with the same request. There is
no retry of the same backend and no longer chain.
"""

from __future__ import annotations

import logging

import httpx

from agentbridge.config import AgentsConfig
from agentbridge.engine.agents.base import AgentConfigError, AgentError, BaseAgent
from agentbridge.engine.agents.coze import CozeAgent
from agentbridge.engine.agents.dify import DifyAgent
from agentbridge.gateway.message import AgentRequest, AgentResponse

logger = logging.getLogger(__name__)


class AgentRouter:
    """Routes agent requests to the primary backend, then the fallback."""

    def __init__(
        self,
        primary: BaseAgent | None = None,
        secondary: BaseAgent | None = None,
        system_prompt: str = "",
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.system_prompt = system_prompt

    @classmethod
    def from_config(
        cls, config: AgentsConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> AgentRouter:
        """Build the router with the configured primary first."""
        agents: dict[str, BaseAgent] = {}
        if config.dify.enabled:
            agents["dify"] = DifyAgent(config.dify, transport=transport)
        if config.coze.enabled:
            agents["coze"] = CozeAgent(config.coze, transport=transport)

        primary = agents.pop(config.primary, None)
        if primary is None and agents:
            logger.warning(
                f"Primary agent '{config.primary}' is not enabled, "
                f"using '{next(iter(agents))}' instead"
            )
            primary = agents.pop(next(iter(agents)))
        secondary = next(iter(agents.values()), None)

        return cls(primary, secondary, system_prompt=config.system_prompt)

    @property
    def agents(self) -> list[BaseAgent]:
        """Enabled backends in invocation order."""
        return [a for a in (self.primary, self.secondary) if a is not None and a.enabled]

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        """Invoke the primary backend, falling back once on failure.

        Raises:
            AgentError: if every enabled backend failed, or none is enabled.
        """
        if self.system_prompt and not request.system_prompt:
            request.system_prompt = self.system_prompt

        last_error: Exception | None = None
        for agent in self.agents:
            try:
                response = await agent.invoke(request)
            except Exception as e:
                last_error = e
                logger.error(f"{agent.name} agent error: {e}")
                continue
            if last_error is not None:
                logger.info(f"Fallback agent {agent.name} answered")
            return response

        if last_error is None:
            raise AgentConfigError("No agent backend is enabled")
        if isinstance(last_error, AgentError):
            raise last_error
        raise AgentError(str(last_error)) from last_error

    async def close(self) -> None:
        for agent in (self.primary, self.secondary):
            if agent is not None:
                await agent.close()
