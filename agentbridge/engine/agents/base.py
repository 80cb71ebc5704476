"""Base agent backend interface and error types."""

from __future__ import annotations

from abc import ABC, abstractmethod

from agentbridge.gateway.message import AgentRequest, AgentResponse


class AgentError(Exception):
    """An agent backend could not produce a response."""


class AgentConfigError(AgentError):
    """The backend is missing configuration (API key, bot id, ...)."""


class AgentAuthError(AgentError):
    """The backend rejected our credentials."""


class AgentHTTPError(AgentError):
    """The backend answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:200]}")


class AgentStreamError(AgentError):
    """The backend reported an error inside its event stream."""


class BaseAgent(ABC):
    """Abstract base for all agent backends.

    Backends wrap an HTTP streaming chat API (Dify, Coze) and expose a
    uniform invoke interface. Failures are raised as AgentError.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return identifier for this backend (e.g., 'dify', 'coze')."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether the backend is switched on in configuration."""
        return True

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentResponse:
        """Send a request and assemble the streamed answer.

        Raises:
            AgentError: on network failure, non-success status, bad
                credentials or an error reported in the stream.
        """
        ...

    async def close(self) -> None:
        """Release HTTP resources. Override if needed."""
