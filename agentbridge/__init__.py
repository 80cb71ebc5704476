"""AgentBridge — chat platform to LLM agent message bridge."""

__version__ = "0.1.0"
