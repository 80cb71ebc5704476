"""Configuration management for AgentBridge.

Loads config from ~/.agentbridge/config.json, environment variables, or defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from agentbridge.gateway.message import Platform


def _default_config_dir() -> Path:
    """Return the default AgentBridge config directory."""
    return Path.home() / ".agentbridge"


@dataclass
class PlatformConfig:
    """Configuration for a chat platform."""

    enabled: bool = False
    max_message_length: int = 0          # 0 = no length ceiling


@dataclass
class DifyConfig:
    """Dify agent backend settings."""

    enabled: bool = False
    api_key: str = ""
    api_base: str = "https://api.dify.ai/v1"
    user_id: str = ""                    # Overrides the per-session user if set
    timeout: float = 120.0


@dataclass
class CozeConfig:
    """Coze agent backend settings."""

    enabled: bool = False
    api_key: str = ""
    api_base: str = "https://api.coze.cn"
    bot_id: str = ""
    user_id: str = ""
    timeout: float = 120.0


@dataclass
class AgentsConfig:
    """Agent backend selection."""

    primary: str = "dify"                # The other enabled backend is the fallback
    system_prompt: str = ""
    dify: DifyConfig = field(default_factory=DifyConfig)
    coze: CozeConfig = field(default_factory=CozeConfig)


@dataclass
class PipelineConfig:
    """Queue and worker settings."""

    queue_size: int = 100
    max_concurrency: int = 32
    persist_conversations: bool = True
    database: str = ""


@dataclass
class BridgeConfig:
    """Root configuration for AgentBridge."""

    name: str = "AgentBridge"
    version: str = "0.1.0"

    # Platforms
    lark: PlatformConfig = field(default_factory=lambda: PlatformConfig(enabled=True))
    wecom: PlatformConfig = field(default_factory=lambda: PlatformConfig(
        enabled=True, max_message_length=2048,
    ))

    agents: AgentsConfig = field(default_factory=AgentsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    # Config directory
    config_dir: Path = field(default_factory=_default_config_dir)

    def __post_init__(self) -> None:
        """Set computed defaults after initialization."""
        if not self.pipeline.database:
            self.pipeline.database = str(self.config_dir / "conversations.db")

    @property
    def database_path(self) -> Path:
        """Return the resolved conversation store path."""
        return Path(self.pipeline.database)

    @property
    def log_dir(self) -> Path:
        """Return the log directory."""
        return self.config_dir / "logs"

    def platform(self, name: str) -> PlatformConfig | None:
        """Return the config for a platform tag."""
        if name == Platform.LARK:
            return self.lark
        if name == Platform.WECOM:
            return self.wecom
        return None

    def max_message_lengths(self) -> dict[str, int]:
        """Map each platform tag to its message length ceiling."""
        return {
            Platform.LARK: self.lark.max_message_length,
            Platform.WECOM: self.wecom.max_message_length,
        }


def _load_env_overrides(config: BridgeConfig) -> None:
    """Override config values from environment variables."""
    if api_key := os.getenv("DIFY_API_KEY"):
        config.agents.dify.api_key = api_key
    if api_base := os.getenv("DIFY_API_BASE"):
        config.agents.dify.api_base = api_base
    if api_key := os.getenv("COZE_API_KEY"):
        config.agents.coze.api_key = api_key
    if api_base := os.getenv("COZE_API_BASE"):
        config.agents.coze.api_base = api_base
    if bot_id := os.getenv("COZE_BOT_ID"):
        config.agents.coze.bot_id = bot_id
    if primary := os.getenv("AGENTBRIDGE_PRIMARY_AGENT"):
        config.agents.primary = primary
    if size := os.getenv("AGENTBRIDGE_QUEUE_SIZE"):
        config.pipeline.queue_size = int(size)


def _dict_to_config(data: dict) -> BridgeConfig:
    """Convert a JSON dict to a BridgeConfig."""
    config = BridgeConfig()

    config.name = data.get("name", config.name)
    config.version = data.get("version", config.version)

    # Platforms
    platforms = data.get("platforms", {})
    for name in Platform.ALL:
        if p_data := platforms.get(name):
            p = config.platform(name)
            p.enabled = p_data.get("enabled", p.enabled)
            p.max_message_length = p_data.get("max_message_length", p.max_message_length)

    # Agents
    agents = data.get("agents", {})
    config.agents.primary = agents.get("primary", config.agents.primary)
    config.agents.system_prompt = agents.get("system_prompt", config.agents.system_prompt)
    if dify := agents.get("dify"):
        d = config.agents.dify
        d.enabled = dify.get("enabled", d.enabled)
        d.api_key = dify.get("api_key", d.api_key)
        d.api_base = dify.get("api_base", d.api_base)
        d.user_id = dify.get("user_id", d.user_id)
        d.timeout = dify.get("timeout", d.timeout)
    if coze := agents.get("coze"):
        c = config.agents.coze
        c.enabled = coze.get("enabled", c.enabled)
        c.api_key = coze.get("api_key", c.api_key)
        c.api_base = coze.get("api_base", c.api_base)
        c.bot_id = coze.get("bot_id", c.bot_id)
        c.user_id = coze.get("user_id", c.user_id)
        c.timeout = coze.get("timeout", c.timeout)

    # Pipeline
    if pipe := data.get("pipeline"):
        config.pipeline.queue_size = pipe.get("queue_size", config.pipeline.queue_size)
        config.pipeline.max_concurrency = pipe.get(
            "max_concurrency", config.pipeline.max_concurrency
        )
        config.pipeline.persist_conversations = pipe.get(
            "persist_conversations", config.pipeline.persist_conversations
        )
        config.pipeline.database = pipe.get("database", config.pipeline.database)

    return config


def _config_to_dict(config: BridgeConfig) -> dict:
    """Convert a BridgeConfig to a JSON-serializable dict."""
    dify = config.agents.dify
    coze = config.agents.coze
    return {
        "name": config.name,
        "version": config.version,
        "platforms": {
            name: {
                "enabled": p.enabled,
                "max_message_length": p.max_message_length,
            }
            for name, p in ((Platform.LARK, config.lark), (Platform.WECOM, config.wecom))
        },
        "agents": {
            "primary": config.agents.primary,
            "system_prompt": config.agents.system_prompt,
            "dify": {
                "enabled": dify.enabled,
                "api_key": dify.api_key,
                "api_base": dify.api_base,
                "user_id": dify.user_id,
                "timeout": dify.timeout,
            },
            "coze": {
                "enabled": coze.enabled,
                "api_key": coze.api_key,
                "api_base": coze.api_base,
                "bot_id": coze.bot_id,
                "user_id": coze.user_id,
                "timeout": coze.timeout,
            },
        },
        "pipeline": {
            "queue_size": config.pipeline.queue_size,
            "max_concurrency": config.pipeline.max_concurrency,
            "persist_conversations": config.pipeline.persist_conversations,
            "database": config.pipeline.database,
        },
    }


def load_config(config_path: Path | None = None) -> BridgeConfig:
    """Load AgentBridge configuration from file, env vars, and defaults.

    Priority: env vars > config file > defaults.
    Creates default config file if it doesn't exist.
    """
    config_dir = _default_config_dir()
    config_file = config_path or (config_dir / "config.json")

    # Load from file if exists
    if config_file.exists():
        with open(config_file) as f:
            data = json.load(f)
        config = _dict_to_config(data)
    else:
        config = BridgeConfig()

    config.config_dir = config_dir

    # Apply env overrides
    _load_env_overrides(config)

    # Ensure directories exist
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.log_dir.mkdir(parents=True, exist_ok=True)

    # Save default config if it doesn't exist
    if not config_file.exists():
        save_config(config, config_file)

    return config


def save_config(config: BridgeConfig, config_path: Path | None = None) -> None:
    """Save configuration to JSON file."""
    config_file = config_path or (config.config_dir / "config.json")
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(_config_to_dict(config), f, indent=2)
