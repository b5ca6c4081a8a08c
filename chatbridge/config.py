"""
Bridge configuration management.

Handles loading and validating configuration for:
- Connected platforms (Telegram, Zalo personal)
- The agent backend the messages are forwarded to
- The optional HTTP surface (health + webhooks)
- Health monitoring and reconnection timing
"""

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from chatbridge.errors import ConfigurationError

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes")


class Platform(Enum):
    """Supported messaging platforms."""
    TELEGRAM = "telegram"
    ZALO_PERSONAL = "zalo-personal"


# Credentials every enabled platform must carry: (PlatformConfig key, env var)
REQUIRED_CREDENTIALS: Dict[Platform, List[tuple]] = {
    Platform.TELEGRAM: [("token", "TELEGRAM_BOT_TOKEN")],
    Platform.ZALO_PERSONAL: [
        ("cookie", "ZALO_COOKIE"),
        ("imei", "ZALO_IMEI"),
        ("user_agent", "ZALO_USER_AGENT"),
    ],
}


def get_bridge_home() -> Path:
    """Directory holding .env, config.yaml and logs (BRIDGE_HOME override)."""
    return Path(os.getenv("BRIDGE_HOME", Path.home() / ".chat-bridge"))


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in _TRUTHY


@dataclass
class PlatformConfig:
    """Configuration for a single messaging platform."""
    enabled: bool = False
    token: Optional[str] = None  # Bot token (Telegram)

    # Health monitoring
    health_check_interval: float = 60.0
    reconnect_delay: float = 30.0
    max_reconnect_attempts: Optional[int] = None  # None = retry forever

    # Platform-specific settings (cookie, imei, webhook_url, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a setting, checking named fields before ``extra``."""
        if key == "token":
            return self.token if self.token is not None else default
        return self.extra.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "enabled": self.enabled,
            "health_check_interval": self.health_check_interval,
            "reconnect_delay": self.reconnect_delay,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "extra": self.extra,
        }
        if self.token:
            result["token"] = self.token
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformConfig":
        return cls(
            enabled=data.get("enabled", False),
            token=data.get("token"),
            health_check_interval=float(data.get("health_check_interval", 60.0)),
            reconnect_delay=float(data.get("reconnect_delay", 30.0)),
            max_reconnect_attempts=data.get("max_reconnect_attempts"),
            extra=dict(data.get("extra", {})),
        )


@dataclass
class AgentConfig:
    """Where the agent backend lives and how to talk to it."""
    endpoint: str = "http://localhost:4111/api"
    agent_id: Optional[str] = None
    api_key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "agent_id": self.agent_id,
            "api_key": self.api_key,
            "headers": self.headers,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        return cls(
            endpoint=data.get("endpoint", "http://localhost:4111/api"),
            agent_id=data.get("agent_id"),
            api_key=data.get("api_key"),
            headers=dict(data.get("headers", {})),
            timeout=float(data.get("timeout", 30.0)),
        )


@dataclass
class ServerConfig:
    """HTTP surface exposing /health and the webhook endpoints."""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 3000

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        return cls(
            enabled=data.get("enabled", False),
            host=data.get("host", "0.0.0.0"),
            port=int(data.get("port", 3000)),
        )


@dataclass
class BridgeConfig:
    """
    Main bridge configuration.

    Manages all platform connections, the agent endpoint and the HTTP surface.
    """
    platforms: Dict[Platform, PlatformConfig] = field(default_factory=dict)
    agent: AgentConfig = field(default_factory=AgentConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Echo inbound messages back instead of calling the agent (testing aid)
    echo_mode: bool = False

    def get_enabled_platforms(self) -> List[Platform]:
        """Return list of platforms that are enabled."""
        return [p for p, c in self.platforms.items() if c.enabled]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platforms": {p.value: c.to_dict() for p, c in self.platforms.items()},
            "agent": self.agent.to_dict(),
            "server": self.server.to_dict(),
            "echo_mode": self.echo_mode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeConfig":
        platforms = {}
        for platform_name, platform_data in data.get("platforms", {}).items():
            try:
                platform = Platform(platform_name)
            except ValueError:
                logger.warning("Ignoring unknown platform in config: %s", platform_name)
                continue
            platforms[platform] = PlatformConfig.from_dict(platform_data or {})

        return cls(
            platforms=platforms,
            agent=AgentConfig.from_dict(data.get("agent", {})),
            server=ServerConfig.from_dict(data.get("server", {})),
            echo_mode=data.get("echo_mode", False),
        )


def require_credentials(platform: Platform, config: PlatformConfig) -> None:
    """Raise ConfigurationError if an enabled platform lacks a credential."""
    for key, env_name in REQUIRED_CREDENTIALS.get(platform, []):
        value = config.get(key)
        if not value or not str(value).strip():
            raise ConfigurationError(
                f"{env_name} is required when {platform.value} is enabled",
                details={"platform": platform.value, "setting": key},
            )


def validate_config(config: BridgeConfig) -> None:
    """Fail fast on incomplete configuration, before any network call."""
    if not config.agent.endpoint:
        raise ConfigurationError("MASTRA_ENDPOINT is required")

    enabled = config.get_enabled_platforms()
    if not enabled:
        raise ConfigurationError("At least one platform must be enabled")

    for platform in enabled:
        pconfig = config.platforms[platform]
        require_credentials(platform, pconfig)
        if pconfig.health_check_interval <= 0:
            raise ConfigurationError(
                f"health_check_interval must be positive for {platform.value}"
            )
        if pconfig.reconnect_delay < 0:
            raise ConfigurationError(
                f"reconnect_delay must not be negative for {platform.value}"
            )


def _load_yaml_config(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config_file(path: Path) -> BridgeConfig:
    """Load a BridgeConfig from a JSON or YAML file."""
    path = Path(path)
    try:
        if path.suffix.lower() == ".json":
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        else:
            data = _load_yaml_config(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}") from e
    return BridgeConfig.from_dict(data)


def load_bridge_config(validate: bool = True) -> BridgeConfig:
    """
    Load bridge configuration from multiple sources.

    Priority (highest to lowest):
    1. Environment variables (including <home>/.env and ./.env)
    2. <home>/config.yaml
    3. Defaults
    """
    home = get_bridge_home()
    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    project_env = Path.cwd() / ".env"
    if project_env.exists():
        load_dotenv(project_env)

    config = BridgeConfig()
    config_yaml_path = home / "config.yaml"
    if config_yaml_path.exists():
        config = load_config_file(config_yaml_path)

    _apply_env_overrides(config)

    if validate:
        validate_config(config)
    return config


def _platform(config: BridgeConfig, platform: Platform) -> PlatformConfig:
    if platform not in config.platforms:
        config.platforms[platform] = PlatformConfig()
    return config.platforms[platform]


def _apply_env_overrides(config: BridgeConfig) -> None:
    """Apply environment variable overrides to config."""

    # Telegram
    if _env_flag("TELEGRAM_ENABLED"):
        telegram = _platform(config, Platform.TELEGRAM)
        telegram.enabled = True
        telegram.token = os.getenv("TELEGRAM_BOT_TOKEN", telegram.token or "")
        telegram.extra["polling"] = _env_flag("TELEGRAM_POLLING", default=True)
        webhook_url = os.getenv("TELEGRAM_WEBHOOK_URL")
        if webhook_url:
            telegram.extra["webhook_url"] = webhook_url
        webhook_secret = os.getenv("TELEGRAM_WEBHOOK_SECRET")
        if webhook_secret:
            telegram.extra["webhook_secret"] = webhook_secret

    # Zalo personal account (cookie session)
    if _env_flag("ZALO_PERSONAL_ENABLED"):
        zalo = _platform(config, Platform.ZALO_PERSONAL)
        zalo.enabled = True
        for key, env_name in (
            ("cookie", "ZALO_COOKIE"),
            ("imei", "ZALO_IMEI"),
            ("user_agent", "ZALO_USER_AGENT"),
            ("bridge_url", "ZALO_BRIDGE_URL"),
            ("bridge_script", "ZALO_BRIDGE_SCRIPT"),
        ):
            value = os.getenv(env_name)
            if value:
                zalo.extra[key] = value
        zalo.extra["self_listen"] = _env_flag("ZALO_SELF_LISTEN")
        zalo.extra["check_update"] = _env_flag("ZALO_CHECK_UPDATE")
        zalo.extra["logging"] = _env_flag("ZALO_LOGGING", default=True)

    # Health monitoring (applies to every platform)
    interval = os.getenv("HEALTH_CHECK_INTERVAL")
    delay = os.getenv("RECONNECT_DELAY")
    max_attempts = os.getenv("MAX_RECONNECT_ATTEMPTS")
    for pconfig in config.platforms.values():
        try:
            if interval:
                pconfig.health_check_interval = float(interval)
            if delay:
                pconfig.reconnect_delay = float(delay)
            if max_attempts:
                pconfig.max_reconnect_attempts = int(max_attempts)
        except ValueError as e:
            raise ConfigurationError(f"Invalid health monitoring setting: {e}") from e

    # Agent backend
    endpoint = os.getenv("MASTRA_ENDPOINT")
    if endpoint is not None:
        config.agent.endpoint = endpoint
    if os.getenv("MASTRA_AGENT_ID"):
        config.agent.agent_id = os.getenv("MASTRA_AGENT_ID")
    if os.getenv("MASTRA_API_KEY"):
        config.agent.api_key = os.getenv("MASTRA_API_KEY")
    headers = os.getenv("MASTRA_HEADERS")
    if headers:
        try:
            config.agent.headers = json.loads(headers)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"MASTRA_HEADERS is not valid JSON: {e}") from e
    timeout = os.getenv("MASTRA_TIMEOUT")
    if timeout:
        try:
            # milliseconds, like the agent SDK settings
            config.agent.timeout = int(timeout) / 1000
        except ValueError as e:
            raise ConfigurationError(f"MASTRA_TIMEOUT must be an integer: {e}") from e

    # HTTP surface
    if os.getenv("HTTP_ENABLED") is not None:
        config.server.enabled = _env_flag("HTTP_ENABLED")
    if os.getenv("HOST"):
        config.server.host = os.getenv("HOST")
    port = os.getenv("PORT")
    if port:
        try:
            config.server.port = int(port)
        except ValueError as e:
            raise ConfigurationError(f"PORT must be an integer: {e}") from e

    if os.getenv("REPEAT_MODE") is not None:
        config.echo_mode = _env_flag("REPEAT_MODE")
