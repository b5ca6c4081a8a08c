"""
Chat bridge connecting messaging platforms to an AI agent.

This package provides:
- Platform adapters (Telegram, Zalo personal) with health monitoring and
  automatic reconnection
- A registry keeping one live connection per platform
- An HTTP client for the agent backend
- An optional HTTP surface for health checks and webhooks

Run the bridge with:
    chat-bridge            # installed console script
    python -m chatbridge.run
"""

from chatbridge.config import BridgeConfig, Platform, PlatformConfig, load_bridge_config
from chatbridge.errors import BridgeError, ConfigurationError
from chatbridge.run import BridgeRunner, start_bridge

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "BridgeRunner",
    "ConfigurationError",
    "Platform",
    "PlatformConfig",
    "load_bridge_config",
    "start_bridge",
]
