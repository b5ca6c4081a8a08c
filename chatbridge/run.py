"""
Bridge runner - entry point for the chat bridge.

This module provides:
- start_bridge(): Start all configured platform adapters and run until stopped
- BridgeRunner: Main class managing the bridge lifecycle

Usage:
    python -m chatbridge.run

    # Or via the installed script
    chat-bridge --verbose
"""

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from chatbridge.agent_client import AgentClient
from chatbridge.config import (
    BridgeConfig,
    Platform,
    PlatformConfig,
    get_bridge_home,
    load_bridge_config,
    load_config_file,
    validate_config,
)
from chatbridge.errors import ConfigurationError
from chatbridge.platforms.base import BasePlatformAdapter, ChatMessage, ChatResponse
from chatbridge.registry import AdapterRegistry
from chatbridge.server import BridgeServer

logger = logging.getLogger(__name__)

AGENT_ERROR_RESPONSE = "Sorry, I encountered an error processing your message. Please try again."

# Inbound metadata the platform needs to address the reply
_ROUTING_KEYS = ("message_thread_id", "threadType")


class BridgeRunner:
    """
    Main bridge controller.

    Manages the lifecycle of all platform adapters and routes
    messages to/from the agent.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        agent_client: Optional[AgentClient] = None,
    ):
        self.config = config or load_bridge_config()
        self.agent_client = agent_client or AgentClient(self.config.agent)
        self.registry = AdapterRegistry()
        self.server: Optional[BridgeServer] = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def adapters(self) -> Dict[Platform, BasePlatformAdapter]:
        return self.registry.adapters()

    async def start(self) -> bool:
        """
        Start the bridge and all configured platform adapters.

        Returns True if at least one adapter connected successfully.
        """
        logger.info("Starting chat bridge...")
        if self.config.echo_mode:
            logger.info("Echo mode enabled, the agent will not be called")
        elif not await self.agent_client.health_check():
            logger.warning("Agent at %s is not reachable yet", self.config.agent.endpoint)

        connected_count = 0
        for platform in self.config.get_enabled_platforms():
            platform_config = self.config.platforms[platform]
            logger.info("Connecting to %s...", platform.value)
            try:
                adapter = await self.registry.create(
                    platform, lambda p=platform, c=platform_config: self._create_adapter(p, c)
                )
            except ConfigurationError as e:
                logger.error("%s is misconfigured: %s", platform.value, e)
                continue

            if adapter is None:
                logger.warning("%s failed to connect", platform.value)
                continue
            connected_count += 1
            logger.info("%s connected", platform.value)

        if connected_count == 0:
            logger.error("No messaging platforms connected")
            return False

        if self.config.server.enabled:
            self.server = BridgeServer(self, self.config.server)
            await self.server.start()

        self._running = True
        logger.info("Bridge running with %s platform(s)", connected_count)
        return True

    async def stop(self) -> None:
        """Stop the bridge and shut down all adapters."""
        logger.info("Stopping bridge...")
        self._running = False

        if self.server is not None:
            try:
                await self.server.stop()
            except Exception as e:
                logger.error("HTTP server shutdown error: %s", e)
            self.server = None

        errors = await self.registry.shutdown_all()
        if errors:
            logger.warning("%d adapter(s) reported errors during shutdown", len(errors))

        self._shutdown_event.set()
        logger.info("Bridge stopped")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    def _create_adapter(self, platform: Platform, config: PlatformConfig) -> BasePlatformAdapter:
        """Create the adapter for a platform with the message handler attached."""
        if platform == Platform.TELEGRAM:
            from chatbridge.platforms.telegram import TelegramAdapter
            adapter: BasePlatformAdapter = TelegramAdapter(config)
        elif platform == Platform.ZALO_PERSONAL:
            from chatbridge.platforms.zalo import ZaloAdapter
            adapter = ZaloAdapter(config)
        else:
            raise ConfigurationError(f"Unsupported platform: {platform.value}")

        adapter.set_message_handler(self._handle_message)
        return adapter

    async def _handle_message(self, message: ChatMessage) -> ChatResponse:
        """Turn one inbound message into the response to send back."""
        logger.info(
            "Message %s from %s on %s (%s)",
            message.id, message.sender_id, message.platform.value, message.message_type.value,
        )
        if self.config.echo_mode:
            response = ChatResponse(
                content=f"Echo: {message.content}",
                metadata={"mode": "repeat", "originalMessage": message.content},
            )
        else:
            try:
                response = await self.agent_client.send_message(message)
            except Exception as e:
                logger.error("Agent call failed for %s: %s", message.id, e)
                response = ChatResponse(content=AGENT_ERROR_RESPONSE, metadata={"error": True})

        # Replies stay in the same forum topic or group thread
        routing = {k: message.metadata[k] for k in _ROUTING_KEYS if k in message.metadata}
        if routing:
            response.metadata = {**(response.metadata or {}), **routing}
        return response

    def get_adapter(self, platform: Platform) -> Optional[BasePlatformAdapter]:
        return self.registry.get(platform)

    def get_adapter_health_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-platform health snapshot, keyed by platform name."""
        return {
            platform.value: {"healthy": adapter.is_healthy(), **adapter.get_status()}
            for platform, adapter in self.adapters.items()
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "echo_mode": self.config.echo_mode,
            "platforms": [p.value for p in self.config.get_enabled_platforms()],
            "adapters": self.get_adapter_health_status(),
        }


def _setup_logging(verbose: bool = False) -> None:
    """Console plus rotating file log under <home>/logs."""
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_dir = get_bridge_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "bridge.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    # python-telegram-bot and aiohttp are chatty at DEBUG
    if not verbose:
        for noisy in ("httpx", "telegram", "aiohttp.access"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


async def start_bridge(config: Optional[BridgeConfig] = None, verbose: bool = False) -> bool:
    """
    Start the bridge and run until interrupted.

    Returns True if the bridge ran successfully, False if it failed to start.
    A False return causes a non-zero exit code so a supervisor can restart it.
    """
    _setup_logging(verbose)

    runner = BridgeRunner(config)

    def signal_handler():
        asyncio.create_task(runner.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    success = await runner.start()
    if not success:
        await runner.stop()
        return False

    await runner.wait_for_shutdown()
    return True


def main():
    """CLI entry point for the bridge."""
    import argparse

    parser = argparse.ArgumentParser(description="Chat bridge - connect chat platforms to an AI agent")
    parser.add_argument("--config", "-c", help="Path to a JSON or YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    try:
        if args.config:
            config = load_config_file(Path(args.config))
            validate_config(config)
        else:
            config = load_bridge_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    success = asyncio.run(start_bridge(config, verbose=args.verbose))
    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
