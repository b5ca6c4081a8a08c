"""
Base platform adapter interface.

All platform adapters (Telegram, Zalo) inherit from this and implement the
transport hooks. The base class owns everything that is common to every
platform:
- Connection lifecycle (connect, disconnect, forced shutdown)
- Periodic health checks and reconnection
- The validation gate in front of the message handler
- Sending responses and apologies
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Deque, Dict, List, Optional, Set

from chatbridge.config import Platform, PlatformConfig
from chatbridge.errors import (
    AdapterConnectionError,
    ConfigurationError,
    CriticalTransportError,
    MessageValidationError,
    NotConnectedError,
    SendError,
)
from chatbridge.platforms.health import MAX_CONSECUTIVE_FAILURES, ConnectionHealth

logger = logging.getLogger(__name__)


class MessageType(Enum):
    """Kinds of content a message can carry."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    LOCATION = "location"


@dataclass
class ChatMessage:
    """
    Incoming message from a platform.

    Normalized representation that all adapters produce. ``metadata`` always
    carries ``threadId``, the key replies are routed to.
    """
    id: str
    content: str
    sender_id: str
    platform: Platform
    sender_name: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_type: MessageType = MessageType.TEXT
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def thread_id(self) -> Optional[str]:
        return self.metadata.get("threadId")


@dataclass
class ChatResponse:
    """Outgoing response to be delivered to a platform."""
    content: str
    message_type: MessageType = MessageType.TEXT
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ChatUser:
    """Profile returned by a user lookup."""
    id: str
    platform: Platform
    name: Optional[str] = None
    username: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AdapterState(Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    SHUT_DOWN = "shut_down"


# Type for message handlers
MessageHandler = Callable[[ChatMessage], Awaitable[Optional[ChatResponse]]]


class BasePlatformAdapter(ABC):
    """
    Base class for platform adapters.

    Subclasses implement platform-specific logic for:
    - Establishing and tearing down the session (``_establish``/``_teardown``)
    - Probing liveness (``_probe``)
    - Delivering responses (``_deliver``)
    - Turning raw payloads into ChatMessage (``normalize``)
    """

    MAX_MESSAGE_LENGTH = 4096

    VALIDATION_APOLOGY = "Sorry, I cannot process your message. Please try again."
    PROCESSING_APOLOGY = "An error occurred while processing your message. Please try again later."
    EMPTY_RESPONSE_FALLBACK = "Sorry, I cannot process your request."

    def __init__(self, config: PlatformConfig, platform: Platform):
        self.config = config
        self.platform = platform
        self.health = ConnectionHealth()

        self.health_check_interval = config.health_check_interval
        self.reconnect_delay = config.reconnect_delay
        self.max_reconnect_attempts = config.max_reconnect_attempts

        self._message_handler: Optional[MessageHandler] = None
        self._state = AdapterState.UNINITIALIZED
        self._connected = False
        self._shutdown = False
        self._health_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        # Held for the whole of process_inbound on dispatched payloads
        self._inbound_lock = asyncio.Lock()

        # Failures of detached work (forced shutdowns, listeners), newest last
        self.background_errors: Deque[BaseException] = deque(maxlen=20)

        self.started_at: Optional[datetime] = None
        self.last_activity: Optional[datetime] = None
        self.messages_processed = 0

    @property
    def name(self) -> str:
        """Human-readable name for this adapter."""
        return self.platform.value.title()

    @property
    def is_connected(self) -> bool:
        """Check if adapter is currently connected."""
        return self._connected and not self._shutdown

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def accepts_webhooks(self) -> bool:
        """Whether inbound updates may arrive through the HTTP webhook."""
        return False

    def check_webhook_secret(self, token: Optional[str]) -> bool:
        """Verify the shared secret presented by a webhook call."""
        return True

    def is_healthy(self) -> bool:
        return not self._shutdown and self.health.is_healthy()

    def set_message_handler(self, handler: MessageHandler) -> None:
        """
        Set the handler for incoming messages.

        Only one handler is kept; a later call replaces the earlier one.

        Args:
            handler: Coroutine taking a ChatMessage and returning the
                ChatResponse to send back to ``metadata["threadId"]``
        """
        self._message_handler = handler

    def _set_state(self, state: AdapterState) -> None:
        if self._state == AdapterState.SHUT_DOWN and state != AdapterState.SHUT_DOWN:
            logger.debug("[%s] Ignoring %s after shutdown", self.name, state.value)
            return
        self._state = state

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _establish(self) -> None:
        """Run the platform handshake and start the inbound listener."""

    @abstractmethod
    async def _teardown(self) -> None:
        """Stop the listener and release the connection handle."""

    @abstractmethod
    async def _stop_listener(self) -> None:
        """Stop only the inbound listener (used before a reconnect)."""

    @abstractmethod
    async def _probe(self) -> None:
        """Raise if the connection or its listener is not alive."""

    @abstractmethod
    async def _deliver(self, destination: str, response: ChatResponse) -> None:
        """Send one response through the platform API."""

    @abstractmethod
    def _has_handle(self) -> bool:
        """Whether the live connection handle exists."""

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> Optional[ChatMessage]:
        """
        Map a raw payload to a ChatMessage.

        Returns None for payloads that should be ignored entirely.
        """

    def is_critical_error(self, error: BaseException) -> bool:
        """
        Critical errors force a shutdown; everything else counts as a
        transient failure. Subclasses add their platform's auth errors.
        """
        if isinstance(error, (CriticalTransportError, ConfigurationError)):
            return True
        message = str(error)
        return "401" in message or "Unauthorized" in message

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Connect to the platform and start receiving messages.

        Raises:
            ConfigurationError: The platform settings are unusable
            AdapterConnectionError: The handshake failed; discard the instance
        """
        if self._shutdown:
            raise AdapterConnectionError(f"{self.name} adapter has been shut down")

        self._set_state(AdapterState.CONNECTING)
        logger.info("[%s] Connecting", self.name)
        try:
            await self._establish()
        except ConfigurationError:
            raise
        except Exception as e:
            self.health.update(False, str(e))
            logger.error("[%s] Failed to connect: %s", self.name, e, exc_info=True)
            raise AdapterConnectionError(
                f"{self.name} connection failed: {e}",
                details={"platform": self.platform.value},
            ) from e

        if self._shutdown:
            # force_shutdown() ran while the handshake was in flight
            await self._safe_teardown()
            raise AdapterConnectionError(f"{self.name} adapter was shut down while connecting")

        self._connected = True
        self.started_at = datetime.now(timezone.utc)
        self.health.update(True)
        self._set_state(AdapterState.CONNECTED)
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info("[%s] Connected", self.name)

    async def disconnect(self) -> None:
        """Gracefully disconnect. Safe to call more than once."""
        await self._close("disconnect")

    async def force_shutdown(self) -> None:
        """
        Tear the adapter down immediately.

        Entered from error paths; works before, during and after connect().
        """
        await self._close("forced shutdown")

    async def _close(self, reason: str) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("[%s] Shutting down (%s)", self.name, reason)

        current = asyncio.current_task()
        health_task = self._health_task
        self._health_task = None
        if health_task and health_task is not current and not health_task.done():
            health_task.cancel()
            try:
                await health_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("[%s] Health task ended with error: %s", self.name, e)

        for task in list(self._background_tasks):
            if task is not current and not task.done():
                task.cancel()

        await self._safe_teardown()

        self._connected = False
        self.health.mark_disconnected()
        self._set_state(AdapterState.SHUT_DOWN)
        logger.info("[%s] Disconnected", self.name)

    async def _safe_teardown(self) -> None:
        try:
            await self._teardown()
        except Exception as e:
            logger.warning("[%s] Error during teardown: %s", self.name, e)

    def _spawn_background(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` detached; failures are logged and kept in background_errors."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "[%s] Background task %s failed: %s", self.name, task.get_name(), exc,
                exc_info=exc,
            )
            self.background_errors.append(exc)

    # ------------------------------------------------------------------
    # Health monitoring
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while not self._shutdown:
            await asyncio.sleep(self.health_check_interval)
            if self._shutdown:
                break
            await self.run_health_check()

    async def run_health_check(self) -> bool:
        """
        One health-check tick.

        A critical failure forces a shutdown; reaching
        MAX_CONSECUTIVE_FAILURES runs a reconnect inline.

        Returns:
            True when the probe succeeded
        """
        if self._shutdown:
            return False

        try:
            await self._probe()
        except Exception as e:
            self.health.update(False, str(e))
            self._set_state(AdapterState.DEGRADED)
            logger.warning(
                "[%s] Health check failed (%d consecutive): %s",
                self.name, self.health.consecutive_failures, e,
            )
            if self.is_critical_error(e):
                logger.error("[%s] Critical error during health check, shutting down", self.name)
                await self.force_shutdown()
            elif self.health.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                await self._reconnect()
            return False

        self.health.update(True)
        self._set_state(AdapterState.CONNECTED)
        return True

    async def _reconnect(self) -> bool:
        """Wait out the backoff, then re-run the handshake once."""
        self._set_state(AdapterState.RECONNECTING)
        attempt = self.health.record_reconnect_attempt()
        if self.max_reconnect_attempts is not None and attempt > self.max_reconnect_attempts:
            logger.error(
                "[%s] Giving up after %d reconnect attempts", self.name, attempt - 1
            )
            await self.force_shutdown()
            return False

        logger.info(
            "[%s] Reconnecting in %.0fs (attempt %d)", self.name, self.reconnect_delay, attempt
        )
        await asyncio.sleep(self.reconnect_delay)
        if self._shutdown:
            return False

        try:
            await self._stop_listener()
        except Exception as e:
            logger.warning("[%s] Error stopping listener before reconnect: %s", self.name, e)
        self._connected = False

        try:
            await self._establish()
        except Exception as e:
            self.health.update(False, str(e))
            self._set_state(AdapterState.DEGRADED)
            logger.error("[%s] Reconnect failed: %s", self.name, e)
            if self.is_critical_error(e):
                await self.force_shutdown()
            return False

        if self._shutdown:
            await self._safe_teardown()
            return False

        self._connected = True
        self.health.update(True)
        self.health.reconnect_attempts = 0
        self._set_state(AdapterState.CONNECTED)
        logger.info("[%s] Reconnected", self.name)
        return True

    def handle_transport_error(self, error: BaseException) -> None:
        """
        Classify an error reported by the inbound listener.

        Transient errors only count against health and wait for the next
        check. Critical ones schedule a forced shutdown.
        """
        if self._shutdown:
            return
        self.health.update(False, str(error))
        self._set_state(AdapterState.DEGRADED)
        if self.is_critical_error(error):
            logger.error("[%s] Critical transport error, shutting down: %s", self.name, error)
            self._spawn_background(self.force_shutdown(), name=f"{self.platform.value}-shutdown")
        else:
            logger.warning(
                "[%s] Transport error, will retry on next health check: %s", self.name, error
            )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, destination: str, response: ChatResponse) -> None:
        """
        Send a response to a chat.

        Args:
            destination: The thread/chat ID to send to
            response: Content, type and platform-specific metadata

        Raises:
            NotConnectedError: There is no live connection
            SendError: The platform rejected the delivery
        """
        if not self.is_connected or not self._has_handle():
            raise NotConnectedError(f"{self.name} adapter is not connected")

        try:
            await self._deliver(destination, response)
        except Exception as e:
            logger.error("[%s] Failed to send to %s: %s", self.name, destination, e)
            self.health.update(False, str(e))
            if self.is_critical_error(e):
                self._spawn_background(self.force_shutdown(), name=f"{self.platform.value}-shutdown")
            else:
                self._set_state(AdapterState.DEGRADED)
            raise SendError(f"{self.name} send failed: {e}", details={"destination": destination}) from e

        self.last_activity = datetime.now(timezone.utc)

    async def send_typing(self, destination: str) -> None:
        """
        Send a typing indicator.

        Override in subclasses if the platform supports it.
        """

    async def get_user(self, user_id: str) -> Optional[ChatUser]:
        """
        Best-effort profile lookup.

        Args:
            user_id: Platform user ID

        Returns:
            ChatUser, or None when unsupported or the lookup failed
        """
        return None

    async def _keep_typing(self, destination: str, interval: float = 4.0) -> None:
        """
        Continuously send typing indicator until cancelled.

        Telegram typing status expires after ~5 seconds, so we refresh every 4.
        """
        try:
            while True:
                await self.send_typing(destination)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    def truncate_message(self, content: str, max_length: Optional[int] = None) -> List[str]:
        """
        Split a long message into chunks.

        Splits at the last newline before the limit, then the last space,
        then hard at ``max_length``.

        Args:
            content: The full message content
            max_length: Maximum length per chunk (defaults to MAX_MESSAGE_LENGTH)

        Returns:
            List of message chunks
        """
        max_length = max_length or self.MAX_MESSAGE_LENGTH
        if len(content) <= max_length:
            return [content]

        chunks = []
        while content:
            if len(content) <= max_length:
                chunks.append(content)
                break

            split_idx = content.rfind("\n", 0, max_length)
            if split_idx <= 0:
                split_idx = content.rfind(" ", 0, max_length)
            if split_idx <= 0:
                split_idx = max_length

            chunks.append(content[:split_idx])
            content = content[split_idx:].lstrip()

        return chunks

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def validate_message(self, message: ChatMessage) -> None:
        """Raise MessageValidationError for messages the handler must not see."""
        if not message.content or not message.content.strip():
            raise MessageValidationError("Message content is empty")
        if message.sender_id == "unknown":
            raise MessageValidationError("Message sender is unknown")
        if len(message.content) > self.MAX_MESSAGE_LENGTH:
            raise MessageValidationError(
                f"Message is too long ({len(message.content)} > {self.MAX_MESSAGE_LENGTH})"
            )

    async def process_inbound(self, raw: Dict[str, Any]) -> None:
        """
        Process a raw inbound payload.

        Normalizes it, runs the validation gate, calls the registered handler
        and sends the response back. Never raises to the transport.

        Args:
            raw: The payload exactly as the transport delivered it
        """
        try:
            message = self.normalize(raw)
        except Exception as e:
            logger.error("[%s] Failed to normalize payload: %s", self.name, e, exc_info=True)
            return
        if message is None:
            return

        thread_id = message.thread_id
        try:
            self.validate_message(message)
        except MessageValidationError as e:
            logger.warning("[%s] Rejected message %s: %s", self.name, message.id, e)
            await self._send_apology(thread_id, self.VALIDATION_APOLOGY)
            return

        if not self._message_handler:
            logger.debug("[%s] No message handler registered, dropping %s", self.name, message.id)
            return

        typing_task = asyncio.create_task(self._keep_typing(thread_id))
        try:
            response = await self._message_handler(message)
        except Exception as e:
            logger.error("[%s] Error handling message: %s", self.name, e, exc_info=True)
            await self._send_apology(thread_id, self.PROCESSING_APOLOGY)
            return
        finally:
            typing_task.cancel()
            try:
                await typing_task
            except asyncio.CancelledError:
                pass

        if response is None or not (response.content or "").strip():
            response = ChatResponse(content=self.EMPTY_RESPONSE_FALLBACK)

        try:
            await self.send_message(thread_id, response)
        except SendError as e:
            logger.error("[%s] Could not deliver response: %s", self.name, e)
            return
        self.messages_processed += 1

    def dispatch_inbound(self, raw: Dict[str, Any]) -> asyncio.Task:
        """
        Process a payload in the background so webhook calls return at once.

        Dispatched payloads are handled one at a time in dispatch order, so
        replies leave in the order the transport delivered the messages.

        Args:
            raw: The payload exactly as the transport delivered it

        Returns:
            The background task handling this payload
        """
        return self._spawn_background(
            self._process_in_order(raw), name=f"{self.platform.value}-inbound"
        )

    async def _process_in_order(self, raw: Dict[str, Any]) -> None:
        # asyncio.Lock wakes waiters first-in first-out
        async with self._inbound_lock:
            await self.process_inbound(raw)

    async def _send_apology(self, thread_id: Optional[str], text: str) -> None:
        if not thread_id or thread_id == "unknown":
            logger.warning("[%s] No thread to send apology to", self.name)
            return
        try:
            await self.send_message(thread_id, ChatResponse(content=text))
        except SendError as e:
            logger.error("[%s] Failed to send apology: %s", self.name, e)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        uptime = None
        if self.started_at and not self._shutdown:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "platform": self.platform.value,
            "running": self.is_connected,
            "state": self._state.value,
            "health": self.health.to_dict(),
            "uptime": uptime,
            "messages_processed": self.messages_processed,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "background_errors": len(self.background_errors),
        }
