"""
Zalo personal-account adapter.

Zalo has no bot API for personal accounts. The account is driven by a
cookie/IMEI/user-agent session held by a local session bridge (a small
Node.js service wrapping zca-js). With ``bridge_script`` set, the adapter
launches the bridge itself (``node <script> --port <port>``) and stops it on
shutdown; otherwise it expects one already listening at ``bridge_url``.

Session bridge HTTP contract (JSON bodies, 200 on success, 401/403 when the
session is rejected):
- GET  /health    {"status": "ok"}
- POST /login     {"cookie", "imei", "userAgent", "selfListen", "checkUpdate",
                  "logging"} -> {"uid": "<own account id>"}
- GET  /messages  messages received since the last call, as a JSON array of
                  zca-js events {"type": 0|1, "threadId", "isSelf",
                  "data": {"msgId", "uidFrom", "dName", "ts", "msgType",
                  "content"}} or flat {"id", "sender": {"id", "name"},
                  "text", "threadId", "isGroup", "timestamp"} messages
- POST /send      {"threadId", "threadType": "user"|"group", "message"}
- POST /logout    close the session
"""

import asyncio
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import aiohttp

from chatbridge.config import Platform, PlatformConfig, require_credentials
from chatbridge.errors import ConfigurationError, CriticalTransportError, TransientTransportError
from chatbridge.platforms.base import (
    BasePlatformAdapter,
    ChatMessage,
    ChatResponse,
    MessageType,
)
from chatbridge.platforms.payloads import (
    EMPTY_PLACEHOLDER,
    UNKNOWN_SENDER_ID,
    UNKNOWN_SENDER_NAME,
    EnvelopeShape,
    classify_content,
    detect_shape,
    fallback_message_id,
    first_present,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# zca-js msgType -> message type; anything else is plain text
_ENVELOPE_TYPES = {
    "chat.photo": MessageType.IMAGE,
    "share.file": MessageType.FILE,
    "chat.voice": MessageType.AUDIO,
    "chat.video.msg": MessageType.VIDEO,
    "chat.sticker": MessageType.STICKER,
    "chat.location.new": MessageType.LOCATION,
}

# zca-js ThreadType values
_THREAD_TYPES = {0: "user", 1: "group"}

_AUTH_STATUSES = (401, 403)


class ZaloAdapter(BasePlatformAdapter):
    """
    Zalo personal account adapter.

    Configuration:
    - extra.cookie, extra.imei, extra.user_agent: session credentials (required)
    - extra.self_listen: also receive the account's own messages (default False)
    - extra.check_update / extra.logging: passed through to the session bridge
    - extra.bridge_url: session bridge address (default http://localhost:3001)
    - extra.bridge_script: Node.js bridge script to launch (optional)
    """

    MAX_MESSAGE_LENGTH = 4096
    DEFAULT_BRIDGE_URL = "http://localhost:3001"
    POLL_INTERVAL = 1.0
    POLL_ERROR_BACKOFF = 5.0
    BRIDGE_START_TIMEOUT = 15

    VALIDATION_APOLOGY = "Xin lỗi, tôi không thể xử lý tin nhắn của bạn. Vui lòng thử lại."
    PROCESSING_APOLOGY = "Đã xảy ra lỗi khi xử lý tin nhắn. Vui lòng thử lại sau."
    EMPTY_RESPONSE_FALLBACK = "Xin lỗi, tôi không thể xử lý yêu cầu của bạn."

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.ZALO_PERSONAL)
        require_credentials(Platform.ZALO_PERSONAL, config)

        self._bridge_url: str = str(config.extra.get("bridge_url") or self.DEFAULT_BRIDGE_URL).rstrip("/")
        self._self_listen: bool = bool(config.extra.get("self_listen", False))
        self._login_payload: Dict[str, Any] = {
            "cookie": config.extra["cookie"],
            "imei": config.extra["imei"],
            "userAgent": config.extra["user_agent"],
            "selfListen": self._self_listen,
            "checkUpdate": bool(config.extra.get("check_update", False)),
            "logging": bool(config.extra.get("logging", True)),
        }

        self._bridge_script: Optional[str] = config.extra.get("bridge_script")
        if self._bridge_script and not Path(self._bridge_script).exists():
            raise ConfigurationError(
                f"Zalo bridge script not found: {self._bridge_script}",
                details={"platform": self.platform.value, "setting": "bridge_script"},
            )
        self._bridge_process: Optional[subprocess.Popen] = None

        self._session: Optional[aiohttp.ClientSession] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._own_id: Optional[str] = None

    @property
    def name(self) -> str:
        return "Zalo"

    def is_critical_error(self, error: BaseException) -> bool:
        if isinstance(error, aiohttp.ClientResponseError) and error.status in _AUTH_STATUSES:
            return True
        return super().is_critical_error(error)

    @staticmethod
    async def _check_status(resp: aiohttp.ClientResponse, action: str) -> None:
        if resp.status == 200:
            return
        body = await resp.text()
        if resp.status in _AUTH_STATUSES:
            raise CriticalTransportError(
                f"Zalo {action} rejected ({resp.status}): {body}", details={"status": resp.status}
            )
        raise TransientTransportError(
            f"Zalo {action} failed ({resp.status}): {body}", details={"status": resp.status}
        )

    async def _establish(self) -> None:
        """Log in through the session bridge and start polling for messages."""
        session = aiohttp.ClientSession()
        try:
            if self._bridge_script:
                await self._ensure_bridge_process(session)
            async with session.post(
                f"{self._bridge_url}/login",
                json=self._login_payload,
                timeout=aiohttp.ClientTimeout(total=30),
            ) as resp:
                await self._check_status(resp, "login")
                data = await resp.json()
        except BaseException:
            await session.close()
            raise

        self._session = session
        own_id = (data or {}).get("uid") or (data or {}).get("ownId")
        self._own_id = str(own_id) if own_id else None
        logger.info("[%s] Logged in as %s", self.name, self._own_id or "unknown account")

        self._listener_task = self._spawn_background(
            self._poll_messages(), name="zalo-listener"
        )

    async def _stop_listener(self) -> None:
        task = self._listener_task
        self._listener_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _teardown(self) -> None:
        if self._session is not None and not self._session.closed:
            try:
                async with self._session.post(
                    f"{self._bridge_url}/logout",
                    timeout=aiohttp.ClientTimeout(total=5),
                ):
                    pass
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug("[%s] Logout failed: %s", self.name, e)
        await self._stop_listener()
        await self._stop_bridge_process()

    async def _ensure_bridge_process(self, session: aiohttp.ClientSession) -> None:
        """Launch the bridge script unless it is already running, then wait for /health."""
        if self._bridge_process is None or self._bridge_process.poll() is not None:
            port = urlsplit(self._bridge_url).port or 3001
            self._bridge_process = subprocess.Popen(
                ["node", str(self._bridge_script), "--port", str(port)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            logger.info("[%s] Started session bridge (pid %s)", self.name, self._bridge_process.pid)

        for _ in range(self.BRIDGE_START_TIMEOUT):
            if self._bridge_process.poll() is not None:
                raise TransientTransportError(
                    f"Zalo bridge exited with code {self._bridge_process.returncode}"
                )
            try:
                async with session.get(
                    f"{self._bridge_url}/health",
                    timeout=aiohttp.ClientTimeout(total=2),
                ) as resp:
                    if resp.status == 200:
                        return
            except (aiohttp.ClientError, asyncio.TimeoutError):
                pass
            await asyncio.sleep(1)
        raise TransientTransportError(
            f"Zalo bridge did not become ready in {self.BRIDGE_START_TIMEOUT}s"
        )

    async def _stop_bridge_process(self) -> None:
        process = self._bridge_process
        self._bridge_process = None
        if process is None or process.poll() is not None:
            return
        # The bridge runs in its own session, so its node children go too
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            process.terminate()
        for _ in range(10):
            if process.poll() is not None:
                return
            await asyncio.sleep(0.1)
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            process.kill()

    def _has_handle(self) -> bool:
        return self._session is not None and not self._session.closed

    async def _probe(self) -> None:
        if not self._has_handle():
            raise TransientTransportError("Zalo session is not open")
        if self._listener_task is None or self._listener_task.done():
            raise TransientTransportError("Zalo message listener is not running")
        async with self._session.get(
            f"{self._bridge_url}/health",
            timeout=aiohttp.ClientTimeout(total=10),
        ) as resp:
            await self._check_status(resp, "health check")

    async def _poll_messages(self) -> None:
        """Poll the session bridge for incoming messages."""
        while not self._shutdown:
            try:
                async with self._session.get(
                    f"{self._bridge_url}/messages",
                    timeout=aiohttp.ClientTimeout(total=30),
                ) as resp:
                    await self._check_status(resp, "poll")
                    messages = await resp.json()
            except CriticalTransportError as e:
                self.handle_transport_error(e)
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, TransientTransportError, ValueError) as e:
                self.handle_transport_error(e)
                await asyncio.sleep(self.POLL_ERROR_BACKOFF)
                continue

            for raw in messages or []:
                await self.process_inbound(raw)

            await asyncio.sleep(self.POLL_INTERVAL)

    async def _deliver(self, destination: str, response: ChatResponse) -> None:
        if response.message_type != MessageType.TEXT:
            logger.debug(
                "[%s] Only text is supported, sending %s as text",
                self.name, response.message_type.value,
            )
        thread_type = (response.metadata or {}).get("threadType", "user")
        for chunk in self.truncate_message(response.content):
            async with self._session.post(
                f"{self._bridge_url}/send",
                json={"threadId": destination, "threadType": thread_type, "message": chunk},
                timeout=aiohttp.ClientTimeout(total=30),
            ) as resp:
                await self._check_status(resp, "send")

    def normalize(self, raw: Dict[str, Any]) -> Optional[ChatMessage]:
        """Map a zca-js event (envelope) or a flat legacy message to ChatMessage."""
        shape = detect_shape(raw, ("data",))
        if isinstance(shape, EnvelopeShape):
            return self._from_envelope(shape)
        return self._from_legacy(shape.data)

    def _from_envelope(self, shape: EnvelopeShape) -> Optional[ChatMessage]:
        envelope, body = shape.envelope, shape.body
        if envelope.get("isSelf") and not self._self_listen:
            return None

        content = body.get("content")
        kind = _ENVELOPE_TYPES.get(body.get("msgType", ""))
        if kind is None and not isinstance(content, dict):
            message_type, text = MessageType.TEXT, content or EMPTY_PLACEHOLDER
        else:
            attachment = content if isinstance(content, dict) else {}
            caption = None if kind == MessageType.FILE else attachment.get("title") or None
            message_type, text = classify_content(
                caption,
                document={"name": attachment.get("title")} if kind == MessageType.FILE else None,
                photo=kind == MessageType.IMAGE,
                audio=kind == MessageType.AUDIO,
                video=kind == MessageType.VIDEO,
                sticker={} if kind == MessageType.STICKER else None,
                location=attachment if kind == MessageType.LOCATION else None,
            )

        sender_id = first_present(body.get("uidFrom"))
        thread_id = first_present(envelope.get("threadId"), sender_id)
        message_id = first_present(body.get("msgId"), body.get("cliMsgId"))

        return ChatMessage(
            id=str(message_id) if message_id is not None else fallback_message_id(),
            content=text,
            sender_id=str(sender_id) if sender_id is not None else UNKNOWN_SENDER_ID,
            sender_name=body.get("dName") or UNKNOWN_SENDER_NAME,
            platform=self.platform,
            timestamp=parse_timestamp(body.get("ts"), unit="ms"),
            message_type=message_type,
            metadata={
                "threadId": str(thread_id) if thread_id is not None else UNKNOWN_SENDER_ID,
                "threadType": _THREAD_TYPES.get(envelope.get("type"), "user"),
            },
        )

    def _from_legacy(self, data: Dict[str, Any]) -> ChatMessage:
        sender = data.get("sender") or {}
        sender_id = first_present(sender.get("id"))

        document = data.get("file")
        if document is not None and not isinstance(document, dict):
            document = {"name": document if isinstance(document, str) else None}

        message_type, content = classify_content(
            first_present(data.get("body"), data.get("text")),
            document=document,
            photo=bool(data.get("photo")),
            audio=bool(data.get("audio")),
            video=bool(data.get("video")),
            sticker=data.get("sticker") if isinstance(data.get("sticker"), dict) else (
                {} if data.get("sticker") else None
            ),
            location=data.get("location") if isinstance(data.get("location"), dict) else None,
        )

        thread_id = first_present(data.get("threadID"), data.get("threadId"), sender_id)
        message_id = first_present(data.get("id"))

        return ChatMessage(
            id=str(message_id) if message_id is not None else fallback_message_id(),
            content=content,
            sender_id=str(sender_id) if sender_id is not None else UNKNOWN_SENDER_ID,
            sender_name=sender.get("name") or UNKNOWN_SENDER_NAME,
            platform=self.platform,
            timestamp=parse_timestamp(data.get("timestamp"), unit="ms"),
            message_type=message_type,
            metadata={
                "threadId": str(thread_id) if thread_id is not None else UNKNOWN_SENDER_ID,
                "threadType": "group" if data.get("isGroup") else "user",
            },
        )
