"""
Telegram platform adapter.

Uses python-telegram-bot library for:
- Receiving messages from users/groups (long polling or webhook)
- Sending responses back, including media
- Checking the bot is still reachable (get_me)
"""

import hmac
import logging
from typing import Any, Dict, Optional

from telegram import Bot, Update
from telegram.constants import ChatAction
from telegram.error import InvalidToken, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler as TelegramMessageHandler, filters

from chatbridge.config import Platform, PlatformConfig, require_credentials
from chatbridge.errors import ConfigurationError, TransientTransportError
from chatbridge.platforms.base import (
    BasePlatformAdapter,
    ChatMessage,
    ChatResponse,
    ChatUser,
    MessageType,
)
from chatbridge.platforms.payloads import (
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

# Keys of an Update that carry a message
_UPDATE_MESSAGE_KEYS = ("message", "edited_message", "channel_post", "edited_channel_post")

# Response type -> (Bot method, media argument)
_MEDIA_METHODS = {
    MessageType.IMAGE: ("send_photo", "photo"),
    MessageType.FILE: ("send_document", "document"),
    MessageType.AUDIO: ("send_audio", "audio"),
    MessageType.VIDEO: ("send_video", "video"),
    MessageType.STICKER: ("send_sticker", "sticker"),
}


class TelegramAdapter(BasePlatformAdapter):
    """
    Telegram bot adapter.

    Handles:
    - Polling mode (default) or webhook mode (updates arrive over HTTP)
    - Forum topics (message_thread_id is carried in metadata)
    - Photo, document, audio, video and sticker replies

    Configuration:
    - token: bot token from @BotFather
    - extra.polling: poll for updates (default True)
    - extra.webhook_url / extra.webhook_secret: webhook mode settings
    """

    MAX_MESSAGE_LENGTH = 4096

    VALIDATION_APOLOGY = "Sorry, I cannot process your message. Please try again."
    PROCESSING_APOLOGY = "Sorry, an error occurred while processing your message. Please try again later."
    EMPTY_RESPONSE_FALLBACK = "Sorry, I cannot process your request."

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.TELEGRAM)
        require_credentials(Platform.TELEGRAM, config)

        self._polling: bool = bool(config.extra.get("polling", True))
        self._webhook_url: Optional[str] = config.extra.get("webhook_url")
        self._webhook_secret: Optional[str] = config.extra.get("webhook_secret")
        if not self._polling and not self._webhook_url:
            raise ConfigurationError(
                "TELEGRAM_WEBHOOK_URL is required when polling is disabled",
                details={"platform": self.platform.value, "setting": "webhook_url"},
            )

        self._app: Optional[Application] = None
        self._bot: Optional[Bot] = None

    @property
    def accepts_webhooks(self) -> bool:
        return not self._polling

    def check_webhook_secret(self, token: Optional[str]) -> bool:
        if not self._webhook_secret:
            return True
        return hmac.compare_digest(token or "", self._webhook_secret)

    def is_critical_error(self, error: BaseException) -> bool:
        # A revoked or wrong token surfaces as InvalidToken (HTTP 401)
        if isinstance(error, InvalidToken):
            return True
        return super().is_critical_error(error)

    async def _establish(self) -> None:
        """Build the application, then start polling or register the webhook."""
        app = Application.builder().token(self.config.token).build()
        app.add_handler(TelegramMessageHandler(filters.ALL, self._on_update))
        app.add_error_handler(self._on_error)

        try:
            # initialize() calls getMe, so a bad token fails here
            await app.initialize()
            await app.start()
            if self._polling:
                await app.updater.start_polling(
                    allowed_updates=Update.ALL_TYPES,
                    error_callback=self.handle_transport_error,
                )
                logger.info("[%s] Polling for updates", self.name)
            else:
                await app.bot.set_webhook(
                    url=self._webhook_url,
                    secret_token=self._webhook_secret,
                    allowed_updates=Update.ALL_TYPES,
                )
                logger.info("[%s] Webhook registered at %s", self.name, self._webhook_url)
        except BaseException:
            await self._shutdown_app(app)
            raise

        self._app = app
        self._bot = app.bot

    async def _teardown(self) -> None:
        app = self._app
        self._app = None
        self._bot = None
        if app is not None:
            await self._shutdown_app(app)

    async def _stop_listener(self) -> None:
        # A reconnect builds a fresh Application, so the old one is released whole
        await self._teardown()

    async def _shutdown_app(self, app: Application) -> None:
        if app.updater and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()

    def _has_handle(self) -> bool:
        return self._bot is not None

    async def _probe(self) -> None:
        if self._app is None or self._bot is None:
            raise TransientTransportError("Telegram application is not running")
        if self._polling and not (self._app.updater and self._app.updater.running):
            raise TransientTransportError("Telegram updater is not polling")
        await self._bot.get_me()

    async def _on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.process_inbound(update.to_dict())

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        if context.error is not None:
            self.handle_transport_error(context.error)

    async def _deliver(self, destination: str, response: ChatResponse) -> None:
        metadata = response.metadata or {}
        thread_id = metadata.get("message_thread_id")

        media = _MEDIA_METHODS.get(response.message_type)
        if media is not None:
            method_name, argument = media
            kwargs: Dict[str, Any] = {
                "chat_id": destination,
                argument: metadata.get(argument) or response.content,
                "message_thread_id": thread_id,
            }
            caption = metadata.get("caption")
            if caption and response.message_type != MessageType.STICKER:
                kwargs["caption"] = caption[:1024]  # Telegram caption limit
            await getattr(self._bot, method_name)(**kwargs)
            return

        if response.message_type != MessageType.TEXT:
            logger.debug(
                "[%s] No native send for %s, sending as text", self.name, response.message_type.value
            )
        for chunk in self.truncate_message(response.content):
            await self._bot.send_message(
                chat_id=destination,
                text=chunk,
                message_thread_id=thread_id,
            )

    async def send_typing(self, destination: str) -> None:
        """Send typing indicator."""
        if not self._bot or not destination:
            return
        try:
            await self._bot.send_chat_action(chat_id=destination, action=ChatAction.TYPING)
        except TelegramError as e:
            logger.debug("[%s] Typing indicator failed: %s", self.name, e)

    async def get_user(self, user_id: str) -> Optional[ChatUser]:
        if not self._bot:
            return None
        try:
            chat = await self._bot.get_chat(user_id)
        except TelegramError as e:
            logger.debug("[%s] Could not look up user %s: %s", self.name, user_id, e)
            return None
        return ChatUser(
            id=str(chat.id),
            platform=self.platform,
            name=chat.full_name or chat.title,
            username=chat.username,
            metadata={"type": chat.type},
        )

    def normalize(self, raw: Dict[str, Any]) -> Optional[ChatMessage]:
        """
        Map an Update (envelope) or a bare Message dict (legacy) to ChatMessage.

        Messages sent by bots are ignored.
        """
        shape = detect_shape(raw, _UPDATE_MESSAGE_KEYS)
        if isinstance(shape, EnvelopeShape):
            msg = shape.body
            update_id = raw.get("update_id")
            kind = shape.kind
        else:
            msg = shape.data
            update_id = None
            kind = None

        sender = msg.get("from") or {}
        if sender.get("is_bot"):
            logger.debug("[%s] Ignoring message from bot %s", self.name, sender.get("id"))
            return None
        chat = msg.get("chat") or {}

        sender_id = first_present(sender.get("id"), chat.get("id") if kind == "channel_post" else None)
        sender_name = " ".join(
            part for part in (sender.get("first_name"), sender.get("last_name")) if part
        ) or sender.get("username") or chat.get("title")

        voice = msg.get("voice")
        message_type, content = classify_content(
            first_present(msg.get("text"), msg.get("caption")),
            document=msg.get("document"),
            photo=bool(msg.get("photo")),
            audio=bool(msg.get("audio") or voice),
            video=bool(msg.get("video") or msg.get("video_note")),
            sticker=msg.get("sticker"),
            location=msg.get("location"),
        )

        message_id = first_present(msg.get("message_id"), update_id)
        thread_id = first_present(chat.get("id"), sender_id)

        metadata: Dict[str, Any] = {
            "threadId": str(thread_id) if thread_id is not None else UNKNOWN_SENDER_ID,
            "chat_type": chat.get("type"),
            "username": sender.get("username"),
        }
        if msg.get("message_thread_id") is not None:
            metadata["message_thread_id"] = msg["message_thread_id"]
        if kind:
            metadata["update_type"] = kind

        return ChatMessage(
            id=str(message_id) if message_id is not None else fallback_message_id(),
            content=content,
            sender_id=str(sender_id) if sender_id is not None else UNKNOWN_SENDER_ID,
            sender_name=sender_name or UNKNOWN_SENDER_NAME,
            platform=self.platform,
            timestamp=parse_timestamp(msg.get("date"), unit="s"),
            message_type=message_type,
            metadata=metadata,
        )
