"""
Tests for chatbridge/platforms/telegram.py.

Covers: settings validation, update normalization, outbound dispatch by
message type, error classification, connect/teardown against a mocked
Application.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from telegram.error import InvalidToken, NetworkError, TelegramError, TimedOut

from chatbridge.config import PlatformConfig
from chatbridge.errors import AdapterConnectionError, ConfigurationError, TransientTransportError
from chatbridge.platforms.base import AdapterState, ChatResponse, MessageType
from chatbridge.platforms.telegram import TelegramAdapter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _message(**fields):
    msg = {
        "message_id": 42,
        "date": 1700000000,
        "chat": {"id": 100, "type": "private"},
        "from": {"id": 1, "is_bot": False, "first_name": "Ann", "last_name": "Lee", "username": "ann"},
    }
    msg.update(fields)
    return msg


def _update(**fields):
    return {"update_id": 9001, "message": _message(**fields)}


def _make_app():
    app = MagicMock()
    app.initialize = AsyncMock()
    app.start = AsyncMock()
    app.stop = AsyncMock()
    app.shutdown = AsyncMock()
    app.updater.start_polling = AsyncMock()
    app.updater.stop = AsyncMock()
    app.updater.running = True
    app.running = True
    app.bot.get_me = AsyncMock()
    app.bot.set_webhook = AsyncMock()
    return app


@pytest.fixture()
def adapter():
    return TelegramAdapter(PlatformConfig(enabled=True, token="123:abc", reconnect_delay=0))


@pytest.fixture()
def connected(adapter):
    """Adapter with a mocked bot, marked connected without a network call."""
    bot = MagicMock()
    for method in ("send_message", "send_photo", "send_document", "send_audio",
                   "send_video", "send_sticker", "send_chat_action", "get_chat", "get_me"):
        setattr(bot, method, AsyncMock())
    adapter._bot = bot
    adapter._app = MagicMock()
    adapter._connected = True
    return adapter


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestSettings:
    def test_missing_token(self):
        with pytest.raises(ConfigurationError, match="TELEGRAM_BOT_TOKEN"):
            TelegramAdapter(PlatformConfig(enabled=True))

    def test_webhook_mode_requires_url(self):
        config = PlatformConfig(enabled=True, token="123:abc", extra={"polling": False})
        with pytest.raises(ConfigurationError):
            TelegramAdapter(config)

    def test_webhook_mode(self):
        config = PlatformConfig(enabled=True, token="123:abc", extra={
            "polling": False, "webhook_url": "https://bot.example.com/webhook/telegram",
            "webhook_secret": "s3cret",
        })
        adapter = TelegramAdapter(config)
        assert adapter.accepts_webhooks is True
        assert adapter.check_webhook_secret("s3cret") is True
        assert adapter.check_webhook_secret("wrong") is False
        assert adapter.check_webhook_secret(None) is False

    def test_polling_mode_has_no_webhooks(self, adapter):
        assert adapter.accepts_webhooks is False
        assert adapter.check_webhook_secret(None) is True


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_text_update(self, adapter):
        message = adapter.normalize(_update(text="hello"))
        assert message.id == "42"
        assert message.content == "hello"
        assert message.sender_id == "1"
        assert message.sender_name == "Ann Lee"
        assert message.message_type == MessageType.TEXT
        assert message.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert message.metadata["threadId"] == "100"
        assert message.metadata["chat_type"] == "private"
        assert message.metadata["username"] == "ann"

    def test_bare_message_dict(self, adapter):
        message = adapter.normalize(_message(text="legacy"))
        assert message.content == "legacy"
        assert "update_type" not in message.metadata

    def test_edited_message(self, adapter):
        message = adapter.normalize({"update_id": 1, "edited_message": _message(text="fixed")})
        assert message.content == "fixed"
        assert message.metadata["update_type"] == "edited_message"

    def test_photo_without_caption(self, adapter):
        message = adapter.normalize(_update(photo=[{"file_id": "a", "width": 90, "height": 90}]))
        assert message.message_type == MessageType.IMAGE
        assert message.content == "[Photo]"

    def test_photo_with_caption(self, adapter):
        message = adapter.normalize(_update(photo=[{"file_id": "a"}], caption="my cat"))
        assert message.message_type == MessageType.IMAGE
        assert message.content == "my cat"

    def test_document_uses_file_name(self, adapter):
        message = adapter.normalize(_update(document={"file_id": "d", "file_name": "report.pdf"}))
        assert message.message_type == MessageType.FILE
        assert message.content == "report.pdf"

    def test_document_without_name(self, adapter):
        message = adapter.normalize(_update(document={"file_id": "d"}))
        assert message.content == "[Document]"

    def test_voice_is_audio(self, adapter):
        message = adapter.normalize(_update(voice={"file_id": "v", "duration": 3}))
        assert message.message_type == MessageType.AUDIO
        assert message.content == "[Audio]"

    def test_video(self, adapter):
        message = adapter.normalize(_update(video={"file_id": "v"}))
        assert (message.message_type, message.content) == (MessageType.VIDEO, "[Video]")

    def test_sticker_emoji(self, adapter):
        message = adapter.normalize(_update(sticker={"file_id": "s", "emoji": "😀"}))
        assert (message.message_type, message.content) == (MessageType.STICKER, "😀")

    def test_sticker_without_emoji(self, adapter):
        message = adapter.normalize(_update(sticker={"file_id": "s"}))
        assert message.content == "[Sticker]"

    def test_location(self, adapter):
        message = adapter.normalize(_update(location={"latitude": 10.77, "longitude": 106.7}))
        assert message.message_type == MessageType.LOCATION
        assert message.content == "[Location: 10.77, 106.7]"

    def test_document_beats_photo(self, adapter):
        message = adapter.normalize(_update(document={"file_name": "a.zip"}, photo=[{"file_id": "p"}]))
        assert message.message_type == MessageType.FILE

    def test_unsupported_payload(self, adapter):
        message = adapter.normalize(_update(poll={"id": "p"}))
        assert message.message_type == MessageType.TEXT
        assert message.content == "[Unsupported message type]"

    def test_bot_messages_are_ignored(self, adapter):
        raw = _update(text="beep")
        raw["message"]["from"]["is_bot"] = True
        assert adapter.normalize(raw) is None

    def test_missing_sender_and_chat(self, adapter):
        message = adapter.normalize({"update_id": 5, "message": {"text": "hi"}})
        assert message.sender_id == "unknown"
        assert message.sender_name == "Unknown Sender"
        assert message.metadata["threadId"] == "unknown"
        assert message.id == "5"

    def test_forum_topic_is_kept(self, adapter):
        message = adapter.normalize(_update(text="in topic", message_thread_id=77))
        assert message.metadata["message_thread_id"] == 77

    def test_bad_date_falls_back_to_now(self, adapter):
        message = adapter.normalize(_update(text="hi", date="yesterday"))
        assert message.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_on_update_hands_dict_to_pipeline(self, adapter):
        adapter.process_inbound = AsyncMock()
        update = MagicMock()
        update.to_dict.return_value = _update(text="hi")
        await adapter._on_update(update, MagicMock())
        adapter.process_inbound.assert_awaited_once_with(_update(text="hi"))


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

class TestDeliver:
    @pytest.mark.asyncio
    async def test_text(self, connected):
        await connected.send_message("100", ChatResponse(content="hello"))
        connected._bot.send_message.assert_awaited_once_with(
            chat_id="100", text="hello", message_thread_id=None
        )

    @pytest.mark.asyncio
    async def test_long_text_is_chunked(self, connected):
        await connected.send_message("100", ChatResponse(content="x" * 5000))
        assert connected._bot.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_photo(self, connected):
        response = ChatResponse(
            content="https://example.com/cat.jpg",
            message_type=MessageType.IMAGE,
            metadata={"caption": "a cat"},
        )
        await connected.send_message("100", response)
        connected._bot.send_photo.assert_awaited_once_with(
            chat_id="100", photo="https://example.com/cat.jpg",
            message_thread_id=None, caption="a cat",
        )
        connected._bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message_type,method", [
        (MessageType.FILE, "send_document"),
        (MessageType.AUDIO, "send_audio"),
        (MessageType.VIDEO, "send_video"),
        (MessageType.STICKER, "send_sticker"),
    ])
    async def test_media_dispatch(self, connected, message_type, method):
        await connected.send_message("100", ChatResponse(content="file-id", message_type=message_type))
        getattr(connected._bot, method).assert_awaited_once()

    @pytest.mark.asyncio
    async def test_location_falls_back_to_text(self, connected):
        await connected.send_message(
            "100", ChatResponse(content="[Location: 1, 2]", message_type=MessageType.LOCATION)
        )
        connected._bot.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_forum_topic_reply(self, connected):
        await connected.send_message(
            "100", ChatResponse(content="hi", metadata={"message_thread_id": 77})
        )
        assert connected._bot.send_message.call_args.kwargs["message_thread_id"] == 77

    @pytest.mark.asyncio
    async def test_typing_errors_are_ignored(self, connected):
        connected._bot.send_chat_action.side_effect = TelegramError("flood")
        await connected.send_typing("100")


class TestErrorClassification:
    def test_invalid_token_is_critical(self, adapter):
        assert adapter.is_critical_error(InvalidToken()) is True

    def test_unauthorized_text_is_critical(self, adapter):
        assert adapter.is_critical_error(TelegramError("Unauthorized")) is True

    def test_network_errors_are_transient(self, adapter):
        assert adapter.is_critical_error(NetworkError("socket hang up")) is False
        assert adapter.is_critical_error(TimedOut()) is False

    @pytest.mark.asyncio
    async def test_polling_error_callback_degrades(self, connected):
        connected.handle_transport_error(NetworkError("ECONNRESET"))
        assert connected.state == AdapterState.DEGRADED
        assert connected.health.consecutive_failures == 1
        assert not connected.is_shutdown


class TestUserLookup:
    @pytest.mark.asyncio
    async def test_get_user(self, connected):
        chat = MagicMock(id=1, full_name="Ann Lee", title=None, username="ann", type="private")
        connected._bot.get_chat.return_value = chat
        user = await connected.get_user("1")
        assert user.id == "1"
        assert user.name == "Ann Lee"
        assert user.username == "ann"

    @pytest.mark.asyncio
    async def test_get_user_failure(self, connected):
        connected._bot.get_chat.side_effect = TelegramError("Chat not found")
        assert await connected.get_user("1") is None

    @pytest.mark.asyncio
    async def test_get_user_without_bot(self, adapter):
        assert await adapter.get_user("1") is None


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_starts_polling(self, adapter):
        app = _make_app()
        with patch("chatbridge.platforms.telegram.Application") as application:
            application.builder.return_value.token.return_value.build.return_value = app
            await adapter.connect()
        try:
            application.builder.return_value.token.assert_called_once_with("123:abc")
            app.initialize.assert_awaited_once()
            app.start.assert_awaited_once()
            kwargs = app.updater.start_polling.call_args.kwargs
            assert kwargs["error_callback"] == adapter.handle_transport_error
            assert adapter.state == AdapterState.CONNECTED
        finally:
            await adapter.force_shutdown()
        app.updater.stop.assert_awaited_once()
        app.stop.assert_awaited_once()
        app.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_in_webhook_mode(self):
        adapter = TelegramAdapter(PlatformConfig(enabled=True, token="123:abc", extra={
            "polling": False, "webhook_url": "https://bot.example.com/webhook/telegram",
            "webhook_secret": "s3cret",
        }))
        app = _make_app()
        with patch("chatbridge.platforms.telegram.Application") as application:
            application.builder.return_value.token.return_value.build.return_value = app
            await adapter.connect()
        try:
            app.updater.start_polling.assert_not_awaited()
            kwargs = app.bot.set_webhook.call_args.kwargs
            assert kwargs["url"] == "https://bot.example.com/webhook/telegram"
            assert kwargs["secret_token"] == "s3cret"
        finally:
            await adapter.force_shutdown()

    @pytest.mark.asyncio
    async def test_bad_token_fails_connect(self, adapter):
        app = _make_app()
        app.initialize.side_effect = InvalidToken()
        app.updater.running = False
        app.running = False
        with patch("chatbridge.platforms.telegram.Application") as application:
            application.builder.return_value.token.return_value.build.return_value = app
            with pytest.raises(AdapterConnectionError):
                await adapter.connect()
        app.shutdown.assert_awaited_once()
        assert adapter._bot is None

    @pytest.mark.asyncio
    async def test_cancelled_handshake_releases_application(self, adapter):
        app = _make_app()

        async def never_returns(**kwargs):
            await asyncio.Event().wait()

        app.updater.start_polling.side_effect = never_returns
        with patch("chatbridge.platforms.telegram.Application") as application:
            application.builder.return_value.token.return_value.build.return_value = app
            task = asyncio.create_task(adapter.connect())
            while not app.updater.start_polling.await_count:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        await adapter.force_shutdown()
        app.updater.stop.assert_awaited_once()
        app.stop.assert_awaited_once()
        app.shutdown.assert_awaited_once()
        assert adapter._app is None

    @pytest.mark.asyncio
    async def test_probe(self, connected):
        connected._app.updater.running = True
        await connected._probe()
        connected._bot.get_me.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_probe_detects_stopped_updater(self, connected):
        connected._app.updater.running = False
        with pytest.raises(TransientTransportError):
            await connected._probe()

    @pytest.mark.asyncio
    async def test_probe_without_application(self, adapter):
        with pytest.raises(TransientTransportError):
            await adapter._probe()

    @pytest.mark.asyncio
    async def test_validation_apology_in_english(self, connected):
        handler = AsyncMock()
        connected.set_message_handler(handler)
        await connected.process_inbound(_update(text="x" * 4097))
        handler.assert_not_awaited()
        connected._bot.send_message.assert_awaited_once_with(
            chat_id="100",
            text="Sorry, I cannot process your message. Please try again.",
            message_thread_id=None,
        )
