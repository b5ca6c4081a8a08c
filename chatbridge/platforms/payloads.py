"""
Raw payload shapes and the helpers adapters share while normalizing them.

Every transport delivers one of two layouts:
- LegacyShape: the message fields sit at the top level of the payload
- EnvelopeShape: the message lives inside a wrapper (an update, an event)

Adapters detect the shape first and only then map fields, so each mapping
function deals with exactly one layout.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from chatbridge.platforms.base import MessageType

UNKNOWN_SENDER_ID = "unknown"
UNKNOWN_SENDER_NAME = "Unknown Sender"

DOCUMENT_PLACEHOLDER = "[Document]"
PHOTO_PLACEHOLDER = "[Photo]"
AUDIO_PLACEHOLDER = "[Audio]"
VIDEO_PLACEHOLDER = "[Video]"
STICKER_PLACEHOLDER = "[Sticker]"
UNSUPPORTED_PLACEHOLDER = "[Unsupported message type]"
EMPTY_PLACEHOLDER = "[Empty message]"


@dataclass
class LegacyShape:
    """Flat payload: message fields at the top level."""
    data: Dict[str, Any]


@dataclass
class EnvelopeShape:
    """Wrapped payload: ``body`` is the message, ``envelope`` the wrapper."""
    envelope: Dict[str, Any]
    body: Dict[str, Any]
    kind: str = ""


PayloadShape = Union[LegacyShape, EnvelopeShape]


def detect_shape(raw: Dict[str, Any], envelope_keys: Iterable[str]) -> PayloadShape:
    """
    Pick the layout of a raw payload.

    The first key in ``envelope_keys`` holding a dict marks an envelope;
    anything else is treated as the legacy flat layout.
    """
    for key in envelope_keys:
        body = raw.get(key)
        if isinstance(body, dict):
            return EnvelopeShape(envelope=raw, body=body, kind=key)
    return LegacyShape(data=raw)


def fallback_message_id() -> str:
    """Current time in milliseconds, used when a payload carries no id."""
    return str(int(time.time() * 1000))


def first_present(*values: Any) -> Optional[Any]:
    """Return the first value that is not None or an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def parse_timestamp(value: Any, unit: str = "ms") -> datetime:
    """
    Convert a transport timestamp (int, float or numeric string) to an aware
    datetime. ``unit`` is "s" or "ms". Unparseable values map to now.
    """
    try:
        number = float(value)
        if unit == "ms":
            number = number / 1000
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def location_placeholder(latitude: Any, longitude: Any) -> str:
    return f"[Location: {latitude}, {longitude}]"


def classify_content(
    text: Optional[str],
    document: Optional[Dict[str, Any]] = None,
    photo: bool = False,
    audio: bool = False,
    video: bool = False,
    sticker: Optional[Dict[str, Any]] = None,
    location: Optional[Dict[str, Any]] = None,
) -> Tuple[MessageType, str]:
    """
    Decide message type and content from the parts a payload carries.

    Type priority is document > photo > audio > video > sticker > location >
    text. Content is ``text`` whenever it is non-empty, otherwise the
    placeholder for the winning type.
    """
    if document is not None:
        name = document.get("file_name") or document.get("fileName") or document.get("name")
        return MessageType.FILE, text or name or DOCUMENT_PLACEHOLDER
    if photo:
        return MessageType.IMAGE, text or PHOTO_PLACEHOLDER
    if audio:
        return MessageType.AUDIO, text or AUDIO_PLACEHOLDER
    if video:
        return MessageType.VIDEO, text or VIDEO_PLACEHOLDER
    if sticker is not None:
        return MessageType.STICKER, text or sticker.get("emoji") or STICKER_PLACEHOLDER
    if location is not None:
        placeholder = location_placeholder(
            location.get("latitude", location.get("lat")),
            location.get("longitude", location.get("lon", location.get("lng"))),
        )
        return MessageType.LOCATION, text or placeholder
    if text:
        return MessageType.TEXT, text
    return MessageType.TEXT, UNSUPPORTED_PLACEHOLDER
