"""
Exception hierarchy for the chat bridge.

Only ConfigurationError and AdapterConnectionError escape an adapter while
it connects. The transport error kinds are absorbed inside the adapter and
turned into health updates or a forced shutdown.
"""

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base exception for bridge errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(BridgeError):
    """Missing or invalid credentials/settings. Never retried."""


class AdapterConnectionError(BridgeError):
    """The platform handshake failed; the adapter instance must be discarded."""


class TransientTransportError(BridgeError):
    """Network blip (reset, timeout, dropped connection)."""


class CriticalTransportError(BridgeError):
    """Authentication/authorization or fatal protocol failure at runtime."""


class MessageValidationError(BridgeError):
    """Inbound message rejected by the validation gate."""


class SendError(BridgeError):
    """Outbound delivery to the platform failed."""


class NotConnectedError(SendError):
    """Send attempted on an adapter that is not connected."""


class AgentError(BridgeError):
    """The agent backend could not produce a response."""
