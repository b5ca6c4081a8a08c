"""
Connection health tracking for platform adapters.

A ConnectionHealth record is the single authority on whether an adapter is
usable. The adapter feeds it the outcome of every health check, reconnect
and transport error; callers only ever ask ``is_healthy()``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

MAX_CONSECUTIVE_FAILURES = 5


@dataclass
class ConnectionHealth:
    """Liveness record for one adapter connection."""
    is_connected: bool = False
    last_health_check_time: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    reconnect_attempts: int = 0

    def update(self, success: bool, error: Optional[str] = None) -> None:
        """Record the outcome of a health check, send or reconnect."""
        self.last_health_check_time = datetime.now()
        if success:
            self.is_connected = True
            self.consecutive_failures = 0
            self.last_error = None
        else:
            self.is_connected = False
            self.consecutive_failures += 1
            if error:
                self.last_error = error

    def is_healthy(self) -> bool:
        return self.is_connected and self.consecutive_failures < MAX_CONSECUTIVE_FAILURES

    def mark_disconnected(self) -> None:
        """Drop the connected flag without counting a failure (shutdown)."""
        self.is_connected = False

    def record_reconnect_attempt(self) -> int:
        self.reconnect_attempts += 1
        return self.reconnect_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "is_healthy": self.is_healthy(),
            "last_health_check_time": (
                self.last_health_check_time.isoformat()
                if self.last_health_check_time else None
            ),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "reconnect_attempts": self.reconnect_attempts,
        }
