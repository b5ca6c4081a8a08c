"""Shared fixtures: an in-memory adapter with scriptable transport hooks."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from chatbridge.config import Platform, PlatformConfig
from chatbridge.platforms.base import BasePlatformAdapter, ChatMessage, ChatResponse


class FakeAdapter(BasePlatformAdapter):
    """Adapter whose transport is a few attributes tests can poke at."""

    def __init__(self, config: Optional[PlatformConfig] = None, platform: Platform = Platform.TELEGRAM):
        super().__init__(
            config or PlatformConfig(
                enabled=True, token="fake", health_check_interval=3600, reconnect_delay=0
            ),
            platform,
        )
        self.handle: Optional[object] = None
        self.establish_calls = 0
        self.establish_error: Optional[BaseException] = None
        self.establish_gate: Optional[asyncio.Event] = None
        self.probe_error: Optional[BaseException] = None
        self.deliver_error: Optional[BaseException] = None
        self.sent: List[Tuple[str, ChatResponse]] = []
        self.teardown_calls = 0
        self.listener_stops = 0

    async def _establish(self) -> None:
        self.establish_calls += 1
        if self.establish_gate is not None:
            await self.establish_gate.wait()
        if self.establish_error is not None:
            raise self.establish_error
        self.handle = object()

    async def _teardown(self) -> None:
        self.teardown_calls += 1
        self.handle = None

    async def _stop_listener(self) -> None:
        self.listener_stops += 1

    async def _probe(self) -> None:
        if self.probe_error is not None:
            raise self.probe_error

    async def _deliver(self, destination: str, response: ChatResponse) -> None:
        if self.deliver_error is not None:
            raise self.deliver_error
        self.sent.append((destination, response))

    def _has_handle(self) -> bool:
        return self.handle is not None

    def normalize(self, raw: Dict[str, Any]) -> Optional[ChatMessage]:
        if raw.get("ignore"):
            return None
        return ChatMessage(
            id=raw.get("id", "1"),
            content=raw.get("content", ""),
            sender_id=raw.get("sender", "u1"),
            platform=self.platform,
            metadata={"threadId": raw.get("thread", "t1")},
        )


@pytest.fixture()
def fake_adapter():
    return FakeAdapter()


@pytest.fixture()
def make_fake_adapter():
    def _make(**kwargs):
        return FakeAdapter(**kwargs)
    return _make


async def drain_background(adapter: BasePlatformAdapter) -> None:
    """Wait for every detached task the adapter has spawned so far."""
    tasks = list(adapter._background_tasks)
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
