"""
Adapter registry.

Holds at most one live adapter per platform. All slot changes go through
the registry under a single asyncio.Lock, so two callers asking for the same
platform at once still end up sharing one connection.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from chatbridge.config import Platform
from chatbridge.errors import ConfigurationError
from chatbridge.platforms.base import BasePlatformAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], BasePlatformAdapter]


class AdapterRegistry:
    """One slot per platform, owned by the runner."""

    def __init__(self):
        self._adapters: Dict[Platform, BasePlatformAdapter] = {}
        self._lock = asyncio.Lock()

    async def create(
        self, platform: Platform, factory: AdapterFactory
    ) -> Optional[BasePlatformAdapter]:
        """
        Return the live adapter for ``platform``, building one if needed.

        A healthy existing adapter is reused. An unhealthy or shut-down one
        is force-shut-down and replaced. ConfigurationError from the factory
        propagates; a failed connect returns None.
        """
        async with self._lock:
            existing = self._adapters.get(platform)
            if existing is not None:
                if existing.is_healthy():
                    return existing
                logger.info("Replacing unhealthy %s adapter", platform.value)
                del self._adapters[platform]
                await self._force_shutdown(existing)

            adapter = factory()
            try:
                await adapter.connect()
            except ConfigurationError:
                await self._force_shutdown(adapter)
                raise
            except Exception as e:
                logger.error("Failed to connect %s adapter: %s", platform.value, e)
                await self._force_shutdown(adapter)
                return None

            self._adapters[platform] = adapter
            return adapter

    def get(self, platform: Platform) -> Optional[BasePlatformAdapter]:
        return self._adapters.get(platform)

    def adapters(self) -> Dict[Platform, BasePlatformAdapter]:
        """Snapshot of the current slots."""
        return dict(self._adapters)

    async def release(self, platform: Platform) -> Optional[BasePlatformAdapter]:
        """Clear a slot without shutting the adapter down."""
        async with self._lock:
            return self._adapters.pop(platform, None)

    async def shutdown(self, platform: Platform) -> None:
        async with self._lock:
            adapter = self._adapters.pop(platform, None)
        if adapter is not None:
            await self._force_shutdown(adapter)

    async def shutdown_all(self) -> List[Exception]:
        """
        Force-shut-down every adapter. Errors are logged and returned, never
        raised, so one failing adapter does not keep the others alive.
        """
        async with self._lock:
            adapters = list(self._adapters.items())
            self._adapters.clear()

        errors: List[Exception] = []
        for platform, adapter in adapters:
            try:
                await adapter.force_shutdown()
            except Exception as e:
                logger.error("Error shutting down %s adapter: %s", platform.value, e)
                errors.append(e)
                if adapter.is_shutdown:
                    continue
                # force_shutdown failed before the adapter was marked shut down
                try:
                    await adapter.disconnect()
                except Exception as e2:
                    logger.error("Fallback disconnect of %s failed: %s", platform.value, e2)
        return errors

    @staticmethod
    async def _force_shutdown(adapter: BasePlatformAdapter) -> None:
        try:
            await adapter.force_shutdown()
        except Exception as e:
            logger.warning("Error shutting down %s adapter: %s", adapter.platform.value, e)
