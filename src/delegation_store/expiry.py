# Copyright (c) Delegation Store Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Background expiry of proxy credentials.

Runs ``purge_expired`` on a fixed interval for backends whose engine has
no TTL of its own. Readers never depend on it: expired credentials are
already reported as absent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from delegation_store.storage.provider import AbstractDelegationStore

logger = logging.getLogger(__name__)


class ExpiryMonitor:
    """Periodically purges expired credentials from a store.

    Args:
        store: The store to purge.
        interval_seconds: Pause between passes. Defaults to the store's
            ``purge_interval_seconds``.
    """

    def __init__(
        self,
        store: AbstractDelegationStore,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else store.config.purge_interval_seconds
        )
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> int:
        """Run a single purge pass. Returns the number of records removed."""
        return await self.store.purge_expired()

    async def start(self) -> None:
        """Start the background purge task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Expiry monitor started, interval %ss", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background purge task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry monitor stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry purge pass failed")
            await asyncio.sleep(self.interval_seconds)
