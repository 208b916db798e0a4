"""
Background sweep — periodically purges expired OAuth states and refreshes
credentials that are about to expire.

Lazy refresh in ``ensure_fresh`` is always in effect; the sweep only
moves the refresh latency off the request path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from connectors.service import ConnectorService

logger = logging.getLogger(__name__)


class RefreshSweeper:
    def __init__(self, service: ConnectorService, interval_seconds: float) -> None:
        self._service = service
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0:
            logger.info("Connector refresh sweep disabled")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="connector-refresh-sweep")
        logger.info("Connector refresh sweep every %ss", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> None:
        purged, refreshed = await self._service.sweep()
        if purged or refreshed:
            logger.info("Sweep purged %d states, refreshed %d credentials", purged, refreshed)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                # Keep sweeping; the next pass retries whatever failed.
                logger.exception("Connector refresh sweep failed")
