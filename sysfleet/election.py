"""Coordinator election.

The coordinator is whoever holds the well-known dashboard port. Members keep
watching that port and try to take it over when it goes quiet; the OS bind is
the only arbiter, so two members racing for it cannot both win.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional

from aiohttp import ClientError, ClientTimeout

from sysfleet.context import FleetContext, Role
from sysfleet.probe import is_port_open

logger = logging.getLogger("sysfleet.election")

PORT_CHECK_TIMEOUT = 0.2


class Election:
    def __init__(
        self,
        ctx: FleetContext,
        try_bind: Callable[[], Awaitable[bool]],
        rng: Optional[random.Random] = None,
    ):
        self.ctx = ctx
        self.config = ctx.config
        self.try_bind = try_bind
        self.rng = rng or random.Random()
        self.on_promoted: List[Callable[[], None]] = []
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def coordinator_alive(self) -> bool:
        """True when something answers on the coordinator port (HTTP first, then a bare connect)."""
        port = self.config.web_port
        client = await self.ctx.ensure_http_client()
        try:
            async with client.get(f"http://127.0.0.1:{port}/api/bot/instances", timeout=ClientTimeout(total=PORT_CHECK_TIMEOUT)) as r:
                if r.status == 200:
                    return True
        except (ClientError, asyncio.TimeoutError):
            pass
        return await is_port_open("127.0.0.1", port, PORT_CHECK_TIMEOUT)

    async def elect(self) -> Role:
        """Decide the startup role. A member starts monitoring the coordinator port."""
        if not await self.coordinator_alive() and await self.try_bind():
            self._promote()
            return Role.COORDINATOR
        self.ctx.role = Role.MEMBER
        logger.info(f"running as member, coordinator port {self.config.web_port} is taken")
        self.start_monitor()
        return Role.MEMBER

    def _promote(self):
        self.ctx.role = Role.COORDINATOR
        logger.info(f"this instance is now the coordinator on port {self.config.web_port}")
        for cb in self.on_promoted:
            try:
                cb()
            except Exception:
                logger.exception("promotion callback failed")

    # ----------------------------
    # Member monitor
    # ----------------------------
    def start_monitor(self):
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.ensure_future(self._monitor())

    async def stop(self):
        self._stop.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pause(self, seconds: float) -> bool:
        """Sleep unless stopped first; True when the monitor should keep going."""
        try:
            await asyncio.wait_for(self._stop.wait(), seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _monitor(self):
        cfg = self.config
        while not self._stop.is_set():
            if not await self._pause(cfg.monitor_interval + self.rng.uniform(0, cfg.monitor_jitter)):
                return
            try:
                if await self.coordinator_alive():
                    continue
                delay = self.rng.uniform(*cfg.takeover_delay)
                logger.info(f"coordinator port looks free, re-checking in {delay:.1f}s")
                if not await self._pause(delay):
                    return
                if await self.coordinator_alive():
                    logger.info("coordinator came back, staying member")
                    continue
                if await self.try_bind():
                    self._promote()
                    return
                logger.warning("takeover failed, continuing to monitor")
            except Exception:
                logger.exception("coordinator monitor iteration failed")
