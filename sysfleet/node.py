"""One fleet process: wires the components together and owns their lifecycle."""
from __future__ import annotations

import logging
from typing import Optional

from sysfleet.config import FleetConfig
from sysfleet.context import FleetContext, Role
from sysfleet.control import ControlServer
from sysfleet.election import Election
from sysfleet.gateway import Gateway
from sysfleet.host import BotHost
from sysfleet.markers import remove_marker, write_marker
from sysfleet.registry import InstanceRegistry
from sysfleet.restart import RestartManager
from sysfleet.updater import ReleaseFeed, SelfUpdater, UpdateOrchestrator

logger = logging.getLogger("sysfleet")


class FleetNode:
    def __init__(self, config: FleetConfig, host: BotHost, pid: Optional[int] = None):
        self.config = config
        self.ctx = FleetContext(config, host, pid)
        self.registry = InstanceRegistry(self.ctx)
        self.feed = ReleaseFeed(self.ctx)
        self.self_updater = SelfUpdater(self.ctx, self.feed)
        self.updates = UpdateOrchestrator(self.ctx, self.registry, self.feed, self.self_updater)
        self.restarts = RestartManager(self.ctx, self.registry)
        self.control = ControlServer(self.ctx, on_update=self.self_updater.self_update)
        self.gateway = Gateway(self.ctx, self.registry, self.updates, self.restarts, self.feed)
        self.election = Election(self.ctx, self.gateway.bind)
        self.election.on_promoted.append(self.restarts.start_schedule)

    async def start(self) -> Role:
        cfg = self.config
        port = await self.control.start_first_free(cfg.control_port_start)
        self.ctx.control_port = port
        self.ctx.marker_path = write_marker(cfg.marker_dir, cfg.marker_prefix, self.ctx.pid, port)
        role = await self.election.elect()
        self.restarts.check_post_restart()
        logger.info(f"node started as {role.value}", extra={"pid": self.ctx.pid, "control_port": port})
        return role

    async def stop(self):
        await self.election.stop()
        self.restarts.stop()
        await self.gateway.close()
        await self.control.stop()
        remove_marker(self.ctx.marker_path)
        self.ctx.marker_path = None
        await self.ctx.close_http_client()
        logger.info("node stopped")

    async def run(self):
        """Start, then serve until a shutdown is requested."""
        await self.start()
        try:
            await self.ctx.wait_for_shutdown()
        finally:
            await self.stop()
