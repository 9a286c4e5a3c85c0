"""Per-process fleet state, owned by the node and passed to every component."""
from __future__ import annotations

import asyncio
import enum
import logging
import os
from typing import Any, Dict, Optional

from aiohttp import ClientSession

from sysfleet.config import FleetConfig
from sysfleet.host import BotCommand, BotHost
from sysfleet.models import BotUnitStatus, Instance, normalize_kind

logger = logging.getLogger("sysfleet")

LOOPBACK = {"127.0.0.1", "localhost", "::1", ""}


class Role(str, enum.Enum):
    COORDINATOR = "coordinator"
    MEMBER = "member"


class FleetContext:
    def __init__(self, config: FleetConfig, host: BotHost, pid: Optional[int] = None):
        self.config = config
        self.host = host
        self.pid = pid if pid is not None else os.getpid()
        self.control_port: int = 0
        self.role = Role.MEMBER
        self.marker_path: Optional[str] = None
        self.restart_after_shutdown = False
        self._shutdown = asyncio.Event()
        self._http: Optional[ClientSession] = None
        self._http_lock = asyncio.Lock()

    @property
    def is_master(self) -> bool:
        return self.role is Role.COORDINATOR

    @property
    def name(self) -> str:
        return self.host.name or self.config.bot_name or f"{self.host.kind or self.config.bot_kind}-{self.pid}"

    # ----------------------------
    # HTTP client
    # ----------------------------
    async def ensure_http_client(self) -> ClientSession:
        """Return a shared aiohttp session, creating it lazily when needed."""
        async with self._http_lock:
            if self._http is None or self._http.closed:
                self._http = ClientSession()
            return self._http

    async def close_http_client(self):
        client, self._http = self._http, None
        if client:
            await client.close()

    # ----------------------------
    # Local instance
    # ----------------------------
    def is_local_target(self, address: str, port: int) -> bool:
        return (address or "").strip().lower() in LOOPBACK and port == self.control_port

    def dispatch_local(self, command: BotCommand):
        """Queue a fleet-wide command for the local units; the caller does not wait."""
        asyncio.get_running_loop().call_soon(self._send_all, command)

    def _send_all(self, command: BotCommand):
        try:
            self.host.send_all(command)
        except Exception:
            logger.exception("local command failed", extra={"command": command.value})

    def local_instance(self) -> Instance:
        units = self.host.list_units()
        return Instance(
            port=self.control_port,
            address="127.0.0.1",
            pid=self.pid,
            name=self.name,
            version=self.host.version or self.config.version,
            mode=self.host.mode or self.config.mode,
            bot_kind=normalize_kind(self.host.kind or self.config.bot_kind),
            bot_count=len(units),
            online=True,
            is_master=self.is_master,
            is_remote=False,
            units=[BotUnitStatus(u.name, u.read_state()) for u in units],
        )

    def instance_info(self) -> Dict[str, Any]:
        return {
            "Version": self.host.version or self.config.version,
            "Mode": self.host.mode or self.config.mode,
            "Name": self.name,
            "BotType": normalize_kind(self.host.kind or self.config.bot_kind),
            "ProcessId": self.pid,
            "Port": self.control_port,
        }

    # ----------------------------
    # Shutdown
    # ----------------------------
    def request_shutdown(self, restart: bool = False):
        if restart:
            self.restart_after_shutdown = True
        logger.info("shutdown requested", extra={"restart": restart})
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def wait_for_shutdown(self):
        await self._shutdown.wait()
