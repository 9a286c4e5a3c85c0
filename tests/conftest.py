"""Shared helpers: config factory, an in-process fake bot instance speaking the
control protocol on an ephemeral loopback port, and a canned release feed."""
import asyncio
import json
import socket
import time
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from sysfleet.config import FleetConfig, PortRange
from sysfleet.context import FleetContext
from sysfleet.host import LocalBotHost, SimpleBotUnit
from sysfleet.updater import ReleaseInfo


# ---- Helpers ----

def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_config(tmp_path, **overrides) -> FleetConfig:
    exe = tmp_path / "bot.bin"
    if not exe.exists():
        exe.write_bytes(b"old")
    values = dict(
        state_dir=str(tmp_path),
        control_host="127.0.0.1",
        web_host="127.0.0.1",
        web_port=free_port(),
        control_port_start=free_port(),
        standard_range=None,
        scan_range=None,
        bot_name="LocalBot",
        bot_kind="RaidBot",
        version="1.0",
        executable_path=str(exe),
        cache_ttl=2.0,
        remote_scan_timeout=0.5,
        monitor_interval=0.05,
        monitor_jitter=0.0,
        takeover_delay=(0.01, 0.02),
        update_idle_timeout=0.5,
        update_poll_interval=0.05,
        update_instance_gap=0.0,
        restart_idle_timeout=0.5,
        restart_poll_interval=0.05,
        slave_stop_grace=0.01,
        slave_exit_timeout=3.0,
        slave_online_timeout=5.0,
        master_restart_delay=0.01,
        post_restart_delay=0.01,
        post_restart_attempts=2,
    )
    values.update(overrides)
    return FleetConfig(**values)


def make_host(kind="RaidBot", version="1.0", units: Optional[List] = None) -> LocalBotHost:
    if units is None:
        units = [SimpleBotUnit("alpha", "RUNNING"), SimpleBotUnit("beta", "IDLE")]
    return LocalBotHost(name="LocalBot", kind=kind, version=version, mode="SV", units=units)


def make_context(cfg: FleetConfig, host: Optional[LocalBotHost] = None, control_port: int = 1) -> FleetContext:
    ctx = FleetContext(cfg, host or make_host(kind=cfg.bot_kind, version=cfg.version))
    ctx.control_port = control_port
    return ctx


class FakeBotServer:
    """A bot process as seen over the control protocol."""

    def __init__(
        self,
        name: str = "RemoteBot",
        kind: Optional[str] = "PokeBot",
        version: str = "1.0",
        units: Optional[Dict[str, str]] = None,
        obey_idle: bool = True,
        error_verbs: Tuple[str, ...] = (),
        info_reply: Optional[str] = None,
        hang: bool = False,
        restart_delay: float = 0.3,
        events: Optional[list] = None,
    ):
        self.name = name
        self.kind = kind
        self.version = version
        self.units = dict(units if units is not None else {"u1": "RUNNING"})
        self.obey_idle = obey_idle
        self.error_verbs = error_verbs
        self.info_reply = info_reply
        self.hang = hang
        self.restart_delay = restart_delay
        self.events = events if events is not None else []
        self.received: List[str] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self, port: int = 0) -> int:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self.port

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def _record(self, verb: str):
        self.received.append(verb)
        self.events.append((time.monotonic(), self.port, verb))

    async def _handle(self, reader, writer):
        try:
            line = (await reader.readline()).decode().strip()
            if not line:
                return
            verb = line.split(":")[0].upper()
            self._record(verb)
            if self.hang:
                await reader.read()
                return
            writer.write((self.reply(verb) + "\n").encode())
            await writer.drain()
            if verb == "SELFRESTARTALL":
                asyncio.ensure_future(self._restart())
        finally:
            writer.close()

    async def _restart(self):
        port = self.port
        await self.stop()
        self._record("EXITED")
        await asyncio.sleep(self.restart_delay)
        await self.start(port)
        self._record("ONLINE")

    def _set_all(self, state: str):
        for k in self.units:
            self.units[k] = state

    def reply(self, verb: str) -> str:
        if verb in self.error_verbs:
            return f"ERROR: {verb} rejected"
        if verb == "INFO":
            if self.info_reply is not None:
                return self.info_reply
            info = {"Version": self.version, "Mode": "SV", "Name": self.name, "Port": self.port}
            if self.kind:
                info["BotType"] = self.kind
            return json.dumps(info)
        if verb == "LISTBOTS":
            return json.dumps({"Bots": [{"Id": k, "Name": k, "Status": v} for k, v in self.units.items()]})
        if verb == "IDLEALL":
            if self.obey_idle:
                self._set_all("IDLE")
            return "OK: IDLE command sent to all bots"
        if verb == "STOPALL":
            self._set_all("STOPPED")
            return "OK: STOP command sent to all bots"
        if verb == "STARTALL":
            self._set_all("RUNNING")
            return "OK: START command sent to all bots"
        if verb == "UPDATE":
            return "OK: Update triggered"
        if verb == "SELFRESTARTALL":
            return "OK: Self-restart initiated"
        if verb.endswith("ALL"):
            return f"OK: {verb[:-3]} command sent to all bots"
        return f"ERROR: Unknown command '{verb}'"


class FakeFeed:
    """Release feed with fixed answers per bot kind."""

    def __init__(self, versions: Dict[str, Optional[str]]):
        self.versions = versions
        self.calls: List[str] = []

    async def latest(self, kind: str) -> Optional[ReleaseInfo]:
        self.calls.append(kind)
        tag = self.versions.get(kind)
        if tag is None:
            return None
        return ReleaseInfo(tag=tag, body="fixes", assets=[{"name": "bot.bin", "browser_download_url": "http://example.invalid/bot.bin"}])

    async def latest_version(self, kind: str) -> Optional[str]:
        release = await self.latest(kind)
        return release.tag if release else None


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


# ---- Fixtures ----

@pytest_asyncio.fixture
async def fake_servers():
    """Factory: ``await fake_servers(**kwargs)`` starts a FakeBotServer; all are stopped afterwards."""
    started: List[FakeBotServer] = []

    async def factory(port: int = 0, **kwargs) -> FakeBotServer:
        srv = FakeBotServer(**kwargs)
        await srv.start(port)
        started.append(srv)
        return srv

    yield factory
    for srv in started:
        await srv.stop()


def window(*servers) -> PortRange:
    ports = [s.port for s in servers]
    return PortRange(min(ports), max(ports))


async def adjacent_servers(fake_servers, *server_kwargs) -> List[FakeBotServer]:
    """Start one FakeBotServer per kwargs dict on consecutive ports, so a small window covers them all."""
    for _ in range(20):
        servers = [await fake_servers(**server_kwargs[0])]
        try:
            for i, kwargs in enumerate(server_kwargs[1:], start=1):
                servers.append(await fake_servers(port=servers[0].port + i, **kwargs))
            return servers
        except OSError:
            for srv in servers:
                await srv.stop()
    raise RuntimeError("no run of consecutive free ports found")
