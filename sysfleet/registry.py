"""Fleet discovery.

Builds the current view of the fleet from three sources: this process, port
markers of live local processes, and a bounded scan of the local port window
and of any configured remote nodes. Results are cached for a short window.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Set

import psutil

from sysfleet.config import MARKER_PREFIXES, PortRange
from sysfleet.context import FleetContext
from sysfleet.markers import scan_markers
from sysfleet.models import BotUnitStatus, Instance, guess_kind, is_idle_state, normalize_kind
from sysfleet.probe import FAST, STANDARD, Timeouts, is_port_open, probe

logger = logging.getLogger("sysfleet.discovery")

INFO_FIELDS = ("Version", "Name", "BotType")


def parse_info(text: str) -> Optional[Dict[str, Any]]:
    """INFO reply as a dict, or None unless it is a JSON object naming a version, name or kind."""
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or not any(k in data for k in INFO_FIELDS):
        return None
    return data


def parse_bot_list(text: str) -> Optional[List[BotUnitStatus]]:
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    bots = data.get("Bots") if isinstance(data, dict) else None
    if not isinstance(bots, list):
        return None
    return [
        BotUnitStatus(name=str(b.get("Name", "") or "Unknown"), status=str(b.get("Status", "") or ""))
        for b in bots
        if isinstance(b, dict)
    ]


def instance_from_info(address: str, port: int, info: Dict[str, Any], *, is_remote: bool) -> Instance:
    name = str(info.get("Name") or "Unknown Bot")
    version = str(info.get("Version") or "Unknown")
    if info.get("BotType"):
        kind = normalize_kind(str(info["BotType"]))
    else:
        kind = guess_kind(name, version)
    pid = info.get("ProcessId")
    return Instance(
        port=port,
        address=address,
        pid=int(pid) if isinstance(pid, int) and not is_remote else None,
        name=name,
        version=version,
        mode=str(info.get("Mode") or "Unknown"),
        bot_kind=kind,
        online=True,
        is_remote=is_remote,
    )


class InstanceRegistry:
    def __init__(self, ctx: FleetContext):
        self.ctx = ctx
        self.config = ctx.config
        self._known: Set[str] = set()
        self._cache: Optional[List[Instance]] = None
        self._cache_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self):
        self._cache = None

    def local_port_window(self) -> List[int]:
        return self.config.scan_window()

    def port_range_for_node(self, ip: str) -> PortRange:
        return self.config.tailscale.port_range_for_node(ip)

    def _fresh(self) -> bool:
        return self._cache is not None and time.monotonic() - self._cache_at < self.config.cache_ttl

    async def discover(self, force: bool = False) -> List[Instance]:
        """Local instance first, then every other instance found. Never raises."""
        if force or not self._fresh():
            async with self._lock:
                if force or not self._fresh():
                    try:
                        others = await self._scan()
                    except Exception:
                        logger.exception("discovery pass failed")
                        others = list(self._cache or [])
                    self._cache = others
                    self._cache_at = time.monotonic()
        return [self.ctx.local_instance()] + list(self._cache or [])

    # ----------------------------
    # Scan
    # ----------------------------
    async def _scan(self) -> List[Instance]:
        found: Dict[str, Instance] = {}
        ts = self.config.tailscale

        if ts.enabled and ts.remote_nodes:
            for inst in await self._scan_remote_nodes():
                found[inst.key] = inst

        resolved = {self.ctx.control_port}
        # a non-master node leaves process correlation to the master
        if not ts.enabled or ts.is_master_node:
            for inst in await self._scan_markers():
                found[inst.key] = inst
                resolved.add(inst.port)

        ports = [p for p in self.local_port_window() if p not in resolved]
        results = await asyncio.gather(*(self._probe_instance("127.0.0.1", p, FAST) for p in ports))
        for inst in results:
            if inst is not None:
                found[inst.key] = inst

        self._log_changes(found)
        return list(found.values())

    async def _probe_instance(self, address: str, port: int, timeouts: Timeouts, *, is_remote: bool = False) -> Optional[Instance]:
        res = await probe(address, port, "INFO", timeouts)
        if res.failed:
            return None
        info = parse_info(res.text)
        if info is None:
            return None
        inst = instance_from_info(address, port, info, is_remote=is_remote)
        bots = await probe(address, port, "LISTBOTS", timeouts)
        units = parse_bot_list(bots.text) if not bots.failed else None
        if units is not None:
            inst.units = units
            inst.bot_count = len(units)
        return inst

    async def _scan_remote_nodes(self) -> List[Instance]:
        ts = self.config.tailscale
        tasks = []
        timeouts = Timeouts(connect=ts.connection_timeout_seconds, read=STANDARD.read)
        for ip in ts.remote_nodes:
            for port in self.port_range_for_node(ip).ports():
                tasks.append(asyncio.ensure_future(self._probe_instance(ip, port, timeouts, is_remote=True)))
        if not tasks:
            return []
        done, pending = await asyncio.wait(tasks, timeout=self.config.remote_scan_timeout)
        for t in pending:
            t.cancel()
        if pending:
            logger.debug("remote scan timed out for some ports", extra={"pending": len(pending)})
        out = []
        for t in done:
            if t.cancelled() or t.exception() is not None:
                continue
            if t.result() is not None:
                out.append(t.result())
        return out

    async def _scan_markers(self) -> List[Instance]:
        prefixes = set(MARKER_PREFIXES.values()) | {self.config.marker_prefix}
        out = []
        for pid, port in scan_markers(self.config.marker_dir, prefixes).items():
            if pid == self.ctx.pid or port == self.ctx.control_port:
                continue
            if not self.config.in_scan_window(port):
                continue
            if not psutil.pid_exists(pid):
                continue
            inst = None
            if await is_port_open("127.0.0.1", port, STANDARD.connect):
                inst = await self._probe_instance("127.0.0.1", port, STANDARD)
            if inst is None:
                inst = Instance(port=port, name="Unknown Bot", version="Unknown", mode="Unknown", online=False)
            inst.pid = pid
            out.append(inst)
        return out

    def _log_changes(self, found: Dict[str, Instance]):
        current = set(found)
        for key in sorted(current - self._known):
            inst = found[key]
            logger.info(f"found new bot instance on {key}: {inst.bot_kind}", extra={"instance": key, "kind": inst.bot_kind})
        for key in sorted(self._known - current):
            logger.info(f"bot instance on {key} is no longer available", extra={"instance": key})
        self._known = current

    # ----------------------------
    # Unit states
    # ----------------------------
    async def unit_states(self, inst: Instance) -> Optional[List[BotUnitStatus]]:
        """Fresh unit states for one instance, None when it cannot be read."""
        if self.ctx.is_local_target(inst.address, inst.port) or inst.pid == self.ctx.pid:
            return [BotUnitStatus(u.name, u.read_state()) for u in self.ctx.host.list_units()]
        res = await probe(inst.address, inst.port, "LISTBOTS", STANDARD)
        if res.failed:
            return None
        return parse_bot_list(res.text)

    async def idle_status(self) -> Dict[str, Any]:
        instances = [i for i in await self.discover() if i.online]
        states = await asyncio.gather(*(self.unit_states(i) for i in instances))
        rows = []
        for inst, units in zip(instances, states):
            if units is None:
                continue
            non_idle = [u for u in units if not is_idle_state(u.status)]
            rows.append({
                "Port": inst.port,
                "IP": inst.address,
                "ProcessId": inst.pid,
                "TotalBots": len(units),
                "IdleBots": len(units) - len(non_idle),
                "NonIdleBots": [{"Name": u.name, "Status": u.status.upper()} for u in non_idle],
                "AllIdle": not non_idle,
            })
        return {
            "Instances": rows,
            "TotalBots": sum(r["TotalBots"] for r in rows),
            "TotalIdleBots": sum(r["IdleBots"] for r in rows),
            "AllBotsIdle": all(r["AllIdle"] for r in rows),
        }
