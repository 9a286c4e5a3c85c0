"""Node configuration.

Settings come from environment variables (read once at import, like every
other node setting) plus an optional JSON settings file for the multi-host
section, pointed to by ``SYSFLEET_CONFIG``.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger("sysfleet.config")

# ----------------------------
# Environment
# ----------------------------
STATE_DIR = os.environ.get("STATE_DIR", "state")
MARKER_DIR = os.environ.get("MARKER_DIR", "")  # defaults to STATE_DIR
MARKER_PREFIX = os.environ.get("MARKER_PREFIX", "")  # defaults to the bot kind's prefix
SETTINGS_FILE = os.environ.get("SYSFLEET_CONFIG", "")

WEB_HOST = os.environ.get("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.environ.get("WEB_PORT", "8080"))
CONTROL_HOST = os.environ.get("CONTROL_HOST", "0.0.0.0")
CONTROL_PORT_START = int(os.environ.get("CONTROL_PORT_START", "8081"))
SCAN_RANGE = os.environ.get("SCAN_RANGE", "")  # "8111-8130", unioned with the standard range

BOT_NAME = os.environ.get("BOT_NAME", "")
BOT_MODE = os.environ.get("BOT_MODE", "SV")
BOT_KIND = os.environ.get("BOT_KIND", "RaidBot")
BOT_VERSION = os.environ.get("BOT_VERSION", "")
BOT_UNITS = [u.strip() for u in os.environ.get("BOT_UNITS", "").split(",") if u.strip()]

RELEASE_REPOS = os.environ.get("RELEASE_REPOS", "PokeBot=Taku1991/PokeBot")
RELEASE_ASSET_SUFFIX = os.environ.get("RELEASE_ASSET_SUFFIX", ".exe")
EXECUTABLE_PATH = os.environ.get("EXECUTABLE_PATH", "")

DISCOVERY_CACHE_TTL = float(os.environ.get("DISCOVERY_CACHE_TTL", "2.0"))
REMOTE_SCAN_TIMEOUT = float(os.environ.get("REMOTE_SCAN_TIMEOUT", "2.0"))
MONITOR_INTERVAL = float(os.environ.get("MONITOR_INTERVAL", "10.0"))
MONITOR_JITTER = float(os.environ.get("MONITOR_JITTER", "5.0"))
UPDATE_IDLE_TIMEOUT = float(os.environ.get("UPDATE_IDLE_TIMEOUT", "300"))
UPDATE_POLL_INTERVAL = float(os.environ.get("UPDATE_POLL_INTERVAL", "5"))
UPDATE_INSTANCE_GAP = float(os.environ.get("UPDATE_INSTANCE_GAP", "5"))
RESTART_IDLE_TIMEOUT = float(os.environ.get("RESTART_IDLE_TIMEOUT", "180"))
RESTART_POLL_INTERVAL = float(os.environ.get("RESTART_POLL_INTERVAL", "2"))

STANDARD_SCAN_RANGE = (8081, 8110)

# Marker file prefixes per bot kind
MARKER_PREFIXES = {"RaidBot": "SVRaidBot", "PokeBot": "PokeBot"}


def load_json(path: str, default):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return default


def save_json(path: str, data: Any):
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


# ----------------------------
# Port ranges
# ----------------------------
@dataclass(frozen=True)
class PortRange:
    start: int
    end: int

    def contains(self, port: int) -> bool:
        return self.start <= port <= self.end

    def ports(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    @classmethod
    def parse(cls, text: str) -> Optional["PortRange"]:
        """Parse ``"8081-8110"`` (or a single port). Returns None for blank or junk input."""
        text = (text or "").strip()
        if not text:
            return None
        lo, _, hi = text.partition("-")
        try:
            start = int(lo)
            end = int(hi) if hi else start
        except ValueError:
            logger.warning("ignoring malformed port range", extra={"value": text})
            return None
        if end < start:
            start, end = end, start
        return cls(start, end)

    @classmethod
    def from_dict(cls, d: Dict[str, Any], default: "PortRange") -> "PortRange":
        return cls(int(d.get("Start", default.start)), int(d.get("End", default.end)))

    def to_dict(self) -> Dict[str, int]:
        return {"Start": self.start, "End": self.end}


@dataclass
class TailscaleSettings:
    """Multi-host scanning settings (remote nodes on a private overlay network)."""

    enabled: bool = False
    remote_nodes: List[str] = field(default_factory=list)
    port_scan_start: int = 8081
    port_scan_end: int = 8110
    is_master_node: bool = False
    master_node_ip: str = ""
    node_allocations: Dict[str, PortRange] = field(default_factory=dict)
    default_range: PortRange = PortRange(8101, 8110)
    connection_timeout_seconds: float = 5.0

    def port_range_for_node(self, ip: str) -> PortRange:
        alloc = self.node_allocations.get(ip)
        if alloc is not None:
            return alloc
        return PortRange(self.port_scan_start, self.port_scan_end)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TailscaleSettings":
        alloc = d.get("PortAllocation", {}) or {}
        default_range = PortRange.from_dict(alloc.get("DefaultRange", {}) or {}, PortRange(8101, 8110))
        nodes = {
            ip: PortRange.from_dict(r or {}, PortRange(8081, 8090))
            for ip, r in (alloc.get("NodeAllocations", {}) or {}).items()
        }
        return cls(
            enabled=bool(d.get("Enabled", False)),
            remote_nodes=[str(ip).strip() for ip in d.get("RemoteNodes", []) if str(ip).strip()],
            port_scan_start=int(d.get("PortScanStart", 8081)),
            port_scan_end=int(d.get("PortScanEnd", 8110)),
            is_master_node=bool(d.get("IsMasterNode", False)),
            master_node_ip=str(d.get("MasterNodeIP", "") or ""),
            node_allocations=nodes,
            default_range=default_range,
            connection_timeout_seconds=float(d.get("ConnectionTimeoutSeconds", 5)),
        )


def parse_release_repos(text: str) -> Dict[str, str]:
    """``"PokeBot=owner/repo,RaidBot=owner/other"`` -> ``{"PokeBot": "owner/repo", ...}``"""
    repos: Dict[str, str] = {}
    for part in (text or "").split(","):
        kind, _, repo = part.partition("=")
        kind, repo = kind.strip(), repo.strip()
        if kind and "/" in repo:
            repos[kind] = repo
    return repos


# ----------------------------
# Node configuration
# ----------------------------
@dataclass
class FleetConfig:
    state_dir: str = "state"
    marker_dir: str = ""
    marker_prefix: str = ""
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    control_host: str = "0.0.0.0"
    control_port_start: int = 8081
    standard_range: Optional[PortRange] = PortRange(*STANDARD_SCAN_RANGE)
    scan_range: Optional[PortRange] = None

    bot_name: str = ""
    mode: str = "SV"
    bot_kind: str = "RaidBot"
    version: str = ""
    units: List[str] = field(default_factory=list)

    tailscale: TailscaleSettings = field(default_factory=TailscaleSettings)

    release_repos: Dict[str, str] = field(default_factory=dict)
    asset_suffix: str = ".exe"
    executable_path: str = ""

    cache_ttl: float = 2.0
    remote_scan_timeout: float = 2.0
    monitor_interval: float = 10.0
    monitor_jitter: float = 5.0
    takeover_delay: Tuple[float, float] = (1.0, 3.0)
    update_idle_timeout: float = 300.0
    update_poll_interval: float = 5.0
    update_instance_gap: float = 5.0
    restart_idle_timeout: float = 180.0
    restart_poll_interval: float = 2.0
    slave_stop_grace: float = 1.0
    slave_exit_timeout: float = 30.0
    slave_online_timeout: float = 60.0
    master_restart_delay: float = 2.0
    post_restart_delay: float = 5.0
    post_restart_attempts: int = 12

    def __post_init__(self):
        if not self.marker_dir:
            self.marker_dir = self.state_dir
        if not self.marker_prefix:
            self.marker_prefix = MARKER_PREFIXES.get(self.bot_kind, "SVRaidBot")
        if not self.executable_path:
            self.executable_path = sys.executable if getattr(sys, "frozen", False) else os.path.abspath(sys.argv[0])

    def path(self, name: str) -> str:
        return os.path.join(self.state_dir, name)

    def scan_window(self) -> List[int]:
        """Local ports to scan: the standard fleet range unioned with the configured one."""
        ports = set()
        for r in (self.standard_range, self.scan_range):
            if r is not None:
                ports.update(r.ports())
        return sorted(ports)

    def in_scan_window(self, port: int) -> bool:
        return any(r is not None and r.contains(port) for r in (self.standard_range, self.scan_range))

    @classmethod
    def from_env(cls) -> "FleetConfig":
        settings = load_json(SETTINGS_FILE, {}) if SETTINGS_FILE else {}
        if SETTINGS_FILE and not settings:
            logger.warning("settings file missing or unreadable, using defaults", extra={"path": SETTINGS_FILE})
        hub = settings.get("Hub", settings) if isinstance(settings, dict) else {}
        tailscale = TailscaleSettings.from_dict(hub.get("Tailscale", {}) or {})

        cfg = cls(
            state_dir=STATE_DIR,
            marker_dir=MARKER_DIR,
            marker_prefix=MARKER_PREFIX,
            web_host=WEB_HOST,
            web_port=WEB_PORT,
            control_host=CONTROL_HOST,
            control_port_start=CONTROL_PORT_START,
            scan_range=PortRange.parse(SCAN_RANGE),
            bot_name=hub.get("BotName", "") or BOT_NAME,
            mode=BOT_MODE,
            bot_kind=BOT_KIND,
            version=BOT_VERSION,
            units=list(BOT_UNITS),
            tailscale=tailscale,
            release_repos=parse_release_repos(RELEASE_REPOS),
            asset_suffix=RELEASE_ASSET_SUFFIX,
            executable_path=EXECUTABLE_PATH,
            cache_ttl=DISCOVERY_CACHE_TTL,
            remote_scan_timeout=REMOTE_SCAN_TIMEOUT,
            monitor_interval=MONITOR_INTERVAL,
            monitor_jitter=MONITOR_JITTER,
            update_idle_timeout=UPDATE_IDLE_TIMEOUT,
            update_poll_interval=UPDATE_POLL_INTERVAL,
            update_instance_gap=UPDATE_INSTANCE_GAP,
            restart_idle_timeout=RESTART_IDLE_TIMEOUT,
            restart_poll_interval=RESTART_POLL_INTERVAL,
        )
        os.makedirs(cfg.state_dir, exist_ok=True)
        os.makedirs(cfg.marker_dir, exist_ok=True)
        return cfg
