"""Fleet data model and its wire shapes.

Python attributes are snake_case; ``to_dict()`` produces the PascalCase JSON
that dashboards and the other instances already speak.
"""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

UNKNOWN_KIND = "Unknown"
BOT_KINDS = ("PokeBot", "RaidBot")

IDLE_STATES = {"IDLE", "STOPPED"}


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


def normalize_kind(value: Optional[str]) -> str:
    if not value:
        return UNKNOWN_KIND
    for kind in BOT_KINDS:
        if value.strip().lower() == kind.lower():
            return kind
    return UNKNOWN_KIND


def guess_kind(name: str, version: str = "") -> str:
    """Soft fallback when an instance does not report its kind."""
    text = f"{name} {version}".lower()
    if "raid" in text or "sv" in text:
        return "RaidBot"
    if "poke" in text:
        return "PokeBot"
    return UNKNOWN_KIND


def is_idle_state(state: str) -> bool:
    return (state or "").strip().upper() in IDLE_STATES


@dataclass
class BotUnitStatus:
    name: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {"Name": self.name, "Status": self.status}


@dataclass
class Instance:
    port: int
    address: str = "127.0.0.1"
    pid: Optional[int] = None
    name: str = ""
    version: str = ""
    mode: str = ""
    bot_kind: str = UNKNOWN_KIND
    bot_count: int = 0
    online: bool = True
    is_master: bool = False
    is_remote: bool = False
    units: List[BotUnitStatus] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.address}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ProcessId": self.pid,
            "Name": self.name,
            "Port": self.port,
            "IP": self.address,
            "Version": self.version,
            "BotCount": self.bot_count,
            "Mode": self.mode,
            "IsOnline": self.online,
            "IsMaster": self.is_master,
            "IsRemote": self.is_remote,
            "BotStatuses": [u.to_dict() for u in self.units],
            "BotType": self.bot_kind,
        }


@dataclass
class CommandResponse:
    success: bool
    message: str = ""
    port: int = 0
    command: str = ""
    instance_name: str = ""
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Success": self.success,
            "Message": self.message,
            "Port": self.port,
            "Command": self.command,
            "InstanceName": self.instance_name,
            "Timestamp": self.timestamp,
        }


@dataclass
class BatchCommandResponse:
    results: List[CommandResponse] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Results": [r.to_dict() for r in self.results],
            "TotalInstances": len(self.results),
            "SuccessfulCommands": self.successful,
        }


# ----------------------------
# Update
# ----------------------------
@dataclass
class InstanceUpdateResult:
    port: int
    address: str = "127.0.0.1"
    pid: Optional[int] = None
    bot_kind: str = UNKNOWN_KIND
    current_version: str = ""
    latest_version: str = ""
    needs_update: bool = False
    update_started: bool = False
    error: Optional[str] = None
    is_remote: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Port": self.port,
            "ProcessId": self.pid,
            "IP": self.address,
            "BotType": self.bot_kind,
            "CurrentVersion": self.current_version,
            "LatestVersion": self.latest_version,
            "NeedsUpdate": self.needs_update,
            "UpdateStarted": self.update_started,
            "Error": self.error,
        }


@dataclass
class UpdateAllResult:
    stage: str = "start"
    results: List[InstanceUpdateResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def updates_needed(self) -> int:
        return sum(1 for r in self.results if r.needs_update)

    @property
    def updates_started(self) -> int:
        return sum(1 for r in self.results if r.update_started)

    @property
    def updates_failed(self) -> int:
        return sum(1 for r in self.results if r.error and not r.update_started)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "Stage": self.stage,
            "TotalInstances": len(self.results),
            "UpdatesNeeded": self.updates_needed,
            "UpdatesStarted": self.updates_started,
            "UpdatesFailed": self.updates_failed,
            "Results": [r.to_dict() for r in self.results],
        }
        if self.error:
            d["Error"] = self.error
        return d


# ----------------------------
# Restart
# ----------------------------
class RestartState(str, enum.Enum):
    IDLE = "Idle"
    PREPARING = "Preparing"
    DISCOVERING = "DiscoveringInstances"
    IDLING = "IdlingBots"
    WAITING_FOR_IDLE = "WaitingForIdle"
    RESTARTING_SLAVES = "RestartingSlaves"
    RESTARTING_MASTER = "RestartingMaster"


class RestartReason(str, enum.Enum):
    MANUAL = "Manual"
    SCHEDULED = "Scheduled"


@dataclass
class InstanceRestartResult:
    port: int
    address: str = "127.0.0.1"
    pid: Optional[int] = None
    success: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"Port": self.port, "ProcessId": self.pid, "IP": self.address, "Success": self.success, "Error": self.error}


@dataclass
class RestartResult:
    reason: RestartReason = RestartReason.MANUAL
    success: bool = False
    total_instances: int = 0
    master_restarting: bool = False
    error: Optional[str] = None
    instance_results: List[InstanceRestartResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Success": self.success,
            "Reason": self.reason.value,
            "TotalInstances": self.total_instances,
            "MasterRestarting": self.master_restarting,
            "Error": self.error,
            "InstanceResults": [r.to_dict() for r in self.instance_results],
        }


@dataclass
class ScheduleConfig:
    enabled: bool = False
    time: str = "00:00"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScheduleConfig":
        if not isinstance(d, dict):
            return cls()
        return cls(enabled=bool(d.get("Enabled", False)), time=str(d.get("Time", "00:00") or "00:00"))

    def to_dict(self) -> Dict[str, Any]:
        return {"Enabled": self.enabled, "Time": self.time}
