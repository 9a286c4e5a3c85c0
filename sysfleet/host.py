"""Bot host interface.

The orchestrator never looks inside the automation core. The host process
registers a ``BotHost`` at startup and the fleet code talks to it only through
the methods below. ``LocalBotHost`` is the in-memory implementation used when
running the orchestrator standalone and in tests.
"""
from __future__ import annotations

import abc
import enum
import logging
from typing import Dict, List, Optional

from sysfleet.models import is_idle_state

logger = logging.getLogger("sysfleet.host")


class BotCommand(str, enum.Enum):
    START = "START"
    STOP = "STOP"
    IDLE = "IDLE"
    RESUME = "RESUME"
    RESTART = "RESTART"
    REBOOT = "REBOOT"
    REFRESH_MAP = "REFRESHMAP"
    SCREEN_ON = "SCREENON"
    SCREEN_OFF = "SCREENOFF"

    @classmethod
    def parse(cls, name: str) -> Optional["BotCommand"]:
        """``"refresh-map"``, ``"RefreshMap"`` and ``"REFRESHMAP"`` all map to REFRESH_MAP."""
        key = (name or "").strip().replace("-", "").replace("_", "").upper()
        for cmd in cls:
            if cmd.value == key:
                return cmd
        return None


class BotUnit(abc.ABC):
    routine_type: str = ""
    connection_type: str = ""
    ip: str = ""
    port: int = 0

    @property
    @abc.abstractmethod
    def id(self) -> str: ...

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    def read_state(self) -> str: ...

    @abc.abstractmethod
    def send_command(self, command: BotCommand) -> None: ...

    def is_running(self) -> bool:
        return not is_idle_state(self.read_state())

    def to_dict(self) -> Dict[str, object]:
        return {
            "Id": self.id,
            "Name": self.name,
            "RoutineType": self.routine_type,
            "Status": self.read_state(),
            "ConnectionType": self.connection_type,
            "IP": self.ip,
            "Port": self.port,
        }


class BotHost(abc.ABC):
    name: str = ""
    mode: str = ""
    kind: str = ""
    version: str = ""

    @abc.abstractmethod
    def list_units(self) -> List[BotUnit]: ...

    def send_all(self, command: BotCommand) -> None:
        for unit in self.list_units():
            unit.send_command(command)

    def find_unit(self, unit_id: str) -> Optional[BotUnit]:
        key = (unit_id or "").strip().lower()
        for unit in self.list_units():
            if unit.id.lower() == key or unit.name.lower() == key:
                return unit
        return None

    def any_running(self) -> bool:
        return any(u.is_running() for u in self.list_units())


# ----------------------------
# In-memory host
# ----------------------------
_TRANSITIONS = {
    BotCommand.START: "RUNNING",
    BotCommand.RESUME: "RUNNING",
    BotCommand.RESTART: "RUNNING",
    BotCommand.REBOOT: "RUNNING",
    BotCommand.STOP: "STOPPED",
    BotCommand.IDLE: "IDLE",
}


class SimpleBotUnit(BotUnit):
    def __init__(self, name: str, state: str = "STOPPED", routine_type: str = "", unit_id: str = ""):
        self._name = name
        self._id = unit_id or name
        self.state = state
        self.routine_type = routine_type
        self.connection_type = "WiFi"
        self.commands: List[BotCommand] = []

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    def read_state(self) -> str:
        return self.state

    def send_command(self, command: BotCommand) -> None:
        self.commands.append(command)
        self.state = _TRANSITIONS.get(command, self.state)
        logger.info("unit command", extra={"unit": self._name, "command": command.value, "state": self.state})


class LocalBotHost(BotHost):
    def __init__(self, name: str, kind: str, version: str, mode: str = "", units: Optional[List[BotUnit]] = None):
        self.name = name
        self.kind = kind
        self.version = version
        self.mode = mode
        self.units: List[BotUnit] = list(units or [])

    def list_units(self) -> List[BotUnit]:
        return list(self.units)
