"""Control protocol listener: one command line in, one reply line out, close."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Set

from sysfleet.context import FleetContext
from sysfleet.host import BotCommand

logger = logging.getLogger("sysfleet.control")

CONNECTION_TIMEOUT = 5.0
PORT_ATTEMPTS = 100
SELF_RESTART_DELAY = 0.5

GLOBAL_VERBS = {f"{cmd.value}ALL": cmd for cmd in BotCommand}
UNIT_VERBS = {"START": BotCommand.START, "STOP": BotCommand.STOP, "IDLE": BotCommand.IDLE}


def split_command(line: str):
    """``"STATUS:bot1"`` / ``"status bot1"`` -> ``("STATUS", "bot1")``."""
    line = (line or "").strip()
    cut = min((i for i in (line.find(":"), line.find(" ")) if i >= 0), default=-1)
    if cut < 0:
        return line.upper(), None
    return line[:cut].strip().upper(), line[cut + 1:].strip() or None


class ControlServer:
    def __init__(
        self,
        ctx: FleetContext,
        on_update: Optional[Callable[[], Awaitable[object]]] = None,
        timeout: float = CONNECTION_TIMEOUT,
    ):
        self.ctx = ctx
        self.on_update = on_update
        self.timeout = timeout
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    # ----------------------------
    # Lifecycle
    # ----------------------------
    async def start(self, port: int):
        self._server = await asyncio.start_server(self._handle, self.ctx.config.control_host, port)
        self.port = port
        logger.info(f"control listener on port {port}", extra={"port": port})

    async def start_first_free(self, start: int, attempts: int = PORT_ATTEMPTS) -> int:
        last_error: Optional[OSError] = None
        for port in range(start, start + attempts):
            try:
                await self.start(port)
                return port
            except OSError as e:
                last_error = e
        raise OSError(f"no free control port in {start}-{start + attempts - 1}: {last_error}")

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for t in list(self._tasks):
            t.cancel()

    # ----------------------------
    # Connections
    # ----------------------------
    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            raw = await asyncio.wait_for(reader.readline(), self.timeout)
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                return
            reply = self.handle_command(line)
            writer.write((reply + "\n").encode("utf-8"))
            await asyncio.wait_for(writer.drain(), self.timeout)
        except asyncio.TimeoutError:
            logger.debug("control client timed out")
        except (ConnectionResetError, BrokenPipeError):
            pass
        except Exception:
            logger.exception("error handling control client")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    def handle_command(self, line: str) -> str:
        verb, arg = split_command(line)
        try:
            if verb in GLOBAL_VERBS:
                return self._global(GLOBAL_VERBS[verb])
            if verb in UNIT_VERBS:
                return self._unit(UNIT_VERBS[verb], arg)
            if verb == "LISTBOTS":
                return json.dumps({"Bots": [u.to_dict() for u in self.ctx.host.list_units()]})
            if verb == "STATUS":
                return self._status(arg)
            if verb == "ISREADY":
                return "READY" if self.ctx.host.any_running() else "NOT_READY"
            if verb == "INFO":
                return json.dumps(self.ctx.instance_info())
            if verb == "VERSION":
                return self.ctx.host.version or self.ctx.config.version or "Unknown"
            if verb == "UPDATE":
                return self._update()
            if verb == "SELFRESTARTALL":
                return self._self_restart()
        except Exception as e:
            logger.exception("control command failed", extra={"verb": verb})
            return f"ERROR: {verb} failed - {e}"
        return f"ERROR: Unknown command '{verb}'"

    def _global(self, cmd: BotCommand) -> str:
        if cmd is BotCommand.REFRESH_MAP and self.ctx.local_instance().bot_kind != "RaidBot":
            return "ERROR: REFRESHMAPALL command is only available for RaidBot instances"
        self.ctx.dispatch_local(cmd)
        return f"OK: {cmd.value} command sent to all bots"

    def _unit(self, cmd: BotCommand, unit_id: Optional[str]) -> str:
        if not unit_id:
            return self._global(cmd)
        unit = self.ctx.host.find_unit(unit_id)
        if unit is None:
            return f"ERROR: Bot {unit_id} not found"
        asyncio.get_running_loop().call_soon(unit.send_command, cmd)
        return f"OK: {cmd.value} command sent to bot {unit_id}"

    def _status(self, unit_id: Optional[str]) -> str:
        if unit_id:
            unit = self.ctx.host.find_unit(unit_id)
            return unit.read_state() if unit is not None else "ERROR: Bot not found"
        return json.dumps([{"Id": u.id, "Name": u.name, "Status": u.read_state()} for u in self.ctx.host.list_units()])

    def _update(self) -> str:
        if self.on_update is None:
            return "ERROR: Updates are not available on this instance"
        task = asyncio.ensure_future(self._run_update())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return "OK: Update triggered"

    async def _run_update(self):
        try:
            await self.on_update()
        except Exception:
            logger.exception("triggered update failed")

    def _self_restart(self) -> str:
        self.ctx.dispatch_local(BotCommand.STOP)
        loop = asyncio.get_running_loop()
        loop.call_later(SELF_RESTART_DELAY, self.ctx.request_shutdown, True)
        return "OK: Self-restart initiated"
