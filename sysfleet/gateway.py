"""HTTP surface of the coordinator: fleet listing, commands, staged updates and restarts."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Optional, Tuple

from aiohttp import web

from sysfleet.context import FleetContext
from sysfleet.host import BotCommand
from sysfleet.models import UNKNOWN_KIND, BatchCommandResponse, CommandResponse, Instance, ScheduleConfig, normalize_kind
from sysfleet.probe import STANDARD, probe
from sysfleet.registry import InstanceRegistry
from sysfleet.restart import ERR_BUSY as RESTART_BUSY, RestartManager
from sysfleet.updater import ReleaseFeed, UpdateOrchestrator

logger = logging.getLogger("sysfleet.gateway")

WEB_COMMANDS = ("start", "stop", "idle", "resume", "restart", "reboot", "refreshmap", "screenon", "screenoff")


def parse_command(name: str) -> Optional[BotCommand]:
    key = (name or "").strip().lower().replace("-", "")
    if key not in WEB_COMMANDS:
        return None
    return BotCommand.parse(key)


def parse_target(text: str) -> Tuple[str, int]:
    """``"100.64.0.2:8081"`` -> ("100.64.0.2", 8081); a bare port means localhost."""
    host, sep, port = (text or "").rpartition(":")
    if not sep:
        host, port = "127.0.0.1", text
    try:
        return host or "127.0.0.1", int(port)
    except ValueError:
        return "127.0.0.1", 0


def _add_cors(headers):
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type"


@web.middleware
async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response = web.Response(status=200)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            _add_cors(e.headers)
            raise
        except Exception:
            logger.exception(f"unhandled error on {request.method} {request.path}")
            response = web.json_response({"Success": False, "Message": "Error: internal error"})
    _add_cors(response.headers)
    return response


def failure(message: str, **extra) -> web.Response:
    return web.json_response({"Success": False, "Message": message, **extra})


async def read_json(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("invalid JSON body")
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


class Gateway:
    def __init__(
        self,
        ctx: FleetContext,
        registry: InstanceRegistry,
        updates: UpdateOrchestrator,
        restarts: RestartManager,
        feed: ReleaseFeed,
    ):
        self.ctx = ctx
        self.registry = registry
        self.updates = updates
        self.restarts = restarts
        self.feed = feed
        self.app = self.build_app()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.add_routes([
            web.get("/api/bot/instances", self.list_instances),
            web.get("/api/bot/instances/{target}/bots", self.list_bots),
            web.post("/api/bot/instances/{target}/command", self.instance_command),
            web.post("/api/bot/command/all", self.command_all),
            web.get("/api/bot/update/check", self.update_check),
            web.get("/api/bot/update/idle-status", self.idle_status),
            web.post("/api/bot/update/{kind}", self.update),
            web.post("/api/bot/restart/now", self.restart_now),
            web.get("/api/bot/restart/status", self.restart_status),
            web.get("/api/bot/restart/schedule", self.get_schedule),
            web.post("/api/bot/restart/schedule", self.set_schedule),
        ])
        return app

    # ----------------------------
    # Binding
    # ----------------------------
    @property
    def bound(self) -> bool:
        return self._runner is not None

    async def bind(self) -> bool:
        """Try to take the coordinator port. False when another process holds it."""
        cfg = self.ctx.config
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, cfg.web_host, cfg.web_port)
        try:
            await site.start()
        except OSError as e:
            logger.info(f"coordinator port {cfg.web_port} unavailable: {e}")
            await runner.cleanup()
            return False
        self._runner = runner
        logger.info(f"gateway listening on {cfg.web_host}:{cfg.web_port}")
        return True

    async def close(self):
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    # ----------------------------
    # Fleet
    # ----------------------------
    async def list_instances(self, request: web.Request) -> web.Response:
        instances = await self.registry.discover()
        return web.json_response({"Instances": [i.to_dict() for i in instances]})

    async def list_bots(self, request: web.Request) -> web.Response:
        address, port = parse_target(request.match_info["target"])
        if self.ctx.is_local_target(address, port):
            return web.json_response({"Bots": [u.to_dict() for u in self.ctx.host.list_units()]})
        res = await probe(address, port, "LISTBOTS", STANDARD)
        if res.failed:
            return failure(res.sentinel, Port=port)
        try:
            return web.json_response(json.loads(res.text))
        except ValueError:
            return failure(f"unexpected reply from {address}:{port}", Port=port)

    async def instance_command(self, request: web.Request) -> web.Response:
        address, port = parse_target(request.match_info["target"])
        try:
            body = await read_json(request)
        except ValueError as e:
            return failure(f"Error: {e}", Port=port)
        name = str(body.get("Command", "") or "")
        cmd = parse_command(name)
        if cmd is None:
            return failure(f"Error: Unknown command '{name}'", Port=port, Command=name)
        if self.ctx.is_local_target(address, port):
            return web.json_response(self._local_command(name, cmd).to_dict())
        resp = await self._remote_command(address, port, name, cmd)
        return web.json_response(resp.to_dict())

    async def command_all(self, request: web.Request) -> web.Response:
        try:
            body = await read_json(request)
        except ValueError as e:
            return failure(f"Error: {e}")
        name = str(body.get("Command", "") or "")
        cmd = parse_command(name)
        if cmd is None:
            return failure(f"Error: Unknown command '{name}'", Command=name)

        batch = BatchCommandResponse()
        batch.results.append(self._local_command(name, cmd))

        others = [i for i in await self.registry.discover() if i.online and not self._is_local(i)]
        batch.results.extend(await asyncio.gather(*(self._remote_command(i.address, i.port, name, cmd, i) for i in others)))
        logger.info(f"{name} sent to {len(batch.results)} instance(s)", extra={"ok": batch.successful})
        return web.json_response(batch.to_dict())

    def _is_local(self, inst: Instance) -> bool:
        return inst.pid == self.ctx.pid or self.ctx.is_local_target(inst.address, inst.port)

    def _local_command(self, name: str, cmd: BotCommand) -> CommandResponse:
        self.ctx.dispatch_local(cmd)
        return CommandResponse(
            success=True,
            message=f"Command {name} sent successfully",
            port=self.ctx.control_port,
            command=name,
            instance_name=self.ctx.name,
        )

    async def _remote_command(self, address: str, port: int, name: str, cmd: BotCommand, inst: Optional[Instance] = None) -> CommandResponse:
        res = await probe(address, port, f"{cmd.value}ALL", STANDARD)
        return CommandResponse(
            success=not res.failed,
            message=res.sentinel,
            port=port,
            command=name,
            instance_name=inst.name if inst else "",
        )

    # ----------------------------
    # Updates
    # ----------------------------
    async def update_check(self, request: web.Request) -> web.Response:
        kind = normalize_kind(self.ctx.host.kind or self.ctx.config.bot_kind)
        release = await self.feed.latest(kind)
        if release is None:
            return web.json_response({
                "version": "Unknown",
                "changelog": "Unable to fetch update information",
                "available": False,
                "botType": kind,
            })
        current = self.ctx.host.version or self.ctx.config.version
        return web.json_response({
            "version": release.tag,
            "changelog": release.body,
            "available": release.tag != current,
            "required": release.required,
            "botType": kind,
        })

    async def idle_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self.registry.idle_status())

    async def update(self, request: web.Request) -> web.Response:
        raw_kind = request.match_info["kind"]
        kind = None
        if raw_kind.lower() != "all":
            kind = normalize_kind(raw_kind)
            if kind == UNKNOWN_KIND:
                return failure(f"Error: Unknown bot type '{raw_kind}'")
        try:
            body = await read_json(request)
        except ValueError as e:
            return failure(f"Error: {e}")
        stage = str(body.get("stage", "start") or "start").lower()

        if stage == "proceed":
            result = await self.updates.proceed_update(kind, force_stop=bool(body.get("forceStop", False)))
            success = not result.error and result.updates_failed == 0 and result.updates_needed > 0
        else:
            result = await self.updates.start_update(kind)
            success = not result.error and result.updates_failed == 0
        return web.json_response({"Success": success, **result.to_dict()})

    # ----------------------------
    # Restarts
    # ----------------------------
    async def restart_now(self, request: web.Request) -> web.Response:
        if self.restarts.trigger() is None:
            return web.json_response({"Success": False, "Error": RESTART_BUSY})
        return web.json_response({"Success": True, "Message": "Restart initiated"})

    async def restart_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.restarts.status())

    async def get_schedule(self, request: web.Request) -> web.Response:
        nxt = self.restarts.next_scheduled
        return web.json_response({**self.restarts.get_schedule().to_dict(), "NextScheduledRestart": nxt.isoformat() if nxt else None})

    async def set_schedule(self, request: web.Request) -> web.Response:
        try:
            body = await read_json(request)
            schedule = ScheduleConfig.from_dict(body)
            self.restarts.set_schedule(schedule)
        except ValueError as e:
            return web.json_response({"Success": False, "Error": str(e)})
        except OSError as e:
            logger.exception("failed to save restart schedule")
            return web.json_response({"Success": False, "Error": str(e)})
        return web.json_response({"Success": True, **schedule.to_dict()})
