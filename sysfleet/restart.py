"""Fleet restarts.

One state machine per process walks Idle -> Preparing -> DiscoveringInstances ->
IdlingBots -> WaitingForIdle -> RestartingSlaves -> RestartingMaster -> Idle.
A daily schedule (persisted) can fire it, and a flag file left by the old
process lets the new one clean up stray processes and restart the bots.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import psutil

from sysfleet.config import MARKER_PREFIXES, load_json, save_json
from sysfleet.context import FleetContext
from sysfleet.host import BotCommand
from sysfleet.markers import scan_markers
from sysfleet.models import (
    Instance,
    InstanceRestartResult,
    RestartReason,
    RestartResult,
    RestartState,
    ScheduleConfig,
    is_idle_state,
)
from sysfleet.probe import SLOW, STANDARD, is_port_open, probe
from sysfleet.registry import InstanceRegistry

logger = logging.getLogger("sysfleet.restart")

SCHEDULE_FILE = "restart_schedule.json"
FLAG_FILE = "restart_in_progress.flag"
LAST_RESTART_FILE = "last_restart.txt"
PIDS_FILE = "pre_restart_pids.json"

ERR_BUSY = "Restart already in progress"

PID_POLL = 0.5
PORT_POLL = 1.0
POST_RESTART_RETRY = 5.0


def parse_time_of_day(text: str):
    """``"HH:MM"`` -> (hour, minute); ValueError when malformed."""
    hh, _, mm = (text or "").strip().partition(":")
    hour, minute = int(hh), int(mm or 0)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time of day: {text!r}")
    return hour, minute


def calculate_next_restart(time_of_day: str, now: datetime) -> datetime:
    """Today at ``time_of_day``, or tomorrow when that moment has already passed."""
    hour, minute = parse_time_of_day(time_of_day)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class RestartManager:
    def __init__(self, ctx: FleetContext, registry: InstanceRegistry):
        self.ctx = ctx
        self.config = ctx.config
        self.registry = registry
        self._state = RestartState.IDLE
        self._timer: Optional[asyncio.TimerHandle] = None
        self._schedule_active = False
        self.next_scheduled: Optional[datetime] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> RestartState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state is not RestartState.IDLE

    def _set_state(self, state: RestartState):
        self._state = state
        logger.info(f"restart state -> {state.value}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ----------------------------
    # Entry points
    # ----------------------------
    def _claim(self) -> bool:
        if self._state is not RestartState.IDLE:
            return False
        self._state = RestartState.PREPARING
        return True

    async def restart_now(self, reason: RestartReason = RestartReason.MANUAL) -> RestartResult:
        if not self._claim():
            return RestartResult(reason=reason, success=False, error=ERR_BUSY)
        return await self._run(reason)

    def trigger(self, reason: RestartReason = RestartReason.MANUAL) -> Optional[asyncio.Task]:
        """Claim the state machine and run the restart in the background; None when one is already running."""
        if not self._claim():
            return None
        return self._spawn(self._run(reason))

    def status(self) -> Dict[str, Any]:
        return {
            "State": self._state.value,
            "InProgress": self.in_progress,
            "NextScheduledRestart": self.next_scheduled.isoformat() if self.next_scheduled else None,
            "Schedule": self.get_schedule().to_dict(),
        }

    # ----------------------------
    # Sequence
    # ----------------------------
    async def _run(self, reason: RestartReason) -> RestartResult:
        result = RestartResult(reason=reason)
        try:
            self._set_state(RestartState.DISCOVERING)
            instances = [i for i in await self.registry.discover(force=True) if i.online]
            result.total_instances = len(instances)

            self._set_state(RestartState.IDLING)
            await self._command_all(instances, BotCommand.IDLE)

            self._set_state(RestartState.WAITING_FOR_IDLE)
            if not await self._wait_for_idle(instances):
                logger.warning("bots did not go idle in time, force-stopping")
                await self._command_all(instances, BotCommand.STOP)

            # taken before any slave restarts so their replacements are never listed
            old_pids = self._collect_pids(instances)

            self._set_state(RestartState.RESTARTING_SLAVES)
            for inst in instances:
                if not self._is_local(inst):
                    result.instance_results.append(await self._restart_slave(inst))

            self._set_state(RestartState.RESTARTING_MASTER)
            self._restart_master(old_pids, result)

            self._record_restart_date()
            result.success = True
        except Exception as e:
            result.success = False
            result.error = str(e)
            logger.exception(f"{reason.value} restart failed")
        finally:
            self._set_state(RestartState.IDLE)
        return result

    def _is_local(self, inst: Instance) -> bool:
        return inst.pid == self.ctx.pid or self.ctx.is_local_target(inst.address, inst.port)

    async def _command_all(self, instances: List[Instance], cmd: BotCommand):
        await asyncio.gather(*(self._command_one(i, cmd) for i in instances))

    async def _command_one(self, inst: Instance, cmd: BotCommand):
        if self._is_local(inst):
            self.ctx.dispatch_local(cmd)
            return
        res = await probe(inst.address, inst.port, f"{cmd.value}ALL", STANDARD)
        if res.failed:
            logger.error(f"failed to {cmd.value.lower()} bots on {inst.key}: {res.sentinel}")

    async def _instance_idle(self, inst: Instance) -> bool:
        units = await self.registry.unit_states(inst)
        if units is None:
            # unreachable instances do not hold the restart up
            return True
        return all(is_idle_state(u.status) for u in units)

    async def _wait_for_idle(self, instances: List[Instance]) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.restart_idle_timeout
        while loop.time() < deadline:
            checks = await asyncio.gather(*(self._instance_idle(i) for i in instances))
            if all(checks):
                return True
            await asyncio.sleep(self.config.restart_poll_interval)
        return False

    async def _restart_slave(self, inst: Instance) -> InstanceRestartResult:
        r = InstanceRestartResult(port=inst.port, address=inst.address, pid=inst.pid)
        try:
            await probe(inst.address, inst.port, "STOPALL", STANDARD)
            await asyncio.sleep(self.config.slave_stop_grace)
            res = await probe(inst.address, inst.port, "SELFRESTARTALL", SLOW)
            if res.failed:
                r.error = res.sentinel
                logger.error(f"failed to restart {inst.key}: {res.sentinel}")
                return r
            r.success = True
            if await self._wait_for_exit(inst):
                if not await self._wait_for_online(inst):
                    logger.warning(f"instance {inst.key} did not come back online in time")
            else:
                logger.error(f"instance {inst.key} (pid {inst.pid}) did not terminate in time")
        except Exception as e:
            r.error = str(e)
            logger.exception(f"error restarting {inst.key}")
        return r

    async def _wait_for_exit(self, inst: Instance) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.slave_exit_timeout
        while loop.time() < deadline:
            if inst.pid is not None:
                if not psutil.pid_exists(inst.pid):
                    return True
            elif not await is_port_open(inst.address, inst.port, STANDARD.connect):
                return True
            await asyncio.sleep(PID_POLL)
        return False

    async def _wait_for_online(self, inst: Instance) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.slave_online_timeout
        while loop.time() < deadline:
            if await is_port_open(inst.address, inst.port, PORT_POLL):
                return True
            await asyncio.sleep(PORT_POLL)
        return False

    def _restart_master(self, old_pids: Set[int], result: RestartResult):
        self._save_pids(old_pids)
        with open(self.config.path(FLAG_FILE), "w", encoding="utf-8") as f:
            f.write(datetime.now().isoformat())
        result.master_restarting = True
        asyncio.get_running_loop().call_later(self.config.master_restart_delay, self.ctx.request_shutdown, True)

    def _collect_pids(self, instances: List[Instance]) -> Set[int]:
        """Own pid, local instance pids and live marker pids as they stand now."""
        pids = {self.ctx.pid}
        pids.update(i.pid for i in instances if i.pid is not None and not i.is_remote)
        prefixes = set(MARKER_PREFIXES.values()) | {self.config.marker_prefix}
        pids.update(pid for pid in scan_markers(self.config.marker_dir, prefixes) if psutil.pid_exists(pid))
        return pids

    def _save_pids(self, pids: Set[int]):
        try:
            save_json(self.config.path(PIDS_FILE), sorted(pids))
        except OSError as e:
            logger.error(f"failed to save pre-restart process ids: {e}")

    # ----------------------------
    # Schedule
    # ----------------------------
    def get_schedule(self) -> ScheduleConfig:
        return ScheduleConfig.from_dict(load_json(self.config.path(SCHEDULE_FILE), {}))

    def set_schedule(self, schedule: ScheduleConfig):
        parse_time_of_day(schedule.time)
        save_json(self.config.path(SCHEDULE_FILE), schedule.to_dict())
        logger.info("restart schedule updated", extra=schedule.to_dict())
        if self._schedule_active:
            self._arm()

    def start_schedule(self):
        self._schedule_active = True
        self._arm()

    def stop(self):
        self._schedule_active = False
        self._cancel_timer()
        for t in list(self._tasks):
            t.cancel()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.next_scheduled = None

    def _arm(self):
        self._cancel_timer()
        schedule = self.get_schedule()
        if not schedule.enabled:
            return
        try:
            nxt = calculate_next_restart(schedule.time, datetime.now())
        except ValueError:
            logger.error(f"invalid schedule time format: {schedule.time}")
            return
        self.next_scheduled = nxt
        delay = max(0.0, (nxt - datetime.now()).total_seconds())
        self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)
        logger.info(f"next scheduled restart at {nxt.isoformat()}")

    def _on_timer(self):
        self._timer = None
        if self.was_restarted_today():
            logger.info("already restarted today, skipping scheduled restart")
            self._arm()
            return
        self._spawn(self._scheduled_run())

    async def _scheduled_run(self):
        try:
            result = await self.restart_now(RestartReason.SCHEDULED)
            if not result.success:
                logger.error(f"scheduled restart failed: {result.error}")
        finally:
            if self._schedule_active:
                self._arm()

    def was_restarted_today(self) -> bool:
        try:
            with open(self.config.path(LAST_RESTART_FILE), "r", encoding="utf-8") as f:
                return f.read().strip() == datetime.now().strftime("%Y-%m-%d")
        except OSError:
            return False

    def _record_restart_date(self):
        try:
            with open(self.config.path(LAST_RESTART_FILE), "w", encoding="utf-8") as f:
                f.write(datetime.now().strftime("%Y-%m-%d"))
        except OSError as e:
            logger.error(f"failed to record restart date: {e}")

    # ----------------------------
    # After restart
    # ----------------------------
    def check_post_restart(self) -> bool:
        """Run at startup: when the restart flag is present, clean up and restart the fleet's bots."""
        flag = self.config.path(FLAG_FILE)
        if not os.path.exists(flag):
            return False
        try:
            written_at = os.path.getmtime(flag)
            os.remove(flag)
        except OSError as e:
            logger.error(f"error reading restart flag: {e}")
            written_at = time.time()
        logger.info("restart flag found, finishing fleet restart")
        self.kill_old_processes(written_at)
        self._spawn(self._post_restart_sequence())
        return True

    def kill_old_processes(self, flag_written_at: float) -> List[int]:
        path = self.config.path(PIDS_FILE)
        pids = load_json(path, [])
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        killed = []
        for pid in pids if isinstance(pids, list) else []:
            if not isinstance(pid, int) or pid == self.ctx.pid:
                continue
            try:
                proc = psutil.Process(pid)
                if proc.create_time() > flag_written_at:
                    # pid reused by a process started after the restart began
                    continue
                proc.kill()
                proc.wait(5)
                killed.append(pid)
                logger.info(f"killed leftover process {pid}")
            except psutil.NoSuchProcess:
                continue
            except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
                logger.error(f"failed to kill old process {pid}: {e}")
        return killed

    async def _post_restart_sequence(self):
        await asyncio.sleep(self.config.post_restart_delay)
        attempts = self.config.post_restart_attempts
        for attempt in range(attempts):
            try:
                await self._start_all()
                return
            except Exception:
                logger.exception(f"post-restart startup attempt {attempt + 1} failed")
                if attempt < attempts - 1:
                    await asyncio.sleep(POST_RESTART_RETRY)

    async def _start_all(self):
        self.ctx.dispatch_local(BotCommand.START)
        instances = await self.registry.discover(force=True)
        remote = [i for i in instances if i.online and not self._is_local(i)]
        await asyncio.gather(*(self._command_one(i, BotCommand.START) for i in remote))
