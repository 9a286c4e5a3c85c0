"""
Tests for sysfleet.restart

Covers:
- calculate_next_restart / parse_time_of_day
- Full restart: slaves one at a time (stop, self-restart, gone, back) before the master
- Processes of freshly restarted slaves are not recorded for post-restart cleanup
- Non-reentrancy: a request during WaitingForIdle is rejected without disturbing the run
- Force-stop when units do not go idle in time
- Schedule persistence, arming, same-day guard
- Post-restart: flag handling, leftover process cleanup, fleet start
"""
import asyncio
import os
from datetime import datetime
from unittest.mock import AsyncMock

import psutil
import pytest

from sysfleet import restart as restart_mod
from sysfleet.config import load_json, save_json
from sysfleet.host import BotCommand, SimpleBotUnit
from sysfleet.markers import write_marker
from sysfleet.models import Instance, InstanceRestartResult, RestartReason, RestartResult, RestartState, ScheduleConfig
from sysfleet.registry import InstanceRegistry
from sysfleet.restart import (
    ERR_BUSY,
    FLAG_FILE,
    LAST_RESTART_FILE,
    PIDS_FILE,
    SCHEDULE_FILE,
    RestartManager,
    calculate_next_restart,
    parse_time_of_day,
)

from tests.conftest import adjacent_servers, free_port, make_config, make_context, make_host, wait_until, window


# ---- Helpers ----

class _BusyUnit(SimpleBotUnit):
    """Ignores IDLE, obeys everything else."""

    def send_command(self, command: BotCommand) -> None:
        if command is BotCommand.IDLE:
            self.commands.append(command)
            return
        super().send_command(command)


def _make_manager(tmp_path, units=None, **overrides) -> RestartManager:
    cfg = make_config(tmp_path, **overrides)
    ctx = make_context(cfg, make_host(units=units))
    return RestartManager(ctx, InstanceRegistry(ctx))


def _fake_process_cls(table, killed, denied=()):
    class FakeProcess:
        def __init__(self, pid):
            if pid not in table:
                raise psutil.NoSuchProcess(pid)
            self.pid = pid

        def create_time(self):
            return table[self.pid]

        def kill(self):
            if self.pid in denied:
                raise psutil.AccessDenied(self.pid)
            killed.append(self.pid)

        def wait(self, timeout=None):
            return 0

    return FakeProcess


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


# ---- Tests ----

class TestNextRestart:
    def test_later_today(self):
        now = datetime(2024, 5, 1, 1, 30)
        assert calculate_next_restart("03:00", now) == datetime(2024, 5, 1, 3, 0)

    def test_already_passed_is_tomorrow(self):
        now = datetime(2024, 5, 1, 4, 0)
        assert calculate_next_restart("03:00", now) == datetime(2024, 5, 2, 3, 0)

    def test_exact_moment_is_tomorrow(self):
        now = datetime(2024, 12, 31, 3, 0)
        assert calculate_next_restart("03:00", now) == datetime(2025, 1, 1, 3, 0)

    def test_parse(self):
        assert parse_time_of_day("7:05") == (7, 5)
        for bad in ("24:00", "12:60", "noon", ""):
            with pytest.raises(ValueError):
                parse_time_of_day(bad)


class TestRestartSequence:
    @pytest.mark.asyncio
    async def test_slaves_sequential_then_master(self, tmp_path, fake_servers):
        events = []
        s1, s2 = await adjacent_servers(
            fake_servers,
            {"name": "S1", "events": events, "restart_delay": 1.2},
            {"name": "S2", "events": events, "restart_delay": 1.2},
        )
        manager = _make_manager(tmp_path, scan_range=window(s1, s2))

        result = await manager.restart_now()

        assert result.success, result.error
        assert result.total_instances == 3
        assert result.master_restarting
        assert [r.success for r in result.instance_results] == [True, True]

        lifecycle = [(port, verb) for _, port, verb in events if verb in ("STOPALL", "SELFRESTARTALL", "EXITED", "ONLINE")]
        first, second = lifecycle[0][0], lifecycle[4][0]
        assert {first, second} == {s1.port, s2.port}
        steps = ["STOPALL", "SELFRESTARTALL", "EXITED", "ONLINE"]
        assert lifecycle == [(first, v) for v in steps] + [(second, v) for v in steps]

        assert manager.state is RestartState.IDLE
        assert os.path.exists(manager.config.path(FLAG_FILE))
        assert manager.ctx.pid in load_json(manager.config.path(PIDS_FILE), [])
        assert manager.was_restarted_today()
        assert await wait_until(lambda: manager.ctx.shutting_down, timeout=1.0)
        assert manager.ctx.restart_after_shutdown

    @pytest.mark.asyncio
    async def test_local_units_idled(self, tmp_path):
        manager = _make_manager(tmp_path)
        result = await manager.restart_now()
        assert result.success
        assert result.instance_results == []
        units = manager.ctx.host.list_units()
        assert all(BotCommand.IDLE in u.commands for u in units)

    @pytest.mark.asyncio
    async def test_failed_slave_does_not_stop_sequence(self, tmp_path, fake_servers):
        bad, good = await adjacent_servers(
            fake_servers,
            {"error_verbs": ("SELFRESTARTALL",)},
            {"restart_delay": 1.2},
        )
        manager = _make_manager(tmp_path, scan_range=window(bad, good))
        result = await manager.restart_now()
        by_port = {r.port: r for r in result.instance_results}
        assert by_port[bad.port].success is False
        assert by_port[bad.port].error.startswith("ERROR")
        assert by_port[good.port].success is True
        assert result.master_restarting

    @pytest.mark.asyncio
    async def test_restarted_slave_survives_cleanup(self, tmp_path, fake_servers, monkeypatch):
        slave = await fake_servers(name="S1")
        manager = _make_manager(tmp_path, scan_range=window(slave))
        replacement = os.getppid()

        async def respawned(inst):
            # the slave comes back as a new process and writes its marker
            write_marker(manager.config.marker_dir, "SVRaidBot", replacement, inst.port)
            return InstanceRestartResult(port=inst.port, address=inst.address, success=True)

        monkeypatch.setattr(manager, "_restart_slave", respawned)
        result = await manager.restart_now()
        assert result.success, result.error
        assert replacement not in load_json(manager.config.path(PIDS_FILE), [])

        killed = []
        monkeypatch.setattr(restart_mod.psutil, "Process", _fake_process_cls({replacement: 1.0}, killed))
        assert manager.kill_old_processes(flag_written_at=os.path.getmtime(manager.config.path(FLAG_FILE))) == []
        assert killed == []

class TestNonReentrant:
    @pytest.mark.asyncio
    async def test_rejected_while_waiting_for_idle(self, tmp_path):
        manager = _make_manager(tmp_path, units=[_BusyUnit("stubborn", "RUNNING")], restart_idle_timeout=5.0)
        task = manager.trigger()
        assert task is not None
        assert await wait_until(lambda: manager.state is RestartState.WAITING_FOR_IDLE, timeout=2.0)

        second = await manager.restart_now()
        assert second.success is False
        assert second.error == ERR_BUSY
        assert manager.trigger() is None
        assert manager.state is RestartState.WAITING_FOR_IDLE

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert manager.state is RestartState.IDLE

    @pytest.mark.asyncio
    async def test_status(self, tmp_path):
        manager = _make_manager(tmp_path)
        status = manager.status()
        assert status["State"] == "Idle"
        assert status["InProgress"] is False
        assert status["NextScheduledRestart"] is None
        assert status["Schedule"] == {"Enabled": False, "Time": "00:00"}


class TestIdleWait:
    @pytest.mark.asyncio
    async def test_force_stop_on_timeout(self, tmp_path):
        unit = _BusyUnit("stubborn", "RUNNING")
        manager = _make_manager(tmp_path, units=[unit], restart_idle_timeout=0.2)
        result = await manager.restart_now()
        await asyncio.sleep(0)
        assert result.success
        assert BotCommand.STOP in unit.commands
        assert unit.state == "STOPPED"

    @pytest.mark.asyncio
    async def test_unreachable_counts_as_idle(self, tmp_path):
        manager = _make_manager(tmp_path)
        assert await manager._instance_idle(Instance(port=free_port(), name="gone"))


class TestSchedule:
    def test_default(self, tmp_path):
        assert _make_manager(tmp_path).get_schedule() == ScheduleConfig()

    def test_persisted(self, tmp_path):
        manager = _make_manager(tmp_path)
        manager.set_schedule(ScheduleConfig(enabled=True, time="05:15"))
        assert load_json(str(tmp_path / SCHEDULE_FILE), {}) == {"Enabled": True, "Time": "05:15"}
        assert _make_manager(tmp_path).get_schedule() == ScheduleConfig(enabled=True, time="05:15")

    def test_invalid_time_rejected(self, tmp_path):
        manager = _make_manager(tmp_path)
        with pytest.raises(ValueError):
            manager.set_schedule(ScheduleConfig(enabled=True, time="99:99"))
        assert not (tmp_path / SCHEDULE_FILE).exists()

    @pytest.mark.asyncio
    async def test_arm_and_stop(self, tmp_path):
        manager = _make_manager(tmp_path)
        manager.start_schedule()
        assert manager.next_scheduled is None

        manager.set_schedule(ScheduleConfig(enabled=True, time="03:00"))
        assert manager.next_scheduled is not None
        assert manager.next_scheduled > datetime.now()
        assert manager.status()["NextScheduledRestart"] == manager.next_scheduled.isoformat()

        manager.stop()
        assert manager.next_scheduled is None
        assert manager._timer is None

    @pytest.mark.asyncio
    async def test_same_day_guard(self, tmp_path):
        manager = _make_manager(tmp_path)
        save_json(str(tmp_path / SCHEDULE_FILE), {"Enabled": True, "Time": "03:00"})
        (tmp_path / LAST_RESTART_FILE).write_text(_today())
        manager.restart_now = AsyncMock()
        manager.start_schedule()
        manager._on_timer()
        await asyncio.sleep(0.05)
        manager.restart_now.assert_not_awaited()
        assert manager.next_scheduled is not None
        manager.stop()

    @pytest.mark.asyncio
    async def test_timer_runs_scheduled_restart_and_rearms(self, tmp_path):
        manager = _make_manager(tmp_path)
        save_json(str(tmp_path / SCHEDULE_FILE), {"Enabled": True, "Time": "03:00"})
        manager.restart_now = AsyncMock(return_value=RestartResult(reason=RestartReason.SCHEDULED, success=True))
        manager.start_schedule()
        manager._on_timer()
        assert await wait_until(lambda: manager.restart_now.await_count == 1, timeout=1.0)
        manager.restart_now.assert_awaited_once_with(RestartReason.SCHEDULED)
        assert await wait_until(lambda: manager._timer is not None, timeout=1.0)
        manager.stop()


class TestPostRestart:
    def test_no_flag(self, tmp_path):
        assert _make_manager(tmp_path).check_post_restart() is False

    def test_kill_old_processes(self, tmp_path, monkeypatch):
        manager = _make_manager(tmp_path)
        killed = []
        table = {101: 100.0, 102: 300.0, 104: 50.0, manager.ctx.pid: 10.0}
        monkeypatch.setattr(restart_mod.psutil, "Process", _fake_process_cls(table, killed, denied=(104,)))
        save_json(manager.config.path(PIDS_FILE), [manager.ctx.pid, 101, 102, 103, 104])

        assert manager.kill_old_processes(flag_written_at=200.0) == [101]
        assert killed == [101]
        assert not os.path.exists(manager.config.path(PIDS_FILE))

    @pytest.mark.asyncio
    async def test_flag_starts_fleet(self, tmp_path, fake_servers, monkeypatch):
        remote = await fake_servers(units={"u1": "STOPPED"})
        manager = _make_manager(
            tmp_path,
            units=[SimpleBotUnit("alpha", "STOPPED")],
            scan_range=window(remote),
        )
        killed = []
        monkeypatch.setattr(restart_mod.psutil, "Process", _fake_process_cls({555: 1.0}, killed))
        save_json(manager.config.path(PIDS_FILE), [555])
        with open(manager.config.path(FLAG_FILE), "w") as f:
            f.write(datetime.now().isoformat())

        assert manager.check_post_restart() is True
        assert not os.path.exists(manager.config.path(FLAG_FILE))
        assert killed == [555]
        assert await wait_until(lambda: "STARTALL" in remote.received, timeout=2.0)
        assert await wait_until(lambda: manager.ctx.host.list_units()[0].state == "RUNNING", timeout=1.0)
        manager.stop()
