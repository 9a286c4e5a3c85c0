"""Fleet updates.

``ReleaseFeed`` reads the latest release per bot kind, ``SelfUpdater`` swaps the
running executable for a downloaded one, and ``UpdateOrchestrator`` drives the
two-phase rollout: idle every outdated instance, then, once the fleet is idle,
update remote instances one by one and this process last.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import ClientError, ClientTimeout

from sysfleet.context import FleetContext
from sysfleet.host import BotCommand
from sysfleet.models import Instance, InstanceUpdateResult, UpdateAllResult, is_idle_state, normalize_kind
from sysfleet.probe import SLOW, STANDARD, probe
from sysfleet.registry import InstanceRegistry

logger = logging.getLogger("sysfleet.update")

GITHUB_API = "https://api.github.com"
FEED_TIMEOUT = 15
DOWNLOAD_TIMEOUT = 600
SHUTDOWN_DELAY = 1.0

ERR_FETCH = "Failed to fetch latest version"
ERR_IDLE_TIMEOUT = "Timeout waiting for all instances to idle - updates cancelled"
ERR_IDLE_SEND = "Failed to send idle command"
ERR_UPDATE_SEND = "Failed to start update"
ERR_BUSY = "Update already in progress"


@dataclass
class ReleaseInfo:
    tag: str
    prerelease: bool = False
    body: str = ""
    assets: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def required(self) -> bool:
        return not self.prerelease and "required = yes" in (self.body or "").lower()

    def download_url(self, suffix: str) -> Optional[str]:
        for asset in self.assets:
            if str(asset.get("name", "")).lower().endswith(suffix.lower()):
                return asset.get("browser_download_url")
        return None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReleaseInfo":
        return cls(
            tag=str(data.get("tag_name") or ""),
            prerelease=bool(data.get("prerelease", False)),
            body=str(data.get("body") or ""),
            assets=[a for a in data.get("assets") or [] if isinstance(a, dict)],
        )


class ReleaseFeed:
    def __init__(self, ctx: FleetContext, repos: Optional[Dict[str, str]] = None, api_base: str = GITHUB_API):
        self.ctx = ctx
        self.repos = dict(repos if repos is not None else ctx.config.release_repos)
        self.api_base = api_base.rstrip("/")

    async def latest(self, kind: str) -> Optional[ReleaseInfo]:
        repo = self.repos.get(kind)
        if not repo:
            logger.warning(f"no release repository configured for {kind}")
            return None
        url = f"{self.api_base}/repos/{repo}/releases/latest"
        client = await self.ctx.ensure_http_client()
        try:
            async with client.get(url, headers={"User-Agent": "sysfleet"}, timeout=ClientTimeout(total=FEED_TIMEOUT)) as r:
                if r.status != 200:
                    logger.warning(f"release feed returned {r.status}", extra={"url": url})
                    return None
                data = await r.json(content_type=None)
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"release feed error: {e}", extra={"url": url})
            return None
        if not isinstance(data, dict) or not data.get("tag_name"):
            return None
        return ReleaseInfo.from_api(data)

    async def latest_version(self, kind: str) -> Optional[str]:
        release = await self.latest(kind)
        return release.tag if release else None


# ----------------------------
# Self update
# ----------------------------
class SelfUpdater:
    def __init__(self, ctx: FleetContext, feed: ReleaseFeed):
        self.ctx = ctx
        self.feed = feed

    @property
    def kind(self) -> str:
        return normalize_kind(self.ctx.host.kind or self.ctx.config.bot_kind)

    @property
    def version(self) -> str:
        return self.ctx.host.version or self.ctx.config.version

    async def download(self, url: str, directory: str) -> str:
        client = await self.ctx.ensure_http_client()
        fd, tmp = tempfile.mkstemp(prefix=".sysfleet-", suffix=".download", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                async with client.get(url, headers={"User-Agent": "sysfleet"}, timeout=ClientTimeout(total=DOWNLOAD_TIMEOUT)) as r:
                    r.raise_for_status()
                    async for chunk in r.content.iter_chunked(64 * 1024):
                        f.write(chunk)
        except BaseException:
            os.unlink(tmp)
            raise
        return tmp

    @staticmethod
    def install(downloaded: str, target: str):
        """Rename ``target`` to ``<target>.backup`` and move ``downloaded`` into its place."""
        backup = target + ".backup"
        if os.path.exists(backup):
            os.remove(backup)
        moved = False
        try:
            if os.path.exists(target):
                os.replace(target, backup)
                moved = True
            shutil.move(downloaded, target)
            os.chmod(target, 0o755)
        except OSError:
            if moved and not os.path.exists(target):
                try:
                    os.replace(backup, target)
                    logger.warning("install failed, previous executable restored", extra={"target": target})
                except OSError:
                    logger.exception("could not restore backup", extra={"backup": backup})
            raise

    async def apply(self, release: ReleaseInfo):
        """Download and install ``release``, then schedule an orderly shutdown. Raises on failure."""
        url = release.download_url(self.ctx.config.asset_suffix)
        if not url:
            raise RuntimeError(f"release {release.tag} has no {self.ctx.config.asset_suffix} asset")
        target = self.ctx.config.executable_path
        logger.info(f"installing {release.tag}", extra={"url": url, "target": target})
        downloaded = await self.download(url, os.path.dirname(os.path.abspath(target)))
        try:
            self.install(downloaded, target)
        finally:
            if os.path.exists(downloaded):
                os.unlink(downloaded)
        asyncio.get_running_loop().call_later(SHUTDOWN_DELAY, self.ctx.request_shutdown)

    async def self_update(self) -> bool:
        """Update this process when the feed's latest version differs from ours."""
        release = await self.feed.latest(self.kind)
        if release is None:
            logger.warning(ERR_FETCH, extra={"kind": self.kind})
            return False
        if release.tag == self.version:
            logger.info("already on the latest version", extra={"version": self.version})
            return False
        await self.apply(release)
        return True


# ----------------------------
# Orchestrator
# ----------------------------
class UpdateOrchestrator:
    def __init__(
        self,
        ctx: FleetContext,
        registry: InstanceRegistry,
        feed: ReleaseFeed,
        updater: SelfUpdater,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ctx = ctx
        self.registry = registry
        self.feed = feed
        self.updater = updater
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def is_local(self, inst: Instance) -> bool:
        return inst.pid == self.ctx.pid or self.ctx.is_local_target(inst.address, inst.port)

    async def start_update(self, kind: Optional[str] = None) -> UpdateAllResult:
        if self._lock.locked():
            return UpdateAllResult(stage="idling", error=ERR_BUSY)
        async with self._lock:
            result = UpdateAllResult(stage="idling")
            instances, result.results = await self._plan(kind)
            by_key = {i.key: i for i in instances}
            for r in result.results:
                if r.needs_update:
                    await self._idle(by_key[f"{r.address}:{r.port}"], r)
            logger.info(f"idle phase sent to {result.updates_needed} instance(s)", extra={"kind": kind or "all"})
            return result

    async def proceed_update(self, kind: Optional[str] = None, force_stop: bool = False) -> UpdateAllResult:
        if self._lock.locked():
            return UpdateAllResult(stage="updating", error=ERR_BUSY)
        async with self._lock:
            result = UpdateAllResult(stage="updating")
            instances, result.results = await self._plan(kind)
            pending = [r for r in result.results if r.needs_update]
            if not pending:
                return result

            online = [i for i in instances if i.online]
            if not await self.wait_for_idle(online):
                if not force_stop:
                    for r in pending:
                        r.error = ERR_IDLE_TIMEOUT
                    logger.warning(ERR_IDLE_TIMEOUT)
                    return result
                logger.warning("idle wait timed out, force-stopping units")
                await self._stop_all(online)

            by_key = {i.key: i for i in instances}
            ordered = [r for r in pending if not self.is_local(by_key[f"{r.address}:{r.port}"])]
            ordered += [r for r in pending if self.is_local(by_key[f"{r.address}:{r.port}"])]
            for r in ordered:
                await self._update_one(by_key[f"{r.address}:{r.port}"], r)
            logger.info(
                f"update batch done: needed={result.updates_needed} started={result.updates_started} failed={result.updates_failed}"
            )
            return result

    # ----------------------------
    # Steps
    # ----------------------------
    async def _plan(self, kind: Optional[str]):
        instances = [i for i in await self.registry.discover(force=True) if i.online]
        if kind:
            instances = [i for i in instances if i.bot_kind == kind]
        latest: Dict[str, Optional[str]] = {}
        for k in sorted({i.bot_kind for i in instances}):
            latest[k] = await self.feed.latest_version(k)

        results = []
        for inst in instances:
            r = InstanceUpdateResult(
                port=inst.port,
                address=inst.address,
                pid=inst.pid,
                bot_kind=inst.bot_kind,
                current_version=inst.version,
                is_remote=not self.is_local(inst),
            )
            version = latest.get(inst.bot_kind)
            if version is None:
                r.error = ERR_FETCH
            else:
                r.latest_version = version
                r.needs_update = inst.version != version
            results.append(r)
        return instances, results

    async def _idle(self, inst: Instance, r: InstanceUpdateResult):
        try:
            if self.is_local(inst):
                if any(not is_idle_state(u.read_state()) for u in self.ctx.host.list_units()):
                    self.ctx.dispatch_local(BotCommand.IDLE)
                return
            res = await probe(inst.address, inst.port, "IDLEALL", STANDARD)
            if res.failed:
                r.error = ERR_IDLE_SEND
                logger.warning(f"failed to send idle command to {inst.key}: {res.sentinel}")
        except Exception as e:
            r.error = str(e)
            logger.exception(f"error idling instance {inst.key}")

    async def all_idle(self, instances: List[Instance]) -> bool:
        for inst in instances:
            units = await self.registry.unit_states(inst)
            if units is None or any(not is_idle_state(u.status) for u in units):
                return False
        return True

    async def wait_for_idle(self, instances: List[Instance]) -> bool:
        cfg = self.ctx.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.update_idle_timeout
        while True:
            if await self.all_idle(instances):
                logger.info("all instances are idle, ready for updates")
                return True
            if loop.time() >= deadline:
                return False
            await self._sleep(cfg.update_poll_interval)

    async def _stop_all(self, instances: List[Instance]):
        for inst in instances:
            if self.is_local(inst):
                self.ctx.dispatch_local(BotCommand.STOP)
                continue
            res = await probe(inst.address, inst.port, "STOPALL", STANDARD)
            if res.failed:
                logger.warning(f"force-stop failed for {inst.key}: {res.sentinel}")

    async def _update_one(self, inst: Instance, r: InstanceUpdateResult):
        try:
            if self.is_local(inst):
                release = await self.feed.latest(inst.bot_kind)
                if release is None:
                    r.error = ERR_FETCH
                    return
                await self.updater.apply(release)
                r.update_started = True
                logger.info("local instance update installed, shutting down")
                return
            logger.info(f"triggering update for instance {inst.key}")
            res = await probe(inst.address, inst.port, "UPDATE", SLOW)
            if res.failed:
                r.error = ERR_UPDATE_SEND
                return
            r.update_started = True
            await self._sleep(self.ctx.config.update_instance_gap)
        except Exception as e:
            r.error = str(e)
            logger.exception(f"error updating instance {inst.key}")
