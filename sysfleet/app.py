import asyncio
import logging
import os
import signal
import subprocess
import sys

from sysfleet.config import FleetConfig
from sysfleet.host import LocalBotHost, SimpleBotUnit
from sysfleet.node import FleetNode

logger = logging.getLogger("sysfleet")


def setup_logging():
    level = os.environ.get("SYSFLEET_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_host(cfg: FleetConfig) -> LocalBotHost:
    units = [SimpleBotUnit(name) for name in cfg.units]
    return LocalBotHost(name=cfg.bot_name, kind=cfg.bot_kind, version=cfg.version, mode=cfg.mode, units=units)


def respawn():
    if getattr(sys, "frozen", False):
        cmd = [sys.executable, *sys.argv[1:]]
    else:
        cmd = [sys.executable, "-m", "sysfleet", *sys.argv[1:]]
    logger.info(f"starting replacement process: {' '.join(cmd)}")
    subprocess.Popen(cmd, close_fds=True)


async def serve(cfg: FleetConfig) -> bool:
    """Run one node until shutdown. Returns True when the process should be restarted."""
    node = FleetNode(cfg, build_host(cfg))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, node.ctx.request_shutdown)
        except (NotImplementedError, RuntimeError):
            pass
    await node.run()
    return node.ctx.restart_after_shutdown


def main():
    setup_logging()
    cfg = FleetConfig.from_env()
    try:
        restart = asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        return
    if restart:
        respawn()


if __name__ == "__main__":
    main()
