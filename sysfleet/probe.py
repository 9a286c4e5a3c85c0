"""One-line request/response client for the control protocol.

Every call is bounded by a connect and a read timeout and never raises: transport
failures come back as a ``ProbeResult`` carrying a ``ProbeError`` kind.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("sysfleet.probe")


class ProbeError(str, enum.Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"
    RESET = "reset"
    NO_RESPONSE = "no_response"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class Timeouts:
    connect: float
    read: float


FAST = Timeouts(connect=0.25, read=1.0)
STANDARD = Timeouts(connect=0.5, read=1.0)
SLOW = Timeouts(connect=0.5, read=5.0)


@dataclass
class ProbeResult:
    ok: bool
    text: str = ""
    error: Optional[ProbeError] = None
    detail: str = ""

    @property
    def failed(self) -> bool:
        """Transport failure, or the peer answered with an ``ERROR`` line."""
        return not self.ok or self.text.startswith("ERROR")

    @property
    def sentinel(self) -> str:
        if self.ok:
            return self.text
        return f"ERROR: {self.detail or self.error.value}"

    @classmethod
    def fail(cls, error: ProbeError, detail: str = "") -> "ProbeResult":
        return cls(ok=False, error=error, detail=detail)


async def probe(address: str, port: int, command: str, timeouts: Timeouts = STANDARD) -> ProbeResult:
    writer = None
    try:
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeouts.connect)
        except asyncio.TimeoutError:
            return ProbeResult.fail(ProbeError.TIMEOUT, f"connect to {address}:{port} timed out")
        except ConnectionRefusedError:
            return ProbeResult.fail(ProbeError.REFUSED, f"connection to {address}:{port} refused")
        except OSError as e:
            return ProbeResult.fail(ProbeError.UNREACHABLE, f"{address}:{port} unreachable: {e}")

        try:
            writer.write((command.strip() + "\n").encode("utf-8"))
            await asyncio.wait_for(writer.drain(), timeouts.read)
            line = await asyncio.wait_for(reader.readline(), timeouts.read)
        except asyncio.TimeoutError:
            return ProbeResult.fail(ProbeError.TIMEOUT, f"no reply from {address}:{port} to {command}")
        except (ConnectionResetError, BrokenPipeError) as e:
            return ProbeResult.fail(ProbeError.RESET, f"connection to {address}:{port} reset: {e}")
        except OSError as e:
            return ProbeResult.fail(ProbeError.UNREACHABLE, f"{address}:{port}: {e}")
        except (ValueError, asyncio.LimitOverrunError, asyncio.IncompleteReadError) as e:
            # reply line longer than the stream limit
            return ProbeResult.fail(ProbeError.NO_RESPONSE, f"unreadable reply from {address}:{port}: {e}")

        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return ProbeResult.fail(ProbeError.NO_RESPONSE, f"empty reply from {address}:{port}")
        return ProbeResult(ok=True, text=text)
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


async def is_port_open(address: str, port: int, timeout: float = FAST.connect) -> bool:
    """Bare TCP connect check, no protocol exchange."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
