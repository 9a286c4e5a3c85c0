"""Port marker files: ``<prefix>_<pid>.port`` holding the control port a process bound."""
from __future__ import annotations

import logging
import os
import re
from typing import Dict, Iterable, Optional

logger = logging.getLogger("sysfleet.markers")

_MARKER_RE = re.compile(r"^(?P<prefix>[A-Za-z0-9]+)_(?P<pid>\d+)\.port$")


def marker_path(directory: str, prefix: str, pid: int) -> str:
    return os.path.join(directory, f"{prefix}_{pid}.port")


def write_marker(directory: str, prefix: str, pid: int, port: int) -> str:
    path = marker_path(directory, prefix, pid)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(f"{port}\n")
    os.replace(tmp, path)
    logger.info("port marker written", extra={"path": path, "port": port})
    return path


def remove_marker(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"could not remove port marker {path}: {e}")


def read_port(path: str) -> Optional[int]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    return int(line)
    except (OSError, ValueError):
        return None
    return None


def scan_markers(directory: str, prefixes: Iterable[str]) -> Dict[int, int]:
    """Map pid -> port for every readable marker with one of ``prefixes``."""
    wanted = set(prefixes)
    found: Dict[int, int] = {}
    try:
        names = os.listdir(directory)
    except OSError:
        return found
    for name in names:
        m = _MARKER_RE.match(name)
        if not m or m.group("prefix") not in wanted:
            continue
        port = read_port(os.path.join(directory, name))
        if port is not None:
            found[int(m.group("pid"))] = port
    return found
