"""
Startup capability detection.

Runs once when the engine is created and yields an ``Environment``
descriptor; components read it instead of probing the host on every call.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from healthsync.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Environment:
    """What the host can do.

    Attributes:
        store_backend: "sqlite" when the data dir holds a writable database, else "memory"
        alternate_store: True when a JSON file can serve as fallback persistence
        data_dir: Resolved data directory, if any
        disk_free_bytes: Free space on the data volume, if known
        disk_total_bytes: Size of the data volume, if known
        timers_available: Whether an event loop is running to host periodic tasks
    """

    store_backend: str
    alternate_store: bool
    data_dir: Path | None
    disk_free_bytes: int | None = None
    disk_total_bytes: int | None = None
    timers_available: bool = True

    @property
    def persistent(self) -> bool:
        return self.store_backend != "memory"

    @property
    def disk_percent_used(self) -> float | None:
        if not self.disk_total_bytes or self.disk_free_bytes is None:
            return None
        used = self.disk_total_bytes - self.disk_free_bytes
        return used / self.disk_total_bytes * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "store_backend": self.store_backend,
            "alternate_store": self.alternate_store,
            "data_dir": str(self.data_dir) if self.data_dir else None,
            "disk_free_bytes": self.disk_free_bytes,
            "disk_total_bytes": self.disk_total_bytes,
            "timers_available": self.timers_available,
        }


def _dir_writable(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".probe-"):
            pass
    except OSError:
        return False
    return True


def _sqlite_usable(path: Path) -> bool:
    try:
        conn = sqlite3.connect(path / "healthsync.db")
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except sqlite3.Error:
        return False
    return True


def _timers_available() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def detect_environment(data_dir: Path | str | None) -> Environment:
    """Probe storage and runtime capabilities.

    Args:
        data_dir: Directory for persistent state; None forces memory storage

    Returns:
        Environment descriptor
    """
    if data_dir is None:
        env = Environment(
            store_backend="memory",
            alternate_store=False,
            data_dir=None,
            timers_available=_timers_available(),
        )
        logger.info("environment_detected", **env.to_dict())
        return env

    path = Path(os.path.expanduser(str(data_dir)))
    writable = _dir_writable(path)
    store_backend = "sqlite" if writable and _sqlite_usable(path) else "memory"

    free = total = None
    if writable:
        try:
            usage = shutil.disk_usage(path)
            free, total = usage.free, usage.total
        except OSError as e:
            logger.warning("disk_usage_unavailable", path=str(path), error=str(e))

    env = Environment(
        store_backend=store_backend,
        alternate_store=writable,
        data_dir=path if writable else None,
        disk_free_bytes=free,
        disk_total_bytes=total,
        timers_available=_timers_available(),
    )
    if not env.persistent:
        logger.warning("persistent_storage_unavailable", data_dir=str(path))
    logger.info("environment_detected", **env.to_dict())
    return env
