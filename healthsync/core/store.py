"""
Durable store abstraction and backends.

The store is the one shared mutable resource of the engine: cache regions,
the offline queue, circuit health records and the error log all live in it,
each in its own region. Values are JSON-compatible dicts/lists.

Backends:
- SqliteStore: primary on-device database
- JsonFileStore: alternate persistence target used when the primary fails
- InMemoryStore: tests and hosts without a writable data directory

ResilientStore wraps a primary and an optional alternate, bounds every call
with a timeout, serializes writes per key and escalates a double failure to a
fatal StorageError.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from healthsync.errors import StorageError
from healthsync.logging_config import get_logger

logger = get_logger(__name__)


class Regions:
    """Persisted state layout."""

    SERVICE_HEALTH = "serviceHealth"
    CACHE_ENTRIES = "cacheEntries"
    OFFLINE_QUEUE = "offlineQueue"
    ERROR_LOG = "errorLog"
    SYNC_METADATA = "syncMetadata"

    ALL = (SERVICE_HEALTH, CACHE_ENTRIES, OFFLINE_QUEUE, ERROR_LOG, SYNC_METADATA)


class DurableStore(ABC):
    """Abstract async key/value store partitioned into regions.

    ``items`` returns entries in first-insertion order; updating an existing
    key keeps its position.
    """

    name: str = "store"

    @abstractmethod
    async def get(self, region: str, key: str) -> Any | None:
        """Get value for key, or None."""

    @abstractmethod
    async def put(self, region: str, key: str, value: Any) -> None:
        """Insert or replace value for key."""

    @abstractmethod
    async def delete(self, region: str, key: str) -> bool:
        """Delete key. Returns True if it existed."""

    @abstractmethod
    async def items(self, region: str) -> list[tuple[str, Any]]:
        """All (key, value) pairs of a region in insertion order."""

    @abstractmethod
    async def clear(self, region: str) -> int:
        """Remove every key of a region. Returns number removed."""

    async def close(self) -> None:
        """Release backend resources."""

    async def restore_primary(self) -> bool:
        """Switch back to the preferred backend after a failover. Plain backends never fail over."""
        return True


class InMemoryStore(DurableStore):
    """Process-local store. Values are deep-copied in and out."""

    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def get(self, region: str, key: str) -> Any | None:
        value = self._data.get(region, {}).get(key)
        return copy.deepcopy(value)

    async def put(self, region: str, key: str, value: Any) -> None:
        self._data.setdefault(region, {})[key] = copy.deepcopy(value)

    async def delete(self, region: str, key: str) -> bool:
        return self._data.get(region, {}).pop(key, None) is not None

    async def items(self, region: str) -> list[tuple[str, Any]]:
        return [(k, copy.deepcopy(v)) for k, v in self._data.get(region, {}).items()]

    async def clear(self, region: str) -> int:
        removed = len(self._data.get(region, {}))
        self._data.pop(region, None)
        return removed


class SqliteStore(DurableStore):
    """SQLite-backed store.

    A single connection is shared and guarded by a lock; calls run in a worker
    thread via ``asyncio.to_thread`` so the event loop never blocks on disk.
    """

    name = "sqlite"

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS records (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            region TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(region, key)
        )
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        with self._lock:
            self._conn.execute(self._SCHEMA)
            self._conn.commit()

    def _run(self, sql: str, params: tuple = (), fetch: bool = False) -> Any:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            if fetch:
                return cursor.fetchall()
            self._conn.commit()
            return cursor.rowcount

    async def _call(self, sql: str, params: tuple = (), fetch: bool = False) -> Any:
        try:
            return await asyncio.to_thread(self._run, sql, params, fetch)
        except sqlite3.Error as exc:
            raise StorageError(f"sqlite operation failed: {exc}") from exc

    async def get(self, region: str, key: str) -> Any | None:
        rows = await self._call(
            "SELECT value FROM records WHERE region = ? AND key = ?",
            (region, key),
            fetch=True,
        )
        return json.loads(rows[0][0]) if rows else None

    async def put(self, region: str, key: str, value: Any) -> None:
        await self._call(
            """
            INSERT INTO records (region, key, value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(region, key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (region, key, json.dumps(value), datetime.now(UTC).isoformat()),
        )

    async def delete(self, region: str, key: str) -> bool:
        count = await self._call(
            "DELETE FROM records WHERE region = ? AND key = ?", (region, key)
        )
        return count > 0

    async def items(self, region: str) -> list[tuple[str, Any]]:
        rows = await self._call(
            "SELECT key, value FROM records WHERE region = ? ORDER BY seq",
            (region,),
            fetch=True,
        )
        return [(key, json.loads(value)) for key, value in rows]

    async def clear(self, region: str) -> int:
        return await self._call("DELETE FROM records WHERE region = ?", (region,))

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


class JsonFileStore(DurableStore):
    """Whole-file JSON store, rewritten atomically on every mutation.

    Only meant as the alternate target when the primary database is unusable,
    so simplicity wins over write throughput.
    """

    name = "json-file"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: dict[str, dict[str, Any]] | None = None

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            if self.path.exists():
                self._data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            else:
                self._data = {}
        return self._data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data), encoding="utf-8")
        os.replace(tmp, self.path)

    async def _io(self, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except (OSError, ValueError) as exc:
            raise StorageError(f"json store operation failed: {exc}") from exc

    async def get(self, region: str, key: str) -> Any | None:
        data = await self._io(self._load)
        return copy.deepcopy(data.get(region, {}).get(key))

    async def put(self, region: str, key: str, value: Any) -> None:
        def _put() -> None:
            self._load().setdefault(region, {})[key] = copy.deepcopy(value)
            self._flush()

        await self._io(_put)

    async def delete(self, region: str, key: str) -> bool:
        def _delete() -> bool:
            existed = self._load().get(region, {}).pop(key, None) is not None
            if existed:
                self._flush()
            return existed

        return await self._io(_delete)

    async def items(self, region: str) -> list[tuple[str, Any]]:
        data = await self._io(self._load)
        return [(k, copy.deepcopy(v)) for k, v in data.get(region, {}).items()]

    async def clear(self, region: str) -> int:
        def _clear() -> int:
            removed = len(self._load().pop(region, {}))
            self._flush()
            return removed

        return await self._io(_clear)


FailureHook = Callable[[StorageError], Awaitable[None]]

# Marks a key deleted while degraded so the primary's copy stays hidden.
_TOMBSTONE = "__healthsync_deleted__"


def _is_tombstone(value: Any) -> bool:
    return isinstance(value, dict) and value.get(_TOMBSTONE) is True


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class ResilientStore(DurableStore):
    """
    Store wrapper adding timeouts, per-key write serialization and fallback.

    On a primary failure the wrapper switches to the alternate target and
    stays there (``degraded``) until ``restore_primary()`` succeeds. While
    degraded, writes land in the alternate and reads merge both targets, the
    alternate's copy winning. Deletes leave a tombstone in the alternate.
    ``restore_primary()`` folds the alternate's entries back into the
    primary before switching over; ``recover()`` does the same at startup for
    entries a previous run left behind.

    If the alternate also fails, or none is configured, a fatal StorageError
    is raised after ``on_failure`` has been notified.

    Example:
        store = ResilientStore(
            SqliteStore(data_dir / "healthsync.db"),
            alternate=JsonFileStore(data_dir / "healthsync-fallback.json"),
            timeout_ms=5000,
        )
        await store.recover()
    """

    def __init__(
        self,
        primary: DurableStore,
        alternate: DurableStore | None = None,
        timeout_ms: float = 5000,
        on_failure: FailureHook | None = None,
    ):
        """
        Initialize resilient store.

        Args:
            primary: Preferred backend
            alternate: Backend used after the primary fails
            timeout_ms: Bound on every backend call
            on_failure: Coroutine notified of every StorageError (fatal or not)
        """
        self.primary = primary
        self.alternate = alternate
        self.timeout_ms = timeout_ms
        self.on_failure = on_failure
        self.degraded = False
        self._locks: dict[tuple[str, str], _KeyLock] = {}
        self._alternate_writes = 0
        self.name = f"resilient({primary.name})"

    @property
    def active(self) -> DurableStore:
        """Backend currently serving requests."""
        if self.degraded and self.alternate is not None:
            return self.alternate
        return self.primary

    @property
    def _merging(self) -> bool:
        return self.degraded and self.alternate is not None

    @asynccontextmanager
    async def _locked(self, region: str, key: str) -> AsyncIterator[None]:
        slot = (region, key)
        entry = self._locks.get(slot)
        if entry is None:
            entry = self._locks[slot] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[slot]

    async def _bounded(self, backend: DurableStore, op: str, region: str, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                getattr(backend, op)(region, *args), self.timeout_ms / 1000.0
            )
        except StorageError as exc:
            exc.region = exc.region or region
            raise
        except TimeoutError as exc:
            raise StorageError(
                f"{backend.name} {op} timed out after {self.timeout_ms}ms", region=region
            ) from exc
        except (OSError, ValueError, TypeError) as exc:
            raise StorageError(f"{backend.name} {op} failed: {exc}", region=region) from exc

    async def _notify(self, error: StorageError) -> None:
        if self.on_failure is not None:
            await self.on_failure(error)

    async def _dispatch(self, op: str, region: str, *args: Any) -> Any:
        backend = self.active
        try:
            result = await self._bounded(backend, op, region, *args)
        except StorageError as exc:
            if backend is self.alternate or self.alternate is None:
                fatal = StorageError(
                    f"Durable store unavailable: {exc.message}",
                    region=region,
                    fatal=True,
                    context={"operation": op, "backend": backend.name},
                )
                logger.error("storage_fatal", region=region, op=op, error=exc.message)
                await self._notify(fatal)
                raise fatal from exc

            logger.warning(
                "storage_primary_failed",
                region=region,
                op=op,
                error=exc.message,
                alternate=self.alternate.name,
            )
            self.degraded = True
            await self._notify(exc)
            return await self._dispatch(op, region, *args)

        if backend is self.alternate and op != "get" and op != "items":
            self._alternate_writes += 1
        return result

    async def _primary_read(self, op: str, region: str, *args: Any) -> Any:
        """Best-effort read of the primary while degraded."""
        try:
            return await self._bounded(self.primary, op, region, *args)
        except StorageError as exc:
            logger.debug("storage_primary_read_skipped", region=region, op=op, error=exc.message)
            return [] if op == "items" else None

    async def get(self, region: str, key: str) -> Any | None:
        value = await self._dispatch("get", region, key)
        if self._merging and value is None:
            value = await self._primary_read("get", region, key)
        return None if _is_tombstone(value) else value

    async def put(self, region: str, key: str, value: Any) -> None:
        async with self._locked(region, key):
            await self._dispatch("put", region, key, value)

    async def delete(self, region: str, key: str) -> bool:
        async with self._locked(region, key):
            if not self._merging:
                existed = await self._dispatch("delete", region, key)
                if not self._merging:
                    return existed
            existed = await self.get(region, key) is not None
            await self._dispatch("put", region, key, {_TOMBSTONE: True})
            return existed

    async def items(self, region: str) -> list[tuple[str, Any]]:
        entries = await self._dispatch("items", region)
        if not self._merging:
            return entries
        merged = dict(await self._primary_read("items", region))
        for key, value in entries:
            merged[key] = value
        return [(key, value) for key, value in merged.items() if not _is_tombstone(value)]

    async def clear(self, region: str) -> int:
        if not self._merging:
            removed = await self._dispatch("clear", region)
            if not self._merging:
                return removed
        keys = [key for key, _ in await self.items(region)]
        await self._dispatch("clear", region)
        for key, _ in await self._primary_read("items", region):
            await self._dispatch("put", region, key, {_TOMBSTONE: True})
        return len(keys)

    async def _fold_alternate(self) -> int:
        """Move alternate entries into the primary.

        Returns:
            Number of entries moved, or -1 when the alternate could not be read

        Raises:
            StorageError: The primary rejected a write
        """
        assert self.alternate is not None
        moved = 0
        for region in Regions.ALL:
            try:
                entries = await self._bounded(self.alternate, "items", region)
            except StorageError as exc:
                logger.warning("storage_alternate_unreadable", region=region, error=exc.message)
                return -1
            for key, value in entries:
                async with self._locked(region, key):
                    if _is_tombstone(value):
                        await self._bounded(self.primary, "delete", region, key)
                    else:
                        await self._bounded(self.primary, "put", region, key, value)
                    try:
                        await self._bounded(self.alternate, "delete", region, key)
                    except StorageError as exc:
                        logger.warning("storage_alternate_delete_failed", region=region, error=exc.message)
                        return -1
                moved += 1
        return moved

    async def restore_primary(self) -> bool:
        """Probe the primary and, if it answers, fold the alternate back into it.

        Stays degraded (returns False) when the probe or a fold write fails.
        """
        if not self.degraded:
            return True
        try:
            await self._bounded(self.primary, "get", Regions.SYNC_METADATA, "__probe__")
        except StorageError:
            return False
        if self.alternate is not None:
            total = 0
            while True:
                writes_before = self._alternate_writes
                try:
                    moved = await self._fold_alternate()
                except StorageError as exc:
                    logger.warning("storage_restore_failed", moved=total, error=exc.message)
                    return False
                if moved < 0:
                    break
                total += moved
                if moved == 0 and self._alternate_writes == writes_before:
                    break
            if total:
                logger.info("storage_alternate_folded", moved=total, backend=self.primary.name)
        self.degraded = False
        logger.info("storage_primary_restored", backend=self.primary.name)
        return True

    async def recover(self) -> bool:
        """Fold entries left in the alternate by an earlier run into the primary.

        Returns:
            True when the primary is serving afterwards
        """
        if self.alternate is None:
            return True
        self.degraded = True
        return await self.restore_primary()

    async def close(self) -> None:
        await self.primary.close()
        if self.alternate is not None:
            await self.alternate.close()
