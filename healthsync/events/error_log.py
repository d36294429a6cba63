"""
Bounded error log.

Every handled error is recorded here with context before it propagates.
The log is a ring buffer: inserting beyond ``max_size`` evicts the oldest
entry. Entries are mirrored to the ``errorLog`` store region so diagnostics
survive a restart.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any

from healthsync.core.store import DurableStore, Regions
from healthsync.errors import ResilienceError, StorageError
from healthsync.logging_config import get_logger
from healthsync.utils import Clock, iso_from_ms, now_ms

logger = get_logger(__name__)

_LOG_KEY = "entries"


@dataclass
class ErrorLogEntry:
    """One recorded failure."""

    type: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["time"] = iso_from_ms(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorLogEntry:
        return cls(
            type=data["type"],
            message=data.get("message", ""),
            context=data.get("context", {}),
            timestamp=data.get("timestamp", 0.0),
            id=data.get("id") or uuid.uuid4().hex,
        )


class ErrorLog:
    """
    Ring buffer of handled errors.

    Example:
        log = ErrorLog(max_size=100, store=store)
        await log.record("NETWORK_ERROR", exc, {"url": url})
        recent = log.entries(limit=10)
    """

    def __init__(
        self,
        max_size: int = 100,
        store: DurableStore | None = None,
        clock: Clock = now_ms,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.store = store
        self.clock = clock
        self._entries: deque[ErrorLogEntry] = deque(maxlen=max_size)
        self._persisting = False

    def __len__(self) -> int:
        return len(self._entries)

    async def record(
        self,
        error_type: str | None,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
    ) -> ErrorLogEntry:
        """
        Append an entry, evicting the oldest when full.

        Args:
            error_type: Type tag; defaults to the error's own tag
            error: Exception or message
            context: Extra diagnostic fields

        Returns:
            The recorded entry
        """
        ctx = dict(context or {})
        if isinstance(error, ResilienceError):
            error_type = error_type or error.error_type
            ctx = {**error.context, **ctx}
            if error.attempts is not None:
                ctx.setdefault("attempts", error.attempts)
        message = str(error) if isinstance(error, BaseException) else error

        entry = ErrorLogEntry(
            type=error_type or type(error).__name__,
            message=message,
            context=ctx,
            timestamp=self.clock(),
        )
        self._entries.append(entry)
        logger.warning("error_recorded", type=entry.type, message=entry.message)
        await self._persist()
        return entry

    async def _persist(self) -> None:
        # A storage failure reports back into this log; do not recurse.
        if self.store is None or self._persisting:
            return
        self._persisting = True
        try:
            await self.store.put(
                Regions.ERROR_LOG, _LOG_KEY, [e.to_dict() for e in self._entries]
            )
        except StorageError as e:
            logger.warning("error_log_persist_failed", error=e.message)
        finally:
            self._persisting = False

    async def load(self) -> int:
        """Restore persisted entries. Returns how many were loaded."""
        if self.store is None:
            return 0
        raw = await self.store.get(Regions.ERROR_LOG, _LOG_KEY) or []
        self._entries.clear()
        for item in raw[-self.max_size:]:
            self._entries.append(ErrorLogEntry.from_dict(item))
        return len(self._entries)

    def entries(self, limit: int | None = None, error_type: str | None = None) -> list[ErrorLogEntry]:
        """Recorded entries, newest first."""
        items = [e for e in reversed(self._entries) if error_type is None or e.type == error_type]
        return items[:limit] if limit is not None else items

    async def clear(self) -> None:
        self._entries.clear()
        if self.store is not None:
            await self.store.delete(Regions.ERROR_LOG, _LOG_KEY)

    def counts(self) -> dict[str, int]:
        """Entry count per error type."""
        counts: dict[str, int] = {}
        for entry in self._entries:
            counts[entry.type] = counts.get(entry.type, 0) + 1
        return counts
