"""
Event bus connecting the resilience layer to the UI layer.

Provides:
- Async-first publishing (sync publish schedules async handlers on the loop)
- Wildcard subscriptions ("circuit-*", "*")
- Priority-ordered handlers, one-shot subscriptions
- Bounded history and dead letters for failing handlers
"""

from __future__ import annotations

import asyncio
import inspect
import re
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any, Awaitable, Callable

from healthsync.logging_config import get_logger

logger = get_logger(__name__)


class EventPriority(IntEnum):
    """Event handler priority (lower = higher priority)."""

    CRITICAL = 0
    HIGH = 10
    NORMAL = 50
    LOW = 90


EventHandler = Callable[["Event"], Any] | Callable[["Event"], Awaitable[Any]]


class EventTypes:
    """Events emitted by healthsync."""

    OFFLINE_OPERATION_QUEUED = "offline-operation-queued"
    OPERATION_SYNCED = "operation-synced"
    SYNC_COMPLETED = "sync-completed"
    SYNC_FAILED = "sync-failed"
    CIRCUIT_OPENED = "circuit-opened"
    CIRCUIT_CLOSED = "circuit-closed"
    CONNECTIVITY_CHANGED = "connectivity-changed"
    STORAGE_UNSAFE = "storage-unsafe"


@dataclass
class Event:
    """
    Event object.

    Attributes:
        type: Event type (one of EventTypes)
        data: Event payload
        id: Unique event ID
        timestamp: When the event was created
        source: Emitting component
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    source: str = ""
    propagate: bool = True

    def stop_propagation(self):
        """Stop event from reaching lower-priority handlers."""
        self.propagate = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass
class Subscription:
    """Event subscription."""

    handler: EventHandler
    pattern: str
    priority: EventPriority
    is_async: bool
    once: bool = False


def _compile(pattern: str) -> re.Pattern:
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")


class EventBus:
    """
    Pub/sub bus owned by the engine.

    Handler failures never propagate to the publisher: they are logged and
    kept as dead letters, so a broken UI listener cannot stall a queue drain.

    Examples:
        bus.subscribe("sync-completed", on_sync)
        bus.subscribe("circuit-*", on_circuit_change)
        await bus.publish_async(EventTypes.SYNC_FAILED, {"operation_id": op.id})
    """

    def __init__(self, max_history: int = 200, max_dead_letters: int = 100):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events kept in history
            max_dead_letters: Maximum failed deliveries kept
        """
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._pattern_cache: dict[str, re.Pattern] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._dead_letter: deque[tuple[Event, Exception]] = deque(maxlen=max_dead_letters)
        self._pending: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        pattern: str,
        handler: EventHandler,
        priority: EventPriority = EventPriority.NORMAL,
        once: bool = False,
    ) -> Callable[[], None]:
        """
        Subscribe to events matching a pattern.

        Args:
            pattern: Event type pattern (supports * wildcard)
            handler: Handler function (sync or async)
            priority: Handler priority
            once: Unsubscribe after first delivery

        Returns:
            Unsubscribe function
        """
        subscription = Subscription(
            handler=handler,
            pattern=pattern,
            priority=priority,
            is_async=inspect.iscoroutinefunction(handler),
            once=once,
        )
        self._subscriptions[pattern].append(subscription)
        self._subscriptions[pattern].sort(key=lambda s: s.priority)
        if pattern not in self._pattern_cache:
            self._pattern_cache[pattern] = _compile(pattern)

        logger.debug(
            "event_subscribed",
            pattern=pattern,
            handler=getattr(handler, "__name__", repr(handler)),
        )

        def unsubscribe():
            if subscription in self._subscriptions[pattern]:
                self._subscriptions[pattern].remove(subscription)

        return unsubscribe

    def unsubscribe_all(self, pattern: str | None = None):
        if pattern:
            self._subscriptions[pattern].clear()
        else:
            self._subscriptions.clear()

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """
        Publish from synchronous code.

        Sync handlers run immediately. Async handlers are scheduled on the
        running loop; await ``drain()`` to wait for them.
        """
        event = Event(type=event_type, data=dict(data or {}), source=source)
        self._history.append(event)

        for sub in self._matching(event.type):
            if not event.propagate:
                break
            if sub.is_async:
                task = asyncio.get_running_loop().create_task(self._deliver(sub, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                self._deliver_sync(sub, event)
        return event

    async def publish_async(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Publish and await every handler in priority order."""
        event = Event(type=event_type, data=dict(data or {}), source=source)
        self._history.append(event)

        logger.debug("event_dispatching", type=event.type, id=event.id)
        for sub in self._matching(event.type):
            if not event.propagate:
                break
            if sub.is_async:
                await self._deliver(sub, event)
            else:
                self._deliver_sync(sub, event)
        return event

    async def drain(self) -> None:
        """Wait for handlers scheduled by ``publish``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _matching(self, event_type: str) -> list[Subscription]:
        matching: list[Subscription] = []
        for pattern, subs in self._subscriptions.items():
            regex = self._pattern_cache.get(pattern)
            if regex and regex.match(event_type):
                matching.extend(subs)
        matching.sort(key=lambda s: s.priority)
        return matching

    def _finish(self, sub: Subscription) -> None:
        if sub.once and sub in self._subscriptions[sub.pattern]:
            self._subscriptions[sub.pattern].remove(sub)

    def _record_failure(self, sub: Subscription, event: Event, error: Exception) -> None:
        logger.exception(
            "event_handler_error",
            type=event.type,
            handler=getattr(sub.handler, "__name__", repr(sub.handler)),
        )
        self._dead_letter.append((event, error))

    def _deliver_sync(self, sub: Subscription, event: Event) -> None:
        try:
            sub.handler(event)
        except Exception as e:
            self._record_failure(sub, event, e)
        finally:
            self._finish(sub)

    async def _deliver(self, sub: Subscription, event: Event) -> None:
        try:
            await sub.handler(event)
        except Exception as e:
            self._record_failure(sub, event, e)
        finally:
            self._finish(sub)

    # -------------------------------------------------------------------------
    # History & stats
    # -------------------------------------------------------------------------

    def get_history(self, event_type: str | None = None, limit: int = 100) -> list[Event]:
        """Recent events, newest first."""
        events = list(self._history)
        if event_type:
            regex = _compile(event_type)
            events = [e for e in events if regex.match(e.type)]
        return list(reversed(events))[:limit]

    def get_dead_letters(self, limit: int = 100) -> list[tuple[Event, str]]:
        return [(event, str(error)) for event, error in list(self._dead_letter)[-limit:]]

    def get_stats(self) -> dict[str, Any]:
        return {
            "patterns": len(self._subscriptions),
            "total_subscriptions": sum(len(s) for s in self._subscriptions.values()),
            "history_size": len(self._history),
            "dead_letters": len(self._dead_letter),
        }
