"""
Durable offline operation queue.

Writes made while the device is offline are persisted in the
``offlineQueue`` store region and replayed in enqueue order once
connectivity returns. Replay goes through the ProtectedCaller, so an open
circuit stops a drain early instead of burning attempts.

Ordering: within one drain cycle, once an operation on a record does not
sync, later operations on the same record are held back until the next
cycle. Operations on other records keep flowing.

Example:
    queue = OfflineOperationQueue(store, caller, replayer, bus=bus)
    op = await queue.enqueue("create", "moods", {"mood": 4, "date": "2024-05-01"})
    report = await queue.drain()
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from healthsync.core.store import DurableStore, Regions
from healthsync.errors import (
    CircuitOpenError,
    ResilienceError,
    StorageError,
    SyncConflictError,
    ValidationError,
)
from healthsync.events.bus import EventBus, EventTypes
from healthsync.logging_config import get_logger
from healthsync.resilience.protected import CallOptions, ProtectedCaller
from healthsync.resilience.retry import RetryPolicy
from healthsync.utils import Clock, iso_from_ms, now_ms

logger = get_logger(__name__)

_METADATA_KEY = "offline-queue"


# =============================================================================
# Data Classes & Enums
# =============================================================================


class OperationKind(str, Enum):
    """Mutation type."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    """Queued operation status."""

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    FAILED = "failed"
    SYNCED = "synced"


@dataclass
class QueuedOperation:
    """A mutation waiting to reach the server."""

    id: str
    kind: OperationKind
    target_collection: str
    payload: dict[str, Any] | None
    record_id: str | None = None
    created_at: float = 0.0
    sequence: int = 0
    attempts: int = 0
    max_attempts: int = 3
    status: OperationStatus = OperationStatus.PENDING
    last_error: str | None = None
    last_attempt_at: float | None = None
    synced_at: float | None = None
    conflict: dict[str, Any] | None = None

    @property
    def record_key(self) -> str:
        """Ordering scope: the logical record, or the operation itself for anonymous creates."""
        return f"{self.target_collection}/{self.record_id or self.id}"

    @property
    def replayable(self) -> bool:
        return self.status in (OperationStatus.PENDING, OperationStatus.IN_FLIGHT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target_collection": self.target_collection,
            "payload": self.payload,
            "record_id": self.record_id,
            "created_at": self.created_at,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at,
            "synced_at": self.synced_at,
            "conflict": self.conflict,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedOperation:
        return cls(
            id=data["id"],
            kind=OperationKind(data["kind"]),
            target_collection=data["target_collection"],
            payload=data.get("payload"),
            record_id=data.get("record_id"),
            created_at=data.get("created_at", 0.0),
            sequence=data.get("sequence", 0),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 3),
            status=OperationStatus(data.get("status", OperationStatus.PENDING.value)),
            last_error=data.get("last_error"),
            last_attempt_at=data.get("last_attempt_at"),
            synced_at=data.get("synced_at"),
            conflict=data.get("conflict"),
        )


@dataclass
class DrainReport:
    """Outcome of one drain cycle."""

    started_at: float
    finished_at: float | None = None
    synced: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def processed(self) -> int:
        return len(self.synced) + len(self.retried) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": iso_from_ms(self.started_at),
            "finished_at": iso_from_ms(self.finished_at),
            "processed": self.processed,
            "synced": list(self.synced),
            "retried": list(self.retried),
            "failed": list(self.failed),
            "held": list(self.held),
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
        }


Replayer = Callable[[QueuedOperation], Awaitable[Any]]


def _payload_record_id(payload: dict[str, Any] | None) -> str | None:
    """Client-assigned id of a record being created, if the payload carries one."""
    record_id = (payload or {}).get("id")
    if isinstance(record_id, (str, int)) and not isinstance(record_id, bool) and record_id != "":
        return str(record_id)
    return None


# =============================================================================
# Queue
# =============================================================================


class OfflineOperationQueue:
    """
    Durable FIFO of offline writes with ordered replay.

    Drain triggers: ``on_connectivity_change(True)``, the periodic timer from
    ``start_periodic``, or an explicit ``drain()``. At most one drain cycle
    runs at a time; drains while offline are skipped.
    """

    def __init__(
        self,
        store: DurableStore,
        caller: ProtectedCaller,
        replayer: Replayer,
        *,
        bus: EventBus | None = None,
        max_attempts: int = 3,
        synced_grace_ms: float = 60000,
        retry_policy: RetryPolicy | None = None,
        service_name: str = "sync",
        collections: set[str] | None = None,
        online: bool = True,
        clock: Clock = now_ms,
    ):
        """
        Initialize queue.

        Args:
            store: Durable store holding the offlineQueue region
            caller: Protected-call path used for replay
            replayer: Sends one operation to the server
            bus: Event bus for queue events
            max_attempts: Drain attempts before an operation is failed
            synced_grace_ms: How long synced operations stay queryable
            retry_policy: Retries within one replay attempt (caller default when None)
            service_name: Circuit name replay is attributed to
            collections: Allowed target collections; any when None
            online: Initial connectivity
            clock: Millisecond clock
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.caller = caller
        self.replayer = replayer
        self.bus = bus
        self.max_attempts = max_attempts
        self.synced_grace_ms = synced_grace_ms
        self.retry_policy = retry_policy
        self.service_name = service_name
        self.collections = collections
        self.online = online
        self.clock = clock
        self._sequence = 0
        self._sequence_loaded = False
        self._sequence_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._periodic: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def _validate(
        self,
        kind: OperationKind | str,
        target_collection: str,
        payload: Any,
        record_id: str | None,
    ) -> OperationKind:
        try:
            kind = OperationKind(kind)
        except ValueError:
            raise ValidationError(
                f"Unknown operation kind: {kind!r}",
                field="kind",
                suggestions=[k.value for k in OperationKind],
            ) from None

        if not isinstance(target_collection, str) or not target_collection:
            raise ValidationError("target_collection is required", field="target_collection")
        if self.collections is not None and target_collection not in self.collections:
            raise ValidationError(
                f"Unknown collection: {target_collection}",
                field="target_collection",
                suggestions=sorted(self.collections),
            )

        if kind in (OperationKind.UPDATE, OperationKind.DELETE) and not record_id:
            raise ValidationError(
                f"{kind.value} requires a record_id",
                field="record_id",
                suggestions=["Pass the id of the record being changed"],
            )
        if kind != OperationKind.DELETE and not isinstance(payload, dict):
            raise ValidationError(
                f"{kind.value} requires a payload object",
                field="payload",
            )
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"payload is not JSON-serializable: {e}",
                field="payload",
                suggestions=["Convert dates and custom objects to strings"],
            ) from e
        return kind

    async def enqueue(
        self,
        kind: OperationKind | str,
        target_collection: str,
        payload: dict[str, Any] | None = None,
        *,
        record_id: str | None = None,
    ) -> QueuedOperation:
        """
        Persist a mutation for later replay.

        Raises:
            ValidationError: Malformed operation
            StorageError: The durable store could not take it
        """
        op_kind = self._validate(kind, target_collection, payload, record_id)
        if op_kind == OperationKind.CREATE and record_id is None:
            record_id = _payload_record_id(payload)
        await self.load()
        self._sequence += 1

        operation = QueuedOperation(
            id=uuid.uuid4().hex,
            kind=op_kind,
            target_collection=target_collection,
            payload=payload,
            record_id=record_id,
            created_at=self.clock(),
            sequence=self._sequence,
            max_attempts=self.max_attempts,
        )
        await self._save(operation)
        logger.info(
            "operation_queued",
            id=operation.id,
            kind=op_kind.value,
            collection=target_collection,
            record_id=record_id,
        )
        await self._publish(EventTypes.OFFLINE_OPERATION_QUEUED, {"operation": operation.to_dict()})
        return operation

    async def load(self) -> int:
        """Restore the enqueue sequence from persisted operations. Returns it."""
        async with self._sequence_lock:
            if not self._sequence_loaded:
                operations = await self.list_operations()
                self._sequence = max((op.sequence for op in operations), default=0)
                self._sequence_loaded = True
        return self._sequence

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------

    async def drain(self) -> DrainReport | None:
        """
        Replay pending operations in FIFO order.

        Returns:
            The cycle's report, or None when skipped (offline or already draining)

        Raises:
            StorageError: Queue state could not be persisted; the cycle is aborted
        """
        if not self.online:
            logger.debug("drain_skipped", reason="offline")
            return None
        if self._drain_lock.locked():
            logger.debug("drain_skipped", reason="in_progress")
            return None

        async with self._drain_lock:
            report = DrainReport(started_at=self.clock())
            try:
                await self.store.restore_primary()
                await self._drain_cycle(report)
                await self.prune_synced()
            except StorageError as e:
                report.aborted = True
                report.abort_reason = f"storage: {e.message}"
                report.finished_at = self.clock()
                logger.error("drain_aborted", reason=report.abort_reason)
                await self._publish(EventTypes.SYNC_FAILED, {"report": report.to_dict()})
                raise

            report.finished_at = self.clock()
            await self._save_metadata(report)
            logger.info(
                "drain_complete",
                synced=len(report.synced),
                retried=len(report.retried),
                failed=len(report.failed),
                held=len(report.held),
                aborted=report.aborted,
            )
            if report.aborted:
                await self._publish(EventTypes.SYNC_FAILED, {"report": report.to_dict()})
            await self._publish(EventTypes.SYNC_COMPLETED, {"report": report.to_dict()})
            return report

    async def _drain_cycle(self, report: DrainReport) -> None:
        blocked: set[str] = set()
        pending = [op for op in await self.list_operations() if op.replayable]

        for op in pending:
            if op.record_key in blocked:
                report.held.append(op.id)
                continue

            op.status = OperationStatus.IN_FLIGHT
            op.last_attempt_at = self.clock()
            await self._save(op)

            try:
                await self.caller.execute(
                    self.service_name,
                    lambda op=op: self.replayer(op),
                    CallOptions(
                        retry=self.retry_policy,
                        context={
                            "operation_id": op.id,
                            "collection": op.target_collection,
                            "kind": op.kind.value,
                        },
                    ),
                )
            except CircuitOpenError as e:
                # Rejected without being attempted: no attempt consumed.
                op.status = OperationStatus.PENDING
                await self._save(op)
                report.aborted = True
                report.abort_reason = f"circuit {e.state} for '{e.service_name}'"
                return
            except (SyncConflictError, ValidationError) as e:
                op.attempts += 1
                await self._fail(op, e, report)
                blocked.add(op.record_key)
            except ResilienceError as e:
                op.attempts += 1
                op.last_error = e.message
                if op.attempts >= op.max_attempts:
                    await self._fail(op, e, report)
                else:
                    op.status = OperationStatus.PENDING
                    await self._save(op)
                    report.retried.append(op.id)
                blocked.add(op.record_key)
            else:
                op.status = OperationStatus.SYNCED
                op.synced_at = self.clock()
                op.last_error = None
                await self._save(op)
                report.synced.append(op.id)
                await self._publish(EventTypes.OPERATION_SYNCED, {"operation": op.to_dict()})

    async def _fail(self, op: QueuedOperation, error: ResilienceError, report: DrainReport) -> None:
        op.status = OperationStatus.FAILED
        op.last_error = error.message
        if isinstance(error, SyncConflictError):
            op.conflict = {
                "type": error.error_type,
                "server_data": error.server_data,
                "client_data": op.payload,
                "detected_at": self.clock(),
            }
        await self._save(op)
        report.failed.append(op.id)
        logger.warning(
            "operation_failed",
            id=op.id,
            collection=op.target_collection,
            attempts=op.attempts,
            error_type=error.error_type,
        )
        await self._publish(
            EventTypes.SYNC_FAILED,
            {"operation": op.to_dict(), "error": error.to_dict()},
        )

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def on_connectivity_change(self, online: bool) -> DrainReport | None:
        """Record connectivity; coming back online starts a drain."""
        changed = online != self.online
        self.online = online
        if changed:
            logger.info("connectivity_changed", online=online)
            await self._publish(EventTypes.CONNECTIVITY_CHANGED, {"online": online})
        if online and changed:
            return await self.drain()
        return None

    def start_periodic(self, interval_s: float = 30.0) -> None:
        """Drain every ``interval_s`` seconds on the running loop."""
        if self._periodic is not None and not self._periodic.done():
            return
        self._periodic = asyncio.get_running_loop().create_task(self._periodic_loop(interval_s))

    async def _periodic_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.drain()
            except StorageError as e:
                logger.error("periodic_drain_failed", error=e.message)

    async def stop_periodic(self) -> None:
        if self._periodic is None:
            return
        self._periodic.cancel()
        await asyncio.gather(self._periodic, return_exceptions=True)
        self._periodic = None

    # -------------------------------------------------------------------------
    # Queries & maintenance
    # -------------------------------------------------------------------------

    async def get_status(self, operation_id: str) -> QueuedOperation | None:
        raw = await self.store.get(Regions.OFFLINE_QUEUE, operation_id)
        return QueuedOperation.from_dict(raw) if raw else None

    async def list_operations(
        self,
        status: OperationStatus | str | None = None,
        collection: str | None = None,
    ) -> list[QueuedOperation]:
        """Operations in enqueue order, optionally filtered."""
        status = OperationStatus(status) if status is not None else None
        operations = [
            QueuedOperation.from_dict(raw)
            for _, raw in await self.store.items(Regions.OFFLINE_QUEUE)
        ]
        operations.sort(key=lambda op: (op.sequence, op.created_at))
        return [
            op for op in operations
            if (status is None or op.status == status)
            and (collection is None or op.target_collection == collection)
        ]

    async def pending_count(self) -> int:
        return sum(1 for op in await self.list_operations() if op.replayable)

    async def is_queued(self, collection: str, record_id: str) -> bool:
        """Whether an unsynced change to the record is waiting."""
        return any(
            op.replayable and op.record_id == record_id
            for op in await self.list_operations(collection=collection)
        )

    async def list_conflicts(self, collection: str | None = None) -> list[QueuedOperation]:
        """Failed operations the server rejected as conflicting, awaiting resolution."""
        return [
            op for op in await self.list_operations(OperationStatus.FAILED, collection)
            if op.conflict is not None
        ]

    async def retry_failed(self, operation_id: str | None = None) -> int:
        """Requeue failed operations (one, or all). Returns how many were requeued."""
        requeued = 0
        for op in await self.list_operations(status=OperationStatus.FAILED):
            if operation_id is not None and op.id != operation_id:
                continue
            op.status = OperationStatus.PENDING
            op.attempts = 0
            op.last_error = None
            op.conflict = None
            await self._save(op)
            requeued += 1
        if requeued:
            logger.info("operations_requeued", count=requeued)
        return requeued

    async def purge(self, collection: str | None = None) -> int:
        """Delete queued operations regardless of status (account/data deletion)."""
        if collection is None:
            removed = await self.store.clear(Regions.OFFLINE_QUEUE)
        else:
            removed = 0
            for op in await self.list_operations(collection=collection):
                if await self.store.delete(Regions.OFFLINE_QUEUE, op.id):
                    removed += 1
        logger.info("queue_purged", collection=collection, removed=removed)
        return removed

    async def prune_synced(self) -> int:
        """Remove synced operations older than the grace period."""
        now = self.clock()
        removed = 0
        for op in await self.list_operations(status=OperationStatus.SYNCED):
            if op.synced_at is not None and now - op.synced_at >= self.synced_grace_ms:
                if await self.store.delete(Regions.OFFLINE_QUEUE, op.id):
                    removed += 1
        return removed

    async def get_sync_metadata(self) -> dict[str, Any]:
        return await self.store.get(Regions.SYNC_METADATA, _METADATA_KEY) or {}

    async def _save_metadata(self, report: DrainReport) -> None:
        metadata = {
            "last_sync": iso_from_ms(report.finished_at),
            "last_sync_ms": report.finished_at,
            "last_report": report.to_dict(),
            "pending": await self.pending_count(),
        }
        await self.store.put(Regions.SYNC_METADATA, _METADATA_KEY, metadata)

    async def _save(self, op: QueuedOperation) -> None:
        await self.store.put(Regions.OFFLINE_QUEUE, op.id, op.to_dict())

    async def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish_async(event_type, data, source="queue")
