# =============================================================================
# madrasa_core/offline/write_queue.py
# Pending-Write Queue
# =============================================================================
"""
PendingWriteQueue - FIFO queue of mutations the server has not confirmed.

A record has at most one outstanding write. A newer mutation to the same
record coalesces into the existing entry, keeping its queue position, so
create-then-update sequences still reach the server in causal order.

The queue is persisted in the LocalCache under "sync_queue" before the
in-memory list changes, so a StorageFailure leaves it untouched.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from madrasa_core.logging import get_logger
from madrasa_core.offline.local_cache import LocalCache, RecordId, now_millis

logger = get_logger(__name__)

QUEUE_KEY = "sync_queue"


class WriteOperation(Enum):
    """Mutation kinds replayed against the remote service."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingWrite:
    """A queued mutation."""
    operation: WriteOperation
    collection: str
    record_id: RecordId
    payload: Dict[str, Any] = field(default_factory=dict)
    attempt_count: int = 0
    enqueued_at: int = field(default_factory=now_millis)
    revision: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, RecordId]:
        return (self.collection, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "collection": self.collection,
            "recordId": self.record_id,
            "payload": self.payload,
            "attemptCount": self.attempt_count,
            "enqueuedAt": self.enqueued_at,
            "revision": self.revision,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PendingWrite:
        return cls(
            operation=WriteOperation(data["operation"]),
            collection=data["collection"],
            record_id=data["recordId"],
            payload=dict(data.get("payload") or {}),
            attempt_count=int(data.get("attemptCount", 0)),
            enqueued_at=int(data.get("enqueuedAt") or now_millis()),
            revision=int(data.get("revision", 0)),
            last_error=data.get("lastError"),
        )


def coalesce(existing: PendingWrite, newer: PendingWrite) -> Optional[PendingWrite]:
    """
    Merge a newer mutation into an outstanding one for the same record.

    Returns the entry to keep in place, or None when the two cancel out
    (a delete of a record the server never saw).
    """
    if existing.operation == WriteOperation.CREATE:
        if newer.operation == WriteOperation.DELETE:
            return None
        operation = WriteOperation.CREATE
    else:
        operation = newer.operation

    return replace(
        existing,
        operation=operation,
        payload=dict(newer.payload),
        revision=existing.revision + 1,
    )


class PendingWriteQueue:
    """
    Ordered, persisted queue of pending writes.

    Usage:
        queue = PendingWriteQueue(cache)
        queue.enqueue(PendingWrite(WriteOperation.CREATE, "leaves", record.id, payload))
        head = queue.peek_head()
    """

    def __init__(self, cache: LocalCache, storage_key: str = QUEUE_KEY):
        self._cache = cache
        self._storage_key = storage_key
        self._lock = threading.RLock()
        self._items: List[PendingWrite] = [
            PendingWrite.from_dict(item)
            for item in cache.get_item(storage_key, default=[])
        ]
        if self._items:
            logger.info(f"Restored {len(self._items)} pending writes")

    def _commit(self, items: List[PendingWrite]) -> None:
        self._cache.set_item(self._storage_key, [w.to_dict() for w in items])
        self._items = items

    def _index_of(self, collection: str, record_id: RecordId) -> int:
        for index, write in enumerate(self._items):
            if write.collection == collection and write.record_id == record_id:
                return index
        return -1

    def enqueue(self, write: PendingWrite) -> Optional[PendingWrite]:
        """
        Append a write, or coalesce it into the outstanding write for the
        same record at its original position.

        Returns the queued entry, or None if the write cancelled an
        unconfirmed create.
        """
        with self._lock:
            items = list(self._items)
            index = self._index_of(write.collection, write.record_id)

            if index < 0:
                items.append(write)
                self._commit(items)
                return write

            merged = coalesce(items[index], write)
            if merged is None:
                del items[index]
                logger.debug(f"Dropped unsent create for {write.collection}/{write.record_id}")
            else:
                items[index] = merged
            self._commit(items)
            return merged

    def dequeue_head(self) -> Optional[PendingWrite]:
        with self._lock:
            if not self._items:
                return None
            head = self._items[0]
            self._commit(self._items[1:])
            return head

    def peek_head(self) -> Optional[PendingWrite]:
        with self._lock:
            return replace(self._items[0]) if self._items else None

    def peek_all(self) -> List[PendingWrite]:
        with self._lock:
            return [replace(w) for w in self._items]

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.size()

    def get(self, collection: str, record_id: RecordId) -> Optional[PendingWrite]:
        with self._lock:
            index = self._index_of(collection, record_id)
            return replace(self._items[index]) if index >= 0 else None

    def for_collection(self, collection: str) -> List[PendingWrite]:
        with self._lock:
            return [replace(w) for w in self._items if w.collection == collection]

    def remove(self, collection: str, record_id: RecordId) -> Optional[PendingWrite]:
        with self._lock:
            index = self._index_of(collection, record_id)
            if index < 0:
                return None
            items = list(self._items)
            removed = items.pop(index)
            self._commit(items)
            return removed

    def record_attempt(self, collection: str, record_id: RecordId, error: Optional[str] = None) -> int:
        """Count a failed attempt for a queued write; returns the new total."""
        with self._lock:
            index = self._index_of(collection, record_id)
            if index < 0:
                return 0
            items = list(self._items)
            items[index] = replace(
                items[index],
                attempt_count=items[index].attempt_count + 1,
                last_error=error,
            )
            self._commit(items)
            return items[index].attempt_count

    def rekey(
        self,
        collection: str,
        old_id: RecordId,
        new_id: RecordId,
        operation: Optional[WriteOperation] = None,
    ) -> Optional[PendingWrite]:
        """Point a queued write at a new record id, keeping its position."""
        with self._lock:
            index = self._index_of(collection, old_id)
            if index < 0:
                return None
            items = list(self._items)
            items[index] = replace(
                items[index],
                record_id=new_id,
                operation=operation or items[index].operation,
                attempt_count=0,
            )
            self._commit(items)
            return items[index]

    def clear(self) -> None:
        with self._lock:
            self._commit([])
