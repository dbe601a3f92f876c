# =============================================================================
# madrasa_core/offline/local_cache.py
# Durable Key-Value Cache for Offline Operations
# =============================================================================
"""
LocalCache - SQLite-backed key-value store that plays the role of browser
local storage / device storage for the sync layer.

Layout:
- "collection:<name>" -> JSON list of records, in insertion order
- "sync_queue"        -> pending writes (owned by PendingWriteQueue)
- "sync_failed"       -> writes that need manual intervention
- "sync_meta"         -> coordinator metadata (last sync time)

Every call completes synchronously and surfaces storage problems as
StorageFailure.
"""

from __future__ import annotations
import json
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import pandas as pd

from madrasa_core.errors import StorageFailure
from madrasa_core.logging import get_logger

logger = get_logger(__name__)

COLLECTION_PREFIX = "collection:"
LOCAL_ID_PREFIX = "local-"

RecordId = Union[int, str]


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_local_id() -> str:
    """Temporary identifier for a record the server has not confirmed yet."""
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def is_local_id(record_id: RecordId) -> bool:
    return isinstance(record_id, str) and record_id.startswith(LOCAL_ID_PREFIX)


class SyncState(Enum):
    """Per-record sync states."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class Record:
    """A cached domain entity (student, attendance mark, leave, prayer entry)."""
    id: RecordId
    payload: Dict[str, Any] = field(default_factory=dict)
    sync_state: SyncState = SyncState.PENDING
    last_modified: int = field(default_factory=now_millis)

    def __post_init__(self):
        if self.sync_state == SyncState.SYNCED and not isinstance(self.id, int):
            raise ValueError(f"Synced record must carry a remote id, got {self.id!r}")

    @property
    def remote_id(self) -> Optional[int]:
        return self.id if isinstance(self.id, int) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "syncState": self.sync_state.value,
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Record:
        return cls(
            id=data["id"],
            payload=dict(data.get("payload") or {}),
            sync_state=SyncState(data.get("syncState", SyncState.PENDING.value)),
            last_modified=int(data.get("lastModified") or now_millis()),
        )


class LocalCache:
    """
    Durable key-value cache on SQLite.

    A single connection serves every thread; a lock serializes access.
    Use ":memory:" as db_path for a throwaway cache.
    """

    DEFAULT_DB_PATH = Path("local_data") / "madrasa_sync.db"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize the cache.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
        """
        self.db_path = str(db_path) if db_path else str(self.DEFAULT_DB_PATH)
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
                self._connection.execute(self.SCHEMA)
                self._connection.commit()
            except (sqlite3.Error, OSError) as e:
                self._connection = None
                raise StorageFailure(
                    f"Could not open local cache at {self.db_path}: {e}",
                    operation="open",
                ) from e
            if not self._initialized:
                self._initialized = True
                logger.info(f"Local cache initialized at: {self.db_path}")
        return self._connection

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # KEY-VALUE PRIMITIVES
    # =========================================================================

    def get_item(self, key: str, default: Any = None) -> Any:
        """Read and decode the JSON value stored under key."""
        with self._lock:
            try:
                row = self._get_connection().execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageFailure(f"Read failed: {e}", key=key, operation="get") from e
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError as e:
            raise StorageFailure(f"Corrupt value: {e}", key=key, operation="get") from e

    def set_item(self, key: str, value: Any) -> None:
        """Encode value as JSON and store it under key."""
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageFailure(f"Value is not serializable: {e}", key=key, operation="set") from e

        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                    "updated_at = excluded.updated_at",
                    (key, encoded, datetime.now().isoformat()),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageFailure(f"Write failed: {e}", key=key, operation="set") from e

    def remove_item(self, key: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageFailure(f"Delete failed: {e}", key=key, operation="remove") from e

    def all_keys(self) -> Set[str]:
        """Every stored key, for maintenance and cleanup scans."""
        with self._lock:
            try:
                rows = self._get_connection().execute("SELECT key FROM kv_store").fetchall()
            except sqlite3.Error as e:
                raise StorageFailure(f"Key scan failed: {e}", operation="keys") from e
        return {row[0] for row in rows}

    def clear(self) -> None:
        """Wipe every key."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM kv_store")
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageFailure(f"Clear failed: {e}", operation="clear") from e
        logger.info("Local cache cleared")

    # =========================================================================
    # RECORD COLLECTIONS
    # =========================================================================

    @staticmethod
    def collection_key(collection: str) -> str:
        return f"{COLLECTION_PREFIX}{collection}"

    def collections(self) -> List[str]:
        return sorted(
            key[len(COLLECTION_PREFIX):]
            for key in self.all_keys()
            if key.startswith(COLLECTION_PREFIX)
        )

    def get(self, collection: str) -> List[Record]:
        """All records of a collection, in stored order."""
        raw = self.get_item(self.collection_key(collection), default=[])
        return [Record.from_dict(item) for item in raw]

    def find(self, collection: str, record_id: RecordId) -> Optional[Record]:
        for record in self.get(collection):
            if record.id == record_id:
                return record
        return None

    def put(self, collection: str, record: Record, replace_id: Optional[RecordId] = None) -> None:
        """
        Upsert by id: replace in place or append.

        Args:
            collection: Collection name
            record: Record to store
            replace_id: Id of the record to replace, when the id itself
                changes (temporary id swapped for the remote one)
        """
        match_id = record.id if replace_id is None else replace_id
        with self._lock:
            records = self.get(collection)
            for index, existing in enumerate(records):
                if existing.id == match_id:
                    records[index] = record
                    break
            else:
                records.append(record)
            self._save(collection, records)

    def remove(self, collection: str, record_id: RecordId) -> None:
        with self._lock:
            records = self.get(collection)
            kept = [r for r in records if r.id != record_id]
            if len(kept) != len(records):
                self._save(collection, kept)

    def replace_collection(self, collection: str, records: List[Record]) -> None:
        """Overwrite a whole collection, used after an authoritative pull."""
        with self._lock:
            self._save(collection, list(records))

    def _save(self, collection: str, records: List[Record]) -> None:
        self.set_item(self.collection_key(collection), [r.to_dict() for r in records])

    def to_dataframe(self, collection: str) -> pd.DataFrame:
        """
        Flatten a collection into a DataFrame for reporting.

        Payload fields become columns next to id, sync_state and last_modified.
        """
        rows = []
        for record in self.get(collection):
            row = {"id": record.id, "sync_state": record.sync_state.value,
                   "last_modified": pd.to_datetime(record.last_modified, unit="ms")}
            for key, value in record.payload.items():
                row.setdefault(key, value)
            rows.append(row)

        if not rows:
            return pd.DataFrame(columns=["id", "sync_state", "last_modified"])
        return pd.DataFrame(rows)
