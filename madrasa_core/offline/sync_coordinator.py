# =============================================================================
# madrasa_core/offline/sync_coordinator.py
# Offline-First Sync Coordinator
# =============================================================================
"""
SyncCoordinator - sole writer of the local cache and the pending-write queue.

Every mutation is written through to the LocalCache synchronously, queued,
and replayed against the remote service in the background:

    IDLE --online & queue non-empty--> DRAINING --queue empty--> IDLE
    IDLE/DRAINING --force_sync()--> PULLING_AUTHORITATIVE --> IDLE

Features:
- Strict FIFO replay with per-write exponential backoff
- Permanent (4xx) failures parked in a failed list for manual retry/discard
- Authoritative pull that re-applies unconfirmed local edits on top
- Status snapshots published on every observable change

Usage:
    coordinator = SyncCoordinator(cache, remote, monitor, config)
    coordinator.start()
    leave = coordinator.create("leaves", {"studentId": 12, "reason": "Fever"})
    coordinator.force_sync().result()
"""

from __future__ import annotations
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from madrasa_core.errors import (
    DrainAlreadyInProgress,
    PermanentRequestFailure,
    StorageFailure,
    TransientNetworkFailure,
)
from madrasa_core.logging import LogContext, get_logger
from madrasa_core.offline.config import SyncConfig, load_sync_config
from madrasa_core.offline.local_cache import (
    LocalCache,
    Record,
    RecordId,
    SyncState,
    is_local_id,
    new_local_id,
    now_millis,
)
from madrasa_core.offline.network_monitor import ConnectivityEvent, NetworkMonitor, tcp_probe
from madrasa_core.offline.remote_service import RemoteConfig, RemoteDataService
from madrasa_core.offline.status_publisher import (
    StatusPublisher,
    Subscription,
    SyncStatusSnapshot,
)
from madrasa_core.offline.write_queue import PendingWrite, PendingWriteQueue, WriteOperation

logger = get_logger(__name__)

FAILED_KEY = "sync_failed"
META_KEY = "sync_meta"


class SyncPhase(Enum):
    """Coordinator states."""
    IDLE = "idle"
    DRAINING = "draining"
    PULLING_AUTHORITATIVE = "pulling_authoritative"


@dataclass
class SyncOutcome:
    """Typed result of a drain or pull cycle."""
    phase: SyncPhase
    success: bool = True
    synced: int = 0
    failed: int = 0
    pulled: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started_at: int = field(default_factory=now_millis)
    finished_at: Optional[int] = None

    def __bool__(self) -> bool:
        return self.success

    def fail(self, message: str) -> None:
        self.success = False
        self.errors.append(message)


def _coerce_remote_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


class SyncCoordinator:
    """
    Orchestrates the local cache, the write queue and the remote service.

    Construct one per application and pass it to consumers; tests build a
    fresh instance each time.
    """

    def __init__(
        self,
        cache: LocalCache,
        remote: RemoteDataService,
        monitor: NetworkMonitor,
        config: Optional[SyncConfig] = None,
        publisher: Optional[StatusPublisher] = None,
    ):
        self.config = config or SyncConfig()
        self._cache = cache
        self._remote = remote
        self._monitor = monitor
        self._publisher = publisher or StatusPublisher()

        self._lock = threading.RLock()
        self._queue = PendingWriteQueue(cache)
        self._failed: List[PendingWrite] = [
            PendingWrite.from_dict(item) for item in cache.get_item(FAILED_KEY, default=[])
        ]
        self._last_sync_time: Optional[int] = (cache.get_item(META_KEY, default={}) or {}).get("lastSyncTime")
        self._id_aliases: Dict[Tuple[str, RecordId], int] = {}
        # Bumped by clear_all_data; network results from an older generation are dropped
        self._generation = 0

        self._phase = SyncPhase.IDLE
        self._executor: Optional[ThreadPoolExecutor] = None
        self._drain_active = False
        self._drain_seq = 0
        self._drain_future: Optional[Future] = None
        self._pull_future: Optional[Future] = None
        self._pull_requested = threading.Event()
        self._wakeup = threading.Event()
        self._stopped = threading.Event()
        self._monitor_handle: Optional[int] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Subscribe to connectivity changes and drain anything left over."""
        self._stopped.clear()
        if self._monitor_handle is None:
            self._monitor_handle = self._monitor.subscribe(self._on_connectivity_change)
        logger.info(
            f"SyncCoordinator started: {self._queue.size()} pending, "
            f"{len(self._failed)} failed"
        )
        self._publish()
        self.request_drain()

    def stop(self, wait: bool = True) -> None:
        """Stop background work. An in-flight request is allowed to finish."""
        self._stopped.set()
        self._wakeup.set()
        if self._monitor_handle is not None:
            self._monitor.unsubscribe(self._monitor_handle)
            self._monitor_handle = None
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("SyncCoordinator stopped")

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no drain or pull is scheduled or running.

        Returns:
            False if the timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [
                    f for f in (self._drain_future, self._pull_future)
                    if f is not None and not f.done()
                ]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait_futures(pending, timeout=remaining)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SyncCoordinator")
        return self._executor

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def status(self) -> SyncStatusSnapshot:
        return self._snapshot()

    @property
    def queue(self) -> PendingWriteQueue:
        return self._queue

    def subscribe(self, listener: Callable[[SyncStatusSnapshot], None]) -> Subscription:
        return self._publisher.subscribe(listener)

    def unsubscribe(self, handle: Subscription) -> None:
        self._publisher.unsubscribe(handle)

    def _snapshot(self) -> SyncStatusSnapshot:
        with self._lock:
            return SyncStatusSnapshot(
                is_online=self._monitor.is_online,
                sync_in_progress=self._phase != SyncPhase.IDLE,
                queue_size=self._queue.size(),
                last_sync_time=self._last_sync_time,
                failed_count=len(self._failed),
                phase=self._phase.value,
            )

    def _publish(self) -> None:
        self._publisher.publish(self._snapshot())

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._lock:
            self._phase = phase
        self._publish()

    def _on_connectivity_change(self, event: ConnectivityEvent) -> None:
        self._publish()
        if event == ConnectivityEvent.BECAME_ONLINE:
            self.request_drain()
        else:
            self._wakeup.set()

    # =========================================================================
    # LOCAL MUTATIONS
    # =========================================================================

    def create(self, collection: str, payload: Dict[str, Any]) -> Record:
        """Create a record under a temporary id and queue it for the server."""
        return self.write(collection, payload, operation=WriteOperation.CREATE)

    def update(self, collection: str, record_id: RecordId, payload: Dict[str, Any]) -> Record:
        """Merge payload into a record and queue the update."""
        return self.write(collection, payload, record_id=record_id, operation=WriteOperation.UPDATE)

    def delete(self, collection: str, record_id: RecordId) -> None:
        self.write(collection, None, record_id=record_id, operation=WriteOperation.DELETE)

    def write(
        self,
        collection: str,
        payload: Optional[Dict[str, Any]],
        record_id: Optional[RecordId] = None,
        operation: Optional[WriteOperation] = None,
    ) -> Optional[Record]:
        """
        Apply a mutation locally, then queue it for the remote service.

        The local write completes before this returns; StorageFailure is
        raised to the caller and nothing is queued. Remote errors never
        surface here.

        Returns:
            The cached record (None for deletes)
        """
        if operation is None:
            operation = WriteOperation.CREATE if record_id is None else WriteOperation.UPDATE
        if operation != WriteOperation.CREATE and record_id is None:
            raise ValueError(f"{operation.value} requires a record id")
        payload = dict(payload or {})

        with self._lock:
            if record_id is not None:
                record_id = self._resolve_id(collection, record_id)
            previous = self._cache.find(collection, record_id) if record_id is not None else None
            superseded = self._find_failed(collection, record_id) if record_id is not None else None

            if operation == WriteOperation.CREATE:
                record = Record(id=record_id if record_id is not None else new_local_id(), payload=payload)
            elif operation == WriteOperation.UPDATE:
                base = previous.payload if previous else {}
                record = Record(id=record_id, payload={**base, **payload})
            else:
                record = None

            queued_op: Optional[WriteOperation] = operation
            if superseded is not None and superseded.operation == WriteOperation.CREATE:
                # The server never accepted this record
                queued_op = None if operation == WriteOperation.DELETE else WriteOperation.CREATE
            elif (
                operation == WriteOperation.DELETE
                and is_local_id(record_id)
                and self._queue.get(collection, record_id) is None
            ):
                queued_op = None

            if record is None:
                self._cache.remove(collection, record_id)
            else:
                self._cache.put(collection, record)

            target_id = record.id if record is not None else record_id
            try:
                if queued_op is not None:
                    self._queue.enqueue(PendingWrite(
                        operation=queued_op,
                        collection=collection,
                        record_id=target_id,
                        payload=dict(record.payload) if record is not None else {},
                    ))
                if superseded is not None:
                    self._remove_failed([superseded])
            except StorageFailure:
                self._restore(collection, target_id, previous)
                raise

        logger.debug(f"Local {operation.value} on {collection}/{target_id}")
        self._publish()
        if self._monitor.is_online:
            self.request_drain()
        return record

    def read(self, collection: str, refresh: bool = False) -> List[Record]:
        """
        Cached records of a collection; never waits on the network.

        Args:
            refresh: Also schedule a background authoritative pull
        """
        records = self._cache.get(collection)
        if refresh and self._monitor.is_online:
            self.force_sync([collection])
        return records

    def records_frame(self, collection: str) -> pd.DataFrame:
        """Cached records as a DataFrame for display."""
        return self._cache.to_dataframe(collection)

    def _resolve_id(self, collection: str, record_id: RecordId) -> RecordId:
        return self._id_aliases.get((collection, record_id), record_id)

    def _restore(self, collection: str, record_id: RecordId, previous: Optional[Record]) -> None:
        try:
            if previous is not None:
                self._cache.put(collection, previous)
            else:
                self._cache.remove(collection, record_id)
        except StorageFailure as e:
            logger.error(f"Could not roll back local write for {collection}/{record_id}: {e}")

    # =========================================================================
    # DRAIN
    # =========================================================================

    def request_drain(self) -> Optional[Future]:
        """
        Start a drain cycle if online with pending writes.

        Re-entrant requests while a drain is scheduled or running are
        no-ops and return the running cycle's future.
        """
        with self._lock:
            if self._stopped.is_set() or not self._monitor.is_online or self._queue.size() == 0:
                return None
            try:
                seq = self._begin_drain()
            except DrainAlreadyInProgress as e:
                logger.debug(e.message)
                return self._drain_future
            self._drain_future = self._get_executor().submit(self._drain, seq)
            return self._drain_future

    def _begin_drain(self) -> int:
        if self._drain_active:
            raise DrainAlreadyInProgress()
        self._drain_active = True
        self._drain_seq += 1
        return self._drain_seq

    def _end_drain(self, seq: int) -> None:
        # A newer drain may already own the flag
        if seq == self._drain_seq:
            self._drain_active = False

    def _drain(self, seq: int) -> SyncOutcome:
        outcome = SyncOutcome(phase=SyncPhase.DRAINING)
        completed = False
        with self._lock:
            generation = self._generation
        self._set_phase(SyncPhase.DRAINING)
        try:
            with LogContext(logger, "Drain") as log_ctx:
                while True:
                    if (
                        self._stopped.is_set()
                        or self._pull_requested.is_set()
                        or not self._monitor.is_online
                        or self._generation != generation
                    ):
                        break

                    with self._lock:
                        head = self._queue.peek_head()
                        if head is None:
                            self._end_drain(seq)
                            completed = True
                            break

                    try:
                        response = self._send(head)
                    except TransientNetworkFailure as e:
                        attempts = self._queue.record_attempt(head.collection, head.record_id, e.message)
                        if attempts >= self.config.max_attempts:
                            self._move_to_failed(head, e, generation)
                            outcome.failed += 1
                            continue
                        delay = self.config.backoff_delay(attempts)
                        logger.warning(
                            f"Transient failure on {head.collection}/{head.record_id} "
                            f"(attempt {attempts}/{self.config.max_attempts}), retrying in {delay:.1f}s"
                        )
                        self._wait(delay)
                        continue
                    except PermanentRequestFailure as e:
                        self._queue.record_attempt(head.collection, head.record_id, e.message)
                        self._move_to_failed(head, e, generation)
                        outcome.failed += 1
                        continue

                    if self._confirm(head, response, generation):
                        outcome.synced += 1
                log_ctx.note(synced=outcome.synced, failed=outcome.failed, completed=completed)
        finally:
            with self._lock:
                self._end_drain(seq)
                if completed and self._generation == generation:
                    self._last_sync_time = now_millis()
                    self._save_meta()
                self._phase = SyncPhase.IDLE
            self._publish()

        outcome.success = completed and outcome.failed == 0
        outcome.finished_at = now_millis()
        return outcome

    def _wait(self, delay: float) -> None:
        if delay > 0:
            self._wakeup.wait(delay)
        self._wakeup.clear()

    def _send(self, write: PendingWrite) -> Optional[Dict[str, Any]]:
        if write.operation == WriteOperation.DELETE:
            self._remote.delete(write.collection, write.record_id)
            return None

        if write.operation == WriteOperation.CREATE:
            response = self._remote.create(write.collection, write.payload)
        else:
            response = self._remote.update(write.collection, write.record_id, write.payload)

        if response is not None and not isinstance(response, dict):
            raise PermanentRequestFailure(
                f"Expected a JSON object for {write.collection}/{write.record_id}, "
                f"got {type(response).__name__}",
                error="invalid_response",
            )
        if write.operation == WriteOperation.CREATE and _coerce_remote_id((response or {}).get("id")) is None:
            raise PermanentRequestFailure(
                f"Server did not return an id for the new {write.collection} record",
                error="missing_id",
            )
        return response

    def _confirm(self, sent: PendingWrite, response: Optional[Dict[str, Any]], generation: int) -> bool:
        """
        Apply a successful send to the queue and cache.

        Returns:
            False if local data was cleared while the request was in flight
        """
        collection = sent.collection
        with self._lock:
            if generation != self._generation:
                logger.info(f"Ignoring confirmation of {collection}/{sent.record_id}: local data was cleared")
                return False
            current = self._queue.get(collection, sent.record_id)
            unchanged = current is not None and current.revision == sent.revision

            if sent.operation == WriteOperation.DELETE:
                if unchanged:
                    self._queue.remove(collection, sent.record_id)
            else:
                new_id = sent.record_id
                if sent.operation == WriteOperation.CREATE:
                    new_id = _coerce_remote_id(response.get("id"))
                    self._id_aliases[(collection, sent.record_id)] = new_id

                record = self._cache.find(collection, sent.record_id)
                if unchanged:
                    self._queue.remove(collection, sent.record_id)
                    if record is not None:
                        server_fields = {k: v for k, v in (response or {}).items() if k != "id"}
                        self._cache.put(
                            collection,
                            Record(id=new_id, payload={**record.payload, **server_fields},
                                   sync_state=SyncState.SYNCED),
                            replace_id=sent.record_id,
                        )
                elif current is not None and new_id != sent.record_id:
                    # Edited again while the create was in flight
                    self._queue.rekey(collection, sent.record_id, new_id, WriteOperation.UPDATE
                                      if current.operation == WriteOperation.CREATE else current.operation)
                    if record is not None:
                        self._cache.put(collection, replace(record, id=new_id), replace_id=sent.record_id)
                elif current is None and sent.operation == WriteOperation.CREATE:
                    # Deleted locally while the create was in flight
                    self._queue.enqueue(PendingWrite(WriteOperation.DELETE, collection, new_id))

        self._publish()
        return True

    def _move_to_failed(self, write: PendingWrite, error: Exception, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            entry = self._queue.remove(write.collection, write.record_id)
            if entry is None:
                return
            entry = replace(entry, last_error=str(getattr(error, "message", error)))
            self._failed.append(entry)
            self._save_failed()

            record = self._cache.find(write.collection, write.record_id)
            if record is not None:
                self._cache.put(write.collection, replace(record, sync_state=SyncState.FAILED))

        logger.error(
            f"Write {entry.operation.value} {entry.collection}/{entry.record_id} failed after "
            f"{entry.attempt_count} attempt(s): {entry.last_error}"
        )
        self._publish()

    # =========================================================================
    # FAILED WRITES
    # =========================================================================

    def failed_writes(self) -> List[PendingWrite]:
        with self._lock:
            return [replace(w) for w in self._failed]

    def _find_failed(self, collection: str, record_id: RecordId) -> Optional[PendingWrite]:
        for write in self._failed:
            if write.collection == collection and write.record_id == record_id:
                return write
        return None

    def _select_failed(self, collection: Optional[str], record_id: Optional[RecordId]) -> List[PendingWrite]:
        return [
            w for w in self._failed
            if (collection is None or w.collection == collection)
            and (record_id is None or w.record_id == record_id)
        ]

    def _remove_failed(self, writes: Iterable[PendingWrite]) -> None:
        keys = {w.key for w in writes}
        self._failed = [w for w in self._failed if w.key not in keys]
        self._save_failed()

    def retry_failed(self, collection: Optional[str] = None, record_id: Optional[RecordId] = None) -> int:
        """Requeue failed writes at the tail with a fresh attempt budget."""
        with self._lock:
            selected = self._select_failed(collection, record_id)
            for write in selected:
                self._queue.enqueue(replace(write, attempt_count=0, last_error=None,
                                            enqueued_at=now_millis(), revision=0))
                record = self._cache.find(write.collection, write.record_id)
                if record is not None:
                    self._cache.put(write.collection, replace(record, sync_state=SyncState.PENDING))
            if selected:
                self._remove_failed(selected)

        if selected:
            logger.info(f"Retrying {len(selected)} failed write(s)")
            self._publish()
            self.request_drain()
        return len(selected)

    def discard_failed(self, collection: Optional[str] = None, record_id: Optional[RecordId] = None) -> int:
        """
        Drop failed writes. Local-only records are removed; records the
        server knows go back to synced until the next pull refreshes them.
        """
        with self._lock:
            selected = self._select_failed(collection, record_id)
            for write in selected:
                record = self._cache.find(write.collection, write.record_id)
                if record is None:
                    continue
                if record.remote_id is None:
                    self._cache.remove(write.collection, write.record_id)
                else:
                    self._cache.put(write.collection, replace(record, sync_state=SyncState.SYNCED))
            if selected:
                self._remove_failed(selected)

        if selected:
            logger.info(f"Discarded {len(selected)} failed write(s)")
            self._publish()
        return len(selected)

    # =========================================================================
    # AUTHORITATIVE PULL
    # =========================================================================

    def force_sync(self, collections: Optional[Iterable[str]] = None) -> Future:
        """
        Pull authoritative state from the server.

        Idempotent: while a pull is pending or running, the same future is
        returned. A running drain finishes its in-flight write first.

        Returns:
            Future resolving to a SyncOutcome
        """
        with self._lock:
            if self._pull_future is not None and not self._pull_future.done():
                return self._pull_future
            targets = list(collections) if collections is not None else list(self.config.collections)
            self._pull_requested.set()
            self._wakeup.set()
            self._pull_future = self._get_executor().submit(self._pull, targets)
            return self._pull_future

    def _pull(self, collections: List[str]) -> SyncOutcome:
        self._pull_requested.clear()
        self._wakeup.clear()
        outcome = SyncOutcome(phase=SyncPhase.PULLING_AUTHORITATIVE)
        with self._lock:
            generation = self._generation
        self._set_phase(SyncPhase.PULLING_AUTHORITATIVE)
        try:
            with LogContext(logger, f"Authoritative pull of {', '.join(collections)}") as log_ctx:
                for collection in collections:
                    try:
                        items = self._remote.fetch_all(collection)
                    except (TransientNetworkFailure, PermanentRequestFailure) as e:
                        logger.warning(f"Pull of {collection} failed: {e.message}")
                        outcome.fail(f"{collection}: {e.message}")
                        continue

                    records = self._records_from_remote(collection, items)
                    with self._lock:
                        if generation != self._generation:
                            outcome.fail("Local data was cleared during the pull")
                            break
                        self._cache.replace_collection(collection, records)
                        self._reapply_local_edits(collection)
                    outcome.pulled[collection] = len(records)
                log_ctx.note(**outcome.pulled)

                if outcome.success:
                    with self._lock:
                        if generation == self._generation:
                            self._last_sync_time = now_millis()
                            self._save_meta()
        finally:
            self._set_phase(SyncPhase.IDLE)

        outcome.finished_at = now_millis()
        self.request_drain()
        return outcome

    @staticmethod
    def _records_from_remote(collection: str, items: List[Dict[str, Any]]) -> List[Record]:
        records = []
        for item in items:
            remote_id = _coerce_remote_id(item.get("id")) if isinstance(item, dict) else None
            if remote_id is None:
                logger.warning(f"Skipping {collection} item without a usable id: {item!r}")
                continue
            payload = {k: v for k, v in item.items() if k != "id"}
            records.append(Record(id=remote_id, payload=payload, sync_state=SyncState.SYNCED))
        return records

    def _reapply_local_edits(self, collection: str) -> None:
        """Lay unconfirmed writes back over freshly pulled server state."""
        edits = [(w, SyncState.PENDING) for w in self._queue.for_collection(collection)]
        edits += [(w, SyncState.FAILED) for w in self._failed if w.collection == collection]
        for write, state in edits:
            if write.operation == WriteOperation.DELETE:
                self._cache.remove(collection, write.record_id)
            else:
                self._cache.put(collection, Record(id=write.record_id, payload=dict(write.payload),
                                                   sync_state=state))

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def clear_all_data(self) -> None:
        """Wipe cached records, pending and failed writes; reset status."""
        with self._lock:
            self._queue.clear()
            self._cache.clear()
            self._failed = []
            self._last_sync_time = None
            self._id_aliases.clear()
            self._generation += 1
        # Cut short any backoff wait of a running drain
        self._wakeup.set()
        logger.warning("All local sync data cleared")
        self._publisher.reset(is_online=self._monitor.is_online)

    def _save_failed(self) -> None:
        self._cache.set_item(FAILED_KEY, [w.to_dict() for w in self._failed])

    def _save_meta(self) -> None:
        self._cache.set_item(META_KEY, {"lastSyncTime": self._last_sync_time})


def build_sync_coordinator(config: Optional[SyncConfig] = None, start: bool = True) -> SyncCoordinator:
    """
    Wire a coordinator from configuration.

    The caller owns the returned instance; there is no module-level
    singleton.
    """
    config = config or load_sync_config()
    cache = LocalCache(config.db_path)
    remote = RemoteDataService(RemoteConfig(
        base_url=config.api_base_url,
        timeout=config.timeout,
        headers=dict(config.headers),
    ))
    monitor = NetworkMonitor(
        probe=tcp_probe(config.api_base_url, timeout=min(config.timeout, 5.0)),
        hold_down_seconds=config.hold_down_seconds,
        check_interval_online=config.check_interval_online,
        check_interval_offline=config.check_interval_offline,
    )
    coordinator = SyncCoordinator(cache, remote, monitor, config)

    if start:
        monitor.check_connection()
        monitor.start_monitoring()
        coordinator.start()
    return coordinator
