# =============================================================================
# madrasa_core/offline/status_publisher.py
# Sync Status Snapshots and Observers
# =============================================================================
"""
StatusPublisher - event-driven publication of the coordinator's status.

Listeners only hear about net observable changes. Publishing a snapshot
equal to the last one is a no-op, so retry attempts that change nothing
visible never reach the UI.
"""

from __future__ import annotations
import itertools
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from madrasa_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncStatusSnapshot:
    """Immutable view of the sync state at one point in time."""
    is_online: bool = False
    sync_in_progress: bool = False
    queue_size: int = 0
    last_sync_time: Optional[int] = None
    failed_count: int = 0
    phase: str = "idle"

    def to_event(self) -> Dict[str, Any]:
        """Published status event payload."""
        return {
            "isOnline": self.is_online,
            "syncInProgress": self.sync_in_progress,
            "queueSize": self.queue_size,
            "lastSyncTime": self.last_sync_time,
            "failedCount": self.failed_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe()."""
    id: int


class StatusPublisher:
    """
    Holds the latest snapshot and fans it out to listeners.

    Usage:
        publisher = StatusPublisher()
        handle = publisher.subscribe(lambda s: print(s.queue_size))
        publisher.unsubscribe(handle)
    """

    def __init__(self, initial: Optional[SyncStatusSnapshot] = None):
        self._current = initial or SyncStatusSnapshot()
        self._listeners: Dict[int, Callable[[SyncStatusSnapshot], None]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    @property
    def current(self) -> SyncStatusSnapshot:
        return self._current

    def subscribe(
        self,
        listener: Callable[[SyncStatusSnapshot], None],
        replay: bool = True,
    ) -> Subscription:
        """
        Register a listener.

        Args:
            listener: Called with each new snapshot
            replay: Deliver the current snapshot right away
        """
        with self._lock:
            handle = Subscription(next(self._ids))
            self._listeners[handle.id] = listener
            current = self._current
        if replay:
            self._deliver(listener, current)
        return handle

    def unsubscribe(self, handle: Subscription) -> None:
        with self._lock:
            self._listeners.pop(handle.id, None)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, snapshot: SyncStatusSnapshot) -> bool:
        """
        Emit snapshot if it differs from the last one.

        Returns:
            True if listeners were notified
        """
        with self._lock:
            if snapshot == self._current:
                return False
            self._current = snapshot
            listeners = list(self._listeners.values())

        for listener in listeners:
            self._deliver(listener, snapshot)
        return True

    def reset(self, is_online: bool = False) -> bool:
        """Return to the default snapshot (used by clear-all-data)."""
        return self.publish(SyncStatusSnapshot(is_online=is_online))

    @staticmethod
    def _deliver(listener: Callable[[SyncStatusSnapshot], None], snapshot: SyncStatusSnapshot) -> None:
        try:
            listener(snapshot)
        except Exception as e:
            logger.error(f"Error in status listener: {e}", exc_info=True)
