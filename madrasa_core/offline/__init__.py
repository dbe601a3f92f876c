# =============================================================================
# madrasa_core/offline/__init__.py
# Offline-First Sync Layer for the madrasa clients
# =============================================================================
"""
Offline-First Sync Module

Staff keep marking attendance, prayers and leaves when the connection
drops. Every change lands in the local cache first and is replayed against
the remote service when it becomes reachable.

Architecture:
------------
    UI ──write/read──► SyncCoordinator ──publish──► StatusPublisher ──► UI
                          │        │
               ┌──────────┘        └───────────┐
               ▼                               ▼
         LocalCache  ◄── PendingWriteQueue   RemoteDataService (REST)
         (SQLite)                              ▲
                                               │
                       NetworkMonitor ─────────┘ (becameOnline → drain)

Usage:
------
from madrasa_core.offline import build_sync_coordinator

coordinator = build_sync_coordinator()
coordinator.create("attendance", {"studentId": 7, "status": "present"})
print(coordinator.status.queue_size)
coordinator.force_sync()
"""

from madrasa_core.offline.config import (
    SyncConfig,
    load_sync_config,
)

from madrasa_core.offline.local_cache import (
    LocalCache,
    Record,
    SyncState,
)

from madrasa_core.offline.write_queue import (
    PendingWrite,
    PendingWriteQueue,
    WriteOperation,
)

from madrasa_core.offline.network_monitor import (
    NetworkMonitor,
    ConnectionStatus,
    ConnectivityEvent,
    tcp_probe,
)

from madrasa_core.offline.status_publisher import (
    StatusPublisher,
    Subscription,
    SyncStatusSnapshot,
)

from madrasa_core.offline.remote_service import (
    RemoteConfig,
    RemoteDataService,
)

from madrasa_core.offline.sync_coordinator import (
    SyncCoordinator,
    SyncOutcome,
    SyncPhase,
    build_sync_coordinator,
)

__all__ = [
    # Configuration
    "SyncConfig",
    "load_sync_config",
    # Local Cache
    "LocalCache",
    "Record",
    "SyncState",
    # Write Queue
    "PendingWrite",
    "PendingWriteQueue",
    "WriteOperation",
    # Connectivity
    "NetworkMonitor",
    "ConnectionStatus",
    "ConnectivityEvent",
    "tcp_probe",
    # Status
    "StatusPublisher",
    "Subscription",
    "SyncStatusSnapshot",
    # Remote
    "RemoteConfig",
    "RemoteDataService",
    # Coordinator (Main API)
    "SyncCoordinator",
    "SyncOutcome",
    "SyncPhase",
    "build_sync_coordinator",
]
