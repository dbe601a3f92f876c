# =============================================================================
# madrasa_core/offline/network_monitor.py
# Connectivity Detection with Hold-Down Debouncing
# =============================================================================
"""
NetworkMonitor - tracks whether the remote service is reachable.

Features:
- Raw observations fed through report() (platform events or probes)
- Hold-down window: a transition is committed only once it has been
  stable for hold_down_seconds, so flapping links do not trigger
  redundant drains
- Background probe thread
- Subscribe/unsubscribe for BECAME_ONLINE / BECAME_OFFLINE events
"""

from __future__ import annotations
import itertools
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from madrasa_core.logging import get_logger

logger = get_logger(__name__)


class ConnectionStatus(Enum):
    """Committed connectivity states."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ConnectivityEvent(Enum):
    """Transitions reported to subscribers."""
    BECAME_ONLINE = "became_online"
    BECAME_OFFLINE = "became_offline"


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0


def tcp_probe(base_url: str, timeout: float = 5.0) -> Callable[[], bool]:
    """Build a probe that opens a TCP connection to the service host."""
    parsed = urlparse(base_url)
    host = parsed.hostname
    port = parsed.port or (443 if parsed.scheme == "https" else 80)

    def probe() -> bool:
        if not host:
            return False
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    return probe


class NetworkMonitor:
    """
    Connectivity monitor.

    Usage:
        monitor = NetworkMonitor(probe=tcp_probe(config.api_base_url))
        handle = monitor.subscribe(on_event)
        monitor.start_monitoring()
    """

    POLL_TICK = 0.25  # Seconds between hold-down checks in the monitor thread

    def __init__(
        self,
        probe: Optional[Callable[[], bool]] = None,
        hold_down_seconds: float = 1.5,
        check_interval_online: float = 30.0,
        check_interval_offline: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        initially_online: Optional[bool] = None,
    ):
        self._probe = probe
        self.hold_down_seconds = hold_down_seconds
        self.check_interval_online = check_interval_online
        self.check_interval_offline = check_interval_offline
        self._clock = clock

        self._state = ConnectionState()
        if initially_online is not None:
            self._state.status = ConnectionStatus.ONLINE if initially_online else ConnectionStatus.OFFLINE

        self._candidate: Optional[bool] = None
        self._candidate_since = 0.0

        self._lock = threading.RLock()
        self._subscribers: Dict[int, Callable[[ConnectivityEvent], None]] = {}
        self._handles = itertools.count(1)

        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    # =========================================================================
    # OBSERVATIONS
    # =========================================================================

    def report(self, online: bool) -> Optional[ConnectivityEvent]:
        """
        Feed a raw connectivity observation.

        Returns the committed event when the observation takes effect
        immediately (no hold-down or first observation), else None.
        """
        with self._lock:
            self._state.last_check = datetime.now()
            if online:
                self._state.consecutive_failures = 0
            else:
                self._state.consecutive_failures += 1

            current = self._current_bool()
            if current is None:
                # First observation seeds the state without waiting
                return self._commit(online)

            if online == current:
                if self._candidate is not None:
                    logger.debug("Connectivity flapped back within hold-down window")
                self._candidate = None
                return None

            if self._candidate != online:
                self._candidate = online
                self._candidate_since = self._clock()

        return self.poll()

    def poll(self) -> Optional[ConnectivityEvent]:
        """Commit a pending transition once it has been stable long enough."""
        with self._lock:
            if self._candidate is None:
                return None
            if self._clock() - self._candidate_since < self.hold_down_seconds:
                return None
            online = self._candidate
            self._candidate = None
        return self._commit(online)

    def _current_bool(self) -> Optional[bool]:
        if self._state.status == ConnectionStatus.UNKNOWN:
            return None
        return self._state.status == ConnectionStatus.ONLINE

    def _commit(self, online: bool) -> Optional[ConnectivityEvent]:
        with self._lock:
            old_status = self._state.status
            new_status = ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE
            self._candidate = None
            if old_status == new_status:
                return None
            self._state.status = new_status
            if online:
                self._state.last_online = datetime.now()

        logger.info(f"Connection status changed: {old_status.value} -> {new_status.value}")
        event = ConnectivityEvent.BECAME_ONLINE if online else ConnectivityEvent.BECAME_OFFLINE
        self._notify(event)
        return event

    def check_connection(self) -> ConnectionStatus:
        """Run the probe once and feed the result through report()."""
        if self._probe is None:
            return self._state.status
        try:
            reachable = bool(self._probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            reachable = False
        self.report(reachable)
        return self._state.status

    def force_offline(self) -> None:
        """Force offline mode (user preference or testing)."""
        self._commit(False)
        logger.info("Forced offline mode")

    # =========================================================================
    # BACKGROUND MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connectivity monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="NetworkMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        next_check = 0.0
        while not self._stop_monitoring.is_set():
            now = self._clock()
            if now >= next_check:
                self.check_connection()
                interval = (
                    self.check_interval_online
                    if self.is_online
                    else self.check_interval_offline
                )
                next_check = now + interval
            else:
                self.poll()

            if self._stop_monitoring.wait(timeout=self.POLL_TICK):
                break

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, callback: Callable[[ConnectivityEvent], None]) -> int:
        """Register a callback for transitions; returns an unsubscribe handle."""
        with self._lock:
            handle = next(self._handles)
            self._subscribers[handle] = callback
            return handle

    def unsubscribe(self, handle: int) -> None:
        with self._lock:
            self._subscribers.pop(handle, None)

    def _notify(self, event: ConnectivityEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in connectivity callback: {e}", exc_info=True)

    def get_status_display(self) -> dict:
        """Status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "transition_pending": self._candidate is not None,
        }
