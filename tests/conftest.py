# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import threading
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from madrasa_core.errors import PermanentRequestFailure, TransientNetworkFailure
from madrasa_core.offline import (
    LocalCache,
    NetworkMonitor,
    StatusPublisher,
    SyncConfig,
    SyncCoordinator,
)


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """
    In-memory stand-in for RemoteDataService.

    Records every call, assigns integer ids to created records and raises
    scripted failures in order.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str, Any]] = []
        self.server: Dict[str, List[Dict[str, Any]]] = {}
        self.next_id = 101
        self._failures: List[Tuple[Optional[str], Exception]] = []
        self._lock = threading.Lock()

        # Optional gate blocking create()/fetch_all() until set
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def fail_next(self, error: Exception, times: int = 1, method: Optional[str] = None) -> None:
        for _ in range(times):
            self._failures.append((method, error))

    def _maybe_fail(self, method: str) -> None:
        with self._lock:
            for index, (wanted, error) in enumerate(self._failures):
                if wanted is None or wanted == method:
                    del self._failures[index]
                    raise error

    def _block(self) -> None:
        self.entered.set()
        if self.gate is not None:
            assert self.gate.wait(5), "gate never released"

    def calls_for(self, method: str) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method]

    def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create", collection, dict(payload)))
        self._block()
        self._maybe_fail("create")
        with self._lock:
            record = {"id": self.next_id, **payload}
            self.next_id += 1
        self.server.setdefault(collection, []).append(record)
        return record

    def update(self, collection: str, record_id, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update", collection, record_id))
        self._maybe_fail("update")
        return {"id": record_id, **payload}

    def delete(self, collection: str, record_id) -> None:
        self.calls.append(("delete", collection, record_id))
        self._maybe_fail("delete")

    def fetch_all(self, collection: str) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_all", collection, None))
        self._block()
        self._maybe_fail("fetch_all")
        return [dict(item) for item in self.server.get(collection, [])]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def cache():
    """Throwaway in-memory cache"""
    local_cache = LocalCache(":memory:")
    yield local_cache
    local_cache.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor():
    """Monitor that starts offline and commits transitions immediately"""
    return NetworkMonitor(hold_down_seconds=0, initially_online=False)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def sync_config():
    """Config without backoff delays so retry tests run instantly"""
    return SyncConfig(
        api_base_url="http://madrasa.test",
        backoff_base_seconds=0,
        backoff_cap_seconds=0,
        hold_down_seconds=0,
        collections=["students", "leaves"],
    )


@pytest.fixture
def publisher():
    return StatusPublisher()


@pytest.fixture
def coordinator(cache, remote, monitor, sync_config, publisher):
    """Started coordinator; stopped on teardown"""
    sync = SyncCoordinator(cache, remote, monitor, sync_config, publisher)
    sync.start()
    yield sync
    sync.stop()


@pytest.fixture
def go_online(monitor, coordinator):
    """Bring the monitor online and wait for the triggered drain"""
    def _go_online(timeout: float = 5.0):
        monitor.report(True)
        assert coordinator.wait_until_idle(timeout)
    return _go_online


@pytest.fixture
def transient_error():
    return TransientNetworkFailure("timed out", url="http://madrasa.test/api/leaves")


@pytest.fixture
def validation_error():
    return PermanentRequestFailure(
        "studentId is required",
        status_code=400,
        error="validation_error",
    )


@pytest.fixture
def mock_streamlit(monkeypatch):
    """Replace streamlit in the error handler with a mock"""
    from madrasa_core.errors import handlers

    mock_st = MagicMock()
    mock_st.session_state = {}
    monkeypatch.setattr(handlers, "st", mock_st)
    return mock_st
