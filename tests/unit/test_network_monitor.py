# =============================================================================
# tests/unit/test_network_monitor.py
# Unit Tests for NetworkMonitor
# =============================================================================

import pytest

from madrasa_core.offline import ConnectionStatus, ConnectivityEvent, NetworkMonitor


@pytest.fixture
def events():
    return []


@pytest.fixture
def debounced(clock, events):
    """Online monitor with a 1.5s hold-down window on a fake clock"""
    monitor = NetworkMonitor(hold_down_seconds=1.5, clock=clock, initially_online=True)
    monitor.subscribe(events.append)
    return monitor


class TestInitialState:
    """Test the first observation"""

    def test_unknown_until_first_report(self):
        monitor = NetworkMonitor(hold_down_seconds=1.5)
        assert monitor.status == ConnectionStatus.UNKNOWN
        assert not monitor.is_online

    def test_first_report_commits_without_hold_down(self, events):
        monitor = NetworkMonitor(hold_down_seconds=1.5)
        monitor.subscribe(events.append)

        assert monitor.report(True) == ConnectivityEvent.BECAME_ONLINE
        assert monitor.is_online
        assert events == [ConnectivityEvent.BECAME_ONLINE]


class TestHoldDown:
    """Test debouncing of flapping connectivity"""

    def test_transition_waits_for_stable_window(self, debounced, clock, events):
        assert debounced.report(False) is None
        clock.advance(1.0)
        assert debounced.poll() is None
        assert debounced.is_online

        clock.advance(0.6)
        assert debounced.poll() == ConnectivityEvent.BECAME_OFFLINE
        assert debounced.status == ConnectionStatus.OFFLINE
        assert events == [ConnectivityEvent.BECAME_OFFLINE]

    def test_flap_back_cancels_transition(self, debounced, clock, events):
        debounced.report(False)
        clock.advance(0.5)
        debounced.report(True)
        clock.advance(5)

        assert debounced.poll() is None
        assert debounced.is_online
        assert events == []

    def test_repeated_reports_do_not_restart_window(self, debounced, clock):
        debounced.report(False)
        clock.advance(1.0)
        debounced.report(False)
        clock.advance(0.6)

        assert debounced.poll() == ConnectivityEvent.BECAME_OFFLINE

    def test_zero_hold_down_commits_immediately(self, events):
        monitor = NetworkMonitor(hold_down_seconds=0, initially_online=False)
        monitor.subscribe(events.append)

        assert monitor.report(True) == ConnectivityEvent.BECAME_ONLINE
        assert monitor.report(False) == ConnectivityEvent.BECAME_OFFLINE
        assert events == [ConnectivityEvent.BECAME_ONLINE, ConnectivityEvent.BECAME_OFFLINE]


class TestProbeAndSubscriptions:
    """Test probing, forced offline mode and callbacks"""

    def test_check_connection_uses_probe(self):
        monitor = NetworkMonitor(probe=lambda: True, hold_down_seconds=0)
        assert monitor.check_connection() == ConnectionStatus.ONLINE

    def test_probe_exception_counts_as_offline(self):
        def broken_probe():
            raise OSError("network unreachable")

        monitor = NetworkMonitor(probe=broken_probe, hold_down_seconds=0, initially_online=True)

        assert monitor.check_connection() == ConnectionStatus.OFFLINE
        assert monitor.state.consecutive_failures == 1

    def test_force_offline(self, debounced, events):
        debounced.force_offline()
        assert not debounced.is_online
        assert events == [ConnectivityEvent.BECAME_OFFLINE]

    def test_unsubscribe(self, events):
        monitor = NetworkMonitor(hold_down_seconds=0, initially_online=False)
        handle = monitor.subscribe(events.append)
        monitor.unsubscribe(handle)

        monitor.report(True)
        assert events == []

    def test_failing_callback_does_not_block_others(self, events):
        def bad_callback(event):
            raise RuntimeError("boom")

        monitor = NetworkMonitor(hold_down_seconds=0, initially_online=False)
        monitor.subscribe(bad_callback)
        monitor.subscribe(events.append)

        monitor.report(True)
        assert events == [ConnectivityEvent.BECAME_ONLINE]

    def test_status_display(self, debounced):
        debounced.report(False)
        display = debounced.get_status_display()

        assert display["status"] == "online"
        assert display["transition_pending"] is True
        assert display["failures"] == 1
