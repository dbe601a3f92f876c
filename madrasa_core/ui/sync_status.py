# =============================================================================
# madrasa_core/ui/sync_status.py
# Sync status indicator and controls
# =============================================================================

from __future__ import annotations
from datetime import datetime
from typing import Optional

import pandas as pd
import streamlit as st

from madrasa_core.errors import handle_error, StorageFailure
from madrasa_core.offline import SyncCoordinator, SyncStatusSnapshot


def format_last_sync(last_sync_time: Optional[int]) -> str:
    """Human readable last-sync timestamp."""
    if not last_sync_time:
        return "Never"
    return datetime.fromtimestamp(last_sync_time / 1000).strftime("%d %b %Y, %H:%M")


def status_badge(status: SyncStatusSnapshot) -> str:
    if status.sync_in_progress:
        return "🔄 Syncing"
    if not status.is_online:
        return "📵 Offline"
    if status.failed_count:
        return "⚠️ Needs attention"
    if status.queue_size:
        return "⏳ Pending"
    return "✅ Up to date"


def render_sync_status(status: SyncStatusSnapshot) -> None:
    """Compact indicator row for the sidebar or page header."""
    st.markdown(f"**{status_badge(status)}**")
    col1, col2, col3 = st.columns(3)
    col1.metric("Pending", status.queue_size)
    col2.metric("Failed", status.failed_count)
    col3.metric("Last sync", format_last_sync(status.last_sync_time))

    if status.failed_count:
        st.warning(
            f"{status.failed_count} change(s) could not be saved to the server. "
            "Retry or discard them below."
        )


def failed_writes_frame(coordinator: SyncCoordinator) -> pd.DataFrame:
    rows = [
        {
            "collection": w.collection,
            "record": str(w.record_id),
            "operation": w.operation.value,
            "attempts": w.attempt_count,
            "error": w.last_error or "",
            "queued": pd.to_datetime(w.enqueued_at, unit="ms"),
        }
        for w in coordinator.failed_writes()
    ]
    return pd.DataFrame(rows, columns=["collection", "record", "operation", "attempts", "error", "queued"])


def render_sync_controls(coordinator: SyncCoordinator) -> None:
    """Force sync, retry/discard failed writes, and clear-all-data."""
    col1, col2, col3 = st.columns(3)

    if col1.button("🔄 Sync now", use_container_width=True):
        with st.spinner("Syncing with server..."):
            outcome = coordinator.force_sync().result()
        if outcome:
            st.success(f"Pulled {sum(outcome.pulled.values())} record(s)")
        else:
            st.error("Sync incomplete: " + "; ".join(outcome.errors))

    failed = failed_writes_frame(coordinator)
    if not failed.empty:
        st.dataframe(failed, use_container_width=True, hide_index=True)
        if col2.button("↩️ Retry failed", use_container_width=True):
            count = coordinator.retry_failed()
            st.info(f"Requeued {count} change(s)")
        if col3.button("🗑️ Discard failed", use_container_width=True):
            count = coordinator.discard_failed()
            st.info(f"Discarded {count} change(s)")

    with st.expander("Danger zone", expanded=False):
        confirm = st.checkbox("I understand local data will be erased")
        if st.button("Clear all local data", disabled=not confirm):
            try:
                coordinator.clear_all_data()
            except StorageFailure as e:
                handle_error(e)
            else:
                st.success("Local data cleared")
