"""
Streamlit components for the offline sync layer.

Public API:
- render_sync_status
- render_sync_controls
"""

from .sync_status import (
    failed_writes_frame,
    format_last_sync,
    render_sync_controls,
    render_sync_status,
    status_badge,
)

__all__ = [
    "failed_writes_frame",
    "format_last_sync",
    "render_sync_controls",
    "render_sync_status",
    "status_badge",
]
