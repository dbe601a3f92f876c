"""
Streamlit entry point for the madrasa sync console.

Run with:
    streamlit run app.py
"""

import logging

import streamlit as st

from madrasa_core.errors import ConfigurationError, StorageFailure, handle_error
from madrasa_core.logging import setup_logging
from madrasa_core.offline import SyncCoordinator, build_sync_coordinator
from madrasa_core.ui.sync_status import render_sync_controls, render_sync_status


@st.cache_resource
def get_coordinator() -> SyncCoordinator:
    """One coordinator per server process, owned by the app."""
    setup_logging(level=logging.INFO)
    return build_sync_coordinator()


def main() -> None:
    st.set_page_config(page_title="Madrasa Sync", page_icon="🔄", layout="wide")
    st.title("🔄 Offline Sync")

    try:
        coordinator = get_coordinator()
    except (ConfigurationError, StorageFailure) as e:
        handle_error(e)
        st.stop()

    render_sync_status(coordinator.status)
    st.divider()
    render_sync_controls(coordinator)

    st.divider()
    collection = st.selectbox("Collection", coordinator.config.collections)
    st.dataframe(
        coordinator.records_frame(collection),
        use_container_width=True,
        hide_index=True,
    )


main()
