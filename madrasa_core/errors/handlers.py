# =============================================================================
# madrasa_core/errors/handlers.py
# Error Handling Utilities
# =============================================================================

from __future__ import annotations
import traceback
from typing import Optional
import streamlit as st

from madrasa_core.logging import get_logger
from .exceptions import ConfigurationError, MadrasaSyncError, StorageFailure

logger = get_logger(__name__)

# Follow-up text shown after a non-recoverable error, by type
CRITICAL_HINTS = (
    (StorageFailure, "Local data could not be saved."),
    (ConfigurationError, "Check the [sync] section of .streamlit/secrets.toml "
                         "and the MADRASA_* environment variables."),
)


def _critical_message(error: Exception, message: str) -> str:
    for error_type, hint in CRITICAL_HINTS:
        if isinstance(error, error_type):
            return f"Critical Error: {message}. {hint}"
    return f"Critical Error: {message}"


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> None:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        show_user_message: Whether to display error to user via st.error
        log_error: Whether to log the error
        user_message: Custom message to show user (uses error message if None)
    """
    if isinstance(error, MadrasaSyncError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    if show_user_message:
        if recoverable:
            st.error(f"Error: {message}")
        else:
            st.error(_critical_message(error, message))

        if details and st.session_state.get("debug_mode", False):
            with st.expander("Error Details", expanded=False):
                st.json(details)
