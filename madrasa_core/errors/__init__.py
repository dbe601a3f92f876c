# =============================================================================
# madrasa_core/errors/__init__.py
# Centralized Error Handling for the sync layer
# =============================================================================

from .exceptions import (
    MadrasaSyncError,
    StorageFailure,
    TransientNetworkFailure,
    PermanentRequestFailure,
    DrainAlreadyInProgress,
    ConfigurationError,
)

from .handlers import handle_error

__all__ = [
    # Exceptions
    "MadrasaSyncError",
    "StorageFailure",
    "TransientNetworkFailure",
    "PermanentRequestFailure",
    "DrainAlreadyInProgress",
    "ConfigurationError",
    # Handlers
    "handle_error",
]
