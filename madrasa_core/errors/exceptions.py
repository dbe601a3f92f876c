# =============================================================================
# madrasa_core/errors/exceptions.py
# Exception Hierarchy for the offline sync layer
# =============================================================================

from typing import Optional, Dict, Any


class MadrasaSyncError(Exception):
    """
    Base exception for all sync layer errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORAGE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORAGE
# =============================================================================

class StorageFailure(MadrasaSyncError):
    """Raised when the local cache cannot read or persist a value"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code="STORAGE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# REMOTE SERVICE
# =============================================================================

class TransientNetworkFailure(MadrasaSyncError):
    """Raised for timeouts, connection errors and 5xx responses"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if url:
            details["url"] = url

        super().__init__(
            message=message,
            code="NET_001",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class PermanentRequestFailure(MadrasaSyncError):
    """Raised for 4xx responses; retrying the same request cannot succeed"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if error:
            details["error"] = error
        if url:
            details["url"] = url

        super().__init__(
            message=message,
            code="NET_002",
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.error = error


# =============================================================================
# COORDINATION
# =============================================================================

class DrainAlreadyInProgress(MadrasaSyncError):
    """Signals a re-entrant drain trigger; handled as a no-op"""

    def __init__(self, message: str = "A drain cycle is already running", **kwargs):
        super().__init__(message=message, code="SYNC_001", **kwargs)


# =============================================================================
# CONFIGURATION
# =============================================================================

class ConfigurationError(MadrasaSyncError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
