# =============================================================================
# madrasa_core/offline/config.py
# Sync Layer Configuration
# =============================================================================
"""
SyncConfig - settings for the offline sync layer.

Values are merged in this order (later wins):
1. Dataclass defaults
2. The [sync] table of .streamlit/secrets.toml
3. Environment variables

Expected secrets.toml format:
    [sync]
    api_base_url = "https://madrasa.example.com"
    timeout = 15
    db_path = "local_data/madrasa_sync.db"
    collections = ["students", "attendance", "leaves", "namaz-attendance"]

    [sync.headers]
    Cookie = "session=..."
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from madrasa_core.errors import ConfigurationError
from madrasa_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SECRETS_PATH = Path(".streamlit") / "secrets.toml"

DEFAULT_COLLECTIONS = [
    "students",
    "attendance",
    "leaves",
    "namaz-attendance",
    "remarks",
]

# Environment variable -> (field name, converter)
ENV_OVERRIDES = {
    "MADRASA_API_URL": ("api_base_url", str),
    "MADRASA_SYNC_DB": ("db_path", str),
    "MADRASA_SYNC_TIMEOUT": ("timeout", float),
    "MADRASA_SYNC_MAX_ATTEMPTS": ("max_attempts", int),
}


@dataclass
class SyncConfig:
    """Configuration for the sync coordinator and its collaborators."""
    api_base_url: str = "http://localhost:5000"
    timeout: float = 30.0
    headers: Dict[str, str] = field(default_factory=dict)
    db_path: str = "local_data/madrasa_sync.db"
    collections: List[str] = field(default_factory=lambda: list(DEFAULT_COLLECTIONS))

    # Retry policy
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0

    # Connectivity
    hold_down_seconds: float = 1.5
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_cap_seconds)

    def validate(self) -> SyncConfig:
        if not self.api_base_url:
            raise ConfigurationError("API base URL is required", config_key="api_base_url")
        if self.timeout <= 0:
            raise ConfigurationError("Timeout must be positive", config_key="timeout")
        if self.max_attempts < 1:
            raise ConfigurationError(
                "At least one attempt is required",
                config_key="max_attempts",
                expected_type="int >= 1",
            )
        if self.backoff_base_seconds < 0 or self.backoff_cap_seconds < 0:
            raise ConfigurationError("Backoff delays cannot be negative", config_key="backoff_base_seconds")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ConfigurationError(
                "Backoff cap is lower than the base delay",
                config_key="backoff_cap_seconds",
            )
        if self.hold_down_seconds < 0:
            raise ConfigurationError("Hold-down window cannot be negative", config_key="hold_down_seconds")
        if not self.collections:
            raise ConfigurationError("No collections configured", config_key="collections")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SyncConfig:
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown sync settings: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def _load_secrets(secrets_path: Path) -> Dict[str, Any]:
    if not secrets_path.exists():
        return {}
    try:
        secrets = toml.load(secrets_path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigurationError(
            f"Could not read {secrets_path}: {e}",
            config_key="sync",
        ) from e
    return dict(secrets.get("sync", {}))


def _load_env() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[field_name] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {env_name}: {raw!r}",
                config_key=field_name,
                expected_type=convert.__name__,
            ) from e
    return overrides


def load_sync_config(secrets_path: Optional[Path] = None) -> SyncConfig:
    """
    Load the sync configuration from secrets.toml and the environment.

    Args:
        secrets_path: Path to a secrets.toml file (default: .streamlit/secrets.toml)

    Returns:
        Validated SyncConfig
    """
    path = Path(secrets_path) if secrets_path else DEFAULT_SECRETS_PATH
    merged = {**_load_secrets(path), **_load_env()}
    config = SyncConfig.from_dict(merged).validate()
    logger.debug(f"Sync config loaded for {config.api_base_url}")
    return config
