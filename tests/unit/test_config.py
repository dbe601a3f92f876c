# =============================================================================
# tests/unit/test_config.py
# Unit Tests for SyncConfig loading
# =============================================================================

import pytest

from madrasa_core.errors import ConfigurationError
from madrasa_core.offline import SyncConfig, load_sync_config
from madrasa_core.offline.config import DEFAULT_COLLECTIONS, ENV_OVERRIDES


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def secrets_file(tmp_path):
    path = tmp_path / "secrets.toml"
    path.write_text(
        '[sync]\n'
        'api_base_url = "https://madrasa.example.com"\n'
        'timeout = 12\n'
        'collections = ["students", "leaves"]\n'
        '\n'
        '[sync.headers]\n'
        'Cookie = "session=abc"\n'
    )
    return path


class TestSyncConfigDefaults:
    """Test defaults and the retry schedule"""

    def test_defaults(self):
        config = SyncConfig()

        assert config.max_attempts == 5
        assert config.hold_down_seconds == 1.5
        assert config.collections == DEFAULT_COLLECTIONS

    def test_backoff_doubles_until_cap(self):
        config = SyncConfig()

        delays = [config.backoff_delay(n) for n in range(1, 8)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        assert config.backoff_delay(0) == 0.0

    def test_from_dict_ignores_unknown_keys(self):
        config = SyncConfig.from_dict({"timeout": 5.0, "theme": "dark"})
        assert config.timeout == 5.0

    @pytest.mark.parametrize("overrides", [
        {"api_base_url": ""},
        {"timeout": 0},
        {"max_attempts": 0},
        {"backoff_base_seconds": -1},
        {"backoff_base_seconds": 10, "backoff_cap_seconds": 5},
        {"hold_down_seconds": -0.5},
        {"collections": []},
    ])
    def test_validate_rejects_bad_values(self, overrides):
        with pytest.raises(ConfigurationError) as exc_info:
            SyncConfig(**overrides).validate()
        assert exc_info.value.code == "CONFIG_001"


class TestLoadSyncConfig:
    """Test merging secrets.toml and environment variables"""

    def test_missing_secrets_file_uses_defaults(self, tmp_path):
        config = load_sync_config(tmp_path / "absent.toml")
        assert config == SyncConfig()

    def test_reads_sync_table(self, secrets_file):
        config = load_sync_config(secrets_file)

        assert config.api_base_url == "https://madrasa.example.com"
        assert config.timeout == 12
        assert config.collections == ["students", "leaves"]
        assert config.headers == {"Cookie": "session=abc"}

    def test_environment_wins(self, secrets_file, monkeypatch):
        monkeypatch.setenv("MADRASA_API_URL", "http://10.0.0.5:5000")
        monkeypatch.setenv("MADRASA_SYNC_MAX_ATTEMPTS", "3")

        config = load_sync_config(secrets_file)

        assert config.api_base_url == "http://10.0.0.5:5000"
        assert config.max_attempts == 3
        assert config.timeout == 12

    def test_invalid_environment_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MADRASA_SYNC_TIMEOUT", "soon")

        with pytest.raises(ConfigurationError) as exc_info:
            load_sync_config(tmp_path / "absent.toml")
        assert exc_info.value.details["config_key"] == "timeout"

    def test_malformed_secrets_file(self, tmp_path):
        path = tmp_path / "secrets.toml"
        path.write_text("[sync\napi_base_url = ")

        with pytest.raises(ConfigurationError):
            load_sync_config(path)
