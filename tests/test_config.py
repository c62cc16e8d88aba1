from pathlib import Path

import pytest

from quotawatch.config import Config
from quotawatch.errors import ConfigurationError

_ENV = (
    "QUOTAWATCH_DATA_DIR",
    "QUOTAWATCH_REFRESH_INTERVAL",
    "QUOTAWATCH_SESSION_THRESHOLD",
    "QUOTAWATCH_PERIODIC_THRESHOLD",
    "QUOTAWATCH_PASSPHRASE",
    "QUOTAWATCH_GEMINI_CREDS",
    "QUOTAWATCH_LOCAL_PORT",
)


@pytest.fixture()
def clean_env(monkeypatch: "pytest.MonkeyPatch") -> "pytest.MonkeyPatch":
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfigFromEnv:
    def test_defaults(self, clean_env: "pytest.MonkeyPatch") -> "None":
        config = Config.from_env()
        assert config.refresh_interval == "5m"
        assert config.session_threshold == 80.0
        assert config.periodic_threshold == 90.0
        assert config.passphrase is None
        assert config.listen_address == ""
        assert config.local_port is None
        assert config.data_dir == Path("~/.local/share/quotawatch").expanduser()
        assert config.gemini_credentials_path.name == "oauth_creds.json"

    def test_reads_env_vars(self, clean_env: "pytest.MonkeyPatch", tmp_path: "Path") -> "None":
        clean_env.setenv("QUOTAWATCH_DATA_DIR", str(tmp_path))
        clean_env.setenv("QUOTAWATCH_REFRESH_INTERVAL", "manual")
        clean_env.setenv("QUOTAWATCH_SESSION_THRESHOLD", "75")
        clean_env.setenv("QUOTAWATCH_PASSPHRASE", "hunter2")
        clean_env.setenv("QUOTAWATCH_LOCAL_PORT", "53100")
        config = Config.from_env()
        assert config.data_dir == tmp_path
        assert config.refresh_interval == "manual"
        assert config.session_threshold == 75.0
        assert config.passphrase == "hunter2"
        assert config.local_port == 53100

    def test_bad_number(self, clean_env: "pytest.MonkeyPatch") -> "None":
        clean_env.setenv("QUOTAWATCH_SESSION_THRESHOLD", "lots")
        with pytest.raises(ConfigurationError):
            Config.from_env()

    def test_bad_port(self, clean_env: "pytest.MonkeyPatch") -> "None":
        clean_env.setenv("QUOTAWATCH_LOCAL_PORT", "70000")
        with pytest.raises(ConfigurationError):
            Config.from_env()


class TestPrepare:
    def test_derived_paths(self, tmp_path: "Path") -> "None":
        config = Config(data_dir=tmp_path)
        assert config.cache_path == tmp_path / "usage_cache.json"
        assert config.enablement_path == tmp_path / "enabled.json"
        assert config.blob_dir == tmp_path / "secrets"

    def test_creates_directories(self, tmp_path: "Path") -> "None":
        config = Config(data_dir=tmp_path / "nested" / "data")
        config.prepare()
        assert config.blob_dir.is_dir()

    def test_unusable_data_dir(self, tmp_path: "Path") -> "None":
        blocker = tmp_path / "file"
        blocker.write_text("")
        config = Config(data_dir=blocker / "data")
        with pytest.raises(ConfigurationError):
            config.prepare()

    def test_threshold_out_of_range(self, tmp_path: "Path") -> "None":
        config = Config(data_dir=tmp_path, periodic_threshold=150)
        with pytest.raises(ConfigurationError):
            config.prepare()
