import os
from dataclasses import dataclass, field
from pathlib import Path

from quotawatch.errors import ConfigurationError

DEFAULT_DATA_DIR = Path("~/.local/share/quotawatch")
DEFAULT_GEMINI_CREDENTIALS = Path("~/.gemini/oauth_creds.json")


def _env_float(name: "str", default: "float") -> "float":
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'") from None


def _env_port(name: "str") -> "int | None":
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    if not raw.isdigit() or not 0 < int(raw) < 65536:
        raise ConfigurationError(f"{name} must be a TCP port, got '{raw}'")
    return int(raw)


@dataclass
class Config:
    data_dir: "Path" = field(default_factory=lambda: DEFAULT_DATA_DIR.expanduser())
    # one of manual, 1m, 2m, 5m, 15m
    refresh_interval: "str" = "5m"
    # percentages at which usage alerts fire
    session_threshold: "float" = 80.0
    periodic_threshold: "float" = 90.0
    # seals encrypted blobs; a machine derived key is used when empty
    passphrase: "str | None" = None
    # metrics endpoint, format ":9185" or "0.0.0.0:9185"; empty disables it
    listen_address: "str" = ""
    log_level: "str" = "info"
    # console or json
    log_format: "str" = "console"

    gemini_credentials_path: "Path" = field(
        default_factory=lambda: DEFAULT_GEMINI_CREDENTIALS.expanduser()
    )
    local_port: "int | None" = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls(
            refresh_interval=os.environ.get("QUOTAWATCH_REFRESH_INTERVAL", "5m"),
            session_threshold=_env_float("QUOTAWATCH_SESSION_THRESHOLD", 80.0),
            periodic_threshold=_env_float("QUOTAWATCH_PERIODIC_THRESHOLD", 90.0),
            passphrase=os.environ.get("QUOTAWATCH_PASSPHRASE") or None,
            local_port=_env_port("QUOTAWATCH_LOCAL_PORT"),
        )
        if data_dir := os.environ.get("QUOTAWATCH_DATA_DIR"):
            config.data_dir = Path(data_dir).expanduser()
        if creds := os.environ.get("QUOTAWATCH_GEMINI_CREDS"):
            config.gemini_credentials_path = Path(creds).expanduser()
        return config

    @property
    def cache_path(self) -> "Path":
        return self.data_dir / "usage_cache.json"

    @property
    def enablement_path(self) -> "Path":
        return self.data_dir / "enabled.json"

    @property
    def blob_dir(self) -> "Path":
        return self.data_dir / "secrets"

    def prepare(self) -> "None":
        """
        creates the data directories. Failing here is the one condition
        that keeps the scheduler from starting.
        """
        for threshold in (self.session_threshold, self.periodic_threshold):
            if not 0 < threshold <= 100:
                raise ConfigurationError(f"alert threshold {threshold} is outside (0, 100]")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.blob_dir.mkdir(mode=0o700, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"cannot create data directory {self.data_dir}: {e}") from e
