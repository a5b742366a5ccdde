"""Configuration loader for the sandbox daemon.

Loads sandboxd.toml (optional), applies environment variable overrides for
secrets and CLI overrides, validates, and provides typed access to all
settings. Immutable after load.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "SANDBOXD_ENCRYPTION_KEY": ("secrets", "encryption_key"),
    "SANDBOXD_HTTP_TOKEN": ("secrets", "http_token"),
}

_OUTPUT_FORMATS = ("text", "json")
_PERMISSION_MODES = ("allowAll", "plan")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from sandboxd.toml."""

    def __init__(self, data: dict):
        self._data = data
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                self._data.setdefault(section, {})[key] = val

    def _validate(self):
        errors = []
        if self.transport_kind not in ("unix",):
            errors.append(f"[transport] kind must be 'unix', got {self.transport_kind!r}")
        if not self.socket_path:
            errors.append("[transport] socket_path is required")
        if self.output_format not in _OUTPUT_FORMATS:
            errors.append(f"[daemon] output_format must be one of {_OUTPUT_FORMATS}")
        if self.default_permission_mode not in _PERMISSION_MODES:
            errors.append(f"[agent] permission_mode must be one of {_PERMISSION_MODES}")
        if self.poll_interval <= 0:
            errors.append("[process] poll_interval must be positive")
        if not self.host_url.startswith(("http://", "https://")):
            errors.append("[host] url must be an http(s) URL")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Transport ---

    @property
    def transport_kind(self) -> str:
        return _deep_get(self._data, "transport", "kind", default="unix")

    @property
    def socket_path(self) -> str:
        return _deep_get(self._data, "transport", "socket_path", default="/tmp/sandboxd.sock")  # noqa: S108

    @property
    def max_frame_bytes(self) -> int:
        return _deep_get(self._data, "transport", "max_frame_bytes", default=16 * 1024 * 1024)

    @property
    def write_timeout(self) -> float:
        return _deep_get(self._data, "transport", "write_timeout_ms", default=2000) / 1000

    # --- Daemon ---

    @property
    def output_format(self) -> str:
        return _deep_get(self._data, "daemon", "output_format", default="text")

    @property
    def workspace(self) -> Path:
        return _resolve_path(_deep_get(self._data, "daemon", "workspace", default="."))

    @property
    def home_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "daemon", "home", default="~"))

    @property
    def prompt_dir(self) -> str | None:
        return _deep_get(self._data, "daemon", "prompt_dir", default=None)

    # --- Process ---

    @property
    def poll_interval(self) -> float:
        return float(_deep_get(self._data, "process", "poll_interval", default=2.0))

    @property
    def stop_timeout(self) -> float:
        return float(_deep_get(self._data, "process", "stop_timeout", default=10.0))

    # --- Agent ---

    @property
    def agents_dir(self) -> Path:
        rel = _deep_get(self._data, "agent", "agents_dir", default=".claude/agents")
        return self.workspace / Path(rel).expanduser()

    @property
    def mcp_config_path(self) -> str | None:
        return _deep_get(self._data, "agent", "mcp_config_path", default=None) or None

    @property
    def default_model(self) -> str:
        return _deep_get(self._data, "agent", "model", default="sonnet")

    @property
    def default_permission_mode(self) -> str:
        return _deep_get(self._data, "agent", "permission_mode", default="allowAll")

    @property
    def enable_mcp_permission_prompt(self) -> bool:
        return _deep_get(self._data, "agent", "mcp_permission_prompt", default=False)

    # --- Host reporting ---

    @property
    def host_url(self) -> str:
        return _deep_get(self._data, "host", "url", default="http://localhost:3000")

    @property
    def report_events(self) -> bool:
        return _deep_get(self._data, "host", "report_events", default=True)

    @property
    def flush_interval(self) -> float:
        return _deep_get(self._data, "host", "flush_interval_ms", default=500) / 1000

    @property
    def host_timeout(self) -> float:
        return float(_deep_get(self._data, "host", "timeout", default=30.0))

    # --- Retry ---

    @property
    def retry_config(self) -> dict:
        return _deep_get(self._data, "retry", default={})

    # --- HTTP status API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8110)

    @property
    def http_auth_token(self) -> str:
        return self.secret("http_token")

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.sandboxd"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.sandboxd/sandboxd.log"))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Secrets ---

    @property
    def encryption_key(self) -> str:
        return self.secret("encryption_key")

    def secret(self, name: str) -> str:
        return _deep_get(self._data, "secrets", name, default="")


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as sandboxd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def _apply_overrides(data: dict, overrides: dict) -> None:
    for key_path, value in overrides.items():
        keys = key_path.split(".")
        d = data
        for k in keys[:-1]:
            d = d.setdefault(k, {})
        d[keys[-1]] = value


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> Config:
    """Load and validate config.

    Args:
        path: Path to sandboxd.toml. None means built-in defaults; an
              explicit path that does not exist is an error.
        overrides: Dotted-key overrides (e.g. CLI args) applied before
                   validation.
    """
    data: dict = {}
    if path is not None:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        _load_dotenv(p)
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        _apply_overrides(data, overrides)
    return Config(data)
