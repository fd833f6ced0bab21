"""
Configuration: settings for a round-trip run.

Loads configuration from:
1. Environment variables
2. .env file (if present, via python-dotenv)

Usage:
    from kustoprobe.config import load_probe_config

    cfg = load_probe_config(table="ravpateTable")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import structlog

from kustoprobe.auth import AuthMode

log = structlog.get_logger()

DEFAULT_DATABASE = "ArcSqlTelemetry"
DEFAULT_TABLE = "ravpateTable"
DEFAULT_ROW_LIMIT = 5

# Flag to track if config has been loaded
_config_loaded = False


def find_dotenv() -> Path | None:
    """Find the .env file, searching up from current directory."""
    current = Path.cwd()
    for _ in range(10):  # Max 10 levels up
        env_file = current / ".env"
        if env_file.exists():
            return env_file
        if current.parent == current:
            break
        current = current.parent
    return None


def load_config() -> None:
    """
    Load configuration from .env file if present.

    Should be called once at CLI startup.
    """
    global _config_loaded
    if _config_loaded:
        return

    # Tests control the environment explicitly; a developer's local `.env` must not leak in.
    if os.environ.get("PYTEST_CURRENT_TEST") or str(os.environ.get("KUSTOPROBE_DISABLE_DOTENV", "")).lower() in {"1", "true", "yes"}:
        log.debug("config.skip_dotenv", reason="pytest_or_disabled")
        _config_loaded = True
        return

    from dotenv import load_dotenv

    env_file = find_dotenv()
    if env_file:
        load_dotenv(env_file, override=False)
        log.debug("config.loaded_dotenv", path=str(env_file))
    else:
        log.debug("config.no_dotenv_found")

    _config_loaded = True


def get_env(key: str, default: str | None = None, required: bool = False) -> str | None:
    """Get an environment variable with optional default and required check."""
    value = os.environ.get(key, default)
    if required and not value:
        raise RuntimeError(
            f"Required environment variable {key} is not set. "
            f"Please set it in your .env file or environment."
        )
    return value


def env_int(key: str, default: int) -> int:
    """Read an integer environment variable with safe fallback."""
    load_config()
    try:
        return int(get_env(key, str(int(default))) or int(default))
    except Exception:
        return int(default)


def env_float(key: str, default: float) -> float:
    """Read a float environment variable with safe fallback."""
    load_config()
    try:
        return float(get_env(key, str(float(default))) or float(default))
    except Exception:
        return float(default)


def env_bool(key: str, default: bool) -> bool:
    """Read a boolean environment variable with common truthy values."""
    load_config()
    raw = str(get_env(key, "1" if default else "0") or "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Cluster defaults
# ---------------------------------------------------------------------------


def get_cluster_url() -> str:
    load_config()
    return str(get_env("KUSTOPROBE_CLUSTER_URL", required=True)).strip()


def get_ingest_url() -> str | None:
    load_config()
    raw = str(get_env("KUSTOPROBE_INGEST_URL", "") or "").strip()
    return raw or None


def get_database() -> str:
    load_config()
    return str(get_env("KUSTOPROBE_DATABASE", DEFAULT_DATABASE) or DEFAULT_DATABASE)


def get_table() -> str:
    load_config()
    return str(get_env("KUSTOPROBE_TABLE", DEFAULT_TABLE) or DEFAULT_TABLE)


def get_auth_mode() -> AuthMode:
    load_config()
    return AuthMode.parse(get_env("KUSTOPROBE_AUTH_MODE", "token") or "token")


def get_staging_dir() -> Path | None:
    load_config()
    raw = str(get_env("KUSTOPROBE_STAGING_DIR", "") or "").strip()
    return Path(raw) if raw else None


@dataclass(frozen=True)
class ProbeConfig:
    """
    Everything a round-trip run needs, resolved once at startup.
    """

    endpoint: str
    database: str = DEFAULT_DATABASE
    table: str = DEFAULT_TABLE
    auth_mode: AuthMode = AuthMode.TOKEN
    row_limit: int = DEFAULT_ROW_LIMIT
    ingest_endpoint: str | None = None

    status_timeout_s: float = 300.0
    status_poll_interval_s: float = 5.0
    visibility_timeout_s: float = 60.0
    visibility_poll_interval_s: float = 5.0
    run_timeout_s: float = 900.0
    staging_dir: Path | None = None

    # Synthetic record contents
    first_name: str = "Sql"
    second_name: str = "Isgood"
    flag: bool = True

    def __post_init__(self) -> None:
        if not str(self.endpoint or "").strip():
            raise ValueError("endpoint is required")
        if not str(self.database or "").strip():
            raise ValueError("database is required")
        if not str(self.table or "").strip():
            raise ValueError("table is required")
        if int(self.row_limit) < 1:
            raise ValueError(f"row_limit must be >= 1 (got {self.row_limit})")
        for name in ("status_timeout_s", "visibility_timeout_s", "run_timeout_s"):
            if float(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ("status_poll_interval_s", "visibility_poll_interval_s"):
            if float(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be > 0")

    def with_overrides(self, **overrides: Any) -> "ProbeConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


def load_probe_config(**overrides: Any) -> ProbeConfig:
    """
    Build a ProbeConfig from the environment; non-None overrides win.
    """
    load_config()
    given = {k: v for k, v in overrides.items() if v is not None}

    endpoint = given.pop("endpoint", None) or get_cluster_url()
    auth_mode = given.pop("auth_mode", None)
    if auth_mode is not None and not isinstance(auth_mode, AuthMode):
        auth_mode = AuthMode.parse(str(auth_mode))

    cfg = ProbeConfig(
        endpoint=str(endpoint),
        database=get_database(),
        table=get_table(),
        auth_mode=auth_mode or get_auth_mode(),
        row_limit=max(1, env_int("KUSTOPROBE_ROW_LIMIT", DEFAULT_ROW_LIMIT)),
        ingest_endpoint=get_ingest_url(),
        status_timeout_s=max(0.0, env_float("KUSTOPROBE_STATUS_TIMEOUT_S", 300.0)),
        status_poll_interval_s=max(0.1, env_float("KUSTOPROBE_STATUS_POLL_S", 5.0)),
        visibility_timeout_s=max(0.0, env_float("KUSTOPROBE_VISIBILITY_TIMEOUT_S", 60.0)),
        visibility_poll_interval_s=max(0.1, env_float("KUSTOPROBE_VISIBILITY_POLL_S", 5.0)),
        run_timeout_s=max(0.0, env_float("KUSTOPROBE_RUN_TIMEOUT_S", 900.0)),
        staging_dir=get_staging_dir(),
        flag=env_bool("KUSTOPROBE_FLAG", True),
    )
    return cfg.with_overrides(**given)
