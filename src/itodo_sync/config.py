# src/itodo_sync/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time: the engine runs fully offline without a remote URL.
- Every knob of the sync engine (retries, throttling, deadlines) is tunable from env.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "ITODO"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env never overrides variables already set in the environment.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Remote backend (Supabase/PostgREST compatible) ----
    remote_url: str | None
    remote_api_key: str | None
    remote_timeout_seconds: float
    remote_call_timeout_seconds: float

    # ---- Push path tuning ----
    max_retries: int
    drain_item_delay_seconds: float
    retry_backoff_seconds: float

    # ---- Connectivity ----
    start_online: bool
    network_probe_interval_seconds: float

    # ---- Optional pre-authenticated session (CLI convenience) ----
    user_id: str | None
    access_token: str | None

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_url and self.remote_url.strip())

    @staticmethod
    def from_env() -> "Settings":
        app_name = _first_env(_k("APP_NAME"), default="itodo-sync") or "itodo-sync"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/itodo"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "itodo.sqlite3")

        remote_url = (_first_env(_k("REMOTE_URL"), "SUPABASE_URL", default="") or "").strip() or None
        remote_api_key = (
            _first_env(_k("REMOTE_API_KEY"), "SUPABASE_ANON_KEY", default="") or ""
        ).strip() or None

        remote_timeout_seconds = _env_float(_k("REMOTE_TIMEOUT_SECONDS"), 15.0)
        # The engine-level deadline must never be shorter than the transport timeout.
        remote_call_timeout_seconds = max(
            _env_float(_k("REMOTE_CALL_TIMEOUT_SECONDS"), 30.0),
            remote_timeout_seconds,
        )

        max_retries = max(1, _env_int(_k("MAX_RETRIES"), 3))
        drain_item_delay_seconds = max(0.0, _env_float(_k("DRAIN_ITEM_DELAY_SECONDS"), 0.0))
        retry_backoff_seconds = max(0.0, _env_float(_k("RETRY_BACKOFF_SECONDS"), 5.0))

        start_online = _env_bool(_k("START_ONLINE"), True)
        network_probe_interval_seconds = max(
            1.0, _env_float(_k("NETWORK_PROBE_INTERVAL_SECONDS"), 30.0)
        )

        user_id = (_env(_k("USER_ID"), "") or "").strip() or None
        access_token = (_env(_k("ACCESS_TOKEN"), "") or "").strip() or None

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            remote_url=remote_url,
            remote_api_key=remote_api_key,
            remote_timeout_seconds=remote_timeout_seconds,
            remote_call_timeout_seconds=remote_call_timeout_seconds,
            max_retries=max_retries,
            drain_item_delay_seconds=drain_item_delay_seconds,
            retry_backoff_seconds=retry_backoff_seconds,
            start_online=start_online,
            network_probe_interval_seconds=network_probe_interval_seconds,
            user_id=user_id,
            access_token=access_token,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
