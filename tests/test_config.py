from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace

import pytest

from itodo_sync.cli.bootstrap import create_initial_state
from itodo_sync.config import Settings
from itodo_sync.logging_setup import LOG_FILE_NAME, _ConsoleNoiseFilter, setup_logging
from itodo_sync.sync.offline import OfflineRemote
from itodo_sync.sync.remote import SupabaseRemote

_KEYS = (
    "ITODO_APP_NAME",
    "ITODO_LOG_LEVEL",
    "ITODO_DATA_DIR",
    "ITODO_DB_PATH",
    "ITODO_REMOTE_URL",
    "ITODO_REMOTE_API_KEY",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "ITODO_REMOTE_TIMEOUT_SECONDS",
    "ITODO_REMOTE_CALL_TIMEOUT_SECONDS",
    "ITODO_MAX_RETRIES",
    "ITODO_DRAIN_ITEM_DELAY_SECONDS",
    "ITODO_RETRY_BACKOFF_SECONDS",
    "ITODO_START_ONLINE",
    "ITODO_NETWORK_PROBE_INTERVAL_SECONDS",
    "ITODO_USER_ID",
    "ITODO_ACCESS_TOKEN",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults_run_offline_only(clean_env: pytest.MonkeyPatch) -> None:
    s = Settings.from_env()

    assert s.app_name == "itodo-sync"
    assert s.db_path == Path(".local/itodo") / "itodo.sqlite3"
    assert s.remote_url is None
    assert not s.remote_configured
    assert s.max_retries == 3
    assert s.retry_backoff_seconds == 5.0
    assert s.start_online is True
    assert s.user_id is None


def test_env_overrides(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("ITODO_DATA_DIR", str(tmp_path))
    clean_env.setenv("SUPABASE_URL", "https://x.supabase.co")
    clean_env.setenv("SUPABASE_ANON_KEY", "anon")
    clean_env.setenv("ITODO_MAX_RETRIES", "5")
    clean_env.setenv("ITODO_DRAIN_ITEM_DELAY_SECONDS", "0.25")
    clean_env.setenv("ITODO_START_ONLINE", "no")
    clean_env.setenv("ITODO_USER_ID", "  user-1 ")

    s = Settings.from_env()

    assert s.db_path == tmp_path / "itodo.sqlite3"
    assert s.remote_configured
    assert s.remote_url == "https://x.supabase.co"
    assert s.remote_api_key == "anon"
    assert s.max_retries == 5
    assert s.drain_item_delay_seconds == 0.25
    assert s.start_online is False
    assert s.user_id == "user-1"


def test_invalid_numbers_fall_back_and_are_clamped(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ITODO_MAX_RETRIES", "many")
    clean_env.setenv("ITODO_RETRY_BACKOFF_SECONDS", "-3")
    clean_env.setenv("ITODO_REMOTE_TIMEOUT_SECONDS", "60")
    clean_env.setenv("ITODO_REMOTE_CALL_TIMEOUT_SECONDS", "10")

    s = Settings.from_env()

    assert s.max_retries == 3
    assert s.retry_backoff_seconds == 0.0
    # The engine deadline never undercuts the transport timeout.
    assert s.remote_call_timeout_seconds == 60.0


def test_bootstrap_without_remote_is_offline_only(settings: SimpleNamespace) -> None:
    state = create_initial_state(settings=settings)

    assert isinstance(state.remote, OfflineRemote)
    assert state.remote_enabled is False
    assert state.network.is_online is False
    assert state.session.current_user_id() is None
    assert settings.db_path.exists()


def test_bootstrap_with_remote_and_preset_user(settings: SimpleNamespace) -> None:
    settings.remote_configured = True
    settings.user_id = "user-1"
    settings.access_token = "jwt"

    state = create_initial_state(settings=settings)

    assert isinstance(state.remote, SupabaseRemote)
    assert state.remote_enabled is True
    assert state.network.is_online is True
    assert state.session.current_user_id() == "user-1"
    assert state.session.access_token() == "jwt"
    assert state.engine.session is state.session


def test_console_filter_keeps_sync_chatter_quiet() -> None:
    f = _ConsoleNoiseFilter()

    def rec(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "msg", None, None)

    assert f.filter(rec("itodo_sync.sync.coordinator", logging.INFO))
    assert not f.filter(rec("itodo_sync.sync.executor", logging.INFO))
    assert f.filter(rec("itodo_sync.sync.executor", logging.WARNING))
    assert not f.filter(rec("httpx", logging.INFO))
    assert f.filter(rec("httpx", logging.ERROR))


def test_setup_logging_writes_log_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = list(root.handlers)
    saved_level = root.level
    try:
        log_file = setup_logging(log_dir=tmp_path / "logs", console_level=logging.WARNING)
        logging.getLogger("itodo_sync.test").debug("hello file")
        for h in root.handlers:
            h.flush()

        assert log_file == tmp_path / "logs" / LOG_FILE_NAME
        assert "hello file" in log_file.read_text(encoding="utf-8")
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved:
            root.addHandler(h)
        root.setLevel(saved_level)
        logging.captureWarnings(False)
