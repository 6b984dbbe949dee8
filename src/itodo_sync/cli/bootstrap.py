# src/itodo_sync/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (remote/session/network/engine).
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.network import NetworkMonitor
from ..core.session import Session, SessionState
from ..core.state import AppState
from ..sync.engine import SyncEngine
from ..sync.offline import OfflineRemote
from ..sync.remote import SupabaseRemote

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    If settings is None, falls back to get_settings(). Without a remote URL the
    engine runs offline-only: local writes work, the queue simply keeps growing.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    initial = Session(user_id=settings.user_id, access_token=settings.access_token) if settings.user_id else None
    session = SessionState(initial)

    remote: SupabaseRemote | OfflineRemote
    if settings.remote_configured:
        remote = SupabaseRemote(
            settings.remote_url,
            settings.remote_api_key or "",
            session,
            timeout_seconds=settings.remote_timeout_seconds,
        )
        remote_enabled = True
    else:
        logger.info("No remote backend configured; running offline-only.")
        remote = OfflineRemote()
        remote_enabled = False

    network = NetworkMonitor(online=bool(settings.start_online and remote_enabled))

    engine = SyncEngine.from_settings(settings, remote, session=session, network=network)

    return AppState(
        settings=settings,
        engine=engine,
        session=session,
        network=network,
        remote=remote,
        remote_enabled=remote_enabled,
    )
