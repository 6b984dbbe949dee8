# src/itodo_sync/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..sync.engine import SyncEngine
from .network import NetworkMonitor
from .session import SessionState


@dataclass
class AppState:
    """Everything the CLI needs at runtime, built once by cli.bootstrap."""

    # Store Settings on the state for easy access in command handlers.
    settings: Any

    engine: SyncEngine
    session: SessionState
    network: NetworkMonitor
    remote: Any

    # True when a real remote backend is configured (not OfflineRemote).
    remote_enabled: bool = False
