# src/itodo_sync/core/session.py

from __future__ import annotations

import logging
from dataclasses import dataclass

from .ports import SessionCallback, Unsubscribe

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Session:
    user_id: str
    access_token: str | None = None


class SessionState:
    """
    In-process session holder.

    Token issuance happens elsewhere; whoever completes the auth flow calls
    sign_in()/sign_out() and subscribers are notified synchronously.
    """

    def __init__(self, session: Session | None = None) -> None:
        self._session = session
        self._subscribers: list[SessionCallback] = []

    def current_user_id(self) -> str | None:
        return self._session.user_id if self._session else None

    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def subscribe(self, callback: SessionCallback) -> Unsubscribe:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def sign_in(self, user_id: str, access_token: str | None = None) -> None:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        previous = self.current_user_id()
        self._session = Session(user_id=user_id, access_token=access_token)
        if previous == user_id:
            # Token refresh only.
            return
        logger.info("Session started user=%s", user_id)
        self._notify(user_id)

    def sign_out(self) -> None:
        if self._session is None:
            return
        logger.info("Session ended user=%s", self._session.user_id)
        self._session = None
        self._notify(None)

    def _notify(self, user_id: str | None) -> None:
        for cb in list(self._subscribers):
            try:
                cb(user_id)
            except Exception:
                logger.exception("Session subscriber failed")
