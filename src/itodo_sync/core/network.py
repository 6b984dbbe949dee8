# src/itodo_sync/core/network.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .ports import Unsubscribe

logger = logging.getLogger(__name__)


class NetworkMonitor:
    """
    Online/offline flag with "restored" callbacks.

    Callbacks fire only on an offline -> online transition. A failing callback is
    logged and does not prevent the others from running.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def on_restore(self, callback: Callable[[], None]) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        if not online:
            logger.info("Network disconnected")
            return

        logger.info("Network restored, notifying %d listeners", len(self._callbacks))
        for cb in list(self._callbacks):
            try:
                cb()
            except Exception:
                logger.exception("Network restore callback failed")


async def run_network_probe(
    monitor: NetworkMonitor,
    probe: Callable[[], Awaitable[bool]],
    *,
    interval_seconds: float = 30.0,
    stop_event: asyncio.Event | None = None,
) -> None:
    """
    Periodically probe connectivity and flip the monitor.

    A probe that raises counts as offline.
    """
    interval = max(0.1, float(interval_seconds))
    logger.info("Network probe started (interval=%ss).", interval)

    while True:
        if stop_event is not None and stop_event.is_set():
            logger.info("Network probe stopping (stop_event set).")
            return

        try:
            online = bool(await probe())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Network probe failed: %s", e)
            online = False

        monitor.set_online(online)

        try:
            if stop_event is None:
                await asyncio.sleep(interval)
            else:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
