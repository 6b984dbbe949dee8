# src/itodo_sync/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one event loop:
- the sync engine (session/network triggers, background drains),
- a network probe loop when a remote backend is configured,
- the console REPL until /exit, EOF or a signal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..core.network import run_network_probe
from ..core.state import AppState
from ..logging_setup import setup_logging
from .console import run_console_loop

logger = logging.getLogger(__name__)


async def _shutdown(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.engine.close()
    except Exception:
        logger.exception("Engine shutdown failed.")

    try:
        aclose = getattr(state.remote, "aclose", None)
        if aclose is not None:
            await aclose()
    except Exception:
        logger.debug("Remote client close failed.", exc_info=True)


async def _run(state: AppState) -> None:
    settings = state.settings
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms (Windows) do not support loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    state.engine.initialize(state.session)

    probe_task: asyncio.Task[None] | None = None
    if state.remote_enabled:
        probe_task = asyncio.create_task(
            run_network_probe(
                state.network,
                state.remote.ping,
                interval_seconds=settings.network_probe_interval_seconds,
                stop_event=stop_event,
            ),
            name="network-probe",
        )

    console_task = asyncio.create_task(run_console_loop(state), name="console")
    stop_task = asyncio.create_task(stop_event.wait(), name="stop-signal")

    try:
        done, _ = await asyncio.wait({console_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop_task in done:
            logger.info("Signal received, shutting down...")
    finally:
        stop_event.set()
        for t in (console_task, stop_task, probe_task):
            if t is not None and not t.done():
                t.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(
                *(t for t in (stop_task, probe_task) if t is not None),
                return_exceptions=True,
            )
        await _shutdown(state)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/itodo")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "itodo-sync"))

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    try:
        asyncio.run(_run(state))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    logger.info("Bye.")


if __name__ == "__main__":
    main()
