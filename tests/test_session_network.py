from __future__ import annotations

import asyncio

import pytest

from itodo_sync.core.network import NetworkMonitor, run_network_probe
from itodo_sync.core.session import SessionState


def test_sign_in_and_out_notify_subscribers() -> None:
    session = SessionState()
    seen: list[str | None] = []
    session.subscribe(seen.append)

    session.sign_in("u1", "token-1")
    session.sign_in("u1", "token-2")  # refresh, same user
    session.sign_in("u2")
    session.sign_out()
    session.sign_out()

    assert seen == ["u1", "u2", None]
    assert session.current_user_id() is None
    assert not session.is_authenticated


def test_token_refresh_updates_token() -> None:
    session = SessionState()
    session.sign_in("u1", "old")
    session.sign_in("u1", "new")
    assert session.access_token() == "new"


def test_sign_in_requires_user_id() -> None:
    with pytest.raises(ValueError):
        SessionState().sign_in("  ")


def test_failing_subscriber_does_not_block_others() -> None:
    session = SessionState()
    seen: list[str | None] = []

    def broken(user_id: str | None) -> None:
        raise RuntimeError("subscriber bug")

    session.subscribe(broken)
    unsubscribe = session.subscribe(seen.append)

    session.sign_in("u1")
    unsubscribe()
    session.sign_out()

    assert seen == ["u1"]


def test_restore_callbacks_fire_only_on_offline_to_online() -> None:
    monitor = NetworkMonitor(online=True)
    fired: list[int] = []
    unsubscribe = monitor.on_restore(lambda: fired.append(1))

    monitor.set_online(True)
    assert fired == []

    monitor.set_online(False)
    monitor.set_online(True)
    assert fired == [1]

    unsubscribe()
    monitor.set_online(False)
    monitor.set_online(True)
    assert fired == [1]


@pytest.mark.asyncio
async def test_network_probe_flips_monitor_until_stopped() -> None:
    monitor = NetworkMonitor(online=False)
    stop = asyncio.Event()
    answers = iter([True, False])
    restored: list[int] = []
    monitor.on_restore(lambda: restored.append(1))

    async def probe() -> bool:
        try:
            return next(answers)
        except StopIteration:
            stop.set()
            raise RuntimeError("probe exhausted")

    await asyncio.wait_for(
        run_network_probe(monitor, probe, interval_seconds=0.01, stop_event=stop),
        timeout=5,
    )

    assert restored == [1]
    # The failing probe counted as offline.
    assert monitor.is_online is False
