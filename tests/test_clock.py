from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from itodo_sync.core.clock import (
    Clock,
    ManualClock,
    compare_timestamps,
    is_valid_timestamp,
    to_iso,
    to_millis,
)
from itodo_sync.core.errors import InvalidTimestampError

MS = 1_700_000_000_123
ISO = "2023-11-14T22:13:20.123Z"


def test_to_millis_accepts_all_supported_shapes() -> None:
    assert to_millis(MS) == MS
    assert to_millis(float(MS)) == MS
    assert to_millis(ISO) == MS
    assert to_millis("2023-11-14T22:13:20.123+00:00") == MS
    assert to_millis(datetime(2023, 11, 14, 22, 13, 20, 123000, tzinfo=timezone.utc)) == MS


def test_to_millis_treats_naive_datetime_as_utc() -> None:
    assert to_millis(datetime(2023, 11, 14, 22, 13, 20, 123000)) == MS


def test_to_millis_respects_offsets() -> None:
    plus_two = timezone(timedelta(hours=2))
    assert to_millis("2023-11-15T00:13:20.123+02:00") == MS
    assert to_millis(datetime(2023, 11, 15, 0, 13, 20, 123000, tzinfo=plus_two)) == MS


@pytest.mark.parametrize("bad", ["", "   ", "not a date", None, True, float("nan"), object()])
def test_to_millis_rejects_invalid_input(bad: object) -> None:
    with pytest.raises(InvalidTimestampError):
        to_millis(bad)


def test_invalid_timestamp_error_is_a_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid timestamp format"):
        to_millis("yesterday")


def test_to_iso_uses_utc_and_millisecond_precision() -> None:
    assert to_iso(MS) == ISO
    assert to_millis(to_iso(MS)) == MS


def test_compare_timestamps_across_formats() -> None:
    assert compare_timestamps(ISO, MS) == 0
    assert compare_timestamps(MS + 1, ISO) > 0
    assert compare_timestamps(ISO, MS + 1) < 0


def test_is_valid_timestamp() -> None:
    assert is_valid_timestamp(MS)
    assert is_valid_timestamp(ISO)
    assert not is_valid_timestamp(0)
    assert not is_valid_timestamp("garbage")


def test_clock_stamps_both_fields_with_the_same_instant() -> None:
    clock = Clock(lambda: 42)
    stamped = clock.with_timestamps({"id": "a", "created_at": 1, "updated_at": 1})
    assert stamped == {"id": "a", "created_at": 42, "updated_at": 42}

    touched = clock.with_updated_timestamp({"id": "a", "created_at": 1})
    assert touched == {"id": "a", "created_at": 1, "updated_at": 42}


def test_manual_clock_moves_only_when_told() -> None:
    clock = ManualClock(start_ms=1000)
    assert clock.now_ms() == 1000
    assert clock.now_ms() == 1000
    assert clock.advance(5) == 1005
    clock.set(2000)
    assert clock.now_ms() == 2000
    assert clock.now_iso() == "1970-01-01T00:00:02.000Z"
