# src/itodo_sync/core/clock.py

"""
Time normalization.

Every timestamp the engine compares (local rows, remote rows, watermarks) is first
normalized to UTC epoch milliseconds. Accepted inputs:
- datetime (naive values are treated as UTC),
- ISO-8601 strings (a trailing "Z" is accepted),
- int/float epoch milliseconds.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidTimestampError

Timestamp = datetime | str | int | float


def _datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def to_millis(value: Any) -> int:
    """Normalize a timestamp to UTC epoch milliseconds, raising on invalid input."""
    # bool is an int subclass; a flag is never a timestamp.
    if isinstance(value, bool):
        raise InvalidTimestampError(f"Invalid timestamp format: {value!r}")

    if isinstance(value, datetime):
        return _datetime_to_ms(value)

    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise InvalidTimestampError("Invalid timestamp format: empty string")
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as e:
            raise InvalidTimestampError(f"Invalid timestamp format: {value!r}") from e
        return _datetime_to_ms(parsed)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidTimestampError(f"Invalid timestamp format: {value!r}")
        return int(value)

    raise InvalidTimestampError(f"Invalid timestamp format: {value!r}")


def to_iso(value: Any) -> str:
    """Format a timestamp as an ISO-8601 UTC string with millisecond precision."""
    ms = to_millis(value)
    try:
        dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidTimestampError(f"Timestamp out of range: {value!r}") from e
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compare_timestamps(a: Any, b: Any) -> int:
    """> 0 when a is newer, < 0 when b is newer, 0 when equal."""
    return to_millis(a) - to_millis(b)


def is_valid_timestamp(value: Any) -> bool:
    try:
        return to_millis(value) > 0
    except InvalidTimestampError:
        return False


class Clock:
    """
    Source of "now" for the engine.

    Injectable so tests can drive time deterministically: pass any zero-arg
    callable returning epoch milliseconds.
    """

    def __init__(self, now_fn: Callable[[], int] | None = None) -> None:
        self._now_fn = now_fn or (lambda: int(time.time() * 1000))

    def now_ms(self) -> int:
        return int(self._now_fn())

    def now_iso(self) -> str:
        return to_iso(self.now_ms())

    def with_timestamps(self, data: Mapping[str, Any]) -> dict[str, Any]:
        now = self.now_ms()
        return {**data, "created_at": now, "updated_at": now}

    def with_updated_timestamp(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return {**data, "updated_at": self.now_ms()}


class ManualClock(Clock):
    """Clock that only moves when told to (tests, replay tooling)."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._current = int(start_ms)
        super().__init__(lambda: self._current)

    def set(self, ms: int) -> None:
        self._current = int(ms)

    def advance(self, ms: int = 1) -> int:
        self._current += int(ms)
        return self._current
