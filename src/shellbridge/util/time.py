from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

# Monotonic seconds; injectable so expiry logic can be driven by tests.
Clock = Callable[[], float]


def monotonic() -> float:
    return time.monotonic()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now
