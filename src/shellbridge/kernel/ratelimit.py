"""Per-project session creation limiter.

A sliding window counts creations per project. Up to `max_per_window`
creations succeed inside the window; the next attempt trips the breaker and
is rejected, and every attempt while the breaker is open is rejected until
the cooldown elapses.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from ..util.time import Clock, monotonic
from .errors import CircuitBreakerOpen, CreationRateExceeded

logger = logging.getLogger("shellbridge.ratelimit")


@dataclass
class BreakerState:
    open_until: float = 0.0
    trips: int = 0


class CreationLimiter:
    def __init__(
        self,
        *,
        max_per_window: int = 10,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._max = max(0, int(max_per_window))
        self._window = float(window_seconds)
        self._cooldown = float(cooldown_seconds)
        self._clock = clock or monotonic
        self._windows: Dict[str, Deque[float]] = {}
        self._breakers: Dict[str, BreakerState] = {}

    def _prune(self, project_id: str, now: float) -> Deque[float]:
        q = self._windows.setdefault(project_id, deque())
        cutoff = now - self._window
        while q and q[0] <= cutoff:
            q.popleft()
        return q

    def breaker_open(self, project_id: str) -> bool:
        st = self._breakers.get(project_id)
        return st is not None and self._clock() < st.open_until

    def retry_after(self, project_id: str) -> float:
        st = self._breakers.get(project_id)
        if st is None:
            return 0.0
        return max(0.0, st.open_until - self._clock())

    def check(self, project_id: str) -> None:
        """Raise when a creation for `project_id` must be rejected right now."""
        now = self._clock()
        st = self._breakers.get(project_id)
        if st is not None and now < st.open_until:
            raise CircuitBreakerOpen(project_id, st.open_until - now)
        q = self._prune(project_id, now)
        if len(q) >= self._max:
            st = self._breakers.setdefault(project_id, BreakerState())
            st.open_until = now + self._cooldown
            st.trips += 1
            logger.warning(
                f"[ratelimit] breaker tripped for project {project_id} ({len(q)} creations in {int(self._window)}s)",
                extra={"project_id": project_id, "op": "breaker_trip"},
            )
            raise CreationRateExceeded(project_id, self._max, self._window)

    def record(self, project_id: str) -> None:
        now = self._clock()
        self._prune(project_id, now).append(now)

    def acquire(self, project_id: str) -> None:
        self.check(project_id)
        self.record(project_id)

    def sweep(self) -> None:
        """Drop empty windows and breakers whose cooldown has elapsed."""
        now = self._clock()
        for pid in list(self._windows):
            if not self._prune(pid, now):
                self._windows.pop(pid, None)
        for pid, st in list(self._breakers.items()):
            if now >= st.open_until:
                self._breakers.pop(pid, None)
                logger.info(f"[ratelimit] breaker closed for project {pid}", extra={"project_id": pid})

    def recent(self, project_id: str) -> int:
        return len(self._prune(project_id, self._clock()))
