"""A hashed timer wheel driven by explicit clock advances."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

_NS = 1_000_000_000


def _to_ns(seconds: float) -> int:
    return round(seconds * _NS)


class TimerWheel:
    """Schedules items to expire after a timeout.

    Time is supplied by the caller: ``advance(now)`` moves the wheel forward and
    collects expired items, ``purge()`` hands them out one at a time in the order
    they expired. Timeouts are clamped to ``[min_timeout, max_timeout]`` and
    rounded up to whole ticks. ``None`` cannot be scheduled.
    """

    def __init__(self, min_timeout: float, max_timeout: float) -> None:
        tick = _to_ns(min_timeout)
        wheel = _to_ns(max_timeout)
        if tick <= 0:
            raise ValueError("min_timeout must be positive")
        if wheel < tick:
            raise ValueError("max_timeout must not be less than min_timeout")
        self._tick_ns = tick
        self._wheel_ns = wheel
        self.wheel_len = wheel // tick + 1
        self._wheel: list[deque] = [deque() for _ in range(self.wheel_len)]
        self._expired: deque = deque()
        self._current = 0
        self._last_tick: int | None = None
        self._lock = threading.Lock()

    @property
    def tick_duration(self) -> float:
        return self._tick_ns / _NS

    @property
    def wheel_duration(self) -> float:
        return self._wheel_ns / _NS

    def _slot_for(self, timeout_ns: int) -> int:
        timeout_ns = min(max(timeout_ns, self._tick_ns), self._wheel_ns)
        # Round up to the next tick, plus one since the current tick may be nearly over
        ticks = (timeout_ns - 1) // self._tick_ns + 1
        return (ticks + self._current + 1) % self.wheel_len

    def add(self, item: Any, timeout: float) -> None:
        """Schedule ``item`` to expire ``timeout`` seconds from the last advance."""
        if item is None:
            raise ValueError("cannot schedule None")
        with self._lock:
            self._wheel[self._slot_for(_to_ns(timeout))].append(item)

    def advance(self, now: float) -> None:
        """Move the wheel to ``now`` (seconds), collecting expired items."""
        now_ns = _to_ns(now)
        with self._lock:
            if self._last_tick is None:
                self._last_tick = now_ns
            diff = now_ns - self._last_tick
            advanced = abs(diff) // self._tick_ns
            if diff < 0:
                advanced = -advanced
            for _ in range(min(advanced, self.wheel_len)):
                self._current = (self._current + 1) % self.wheel_len
                slot = self._wheel[self._current]
                if slot:
                    self._expired.extend(slot)
                    slot.clear()
            self._last_tick += self._tick_ns * advanced

    def purge(self) -> Any:
        """Return the next expired item, or ``None`` if there is none."""
        with self._lock:
            return self._expired.popleft() if self._expired else None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slot) for slot in self._wheel) + len(self._expired)