"""A per-worker cache of flows already known to the conntrack table."""

from __future__ import annotations

import logging
import time

from overlaynet.packet import Packet

log = logging.getLogger(__name__)


class ConntrackCacheTicker:
    """Hands out a set of flows that is emptied once per ``interval`` seconds."""

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._start = time.monotonic()
        self._version = 0
        self._cache: set[Packet] = set()

    def _tick(self) -> int:
        return int((time.monotonic() - self._start) / self.interval)

    def get(self) -> set[Packet]:
        """The current cache, replaced by an empty one if the interval has rolled over."""
        tick = self._tick()
        if tick != self._version:
            self._version = tick
            if self._cache:
                log.debug("resetting conntrack cache (len=%d)", len(self._cache))
                self._cache = set()
        return self._cache


def new_conntrack_cache_ticker(interval: float) -> ConntrackCacheTicker | None:
    """A ticker for ``interval`` seconds, or ``None`` when caching is disabled (0)."""
    if interval == 0:
        return None
    return ConntrackCacheTicker(interval)