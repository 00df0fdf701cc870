"""Pytest configuration for causelink."""
import heapq
import itertools

import pytest

from causelink.base.config import set_config

# A fixed epoch-ms so ids and staleness cutoffs are predictable.
START_MS = 1_700_000_000_000


class ManualScheduler:
    """Scheduler whose clock only moves when a test advances it."""

    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms
        self._timers = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self.now

    def call_later(self, delay_s, callback):
        due = self.now + int(round(delay_s * 1000))
        entry = (due, next(self._seq), callback)
        heapq.heappush(self._timers, entry)
        return entry

    def advance(self, ms: int) -> None:
        target = self.now + ms
        while self._timers and self._timers[0][0] <= target:
            due, _, callback = heapq.heappop(self._timers)
            self.now = due
            callback()
        self.now = target

    def pending(self) -> int:
        return len(self._timers)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture(autouse=True)
def reset_config():
    set_config(None)
    yield
    set_config(None)
