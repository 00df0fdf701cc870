"""
causelink/engine/context.py
The causal context stack: which cause is active right now.

A cause is pushed the instant sensitive data is touched (or a wrapped
handler starts) and removed by a guarded pop a short grace delay after the
trigger returns, so asynchronous work the trigger started synchronously can
still observe it.

Known limitation, kept on purpose: two independent causes fired within the
grace delay of each other, with no pop in between, can be cross-attributed.
Exact attribution would need scheduling guarantees the instrumented context
does not provide. A cause whose timer fires while a newer cause sits on top
is marked expired and dropped as soon as it surfaces, so it never becomes
current again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    """Clock plus delayed-callback facility of the event sequence."""

    def now_ms(self) -> int: ...

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> Any: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop and the wall clock."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_s, callback)


@dataclass(frozen=True)
class CausalContext:
    id: str
    created_at_ms: int


class CausalContextStack:
    """
    Nested, identity-guarded stack of active causes.
    One instance per scan; passed explicitly to the interception layer.
    """

    def __init__(self, scheduler: Scheduler, grace_delay_s: float = 0.1) -> None:
        self._scheduler = scheduler
        self._grace_delay_s = grace_delay_s
        self._stack: List[CausalContext] = []
        self._expired: Set[str] = set()

    @property
    def grace_delay_s(self) -> float:
        return self._grace_delay_s

    def push(self, cause_id: str) -> CausalContext:
        entry = CausalContext(id=cause_id, created_at_ms=self._scheduler.now_ms())
        self._stack.append(entry)
        return entry

    def current(self) -> Optional[str]:
        return self._stack[-1].id if self._stack else None

    def pop_if_top(self, cause_id: str) -> bool:
        """
        Remove the top entry only if it is `cause_id`.

        A miss leaves the stack untouched but marks `cause_id` expired when
        it is buried below the top. Expired entries are discarded as soon as
        a successful pop exposes them.
        """
        if self._stack and self._stack[-1].id == cause_id:
            self._stack.pop()
            self._drop_expired()
            return True
        if any(entry.id == cause_id for entry in self._stack):
            self._expired.add(cause_id)
        logger.debug(f"[Context] Guarded pop skipped for {cause_id}; current={self.current()}")
        return False

    def schedule_pop(self, cause_id: str) -> None:
        """Guarded pop of `cause_id` after the grace delay."""
        self._scheduler.call_later(self._grace_delay_s, lambda: self.pop_if_top(cause_id))

    def _drop_expired(self) -> None:
        while self._stack and self._stack[-1].id in self._expired:
            entry = self._stack.pop()
            self._expired.discard(entry.id)
            logger.debug(f"[Context] Dropped expired cause {entry.id}")

    def depth(self) -> int:
        return len(self._stack)

    def entries(self) -> List[CausalContext]:
        return list(self._stack)
