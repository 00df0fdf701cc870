from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from causelink.utils.async_helpers import cancel_and_wait, create_safe_task

from .context import LoopScheduler, Scheduler
from .interception import InterceptionLayer
from .lifecycle import RequestLifecycleTracker
from .mapping import MappingStore

logger = logging.getLogger(__name__)


class Housekeeper:
    """
    Periodic bounded eviction.

    Each sweep forgets lifecycle records still pending after `stale_after_s`
    and trims the mapping store to its retain count. When given the
    interception layer it also drops open-then-send handles that were opened
    that long ago and never sent. Terminal records and Actions are never
    touched.
    """

    def __init__(
        self,
        tracker: RequestLifecycleTracker,
        mapping: MappingStore,
        scheduler: Optional[Scheduler] = None,
        interval_s: float = 60.0,
        stale_after_s: float = 300.0,
        interception: Optional[InterceptionLayer] = None,
    ) -> None:
        self._tracker = tracker
        self._mapping = mapping
        self._interception = interception
        self._scheduler = scheduler or LoopScheduler()
        self._interval_s = interval_s
        self._stale_after_ms = int(stale_after_s * 1000)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        now = self._scheduler.now_ms() if now_ms is None else now_ms
        cutoff = now - self._stale_after_ms
        evicted = self._tracker.evict_stale(cutoff)
        trimmed = self._mapping.trim()
        abandoned = self._interception.evict_opened(cutoff) if self._interception is not None else 0
        if evicted or trimmed or abandoned:
            logger.info(
                f"[Housekeeping] Evicted {evicted} stale requests, trimmed {trimmed} mappings, "
                f"dropped {abandoned} unsent opens"
            )
        return {"evicted": evicted, "trimmed": trimmed, "abandoned": abandoned}

    def start(self) -> None:
        if self.running:
            return
        self._task = create_safe_task(self._run(), name="causelink-housekeeping")

    async def stop(self) -> None:
        await cancel_and_wait(self._task)
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"[Housekeeping] Sweep failed: {e}", exc_info=e)
