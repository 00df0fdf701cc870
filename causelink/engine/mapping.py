from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvictionPolicy:
    """
    Single eviction policy for the mapping store.

    An insert that pushes the store above `capacity` trims it to the
    `retain` most recently reported targets. The periodic sweep trims to
    `retain` as well.
    """
    capacity: int = 1000
    retain: int = 500

    def __post_init__(self) -> None:
        if self.capacity <= 0 or self.retain <= 0:
            raise ValueError("capacity and retain must be positive")
        if self.retain > self.capacity:
            raise ValueError("retain must not exceed capacity")


class MappingStore:
    """
    Short-lived target -> cause association.

    Written from the instrumented side right before an outbound call is
    dispatched, read from the host side when the network operation is
    observed. Recency is report order: re-reporting a target refreshes it,
    lookups never do. Lookups do not consume entries because a later failure
    event for the same target may need the mapping too. A call to a target
    made with no active cause forgets that target, so an old cause never
    outlives the requests it actually issued.
    """

    def __init__(self, policy: Optional[EvictionPolicy] = None) -> None:
        self._policy = policy or EvictionPolicy()
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, str]" = OrderedDict()

    @property
    def policy(self) -> EvictionPolicy:
        return self._policy

    def report(self, target: str, cause_id: str) -> None:
        with self._lock:
            self._entries[target] = cause_id
            self._entries.move_to_end(target)
            if len(self._entries) > self._policy.capacity:
                dropped = self._retain_newest(self._policy.retain)
                logger.debug(f"[Mapping] Burst eviction dropped {dropped} entries")

    def lookup(self, target: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(target)

    def forget(self, target: str) -> bool:
        with self._lock:
            return self._entries.pop(target, None) is not None

    def trim(self) -> int:
        """Trim to the retain count. Returns how many entries were dropped."""
        with self._lock:
            return self._retain_newest(self._policy.retain)

    def snapshot(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._entries.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, target: object) -> bool:
        with self._lock:
            return target in self._entries

    def _retain_newest(self, count: int) -> int:
        dropped = 0
        while len(self._entries) > count:
            self._entries.popitem(last=False)
            dropped += 1
        return dropped
