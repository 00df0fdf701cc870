"""
causelink/utils/observer.py
Named signals the ledger uses to announce writes.
"""

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Signal:
    """
    Callbacks invoked synchronously, in subscription order, on emit().
    A failing subscriber is logged and skipped; the emitting write has
    already been applied.
    """

    def __init__(self, name: str = "signal"):
        self.name = name
        self._subscribers: List[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]):
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def disconnect(self, callback: Callable[..., Any]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, *args, **kwargs):
        for callback in list(self._subscribers):
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"[Signal:{self.name}] Subscriber {callback!r} failed: {e}", exc_info=e)

    def __len__(self) -> int:
        return len(self._subscribers)
