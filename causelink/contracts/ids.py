from __future__ import annotations

import secrets
import string
import time
from typing import Optional

ACTION_PREFIX = "action"
UNLINKED_PREFIX = "http"
FAILED_PREFIX = "failed"

# Request ids carrying one of these prefixes were generated because no cause
# was found. They never match an Action id.
SYNTHETIC_PREFIXES = frozenset({UNLINKED_PREFIX, FAILED_PREFIX})

_ALPHABET = string.ascii_lowercase + string.digits


def _now_ms() -> int:
    return int(time.time() * 1000)


def _suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _make(prefix: str, now_ms: Optional[int]) -> str:
    ts = _now_ms() if now_ms is None else int(now_ms)
    return f"{prefix}_{ts}_{_suffix()}"


def new_action_id(now_ms: Optional[int] = None) -> str:
    """Fresh cause id: ``action_<epoch-ms>_<random>``."""
    return _make(ACTION_PREFIX, now_ms)


def new_synthetic_id(prefix: str = UNLINKED_PREFIX, now_ms: Optional[int] = None) -> str:
    if prefix not in SYNTHETIC_PREFIXES:
        raise ValueError(f"Unknown synthetic id prefix: {prefix!r}")
    return _make(prefix, now_ms)


def id_prefix(value: str) -> str:
    return value.split("_", 1)[0]


def is_synthetic(value: str) -> bool:
    return id_prefix(value) in SYNTHETIC_PREFIXES


def embedded_timestamp_ms(value: str) -> Optional[int]:
    """
    Creation time encoded in an id, or None when the id carries none.
    Both cause ids and synthetic ids embed it as the second ``_`` segment.
    """
    parts = value.split("_")
    if len(parts) < 2:
        return None
    try:
        ts = int(parts[1])
    except ValueError:
        return None
    return ts or None
