from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Set

from causelink.contracts.enums import PartCategory
from causelink.contracts.models import Action, ExtraPage, LinkageStats, Request, ResourcePart, ScanRun
from causelink.utils.observer import Signal

logger = logging.getLogger(__name__)

# The primary document part; the only part that accumulates actions.
DOCUMENT_PART_ID = "part_document_main"

UNLINKED_SAMPLE_SIZE = 5


class ResultAggregator:
    """
    Single authoritative ledger of actions, resource parts and requests.

    Records are never deleted during a scan. Writes are serialized with a
    lock so a host that observes the network on another thread cannot
    interleave half-applied updates.

    Signals:
        action_added(part_id, action)
        request_added(request)
        request_resolved(request)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._parts: Dict[str, ResourcePart] = {}
        self._requests: List[Request] = []
        self._extra_pages: List[ExtraPage] = []
        self._action_ids: Set[str] = set()

        self.action_added = Signal("action_added")
        self.request_added = Signal("request_added")
        self.request_resolved = Signal("request_resolved")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_action(
        self,
        part_id: str,
        action: Action,
        category: PartCategory = PartCategory.DOCUMENT,
    ) -> bool:
        with self._lock:
            if action.action_id in self._action_ids:
                logger.warning(f"[Aggregator] Ignoring reused action id {action.action_id}")
                return False
            part = self._parts.get(part_id)
            if part is None:
                part = ResourcePart(id=part_id, category=category)
                self._parts[part_id] = part
            part.actions.append(action)
            self._action_ids.add(action.action_id)
        self.action_added.emit(part_id, action)
        return True

    def register_resource_part(self, part_id: str, category: PartCategory) -> bool:
        """Create an empty part. A second registration of the same id is a no-op."""
        with self._lock:
            if part_id in self._parts:
                return False
            self._parts[part_id] = ResourcePart(id=part_id, category=category)
            return True

    def add_request(self, request: Request) -> None:
        with self._lock:
            self._requests.append(request)
        self.request_added.emit(request)

    def resolve_request(self, request: Request, status: int) -> bool:
        """Apply a terminal status once. Later attempts are refused."""
        with self._lock:
            applied = request.resolve(status)
        if applied:
            self.request_resolved.emit(request)
        else:
            logger.debug(
                f"[Aggregator] Refused second resolution of {request.url} "
                f"(status={request.status}, attempted={status})"
            )
        return applied

    def add_extra_page(self, page: ExtraPage) -> None:
        with self._lock:
            self._extra_pages.append(page)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_unresolved(self, url: str) -> Optional[Request]:
        """First request for `url` still waiting on a status."""
        with self._lock:
            for request in self._requests:
                if request.url == url and not request.is_resolved:
                    return request
        return None

    def get_part(self, part_id: str) -> Optional[ResourcePart]:
        with self._lock:
            return self._parts.get(part_id)

    def action_ids(self) -> List[str]:
        with self._lock:
            return list(self._action_ids)

    def is_linked(self, request: Request) -> bool:
        with self._lock:
            return request.action_id in self._action_ids

    def requests(self) -> List[Request]:
        with self._lock:
            return list(self._requests)

    def unlinked_requests(self) -> List[Request]:
        with self._lock:
            return [r for r in self._requests if r.action_id not in self._action_ids]

    def blocked_attempts(self) -> List[Request]:
        """Linked requests that policy rejected: exfiltration attempts that failed."""
        with self._lock:
            return [r for r in self._requests if r.is_blocked and r.action_id in self._action_ids]

    def linkage_stats(self) -> LinkageStats:
        with self._lock:
            total = len(self._requests)
            linked = sum(1 for r in self._requests if r.action_id in self._action_ids)
            unlinked = [r for r in self._requests if r.action_id not in self._action_ids]
            rate = (linked / total * 100.0) if total else 0.0
            return LinkageStats(
                linked=linked,
                unlinked=total - linked,
                total_actions=len(self._action_ids),
                linkage_rate=rate,
                unlinked_sample=[r.model_copy() for r in unlinked[:UNLINKED_SAMPLE_SIZE]],
            )

    def get_results(self) -> ScanRun:
        """Deep snapshot of the ledger in the canonical shape."""
        with self._lock:
            run = ScanRun(
                parts=list(self._parts.values()),
                requests=list(self._requests),
                extra_pages=list(self._extra_pages),
            )
            return run.model_copy(deep=True)
