"""
causelink/engine/lifecycle.py
Request lifecycle tracking on the host side of the bridge.

Per observed network operation:

    Created(status=-1) --> Resolved(status=<code>)
                       +-> Failed(status=-999)

A cause supplied by the environment (the one its call handle was dispatched
under) wins over the URL mapping.

Records are matched by the transport's own identifier, which is opaque and
only meaningful within one host session. When a resolution arrives for an
identifier with no pending record, the first unresolved ledger entry with
the same URL is used instead. That fallback is exact for a single in-flight
request per URL and ambiguous when the same URL is outstanding several times.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Hashable, Optional

from causelink.contracts.enums import PartCategory, RequestStatus, category_for
from causelink.contracts.ids import (
    FAILED_PREFIX,
    UNLINKED_PREFIX,
    embedded_timestamp_ms,
    new_synthetic_id,
)
from causelink.contracts.models import Request

from .aggregator import ResultAggregator
from .context import LoopScheduler, Scheduler
from .mapping import MappingStore

logger = logging.getLogger(__name__)


class RequestLifecycleTracker:
    """
    Host-level network observer. Environments call the three entry points
    as transport events arrive; the tracker turns them into ledger records.
    """

    def __init__(
        self,
        aggregator: ResultAggregator,
        mapping: MappingStore,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._aggregator = aggregator
        self._mapping = mapping
        self._scheduler = scheduler or LoopScheduler()
        self._lock = threading.RLock()
        self._pending: Dict[Hashable, Request] = {}
        self._part_counters: Dict[PartCategory, int] = {}

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def request_started(
        self,
        transport_id: Hashable,
        url: str,
        resource_type: str,
        method: str,
        cause_id: Optional[str] = None,
    ) -> Request:
        cause_id = cause_id or self._mapping.lookup(url)
        action_id = cause_id or new_synthetic_id(UNLINKED_PREFIX, self._scheduler.now_ms())

        self._register_part(resource_type)

        request = Request(
            action_id=action_id,
            url=url,
            request_source=resource_type,
            method=method.upper(),
        )
        with self._lock:
            self._pending[transport_id] = request
        self._aggregator.add_request(request)

        if cause_id:
            logger.info(f"[Lifecycle] {method} {url} linked to {cause_id}")
        else:
            logger.debug(f"[Lifecycle] {method} {url} has no cause ({action_id})")
        return request

    def response_received(self, transport_id: Hashable, url: str, status: int) -> Optional[Request]:
        with self._lock:
            request = self._pending.pop(transport_id, None)
        if request is None:
            # Identifier churn: fall back to the first unresolved record for the URL.
            request = self._aggregator.find_unresolved(url)
            if request is None:
                logger.debug(f"[Lifecycle] Response {status} for untracked {url}")
                return None
        self._aggregator.resolve_request(request, status)
        return request

    def request_failed(
        self,
        transport_id: Hashable,
        url: str,
        resource_type: str,
        method: str,
        reason: Optional[str] = None,
        cause_id: Optional[str] = None,
    ) -> Request:
        blocked = RequestStatus.BLOCKED.value
        with self._lock:
            request = self._pending.pop(transport_id, None)

        if request is not None:
            self._aggregator.resolve_request(request, blocked)
        else:
            # No "started" event was seen for this operation; record the failure on its own.
            cause_id = cause_id or self._mapping.lookup(url)
            request = Request(
                action_id=cause_id or new_synthetic_id(FAILED_PREFIX, self._scheduler.now_ms()),
                url=url,
                request_source=resource_type,
                method=method.upper(),
                status=blocked,
            )
            self._aggregator.add_request(request)

        logger.debug(
            f"[Lifecycle] {method} {url} failed ({request.action_id})" + (f": {reason}" if reason else "")
        )
        return request

    # ------------------------------------------------------------------
    # Housekeeping support
    # ------------------------------------------------------------------

    def evict_stale(self, cutoff_ms: int) -> int:
        """
        Forget pending records whose id timestamp predates `cutoff_ms`.
        The ledger keeps them (they export with status -1); only the
        matching state is dropped.
        """
        with self._lock:
            stale = []
            for key, request in self._pending.items():
                created = embedded_timestamp_ms(request.action_id)
                if created is not None and created < cutoff_ms:
                    stale.append(key)
            for key in stale:
                del self._pending[key]
        if stale:
            logger.debug(f"[Lifecycle] Evicted {len(stale)} stale pending requests")
        return len(stale)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _register_part(self, resource_type: str) -> None:
        category = category_for(resource_type)
        # The primary document part is owned by the interception layer.
        if category is PartCategory.DOCUMENT:
            return
        with self._lock:
            counter = self._part_counters.get(category, 0) + 1
            self._part_counters[category] = counter
        self._aggregator.register_resource_part(f"part_{category.value}_{counter}", category)
