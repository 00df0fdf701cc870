"""
causelink/scanner.py
One scan session: wires the engine to an instrumented environment.

Typical host flow:

    scanner = LinkageScanner(environment)
    await scanner.setup()          # fatal CauselinkError if the bridge fails
    await scanner.run(url)
    await scanner.wait_for_finish()
    path = scanner.save_results()
    await scanner.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from causelink.base.config import CauselinkConfig, get_config
from causelink.contracts.errors import ContractViolation, InstrumentationError
from causelink.contracts.models import Action, LinkageStats, Request, ScanRun
from causelink.contracts.validation import validate_document
from causelink.engine import (
    CausalContextStack,
    EvictionPolicy,
    Housekeeper,
    InterceptionLayer,
    LoopScheduler,
    MappingStore,
    RequestLifecycleTracker,
    ResultAggregator,
    Scheduler,
)
from causelink.environment.base import NOTIFY_FINISH_SCAN, InstrumentedEnvironment
from causelink.errors import CauselinkError, ErrorCode, handle_error

logger = logging.getLogger(__name__)


def new_scan_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class LinkageScanner:
    """
    Owns the per-scan engine: context stack, interception layer, mapping
    store, lifecycle tracker, ledger and housekeeping.

    States: new -> ready (setup) -> running (run) -> finished (finish).
    """

    def __init__(
        self,
        environment: InstrumentedEnvironment,
        config: Optional[CauselinkConfig] = None,
        scheduler: Optional[Scheduler] = None,
        scan_id: Optional[str] = None,
    ) -> None:
        self.config = config or get_config()
        self.environment = environment
        self.scan_id = scan_id or new_scan_id()

        engine = self.config.engine
        self._scheduler = scheduler or LoopScheduler()
        self.aggregator = ResultAggregator()
        self.mapping = MappingStore(EvictionPolicy(engine.mapping_capacity, engine.mapping_retain))
        self.stack = CausalContextStack(self._scheduler, engine.grace_delay_s)
        self.interception = InterceptionLayer(self.stack, self.aggregator, self.mapping, self._scheduler)
        self.tracker = RequestLifecycleTracker(self.aggregator, self.mapping, self._scheduler)
        self.housekeeper = Housekeeper(
            self.tracker,
            self.mapping,
            self._scheduler,
            interval_s=engine.sweep_interval_s,
            stale_after_s=engine.stale_after_s,
            interception=self.interception,
        )
        self.aggregator.action_added.connect(self._on_action_added)
        self.aggregator.request_added.connect(self._on_request_settled)
        self.aggregator.request_resolved.connect(self._on_request_settled)

        self._state = "new"
        self._finished = asyncio.Event()

    @property
    def state(self) -> str:
        return self._state

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Install hooks and the bridge. Any failure here aborts the scan before navigation."""
        if self._state != "new":
            raise CauselinkError(
                ErrorCode.SCAN_ALREADY_RUNNING,
                f"Scan {self.scan_id} is already set up",
                details={"state": self._state},
            )

        environment_name = type(self.environment).__name__
        try:
            await self.environment.install(self.interception, self.tracker)
        except InstrumentationError as e:
            logger.error(f"[Scanner] Instrumentation failed on {environment_name}: {e}")
            raise CauselinkError(
                ErrorCode.BRIDGE_INSTALL_FAILED,
                f"Could not install instrumentation: {e}",
                details={"environment": environment_name, "scan_id": self.scan_id},
            ) from e

        try:
            await self.environment.expose_function(NOTIFY_FINISH_SCAN, self.finish)
        except InstrumentationError as e:
            logger.error(f"[Scanner] Bridge function {NOTIFY_FINISH_SCAN} unavailable: {e}")
            raise CauselinkError(
                ErrorCode.BRIDGE_EXPOSE_FAILED,
                f"Could not expose {NOTIFY_FINISH_SCAN}: {e}",
                details={"environment": environment_name, "scan_id": self.scan_id},
            ) from e

        self.housekeeper.start()
        self._state = "ready"
        logger.info(f"[Scanner] Scan {self.scan_id} ready")

    async def run(self, url: str) -> None:
        if self._state == "new":
            raise CauselinkError(ErrorCode.SCAN_NOT_SET_UP, "setup() must complete before run()")
        if self._state == "finished":
            raise CauselinkError(ErrorCode.SCAN_FINISHED, f"Scan {self.scan_id} already finished")
        self._state = "running"
        logger.info(f"[Scanner] Scan {self.scan_id} navigating to {url}")
        await self.environment.navigate(url)

    def finish(self) -> None:
        """The manual finish signal. Safe to call more than once."""
        if self._finished.is_set():
            return
        self._state = "finished"
        self._finished.set()
        logger.info(f"[Scanner] Finish signal received for scan {self.scan_id}")

    async def wait_for_finish(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self._finished.wait()
        else:
            await asyncio.wait_for(self._finished.wait(), timeout)

    async def close(self) -> None:
        await self.housekeeper.stop()
        await self.environment.close()

    # ------------------------------------------------------------------
    # Ledger signals
    # ------------------------------------------------------------------

    def _on_action_added(self, part_id: str, action: Action) -> None:
        logger.debug(f"[Scanner] Cause {action.action_id}: {action.type} on {action.data or part_id}")

    def _on_request_settled(self, request: Request) -> None:
        if request.is_blocked and self.aggregator.is_linked(request):
            logger.warning(
                f"[Scanner] Blocked attempt {request.method} {request.url} linked to {request.action_id}"
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_results(self) -> ScanRun:
        return self.aggregator.get_results()

    def linkage_stats(self) -> LinkageStats:
        return self.aggregator.linkage_stats()

    def save_results(self, directory: Optional[Union[str, Path]] = None) -> Path:
        """
        Write <directory>/<scan_id>/results.json after checking it against
        the ScanRun schema. Defaults to the configured history directory.
        """
        base = Path(directory) if directory is not None else self.config.storage.base_dir
        document = self.get_results().to_document()

        try:
            validate_document("ScanRun", document)
        except ContractViolation as e:
            raise handle_error(e, "Result document is invalid", details={"scan_id": self.scan_id}) from e

        scan_dir = base / self.scan_id
        path = scan_dir / self.config.storage.results_name
        try:
            scan_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        except OSError as e:
            raise handle_error(e, "Could not write results", details={"path": str(path)}) from e

        self.log_summary()
        logger.info(f"[Scanner] Results saved to {path}")
        return path

    def log_summary(self) -> LinkageStats:
        stats = self.linkage_stats()
        logger.info(f"[Scanner] === Scan {self.scan_id} completed ===")
        logger.info(f"[Scanner] Linkage rate: {stats.linkage_rate:.1f}%")
        logger.info(f"[Scanner] Total actions: {stats.total_actions}")
        logger.info(f"[Scanner] Linked requests: {stats.linked}")
        logger.info(f"[Scanner] Unlinked requests: {stats.unlinked}")
        for i, request in enumerate(stats.unlinked_sample, 1):
            logger.info(f"[Scanner]   {i}. {request.method} {request.url} ({request.request_source})")
        blocked = self.aggregator.blocked_attempts()
        if blocked:
            logger.warning(f"[Scanner] {len(blocked)} linked attempts were blocked by policy")
        return stats
