# ============================================================================
# causelink/base/config.py
# Scanner Configuration Management
# ============================================================================
#
# PURPOSE:
# One place for every tunable of the correlation engine: the grace window a
# cause stays active, how many target mappings are kept, how often the
# housekeeping sweep runs, where results land and how logging behaves.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: each section is immutable once built
# 2. Environment variables: CAUSELINK_* overrides without code changes
# 3. Singleton: get_config() returns the shared instance, set_config() swaps
#    it (tests do this)
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from causelink.errors import CauselinkError, ErrorCode

logger = logging.getLogger(__name__)


# ============================================================================
# Engine Configuration
# ============================================================================
# Timing and capacity knobs of the correlation engine itself.

@dataclass(frozen=True)
class EngineConfig:
    # How long a cause stays on the context stack after its trigger returns.
    # Asynchronous work started synchronously by a handler must observe the
    # cause slightly after the handler's own code finished.
    grace_delay_ms: int = 100

    # Mapping store eviction policy: once an insert pushes the store above
    # `mapping_capacity`, only the `mapping_retain` most recent entries stay.
    # The periodic sweep trims to the same retain count.
    mapping_capacity: int = 1000
    mapping_retain: int = 500

    # Housekeeping cadence and the age at which a still-pending request
    # record is dropped from the lifecycle tracker (the ledger keeps it).
    sweep_interval_s: float = 60.0
    stale_after_s: float = 300.0

    def __post_init__(self):
        problems = []
        if self.grace_delay_ms < 0:
            problems.append("grace_delay_ms must be >= 0")
        if self.mapping_capacity <= 0:
            problems.append("mapping_capacity must be > 0")
        if self.mapping_retain <= 0:
            problems.append("mapping_retain must be > 0")
        if self.mapping_retain > self.mapping_capacity:
            problems.append("mapping_retain must not exceed mapping_capacity")
        if self.sweep_interval_s <= 0:
            problems.append("sweep_interval_s must be > 0")
        if self.stale_after_s <= 0:
            problems.append("stale_after_s must be > 0")
        if problems:
            raise CauselinkError(
                ErrorCode.CONFIG_INVALID,
                "Invalid engine configuration",
                details={"problems": problems},
            )

    @property
    def grace_delay_s(self) -> float:
        return self.grace_delay_ms / 1000.0


# ============================================================================
# Browser Configuration
# ============================================================================
# Used only by the Playwright-backed environment.

@dataclass(frozen=True)
class BrowserConfig:
    # Scans are usually interactive (a person fills the form, then calls
    # finishScan() in the console), so the window is visible by default.
    headless: bool = False
    navigation_timeout_ms: int = 30000
    # Playwright load state to wait for after navigation.
    wait_until: str = "networkidle"


# ============================================================================
# Storage Configuration
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # results land in <base_dir>/<scan_id>/results.json
    base_dir: Path = field(default_factory=lambda: Path("history"))
    results_name: str = "results.json"


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    # Console only unless a file is requested.
    file_enabled: bool = False
    file_name: str = "causelink.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass
class CauselinkConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)
    debug: bool = False

    @classmethod
    def from_env(cls) -> "CauselinkConfig":
        engine = EngineConfig(
            grace_delay_ms=_env_int("CAUSELINK_GRACE_MS", 100),
            mapping_capacity=_env_int("CAUSELINK_MAPPING_CAPACITY", 1000),
            mapping_retain=_env_int("CAUSELINK_MAPPING_RETAIN", 500),
            sweep_interval_s=_env_float("CAUSELINK_SWEEP_INTERVAL", 60.0),
            stale_after_s=_env_float("CAUSELINK_STALE_AFTER", 300.0),
        )

        browser = BrowserConfig(
            headless=_env_bool("CAUSELINK_HEADLESS", False),
            navigation_timeout_ms=_env_int("CAUSELINK_NAV_TIMEOUT_MS", 30000),
        )

        storage = StorageConfig(base_dir=Path(os.getenv("CAUSELINK_HISTORY_DIR", "history")))

        log_file = os.getenv("CAUSELINK_LOG_FILE")
        log = LogConfig(
            level=os.getenv("CAUSELINK_LOG_LEVEL", "INFO"),
            file_enabled=bool(log_file),
            file_name=log_file or "causelink.log",
        )

        return cls(
            engine=engine,
            browser=browser,
            storage=storage,
            log=log,
            debug=_env_bool("CAUSELINK_DEBUG", False),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise CauselinkError(
            ErrorCode.CONFIG_PARSE_ERROR,
            f"{name} must be an integer",
            details={"value": raw},
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise CauselinkError(
            ErrorCode.CONFIG_PARSE_ERROR,
            f"{name} must be a number",
            details={"value": raw},
        ) from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[CauselinkConfig] = None


def get_config() -> CauselinkConfig:
    """Shared configuration, loaded from the environment on first use."""
    global _config
    if _config is None:
        _config = CauselinkConfig.from_env()
    return _config


def set_config(config: Optional[CauselinkConfig]) -> None:
    """Replace the global configuration (mainly used for testing). None resets it."""
    global _config
    _config = config


def setup_logging(config: Optional[CauselinkConfig] = None) -> None:
    """
    Configure console logging, plus a rotating log file when enabled.
    Call once at process startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.base_dir / cfg.log.file_name
        handlers.append(RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        ))

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
