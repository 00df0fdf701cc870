"""
Instrumented environments.

The simulated document is importable without a browser; the Playwright
environment is imported on demand from causelink.environment.browser.
"""

from .base import (
    NOTIFY_FINISH_SCAN,
    REPORT_INPUT_ACCESS,
    REPORT_REQUEST_MAPPING,
    InstrumentationHooks,
    InstrumentedEnvironment,
    NetworkObserver,
)
from .simulated import PolicyTransport, SimulatedDocument, SimulatedElement, SimulatedForm, SimulatedXHR

__all__ = [
    "InstrumentationHooks",
    "InstrumentedEnvironment",
    "NetworkObserver",
    "NOTIFY_FINISH_SCAN",
    "PolicyTransport",
    "REPORT_INPUT_ACCESS",
    "REPORT_REQUEST_MAPPING",
    "SimulatedDocument",
    "SimulatedElement",
    "SimulatedForm",
    "SimulatedXHR",
]
