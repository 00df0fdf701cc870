"""Structured error taxonomy for causelink."""
#
# PURPOSE:
# Gives every failure the scanner can raise a searchable code, a readable
# message and a details dictionary, so the host orchestrator can tell a
# fatal setup failure apart from a misconfiguration.
#
# WHAT IS NOT AN ERROR:
# Correlation failures are data, not exceptions. A blocked request is stored
# with status -999, an unlinked request carries a synthetic id, an unresolved
# request keeps status -1, a duplicate resource part is ignored. None of
# these ever reach this module.
#
# ERROR CODE FORMAT:
# - SCAN_XXX: Scan session lifecycle
# - BRIDGE_XXX: Instrumentation bridge (the only fatal family)
# - CONFIG_XXX: Configuration
# - CONTRACT_XXX: Result documents
# - SYSTEM_XXX: Everything else
#
# USAGE:
#   from causelink.errors import CauselinkError, ErrorCode
#
#   raise CauselinkError(
#       ErrorCode.BRIDGE_INSTALL_FAILED,
#       "Environment refused the value-read hook",
#       details={"environment": "BrowserEnvironment"}
#   )
#
import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Scan Errors
    SCAN_ALREADY_RUNNING = "SCAN_001"
    SCAN_NOT_SET_UP = "SCAN_002"
    SCAN_FINISHED = "SCAN_003"

    # Bridge Errors
    BRIDGE_INSTALL_FAILED = "BRIDGE_001"
    BRIDGE_EXPOSE_FAILED = "BRIDGE_002"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_PARSE_ERROR = "CONFIG_002"

    # Contract Errors
    CONTRACT_INVALID_DOCUMENT = "CONTRACT_001"
    CONTRACT_WRITE_FAILED = "CONTRACT_002"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class CauselinkError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g. "BRIDGE_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        fatal: Whether the scan cannot continue after this error
    """

    FATAL_CODES = frozenset({
        ErrorCode.BRIDGE_INSTALL_FAILED,
        ErrorCode.BRIDGE_EXPOSE_FAILED,
    })

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fatal = code in self.FATAL_CODES
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "fatal": self.fatal,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def handle_error(
    error: Exception,
    context: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> CauselinkError:
    """
    Convert a generic exception to a CauselinkError.

    Args:
        error: The original exception
        context: Optional context string (e.g. "while installing hooks")
        details: Extra details merged into the converted error

    Returns:
        CauselinkError with an appropriate code and message
    """
    if isinstance(error, CauselinkError):
        return error

    # Imported here so contracts stay free of the ambient error module.
    from causelink.contracts.errors import ContractViolation, InstrumentationError

    if isinstance(error, InstrumentationError):
        code = ErrorCode.BRIDGE_INSTALL_FAILED
    elif isinstance(error, ContractViolation):
        code = ErrorCode.CONTRACT_INVALID_DOCUMENT
    elif isinstance(error, OSError):
        code = ErrorCode.CONTRACT_WRITE_FAILED
    else:
        code = ErrorCode.SYSTEM_INTERNAL_ERROR

    message = str(error)
    if context:
        message = f"{context}: {message}"

    return CauselinkError(
        code=code,
        message=message,
        details={
            "original_type": type(error).__name__,
            "original_message": str(error),
            **(details or {}),
        },
    )


__all__ = ["ErrorCode", "CauselinkError", "handle_error"]
