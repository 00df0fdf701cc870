from __future__ import annotations


class LinkageError(Exception):
    """Base exception for the correlation engine."""


class InstrumentationError(LinkageError):
    """Raised when the environment cannot install hooks or the bridge. Fatal for scan setup."""


class ContractViolation(LinkageError):
    """Raised when a result document or record violates the data contract."""
