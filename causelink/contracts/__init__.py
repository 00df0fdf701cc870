"""Canonical data contracts for scan results."""
