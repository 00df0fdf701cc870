# ============================================================================
# causelink/__init__.py
# Package Marker for the Causality-Correlation Engine
# ============================================================================
#
# PURPOSE:
# causelink watches a live, script-driven document and proves whether code
# that reads sensitive form values goes on to issue network requests.
#
# LAYOUT:
# - contracts/:   the canonical result shape (pydantic models, ids, schemas)
# - engine/:      context stack, interception, mapping, lifecycle, aggregation
# - environment/: instrumented environments (simulated document, browser)
# - scanner.py:   the per-scan session driven by a host orchestrator
#
# ============================================================================

__version__ = "0.4.0"
