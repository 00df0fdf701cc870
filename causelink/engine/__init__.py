"""
The causality-correlation engine.

Components, leaves first: context stack, mapping store, aggregator,
request lifecycle tracker, interception layer, housekeeping.
"""

from .aggregator import DOCUMENT_PART_ID, ResultAggregator
from .context import CausalContext, CausalContextStack, LoopScheduler, Scheduler
from .housekeeping import Housekeeper
from .interception import InterceptionLayer
from .lifecycle import RequestLifecycleTracker
from .mapping import EvictionPolicy, MappingStore

__all__ = [
    "CausalContext",
    "CausalContextStack",
    "DOCUMENT_PART_ID",
    "EvictionPolicy",
    "Housekeeper",
    "InterceptionLayer",
    "LoopScheduler",
    "MappingStore",
    "RequestLifecycleTracker",
    "ResultAggregator",
    "Scheduler",
]
