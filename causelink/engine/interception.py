"""
causelink/engine/interception.py
Hook points installed into an instrumented environment.

Three families, all reading the context stack at call time:

- value-read: a sensitive field's value was read
- listener registration: handlers for field/form events get wrapped so the
  handler (and anything it starts synchronously) runs under a fresh cause
- outbound calls: the target is reported to the mapping store strictly
  before the call is handed to the transport, so an attempt that policy
  later rejects is still attributable

Calls pass through unmodified. Nothing here touches method, headers or body.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, Union

from causelink.contracts.elements import ElementRef
from causelink.contracts.enums import FIELD_EVENTS, FORM_EVENTS, EventKind, PartCategory
from causelink.contracts.ids import new_action_id
from causelink.contracts.models import Action

from .aggregator import DOCUMENT_PART_ID, ResultAggregator
from .context import CausalContextStack, Scheduler
from .mapping import MappingStore

logger = logging.getLogger(__name__)

VALUE_READ = "value-read"
FORM_SUBMIT = "form-submit"
LISTENER_PREFIX = "listener:"


def listener_action_type(event_kind: EventKind) -> str:
    if event_kind is EventKind.SUBMIT:
        return FORM_SUBMIT
    return f"{LISTENER_PREFIX}{event_kind.value}"


class InterceptionLayer:
    """
    Implements the InstrumentationHooks visitor for one scan.

    Operation handles are whatever the environment uses to identify an
    in-flight call (a task, a request object). The handle -> cause map is
    explicit: entries leave when the environment reports completion.
    """

    def __init__(
        self,
        stack: CausalContextStack,
        aggregator: ResultAggregator,
        mapping: MappingStore,
        scheduler: Scheduler,
    ) -> None:
        self._stack = stack
        self._aggregator = aggregator
        self._mapping = mapping
        self._scheduler = scheduler
        # handle -> (method, target, cause captured at open, opened at ms)
        self._opened: Dict[Hashable, Tuple[str, str, Optional[str], int]] = {}
        # handle -> cause of a dispatched operation
        self._operations: Dict[Hashable, str] = {}

    # ------------------------------------------------------------------
    # Value reads and listeners
    # ------------------------------------------------------------------

    def on_value_read(self, element: ElementRef) -> str:
        cause_id = self._begin(VALUE_READ, element.describe())
        self._stack.schedule_pop(cause_id)
        return cause_id

    def on_listener_registered(
        self,
        element: ElementRef,
        event_kind: Union[EventKind, str],
        handler: Any,
    ) -> Any:
        """
        Return the handler to actually register. Pairs outside field x
        {change, input, keydown, keyup} and form x {submit} get the
        original handler back.
        """
        kind = _coerce_event(event_kind)
        if kind is None or not _is_watched(element, kind):
            return handler

        action_type = listener_action_type(kind)
        data = element.describe()

        if callable(handler):
            return self._wrap(handler, action_type, data)

        handle_event = getattr(handler, "handle_event", None)
        if callable(handle_event):
            handler.handle_event = self._wrap(handle_event, action_type, data)
            return handler

        return handler

    def _wrap(self, fn: Callable[..., Any], action_type: str, data: str) -> Callable[..., Any]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            cause_id = self._begin(action_type, data)
            try:
                return fn(*args, **kwargs)
            finally:
                self._stack.schedule_pop(cause_id)

        return wrapper

    def _begin(self, action_type: str, data: str) -> str:
        cause_id = new_action_id(self._scheduler.now_ms())
        self._stack.push(cause_id)
        self._aggregator.add_action(
            DOCUMENT_PART_ID,
            Action(action_id=cause_id, type=action_type, data=data),
            PartCategory.DOCUMENT,
        )
        return cause_id

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def on_call(self, target: str, handle: Optional[Hashable] = None) -> Optional[str]:
        """
        Call-and-get-future style. Must run before the call is dispatched.
        A call made with no active cause forgets any earlier mapping for
        `target`.
        """
        cause_id = self._stack.current()
        if cause_id is None:
            self._forget(target)
            return None
        self._mapping.report(target, cause_id)
        if handle is not None:
            self._operations[handle] = cause_id
        return cause_id

    def on_open(self, handle: Hashable, method: str, target: str) -> None:
        """First phase of open-then-send: capture the cause now."""
        self._opened[handle] = (method, target, self._stack.current(), self._scheduler.now_ms())

    def on_send(self, handle: Hashable) -> Optional[str]:
        """Second phase: report the target captured at open, then let the send proceed."""
        opened = self._opened.pop(handle, None)
        if opened is None:
            logger.debug("[Interception] send without a preceding open; nothing to report")
            return None
        _method, target, cause_id, _opened_at = opened
        if cause_id is None:
            self._forget(target)
            return None
        self._mapping.report(target, cause_id)
        self._operations[handle] = cause_id
        return cause_id

    def on_operation_done(self, handle: Hashable) -> None:
        self._operations.pop(handle, None)
        self._opened.pop(handle, None)

    def cause_for(self, handle: Hashable) -> Optional[str]:
        return self._operations.get(handle)

    def pending_operations(self) -> int:
        return len(self._operations)

    def pending_opens(self) -> int:
        return len(self._opened)

    def evict_opened(self, cutoff_ms: int) -> int:
        """Drop handles opened before `cutoff_ms` that were never sent."""
        stale = [h for h, (_m, _t, _c, opened_at) in self._opened.items() if opened_at < cutoff_ms]
        for handle in stale:
            method, target, _cause, _opened_at = self._opened.pop(handle)
            logger.debug(f"[Interception] Dropping unsent {method} {target}")
        return len(stale)

    def _forget(self, target: str) -> None:
        if self._mapping.forget(target):
            logger.debug(f"[Interception] Cause-less call to {target}; mapping cleared")

    # ------------------------------------------------------------------
    # Bridge entry points
    # ------------------------------------------------------------------
    # Used when the stack lives inside the instrumented context (the
    # browser agent) and only reports cross the bridge.

    def record_action(self, action_type: str, data: str, action_id: Optional[str] = None) -> str:
        cause_id = action_id or new_action_id(self._scheduler.now_ms())
        self._aggregator.add_action(
            DOCUMENT_PART_ID,
            Action(action_id=cause_id, type=action_type, data=data or ""),
            PartCategory.DOCUMENT,
        )
        return cause_id

    def report_target(self, target: str, cause_id: Optional[str]) -> None:
        """An empty `cause_id` means the call was made with no active cause."""
        if not target:
            return
        if not cause_id:
            self._forget(target)
            return
        self._mapping.report(target, cause_id)


def _coerce_event(event_kind: Union[EventKind, str]) -> Optional[EventKind]:
    if isinstance(event_kind, EventKind):
        return event_kind
    try:
        return EventKind(str(event_kind).lower())
    except ValueError:
        return None


def _is_watched(element: ElementRef, kind: EventKind) -> bool:
    if element.is_field:
        return kind in FIELD_EVENTS
    if element.is_form:
        return kind in FORM_EVENTS
    return False
