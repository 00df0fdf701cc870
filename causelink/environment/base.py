"""
causelink/environment/base.py
What the scanner expects from an instrumented environment.

An environment owns the scripted context being watched. It installs the
interception hooks at the named points it controls, reports network events
to a host-level observer, and offers a bridge for functions the instrumented
context can call back into. Any failure to install is fatal and must surface
as InstrumentationError before navigation.
"""

from __future__ import annotations

from typing import Any, Callable, Hashable, Optional, Protocol, Union

from causelink.contracts.elements import ElementRef
from causelink.contracts.enums import EventKind


class InstrumentationHooks(Protocol):
    def on_value_read(self, element: ElementRef) -> str: ...

    def on_listener_registered(
        self,
        element: ElementRef,
        event_kind: Union[EventKind, str],
        handler: Any,
    ) -> Any: ...

    def on_call(self, target: str, handle: Optional[Hashable] = None) -> Optional[str]: ...

    def on_open(self, handle: Hashable, method: str, target: str) -> None: ...

    def on_send(self, handle: Hashable) -> Optional[str]: ...

    def on_operation_done(self, handle: Hashable) -> None: ...

    def cause_for(self, handle: Hashable) -> Optional[str]: ...

    def record_action(self, action_type: str, data: str, action_id: Optional[str] = None) -> str: ...

    def report_target(self, target: str, cause_id: Optional[str]) -> None: ...


class NetworkObserver(Protocol):
    def request_started(
        self,
        transport_id: Hashable,
        url: str,
        resource_type: str,
        method: str,
        cause_id: Optional[str] = None,
    ) -> Any: ...

    def response_received(self, transport_id: Hashable, url: str, status: int) -> Any: ...

    def request_failed(
        self,
        transport_id: Hashable,
        url: str,
        resource_type: str,
        method: str,
        reason: Optional[str] = None,
        cause_id: Optional[str] = None,
    ) -> Any: ...


class InstrumentedEnvironment(Protocol):
    async def install(self, hooks: InstrumentationHooks, observer: NetworkObserver) -> None: ...

    async def expose_function(self, name: str, fn: Callable[..., Any]) -> None: ...

    async def navigate(self, url: str) -> None: ...

    async def close(self) -> None: ...


# Names of the bridge functions visible inside the instrumented context.
REPORT_INPUT_ACCESS = "reportInputAccess"
REPORT_REQUEST_MAPPING = "reportRequestMapping"
NOTIFY_FINISH_SCAN = "notifyFinishScan"
