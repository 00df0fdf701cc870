"""
causelink/environment/simulated.py
An in-process scripted document for driving the engine without a browser.

Page scripts are plain Python callables. Fields expose a `value` property
whose getter goes through the value-read hook, `add_event_listener` goes
through the listener hook, and the two outbound styles (`fetch` returning a
task, `xhr().open()/send()`) go through the outbound-call hooks before
anything reaches the transport.

Each dispatched call carries the cause its handle was registered under, so
the observer does not depend on the URL mapping for script-issued calls.

Traffic is real httpx traffic. The client's event hooks are the host-level
network observer, and a policy transport rejects origins the document is
not allowed to reach, which surfaces as a failed request.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import httpx

from causelink.contracts.elements import ElementRef
from causelink.contracts.enums import ElementKind
from causelink.contracts.errors import InstrumentationError
from causelink.utils.async_helpers import cancel_and_wait, create_safe_task

from .base import NOTIFY_FINISH_SCAN, InstrumentationHooks, NetworkObserver

logger = logging.getLogger(__name__)

# httpx request extension keys carrying the observer's bookkeeping.
TRANSPORT_ID = "causelink.transport_id"
RESOURCE_TYPE = "causelink.resource_type"
CAUSE_ID = "causelink.cause_id"


def origin_of(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.netloc.decode('ascii')}"


class PolicyTransport(httpx.AsyncBaseTransport):
    """
    Wraps a transport and refuses requests to origins outside the allow list.
    A refusal looks like a connection failure to the client, the way a
    browser reports a request blocked by policy.
    """

    def __init__(
        self,
        inner: httpx.AsyncBaseTransport,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self._inner = inner
        self._allowed = None if allowed_origins is None else {o.rstrip("/") for o in allowed_origins}

    def is_allowed(self, url: httpx.URL) -> bool:
        return self._allowed is None or origin_of(url) in self._allowed

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.is_allowed(request.url):
            raise httpx.ConnectError(f"Blocked by policy: {origin_of(request.url)}", request=request)
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


@dataclass
class SimulatedEvent:
    type: str
    target: "SimulatedElement"
    data: Any = None


@dataclass(eq=False)
class Operation:
    """Handle of one fetch-style call."""
    method: str
    url: str
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class SimulatedElement:
    def __init__(
        self,
        document: "SimulatedDocument",
        kind: ElementKind,
        tag: str,
        id: str = "",
        name: str = "",
        value: str = "",
    ) -> None:
        self._document = document
        self.kind = kind
        self.tag = tag.lower()
        self.id = id
        self.name = name
        self._value = value
        self._listeners: Dict[str, List[Any]] = {}

    @property
    def ref(self) -> ElementRef:
        return ElementRef(
            kind=self.kind,
            tag=self.tag,
            index=self._document.index_of(self),
            id=self.id,
            name=self.name,
        )

    @property
    def value(self) -> str:
        hooks = self._document.hooks
        if hooks is not None:
            hooks.on_value_read(self.ref)
        return self._value

    @value.setter
    def value(self, new_value: str) -> None:
        self._value = new_value

    def add_event_listener(self, event_type: str, handler: Any) -> None:
        hooks = self._document.hooks
        if hooks is not None:
            handler = hooks.on_listener_registered(self.ref, event_type, handler)
        self._listeners.setdefault(event_type, []).append(handler)

    def dispatch_event(self, event_type: str, data: Any = None) -> SimulatedEvent:
        event = SimulatedEvent(type=event_type, target=self, data=data)
        for listener in list(self._listeners.get(event_type, [])):
            try:
                if callable(listener):
                    listener(event)
                else:
                    listener.handle_event(event)
            except Exception as e:
                # A throwing listener does not stop dispatch to the others.
                logger.error(f"[SimulatedDocument] Listener for {event_type} on {self.ref.describe()} raised: {e}", exc_info=e)
        return event

    def type_text(self, text: str) -> None:
        """Keystroke by keystroke, then a final change event."""
        for ch in text:
            self.dispatch_event("keydown", ch)
            self._value += ch
            self.dispatch_event("input", ch)
            self.dispatch_event("keyup", ch)
        self.dispatch_event("change")


class SimulatedForm(SimulatedElement):
    def __init__(self, document: "SimulatedDocument", id: str = "", name: str = "") -> None:
        super().__init__(document, ElementKind.FORM, "form", id=id, name=name)

    def submit(self) -> SimulatedEvent:
        return self.dispatch_event("submit")


class SimulatedXHR:
    """Open-then-send request object."""

    def __init__(self, document: "SimulatedDocument") -> None:
        self._document = document
        self.method = "GET"
        self.url: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    def open(self, method: str, url: str) -> None:
        self.method = method.upper()
        self.url = self._document.resolve(url)
        hooks = self._document.hooks
        if hooks is not None:
            hooks.on_open(self, self.method, self.url)

    def send(self, body: Optional[str] = None) -> asyncio.Task:
        if self.url is None:
            raise RuntimeError("send() called before open()")
        hooks = self._document.hooks
        if hooks is not None:
            hooks.on_send(self)
        self.task = self._document._dispatch(self, self.method, self.url, "xhr", body)
        return self.task

    @property
    def status(self) -> int:
        if self.task is None or not self.task.done() or self.task.cancelled():
            return 0
        response = self.task.result()
        return response.status_code if response is not None else 0


class SimulatedDocument:
    """
    InstrumentedEnvironment over an in-process document.

    Args:
        origin: base URL relative targets resolve against
        transport: httpx transport carrying the traffic (MockTransport in tests)
        allowed_origins: origins the document may reach; None allows all
    """

    def __init__(
        self,
        origin: str = "https://app.local",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self.url = origin
        self._transport = PolicyTransport(transport or httpx.AsyncHTTPTransport(), allowed_origins)
        self._client: Optional[httpx.AsyncClient] = None
        self._hooks: Optional[InstrumentationHooks] = None
        self._observer: Optional[NetworkObserver] = None
        self._bindings: Dict[str, Callable[..., Any]] = {}
        self._elements: List[SimulatedElement] = []
        self._tasks: Set[asyncio.Task] = set()
        self._transport_ids = itertools.count(1)

    @property
    def hooks(self) -> Optional[InstrumentationHooks]:
        return self._hooks

    # ------------------------------------------------------------------
    # InstrumentedEnvironment
    # ------------------------------------------------------------------

    async def install(self, hooks: InstrumentationHooks, observer: NetworkObserver) -> None:
        if self._hooks is not None:
            raise InstrumentationError("Hooks are already installed on this document")
        if hooks is None or observer is None:
            raise InstrumentationError("Both interception hooks and a network observer are required")
        self._hooks = hooks
        self._observer = observer
        self._client = httpx.AsyncClient(
            transport=self._transport,
            event_hooks={
                "request": [self._on_request],
                "response": [self._on_response],
            },
        )
        logger.info(f"[SimulatedDocument] Instrumentation installed for {self.url}")

    async def expose_function(self, name: str, fn: Callable[..., Any]) -> None:
        if name in self._bindings:
            raise InstrumentationError(f"Function {name!r} is already exposed")
        self._bindings[name] = fn

    async def navigate(self, url: str) -> None:
        self.url = url
        await self._send("GET", self.resolve(url), "document")

    async def close(self) -> None:
        for task in list(self._tasks):
            await cancel_and_wait(task)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Document API used by page scripts
    # ------------------------------------------------------------------

    def create_element(self, tag: str, id: str = "", name: str = "", value: str = "") -> SimulatedElement:
        try:
            kind = ElementKind(tag.lower())
        except ValueError:
            kind = ElementKind.OTHER
        if kind is ElementKind.FORM:
            element: SimulatedElement = SimulatedForm(self, id=id, name=name)
        else:
            element = SimulatedElement(self, kind, tag, id=id, name=name, value=value)
        self._elements.append(element)
        return element

    def create_form(self, id: str = "", name: str = "") -> SimulatedForm:
        form = SimulatedForm(self, id=id, name=name)
        self._elements.append(form)
        return form

    def index_of(self, element: SimulatedElement) -> int:
        same_tag = [e for e in self._elements if e.tag == element.tag]
        return same_tag.index(element) if element in same_tag else -1

    def resolve(self, url: str) -> str:
        return str(httpx.URL(self.url).join(url))

    def fetch(self, url: str, method: str = "GET", body: Optional[str] = None) -> asyncio.Task:
        target = self.resolve(url)
        operation = Operation(method=method.upper(), url=target)
        if self._hooks is not None:
            self._hooks.on_call(target, operation)
        operation.task = self._dispatch(operation, operation.method, target, "fetch", body)
        return operation.task

    def xhr(self) -> SimulatedXHR:
        return SimulatedXHR(self)

    async def load_resource(self, url: str, resource_type: str) -> Optional[httpx.Response]:
        """Static load (script tag, stylesheet, image...). Not an outbound call from script."""
        return await self._send("GET", self.resolve(url), resource_type)

    def call_binding(self, name: str, *args: Any) -> Any:
        fn = self._bindings.get(name)
        if fn is None:
            logger.debug(f"[SimulatedDocument] No function exposed as {name!r}")
            return None
        return fn(*args)

    def finish_scan(self) -> None:
        self.call_binding(NOTIFY_FINISH_SCAN)

    async def settle(self) -> None:
        """Wait for every outstanding operation to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transport plumbing
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        handle: Any,
        method: str,
        url: str,
        resource_type: str,
        body: Optional[str] = None,
    ) -> asyncio.Task:
        cause_id = self._hooks.cause_for(handle) if self._hooks is not None else None
        task = create_safe_task(
            self._send(method, url, resource_type, body, cause_id=cause_id),
            name=f"sim-{resource_type}",
        )
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if self._hooks is not None:
                self._hooks.on_operation_done(handle)

        task.add_done_callback(_done)
        return task

    async def _send(
        self,
        method: str,
        url: str,
        resource_type: str,
        body: Optional[str] = None,
        cause_id: Optional[str] = None,
    ) -> Optional[httpx.Response]:
        if self._client is None or self._observer is None:
            raise InstrumentationError("Document is not instrumented; call install() first")

        request = self._client.build_request(
            method,
            url,
            content=body,
            extensions={
                TRANSPORT_ID: next(self._transport_ids),
                RESOURCE_TYPE: resource_type,
                CAUSE_ID: cause_id,
            },
        )
        try:
            return await self._client.send(request)
        except httpx.TransportError as e:
            self._observer.request_failed(
                request.extensions[TRANSPORT_ID],
                str(request.url),
                resource_type,
                request.method,
                reason=str(e) or type(e).__name__,
                cause_id=cause_id,
            )
            return None

    async def _on_request(self, request: httpx.Request) -> None:
        self._observer.request_started(
            request.extensions.get(TRANSPORT_ID),
            str(request.url),
            request.extensions.get(RESOURCE_TYPE, "other"),
            request.method,
            cause_id=request.extensions.get(CAUSE_ID),
        )

    async def _on_response(self, response: httpx.Response) -> None:
        request = response.request
        self._observer.response_received(
            request.extensions.get(TRANSPORT_ID),
            str(request.url),
            response.status_code,
        )
