"""
causelink/environment/browser.py
Playwright-backed environment: a real Chromium page.

The causal context stack cannot be shared with the host here, because the
bridge is asynchronous. An agent script installed with add_init_script keeps
its own stack inside the page and only ships reports across:

    reportInputAccess(type, data, actionId)  -> hooks.record_action
    reportRequestMapping(url, actionId)      -> hooks.report_target

Network events come from the page itself (request / response /
requestfailed), keyed by Playwright's request object.

Bridge calls are delivered asynchronously. A mapping report can therefore
reach the host after the request event for the same call, in which case the
request is recorded with a synthetic id. The page-side ordering (mapping
before dispatch) is still kept.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from causelink.base.config import BrowserConfig, EngineConfig
from causelink.contracts.errors import InstrumentationError

from .base import REPORT_INPUT_ACCESS, REPORT_REQUEST_MAPPING, InstrumentationHooks, NetworkObserver

logger = logging.getLogger(__name__)


AGENT_SCRIPT = r"""
(() => {
  if (window.__causelinkInstalled) return;
  window.__causelinkInstalled = true;

  const GRACE_MS = __GRACE_MS__;
  const stack = [];
  const current = () => (stack.length ? stack[stack.length - 1] : undefined);
  const newId = () =>
    `action_${Date.now()}_${Math.random().toString(36).slice(2, 11).padEnd(9, "0")}`;
  const schedulePop = (id) =>
    setTimeout(() => {
      if (stack.length && stack[stack.length - 1] === id) stack.pop();
    }, GRACE_MS);
  const report = (type, data, id) => {
    if (window.reportInputAccess) window.reportInputAccess(type, data, id);
  };
  const mapTarget = (url, id) => {
    if (url && window.reportRequestMapping) window.reportRequestMapping(url, id || "");
  };
  const describe = (el) => {
    if (el.id) return `id=${el.id}`;
    if (el.name) return `name=${el.name}`;
    const tag = el.tagName.toLowerCase();
    return `element=${tag}[${Array.from(document.querySelectorAll(tag)).indexOf(el)}]`;
  };
  const absolute = (url) => {
    try { return new URL(String(url), document.baseURI).href; } catch (e) { return String(url); }
  };
  const begin = (type, data) => {
    const id = newId();
    stack.push(id);
    report(type, data, id);
    return id;
  };
  const isField = (el) =>
    el instanceof HTMLInputElement ||
    el instanceof HTMLTextAreaElement ||
    el instanceof HTMLSelectElement;

  for (const proto of [
    HTMLInputElement.prototype,
    HTMLTextAreaElement.prototype,
    HTMLSelectElement.prototype,
  ]) {
    const desc = Object.getOwnPropertyDescriptor(proto, "value");
    if (!desc || !desc.get) continue;
    Object.defineProperty(proto, "value", {
      configurable: true,
      enumerable: desc.enumerable,
      get: function () {
        const id = begin("value-read", describe(this));
        schedulePop(id);
        return desc.get.call(this);
      },
      set: function (v) {
        if (desc.set) desc.set.call(this, v);
      },
    });
  }

  const FIELD_EVENTS = ["change", "input", "keydown", "keyup"];
  const wrap = (fn, type, data) =>
    function (...args) {
      const id = begin(type, data);
      try {
        return fn.apply(this, args);
      } finally {
        schedulePop(id);
      }
    };
  const originalAdd = EventTarget.prototype.addEventListener;
  EventTarget.prototype.addEventListener = function (type, listener, options) {
    let actionType = null;
    if (isField(this) && FIELD_EVENTS.includes(type)) actionType = `listener:${type}`;
    else if (this instanceof HTMLFormElement && type === "submit") actionType = "form-submit";
    if (actionType && listener) {
      const data = describe(this);
      if (typeof listener === "function") {
        listener = wrap(listener, actionType, data);
      } else if (typeof listener.handleEvent === "function") {
        listener.handleEvent = wrap(listener.handleEvent, actionType, data);
      }
    }
    return originalAdd.call(this, type, listener, options);
  };

  const originalFetch = window.fetch;
  window.fetch = function (input, init) {
    let url;
    if (input instanceof Request) url = input.url;
    else if (input instanceof URL) url = input.href;
    else url = absolute(input);
    mapTarget(url, current());
    return originalFetch.apply(this, arguments);
  };

  const originalOpen = XMLHttpRequest.prototype.open;
  const originalSend = XMLHttpRequest.prototype.send;
  XMLHttpRequest.prototype.open = function (method, url) {
    this.__causelinkCause = current();
    this.__causelinkTarget = absolute(url);
    return originalOpen.apply(this, arguments);
  };
  XMLHttpRequest.prototype.send = function () {
    mapTarget(this.__causelinkTarget, this.__causelinkCause);
    return originalSend.apply(this, arguments);
  };

  window.finishScan = () => {
    if (window.notifyFinishScan) window.notifyFinishScan();
  };
})();
"""


def agent_script(grace_delay_ms: int) -> str:
    return AGENT_SCRIPT.replace("__GRACE_MS__", str(int(grace_delay_ms)))


class BrowserEnvironment:
    """
    InstrumentedEnvironment over a Chromium page.

    The browser is launched lazily by install(); close() tears it down.
    """

    def __init__(
        self,
        browser_config: Optional[BrowserConfig] = None,
        engine_config: Optional[EngineConfig] = None,
    ) -> None:
        self._browser_config = browser_config or BrowserConfig()
        self._engine_config = engine_config or EngineConfig()
        self._playwright = None
        self._browser = None
        self._page = None

    @property
    def page(self):
        return self._page

    async def install(self, hooks: InstrumentationHooks, observer: NetworkObserver) -> None:
        try:
            await self._launch()
            page = self._page
            await page.expose_function(REPORT_INPUT_ACCESS, self._input_access_bridge(hooks))
            await page.expose_function(REPORT_REQUEST_MAPPING, hooks.report_target)
            await page.add_init_script(script=agent_script(self._engine_config.grace_delay_ms))
        except PlaywrightError as e:
            raise InstrumentationError(f"Could not instrument the page: {e}") from e

        page.on("request", lambda req: observer.request_started(req, req.url, req.resource_type, req.method))
        page.on(
            "response",
            lambda resp: observer.response_received(resp.request, resp.request.url, resp.status),
        )
        page.on(
            "requestfailed",
            lambda req: observer.request_failed(req, req.url, req.resource_type, req.method, req.failure),
        )
        logger.info("[Browser] Page instrumentation installed")

    async def expose_function(self, name: str, fn: Callable[..., Any]) -> None:
        if self._page is None:
            raise InstrumentationError("No page to expose functions on; call install() first")
        try:
            await self._page.expose_function(name, fn)
        except PlaywrightError as e:
            raise InstrumentationError(f"Could not expose {name!r}: {e}") from e

    async def navigate(self, url: str) -> None:
        logger.info(f"[Browser] Navigating to {url}")
        await self._page.goto(
            url,
            wait_until=self._browser_config.wait_until,
            timeout=self._browser_config.navigation_timeout_ms,
        )

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._page = None

    async def _launch(self) -> None:
        if self._page is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self._browser_config.headless)
        context = await self._browser.new_context(no_viewport=True)
        self._page = await context.new_page()

    @staticmethod
    def _input_access_bridge(hooks: InstrumentationHooks) -> Callable[..., str]:
        def report_input_access(action_type: str, data: str, action_id: Optional[str] = None) -> str:
            return hooks.record_action(action_type, data, action_id)

        return report_input_access
