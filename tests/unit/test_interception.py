import pytest

from causelink.contracts.elements import ElementRef
from causelink.contracts.enums import ElementKind, EventKind
from causelink.engine.aggregator import DOCUMENT_PART_ID, ResultAggregator
from causelink.engine.context import CausalContextStack
from causelink.engine.interception import InterceptionLayer
from causelink.engine.mapping import MappingStore

USERNAME = ElementRef(kind=ElementKind.INPUT, tag="input", index=0, id="username")
LOGIN_FORM = ElementRef(kind=ElementKind.FORM, tag="form", index=0, name="login")
BUTTON = ElementRef(kind=ElementKind.OTHER, tag="button", index=3)


class RecordingHandler:
    """Listener object in the handle_event style."""

    def __init__(self, stack):
        self.stack = stack
        self.seen = []

    def handle_event(self, event):
        self.seen.append(self.stack.current())


@pytest.fixture
def env(scheduler):
    stack = CausalContextStack(scheduler, grace_delay_s=0.1)
    aggregator = ResultAggregator()
    mapping = MappingStore()
    layer = InterceptionLayer(stack, aggregator, mapping, scheduler)
    return stack, aggregator, mapping, layer


def actions(aggregator):
    part = aggregator.get_part(DOCUMENT_PART_ID)
    return part.actions if part else []


def test_element_descriptor_prefers_id_then_name():
    assert USERNAME.describe() == "id=username"
    assert LOGIN_FORM.describe() == "name=login"
    assert BUTTON.describe() == "element=button[3]"


def test_value_read_records_action_and_pushes_cause(env, scheduler):
    stack, aggregator, _, layer = env

    cause_id = layer.on_value_read(USERNAME)

    assert stack.current() == cause_id
    recorded = actions(aggregator)
    assert len(recorded) == 1
    assert recorded[0].action_id == cause_id
    assert recorded[0].type == "value-read"
    assert recorded[0].data == "id=username"

    scheduler.advance(100)
    assert stack.current() is None


def test_value_reads_get_distinct_ids(env):
    _, aggregator, _, layer = env

    first = layer.on_value_read(USERNAME)
    second = layer.on_value_read(USERNAME)

    assert first != second
    assert len(actions(aggregator)) == 2


@pytest.mark.parametrize("event", ["change", "input", "keydown", "keyup", EventKind.CHANGE])
def test_field_listeners_are_wrapped(env, event):
    stack, aggregator, _, layer = env
    seen = []

    wrapped = layer.on_listener_registered(USERNAME, event, lambda e: seen.append(stack.current()))
    wrapped("evt")

    kind = event.value if isinstance(event, EventKind) else event
    recorded = actions(aggregator)
    assert recorded[0].type == f"listener:{kind}"
    assert seen == [recorded[0].action_id]


def test_form_submit_is_wrapped(env):
    _, aggregator, _, layer = env
    wrapped = layer.on_listener_registered(LOGIN_FORM, "submit", lambda e: None)
    wrapped("evt")

    assert actions(aggregator)[0].type == "form-submit"
    assert actions(aggregator)[0].data == "name=login"


@pytest.mark.parametrize(
    "element,event",
    [(USERNAME, "click"), (USERNAME, "submit"), (LOGIN_FORM, "change"), (BUTTON, "input")],
)
def test_unwatched_pairs_are_left_alone(env, element, event):
    _, aggregator, _, layer = env

    def handler(e):
        return None

    assert layer.on_listener_registered(element, event, handler) is handler
    assert actions(aggregator) == []


def test_wrapper_returns_handler_result(env):
    _, _, _, layer = env
    wrapped = layer.on_listener_registered(USERNAME, "input", lambda e: f"handled {e}")

    assert wrapped("x") == "handled x"


def test_pop_is_scheduled_when_handler_raises(env, scheduler):
    stack, aggregator, _, layer = env

    def broken(event):
        raise ValueError("handler failure")

    wrapped = layer.on_listener_registered(USERNAME, "change", broken)
    with pytest.raises(ValueError):
        wrapped("evt")

    assert stack.current() == actions(aggregator)[0].action_id
    scheduler.advance(100)
    assert stack.current() is None


def test_handle_event_objects_are_wrapped(env):
    stack, aggregator, _, layer = env
    handler = RecordingHandler(stack)

    returned = layer.on_listener_registered(USERNAME, "keyup", handler)
    returned.handle_event("evt")

    assert returned is handler
    assert handler.seen == [actions(aggregator)[0].action_id]


def test_call_reports_target_under_current_cause(env):
    _, _, mapping, layer = env
    cause_id = layer.on_value_read(USERNAME)
    handle = object()

    assert layer.on_call("https://api.x/data", handle) == cause_id
    assert mapping.lookup("https://api.x/data") == cause_id
    assert layer.cause_for(handle) == cause_id
    assert layer.pending_operations() == 1

    layer.on_operation_done(handle)
    assert layer.cause_for(handle) is None
    assert layer.pending_operations() == 0
    # The mapping outlives the operation.
    assert mapping.lookup("https://api.x/data") == cause_id


def test_call_without_cause_reports_nothing(env):
    _, _, mapping, layer = env

    assert layer.on_call("https://cdn.x/lib.js") is None
    assert len(mapping) == 0


def test_call_without_cause_forgets_earlier_mapping(env, scheduler):
    stack, _, mapping, layer = env
    cause_id = layer.on_value_read(USERNAME)
    layer.on_call("https://api.x/poll", object())
    assert mapping.lookup("https://api.x/poll") == cause_id

    scheduler.advance(150)
    assert stack.current() is None
    assert layer.on_call("https://api.x/poll", object()) is None
    assert "https://api.x/poll" not in mapping


def test_send_without_cause_forgets_earlier_mapping(env, scheduler):
    _, _, mapping, layer = env
    mapping.report("https://api.x/login", "action_old")
    handle = object()
    layer.on_open(handle, "POST", "https://api.x/login")

    assert layer.on_send(handle) is None
    assert len(mapping) == 0
    assert layer.cause_for(handle) is None


def test_evict_opened_drops_only_old_unsent_handles(env, scheduler):
    _, _, _, layer = env
    old, sent, fresh = object(), object(), object()
    layer.on_open(old, "GET", "https://api.x/a")
    layer.on_open(sent, "GET", "https://api.x/b")
    layer.on_send(sent)
    scheduler.advance(1000)
    layer.on_open(fresh, "GET", "https://api.x/c")

    assert layer.evict_opened(scheduler.now_ms()) == 1
    assert layer.pending_opens() == 1
    assert layer.on_send(old) is None


def test_two_phase_call_uses_cause_captured_at_open(env, scheduler):
    stack, _, mapping, layer = env
    handle = object()
    cause_id = layer.on_value_read(USERNAME)
    layer.on_open(handle, "POST", "https://api.x/login")

    # The cause expires before send.
    scheduler.advance(200)
    assert stack.current() is None
    assert len(mapping) == 0

    assert layer.on_send(handle) == cause_id
    assert mapping.lookup("https://api.x/login") == cause_id
    assert layer.cause_for(handle) == cause_id


def test_send_without_open_is_ignored(env):
    _, _, mapping, layer = env

    assert layer.on_send(object()) is None
    assert len(mapping) == 0


def test_bridge_entry_points(env):
    _, aggregator, mapping, layer = env

    supplied = layer.record_action("value-read", "id=password", "action_1700000000000_abcdefghi")
    generated = layer.record_action("form-submit", "name=login")
    layer.report_target("https://api.x/data", supplied)
    layer.report_target("", supplied)

    assert supplied == "action_1700000000000_abcdefghi"
    assert generated.startswith("action_")
    assert [a.action_id for a in actions(aggregator)] == [supplied, generated]
    assert mapping.snapshot() == [("https://api.x/data", supplied)]


def test_bridge_report_without_cause_forgets_target(env):
    _, _, mapping, layer = env
    layer.report_target("https://api.x/poll", "action_1700000000000_abcdefghi")

    layer.report_target("https://api.x/poll", "")

    assert len(mapping) == 0
