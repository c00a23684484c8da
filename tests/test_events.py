import json
from datetime import datetime, timedelta, timezone

from theatre.events import (
    CommonEvent,
    ConsoleAttachEvent,
    ConsoleAttachSpec,
    ConsoleRequestEvent,
    ConsoleRequestSpec,
    ConsoleTerminatedEvent,
    ConsoleTerminatedSpec,
    EventKind,
    Kind,
    new_console_event_id,
    to_json,
)

WHEN = datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)


def test_event_kind_joins_kind_and_event():
    event = CommonEvent(kind=Kind.CONSOLE, event=EventKind.REQUEST)
    assert event.event_kind() == "Console/Request"


def test_subclass_defaults_to_its_event_kind():
    event = ConsoleTerminatedEvent()
    assert event.to_dict()["event"] == "Terminate"
    assert event.event_kind().endswith("/Terminate")


def test_common_dict_keys():
    data = CommonEvent(version="v1", id="abc", observed_at=WHEN).to_dict()
    assert set(data) == {"apiVersion", "kind", "event", "observed_at", "id", "annotations"}
    assert data["apiVersion"] == "v1"
    assert data["id"] == "abc"


def test_observed_at_is_rfc3339_utc():
    data = CommonEvent(observed_at=WHEN).to_dict()
    assert data["observed_at"] == "2006-01-02T15:04:05Z"


def test_observed_at_round_trips_with_offset():
    tz = timezone(timedelta(hours=2))
    when = datetime(2021, 6, 1, 12, 30, 0, tzinfo=tz)
    text = CommonEvent(observed_at=when).to_dict()["observed_at"]
    assert datetime.fromisoformat(text) == when


def test_request_event_json_round_trip():
    spec = ConsoleRequestSpec(
        reason="debugging",
        username="alice@example.com",
        context="cluster",
        namespace="ns",
        console_template="tpl",
        console="tpl-abc",
        required_authorisations=2,
        authorisation_rule_name="rule",
        timestamp=WHEN,
        labels={"app": "web"},
    )
    event = ConsoleRequestEvent(version="v1", id="the-id", observed_at=WHEN, spec=spec)
    decoded = json.loads(to_json(event))
    assert decoded == event.to_dict()
    assert decoded["spec"]["required_authorisations"] == 2
    assert decoded["spec"]["console_template"] == "tpl"
    assert decoded["spec"]["labels"] == {"app": "web"}
    assert decoded["kind"] == "Console"


def test_terminated_spec_fields():
    spec = ConsoleTerminatedSpec(
        timed_out=True, container_statuses={"app": "Completed"}, exit_codes={"app": 3}
    )
    decoded = json.loads(to_json(ConsoleTerminatedEvent(spec=spec)))
    assert decoded["spec"] == {
        "timed_out": True,
        "container_statuses": {"app": "Completed"},
        "exit_codes": {"app": 3},
    }


def test_attach_spec_fields():
    spec = ConsoleAttachSpec(username="bob", pod="p", container="c")
    decoded = json.loads(to_json(ConsoleAttachEvent(spec=spec)))
    assert decoded["spec"] == {"username": "bob", "pod": "p", "container": "c"}
    assert decoded["event"] == "Attach"


def test_to_json_plain_values():
    assert json.loads(to_json({"a": [1, 2]})) == {"a": [1, 2]}


def test_to_json_rejects_unknown_objects():
    try:
        to_json(object())
    except TypeError as err:
        assert "not JSON serializable" in str(err)
    else:
        raise AssertionError("expected TypeError")


def test_new_console_event_id():
    assert new_console_event_id("ctx", "ns", "console", WHEN) == "20060102150405/ctx/ns/console"


def test_new_console_event_id_converts_to_utc():
    tz = timezone(timedelta(hours=1))
    local = WHEN.astimezone(tz)
    assert new_console_event_id("c", "n", "x", local) == new_console_event_id("c", "n", "x", WHEN)


def test_new_console_event_id_treats_naive_as_utc():
    naive = WHEN.replace(tzinfo=None)
    assert new_console_event_id("c", "n", "x", naive) == new_console_event_id("c", "n", "x", WHEN)