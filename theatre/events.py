"""Console lifecycle events and their JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# The zero time, used where no time has been given.
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


class Kind(str, Enum):
    """The kind of object an event is about."""

    CONSOLE = "Console"


class EventKind(str, Enum):
    """What happened to the object."""

    REQUEST = "Request"
    AUTHORISE = "Authorise"
    START = "Start"
    ATTACH = "Attach"
    TERMINATED = "Terminate"


def _format_time(value: datetime) -> str:
    """Format a time as RFC 3339 with trailing fractional zeros removed.

    Naive times are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = int(value.utcoffset().total_seconds())
    if offset == 0:
        return text + "Z"
    sign = "+" if offset > 0 else "-"
    hours, minutes = divmod(abs(offset) // 60, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    return value


class _Spec:
    """Base of event specs; fields serialise under their own names."""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _json_value(getattr(self, f.name)) for f in fields(self)}


@dataclass
class CommonEvent:
    """Fields shared by every console event."""

    version: str = ""
    kind: Kind = Kind.CONSOLE
    event: EventKind = EventKind.REQUEST
    observed_at: datetime = _ZERO_TIME
    id: str = ""
    annotations: dict[str, str] = field(default_factory=dict)

    def event_kind(self) -> str:
        """Return ``Kind/Event``, e.g. ``Console/Request``."""
        return "/".join([_json_value(self.kind), _json_value(self.event)])

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of the event, spec included."""
        data: dict[str, Any] = {
            "apiVersion": self.version,
            "kind": _json_value(self.kind),
            "event": _json_value(self.event),
            "observed_at": _format_time(self.observed_at),
            "id": self.id,
            "annotations": dict(self.annotations),
        }
        spec = getattr(self, "spec", None)
        if isinstance(spec, _Spec):
            data["spec"] = spec.to_dict()
        return data


@dataclass
class ConsoleRequestSpec(_Spec):
    reason: str = ""
    username: str = ""
    # The cluster name.
    context: str = ""
    namespace: str = ""
    console_template: str = ""
    console: str = ""
    required_authorisations: int = 0
    authorisation_rule_name: str = ""
    timestamp: datetime = _ZERO_TIME
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ConsoleRequestEvent(CommonEvent):
    event: EventKind = EventKind.REQUEST
    spec: ConsoleRequestSpec = field(default_factory=ConsoleRequestSpec)


@dataclass
class ConsoleAuthoriseSpec(_Spec):
    username: str = ""


@dataclass
class ConsoleAuthoriseEvent(CommonEvent):
    event: EventKind = EventKind.AUTHORISE
    spec: ConsoleAuthoriseSpec = field(default_factory=ConsoleAuthoriseSpec)


@dataclass
class ConsoleStartSpec(_Spec):
    job: str = ""


@dataclass
class ConsoleStartEvent(CommonEvent):
    event: EventKind = EventKind.START
    spec: ConsoleStartSpec = field(default_factory=ConsoleStartSpec)


@dataclass
class ConsoleAttachSpec(_Spec):
    username: str = ""
    pod: str = ""
    container: str = ""


@dataclass
class ConsoleAttachEvent(CommonEvent):
    event: EventKind = EventKind.ATTACH
    spec: ConsoleAttachSpec = field(default_factory=ConsoleAttachSpec)


@dataclass
class ConsoleTerminatedSpec(_Spec):
    timed_out: bool = False
    container_statuses: dict[str, str] = field(default_factory=dict)
    exit_codes: dict[str, int] = field(default_factory=dict)


@dataclass
class ConsoleTerminatedEvent(CommonEvent):
    event: EventKind = EventKind.TERMINATED
    spec: ConsoleTerminatedSpec = field(default_factory=ConsoleTerminatedSpec)


def _encode(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, datetime):
        return _format_time(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def to_json(event: Any) -> str:
    """Serialise an event, or any JSON-compatible value, to a JSON string."""
    return json.dumps(event, default=_encode)


def new_console_event_id(context: str, namespace: str, console: str, time: datetime) -> str:
    """Build a deterministic ID that correlates the events of one console.

    The time is converted to UTC; naive times are taken to be UTC.
    """
    if time.tzinfo is None:
        time = time.replace(tzinfo=timezone.utc)
    stamp = time.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    return "/".join([stamp, context, namespace, console])