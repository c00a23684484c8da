"""Structured loggers, label decoration and event-recording log sinks."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Mapping, Optional

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
# Logging this value under "eventType" stops the line from being recorded as an event.
EVENT_TYPE_DONT_RECORD = "DontRecord"

_MISSING = "(MISSING)"


class EventRecorder:
    """Collects events raised against objects, in the order they arrive.

    Each entry of ``events`` is a tuple ``(obj, event_type, reason, message)``.
    """

    def __init__(self, component: str = "") -> None:
        self.component = component
        self.events: list[tuple[Any, str, str, str]] = []
        self._lock = threading.Lock()

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        """Record an event against ``obj``."""
        with self._lock:
            self.events.append((obj, event_type, reason, message))


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() or c in '="' for c in text):
        return json.dumps(text)
    return text


def _format_line(msg: str, keyvals: tuple) -> str:
    items = list(keyvals)
    if len(items) % 2:
        items.append(_MISSING)
    pairs = " ".join(
        f"{key}={_format_value(value)}" for key, value in zip(items[0::2], items[1::2])
    )
    return f"{msg} {pairs}" if pairs else msg


def _string_pairs(keyvals: tuple) -> dict[str, str]:
    return {
        key: str(value)
        for key, value in zip(keyvals[0::2], keyvals[1::2])
        if isinstance(key, str)
    }


class StructuredLogger:
    """A key/value logger that writes logfmt-style lines to a standard logger.

    Level 0 lines are written at INFO, more verbose levels at DEBUG. Lines
    above ``verbosity`` are dropped.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        verbosity: int = 0,
        values: tuple = (),
    ) -> None:
        self._logger = logger if logger is not None else logging.getLogger("theatre")
        self.verbosity = verbosity
        self._values = tuple(values)

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def values(self) -> tuple:
        return self._values

    def enabled(self, level: int) -> bool:
        return level <= self.verbosity

    def with_name(self, name: str) -> "StructuredLogger":
        return StructuredLogger(self._logger.getChild(name), self.verbosity, self._values)

    def with_values(self, *args: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, self.verbosity, self._values + args)

    def info(self, level: int, msg: str, *args: Any) -> None:
        if not self.enabled(level):
            return
        log_level = logging.INFO if level == 0 else logging.DEBUG
        self._logger.log(log_level, "%s", _format_line(msg, self._values + args))

    def error(self, err: Optional[BaseException], msg: str, *args: Any) -> None:
        keyvals = self._values + args
        if err is not None:
            keyvals += ("error", err)
        self._logger.error("%s", _format_line(msg, keyvals))


class EventRecordingLogSink:
    """Passes log lines on to another logger and records those carrying an
    ``event`` key as events against an object.

    A line with an ``error`` key becomes a Warning event with the error as its
    message; any other becomes a Normal event with the log message.
    """

    def __init__(self, logger: Any, recorder: EventRecorder, obj: Any, values: tuple = ()) -> None:
        self._logger = logger
        self.recorder = recorder
        self.object = obj
        self._values = tuple(values)

    @property
    def values(self) -> tuple:
        return self._values

    def enabled(self, level: int) -> bool:
        return self._logger.enabled(level)

    def with_name(self, name: str) -> "EventRecordingLogSink":
        return EventRecordingLogSink(
            self._logger.with_name(name), self.recorder, self.object, self._values
        )

    def with_values(self, *args: Any) -> "EventRecordingLogSink":
        return EventRecordingLogSink(
            self._logger.with_values(*args), self.recorder, self.object, self._values + args
        )

    def info(self, level: int, msg: str, *args: Any) -> None:
        if not self.enabled(level):
            return
        self._logger.info(level, msg, *args)

        kvs = _string_pairs(args)
        event = kvs.get("event")
        if event is None:
            return

        context = {**_string_pairs(self._values), **kvs}
        if context.get("eventType") == EVENT_TYPE_DONT_RECORD:
            return

        if "error" in kvs:
            event_type, message = EVENT_TYPE_WARNING, kvs["error"]
        else:
            event_type, message = EVENT_TYPE_NORMAL, msg

        self.recorder.event(self.object, event_type, event, message)

    def error(self, err: Optional[BaseException], msg: str, *args: Any) -> None:
        self._logger.error(err, msg, *args)


def linear_label_key(label_key: str) -> str:
    """Replace '/' and '.' with '_', e.g. app.kubernetes.io/instance becomes
    app_kubernetes_io_instance."""
    return label_key.replace("/", "_").replace(".", "_")


def with_labels(logger: Any, labels: Mapping[str, str], label_key_prefix: str) -> Any:
    """Return a logger carrying every label as a value, keys prefixed and linearised."""
    for key, value in labels.items():
        logger = logger.with_values(f"{label_key_prefix}{linear_label_key(key)}", value)
    return logger


def with_no_record(logger: Any) -> Any:
    """Return a logger whose lines are never recorded as events."""
    return logger.with_values("eventType", EVENT_TYPE_DONT_RECORD)


def with_event_recorder(sink: Any, recorder: EventRecorder, obj: Any) -> EventRecordingLogSink:
    """Wrap ``sink`` so that event-carrying lines are recorded against ``obj``."""
    return EventRecordingLogSink(sink, recorder, obj)