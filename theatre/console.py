"""Console resources, lifecycle hooks and the options that drive a console runner."""

from __future__ import annotations

import dataclasses
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Iterable, Optional, TextIO

from theatre.kube import Container, ObjectMeta, Subject

_NONE = "<none>"
_COLUMN_PADDING = 2
_COLUMNS = ("NAME", "NAMESPACE", "PHASE", "CREATED", "USER", "REASON")


class ConsolePhase(str, Enum):
    """The lifecycle phase of a console."""

    PENDING = "Pending"
    PENDING_AUTHORISATION = "Pending Authorisation"
    RUNNING = "Running"
    STOPPED = "Stopped"
    DESTROYED = "Destroyed"


@dataclass
class ConsoleSpec:
    """What the user asked for when requesting a console."""

    user: str = ""
    reason: str = ""
    command: list[str] = field(default_factory=list)
    # Zero means the template's default timeout applies.
    timeout_seconds: int = 0
    noninteractive: bool = False
    console_template_ref: str = ""


@dataclass
class ConsoleStatus:
    """What the controller has observed about a console."""

    phase: str = ""
    pod_name: str = ""


@dataclass
class Console:
    kind: ClassVar[str] = "Console"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleSpec = field(default_factory=ConsoleSpec)
    status: ConsoleStatus = field(default_factory=ConsoleStatus)


@dataclass
class ConsoleAuthorisationRule:
    """Who must authorise a console whose command matches the rule.

    ``match_command_elements`` is compared element by element with the
    command; ``*`` matches any one element and a trailing ``**`` matches
    whatever remains.
    """

    name: str = ""
    match_command_elements: list[str] = field(default_factory=list)
    authorisations_required: int = 0
    subjects: list[Subject] = field(default_factory=list)

    def matches(self, command: Iterable[str]) -> bool:
        command = list(command)
        patterns = self.match_command_elements
        for position, pattern in enumerate(patterns):
            if pattern == "**":
                return position == len(patterns) - 1
            if position >= len(command):
                return False
            if pattern != "*" and pattern != command[position]:
                return False
        return len(command) == len(patterns)


@dataclass
class ConsoleTemplate:
    kind: ClassVar[str] = "ConsoleTemplate"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    containers: list[Container] = field(default_factory=list)
    default_timeout_seconds: int = 0
    authorisation_rules: list[ConsoleAuthorisationRule] = field(default_factory=list)
    default_authorisation_rule: Optional[ConsoleAuthorisationRule] = None

    def authorisation_rule_for(self, command: Iterable[str]) -> ConsoleAuthorisationRule:
        """Return the first rule matching ``command``, else the default rule."""
        command = list(command)
        for rule in self.authorisation_rules:
            if rule.matches(command):
                return rule
        if self.default_authorisation_rule is not None:
            return self.default_authorisation_rule
        raise LookupError("no rules matched the command")


@dataclass
class _ConsoleAuthorisationSpec:
    console_ref: str = ""
    authorisations: list[Subject] = field(default_factory=list)


@dataclass
class ConsoleAuthorisation:
    kind: ClassVar[str] = "ConsoleAuthorisation"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: _ConsoleAuthorisationSpec = field(default_factory=_ConsoleAuthorisationSpec)


@dataclass
class IOStreams:
    """The input, output and error streams a console is attached to."""

    in_: Any = field(default_factory=lambda: sys.stdin)
    out: Any = field(default_factory=lambda: sys.stdout)
    err_out: Any = field(default_factory=lambda: sys.stderr)


class LifecycleHook(ABC):
    """Receives notice of console lifecycle changes; raising aborts the flow."""

    @abstractmethod
    def attaching_to_console(self, console: Console) -> None: ...

    @abstractmethod
    def console_created(self, console: Console) -> None: ...

    @abstractmethod
    def console_requires_authorisation(
        self, console: Console, rule: ConsoleAuthorisationRule
    ) -> None: ...

    @abstractmethod
    def console_ready(self, console: Console) -> None: ...

    @abstractmethod
    def template_found(self, template: ConsoleTemplate) -> None: ...


@dataclass
class DefaultLifecycleHook(LifecycleHook):
    """A hook that calls whichever of its functions are set."""

    attaching_to_pod_func: Optional[Callable[[Console], None]] = None
    console_created_func: Optional[Callable[[Console], None]] = None
    console_requires_authorisation_func: Optional[
        Callable[[Console, ConsoleAuthorisationRule], None]
    ] = None
    console_ready_func: Optional[Callable[[Console], None]] = None
    template_found_func: Optional[Callable[[ConsoleTemplate], None]] = None

    def attaching_to_console(self, console: Console) -> None:
        if self.attaching_to_pod_func is not None:
            self.attaching_to_pod_func(console)

    def console_created(self, console: Console) -> None:
        if self.console_created_func is not None:
            self.console_created_func(console)

    def console_requires_authorisation(
        self, console: Console, rule: ConsoleAuthorisationRule
    ) -> None:
        if self.console_requires_authorisation_func is not None:
            self.console_requires_authorisation_func(console, rule)

    def console_ready(self, console: Console) -> None:
        if self.console_ready_func is not None:
            self.console_ready_func(console)

    def template_found(self, template: ConsoleTemplate) -> None:
        if self.template_found_func is not None:
            self.template_found_func(template)


@dataclass
class Options:
    """Parameters of a new console resource."""

    cmd: list[str] = field(default_factory=list)
    timeout: int = 0
    reason: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    # Some execution environments cannot attach to TTY-enabled pods.
    noninteractive: bool = False


@dataclass
class CreateOptions:
    """Arguments for creating, and optionally attaching to, a console."""

    namespace: str = ""
    selector: str = ""
    timeout: float = 0.0
    reason: str = ""
    command: list[str] = field(default_factory=list)
    attach: bool = False
    noninteractive: bool = False
    io: Optional[IOStreams] = None
    labels: Optional[dict[str, str]] = None
    hook: Optional[LifecycleHook] = None

    def with_defaults(self) -> "CreateOptions":
        """Return a copy with unset options defaulted."""
        return dataclasses.replace(
            self,
            hook=self.hook if self.hook is not None else DefaultLifecycleHook(),
            labels=self.labels if self.labels is not None else {},
        )


@dataclass
class GetOptions:
    namespace: str = ""
    console_name: str = ""


@dataclass
class AttachOptions:
    """Arguments for attaching to a running console."""

    namespace: str = ""
    name: str = ""
    io: Optional[IOStreams] = None
    hook: Optional[LifecycleHook] = None

    def with_defaults(self) -> "AttachOptions":
        """Return a copy with unset options defaulted."""
        return dataclasses.replace(
            self, hook=self.hook if self.hook is not None else DefaultLifecycleHook()
        )


@dataclass
class AuthoriseOptions:
    """Arguments for authorising, and optionally attaching to, a console."""

    namespace: str = ""
    console_name: str = ""
    username: str = ""
    attach: bool = False
    io: Optional[IOStreams] = None
    hook: Optional[LifecycleHook] = None

    def with_defaults(self) -> "AuthoriseOptions":
        """Return a copy with unset options defaulted."""
        return dataclasses.replace(
            self, hook=self.hook if self.hook is not None else DefaultLifecycleHook()
        )


@dataclass
class ListOptions:
    namespace: str = ""
    username: str = ""
    selector: str = ""
    output: Optional[TextIO] = None


class MultipleConsoleTemplateError(LookupError):
    """A selector matched other than exactly one console template."""

    def __init__(self, console_templates: Iterable[ConsoleTemplate]) -> None:
        self.console_templates = list(console_templates)
        identifiers = " ".join(
            f"{t.metadata.namespace}/{t.metadata.name}" for t in self.console_templates
        )
        super().__init__(
            f"expected to discover 1 console template, but actually found: [{identifiers}]"
        )


def _cell(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if value is None or value == "":
        return _NONE
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


class ConsoleSlice(list):
    """A list of consoles that can print itself as a table."""

    def print(self, output: TextIO) -> None:
        """Write a table of the consoles to ``output``; nothing if empty."""
        if not self:
            return
        rows = [list(_COLUMNS)]
        rows.extend(
            [
                _cell(c.metadata.name),
                _cell(c.metadata.namespace),
                _cell(c.status.phase),
                _cell(c.metadata.creation_timestamp),
                _cell(c.spec.user),
                _cell(c.spec.reason),
            ]
            for c in self
        )
        widths = [max(len(row[i]) for row in rows) + _COLUMN_PADDING for i in range(len(_COLUMNS) - 1)]
        for row in rows:
            line = "".join(cell.ljust(width) for cell, width in zip(row, widths)) + row[-1]
            output.write(line + "\n")