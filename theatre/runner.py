"""Creating, authorising, waiting for and attaching to consoles."""

from __future__ import annotations

import sys
import time
from typing import Any, Callable, Optional

from theatre.console import (
    AttachOptions,
    AuthoriseOptions,
    Console,
    ConsoleAuthorisation,
    ConsolePhase,
    ConsoleSlice,
    ConsoleSpec,
    ConsoleTemplate,
    CreateOptions,
    GetOptions,
    IOStreams,
    ListOptions,
    MultipleConsoleTemplateError,
    Options,
)
from theatre.kube import (
    POD_RUNNING,
    POD_SUCCEEDED,
    USER_KIND,
    Client,
    KubeError,
    NotFoundError,
    ObjectMeta,
    Pod,
    RoleBinding,
    Subject,
    Watch,
    WatchEvent,
)
from theatre.labels import InvalidLabelError, merge, parse_selector, validate_labels

_DEADLINE_EXCEEDED = "context deadline exceeded"


class ConsolePendingAuthorisationError(Exception):
    """The console is waiting for authorisation before it can start."""

    def __init__(self, console: Console) -> None:
        super().__init__("console pending authorisation")
        self.console = console


class _Deadline:
    """The point in time by which an operation must finish; None means never."""

    def __init__(self, timeout: Optional[float]) -> None:
        self._end = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._end is None:
            return None
        return max(self._end - time.monotonic(), 0.0)


def _text(value: Any) -> str:
    return str(getattr(value, "value", value))


def _next_event(watch: Watch, deadline: _Deadline, describe: Callable[[], str]) -> Optional[WatchEvent]:
    try:
        return watch.next_event(deadline.remaining())
    except TimeoutError:
        raise TimeoutError(f"{describe()}: {_DEADLINE_EXCEEDED}") from None


def _has_subject(rb: Any, subject_name: str) -> bool:
    return any(subject.name == subject_name for subject in getattr(rb, "subjects", []) or [])


def _pod_failure(pod: Pod) -> KubeError:
    return KubeError(f"pod in unsuccessful state {_text(pod.phase)}: {pod.message}")


class Runner:
    """Manages the lifecycle of consoles through an API client."""

    def __init__(self, client: Client) -> None:
        self._client = client

    def create(self, opts: CreateOptions, timeout: Optional[float] = None) -> Console:
        """Create a console from the template the selector picks, wait until it
        is ready and optionally attach to it."""
        return self._create(opts.with_defaults(), _Deadline(timeout))

    def _create(self, opts: CreateOptions, deadline: _Deadline) -> Console:
        template = self.find_template_by_selector(opts.namespace, opts.selector)
        opts.hook.template_found(template)

        options = Options(
            cmd=list(opts.command),
            timeout=int(opts.timeout),
            reason=opts.reason,
            noninteractive=opts.noninteractive,
            labels=merge({}, opts.labels),
        )
        console = self.create_resource(template.metadata.namespace, template, options)
        opts.hook.console_created(console)

        try:
            self._wait_until_ready(console, False, deadline)
        except ConsolePendingAuthorisationError:
            try:
                rule = template.authorisation_rule_for(opts.command)
            except LookupError as err:
                raise LookupError(f"failed to get authorisation rule {err}") from err
            opts.hook.console_requires_authorisation(console, rule)

        console = self._wait_until_ready(console, True, deadline)
        opts.hook.console_ready(console)

        if opts.attach:
            self._attach(
                AttachOptions(
                    namespace=console.metadata.namespace,
                    name=console.metadata.name,
                    io=opts.io,
                    hook=opts.hook,
                ),
                deadline,
            )
        return console

    def get(self, opts: GetOptions) -> Console:
        """Fetch a console by namespace and name."""
        return self._client.get(Console, opts.namespace, opts.console_name)

    def attach(self, opts: AttachOptions, timeout: Optional[float] = None) -> None:
        """Attach to a running console, given its name."""
        self._attach(opts.with_defaults(), _Deadline(timeout))

    def _attach(self, opts: AttachOptions, deadline: _Deadline) -> None:
        console = self.find_console_by_name(opts.namespace, opts.name)
        try:
            pod, container_name = self.get_attachable_pod(console)
        except (KubeError, LookupError) as err:
            raise LookupError(f"could not find pod to attach to: {err}") from err

        opts.hook.attaching_to_console(console)

        streams = opts.io if opts.io is not None else IOStreams()
        interactive = not console.spec.noninteractive
        try:
            self._client.attach(pod, container_name, streams, interactive)
        except Exception as err:
            # The pod has most likely already finished, often because the
            # command ran to completion before we could attach.
            if f"container {container_name} not found in pod {pod.metadata.name}" in str(err):
                self._extract_logs(console, pod, container_name, streams, deadline)
                return
            try:
                self._extract_logs(console, pod, container_name, streams, deadline)
            except Exception:
                pass
            raise KubeError(f"failed to attach to console: {err}") from err

        if interactive:
            return
        # Streaming logs of a non-interactive console: follow it to the end.
        self._wait_for_success(console, deadline)

    def _extract_logs(
        self,
        console: Console,
        pod: Pod,
        container_name: str,
        streams: IOStreams,
        deadline: _Deadline,
    ) -> None:
        streams.out.write(self._client.pod_logs(pod, container_name))
        # Report the pod's outcome as though we had attached.
        self._wait_for_success(console, deadline)

    def _wait_for_success(self, console: Console, deadline: _Deadline) -> None:
        pod, _ = self.get_attachable_pod(console)
        watch = self._client.watch(Pod, pod.metadata.namespace, pod.metadata.name)
        try:
            # Fetch again now the watch is open, in case the pod finished before.
            try:
                pod, _ = self.get_attachable_pod(console)
            except NotFoundError:
                # The controller may already have removed a finished pod.
                return
            except (KubeError, LookupError) as err:
                raise KubeError(f"error retrieving pod: {err}") from err

            if pod.phase == POD_SUCCEEDED:
                return
            if pod.phase != POD_RUNNING:
                raise _pod_failure(pod)

            while True:
                last = pod
                event = _next_event(
                    watch, deadline, lambda: f"pod's last phase was: {_text(last.phase)}"
                )
                if event is None:
                    raise KubeError("watch channel closed")
                if not isinstance(event.object, Pod):
                    raise KubeError(
                        "received an event that didn't reference a pod, which is unexpected: "
                        f"{type(event.object).__name__}"
                    )
                pod = event.object
                if pod.phase == POD_SUCCEEDED:
                    return
                if pod.phase != POD_RUNNING:
                    raise _pod_failure(pod)
        finally:
            watch.stop()

    def authorise(self, opts: AuthoriseOptions, timeout: Optional[float] = None) -> None:
        """Add the user to the console's authorisations, optionally attaching."""
        opts = opts.with_defaults()
        deadline = _Deadline(timeout)

        patch = [
            {
                "op": "add",
                "path": "/spec/authorisations/-",
                "value": Subject(kind=USER_KIND, name=opts.username, namespace=opts.namespace),
            }
        ]
        authorisation = self._client.get(ConsoleAuthorisation, opts.namespace, opts.console_name)
        self._client.patch(authorisation, patch)

        if not opts.attach:
            return

        console = self.get(GetOptions(namespace=opts.namespace, console_name=opts.console_name))
        self._wait_until_ready(console, True, deadline)
        opts.hook.console_ready(console)
        self._attach(
            AttachOptions(
                namespace=opts.namespace,
                name=opts.console_name,
                io=opts.io,
                hook=opts.hook,
            ),
            deadline,
        )

    def list(self, opts: ListOptions) -> ConsoleSlice:
        """List consoles and print them as a table to ``opts.output``."""
        consoles = self.list_consoles_by_labels_and_user(opts.namespace, opts.username, opts.selector)
        consoles.print(opts.output if opts.output is not None else sys.stdout)
        return consoles

    def create_resource(self, namespace: str, template: ConsoleTemplate, opts: Options) -> Console:
        """Build a console from the template and options and submit it."""
        labels = validate_labels(merge(opts.labels, template.metadata.labels))
        console = Console(
            metadata=ObjectMeta(
                generate_name=template.metadata.name + "-",
                labels=labels,
                namespace=namespace,
            ),
            spec=ConsoleSpec(
                console_template_ref=template.metadata.name,
                # Zero lets the controller apply the template's default.
                timeout_seconds=opts.timeout,
                command=list(opts.cmd),
                reason=opts.reason,
                noninteractive=opts.noninteractive,
            ),
        )
        self._client.create(console)
        return console

    def find_template_by_selector(self, namespace: str, label_selector: str) -> ConsoleTemplate:
        """Return the one template matching the selector; raise if none or many match."""
        try:
            selector = parse_selector(label_selector)
        except InvalidLabelError as err:
            raise InvalidLabelError(f"invalid selector: {err}") from err
        try:
            templates = self._client.list(ConsoleTemplate, namespace, selector)
        except KubeError as err:
            raise KubeError(f"failed to list consoles templates: {err}") from err
        if len(templates) != 1:
            raise MultipleConsoleTemplateError(templates)
        return templates[0]

    def find_console_by_name(self, namespace: str, name: str) -> Console:
        """Find a console by name; an empty namespace searches all of them."""
        matching = [
            console
            for console in self._client.list(Console, namespace)
            if console.metadata.name == name
        ]
        if not matching:
            raise LookupError(f"no consoles found with name: {name}")
        if len(matching) > 1:
            raise LookupError(f"too many consoles found with name: {name}, please specify namespace")
        return matching[0]

    def list_consoles_by_labels_and_user(
        self, namespace: str, username: str, label_selector: str
    ) -> ConsoleSlice:
        """List consoles matching the selector, and the user unless it is empty."""
        try:
            selector = parse_selector(label_selector)
        except InvalidLabelError as err:
            raise InvalidLabelError(f"invalid selector: {err}") from err
        consoles = self._client.list(Console, namespace, selector)
        return ConsoleSlice(c for c in consoles if not username or c.spec.user == username)

    def wait_until_ready(
        self,
        created_console: Console,
        wait_for_authorisation: bool,
        timeout: Optional[float] = None,
    ) -> Console:
        """Wait until the console is running or stopped, then until its role
        binding grants the console user access."""
        return self._wait_until_ready(created_console, wait_for_authorisation, _Deadline(timeout))

    def _wait_until_ready(
        self, created: Console, wait_for_authorisation: bool, deadline: _Deadline
    ) -> Console:
        console = self._wait_for_console(created, wait_for_authorisation, deadline)
        self._wait_for_role_binding(console, deadline)
        return console

    def _wait_for_console(
        self, created: Console, wait_for_authorisation: bool, deadline: _Deadline
    ) -> Console:
        def settled(console: Optional[Console]) -> bool:
            if console is None:
                return False
            phase = console.status.phase
            if phase == ConsolePhase.RUNNING:
                return True
            if not wait_for_authorisation and phase == ConsolePhase.PENDING_AUTHORISATION:
                raise ConsolePendingAuthorisationError(console)
            # A stopped console may already have run to completion.
            return phase == ConsolePhase.STOPPED

        namespace, name = created.metadata.namespace, created.metadata.name
        watch = self._client.watch(Console, namespace, name)
        try:
            # The phase may have settled before the watch was opened.
            console: Optional[Console]
            try:
                console = self._client.get(Console, namespace, name)
            except NotFoundError:
                console = None
            except KubeError as err:
                raise KubeError(f"error retrieving console: {err}") from err

            while not settled(console):
                last = console

                def describe() -> str:
                    if last is None:
                        return "console not found"
                    return f"console's last phase was: {_text(last.status.phase)}"

                event = _next_event(watch, deadline, describe)
                if event is None:
                    raise KubeError("watch channel closed")
                console = event.object
            return console
        finally:
            watch.stop()

    def _wait_for_role_binding(self, console: Console, deadline: _Deadline) -> None:
        if console.status.phase == ConsolePhase.STOPPED:
            return

        namespace, name, user = console.metadata.namespace, console.metadata.name, console.spec.user
        watch = self._client.watch(RoleBinding, namespace, name)
        try:
            # The binding may already be complete, in which case no further
            # event would ever arrive.
            try:
                binding = self._client.get(RoleBinding, namespace, name)
            except KubeError:
                binding = None
            if binding is not None and _has_subject(binding, user):
                return

            while True:
                event = _next_event(watch, deadline, lambda: "waiting for rolebinding interrupted")
                if event is None:
                    raise KubeError("rolebinding event watcher channel closed")
                if _has_subject(event.object, user):
                    return
        finally:
            watch.stop()

    def get_attachable_pod(self, console: Console) -> tuple[Pod, str]:
        """Return the console's pod and the name of the container to attach to."""
        pod = self._client.get(Pod, console.metadata.namespace, console.status.pod_name)
        if not pod.containers:
            raise LookupError("no attachable pod found")
        if console.spec.noninteractive:
            return pod, pod.containers[0].name
        for container in pod.containers:
            if container.tty:
                return pod, container.name
        raise LookupError("no attachable pod found")