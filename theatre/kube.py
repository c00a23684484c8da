"""Kubernetes API objects and a thread-safe in-memory API client.

The client keeps objects keyed by kind, namespace and name. Create, update
and patch notify open watches the way the API server does. Objects are
copied on the way in and out, so callers never share state with the store.
"""

from __future__ import annotations

import copy
import dataclasses
import itertools
import queue
import random
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Mapping, Optional

USER_KIND = "User"

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
POD_UNKNOWN = "Unknown"

_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_NAME_SUFFIX_LENGTH = 5


class KubeError(Exception):
    """An error returned by the API."""


class NotFoundError(KubeError):
    """The requested object does not exist."""


class ConflictError(KubeError):
    """The object was modified since it was read."""


@dataclass
class ObjectMeta:
    """Metadata common to every API object."""

    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    def is_being_deleted(self) -> bool:
        """True once a deletion timestamp has been set."""
        return self.deletion_timestamp is not None


@dataclass
class Subject:
    """A user, group or service account referenced by a binding."""

    kind: str
    name: str
    namespace: str = ""
    api_group: str = ""


@dataclass
class RoleRef:
    """The role that a binding grants."""

    kind: str = ""
    name: str = ""
    api_group: str = ""


@dataclass
class PolicyRule:
    """A single permission rule of a role."""

    verbs: list[str] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(default_factory=list)


@dataclass
class Role:
    kind: ClassVar[str] = "Role"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    rules: list[PolicyRule] = field(default_factory=list)


@dataclass
class RoleBinding:
    kind: ClassVar[str] = "RoleBinding"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    subjects: list[Subject] = field(default_factory=list)
    role_ref: RoleRef = field(default_factory=RoleRef)


@dataclass
class DirectoryRoleBindingSpec:
    subjects: list[Subject] = field(default_factory=list)
    role_ref: RoleRef = field(default_factory=RoleRef)


@dataclass
class DirectoryRoleBinding:
    kind: ClassVar[str] = "DirectoryRoleBinding"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: DirectoryRoleBindingSpec = field(default_factory=DirectoryRoleBindingSpec)


@dataclass
class Container:
    """A pod container; ``output`` is what the container has written so far."""

    name: str
    image: str = ""
    tty: bool = False
    output: str = ""


@dataclass
class Pod:
    kind: ClassVar[str] = "Pod"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    containers: list[Container] = field(default_factory=list)
    phase: str = POD_PENDING
    message: str = ""


@dataclass
class WatchEvent:
    """A change to a watched object."""

    type: str
    object: Any


_CLOSED = object()


class Watch:
    """A stream of watch events; ``next_event`` returns None once closed."""

    def __init__(self, on_stop: Optional[Callable[["Watch"], None]] = None) -> None:
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._on_stop = on_stop

    def put(self, event: WatchEvent) -> None:
        """Deliver an event, unless the watch is closed."""
        with self._lock:
            if not self._closed:
                self._queue.put(event)

    def close(self) -> None:
        """Close the stream; pending events are still delivered first."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSED)

    def stop(self) -> None:
        """Close the stream and detach it from its source."""
        self.close()
        on_stop, self._on_stop = self._on_stop, None
        if on_stop is not None:
            on_stop(self)

    def next_event(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        """Wait for the next event; raise TimeoutError if none arrives in time."""
        if timeout is not None:
            timeout = max(timeout, 0.0)
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("timed out waiting for watch event") from None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item


def _kind_name(kind: Any) -> str:
    return kind if isinstance(kind, str) else kind.kind


def _attribute_name(token: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", token).lower()


def _child(node: Any, token: str) -> Any:
    if isinstance(node, list):
        try:
            return node[int(token)]
        except (ValueError, IndexError):
            raise KubeError(f"invalid index {token!r} in patch path") from None
    if isinstance(node, dict):
        try:
            return node[token]
        except KeyError:
            raise KubeError(f"missing key {token!r} in patch path") from None
    name = _attribute_name(token)
    if not hasattr(node, name):
        raise KubeError(f"missing field {token!r} in patch path")
    return getattr(node, name)


def _apply_operation(target: Any, operation: Mapping[str, Any]) -> None:
    op = operation.get("op")
    path = operation.get("path", "")
    if not path.startswith("/"):
        raise KubeError(f"invalid patch path: {path!r}")
    tokens = [t.replace("~1", "/").replace("~0", "~") for t in path[1:].split("/")]
    parent = target
    for token in tokens[:-1]:
        parent = _child(parent, token)
    last = tokens[-1]
    value = copy.deepcopy(operation.get("value"))

    if op not in ("add", "replace", "remove"):
        raise KubeError(f"unsupported patch operation: {op!r}")

    if isinstance(parent, list):
        if op == "add":
            if last == "-":
                parent.append(value)
                return
            try:
                index = int(last)
            except ValueError:
                raise KubeError(f"invalid index {last!r} in patch path") from None
            if not 0 <= index <= len(parent):
                raise KubeError(f"index {index} out of range in patch path")
            parent.insert(index, value)
            return
        try:
            index = int(last)
            if op == "replace":
                parent[index] = value
            else:
                del parent[index]
        except (ValueError, IndexError):
            raise KubeError(f"invalid index {last!r} in patch path") from None
        return

    if isinstance(parent, dict):
        if op != "add" and last not in parent:
            raise KubeError(f"missing key {last!r} in patch path")
        if op == "remove":
            del parent[last]
        else:
            parent[last] = value
        return

    name = _attribute_name(last)
    if not hasattr(parent, name):
        raise KubeError(f"missing field {last!r} in patch path")
    if op == "remove":
        raise KubeError(f"cannot remove field {last!r}")
    setattr(parent, name, value)


class Client:
    """An in-memory API server client.

    ``attach_handler``, if given, is called as
    ``handler(pod, container_name, streams, tty)`` on attach; otherwise the
    container's output is written to ``streams.out``. Streams carry the
    attributes ``in_``, ``out`` and ``err_out``.
    """

    def __init__(self, attach_handler: Optional[Callable[..., None]] = None) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._watches: list[tuple[str, str, str, Watch]] = []
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._attach_handler = attach_handler

    @staticmethod
    def _key(obj: Any) -> tuple[str, str, str]:
        return (obj.kind, obj.metadata.namespace, obj.metadata.name)

    def _lookup(self, kind: str, namespace: str, name: str) -> Any:
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f'{kind} "{name}" not found') from None

    def _notify(self, event_type: str, obj: Any) -> None:
        kind, namespace, name = self._key(obj)
        for w_kind, w_namespace, w_name, watch in self._watches:
            if w_kind != kind:
                continue
            if w_namespace and w_namespace != namespace:
                continue
            if w_name and w_name != name:
                continue
            watch.put(WatchEvent(event_type, copy.deepcopy(obj)))

    def _generate_name(self, kind: str, namespace: str, prefix: str) -> str:
        while True:
            name = prefix + "".join(random.choices(_NAME_ALPHABET, k=_NAME_SUFFIX_LENGTH))
            if (kind, namespace, name) not in self._objects:
                return name

    def get(self, kind: Any, namespace: str, name: str) -> Any:
        """Return a copy of the stored object."""
        with self._lock:
            return copy.deepcopy(self._lookup(_kind_name(kind), namespace, name))

    def list(
        self,
        kind: Any,
        namespace: str = "",
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> list[Any]:
        """Return copies of matching objects; an empty namespace means all."""
        kind = _kind_name(kind)
        selector = dict(label_selector or {})
        with self._lock:
            found = [
                copy.deepcopy(obj)
                for (o_kind, o_namespace, _), obj in self._objects.items()
                if o_kind == kind
                and (not namespace or o_namespace == namespace)
                and all(obj.metadata.labels.get(k) == v for k, v in selector.items())
            ]
        return sorted(found, key=lambda o: (o.metadata.namespace, o.metadata.name))

    def create(self, obj: Any) -> Any:
        """Store a new object, filling in its name and server-set metadata."""
        with self._lock:
            meta = obj.metadata
            if not meta.name:
                if not meta.generate_name:
                    raise KubeError("name or generateName is required")
                meta.name = self._generate_name(obj.kind, meta.namespace, meta.generate_name)
            key = self._key(obj)
            if key in self._objects:
                raise KubeError(f'{obj.kind} "{meta.name}" already exists')
            meta.resource_version = str(next(self._versions))
            if meta.creation_timestamp is None:
                meta.creation_timestamp = datetime.now(timezone.utc).replace(microsecond=0)
            stored = copy.deepcopy(obj)
            self._objects[key] = stored
            self._notify(ADDED, stored)
        return obj

    def update(self, obj: Any) -> Any:
        """Replace a stored object, refusing stale resource versions."""
        with self._lock:
            kind, namespace, name = self._key(obj)
            stored = self._lookup(kind, namespace, name)
            meta = obj.metadata
            if meta.resource_version and meta.resource_version != stored.metadata.resource_version:
                raise ConflictError(
                    f'Operation cannot be fulfilled on {kind} "{name}": the object has been '
                    "modified; please apply your changes to the latest version and try again"
                )
            meta.resource_version = str(next(self._versions))
            meta.creation_timestamp = stored.metadata.creation_timestamp
            replacement = copy.deepcopy(obj)
            self._objects[(kind, namespace, name)] = replacement
            self._notify(MODIFIED, replacement)
        return obj

    def patch(self, obj: Any, patch: list[Mapping[str, Any]]) -> Any:
        """Apply JSON patch operations to the stored object and refresh ``obj``."""
        with self._lock:
            kind, namespace, name = self._key(obj)
            target = copy.deepcopy(self._lookup(kind, namespace, name))
            for operation in patch:
                _apply_operation(target, operation)
            target.metadata.resource_version = str(next(self._versions))
            self._objects[(kind, namespace, name)] = target
            self._notify(MODIFIED, target)
            result = copy.deepcopy(target)
        for f in dataclasses.fields(obj):
            setattr(obj, f.name, getattr(result, f.name))
        return obj

    def watch(self, kind: Any, namespace: str = "", name: str = "") -> Watch:
        """Open a watch on objects of a kind, optionally one namespace or name."""
        watch = Watch(on_stop=self._remove_watch)
        with self._lock:
            self._watches.append((_kind_name(kind), namespace, name, watch))
        return watch

    def _remove_watch(self, watch: Watch) -> None:
        with self._lock:
            self._watches = [w for w in self._watches if w[3] is not watch]

    def attach(self, pod: Pod, container_name: str, streams: Any, tty: bool = False) -> None:
        """Attach to a running container of a pod."""
        with self._lock:
            stored = copy.deepcopy(self._lookup(Pod.kind, pod.metadata.namespace, pod.metadata.name))
        container = next((c for c in stored.containers if c.name == container_name), None)
        if container is None or stored.phase != POD_RUNNING:
            raise KubeError(f"container {container_name} not found in pod {pod.metadata.name}")
        if self._attach_handler is not None:
            self._attach_handler(stored, container_name, streams, tty)
        else:
            streams.out.write(container.output)

    def pod_logs(self, pod: Pod, container_name: str) -> str:
        """Return everything a container has written."""
        with self._lock:
            stored = self._lookup(Pod.kind, pod.metadata.namespace, pod.metadata.name)
            for container in stored.containers:
                if container.name == container_name:
                    return container.output
        raise KubeError(f"container {container_name} is not valid for pod {pod.metadata.name}")