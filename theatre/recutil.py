"""Reconciliation helpers: resolving objects and creating or updating them."""

from __future__ import annotations

import copy
import dataclasses
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from theatre.kube import Client, ConflictError, DirectoryRoleBinding, NotFoundError, Role
from theatre.logsinks import EventRecorder, with_event_recorder, with_no_record

EVENT_REQUEST_START = "ReconcileRequestStart"
EVENT_NOT_FOUND = "ReconcileNotFound"
EVENT_START = "ReconcileStart"
EVENT_SKIPPED = "ReconcileSkipped"
EVENT_REQUEUED = "ReconcileRequeued"
EVENT_ERROR = "ReconcileError"
EVENT_COMPLETE = "ReconcileComplete"


class Outcome(str, Enum):
    """The operation performed by ``create_or_update``."""

    CREATE = "create"
    UPDATE = "update"
    NONE = "none"
    ERROR = "error"


@dataclass(frozen=True)
class Request:
    """Identifies the object to reconcile."""

    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass
class Result:
    """What the caller should do after a reconciliation."""

    requeue: bool = False
    requeue_after: float = 0.0


class ErrorCounter:
    """A thread-safe counter of errors, labelled by object kind."""

    def __init__(self, name: str = "", help: str = "") -> None:
        self.name = name
        self.help = help
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def inc(self, kind: str) -> None:
        with self._lock:
            self._counts[kind] = self._counts.get(kind, 0) + 1

    def value(self, kind: str) -> int:
        with self._lock:
            return self._counts.get(kind, 0)


RECONCILE_ERRORS_TOTAL = ErrorCounter(
    "theatre_reconcile_errors_total",
    "Counter of errors from reconcile loops, labelled by group_version_kind",
)


class Manager:
    """Hands out the API client and per-component event recorders."""

    def __init__(self, client: Client) -> None:
        self._client = client
        self._recorders: dict[str, EventRecorder] = {}
        self._lock = threading.Lock()

    def get_client(self) -> Client:
        return self._client

    def get_event_recorder_for(self, name: str) -> EventRecorder:
        with self._lock:
            recorder = self._recorders.get(name)
            if recorder is None:
                recorder = self._recorders[name] = EventRecorder(name)
            return recorder


def _has_metadata(obj_type: Any) -> bool:
    return (
        isinstance(getattr(obj_type, "kind", None), str)
        and dataclasses.is_dataclass(obj_type)
        and any(f.name == "metadata" for f in dataclasses.fields(obj_type))
    )


def _is_conflict(err: Optional[BaseException]) -> bool:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, ConflictError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


def resolve_and_reconcile(
    logger: Any,
    manager: Manager,
    obj_type: Any,
    inner: Callable[[Any, Request, Any], Optional[Result]],
) -> Callable[[Request], Result]:
    """Return a reconcile function that fetches the requested object before
    calling ``inner(logger, request, obj)``.

    Missing objects and objects being deleted are skipped. Errors are logged
    as events (conflicts without being recorded) and raised again.
    """

    def reconcile(request: Request) -> Result:
        log = logger.with_values("request", request)
        log.info(0, "Reconcile request start", "event", EVENT_REQUEST_START)

        if not _has_metadata(obj_type):
            raise TypeError("reconciled object does not have metadata")
        kind = obj_type.kind

        try:
            try:
                obj = manager.get_client().get(obj_type, request.namespace, request.name)
            except NotFoundError:
                log.info(0, "could not find event", "event", EVENT_NOT_FOUND)
                result = Result()
            else:
                log = with_event_recorder(log, manager.get_event_recorder_for("theatre"), obj)
                log.info(0, "Starting reconciliation", "event", EVENT_START)

                # Reconciling an object under deletion could recreate children
                # that block the deletion forever.
                if obj.metadata.is_being_deleted():
                    log.info(0, "Skipping reconciliation due to deletion", "event", EVENT_SKIPPED)
                    result = Result(requeue=False)
                else:
                    result = inner(log, request, obj)
                    if result is None:
                        result = Result()
        except Exception as err:
            # Conflicts are transient; keep them out of the object's events.
            if _is_conflict(err):
                with_no_record(log).info(0, str(err), "event", EVENT_ERROR, "error", err)
            else:
                log.info(0, str(err), "event", EVENT_ERROR, "error", err)
                RECONCILE_ERRORS_TOTAL.inc(kind)
            raise

        log.info(0, "Completed reconciliation", "event", EVENT_COMPLETE)
        return result

    return reconcile


def create_or_update(
    client: Client,
    existing: Any,
    diff_func: Callable[[Any, Any], Outcome],
) -> Outcome:
    """Ensure ``existing`` is in the cluster with the state it describes.

    If the object exists, ``existing`` is refreshed with the cluster's state
    and ``diff_func(expected, existing)`` decides whether to update it.
    """
    meta = existing.metadata
    expected = copy.deepcopy(existing)
    try:
        current = client.get(type(existing), meta.namespace, meta.name)
    except NotFoundError:
        client.create(existing)
        return Outcome.CREATE

    for f in dataclasses.fields(existing):
        setattr(existing, f.name, getattr(current, f.name))

    op = diff_func(expected, existing)
    if op == Outcome.UPDATE:
        client.update(existing)
        return Outcome.UPDATE
    if op == Outcome.NONE:
        return Outcome.NONE
    raise ValueError(f"unrecognised operation: {getattr(op, 'value', op)}")


def role_diff(expected: Role, existing: Role) -> Outcome:
    """Diff Roles by their rules, copying expected rules onto ``existing``."""
    if not isinstance(expected, Role) or not isinstance(existing, Role):
        raise TypeError("role_diff requires Role objects")
    if expected.rules != existing.rules:
        existing.rules = copy.deepcopy(expected.rules)
        return Outcome.UPDATE
    return Outcome.NONE


def directory_role_binding_diff(
    expected: DirectoryRoleBinding, existing: DirectoryRoleBinding
) -> Outcome:
    """Diff DirectoryRoleBindings by subjects and role reference."""
    if not isinstance(expected, DirectoryRoleBinding) or not isinstance(
        existing, DirectoryRoleBinding
    ):
        raise TypeError("directory_role_binding_diff requires DirectoryRoleBinding objects")
    operation = Outcome.NONE
    if expected.spec.subjects != existing.spec.subjects:
        existing.spec.subjects = copy.deepcopy(expected.spec.subjects)
        operation = Outcome.UPDATE
    if expected.spec.role_ref != existing.spec.role_ref:
        existing.spec.role_ref = copy.deepcopy(expected.spec.role_ref)
        operation = Outcome.UPDATE
    return operation