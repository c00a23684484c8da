from datetime import datetime, timezone

import pytest

from theatre.kube import (
    Client,
    ConflictError,
    DirectoryRoleBinding,
    DirectoryRoleBindingSpec,
    KubeError,
    ObjectMeta,
    PolicyRule,
    Role,
    RoleRef,
    Subject,
)
from theatre.recutil import (
    RECONCILE_ERRORS_TOTAL,
    ErrorCounter,
    Manager,
    Outcome,
    Request,
    Result,
    create_or_update,
    directory_role_binding_diff,
    resolve_and_reconcile,
    role_diff,
)


class RecordingLogger:
    def __init__(self, lines=None, values=()):
        self.lines = lines if lines is not None else []
        self.values = values

    def enabled(self, level):
        return True

    def with_name(self, name):
        return self

    def with_values(self, *args):
        return RecordingLogger(self.lines, self.values + args)

    def info(self, level, msg, *args):
        kv = self.values + args
        self.lines.append((msg, dict(zip(kv[0::2], kv[1::2]))))

    def error(self, err, msg, *args):
        self.lines.append((msg, {"error": err}))


def logged_events(logger):
    return [kv.get("event") for _, kv in logger.lines]


def make_role(name="role", rules=None, deleted=False):
    meta = ObjectMeta(name=name, namespace="ns")
    if deleted:
        meta.deletion_timestamp = datetime.now(timezone.utc)
    return Role(metadata=meta, rules=rules if rules is not None else [PolicyRule(verbs=["get"])])


def recorded(manager):
    return [e[1:] for e in manager.get_event_recorder_for("theatre").events]


def setup(objects=()):
    client = Client()
    for obj in objects:
        client.create(obj)
    return Manager(client), RecordingLogger()


def test_not_found_completes_without_calling_inner():
    manager, logger = setup()
    calls = []
    reconcile = resolve_and_reconcile(logger, manager, Role, lambda *a: calls.append(a))
    assert reconcile(Request("ns", "missing")) == Result()
    assert calls == []
    assert logged_events(logger) == [
        "ReconcileRequestStart",
        "ReconcileNotFound",
        "ReconcileComplete",
    ]
    assert recorded(manager) == []


def test_found_object_is_passed_to_inner_and_events_recorded():
    manager, logger = setup([make_role()])
    seen = []

    def inner(log, request, obj):
        seen.append((request, obj))
        return Result(requeue=True)

    result = resolve_and_reconcile(logger, manager, Role, inner)(Request("ns", "role"))
    assert result.requeue is True
    assert seen[0][1].metadata.name == "role"
    assert seen[0][0] == Request("ns", "role")
    assert recorded(manager) == [
        ("Normal", "ReconcileStart", "Starting reconciliation"),
        ("Normal", "ReconcileComplete", "Completed reconciliation"),
    ]


def test_deleted_object_is_skipped():
    manager, logger = setup([make_role(deleted=True)])
    calls = []
    result = resolve_and_reconcile(logger, manager, Role, lambda *a: calls.append(a))(
        Request("ns", "role")
    )
    assert result.requeue is False
    assert calls == []
    assert ("Normal", "ReconcileSkipped", "Skipping reconciliation due to deletion") in recorded(
        manager
    )


def test_inner_error_is_recorded_and_counted():
    manager, logger = setup([make_role()])
    before = RECONCILE_ERRORS_TOTAL.value("Role")

    def inner(log, request, obj):
        raise KubeError("boom")

    with pytest.raises(KubeError, match="boom"):
        resolve_and_reconcile(logger, manager, Role, inner)(Request("ns", "role"))
    assert recorded(manager) == [
        ("Normal", "ReconcileStart", "Starting reconciliation"),
        ("Warning", "ReconcileError", "boom"),
    ]
    assert RECONCILE_ERRORS_TOTAL.value("Role") == before + 1


@pytest.mark.parametrize("wrapped", [False, True])
def test_conflict_is_logged_but_not_recorded_or_counted(wrapped):
    manager, logger = setup([make_role()])
    before = RECONCILE_ERRORS_TOTAL.value("Role")

    def inner(log, request, obj):
        if wrapped:
            raise KubeError("wrapped") from ConflictError("conflict")
        raise ConflictError("conflict")

    with pytest.raises(KubeError):
        resolve_and_reconcile(logger, manager, Role, inner)(Request("ns", "role"))
    assert recorded(manager) == [("Normal", "ReconcileStart", "Starting reconciliation")]
    assert "ReconcileError" in logged_events(logger)
    assert RECONCILE_ERRORS_TOTAL.value("Role") == before


def test_object_type_without_metadata():
    manager, logger = setup()
    reconcile = resolve_and_reconcile(logger, manager, str, lambda *a: None)
    with pytest.raises(TypeError, match="does not have metadata"):
        reconcile(Request("ns", "x"))


def test_create_or_update_creates_missing_object():
    client = Client()
    role = make_role()
    assert create_or_update(client, role, role_diff) == Outcome.CREATE
    assert client.get(Role, "ns", "role").rules == role.rules


def test_create_or_update_none_when_equal():
    client = Client()
    client.create(make_role())
    assert create_or_update(client, make_role(), role_diff) == Outcome.NONE


def test_create_or_update_updates_changed_rules():
    client = Client()
    client.create(make_role())
    wanted = [PolicyRule(verbs=["list", "watch"])]
    desired = make_role(rules=wanted)
    assert create_or_update(client, desired, role_diff) == Outcome.UPDATE
    assert client.get(Role, "ns", "role").rules == wanted
    assert desired.rules == wanted


def test_create_or_update_unrecognised_operation():
    client = Client()
    client.create(make_role())
    with pytest.raises(ValueError, match="unrecognised operation: error"):
        create_or_update(client, make_role(), lambda expected, existing: Outcome.ERROR)


def test_role_diff_copies_rules():
    expected = make_role(rules=[PolicyRule(verbs=["delete"])])
    existing = make_role()
    assert role_diff(expected, existing) == Outcome.UPDATE
    assert existing.rules == expected.rules
    assert role_diff(expected, existing) == Outcome.NONE


def make_binding(subjects, role_name="viewer"):
    return DirectoryRoleBinding(
        metadata=ObjectMeta(name="b", namespace="ns"),
        spec=DirectoryRoleBindingSpec(
            subjects=subjects, role_ref=RoleRef(kind="Role", name=role_name)
        ),
    )


def test_directory_role_binding_diff_subjects():
    expected = make_binding([Subject(kind="User", name="alice@example.com")])
    existing = make_binding([])
    assert directory_role_binding_diff(expected, existing) == Outcome.UPDATE
    assert existing.spec.subjects == expected.spec.subjects


def test_directory_role_binding_diff_role_ref():
    expected = make_binding([], role_name="admin")
    existing = make_binding([])
    assert directory_role_binding_diff(expected, existing) == Outcome.UPDATE
    assert existing.spec.role_ref == expected.spec.role_ref


def test_directory_role_binding_diff_none():
    assert directory_role_binding_diff(make_binding([]), make_binding([])) == Outcome.NONE


def test_error_counter():
    counter = ErrorCounter()
    counter.inc("Console")
    counter.inc("Console")
    assert counter.value("Console") == 2
    assert counter.value("Role") == 0


def test_manager_reuses_recorders():
    manager = Manager(Client())
    recorder = manager.get_event_recorder_for("theatre")
    assert manager.get_event_recorder_for("theatre") is recorder
    assert recorder.component == "theatre"