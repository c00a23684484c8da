import io
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from theatre.kube import (
    ADDED,
    MODIFIED,
    POD_RUNNING,
    POD_SUCCEEDED,
    Client,
    ConflictError,
    Container,
    DirectoryRoleBinding,
    DirectoryRoleBindingSpec,
    KubeError,
    NotFoundError,
    ObjectMeta,
    Pod,
    PolicyRule,
    Role,
    RoleBinding,
    RoleRef,
    Subject,
    Watch,
    WatchEvent,
)


def _role(name="reader", namespace="ns", labels=None):
    return Role(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        rules=[PolicyRule(verbs=["get"], resources=["pods"])],
    )


def _streams():
    return SimpleNamespace(in_=None, out=io.StringIO(), err_out=io.StringIO())


def test_create_and_get_round_trip():
    client = Client()
    role = _role()
    client.create(role)
    got = client.get("Role", "ns", "reader")
    assert got.rules == role.rules
    assert got is not role
    assert got.metadata.resource_version == role.metadata.resource_version
    assert got.metadata.creation_timestamp is not None


def test_get_accepts_class_as_kind():
    client = Client()
    client.create(_role())
    assert client.get(Role, "ns", "reader").metadata.name == "reader"


def test_create_generates_name():
    client = Client()
    pod = Pod(metadata=ObjectMeta(generate_name="console-", namespace="ns"))
    client.create(pod)
    assert pod.metadata.name.startswith("console-")
    assert len(pod.metadata.name) > len("console-")
    assert client.get("Pod", "ns", pod.metadata.name).metadata.name == pod.metadata.name


def test_create_without_name_fails():
    with pytest.raises(KubeError):
        Client().create(Pod(metadata=ObjectMeta(namespace="ns")))


def test_create_duplicate_fails():
    client = Client()
    client.create(_role())
    with pytest.raises(KubeError):
        client.create(_role())


def test_get_missing_raises_not_found():
    with pytest.raises(NotFoundError):
        Client().get("Role", "ns", "missing")


def test_list_filters_namespace_and_labels():
    client = Client()
    client.create(_role("b", "ns1", {"app": "x"}))
    client.create(_role("a", "ns1", {"app": "y"}))
    client.create(_role("c", "ns2", {"app": "x"}))
    assert [r.metadata.name for r in client.list("Role", "ns1")] == ["a", "b"]
    assert [r.metadata.name for r in client.list("Role", "", {"app": "x"})] == ["b", "c"]
    assert client.list("Role", "ns2", {"app": "y"}) == []


def test_update_with_stale_version_conflicts():
    client = Client()
    client.create(_role())
    first = client.get("Role", "ns", "reader")
    second = client.get("Role", "ns", "reader")
    first.rules = []
    client.update(first)
    assert client.get("Role", "ns", "reader").rules == []
    with pytest.raises(ConflictError):
        client.update(second)


def test_update_missing_raises_not_found():
    with pytest.raises(NotFoundError):
        Client().update(_role())


def test_patch_appends_to_list_and_refreshes_object():
    client = Client()
    apply_ops = client.patch
    drb = DirectoryRoleBinding(
        metadata=ObjectMeta(name="drb", namespace="ns"),
        spec=DirectoryRoleBindingSpec(role_ref=RoleRef(kind="Role", name="reader")),
    )
    client.create(drb)
    subject = Subject(kind="User", name="alice@example.com", namespace="ns")
    apply_ops(drb, [{"op": "add", "path": "/spec/subjects/-", "value": subject}])
    assert drb.spec.subjects == [subject]
    assert client.get("DirectoryRoleBinding", "ns", "drb").spec.subjects == [subject]


def test_patch_replace_uses_camel_case_path():
    client = Client()
    apply_ops = client.patch
    drb = DirectoryRoleBinding(metadata=ObjectMeta(name="drb", namespace="ns"))
    client.create(drb)
    apply_ops(drb, [{"op": "replace", "path": "/spec/roleRef/name", "value": "admin"}])
    assert client.get("DirectoryRoleBinding", "ns", "drb").spec.role_ref.name == "admin"


def test_patch_unknown_operation_fails():
    client = Client()
    apply_ops = client.patch
    drb = DirectoryRoleBinding(metadata=ObjectMeta(name="drb", namespace="ns"))
    client.create(drb)
    with pytest.raises(KubeError):
        apply_ops(drb, [{"op": "move", "path": "/spec/subjects"}])


def test_watch_receives_matching_events_only():
    client = Client()
    watch = client.watch("RoleBinding", "ns", "rb")
    client.create(RoleBinding(metadata=ObjectMeta(name="other", namespace="ns")))
    rb = RoleBinding(metadata=ObjectMeta(name="rb", namespace="ns"))
    client.create(rb)
    event = watch.next_event(1)
    assert event.type == ADDED
    assert event.object.metadata.name == "rb"
    rb.subjects = [Subject(kind="User", name="alice@example.com")]
    client.update(rb)
    event = watch.next_event(1)
    assert event.type == MODIFIED
    assert event.object.subjects == rb.subjects
    with pytest.raises(TimeoutError):
        watch.next_event(0.05)


def test_stopped_watch_reports_closed():
    client = Client()
    watch = client.watch("Role")
    watch.stop()
    client.create(_role())
    assert watch.next_event(1) is None
    assert watch.next_event(1) is None


def test_watch_put_and_close():
    watch = Watch()
    event = WatchEvent(ADDED, "payload")
    watch.put(event)
    watch.close()
    watch.put(WatchEvent(ADDED, "ignored"))
    assert watch.next_event(1) is event
    assert watch.next_event(1) is None


def test_attach_writes_container_output():
    client = Client()
    pod = Pod(
        metadata=ObjectMeta(name="p", namespace="ns"),
        containers=[Container(name="c", output="hello\n")],
        phase=POD_RUNNING,
    )
    client.create(pod)
    streams = _streams()
    client.attach(pod, "c", streams)
    assert streams.out.getvalue() == "hello\n"


def test_attach_calls_handler():
    calls = []
    client = Client(attach_handler=lambda p, c, s, t: calls.append((p.metadata.name, c, t)))
    pod = Pod(
        metadata=ObjectMeta(name="p", namespace="ns"),
        containers=[Container(name="c", tty=True)],
        phase=POD_RUNNING,
    )
    client.create(pod)
    client.attach(pod, "c", _streams(), tty=True)
    assert calls == [("p", "c", True)]


def test_attach_to_finished_pod_reports_missing_container():
    client = Client()
    pod = Pod(
        metadata=ObjectMeta(name="p", namespace="ns"),
        containers=[Container(name="c")],
        phase=POD_SUCCEEDED,
    )
    client.create(pod)
    with pytest.raises(KubeError, match="container c not found in pod p"):
        client.attach(pod, "c", _streams())


def test_pod_logs():
    client = Client()
    pod = Pod(
        metadata=ObjectMeta(name="p", namespace="ns"),
        containers=[Container(name="c", output="done\n")],
    )
    client.create(pod)
    assert client.pod_logs(pod, "c") == "done\n"
    with pytest.raises(KubeError):
        client.pod_logs(pod, "missing")


def test_is_being_deleted():
    meta = ObjectMeta(name="x")
    assert meta.is_being_deleted() is False
    meta.deletion_timestamp = datetime.now(timezone.utc)
    assert meta.is_being_deleted() is True