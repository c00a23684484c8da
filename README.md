# theatre

Building blocks for running short-lived, audited consoles against a
Kubernetes-style API: an object model with a thread-safe in-memory API client,
a console `Runner`, RBAC subject helpers, label selectors, reconciliation
utilities, structured logging that records events, and console lifecycle
events that can be handed to a publisher.

## Installing

```
pip install theatre
```

The package has no runtime dependencies. To run the test suite:

```
pip install "theatre[test]"
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `theatre.kube` | Object model (`ObjectMeta`, `Subject`, `RoleRef`, `PolicyRule`, `Role`, `RoleBinding`, `DirectoryRoleBinding`, `Container`, `Pod`), the in-memory `Client`, `Watch` / `WatchEvent` streams, and the `KubeError`, `NotFoundError` and `ConflictError` exceptions. |
| `theatre.rbac` | `diff(s1, s2)` and `includes_subject(ss, s)`, comparing subjects by kind, name and namespace. |
| `theatre.labels` | `merge`, `validate_labels`, `parse_selector` (comma separated `key=value` terms) and `matches`; bad input raises `InvalidLabelError`. |
| `theatre.logsinks` | `StructuredLogger` (logfmt-style lines on a standard `logging.Logger`), `EventRecorder`, `EventRecordingLogSink`, `with_labels`, `linear_label_key`, `with_no_record`, `with_event_recorder`. |
| `theatre.events` | Console events (`ConsoleRequestEvent`, `ConsoleAuthoriseEvent`, `ConsoleStartEvent`, `ConsoleAttachEvent`, `ConsoleTerminatedEvent`), `to_json` and `new_console_event_id`. |
| `theatre.publisher` | The abstract `Publisher` and `NopPublisher`, which always returns `"nop"`. |
| `theatre.pubsub` | `GooglePubSubPublisher`, which publishes JSON through a client you supply, with `PubsubFailedConnectError` and `PubsubFailedPublishError`. |
| `theatre.recutil` | `resolve_and_reconcile`, `create_or_update`, `role_diff`, `directory_role_binding_diff`, `Outcome`, `Request`, `Result`, `Manager` and the `ErrorCounter` `RECONCILE_ERRORS_TOTAL`. |
| `theatre.console` | `Console`, `ConsoleTemplate`, `ConsoleAuthorisation`, `ConsolePhase`, option dataclasses, `LifecycleHook` / `DefaultLifecycleHook`, `MultipleConsoleTemplateError` and `ConsoleSlice.print`. |
| `theatre.runner` | `Runner`: create, wait for, authorise, list and attach to consoles. |
| `theatre.signals` | `setup_signal_handler()`, returning a `threading.Event` set on SIGINT, SIGQUIT or SIGTERM and a function that sets it; a second signal raises `RuntimeError`. |

## Examples

Comparing RBAC subjects:

```python
from theatre.kube import Subject
from theatre.rbac import diff

wanted = [Subject(kind="User", name="alice@example.com"), Subject(kind="User", name="bob@example.com")]
present = [Subject(kind="User", name="alice@example.com")]

diff(wanted, present)
# [Subject(kind='User', name='bob@example.com', namespace='', api_group='')]
```

Labels and selectors:

```python
from theatre.labels import matches, merge, parse_selector

merge({"release": "a"}, {"release": "b", "team": "x"})  # {'release': 'b', 'team': 'x'}
parse_selector("release=test,team=x")                    # {'release': 'test', 'team': 'x'}
matches("release=test", {"release": "test", "app": "y"}) # True
```

Flattening label keys for log fields:

```python
from theatre.logsinks import StructuredLogger, linear_label_key, with_labels

linear_label_key("app.kubernetes.io/instance")  # "app_kubernetes_io_instance"
logger = with_labels(StructuredLogger(), {"app.kubernetes.io/instance": "web"}, "label_")
logger.values  # ('label_app_kubernetes_io_instance', 'web')
```

Console events:

```python
from datetime import datetime, timezone
from theatre.events import ConsoleStartEvent, ConsoleStartSpec, new_console_event_id, to_json

when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
event_id = new_console_event_id("cluster", "payments", "rails-console-abc12", when)
# "20240102030405/cluster/payments/rails-console-abc12"

event = ConsoleStartEvent(id=event_id, observed_at=when, spec=ConsoleStartSpec(job="job-1"))
event.event_kind()  # "Console/Start"
to_json(event)      # JSON with apiVersion, kind, event, observed_at, id, annotations and spec
```

Working with consoles through the in-memory client:

```python
from theatre.console import ConsoleTemplate, ListOptions, Options
from theatre.kube import Client, ObjectMeta
from theatre.runner import Runner

client = Client()
client.create(ConsoleTemplate(metadata=ObjectMeta(name="rails", namespace="payments",
                                                  labels={"release": "test"})))

runner = Runner(client)
template = runner.find_template_by_selector("payments", "release=test")
console = runner.create_resource("payments", template,
                                 Options(cmd=["/bin/rails", "console"], reason="incident"))
console.metadata.name  # "rails-" followed by five generated characters

runner.list(ListOptions(namespace="payments"))  # prints NAME NAMESPACE PHASE CREATED USER REASON
```

`Runner.create` and `Runner.wait_until_ready` block until the console's
`status.phase` becomes `Running` or `Stopped` and a `RoleBinding` named after
the console lists the console's user. If the phase is `Pending Authorisation`
during creation, the hook's `console_requires_authorisation` is called and the
runner keeps waiting until `Runner.authorise` adds an authorisation. Pass
`timeout=` in seconds; when it runs out a `TimeoutError` is raised, for example
`"waiting for rolebinding interrupted: context deadline exceeded"`.

Reconciling a role:

```python
from theatre.recutil import Outcome, create_or_update, role_diff

outcome = create_or_update(client, role, role_diff)
if outcome is Outcome.UPDATE:
    ...
```

## What this package does not do

- `theatre.kube.Client` keeps objects in memory. It does not connect to a
  real cluster, and nothing in the package moves consoles through their
  phases, creates their pods or role bindings: that is left to whatever code
  drives the client. `Client.attach` writes the container's recorded `output`
  (or calls an `attach_handler` you pass in); there is no terminal session.
- `GooglePubSubPublisher` bundles no Pub/Sub library; you pass a
  `client_factory` that returns a client with the described `topic` API.
- There is no command-line program and no controller or server process.