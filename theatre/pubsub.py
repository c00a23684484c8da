"""Publishing console events to a Google Pub/Sub topic."""

from __future__ import annotations

from typing import Any, Callable

from theatre.events import to_json
from theatre.publisher import Publisher


class PubsubFailedConnectError(Exception):
    """Connecting to the Pub/Sub service failed."""

    def __init__(self, err: BaseException) -> None:
        super().__init__(f"failed to connect to pubsub topic: {err}")
        self.err = err


class PubsubFailedPublishError(Exception):
    """A message could not be published to a topic."""

    def __init__(self, err: BaseException, topic: str, message: Any) -> None:
        super().__init__(f"failed to publish message '{message}' to topic '{topic}': {err}")
        self.err = err
        self.topic = topic
        self.message = message


class GooglePubSubPublisher(Publisher):
    """Publishes JSON-encoded messages to a Pub/Sub topic.

    ``client_factory(project_name)`` returns a client whose ``topic(name)``
    gives a topic object. The topic has an ``id`` attribute, a
    ``publish(data)`` method returning a future whose ``result()`` is the
    message ID, and a ``stop()`` method.
    """

    def __init__(
        self,
        project_name: str,
        topic_name: str,
        client_factory: Callable[[str], Any],
    ) -> None:
        try:
            self._client = client_factory(project_name)
        except Exception as err:
            raise PubsubFailedConnectError(err) from err
        self._topic = self._client.topic(topic_name)

    def stop(self) -> None:
        """Flush and stop the topic's background publishing."""
        self._topic.stop()

    def publish(self, msg: Any) -> str:
        """Publish ``msg`` as JSON and return the message ID."""
        try:
            data = to_json(msg).encode("utf-8")
        except (TypeError, ValueError) as err:
            raise PubsubFailedPublishError(err, self._topic.id, msg) from err
        return self._topic.publish(data).result()