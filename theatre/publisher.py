"""Publishers of console events."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Publisher(ABC):
    """Sends a message somewhere and returns an identifier for it."""

    @abstractmethod
    def publish(self, msg: Any) -> str:
        """Publish ``msg`` and return its message ID."""


class NopPublisher(Publisher):
    """A publisher that discards every message."""

    def publish(self, msg: Any) -> str:
        return "nop"