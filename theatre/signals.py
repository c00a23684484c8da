"""Cancellation on termination signals."""

from __future__ import annotations

import signal
import threading
from typing import Callable

_SIGNAL_NAMES = ("SIGINT", "SIGQUIT", "SIGTERM")


def setup_signal_handler() -> tuple[threading.Event, Callable[[], None]]:
    """Install handlers for SIGINT, SIGQUIT and SIGTERM.

    Returns an event that is set on the first signal, and a function that sets
    it directly. A second signal raises RuntimeError to stop immediately.
    Must be called from the main thread.
    """
    stop = threading.Event()
    received = 0

    def handle(signum, frame):
        nonlocal received
        received += 1
        if received > 1:
            raise RuntimeError("received second signal, exiting immediately")
        stop.set()

    for name in _SIGNAL_NAMES:
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, handle)

    return stop, stop.set