import signal

import pytest

from theatre.signals import setup_signal_handler

_NAMES = ("SIGINT", "SIGQUIT", "SIGTERM")


@pytest.fixture(autouse=True)
def restore_handlers():
    saved = {
        getattr(signal, n): signal.getsignal(getattr(signal, n))
        for n in _NAMES
        if hasattr(signal, n)
    }
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


def test_first_signal_sets_event():
    stop, _ = setup_signal_handler()
    assert stop.is_set() is False
    signal.raise_signal(signal.SIGTERM)
    assert stop.is_set() is True


def test_second_signal_raises():
    stop, _ = setup_signal_handler()
    signal.raise_signal(signal.SIGTERM)
    with pytest.raises(RuntimeError, match="received second signal, exiting immediately"):
        signal.raise_signal(signal.SIGTERM)
    assert stop.is_set() is True


def test_cancel_sets_event_without_counting_as_signal():
    stop, cancel = setup_signal_handler()
    cancel()
    assert stop.is_set() is True
    signal.raise_signal(signal.SIGTERM)
    assert stop.is_set() is True


def test_sigint_also_sets_event():
    stop, _ = setup_signal_handler()
    assert stop.is_set() is False
    signal.raise_signal(signal.SIGINT)
    assert stop.is_set() is True