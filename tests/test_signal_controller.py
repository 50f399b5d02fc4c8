import os
import select
import signal
import time

import pytest

from sendpkt_engine import SignalController, SignalEvent, default_signal_map


def wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_flags_start_clear(controller):
    assert not any(controller.pending(event) for event in SignalEvent)


def test_take_clears_exactly_once(controller):
    controller.notify(SignalEvent.REPORT)
    assert controller.take(SignalEvent.REPORT) is True
    assert controller.take(SignalEvent.REPORT) is False
    assert not controller.pending(SignalEvent.REPORT)


def test_flags_are_independent(controller):
    controller.notify(SignalEvent.HANGUP)
    assert controller.take(SignalEvent.STOP) is False
    assert controller.take(SignalEvent.ALARM) is False
    assert controller.take(SignalEvent.HANGUP) is True


def test_new_event_after_take_is_kept(controller):
    controller.notify(SignalEvent.REPORT)
    assert controller.take(SignalEvent.REPORT)
    controller.notify(SignalEvent.REPORT)
    assert controller.take(SignalEvent.REPORT)


def test_notify_makes_wakeup_readable(controller):
    readable, _, _ = select.select([controller.fileno()], [], [], 0)
    assert readable == []

    controller.notify(SignalEvent.STOP, source="test")
    readable, _, _ = select.select([controller.fileno()], [], [], 0)
    assert readable == [controller.fileno()]
    assert controller.source(SignalEvent.STOP) == "test"

    controller.drain()
    readable, _, _ = select.select([controller.fileno()], [], [], 0)
    assert readable == []


def test_notify_survives_full_pipe(controller):
    for _ in range(100000):
        controller.notify(SignalEvent.REPORT)
    controller.drain()
    assert controller.pending(SignalEvent.REPORT)


def test_default_map_covers_all_events():
    mapping = default_signal_map()
    assert mapping[signal.SIGINT] is SignalEvent.STOP
    assert mapping[signal.SIGTERM] is SignalEvent.STOP
    assert mapping[signal.SIGALRM] is SignalEvent.ALARM
    assert mapping[signal.SIGHUP] is SignalEvent.HANGUP
    assert set(mapping.values()) == set(SignalEvent)


@pytest.fixture
def installed():
    controller = SignalController()
    previous = signal.getsignal(signal.SIGHUP)
    controller.install()
    yield controller
    controller.close()
    assert signal.getsignal(signal.SIGHUP) == previous


def test_delivered_signal_sets_flag_and_wakes(installed):
    os.kill(os.getpid(), signal.SIGHUP)
    assert wait_for(lambda: installed.pending(SignalEvent.HANGUP))
    assert installed.source(SignalEvent.HANGUP) == 'SIGHUP'

    readable, _, _ = select.select([installed.fileno()], [], [], 1.0)
    assert readable == [installed.fileno()]


def test_report_signal(installed):
    report_signal = getattr(signal, 'SIGINFO', signal.SIGUSR1)
    os.kill(os.getpid(), report_signal)
    assert wait_for(lambda: installed.pending(SignalEvent.REPORT))
    assert not installed.pending(SignalEvent.STOP)


def test_alarm_fires(installed):
    installed.schedule_alarm(1)
    try:
        assert wait_for(lambda: installed.pending(SignalEvent.ALARM), timeout=3.0)
    finally:
        installed.cancel_alarm()


def test_cancelled_alarm_never_fires(installed):
    installed.schedule_alarm(1)
    installed.cancel_alarm()
    assert not wait_for(lambda: installed.pending(SignalEvent.ALARM), timeout=1.3)
