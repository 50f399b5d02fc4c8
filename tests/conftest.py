import errno

import pytest

from sendpkt_config import SendConfig
from sendpkt_engine import SignalController


class FakeSender:
    """Send primitive that records every call"""

    def __init__(self, fail_on=(), short_by=0):
        self.sent = []
        self.fail_on = set(fail_on)
        self.short_by = short_by
        self.calls = 0

    def send(self, payload, address):
        self.calls += 1
        if self.calls in self.fail_on:
            raise OSError(errno.ENETUNREACH, "Network is unreachable")
        self.sent.append((address, len(payload)))
        return max(len(payload) - self.short_by, 0)


class InstantScheduler:
    """Scheduler that never blocks; optional hook runs before each return"""

    def __init__(self, hook=None):
        self.waits = 0
        self.hook = hook

    def wait(self):
        self.waits += 1
        if self.hook:
            self.hook(self.waits)
        return True


@pytest.fixture
def controller():
    c = SignalController(signal_map={})
    yield c
    c.close()


@pytest.fixture
def make_config():
    def _make(**kwargs):
        values = dict(destination='10.0.0.0', prefix_len=24, size=100, rate=1000,
                      packet_limit=0, time_limit=0)
        values.update(kwargs)
        return SendConfig(**values)
    return _make
