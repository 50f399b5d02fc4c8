#!/usr/bin/env python3
"""
sendpkt Send-Loop Engine
Rate-controlled UDP emission with signal-driven control plane
"""

import errno
import ipaddress
import logging
import os
import random
import select
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ALL_ONES = 0xFFFFFFFF
USEC_PER_SEC = 1_000_000


class SchedulerError(Exception):
    """The wait primitive failed for a reason other than interruption"""


def host_mask(prefix_len: int) -> int:
    """Host bits mask for a prefix length (/0 is the full 32-bit range)"""
    if not 0 <= prefix_len <= 32:
        raise ValueError(f"prefix length {prefix_len} outside 0..32")
    if prefix_len == 0:
        return ALL_ONES
    return (1 << (32 - prefix_len)) - 1


class AddressRandomizer:
    """Random destinations inside base/prefix_len"""

    def __init__(self, base, prefix_len: int, seed: Optional[int] = None):
        self.base = int(ipaddress.IPv4Address(base))
        self.prefix_len = prefix_len
        self.mask = host_mask(prefix_len)
        self.network_bits = self.base & ~self.mask & ALL_ONES

        if seed is None:
            seed = int(time.time())
        self._random = random.Random(seed)

    def next_address(self) -> ipaddress.IPv4Address:
        """Keep the network bits of the base, randomize the host bits"""
        host_bits = self._random.getrandbits(32) & self.mask
        return ipaddress.IPv4Address(self.network_bits | host_bits)


def interval_for_rate(rate: int) -> Tuple[int, int]:
    """
    Per-cycle wait for a target rate as (seconds, microseconds)

    Rates of 1 or less are whole seconds; anything faster is
    1,000,000 // rate microseconds with the remainder truncated.
    """
    if rate < 0:
        raise ValueError(f"negative rate {rate}")
    if rate <= 1:
        return rate, 0
    return 0, USEC_PER_SEC // rate


class RateScheduler:
    """Blocks once per cycle for the rate-derived interval"""

    def __init__(self, rate: int, wakeup: "SignalController"):
        self.rate = rate
        self.interval_sec, self.interval_usec = interval_for_rate(rate)
        self.timeout = self.interval_sec + self.interval_usec / USEC_PER_SEC
        self.wakeup = wakeup

    def wait(self) -> bool:
        """
        Wait one interval.

        Returns True after a full wait and False when the wakeup channel
        fired first. Raises SchedulerError on any other select() failure.
        """
        try:
            readable, _, _ = select.select([self.wakeup.fileno()], [], [], self.timeout)
        except InterruptedError:
            return False
        except (OSError, ValueError) as e:
            raise SchedulerError(f"select() returned error: {e}") from e

        if readable:
            self.wakeup.drain()
            return False
        return True


class SignalEvent(Enum):
    """Asynchronous control events"""
    STOP = "stop"
    ALARM = "alarm"
    HANGUP = "hangup"
    REPORT = "report"


def default_signal_map() -> Dict[int, SignalEvent]:
    """OS signal to event mapping; SIGUSR1 stands in where SIGINFO is missing"""
    report_signal = getattr(signal, 'SIGINFO', signal.SIGUSR1)
    return {
        signal.SIGINT: SignalEvent.STOP,
        signal.SIGTERM: SignalEvent.STOP,
        signal.SIGALRM: SignalEvent.ALARM,
        signal.SIGHUP: SignalEvent.HANGUP,
        report_signal: SignalEvent.REPORT,
    }


class SignalController:
    """
    Pending-event flags shared between signal handlers and the send loop

    Handlers and notify() only ever set flags; the loop clears each flag
    with take() as soon as it sees it. A self-pipe (also registered as the
    interpreter's signal wakeup fd) lets the loop's wait return early.
    """

    def __init__(self, signal_map: Optional[Dict[int, SignalEvent]] = None):
        self.signal_map = signal_map if signal_map is not None else default_signal_map()
        self._flags = {event: False for event in SignalEvent}
        self._sources: Dict[SignalEvent, str] = {}
        self._previous_handlers = {}
        self._previous_wakeup_fd = None
        self._installed = False

        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)

    def install(self):
        """Register handlers for every mapped signal (main thread only)"""
        if self._installed:
            return
        self._previous_wakeup_fd = signal.set_wakeup_fd(self._write_fd)
        # uninstall() restores whatever got registered if a later step fails
        self._installed = True
        for signum in self.signal_map:
            self._previous_handlers[signum] = signal.signal(signum, self._handle)
        logger.debug(f"Signal handlers installed for "
                     f"{', '.join(signal.Signals(s).name for s in self.signal_map)}")

    def uninstall(self):
        """Restore the handlers and wakeup fd that were active before install()"""
        if not self._installed:
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        signal.set_wakeup_fd(self._previous_wakeup_fd)
        self._installed = False

    def _handle(self, signum, frame):
        event = self.signal_map.get(signum)
        if event is not None:
            self._sources[event] = signal.Signals(signum).name
            self._flags[event] = True

    def notify(self, event: SignalEvent, source: str = "notify"):
        """Raise an event from outside a signal handler and wake the loop"""
        self._sources[event] = source
        self._flags[event] = True
        try:
            os.write(self._write_fd, b'\0')
        except BlockingIOError:
            # pipe full: a wakeup is already pending
            pass

    def pending(self, event: SignalEvent) -> bool:
        return self._flags[event]

    def take(self, event: SignalEvent) -> bool:
        """Clear and report a pending event; True once per occurrence"""
        if not self._flags[event]:
            return False
        self._flags[event] = False
        return True

    def source(self, event: SignalEvent) -> str:
        """Name of whatever raised the event last"""
        return self._sources.get(event, "unknown")

    def schedule_alarm(self, seconds: int):
        """Arm the one-shot time limit alarm"""
        signal.alarm(seconds)
        logger.debug(f"Alarm scheduled in {seconds} second(s)")

    def cancel_alarm(self):
        signal.alarm(0)

    def fileno(self) -> int:
        return self._read_fd

    def drain(self):
        """Discard pending wakeup bytes"""
        while True:
            try:
                if not os.read(self._read_fd, 512):
                    return
            except BlockingIOError:
                return

    def close(self):
        self.uninstall()
        for fd in (self._read_fd, self._write_fd):
            try:
                os.close(fd)
            except OSError as e:
                if e.errno != errno.EBADF:
                    raise


@dataclass
class StatsSnapshot:
    """Point-in-time view of the counters"""
    packets: int
    byte_count: int
    elapsed: int
    average_pps: Optional[int] = None
    average_bps: Optional[int] = None

    def render(self) -> str:
        line = (f"STATS: {self.packets} packet(s); {self.byte_count} byte(s); "
                f"{self.elapsed} second(s)")
        if self.average_pps is not None:
            line += f"; average pps: {self.average_pps}; average bps: {self.average_bps}"
        return line


class StatsCollector:
    """Cumulative packet/byte counters for one run"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.packets = 0
        self.byte_count = 0
        self.start_time = None

    def start(self, now: Optional[float] = None):
        self.start_time = int(self.clock() if now is None else now)

    def record(self, bytes_sent: int):
        self.packets += 1
        self.byte_count += bytes_sent

    def snapshot(self, now: Optional[float] = None) -> StatsSnapshot:
        """Derive elapsed time and average rates without touching the counters"""
        if now is None:
            now = self.clock()
        start = self.start_time if self.start_time is not None else int(now)
        elapsed = int(now) - start

        snap = StatsSnapshot(packets=self.packets, byte_count=self.byte_count, elapsed=elapsed)
        if elapsed > 0:
            snap.average_pps = self.packets // elapsed
            snap.average_bps = (self.byte_count * 8) // elapsed
        return snap


class EngineState(Enum):
    """Send loop lifecycle"""
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SendLoopEngine:
    """Wait, check events, send, count - until stopped"""

    def __init__(self, config, sender, controller: SignalController,
                 scheduler: Optional[RateScheduler] = None,
                 randomizer: Optional[AddressRandomizer] = None,
                 stats: Optional[StatsCollector] = None,
                 report: Callable[[str], None] = print):
        self.config = config
        self.sender = sender
        self.controller = controller
        self.scheduler = scheduler or RateScheduler(config.rate, controller)
        self.randomizer = randomizer or AddressRandomizer(config.base_address, config.prefix_len)
        self.stats = stats or StatsCollector()
        self.report = report

        self.payload = bytes(config.size)
        self.remaining = config.packet_limit
        self.cycles = 0
        self.state = EngineState.STOPPED

    def run(self) -> StatsCollector:
        """Run cycles until a stop event, alarm, packet limit or wait failure"""
        self.state = EngineState.RUNNING
        if self.stats.start_time is None:
            self.stats.start()

        while self.state is EngineState.RUNNING:
            self._cycle()

        self.state = EngineState.STOPPED
        logger.debug(f"Run loop finished after {self.cycles} cycle(s)")
        return self.stats

    def _cycle(self):
        try:
            completed = self.scheduler.wait()
        except SchedulerError as e:
            logger.error(str(e))
            self.state = EngineState.STOPPING
            return

        if not completed and self.config.debug > 1:
            logger.debug("Wait interrupted")

        if not self._service_events():
            return

        self.cycles += 1
        self._send_one()

        if self.remaining:
            self.remaining -= 1
            if self.remaining == 0:
                logger.debug("Packet limit reached: exiting run loop")
                self.state = EngineState.STOPPING

    def _service_events(self) -> bool:
        """Handle pending events in fixed order; False when the loop must stop"""
        controller = self.controller

        if controller.take(SignalEvent.ALARM):
            logger.debug("Time limit reached: exiting run loop")
            self.state = EngineState.STOPPING
            return False

        if controller.take(SignalEvent.HANGUP):
            if self.config.debug > 1:
                logger.debug(f"Received {controller.source(SignalEvent.HANGUP)}: ignored")

        if controller.take(SignalEvent.STOP):
            logger.debug(f"Received {controller.source(SignalEvent.STOP)}: exiting run loop")
            self.state = EngineState.STOPPING
            return False

        if controller.take(SignalEvent.REPORT):
            self.report(self.stats.snapshot().render())

        return True

    def _send_one(self):
        address = str(self.randomizer.next_address())
        debug = self.config.debug and logger.isEnabledFor(logging.DEBUG)
        if debug:
            logger.debug(f"writing {len(self.payload)} byte(s) to {address}")

        try:
            written = self.sender.send(self.payload, address)
        except OSError as e:
            logger.error(f"sendto() returned error: {e.strerror or e}")
            return

        if debug:
            logger.debug(f"wrote {written} byte(s) to {address}")
        self.stats.record(written)
