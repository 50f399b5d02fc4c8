#!/usr/bin/env python3
"""
sendpkt - generic network testing utility
Emits fixed-size UDP datagrams at a target rate toward an address or
a randomized range, then reports throughput
"""

import logging
from functools import partial
import socket
import sys
from typing import Optional

from sendpkt_config import ConfigError, ConfigLoader, SendConfig, build_config, build_parser
from sendpkt_engine import SendLoopEngine, SignalController

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class UdpSender:
    """Connectionless AF_INET datagram socket bound to one destination port"""

    def __init__(self, port: int):
        self.port = port
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def set_tos(self, tos: int) -> bool:
        """Apply the IP TOS byte; failure leaves the default in place"""
        try:
            self.socket.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, tos)
            logger.debug(f"IP TOS set to {tos:#04x}")
            return True
        except OSError as e:
            logger.error(f"setsockopt() for IP ToS failed: {e.strerror or e}")
            return False

    def send(self, payload: bytes, address: str) -> int:
        return self.socket.sendto(payload, (address, self.port))

    def close(self):
        if self.socket:
            self.socket.close()
            self.socket = None


def configure_logging(verbosity: int):
    level = logging.DEBUG if verbosity else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def banner(config: SendConfig) -> str:
    return (f"SENDPKT Dest {config.destination}/{config.prefix_len}; "
            f"target pps rate: {config.rate} pps "
            f"(derived send interval {config.interval_usec} usec)")


def run(config: SendConfig, sender, controller: Optional[SignalController] = None) -> SendLoopEngine:
    """Install signal handling, arm the time limit and drive the engine to completion"""
    controller = controller or SignalController()
    engine = SendLoopEngine(config, sender, controller, report=partial(print, flush=True))

    try:
        controller.install()
        if config.time_limit:
            controller.schedule_alarm(config.time_limit)
        engine.run()
    finally:
        controller.cancel_alarm()
        controller.close()

    print(engine.stats.snapshot().render(), flush=True)
    return engine


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug or 0)

    try:
        config = build_config(args, ConfigLoader(args.config).load())
    except ConfigError as e:
        logger.error(str(e))
        parser.print_usage(sys.stderr)
        return 1

    configure_logging(config.debug)
    print(banner(config), flush=True)

    try:
        sender = UdpSender(config.port)
    except OSError as e:
        logger.error(f"Can't make AF_INET socket: {e.strerror or e}")
        return 1

    try:
        if config.tos is not None:
            sender.set_tos(config.tos)
        run(config, sender)
    finally:
        sender.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
