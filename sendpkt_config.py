#!/usr/bin/env python3
"""
sendpkt Configuration
Command line, optional YAML file and built-in defaults merged into one
immutable run configuration
"""

import argparse
import ipaddress
import logging
import socket
import sys
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import yaml

from sendpkt_engine import interval_for_rate, USEC_PER_SEC

logger = logging.getLogger(__name__)

MAX_UDP_PAYLOAD = 65507

# Defaults carried over from the classic sendpkt tool
DEFAULTS = {
    'size': 1472,
    'rate': 1,
    'port': 6012,
    'packet_limit': 0,
    'time_limit': 5,
    'tos': None,
    'debug': 0,
}

FILE_KEYS = set(DEFAULTS) | {'destination'}


class ConfigError(Exception):
    """Invalid or unreadable configuration"""


@dataclass(frozen=True)
class SendConfig:
    """Validated run configuration"""
    destination: str
    prefix_len: int = 32
    size: int = DEFAULTS['size']
    rate: int = DEFAULTS['rate']
    port: int = DEFAULTS['port']
    packet_limit: int = DEFAULTS['packet_limit']
    time_limit: int = DEFAULTS['time_limit']
    tos: Optional[int] = None
    debug: int = 0

    @property
    def base_address(self) -> int:
        return int(ipaddress.IPv4Address(self.destination))

    @property
    def interval_usec(self) -> int:
        """Per-cycle wait expressed in microseconds"""
        seconds, usec = interval_for_rate(self.rate)
        return seconds * USEC_PER_SEC + usec

    def validate(self):
        if not 0 <= self.prefix_len <= 32:
            raise ConfigError("Prefix length, prefixLen, must satisfy 0 <= prefixLen <= 32")
        if self.rate < 1:
            raise ConfigError(f"Rate must be at least 1 pps (got {self.rate})")
        if not 0 <= self.size <= MAX_UDP_PAYLOAD:
            raise ConfigError(f"Size must satisfy 0 <= size <= {MAX_UDP_PAYLOAD} (got {self.size})")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"Port must satisfy 1 <= port <= 65535 (got {self.port})")
        if self.tos is not None and not 0 <= self.tos <= 255:
            raise ConfigError(f"IP TOS byte must satisfy 0 <= TOS <= 255 (got {self.tos})")
        if self.packet_limit < 0:
            raise ConfigError(f"Packet count limit cannot be negative (got {self.packet_limit})")
        if self.time_limit < 0:
            raise ConfigError(f"Time limit cannot be negative (got {self.time_limit})")
        if self.debug < 0:
            raise ConfigError(f"Debug level cannot be negative (got {self.debug})")


def resolve_address(host: str) -> str:
    """Dotted-quad for an IPv4 literal or a resolvable hostname"""
    try:
        return str(ipaddress.IPv4Address(host))
    except ipaddress.AddressValueError:
        pass

    try:
        address = socket.gethostbyname(host)
    except (socket.gaierror, UnicodeError) as e:
        raise ConfigError(f"Cannot resolve destination {host!r}: {e}") from e
    logger.debug(f"Resolved {host} to {address}")
    return address


def parse_destination(text: str) -> Tuple[str, int]:
    """
    Split 'address[/prefixLen]' into (address, prefix length)

    A missing prefix length means a single fixed address (/32).
    """
    host, _, prefix = text.partition('/')
    if not host:
        raise ConfigError(f"Missing destination address in {text!r}")

    if not prefix:
        prefix_len = 32
    else:
        try:
            prefix_len = int(prefix)
        except ValueError:
            raise ConfigError("Prefix length, prefixLen, must satisfy 0 <= prefixLen <= 32")
        if not 0 <= prefix_len <= 32:
            raise ConfigError("Prefix length, prefixLen, must satisfy 0 <= prefixLen <= 32")

    return resolve_address(host), prefix_len


class ConfigLoader:
    """Load option defaults from a YAML file"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file
        self.config: Dict = {}

    def load(self) -> Dict:
        if not self.config_file:
            return {}

        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {self.config_file}")
        except OSError as e:
            raise ConfigError(f"Cannot read {self.config_file}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_file}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_file}: top level must be a mapping")

        # accept dashed spellings as well
        data = {str(k).replace('-', '_'): v for k, v in data.items()}
        unknown = set(data) - FILE_KEYS
        if unknown:
            raise ConfigError(f"{self.config_file}: unknown option(s) {', '.join(sorted(unknown))}")

        for key, value in data.items():
            if key == 'destination':
                if not isinstance(value, str):
                    raise ConfigError(f"{self.config_file}: destination must be a string")
            elif value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ConfigError(f"{self.config_file}: {key} must be an integer")

        self.config = data
        logger.info(f"Loaded configuration from {self.config_file}")
        return self.config


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors"""

    def error(self, message):
        self.print_usage(sys.stderr)
        sys.stderr.write(self.epilog + '\n')
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    epilog = (f"default params: size/-s: {DEFAULTS['size']}; rate/-r: {DEFAULTS['rate']}; "
              f"port/-p: {DEFAULTS['port']}\n"
              f"default limits: packets/-c: {DEFAULTS['packet_limit']}; "
              f"time/-t: {DEFAULTS['time_limit']}")

    parser = UsageParser(
        prog='sendpkt',
        description='Rate-controlled UDP packet generator',
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-d', dest='debug', action='count', default=None,
                        help='Increase debug verbosity (repeatable)')
    parser.add_argument('-c', dest='packet_limit', type=int, metavar='COUNT',
                        help='Packet count limit (0 = unlimited)')
    parser.add_argument('-s', dest='size', type=int, metavar='SIZE',
                        help='Payload size in bytes')
    parser.add_argument('-r', dest='rate', type=int, metavar='RATE',
                        help='Target rate in packets per second')
    parser.add_argument('-t', dest='time_limit', type=int, metavar='SECS',
                        help='Time limit in seconds (0 = unlimited)')
    parser.add_argument('-p', dest='port', type=int, metavar='PORT',
                        help='Destination UDP port')
    parser.add_argument('-Q', dest='tos', type=int, metavar='TOS',
                        help='IP TOS byte (socket default when unset)')
    parser.add_argument('--config', metavar='FILE',
                        help='YAML file with option defaults')
    parser.add_argument('destination', nargs='?',
                        help='address or address/prefixLength')
    return parser


def build_config(args: argparse.Namespace, file_values: Optional[Dict] = None) -> SendConfig:
    """Command line beats file, file beats built-in defaults"""
    file_values = file_values or {}

    values = {}
    for key, default in DEFAULTS.items():
        cli_value = getattr(args, key, None)
        if cli_value is not None:
            values[key] = cli_value
        elif file_values.get(key) is not None:
            values[key] = file_values[key]
        else:
            values[key] = default

    destination = getattr(args, 'destination', None) or file_values.get('destination')
    if not destination:
        raise ConfigError("A destination is required")

    address, prefix_len = parse_destination(destination)
    config = SendConfig(destination=address, prefix_len=prefix_len, **values)
    config.validate()
    return config
