"""Command-line configuration.

Flags are parsed once at startup into an immutable Settings object that is
passed explicitly to every component that needs it.
"""
from __future__ import annotations

import argparse
import math
import re
from dataclasses import dataclass
from typing import Sequence, Tuple

from . import __version__

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class Settings:
    listen_address: str = ":8080"
    uniform_domain: float = 0.0002
    normal_domain: float = 0.0002
    normal_mean: float = 0.00001
    oscillation_period: float = 600.0  # seconds
    latency_ms: int = 0
    success_probability: int = 100
    log_level: str = "INFO"


def parse_duration(text: str) -> float:
    """Parse a duration such as "10m", "1h30m", "250ms" or "1.5" into seconds.

    A bare number is taken as seconds.
    """
    value = text.strip()
    if not value:
        raise ValueError("empty duration")

    sign = 1.0
    if value[0] in "+-":
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]

    try:
        return sign * float(value)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value) or pos == 0:
        raise ValueError(f"invalid duration {text!r}")
    return sign * total


def split_listen_address(address: str) -> Tuple[str, int]:
    """Split "host:port" into its parts; an empty host means all interfaces."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None
    if not 0 <= port_number <= 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host, port_number


def _duration(text: str) -> float:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="pingmetrics",
        description="Serve synthetic RPC latency metrics and a tunable /ping probe",
    )
    parser.add_argument(
        "--listen-address",
        default=Settings.listen_address,
        help="The address to listen on for HTTP requests (default: %(default)s)",
    )
    parser.add_argument(
        "--uniform.domain",
        dest="uniform_domain",
        type=float,
        default=Settings.uniform_domain,
        help="The domain for the uniform distribution (default: %(default)s)",
    )
    parser.add_argument(
        "--normal.domain",
        dest="normal_domain",
        type=float,
        default=Settings.normal_domain,
        help="The domain for the normal distribution (default: %(default)s)",
    )
    parser.add_argument(
        "--normal.mean",
        dest="normal_mean",
        type=float,
        default=Settings.normal_mean,
        help="The mean for the normal distribution (default: %(default)s)",
    )
    parser.add_argument(
        "--oscillation-period",
        type=_duration,
        default=Settings.oscillation_period,
        metavar="DURATION",
        help="The duration of the rate oscillation period, e.g. 10m or 1s (default: 10m)",
    )
    parser.add_argument(
        "--lat",
        dest="latency_ms",
        type=int,
        default=Settings.latency_ms,
        help="The latency of the /ping response in milliseconds (default: %(default)s)",
    )
    parser.add_argument(
        "--prob",
        dest="success_probability",
        type=int,
        default=Settings.success_probability,
        help="The probability (0-100) of /ping answering 200 (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=Settings.log_level,
        type=str.upper,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging level (default: %(default)s)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def validate(settings: Settings) -> None:
    """Raise ValueError for settings the service cannot run with."""
    for flag, value in (
        ("oscillation-period", settings.oscillation_period),
        ("uniform.domain", settings.uniform_domain),
        ("normal.domain", settings.normal_domain),
        ("normal.mean", settings.normal_mean),
    ):
        if not math.isfinite(value):
            raise ValueError(f"{flag} must be a finite number")
    if settings.oscillation_period <= 0:
        raise ValueError("oscillation-period must be positive")
    if settings.latency_ms < 0:
        raise ValueError("lat must not be negative")
    if not 0 <= settings.success_probability <= 100:
        raise ValueError("prob must be between 0 and 100")
    if settings.normal_domain <= 0:
        raise ValueError("normal.domain must be positive")
    split_listen_address(settings.listen_address)


def parse_settings(argv: Sequence[str] | None = None) -> Settings:
    """Parse and validate the command line; exits with status 2 on bad input."""
    parser = create_parser()
    args = parser.parse_args(argv)
    settings = Settings(
        listen_address=args.listen_address,
        uniform_domain=args.uniform_domain,
        normal_domain=args.normal_domain,
        normal_mean=args.normal_mean,
        oscillation_period=args.oscillation_period,
        latency_ms=args.latency_ms,
        success_probability=args.success_probability,
        log_level=args.log_level,
    )
    try:
        validate(settings)
    except ValueError as exc:
        parser.error(str(exc))
    return settings
