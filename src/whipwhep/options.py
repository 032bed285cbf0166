"""Session options shared by WHIP and WHEP clients."""

import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Any, List, Mapping, Union

from .errors import InvalidOptionError

DEFAULT_CONNECTION_TIMEOUT = timedelta(seconds=10)
DEFAULT_RW_TIMEOUT = timedelta(seconds=1)
MIN_TIMEOUT = timedelta(milliseconds=100)
DEFAULT_MAX_STORED_PACKETS_COUNT = 100

# [-][HH:]MM:SS[.m...]
_CLOCK_RE = re.compile(r"^(-)?(?:(\d+):)?(\d+):(\d+(?:\.\d*)?)$")
# [-]S+[.m...][s|ms|us]
_SECONDS_RE = re.compile(r"^(-)?(\d+(?:\.\d*)?|\.\d+)(s|ms|us)?$")

_UNIT_SCALE = {None: 1_000_000, "s": 1_000_000, "ms": 1_000, "us": 1}

Duration = Union[timedelta, int, float, str]


def parse_duration(value: Duration) -> timedelta:
    """Parse a duration option value

    Args:
        value: A timedelta, a number of seconds, or a string such as
            "10", "1.5s", "250ms", "500000us", "00:10" or "01:00:00.5"

    Returns:
        The parsed duration

    Raises:
        InvalidOptionError: If the value cannot be parsed
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise InvalidOptionError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise InvalidOptionError(f"Invalid duration: {value!r}")

    text = value.strip()
    match = _CLOCK_RE.match(text)
    if match:
        sign, hours, minutes, seconds = match.groups()
        if int(minutes) >= 60 and hours is not None:
            raise InvalidOptionError(f"Invalid duration: {value!r}")
        result = timedelta(
            hours=int(hours or 0), minutes=int(minutes), seconds=float(seconds)
        )
        return -result if sign else result

    match = _SECONDS_RE.match(text)
    if match:
        sign, number, unit = match.groups()
        microseconds = round(float(number) * _UNIT_SCALE[unit])
        result = timedelta(microseconds=microseconds)
        return -result if sign else result

    raise InvalidOptionError(f"Invalid duration: {value!r}")


@dataclass
class WebRTCOptions:
    """Options for a WHIP/WHEP session

    Attributes:
        bearer_token: Sent as ``Authorization: Bearer <token>`` on every
            signaling request when not empty
        connection_timeout: Bound on waiting for the peer connection
        rw_timeout: Bound on signaling I/O and on packet reads
        max_stored_packets_count: Retransmission buffer depth of the RTCP
            NACK responder (publish only)
        ice_servers: STUN/TURN URLs handed to the transport engine
    """

    bearer_token: str = ""
    connection_timeout: timedelta = DEFAULT_CONNECTION_TIMEOUT
    rw_timeout: timedelta = DEFAULT_RW_TIMEOUT
    max_stored_packets_count: int = DEFAULT_MAX_STORED_PACKETS_COUNT
    ice_servers: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.bearer_token is None:
            self.bearer_token = ""
        self.connection_timeout = parse_duration(self.connection_timeout)
        self.rw_timeout = parse_duration(self.rw_timeout)

        if self.connection_timeout < MIN_TIMEOUT:
            raise InvalidOptionError(
                f"connection_timeout must be at least {MIN_TIMEOUT}, got {self.connection_timeout}"
            )
        if self.rw_timeout < MIN_TIMEOUT:
            raise InvalidOptionError(
                f"rw_timeout must be at least {MIN_TIMEOUT}, got {self.rw_timeout}"
            )

        try:
            self.max_stored_packets_count = int(self.max_stored_packets_count)
        except (TypeError, ValueError) as e:
            raise InvalidOptionError(
                f"Invalid max_stored_packets_count: {self.max_stored_packets_count!r}"
            ) from e
        if self.max_stored_packets_count < 0:
            raise InvalidOptionError("max_stored_packets_count must not be negative")

        for url in self.ice_servers:
            if not url.startswith(("stun:", "stuns:", "turn:", "turns:")):
                raise InvalidOptionError(f"Invalid ICE server URL: {url}")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "WebRTCOptions":
        """Build options from string keys, ignoring values that are None"""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise InvalidOptionError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        kwargs = {key: value for key, value in values.items() if value is not None}
        if isinstance(kwargs.get("ice_servers"), str):
            kwargs["ice_servers"] = [
                url.strip() for url in kwargs["ice_servers"].split(",") if url.strip()
            ]
        return cls(**kwargs)

    @property
    def authorization(self) -> dict:
        if not self.bearer_token:
            return {}
        return {"Authorization": f"Bearer {self.bearer_token}"}
