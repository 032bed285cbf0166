from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from whipwhep import InvalidOptionError, WebRTCOptions, parse_duration
from whipwhep.options import (
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_MAX_STORED_PACKETS_COUNT,
    DEFAULT_RW_TIMEOUT,
)


def test_defaults():
    options = WebRTCOptions()
    assert options.bearer_token == ""
    assert options.connection_timeout == DEFAULT_CONNECTION_TIMEOUT == timedelta(seconds=10)
    assert options.rw_timeout == DEFAULT_RW_TIMEOUT == timedelta(seconds=1)
    assert options.max_stored_packets_count == DEFAULT_MAX_STORED_PACKETS_COUNT == 100
    assert options.ice_servers == []
    assert options.authorization == {}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("10", timedelta(seconds=10)),
        ("1.5", timedelta(seconds=1.5)),
        ("1.5s", timedelta(seconds=1.5)),
        ("250ms", timedelta(milliseconds=250)),
        ("500000us", timedelta(milliseconds=500)),
        ("00:10", timedelta(seconds=10)),
        ("01:02:03.5", timedelta(hours=1, minutes=2, seconds=3.5)),
        ("-2s", timedelta(seconds=-2)),
        (3, timedelta(seconds=3)),
        (0.25, timedelta(milliseconds=250)),
        (timedelta(minutes=1), timedelta(minutes=1)),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "1.5h", "1:2:3:4", "01:60:00", True, None, [1]])
def test_parse_duration_invalid(value):
    with pytest.raises(InvalidOptionError):
        parse_duration(value)


@given(st.integers(min_value=0, max_value=10**9))
def test_parse_duration_microseconds(us):
    assert parse_duration(f"{us}us") == timedelta(microseconds=us)


@given(
    st.integers(min_value=0, max_value=99),
    st.integers(min_value=0, max_value=59),
    st.integers(min_value=0, max_value=59),
)
def test_parse_duration_clock(hours, minutes, seconds):
    expected = timedelta(hours=hours, minutes=minutes, seconds=seconds)
    assert parse_duration(f"{hours:02d}:{minutes:02d}:{seconds:02d}") == expected
    assert parse_duration(f"-{hours:02d}:{minutes:02d}:{seconds:02d}") == -expected


def test_minimum_timeouts():
    WebRTCOptions(connection_timeout="100ms", rw_timeout="100ms")
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(connection_timeout="99ms")
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(rw_timeout="50ms")
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(connection_timeout="-1s")


def test_max_stored_packets_count():
    assert WebRTCOptions(max_stored_packets_count="0").max_stored_packets_count == 0
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(max_stored_packets_count=-1)
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(max_stored_packets_count="many")


def test_ice_servers():
    options = WebRTCOptions(
        ice_servers=["stun:stun.example.com:3478", "turn:user:pass@turn.example.com"]
    )
    assert len(options.ice_servers) == 2
    with pytest.raises(InvalidOptionError):
        WebRTCOptions(ice_servers=["http://example.com"])


def test_from_dict():
    options = WebRTCOptions.from_dict(
        {
            "bearer_token": "secret",
            "connection_timeout": "5s",
            "rw_timeout": None,
            "ice_servers": "stun:a.example.com, stun:b.example.com",
        }
    )
    assert options.bearer_token == "secret"
    assert options.connection_timeout == timedelta(seconds=5)
    assert options.rw_timeout == DEFAULT_RW_TIMEOUT
    assert options.ice_servers == ["stun:a.example.com", "stun:b.example.com"]
    assert options.authorization == {"Authorization": "Bearer secret"}


def test_from_dict_unknown_key():
    with pytest.raises(InvalidOptionError, match="timeout"):
        WebRTCOptions.from_dict({"timeout": "1s"})


def test_invalid_option_is_value_error():
    with pytest.raises(ValueError):
        WebRTCOptions(rw_timeout="soon")
