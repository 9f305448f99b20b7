"""Tests for operator-facing error messages."""

import errno

from fieldbridge.common.exceptions import ProtocolError, TransportError
from fieldbridge.services.device.error_reporter import HINT_SEPARATOR, add_hint, describe_error

from conftest import make_device


def test_connection_refused_hint():
    error = TransportError("Connection refused", code="ECONNREFUSED", host="10.0.0.9", port=1502)
    message = describe_error(error, make_device())
    assert message.startswith("Connection refused" + HINT_SEPARATOR)
    assert "10.0.0.9:1502" in message


def test_endpoint_falls_back_to_device():
    message = describe_error(TransportError("refused", code="ECONNREFUSED"), make_device())
    assert "10.0.0.5:502" in message


def test_oserror_code_from_errno():
    error = OSError(errno.EHOSTUNREACH, "No route to host")
    assert "Network unreachable" in describe_error(error, make_device())


def test_illegal_address_hint():
    error = ProtocolError("Modbus exception: Illegal data address (exception code 2)", exception_code=2)
    message = describe_error(error)
    assert "address offset" in message


def test_timeout_hint_only_without_tcp_timeout():
    """A Modbus response timeout gets the unit-id hint; a TCP timeout does not."""
    modbus = describe_error(TransportError("Request timed out"))
    assert "check the unit id" in modbus

    tcp = describe_error(TransportError("Connect timed out", code="ETIMEDOUT"))
    assert "packet filtering" in tcp
    assert "check the unit id" not in tcp


def test_plain_error_unchanged():
    assert describe_error(ValueError("boom")) == "boom"
    assert describe_error(RuntimeError()) == "RuntimeError"


def test_add_hint_not_duplicated():
    message = add_hint("failed", "check cable")
    assert add_hint(message, "check cable") == message
    assert add_hint(message, None) == message
