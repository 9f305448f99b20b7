"""
Error Reporter

Turns driver errors into the operator-facing `lastError` text: the error
message plus, where the failure has a well-known cause, a hint on what to
check. Hints are appended as ` | Hint: ...` and never duplicated.
"""

import errno

from ...common.config import DeviceConfig
from ...common.exceptions import TransportError

HINT_SEPARATOR = " | Hint: "


def _endpoint(device: DeviceConfig | None, error: BaseException) -> tuple[str, int]:
    host = getattr(error, "host", None) or (device.connection.host if device else "") or "device"
    port = getattr(error, "port", None) or (device.connection.port if device else 502) or 502
    return host, port


def transport_hint(code: str | None, host: str, port: int) -> str | None:
    if code == "ECONNREFUSED":
        return (
            f"TCP connection to {host}:{port} was refused. The Modbus TCP server may be "
            f"disabled on the device, the IP/port may be wrong, or a firewall rejects the "
            f"connection. Some inverters must be reached through their data manager instead."
        )
    if code == "ETIMEDOUT":
        return (
            f"TCP connection timed out (no response). This typically indicates packet "
            f"filtering, a wrong IP/route, or that port {port} is not reachable from the gateway."
        )
    if code == "ENOTFOUND":
        return "Host name could not be resolved. Check the host/IP setting."
    if code in ("EHOSTUNREACH", "ENETUNREACH"):
        return "Network unreachable. Check routing/VLAN/gateway and that the device is powered on."
    return None


def protocol_hints(message: str, code: str | None) -> list[str]:
    lower = message.lower()
    hints = []
    if "illegal data address" in lower or "exception code" in lower or "illegal function" in lower:
        hints.append(
            "Modbus responded but the register address/function is invalid. Check the address "
            "offset (often -1 vs 0), the template/profile (vendor map vs SunSpec) and the unit id."
        )
    if "timed out" in lower and code != "ETIMEDOUT":
        hints.append(
            "Modbus timeout. If TCP connects but reads time out, check the unit id, the allowed "
            "Modbus clients, and whether another client is already connected."
        )
    return hints


def add_hint(message: str, hint: str | None) -> str:
    if not hint:
        return message
    if HINT_SEPARATOR.strip() in message and hint in message:
        return message
    return f"{message}{HINT_SEPARATOR}{hint}"


def describe_error(error: BaseException, device: DeviceConfig | None = None) -> str:
    """Error message with troubleshooting hints appended."""
    original = str(error) or type(error).__name__
    code = getattr(error, "code", None) if isinstance(error, TransportError) else None
    if code is None and isinstance(error, OSError) and error.errno:
        code = errno.errorcode.get(error.errno)
    host, port = _endpoint(device, error)

    message = add_hint(original, transport_hint(code, host, port))
    for hint in protocol_hints(original, code):
        message = add_hint(message, hint)
    return message
