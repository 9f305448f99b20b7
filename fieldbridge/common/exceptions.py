"""
Custom Exception Classes for the FieldBridge gateway

Hierarchical exception structure for error handling across the device
runtime and its drivers. The scheduler decides what to do with an error
by its class: transport-class errors force a driver disconnect, everything
else only updates the device error state.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(GatewayError):
    """Configuration errors (missing template, unsupported protocol, bad hints)"""

    def __init__(self, message: str, device_id: str | None = None):
        self.device_id = device_id
        self.detail = message
        super().__init__(f"Config Error: {message}", recoverable=False)


class DeviceError(GatewayError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        recoverable: bool = True,
    ):
        self.device_id = device_id
        super().__init__(message, recoverable)


class TransportError(DeviceError):
    """Connection refused/reset/timeout/unreachable.

    `code` carries the errno-style name (ECONNREFUSED, ETIMEDOUT, ...) when known.
    """

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        code: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.code = code
        self.host = host
        self.port = port
        super().__init__(message, device_id, recoverable=True)


class ProtocolError(DeviceError):
    """Device answered but rejected the address or function"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        exception_code: int | None = None,
    ):
        self.exception_code = exception_code
        super().__init__(message, device_id, recoverable=True)


class CodecError(DeviceError):
    """Local encode/decode failure (range, length, boundary)"""

    def __init__(self, message: str, datapoint_id: str | None = None):
        self.datapoint_id = datapoint_id
        super().__init__(message, recoverable=True)


class UnsupportedOperation(DeviceError):
    """Write on a read-only data point or a function the protocol lacks"""

    def __init__(self, message: str, datapoint_id: str | None = None):
        self.datapoint_id = datapoint_id
        super().__init__(message, recoverable=False)


class WriteError(DeviceError):
    """Queued write dropped after exhausting its attempts"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        datapoint_id: str | None = None,
        attempts: int = 0,
        cause: Exception | None = None,
    ):
        self.datapoint_id = datapoint_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(message, device_id, recoverable=False)


def is_transport_error(error: BaseException) -> bool:
    """True for errors that must force a driver disconnect.

    Anything that is not one of our typed, non-transport errors counts:
    an unexpected exception from a driver is treated as a broken link.
    """
    if isinstance(error, TransportError):
        return True
    if isinstance(error, GatewayError):
        return False
    return True
