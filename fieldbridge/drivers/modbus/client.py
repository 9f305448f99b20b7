"""
Async Modbus Link

Wrapper around pymodbus for Modbus TCP and serial (RTU / ASCII framing)
links. One ModbusLink is one physical connection; several devices may
share it through the BusRegistry, which also owns the lock serializing
request/response pairs.

pymodbus failures are translated into the gateway's error taxonomy:
- connection loss, I/O errors and timeouts -> TransportError
- Modbus exception responses -> ProtocolError
"""

import asyncio
import errno
from dataclasses import dataclass

from pymodbus import FramerType
from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from ...common.exceptions import ProtocolError, TransportError, UnsupportedOperation
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")

# Modbus exception codes -> text used in error messages (and hint matching)
EXCEPTION_CODES = {
    1: "Illegal function",
    2: "Illegal data address",
    3: "Illegal data value",
    4: "Slave device failure",
    5: "Acknowledge",
    6: "Slave device busy",
    10: "Gateway path unavailable",
    11: "Gateway target device failed to respond",
}


@dataclass(frozen=True)
class LinkSettings:
    """Everything that identifies one physical link"""
    framer: str  # "tcp", "rtu" or "ascii"
    host: str = ""
    port: int = 502
    serial_port: str = ""
    baudrate: int = 9600
    parity: str = "N"
    bytesize: int = 8
    stopbits: int = 1
    timeout_s: float = 2.0

    @property
    def key(self) -> str:
        if self.framer == "tcp":
            return f"tcp|{self.host}:{self.port}"
        return "|".join(str(p) for p in (
            self.serial_port, self.baudrate, self.parity, self.bytesize, self.stopbits, self.framer,
        ))

    @property
    def label(self) -> str:
        if self.framer == "tcp":
            return f"{self.host}:{self.port}"
        return f"{self.serial_port}@{self.baudrate} ({self.framer})"


def _errno_name(error: BaseException) -> str | None:
    code = getattr(error, "errno", None)
    if code is None:
        return None
    return errno.errorcode.get(code)


class ModbusLink:
    """
    Async Modbus client for one TCP endpoint or one serial port.

    Callers must hold the owning bus handle's lock for the duration of
    every request.
    """

    def __init__(self, settings: LinkSettings):
        self.settings = settings
        self._client: AsyncModbusTcpClient | AsyncModbusSerialClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    def _build_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        s = self.settings
        if s.framer == "tcp":
            return AsyncModbusTcpClient(
                host=s.host,
                port=s.port,
                timeout=s.timeout_s,
                retries=0,
            )
        return AsyncModbusSerialClient(
            port=s.serial_port,
            framer=FramerType.ASCII if s.framer == "ascii" else FramerType.RTU,
            baudrate=s.baudrate,
            parity=s.parity,
            bytesize=s.bytesize,
            stopbits=s.stopbits,
            timeout=s.timeout_s,
            retries=0,
        )

    async def connect(self) -> None:
        """Open the link if needed.

        Raises:
            TransportError: the endpoint could not be reached
        """
        if self.is_connected:
            return
        if self._client is None:
            self._client = self._build_client()

        try:
            ok = await self._client.connect()
        except OSError as e:
            self.close()
            raise TransportError(
                f"Connection to {self.settings.label} failed: {e}",
                code=_errno_name(e),
                host=self.settings.host or None,
                port=self.settings.port if self.settings.framer == "tcp" else None,
            ) from e

        if not ok:
            self.close()
            raise TransportError(
                f"Connection to {self.settings.label} failed",
                host=self.settings.host or None,
                port=self.settings.port if self.settings.framer == "tcp" else None,
            )
        logger.debug(f"Connected Modbus link {self.settings.label}")

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Error closing {self.settings.label}: {e}")
            self._client = None
            logger.debug(f"Closed Modbus link {self.settings.label}")

    async def _call(self, request, timeout_s: float):
        if not self.is_connected:
            await self.connect()
        try:
            response = await asyncio.wait_for(request(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Modbus request to {self.settings.label} timed out") from e
        except (ConnectionException, ModbusIOException) as e:
            raise TransportError(f"Modbus I/O error on {self.settings.label}: {e}") from e
        except OSError as e:
            raise TransportError(
                f"Modbus I/O error on {self.settings.label}: {e}", code=_errno_name(e),
            ) from e
        except ModbusException as e:
            # Remaining pymodbus errors mean we could not talk to the device
            raise TransportError(f"Modbus error on {self.settings.label}: {e}") from e

        if response.isError():
            code = getattr(response, "exception_code", None)
            text = EXCEPTION_CODES.get(code, f"exception code {code}")
            raise ProtocolError(f"Modbus exception: {text} (exception code {code})", exception_code=code)
        return response

    async def read(
        self,
        fc: int,
        address: int,
        count: int,
        unit_id: int,
        timeout_s: float | None = None,
    ) -> list:
        """Read `count` registers (FC3/4) or bits (FC1/2)."""
        client = self._client_or_new()
        timeout = timeout_s or self.settings.timeout_s
        if fc == 1:
            response = await self._call(lambda: client.read_coils(address, count=count, device_id=unit_id), timeout)
            return list(response.bits[:count])
        if fc == 2:
            response = await self._call(
                lambda: client.read_discrete_inputs(address, count=count, device_id=unit_id), timeout,
            )
            return list(response.bits[:count])
        if fc == 3:
            response = await self._call(
                lambda: client.read_holding_registers(address, count=count, device_id=unit_id), timeout,
            )
            return list(response.registers[:count])
        if fc == 4:
            response = await self._call(
                lambda: client.read_input_registers(address, count=count, device_id=unit_id), timeout,
            )
            return list(response.registers[:count])
        raise UnsupportedOperation(f"Unsupported read function code {fc}")

    async def write(
        self,
        fc: int,
        address: int,
        values: list,
        unit_id: int,
        timeout_s: float | None = None,
    ) -> None:
        """Write coils (FC5/15) or registers (FC6/16)."""
        client = self._client_or_new()
        timeout = timeout_s or self.settings.timeout_s
        if fc == 5:
            await self._call(lambda: client.write_coil(address, bool(values[0]), device_id=unit_id), timeout)
        elif fc == 15:
            await self._call(
                lambda: client.write_coils(address, [bool(v) for v in values], device_id=unit_id), timeout,
            )
        elif fc == 6:
            await self._call(lambda: client.write_register(address, values[0], device_id=unit_id), timeout)
        elif fc == 16:
            await self._call(lambda: client.write_registers(address, list(values), device_id=unit_id), timeout)
        else:
            raise UnsupportedOperation(f"Unsupported write function code {fc}")

    def _client_or_new(self):
        if self._client is None:
            self._client = self._build_client()
        return self._client
