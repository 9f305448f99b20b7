"""
Configuration Validator

Validates raw device entries before they are turned into runtimes.
"""

from typing import Any

from .config import Protocol
from .logging_setup import get_service_logger

logger = get_service_logger("config.validator")

SERIAL_PROTOCOLS = {Protocol.MODBUS_RTU.value, Protocol.MODBUS_ASCII.value}
VALID_PARITY = {"N", "E", "O"}


class ConfigValidator:
    """Validates gateway configuration"""

    def validate(
        self,
        config: dict[str, Any],
        template_ids: set[str] | None = None,
    ) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Args:
            config: Configuration dictionary (parsed YAML)
            template_ids: Known template ids, checked when given

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []
        devices = config.get("devices", []) or []

        if not devices:
            errors.append("No devices configured")

        seen: set[str] = set()
        for i, device in enumerate(devices):
            device_id = device.get("id")
            if device_id in seen:
                errors.append(f"Device {i}: duplicate id '{device_id}'")
            seen.add(device_id)
            errors.extend(self._validate_device(device, i, template_ids))

        gateway = config.get("gateway", {}) or {}
        port = gateway.get("health_port", 8090)
        if not isinstance(port, int) or not 0 <= port <= 65535:
            errors.append(f"Invalid gateway.health_port: {port}")

        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(
                f"Config validation failed: {len(errors)} errors",
                extra={"errors": errors},
            )
        else:
            logger.debug("Config validation passed")

        return is_valid, errors

    def _validate_device(
        self,
        device: dict[str, Any],
        index: int,
        template_ids: set[str] | None,
    ) -> list[str]:
        errors = []
        prefix = f"Device {index} ({device.get('id', 'unknown')})"

        if not device.get("id"):
            errors.append(f"{prefix}: missing id")

        protocol = str(device.get("protocol", "")).lower()
        if protocol not in {p.value for p in Protocol}:
            errors.append(f"{prefix}: unsupported protocol '{device.get('protocol')}'")

        template_id = device.get("template_id") or device.get("template")
        if not template_id:
            errors.append(f"{prefix}: missing template_id")
        elif template_ids is not None and template_id not in template_ids:
            errors.append(f"{prefix}: unknown template '{template_id}'")

        connection = device.get("connection") or {}
        if protocol == Protocol.MODBUS_TCP.value:
            if not connection.get("host"):
                errors.append(f"{prefix}: missing connection.host")
            port = connection.get("port", 502)
            if not isinstance(port, int) or not 1 <= port <= 65535:
                errors.append(f"{prefix}: invalid port {port}")
        elif protocol in SERIAL_PROTOCOLS:
            if not connection.get("serial_port"):
                errors.append(f"{prefix}: missing connection.serial_port")
            parity = str(connection.get("parity", "N")).upper()
            if parity not in VALID_PARITY:
                errors.append(f"{prefix}: invalid parity '{parity}'")

        if protocol in SERIAL_PROTOCOLS or protocol == Protocol.MODBUS_TCP.value:
            unit_id = connection.get("unit_id", 1)
            if not isinstance(unit_id, int) or not 0 <= unit_id <= 247:
                errors.append(f"{prefix}: unit_id must be 0-247, got {unit_id}")

        poll = device.get("poll_interval_ms")
        if poll is not None and (not isinstance(poll, int) or poll < 0):
            errors.append(f"{prefix}: invalid poll_interval_ms {poll}")

        return errors
