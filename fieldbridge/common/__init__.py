"""
Common Utilities

Shared modules used across the gateway:
- config.py - Template, device and gateway dataclasses
- hints.py - Template driver hints (polling, throttling, watchdog, pre-writes)
- templates.py - Template catalog loading
- state.py - State store contract and in-memory store
- exceptions.py - Error taxonomy
- logging_setup.py - Structured logging setup
- scheduler.py - Periodic async loops
"""

from .config import (
    Access,
    DatapointDef,
    DeviceConfig,
    GatewayConfig,
    Protocol,
    Template,
    ValueType,
    load_gateway_config,
)
from .exceptions import (
    CodecError,
    ConfigError,
    DeviceError,
    GatewayError,
    ProtocolError,
    TransportError,
    UnsupportedOperation,
    WriteError,
    is_transport_error,
)
from .hints import DriverHints, parse_driver_hints
from .logging_setup import (
    RateLimitedLogger,
    get_service_logger,
    log_device_read,
    log_device_write,
    setup_logging,
)
from .state import MemoryStateStore, StateStore, device_path
from .templates import TemplateCatalog, load_template_catalog

__all__ = [
    # Config
    "Access",
    "DatapointDef",
    "DeviceConfig",
    "GatewayConfig",
    "Protocol",
    "Template",
    "ValueType",
    "load_gateway_config",
    "DriverHints",
    "parse_driver_hints",
    "TemplateCatalog",
    "load_template_catalog",
    # State
    "StateStore",
    "MemoryStateStore",
    "device_path",
    # Exceptions
    "GatewayError",
    "ConfigError",
    "DeviceError",
    "TransportError",
    "ProtocolError",
    "CodecError",
    "UnsupportedOperation",
    "WriteError",
    "is_transport_error",
    # Logging
    "setup_logging",
    "get_service_logger",
    "RateLimitedLogger",
    "log_device_read",
    "log_device_write",
]
