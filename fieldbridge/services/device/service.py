"""
Device Service

Runs every configured device:
- Loads the gateway config and the template catalog
- Creates one DeviceRuntime per enabled device
- Routes inbound state-store writes to the owning runtime
- Serves /health, /status and /readings over HTTP
"""

import asyncio
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from aiohttp import web

from ...common.config import GatewayConfig, load_gateway_config
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from ...common.state import MemoryStateStore, StateStore
from ...common.templates import TemplateCatalog, load_template_catalog
from ...common.validator import ConfigValidator
from ...drivers import DriverRegistry, default_registry
from .context import RuntimeContext
from .runtime import DeviceRuntime

logger = get_service_logger("device")

CONFIG_SEARCH_PATHS = (
    "/etc/fieldbridge/config.yaml",
    "/opt/fieldbridge/config.yaml",
    "config.yaml",
)

# Upper bound on waiting for drivers to disconnect at shutdown
DISCONNECT_TIMEOUT_S = 5.0


def find_config_path() -> str:
    for path in CONFIG_SEARCH_PATHS:
        if Path(path).exists():
            return path
    return CONFIG_SEARCH_PATHS[0]


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Parse a YAML config file; raises ConfigError if unreadable."""
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}")


class DeviceService:
    """
    Gateway device service.

    Owns the runtime context (driver registry and shared Modbus buses),
    the state store and one runtime per device. Drivers for protocols
    beyond Modbus are plugged in through `drivers`.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        config_path: str | None = None,
        templates_path: str | None = None,
        store: StateStore | None = None,
        catalog: TemplateCatalog | None = None,
        drivers: DriverRegistry | None = None,
    ):
        self.config_path = config_path or (None if config is not None else find_config_path())
        self._raw_config = config
        self._templates_path = templates_path
        self.store = store or MemoryStateStore()
        self.catalog = catalog
        self.drivers = drivers or default_registry()

        self.gateway = GatewayConfig()
        self.context: RuntimeContext | None = None
        self.runtimes: dict[str, DeviceRuntime] = {}
        self._start_time = datetime.now(timezone.utc)

        self._health_runner: web.AppRunner | None = None
        self._write_task: asyncio.Task | None = None
        # device id -> inbound writes waiting for that device, and their consumer
        self._inbound: dict[str, asyncio.Queue] = {}
        self._consumers: dict[str, asyncio.Task] = {}
        self.disconnect_timeout_s = DISCONNECT_TIMEOUT_S
        self._running = False
        self._shutdown_event = asyncio.Event()

    def load_config(self) -> None:
        """Load gateway config and templates. Bad devices are logged and skipped."""
        raw = self._raw_config
        if raw is None:
            raw = read_config_file(self.config_path)
            logger.info(f"Loaded config from {self.config_path}")

        self.gateway, rejected = load_gateway_config(raw)
        for device_data, error in rejected:
            logger.error(f"Device {device_data.get('id', '?')} skipped: {error}")

        if self.catalog is None:
            base = Path(self.config_path).parent if self.config_path else Path(".")
            templates_path = Path(self._templates_path or self.gateway.templates_path)
            if not templates_path.is_absolute():
                templates_path = base / templates_path
            self.catalog = load_template_catalog(templates_path)

        is_valid, errors = ConfigValidator().validate(raw, set(self.catalog.ids()))
        for error in errors:
            logger.warning(f"Config: {error}")
        if not is_valid:
            logger.warning("Starting with an invalid configuration; affected devices may not run")

        self.context = RuntimeContext(gateway=self.gateway, drivers=self.drivers)

    async def start(self, wait: bool = True) -> None:
        """Start all devices; with wait=True, block until a shutdown signal."""
        logger.info("Starting Device Service")
        self._running = True
        self.load_config()
        await self._start_runtimes()

        self._write_task = asyncio.create_task(self._write_loop(), name="inbound-writes")
        await self._start_health_server()

        logger.info(
            f"Device Service started ({len(self.runtimes)} devices)",
            extra={"device_count": len(self.runtimes)},
        )

        if wait:
            self._setup_signal_handlers()
            await self._shutdown_event.wait()

    async def stop(self) -> None:
        logger.info("Stopping Device Service")
        self._running = False

        if self._write_task:
            self._write_task.cancel()
            try:
                await self._write_task
            except asyncio.CancelledError:
                pass
            self._write_task = None

        consumers = list(self._consumers.values())
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        self._consumers.clear()
        self._inbound.clear()

        disconnects = [task for task in (r.stop() for r in self.runtimes.values()) if task]
        if disconnects:
            try:
                await asyncio.wait_for(asyncio.gather(*disconnects), timeout=self.disconnect_timeout_s)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Driver disconnect did not finish within {self.disconnect_timeout_s}s, continuing shutdown"
                )

        await self._stop_health_server()
        if self.context is not None:
            self.context.close()
        logger.info("Device Service stopped")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def _start_runtimes(self) -> None:
        for device in self.gateway.devices:
            if device.id in self.runtimes:
                logger.error(f"Device {device.id} skipped: duplicate id")
                continue
            try:
                template = self.catalog.get(device.template_id)
                runtime = DeviceRuntime(device, template, self.store, self.context)
            except ConfigError as e:
                logger.error(f"Device {device.id} not started: {e}")
                continue
            self.runtimes[device.id] = runtime

        # Devices start concurrently so one unreachable device cannot delay the rest
        results = await asyncio.gather(
            *(runtime.start() for runtime in self.runtimes.values()),
            return_exceptions=True,
        )
        for runtime, result in zip(self.runtimes.values(), results):
            if isinstance(result, Exception):
                logger.error(f"Device {runtime.device.id} failed to start: {result}")

    def route(self, path: str) -> DeviceRuntime | None:
        parts = path.split(".")
        if len(parts) < 3 or parts[0] != "devices":
            return None
        runtime = self.runtimes.get(parts[1])
        if runtime is None or not runtime.owns(path):
            return None
        return runtime

    async def _write_loop(self) -> None:
        """Hand each inbound write to its device without waiting for it."""
        async for write in self.store.inbound_writes():
            runtime = self.route(write.path)
            if runtime is None:
                logger.debug(f"No device owns {write.path}, write ignored")
                continue
            self._inbound_queue(runtime).put_nowait(write)

    def _inbound_queue(self, runtime: DeviceRuntime) -> asyncio.Queue:
        device_id = runtime.device.id
        queue = self._inbound.get(device_id)
        if queue is None:
            queue = asyncio.Queue()
            self._inbound[device_id] = queue
            self._consumers[device_id] = asyncio.create_task(
                self._device_writes(runtime, queue), name=f"writes:{device_id}",
            )
        return queue

    async def _device_writes(self, runtime: DeviceRuntime, queue: asyncio.Queue) -> None:
        # One consumer per device: writes to a device apply in arrival order
        while True:
            write = await queue.get()
            try:
                await runtime.handle_write(write.path, write.value)
            except Exception as e:
                logger.error(f"Error handling write to {write.path}: {e}")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        port = self.gateway.health_port
        if not port:
            return
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/readings", self._readings_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()
        site = web.TCPSite(self._health_runner, "127.0.0.1", port)
        await site.start()
        logger.info(f"Health server started on port {port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        connected = sum(1 for r in self.runtimes.values() if r.connected)
        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "device",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "devices": len(self.runtimes),
            "connected": connected,
            "buses": self.context.bus_registry.get_stats() if self.context else {},
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            device_id: runtime.get_status() for device_id, runtime in self.runtimes.items()
        })

    async def _readings_handler(self, request: web.Request) -> web.Response:
        if isinstance(self.store, MemoryStateStore):
            return web.json_response(self.store.snapshot("devices"))
        return web.json_response({})


async def main(config_path: str | None = None, templates_path: str | None = None) -> None:
    """Main entry point"""
    service = DeviceService(config_path=config_path, templates_path=templates_path)
    try:
        await service.start()
    finally:
        await service.stop()


if __name__ == "__main__":
    asyncio.run(main())
