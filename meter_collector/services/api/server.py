"""
Request-serving facade

Republishes the latest readings over HTTP. Handlers read the snapshot
store only; they never take the channel lock or talk to devices.

Envelope:
    {"message": <payload>, "result": 0 | -1, "timestamp": <unix seconds>}

Unavailable or non-finite values are rendered as -1.
"""

import math
import time
from datetime import datetime, timezone
from typing import Callable, Sequence

from aiohttp import web

from meter_collector import __version__
from meter_collector.common.config import DeviceDescriptor, HttpSettings
from meter_collector.common.exceptions import DeviceNotFoundError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.services.device.channel import ModbusChannel
from meter_collector.services.device.snapshot import Reading, SnapshotStore

logger = get_service_logger("api")

RESULT_OK = 0
RESULT_ERROR = -1
UNAVAILABLE_VALUE = -1

INVALID_ID_MESSAGE = "error: invalid meter id"


def render_value(reading: Reading, precision: int) -> float | int:
    """Value as published: rounded, or -1 when it cannot be trusted"""
    if not reading.success or reading.value is None:
        return UNAVAILABLE_VALUE
    if not math.isfinite(reading.value):
        return UNAVAILABLE_VALUE
    return round(reading.value, precision)


def envelope(message, result: int = RESULT_OK) -> dict:
    return {
        "message": message,
        "result": result,
        "timestamp": int(time.time()),
    }


class ApiServer:
    """
    aiohttp application over a snapshot store.

    Routes (paths configurable):
    - all meters:   list of values in device-table order
    - single meter: [value] for one device id
    - detail:       full Reading plus descriptor metadata
    - /health:      link and poller status
    """

    def __init__(
        self,
        store: SnapshotStore,
        channel: ModbusChannel,
        devices: Sequence[DeviceDescriptor],
        settings: HttpSettings | None = None,
        stats_provider: Callable[[], dict] | None = None,
    ):
        self.store = store
        self.channel = channel
        self.devices = {d.id: d for d in devices}
        self.settings = settings or HttpSettings()
        self._stats_provider = stats_provider
        self._start_time = datetime.now(timezone.utc)

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        routes = self.settings.routes
        app = web.Application()
        # Static path first so it is not captured by {id}
        app.router.add_get(routes.all, self._all_handler)
        app.router.add_get(routes.detail, self._detail_handler)
        app.router.add_get(routes.single, self._single_handler)
        app.router.add_get("/health", self._health_handler)
        return app

    async def start(self) -> None:
        """Start serving on the configured host and port"""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        await site.start()

        logger.info(f"API server started on {self.settings.host}:{self.settings.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")

    def _parse_id(self, request: web.Request) -> int | None:
        try:
            return int(request.match_info["id"])
        except (KeyError, ValueError):
            return None

    async def _all_handler(self, request: web.Request) -> web.Response:
        precision = self.settings.value_precision
        values = [render_value(r, precision) for r in self.store.get_all()]
        return web.json_response(envelope(values))

    async def _single_handler(self, request: web.Request) -> web.Response:
        device_id = self._parse_id(request)
        if device_id is None:
            return web.json_response(envelope(INVALID_ID_MESSAGE, RESULT_ERROR))

        try:
            reading = self.store.get(device_id)
        except DeviceNotFoundError:
            return web.json_response(envelope([UNAVAILABLE_VALUE], RESULT_ERROR))

        value = render_value(reading, self.settings.value_precision)
        return web.json_response(envelope([value]))

    async def _detail_handler(self, request: web.Request) -> web.Response:
        device_id = self._parse_id(request)
        if device_id is None:
            return web.json_response(envelope(INVALID_ID_MESSAGE, RESULT_ERROR))

        try:
            reading = self.store.get(device_id)
        except DeviceNotFoundError:
            return web.json_response(envelope(None, RESULT_ERROR))

        device = self.devices[device_id]
        return web.json_response(envelope({
            "id": device.id,
            "name": device.name,
            "value": render_value(reading, self.settings.value_precision),
            "success": reading.success,
            "retry_count": reading.retry_count,
            "last_update": reading.timestamp.isoformat(),
            "format": device.format.value,
            "scale": device.scale,
            "register_address": device.register_address,
            "error": reading.error,
        }))

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        poller = self._stats_provider() if self._stats_provider else {}

        healthy = poller.get("status") != "stopped"
        return web.json_response({
            "status": "healthy" if healthy else "unhealthy",
            "service": "meter_collector",
            "version": __version__,
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "modbus_status": "connected" if self.channel.is_connected else "disconnected",
            "channel": self.channel.describe(),
            "devices": len(self.store),
            "snapshot_version": self.store.version,
            "poller": poller,
        })
