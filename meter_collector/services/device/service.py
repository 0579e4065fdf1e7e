"""
Device Service - composition root

Wires the channel, executor, snapshot store, poller and HTTP facade
together from a CollectorConfig and owns the process lifecycle.
"""

import asyncio
import signal
from datetime import datetime, timezone

from meter_collector.common.config import CollectorConfig
from meter_collector.common.exceptions import ReconnectExhaustedError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.services.api.server import ApiServer

from .channel import ClientFactory, ModbusChannel, create_modbus_client, validate_channel_config
from .executor import TransactionExecutor
from .poller import Poller
from .snapshot import SnapshotStore

logger = get_service_logger("device")

EXIT_OK = 0
EXIT_RECONNECT_EXHAUSTED = 1


class DeviceService:
    """
    Runs one collector: a single channel, its device table, the poller
    task and the facade.

    Shutdown is cooperative: the stop event is observed at the poller's
    next suspension point and during retry delays, so an in-flight
    transaction completes or times out before the channel is closed.
    """

    def __init__(
        self,
        config: CollectorConfig,
        client_factory: ClientFactory = create_modbus_client,
        serve_http: bool = True,
    ):
        self.config = config
        self.serve_http = serve_http

        self._shutdown_event = asyncio.Event()

        self.channel = ModbusChannel(config.channel, client_factory=client_factory)
        self.executor = TransactionExecutor(
            self.channel,
            max_retry_count=config.polling.max_retry_count,
            retry_delay_ms=config.polling.retry_delay_ms,
            stop_event=self._shutdown_event,
        )
        self.store = SnapshotStore(d.id for d in config.devices)

        self.poller = Poller(
            channel=self.channel,
            executor=self.executor,
            store=self.store,
            devices=config.devices,
            settings=config.polling,
            stop_event=self._shutdown_event,
        )
        self.api = ApiServer(
            store=self.store,
            channel=self.channel,
            devices=config.devices,
            settings=config.http,
            stats_provider=self.poller.get_stats,
        )

        self._start_time = datetime.now(timezone.utc)
        self._poll_task: asyncio.Task | None = None

    async def start(self) -> None:
        """
        Validate the channel and start the facade and the poller task.

        Raises:
            InvalidConfigError: channel parameters are malformed
        """
        logger.info(f"Starting Device Service on {self.channel.describe()}")

        validate_channel_config(self.config.channel)

        if self.serve_http:
            await self.api.start()

        self._poll_task = asyncio.create_task(self.poller.run())

        logger.info(
            f"Device Service started ({len(self.config.devices)} devices)",
            extra={"device_count": len(self.config.devices)},
        )

    async def stop(self) -> None:
        """Stop polling, the facade and the channel, in that order"""
        logger.info("Stopping Device Service")

        self._shutdown_event.set()

        if self._poll_task and not self._poll_task.done():
            try:
                await self._poll_task
            except ReconnectExhaustedError:
                pass

        if self.serve_http:
            await self.api.stop()

        await self.channel.disconnect()

        logger.info("Device Service stopped")

    async def run(self) -> int:
        """
        Run until a shutdown signal or poller termination.

        Returns:
            Process exit code: 0 on clean shutdown, 1 when the reconnect
            ceiling stopped the poller
        """
        exit_code = EXIT_OK
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._wait_for_shutdown()
            exit_code = self._poller_exit_code()
        finally:
            await self.stop()

        return exit_code

    async def _wait_for_shutdown(self) -> None:
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait(
                {shutdown, self._poll_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not shutdown.done():
                shutdown.cancel()

    def _poller_exit_code(self) -> int:
        task = self._poll_task
        if task is None or not task.done():
            return EXIT_OK

        error = task.exception()
        if isinstance(error, ReconnectExhaustedError):
            logger.critical(f"Poller terminated: {error.message}")
            return EXIT_RECONNECT_EXHAUSTED
        if error is not None:
            raise error
        return EXIT_OK

    def request_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, self._signal_fallback(loop))

    def _signal_fallback(self, loop: asyncio.AbstractEventLoop):
        """Plain signal handler that hands the request over to the loop"""
        def handler(signum, frame):
            loop.call_soon_threadsafe(self.request_shutdown)
        return handler

    def get_status(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "uptime": int(uptime),
            "connected": self.channel.is_connected,
            "devices": len(self.store),
            "poller": self.poller.get_stats(),
        }
