"""
Device Poller

Drives polling cycles on a fixed schedule: ensures the channel is
connected, runs transactions through the executor, decodes and scales the
registers, and replaces entries in the snapshot store.

The poller is the only writer of the snapshot store and the only user of
the channel. Consecutive link-level failures are counted across cycles;
reaching the configured ceiling stops the poller for good.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from meter_collector.common.config import (
    DeviceDescriptor,
    PollingSettings,
    PollStrategy,
    batch_span,
    resolve_unit_id,
)
from meter_collector.common.exceptions import DecodeError, LinkError, ReconnectExhaustedError
from meter_collector.common.logging_setup import get_service_logger, log_device_read
from .channel import ModbusChannel
from .decoders import decode_registers
from .executor import TransactionExecutor, TransactionResult
from .snapshot import Reading, SnapshotStore

logger = get_service_logger("device.poller")


class PollerStatus(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass
class PollerState:
    """Mutable bookkeeping owned by the polling task"""
    reconnect_failure_count: int = 0
    current_device_index: int = 0
    last_cycle_start: datetime | None = None
    cycle_count: int = 0
    skipped_intervals: int = 0


class Poller:
    """
    Polls a device table over one channel.

    Strategies:
    - batch: one read spanning every device's registers
    - sequential: one read per device, every device each cycle
    - round_robin: one device per cycle, cursor advances
    """

    def __init__(
        self,
        channel: ModbusChannel,
        executor: TransactionExecutor,
        store: SnapshotStore,
        devices: Sequence[DeviceDescriptor],
        settings: PollingSettings,
        stop_event: asyncio.Event | None = None,
    ):
        if not devices:
            raise ValueError("Poller needs at least one device")
        if set(store.device_ids) != {d.id for d in devices}:
            raise ValueError("Snapshot store and device table disagree")

        self.channel = channel
        self.executor = executor
        self.store = store
        self.devices = tuple(devices)
        self.settings = settings
        self.status = PollerStatus.IDLE
        self.state = PollerState()
        self._stop_event = stop_event or asyncio.Event()

    @property
    def reconnect_failure_count(self) -> int:
        return self.state.reconnect_failure_count

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def stop(self) -> None:
        """Ask the polling loop to finish at its next suspension point"""
        self._stop_event.set()

    async def run(self) -> None:
        """
        Poll until the stop event is set.

        Cycles start on fixed boundaries measured from the first cycle
        start; boundaries missed by a long cycle are skipped, not queued.

        Raises:
            ReconnectExhaustedError: the reconnect ceiling was reached
        """
        loop = asyncio.get_running_loop()
        interval = self.settings.read_interval

        logger.info(
            f"Poller starting: {len(self.devices)} devices on {self.channel.describe()}, "
            f"strategy={self.settings.strategy.value}, interval={interval:.3f}s"
        )

        next_run = loop.time()
        try:
            while not self._stop_event.is_set():
                await self.poll_cycle()

                now = loop.time()
                next_run += interval
                skipped = 0
                while next_run <= now:
                    next_run += interval
                    skipped += 1

                if skipped:
                    self.state.skipped_intervals += skipped
                    logger.warning(
                        f"Polling cycle overran, skipped {skipped} interval(s)"
                    )

                await self._wait(next_run - now)
        finally:
            self.status = PollerStatus.STOPPED
            logger.info("Poller stopped")

    async def _wait(self, timeout: float) -> None:
        """Sleep until the next boundary or until shutdown is requested"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            pass

    async def poll_cycle(self) -> None:
        """
        Run one polling cycle.

        Per-device failures are recorded as unsuccessful readings and never
        abort the cycle. A failed connect ends the cycle early and leaves
        the store untouched.

        Raises:
            ReconnectExhaustedError: the reconnect ceiling was reached
        """
        self._check_reconnect_ceiling()

        self.status = PollerStatus.POLLING
        self.state.last_cycle_start = datetime.now(timezone.utc)
        self.state.cycle_count += 1

        if not self.channel.is_connected:
            try:
                await self.channel.connect()
            except LinkError as e:
                self.state.reconnect_failure_count += 1
                logger.error(
                    f"Connection failed, reconnect count: "
                    f"{self.state.reconnect_failure_count}/{self.settings.max_reconnect_count} "
                    f"({e.reason})"
                )
                return

        strategy = self.settings.strategy
        if strategy == PollStrategy.BATCH:
            await self._poll_batch()
        elif strategy == PollStrategy.ROUND_ROBIN:
            device = self.devices[self.state.current_device_index]
            self.state.current_device_index = (
                self.state.current_device_index + 1
            ) % len(self.devices)
            await self._poll_device(device)
        else:
            for device in self.devices:
                if self._stop_event.is_set():
                    break
                await self._poll_device(device)

    def _check_reconnect_ceiling(self) -> None:
        if self.state.reconnect_failure_count >= self.settings.max_reconnect_count:
            if self.status != PollerStatus.STOPPED:
                logger.critical(
                    f"Max reconnect count ({self.settings.max_reconnect_count}) reached, "
                    f"stopping poller"
                )
            self.status = PollerStatus.STOPPED
            raise ReconnectExhaustedError(
                self.state.reconnect_failure_count,
                self.settings.max_reconnect_count,
            )

    async def _poll_device(self, device: DeviceDescriptor) -> Reading:
        self._check_reconnect_ceiling()

        result = await self.executor.execute(
            address=device.register_address,
            count=device.register_count,
            unit_id=resolve_unit_id(device, self.channel.config),
            label=device.name,
        )
        await self._account(result)

        reading = self._to_reading(device, result.registers, result)
        self.store.replace(reading)
        log_device_read(
            logger,
            device.name,
            reading.value,
            success=reading.success,
            retry_count=reading.retry_count,
            error=reading.error,
        )
        return reading

    async def _poll_batch(self) -> None:
        self._check_reconnect_ceiling()

        start, count = batch_span(self.devices)
        result = await self.executor.execute(
            address=start,
            count=count,
            unit_id=resolve_unit_id(self.devices[0], self.channel.config),
            label=f"batch of {len(self.devices)} devices",
        )
        await self._account(result)

        readings = []
        for device in self.devices:
            words = None
            if result.success:
                offset = device.register_address - start
                words = result.registers[offset:offset + device.register_count]
            readings.append(self._to_reading(device, words, result))

        self.store.replace_all(readings)

        ok = sum(1 for r in readings if r.success)
        if ok == len(readings):
            logger.info(f"Batch read: {ok}/{len(readings)} devices updated")
        else:
            logger.warning(f"Batch read: {ok}/{len(readings)} devices updated")

    async def _account(self, result: TransactionResult) -> None:
        """Update the reconnect counter from a transaction outcome"""
        if result.success:
            self.state.reconnect_failure_count = 0
        elif result.link_failure:
            self.state.reconnect_failure_count += 1
            logger.warning(
                f"Link failure, reconnect count: "
                f"{self.state.reconnect_failure_count}/{self.settings.max_reconnect_count}"
            )
            await self.channel.disconnect()

    @staticmethod
    def _to_reading(
        device: DeviceDescriptor,
        words: list[int] | None,
        result: TransactionResult,
    ) -> Reading:
        if not result.success or words is None:
            return Reading.failed(device.id, result.retry_count, result.error)

        try:
            raw = decode_registers(
                device.format,
                words,
                device.bcd_integer_digits,
                device.bcd_fractional_digits,
            )
        except DecodeError as e:
            return Reading.failed(device.id, result.retry_count, e.reason)

        return Reading.ok(device.id, raw * device.scale, result.retry_count)

    def get_stats(self) -> dict:
        """Poller statistics for observability"""
        last = self.state.last_cycle_start
        return {
            "status": self.status.value,
            "strategy": self.settings.strategy.value,
            "cycle_count": self.state.cycle_count,
            "reconnect_failure_count": self.state.reconnect_failure_count,
            "max_reconnect_count": self.settings.max_reconnect_count,
            "current_device_index": self.state.current_device_index,
            "skipped_intervals": self.state.skipped_intervals,
            "last_cycle_start": last.isoformat() if last else None,
        }
