"""
Retrying Transaction Executor

Wraps a single logical register read with bounded retry and
reconnection. The executor never enforces the cross-cycle reconnect
ceiling; it only reports whether the final failure was link-level.
"""

import asyncio
from dataclasses import dataclass

from meter_collector.common.exceptions import LinkError, TransactionError
from meter_collector.common.logging_setup import get_service_logger
from .channel import ModbusChannel

logger = get_service_logger("device.executor")


@dataclass
class TransactionResult:
    """Outcome of one logical register read"""
    success: bool
    registers: list[int] | None = None
    attempts: int = 0
    error: str | None = None
    link_failure: bool = False

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)


class TransactionExecutor:
    """
    Bounded-retry wrapper around register reads on one channel.

    Per attempt:
    - no live client: connect (a failed connect is a failed attempt)
    - LinkError: force disconnect, so the next attempt reconnects
    - ProtocolError: retry on the same connection

    Attempts are separated by a flat delay; the channel lock is never held
    while waiting. Setting `stop_event` cuts the delay short and abandons
    the remaining attempts.
    """

    def __init__(
        self,
        channel: ModbusChannel,
        max_retry_count: int = 3,
        retry_delay_ms: int = 500,
        stop_event: asyncio.Event | None = None,
    ):
        if max_retry_count < 0:
            raise ValueError("max_retry_count must be >= 0")
        self.channel = channel
        self.max_retry_count = max_retry_count
        self.retry_delay_ms = retry_delay_ms
        self.stop_event = stop_event

    @property
    def max_attempts(self) -> int:
        return self.max_retry_count + 1

    async def execute(
        self,
        address: int,
        count: int,
        unit_id: int,
        label: str = "",
    ) -> TransactionResult:
        """
        Read `count` registers at `address` from `unit_id` with retry.

        InvalidConfigError from the channel propagates untouched.
        """
        label = label or f"unit {unit_id} @{address}"
        last_error = ""
        link_failure = False

        for attempt in range(1, self.max_attempts + 1):
            try:
                if not self.channel.has_handle:
                    await self.channel.connect()

                registers = await self.channel.read_registers(address, count, unit_id)

                if attempt > 1:
                    logger.info(f"Read {label} succeeded on attempt {attempt}/{self.max_attempts}")
                return TransactionResult(
                    success=True,
                    registers=registers,
                    attempts=attempt,
                )

            except LinkError as e:
                last_error = e.reason
                link_failure = True
                await self.channel.disconnect()

            except TransactionError as e:
                # ProtocolError / NotConnectedError: retry without reconnecting
                last_error = e.reason
                link_failure = False

            if attempt < self.max_attempts:
                logger.warning(
                    f"Read {label} failed (retry {attempt}/{self.max_retry_count}): {last_error}"
                )
                if await self._backoff():
                    logger.info(f"Shutdown requested, abandoning retries for {label}")
                    break
            else:
                logger.warning(
                    f"Read {label} failed after {attempt} attempts: {last_error}"
                )

        return TransactionResult(
            success=False,
            attempts=attempt,
            error=last_error,
            link_failure=link_failure,
        )

    async def _backoff(self) -> bool:
        """Wait out the retry delay. Returns True if shutdown was requested."""
        delay = self.retry_delay_ms / 1000
        if self.stop_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
