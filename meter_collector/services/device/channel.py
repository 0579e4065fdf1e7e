"""
Modbus Channel

Owns one pymodbus client (RTU serial or TCP) shared by every device behind
it, and serializes all transport I/O through a single lock.
"""

import asyncio
import ipaddress
import os
from typing import Any, Callable

from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from meter_collector.common.config import ChannelConfig, Transport
from meter_collector.common.exceptions import (
    InvalidConfigError,
    LinkError,
    NotConnectedError,
    ProtocolError,
)
from meter_collector.common.logging_setup import get_service_logger

logger = get_service_logger("device.channel")

VALID_BAUDRATES = (1200, 2400, 4800, 9600, 19200, 38400, 57600, 115200)
VALID_PARITIES = ("N", "E", "O")
VALID_BYTESIZES = (5, 6, 7, 8)
VALID_STOPBITS = (1, 2)

ClientFactory = Callable[[ChannelConfig], Any]


def validate_channel_config(config: ChannelConfig) -> None:
    """
    Validate connection parameters without touching the transport.

    Raises:
        InvalidConfigError: on the first invalid parameter
    """
    if config.transport == Transport.SERIAL:
        if not config.device:
            raise InvalidConfigError("serial device path is empty", field="device")
        if not os.path.exists(config.device):
            raise InvalidConfigError(f"serial device not found: {config.device}", field="device")
        if config.baudrate not in VALID_BAUDRATES:
            raise InvalidConfigError(f"invalid baudrate: {config.baudrate}", field="baudrate")
        if config.parity not in VALID_PARITIES:
            raise InvalidConfigError(f"invalid parity: {config.parity!r}", field="parity")
        if config.bytesize not in VALID_BYTESIZES:
            raise InvalidConfigError(f"invalid data bits: {config.bytesize}", field="bytesize")
        if config.stopbits not in VALID_STOPBITS:
            raise InvalidConfigError(f"invalid stop bits: {config.stopbits}", field="stopbits")
    elif config.transport == Transport.TCP:
        if not config.host:
            raise InvalidConfigError("tcp host is empty", field="host")
        try:
            ipaddress.ip_address(config.host)
        except ValueError:
            raise InvalidConfigError(f"invalid IP address: {config.host}", field="host")
        if not 1 <= config.port <= 65535:
            raise InvalidConfigError(f"invalid port number: {config.port}", field="port")
    else:
        raise InvalidConfigError(f"unknown transport: {config.transport!r}", field="transport")


def create_modbus_client(config: ChannelConfig) -> AsyncModbusSerialClient | AsyncModbusTcpClient:
    """
    Build the pymodbus client for a channel.

    Transport-level retries and automatic reconnects are disabled; the
    transaction executor and the poller own both policies.
    """
    if config.transport == Transport.SERIAL:
        return AsyncModbusSerialClient(
            port=config.device,
            baudrate=config.baudrate,
            bytesize=config.bytesize,
            parity=config.parity,
            stopbits=config.stopbits,
            timeout=config.response_timeout,
            retries=0,
            reconnect_delay=0,
        )

    return AsyncModbusTcpClient(
        host=config.host,
        port=config.port,
        timeout=config.response_timeout,
        retries=0,
        reconnect_delay=0,
    )


class ModbusChannel:
    """
    One physical connection to one or more devices.

    Lifecycle:
    - created empty (no client)
    - connect() validates the config, allocates a client and connects
    - disconnect() releases the client (idempotent, never raises)
    - reconnect() = disconnect() + connect()

    At most one transaction uses the client at any time.
    """

    def __init__(
        self,
        config: ChannelConfig,
        client_factory: ClientFactory = create_modbus_client,
    ):
        self.config = config
        self._client_factory = client_factory
        self._client: Any = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        client = self._client
        return client is not None and bool(client.connected)

    @property
    def has_handle(self) -> bool:
        return self._client is not None

    def describe(self) -> str:
        return f"{self.config.transport.value}://{self.config.describe()}"

    async def connect(self) -> None:
        """
        Validate the configuration and open the transport.

        Raises:
            InvalidConfigError: before any I/O if the config is malformed
            LinkError: if the physical connection cannot be established
        """
        validate_channel_config(self.config)

        async with self._lock:
            self._release()

            client = self._client_factory(self.config)
            try:
                await client.connect()
                connected = bool(client.connected)
            except Exception as e:
                self._close_client(client)
                logger.error(f"Connection error to {self.describe()}: {e}")
                raise LinkError(f"Connection failed: {e}")

            if not connected:
                self._close_client(client)
                logger.warning(f"Failed to connect to {self.describe()}")
                raise LinkError(f"Connection failed: {self.describe()} unreachable")

            self._client = client
            logger.info(f"Connected to {self.describe()}")

    async def disconnect(self) -> None:
        """Close and release the transport if present"""
        async with self._lock:
            if self._release():
                logger.info(f"Disconnected from {self.describe()}")

    async def reconnect(self) -> None:
        """Drop the current connection and open a fresh one"""
        await self.disconnect()
        await self.connect()

    async def read_registers(self, address: int, count: int, unit_id: int) -> list[int]:
        """
        Read `count` holding registers starting at `address`.

        Returns:
            Exactly `count` register words

        Raises:
            NotConnectedError: no live client
            LinkError: transport failure, the channel must be reconnected
            ProtocolError: bad or exception response, safe to retry
        """
        async with self._lock:
            client = self._client
            if client is None:
                raise NotConnectedError(
                    f"Not connected to {self.describe()}",
                    address=address,
                    count=count,
                )

            try:
                response = await client.read_holding_registers(
                    address=address,
                    count=count,
                    device_id=unit_id,
                )
            except (ConnectionException, ModbusIOException) as e:
                raise LinkError(f"Link failure: {e}", address=address, count=count)
            except asyncio.TimeoutError:
                raise LinkError("Read timeout", address=address, count=count)
            except OSError as e:
                raise LinkError(f"Transport error: {e}", address=address, count=count)
            except ModbusException as e:
                raise ProtocolError(f"Modbus exception: {e}", address=address, count=count)

            if response is None:
                raise ProtocolError("Empty response", address=address, count=count)

            if response.isError():
                raise ProtocolError(f"Modbus error: {response}", address=address, count=count)

            registers = list(response.registers or [])
            if len(registers) < count:
                raise ProtocolError(
                    f"Short response: expected {count} registers, got {len(registers)}",
                    address=address,
                    count=count,
                )

            return registers[:count]

    def _release(self) -> bool:
        """Drop the client; caller holds the lock"""
        client = self._client
        self._client = None
        if client is None:
            return False
        self._close_client(client)
        return True

    def _close_client(self, client: Any) -> None:
        try:
            client.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing {self.describe()}: {e}")
