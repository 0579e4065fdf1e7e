"""Shared fakes: a pymodbus-like client driven by a scripted response queue"""

import struct

import pytest

from meter_collector.common.config import (
    ChannelConfig,
    CollectorConfig,
    DeviceDescriptor,
    PollingSettings,
    PollStrategy,
    RegisterFormat,
    Transport,
)


class FakeResponse:
    def __init__(self, registers=None, error=False):
        self.registers = list(registers or [])
        self._error = error

    def isError(self):
        return self._error

    def __repr__(self):
        return "ExceptionResponse(0x83, 0x02)" if self._error else f"Response({self.registers})"


class FakeClient:
    """Stands in for AsyncModbusTcpClient / AsyncModbusSerialClient"""

    def __init__(self, modbus):
        self._modbus = modbus
        self.connected = False
        self.closed = False

    async def connect(self):
        result = self._modbus.next_connect_result()
        if isinstance(result, BaseException):
            raise result
        self.connected = bool(result)
        return self.connected

    def close(self):
        self.connected = False
        self.closed = True

    async def read_holding_registers(self, address, count=1, device_id=1):
        self._modbus.reads.append((address, count, device_id))
        item = self._modbus.next_response(address, count, device_id)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, FakeResponse):
            return item
        return FakeResponse(item)


class FakeModbus:
    """
    Client factory for ModbusChannel.

    Read outcomes come from `responses` in order, then from `default`
    (a register list, exception, FakeResponse or callable). Connect
    outcomes come from `connect_results`, then `connect_ok`.
    """

    def __init__(self, responses=None, default=None, connect_ok=True):
        self.responses = list(responses or [])
        self.default = default
        self.connect_results = []
        self.connect_ok = connect_ok
        self.clients = []
        self.reads = []

    def __call__(self, config):
        client = FakeClient(self)
        self.clients.append(client)
        return client

    @property
    def connect_attempts(self):
        return len(self.clients)

    def next_connect_result(self):
        if self.connect_results:
            return self.connect_results.pop(0)
        return self.connect_ok

    def next_response(self, address, count, device_id):
        item = self.responses.pop(0) if self.responses else self.default
        if callable(item) and not isinstance(item, (BaseException, FakeResponse)):
            item = item(address, count, device_id)
        if item is None:
            return FakeResponse([0] * count)
        return item


def float_words(value):
    """Big-endian float32 split into two register words"""
    return list(struct.unpack(">HH", struct.pack(">f", value)))


@pytest.fixture
def tcp_config():
    return ChannelConfig(transport=Transport.TCP, host="127.0.0.1", port=502)


@pytest.fixture
def modbus():
    return FakeModbus()


def make_devices(count=3, fmt=RegisterFormat.FLOAT32, contiguous=False, **kwargs):
    devices = []
    for i in range(1, count + 1):
        address = (i - 1) * 2 if contiguous else 0
        devices.append(DeviceDescriptor(
            id=i,
            name=f"meter_{i}",
            register_address=address,
            format=fmt,
            **kwargs,
        ))
    return tuple(devices)


def make_config(
    devices=None,
    strategy=PollStrategy.SEQUENTIAL,
    channel=None,
    **polling,
):
    polling.setdefault("read_interval_ms", 10)
    polling.setdefault("max_retry_count", 0)
    polling.setdefault("retry_delay_ms", 0)
    polling.setdefault("max_reconnect_count", 3)
    return CollectorConfig(
        channel=channel or ChannelConfig(transport=Transport.TCP, host="127.0.0.1"),
        devices=devices or make_devices(),
        polling=PollingSettings(strategy=strategy, **polling),
    )
