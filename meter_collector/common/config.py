"""
Configuration Dataclasses

Type-safe configuration structures for the collector, loaded from a YAML
file. Every family of device (electric, heat, water meters, inverters) is
described by the same structures; only the values differ.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

# Largest register span pymodbus allows in one read holding registers request
MAX_REGISTERS_PER_READ = 125


class Transport(str, Enum):
    """Channel transport kinds"""
    SERIAL = "serial"
    TCP = "tcp"


class RegisterFormat(str, Enum):
    """How a device's registers encode its value"""
    FLOAT32 = "float32"   # big-endian IEEE-754 single precision
    UINT32 = "uint32"     # big-endian unsigned 32-bit integer
    BCD = "bcd"           # packed BCD, fixed point


class PollStrategy(str, Enum):
    """How the poller spreads transactions over devices"""
    BATCH = "batch"               # one read covering every device
    SEQUENTIAL = "sequential"     # one read per device, all devices per cycle
    ROUND_ROBIN = "round_robin"   # one device per cycle


# Minimum register count per format
FORMAT_REGISTER_COUNT = {
    RegisterFormat.FLOAT32: 2,
    RegisterFormat.UINT32: 2,
    RegisterFormat.BCD: 1,
}


@dataclass(frozen=True)
class ChannelConfig:
    """Transport addressing and timeouts for one channel"""
    transport: Transport = Transport.TCP
    # Serial (RTU) settings
    device: str = ""              # e.g. "/dev/ttyUSB0"
    baudrate: int = 9600
    parity: str = "N"             # N=None, E=Even, O=Odd
    bytesize: int = 8
    stopbits: int = 1
    # TCP settings
    host: str = ""
    port: int = 502
    # Fixed unit id for single-endpoint TCP; None = per-device addressing
    unit_id: int | None = None
    response_timeout_ms: int = 2000

    @property
    def response_timeout(self) -> float:
        return self.response_timeout_ms / 1000

    def describe(self) -> str:
        if self.transport == Transport.SERIAL:
            return (
                f"{self.device} ({self.baudrate} {self.bytesize}"
                f"{self.parity}{self.stopbits})"
            )
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class DeviceDescriptor:
    """Static metadata for one polled device"""
    id: int
    name: str
    register_address: int = 0
    register_count: int = 2
    format: RegisterFormat = RegisterFormat.FLOAT32
    bcd_integer_digits: int = 0
    bcd_fractional_digits: int = 0
    scale: float = 1.0
    unit_id: int | None = None    # Overrides channel / id based addressing


@dataclass(frozen=True)
class PollingSettings:
    """Poller timing and failure policy"""
    strategy: PollStrategy = PollStrategy.SEQUENTIAL
    read_interval_ms: int = 3000
    max_retry_count: int = 3
    retry_delay_ms: int = 500
    max_reconnect_count: int = 10

    @property
    def read_interval(self) -> float:
        return self.read_interval_ms / 1000


@dataclass(frozen=True)
class HttpRoutes:
    """Facade route paths"""
    all: str = "/api/collect/v1/meters/all"
    single: str = "/api/collect/v1/meters/{id}"
    detail: str = "/api/collect/v1/meters/{id}/detail"


@dataclass(frozen=True)
class HttpSettings:
    """Request-serving facade settings"""
    host: str = "0.0.0.0"
    port: int = 5002
    value_precision: int = 2
    routes: HttpRoutes = field(default_factory=HttpRoutes)


@dataclass(frozen=True)
class ServiceSettings:
    """Process-level settings"""
    name: str = "meter_collector"
    log_level: str = "INFO"
    log_format: str = "json"      # json or text
    log_file: str | None = None


@dataclass(frozen=True)
class CollectorConfig:
    """Complete collector configuration"""
    channel: ChannelConfig
    devices: tuple[DeviceDescriptor, ...]
    polling: PollingSettings = field(default_factory=PollingSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)

    def get_device(self, device_id: int) -> DeviceDescriptor | None:
        return next((d for d in self.devices if d.id == device_id), None)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict view (used by --dry-run)"""
        def convert(obj: Any) -> Any:
            if isinstance(obj, Enum):
                return obj.value
            if isinstance(obj, tuple):
                return [convert(o) for o in obj]
            if hasattr(obj, "__dataclass_fields__"):
                return {k: convert(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return convert(self)


def resolve_unit_id(device: DeviceDescriptor, channel: ChannelConfig) -> int:
    """Unit/slave id a device is addressed with on the wire"""
    if device.unit_id is not None:
        return device.unit_id
    if channel.unit_id is not None:
        return channel.unit_id
    return device.id


def batch_span(devices: tuple[DeviceDescriptor, ...] | list[DeviceDescriptor]) -> tuple[int, int]:
    """(start address, register count) covering every device's registers"""
    start = min(d.register_address for d in devices)
    end = max(d.register_address + d.register_count for d in devices)
    return start, end - start


def _enum(enum_cls: type[Enum], value: Any, name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ConfigError(f"{name}: invalid value {value!r} (expected one of {allowed})")


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{key}' must be a mapping")
    return value


def _load_device(d: dict, index: int) -> DeviceDescriptor:
    if not isinstance(d, dict):
        raise ConfigError(f"devices[{index}]: must be a mapping")
    if "id" not in d:
        raise ConfigError(f"devices[{index}]: missing 'id'")

    device_format = _enum(RegisterFormat, d.get("format", "float32"), f"devices[{index}].format")

    try:
        return DeviceDescriptor(
            id=int(d["id"]),
            name=str(d.get("name") or f"Device_{d['id']}"),
            register_address=int(d.get("register_address", 0)),
            register_count=int(d.get("register_count", FORMAT_REGISTER_COUNT[device_format])),
            format=device_format,
            bcd_integer_digits=int(d.get("bcd_integer_digits", 0)),
            bcd_fractional_digits=int(d.get("bcd_fractional_digits", 0)),
            scale=float(d.get("scale", d.get("multiplier", 1.0))),
            unit_id=int(d["unit_id"]) if d.get("unit_id") is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"devices[{index}]: {e}")


def _validate_device(device: DeviceDescriptor) -> None:
    prefix = f"device {device.id} ({device.name})"

    if device.register_address < 0 or device.register_address > 0xFFFF:
        raise ConfigError(f"{prefix}: register_address out of range")

    min_count = FORMAT_REGISTER_COUNT[device.format]
    if device.register_count < min_count:
        raise ConfigError(
            f"{prefix}: {device.format.value} needs at least {min_count} registers"
        )
    if device.register_count > MAX_REGISTERS_PER_READ:
        raise ConfigError(f"{prefix}: register_count exceeds {MAX_REGISTERS_PER_READ}")

    if device.format == RegisterFormat.BCD:
        digits = device.bcd_integer_digits + device.bcd_fractional_digits
        if device.bcd_integer_digits < 0 or device.bcd_fractional_digits < 0 or digits == 0:
            raise ConfigError(f"{prefix}: bcd digits must be non-negative and not both zero")
        # Two registers = four bytes = eight nibbles
        if digits > device.register_count * 4:
            raise ConfigError(
                f"{prefix}: {digits} BCD digits do not fit in {device.register_count} registers"
            )

    if not math.isfinite(device.scale):
        raise ConfigError(f"{prefix}: scale must be finite")


def load_collector_config(data: dict) -> CollectorConfig:
    """Load CollectorConfig from dictionary (e.g., from a YAML file)"""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    service_data = _section(data, "service")
    service = ServiceSettings(
        name=service_data.get("name", "meter_collector"),
        log_level=str(service_data.get("log_level", "INFO")).upper(),
        log_format=str(service_data.get("log_format", "json")).lower(),
        log_file=service_data.get("log_file"),
    )

    http_data = _section(data, "http")
    routes_data = _section(http_data, "routes")
    default_routes = HttpRoutes()
    http = HttpSettings(
        host=http_data.get("host", "0.0.0.0"),
        port=int(http_data.get("port", 5002)),
        value_precision=int(http_data.get("value_precision", 2)),
        routes=HttpRoutes(
            all=routes_data.get("all", default_routes.all),
            single=routes_data.get("single", default_routes.single),
            detail=routes_data.get("detail", default_routes.detail),
        ),
    )

    channel_data = _section(data, "channel")
    channel = ChannelConfig(
        transport=_enum(Transport, channel_data.get("transport", "tcp"), "channel.transport"),
        device=str(channel_data.get("device", "")),
        baudrate=int(channel_data.get("baudrate", 9600)),
        parity=str(channel_data.get("parity", "N")).upper(),
        bytesize=int(channel_data.get("bytesize", channel_data.get("data_bits", 8))),
        stopbits=int(channel_data.get("stopbits", channel_data.get("stop_bits", 1))),
        host=str(channel_data.get("host", "")),
        port=int(channel_data.get("port", 502)),
        unit_id=int(channel_data["unit_id"]) if channel_data.get("unit_id") is not None else None,
        response_timeout_ms=int(channel_data.get("response_timeout_ms", 2000)),
    )

    polling_data = _section(data, "polling")
    polling = PollingSettings(
        strategy=_enum(PollStrategy, polling_data.get("strategy", "sequential"), "polling.strategy"),
        read_interval_ms=int(polling_data.get("read_interval_ms", 3000)),
        max_retry_count=int(polling_data.get("max_retry_count", 3)),
        retry_delay_ms=int(polling_data.get("retry_delay_ms", 500)),
        max_reconnect_count=int(polling_data.get("max_reconnect_count", 10)),
    )

    raw_devices = data.get("devices") or []
    if not isinstance(raw_devices, list):
        raise ConfigError("'devices' must be a list")
    devices = tuple(_load_device(d, i) for i, d in enumerate(raw_devices))

    config = CollectorConfig(
        channel=channel,
        devices=devices,
        polling=polling,
        http=http,
        service=service,
    )
    validate_collector_config(config)
    return config


def validate_collector_config(config: CollectorConfig) -> None:
    """
    Check the configuration for structural errors.

    Channel addressing is validated separately by the channel itself, right
    before it connects.
    """
    if not config.devices:
        raise ConfigError("At least one device must be configured")

    seen: set[int] = set()
    for device in config.devices:
        if device.id in seen:
            raise ConfigError(f"Duplicate device id {device.id}")
        seen.add(device.id)
        _validate_device(device)

    polling = config.polling
    if polling.read_interval_ms <= 0:
        raise ConfigError("polling.read_interval_ms must be positive")
    if polling.max_retry_count < 0:
        raise ConfigError("polling.max_retry_count must be >= 0")
    if polling.retry_delay_ms < 0:
        raise ConfigError("polling.retry_delay_ms must be >= 0")
    if polling.max_reconnect_count < 1:
        raise ConfigError("polling.max_reconnect_count must be >= 1")

    if polling.strategy == PollStrategy.BATCH:
        _, count = batch_span(config.devices)
        if count > MAX_REGISTERS_PER_READ:
            raise ConfigError(
                f"Batch read spans {count} registers (max {MAX_REGISTERS_PER_READ})"
            )
        unit_ids = {resolve_unit_id(d, config.channel) for d in config.devices}
        if len(unit_ids) > 1:
            raise ConfigError("Batch strategy requires every device on the same unit id")

    if config.channel.response_timeout_ms <= 0:
        raise ConfigError("channel.response_timeout_ms must be positive")

    if config.http.value_precision < 0:
        raise ConfigError("http.value_precision must be >= 0")


def load_config_file(path: str | Path) -> CollectorConfig:
    """Read and parse a YAML configuration file"""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    return load_collector_config(data)
