"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and YAML loading
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .config import (
    ChannelConfig,
    CollectorConfig,
    DeviceDescriptor,
    HttpRoutes,
    HttpSettings,
    PollingSettings,
    PollStrategy,
    RegisterFormat,
    ServiceSettings,
    Transport,
    load_collector_config,
    load_config_file,
    resolve_unit_id,
)
from .exceptions import (
    CollectorError,
    ConfigError,
    InvalidConfigError,
    DeviceError,
    DeviceNotFoundError,
    TransactionError,
    NotConnectedError,
    LinkError,
    ProtocolError,
    DecodeError,
    ReconnectExhaustedError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_service_loggers,
    log_device_read,
)

__all__ = [
    # Config
    "ChannelConfig",
    "CollectorConfig",
    "DeviceDescriptor",
    "HttpRoutes",
    "HttpSettings",
    "PollingSettings",
    "PollStrategy",
    "RegisterFormat",
    "ServiceSettings",
    "Transport",
    "load_collector_config",
    "load_config_file",
    "resolve_unit_id",
    # Exceptions
    "CollectorError",
    "ConfigError",
    "InvalidConfigError",
    "DeviceError",
    "DeviceNotFoundError",
    "TransactionError",
    "NotConnectedError",
    "LinkError",
    "ProtocolError",
    "DecodeError",
    "ReconnectExhaustedError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_service_loggers",
    "log_device_read",
]
