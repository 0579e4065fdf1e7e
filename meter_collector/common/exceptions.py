"""
Custom Exception Classes for the Meter Collector

Hierarchical exception structure for error handling across services.
"""


class CollectorError(Exception):
    """Base exception for all meter collector errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(CollectorError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class InvalidConfigError(ConfigError):
    """Malformed connection parameters (never retried)"""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(f"Invalid channel config: {message}", recoverable=False)


class DeviceError(CollectorError):
    """Device-related errors"""

    def __init__(
        self,
        message: str,
        device_id: int | None = None,
        recoverable: bool = True,
    ):
        self.device_id = device_id
        super().__init__(f"Device Error: {message}", recoverable)


class DeviceNotFoundError(DeviceError):
    """Device id is not part of the device table"""

    def __init__(self, device_id: int):
        super().__init__(f"Unknown device id {device_id}", device_id=device_id)


class TransactionError(DeviceError):
    """A register transaction on a channel failed"""

    def __init__(
        self,
        message: str,
        address: int | None = None,
        count: int | None = None,
        device_id: int | None = None,
    ):
        self.reason = message
        self.address = address
        self.count = count
        super().__init__(message, device_id=device_id, recoverable=True)


class NotConnectedError(TransactionError):
    """Channel has no live transport handle"""


class LinkError(TransactionError):
    """Transport-level failure (reset, timeout, unreachable, broken pipe).

    The channel must be reconnected before it is used again.
    """


class ProtocolError(TransactionError):
    """Transport is up but the transaction itself failed.

    Malformed or short response, or an exception response from the device.
    Safe to retry on the same connection.
    """


class DecodeError(ProtocolError):
    """Register payload could not be decoded (e.g. a non-BCD nibble)"""


class ReconnectExhaustedError(CollectorError):
    """Reconnect failure counter reached its ceiling - the link is unusable"""

    def __init__(self, failure_count: int, ceiling: int):
        self.failure_count = failure_count
        self.ceiling = ceiling
        super().__init__(
            f"Reconnect ceiling reached ({failure_count}/{ceiling} consecutive link failures)",
            recoverable=False,
        )
