"""
Device Service - Modbus Communication

Responsibilities:
- Own the channel to the devices (RTU serial or TCP)
- Poll devices on a fixed schedule with bounded retry
- Decode registers into engineering values
- Publish the latest reading per device to the snapshot store
"""

from .channel import ModbusChannel
from .executor import TransactionExecutor, TransactionResult
from .poller import Poller, PollerStatus
from .snapshot import Reading, SnapshotStore

__all__ = [
    "ModbusChannel",
    "TransactionExecutor",
    "TransactionResult",
    "Poller",
    "PollerStatus",
    "Reading",
    "SnapshotStore",
]
