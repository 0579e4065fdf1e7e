"""
Snapshot Store

Latest Reading per device, replaced as a unit and readable concurrently
without blocking the poller.

Writers build a new mapping and swap a single immutable snapshot
reference under a writer lock. Readers grab the current reference and
never lock, so they always see a whole snapshot: either the one before a
replace or the one after it.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping

from meter_collector.common.exceptions import DeviceNotFoundError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Reading:
    """
    Latest decoded value for one device.

    A Reading with success=False carries no value (None); consumers must
    treat it as "unavailable", never as zero.
    """
    device_id: int
    value: float | None = None
    success: bool = False
    retry_count: int = 0
    timestamp: datetime = field(default_factory=_utcnow)
    error: str | None = None

    @classmethod
    def ok(cls, device_id: int, value: float, retry_count: int = 0) -> "Reading":
        return cls(device_id=device_id, value=value, success=True, retry_count=retry_count)

    @classmethod
    def failed(cls, device_id: int, retry_count: int = 0, error: str | None = None) -> "Reading":
        return cls(device_id=device_id, success=False, retry_count=retry_count, error=error)

    @classmethod
    def unavailable(cls, device_id: int) -> "Reading":
        """Initial entry before the first poll"""
        return cls(device_id=device_id, success=False, error="not yet polled")


@dataclass(frozen=True)
class Snapshot:
    """One immutable version of the store"""
    version: int
    readings: Mapping[int, Reading]


class SnapshotStore:
    """
    Ordered device_id -> Reading table with copy-on-write replacement.

    Cardinality always equals the device table given at construction;
    writes for unknown ids are rejected.
    """

    def __init__(self, device_ids: Iterable[int]):
        ids = list(device_ids)
        if len(set(ids)) != len(ids):
            raise ValueError("device ids must be unique")

        self._device_ids: tuple[int, ...] = tuple(ids)
        self._write_lock = threading.Lock()
        self._snapshot = Snapshot(
            version=0,
            readings=MappingProxyType({i: Reading.unavailable(i) for i in ids}),
        )

    @property
    def device_ids(self) -> tuple[int, ...]:
        return self._device_ids

    @property
    def version(self) -> int:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._device_ids)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._snapshot.readings

    def snapshot(self) -> Snapshot:
        """Current immutable snapshot"""
        return self._snapshot

    def get_all(self) -> tuple[Reading, ...]:
        """One Reading per device, in device-table order"""
        readings = self._snapshot.readings
        return tuple(readings[i] for i in self._device_ids)

    def get(self, device_id: int) -> Reading:
        """
        Latest Reading for a device.

        Raises:
            DeviceNotFoundError: device_id is not in the device table
        """
        try:
            return self._snapshot.readings[device_id]
        except KeyError:
            raise DeviceNotFoundError(device_id)

    def replace(self, reading: Reading) -> int:
        """Replace a single device's entry. Returns the new version."""
        return self.replace_all([reading])

    def replace_all(self, readings: Iterable[Reading]) -> int:
        """
        Replace several entries as one atomic update.

        Readers observe either none or all of the new readings. Unknown
        device ids reject the whole update.
        """
        readings = list(readings)

        with self._write_lock:
            current = self._snapshot
            updated = dict(current.readings)
            for reading in readings:
                if reading.device_id not in updated:
                    raise DeviceNotFoundError(reading.device_id)
                updated[reading.device_id] = reading

            self._snapshot = Snapshot(
                version=current.version + 1,
                readings=MappingProxyType(updated),
            )
            return self._snapshot.version
