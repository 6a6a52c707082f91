"""
Persistence interface consumed by the sync engine, plus a dict-backed implementation
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, replace
from datetime import datetime, tzinfo
from typing import Dict, List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os
from dateutil import tz

from .models import (
    Device,
    DeviceFamily,
    DeviceStatus,
    Reading,
    Station,
    StatusLogEntry,
    build_device,
    parse_vendor_time,
)

logger = logging.getLogger(__name__)

# Families whose newest reading is also kept in a one-row-per-serial table
FAMILIES_WITH_LATEST = (DeviceFamily.CROWD, DeviceFamily.PARKING)


class Repository(ABC):
    """Devices are looked up, never owned; readings and status logs are append-only."""

    @abstractmethod
    async def find_devices_by_family(self, family: DeviceFamily) -> List[Device]:
        ...

    @abstractmethod
    async def find_stations(self) -> List[Station]:
        """All stations, each with its devices of every family."""
        ...

    @abstractmethod
    async def get_last_reading(self, family: DeviceFamily, serial: str) -> Optional[Reading]:
        """Newest observation for a device (latest row when the family has one)."""
        ...

    @abstractmethod
    async def get_last_history_time(self, family: DeviceFamily, serial: str) -> Optional[datetime]:
        """Observation time of the newest history row."""
        ...

    @abstractmethod
    async def insert_reading(self, family: DeviceFamily, reading: Reading):
        ...

    async def add_readings(self, family: DeviceFamily, readings: Sequence[Reading]):
        """Batch insert; default implementation inserts one by one."""
        for reading in readings:
            await self.insert_reading(family, reading)

    @abstractmethod
    async def upsert_latest(self, family: DeviceFamily, reading: Reading):
        """Replace the latest row for reading.serial."""
        ...

    @abstractmethod
    async def update_device_status(
        self, family: DeviceFamily, serial: str, status: str, timestamp: datetime
    ):
        """
        Set status; online also moves last_online to timestamp.
        updated_at is always set to timestamp.
        """
        ...

    @abstractmethod
    async def append_status_log(self, entry: StatusLogEntry):
        ...

    @abstractmethod
    async def save_device(self, device: Device):
        ...

    @abstractmethod
    async def backup_database(self, target_dir: str) -> Tuple[str, int]:
        """Dump the store into target_dir; returns (file path, size in bytes)."""
        ...

    async def close(self):
        pass


class InMemoryRepository(Repository):
    """
    Dict-backed repository.

    Used by the test suite and by `telemetry-node --memory`, which seeds it
    from a JSON fixture of stations and devices.
    """

    def __init__(self):
        self._devices: Dict[Tuple[DeviceFamily, str], Device] = {}
        self._stations: Dict[int, Station] = {}
        self.history: Dict[DeviceFamily, List[Reading]] = defaultdict(list)
        self.latest: Dict[DeviceFamily, Dict[str, Reading]] = defaultdict(dict)
        self.status_logs: List[StatusLogEntry] = []
        self._next_id = 1
        self._lock = asyncio.Lock()

    @classmethod
    def from_json(cls, path: str, zone: Optional[tzinfo] = None) -> "InMemoryRepository":
        """
        Load a fixture of the form
        {"stations": [{"id", "name", "line_token", "enable_notify",
                       "devices": [{"family", "serial", ...}]}]}
        """
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        repo = cls()
        for raw_station in data.get('stations', []):
            station = repo.add_station(Station(
                id=int(raw_station['id']),
                name=raw_station.get('name', ''),
                line_token=raw_station.get('line_token'),
                enable_notify=bool(raw_station.get('enable_notify', False)),
            ))
            for raw_device in raw_station.get('devices', []):
                attrs = dict(raw_device)
                family = attrs.pop('family')
                attrs['station_id'] = station.id
                for key in ('last_online', 'updated_at'):
                    if attrs.get(key) is not None:
                        attrs[key] = parse_vendor_time(attrs[key], zone or tz.UTC)
                repo.add_device(build_device(family, **attrs))
        logger.info(f"Loaded {len(repo._stations)} stations / {len(repo._devices)} devices from {path}")
        return repo

    # -- seeding helpers ------------------------------------------------------

    def add_station(self, station: Station) -> Station:
        self._stations[station.id] = station
        return station

    def add_device(self, device: Device) -> Device:
        self._devices[(device.family, device.serial)] = device
        if device.station_id is not None and device.station_id in self._stations:
            station_devices = self._stations[device.station_id].devices
            if device not in station_devices:
                station_devices.append(device)
        return device

    def get_device(self, family: DeviceFamily, serial: str) -> Optional[Device]:
        return self._devices.get((family, serial))

    # -- Repository -----------------------------------------------------------

    async def find_devices_by_family(self, family: DeviceFamily) -> List[Device]:
        return [d for (f, _), d in self._devices.items() if f == family]

    async def find_stations(self) -> List[Station]:
        return list(self._stations.values())

    async def get_last_reading(self, family: DeviceFamily, serial: str) -> Optional[Reading]:
        if family in FAMILIES_WITH_LATEST and serial in self.latest[family]:
            return self.latest[family][serial]
        rows = [r for r in self.history[family] if r.serial == serial]
        return max(rows, key=lambda r: r.observed_at) if rows else None

    async def get_last_history_time(self, family: DeviceFamily, serial: str) -> Optional[datetime]:
        times = [r.observed_at for r in self.history[family] if r.serial == serial]
        return max(times) if times else None

    async def insert_reading(self, family: DeviceFamily, reading: Reading):
        async with self._lock:
            stored = replace(reading)
            if hasattr(stored, 'id'):
                stored.id = self._next_id
            self._next_id += 1
            self.history[family].append(stored)

    async def upsert_latest(self, family: DeviceFamily, reading: Reading):
        self.latest[family][reading.serial] = replace(reading)

    async def update_device_status(
        self, family: DeviceFamily, serial: str, status: str, timestamp: datetime
    ):
        device = self._devices.get((family, serial))
        if device is None:
            logger.warning(f"Status update for unknown {family.value} device {serial}")
            return
        device.status = status
        if status == DeviceStatus.ONLINE:
            device.last_online = timestamp
        device.updated_at = timestamp

    async def append_status_log(self, entry: StatusLogEntry):
        self.status_logs.append(entry)

    async def save_device(self, device: Device):
        self.add_device(device)

    async def backup_database(self, target_dir: str) -> Tuple[str, int]:
        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        path = os.path.join(target_dir, f"telemetry_{stamp}.json")
        snapshot = {
            "devices": [dict(asdict(d), family=d.family.value) for d in self._devices.values()],
            "history": {f.value: [r.to_dict() for r in rows] for f, rows in self.history.items()},
            "status_logs": [asdict(e) for e in self.status_logs],
        }
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(snapshot, default=str, ensure_ascii=False))
        return path, await aiofiles.os.path.getsize(path)
