"""
Parking lot sync
Gateways report space counts without a timestamp, so readings are stamped
with the sync time. Same two-tier storage as crowd: latest row always,
history at most once per history interval.
"""
import logging
import time
from datetime import datetime
from typing import List, Optional

from ..logging_config import log_context
from ..telemetry_infrastructure.errors import CircuitOpenError, PersistenceError
from ..telemetry_infrastructure.idempotency_cache import should_skip
from ..telemetry_infrastructure.models import DeviceFamily, ParkingDevice, ParkingReading, SyncSummary
from .normalizers import build_parking_reading, history_due, parking_upload_payload
from .parking_api import ParkingApiClient, ParkingSystem, detect_parking_system
from .sync_adapter import SyncAdapter

logger = logging.getLogger(__name__)


def parking_cache_key(serial: str) -> str:
    return f"sync:parking:{serial}"


class ParkingSyncAdapter(SyncAdapter):
    family = DeviceFamily.PARKING

    def __init__(self, api: ParkingApiClient, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.api = api

    async def sync(self, force: bool = False) -> SyncSummary:
        """
        Sync every parking device with an API URL.

        Raises:
            PersistenceError: If the store rejects a write
        """
        started = time.monotonic()
        summary = SyncSummary(family=self.family.value)
        now = self.now()

        devices = [d for d in await self.repository.find_devices_by_family(self.family) if d.api_url]
        logger.info(f"Starting parking sync for {len(devices)} devices")

        history: List[ParkingReading] = []
        requested = False
        for device in devices:
            key = parking_cache_key(device.serial)
            if not force and await should_skip(self.cache, key, now, self.settings.sync_interval):
                self._skip(summary, device.serial, "sync interval not elapsed")
                continue

            system = detect_parking_system(device.api_url)
            if system == ParkingSystem.AP:
                self._skip(summary, device.serial, f"{system.value} gateway has no pull API")
                continue

            if requested:
                await self._request_pause()
            requested = True

            with log_context(family=self.family.value, source=device.serial):
                try:
                    reading = await self._sync_device(device, system, now, history)
                except PersistenceError:
                    raise
                except CircuitOpenError:
                    self._skip(summary, device.serial, "circuit open")
                    continue
                except Exception as e:
                    logger.warning(f"Parking sync failed for {device.serial} ({system.value}): {e}")
                    summary.add_error(f"{device.serial}: {e}")
                    continue

            if reading is None:
                summary.skipped_count += 1
            else:
                summary.synced_count += 1

        if history:
            await self.repository.add_readings(self.family, history)
            logger.info(f"Stored {len(history)} parking history records")

        return self._finish(summary, started)

    async def _sync_device(
        self,
        device: ParkingDevice,
        system: ParkingSystem,
        now: datetime,
        history: List[ParkingReading],
    ) -> Optional[ParkingReading]:
        async with self.rate_controller.guard(f"parking:{device.serial}"):
            counts = await self.api.fetch_counts(device, system)

        if counts is None:
            self._log_skip(device.serial, f"no usable {system.value} counts")
            return None

        reading = build_parking_reading(device.serial, counts, device.capacity, now)

        last = await self.repository.get_last_reading(self.family, device.serial)
        if last is not None and reading.observed_at <= last.observed_at:
            self._log_skip(device.serial, f"reading at {reading.observed_at} already stored")
            return None

        last_history_at = await self.repository.get_last_history_time(self.family, device.serial)
        if history_due(reading.observed_at, last_history_at, self.settings.history_min_interval):
            history.append(reading)

        await self.repository.upsert_latest(self.family, reading)
        await self._mark_online(device.serial, now)
        await self.cache.set(parking_cache_key(device.serial), now, ttl=self.settings.sync_interval)

        if self.uploader is not None:
            await self.uploader.upload_reading(self.family, device.serial, parking_upload_payload(reading))
        return reading
