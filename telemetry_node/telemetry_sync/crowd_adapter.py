"""
Crowd counter sync
Counters report cumulative in/out totals; the adapter turns them into per-day
deltas and keeps a latest snapshot plus an interval-gated history.
"""
import logging
import time
from datetime import datetime
from typing import List, Optional

from ..logging_config import log_context
from ..telemetry_infrastructure.errors import CircuitOpenError, PersistenceError
from ..telemetry_infrastructure.idempotency_cache import should_skip
from ..telemetry_infrastructure.models import CrowdDevice, CrowdReading, DeviceFamily, SyncSummary
from .crowd_api import CrowdApiClient, is_supported_crowd_device
from .normalizers import compute_crowd_deltas, crowd_upload_payload, history_due, normalize_crowd
from .sync_adapter import SyncAdapter

logger = logging.getLogger(__name__)


def crowd_cache_key(serial: str) -> str:
    return f"sync:crowd:{serial}"


class CrowdSyncAdapter(SyncAdapter):
    family = DeviceFamily.CROWD

    def __init__(self, api: CrowdApiClient, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.api = api

    async def sync(self, force: bool = False) -> SyncSummary:
        """
        Sync every supported crowd counter once.

        Args:
            force: Ignore the per-device sync interval

        Raises:
            PersistenceError: If the store rejects a write
        """
        started = time.monotonic()
        summary = SyncSummary(family=self.family.value)
        now = self.now()

        devices = [d for d in await self.repository.find_devices_by_family(self.family)
                   if is_supported_crowd_device(d)]
        logger.info(f"Starting crowd sync for {len(devices)} devices")

        history: List[CrowdReading] = []
        requested = False
        for device in devices:
            key = crowd_cache_key(device.serial)
            if not force and await should_skip(self.cache, key, now, self.settings.sync_interval):
                self._skip(summary, device.serial, "sync interval not elapsed")
                continue

            if requested:
                await self._request_pause()
            requested = True

            with log_context(family=self.family.value, source=device.serial):
                try:
                    reading = await self._sync_device(device, now, history)
                except PersistenceError:
                    raise
                except CircuitOpenError:
                    self._skip(summary, device.serial, "circuit open")
                    continue
                except Exception as e:
                    logger.warning(f"Crowd sync failed for {device.serial}: {e}")
                    summary.add_error(f"{device.serial}: {e}")
                    continue

            if reading is None:
                summary.skipped_count += 1
            else:
                summary.synced_count += 1

        if history:
            await self.repository.add_readings(self.family, history)
            logger.info(f"Stored {len(history)} crowd history records")

        return self._finish(summary, started)

    async def _sync_device(
        self, device: CrowdDevice, now: datetime, history: List[CrowdReading]
    ) -> Optional[CrowdReading]:
        async with self.rate_controller.guard(f"crowd:{device.serial}"):
            payload = await self.api.fetch_occupancy(device)

        reading = normalize_crowd(device.serial, payload, self.settings.timezone)
        if reading is None:
            self._log_skip(device.serial, "no usable reading in payload")
            return None

        last = await self.repository.get_last_reading(self.family, device.serial)
        if last is not None and reading.observed_at <= last.observed_at:
            self._log_skip(device.serial, f"reading at {reading.observed_at} already stored")
            return None

        compute_crowd_deltas(
            reading, last if isinstance(last, CrowdReading) else None, self.settings.timezone
        )

        last_history_at = await self.repository.get_last_history_time(self.family, device.serial)
        if history_due(reading.observed_at, last_history_at, self.settings.history_min_interval):
            history.append(reading)

        await self.repository.upsert_latest(self.family, reading)
        await self._mark_online(device.serial, now)
        await self.cache.set(crowd_cache_key(device.serial), now, ttl=self.settings.sync_interval)

        if self.uploader is not None:
            await self.uploader.upload_reading(self.family, device.serial, crowd_upload_payload(reading))
        return reading
