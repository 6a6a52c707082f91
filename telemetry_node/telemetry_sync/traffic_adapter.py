"""
Traffic (ETag) sync with city batching
TDX serves every ETag pair of a city in one response, so devices are grouped
by city and each city is fetched once per tick.
"""
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List

from ..logging_config import log_context
from ..telemetry_infrastructure.errors import CircuitOpenError, PersistenceError
from ..telemetry_infrastructure.idempotency_cache import should_skip
from ..telemetry_infrastructure.models import DeviceFamily, SyncSummary, TrafficDevice, TrafficReading
from .normalizers import find_etag_pair, normalize_traffic
from .sync_adapter import SyncAdapter
from .tdx_api import TdxClient

logger = logging.getLogger(__name__)


def city_cache_key(city: str) -> str:
    return f"sync:traffic:city:{city}"


def group_by_city(devices: List[TrafficDevice]) -> "OrderedDict[str, List[TrafficDevice]]":
    """Devices with both an ETag and a city, grouped by city in first-seen order."""
    groups: "OrderedDict[str, List[TrafficDevice]]" = OrderedDict()
    for device in devices:
        if not device.etag_number or not device.city:
            continue
        groups.setdefault(device.city, []).append(device)
    return groups


class TrafficSyncAdapter(SyncAdapter):
    family = DeviceFamily.TRAFFIC

    def __init__(self, api: TdxClient, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.api = api

    async def sync(self, force: bool = False) -> SyncSummary:
        """
        One TDX request per city, then match each device by ETag pair id.

        A failed city counts one error and skips its devices; the remaining
        cities are still processed. batch_delay_seconds separates requests.

        Raises:
            PersistenceError: If the store rejects a write
        """
        started = time.monotonic()
        summary = SyncSummary(family=self.family.value)
        now = self.now()

        groups = group_by_city(await self.repository.find_devices_by_family(self.family))
        cities = list(groups)
        logger.info(
            f"Starting traffic sync for {sum(len(g) for g in groups.values())} devices "
            f"in {len(cities)} cities"
        )

        history: List[TrafficReading] = []
        for index, city in enumerate(cities):
            city_devices = groups[city]
            key = city_cache_key(city)
            if not force and await should_skip(self.cache, key, now, self.settings.traffic_sync_interval):
                summary.skipped_count += len(city_devices)
                self._log_skip(city, "city sync interval not elapsed")
                continue

            with log_context(family=self.family.value, source=city):
                try:
                    async with self.rate_controller.guard(f"traffic:{city}"):
                        pairs = await self.api.fetch_city(city)
                except CircuitOpenError:
                    summary.skipped_count += len(city_devices)
                    self._log_skip(city, "circuit open")
                    continue
                except PersistenceError:
                    raise
                except Exception as e:
                    logger.warning(f"Traffic fetch failed for city {city}: {e}")
                    summary.add_error(f"{city}: {e}")
                    summary.skipped_count += len(city_devices)
                    await self._city_pause(index, len(cities))
                    continue

                if pairs is None:
                    summary.skipped_count += len(city_devices)
                else:
                    try:
                        await self._sync_city(city_devices, pairs, summary, history)
                    except PersistenceError:
                        raise
                    except Exception as e:
                        logger.error(f"Traffic sync failed for city {city}: {e}", exc_info=True)
                        summary.add_error(f"{city}: {e}")
                    else:
                        await self.cache.set(key, now, ttl=self.settings.traffic_sync_interval)

            await self._city_pause(index, len(cities))

        if history:
            await self.repository.add_readings(self.family, history)
            logger.info(f"Stored {len(history)} traffic records")

        return self._finish(summary, started)

    async def _city_pause(self, index: int, total: int):
        if index < total - 1 and self.settings.batch_delay_seconds > 0:
            await self._sleep(self.settings.batch_delay_seconds)

    async def _sync_city(
        self,
        devices: List[TrafficDevice],
        pairs: List[Dict[str, Any]],
        summary: SyncSummary,
        history: List[TrafficReading],
    ):
        """Match each device of a city against the batch and store new readings."""
        for device in devices:
            pair = find_etag_pair(pairs, device.etag_number)
            if pair is None:
                self._skip(summary, device.serial, f"ETag {device.etag_number} not in city batch")
                continue
            reading = normalize_traffic(
                device.serial, pair, self.settings.timezone, self.settings.vehicle_type
            )
            if reading is None:
                self._skip(summary, device.serial, f"no vehicle type {self.settings.vehicle_type} flow")
                continue

            try:
                stored = await self._store_reading(device, reading, history)
            except PersistenceError:
                raise
            except Exception as e:
                logger.warning(f"Traffic sync failed for {device.serial}: {e}")
                summary.add_error(f"{device.serial}: {e}")
                continue
            if stored:
                summary.synced_count += 1
            else:
                self._skip(summary, device.serial, f"reading at {reading.observed_at} already stored")

    async def _store_reading(
        self, device: TrafficDevice, reading: TrafficReading, history: List[TrafficReading]
    ) -> bool:
        last = await self.repository.get_last_reading(self.family, device.serial)
        if last is not None and reading.observed_at <= last.observed_at:
            return False
        history.append(reading)
        await self._mark_online(device.serial, reading.observed_at, logged_at=self.now())
        return True
