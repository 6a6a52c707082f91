"""
Shared plumbing for the per-family sync adapters
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..metrics import record_sync_result
from ..telemetry_infrastructure.idempotency_cache import IdempotencyCache
from ..telemetry_infrastructure.models import (
    DeviceFamily,
    DeviceStatus,
    StatusLogEntry,
    SyncSettings,
    SyncSummary,
)
from ..telemetry_infrastructure.rate_controller import RateController
from ..telemetry_infrastructure.repository import Repository
from ..telemetry_infrastructure.uploader import TransportationUploader

logger = logging.getLogger(__name__)


class SyncAdapter:
    """
    Base class for one family's poll -> normalize -> dedupe -> persist pipeline.

    Subclasses implement sync(). Devices are processed one after another;
    per-device errors end up in the summary, PersistenceError propagates.
    """

    family: DeviceFamily

    def __init__(
        self,
        repository: Repository,
        cache: IdempotencyCache,
        rate_controller: RateController,
        settings: Optional[SyncSettings] = None,
        uploader: Optional[TransportationUploader] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        settings_provider: Optional[Callable[[], SyncSettings]] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.rate_controller = rate_controller
        self.uploader = uploader
        self._settings = settings or SyncSettings()
        self._settings_provider = settings_provider
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    @property
    def settings(self) -> SyncSettings:
        """Current settings; follows config reloads when built with a settings_provider"""
        if self._settings_provider is not None:
            return self._settings_provider()
        return self._settings

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(self.settings.timezone)

    async def sync(self, force: bool = False) -> SyncSummary:
        raise NotImplementedError

    def _log_skip(self, serial: str, reason: str):
        if self.settings.verbose_logging:
            logger.debug(f"[{self.family.value}] Skipping {serial}: {reason}")

    def _skip(self, summary: SyncSummary, serial: str, reason: str):
        """Data-quality skip: counted, logged only in verbose mode."""
        summary.skipped_count += 1
        self._log_skip(serial, reason)

    async def _mark_online(self, serial: str, last_online: datetime, logged_at: Optional[datetime] = None):
        """Set the device online and append an online heartbeat to the status log."""
        await self.repository.update_device_status(self.family, serial, DeviceStatus.ONLINE, last_online)
        await self.repository.append_status_log(StatusLogEntry(
            family=self.family.value,
            serial=serial,
            status=DeviceStatus.ONLINE,
            timestamp=logged_at or last_online,
        ))

    async def _request_pause(self):
        if self.settings.request_delay_ms > 0:
            await self._sleep(self.settings.request_delay_ms / 1000)

    def _finish(self, summary: SyncSummary, started: float) -> SyncSummary:
        summary.success = True
        summary.message = (
            f"{self.family.value} sync completed: {summary.synced_count} synced, "
            f"{summary.failed_count} failed, {summary.skipped_count} skipped"
        )
        record_sync_result(
            self.family.value, summary.synced_count, summary.failed_count, summary.skipped_count
        )
        elapsed = time.monotonic() - started
        if summary.errors:
            logger.warning(f"{summary.message} in {elapsed:.2f}s")
        else:
            logger.info(f"{summary.message} in {elapsed:.2f}s")
        return summary
