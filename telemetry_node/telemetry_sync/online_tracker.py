"""
Device online/offline state tracker
Runs independently of the sync adapters: a device whose last-online time is
older than the threshold is flipped to offline once, logged once and reported
to its station once. Devices that stay offline produce nothing further.
"""
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..metrics import set_devices_offline
from ..telemetry_infrastructure.models import (
    Device,
    DeviceFamily,
    DeviceStatus,
    HasOnlineState,
    OfflineDevice,
    StatusLogEntry,
    SyncSettings,
    TrafficDevice,
    ensure_aware,
)
from ..telemetry_infrastructure.notifier import LineNotifier, build_offline_message
from ..telemetry_infrastructure.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_OFFLINE_THRESHOLD = timedelta(minutes=7)
DEFAULT_TRAFFIC_OFFLINE_THRESHOLD = timedelta(minutes=70)


@dataclass(frozen=True)
class OnlinePolicy:
    """
    How the generic staleness check treats a family.

    always_online: no heartbeat concept; marked online with a log entry every check
    skip_externally_tracked: devices whose state is kept by their own sync are ignored
    """
    always_online: bool = False
    skip_externally_tracked: bool = False


DEFAULT_POLICIES: Dict[DeviceFamily, OnlinePolicy] = {
    DeviceFamily.CROWD: OnlinePolicy(),
    DeviceFamily.FENCE: OnlinePolicy(),
    DeviceFamily.PARKING: OnlinePolicy(),
    DeviceFamily.TRAFFIC: OnlinePolicy(skip_externally_tracked=True),
    DeviceFamily.HIGH_RESOLUTION: OnlinePolicy(always_online=True),
}

# Order in which a station's devices are checked
CHECK_ORDER = (
    DeviceFamily.CROWD,
    DeviceFamily.FENCE,
    DeviceFamily.PARKING,
    DeviceFamily.TRAFFIC,
    DeviceFamily.HIGH_RESOLUTION,
)


def is_externally_tracked(device: Device) -> bool:
    """ETag traffic devices get their online state from the traffic sync."""
    return isinstance(device, TrafficDevice) and bool(device.etag_number)


def is_stale(device: HasOnlineState, now: datetime, threshold: timedelta) -> bool:
    if device.last_online is None:
        return True
    return now - ensure_aware(device.last_online, now.tzinfo) >= threshold


async def evaluate_devices(
    repository: Repository,
    family: DeviceFamily,
    devices: Iterable[Device],
    policy: OnlinePolicy,
    now: datetime,
    threshold: timedelta,
) -> Tuple[int, List[OfflineDevice]]:
    """
    Apply the staleness rule to one family's devices.

    Returns:
        (devices checked, devices that went offline on this call)
    """
    checked = 0
    newly_offline: List[OfflineDevice] = []
    for device in devices:
        checked += 1
        if policy.skip_externally_tracked and is_externally_tracked(device):
            continue

        if policy.always_online:
            await repository.update_device_status(family, device.serial, DeviceStatus.ONLINE, now)
            await repository.append_status_log(
                StatusLogEntry(family.value, device.serial, DeviceStatus.ONLINE, now)
            )
            device.status = DeviceStatus.ONLINE
            device.last_online = now
            continue

        if not is_stale(device, now, threshold) or device.status == DeviceStatus.OFFLINE:
            continue

        await repository.update_device_status(family, device.serial, DeviceStatus.OFFLINE, now)
        await repository.append_status_log(
            StatusLogEntry(family.value, device.serial, DeviceStatus.OFFLINE, now)
        )
        device.status = DeviceStatus.OFFLINE
        newly_offline.append(OfflineDevice(
            family=family.value,
            serial=device.serial,
            name=device.name,
            last_online=device.last_online,
        ))
    return checked, newly_offline


class OnlineStateTracker:
    """Staleness checks for every station, plus the ETag-specific traffic check"""

    def __init__(
        self,
        repository: Repository,
        notifier: Optional[LineNotifier] = None,
        offline_threshold: timedelta = DEFAULT_OFFLINE_THRESHOLD,
        traffic_offline_threshold: timedelta = DEFAULT_TRAFFIC_OFFLINE_THRESHOLD,
        policies: Optional[Dict[DeviceFamily, OnlinePolicy]] = None,
        timezone: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
        settings_provider: Optional[Callable[[], SyncSettings]] = None,
    ):
        self.repository = repository
        self.notifier = notifier
        self.policies = policies or DEFAULT_POLICIES
        self._offline_threshold = offline_threshold
        self._traffic_offline_threshold = traffic_offline_threshold
        self._timezone = timezone
        self._settings_provider = settings_provider
        self._clock = clock

    @property
    def offline_threshold(self) -> timedelta:
        if self._settings_provider is not None:
            return self._settings_provider().offline_threshold
        return self._offline_threshold

    @property
    def traffic_offline_threshold(self) -> timedelta:
        if self._settings_provider is not None:
            return self._settings_provider().traffic_offline_threshold
        return self._traffic_offline_threshold

    @property
    def timezone(self) -> Optional[tzinfo]:
        if self._settings_provider is not None:
            return self._settings_provider().timezone
        return self._timezone

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(self.timezone)

    @property
    def threshold_minutes(self) -> int:
        return int(self.offline_threshold.total_seconds() // 60)

    async def check_devices_online(self) -> dict:
        """
        One pass over all stations.

        A failure while checking or notifying one station is logged and the
        remaining stations are still processed.
        """
        started = time.monotonic()
        now = self.now()
        stations = await self.repository.find_stations()

        total = 0
        all_offline: List[OfflineDevice] = []
        notifications_sent = 0
        station_errors: List[str] = []

        for station in stations:
            by_family: Dict[DeviceFamily, List[Device]] = {}
            for device in station.devices:
                by_family.setdefault(device.family, []).append(device)

            station_offline: List[OfflineDevice] = []
            try:
                for family in CHECK_ORDER:
                    checked, offline = await evaluate_devices(
                        self.repository,
                        family,
                        by_family.get(family, []),
                        self.policies.get(family, OnlinePolicy()),
                        now,
                        self.offline_threshold,
                    )
                    total += checked
                    station_offline.extend(offline)
            except Exception as e:
                logger.error(f"Online check failed for station {station.name}: {e}", exc_info=True)
                station_errors.append(f"{station.name}: {e}")
                continue

            all_offline.extend(station_offline)
            if station_offline:
                logger.warning(
                    f"Station {station.name}: {len(station_offline)} device(s) went offline: "
                    f"{', '.join(d.serial for d in station_offline)}"
                )
                if await self._notify(station, station_offline):
                    notifications_sent += 1

        self._update_offline_gauge(stations)

        elapsed = time.monotonic() - started
        message = (
            f"Online check completed: {total} devices, {len(all_offline)} newly offline "
            f"in {elapsed:.2f}s"
        )
        logger.info(message)
        return {
            "success": not station_errors,
            "message": message,
            "total_devices_checked": total,
            "online_devices": total - len(all_offline),
            "offline_devices": len(all_offline),
            "offline_device_list": [asdict(d) for d in all_offline],
            "notifications_sent": notifications_sent,
            "errors": station_errors,
        }

    async def _notify(self, station, devices: List[OfflineDevice]) -> bool:
        if self.notifier is None or not station.enable_notify or not station.line_token:
            return False
        message = build_offline_message(station.name, devices, self.threshold_minutes)
        try:
            return await self.notifier.send(station.line_token, message)
        except Exception as e:
            logger.error(f"Offline notification for station {station.name} failed: {e}")
            return False

    def _update_offline_gauge(self, stations):
        counts = Counter(
            device.family.value
            for station in stations
            for device in station.devices
            if device.status == DeviceStatus.OFFLINE
        )
        for family in DeviceFamily:
            set_devices_offline(family.value, counts.get(family.value, 0))

    async def check_traffic_status(self) -> dict:
        """
        ETag traffic devices go offline once their last reading is older than
        the traffic threshold; the transition is logged once.
        """
        now = self.now()
        devices = [
            d for d in await self.repository.find_devices_by_family(DeviceFamily.TRAFFIC)
            if is_externally_tracked(d)
        ]

        newly_offline: List[str] = []
        for device in devices:
            if not is_stale(device, now, self.traffic_offline_threshold):
                continue
            if device.status == DeviceStatus.OFFLINE:
                continue
            await self.repository.update_device_status(
                DeviceFamily.TRAFFIC, device.serial, DeviceStatus.OFFLINE, now
            )
            await self.repository.append_status_log(
                StatusLogEntry(DeviceFamily.TRAFFIC.value, device.serial, DeviceStatus.OFFLINE, now)
            )
            newly_offline.append(device.serial)

        if newly_offline:
            logger.warning(f"ETag devices offline: {', '.join(newly_offline)}")
        message = f"Traffic status check completed: {len(devices)} devices, {len(newly_offline)} newly offline"
        logger.info(message)
        return {
            "success": True,
            "message": message,
            "checked": len(devices),
            "newly_offline": newly_offline,
        }
