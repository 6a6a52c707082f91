"""
Domain models for the Telemetry Sync Node
Devices per family, stations, canonical readings, status log entries and sync summaries
"""
import logging
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Protocol, Union

from dateutil import parser as date_parser
from dateutil import tz

logger = logging.getLogger(__name__)


class DeviceFamily(str, Enum):
    """Device categories; values match the status log device_type column"""
    CROWD = "crowd"
    PARKING = "parking"
    TRAFFIC = "traffic"
    FENCE = "fence"
    HIGH_RESOLUTION = "highResolution"


class DeviceStatus:
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class HasOnlineState(Protocol):
    """What the online tracker needs from any device shape"""
    status: str
    last_online: Optional[datetime]
    serial: str
    name: str


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def get_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA zone name, falling back to UTC when unknown."""
    zone = tz.gettz(name) if name else None
    if zone is None:
        if name:
            logger.warning(f"Unknown timezone '{name}', using UTC")
        return tz.UTC
    return zone


def ensure_aware(dt: datetime, zone: tzinfo) -> datetime:
    """Naive datetimes are taken to be in the given zone."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=zone)
    return dt


def parse_vendor_time(value: Any, zone: tzinfo) -> Optional[datetime]:
    """
    Parse a vendor timestamp.

    Returns None for empty or unparseable values so normalizers can report
    "no reading" instead of raising.
    """
    if isinstance(value, datetime):
        return ensure_aware(value, zone)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_aware(date_parser.parse(value), zone)
    except (ValueError, OverflowError, TypeError):
        return None


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

@dataclass
class Device:
    """Fields shared by every family; satisfies HasOnlineState"""
    family: ClassVar[DeviceFamily]

    serial: str
    name: str = ""
    station_id: Optional[int] = None
    api_url: Optional[str] = None
    status: str = DeviceStatus.UNKNOWN
    last_online: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class CrowdDevice(Device):
    family: ClassVar[DeviceFamily] = DeviceFamily.CROWD
    area: Optional[str] = None


@dataclass
class ParkingDevice(Device):
    family: ClassVar[DeviceFamily] = DeviceFamily.PARKING
    capacity: int = 0


@dataclass
class TrafficDevice(Device):
    family: ClassVar[DeviceFamily] = DeviceFamily.TRAFFIC
    city: Optional[str] = None
    etag_number: Optional[str] = None
    speed_limit: Optional[int] = None


@dataclass
class FenceDevice(Device):
    family: ClassVar[DeviceFamily] = DeviceFamily.FENCE


@dataclass
class HighResolutionDevice(Device):
    family: ClassVar[DeviceFamily] = DeviceFamily.HIGH_RESOLUTION


DEVICE_TYPES = {
    DeviceFamily.CROWD: CrowdDevice,
    DeviceFamily.PARKING: ParkingDevice,
    DeviceFamily.TRAFFIC: TrafficDevice,
    DeviceFamily.FENCE: FenceDevice,
    DeviceFamily.HIGH_RESOLUTION: HighResolutionDevice,
}


def build_device(family: Union[DeviceFamily, str], **attrs) -> Device:
    """Instantiate the device class for a family, dropping unknown fields."""
    device_cls = DEVICE_TYPES[DeviceFamily(family)]
    allowed = {f.name for f in fields(device_cls)}
    return device_cls(**{k: v for k, v in attrs.items() if k in allowed})


@dataclass
class Station:
    id: int
    name: str
    line_token: Optional[str] = None
    enable_notify: bool = False
    devices: List[Device] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------

@dataclass
class Reading:
    """One canonical observation; immutable once persisted"""
    serial: str
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrowdReading(Reading):
    total_in: int = 0
    total_out: int = 0
    in_count: int = 0
    out_count: int = 0
    count: int = 0
    id: Optional[int] = None


@dataclass
class ParkingCounts:
    """Vendor-neutral parking figures before capacity is applied"""
    parked: int
    remaining: int
    admittance: int = 0


@dataclass
class ParkingReading(Reading):
    total_spaces: int = 0
    occupied_spaces: int = 0
    available_spaces: int = 0
    occupancy_rate: float = 0.0
    id: Optional[int] = None


@dataclass
class TrafficReading(Reading):
    vehicle_count: int = 0
    average_speed: float = 0.0
    travel_time: float = 0.0
    traffic_condition: str = "congested"
    id: Optional[int] = None


@dataclass
class StatusLogEntry:
    family: str
    serial: str
    status: str
    timestamp: datetime


@dataclass
class OfflineDevice:
    family: str
    serial: str
    name: str
    last_online: Optional[datetime]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class SyncSummary:
    """Structured result of one adapter run"""
    family: str
    success: bool = False
    message: str = ""
    synced_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.errors.append(message)
        self.failed_count = len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncSettings:
    """Snapshot of the tunables a sync run uses"""
    sync_interval: timedelta = timedelta(minutes=5)
    traffic_sync_interval: timedelta = timedelta(minutes=5)
    history_min_interval: timedelta = timedelta(minutes=5)
    batch_size: int = 10
    batch_delay_seconds: float = 5.0
    request_delay_ms: int = 500
    verbose_logging: bool = False
    vehicle_type: int = 3
    offline_threshold: timedelta = timedelta(minutes=7)
    traffic_offline_threshold: timedelta = timedelta(minutes=70)
    timezone: tzinfo = field(default_factory=lambda: tz.UTC)

    @classmethod
    def from_config(cls) -> "SyncSettings":
        # Imported here so models stay importable without a config file
        from ..config import Config

        return cls(
            sync_interval=timedelta(minutes=Config.get_float('sync.sync_interval_minutes', 5)),
            traffic_sync_interval=timedelta(minutes=Config.get_float('traffic.sync_interval_minutes', 5)),
            history_min_interval=timedelta(minutes=Config.get_float('sync.history_min_interval_minutes', 5)),
            batch_size=Config.get_int('sync.batch_size', 10),
            batch_delay_seconds=Config.get_float('sync.batch_delay_seconds', 5),
            request_delay_ms=Config.get_int('sync.request_delay_ms', 500),
            verbose_logging=Config.get_bool('sync.enable_verbose_logging', False),
            vehicle_type=Config.get_int('traffic.vehicle_type', 3),
            offline_threshold=timedelta(minutes=Config.get_float('online_check.offline_threshold_minutes', 7)),
            traffic_offline_threshold=timedelta(minutes=Config.get_float('traffic.status_offline_minutes', 70)),
            timezone=get_timezone(Config.get('sync.timezone')),
        )


class SettingsProvider:
    """
    SyncSettings that follow Config hot reloads.

    Calling the provider returns the current snapshot. It is rebuilt when
    Config has reloaded its file since the previous call, and subscribers
    are then handed the new snapshot.
    """

    def __init__(self):
        self._settings: Optional[SyncSettings] = None
        self._generation: Optional[int] = None
        self._subscribers: List[Callable[[SyncSettings], None]] = []

    def subscribe(self, callback: Callable[[SyncSettings], None]):
        self._subscribers.append(callback)

    def __call__(self) -> SyncSettings:
        from ..config import Config

        generation = Config.generation()
        if self._settings is not None and generation == self._generation:
            return self._settings

        reloaded = self._settings is not None
        self._settings = SyncSettings.from_config()
        self._generation = generation
        if reloaded:
            logger.info("Sync settings reloaded from configuration")
            for callback in self._subscribers:
                callback(self._settings)
        return self._settings
