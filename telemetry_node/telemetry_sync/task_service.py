"""
Named task dispatch and scheduler wiring
Every periodic job is also runnable on demand (`telemetry-node task <name>`).
"""
import asyncio
import logging
import time
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..logging_config import log_context
from ..metrics import record_task_run
from ..telemetry_infrastructure.http_client import VendorHttpClient
from ..telemetry_infrastructure.idempotency_cache import IdempotencyCache
from ..telemetry_infrastructure.models import SettingsProvider, SyncSummary
from ..telemetry_infrastructure.notifier import LineNotifier
from ..telemetry_infrastructure.rate_controller import RateController
from ..telemetry_infrastructure.repository import Repository
from ..telemetry_infrastructure.uploader import TransportationUploader
from .crowd_adapter import CrowdSyncAdapter
from .crowd_api import CrowdApiClient
from .maintenance import MaintenanceService
from .online_tracker import OnlineStateTracker
from .parking_adapter import ParkingSyncAdapter
from .parking_api import ParkingApiClient
from .scheduler import Scheduler, seconds_until_daily, seconds_until_month_start
from .tdx_api import TdxClient
from .traffic_adapter import TrafficSyncAdapter

logger = logging.getLogger(__name__)

CHECK_DEVICES_ONLINE = "check-devices-online"
CHECK_TRAFFIC_STATUS = "check-traffic-status"
SYNC_CROWD_DATA = "sync-crowd-data"
SYNC_PARKING_DATA = "sync-parking-data"
SYNC_TRAFFIC_DATA = "sync-traffic-data"
BACKUP_DATABASE = "backup-database"
BACKUP_LOGS = "backup-logs"
CLEANUP_AUDIT_LOGS = "cleanup-audit-logs"

MINUTE = 60
DAY = 24 * 60 * MINUTE


class ScheduledTaskService:
    """Maps task names to the adapter, tracker and maintenance operations"""

    def __init__(
        self,
        crowd_adapter: CrowdSyncAdapter,
        parking_adapter: ParkingSyncAdapter,
        traffic_adapter: TrafficSyncAdapter,
        tracker: OnlineStateTracker,
        maintenance: MaintenanceService,
    ):
        self.crowd_adapter = crowd_adapter
        self.parking_adapter = parking_adapter
        self.traffic_adapter = traffic_adapter
        self.tracker = tracker
        self.maintenance = maintenance

        self._tasks: Dict[str, Tuple[str, Callable[[bool], Awaitable[Any]]]] = {
            CHECK_DEVICES_ONLINE: (
                "Flip stale devices offline and notify their stations",
                lambda force: tracker.check_devices_online(),
            ),
            CHECK_TRAFFIC_STATUS: (
                "Flip ETag traffic devices offline after the traffic threshold",
                lambda force: tracker.check_traffic_status(),
            ),
            SYNC_CROWD_DATA: ("Poll crowd counters", crowd_adapter.sync),
            SYNC_PARKING_DATA: ("Poll parking vendors", parking_adapter.sync),
            SYNC_TRAFFIC_DATA: ("Poll TDX ETag flows per city", traffic_adapter.sync),
            BACKUP_DATABASE: ("Weekly database dump", maintenance.backup_database),
            BACKUP_LOGS: ("Hourly log file backup", maintenance.backup_logs),
            CLEANUP_AUDIT_LOGS: ("Monthly audit log retention", maintenance.cleanup_audit_logs),
        }

    @classmethod
    def from_config(
        cls,
        repository: Repository,
        http_client: VendorHttpClient,
        cache: IdempotencyCache,
        rate_controller: RateController,
    ) -> "ScheduledTaskService":
        """
        Build every collaborator from Config.

        Adapters and the tracker share one SettingsProvider, so a config hot
        reload reaches intervals, delays and thresholds on their next tick.
        """
        settings_provider = SettingsProvider()
        settings_provider.subscribe(rate_controller.reload_config)
        uploader = TransportationUploader.from_config(http_client)
        common = dict(settings_provider=settings_provider, uploader=uploader)

        crowd = CrowdSyncAdapter(
            CrowdApiClient.from_config(http_client), repository, cache, rate_controller, **common
        )
        parking = ParkingSyncAdapter(
            ParkingApiClient.from_config(http_client, cache), repository, cache, rate_controller, **common
        )
        traffic = TrafficSyncAdapter(
            TdxClient.from_config(http_client, cache), repository, cache, rate_controller, **common
        )
        tracker = OnlineStateTracker(
            repository,
            notifier=LineNotifier.from_config(http_client),
            settings_provider=settings_provider,
        )
        maintenance = MaintenanceService.from_config(repository, cache)
        return cls(crowd, parking, traffic, tracker, maintenance)

    def available_tasks(self) -> Dict[str, str]:
        return {name: description for name, (description, _) in self._tasks.items()}

    async def execute_task(self, name: str, force: bool = False) -> dict:
        """
        Run one named task.

        Args:
            name: One of available_tasks()
            force: Bypass interval and calendar gating

        Returns:
            Dict with task, success, message, duration_seconds and result

        Raises:
            KeyError: If the task name is unknown
        """
        if name not in self._tasks:
            raise KeyError(f"Unknown task: {name}")
        _, handler = self._tasks[name]

        started = time.monotonic()
        with log_context(task=name):
            try:
                outcome = await handler(force)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                duration = time.monotonic() - started
                record_task_run(name, False, duration)
                logger.error(f"Task {name} failed after {duration:.2f}s: {e}", exc_info=True)
                return {
                    "task": name,
                    "success": False,
                    "message": str(e),
                    "duration_seconds": duration,
                    "result": None,
                }

        result = outcome.to_dict() if isinstance(outcome, SyncSummary) else outcome
        duration = time.monotonic() - started
        success = bool(result.get("success", True))
        record_task_run(name, success, duration)
        return {
            "task": name,
            "success": success,
            "message": result.get("message", ""),
            "duration_seconds": duration,
            "result": result,
        }


def build_scheduler(
    service: ScheduledTaskService,
    shutdown_event: Optional[asyncio.Event] = None,
    now: Optional[datetime] = None,
) -> Scheduler:
    """
    Register the standard loops.

    The database backup fires daily from the next 02:00 (the task itself only
    acts on Mondays); audit cleanup fires from the next 1st-of-month 03:00 and
    every 30 days after.
    """
    now = now or datetime.now(service.tracker.timezone)
    scheduler = Scheduler(shutdown_event)

    def run(name: str):
        return partial(service.execute_task, name)

    scheduler.schedule("device-online-check", MINUTE, run(CHECK_DEVICES_ONLINE))
    scheduler.schedule("crowd-sync", MINUTE, run(SYNC_CROWD_DATA))
    scheduler.schedule("parking-sync", MINUTE, run(SYNC_PARKING_DATA))
    scheduler.schedule("log-backup", MINUTE, run(BACKUP_LOGS))
    scheduler.schedule("traffic-status-check", 5 * MINUTE, run(CHECK_TRAFFIC_STATUS))
    scheduler.schedule("traffic-sync", 30 * MINUTE, run(SYNC_TRAFFIC_DATA))
    scheduler.schedule(
        "database-backup", DAY, run(BACKUP_DATABASE),
        initial_delay=seconds_until_daily(2, now),
    )
    scheduler.schedule(
        "audit-cleanup", 30 * DAY, run(CLEANUP_AUDIT_LOGS),
        initial_delay=seconds_until_month_start(3, now),
    )
    return scheduler
