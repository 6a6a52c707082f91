"""
Telemetry Sync Module
"""
from .crowd_api import CrowdApiClient
from .parking_api import ParkingApiClient, ParkingSystem, detect_parking_system
from .tdx_api import TdxClient
from .crowd_adapter import CrowdSyncAdapter
from .parking_adapter import ParkingSyncAdapter
from .traffic_adapter import TrafficSyncAdapter
from .online_tracker import OnlineStateTracker, OnlinePolicy
from .maintenance import MaintenanceService
from .scheduler import Scheduler
from .task_service import ScheduledTaskService, build_scheduler

__all__ = [
    'CrowdApiClient',
    'ParkingApiClient',
    'ParkingSystem',
    'detect_parking_system',
    'TdxClient',
    'CrowdSyncAdapter',
    'ParkingSyncAdapter',
    'TrafficSyncAdapter',
    'OnlineStateTracker',
    'OnlinePolicy',
    'MaintenanceService',
    'Scheduler',
    'ScheduledTaskService',
    'build_scheduler',
]
