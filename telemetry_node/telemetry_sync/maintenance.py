"""
Maintenance tasks: database backup, log backup, audit log cleanup
Each runs at most once per period; the idempotency cache remembers the last run
so a restart or an extra scheduler fire inside the period is a no-op.
File work goes through aiofiles.
"""
import fnmatch
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import aiofiles
import aiofiles.os

from ..telemetry_infrastructure.idempotency_cache import IdempotencyCache
from ..telemetry_infrastructure.repository import Repository

logger = logging.getLogger(__name__)

LOG_BACKUP_KEY = "backup-logs"
LOG_BACKUP_TTL = timedelta(hours=1)
LOG_BACKUP_WINDOW_MINUTES = 10
LOG_FILE_PATTERN = "*.log*"

AUDIT_CLEANUP_KEY = "cleanup-audit-logs"
AUDIT_CLEANUP_TTL = timedelta(days=30)

COPY_CHUNK_SIZE = 1024 * 1024

MONDAY = 0


async def _list_files(directory: str, pattern: str = "*") -> List[str]:
    """Regular files in directory whose names match pattern, sorted; [] if it does not exist."""
    if not await aiofiles.os.path.isdir(directory):
        return []
    files = []
    for name in sorted(await aiofiles.os.listdir(directory)):
        path = os.path.join(directory, name)
        if fnmatch.fnmatch(name, pattern) and await aiofiles.os.path.isfile(path):
            files.append(path)
    return files


async def _copy_file(source: str, target_dir: str) -> str:
    target = os.path.join(target_dir, os.path.basename(source))
    async with aiofiles.open(source, 'rb') as src, aiofiles.open(target, 'wb') as dst:
        while True:
            chunk = await src.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            await dst.write(chunk)
    return target


class MaintenanceService:
    def __init__(
        self,
        repository: Repository,
        cache: IdempotencyCache,
        backup_dir: str = "backups",
        log_dir: str = "logs",
        audit_log_dir: str = "logs/audit",
        audit_retention_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.backup_dir = backup_dir
        self.log_dir = log_dir
        self.audit_log_dir = audit_log_dir
        self.audit_retention_days = audit_retention_days
        self._clock = clock or datetime.now

    @classmethod
    def from_config(cls, repository: Repository, cache: IdempotencyCache) -> "MaintenanceService":
        from ..config import Config

        return cls(
            repository,
            cache,
            backup_dir=Config.get('maintenance.backup_dir', 'backups'),
            log_dir=Config.get('maintenance.log_dir', 'logs'),
            audit_log_dir=Config.get('maintenance.audit_log_dir', 'logs/audit'),
            audit_retention_days=Config.get_int('maintenance.audit_retention_days', 30),
        )

    async def backup_database(self, force: bool = False) -> dict:
        """Weekly database dump (Mondays)."""
        now = self._clock()
        if not force and now.weekday() != MONDAY:
            return {"success": True, "skipped": True, "message": "Database backup only runs on Mondays"}

        target = os.path.join(self.backup_dir, "database")
        path, size = await self.repository.backup_database(target)
        logger.info(f"Database backup written to {path} ({size} bytes)")
        return {
            "success": True,
            "skipped": False,
            "message": f"Database backup completed: {path}",
            "path": path,
            "size_bytes": size,
        }

    async def backup_logs(self, force: bool = False) -> dict:
        """Copy log files into a timestamped folder during the first minutes of each hour."""
        now = self._clock()
        if not force and now.minute >= LOG_BACKUP_WINDOW_MINUTES:
            return {"success": True, "skipped": True, "message": "Outside the log backup window"}
        if not force and await self.cache.exists(LOG_BACKUP_KEY):
            return {"success": True, "skipped": True, "message": "Logs already backed up this hour"}

        files = await _list_files(self.log_dir, LOG_FILE_PATTERN)
        target = os.path.join(self.backup_dir, "logs", now.strftime("%Y%m%d_%H%M%S"))
        if files:
            await aiofiles.os.makedirs(target, exist_ok=True)
            for path in files:
                await _copy_file(path, target)

        await self.cache.set(LOG_BACKUP_KEY, now, ttl=LOG_BACKUP_TTL)
        logger.info(f"Backed up {len(files)} log files to {target}")
        return {
            "success": True,
            "skipped": False,
            "message": f"Backed up {len(files)} log files",
            "files": len(files),
            "target": target if files else None,
        }

    async def cleanup_audit_logs(self, force: bool = False) -> dict:
        """Delete audit logs past retention; runs on the first day of the month."""
        now = self._clock()
        if not force and now.day != 1:
            return {"success": True, "skipped": True, "message": "Audit cleanup only runs on day 1"}
        if not force and await self.cache.exists(AUDIT_CLEANUP_KEY):
            return {"success": True, "skipped": True, "message": "Audit logs already cleaned this month"}

        cutoff = now - timedelta(days=self.audit_retention_days)
        removed = 0
        for path in await _list_files(self.audit_log_dir):
            stat = await aiofiles.os.stat(path)
            if datetime.fromtimestamp(stat.st_mtime, tz=now.tzinfo) < cutoff:
                await aiofiles.os.remove(path)
                removed += 1

        await self.cache.set(AUDIT_CLEANUP_KEY, now, ttl=AUDIT_CLEANUP_TTL)
        logger.info(f"Removed {removed} audit log files older than {self.audit_retention_days} days")
        return {
            "success": True,
            "skipped": False,
            "message": f"Removed {removed} audit log files",
            "removed": removed,
        }
