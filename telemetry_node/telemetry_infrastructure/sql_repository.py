"""
PostgreSQL repository (SQLAlchemy 2.0 async ORM over asyncpg)
Latest-reading tables are upserted with INSERT ... ON CONFLICT so each serial has one row.
"""
import asyncio
import logging
import os
from collections import defaultdict
from dataclasses import fields
from datetime import datetime
from functools import wraps
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import aiofiles.os
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from ..config import Config
from .db_models import (
    CrowdRecordLatestRow,
    CrowdRecordRow,
    DeviceRow,
    DeviceStatusLogRow,
    ParkingRecordLatestRow,
    ParkingRecordRow,
    StationRow,
    TrafficRecordRow,
)
from .errors import PersistenceError
from .models import (
    CrowdReading,
    Device,
    DeviceFamily,
    DeviceStatus,
    ParkingReading,
    Reading,
    Station,
    StatusLogEntry,
    TrafficReading,
    build_device,
)
from .repository import Repository
from .sqlalchemy_base import get_session

logger = logging.getLogger(__name__)

HISTORY_TABLES = {
    DeviceFamily.CROWD: CrowdRecordRow,
    DeviceFamily.PARKING: ParkingRecordRow,
    DeviceFamily.TRAFFIC: TrafficRecordRow,
}
LATEST_TABLES = {
    DeviceFamily.CROWD: CrowdRecordLatestRow,
    DeviceFamily.PARKING: ParkingRecordLatestRow,
}
READING_TYPES = {
    DeviceFamily.CROWD: CrowdReading,
    DeviceFamily.PARKING: ParkingReading,
    DeviceFamily.TRAFFIC: TrafficReading,
}


def _wrap_db_errors(func: Callable) -> Callable:
    """Re-raise SQLAlchemy failures as PersistenceError"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database error in {func.__name__}: {e}")
            raise PersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


def _reading_values(reading: Reading) -> Dict:
    values = reading.to_dict()
    values.pop('id', None)
    values['device_serial'] = values.pop('serial')
    values['time'] = values.pop('observed_at')
    return values


def _row_to_reading(family: DeviceFamily, row) -> Reading:
    reading_cls = READING_TYPES[family]
    extra = {
        f.name: getattr(row, f.name)
        for f in fields(reading_cls)
        if f.name not in ('serial', 'observed_at', 'id') and hasattr(row, f.name)
    }
    if hasattr(row, 'id'):
        extra['id'] = row.id
    return reading_cls(serial=row.device_serial, observed_at=row.time, **extra)


def _row_to_device(row: DeviceRow) -> Device:
    return build_device(
        row.family,
        id=row.id,
        serial=row.serial,
        name=row.name or "",
        station_id=row.station_id,
        api_url=row.api_url,
        status=row.status or DeviceStatus.UNKNOWN,
        last_online=row.last_online,
        updated_at=row.updated_at,
        area=row.area,
        capacity=row.capacity or 0,
        city=row.city,
        etag_number=row.etag_number,
        speed_limit=row.speed_limit,
    )


class SqlRepository(Repository):
    """Repository backed by the tables in db_models; requires init_sqlalchemy()."""

    @_wrap_db_errors
    async def find_devices_by_family(self, family: DeviceFamily) -> List[Device]:
        async with get_session() as session:
            result = await session.execute(
                select(DeviceRow).where(DeviceRow.family == family.value).order_by(DeviceRow.id)
            )
            return [_row_to_device(row) for row in result.scalars()]

    @_wrap_db_errors
    async def find_stations(self) -> List[Station]:
        async with get_session() as session:
            stations = (await session.execute(select(StationRow).order_by(StationRow.id))).scalars().all()
            devices = (await session.execute(
                select(DeviceRow).where(DeviceRow.station_id.is_not(None)).order_by(DeviceRow.id)
            )).scalars().all()

        by_station: Dict[int, List[Device]] = defaultdict(list)
        for row in devices:
            by_station[row.station_id].append(_row_to_device(row))

        return [
            Station(
                id=row.id,
                name=row.name,
                line_token=row.line_token,
                enable_notify=bool(row.enable_notify),
                devices=by_station.get(row.id, []),
            )
            for row in stations
        ]

    @_wrap_db_errors
    async def get_last_reading(self, family: DeviceFamily, serial: str) -> Optional[Reading]:
        table = LATEST_TABLES.get(family) or HISTORY_TABLES[family]
        async with get_session() as session:
            row = (await session.execute(
                select(table).where(table.device_serial == serial).order_by(table.time.desc()).limit(1)
            )).scalar_one_or_none()
        if row is None and family in LATEST_TABLES:
            # Latest table not populated yet (e.g. history imported from elsewhere)
            return await self._last_history_reading(family, serial)
        return _row_to_reading(family, row) if row is not None else None

    async def _last_history_reading(self, family: DeviceFamily, serial: str) -> Optional[Reading]:
        table = HISTORY_TABLES[family]
        async with get_session() as session:
            row = (await session.execute(
                select(table).where(table.device_serial == serial).order_by(table.time.desc()).limit(1)
            )).scalar_one_or_none()
        return _row_to_reading(family, row) if row is not None else None

    @_wrap_db_errors
    async def get_last_history_time(self, family: DeviceFamily, serial: str) -> Optional[datetime]:
        table = HISTORY_TABLES[family]
        async with get_session() as session:
            return (await session.execute(
                select(table.time).where(table.device_serial == serial).order_by(table.time.desc()).limit(1)
            )).scalar_one_or_none()

    @_wrap_db_errors
    async def insert_reading(self, family: DeviceFamily, reading: Reading):
        await self.add_readings(family, [reading])

    @_wrap_db_errors
    async def add_readings(self, family: DeviceFamily, readings: Sequence[Reading]):
        if not readings:
            return
        table = HISTORY_TABLES[family]
        async with get_session() as session:
            async with session.begin():
                session.add_all([table(**_reading_values(r)) for r in readings])
        logger.debug(f"Inserted {len(readings)} {family.value} readings")

    @_wrap_db_errors
    async def upsert_latest(self, family: DeviceFamily, reading: Reading):
        table = LATEST_TABLES.get(family)
        if table is None:
            return
        values = _reading_values(reading)
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.device_serial],
            set_={k: stmt.excluded[k] for k in values if k != 'device_serial'},
        )
        async with get_session() as session:
            async with session.begin():
                await session.execute(stmt)

    @_wrap_db_errors
    async def update_device_status(
        self, family: DeviceFamily, serial: str, status: str, timestamp: datetime
    ):
        values = {"status": status, "updated_at": timestamp}
        if status == DeviceStatus.ONLINE:
            values["last_online"] = timestamp
        async with get_session() as session:
            async with session.begin():
                await session.execute(
                    update(DeviceRow)
                    .where(DeviceRow.family == family.value, DeviceRow.serial == serial)
                    .values(**values)
                )

    @_wrap_db_errors
    async def append_status_log(self, entry: StatusLogEntry):
        async with get_session() as session:
            async with session.begin():
                session.add(DeviceStatusLogRow(
                    device_type=entry.family,
                    device_serial=entry.serial,
                    status=entry.status,
                    timestamp=entry.timestamp,
                ))

    @_wrap_db_errors
    async def save_device(self, device: Device):
        values = {
            "family": device.family.value,
            "serial": device.serial,
            "name": device.name,
            "station_id": device.station_id,
            "api_url": device.api_url,
            "status": device.status,
            "last_online": device.last_online,
            "updated_at": device.updated_at,
        }
        for column in ("area", "capacity", "city", "etag_number", "speed_limit"):
            if hasattr(device, column):
                values[column] = getattr(device, column)
        stmt = pg_insert(DeviceRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_devices_family_serial",
            set_={k: stmt.excluded[k] for k in values if k not in ("family", "serial")},
        )
        async with get_session() as session:
            async with session.begin():
                await session.execute(stmt)

    async def backup_database(self, target_dir: str) -> Tuple[str, int]:
        """Run pg_dump (custom format) into target_dir."""
        db = Config.get_database_config()
        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        path = os.path.join(target_dir, f"{db.get('database', 'telemetry')}_{stamp}.dump")

        env = dict(os.environ, PGPASSWORD=str(db.get('password') or ''))
        process = await asyncio.create_subprocess_exec(
            "pg_dump",
            "-h", str(db.get('host', 'localhost')),
            "-p", str(db.get('port', 5432)),
            "-U", str(db.get('username', 'postgres')),
            "-F", "c",
            "-f", path,
            str(db.get('database', 'telemetry')),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise PersistenceError(
                f"pg_dump exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return path, await aiofiles.os.path.getsize(path)
