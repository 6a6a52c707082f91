"""
ORM tables for devices, stations, readings and status logs
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .sqlalchemy_base import Base


class StationRow(Base):
    __tablename__ = "stations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    line_token: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    enable_notify: Mapped[bool] = mapped_column(Boolean, default=False)


class DeviceRow(Base):
    """All families share one table; family-specific columns are nullable"""
    __tablename__ = "devices"
    __table_args__ = (
        UniqueConstraint("family", "serial", name="uq_devices_family_serial"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    family: Mapped[str] = mapped_column(String(32), index=True)
    serial: Mapped[str] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(200), default="")
    station_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stations.id"), nullable=True, index=True)
    api_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="unknown")
    last_online: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # crowd
    area: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # parking
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # traffic
    city: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    etag_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    speed_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class CrowdRecordRow(Base):
    __tablename__ = "crowd_records"
    __table_args__ = (Index("ix_crowd_records_serial_time", "device_serial", "time"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    device_serial: Mapped[str] = mapped_column(String(100))
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_in: Mapped[int] = mapped_column(Integer, default=0)
    total_out: Mapped[int] = mapped_column(Integer, default=0)
    in_count: Mapped[int] = mapped_column(Integer, default=0)
    out_count: Mapped[int] = mapped_column(Integer, default=0)
    count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CrowdRecordLatestRow(Base):
    __tablename__ = "crowd_records_latest"

    device_serial: Mapped[str] = mapped_column(String(100), primary_key=True)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_in: Mapped[int] = mapped_column(Integer, default=0)
    total_out: Mapped[int] = mapped_column(Integer, default=0)
    in_count: Mapped[int] = mapped_column(Integer, default=0)
    out_count: Mapped[int] = mapped_column(Integer, default=0)
    count: Mapped[int] = mapped_column(Integer, default=0)


class ParkingRecordRow(Base):
    __tablename__ = "parking_records"
    __table_args__ = (Index("ix_parking_records_serial_time", "device_serial", "time"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    device_serial: Mapped[str] = mapped_column(String(100))
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_spaces: Mapped[int] = mapped_column(Integer, default=0)
    occupied_spaces: Mapped[int] = mapped_column(Integer, default=0)
    available_spaces: Mapped[int] = mapped_column(Integer, default=0)
    occupancy_rate: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ParkingRecordLatestRow(Base):
    __tablename__ = "parking_records_latest"

    device_serial: Mapped[str] = mapped_column(String(100), primary_key=True)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_spaces: Mapped[int] = mapped_column(Integer, default=0)
    occupied_spaces: Mapped[int] = mapped_column(Integer, default=0)
    available_spaces: Mapped[int] = mapped_column(Integer, default=0)
    occupancy_rate: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=0)


class TrafficRecordRow(Base):
    __tablename__ = "traffic_records"
    __table_args__ = (Index("ix_traffic_records_serial_time", "device_serial", "time"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    device_serial: Mapped[str] = mapped_column(String(100))
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    vehicle_count: Mapped[int] = mapped_column(Integer, default=0)
    average_speed: Mapped[float] = mapped_column(Numeric(8, 2, asdecimal=False), default=0)
    travel_time: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    traffic_condition: Mapped[str] = mapped_column(String(16), default="congested")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeviceStatusLogRow(Base):
    __tablename__ = "device_status_logs"
    __table_args__ = (Index("ix_device_status_logs_serial_ts", "device_serial", "timestamp"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    device_type: Mapped[str] = mapped_column(String(32))
    device_serial: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(16))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
