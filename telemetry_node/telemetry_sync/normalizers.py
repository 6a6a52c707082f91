"""
Vendor response normalizers
Pure functions mapping raw vendor payloads to canonical readings.
A payload that cannot produce a reading yields None; these never raise for bad data.
"""
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, Optional

from ..telemetry_infrastructure.models import (
    CrowdReading,
    ParkingCounts,
    ParkingReading,
    TrafficReading,
    parse_vendor_time,
    start_of_day,
)

logger = logging.getLogger(__name__)

PASSENGER_CAR = 3

SMOOTH_SPEED_KMH = 60
NORMAL_SPEED_KMH = 30


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Crowd
# ---------------------------------------------------------------------------

def normalize_crowd(serial: str, payload: Any, zone: tzinfo) -> Optional[CrowdReading]:
    """
    {timestamp, total_in, total_out, occupancy} -> CrowdReading with cumulative totals.

    in_count / out_count are left at 0; compute_crowd_deltas fills them once
    the previous reading is known.
    """
    if not isinstance(payload, dict):
        return None
    observed_at = parse_vendor_time(payload.get('timestamp'), zone)
    if observed_at is None:
        return None
    total_in = _as_int(payload.get('total_in'))
    total_out = _as_int(payload.get('total_out'))
    occupancy = _as_int(payload.get('occupancy'))
    if total_in is None or total_out is None or occupancy is None:
        return None
    return CrowdReading(
        serial=serial,
        observed_at=observed_at,
        total_in=total_in,
        total_out=total_out,
        count=occupancy,
    )


def compute_crowd_deltas(reading: CrowdReading, last: Optional[CrowdReading], zone: tzinfo) -> CrowdReading:
    """
    Fill in_count/out_count from cumulative totals.

    The baseline is the previous reading only when both fall on the same day
    in zone; counters restart at local midnight so an older baseline is (0, 0).
    Negative deltas (counter reset mid-day) are clamped to 0.
    """
    base_in, base_out = 0, 0
    if last is not None:
        last_day = start_of_day(last.observed_at.astimezone(zone))
        if last_day == start_of_day(reading.observed_at.astimezone(zone)):
            base_in, base_out = last.total_in, last.total_out
    reading.in_count = max(reading.total_in - base_in, 0)
    reading.out_count = max(reading.total_out - base_out, 0)
    return reading


def history_due(observed_at: datetime, last_history_at: Optional[datetime], min_interval: timedelta) -> bool:
    """A history row is written when none exists or the gap exceeds min_interval."""
    return last_history_at is None or observed_at - last_history_at > min_interval


# ---------------------------------------------------------------------------
# Parking
# ---------------------------------------------------------------------------

def _first(payload: Any) -> Optional[Dict[str, Any]]:
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    return payload if isinstance(payload, dict) else None


def normalize_parking_mp(payload: Any) -> Optional[ParkingCounts]:
    """[{retCode, retMsg, retVal: {normalInCar, normalSurplusCar}}]; retCode 0 is a vendor error."""
    data = _first(payload)
    if data is None or data.get('retCode') == 0:
        return None
    values = data.get('retVal')
    if not isinstance(values, dict):
        return None
    in_car = _as_int(values.get('normalInCar'))
    surplus = _as_int(values.get('normalSurplusCar'))
    if in_car is None or surplus is None:
        return None
    return ParkingCounts(parked=in_car - surplus, remaining=surplus, admittance=in_car)


def normalize_parking_yp(payload: Any) -> Optional[ParkingCounts]:
    """Decoded YP document {Space: [{CarType, AllSpace, LeftSpace}]}; only CarType 1 (cars) counts."""
    if not isinstance(payload, dict):
        return None
    spaces = payload.get('Space')
    if not isinstance(spaces, list):
        return None
    car = next((s for s in spaces if isinstance(s, dict) and s.get('CarType') == 1), None)
    if car is None:
        return None
    all_space = _as_int(car.get('AllSpace'))
    left_space = _as_int(car.get('LeftSpace'))
    if all_space is None or left_space is None:
        return None
    return ParkingCounts(parked=all_space - left_space, remaining=left_space, admittance=all_space)


def normalize_parking_nb(payload: Any, capacity: int) -> Optional[ParkingCounts]:
    """{status, parkingspaces}; status must be 1."""
    if not isinstance(payload, dict) or payload.get('status') != 1:
        return None
    free = _as_int(payload.get('parkingspaces'))
    if free is None:
        return None
    return ParkingCounts(parked=capacity - free, remaining=free)


def normalize_parking_nhr(payload: Any, capacity: int) -> Optional[ParkingCounts]:
    """[{retCode, retVal: {normalInCar}}]; retCode must be 1."""
    data = _first(payload)
    if data is None or data.get('retCode') != 1:
        return None
    values = data.get('retVal')
    if not isinstance(values, dict):
        return None
    parked = _as_int(values.get('normalInCar'))
    if parked is None:
        return None
    return ParkingCounts(parked=parked, remaining=capacity - parked)


def build_parking_reading(serial: str, counts: ParkingCounts, capacity: int, observed_at: datetime) -> ParkingReading:
    rate = round(counts.parked / capacity * 100, 2) if capacity > 0 else 0.0
    return ParkingReading(
        serial=serial,
        observed_at=observed_at,
        total_spaces=capacity,
        occupied_spaces=counts.parked,
        available_spaces=counts.remaining,
        occupancy_rate=rate,
    )


# ---------------------------------------------------------------------------
# Traffic
# ---------------------------------------------------------------------------

def classify_traffic(speed: float) -> str:
    if speed > SMOOTH_SPEED_KMH:
        return "smooth"
    if speed > NORMAL_SPEED_KMH:
        return "normal"
    return "congested"


def find_etag_pair(pairs: Any, etag: str) -> Optional[Dict[str, Any]]:
    if not isinstance(pairs, list):
        return None
    for pair in pairs:
        if isinstance(pair, dict) and pair.get('ETagPairID') == etag:
            return pair
    return None


def normalize_traffic(
    serial: str,
    pair: Any,
    zone: tzinfo,
    vehicle_type: int = PASSENGER_CAR,
) -> Optional[TrafficReading]:
    """
    One ETagPairLive entry -> TrafficReading.

    The flow for vehicle_type is used; entries with an unparseable
    DataCollectTime or without that vehicle class give no reading.
    """
    if not isinstance(pair, dict):
        return None
    observed_at = parse_vendor_time(pair.get('DataCollectTime'), zone)
    if observed_at is None:
        return None
    flows = pair.get('Flows')
    if not isinstance(flows, list):
        return None
    flow = next((f for f in flows if isinstance(f, dict) and f.get('VehicleType') == vehicle_type), None)
    if flow is None:
        return None

    speed = _as_float(flow.get('SpaceMeanSpeed'))
    if speed is None:
        return None
    speed = max(speed, 0.0)
    return TrafficReading(
        serial=serial,
        observed_at=observed_at,
        vehicle_count=_as_int(flow.get('VehicleCount')) or 0,
        average_speed=speed,
        travel_time=_as_float(flow.get('TravelTime')) or 0.0,
        traffic_condition=classify_traffic(speed),
    )


def crowd_upload_payload(reading: CrowdReading) -> Dict[str, Any]:
    return {"count": reading.count}


def parking_upload_payload(reading: ParkingReading) -> Dict[str, Any]:
    return {"availableSpaces": reading.available_spaces, "totalSpaces": reading.total_spaces}
