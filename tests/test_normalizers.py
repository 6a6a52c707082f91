from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest
from dateutil import tz

from conftest import TAIPEI
from telemetry_node.telemetry_infrastructure.models import CrowdReading, ParkingCounts
from telemetry_node.telemetry_sync.normalizers import (
    build_parking_reading,
    classify_traffic,
    compute_crowd_deltas,
    find_etag_pair,
    history_due,
    normalize_crowd,
    normalize_parking_mp,
    normalize_parking_nb,
    normalize_parking_nhr,
    normalize_parking_yp,
    normalize_traffic,
)
from telemetry_node.telemetry_sync.parking_api import (
    ParkingSystem,
    decode_yp,
    detect_parking_system,
    encode_yp,
)
from telemetry_node.telemetry_sync.tdx_api import token_ttl


def _crowd(total_in: int, total_out: int, at: datetime) -> CrowdReading:
    return CrowdReading(serial="DEV001", observed_at=at, total_in=total_in, total_out=total_out, count=0)


def test_normalize_crowd_parses_cumulative_totals() -> None:
    reading = normalize_crowd(
        "DEV001",
        {"timestamp": "2024-05-06T10:00:00", "total_in": "120", "total_out": 100, "occupancy": 20},
        TAIPEI,
    )
    assert reading is not None
    assert reading.observed_at == datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI)
    assert (reading.total_in, reading.total_out, reading.count) == (120, 100, 20)


@pytest.mark.parametrize(
    "payload",
    [
        {"timestamp": "not a time", "total_in": 1, "total_out": 1, "occupancy": 0},
        {"timestamp": "2024-05-06T10:00:00", "total_out": 1, "occupancy": 0},
        {"timestamp": "2024-05-06T10:00:00", "total_in": "abc", "total_out": 1, "occupancy": 0},
        [],
        None,
    ],
)
def test_normalize_crowd_bad_payload_gives_no_reading(payload: object) -> None:
    assert normalize_crowd("DEV001", payload, TAIPEI) is None


def test_crowd_deltas_reset_across_day_boundary() -> None:
    yesterday = _crowd(500, 480, datetime(2024, 5, 5, 23, 58, tzinfo=TAIPEI))
    today = _crowd(20, 15, datetime(2024, 5, 6, 0, 2, tzinfo=TAIPEI))

    compute_crowd_deltas(today, yesterday, TAIPEI)

    assert (today.in_count, today.out_count) == (20, 15)


def test_crowd_deltas_use_same_day_baseline() -> None:
    earlier = _crowd(500, 480, datetime(2024, 5, 6, 9, 55, tzinfo=TAIPEI))
    now = _crowd(530, 490, datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI))

    compute_crowd_deltas(now, earlier, TAIPEI)

    assert (now.in_count, now.out_count) == (30, 10)


def test_crowd_deltas_clamp_counter_resets_to_zero() -> None:
    earlier = _crowd(500, 480, datetime(2024, 5, 6, 9, 55, tzinfo=TAIPEI))
    now = _crowd(10, 490, datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI))

    compute_crowd_deltas(now, earlier, TAIPEI)

    assert (now.in_count, now.out_count) == (0, 10)


def test_crowd_day_boundary_uses_configured_zone_for_utc_timestamps() -> None:
    evening = _crowd(500, 480, datetime(2024, 5, 6, 15, 50, tzinfo=tz.UTC))
    after_midnight = _crowd(20, 15, datetime(2024, 5, 6, 16, 30, tzinfo=tz.UTC))

    compute_crowd_deltas(after_midnight, evening, TAIPEI)

    assert (after_midnight.in_count, after_midnight.out_count) == (20, 15)


def test_crowd_same_local_day_spanning_utc_dates_keeps_baseline() -> None:
    early = _crowd(100, 90, datetime(2024, 5, 5, 16, 10, tzinfo=tz.UTC))
    later = _crowd(130, 95, datetime(2024, 5, 6, 1, 0, tzinfo=tz.UTC))

    compute_crowd_deltas(later, early, TAIPEI)

    assert (later.in_count, later.out_count) == (30, 5)


def test_history_due_requires_gap_over_minimum() -> None:
    base = datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI)
    gap = timedelta(minutes=5)
    assert history_due(base, None, gap)
    assert not history_due(base + timedelta(minutes=5), base, gap)
    assert history_due(base + timedelta(minutes=5, seconds=1), base, gap)


def test_parking_mp_counts_and_vendor_error() -> None:
    ok = [{"retCode": 1, "retVal": {"normalInCar": 100, "normalSurplusCar": 40}}]
    assert normalize_parking_mp(ok) == ParkingCounts(parked=60, remaining=40, admittance=100)
    assert normalize_parking_mp([{"retCode": 0, "retMsg": "bad sid"}]) is None


def test_parking_yp_uses_car_type_one() -> None:
    document = {"Space": [{"CarType": 2, "AllSpace": 50, "LeftSpace": 5}, {"CarType": 1, "AllSpace": 200, "LeftSpace": 35}]}
    assert normalize_parking_yp(document) == ParkingCounts(parked=165, remaining=35, admittance=200)
    assert normalize_parking_yp({"Space": [{"CarType": 2, "AllSpace": 50, "LeftSpace": 5}]}) is None
    assert normalize_parking_yp({"Space": 7}) is None
    assert normalize_parking_yp({"Space": "CarType=1"}) is None


def test_parking_nb_and_nhr_status_flags() -> None:
    assert normalize_parking_nb({"status": 1, "parkingspaces": 12}, 50) == ParkingCounts(parked=38, remaining=12)
    assert normalize_parking_nb({"status": 0, "parkingspaces": 12}, 50) is None
    assert normalize_parking_nhr([{"retCode": 1, "retVal": {"normalInCar": 30}}], 80) == ParkingCounts(
        parked=30, remaining=50
    )
    assert normalize_parking_nhr([{"retCode": 0}], 80) is None


def test_parking_reading_occupancy_rate() -> None:
    at = datetime(2024, 5, 6, 10, 0, tzinfo=TAIPEI)
    reading = build_parking_reading("P1", ParkingCounts(parked=1, remaining=2), 3, at)
    assert reading.occupancy_rate == 33.33
    assert build_parking_reading("P1", ParkingCounts(parked=1, remaining=0), 0, at).occupancy_rate == 0.0


def test_yp_envelope_round_trips_with_second_shift() -> None:
    now = datetime(2024, 5, 6, 10, 20, 31)
    request = json.dumps({"Type": 1, "Target": "P1", "API": "GetCarSpace"}, separators=(",", ":"))
    encoded = encode_yp(request, now)

    assert encoded.endswith("|2024-05-06 10:20:31:000")
    # '{' is 0x7B; shifted by 31 seconds
    assert encoded.startswith(format(ord("{") + 31, "X") + "-")
    assert decode_yp(encoded) == request


def test_decode_yp_rejects_missing_stamp() -> None:
    with pytest.raises(ValueError):
        decode_yp("7B-22")


@pytest.mark.parametrize(
    ("url", "system"),
    [
        ("https://api.youparking.com.tw/gate", ParkingSystem.YP),
        ("https://nobel168.com.tw/spaces", ParkingSystem.NB),
        ("https://example.com/parking/altobParking/1", ParkingSystem.AP),
        ("https://www.stables.com.tw/api", ParkingSystem.MP),
        ("http://10.0.0.1/api/nhr/getCarNumInfo", ParkingSystem.NHR),
        ("https://unknown.example.com", ParkingSystem.MP),
        (None, ParkingSystem.MP),
    ],
)
def test_detect_parking_system(url: str | None, system: ParkingSystem) -> None:
    assert detect_parking_system(url) is system


@pytest.mark.parametrize(("speed", "condition"), [(61, "smooth"), (60, "normal"), (31, "normal"), (30, "congested")])
def test_classify_traffic_thresholds(speed: float, condition: str) -> None:
    assert classify_traffic(speed) == condition


def test_normalize_traffic_picks_vehicle_class() -> None:
    pair = {
        "ETagPairID": "01F0017-01F0005",
        "DataCollectTime": "2024-05-06T10:00:00+08:00",
        "Flows": [
            {"VehicleType": 31, "SpaceMeanSpeed": 90, "VehicleCount": 4, "TravelTime": 60},
            {"VehicleType": 3, "SpaceMeanSpeed": -1, "VehicleCount": 12, "TravelTime": 95},
        ],
    }
    reading = normalize_traffic("T1", pair, TAIPEI)
    assert reading is not None
    assert reading.vehicle_count == 12
    assert reading.average_speed == 0.0
    assert reading.traffic_condition == "congested"

    assert normalize_traffic("T1", pair, TAIPEI, vehicle_type=5) is None
    assert normalize_traffic("T1", dict(pair, DataCollectTime="garbage"), TAIPEI) is None
    assert normalize_traffic("T1", dict(pair, Flows=3), TAIPEI) is None


def test_find_etag_pair() -> None:
    pairs = [{"ETagPairID": "A"}, {"ETagPairID": "B"}]
    assert find_etag_pair(pairs, "B") == {"ETagPairID": "B"}
    assert find_etag_pair(pairs, "C") is None
    assert find_etag_pair(5, "A") is None


@pytest.mark.parametrize(("expires_in", "seconds"), [(86400, 86100), (400, 300), (0, 3300), ("x", 3300)])
def test_token_ttl(expires_in: object, seconds: int) -> None:
    assert token_ttl(expires_in) == timedelta(seconds=seconds)
