from __future__ import annotations

import pytest

from conftest import FakeClock, FakeHttpClient, RecordingSleep, json_response
from telemetry_node.telemetry_infrastructure.http_client import HttpResponse
from telemetry_node.telemetry_infrastructure.idempotency_cache import IdempotencyCache
from telemetry_node.telemetry_infrastructure.models import DeviceFamily, DeviceStatus, SyncSettings, TrafficDevice
from telemetry_node.telemetry_infrastructure.rate_controller import RateController
from telemetry_node.telemetry_infrastructure.repository import InMemoryRepository
from telemetry_node.telemetry_sync.tdx_api import TOKEN_CACHE_KEY, TdxClient
from telemetry_node.telemetry_sync.traffic_adapter import TrafficSyncAdapter, group_by_city

TOKEN_URL = "https://tdx.local/token"
API_BASE = "https://tdx.local/ETag/City"


def _pair(etag: str, collected: str = "2024-05-06T09:55:00+08:00", speed: float = 72) -> dict[str, object]:
    return {
        "ETagPairID": etag,
        "DataCollectTime": collected,
        "Flows": [{"VehicleType": 3, "SpaceMeanSpeed": speed, "VehicleCount": 10, "TravelTime": 80}],
    }


def _adapter(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    sleep: RecordingSleep | None = None,
) -> TrafficSyncAdapter:
    api = TdxClient(http, cache, client_id="cid", client_secret="secret", token_url=TOKEN_URL, api_base_url=API_BASE)
    return TrafficSyncAdapter(api, repo, cache, rate_controller, settings=settings, clock=clock, sleep=sleep)


@pytest.fixture
def two_cities(repo: InMemoryRepository, http: FakeHttpClient) -> None:
    for serial, etag in (("T1", "A1"), ("T2", "A2"), ("T3", "A3")):
        repo.add_device(TrafficDevice(serial=serial, city="Taipei", etag_number=etag))
    for serial, etag in (("T4", "B1"), ("T5", "B2")):
        repo.add_device(TrafficDevice(serial=serial, city="Taoyuan", etag_number=etag))
    http.add_json("POST", TOKEN_URL, {"access_token": "tok", "expires_in": 86400})
    http.add_json("GET", f"{API_BASE}/Taipei", {"ETagPairLives": [_pair("A1"), _pair("A2"), _pair("A3")]})
    http.add_json("GET", f"{API_BASE}/Taoyuan", {"ETagPairLives": [_pair("B1", speed=20), _pair("B2")]})


def test_group_by_city_ignores_devices_without_etag_or_city() -> None:
    devices = [
        TrafficDevice(serial="T1", city="Taipei", etag_number="A1"),
        TrafficDevice(serial="T2", city="Taipei"),
        TrafficDevice(serial="T3", etag_number="A3"),
        TrafficDevice(serial="T4", city="Taoyuan", etag_number="B1"),
    ]
    groups = group_by_city(devices)
    assert list(groups) == ["Taipei", "Taoyuan"]
    assert [d.serial for d in groups["Taipei"]] == ["T1"]


@pytest.mark.asyncio
async def test_one_fetch_per_city(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    two_cities: None,
) -> None:
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)

    summary = await adapter.sync()

    city_calls = [c for c in http.calls if c[0] == "GET"]
    assert len(city_calls) == 2
    assert http.count("POST", TOKEN_URL) == 1
    assert city_calls[0][2]["headers"] == {"Authorization": "Bearer tok"}
    assert city_calls[0][2]["params"] == {"top": 1000, "format": "JSON"}
    assert summary.synced_count == 5
    assert len(repo.history[DeviceFamily.TRAFFIC]) == 5
    assert await cache.get(TOKEN_CACHE_KEY) == "tok"


@pytest.mark.asyncio
async def test_readings_mark_devices_online_at_collection_time(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    two_cities: None,
) -> None:
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)

    await adapter.sync()

    device = repo.get_device(DeviceFamily.TRAFFIC, "T4")
    assert device.status == DeviceStatus.ONLINE
    assert device.last_online.isoformat() == "2024-05-06T09:55:00+08:00"
    reading = next(r for r in repo.history[DeviceFamily.TRAFFIC] if r.serial == "T4")
    assert reading.traffic_condition == "congested"
    assert repo.status_logs[-1].timestamp == clock.now


@pytest.mark.asyncio
async def test_city_interval_and_unchanged_batch(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    two_cities: None,
) -> None:
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)
    await adapter.sync()

    clock.advance(minutes=1)
    skipped = await adapter.sync()
    assert skipped.skipped_count == 5
    assert len([c for c in http.calls if c[0] == "GET"]) == 2

    clock.advance(minutes=5)
    again = await adapter.sync()
    assert again.synced_count == 0
    assert again.skipped_count == 5
    assert len(repo.history[DeviceFamily.TRAFFIC]) == 5


@pytest.mark.asyncio
async def test_rate_limited_city_fails_without_stopping_others(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    sleep: RecordingSleep,
    two_cities: None,
) -> None:
    http.add("GET", f"{API_BASE}/Taipei", HttpResponse(status=429, body="", url=f"{API_BASE}/Taipei"))
    settings.batch_delay_seconds = 5
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock, sleep=sleep)

    summary = await adapter.sync()

    assert summary.failed_count == 1
    assert "Taipei" in summary.errors[0]
    assert summary.skipped_count == 3
    assert summary.synced_count == 2
    assert sleep.calls == [5]
    assert rate_controller.get_stats("traffic:Taipei")["failed_requests"] == 1


@pytest.mark.asyncio
async def test_missing_pair_and_vehicle_class_are_skips(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
) -> None:
    repo.add_device(TrafficDevice(serial="T1", city="Taipei", etag_number="A1"))
    repo.add_device(TrafficDevice(serial="T2", city="Taipei", etag_number="GONE"))
    bus_only = {"ETagPairID": "A1", "DataCollectTime": "2024-05-06T09:55:00", "Flows": [{"VehicleType": 5}]}
    http.add_json("POST", TOKEN_URL, {"access_token": "tok", "expires_in": 3600})
    http.add("GET", f"{API_BASE}/Taipei", json_response({"ETagPairLives": [bus_only]}))
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)

    summary = await adapter.sync()

    assert summary.skipped_count == 2
    assert summary.failed_count == 0
    assert repo.history[DeviceFamily.TRAFFIC] == []


@pytest.mark.asyncio
async def test_without_credentials_cities_are_skipped(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
) -> None:
    repo.add_device(TrafficDevice(serial="T1", city="Taipei", etag_number="A1"))
    api = TdxClient(http, cache, token_url=TOKEN_URL, api_base_url=API_BASE)
    adapter = TrafficSyncAdapter(api, repo, cache, rate_controller, settings=settings, clock=clock)

    summary = await adapter.sync()

    assert summary.skipped_count == 1
    assert http.calls == []


@pytest.mark.asyncio
async def test_unexpected_city_error_does_not_stop_other_cities(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    two_cities: None,
) -> None:
    http.add("GET", f"{API_BASE}/Taipei", UnicodeDecodeError("utf-8", b"\xff\xfe", 0, 1, "invalid start byte"))
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)

    summary = await adapter.sync()

    assert summary.failed_count == 1
    assert summary.errors[0].startswith("Taipei:")
    assert summary.skipped_count == 3
    assert summary.synced_count == 2
    assert sorted(r.serial for r in repo.history[DeviceFamily.TRAFFIC]) == ["T4", "T5"]


@pytest.mark.asyncio
async def test_non_list_pairs_skip_the_city(
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
    two_cities: None,
) -> None:
    http.add_json("GET", f"{API_BASE}/Taipei", {"ETagPairLives": 5})
    adapter = _adapter(http, repo, cache, rate_controller, settings, clock)

    summary = await adapter.sync()

    assert summary.failed_count == 0
    assert summary.skipped_count == 3
    assert summary.synced_count == 2
    assert not await cache.exists("sync:traffic:city:Taipei")
