from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

import pytest
from dateutil import tz

from telemetry_node.telemetry_infrastructure.errors import VendorRequestError
from telemetry_node.telemetry_infrastructure.http_client import HttpResponse
from telemetry_node.telemetry_infrastructure.idempotency_cache import IdempotencyCache
from telemetry_node.telemetry_infrastructure.models import SyncSettings
from telemetry_node.telemetry_infrastructure.rate_controller import RateController
from telemetry_node.telemetry_infrastructure.repository import InMemoryRepository

TAIPEI = tz.gettz("Asia/Taipei")


class FakeClock:
    """Settable wall clock shared by cache, adapters and trackers."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()


class FakeHttpClient:
    """Scripted stand-in for VendorHttpClient.

    Each (method, url) route holds a queue of HttpResponse objects or
    exceptions; the last entry is repeated once the queue is drained.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def add(self, method: str, url: str, *responses: Any) -> None:
        self.routes[(method, url)] = list(responses)

    def add_json(self, method: str, url: str, payload: Any, status: int = 200) -> None:
        self.add(method, url, json_response(payload, status=status, url=url))

    def count(self, method: str, url: str) -> int:
        return sum(1 for m, u, _ in self.calls if m == method and u == url)

    async def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        digest_auth: tuple[str, str] | None = None,
    ) -> HttpResponse:
        return self._respond("GET", url, {"headers": headers, "params": params, "digest_auth": digest_auth})

    async def post(
        self,
        url: str,
        data: Any = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        return self._respond("POST", url, {"data": data, "json_body": json_body, "headers": headers})

    async def close(self) -> None:
        return None

    def _respond(self, method: str, url: str, kwargs: dict[str, Any]) -> HttpResponse:
        self.calls.append((method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            raise VendorRequestError(f"No scripted response for {method} {url}", url=url)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item


def json_response(payload: Any, status: int = 200, url: str = "") -> HttpResponse:
    return HttpResponse(status=status, body=json.dumps(payload), url=url)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[tuple[str, str]] = []

    async def send(self, target: str, message: str, image_url: str | None = None) -> bool:
        self.sent.append((target, message))
        return self.result


class RecordingUploader:
    def __init__(self) -> None:
        self.uploads: dict[str, list[dict[str, Any]]] = defaultdict(list)

    async def upload_reading(self, family: Any, serial: str, payload: dict[str, Any]) -> bool:
        self.uploads[serial].append(payload)
        return True


@pytest.fixture
def clock() -> FakeClock:
    # A Monday morning in Taipei
    return FakeClock(datetime(2024, 5, 6, 10, 0, 0, tzinfo=TAIPEI))


@pytest.fixture
def cache(clock: FakeClock) -> IdempotencyCache:
    return IdempotencyCache(clock=clock)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def rate_controller(clock: FakeClock, sleep: RecordingSleep) -> RateController:
    return RateController(
        min_interval_ms=0,
        initial_interval_ms=0,
        failure_threshold=5,
        cooldown_seconds=60,
        clock=clock.monotonic,
        sleep=sleep,
    )


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        sync_interval=timedelta(minutes=5),
        traffic_sync_interval=timedelta(minutes=5),
        history_min_interval=timedelta(minutes=5),
        batch_delay_seconds=0,
        request_delay_ms=0,
        timezone=TAIPEI,
    )


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def http() -> FakeHttpClient:
    return FakeHttpClient()
