from __future__ import annotations

import asyncio
import io
import json
import logging
from typing import Iterator

import pytest

from conftest import FakeClock, FakeHttpClient
from telemetry_node.logging_config import TEXT_FORMAT, JSONFormatter, SyncContextFilter, log_context
from telemetry_node.telemetry_infrastructure.errors import VendorRequestError
from telemetry_node.telemetry_infrastructure.idempotency_cache import IdempotencyCache
from telemetry_node.telemetry_infrastructure.models import CrowdDevice, SyncSettings
from telemetry_node.telemetry_infrastructure.rate_controller import RateController
from telemetry_node.telemetry_infrastructure.repository import InMemoryRepository
from telemetry_node.telemetry_sync.crowd_adapter import CrowdSyncAdapter
from telemetry_node.telemetry_sync.crowd_api import CrowdApiClient

logger = logging.getLogger("telemetry_node.tests.logging")


def _attach(formatter: logging.Formatter) -> tuple[io.StringIO, logging.Handler]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    handler.addFilter(SyncContextFilter())
    logging.getLogger("telemetry_node").addHandler(handler)
    return stream, handler


@pytest.fixture
def json_lines() -> Iterator[io.StringIO]:
    stream, handler = _attach(JSONFormatter())
    yield stream
    logging.getLogger("telemetry_node").removeHandler(handler)


def _records(stream: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


def test_json_records_carry_context_fields(json_lines: io.StringIO) -> None:
    with log_context(task="crowd_sync"):
        with log_context(family="crowd", source="DEV001"):
            logger.warning("inner")
        logger.warning("outer")
    logger.warning("bare")

    inner, outer, bare = _records(json_lines)
    assert (inner["task"], inner["family"], inner["source"]) == ("crowd_sync", "crowd", "DEV001")
    assert outer["task"] == "crowd_sync"
    assert "family" not in outer
    assert not {"task", "family", "source"} & set(bare)


def test_explicit_extra_wins_over_context(json_lines: io.StringIO) -> None:
    with log_context(source="DEV001"):
        logger.warning("override", extra={"source": "DEV002"})

    assert _records(json_lines)[0]["source"] == "DEV002"


def test_text_format_prefixes_context() -> None:
    stream, handler = _attach(logging.Formatter(TEXT_FORMAT))
    try:
        with log_context(task="parking_sync", source="P01"):
            logger.warning("tagged")
        logger.warning("plain")
    finally:
        logging.getLogger("telemetry_node").removeHandler(handler)

    tagged, plain = stream.getvalue().splitlines()
    assert tagged.endswith("[task=parking_sync source=P01] tagged")
    assert plain.endswith("| plain")


@pytest.mark.asyncio
async def test_context_does_not_leak_between_tasks(json_lines: io.StringIO) -> None:
    async def run(name: str) -> None:
        with log_context(task=name):
            await asyncio.sleep(0)
            logger.warning(name)

    await asyncio.gather(run("crowd_sync"), run("traffic_sync"))

    for record in _records(json_lines):
        assert record["task"] == record["message"]


@pytest.mark.asyncio
async def test_adapter_failure_is_logged_with_family_and_serial(
    json_lines: io.StringIO,
    http: FakeHttpClient,
    repo: InMemoryRepository,
    cache: IdempotencyCache,
    rate_controller: RateController,
    settings: SyncSettings,
    clock: FakeClock,
) -> None:
    repo.add_device(CrowdDevice(serial="DEV001", api_url="http://10.0.0.5/a3dpc"))
    http.add("GET", "http://10.0.0.5/a3dpc/api/occupancy", VendorRequestError("Timeout after 30s"))
    api = CrowdApiClient(http, username="user", password="secret")
    adapter = CrowdSyncAdapter(api, repo, cache, rate_controller, settings=settings, clock=clock)

    summary = await adapter.sync()

    assert summary.failed_count == 1
    failure = next(r for r in _records(json_lines) if "Crowd sync failed" in str(r["message"]))
    assert failure["family"] == "crowd"
    assert failure["source"] == "DEV001"
