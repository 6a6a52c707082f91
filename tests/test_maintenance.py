from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from conftest import TAIPEI, FakeClock
from telemetry_node.telemetry_infrastructure.idempotency_cache import IdempotencyCache
from telemetry_node.telemetry_infrastructure.models import CrowdDevice
from telemetry_node.telemetry_infrastructure.repository import InMemoryRepository
from telemetry_node.telemetry_sync.maintenance import MaintenanceService


def _service(tmp_path: Path, repo: InMemoryRepository, cache: IdempotencyCache, clock: FakeClock) -> MaintenanceService:
    return MaintenanceService(
        repo,
        cache,
        backup_dir=str(tmp_path / "backups"),
        log_dir=str(tmp_path / "logs"),
        audit_log_dir=str(tmp_path / "audit"),
        audit_retention_days=30,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_database_backup_runs_on_mondays_only(
    tmp_path: Path, repo: InMemoryRepository, cache: IdempotencyCache, clock: FakeClock
) -> None:
    repo.add_device(CrowdDevice(serial="DEV001"))
    service = _service(tmp_path, repo, cache, clock)

    monday = await service.backup_database()
    assert monday["skipped"] is False
    with open(monday["path"], encoding="utf-8") as f:
        assert json.load(f)["devices"][0]["serial"] == "DEV001"

    clock.advance(days=1)
    tuesday = await service.backup_database()
    assert tuesday["skipped"] is True
    assert (await service.backup_database(force=True))["skipped"] is False


@pytest.mark.asyncio
async def test_log_backup_once_per_hour_inside_window(
    tmp_path: Path, repo: InMemoryRepository, cache: IdempotencyCache, clock: FakeClock
) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    (log_dir / "telemetry.log").write_text("line\n", encoding="utf-8")
    (log_dir / "telemetry.log.1").write_text("older\n", encoding="utf-8")
    (log_dir / "notes.txt").write_text("ignored\n", encoding="utf-8")
    service = _service(tmp_path, repo, cache, clock)

    first = await service.backup_logs()
    assert first["files"] == 2
    assert sorted(os.listdir(first["target"])) == ["telemetry.log", "telemetry.log.1"]

    clock.advance(minutes=1)
    assert (await service.backup_logs())["skipped"] is True

    clock.advance(minutes=30)
    assert (await service.backup_logs())["skipped"] is True


@pytest.mark.asyncio
async def test_log_backup_copies_large_files_without_blocking_the_loop(
    tmp_path: Path, repo: InMemoryRepository, cache: IdempotencyCache, clock: FakeClock
) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    payload = os.urandom(3 * 1024 * 1024 + 17)
    (log_dir / "telemetry.log.1").write_bytes(payload)
    service = _service(tmp_path, repo, cache, clock)
    running = asyncio.Event()
    done = asyncio.Event()
    ticks_during_backup = 0

    async def backup() -> dict:
        running.set()
        try:
            return await service.backup_logs()
        finally:
            done.set()

    async def ticker() -> None:
        nonlocal ticks_during_backup
        while not done.is_set():
            if running.is_set():
                ticks_during_backup += 1
            await asyncio.sleep(0)

    result, _ = await asyncio.gather(backup(), ticker())

    assert ticks_during_backup > 0
    copied = Path(result["target"]) / "telemetry.log.1"
    assert copied.read_bytes() == payload


@pytest.mark.asyncio
async def test_audit_cleanup_on_first_of_month(tmp_path: Path, repo: InMemoryRepository) -> None:
    clock = FakeClock(datetime(2024, 6, 1, 3, 0, tzinfo=TAIPEI))
    cache = IdempotencyCache(clock=clock)
    audit = tmp_path / "audit"
    audit.mkdir()
    old = audit / "audit-2024-04.log"
    recent = audit / "audit-2024-05.log"
    old.write_text("old", encoding="utf-8")
    recent.write_text("recent", encoding="utf-8")
    old_time = (clock.now - timedelta(days=45)).timestamp()
    os.utime(old, (old_time, old_time))
    service = _service(tmp_path, repo, cache, clock)

    result = await service.cleanup_audit_logs()

    assert result["removed"] == 1
    assert not old.exists()
    assert recent.exists()
    assert (await service.cleanup_audit_logs())["skipped"] is True


@pytest.mark.asyncio
async def test_audit_cleanup_skips_other_days(
    tmp_path: Path, repo: InMemoryRepository, cache: IdempotencyCache, clock: FakeClock
) -> None:
    result = await _service(tmp_path, repo, cache, clock).cleanup_audit_logs()
    assert result["skipped"] is True
