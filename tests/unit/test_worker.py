import asyncio
from unittest.mock import AsyncMock

import pytest

from app.features.drip_campaign.jobs import drip_worker, run_drip_worker
from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_drip_worker_is_registered():
    assert worker.JOB_REGISTRY["drip_worker"] is run_drip_worker


def test_job_name_from_environment(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", " Drip_Worker ")

    assert worker._resolve_job_name() == "drip_worker"


@pytest.mark.asyncio
async def test_drip_worker_starts_and_drains(monkeypatch, runtime):
    pool = AsyncMock()
    monkeypatch.setattr(drip_worker, "db_pool", pool)
    monkeypatch.setattr(drip_worker.settings, "EMAIL_QUEUE_BACKEND", "memory")
    monkeypatch.setattr(drip_worker, "build_drip_runtime", lambda **kwargs: runtime)

    stop = asyncio.Event()
    stop.set()
    await run_drip_worker(stop)

    pool.initialize.assert_awaited_once()
    pool.close.assert_awaited_once()
    assert runtime.scheduler.is_running is False
    assert runtime.queue.is_running is False
