import asyncio

import pytest

from app.features.drip_campaign.domain import DripUser, WeeklyEmailJob, WelcomeEmailJob
from app.features.drip_campaign.queue import (
    QueueClosedError,
    RetryPolicy,
    SlidingWindowRateLimiter,
    memory_queue,
)


def _user(user_id: int = 1, program_week: int = 1) -> DripUser:
    return DripUser(
        id=user_id, email=f"u{user_id}@example.com", goals=["Listen"], program_week=program_week
    )


def test_retry_policy_backoff_doubles_and_caps():
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=2, max_delay_seconds=5)

    assert policy.backoff_seconds(1) == 2
    assert policy.backoff_seconds(2) == 4
    assert policy.backoff_seconds(3) == 5
    assert policy.should_retry(2) is True
    assert policy.should_retry(3) is False


@pytest.mark.asyncio
async def test_rate_limiter_waits_for_window():
    limiter = SlidingWindowRateLimiter(2, 0.1)
    loop = asyncio.get_running_loop()

    await limiter.acquire()
    await limiter.acquire()
    assert limiter.current_usage() == 2

    started = loop.time()
    await limiter.acquire()

    assert loop.time() - started >= 0.05
    assert limiter.current_usage() == 1


@pytest.mark.asyncio
async def test_welcome_jobs_run_before_weekly_jobs(queue_factory, wait_idle):
    order = []

    async def handler(job):
        order.append(job.kind)

    queue = queue_factory(concurrency=1)
    queue.set_handler(handler)

    await queue.enqueue_weekly(_user(1), 2)
    await queue.enqueue_weekly(_user(2), 2)
    await queue.enqueue_welcome(_user(3, program_week=0))

    await queue.start()
    await wait_idle(queue)
    await queue.shutdown()

    assert order == ["welcome", "weekly", "weekly"]


@pytest.mark.asyncio
async def test_failed_job_retries_then_moves_to_failed(queue_factory, wait_idle):
    attempts = []

    async def handler(job):
        attempts.append(job.attempt_count)
        raise RuntimeError("provider down")

    queue = queue_factory()
    queue.set_handler(handler)
    await queue.start()

    job_id = await queue.enqueue(WelcomeEmailJob(user=_user(program_week=0)))
    status = await wait_idle(queue)
    failed = await queue.get_failed_jobs()
    await queue.shutdown()

    assert attempts == [1, 2, 3]
    assert status["failed"] == 1
    assert status["completed"] == 0
    assert failed[0]["job_id"] == job_id
    assert failed[0]["attempts"] == 3
    assert "provider down" in failed[0]["error"]


@pytest.mark.asyncio
async def test_job_succeeding_on_retry_is_completed(queue_factory, wait_idle):
    calls = []

    async def handler(job):
        calls.append(job.attempt_count)
        if job.attempt_count == 1:
            raise RuntimeError("transient")

    queue = queue_factory()
    queue.set_handler(handler)
    await queue.start()

    await queue.enqueue(WelcomeEmailJob(user=_user(program_week=0)))
    status = await wait_idle(queue)
    await queue.shutdown()

    assert calls == [1, 2]
    assert status["completed"] == 1
    assert status["failed"] == 0


@pytest.mark.asyncio
async def test_concurrency_is_bounded(queue_factory, wait_idle):
    running = 0
    peak = 0

    async def handler(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1

    queue = queue_factory(concurrency=2)
    queue.set_handler(handler)
    for user_id in range(1, 7):
        await queue.enqueue(WeeklyEmailJob(user=_user(user_id), week_number=2))

    await queue.start()
    status = await wait_idle(queue)
    await queue.shutdown()

    assert peak == 2
    assert status["completed"] == 6


@pytest.mark.asyncio
async def test_rate_limit_caps_jobs_started_per_window(queue_factory):
    started = []

    async def handler(job):
        started.append(job.id)

    queue = queue_factory(rate_limit_max=2, rate_limit_window_seconds=60)
    queue.set_handler(handler)
    for user_id in range(1, 5):
        await queue.enqueue(WeeklyEmailJob(user=_user(user_id), week_number=2))

    await queue.start()
    await asyncio.sleep(0.2)
    status = await queue.get_status()
    await queue.shutdown(timeout=0.1)

    assert len(started) == 2
    assert status["pending"] == 2
    assert status["rate_limit_usage"] == 2


@pytest.mark.asyncio
async def test_enqueue_rejected_after_shutdown(queue_factory):
    queue = queue_factory()
    queue.set_handler(lambda job: asyncio.sleep(0))
    await queue.start()
    await queue.shutdown()

    with pytest.raises(QueueClosedError):
        await queue.enqueue(WelcomeEmailJob(user=_user(program_week=0)))

    health = await queue.health_check()
    assert health["healthy"] is False
    assert health["accepting_jobs"] is False


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_jobs(queue_factory):
    finished = asyncio.Event()

    async def handler(job):
        await asyncio.sleep(0.05)
        finished.set()

    queue = queue_factory()
    queue.set_handler(handler)
    await queue.start()
    await queue.enqueue(WelcomeEmailJob(user=_user(program_week=0)))

    await asyncio.sleep(0.02)
    await queue.shutdown(timeout=1)

    assert finished.is_set()
    status = await queue.get_status()
    assert status["completed"] == 1
    assert status["running"] is False


@pytest.mark.asyncio
async def test_status_reports_backend_and_counts(queue_factory):
    queue = queue_factory()
    await queue.enqueue(WelcomeEmailJob(user=_user(program_week=0)))

    status = await queue.get_status()

    assert status["backend"] == "memory"
    assert status["pending"] == 1
    assert status["running"] is False
    assert status["accepting_jobs"] is True
    assert status["failed_retention"] == 100


class RecordingLogger:
    def __init__(self):
        self.entries: list[tuple[str, str, dict]] = []

    def __getattr__(self, level):
        return lambda event, **fields: self.entries.append((level, event, fields))


@pytest.mark.asyncio
async def test_failed_job_evicted_beyond_retention_is_logged(monkeypatch, queue_factory, wait_idle):
    recorder = RecordingLogger()
    monkeypatch.setattr(memory_queue, "logger", recorder)

    async def handler(job):
        raise RuntimeError("provider down")

    queue = queue_factory(retry_policy=RetryPolicy(max_attempts=1), keep_failed=2, concurrency=1)
    queue.set_handler(handler)
    first = await queue.enqueue(WelcomeEmailJob(user=_user(1, program_week=0)))
    await queue.enqueue(WelcomeEmailJob(user=_user(2, program_week=0)))
    await queue.enqueue(WelcomeEmailJob(user=_user(3, program_week=0)))

    await queue.start()
    status = await wait_idle(queue)
    failed = await queue.get_failed_jobs()
    await queue.shutdown()

    assert status["failed"] == 2
    assert status["failed_retention"] == 2
    assert first not in [entry["job_id"] for entry in failed]
    evictions = [fields for level, event, fields in recorder.entries if level == "error"]
    assert [fields["evicted_job_id"] for fields in evictions] == [first]
