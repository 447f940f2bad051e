from __future__ import annotations

from pathlib import Path

import pytest

from rewards_api.models.redemption import PayoutMethod, RedemptionStatus
from rewards_api.observability.scheduler import get_scheduler_store
from rewards_api.scheduling import JobDefinition, JobScheduler, RetryPolicy, load_job_definitions
from rewards_api.services.redemptions import RedemptionLifecycle

SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


async def _no_sleep(_: float) -> None:
    return None


def _scheduler(tmp_path: Path, **kwargs) -> JobScheduler:
    return JobScheduler(
        session_factory=lambda: None,
        config_path=tmp_path / "schedules.toml",
        sleep=_no_sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_runner_retries_until_success(tmp_path: Path) -> None:
    calls = {"count": 0}

    async def flaky(*, session_factory) -> dict[str, int]:
        calls["count"] += 1
        if calls["count"] < 3:
            raise RuntimeError("temporary failure")
        return {"processed": 1}

    job = JobDefinition(
        id="flaky",
        task="tests.flaky",
        cron="* * * * *",
        retry=RetryPolicy(max_attempts=3, base_backoff_seconds=0, jitter_seconds=0),
    )
    runner = _scheduler(tmp_path)._runner_for(flaky, job)

    result = await runner()

    assert result == {"processed": 1}
    state = get_scheduler_store().snapshot().jobs["flaky"]
    assert state["totals"]["success"] == 1
    assert state["totals"]["attempt_failures"] == 2
    assert state["totals"]["retries"] == 2
    assert state["totals"]["consecutive_failures"] == 0
    assert state["last_attempts"] == 3


@pytest.mark.asyncio
async def test_runner_records_final_failure(tmp_path: Path) -> None:
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    async def broken(*, session_factory) -> None:
        raise RuntimeError("gateway credentials rejected")

    job = JobDefinition(
        id="broken",
        task="tests.broken",
        cron="* * * * *",
        retry=RetryPolicy(max_attempts=2, base_backoff_seconds=10, jitter_seconds=0),
    )
    scheduler = JobScheduler(
        session_factory=lambda: None,
        config_path=tmp_path / "schedules.toml",
        sleep=record_sleep,
    )

    assert await scheduler._runner_for(broken, job)() is None

    state = get_scheduler_store().snapshot().jobs["broken"]
    assert state["totals"]["run_failures"] == 1
    assert state["totals"]["consecutive_failures"] == 2
    assert state["last_error"] == "gateway credentials rejected"
    assert delays == [10.0]


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(base_backoff_seconds=30, backoff_multiplier=2, max_backoff_seconds=100, jitter_seconds=0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [30, 60, 100, 100]


def test_load_job_definitions_prefers_nested_retry(tmp_path: Path) -> None:
    config = tmp_path / "schedules.toml"
    config.write_text(
        """
timezone = "UTC"

[jobs.settle]
task = "rewards_api.jobs.settlement.run_redemption_settlement"
cron = "*/15 * * * *"
max_attempts = 5
kwargs = { triggered_by = "cron" }

[jobs.settle.retry]
max_attempts = 3
jitter_seconds = 0

[jobs.incomplete]
task = "rewards_api.jobs.settlement.run_redemption_settlement"
""".strip()
    )

    schedule = load_job_definitions(config)

    assert [job.id for job in schedule.jobs] == ["settle"]
    job = schedule.get("settle")
    assert job.cron == "*/15 * * * *"
    assert job.kwargs == {"triggered_by": "cron"}
    assert job.retry.max_attempts == 3
    assert job.retry.jitter_seconds == 0


def test_repository_schedule_runs_settlement_hourly() -> None:
    schedule = load_job_definitions(SCHEDULE_PATH)

    job = schedule.get("redemption-settlement")
    assert job is not None
    assert job.task == "rewards_api.jobs.settlement.run_redemption_settlement"
    assert job.cron == "0 * * * *"
    assert job.retry.max_attempts == 2


@pytest.mark.asyncio
async def test_run_job_dispatches_settlement_with_shared_gateway(
    session_factory, make_earner, rewards_settings, sandbox_gateway
) -> None:
    earner = await make_earner(total_points=500)
    async with session_factory() as session:
        record = await RedemptionLifecycle(session, settings=rewards_settings).create(
            earner.id, 200, PayoutMethod.UPI, "asha@okhdfc"
        )
        await session.commit()

    scheduler = JobScheduler(
        session_factory=session_factory,
        config_path=SCHEDULE_PATH,
        shared_kwargs={"gateway": sandbox_gateway, "settings": rewards_settings, "unused": object()},
        sleep=_no_sleep,
    )

    summary = await scheduler.run_job("redemption-settlement")

    assert summary["processed"] == 1
    assert len(sandbox_gateway.submitted) == 1
    async with session_factory() as session:
        stored = await RedemptionLifecycle(session, settings=rewards_settings).get(record.id)
    assert stored.status == RedemptionStatus.PROCESSED

    health = scheduler.health()
    assert health["running"] is False
    assert health["jobs"][0]["metrics"]["totals"]["success"] == 1

    with pytest.raises(KeyError):
        await scheduler.run_job("missing-job")
