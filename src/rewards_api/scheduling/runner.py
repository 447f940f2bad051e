"""APScheduler runtime for recurring jobs such as redemption settlement."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from rewards_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


class JobScheduler:
    """Register TOML-defined jobs on a cron trigger and run them with retries.

    ``shared_kwargs`` are offered to every job; each job only receives the
    ones its signature accepts (for example the payout ``gateway``).
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        shared_kwargs: Mapping[str, Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._shared_kwargs = dict(shared_kwargs or {})
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def config(self) -> ScheduleConfig:
        if self._config is None:
            self._config = load_job_definitions(self._config_path)
        return self._config

    def start(self) -> None:
        if self._scheduler is not None:
            return
        config = self.config
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        registered = 0
        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled scheduled job", job_id=job.id)
                continue
            func = self._resolve_callable(job)
            scheduler.add_job(
                self._runner_for(func, job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            registered += 1
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Job scheduler started", jobs=registered, timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Job scheduler stopped")

    async def run_job(self, job_id: str) -> Any:
        """Run a configured job immediately with its retry policy."""

        job = self.config.get(job_id)
        if job is None:
            raise KeyError(f"Unknown scheduled job {job_id}")
        return await self._runner_for(self._resolve_callable(job), job)()

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        config_jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(config_jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in config_jobs
            ],
        }

    def _resolve_callable(self, job: JobDefinition) -> JobCallable:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        func = getattr(import_module(module_name), attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def _call_kwargs(self, func: JobCallable, job: JobDefinition) -> dict[str, Any]:
        accepted = inspect.signature(func).parameters
        shared = {key: value for key, value in self._shared_kwargs.items() if key in accepted}
        return {"session_factory": self._session_factory, **shared, **job.kwargs}

    def _runner_for(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _run() -> Any:
            policy = job.retry
            kwargs = self._call_kwargs(func, job)
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    result = await func(**kwargs)
                except Exception as exc:
                    error = str(exc)
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error)
                    if attempt >= policy.max_attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error,
                        )
                        logger.error(
                            "Scheduled job failed after retries",
                            job_id=job.id,
                            attempts=attempt,
                            error=error,
                        )
                        return None

                    delay = policy.delay_for(attempt)
                    self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                    logger.warning("Scheduled job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await self._sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                self._observability.record_success(job.id, job.task, runtime_seconds=runtime, attempts=attempt)
                logger.info("Scheduled job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return result
            return None

        return _run


__all__ = ["JobScheduler"]
