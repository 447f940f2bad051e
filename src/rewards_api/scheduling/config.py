"""TOML schedule definitions for recurring jobs."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff between attempts of one scheduled run."""

    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
            base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
            backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
            max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
            jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return max(delay, 0.0)


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    def get(self, job_id: str) -> JobDefinition | None:
        return next((job for job in self.jobs if job.id == job_id), None)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``config_path``; entries without a task or cron are ignored.

    Retry settings may sit on the job table itself or in a nested
    ``[jobs.<id>.retry]`` table, the nested form taking precedence.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            continue
        task, cron = payload.get("task"), payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            continue

        kwargs = payload.get("kwargs")
        retry_payload = {**payload, **(payload.get("retry") or {})}
        jobs.append(
            JobDefinition(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                kwargs=kwargs if isinstance(kwargs, dict) else {},
                enabled=bool(payload.get("enabled", True)),
                retry=RetryPolicy.from_mapping(retry_payload),
            )
        )

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "RetryPolicy", "ScheduleConfig", "load_job_definitions"]
