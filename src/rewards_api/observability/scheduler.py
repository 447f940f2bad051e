"""Observability store for scheduled job dispatches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict

_COUNTERS = ("runs", "success", "run_failures", "attempt_failures", "retries")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobState:
    job_id: str
    task: str
    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(_COUNTERS, 0))
    consecutive_failures: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {**self.counters, "consecutive_failures": self.consecutive_failures},
            "runtime_seconds": round(self.runtime_seconds, 6),
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, Dict[str, object]]

    def as_dict(self) -> Dict[str, object]:
        return {"totals": dict(self.totals), "jobs": dict(self.jobs)}


class JobObservabilityStore:
    """Tracks dispatches, retries and failures per scheduled job."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobState] = {}

    def _state(self, job_id: str, task: str) -> JobState:
        state = self._jobs.setdefault(job_id, JobState(job_id=job_id, task=task))
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["runs"] += 1
            state.last_started_at = _utcnow()
            state.last_attempts = 0
            state.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["attempt_failures"] += 1
            state.consecutive_failures += 1
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["retries"] += 1
            state.last_attempts = attempts
            state.last_retry_delay_seconds = delay_seconds

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["success"] += 1
            state.runtime_seconds += runtime_seconds
            state.consecutive_failures = 0
            state.last_attempts = attempts
            state.last_success_at = _utcnow()
            state.last_error = None
            state.last_error_at = None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["run_failures"] += 1
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            totals = {
                name: sum(state.counters[name] for state in self._jobs.values()) for name in _COUNTERS
            }
            jobs = {job_id: state.as_dict() for job_id, state in self._jobs.items()}
        return SchedulerSnapshot(totals=totals, jobs=jobs)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = JobObservabilityStore()


def get_scheduler_store() -> JobObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["JobObservabilityStore", "SchedulerSnapshot", "get_scheduler_store"]
