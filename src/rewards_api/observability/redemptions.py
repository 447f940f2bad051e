"""In-memory observability helper for redemption settlement flows."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SettlementEventLog:
    last_run_at: datetime | None = None
    last_run_trigger: str | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    last_ambiguous_at: datetime | None = None
    last_ambiguous_redemption_id: str | None = None
    last_invariant_violation_at: datetime | None = None


@dataclass
class RedemptionObservabilitySnapshot:
    creation_totals: Dict[str, int]
    settlement_totals: Dict[str, int]
    failure_kinds: Dict[str, int]
    reconciliation_totals: Dict[str, int]
    ledger_totals: Dict[str, int]
    events: SettlementEventLog

    def as_dict(self) -> Dict[str, object]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "creation": dict(self.creation_totals),
            "settlement": {
                "totals": dict(self.settlement_totals),
                "failure_kinds": dict(self.failure_kinds),
            },
            "reconciliation": dict(self.reconciliation_totals),
            "ledger": dict(self.ledger_totals),
            "events": {
                "last_run_at": _iso(self.events.last_run_at),
                "last_run_trigger": self.events.last_run_trigger,
                "last_failure_at": _iso(self.events.last_failure_at),
                "last_failure_reason": self.events.last_failure_reason,
                "last_ambiguous_at": _iso(self.events.last_ambiguous_at),
                "last_ambiguous_redemption_id": self.events.last_ambiguous_redemption_id,
                "last_invariant_violation_at": _iso(self.events.last_invariant_violation_at),
            },
        }


@dataclass
class RedemptionObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _creation_totals: Counter = field(default_factory=Counter)
    _settlement_totals: Counter = field(default_factory=Counter)
    _failure_kinds: Counter = field(default_factory=Counter)
    _reconciliation_totals: Counter = field(default_factory=Counter)
    _ledger_totals: Counter = field(default_factory=Counter)
    _events: SettlementEventLog = field(default_factory=SettlementEventLog)

    def record_created(self) -> None:
        with self._lock:
            self._creation_totals["created"] += 1

    def record_creation_rejected(self, reason: str) -> None:
        with self._lock:
            self._creation_totals[f"rejected:{reason}"] += 1

    def record_run(self, trigger: str, *, processed: int, failed: int, skipped: int) -> None:
        with self._lock:
            self._settlement_totals["runs"] += 1
            self._settlement_totals["processed"] += processed
            self._settlement_totals["failed"] += failed
            self._settlement_totals["skipped"] += skipped
            self._events.last_run_at = _utcnow()
            self._events.last_run_trigger = trigger

    def record_settlement_failure(self, kind: str, reason: str) -> None:
        with self._lock:
            self._failure_kinds[kind] += 1
            self._events.last_failure_at = _utcnow()
            self._events.last_failure_reason = reason

    def record_ambiguous_failure(self, redemption_id: str) -> None:
        with self._lock:
            self._settlement_totals["needs_manual_reconciliation"] += 1
            self._events.last_ambiguous_at = _utcnow()
            self._events.last_ambiguous_redemption_id = redemption_id

    def record_reconciliation(self, outcome: str) -> None:
        with self._lock:
            self._reconciliation_totals[outcome] += 1

    def record_refund(self) -> None:
        with self._lock:
            self._ledger_totals["refunds"] += 1

    def record_invariant_violation(self) -> None:
        with self._lock:
            self._ledger_totals["invariant_violations"] += 1
            self._events.last_invariant_violation_at = _utcnow()

    def snapshot(self) -> RedemptionObservabilitySnapshot:
        with self._lock:
            events = SettlementEventLog(**vars(self._events))
            return RedemptionObservabilitySnapshot(
                creation_totals=dict(self._creation_totals),
                settlement_totals=dict(self._settlement_totals),
                failure_kinds=dict(self._failure_kinds),
                reconciliation_totals=dict(self._reconciliation_totals),
                ledger_totals=dict(self._ledger_totals),
                events=events,
            )

    def reset(self) -> None:
        with self._lock:
            self._creation_totals.clear()
            self._settlement_totals.clear()
            self._failure_kinds.clear()
            self._reconciliation_totals.clear()
            self._ledger_totals.clear()
            self._events = SettlementEventLog()


_REDEMPTION_STORE = RedemptionObservabilityStore()


def get_redemption_store() -> RedemptionObservabilityStore:
    return _REDEMPTION_STORE


__all__ = ["get_redemption_store", "RedemptionObservabilityStore", "RedemptionObservabilitySnapshot"]
