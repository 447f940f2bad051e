"""Interval worker driving redemption settlement when cron scheduling is off."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import Settings, get_settings
from rewards_api.jobs.settlement import run_redemption_settlement
from rewards_api.services.payouts import PayoutGateway, build_payout_gateway

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class RedemptionSettlementWorker:
    """Run a settlement pass every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        gateway: PayoutGateway | None = None,
        interval_seconds: int | None = None,
        limit: int | None = None,
        max_concurrency: int | None = None,
        trigger_label: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._gateway = gateway or build_payout_gateway(self._settings)
        self.interval_seconds = interval_seconds or self._settings.settlement_interval_seconds
        self._limit = limit or self._settings.settlement_batch_limit
        self._max_concurrency = max_concurrency or self._settings.settlement_max_concurrency
        self._trigger_label = trigger_label or self._settings.settlement_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_summary: Dict[str, Any] | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Redemption settlement worker started",
            interval_seconds=self.interval_seconds,
            limit=self._limit,
            max_concurrency=self._max_concurrency,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Redemption settlement worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, Any]:
        summary = await run_redemption_settlement(
            session_factory=self._session_factory,
            gateway=self._gateway,
            triggered_by=triggered_by or self._trigger_label,
            limit=self._limit,
            max_concurrency=self._max_concurrency,
            settings=self._settings,
        )
        self.last_summary = summary
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged and retried next interval
                logger.exception("Redemption settlement iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["RedemptionSettlementWorker"]
