"""Batch settlement of pending redemption requests."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import Settings, get_settings
from rewards_api.models.earner import Earner
from rewards_api.models.redemption import RedemptionFailureKind, SettlementRun
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.observability.tracing import get_tracer
from rewards_api.services.errors import InvalidRedemptionTransitionError, RedemptionError
from rewards_api.services.payouts import (
    FAILED_STATUSES,
    GatewayErrorKind,
    PayoutGateway,
    PayoutGatewayError,
    PayoutInstruction,
    PayoutReceipt,
    build_payout_gateway,
)
from rewards_api.services.redemptions import RedemptionLifecycle

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

PROCESSED = "processed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(slots=True)
class SettlementSummary:
    pending: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_redemption_settlement(
    *,
    session_factory: SessionFactory,
    gateway: PayoutGateway | None = None,
    triggered_by: str | None = None,
    limit: int | None = None,
    max_concurrency: int | None = None,
    claim_ttl_seconds: int | None = None,
    settings: Settings | None = None,
) -> Dict[str, Any]:
    """Attempt settlement for every pending redemption.

    Each request is settled in its own session so one failure never aborts
    the batch. Returns the run summary and records it on a ``SettlementRun``.
    """

    resolved = settings or get_settings()
    payout_gateway = gateway or build_payout_gateway(resolved)
    trigger = triggered_by or resolved.settlement_trigger_label
    batch_limit = limit or resolved.settlement_batch_limit
    concurrency = max(max_concurrency or resolved.settlement_max_concurrency, 1)
    claim_ttl = claim_ttl_seconds if claim_ttl_seconds is not None else resolved.settlement_claim_ttl_seconds

    summary = SettlementSummary()
    session = await _open_session(session_factory)
    async with session as managed_session:
        run = SettlementRun(triggered_by=trigger, status="running")
        managed_session.add(run)
        await managed_session.commit()
        await managed_session.refresh(run)
        run_id = run.id

        try:
            pending = await RedemptionLifecycle(managed_session, settings=resolved).list_pending(limit=batch_limit)
            pending_ids = [record.id for record in pending]
            await managed_session.commit()
            summary.pending = len(pending_ids)

            semaphore = asyncio.Semaphore(concurrency)

            async def _bounded(request_id: UUID) -> str:
                async with semaphore:
                    return await _settle_request(
                        request_id,
                        session_factory=session_factory,
                        gateway=payout_gateway,
                        settings=resolved,
                        claim_ttl_seconds=claim_ttl,
                    )

            outcomes = await asyncio.gather(
                *(_bounded(request_id) for request_id in pending_ids),
                return_exceptions=True,
            )
            for request_id, outcome in zip(pending_ids, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Settlement task crashed",
                        redemption_id=str(request_id),
                        error=str(outcome),
                    )
                    summary.failed += 1
                elif outcome == PROCESSED:
                    summary.processed += 1
                elif outcome == FAILED:
                    summary.failed += 1
                else:
                    summary.skipped += 1

            run.status = "completed"
            run.completed_at = datetime.now(timezone.utc)
            run.pending_count = summary.pending
            run.processed_count = summary.processed
            run.failed_count = summary.failed
            run.skipped_count = summary.skipped
            run.metadata_json = _build_run_metadata(trigger, batch_limit, concurrency, payout_gateway)
            managed_session.add(run)
            await managed_session.commit()
        except Exception as exc:
            await managed_session.rollback()
            run.status = "failed"
            run.completed_at = datetime.now(timezone.utc)
            run.error_message = str(exc)
            run.metadata_json = _build_run_metadata(
                trigger, batch_limit, concurrency, payout_gateway, error=str(exc)
            )
            managed_session.add(run)
            await managed_session.commit()
            logger.exception("Redemption settlement run failed", run_id=str(run_id), error=str(exc))
            raise

        get_redemption_store().record_run(
            trigger,
            processed=summary.processed,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        result: Dict[str, Any] = {"run_id": str(run_id), **summary.as_dict()}
        logger.bind(summary=result).info("Redemption settlement run completed", trigger=trigger)
        return result


async def _settle_request(
    request_id: UUID,
    *,
    session_factory: SessionFactory,
    gateway: PayoutGateway,
    settings: Settings,
    claim_ttl_seconds: int,
) -> str:
    tracer = get_tracer()
    session = await _open_session(session_factory)
    async with session as managed_session:
        with tracer.start_as_current_span("redemption.settle") as span:
            span.set_attribute("redemption.id", str(request_id))
            lifecycle = RedemptionLifecycle(managed_session, settings=settings)

            if not await lifecycle.claim_for_settlement(request_id, claim_ttl_seconds=claim_ttl_seconds):
                await managed_session.rollback()
                logger.debug("Redemption not claimable, skipping", redemption_id=str(request_id))
                span.set_attribute("redemption.outcome", SKIPPED)
                return SKIPPED
            await managed_session.commit()

            receipt: PayoutReceipt | None = None
            try:
                record = await lifecycle.get(request_id)
                earner = await managed_session.get(Earner, record.earner_id)
                if earner is None:
                    raise RedemptionError(f"Earner {record.earner_id} missing for redemption {request_id}")
                instruction = PayoutInstruction.from_redemption(
                    record,
                    earner,
                    paise_per_point=settings.payout_paise_per_point,
                    currency=settings.payout_currency,
                    narration=settings.payout_narration,
                )
                span.set_attribute("redemption.method", instruction.method.value)

                try:
                    accepted = await gateway.submit(instruction)
                    if accepted.external_status in FAILED_STATUSES:
                        raise PayoutGatewayError(
                            f"Payout {accepted.external_status} by gateway",
                            kind=GatewayErrorKind.REJECTED,
                            code=f"payout_{accepted.external_status}",
                            payload=accepted.raw,
                        )
                    receipt = accepted
                except PayoutGatewayError as exc:
                    outcome = await _fail_for_gateway_error(lifecycle, request_id, exc)
                    await managed_session.commit()
                    span.set_attribute("redemption.outcome", outcome)
                    return outcome

                await lifecycle.mark_processed(
                    request_id,
                    receipt.external_payout_id,
                    receipt.external_status,
                    response=receipt.raw,
                    idempotency_key=receipt.idempotency_key,
                )
                await managed_session.commit()
                span.set_attribute("redemption.outcome", PROCESSED)
                return PROCESSED
            except InvalidRedemptionTransitionError as exc:
                await managed_session.rollback()
                if receipt is not None:
                    # Another runner already moved the record; this payout is a second one.
                    get_redemption_store().record_ambiguous_failure(str(request_id))
                    logger.warning(
                        "Payout accepted for a redemption that already moved",
                        redemption_id=str(request_id),
                        external_payout_id=receipt.external_payout_id,
                        error=str(exc),
                        needs_manual_reconciliation=True,
                    )
                else:
                    logger.info(
                        "Redemption moved concurrently, skipping", redemption_id=str(request_id), error=str(exc)
                    )
                span.set_attribute("redemption.outcome", SKIPPED)
                return SKIPPED
            except Exception as exc:
                await managed_session.rollback()
                logger.exception(
                    "Unexpected error while settling redemption",
                    redemption_id=str(request_id),
                    error=str(exc),
                    needs_manual_reconciliation=receipt is not None,
                    external_payout_id=receipt.external_payout_id if receipt else None,
                )
                if receipt is not None:
                    get_redemption_store().record_ambiguous_failure(str(request_id))
                await lifecycle.mark_failed(request_id, str(exc), kind=RedemptionFailureKind.INTERNAL)
                await managed_session.commit()
                get_redemption_store().record_settlement_failure(RedemptionFailureKind.INTERNAL.value, str(exc))
                span.set_attribute("redemption.outcome", FAILED)
                return FAILED


async def _fail_for_gateway_error(
    lifecycle: RedemptionLifecycle,
    request_id: UUID,
    exc: PayoutGatewayError,
) -> str:
    kind = RedemptionFailureKind(exc.kind.value)
    store = get_redemption_store()
    if exc.is_ambiguous:
        # The gateway may have accepted the payout; the refund is issued anyway.
        store.record_ambiguous_failure(str(request_id))
        logger.warning(
            "Gateway unreachable during payout submit",
            redemption_id=str(request_id),
            error=str(exc),
            code=exc.code,
            needs_manual_reconciliation=True,
        )
    else:
        logger.warning(
            "Gateway declined payout",
            redemption_id=str(request_id),
            error=str(exc),
            code=exc.code,
            kind=kind.value,
        )

    await lifecycle.mark_failed(request_id, str(exc), kind=kind, response=exc.payload or None)
    store.record_settlement_failure(kind.value, str(exc))
    return FAILED


def _build_run_metadata(
    trigger: str,
    limit: int,
    concurrency: int,
    gateway: PayoutGateway,
    *,
    error: str | None = None,
) -> Dict[str, object | None]:
    metadata: Dict[str, object | None] = {
        "triggered_by": trigger,
        "limit": limit,
        "max_concurrency": concurrency,
        "gateway": type(gateway).__name__,
    }
    if error:
        metadata["error"] = error
    return metadata


async def list_settlement_runs(session: AsyncSession, *, limit: int = 20) -> List[SettlementRun]:
    """Most recent settlement runs first."""

    stmt = select(SettlementRun).order_by(SettlementRun.started_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


__all__ = ["SettlementSummary", "list_settlement_runs", "run_redemption_settlement"]
