from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from rewards_api.core.settings import settings
from rewards_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import JobScheduler
from .services.payouts import build_payout_gateway
from .workers import RedemptionSettlementWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    path = Path(settings.settlement_schedule_path)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = build_payout_gateway(settings)
    settlement_worker = RedemptionSettlementWorker(
        session_factory=_session_factory,
        gateway=gateway,
        interval_seconds=settings.settlement_interval_seconds,
        limit=settings.settlement_batch_limit,
        max_concurrency=settings.settlement_max_concurrency,
        trigger_label=settings.settlement_trigger_label,
    )
    schedule_path = _schedule_path()
    job_scheduler = JobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path,
        shared_kwargs={"gateway": gateway},
    )

    app.state.payout_gateway = gateway
    app.state.settlement_worker = settlement_worker
    app.state.job_scheduler = job_scheduler

    scheduler_enabled = settings.settlement_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Settlement scheduler failed to start", error=str(exc))
        else:
            logger.info("Settlement scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Settlement scheduler disabled", reason="settlement_scheduler_enabled is false")

    worker_enabled = settings.settlement_worker_enabled and not scheduler_enabled
    if worker_enabled:
        settlement_worker.start()
    elif settings.settlement_worker_enabled:
        logger.info("Settlement worker managed via scheduler", schedule_path=str(schedule_path))
    else:
        logger.info("Settlement worker disabled", reason="settlement_worker_enabled is false")

    logger.info("Payout gateway configured", provider=settings.payout_gateway_provider)

    try:
        yield
    finally:
        if worker_enabled and settlement_worker.is_running:
            await settlement_worker.stop()
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the rewards redemption service."""
    configure_logging(
        service_name="rewards-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Rewards Redemption API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="rewards-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
