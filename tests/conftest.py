import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from rewards_api.api.dependencies.settlement import get_payout_gateway, get_session_factory  # noqa: E402
from rewards_api.app import create_app  # noqa: E402
from rewards_api.core.settings import Settings  # noqa: E402
from rewards_api.db.base import Base  # noqa: E402
from rewards_api.db.session import get_session  # noqa: E402
from rewards_api.models import Earner  # noqa: E402
from rewards_api.observability.redemptions import get_redemption_store  # noqa: E402
from rewards_api.observability.scheduler import get_scheduler_store  # noqa: E402
from rewards_api.services.payouts import StaticPayoutGateway  # noqa: E402


@pytest.fixture(autouse=True)
def reset_observability():
    get_redemption_store().reset()
    get_scheduler_store().reset()
    yield


@pytest.fixture
def rewards_settings() -> Settings:
    # One shared in-memory connection; payouts are settled one at a time.
    return Settings(
        payout_gateway_provider="sandbox",
        min_redemption_points=100,
        payout_paise_per_point=100,
        redemption_methods_enabled=["upi", "wallet"],
        settlement_max_concurrency=1,
        settlement_batch_limit=50,
        settlement_claim_ttl_seconds=900,
    )


@pytest.fixture
def sandbox_gateway() -> StaticPayoutGateway:
    return StaticPayoutGateway()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    # Separate connections per session so concurrent writers contend on the SQLite lock.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


def _earner_factory(session_factory):
    async def _make(total_points: int = 500, redeemed_points: int = 0, **fields) -> Earner:
        async with session_factory() as session:
            earner = Earner(
                display_name=fields.pop("display_name", "Dr. Asha Rao"),
                email=fields.pop("email", "asha@example.com"),
                phone=fields.pop("phone", "9876543210"),
                total_points=total_points,
                redeemed_points=redeemed_points,
                **fields,
            )
            session.add(earner)
            await session.commit()
            await session.refresh(earner)
            return earner

    return _make


@pytest.fixture
def make_earner(session_factory):
    return _earner_factory(session_factory)


@pytest.fixture
def make_file_earner(file_session_factory):
    return _earner_factory(file_session_factory)


@pytest_asyncio.fixture
async def app_with_db(session_factory, sandbox_gateway):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payout_gateway] = lambda: sandbox_gateway

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
