import sys
from pathlib import Path


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from rewards_api.app import create_app  # noqa: E402
from rewards_api.db.base import Base  # noqa: E402
from rewards_api.db.session import build_engine, get_session  # noqa: E402
from rewards_api.models import Account  # noqa: E402
from rewards_api.observability.sync import SyncObservabilityStore  # noqa: E402
from rewards_api.services.loyalty import LoyaltyOperations  # noqa: E402
from rewards_api.services.notifications import InMemoryPushBackend, NotificationDispatcher  # noqa: E402
from rewards_api.services.program_config import build_program_config_cache  # noqa: E402
from rewards_api.services.side_effects import BackgroundEffects  # noqa: E402
from rewards_api.services.sync import InMemoryCrmClient, SyncDispatcher, SyncOutbox  # noqa: E402
from rewards_api.workers import SyncOutboxWorker  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so concurrent units of work get their own connections.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def crm_client():
    return InMemoryCrmClient()


@pytest_asyncio.fixture
async def push_backend():
    return InMemoryPushBackend()


@pytest_asyncio.fixture
async def sync_store():
    return SyncObservabilityStore()


@pytest_asyncio.fixture
async def outbox(session_factory):
    return SyncOutbox(session_factory, max_attempts=3, backoff_base_seconds=60, backoff_cap_seconds=600)


@pytest_asyncio.fixture
async def operations(session_factory, crm_client, push_backend, sync_store, outbox):
    effects = BackgroundEffects()
    ops = LoyaltyOperations(
        session_factory,
        sync=SyncDispatcher(crm_client, outbox, session_factory, timeout_seconds=2, store=sync_store),
        notifications=NotificationDispatcher(
            session_factory,
            effects,
            push_backend,
            disabled_events=set(),
            store=sync_store,
        ),
        effects=effects,
        config_cache=build_program_config_cache(session_factory, ttl_seconds=0),
    )
    try:
        yield ops
    finally:
        await effects.drain()


@pytest_asyncio.fixture
async def member_factory(session_factory):
    """Insert accounts directly; the seeding session is closed before returning."""

    counter = {"value": 0}

    async def _create(*, is_admin: bool = False, is_active: bool = True, phone: str | None = None):
        counter["value"] += 1
        async with session_factory() as session:
            account = Account(
                phone=phone or f"55500{counter['value']:05d}",
                display_name=f"Member {counter['value']}",
                points_balance=0,
                is_admin=is_admin,
                is_active=is_active,
            )
            session.add(account)
            await session.commit()
        return account

    return _create


@pytest_asyncio.fixture
async def app_with_db(session_factory, operations, sync_store):
    app = create_app(operations=operations, enable_tracing=False)
    app.state.sync_worker = SyncOutboxWorker(
        operations.sync.outbox,
        operations.sync,
        worker_id="test-worker",
        store=sync_store,
    )

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
