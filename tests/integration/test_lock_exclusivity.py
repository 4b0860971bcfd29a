"""
Integration tests for the one-live-session-per-tenant guarantee

Uses a file database with independent connections so concurrent callers
really race for the lock row.
"""

import asyncio
import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from models.base import Base, SyncStage
from models.sync_session import SyncLock, SyncSession


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


async def start(factory, tenant_key):
    async with factory() as db:
        coordinator = SyncSessionCoordinator(db)
        session = await coordinator.start_or_resume(tenant_key)
        return session.session_token, coordinator.resumed


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_session(file_session_factory, tenant):
    results = await asyncio.gather(*(start(file_session_factory, tenant.key) for _ in range(3)))

    tokens = {token for token, _ in results}
    assert len(tokens) == 1
    assert sum(1 for _, resumed in results if not resumed) == 1

    async with file_session_factory() as db:
        sessions = (await db.execute(select(func.count()).select_from(SyncSession))).scalar()
        locks = (await db.execute(select(SyncLock))).scalars().all()
    assert sessions == 1
    assert len(locks) == 1
    assert locks[0].session_token in tokens


@pytest.mark.asyncio
async def test_concurrent_starts_for_different_tenants(file_session_factory, tenant, other_tenant):
    (first, first_resumed), (second, second_resumed) = await asyncio.gather(
        start(file_session_factory, tenant.key),
        start(file_session_factory, other_tenant.key),
    )

    assert first != second
    assert not first_resumed and not second_resumed


@pytest.mark.asyncio
async def test_each_step_may_use_its_own_connection(file_session_factory, tenant, fake_upstream):
    token, _ = await start(file_session_factory, tenant.key)

    async def step():
        async with file_session_factory() as db:
            return await StageExecutor(db, fake_upstream).step(token)

    for _ in range(10):
        summary = await step()
        if summary.status == "completed":
            break

    assert summary.status == "completed"
    assert summary.stage == SyncStage.DONE.value

    # A new session can start once the previous one released the lock
    new_token, resumed = await start(file_session_factory, tenant.key)
    assert new_token != token
    assert resumed is False
