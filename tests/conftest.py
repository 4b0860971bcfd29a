"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from copy import deepcopy
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from typing import Any, AsyncGenerator, Dict, List, Optional
from core.exceptions import Throttled
from core.tenants import Tenant, TenantDirectory
from gallery_sync.coordinator import SyncSessionCoordinator
from gallery_sync.executor import StageExecutor
from gallery_sync.fetcher import FetchPage
from models.base import Base, ReconcileMode, SyncStage
import models  # noqa: F401  registers every table on Base.metadata

# In-memory SQLite shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def tenant():
    return Tenant(api_token="test-token-abc", property_id="1234", name="Test Practice")


@pytest.fixture
def other_tenant():
    return Tenant(api_token="other-token-xyz", property_id="5678", name="Other Practice")


@pytest.fixture
def tenant_directory(tenant, other_tenant):
    return TenantDirectory([tenant, other_tenant])


# ============================================================================
# Upstream payloads
# ============================================================================

def make_case(
    case_id: int,
    procedure_ids: List[int],
    for_website: bool = True,
    creator_id: Optional[int] = 7,
    seo_suffix: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Case detail payload as the cases endpoint returns it"""
    case = {
        "id": case_id,
        "procedureIds": procedure_ids,
        "categoryIds": [1],
        "isForWebsite": for_website,
        "draft": False,
        "age": 42,
        "gender": "female",
        "description": f"  Notes for case {case_id}  ",
        "patientId": 99000 + case_id,
        "emrId": f"EMR-{case_id}",
        "caseDetails": [{"seoSuffixUrl": seo_suffix}] if seo_suffix else [],
        "photoSets": [{"beforeLocationUrl": f"https://cdn.example.com/{case_id}/before.jpg"}],
    }
    if creator_id is not None:
        case["creator"] = {
            "id": creator_id,
            "firstName": "Jane",
            "lastName": "Smith",
            "suffix": "MD",
            "profileLink": "https://example.com/dr-smith",
        }
    case.update(extra)
    return case


def make_sidebar() -> List[Dict[str, Any]]:
    """Two categories; Rhinoplasty carries a merged alias id"""
    return [
        {
            "id": 1,
            "name": "Face",
            "slugName": "face",
            "totalCase": 3,
            "procedures": [
                {"ids": [11, 111], "name": "Rhinoplasty", "slugName": "rhinoplasty", "totalCase": 2},
                {"ids": [12], "name": "Facelift", "slugName": "facelift", "totalCase": 1},
            ],
        },
        {
            "id": 2,
            "name": "Body",
            "slugName": "body",
            "totalCase": 0,
            "procedures": [
                {"ids": [21], "name": "Liposuction", "slugName": "liposuction", "totalCase": 0},
            ],
        },
    ]


class FakeUpstream:
    """
    In-memory stand-in for TenantFetcher with the same page contract.

    Manifest pages return a procedure's whole listing at count 1, so every
    procedure takes one page. Errors queued in `failures` are raised once,
    before the page at the matching stage is served.
    """

    def __init__(self, case_batch_size: int = 2):
        self.case_batch_size = case_batch_size
        self.sidebar: List[Dict[str, Any]] = make_sidebar()
        self.listings: Dict[int, List[int]] = {11: [101, 102], 12: [103]}
        self.cases: Dict[int, Dict[str, Any]] = {
            101: make_case(101, [11], seo_suffix="rhino-101"),
            102: make_case(102, [11]),
            103: make_case(103, [12]),
        }
        self.failures: Dict[SyncStage, List[Exception]] = {}
        self.calls: List[tuple] = []

    def fail_next(self, stage: SyncStage, error: Exception) -> None:
        self.failures.setdefault(stage, []).append(error)

    def remove_case(self, case_id: int) -> None:
        """Case deleted upstream: gone from listings and detail"""
        for listing in self.listings.values():
            if case_id in listing:
                listing.remove(case_id)
        self.cases.pop(case_id, None)

    async def fetch_page(self, tenant_key, stage, cursor, plan=None) -> FetchPage:
        self.calls.append((stage, deepcopy(cursor)))
        queued = self.failures.get(stage)
        if queued:
            raise queued.pop(0)

        if stage == SyncStage.PROCEDURES:
            return FetchPage(records=deepcopy(self.sidebar), next_cursor=None, total=len(self.sidebar))

        if stage == SyncStage.MANIFEST:
            procedure_ids = list(plan or [])
            position = int((cursor or {}).get("procedure", 0))
            if position >= len(procedure_ids):
                return FetchPage(records=[], next_cursor=None, total=len(procedure_ids))
            procedure_id = procedure_ids[position]
            next_cursor = {"procedure": position + 1, "count": 1} if position + 1 < len(procedure_ids) else None
            return FetchPage(
                records=[{"procedure_id": procedure_id, "case_ids": list(self.listings.get(procedure_id, []))}],
                next_cursor=next_cursor,
                total=len(procedure_ids),
            )

        work = list(plan or [])
        offset = int((cursor or {}).get("offset", 0))
        batch = work[offset:offset + self.case_batch_size]
        records, absent = [], []
        for case_id, _procedure_id in batch:
            if case_id in self.cases:
                records.append(deepcopy(self.cases[case_id]))
            else:
                absent.append(case_id)
        next_offset = offset + len(batch)
        return FetchPage(
            records=records,
            next_cursor={"offset": next_offset} if next_offset < len(work) else None,
            total=len(work),
            absent=absent,
        )


class ThrottleAfter(FakeUpstream):
    """Serves `allowed` case records per page, then reports a partial throttled page"""

    def __init__(self, allowed: int, **kwargs):
        super().__init__(**kwargs)
        self.allowed = allowed

    async def fetch_page(self, tenant_key, stage, cursor, plan=None) -> FetchPage:
        page = await super().fetch_page(tenant_key, stage, cursor, plan)
        if stage != SyncStage.CASES or len(page.records) <= self.allowed:
            return page
        offset = int((cursor or {}).get("offset", 0))
        page.records = page.records[:self.allowed]
        page.next_cursor = {"offset": offset + self.allowed}
        page.throttled = Throttled("Rate limit reached", retry_after=0.5)
        return page


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def case_payload():
    return make_case


@pytest.fixture
def sidebar_payload():
    return make_sidebar()


@pytest.fixture
def throttling_upstream():
    """Upstream whose case pages get cut short after one record"""
    return ThrottleAfter(allowed=1)


@pytest.fixture
def run_sync(db_session, tenant):
    """Start (or resume) a session for the tenant and step it until it blocks"""
    async def _run(fetcher, mode=ReconcileMode.MANUAL, tenant_key=None, max_steps=50):
        coordinator = SyncSessionCoordinator(db_session)
        session = await coordinator.start_or_resume(tenant_key or tenant.key)
        executor = StageExecutor(db_session, fetcher, coordinator=coordinator, reconcile_mode=mode)
        return await executor.run_until_blocked(session.session_token, max_steps)
    return _run
