"""
FastAPI dependencies
"""

from typing import AsyncGenerator
from functools import lru_cache
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from core.tenants import TenantDirectory
from gallery_sync.fetcher import TenantFetcher


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


@lru_cache
def get_tenant_directory() -> TenantDirectory:
    return TenantDirectory.from_settings()


@lru_cache
def get_fetcher() -> TenantFetcher:
    return TenantFetcher(tenants=get_tenant_directory())
