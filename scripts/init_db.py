import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.registry import RegistryEntry
from models.sync_session import SyncSession, SyncLock
from models.local_entity import LocalEntity
from models.audit_log import DeletionAuditLog
from models.sync_run import SyncRun

setup_logging()
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = build_engine()

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables created successfully: {', '.join(sorted(Base.metadata.tables))}")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
