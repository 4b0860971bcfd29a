"""
One-time migration of legacy "{case_id}_{procedure_id}" registry keys
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import build_engine, build_session_maker
from core.logging import setup_logging
from gallery_sync.migrations import migrate_legacy_case_keys

setup_logging()
logger = logging.getLogger(__name__)


async def main(tenant_key=None):
    engine = build_engine()
    AsyncSessionLocal = build_session_maker(engine)

    try:
        async with AsyncSessionLocal() as session:
            result = await migrate_legacy_case_keys(session, tenant_key)
            logger.info(f"Migration finished: {result}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rewrite legacy case registry keys")
    parser.add_argument("--tenant", help="Only migrate this tenant key")
    args = parser.parse_args()
    asyncio.run(main(args.tenant))
