"""
One-time registry key migration.

Older registry rows keyed split cases as "{case_id}_{procedure_id}". The
engine now keys them "{case_id}:{procedure_index}", or the bare case id when
the case belongs to a single procedure.
"""

import re
from collections import defaultdict
from typing import Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from gallery_sync.registry import LIVE_STATUSES, derived_key
from models.base import EntityType
from models.local_entity import LocalEntity
from models.registry import RegistryEntry
import logging

logger = logging.getLogger(__name__)

LEGACY_CASE_KEY = re.compile(r"^(\d+)_(\d+)$")


def parse_legacy_case_key(remote_id: str) -> Optional[Tuple[int, int]]:
    """(case_id, procedure_id) for a legacy key, None for anything else"""
    match = LEGACY_CASE_KEY.match(remote_id or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


async def migrate_legacy_case_keys(db: AsyncSession, tenant_key: Optional[str] = None) -> Dict[str, int]:
    """
    Rewrite legacy case keys of live registry entries.

    The procedure index comes from the stored case content (procedure_ids)
    when available, else from the order of the legacy procedure ids. An entry
    whose new key is already taken by another live entry is left alone and
    counted as a conflict.

    Returns:
        {"scanned": n, "migrated": n, "conflicts": n}
    """
    query = select(RegistryEntry).where(
        RegistryEntry.entity_type == EntityType.CASE,
        RegistryEntry.remote_id.like("%\\_%", escape="\\"),
        RegistryEntry.status.in_(LIVE_STATUSES)
    ).order_by(RegistryEntry.id)
    if tenant_key:
        query = query.where(RegistryEntry.tenant_key == tenant_key)

    result = await db.execute(query)
    groups: Dict[Tuple[str, int], List[Tuple[RegistryEntry, int]]] = defaultdict(list)
    scanned = 0
    for entry in result.scalars().all():
        parsed = parse_legacy_case_key(entry.remote_id)
        if parsed is None:
            continue
        scanned += 1
        case_id, procedure_id = parsed
        groups[(entry.tenant_key, case_id)].append((entry, procedure_id))

    migrated = 0
    conflicts = 0
    for (tenant, case_id), members in groups.items():
        legacy_order = sorted(procedure_id for _, procedure_id in members)

        for entry, procedure_id in members:
            entity = await db.get(LocalEntity, entry.local_id)
            stored_ids = list((entity.content or {}).get("procedure_ids") or []) if entity else []

            split = len(members) > 1 or len(stored_ids) > 1
            if procedure_id in stored_ids:
                index = stored_ids.index(procedure_id)
            else:
                index = legacy_order.index(procedure_id)
            new_key = derived_key(case_id, index if split else None)

            taken = await db.execute(
                select(RegistryEntry.id).where(
                    RegistryEntry.tenant_key == tenant,
                    RegistryEntry.entity_type == EntityType.CASE,
                    RegistryEntry.remote_id == new_key,
                    RegistryEntry.status.in_(LIVE_STATUSES),
                    RegistryEntry.id != entry.id
                )
            )
            if taken.first() is not None:
                conflicts += 1
                logger.warning(
                    f"Registry key {new_key} already in use for {tenant}; "
                    f"leaving legacy key {entry.remote_id} unchanged"
                )
                continue

            logger.info(f"Registry key {entry.remote_id} -> {new_key} ({tenant})")
            entry.remote_id = new_key
            if entity is not None:
                entity.origin_remote_id = str(case_id)
                entity.procedure_index = index
            await db.flush()
            migrated += 1

    await db.commit()
    logger.info(f"Legacy case key migration: {scanned} scanned, {migrated} migrated, {conflicts} conflicts")
    return {"scanned": scanned, "migrated": migrated, "conflicts": conflicts}
