"""
Identity registry: durable remote id -> local entity mapping.
"""

from typing import Dict, Iterable, List, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from models.base import EntityType, RegistryStatus
from models.registry import RegistryEntry
import logging

logger = logging.getLogger(__name__)

LIVE_STATUSES = (RegistryStatus.ACTIVE, RegistryStatus.PENDING_DELETION)


def derived_key(remote_id, procedure_index: Optional[int] = None) -> str:
    """remote_id for plain entities, "remote_id:index" for split case entities"""
    if procedure_index is None:
        return str(remote_id)
    return f"{remote_id}:{procedure_index}"


class IdentityRegistry:
    """
    Registry of every upstream record the engine has materialized.

    Ensures:
    - At most one live (active or pending_deletion) entry per derived key
    - last_confirmed_at only advances through confirm()
    - Callers own the transaction; nothing here commits
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def lookup(
        self,
        tenant_key: str,
        entity_type: EntityType,
        remote_id: str
    ) -> Optional[RegistryEntry]:
        """Live entry for a derived key, if any"""
        result = await self.db.execute(
            select(RegistryEntry).where(
                RegistryEntry.tenant_key == tenant_key,
                RegistryEntry.entity_type == entity_type,
                RegistryEntry.remote_id == str(remote_id),
                RegistryEntry.status.in_(LIVE_STATUSES)
            )
        )
        return result.scalar_one_or_none()

    async def register(
        self,
        tenant_key: str,
        entity_type: EntityType,
        remote_id: str,
        local_id: int,
        session_token: str
    ) -> RegistryEntry:
        """Create a new active entry stamped with the current session"""
        now = datetime.utcnow()
        entry = RegistryEntry(
            tenant_key=tenant_key,
            entity_type=entity_type,
            remote_id=str(remote_id),
            local_id=local_id,
            session_token=session_token,
            first_seen_at=now,
            last_confirmed_at=now,
            status=RegistryStatus.ACTIVE
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    def confirm(self, entry: RegistryEntry, session_token: str) -> RegistryEntry:
        """Positive confirmation: upstream returned this record in the session"""
        if entry.status == RegistryStatus.PENDING_DELETION:
            logger.info(
                f"Registry entry {entry.entity_type.value}:{entry.remote_id} "
                f"reappeared upstream, restoring to active"
            )
        entry.session_token = session_token
        entry.last_confirmed_at = datetime.utcnow()
        entry.status = RegistryStatus.ACTIVE
        return entry

    async def entries_for_origin(
        self,
        tenant_key: str,
        entity_type: EntityType,
        origin_remote_id
    ) -> List[RegistryEntry]:
        """Live entries for an upstream record, including its split keys"""
        origin = str(origin_remote_id)
        result = await self.db.execute(
            select(RegistryEntry).where(
                RegistryEntry.tenant_key == tenant_key,
                RegistryEntry.entity_type == entity_type,
                or_(
                    RegistryEntry.remote_id == origin,
                    RegistryEntry.remote_id.like(f"{origin}:%")
                ),
                RegistryEntry.status.in_(LIVE_STATUSES)
            )
        )
        return list(result.scalars().all())

    async def confirm_existing(
        self,
        tenant_key: str,
        entity_type: EntityType,
        origin_remote_id,
        session_token: str
    ) -> int:
        """
        Confirm whatever is already registered for an upstream record
        without touching its content. Used when a record was seen upstream
        but could not be materialized, so it is not mistaken for an orphan.
        """
        entries = await self.entries_for_origin(tenant_key, entity_type, origin_remote_id)
        for entry in entries:
            self.confirm(entry, session_token)
        return len(entries)

    async def confirm_local_ids(
        self,
        tenant_key: str,
        local_ids: Iterable[int],
        session_token: str
    ) -> List[RegistryEntry]:
        """Confirm every live entry mapped to one of the given local entities"""
        local_ids = {i for i in local_ids if i is not None}
        if not local_ids:
            return []
        result = await self.db.execute(
            select(RegistryEntry).where(
                RegistryEntry.tenant_key == tenant_key,
                RegistryEntry.local_id.in_(local_ids),
                RegistryEntry.status.in_(LIVE_STATUSES)
            )
        )
        entries = list(result.scalars().all())
        for entry in entries:
            self.confirm(entry, session_token)
        return entries

    async def unconfirmed(self, tenant_key: str, session_token: str) -> List[RegistryEntry]:
        """Live entries the given session did not confirm"""
        result = await self.db.execute(
            select(RegistryEntry).where(
                RegistryEntry.tenant_key == tenant_key,
                RegistryEntry.session_token != session_token,
                RegistryEntry.status.in_(LIVE_STATUSES)
            ).order_by(RegistryEntry.id)
        )
        return list(result.scalars().all())

    async def pending(
        self,
        tenant_key: str,
        local_ids: Optional[Iterable[int]] = None
    ) -> List[RegistryEntry]:
        """Entries awaiting deletion, optionally limited to some local ids"""
        query = select(RegistryEntry).where(
            RegistryEntry.tenant_key == tenant_key,
            RegistryEntry.status == RegistryStatus.PENDING_DELETION
        )
        if local_ids is not None:
            query = query.where(RegistryEntry.local_id.in_(list(local_ids)))
        result = await self.db.execute(query.order_by(RegistryEntry.id))
        return list(result.scalars().all())

    def mark_pending(self, entries: Iterable[RegistryEntry]) -> None:
        for entry in entries:
            entry.status = RegistryStatus.PENDING_DELETION

    def mark_deleted(self, entry: RegistryEntry) -> None:
        entry.status = RegistryStatus.DELETED
        entry.deleted_at = datetime.utcnow()

    async def other_live_mappings(self, local_id: int, exclude_entry_id: int) -> int:
        """How many other live entries still point at a local entity"""
        result = await self.db.execute(
            select(func.count()).select_from(RegistryEntry).where(
                RegistryEntry.local_id == local_id,
                RegistryEntry.id != exclude_entry_id,
                RegistryEntry.status.in_(LIVE_STATUSES)
            )
        )
        return result.scalar() or 0

    async def counts_by_status(self, tenant_key: Optional[str] = None) -> Dict[str, int]:
        query = select(RegistryEntry.status, func.count()).group_by(RegistryEntry.status)
        if tenant_key:
            query = query.where(RegistryEntry.tenant_key == tenant_key)
        result = await self.db.execute(query)
        counts = {status.value: 0 for status in RegistryStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts
