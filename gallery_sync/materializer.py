"""
Entity materializer: upstream records -> local entities + registry rows.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import MaterializeFailed
from gallery_sync.registry import IdentityRegistry, derived_key
from models.base import EntityType
from models.local_entity import LocalEntity
from models.sync_session import SyncSession
from schemas.content import CaseContent, DoctorContent, ProcedureContent
from schemas.upstream import Creator, SidebarCategory, SidebarProcedure, UpstreamCase
import logging

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "item"


@dataclass
class MaterializedEntity:
    local_id: int
    entity_type: EntityType
    remote_key: str
    name: str
    created: bool


@dataclass
class MaterializeResult:
    """What one upstream record turned into"""
    entities: List[MaterializedEntity] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)  # nested records that failed

    @property
    def created(self) -> int:
        return sum(1 for e in self.entities if e.created)

    @property
    def updated(self) -> int:
        return sum(1 for e in self.entities if not e.created)


class EntityMaterializer:
    """
    Convert upstream records into local entities with idempotent upserts.

    Ensures:
    - One local entity per derived key per tenant (lookup before insert)
    - Split cases produce one entity per procedure, keyed "case_id:index"
    - Doctors and procedures referenced by a case exist before the case
    - Records seen upstream but failing validation still confirm their
      existing registry entries
    """

    def __init__(self, db_session: AsyncSession, registry: Optional[IdentityRegistry] = None):
        self.db = db_session
        self.registry = registry or IdentityRegistry(db_session)

    async def materialize(
        self,
        session: SyncSession,
        entity_type: EntityType,
        remote_record: Dict[str, Any]
    ) -> MaterializeResult:
        """
        Materialize one upstream record.

        Args:
            session: Live sync session (tenant + token used for stamping)
            entity_type: procedure (a sidebar category), case or doctor
            remote_record: Raw upstream payload

        Raises:
            MaterializeFailed: The record could not be turned into entities
        """
        try:
            if entity_type == EntityType.PROCEDURE:
                return await self._materialize_category(session, remote_record)
            if entity_type == EntityType.CASE:
                return await self._materialize_case(session, remote_record)
            if entity_type == EntityType.DOCTOR:
                entity = await self._materialize_doctor(session, Creator(**remote_record))
                return MaterializeResult(entities=[entity] if entity else [])
        except ValidationError as e:
            confirmed = await self._confirm_raw_ids(session, entity_type, remote_record)
            raise MaterializeFailed(
                f"Invalid upstream {entity_type.value} record",
                context={
                    "entity_type": entity_type.value,
                    "remote_id": remote_record.get("id") if isinstance(remote_record, dict) else None,
                    "field_errors": [err.get("loc") for err in e.errors()],
                    "entries_confirmed": confirmed,
                },
                original_exception=e
            )

        raise ValueError(f"Unsupported entity type: {entity_type}")

    # ------------------------------------------------------------------
    # Procedures
    # ------------------------------------------------------------------

    async def _materialize_category(self, session: SyncSession, record: Dict[str, Any]) -> MaterializeResult:
        category = SidebarCategory(**record)
        if category.remote_id is None:
            raise MaterializeFailed(
                f"Category '{category.name}' has no upstream id",
                context={"entity_type": EntityType.PROCEDURE.value, "name": category.name}
            )

        result = MaterializeResult()
        parent = await self._upsert_procedure(session, category, parent_id=None, display_order=None, is_category=True)
        result.entities.append(parent)

        for position, raw_child in enumerate(record.get("procedures") or []):
            try:
                child = SidebarProcedure(**raw_child)
            except ValidationError as e:
                await self._confirm_raw_ids(session, EntityType.PROCEDURE, raw_child)
                result.failures.append({
                    "entity_type": EntityType.PROCEDURE.value,
                    "parent_remote_id": category.remote_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:500],
                })
                continue

            if child.remote_id is None:
                logger.warning(f"Skipping procedure '{child.name}' without valid ids")
                continue

            entity = await self._upsert_procedure(
                session, child, parent_id=parent.local_id, display_order=position, is_category=False
            )
            result.entities.append(entity)

        return result

    async def _upsert_procedure(
        self,
        session: SyncSession,
        procedure: SidebarProcedure,
        parent_id: Optional[int],
        display_order: Optional[int],
        is_category: bool
    ) -> MaterializedEntity:
        remote_ids = [procedure.remote_id] + [i for i in procedure.alias_ids if i != procedure.remote_id]
        content = ProcedureContent(
            remote_ids=remote_ids,
            is_category=is_category,
            total_cases=procedure.totalCase,
            nudity=procedure.nudity,
            description=procedure.description,
        ).model_dump(mode="json")

        entity = await self._upsert(
            session,
            EntityType.PROCEDURE,
            key=derived_key(procedure.remote_id),
            origin_remote_id=str(procedure.remote_id),
            procedure_index=0,
            fields={
                "name": procedure.name,
                "slug": procedure.slugName or slugify(procedure.name),
                "display_order": display_order,
                "content": content,
                "parent_id": parent_id,
            },
            preserve_content_keys=("case_order",)
        )

        for alias_id in procedure.alias_ids:
            await self._register_alias(session, alias_id, entity.local_id)

        return entity

    async def _register_alias(self, session: SyncSession, alias_id: int, local_id: int) -> None:
        """Merged upstream ids resolve to the same local procedure"""
        entry = await self.registry.lookup(session.tenant_key, EntityType.PROCEDURE, str(alias_id))
        if entry is None:
            await self.registry.register(
                session.tenant_key, EntityType.PROCEDURE, str(alias_id), local_id, session.session_token
            )
            return
        if entry.local_id != local_id:
            logger.info(f"Procedure id {alias_id} merged into local entity {local_id}")
            entry.local_id = local_id
        self.registry.confirm(entry, session.session_token)

    async def _ensure_procedure(self, session: SyncSession, procedure_id: int) -> Tuple[int, str]:
        """Local procedure for a case reference, created as a placeholder if unknown"""
        entry = await self.registry.lookup(session.tenant_key, EntityType.PROCEDURE, str(procedure_id))
        if entry is not None:
            entity = await self.db.get(LocalEntity, entry.local_id)
            if entity is not None:
                self.registry.confirm(entry, session.session_token)
                return entity.id, entity.name

        logger.info(f"Procedure {procedure_id} referenced by a case is not known yet, creating it")
        placeholder = await self._upsert(
            session,
            EntityType.PROCEDURE,
            key=derived_key(procedure_id),
            origin_remote_id=str(procedure_id),
            procedure_index=0,
            fields={
                "name": f"Procedure {procedure_id}",
                "slug": f"procedure-{procedure_id}",
                "content": ProcedureContent(remote_ids=[procedure_id], placeholder=True).model_dump(mode="json"),
            }
        )
        return placeholder.local_id, placeholder.name

    async def record_case_order(self, session: SyncSession, procedure_id: int, case_ids: List[int]) -> bool:
        """Store manifest order of a procedure's cases on the procedure entity"""
        entry = await self.registry.lookup(session.tenant_key, EntityType.PROCEDURE, str(procedure_id))
        if entry is None:
            return False
        entity = await self.db.get(LocalEntity, entry.local_id)
        if entity is None:
            return False

        content = dict(entity.content or {})
        order = dict(content.get("case_order") or {})
        order[str(procedure_id)] = [int(c) for c in case_ids]
        content["case_order"] = order
        entity.content = content
        return True

    # ------------------------------------------------------------------
    # Doctors
    # ------------------------------------------------------------------

    async def _materialize_doctor(self, session: SyncSession, creator: Creator) -> Optional[MaterializedEntity]:
        name = creator.display_name
        if not creator.id or not name:
            return None

        content = DoctorContent(
            member_id=creator.id,
            name=name,
            suffix=creator.suffix,
            profile_url=creator.profileLink,
        ).model_dump(mode="json")

        return await self._upsert(
            session,
            EntityType.DOCTOR,
            key=derived_key(creator.id),
            origin_remote_id=str(creator.id),
            procedure_index=0,
            fields={"name": name, "slug": slugify(name), "content": content}
        )

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    async def _materialize_case(self, session: SyncSession, record: Dict[str, Any]) -> MaterializeResult:
        case = UpstreamCase(**record)

        if not case.isForWebsite:
            logger.info(f"Case {case.id} is not approved for website use, skipping")
            return MaterializeResult(skipped=True, skip_reason="not_for_website")

        procedure_ids = case.procedureIds or self._manifest_procedures_for(session, case.id)
        if not procedure_ids:
            raise MaterializeFailed(
                f"Case {case.id} is not linked to any procedure",
                context={"entity_type": EntityType.CASE.value, "remote_id": case.id}
            )

        result = MaterializeResult()

        # Side entities first so the case never references a missing row
        doctor = await self._materialize_doctor(session, case.creator) if case.creator else None
        if doctor is not None:
            result.entities.append(doctor)

        split = len(procedure_ids) > 1
        slug = case.seo_suffix_url or str(case.id)
        notes = case.description or case.details
        seo = next((d for d in case.caseDetails if d.seoHeadline or d.seoPageTitle or d.seoPageDescription), None)

        for index, procedure_id in enumerate(procedure_ids):
            procedure_local_id, procedure_name = await self._ensure_procedure(session, procedure_id)

            content = CaseContent(
                case_id=case.id,
                procedure_id=procedure_id,
                procedure_index=index,
                procedure_ids=procedure_ids,
                category_ids=case.categoryIds,
                title=f"{procedure_name} #{case.id}",
                slug=slug,
                is_draft=case.draft,
                quality_score=case.qualityScore,
                approved_for_social=case.approvedForSocial,
                no_watermark=case.noWatermark,
                age=case.age,
                gender=case.gender,
                ethnicity=case.ethnicity,
                height=case.height,
                height_unit=case.heightUnit,
                weight=case.weight,
                weight_unit=case.weightUnit,
                notes=notes,
                seo_headline=seo.seoHeadline if seo else None,
                seo_page_title=seo.seoPageTitle if seo else None,
                seo_page_description=seo.seoPageDescription if seo else None,
                doctor_member_id=case.creator.id if case.creator else None,
                photo_sets=case.photoSets,
                upstream_created_at=case.createdAt,
                upstream_updated_at=case.updatedAt,
            )

            entity = await self._upsert(
                session,
                EntityType.CASE,
                key=derived_key(case.id, index if split else None),
                sibling_key=self._sibling_key(case.id, index, split),
                origin_remote_id=str(case.id),
                procedure_index=index,
                fields={
                    "name": content.title,
                    "slug": content.slug,
                    "display_order": self._manifest_position(session, procedure_id, case.id),
                    "content": content.model_dump(mode="json"),
                    "procedure_entity_id": procedure_local_id,
                    "doctor_entity_id": doctor.local_id if doctor else None,
                }
            )
            result.entities.append(entity)

        return result

    @staticmethod
    def _sibling_key(case_id: int, index: int, split: bool) -> Optional[str]:
        """"101" and "101:0" name the same origin + index"""
        if index != 0:
            return None
        return derived_key(case_id) if split else derived_key(case_id, 0)

    @staticmethod
    def _manifest_procedures_for(session: SyncSession, case_id: int) -> List[int]:
        manifest = session.manifest or {}
        return [int(pid) for pid, case_ids in manifest.items() if case_id in (case_ids or [])]

    @staticmethod
    def _manifest_position(session: SyncSession, procedure_id: int, case_id: int) -> Optional[int]:
        case_ids = (session.manifest or {}).get(str(procedure_id)) or []
        return case_ids.index(case_id) if case_id in case_ids else None

    # ------------------------------------------------------------------
    # Upsert core
    # ------------------------------------------------------------------

    async def _upsert(
        self,
        session: SyncSession,
        entity_type: EntityType,
        key: str,
        origin_remote_id: str,
        procedure_index: int,
        fields: Dict[str, Any],
        preserve_content_keys: Tuple[str, ...] = (),
        sibling_key: Optional[str] = None
    ) -> MaterializedEntity:
        """
        Update the entity behind a live registry entry, or create both.

        sibling_key is the other spelling of the same origin + index (a case
        going from one procedure to several, or back). Its entry is re-keyed in
        place so the local entity keeps its id.
        """
        entry = await self.registry.lookup(session.tenant_key, entity_type, key)
        if entry is None and sibling_key is not None:
            entry = await self.registry.lookup(session.tenant_key, entity_type, sibling_key)
            if entry is not None:
                logger.info(f"Re-keying {entity_type.value} {sibling_key} as {key}")
                entry.remote_id = key
                await self.db.flush()
        entity = await self.db.get(LocalEntity, entry.local_id) if entry is not None else None

        if entity is not None:
            previous = entity.content or {}
            for name, value in fields.items():
                if name == "content" and value is not None:
                    value = dict(value)
                    for preserved in preserve_content_keys:
                        if preserved in previous:
                            value[preserved] = previous[preserved]
                setattr(entity, name, value)
            self.registry.confirm(entry, session.session_token)
            return MaterializedEntity(entity.id, entity_type, key, entity.name, created=False)

        entity = LocalEntity(
            tenant_key=session.tenant_key,
            entity_type=entity_type,
            origin_remote_id=origin_remote_id,
            procedure_index=procedure_index,
            **fields
        )
        self.db.add(entity)
        await self.db.flush()

        if entry is not None:
            # Registry pointed at an entity that no longer exists
            entry.local_id = entity.id
            self.registry.confirm(entry, session.session_token)
        else:
            await self.registry.register(
                session.tenant_key, entity_type, key, entity.id, session.session_token
            )

        logger.debug(f"Created {entity_type.value} {key} as local entity {entity.id}")
        return MaterializedEntity(entity.id, entity_type, key, entity.name, created=True)

    async def _confirm_raw_ids(self, session: SyncSession, entity_type: EntityType, record: Any) -> int:
        """Best-effort confirmation for a record whose payload failed validation"""
        if not isinstance(record, dict):
            return 0

        confirmed: Dict[int, Any] = {}

        if entity_type == EntityType.PROCEDURE:
            candidates = [record.get("id")] + _as_list(record.get("ids"))
            for child in _as_list(record.get("procedures")):
                if isinstance(child, dict):
                    candidates.extend(_as_list(child.get("ids")))
            await self._confirm_ids(session, EntityType.PROCEDURE, candidates, confirmed)
            return len(confirmed)

        case_entries = await self._confirm_ids(session, entity_type, [record.get("id")], confirmed)
        if entity_type != EntityType.CASE:
            return len(confirmed)

        # Doctor and procedures the case references were observed upstream too
        creator = record.get("creator")
        if isinstance(creator, dict):
            await self._confirm_ids(session, EntityType.DOCTOR, [creator.get("id")], confirmed)
        await self._confirm_ids(session, EntityType.PROCEDURE, _as_list(record.get("procedureIds")), confirmed)

        referenced = set()
        for entry in case_entries:
            entity = await self.db.get(LocalEntity, entry.local_id)
            if entity is not None:
                referenced.update((entity.procedure_entity_id, entity.doctor_entity_id))
        for entry in await self.registry.confirm_local_ids(session.tenant_key, referenced, session.session_token):
            confirmed[entry.id] = entry

        return len(confirmed)

    async def _confirm_ids(
        self,
        session: SyncSession,
        entity_type: EntityType,
        raw_ids: List[Any],
        confirmed: Dict[int, Any]
    ) -> List[Any]:
        entries = []
        for raw_id in raw_ids:
            remote_id = _as_int(raw_id)
            if remote_id is None:
                continue
            for entry in await self.registry.entries_for_origin(session.tenant_key, entity_type, remote_id):
                self.registry.confirm(entry, session.session_token)
                confirmed[entry.id] = entry
                entries.append(entry)
        return entries


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []
