"""
Pydantic schemas for upstream gallery API payloads
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any


def _to_int_list(v) -> List[int]:
    """Keep only positive integer ids, in order, without duplicates"""
    if v is None:
        return []
    if not isinstance(v, (list, tuple)):
        v = [v]
    ids = []
    for item in v:
        try:
            value = int(item)
        except (TypeError, ValueError):
            continue
        if value > 0 and value not in ids:
            ids.append(value)
    return ids


class SidebarProcedure(BaseModel):
    """Procedure entry under a sidebar category"""
    ids: List[int] = Field(default_factory=list)
    name: str = Field(..., min_length=1)
    slugName: Optional[str] = None
    totalCase: int = 0
    nudity: bool = False
    description: Optional[str] = None

    @validator("ids", pre=True)
    def clean_ids(cls, v):
        return _to_int_list(v)

    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Procedure name cannot be empty")
        return v

    @validator("totalCase", pre=True)
    def clean_total(cls, v):
        try:
            return max(int(v), 0)
        except (TypeError, ValueError):
            return 0

    @property
    def remote_id(self) -> Optional[int]:
        return self.ids[0] if self.ids else None

    @property
    def alias_ids(self) -> List[int]:
        """Upstream ids merged into this procedure besides the primary one"""
        return self.ids[1:]


class SidebarCategory(SidebarProcedure):
    """Top-level category; categories are stored as parent procedures"""
    id: Optional[int] = None
    procedures: List[Dict[str, Any]] = Field(default_factory=list)  # parsed one by one

    @validator("id", pre=True)
    def clean_id(cls, v):
        ids = _to_int_list(v)
        return ids[0] if ids else None

    @validator("procedures", pre=True)
    def clean_procedures(cls, v):
        return [p for p in (v or []) if isinstance(p, dict)]

    @property
    def remote_id(self) -> Optional[int]:
        if self.id:
            return self.id
        return self.ids[0] if self.ids else None

    @property
    def alias_ids(self) -> List[int]:
        return [i for i in self.ids if i != self.remote_id]


class Creator(BaseModel):
    """Doctor who published the case"""
    id: Optional[int] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    suffix: Optional[str] = None
    profileLink: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        """Doctor name as "First Last, Suffix", or None when no name is known"""
        parts = [p.strip() for p in (self.firstName, self.lastName) if p and p.strip()]
        if not parts:
            return None
        name = " ".join(parts)
        if self.suffix and self.suffix.strip():
            name += f", {self.suffix.strip()}"
        return name


class CaseDetail(BaseModel):
    seoSuffixUrl: Optional[str] = None
    seoHeadline: Optional[str] = None
    seoPageTitle: Optional[str] = None
    seoPageDescription: Optional[str] = None


class UpstreamCase(BaseModel):
    """
    Case detail record as returned by the cases endpoint.

    Patient identifiers (patientId, emrId, userId, orgId) are deliberately
    not declared, so they are dropped at parse time.
    """
    id: int
    procedureIds: List[int] = Field(default_factory=list)
    categoryIds: List[int] = Field(default_factory=list)
    isForWebsite: bool = False
    draft: bool = False

    # Settings
    qualityScore: Optional[int] = None
    approvedForSocial: Optional[bool] = None
    noWatermark: Optional[bool] = None

    # Demographics shown on the case page
    age: Optional[int] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    height: Optional[int] = None
    heightUnit: Optional[str] = None
    weight: Optional[int] = None
    weightUnit: Optional[str] = None

    description: Optional[str] = None
    details: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    creator: Optional[Creator] = None
    caseDetails: List[CaseDetail] = Field(default_factory=list)
    photoSets: List[Dict[str, Any]] = Field(default_factory=list)

    @validator("procedureIds", "categoryIds", pre=True)
    def clean_ids(cls, v):
        return _to_int_list(v)

    @validator("age", "height", "weight", "qualityScore", pre=True)
    def clean_optional_int(cls, v):
        if v in (None, ""):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @validator("caseDetails", "photoSets", pre=True)
    def clean_list(cls, v):
        return [item for item in (v or []) if isinstance(item, dict)]

    @property
    def seo_suffix_url(self) -> Optional[str]:
        for detail in self.caseDetails:
            if detail.seoSuffixUrl:
                return detail.seoSuffixUrl
        return None


def extract_case_id(item: Any) -> Optional[int]:
    """Case listings return either bare ids or objects with an "id" key"""
    if isinstance(item, dict):
        item = item.get("id")
    ids = _to_int_list(item)
    return ids[0] if ids else None


def listed_procedure_ids(category: Any) -> List[int]:
    """
    Ids of a raw sidebar category's procedures that report cases.

    Read from the raw payload so a procedure that fails validation still
    has its cases enumerated and confirmed.
    """
    if not isinstance(category, dict):
        return []
    ids: List[int] = []
    for child in category.get("procedures") or []:
        if not isinstance(child, dict):
            continue
        try:
            total = int(child.get("totalCase") or 0)
        except (TypeError, ValueError):
            total = 0
        if total <= 0:
            continue
        ids.extend(i for i in _to_int_list(child.get("ids")) if i not in ids)
    return ids
