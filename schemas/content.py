"""
Canonical content stored on local entities.

One schema per entity type; the materializer builds these from upstream
payloads and stores them as JSON on LocalEntity.content.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any


class ProcedureContent(BaseModel):
    remote_ids: List[int] = Field(default_factory=list)
    is_category: bool = False
    total_cases: int = 0
    nudity: bool = False
    description: Optional[str] = None
    case_order: Dict[str, List[int]] = Field(default_factory=dict)  # per upstream procedure id
    placeholder: bool = False  # created from a case reference, not the sidebar


class DoctorContent(BaseModel):
    member_id: int
    name: str
    suffix: Optional[str] = None
    profile_url: Optional[str] = None


class CaseContent(BaseModel):
    """
    Display payload for one (case, procedure) pair.

    Ensures:
    - title and slug are never empty
    - notes are trimmed
    - no patient identifiers are carried over
    """
    case_id: int
    procedure_id: int
    procedure_index: int = 0
    procedure_ids: List[int] = Field(default_factory=list)
    category_ids: List[int] = Field(default_factory=list)

    title: str = Field(..., min_length=1, max_length=500)
    slug: str = Field(..., min_length=1, max_length=255)
    is_draft: bool = False

    quality_score: Optional[int] = None
    approved_for_social: Optional[bool] = None
    no_watermark: Optional[bool] = None

    age: Optional[int] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    height: Optional[int] = None
    height_unit: Optional[str] = None
    weight: Optional[int] = None
    weight_unit: Optional[str] = None

    notes: Optional[str] = None
    seo_headline: Optional[str] = None
    seo_page_title: Optional[str] = None
    seo_page_description: Optional[str] = None

    doctor_member_id: Optional[int] = None
    photo_sets: List[Dict[str, Any]] = Field(default_factory=list)

    upstream_created_at: Optional[str] = None
    upstream_updated_at: Optional[str] = None

    @validator("title", "slug")
    def not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be empty after stripping")
        return v

    @validator("notes")
    def clean_notes(cls, v):
        if v is None:
            return None
        return v.strip() or None
