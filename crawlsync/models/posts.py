"""Structured records produced by extraction.

These pydantic models double as the JSON schemas handed to the structured
extraction backend and as the serialized payload passed between jobs.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

REQUIRED_ENRICHMENT_FIELDS = ("contact", "schedule")


class ContactInfo(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    intake_form_url: Optional[str] = None

    def is_empty(self) -> bool:
        return not any([self.phone, self.email, self.website, self.intake_form_url])


class ExtractedPost(BaseModel):
    title: str
    summary: str = Field("", description="One-sentence summary")
    description: str = Field("", description="Full description")
    contact: Optional[ContactInfo] = None
    schedule: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    source_page_ids: List[str] = Field(default_factory=list)
    source_urls: List[str] = Field(default_factory=list)
    absent_fields: List[str] = Field(
        default_factory=list,
        description="Required fields enrichment could not fill",
    )

    def missing_fields(self) -> List[str]:
        missing = []
        if self.contact is None or self.contact.is_empty():
            missing.append("contact")
        if not (self.schedule or "").strip():
            missing.append("schedule")
        return missing

    def embedding_text(self) -> str:
        return f"{self.title}\n{self.summary}\n{self.description[:1000]}"


# --- structured-output schemas -------------------------------------------------


class NarrativeCandidate(BaseModel):
    title: str
    summary: str = ""
    description: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    schedule: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    source_index: int = Field(..., description="Index of the page this came from")


class NarrativeBatchResponse(BaseModel):
    posts: List[NarrativeCandidate] = Field(default_factory=list)


class MergeGroup(BaseModel):
    member_indices: List[int]
    title: str
    summary: str = ""
    description: str = ""


class MergeResponse(BaseModel):
    groups: List[MergeGroup] = Field(default_factory=list)


class EquivalenceJudgment(BaseModel):
    same: bool
    reason: str = ""
