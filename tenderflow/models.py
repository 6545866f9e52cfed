"""Core data models for uploads, candidates, matches, and the profile workflow.

Canonical records are Pydantic models whose fields are always present:
scalars default to ``""`` and collections to ``[]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FileStatus(str, Enum):
    """Lifecycle of a tracked upload."""
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.COMPLETED, FileStatus.ERROR)


class LanguageLevel(str, Enum):
    """Proficiency levels derived from free-text descriptors."""
    NATIVE = "Native"
    FLUENT = "Fluent"
    INTERMEDIATE = "Intermediate"


@dataclass
class UploadDocument:
    """A file handed to the pipeline by the caller."""
    name: str
    content: bytes
    mime_type: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LanguageSkill(_Record):
    language: str = ""
    level: str = ""
    reading: str = ""
    speaking: str = ""
    writing: str = ""


class EducationRecord(_Record):
    diploma: str = ""
    institution: str = ""
    from_date: str = ""
    to_date: str = ""
    year: str = ""


class RegionExperience(_Record):
    country: str = ""
    from_date: str = ""
    to_date: str = ""


class TrainingRecord(_Record):
    period: str = ""
    topic: str = ""
    provider: str = ""


class ProfessionalExperience(_Record):
    from_date: str = ""
    to_date: str = ""
    location: str = ""
    company_reference_person: str = ""
    position: str = ""
    description: str = ""


class CanonicalCandidate(_Record):
    """The single normalized CV shape every upstream variant maps into."""

    # Personal
    first_name: str = ""
    family_name: str = ""
    gender: str = ""
    date_of_birth: str = ""
    residence_city: str = ""
    email: str = ""
    phone: str = ""
    social_media: str = ""
    last_cv_update: str = ""

    # Professional
    years_of_experience: str = ""
    role_experience: list[str] = Field(default_factory=list)

    # Geographic
    nationality: str = ""
    language_skills: list[LanguageSkill] = Field(default_factory=list)
    specific_experience_in_region: list[RegionExperience] = Field(default_factory=list)

    # Experience tags
    clients_donors: list[str] = Field(default_factory=list)
    technical_sectors: list[str] = Field(default_factory=list)
    functional_areas: list[str] = Field(default_factory=list)

    education: list[EducationRecord] = Field(default_factory=list)

    # Structured (Europass) fields
    proposed_role: str = ""
    civil_status: str = ""
    training: list[TrainingRecord] = Field(default_factory=list)
    membership_professional_bodies: str = ""
    other_skills: str = ""
    present_position: str = ""
    years_within_firm: str = ""
    professional_experience: list[ProfessionalExperience] = Field(default_factory=list)
    publications: str = ""
    signature_name: str = ""
    signature_date: str = ""

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.family_name) if part)


class TrackedFile(BaseModel):
    """Per-file upload record driven through the upload state machine."""
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = ""
    status: FileStatus = FileStatus.UPLOADING
    progress: int = Field(default=0, ge=0, le=100)
    result: CanonicalCandidate | None = None
    error: str | None = None
    extracted_fields: int = 0


class ScoredCandidate(BaseModel):
    """Entry of the full match list; ``score`` is a 0-100 percentage."""
    candidate_id: str
    rank: int
    score: float = Field(ge=0.0, le=100.0)
    candidate: CanonicalCandidate


class CuratedCandidate(BaseModel):
    """AI-selected candidate with rationale; ``score`` is a 0-100 percentage."""
    candidate_ref: str
    name: str = ""
    score: float = Field(ge=0.0, le=100.0)
    rationale: str = ""


class MatchResult(BaseModel):
    full_match_list: list[ScoredCandidate] = Field(default_factory=list)
    curated_subset: list[CuratedCandidate] = Field(default_factory=list)
    quarantined: int = 0


class TenderSubmission(BaseModel):
    """A single tender document and its matching outcome."""
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = ""
    status: FileStatus = FileStatus.UPLOADING
    progress: int = Field(default=0, ge=0, le=100)
    result: MatchResult | None = None
    error: str | None = None


# Workflow stage outputs. Assignment payloads are opaque JSON produced by the
# upstream service, but the keys each stage depends on are required.

class AssignmentExtraction(BaseModel):
    """Stage 1 output."""
    cv_assignments: list[Any] | dict[str, Any]
    tender_assignments: list[Any] | dict[str, Any]
    cv_text: str
    tender_text: str = ""


class AssignmentSelection(BaseModel):
    """Stage 2 output."""
    selected_assignments: list[Any] | dict[str, Any]


class WriteUp(BaseModel):
    """Stage 3 output."""
    write_up: str | list[Any] | dict[str, Any]


class ExpertProfile(BaseModel):
    """Stage 4 output."""
    expert_profile: str | list[Any] | dict[str, Any]


class ProcessingState(BaseModel):
    """Progress of the four-stage workflow."""
    current_stage: int = Field(default=0, ge=0, le=4)
    is_processing: bool = False
    last_error: str | None = None
    completed: list[bool] = Field(default_factory=lambda: [False, False, False, False])
