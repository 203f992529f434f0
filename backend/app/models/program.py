"""Pydantic request/response schemas for programs and the review workflow."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.form_schema import (
    ApplicationSchema,
    FormField,
    ProfileSettings,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------


class ReviewStatus(str, Enum):
    """Workflow state stored in ``metadata.review_status``."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    UNPUBLISHED = "unpublished"
    PUBLISHED = "published"
    PENDING_CHANGES = "pending_changes"


# Open-ended: unknown types are accepted for forward compatibility.
KNOWN_PROGRAM_TYPES = ("audition", "scholarship", "application", "competition")

PUBLISH_SCOPES = ("org", "coalition")

PROGRAM_VIEWS = ("org", "coalition", "super")


# ---------------------------------------------------------------------------
# Program row
# ---------------------------------------------------------------------------


class Program(BaseModel):
    """Full program row as held by the store (mirrors all DB columns)."""

    id: str
    organization_id: str
    name: str
    type: str = "application"
    description: Optional[str] = None
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Publication
    published: bool = False
    published_scope: Optional[str] = None
    published_by: Optional[str] = None
    published_at: Optional[datetime] = None
    published_coalition_id: Optional[str] = None

    # Optimistic concurrency stamp, bumped by every write
    version: int = 1

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ProgramListResponse(BaseModel):
    programs: List[Program]
    total: int


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


def _strip_required(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Value cannot be empty or whitespace")
    return v.strip()


class ProgramDetails(BaseModel):
    """Descriptive fields shared by draft create and update."""

    name: str = Field(..., min_length=1, max_length=200, description="Program name")
    type: str = Field(..., min_length=1, max_length=50, description="Program type")
    description: Optional[str] = Field(None, max_length=10000)
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "type")
    @classmethod
    def details_not_blank(cls, v: str) -> str:
        return _strip_required(v)


class ProgramDraftCreate(ProgramDetails):
    """Payload for ``create_draft``."""

    organization_id: str = Field(..., min_length=1, description="Owning organization")

    @field_validator("organization_id")
    @classmethod
    def organization_not_blank(cls, v: str) -> str:
        return _strip_required(v)


class ProgramDraftUpdate(ProgramDetails):
    """Payload for ``update_draft``.  The owning organization cannot change."""

    expected_version: Optional[int] = Field(None, ge=1)


class SubmitForReviewRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)


class ReviewRequest(BaseModel):
    """Super-admin review decision on a submitted program."""

    action: str = Field(
        ...,
        pattern=r"^(approve|request_changes)$",
        description="Review action: approve or request_changes",
    )
    note: Optional[str] = Field(None, max_length=2000)


class PublishRequest(BaseModel):
    scope: str = Field(..., pattern=r"^(org|coalition)$")
    coalition_id: Optional[str] = None
    note: Optional[str] = Field(None, max_length=2000)


class UnpublishRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)


class SaveSchemaRequest(BaseModel):
    """Builder save: the full schema document plus profile flags."""

    model_config = ConfigDict(populate_by_name=True)

    application_schema: ApplicationSchema = Field(..., alias="schema")
    profile: Optional[ProfileSettings] = None
    expected_version: Optional[int] = Field(None, ge=1)
    override: bool = Field(
        False, description="Author edit override for a submitted program"
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BuilderStateResponse(BaseModel):
    """What a builder screen needs to start an edit session."""

    model_config = ConfigDict(populate_by_name=True)

    program: Program
    review_status: ReviewStatus
    application_schema: ApplicationSchema = Field(..., alias="schema")
    profile: ProfileSettings
    editable: bool
    staged: bool = Field(
        False, description="True when the schema shown is the pending (unapproved) one"
    )


class StatusHistoryEntry(BaseModel):
    program_id: str
    old_status: Optional[str] = None
    new_status: str
    changed_by: str
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StatusHistoryResponse(BaseModel):
    history: List[StatusHistoryEntry]


class PublicProgram(BaseModel):
    """Published-only projection; never carries draft or pending data."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    type: str
    description: Optional[str] = None
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    published_scope: Optional[str] = None
    published_at: Optional[datetime] = None
    published_coalition_id: Optional[str] = None
    organization_id: str
    organization_name: Optional[str] = None
    organization_slug: Optional[str] = None
    coalition_name: Optional[str] = None
    coalition_slug: Optional[str] = None
    application_schema: ApplicationSchema = Field(default_factory=ApplicationSchema)
    profile: ProfileSettings = Field(default_factory=ProfileSettings)


class PublicForm(BaseModel):
    """Composed applicant form: common templates first, then program fields."""

    program_id: str
    fields: List[FormField]
    profile: ProfileSettings
