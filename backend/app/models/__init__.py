"""
ApplyHub API Models

Pydantic models for data validation and serialization.
"""

from .actor import Actor, Capability
from .form_schema import (
    ApplicationSchema,
    CommonFlags,
    FormField,
    ProfileSections,
    ProfileSettings,
)
from .program import (
    BuilderStateResponse,
    Program,
    ProgramDraftCreate,
    ProgramDraftUpdate,
    ProgramListResponse,
    PublicForm,
    PublicProgram,
    PublishRequest,
    ReviewRequest,
    ReviewStatus,
    SaveSchemaRequest,
    StatusHistoryEntry,
    StatusHistoryResponse,
    SubmitForReviewRequest,
    UnpublishRequest,
)

__all__ = [
    "Actor",
    "Capability",
    "ApplicationSchema",
    "CommonFlags",
    "FormField",
    "ProfileSections",
    "ProfileSettings",
    "BuilderStateResponse",
    "Program",
    "ProgramDraftCreate",
    "ProgramDraftUpdate",
    "ProgramListResponse",
    "PublicForm",
    "PublicProgram",
    "PublishRequest",
    "ReviewRequest",
    "ReviewStatus",
    "SaveSchemaRequest",
    "StatusHistoryEntry",
    "StatusHistoryResponse",
    "SubmitForReviewRequest",
    "UnpublishRequest",
]
