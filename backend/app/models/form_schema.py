"""Pydantic models for the canonical application schema of a program.

A schema is an ordered list of :class:`FormField` plus the common-application
inclusion flags.  Only this canonical shape is ever handed to the workflow
engine or the API; legacy storage shapes are normalised by
:mod:`app.services.schema_resolver`.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FIELD_TYPES = (
    "short_text",
    "long_text",
    "date",
    "select",
    "checkbox",
    "file",
)

PROFILE_SECTIONS = ("personal", "family", "writing", "experience")


# ---------------------------------------------------------------------------
# Field
# ---------------------------------------------------------------------------


class FormField(BaseModel):
    """One question of an application form.

    ``key`` anchors applicant answers on the server side and must survive
    reorders and edits unchanged.  Unknown attributes from older builders
    (placeholder, help text, ...) are preserved as extras.
    """

    model_config = ConfigDict(extra="allow")

    key: str = Field(..., min_length=1, description="Stable field identifier")
    type: str = Field(..., description="One of FIELD_TYPES")
    label: str = Field("", max_length=1000)
    required: bool = False
    options: List[str] = Field(default_factory=list)
    maxLength: Optional[int] = Field(None, ge=1)
    maxWords: Optional[int] = Field(None, ge=1)

    @field_validator("type")
    @classmethod
    def type_must_be_known(cls, v: str) -> str:
        if v not in FIELD_TYPES:
            raise ValueError(
                f"Invalid field type '{v}'. Must be one of: {', '.join(FIELD_TYPES)}"
            )
        return v


class CommonFlags(BaseModel):
    """Which shared common-application templates precede the program fields."""

    applyhub: bool = False
    coalition: bool = False


class ApplicationSchema(BaseModel):
    """Canonical ``{fields, common}`` schema document."""

    fields: List[FormField] = Field(default_factory=list)
    common: CommonFlags = Field(default_factory=CommonFlags)

    def keys(self) -> List[str]:
        return [f.key for f in self.fields]


# ---------------------------------------------------------------------------
# Applicant profile auto-fill
# ---------------------------------------------------------------------------


class ProfileSections(BaseModel):
    personal: bool = True
    family: bool = True
    writing: bool = True
    experience: bool = True


class ProfileSettings(BaseModel):
    """``metadata.application.profile``: profile sections that pre-fill the form."""

    enabled: bool = False
    sections: ProfileSections = Field(default_factory=ProfileSections)
