"""Resolve the authoritative application schema of a program row.

Program schemas have lived in several places inside the ``metadata`` JSON
bag over time (``application.schema``, ``form.builder``,
``application.builder``, ``builder``, ``application_schema``) and field
dicts have used several spellings for the same thing (``id`` vs ``key``,
``shortText`` vs ``short_text``, ``max`` vs ``maxLength``).  Everything in
this module funnels those shapes into one :class:`ApplicationSchema`, so
the rest of the backend only sees the canonical form.

Resolution never raises: missing or malformed data resolves to an empty
field list with both common-application flags off.

Usage::

    from app.services.schema_resolver import SchemaView, resolve_schema

    live = resolve_schema(program)
    editable = resolve_schema(program, SchemaView.EDITING)
"""

import logging
import re
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from app.models.form_schema import (
    FIELD_TYPES,
    PROFILE_SECTIONS,
    ApplicationSchema,
    CommonFlags,
    FormField,
    ProfileSections,
    ProfileSettings,
)
from app.models.program import Program, ReviewStatus

logger = logging.getLogger(__name__)

ProgramLike = Union[Program, Dict[str, Any], None]
KeyFactory = Callable[[int], str]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Older builders and imports used these names for the canonical types.
_TYPE_ALIASES: Dict[str, str] = {
    "text": "short_text",
    "string": "short_text",
    "input": "short_text",
    "shorttext": "short_text",
    "textarea": "long_text",
    "paragraph": "long_text",
    "longtext": "long_text",
    "essay": "long_text",
    "dropdown": "select",
    "choice": "select",
    "radio": "select",
    "boolean": "checkbox",
    "bool": "checkbox",
    "upload": "file",
    "attachment": "file",
    "fileupload": "file",
    "datepicker": "date",
}

_MAX_LENGTH_KEYS = ("maxLength", "max_length", "max")
_MAX_WORDS_KEYS = ("maxWords", "max_words")
_CONSUMED_KEYS = frozenset(
    {"key", "id", "type", "label", "title", "required", "options"}
    | set(_MAX_LENGTH_KEYS)
    | set(_MAX_WORDS_KEYS)
)
_LABEL_LIMIT = 1000

# Fixed ApplyHub common application, prepended when ``common.applyhub`` is set.
APPLYHUB_COMMON_TEMPLATE: List[Dict[str, Any]] = [
    {"key": "applyhub_full_name", "type": "short_text", "label": "Full Name", "required": True},
    {"key": "applyhub_email", "type": "short_text", "label": "Email", "required": True},
    {"key": "applyhub_phone", "type": "short_text", "label": "Phone Number"},
    {"key": "applyhub_date_of_birth", "type": "date", "label": "Date of Birth"},
    {"key": "applyhub_resume", "type": "file", "label": "Resume"},
]


class SchemaView(str, Enum):
    """Which copy of the schema the caller wants.

    ``LIVE`` is what applicants see.  ``EDITING`` is what an author keeps
    working on (the staged copy while changes await approval).  ``REVIEW`` is
    the artifact a super admin is asked to approve.
    """

    LIVE = "live"
    EDITING = "editing"
    REVIEW = "review"


_PENDING_STATUSES = {
    SchemaView.EDITING: {ReviewStatus.PENDING_CHANGES, ReviewStatus.CHANGES_REQUESTED},
    SchemaView.REVIEW: {ReviewStatus.PENDING_CHANGES, ReviewStatus.SUBMITTED},
}


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _as_row(program: ProgramLike) -> Dict[str, Any]:
    if program is None:
        return {}
    if isinstance(program, Program):
        return program.model_dump()
    if isinstance(program, dict):
        return program
    return {}


def _metadata(row: Dict[str, Any]) -> Dict[str, Any]:
    meta = row.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _sub(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = container.get(key)
    return value if isinstance(value, dict) else {}


def get_review_status(program: ProgramLike) -> ReviewStatus:
    """Return the program's review status; unknown or missing means draft."""
    raw = _metadata(_as_row(program)).get("review_status")
    if isinstance(raw, str):
        try:
            return ReviewStatus(raw)
        except ValueError:
            logger.debug("Coercing unknown review_status %r to draft", raw)
    return ReviewStatus.DRAFT


def is_live(program: ProgramLike) -> bool:
    """Whether the program is currently visible to applicants."""
    row = _as_row(program)
    meta = _metadata(row)
    return bool(
        row.get("published")
        or meta.get("published") is True
        or get_review_status(program) == ReviewStatus.PUBLISHED
    )


# ---------------------------------------------------------------------------
# Field normalisation
# ---------------------------------------------------------------------------


def generate_field_key(prefix: str = "field") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _default_key_factory(index: int) -> str:
    """Positional key for stored fields that never had one; stable across reads."""
    return f"field-{index}"


def canonical_field_type(raw: Any) -> Optional[str]:
    """Map any historical spelling of a field type onto ``FIELD_TYPES``."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    snake = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", raw.strip())
    snake = re.sub(r"[\s\-]+", "_", snake).lower()
    if snake in FIELD_TYPES:
        return snake
    return _TYPE_ALIASES.get(snake.replace("_", ""))


def _positive_int(raw: Any) -> Optional[int]:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _first(raw: Dict[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


def _options(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = re.split(r"[,\n]", raw)
    if not isinstance(raw, (list, tuple)):
        return []
    options = []
    for item in raw:
        if isinstance(item, dict):
            item = item.get("label") or item.get("value")
        if item is None:
            continue
        text = str(item).strip()
        if text:
            options.append(text)
    return options


def normalize_field(
    raw: Any,
    index: int,
    used_keys: set,
    key_factory: KeyFactory = _default_key_factory,
) -> Optional[FormField]:
    """Turn one stored field dict into a :class:`FormField`.

    A missing or already-used key is replaced with one from ``key_factory``
    (suffixed until unused) so keys stay unique within the list, and the same
    stored list always yields the same keys.  Returns None for entries that
    are not dicts.
    """
    if not isinstance(raw, dict):
        return None

    key = raw.get("key") or raw.get("id")
    key = str(key).strip() if key is not None else ""
    if not key or key in used_keys:
        base = key_factory(index)
        key, suffix = base, 1
        while key in used_keys:
            suffix += 1
            key = f"{base}-{suffix}"

    field_type = canonical_field_type(raw.get("type"))
    if field_type is None:
        logger.debug("Field %s has unknown type %r; using short_text", key, raw.get("type"))
        field_type = "short_text"

    label = raw.get("label")
    if label is None:
        label = raw.get("title")
    label = "" if label is None else str(label)[:_LABEL_LIMIT]

    data: Dict[str, Any] = {
        k: v for k, v in raw.items() if k not in _CONSUMED_KEYS
    }
    data.update(
        key=key,
        type=field_type,
        label=label,
        required=bool(raw.get("required", False)),
        options=_options(raw.get("options")),
    )
    if field_type == "long_text":
        data["maxLength"] = _positive_int(_first(raw, _MAX_LENGTH_KEYS))
        data["maxWords"] = _positive_int(_first(raw, _MAX_WORDS_KEYS))

    try:
        field = FormField(**data)
    except PydanticValidationError as exc:
        logger.warning("Dropping malformed field at index %d: %s", index, exc)
        return None

    used_keys.add(key)
    return field


def normalize_fields(
    raw_fields: Iterable[Any],
    key_factory: KeyFactory = _default_key_factory,
) -> List[FormField]:
    used: set = set()
    fields = []
    for index, raw in enumerate(raw_fields):
        field = normalize_field(raw, index, used, key_factory)
        if field is not None:
            fields.append(field)
    return fields


# ---------------------------------------------------------------------------
# Schema documents
# ---------------------------------------------------------------------------


def _field_list(container: Any) -> Optional[List[Any]]:
    """Raw field list of a stored schema container, or None when absent."""
    if isinstance(container, list):
        return container
    if isinstance(container, dict) and isinstance(container.get("fields"), list):
        return container["fields"]
    return None


def _live_container(row: Dict[str, Any]) -> Any:
    meta = _metadata(row)
    app_meta = _sub(meta, "application")
    candidates = (
        app_meta.get("schema"),
        _sub(meta, "form").get("builder"),
        app_meta.get("builder"),
        meta.get("builder"),
        meta.get("application_schema"),
        row.get("application_schema"),
    )
    for candidate in candidates:
        if _field_list(candidate) is not None:
            return candidate
    return None


def _common_flags(container: Any, row: Dict[str, Any]) -> CommonFlags:
    if isinstance(container, dict) and isinstance(container.get("common"), dict):
        common = container["common"]
    else:
        meta = _metadata(row)
        common = _sub(_sub(meta, "application"), "common")
        if not common:
            form = _sub(meta, "form")
            common = {
                "applyhub": form.get("include_hub_common", False),
                "coalition": form.get("include_coalition_common_app", False),
            }
    return CommonFlags(
        applyhub=bool(common.get("applyhub", False)),
        coalition=bool(common.get("coalition", False)),
    )


def uses_pending_schema(program: ProgramLike, view: SchemaView = SchemaView.LIVE) -> bool:
    """Whether ``resolve_schema(program, view)`` returns the staged copy."""
    statuses = _PENDING_STATUSES.get(view)
    if not statuses:
        return False
    pending = _metadata(_as_row(program)).get("pending_schema")
    return get_review_status(program) in statuses and _field_list(pending) is not None


def resolve_schema(
    program: ProgramLike,
    view: SchemaView = SchemaView.LIVE,
    key_factory: KeyFactory = _default_key_factory,
) -> ApplicationSchema:
    """Produce the canonical schema for ``program`` as seen through ``view``.

    The pending schema is only considered for ``EDITING`` and ``REVIEW``;
    the live view never exposes unapproved edits.
    """
    try:
        row = _as_row(program)
        if uses_pending_schema(program, view):
            container = _metadata(row)["pending_schema"]
        else:
            container = _live_container(row)
        raw_fields = _field_list(container) or []
        return ApplicationSchema(
            fields=normalize_fields(raw_fields, key_factory),
            common=_common_flags(container, row),
        )
    except Exception:
        logger.warning(
            "Schema resolution failed for program %s; using empty schema",
            _as_row(program).get("id"),
            exc_info=True,
        )
        return ApplicationSchema()


def resolve_profile(program: ProgramLike, view: SchemaView = SchemaView.LIVE) -> ProfileSettings:
    """Profile auto-fill settings; staged alongside ``pending_schema``."""
    meta = _metadata(_as_row(program))
    profile = _sub(_sub(meta, "application"), "profile")
    if uses_pending_schema(program, view) and isinstance(meta.get("pending_profile"), dict):
        profile = meta["pending_profile"]
    sections = _sub(profile, "sections")
    return ProfileSettings(
        enabled=bool(profile.get("enabled") or _sub(meta, "form").get("include_profile")),
        sections=ProfileSections(
            **{name: sections.get(name) is not False for name in PROFILE_SECTIONS}
        ),
    )


def schema_document(schema: ApplicationSchema) -> Dict[str, Any]:
    """Storage form of a schema (what is written into ``metadata``)."""
    return schema.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Validation and composition
# ---------------------------------------------------------------------------


def schema_problems(schema: ApplicationSchema) -> List[str]:
    """Problems that block submission or publishing (saving stays lenient)."""
    problems = []
    seen: set = set()
    for position, field in enumerate(schema.fields, start=1):
        name = field.label.strip() or f"Field {position}"
        if not field.label.strip():
            problems.append(f"Field {position} needs a label")
        if field.type == "select" and not field.options:
            problems.append(f"'{name}' is a select field without options")
        if field.type != "long_text" and (field.maxLength or field.maxWords):
            problems.append(f"'{name}': length limits only apply to long text fields")
        if field.key in seen:
            problems.append(f"'{name}' reuses key '{field.key}'")
        seen.add(field.key)
    return problems


def compose_form(
    schema: ApplicationSchema,
    coalition_template: Optional[Iterable[Any]] = None,
) -> List[FormField]:
    """Applicant-facing field list: common templates first, program fields last.

    A later field whose key is already taken by an earlier one is dropped.
    """
    sections: List[List[FormField]] = []
    if schema.common.applyhub:
        sections.append(normalize_fields(APPLYHUB_COMMON_TEMPLATE))
    if schema.common.coalition and coalition_template:
        sections.append(normalize_fields(coalition_template))
    sections.append(list(schema.fields))

    composed: List[FormField] = []
    seen: set = set()
    for section in sections:
        for field in section:
            if field.key in seen:
                continue
            seen.add(field.key)
            composed.append(field)
    return composed
