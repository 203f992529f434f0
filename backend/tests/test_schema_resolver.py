"""
Unit Tests for the Schema Resolver

Covers review status coercion, resolution of every legacy storage shape,
field normalisation, the pending/live split, validation problems and
common-application composition.

Usage:
    cd backend && pytest tests/test_schema_resolver.py -v
"""

import itertools
import os
import sys
import uuid
from typing import Any, Dict, List, Optional

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.models.form_schema import ApplicationSchema, CommonFlags, FormField
from app.models.program import Program, ReviewStatus
from app.services.schema_resolver import (
    APPLYHUB_COMMON_TEMPLATE,
    SchemaView,
    canonical_field_type,
    compose_form,
    generate_field_key,
    get_review_status,
    is_live,
    normalize_fields,
    resolve_profile,
    resolve_schema,
    schema_problems,
    uses_pending_schema,
)


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================

def make_field(key: str, label: str = "Question", field_type: str = "short_text", **extra) -> Dict[str, Any]:
    return {"key": key, "type": field_type, "label": label, **extra}


def make_program(
    metadata: Optional[Dict[str, Any]] = None,
    published: bool = False,
) -> Program:
    """Factory for a program row with the given metadata bag."""
    return Program(
        id=str(uuid.uuid4()),
        organization_id="org-1",
        name="Spring Audition",
        type="audition",
        metadata=metadata or {},
        published=published,
    )


def counting_keys():
    counter = itertools.count(1)
    return lambda index: f"generated-{next(counter)}"


# ============================================================================
# REVIEW STATUS
# ============================================================================

class TestReviewStatus:
    """getReviewStatus never propagates unknown values."""

    def test_missing_status_is_draft(self):
        assert get_review_status(make_program()) == ReviewStatus.DRAFT

    def test_unknown_status_is_draft(self):
        program = make_program({"review_status": "archived"})
        assert get_review_status(program) == ReviewStatus.DRAFT

    def test_non_string_status_is_draft(self):
        assert get_review_status({"metadata": {"review_status": 42}}) == ReviewStatus.DRAFT

    def test_none_program_is_draft(self):
        assert get_review_status(None) == ReviewStatus.DRAFT

    def test_known_status_is_kept(self):
        for status in ReviewStatus:
            program = make_program({"review_status": status.value})
            assert get_review_status(program) == status

    def test_is_live_follows_published_flag(self):
        assert is_live(make_program(published=True))
        assert not is_live(make_program({"review_status": "approved"}))


# ============================================================================
# LEGACY LOCATIONS
# ============================================================================

class TestLiveResolution:
    """Every historical storage shape resolves to the same canonical schema."""

    def test_application_schema_location(self):
        program = make_program({"application": {"schema": {"fields": [make_field("a")]}}})
        assert resolve_schema(program).keys() == ["a"]

    def test_form_builder_location(self):
        program = make_program({"form": {"builder": {"fields": [make_field("b")]}}})
        assert resolve_schema(program).keys() == ["b"]

    def test_application_builder_location(self):
        program = make_program({"application": {"builder": [make_field("c")]}})
        assert resolve_schema(program).keys() == ["c"]

    def test_bare_builder_list(self):
        program = make_program({"builder": [make_field("d")]})
        assert resolve_schema(program).keys() == ["d"]

    def test_top_level_application_schema_column(self):
        row = {"metadata": {}, "application_schema": {"fields": [make_field("e")]}}
        assert resolve_schema(row).keys() == ["e"]

    def test_newest_location_wins(self):
        program = make_program(
            {
                "application": {"schema": {"fields": [make_field("new")]}},
                "form": {"builder": {"fields": [make_field("old")]}},
            }
        )
        assert resolve_schema(program).keys() == ["new"]

    def test_absent_schema_is_empty_with_default_flags(self):
        schema = resolve_schema(make_program())
        assert schema.fields == []
        assert schema.common == CommonFlags(applyhub=False, coalition=False)

    def test_malformed_metadata_never_raises(self):
        for row in (
            {"metadata": "not a dict"},
            {"metadata": {"application": {"schema": {"fields": "nope"}}}},
            {"metadata": {"application": ["x"]}},
            None,
        ):
            schema = resolve_schema(row)
            assert schema.fields == []

    def test_legacy_form_common_flags(self):
        program = make_program(
            {
                "form": {
                    "builder": {"fields": []},
                    "include_hub_common": True,
                    "include_coalition_common_app": False,
                }
            }
        )
        assert resolve_schema(program).common.applyhub is True
        assert resolve_schema(program).common.coalition is False

    def test_document_common_flags(self):
        program = make_program(
            {"application": {"schema": {"fields": [], "common": {"coalition": True}}}}
        )
        assert resolve_schema(program).common.coalition is True


# ============================================================================
# PENDING VS LIVE
# ============================================================================

class TestPendingSchema:
    """The staged copy is only visible to editing and review contexts."""

    def _staged(self, status: str) -> Program:
        return make_program(
            {
                "review_status": status,
                "application": {"schema": {"fields": [make_field("live")]}},
                "pending_schema": {"fields": [make_field("staged")]},
            },
            published=True,
        )

    def test_editing_view_sees_pending_changes(self):
        program = self._staged("pending_changes")
        assert resolve_schema(program, SchemaView.EDITING).keys() == ["staged"]
        assert uses_pending_schema(program, SchemaView.EDITING)

    def test_live_view_never_sees_pending(self):
        for status in ("pending_changes", "submitted", "changes_requested"):
            assert resolve_schema(self._staged(status), SchemaView.LIVE).keys() == ["live"]

    def test_review_view_sees_submitted_pending(self):
        assert resolve_schema(self._staged("submitted"), SchemaView.REVIEW).keys() == ["staged"]

    def test_published_status_ignores_stale_pending(self):
        program = self._staged("published")
        assert resolve_schema(program, SchemaView.EDITING).keys() == ["live"]

    def test_pending_profile_follows_pending_schema(self):
        program = self._staged("pending_changes")
        program.metadata["pending_profile"] = {"enabled": True, "sections": {"family": False}}
        assert resolve_profile(program, SchemaView.EDITING).enabled is True
        assert resolve_profile(program, SchemaView.EDITING).sections.family is False
        assert resolve_profile(program).enabled is False


# ============================================================================
# FIELD NORMALISATION
# ============================================================================

class TestFieldNormalisation:
    """Field dicts from older builders become canonical FormFields."""

    def test_id_is_used_as_key(self):
        fields = normalize_fields([{"id": "q1", "type": "short_text", "label": "Name"}])
        assert fields[0].key == "q1"

    def test_missing_and_duplicate_keys_are_replaced(self):
        fields = normalize_fields(
            [make_field("same"), make_field("same"), {"type": "date", "label": "When"}],
            key_factory=counting_keys(),
        )
        keys = [f.key for f in fields]
        assert keys[0] == "same"
        assert len(set(keys)) == 3

    def test_keyless_fields_get_the_same_keys_on_every_read(self):
        stored = [
            {"type": "short_text", "label": "Name"},
            {"key": "field-1", "type": "email", "label": "Email"},
            {"type": "date", "label": "Birthday"},
            {"type": "short_text", "label": "City"},
        ]
        first = [f.key for f in normalize_fields(stored)]
        second = [f.key for f in normalize_fields(stored)]
        assert first == second
        assert first[0] == "field-0"
        assert len(set(first)) == 4

    def test_type_spellings_are_canonicalised(self):
        assert canonical_field_type("shortText") == "short_text"
        assert canonical_field_type("Long Text") == "long_text"
        assert canonical_field_type("textarea") == "long_text"
        assert canonical_field_type("dropdown") == "select"
        assert canonical_field_type("") is None

    def test_unknown_type_becomes_short_text(self):
        fields = normalize_fields([make_field("x", field_type="hologram")])
        assert fields[0].type == "short_text"

    def test_title_is_used_as_label(self):
        fields = normalize_fields([{"key": "x", "type": "checkbox", "title": "Agree?"}])
        assert fields[0].label == "Agree?"

    def test_string_options_are_split(self):
        fields = normalize_fields([make_field("s", field_type="select", options="Red, Green\nBlue")])
        assert fields[0].options == ["Red", "Green", "Blue"]

    def test_length_limits_only_kept_for_long_text(self):
        fields = normalize_fields(
            [
                make_field("a", field_type="long_text", max=500, max_words="120"),
                make_field("b", field_type="short_text", maxLength=20),
            ]
        )
        assert fields[0].maxLength == 500
        assert fields[0].maxWords == 120
        assert fields[1].maxLength is None

    def test_non_dict_entries_are_dropped(self):
        fields = normalize_fields(["junk", None, make_field("ok")])
        assert [f.key for f in fields] == ["ok"]

    def test_unknown_attributes_are_preserved(self):
        fields = normalize_fields([make_field("a", placeholder="Your name")])
        assert fields[0].model_dump()["placeholder"] == "Your name"

    def test_generated_keys_are_prefixed_by_type(self):
        assert generate_field_key("long_text").startswith("long_text_")


# ============================================================================
# VALIDATION + COMPOSITION
# ============================================================================

class TestSchemaProblems:
    """Strict checks applied on submit and publish."""

    def test_clean_schema_has_no_problems(self):
        schema = ApplicationSchema(
            fields=[FormField(key="a", type="select", label="Pick", options=["x"])]
        )
        assert schema_problems(schema) == []

    def test_all_problems_are_reported_together(self):
        schema = ApplicationSchema(
            fields=[
                FormField(key="a", type="short_text", label=""),
                FormField(key="b", type="select", label="Pick"),
                FormField(key="c", type="date", label="When", maxWords=3),
                FormField(key="a", type="checkbox", label="Again"),
            ]
        )
        problems = schema_problems(schema)
        assert len(problems) == 4
        assert any("needs a label" in p for p in problems)
        assert any("without options" in p for p in problems)
        assert any("long text" in p for p in problems)
        assert any("reuses key" in p for p in problems)


class TestComposeForm:
    """Common templates come first; later duplicates are dropped."""

    def _schema(self, applyhub: bool, coalition: bool) -> ApplicationSchema:
        return ApplicationSchema(
            fields=[
                FormField(key="applyhub_email", type="short_text", label="Email again"),
                FormField(key="essay", type="long_text", label="Essay"),
            ],
            common=CommonFlags(applyhub=applyhub, coalition=coalition),
        )

    def test_program_fields_only(self):
        composed = compose_form(self._schema(False, False), [make_field("gpa")])
        assert [f.key for f in composed] == ["applyhub_email", "essay"]

    def test_all_sections_in_order_with_unique_keys(self):
        template: List[Dict[str, Any]] = [make_field("gpa", "GPA"), make_field("essay", "Coalition essay")]
        composed = compose_form(self._schema(True, True), template)
        keys = [f.key for f in composed]
        applyhub_keys = [f["key"] for f in APPLYHUB_COMMON_TEMPLATE]

        assert keys[: len(applyhub_keys)] == applyhub_keys
        assert keys[len(applyhub_keys):] == ["gpa", "essay"]
        assert len(keys) == len(set(keys))
        # The coalition template claimed "essay" first.
        assert composed[-1].label == "Coalition essay"

    def test_coalition_flag_without_template(self):
        composed = compose_form(self._schema(False, True), None)
        assert [f.key for f in composed] == ["applyhub_email", "essay"]
