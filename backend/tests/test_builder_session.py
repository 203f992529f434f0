"""
Tests for BuilderSession, the editable state behind the form builder.

Usage:
    cd backend && pytest tests/test_builder_session.py -v
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.models.actor import Actor
from app.models.form_schema import ProfileSettings
from app.models.program import ProgramDraftCreate, ProgramDraftUpdate, ReviewStatus
from app.services.builder_session import (
    LOCKED_MESSAGE,
    READ_ONLY_MESSAGE,
    BuilderSession,
    default_label,
)
from app.services.memory_program_store import InMemoryProgramStore
from app.services.program_errors import StoreUnavailableError
from app.services.realtime import ProgramChangeHub
from app.services.review_workflow import ReviewWorkflow


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================

ORG_ID = "org-1"
ORG_ADMIN = Actor(user_id="user-org-admin", org_ids=frozenset({ORG_ID}))
CO_ADMIN = Actor(user_id="user-co-admin", org_ids=frozenset({ORG_ID}))
SUPER = Actor(user_id="user-super", super_admin=True)


def make_workflow(hub=None) -> ReviewWorkflow:
    store = InMemoryProgramStore()
    store.add_organization(ORG_ID, "Riverside Arts")
    return ReviewWorkflow(store, hub, clock=lambda: datetime(2026, 3, 1, tzinfo=timezone.utc))


def sequential_keys(*keys):
    """Key factory handing out ``keys`` in order, then numbered keys."""
    pending = list(keys)
    counter = iter(range(1000))

    def factory(field_type):
        if pending:
            return pending.pop(0)
        return f"{field_type}_{next(counter)}"

    return factory


async def new_program(workflow: ReviewWorkflow, **metadata):
    return await workflow.create_draft(
        ORG_ADMIN,
        ProgramDraftCreate(
            organization_id=ORG_ID, name="Spring Audition", type="audition", metadata=metadata
        ),
    )


async def loaded_session(workflow: ReviewWorkflow, program_id: str, actor=ORG_ADMIN, view="org", **kwargs):
    session = BuilderSession(workflow, actor, program_id, view=view, **kwargs)
    assert await session.load()
    return session


async def fill_valid_form(session: BuilderSession) -> None:
    session.add_field("short_text")
    session.update_field(0, {"label": "Your name", "required": True})
    session.add_field("select")
    session.update_field(1, {"label": "Instrument", "options": ["Piano", "Violin"]})
    session.add_field("long_text")
    session.update_field(2, {"label": "Statement", "maxWords": 200})


def snapshot(session: BuilderSession):
    return [(f.key, f.type, f.label) for f in session.fields]


# ============================================================================
# LOCAL FIELD OPERATIONS
# ============================================================================

class TestFieldOperations:
    """Local edits of the field list."""

    def test_default_label(self):
        assert default_label("long_text") == "Long Text"
        assert default_label("file") == "File"

    def test_add_field_generates_unique_keys(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(
                workflow, program.id, key_factory=sequential_keys("k1", "k1", "k2")
            )
            session.add_field("short_text")
            session.add_field("long_text")
            return session

        session = asyncio.run(scenario())
        assert [f.key for f in session.fields] == ["k1", "k2"]
        assert session.fields[1].label == "Long Text"

    def test_add_field_rejects_unknown_type(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.add_field("hologram")

        with pytest.raises(ValueError):
            asyncio.run(scenario())

    def test_reorder_keeps_keys(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            before = {f.key for f in session.fields}
            session.reorder_field(0, 2)
            return before, session

        before, session = asyncio.run(scenario())
        assert {f.key for f in session.fields} == before
        assert [f.label for f in session.fields] == ["Instrument", "Statement", "Your name"]

    def test_reorder_out_of_range(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.add_field("date")
            session.reorder_field(0, 3)

        with pytest.raises(IndexError):
            asyncio.run(scenario())

    def test_negative_index_is_out_of_range(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            before = snapshot(session)
            with pytest.raises(IndexError):
                session.update_field(-1, {"label": "Renamed"})
            with pytest.raises(IndexError):
                session.remove_field(-1)
            return before, session

        before, session = asyncio.run(scenario())
        assert snapshot(session) == before

    def test_key_and_type_are_fixed(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.add_field("date")
            with pytest.raises(ValueError):
                session.update_field(0, {"key": "renamed"})
            with pytest.raises(ValueError):
                session.update_field(0, {"type": "checkbox"})
            return session

        session = asyncio.run(scenario())
        assert session.fields[0].type == "date"

    def test_remove_and_flags(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            removed = session.remove_field(1)
            session.set_common(applyhub=True)
            session.set_profile(ProfileSettings(enabled=True))
            return removed, session

        removed, session = asyncio.run(scenario())
        assert removed.label == "Instrument"
        assert len(session.fields) == 2
        assert session.common.applyhub is True
        assert session.common.coalition is False
        assert session.profile.enabled is True

    def test_validate_is_advisory(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.add_field("select")
            problems = session.validate()
            saved = await session.save()
            return problems, saved

        problems, saved = asyncio.run(scenario())
        assert len(problems) == 1
        assert saved is True


# ============================================================================
# SAVE, LOAD AND LOCKING
# ============================================================================

class TestSaveAndReload:

    def test_save_then_reload_is_stable(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            session.reorder_field(2, 0)
            edited = snapshot(session)
            assert await session.save()
            saved = snapshot(session)
            fresh = await loaded_session(workflow, program.id)
            return edited, saved, snapshot(fresh), session

        edited, saved, reloaded, session = asyncio.run(scenario())
        assert saved == edited
        assert reloaded == edited
        assert session.message == "Changes saved"
        assert session.program.version == 2

    def test_saving_live_program_stages_changes(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            await session.save()
            assert await session.publish()
            session.update_field(0, {"label": "Legal name"})
            await session.save()
            public = await workflow.get_public_program(program.id)
            return session, public

        session, public = asyncio.run(scenario())
        assert session.review_status == ReviewStatus.PENDING_CHANGES
        assert session.staged is True
        assert session.message == "Changes saved. They go live once they are approved and published."
        assert public.application_schema.fields[0].label == "Your name"

    def test_failed_save_keeps_local_edits(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            before = snapshot(session)
            with patch.object(
                workflow, "save_edit", side_effect=StoreUnavailableError("Store is down")
            ):
                ok = await session.save()
            return ok, before, session

        ok, before, session = asyncio.run(scenario())
        assert ok is False
        assert session.message == "Store is down"
        assert snapshot(session) == before
        assert session.program.version == 1

    def test_submitted_program_is_locked_until_edit(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            await session.save()
            assert await session.submit("Please review")
            assert session.message == "Submitted for review"

            assert session.add_field("date") is None
            assert session.message == LOCKED_MESSAGE
            assert session.reorder_field(0, 1) is False

            assert await session.begin_edit()
            added = session.add_field("date")
            saved = await session.save()
            return session, added, saved

        session, added, saved = asyncio.run(scenario())
        assert added is not None
        assert saved is True
        assert session.review_status == ReviewStatus.DRAFT
        assert len(session.fields) == 4

    def test_super_view_is_read_only(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id, actor=SUPER, view="super")
            added = session.add_field("date")
            saved = await session.save()
            return session, added, saved

        session, added, saved = asyncio.run(scenario())
        assert added is None
        assert saved is False
        assert session.message == READ_ONLY_MESSAGE
        assert session.editable is False

    def test_publish_redirected_to_review(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow, requires_super_approval=True)
            session = await loaded_session(workflow, program.id)
            await fill_valid_form(session)
            await session.save()
            ok = await session.publish()
            return ok, session

        ok, session = asyncio.run(scenario())
        assert ok is True
        assert session.review_status == ReviewStatus.SUBMITTED
        assert session.message == "Submitted for approval before publishing"

    def test_publish_with_problems_reports_them(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.add_field("select")
            await session.save()
            ok = await session.publish()
            return ok, session

        ok, session = asyncio.run(scenario())
        assert ok is False
        assert "problem" in session.message
        assert session.review_status == ReviewStatus.DRAFT


# ============================================================================
# REALTIME
# ============================================================================

class TestRealtime:
    """Pushed rows reload the session; newer reloads supersede older ones."""

    def test_change_elsewhere_reloads_session(self):
        async def scenario():
            hub = ProgramChangeHub()
            workflow = make_workflow(hub)
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.attach(hub)
            await workflow.update_draft(
                CO_ADMIN,
                program.id,
                ProgramDraftUpdate(name="Autumn Audition", type="audition"),
            )
            await asyncio.sleep(0.05)
            await session.wait_for_reload()
            session.detach()
            return hub, session

        hub, session = asyncio.run(scenario())
        assert session.program.name == "Autumn Audition"
        assert session.program.version == 2
        assert session.message == "This program was updated elsewhere; the form was reloaded"
        assert hub.subscriber_count(session.program_id) == 0

    def test_own_save_does_not_trigger_reload(self):
        async def scenario():
            hub = ProgramChangeHub()
            workflow = make_workflow(hub)
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            session.attach(hub)
            session.add_field("date")
            await session.save()
            await asyncio.sleep(0.05)
            session.detach()
            return session

        session = asyncio.run(scenario())
        assert session.message == "Changes saved"

    def test_stale_notification_is_ignored(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)
            return session.handle_change(program)

        assert asyncio.run(scenario()) is None

    def test_newer_change_supersedes_pending_reload(self):
        async def scenario():
            workflow = make_workflow()
            program = await new_program(workflow)
            session = await loaded_session(workflow, program.id)

            v2 = await workflow.update_draft(
                CO_ADMIN, program.id, ProgramDraftUpdate(name="Second", type="audition")
            )
            real_get_program = workflow.get_program
            calls = []

            async def get_program(actor, program_id, view="org"):
                calls.append(program_id)
                if len(calls) == 1:
                    await asyncio.sleep(0.2)
                return await real_get_program(actor, program_id, view)

            workflow.get_program = get_program
            first = session.handle_change(v2)
            await asyncio.sleep(0)

            v3 = await workflow.update_draft(
                CO_ADMIN, program.id, ProgramDraftUpdate(name="Third", type="audition")
            )
            second = session.handle_change(v3)
            await session.wait_for_reload()
            return session, first, second

        session, first, second = asyncio.run(scenario())
        assert first.cancelled()
        assert second.done() and not second.cancelled()
        assert session.program.name == "Third"
        assert session.program.version == 3
