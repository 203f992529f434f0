"""Editable state of one application-form builder session.

A :class:`BuilderSession` holds the ordered field list, the common
application flags and the profile settings an author is editing, and turns
them back into a schema document on save.  Persistence goes through
:class:`~app.services.review_workflow.ReviewWorkflow`; the session never
writes a status itself.

Failures never escape a session method and never touch the field list:
the error is logged and surfaced through :attr:`BuilderSession.message`, so
the author can simply retry.
"""

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.models.actor import Actor
from app.models.form_schema import (
    FIELD_TYPES,
    ApplicationSchema,
    CommonFlags,
    FormField,
    ProfileSettings,
)
from app.models.program import Program, ReviewStatus
from app.services.access_control import VIEW_ORG, VIEW_SUPER
from app.services.program_errors import ProgramWorkflowError
from app.services.realtime import ProgramChangeHub
from app.services.review_workflow import ReviewWorkflow
from app.services.schema_resolver import (
    SchemaView,
    generate_field_key,
    get_review_status,
    resolve_profile,
    resolve_schema,
    schema_problems,
    uses_pending_schema,
)

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELD_ATTRS = frozenset({"key", "type"})

LOCKED_MESSAGE = "This program is awaiting review. Choose Edit to make changes."
READ_ONLY_MESSAGE = "The review view is read-only."


def default_label(field_type: str) -> str:
    """``long_text`` -> ``Long Text``."""
    return field_type.replace("_", " ").title()


class BuilderSession:
    """One author's (or reviewer's) view of a program's application form."""

    def __init__(
        self,
        workflow: ReviewWorkflow,
        actor: Actor,
        program_id: str,
        view: str = VIEW_ORG,
        key_factory: Callable[[str], str] = generate_field_key,
    ):
        self.workflow = workflow
        self.actor = actor
        self.program_id = str(program_id)
        self.view = view
        self._key_factory = key_factory

        self.program: Optional[Program] = None
        self.fields: List[FormField] = []
        self.common = CommonFlags()
        self.profile = ProfileSettings()
        self.staged = False
        self.override = False
        self.message: Optional[str] = None

        self._generation = 0
        self._reload_task: Optional[asyncio.Task] = None
        self._hub: Optional[ProgramChangeHub] = None
        self._queue: Optional[asyncio.Queue] = None
        self._listener: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def schema_view(self) -> SchemaView:
        return SchemaView.REVIEW if self.view == VIEW_SUPER else SchemaView.EDITING

    @property
    def review_status(self) -> ReviewStatus:
        return get_review_status(self.program)

    @property
    def editable(self) -> bool:
        if self.view == VIEW_SUPER or self.program is None:
            return False
        return self.review_status != ReviewStatus.SUBMITTED or self.override

    def schema(self) -> ApplicationSchema:
        return ApplicationSchema(
            fields=[f.model_copy(deep=True) for f in self.fields],
            common=self.common.model_copy(),
        )

    def validate(self) -> List[str]:
        """Advisory check of the current fields; saving does not require it."""
        return schema_problems(self.schema())

    def _apply_program(self, program: Program) -> None:
        schema = resolve_schema(program, self.schema_view)
        self.program = program
        self.fields = list(schema.fields)
        self.common = schema.common
        self.profile = resolve_profile(program, self.schema_view)
        self.staged = uses_pending_schema(program, self.schema_view)

    def _check_editable(self) -> bool:
        if self.editable:
            return True
        self.message = READ_ONLY_MESSAGE if self.view == VIEW_SUPER else LOCKED_MESSAGE
        return False

    # ------------------------------------------------------------------
    # Field list operations (local only)
    # ------------------------------------------------------------------

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self.fields):
            raise IndexError("Field index out of range")

    def add_field(self, field_type: str) -> Optional[FormField]:
        if not self._check_editable():
            return None
        if field_type not in FIELD_TYPES:
            raise ValueError(
                f"Invalid field type '{field_type}'. Must be one of: {', '.join(FIELD_TYPES)}"
            )
        used = {f.key for f in self.fields}
        key = self._key_factory(field_type)
        while key in used:
            key = self._key_factory(field_type)
        field = FormField(key=key, type=field_type, label=default_label(field_type))
        self.fields.append(field)
        return field

    def reorder_field(self, from_index: int, to_index: int) -> bool:
        if not self._check_editable():
            return False
        self._check_index(from_index)
        self._check_index(to_index)
        field = self.fields.pop(from_index)
        self.fields.insert(to_index, field)
        return True

    def update_field(self, index: int, changes: Dict[str, Any]) -> Optional[FormField]:
        """Merge ``changes`` into one field.  ``key`` and ``type`` are fixed."""
        if not self._check_editable():
            return None
        self._check_index(index)
        current = self.fields[index]
        fixed = _IMMUTABLE_FIELD_ATTRS & set(changes)
        if fixed:
            raise ValueError(f"Cannot change {', '.join(sorted(fixed))} of an existing field")
        data = current.model_dump()
        data.update(changes)
        updated = FormField(**data)
        self.fields[index] = updated
        return updated

    def remove_field(self, index: int) -> Optional[FormField]:
        if not self._check_editable():
            return None
        self._check_index(index)
        return self.fields.pop(index)

    def set_common(
        self, applyhub: Optional[bool] = None, coalition: Optional[bool] = None
    ) -> bool:
        if not self._check_editable():
            return False
        self.common = CommonFlags(
            applyhub=self.common.applyhub if applyhub is None else applyhub,
            coalition=self.common.coalition if coalition is None else coalition,
        )
        return True

    def set_profile(self, profile: ProfileSettings) -> bool:
        if not self._check_editable():
            return False
        self.profile = profile
        return True

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def _run(self, operation: str, call: Awaitable[Program], success: str) -> bool:
        try:
            program = await call
        except ProgramWorkflowError as exc:
            logger.warning("Builder %s failed for program %s: %s", operation, self.program_id, exc.message)
            self.message = exc.message
            return False
        self._generation += 1
        self._cancel_reload()
        self._apply_program(program)
        self.message = success
        return True

    async def load(self) -> bool:
        return await self._run(
            "load",
            self.workflow.get_program(self.actor, self.program_id, self.view),
            None,
        )

    async def reload(self) -> bool:
        return await self.load()

    async def begin_edit(self) -> bool:
        if self.view == VIEW_SUPER:
            self.message = READ_ONLY_MESSAGE
            return False
        ok = await self._run(
            "begin_edit",
            self.workflow.begin_edit(self.actor, self.program_id, self.view),
            None,
        )
        if ok:
            self.override = True
        return ok

    async def save(self) -> bool:
        """Persist the session and replace it with the stored result."""
        if self.program is None:
            self.message = "Program is not loaded"
            return False
        if self.view == VIEW_SUPER:
            self.message = READ_ONLY_MESSAGE
            return False
        ok = await self._run(
            "save",
            self.workflow.save_edit(
                self.actor,
                self.program_id,
                self.schema(),
                profile=self.profile,
                expected_version=self.program.version,
                override=self.override,
                view=self.view,
            ),
            "Changes saved",
        )
        if ok and self.staged:
            self.message = "Changes saved. They go live once they are approved and published."
        return ok

    async def submit(self, note: Optional[str] = None) -> bool:
        return await self._run(
            "submit",
            self.workflow.submit_for_review(self.actor, self.program_id, note, view=self.view),
            "Submitted for review",
        )

    async def publish(self, scope: str = "org", coalition_id: Optional[str] = None) -> bool:
        ok = await self._run(
            "publish",
            self.workflow.publish(
                self.actor, self.program_id, scope, coalition_id, view=self.view
            ),
            "Published",
        )
        if ok and self.review_status == ReviewStatus.SUBMITTED:
            self.message = "Submitted for approval before publishing"
        return ok

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    def _cancel_reload(self) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self._reload_task = None

    def handle_change(self, program: Program) -> Optional[asyncio.Task]:
        """React to a pushed row: supersede any pending reload with a new one."""
        if self.program is not None and program.version <= self.program.version:
            return None
        self._generation += 1
        self._cancel_reload()
        self._reload_task = asyncio.create_task(self._reload(self._generation))
        return self._reload_task

    async def _reload(self, generation: int) -> None:
        try:
            program = await self.workflow.get_program(self.actor, self.program_id, self.view)
        except ProgramWorkflowError as exc:
            if generation == self._generation:
                logger.warning("Reload of program %s failed: %s", self.program_id, exc.message)
                self.message = exc.message
            return
        if generation != self._generation:
            return
        if self.program is not None and program.version < self.program.version:
            return
        self._apply_program(program)
        self.message = "This program was updated elsewhere; the form was reloaded"

    async def wait_for_reload(self) -> None:
        task = self._reload_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def attach(self, hub: ProgramChangeHub) -> None:
        """Follow server-side changes of the program via ``hub``."""
        self.detach()
        self._hub = hub
        self._queue = hub.subscribe(self.program_id)
        self._listener = asyncio.create_task(self._listen(self._queue))

    async def _listen(self, queue: asyncio.Queue) -> None:
        while True:
            program = await queue.get()
            self.handle_change(program)

    def detach(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            self._listener = None
        if self._hub is not None and self._queue is not None:
            self._hub.unsubscribe(self.program_id, self._queue)
        self._hub = None
        self._queue = None
        self._cancel_reload()
