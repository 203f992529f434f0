"""Review workflow engine for programs.

The single authority for ``review_status`` transitions.  Org admins,
coalition managers and super admins all go through the same state machine;
their differences are expressed as capability checks
(:mod:`app.services.access_control`) and the ``view`` they read through.

Each mutating method:

1. checks the actor's capability for the action,
2. loads the program through the store,
3. decides the transition (raising before anything is written),
4. writes it as a compare-and-set on the loaded ``version``,
5. pushes the new row to the realtime hub and returns it.

A failed write leaves the stored status exactly as it was; nothing is
applied locally without the store's confirmation.

State machine::

    draft ──submit──▶ submitted ──approve──▶ approved ──▶ published
      ▲                 │   ▲                               │   │
      │         request_changes                    save edit│   │unpublish
      │                 ▼   │ submit                        ▼   ▼
      └──── save ── changes_requested        pending_changes  unpublished
"""

import asyncio
import copy
import logging
import os
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from dotenv import load_dotenv

from app.models.actor import Actor
from app.models.form_schema import ApplicationSchema, ProfileSettings
from app.models.program import (
    PUBLISH_SCOPES,
    BuilderStateResponse,
    Program,
    ProgramDraftCreate,
    ProgramDraftUpdate,
    PublicForm,
    PublicProgram,
    ReviewStatus,
    StatusHistoryEntry,
)
from app.services.access_control import (
    VIEW_COALITION,
    VIEW_ORG,
    VIEW_SUPER,
    program_coalition_id,
    require_capability,
    require_valid_view,
)
from app.services.program_errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    ProgramAccessError,
    StoreTimeoutError,
    StoreUnavailableError,
    ValidationError,
)
from app.services.program_store import (
    ProgramStore,
    StatusChange,
    StatusChanges,
    status_change_list,
)
from app.services.realtime import ProgramChangeHub
from app.services.schema_resolver import (
    SchemaView,
    get_review_status,
    is_live,
    normalize_fields,
    resolve_profile,
    resolve_schema,
    schema_document,
    schema_problems,
    compose_form,
    uses_pending_schema,
)

load_dotenv()

logger = logging.getLogger(__name__)

STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

T = TypeVar("T")

# Metadata keys owned by the workflow; ``update_draft`` cannot overwrite them.
WORKFLOW_METADATA_KEYS = frozenset(
    {
        "review_status",
        "review_note",
        "pending_schema",
        "pending_profile",
        "pending_changes_at",
        "pending_changes_by",
        "submitted_at",
        "submitted_by",
        "reviewed_at",
        "reviewed_by",
        "requested_publish_scope",
        "requested_coalition_id",
        "unpublished_at",
        "unpublished_by",
        "application",
    }
)

_PENDING_KEYS = ("pending_schema", "pending_profile", "pending_changes_at", "pending_changes_by")

_SUBMITTABLE = {
    ReviewStatus.DRAFT,
    ReviewStatus.CHANGES_REQUESTED,
    ReviewStatus.PENDING_CHANGES,
    ReviewStatus.UNPUBLISHED,
}

# Details (name, dates, ...) are frozen while a super admin is looking at them.
_DETAILS_LOCKED = {ReviewStatus.SUBMITTED, ReviewStatus.APPROVED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _raise_on_problems(schema: ApplicationSchema) -> None:
    problems = schema_problems(schema)
    if problems:
        raise ValidationError(
            f"Application form has {len(problems)} problem(s)", problems=problems
        )


class ReviewWorkflow:
    """Sequences program store calls into review workflow transitions.

    Args:
        store: Persistence port every read and write goes through.
        hub: Optional realtime hub notified after each successful write.
        timeout_seconds: Upper bound for any single store call.
        clock: Source of "now" for the timestamps written into rows.
    """

    def __init__(
        self,
        store: ProgramStore,
        hub: Optional[ProgramChangeHub] = None,
        timeout_seconds: float = STORE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.hub = hub
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("Store call %s timed out after %.1fs", operation, self.timeout_seconds)
            raise StoreTimeoutError(
                f"The program store did not respond in time ({operation})"
            ) from exc
        except (ConnectionError, OSError) as exc:
            logger.error("Store call %s failed: %s", operation, exc)
            raise StoreUnavailableError(
                f"The program store is unavailable ({operation})"
            ) from exc

    def _notify(self, program: Program) -> Program:
        if self.hub is not None:
            self.hub.publish(program)
        return program

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    async def _load(self, actor: Actor, program_id: str, view: Optional[str]) -> Tuple[Program, str]:
        """Load through ``view``, or through the first view the actor qualifies for."""
        if view is not None:
            require_valid_view(view)
            program = await self._call("get_program", self.store.get_program(actor, program_id, view))
            return program, view

        candidates = []
        if actor.org_ids or actor.reviewer_program_ids:
            candidates.append(VIEW_ORG)
        if actor.coalition_ids:
            candidates.append(VIEW_COALITION)
        if actor.super_admin:
            candidates.append(VIEW_SUPER)
        if not candidates:
            raise ProgramAccessError("Not authorized to access this program")

        last_error: Optional[ProgramAccessError] = None
        for candidate in candidates:
            try:
                program = await self._call(
                    "get_program", self.store.get_program(actor, program_id, candidate)
                )
                return program, candidate
            except ProgramAccessError as exc:
                last_error = exc
        raise last_error

    async def _write(
        self,
        actor: Actor,
        program: Program,
        changes: Dict[str, Any],
        status_change: Optional[StatusChanges] = None,
        expected_version: Optional[int] = None,
    ) -> Program:
        updated = await self._call(
            "update_program",
            self.store.update_program(
                actor,
                program.id,
                changes,
                expected_version if expected_version is not None else program.version,
                status_change,
            ),
        )
        for change in status_change_list(status_change):
            logger.info(
                "Program %s: %s -> %s by %s",
                program.id,
                change.old_status,
                change.new_status,
                actor.user_id,
            )
        return self._notify(updated)

    @staticmethod
    def _check_version(program: Program, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != program.version:
            raise ConcurrentModificationError(program.id, expected_version, program.version)

    @staticmethod
    def _reject_super_view(view: str, action: str) -> None:
        if view == VIEW_SUPER:
            raise ProgramAccessError(f"The super admin view is read-only; cannot {action.replace('_', ' ')}")

    def _promotion(
        self,
        actor: Actor,
        program: Program,
        scope: str,
        coalition_id: Optional[str],
    ) -> Dict[str, Any]:
        """Row changes that make ``program`` live, promoting staged edits."""
        meta = copy.deepcopy(program.metadata or {})
        if self._has_staged_schema(program):
            application = meta.get("application")
            if not isinstance(application, dict):
                application = {}
            application["schema"] = meta["pending_schema"]
            if isinstance(meta.get("pending_profile"), dict):
                application["profile"] = meta["pending_profile"]
            meta["application"] = application
        for key in _PENDING_KEYS + ("requested_publish_scope", "requested_coalition_id"):
            meta.pop(key, None)
        meta["review_status"] = ReviewStatus.PUBLISHED.value
        return {
            "metadata": meta,
            "published": True,
            "published_scope": scope,
            "published_by": actor.user_id,
            "published_at": self._clock(),
            "published_coalition_id": coalition_id if scope == "coalition" else None,
        }

    @staticmethod
    def _has_staged_schema(program: Program) -> bool:
        return uses_pending_schema(program, SchemaView.REVIEW) or uses_pending_schema(
            program, SchemaView.EDITING
        )

    @staticmethod
    def _candidate_schema(program: Program) -> ApplicationSchema:
        """The schema that would go live if ``program`` were published now."""
        status = get_review_status(program)
        view = SchemaView.REVIEW if status in (ReviewStatus.SUBMITTED, ReviewStatus.PENDING_CHANGES) else SchemaView.EDITING
        return resolve_schema(program, view)

    def _resolve_scope(
        self, actor: Actor, program: Program, scope: str, coalition_id: Optional[str]
    ) -> Optional[str]:
        if scope not in PUBLISH_SCOPES:
            raise ValidationError(
                f"Invalid publish scope '{scope}'. Must be one of: {', '.join(PUBLISH_SCOPES)}"
            )
        if scope != "coalition":
            return None
        coalition_id = coalition_id or program_coalition_id(program)
        if not coalition_id:
            raise ValidationError("A coalition is required to publish with coalition scope")
        if (
            not actor.super_admin
            and coalition_id not in actor.coalition_ids
            and coalition_id != program_coalition_id(program)
        ):
            raise ProgramAccessError("Not authorized to publish to this coalition")
        return str(coalition_id)

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def create_draft(self, actor: Actor, data: ProgramDraftCreate) -> Program:
        require_capability(actor, "create_draft")
        if data.open_at and data.close_at and data.close_at < data.open_at:
            raise ValidationError("close_at must not be before open_at")

        meta = {k: v for k, v in copy.deepcopy(data.metadata).items() if k not in WORKFLOW_METADATA_KEYS}
        if isinstance(data.metadata.get("application"), dict):
            meta["application"] = copy.deepcopy(data.metadata["application"])
        meta["review_status"] = ReviewStatus.DRAFT.value

        program = await self._call(
            "insert_program",
            self.store.insert_program(
                actor,
                {
                    "organization_id": data.organization_id,
                    "name": data.name,
                    "type": data.type,
                    "description": data.description,
                    "open_at": data.open_at,
                    "close_at": data.close_at,
                    "metadata": meta,
                    "published": False,
                },
            ),
        )
        logger.info("Program %s created as draft by %s", program.id, actor.user_id)
        return self._notify(program)

    async def update_draft(
        self,
        actor: Actor,
        program_id: str,
        data: ProgramDraftUpdate,
        view: Optional[str] = None,
    ) -> Program:
        require_capability(actor, "update_draft")
        program, view = await self._load(actor, program_id, view)
        self._reject_super_view(view, "update_draft")
        self._check_version(program, data.expected_version)

        status = get_review_status(program)
        if status in _DETAILS_LOCKED:
            raise InvalidTransitionError(
                status.value, "update_draft", "Program details are locked while it is under review"
            )
        if data.open_at and data.close_at and data.close_at < data.open_at:
            raise ValidationError("close_at must not be before open_at")

        meta = copy.deepcopy(program.metadata or {})
        for key, value in data.metadata.items():
            if key not in WORKFLOW_METADATA_KEYS:
                meta[key] = copy.deepcopy(value)

        return await self._write(
            actor,
            program,
            {
                "name": data.name,
                "type": data.type,
                "description": data.description,
                "open_at": data.open_at,
                "close_at": data.close_at,
                "metadata": meta,
            },
        )

    # ------------------------------------------------------------------
    # Schema editing
    # ------------------------------------------------------------------

    async def begin_edit(
        self, actor: Actor, program_id: str, view: Optional[str] = None
    ) -> Program:
        """Enter edit mode.  A submitted program is pulled back out of review."""
        require_capability(actor, "begin_edit")
        program, view = await self._load(actor, program_id, view)
        self._reject_super_view(view, "begin_edit")

        if get_review_status(program) != ReviewStatus.SUBMITTED:
            return program
        target = ReviewStatus.PENDING_CHANGES if is_live(program) else ReviewStatus.DRAFT
        meta = copy.deepcopy(program.metadata or {})
        meta["review_status"] = target.value
        return await self._write(
            actor,
            program,
            {"metadata": meta},
            StatusChange(ReviewStatus.SUBMITTED.value, target.value, actor.user_id, "Edit override"),
        )

    async def save_edit(
        self,
        actor: Actor,
        program_id: str,
        schema: ApplicationSchema,
        profile: Optional[ProfileSettings] = None,
        expected_version: Optional[int] = None,
        override: bool = False,
        view: Optional[str] = None,
    ) -> Program:
        """Persist a builder's schema.

        Not-yet-published programs get the schema written live.  Published
        ones get it staged as ``pending_schema`` (status ``pending_changes``)
        and applicants keep seeing the old form until it is promoted.
        """
        require_capability(actor, "save_edit")
        program, view = await self._load(actor, program_id, view)
        self._reject_super_view(view, "save_edit")
        self._check_version(program, expected_version)

        status = get_review_status(program)
        live = is_live(program)
        if status == ReviewStatus.SUBMITTED and not override:
            raise InvalidTransitionError(
                status.value,
                "save_edit",
                "Program is awaiting review; enter edit mode before changing it",
            )

        canonical = ApplicationSchema(
            fields=normalize_fields([f.model_dump(exclude_none=True) for f in schema.fields]),
            common=schema.common,
        )
        document = schema_document(canonical)
        meta = copy.deepcopy(program.metadata or {})

        if live:
            meta["pending_schema"] = document
            if profile is not None:
                meta["pending_profile"] = profile.model_dump()
            meta["pending_changes_at"] = self._now_iso()
            meta["pending_changes_by"] = actor.user_id
            new_status = ReviewStatus.PENDING_CHANGES
        else:
            application = meta.get("application")
            if not isinstance(application, dict):
                application = {}
            application["schema"] = document
            if profile is not None:
                application["profile"] = profile.model_dump()
            meta["application"] = application
            for key in _PENDING_KEYS:
                meta.pop(key, None)
            new_status = (
                ReviewStatus.CHANGES_REQUESTED
                if status == ReviewStatus.CHANGES_REQUESTED
                else ReviewStatus.DRAFT
            )

        meta["review_status"] = new_status.value
        status_change = None
        if new_status != status:
            note = "Edit override" if status == ReviewStatus.SUBMITTED else None
            status_change = StatusChange(status.value, new_status.value, actor.user_id, note)
        return await self._write(actor, program, {"metadata": meta}, status_change)

    # ------------------------------------------------------------------
    # Review cycle
    # ------------------------------------------------------------------

    async def submit_for_review(
        self,
        actor: Actor,
        program_id: str,
        note: Optional[str] = None,
        view: Optional[str] = None,
    ) -> Program:
        require_capability(actor, "submit_for_review")
        program, view = await self._load(actor, program_id, view)
        self._reject_super_view(view, "submit_for_review")

        status = get_review_status(program)
        if status == ReviewStatus.SUBMITTED:
            return program
        if status not in _SUBMITTABLE:
            raise InvalidTransitionError(status.value, "submit_for_review")
        _raise_on_problems(self._candidate_schema(program))

        meta = copy.deepcopy(program.metadata or {})
        meta["review_status"] = ReviewStatus.SUBMITTED.value
        meta["submitted_at"] = self._now_iso()
        meta["submitted_by"] = actor.user_id
        meta.pop("review_note", None)
        return await self._write(
            actor,
            program,
            {"metadata": meta},
            StatusChange(status.value, ReviewStatus.SUBMITTED.value, actor.user_id, note),
        )

    async def review(
        self,
        actor: Actor,
        program_id: str,
        action: str,
        note: Optional[str] = None,
    ) -> Program:
        """Super admin decision on a submitted program."""
        require_capability(actor, "review")
        if action not in ("approve", "request_changes"):
            raise ValidationError(
                f"Invalid review action '{action}'. Must be 'approve' or 'request_changes'"
            )
        program, _ = await self._load(actor, program_id, VIEW_SUPER)
        status = get_review_status(program)
        if status != ReviewStatus.SUBMITTED:
            raise InvalidTransitionError(status.value, action)

        meta = copy.deepcopy(program.metadata or {})
        meta["reviewed_by"] = actor.user_id
        meta["reviewed_at"] = self._now_iso()

        if action == "request_changes":
            meta["review_status"] = ReviewStatus.CHANGES_REQUESTED.value
            meta["review_note"] = note
            return await self._write(
                actor,
                program,
                {"metadata": meta, "published": False},
                StatusChange(
                    status.value, ReviewStatus.CHANGES_REQUESTED.value, actor.user_id, note
                ),
            )

        scope = meta.get("requested_publish_scope") or program.published_scope or "org"
        coalition_id = self._resolve_scope(
            actor, program, scope, meta.get("requested_coalition_id") or program.published_coalition_id
        )
        meta.pop("review_note", None)
        # Approval and publication are one row write; a failure leaves it submitted.
        reviewed = program.model_copy(update={"metadata": meta})
        return await self._write(
            actor,
            program,
            self._promotion(actor, reviewed, scope, coalition_id),
            [
                StatusChange(status.value, ReviewStatus.APPROVED.value, actor.user_id, note),
                StatusChange(
                    ReviewStatus.APPROVED.value, ReviewStatus.PUBLISHED.value, actor.user_id, note
                ),
            ],
        )

    async def publish(
        self,
        actor: Actor,
        program_id: str,
        scope: str,
        coalition_id: Optional[str] = None,
        note: Optional[str] = None,
        view: Optional[str] = None,
    ) -> Program:
        """Publish, or turn the publish into a review request.

        Super admins publish directly from any unpublished state.  Org
        admins and coalition managers publish directly unless the program
        sets ``requires_super_approval``, in which case the program is
        submitted with the requested scope recorded for the approval.
        """
        require_capability(actor, "publish")
        if view is None and actor.super_admin and not (actor.org_ids or actor.coalition_ids):
            view = VIEW_SUPER
        program, view = await self._load(actor, program_id, view)
        coalition_id = self._resolve_scope(actor, program, scope, coalition_id)

        status = get_review_status(program)
        live = is_live(program)
        if status == ReviewStatus.PUBLISHED or (status == ReviewStatus.APPROVED and live):
            raise InvalidTransitionError(status.value, "publish", "Program is already published")

        as_super = view == VIEW_SUPER
        if not as_super and status == ReviewStatus.SUBMITTED:
            raise InvalidTransitionError(
                status.value, "publish", "Program is already awaiting review"
            )
        _raise_on_problems(self._candidate_schema(program))

        if not as_super and (program.metadata or {}).get("requires_super_approval") is True:
            meta = copy.deepcopy(program.metadata or {})
            meta["review_status"] = ReviewStatus.SUBMITTED.value
            meta["requested_publish_scope"] = scope
            meta["requested_coalition_id"] = coalition_id
            meta["submitted_at"] = self._now_iso()
            meta["submitted_by"] = actor.user_id
            meta.pop("review_note", None)
            logger.info("Publish of program %s redirected to review", program.id)
            return await self._write(
                actor,
                program,
                {"metadata": meta},
                StatusChange(
                    status.value,
                    ReviewStatus.SUBMITTED.value,
                    actor.user_id,
                    note or f"Publish requested ({scope})",
                ),
            )

        return await self._write(
            actor,
            program,
            self._promotion(actor, program, scope, coalition_id),
            StatusChange(status.value, ReviewStatus.PUBLISHED.value, actor.user_id, note),
        )

    async def unpublish(
        self, actor: Actor, program_id: str, note: Optional[str] = None
    ) -> Program:
        require_capability(actor, "unpublish")
        program, _ = await self._load(actor, program_id, VIEW_SUPER)
        status = get_review_status(program)
        if not is_live(program):
            if status == ReviewStatus.UNPUBLISHED:
                return program
            raise InvalidTransitionError(status.value, "unpublish", "Program is not published")

        meta = copy.deepcopy(program.metadata or {})
        meta["review_status"] = ReviewStatus.UNPUBLISHED.value
        meta["unpublished_at"] = self._now_iso()
        meta["unpublished_by"] = actor.user_id
        meta.pop("published", None)
        return await self._write(
            actor,
            program,
            {"metadata": meta, "published": False},
            StatusChange(status.value, ReviewStatus.UNPUBLISHED.value, actor.user_id, note),
        )

    async def soft_delete(
        self, actor: Actor, program_id: str, view: Optional[str] = None
    ) -> Program:
        require_capability(actor, "soft_delete")
        program, view = await self._load(actor, program_id, view)
        if view == VIEW_COALITION and not actor.super_admin:
            raise ProgramAccessError("Coalition managers cannot delete programs")
        deleted = await self._write(actor, program, {"deleted_at": self._clock()})
        logger.info("Program %s soft-deleted by %s", program.id, actor.user_id)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_program(self, actor: Actor, program_id: str, view: str = VIEW_ORG) -> Program:
        require_capability(actor, "view")
        program, _ = await self._load(actor, program_id, view)
        return program

    async def get_builder_state(
        self, actor: Actor, program_id: str, view: Optional[str] = None
    ) -> BuilderStateResponse:
        """Program plus the schema an author (or the super reviewer) works on."""
        require_capability(actor, "view")
        program, view = await self._load(actor, program_id, view)
        schema_view = SchemaView.REVIEW if view == VIEW_SUPER else SchemaView.EDITING
        status = get_review_status(program)
        return BuilderStateResponse(
            program=program,
            review_status=status,
            schema=resolve_schema(program, schema_view),
            profile=resolve_profile(program, schema_view),
            editable=view != VIEW_SUPER and status != ReviewStatus.SUBMITTED,
            staged=uses_pending_schema(program, schema_view),
        )

    async def list_my_programs(self, actor: Actor) -> List[Program]:
        return await self._call("list_programs_for_actor", self.store.list_programs_for_actor(actor))

    async def list_org_programs(self, actor: Actor, org_id: str) -> List[Program]:
        return await self._call("list_org_programs", self.store.list_org_programs(actor, org_id))

    async def list_submissions(
        self, actor: Actor, status: Optional[str] = None
    ) -> List[Program]:
        require_capability(actor, "list_submissions")
        if status is not None:
            try:
                status = ReviewStatus(status).value
            except ValueError as exc:
                raise ValidationError(f"Unknown review status '{status}'") from exc
        return await self._call("list_submissions", self.store.list_submissions(actor, status))

    async def status_history(self, actor: Actor, program_id: str) -> List[StatusHistoryEntry]:
        require_capability(actor, "view")
        return await self._call(
            "list_status_history", self.store.list_status_history(actor, program_id)
        )

    async def get_public_program(self, program_id: str) -> PublicProgram:
        return await self._call("get_public_program", self.store.get_public_program(program_id))

    async def get_public_form(self, program_id: str) -> PublicForm:
        """Applicant-facing form: common templates first, then program fields."""
        public = await self.get_public_program(program_id)
        template = None
        if public.application_schema.common.coalition and public.published_coalition_id:
            template = await self._call(
                "get_coalition_template",
                self.store.get_coalition_template(public.published_coalition_id),
            )
        return PublicForm(
            program_id=public.id,
            fields=compose_form(public.application_schema, template),
            profile=public.profile,
        )
