"""In-process program store.

Implements the full :class:`ProgramStore` contract over plain dicts.  Used
for local development without a database (``PROGRAM_STORE_BACKEND=memory``)
and by the test suite.  Rows are deep-copied in and out so callers can never
mutate stored state behind the store's back.
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from app.models.actor import Actor
from app.models.program import Program, PublicProgram, StatusHistoryEntry
from app.services.access_control import (
    VIEW_SUPER,
    can_view_program,
    is_listed_for,
    require_program_access,
)
from app.services.program_errors import (
    ConcurrentModificationError,
    ProgramAccessError,
    ProgramNotFoundError,
)
from app.services.program_store import (
    ProgramStore,
    StatusChanges,
    check_writable,
    parse_program_id,
    public_projection,
    status_change_list,
)
from app.services.schema_resolver import get_review_status

logger = logging.getLogger(__name__)


class InMemoryProgramStore(ProgramStore):
    """Dict-backed store with the same observable behaviour as the SQL one."""

    def __init__(self) -> None:
        self._programs: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, List[StatusHistoryEntry]] = {}
        self._organizations: Dict[str, Dict[str, Any]] = {}
        self._coalitions: Dict[str, Dict[str, Any]] = {}
        self._super_admins: set = set()
        # (user_id, scope_type, scope_id)
        self._roles: set = set()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Seeding (dev fixtures and tests)
    # ------------------------------------------------------------------

    def add_organization(self, org_id: str, name: str, slug: Optional[str] = None) -> None:
        self._organizations[org_id] = {"id": org_id, "name": name, "slug": slug or org_id}

    def add_coalition(
        self,
        coalition_id: str,
        name: str,
        slug: Optional[str] = None,
        template: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._coalitions[coalition_id] = {
            "id": coalition_id,
            "name": name,
            "slug": slug or coalition_id,
            "settings": {"application_template": {"fields": template or []}},
        }

    def grant(self, user_id: str, scope_type: str, scope_id: Optional[str] = None) -> None:
        """Give a user a role; ``scope_type='super'`` makes a super admin."""
        if scope_type == "super":
            self._super_admins.add(user_id)
        else:
            self._roles.add((user_id, scope_type, scope_id))

    def revoke(self, user_id: str, scope_type: str, scope_id: Optional[str] = None) -> None:
        if scope_type == "super":
            self._super_admins.discard(user_id)
        else:
            self._roles.discard((user_id, scope_type, scope_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _row(self, program_id: str) -> Dict[str, Any]:
        row = self._programs.get(parse_program_id(program_id))
        if row is None or row.get("deleted_at") is not None:
            raise ProgramNotFoundError("Program not found")
        return row

    @staticmethod
    def _to_program(row: Dict[str, Any]) -> Program:
        return Program.model_validate(copy.deepcopy(row))

    def _programs_where(self, predicate) -> List[Program]:
        programs = [self._to_program(r) for r in self._programs.values()]
        programs = [p for p in programs if p.deleted_at is None and predicate(p)]
        programs.sort(key=lambda p: p.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return programs

    # ------------------------------------------------------------------
    # ProgramStore
    # ------------------------------------------------------------------

    async def get_program(self, actor: Actor, program_id: str, view: str) -> Program:
        program = self._to_program(self._row(program_id))
        require_program_access(actor, program, view)
        return program

    async def list_programs_for_actor(self, actor: Actor) -> List[Program]:
        return self._programs_where(lambda p: is_listed_for(actor, p))

    async def list_org_programs(self, actor: Actor, org_id: str) -> List[Program]:
        if not actor.super_admin and org_id not in actor.org_ids:
            raise ProgramAccessError("Not authorized to list programs of this organization")
        return self._programs_where(lambda p: p.organization_id == org_id)

    async def list_submissions(
        self, actor: Actor, status: Optional[str] = None
    ) -> List[Program]:
        if not actor.super_admin:
            raise ProgramAccessError("Only super admins can list submissions")

        def matches(p: Program) -> bool:
            return status is None or get_review_status(p).value == status

        return self._programs_where(matches)

    async def insert_program(self, actor: Actor, values: Dict[str, Any]) -> Program:
        org_id = str(values["organization_id"])
        if not actor.super_admin and org_id not in actor.org_ids and not (
            values.get("metadata", {}).get("coalition_id") in actor.coalition_ids
        ):
            raise ProgramAccessError("Not authorized to create programs for this organization")
        now = datetime.now(timezone.utc)
        program_id = str(uuid.uuid4())
        row = {
            "id": program_id,
            "organization_id": org_id,
            "published": False,
            "version": 1,
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        row.update(copy.deepcopy({k: v for k, v in values.items() if k != "organization_id"}))
        async with self._lock:
            self._programs[program_id] = row
            self._history[program_id] = []
        logger.debug("memory store: inserted program %s", program_id)
        return self._to_program(row)

    async def update_program(
        self,
        actor: Actor,
        program_id: str,
        changes: Dict[str, Any],
        expected_version: int,
        status_change: Optional[StatusChanges] = None,
    ) -> Program:
        check_writable(changes)
        async with self._lock:
            row = self._row(program_id)
            if not can_view_program(actor, self._to_program(row), VIEW_SUPER) and not (
                can_view_program(actor, self._to_program(row), "org")
                or can_view_program(actor, self._to_program(row), "coalition")
            ):
                raise ProgramAccessError("Not authorized to modify this program")
            if row["version"] != expected_version:
                raise ConcurrentModificationError(row["id"], expected_version, row["version"])
            row.update(copy.deepcopy(changes))
            row["version"] += 1
            row["updated_at"] = datetime.now(timezone.utc)
            for change in status_change_list(status_change):
                self._history.setdefault(row["id"], []).append(
                    StatusHistoryEntry(
                        program_id=row["id"],
                        old_status=change.old_status,
                        new_status=change.new_status,
                        changed_by=change.changed_by,
                        note=change.note,
                        created_at=row["updated_at"],
                    )
                )
            return self._to_program(row)

    async def list_status_history(
        self, actor: Actor, program_id: str
    ) -> List[StatusHistoryEntry]:
        program = self._to_program(self._row(program_id))
        if not any(can_view_program(actor, program, v) for v in ("org", "coalition", "super")):
            raise ProgramAccessError("Not authorized to access this program")
        return list(self._history.get(program.id, []))

    async def get_public_program(self, program_id: str) -> PublicProgram:
        row = self._row(program_id)
        if not row.get("published"):
            raise ProgramNotFoundError("Program not found")
        program = self._to_program(row)
        coalition = self._coalitions.get(program.published_coalition_id or "")
        return public_projection(program, self._organizations.get(program.organization_id), coalition)

    async def load_capabilities(self, user_id: str) -> Actor:
        return Actor(
            user_id=user_id,
            super_admin=user_id in self._super_admins,
            org_ids=self._scopes(user_id, "org"),
            coalition_ids=self._scopes(user_id, "coalition"),
            reviewer_program_ids=self._scopes(user_id, "program"),
        )

    async def get_coalition_template(self, coalition_id: str) -> Optional[List[Dict[str, Any]]]:
        coalition = self._coalitions.get(coalition_id)
        if coalition is None:
            return None
        template = coalition["settings"].get("application_template") or {}
        return copy.deepcopy(template.get("fields") or [])

    def _scopes(self, user_id: str, scope_type: str) -> frozenset:
        return frozenset(s for u, t, s in self._roles if u == user_id and t == scope_type)

    def program_count(self) -> int:
        return len(self._programs)

    def raw_row(self, program_id: str) -> Dict[str, Any]:
        """Stored row, bypassing access checks (test inspection only)."""
        return copy.deepcopy(self._programs[parse_program_id(program_id)])

    def put_raw_row(self, row: Dict[str, Any]) -> Program:
        """Insert a row exactly as given (legacy-shape fixtures)."""
        row = copy.deepcopy(row)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("version", 1)
        row.setdefault("published", False)
        row.setdefault("created_at", datetime.now(timezone.utc))
        self._programs[row["id"]] = row
        self._history.setdefault(row["id"], [])
        return self._to_program(row)

    def ids(self) -> Iterable[str]:
        return list(self._programs)
