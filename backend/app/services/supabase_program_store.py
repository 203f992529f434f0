"""Supabase (PostgREST) program store.

Same tables as the SQL backend, reached through supabase-py.  The client is
synchronous, so every call runs in a worker thread via ``asyncio.to_thread``.
The optimistic version check is expressed as an ``eq("version", ...)``
filter on the update: no matching row means someone else wrote first.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from app.models.actor import Actor
from app.models.program import Program, PublicProgram, StatusHistoryEntry
from app.services.access_control import can_view_program, is_listed_for, require_program_access
from app.services.program_errors import (
    ConcurrentModificationError,
    ProgramAccessError,
    ProgramNotFoundError,
    StoreUnavailableError,
    ValidationError,
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

_FOREIGN_KEY_VIOLATION = "23503"


def _serialize(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in values.items()}


class SupabaseProgramStore(ProgramStore):
    def __init__(self, client: Client):
        self._client = client

    async def _execute(self, operation: str, query: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(query)
        except APIError as exc:
            if exc.code == _FOREIGN_KEY_VIOLATION:
                raise ValidationError(
                    "The program references an unknown organization or coalition"
                ) from exc
            logger.error("PostgREST error during %s: %s", operation, exc.message)
            raise StoreUnavailableError(f"{operation} failed at the data API") from exc
        except httpx.HTTPError as exc:
            logger.error("Supabase unreachable during %s: %s", operation, exc)
            raise StoreUnavailableError("Supabase is unreachable") from exc

    async def _fetch(self, program_id: str) -> Program:
        program_id = parse_program_id(program_id)
        response = await self._execute(
            "get_program",
            lambda: self._client.table("programs")
            .select("*")
            .eq("id", program_id)
            .is_("deleted_at", "null")
            .execute(),
        )
        if not response.data:
            raise ProgramNotFoundError("Program not found")
        return Program.model_validate(response.data[0])

    async def _all_programs(self) -> List[Program]:
        response = await self._execute(
            "list_programs",
            lambda: self._client.table("programs")
            .select("*")
            .is_("deleted_at", "null")
            .order("created_at", desc=True)
            .execute(),
        )
        return [Program.model_validate(row) for row in response.data or []]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_program(self, actor: Actor, program_id: str, view: str) -> Program:
        program = await self._fetch(program_id)
        require_program_access(actor, program, view)
        return program

    async def list_programs_for_actor(self, actor: Actor) -> List[Program]:
        if not actor.org_ids and not actor.coalition_ids:
            return []
        # Coalition membership lives in JSON, so filter after fetching.
        return [p for p in await self._all_programs() if is_listed_for(actor, p)]

    async def list_org_programs(self, actor: Actor, org_id: str) -> List[Program]:
        if not actor.super_admin and org_id not in actor.org_ids:
            raise ProgramAccessError("Not authorized to list programs of this organization")
        response = await self._execute(
            "list_org_programs",
            lambda: self._client.table("programs")
            .select("*")
            .eq("organization_id", org_id)
            .is_("deleted_at", "null")
            .order("created_at", desc=True)
            .execute(),
        )
        return [Program.model_validate(row) for row in response.data or []]

    async def list_submissions(
        self, actor: Actor, status: Optional[str] = None
    ) -> List[Program]:
        if not actor.super_admin:
            raise ProgramAccessError("Only super admins can list submissions")
        programs = await self._all_programs()
        if status is None:
            return programs
        return [p for p in programs if get_review_status(p).value == status]

    async def list_status_history(
        self, actor: Actor, program_id: str
    ) -> List[StatusHistoryEntry]:
        program = await self._fetch(program_id)
        if not any(can_view_program(actor, program, v) for v in ("org", "coalition", "super")):
            raise ProgramAccessError("Not authorized to access this program")
        response = await self._execute(
            "list_status_history",
            lambda: self._client.table("program_status_history")
            .select("*")
            .eq("program_id", program.id)
            .order("created_at")
            .execute(),
        )
        return [StatusHistoryEntry.model_validate(row) for row in response.data or []]

    async def get_public_program(self, program_id: str) -> PublicProgram:
        program_id = parse_program_id(program_id)
        response = await self._execute(
            "get_public_program",
            lambda: self._client.table("programs")
            .select("*, organizations(name, slug), coalitions(name, slug)")
            .eq("id", program_id)
            .eq("published", True)
            .is_("deleted_at", "null")
            .execute(),
        )
        if not response.data:
            raise ProgramNotFoundError("Program not found")
        row = dict(response.data[0])
        organization = row.pop("organizations", None)
        coalition = row.pop("coalitions", None)
        return public_projection(Program.model_validate(row), organization, coalition)

    async def load_capabilities(self, user_id: str) -> Actor:
        supers = await self._execute(
            "load_capabilities",
            lambda: self._client.table("superadmins")
            .select("user_id")
            .eq("user_id", user_id)
            .execute(),
        )
        roles = await self._execute(
            "load_capabilities",
            lambda: self._client.table("admins")
            .select("scope_type, scope_id")
            .eq("user_id", user_id)
            .eq("status", "active")
            .execute(),
        )

        def scopes(scope_type: str) -> frozenset:
            return frozenset(
                str(r["scope_id"]) for r in roles.data or [] if r.get("scope_type") == scope_type
            )

        return Actor(
            user_id=str(user_id),
            super_admin=bool(supers.data),
            org_ids=scopes("org"),
            coalition_ids=scopes("coalition"),
            reviewer_program_ids=scopes("program"),
        )

    async def get_coalition_template(self, coalition_id: str) -> Optional[List[Dict[str, Any]]]:
        response = await self._execute(
            "get_coalition_template",
            lambda: self._client.table("coalitions")
            .select("settings")
            .eq("id", coalition_id)
            .execute(),
        )
        if not response.data:
            return None
        template = (response.data[0].get("settings") or {}).get("application_template") or {}
        fields = template.get("fields") if isinstance(template, dict) else None
        return fields if isinstance(fields, list) else []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_program(self, actor: Actor, values: Dict[str, Any]) -> Program:
        org_id = str(values["organization_id"])
        coalition_id = (values.get("metadata") or {}).get("coalition_id")
        if not actor.super_admin and org_id not in actor.org_ids and coalition_id not in actor.coalition_ids:
            raise ProgramAccessError("Not authorized to create programs for this organization")
        payload = _serialize({**values, "organization_id": org_id, "version": 1})
        response = await self._execute(
            "insert_program",
            lambda: self._client.table("programs").insert(payload).execute(),
        )
        if not response.data:
            raise StoreUnavailableError("Program insert returned no row")
        return Program.model_validate(response.data[0])

    async def update_program(
        self,
        actor: Actor,
        program_id: str,
        changes: Dict[str, Any],
        expected_version: int,
        status_change: Optional[StatusChanges] = None,
    ) -> Program:
        check_writable(changes)
        current = await self._fetch(program_id)
        if not any(can_view_program(actor, current, v) for v in ("org", "coalition", "super")):
            raise ProgramAccessError("Not authorized to modify this program")
        if current.version != expected_version:
            raise ConcurrentModificationError(current.id, expected_version, current.version)

        payload = _serialize(
            {
                **changes,
                "version": expected_version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        response = await self._execute(
            "update_program",
            lambda: self._client.table("programs")
            .update(payload)
            .eq("id", current.id)
            .eq("version", expected_version)
            .execute(),
        )
        if not response.data:
            latest = await self._fetch(current.id)
            raise ConcurrentModificationError(current.id, expected_version, latest.version)

        stamped_at = datetime.now(timezone.utc)
        entries = [
            _serialize(
                {
                    "program_id": current.id,
                    "old_status": change.old_status,
                    "new_status": change.new_status,
                    "changed_by": change.changed_by,
                    "note": change.note,
                    "created_at": stamped_at + timedelta(microseconds=offset),
                }
            )
            for offset, change in enumerate(status_change_list(status_change))
        ]
        if entries:
            await self._execute(
                "record_status_change",
                lambda: self._client.table("program_status_history").insert(entries).execute(),
            )
        return Program.model_validate(response.data[0])
