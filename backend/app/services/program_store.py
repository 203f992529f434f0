"""Persistence port for programs.

The review workflow never talks to a database directly: it sequences calls
against a :class:`ProgramStore`.  A store owns authorization of individual
rows (via :mod:`app.services.access_control`), soft-delete filtering, the
optimistic version check, and the published-only public projection.  Every
write returns the authoritative row so callers never re-fetch after a
mutation.

Backends live in ``sql_program_store`` (SQLAlchemy/asyncpg),
``supabase_program_store`` (PostgREST) and ``memory_program_store``.
"""

import abc
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from app.models.actor import Actor
from app.models.program import Program, PublicProgram, StatusHistoryEntry
from app.services.program_errors import ProgramNotFoundError
from app.services.schema_resolver import SchemaView, resolve_profile, resolve_schema

# Columns a workflow write may touch.  ``id``, ``organization_id`` and
# ``version`` are owned by the store.
WRITABLE_COLUMNS = frozenset(
    {
        "name",
        "type",
        "description",
        "open_at",
        "close_at",
        "metadata",
        "published",
        "published_scope",
        "published_by",
        "published_at",
        "published_coalition_id",
        "deleted_at",
    }
)


@dataclass(frozen=True)
class StatusChange:
    """One ``review_status`` transition, written with the row update."""

    old_status: Optional[str]
    new_status: str
    changed_by: str
    note: Optional[str] = None


# One transition, or several recorded by the same row update (approve writes
# ``submitted -> approved`` and ``approved -> published`` together).
StatusChanges = Union[StatusChange, Sequence[StatusChange]]


def status_change_list(status_change: Optional[StatusChanges]) -> List[StatusChange]:
    """Flatten the ``status_change`` argument of ``update_program``."""
    if status_change is None:
        return []
    if isinstance(status_change, StatusChange):
        return [status_change]
    return list(status_change)


def parse_program_id(program_id: Any) -> str:
    """Normalise a program id; malformed ids are reported as not found."""
    try:
        return str(uuid.UUID(str(program_id)))
    except (TypeError, ValueError) as exc:
        raise ProgramNotFoundError("Program not found") from exc


def check_writable(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Not writable through the program store: {sorted(unknown)}")


def public_projection(
    program: Program,
    organization: Optional[Dict[str, Any]] = None,
    coalition: Optional[Dict[str, Any]] = None,
) -> PublicProgram:
    """Build the applicant-facing view of a published program."""
    organization = organization or {}
    coalition = coalition or {}
    return PublicProgram(
        id=program.id,
        name=program.name,
        type=program.type,
        description=program.description,
        open_at=program.open_at,
        close_at=program.close_at,
        published_scope=program.published_scope,
        published_at=program.published_at,
        published_coalition_id=program.published_coalition_id,
        organization_id=program.organization_id,
        organization_name=organization.get("name"),
        organization_slug=organization.get("slug"),
        coalition_name=coalition.get("name"),
        coalition_slug=coalition.get("slug"),
        application_schema=resolve_schema(program, SchemaView.LIVE),
        profile=resolve_profile(program),
    )


class ProgramStore(abc.ABC):
    """Async contract every program backend implements."""

    @abc.abstractmethod
    async def get_program(self, actor: Actor, program_id: str, view: str) -> Program:
        """Return one program visible to ``actor`` through ``view``.

        Raises:
            ProgramNotFoundError: Missing, soft-deleted or malformed id.
            ProgramAccessError: The actor cannot see it through ``view``.
        """

    @abc.abstractmethod
    async def list_programs_for_actor(self, actor: Actor) -> List[Program]:
        """Programs of every org and coalition the actor administers."""

    @abc.abstractmethod
    async def list_org_programs(self, actor: Actor, org_id: str) -> List[Program]:
        ...

    @abc.abstractmethod
    async def list_submissions(
        self, actor: Actor, status: Optional[str] = None
    ) -> List[Program]:
        """Super-admin queue, optionally filtered by review status."""

    @abc.abstractmethod
    async def insert_program(self, actor: Actor, values: Dict[str, Any]) -> Program:
        ...

    @abc.abstractmethod
    async def update_program(
        self,
        actor: Actor,
        program_id: str,
        changes: Dict[str, Any],
        expected_version: int,
        status_change: Optional[StatusChanges] = None,
    ) -> Program:
        """Compare-and-set write of ``changes``; bumps ``version``.

        Every entry of ``status_change`` is appended to the status history
        in the same unit of work as the row update, in the order given.

        Raises:
            ConcurrentModificationError: The stored version moved on.
        """

    @abc.abstractmethod
    async def list_status_history(
        self, actor: Actor, program_id: str
    ) -> List[StatusHistoryEntry]:
        ...

    @abc.abstractmethod
    async def get_public_program(self, program_id: str) -> PublicProgram:
        """Published-only projection; anything else is not found."""

    @abc.abstractmethod
    async def load_capabilities(self, user_id: str) -> Actor:
        ...

    @abc.abstractmethod
    async def get_coalition_template(self, coalition_id: str) -> Optional[List[Dict[str, Any]]]:
        ...

    async def close(self) -> None:
        """Release backend resources (engines, clients)."""
