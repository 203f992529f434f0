"""PostgreSQL program store (SQLAlchemy 2.0 async + asyncpg).

The primary backend.  Role rows come from ``superadmins`` and ``admins``;
programs from ``programs`` with the workflow state in its ``metadata``
JSONB column.  Writes are a single conditional ``UPDATE ... WHERE version =
:expected`` so two editors can never silently overwrite each other.
"""

import contextlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.models.actor import Actor
from app.models.db.organization import Admin, Coalition, Organization, SuperAdmin
from app.models.db.program import Program as ProgramRow
from app.models.db.program import ProgramStatusHistory
from app.models.program import Program, PublicProgram, ReviewStatus, StatusHistoryEntry
from app.services.access_control import can_view_program, require_program_access
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

logger = logging.getLogger(__name__)

# API column name -> ORM attribute name
_ATTRS = {"metadata": "metadata_"}
_UUID_COLUMNS = frozenset({"published_by", "published_coalition_id"})


def _uuid_or_none(value: Any) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Malformed identifier: {value}") from exc


def _uuid_set(values) -> List[uuid.UUID]:
    result = []
    for value in values:
        with contextlib.suppress(ValueError, TypeError):
            result.append(uuid.UUID(str(value)))
    return result


def _to_program(row: ProgramRow) -> Program:
    return Program(
        id=str(row.id),
        organization_id=str(row.organization_id),
        name=row.name,
        type=row.type,
        description=row.description,
        open_at=row.open_at,
        close_at=row.close_at,
        metadata=dict(row.metadata_ or {}),
        published=bool(row.published),
        published_scope=row.published_scope,
        published_by=str(row.published_by) if row.published_by else None,
        published_at=row.published_at,
        published_coalition_id=(
            str(row.published_coalition_id) if row.published_coalition_id else None
        ),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        logger.warning("Integrity error during %s: %s", operation, exc.orig)
        raise ValidationError("The program references an unknown organization or coalition") from exc
    except (OperationalError, InterfaceError) as exc:
        logger.error("Database unavailable during %s: %s", operation, exc)
        raise StoreUnavailableError("Database unavailable") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StoreUnavailableError("Database connection lost") from exc
        raise


class SqlProgramStore(ProgramStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self._engine = engine

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _fetch(session: AsyncSession, program_id: str) -> ProgramRow:
        result = await session.execute(
            select(ProgramRow).where(
                ProgramRow.id == uuid.UUID(parse_program_id(program_id)),
                ProgramRow.deleted_at.is_(None),
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise ProgramNotFoundError("Program not found")
        return row

    async def _list(self, *conditions) -> List[Program]:
        with _translate_errors("list_programs"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProgramRow)
                    .where(ProgramRow.deleted_at.is_(None), *conditions)
                    .order_by(ProgramRow.created_at.desc())
                )
                return [_to_program(row) for row in result.scalars().all()]

    @staticmethod
    def _coalition_condition(coalition_ids: List[uuid.UUID]):
        as_text = [str(c) for c in coalition_ids]
        return or_(
            ProgramRow.metadata_["coalition_id"].astext.in_(as_text),
            ProgramRow.published_coalition_id.in_(coalition_ids),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_program(self, actor: Actor, program_id: str, view: str) -> Program:
        with _translate_errors("get_program"):
            async with self._session_factory() as session:
                program = _to_program(await self._fetch(session, program_id))
        require_program_access(actor, program, view)
        return program

    async def list_programs_for_actor(self, actor: Actor) -> List[Program]:
        org_ids = _uuid_set(actor.org_ids)
        coalition_ids = _uuid_set(actor.coalition_ids)
        if not org_ids and not coalition_ids:
            return []
        return await self._list(
            or_(
                ProgramRow.organization_id.in_(org_ids),
                self._coalition_condition(coalition_ids),
            )
        )

    async def list_org_programs(self, actor: Actor, org_id: str) -> List[Program]:
        if not actor.super_admin and org_id not in actor.org_ids:
            raise ProgramAccessError("Not authorized to list programs of this organization")
        try:
            org_uuid = uuid.UUID(str(org_id))
        except ValueError as exc:
            raise ValidationError(f"Malformed organization id: {org_id}") from exc
        return await self._list(ProgramRow.organization_id == org_uuid)

    async def list_submissions(
        self, actor: Actor, status: Optional[str] = None
    ) -> List[Program]:
        if not actor.super_admin:
            raise ProgramAccessError("Only super admins can list submissions")
        if status is None:
            return await self._list()
        stored = ProgramRow.metadata_["review_status"].astext
        review_status = case(
            (stored.in_([s.value for s in ReviewStatus]), stored),
            else_=ReviewStatus.DRAFT.value,
        )
        return await self._list(review_status == status)

    async def list_status_history(
        self, actor: Actor, program_id: str
    ) -> List[StatusHistoryEntry]:
        with _translate_errors("list_status_history"):
            async with self._session_factory() as session:
                program = _to_program(await self._fetch(session, program_id))
                if not any(
                    can_view_program(actor, program, v) for v in ("org", "coalition", "super")
                ):
                    raise ProgramAccessError("Not authorized to access this program")
                result = await session.execute(
                    select(ProgramStatusHistory)
                    .where(ProgramStatusHistory.program_id == uuid.UUID(program.id))
                    .order_by(ProgramStatusHistory.created_at.asc())
                )
                return [
                    StatusHistoryEntry(
                        program_id=str(h.program_id),
                        old_status=h.old_status,
                        new_status=h.new_status,
                        changed_by=str(h.changed_by),
                        note=h.note,
                        created_at=h.created_at,
                    )
                    for h in result.scalars().all()
                ]

    async def get_public_program(self, program_id: str) -> PublicProgram:
        with _translate_errors("get_public_program"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProgramRow, Organization, Coalition)
                    .join(Organization, Organization.id == ProgramRow.organization_id)
                    .outerjoin(Coalition, Coalition.id == ProgramRow.published_coalition_id)
                    .where(
                        ProgramRow.id == uuid.UUID(parse_program_id(program_id)),
                        ProgramRow.deleted_at.is_(None),
                        ProgramRow.published.is_(True),
                    )
                )
                found = result.first()
        if found is None:
            raise ProgramNotFoundError("Program not found")
        row, org, coalition = found
        return public_projection(
            _to_program(row),
            {"name": org.name, "slug": org.slug},
            {"name": coalition.name, "slug": coalition.slug} if coalition else None,
        )

    async def load_capabilities(self, user_id: str) -> Actor:
        try:
            user_uuid = uuid.UUID(str(user_id))
        except ValueError:
            return Actor(user_id=str(user_id))
        with _translate_errors("load_capabilities"):
            async with self._session_factory() as session:
                is_super = await session.scalar(
                    select(func.count()).select_from(SuperAdmin).where(SuperAdmin.user_id == user_uuid)
                )
                result = await session.execute(
                    select(Admin.scope_type, Admin.scope_id).where(
                        Admin.user_id == user_uuid, Admin.status == "active"
                    )
                )
                roles = result.all()

        def scopes(scope_type: str) -> frozenset:
            return frozenset(str(scope_id) for t, scope_id in roles if t == scope_type)

        return Actor(
            user_id=str(user_uuid),
            super_admin=bool(is_super),
            org_ids=scopes("org"),
            coalition_ids=scopes("coalition"),
            reviewer_program_ids=scopes("program"),
        )

    async def get_coalition_template(self, coalition_id: str) -> Optional[List[Dict[str, Any]]]:
        coalition_uuid = _uuid_set([coalition_id])
        if not coalition_uuid:
            return None
        with _translate_errors("get_coalition_template"):
            async with self._session_factory() as session:
                settings = await session.scalar(
                    select(Coalition.settings).where(Coalition.id == coalition_uuid[0])
                )
        if settings is None:
            return None
        template = (settings or {}).get("application_template") or {}
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

        row = ProgramRow(
            organization_id=_uuid_or_none(org_id),
            name=values["name"],
            type=values["type"],
            description=values.get("description"),
            open_at=values.get("open_at"),
            close_at=values.get("close_at"),
            metadata_=values.get("metadata") or {},
            published=bool(values.get("published", False)),
            version=1,
        )
        with _translate_errors("insert_program"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return _to_program(row)

    async def update_program(
        self,
        actor: Actor,
        program_id: str,
        changes: Dict[str, Any],
        expected_version: int,
        status_change: Optional[StatusChanges] = None,
    ) -> Program:
        check_writable(changes)
        values: Dict[Any, Any] = {}
        for column, value in changes.items():
            if column in _UUID_COLUMNS:
                value = _uuid_or_none(value)
            values[getattr(ProgramRow, _ATTRS.get(column, column))] = value
        values[ProgramRow.version] = ProgramRow.version + 1
        values[ProgramRow.updated_at] = func.now()

        with _translate_errors("update_program"):
            async with self._session_factory() as session:
                current = _to_program(await self._fetch(session, program_id))
                if not any(
                    can_view_program(actor, current, v) for v in ("org", "coalition", "super")
                ):
                    raise ProgramAccessError("Not authorized to modify this program")

                result = await session.execute(
                    update(ProgramRow)
                    .where(
                        ProgramRow.id == uuid.UUID(current.id),
                        ProgramRow.version == expected_version,
                    )
                    .values(values)
                    .returning(ProgramRow)
                    .execution_options(synchronize_session=False, populate_existing=True)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    await session.rollback()
                    actual = await session.scalar(
                        select(ProgramRow.version).where(ProgramRow.id == uuid.UUID(current.id))
                    )
                    raise ConcurrentModificationError(current.id, expected_version, actual)

                # now() is fixed per transaction; offsets keep entry order.
                stamped_at = datetime.now(timezone.utc)
                for offset, change in enumerate(status_change_list(status_change)):
                    session.add(
                        ProgramStatusHistory(
                            program_id=row.id,
                            old_status=change.old_status,
                            new_status=change.new_status,
                            changed_by=_uuid_or_none(change.changed_by),
                            note=change.note,
                            created_at=stamped_at + timedelta(microseconds=offset),
                        )
                    )
                updated = _to_program(row)
                await session.commit()
                return updated

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
