"""Shared access-control helpers for program-scoped operations.

Two layers:

* :func:`require_capability` is the thin role wrapper around the workflow:
  it only asks whether the actor holds *any* role allowed to perform an
  action (e.g. only super admins review).
* :func:`require_program_access` is the per-row visibility rule applied by
  the program stores, one rule per caller view (org, coalition, super).
"""

from typing import Optional

from app.models.actor import Actor, Capability
from app.models.program import PROGRAM_VIEWS, Program
from app.services.program_errors import (
    CapabilityError,
    ProgramAccessError,
    ValidationError,
)

VIEW_ORG = "org"
VIEW_COALITION = "coalition"
VIEW_SUPER = "super"

_AUTHORS = frozenset({Capability.ORG_ADMIN, Capability.COALITION_MANAGER})

ACTION_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "create_draft": _AUTHORS,
    "update_draft": _AUTHORS,
    "save_edit": _AUTHORS,
    "begin_edit": _AUTHORS,
    "submit_for_review": _AUTHORS,
    "publish": _AUTHORS | {Capability.SUPER_ADMIN},
    "review": frozenset({Capability.SUPER_ADMIN}),
    "unpublish": frozenset({Capability.SUPER_ADMIN}),
    "list_submissions": frozenset({Capability.SUPER_ADMIN}),
    "soft_delete": frozenset({Capability.ORG_ADMIN, Capability.SUPER_ADMIN}),
    "view": _AUTHORS | {Capability.REVIEWER, Capability.SUPER_ADMIN},
}


def require_capability(actor: Actor, action: str) -> None:
    allowed = ACTION_CAPABILITIES.get(action)
    if allowed is None:
        raise CapabilityError(f"Unknown action: {action}")
    if not (actor.capabilities & allowed):
        raise CapabilityError(
            f"Insufficient permissions to {action.replace('_', ' ')}. "
            f"Requires one of: {', '.join(sorted(c.value for c in allowed))}"
        )


def require_valid_view(view: str) -> None:
    if view not in PROGRAM_VIEWS:
        raise ValidationError(
            f"Invalid view '{view}'. Must be one of: {', '.join(PROGRAM_VIEWS)}"
        )


def program_coalition_id(program: Program) -> Optional[str]:
    """Coalition a program belongs to, if any."""
    meta = program.metadata or {}
    coalition_id = meta.get("coalition_id") or program.published_coalition_id
    return str(coalition_id) if coalition_id else None


def can_view_program(actor: Actor, program: Program, view: str) -> bool:
    if actor.super_admin:
        return True
    if view == VIEW_SUPER:
        return False
    if view == VIEW_COALITION:
        coalition_id = program_coalition_id(program)
        return coalition_id is not None and coalition_id in actor.coalition_ids
    # org view; assigned reviewers read through it as well
    return (
        str(program.organization_id) in actor.org_ids
        or str(program.id) in actor.reviewer_program_ids
    )


def require_program_access(actor: Actor, program: Program, view: str) -> None:
    require_valid_view(view)
    if not can_view_program(actor, program, view):
        raise ProgramAccessError("Not authorized to access this program")


def is_listed_for(actor: Actor, program: Program) -> bool:
    """Whether a program belongs in the actor's "my programs" listing."""
    if program.deleted_at is not None:
        return False
    if str(program.organization_id) in actor.org_ids:
        return True
    coalition_id = program_coalition_id(program)
    return coalition_id is not None and coalition_id in actor.coalition_ids
