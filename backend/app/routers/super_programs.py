"""Super-admin review queue and publication controls."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from app.deps import get_current_actor, get_workflow, workflow_http_error
from app.models.actor import Actor
from app.models.program import (
    Program,
    ProgramListResponse,
    PublishRequest,
    ReviewRequest,
    UnpublishRequest,
)
from app.security import rate_limit_mutation
from app.services.access_control import VIEW_SUPER
from app.services.review_workflow import ReviewWorkflow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/super", tags=["super-admin"])


@router.get("/programs", response_model=ProgramListResponse)
async def list_submissions(
    status_filter: Optional[str] = Query(
        None, alias="status", description="Filter by review status"
    ),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """All programs, optionally narrowed to one review status (e.g. ``submitted``)."""
    try:
        programs = await workflow.list_submissions(actor, status_filter)
    except Exception as e:
        raise workflow_http_error("Listing submissions", e) from e
    return ProgramListResponse(programs=programs, total=len(programs))


@router.post("/programs/{program_id}/review", response_model=Program)
@rate_limit_mutation()
async def review_program(
    request: Request,
    program_id: str,
    body: ReviewRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Approve (and publish) a submitted program, or send it back with a note."""
    try:
        return await workflow.review(actor, program_id, body.action, body.note)
    except Exception as e:
        raise workflow_http_error("Reviewing program", e) from e


@router.post("/programs/{program_id}/publish", response_model=Program)
@rate_limit_mutation()
async def publish_program(
    request: Request,
    program_id: str,
    body: PublishRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.publish(
            actor, program_id, body.scope, body.coalition_id, body.note, view=VIEW_SUPER
        )
    except Exception as e:
        raise workflow_http_error("Publishing program", e) from e


@router.post("/programs/{program_id}/unpublish", response_model=Program)
@rate_limit_mutation()
async def unpublish_program(
    request: Request,
    program_id: str,
    body: UnpublishRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.unpublish(actor, program_id, body.note)
    except Exception as e:
        raise workflow_http_error("Unpublishing program", e) from e
