"""Programs router for org admins and coalition managers.

Draft management, the application-form builder, the author side of the
review workflow, and the realtime change feed of one program.  Every
handler delegates to :class:`~app.services.review_workflow.ReviewWorkflow`
and translates its errors with :func:`app.deps.workflow_http_error`.
"""

import asyncio
import logging

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from app.deps import (
    get_current_actor,
    get_workflow,
    resolve_actor,
    workflow_http_error,
)
from app.models.actor import Actor
from app.models.program import (
    BuilderStateResponse,
    Program,
    ProgramDraftCreate,
    ProgramDraftUpdate,
    ProgramListResponse,
    PublishRequest,
    SaveSchemaRequest,
    StatusHistoryResponse,
    SubmitForReviewRequest,
)
from app.security import rate_limit_mutation
from app.services.program_errors import ProgramWorkflowError
from app.services.review_workflow import ReviewWorkflow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["programs"])

_VIEW_PATTERN = r"^(org|coalition|super)$"
_AUTHOR_VIEW_PATTERN = r"^(org|coalition)$"


# ---------------------------------------------------------------------------
# Drafts and listings
# ---------------------------------------------------------------------------


@router.post("/programs", response_model=Program, status_code=status.HTTP_201_CREATED)
async def create_draft(
    body: ProgramDraftCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Create a program in ``draft`` for one of the caller's organizations."""
    try:
        return await workflow.create_draft(actor, body)
    except Exception as e:
        raise workflow_http_error("Creating program", e) from e


@router.get("/me/programs", response_model=ProgramListResponse)
async def list_my_programs(
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Programs of every organization and coalition the caller administers."""
    try:
        programs = await workflow.list_my_programs(actor)
    except Exception as e:
        raise workflow_http_error("Listing programs", e) from e
    return ProgramListResponse(programs=programs, total=len(programs))


@router.get("/organizations/{org_id}/programs", response_model=ProgramListResponse)
async def list_org_programs(
    org_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        programs = await workflow.list_org_programs(actor, org_id)
    except Exception as e:
        raise workflow_http_error("Listing organization programs", e) from e
    return ProgramListResponse(programs=programs, total=len(programs))


@router.get("/programs/{program_id}", response_model=Program)
async def get_program(
    program_id: str,
    view: str = Query("org", pattern=_VIEW_PATTERN, description="Caller view"),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.get_program(actor, program_id, view)
    except Exception as e:
        raise workflow_http_error("Loading program", e) from e


@router.put("/programs/{program_id}", response_model=Program)
async def update_draft(
    program_id: str,
    body: ProgramDraftUpdate,
    view: str = Query("org", pattern=_AUTHOR_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Update name, type, description, dates and free-form metadata."""
    try:
        return await workflow.update_draft(actor, program_id, body, view=view)
    except Exception as e:
        raise workflow_http_error("Updating program", e) from e


@router.delete("/programs/{program_id}", response_model=Program)
async def soft_delete_program(
    program_id: str,
    view: str = Query("org", pattern=_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.soft_delete(actor, program_id, view=view)
    except Exception as e:
        raise workflow_http_error("Deleting program", e) from e


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@router.get("/programs/{program_id}/builder", response_model=BuilderStateResponse)
async def get_builder_state(
    program_id: str,
    view: str = Query("org", pattern=_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """The schema being edited (staged copy included) and whether it is editable."""
    try:
        return await workflow.get_builder_state(actor, program_id, view)
    except Exception as e:
        raise workflow_http_error("Loading builder", e) from e


@router.post("/programs/{program_id}/edit", response_model=Program)
async def begin_edit(
    program_id: str,
    view: str = Query("org", pattern=_AUTHOR_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Enter edit mode; pulls a submitted program back out of review."""
    try:
        return await workflow.begin_edit(actor, program_id, view=view)
    except Exception as e:
        raise workflow_http_error("Starting edit", e) from e


@router.put("/programs/{program_id}/schema", response_model=Program)
async def save_schema(
    program_id: str,
    body: SaveSchemaRequest,
    view: str = Query("org", pattern=_AUTHOR_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.save_edit(
            actor,
            program_id,
            body.application_schema,
            profile=body.profile,
            expected_version=body.expected_version,
            override=body.override,
            view=view,
        )
    except Exception as e:
        raise workflow_http_error("Saving form", e) from e


# ---------------------------------------------------------------------------
# Review cycle (author side)
# ---------------------------------------------------------------------------


@router.post("/programs/{program_id}/submit", response_model=Program)
@rate_limit_mutation()
async def submit_for_review(
    request: Request,
    program_id: str,
    body: SubmitForReviewRequest,
    view: str = Query("org", pattern=_AUTHOR_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        return await workflow.submit_for_review(actor, program_id, body.note, view=view)
    except Exception as e:
        raise workflow_http_error("Submitting program", e) from e


@router.post("/programs/{program_id}/publish", response_model=Program)
@rate_limit_mutation()
async def publish_program(
    request: Request,
    program_id: str,
    body: PublishRequest,
    view: str = Query("org", pattern=_AUTHOR_VIEW_PATTERN),
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Publish directly, or submit for approval when the program requires it."""
    try:
        return await workflow.publish(
            actor, program_id, body.scope, body.coalition_id, body.note, view=view
        )
    except Exception as e:
        raise workflow_http_error("Publishing program", e) from e


@router.get("/programs/{program_id}/history", response_model=StatusHistoryResponse)
async def get_status_history(
    program_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    try:
        history = await workflow.status_history(actor, program_id)
    except Exception as e:
        raise workflow_http_error("Loading status history", e) from e
    return StatusHistoryResponse(history=history)


# ---------------------------------------------------------------------------
# WS  /programs/{program_id}/changes
# ---------------------------------------------------------------------------


@router.websocket("/programs/{program_id}/changes")
async def program_changes(
    websocket: WebSocket,
    program_id: str,
    token: str = Query(""),
    view: str = Query("org", pattern=_VIEW_PATTERN),
):
    """Push the program row after every update.

    Browsers cannot set headers on a WebSocket, so the bearer token comes
    in the ``token`` query parameter.
    """
    app_state = websocket.app.state
    try:
        actor = await resolve_actor(token, app_state.capability_cache)
        program = await app_state.workflow.get_program(actor, program_id, view)
    except (HTTPException, ProgramWorkflowError) as e:
        logger.info("Rejected change feed for program %s: %s", program_id, e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    # The hub keys on the stored id, not on however the URL spelled it.
    async with app_state.hub.subscription(program.id) as queue:

        async def forward() -> None:
            while True:
                changed = await queue.get()
                await websocket.send_json(changed.model_dump(mode="json"))

        sender = asyncio.create_task(forward())
        try:
            # Inbound messages are ignored; receiving detects the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Change feed for program %s closed", program_id)
        finally:
            sender.cancel()
