"""Unauthenticated, published-only program reads for applicants."""

import logging

from fastapi import APIRouter, Depends

from app.deps import get_workflow, workflow_http_error
from app.models.program import PublicForm, PublicProgram
from app.services.review_workflow import ReviewWorkflow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/public", tags=["public"])


@router.get("/programs/{program_id}", response_model=PublicProgram)
async def get_public_program(
    program_id: str,
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """Published program with its live form; drafts and staged edits never appear."""
    try:
        return await workflow.get_public_program(program_id)
    except Exception as e:
        raise workflow_http_error("Loading program", e) from e


@router.get("/programs/{program_id}/form", response_model=PublicForm)
async def get_public_form(
    program_id: str,
    workflow: ReviewWorkflow = Depends(get_workflow),
):
    """The complete applicant form, common application sections first."""
    try:
        return await workflow.get_public_form(program_id)
    except Exception as e:
        raise workflow_http_error("Loading application form", e) from e
