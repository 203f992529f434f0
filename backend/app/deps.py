"""Shared dependencies for all API routers.

Centralises the store factory, the authentication dependency, the
rate-limiter reference and the error-to-HTTP translation so that every
router module can ``from app.deps import ...`` without pulling in
``main``.  Long-lived objects (store, workflow, hub, capability cache) are
owned by ``app.state`` and reached through the request.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials
from supabase import Client, create_client

from app.auth import decode_access_token, security
from app.models.actor import Actor
from app.security import get_rate_limiter, log_security_event
from app.services.capability_cache import CapabilityCache
from app.services.program_errors import (
    ProgramWorkflowError,
    StoreUnavailableError,
    ValidationError,
)
from app.services.program_store import ProgramStore
from app.services.realtime import ProgramChangeHub
from app.services.review_workflow import ReviewWorkflow

load_dotenv()

logger = logging.getLogger(__name__)

PROGRAM_STORE_BACKEND = os.getenv("PROGRAM_STORE_BACKEND", "").strip().lower()
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------
limiter = get_rate_limiter()


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------


def _safe_error(operation: str, e: Exception) -> str:
    """Log the full exception but return a safe message without internal details.

    This prevents leaking stack traces, file paths, or database internals
    to API consumers while preserving full diagnostics in server logs.
    """
    logger.exception("Error during %s", operation)
    return f"{operation} failed. Please try again or contact support."


def workflow_http_error(operation: str, e: Exception) -> HTTPException:
    """Translate a workflow or store error into the matching HTTPException."""
    if isinstance(e, StoreUnavailableError):
        return HTTPException(status_code=e.status_code, detail=_safe_error(operation, e))
    if isinstance(e, ValidationError) and e.problems:
        return HTTPException(
            status_code=e.status_code,
            detail={"detail": e.message, "problems": e.problems},
        )
    if isinstance(e, ProgramWorkflowError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=_safe_error(operation, e),
    )


# ---------------------------------------------------------------------------
# Store factory
# ---------------------------------------------------------------------------


def _supabase_client() -> Client:
    if not (SUPABASE_URL and SUPABASE_SERVICE_KEY):
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase store")
    return create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)


def build_program_store(backend: Optional[str] = None) -> ProgramStore:
    """Create the store selected by ``PROGRAM_STORE_BACKEND``.

    Without an explicit choice, ``sql`` is used when ``DATABASE_URL`` is
    set and the in-memory store otherwise.
    """
    from app import database

    backend = (backend or PROGRAM_STORE_BACKEND) or ("sql" if database.DATABASE_URL else "memory")

    if backend == "sql":
        from app.services.sql_program_store import SqlProgramStore

        if database.async_session_factory is None:
            raise RuntimeError("PROGRAM_STORE_BACKEND=sql requires DATABASE_URL")
        logger.info("Using SQL program store")
        return SqlProgramStore(database.async_session_factory, database.engine)

    if backend == "supabase":
        from app.services.supabase_program_store import SupabaseProgramStore

        logger.info("Using Supabase program store")
        return SupabaseProgramStore(_supabase_client())

    if backend == "memory":
        from app.services.memory_program_store import InMemoryProgramStore

        logger.warning("Using in-memory program store; data is lost on restart")
        return InMemoryProgramStore()

    raise RuntimeError(f"Unknown PROGRAM_STORE_BACKEND: {backend!r}")


# ---------------------------------------------------------------------------
# App-state accessors
# ---------------------------------------------------------------------------


def get_workflow(request: Request) -> ReviewWorkflow:
    return request.app.state.workflow


def get_hub(request: Request) -> ProgramChangeHub:
    return request.app.state.hub


def get_capability_cache(request: Request) -> CapabilityCache:
    return request.app.state.capability_cache


# ---------------------------------------------------------------------------
# Authentication dependency
# ---------------------------------------------------------------------------


async def resolve_actor(token: Optional[str], cache: CapabilityCache) -> Actor:
    """Token -> user id -> cached capabilities."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    claims = decode_access_token(token)
    try:
        return await cache.get(str(claims["sub"]))
    except ProgramWorkflowError as e:
        raise workflow_http_error("Loading permissions", e) from e


async def get_current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    """FastAPI dependency: the authenticated caller and their roles."""
    token = credentials.credentials if credentials is not None else None
    try:
        return await resolve_actor(token, get_capability_cache(request))
    except HTTPException as exc:
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            log_security_event("auth_invalid_token", request)
        raise
