"""ApplyHub program builder API.

Composition root: builds the program store, realtime hub, capability cache
and review workflow once per application and keeps them on ``app.state``.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.deps import build_program_store
from app.routers import health, programs, public, super_programs
from app.security import setup_security
from app.services.capability_cache import CapabilityCache
from app.services.program_store import ProgramStore
from app.services.realtime import ProgramChangeHub
from app.services.review_workflow import ReviewWorkflow

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# CORS Configuration
# =============================================================================
# Production accepts HTTPS origins only; development defaults to localhost.

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
_DEFAULT_PRODUCTION_ORIGIN = "https://applyhub.app"


def allowed_origins() -> list[str]:
    if ENVIRONMENT == "production":
        raw = os.getenv("ALLOWED_ORIGINS", _DEFAULT_PRODUCTION_ORIGIN).split(",")
        origins = []
        for origin in (o.strip() for o in raw):
            if not origin:
                continue
            if not origin.startswith("https://") or "localhost" in origin or "127.0.0.1" in origin:
                logger.warning("Rejecting origin not allowed in production: %s", origin)
                continue
            origins.append(origin)
        return origins or [_DEFAULT_PRODUCTION_ORIGIN]

    raw = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if not origins:
        raise ValueError("CORS configuration error: No valid allowed origins configured")
    return origins


def create_app(store: Optional[ProgramStore] = None) -> FastAPI:
    """Build the API.  Tests pass their own ``store``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("ApplyHub API started (store=%s)", type(app.state.store).__name__)
        yield
        await app.state.store.close()
        logger.info("ApplyHub API shutdown complete")

    app = FastAPI(
        title="ApplyHub Program Builder API",
        description="Program drafts, application forms and the review/publish workflow",
        version="1.0.0",
        lifespan=lifespan,
    )

    program_store = store or build_program_store()
    hub = ProgramChangeHub()
    app.state.store = program_store
    app.state.hub = hub
    app.state.capability_cache = CapabilityCache(program_store.load_capabilities)
    app.state.workflow = ReviewWorkflow(program_store, hub)

    origins = allowed_origins()
    logger.info("CORS allowed origins: %s", origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
    )
    # Must come after CORS (middleware order matters).
    setup_security(app, origins)

    app.include_router(health.router)
    app.include_router(programs.router)
    app.include_router(super_programs.router)
    app.include_router(public.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
