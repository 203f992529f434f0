"""Health-check router."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "message": "ApplyHub program builder API is running"}


@router.get("/api/v1/health")
async def health_check(request: Request):
    """Store backend and realtime status."""
    state = request.app.state
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "store": type(state.store).__name__,
            "capability_cache_entries": len(state.capability_cache),
        },
    }
