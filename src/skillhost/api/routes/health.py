"""
Health check route: GET /api/health
"""

from __future__ import annotations

import os
import time

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/api/health")
async def health(request: Request):
    """Basic health check - returns 200 if server is running."""
    from skillhost import __version__

    engine = request.app.state.engine
    snapshot = engine.snapshot()
    return {
        "status": "ok" if engine.index.is_populated else "degraded",
        "service": "skillhost",
        "version": __version__,
        "pid": os.getpid(),
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "snapshot_version": snapshot.version,
        "skills": len(snapshot),
        "load_errors": len(snapshot.load_errors),
        "active_invocations": engine.orchestrator.active_invocations,
    }
