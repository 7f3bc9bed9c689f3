"""FastAPI routes for the snaptriage API.

Endpoints:
- GET  /health          - Liveness and version
- POST /analyze         - Analyze raw log text
- POST /snap            - Run a command against a repository copy
- GET  /results         - List persisted runs, newest first
- GET  /results/latest  - Newest persisted run
- GET  /results/{id}    - One persisted run
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from snaptriage.api.schemas import AnalyzeRequest, SnapRequest
from snaptriage.config import Settings
from snaptriage.orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


def get_orchestrator(request: Request) -> RunOrchestrator:
    return request.app.state.orchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error, **extra})


def _not_found(run_id: str) -> JSONResponse:
    return _error(404, "not_found", id=run_id)


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health")
async def health(settings: Settings = Depends(get_app_settings)) -> dict:
    """Health check endpoint."""
    return {"ok": True, "version": settings.app_version, "backend": settings.backend}


# =============================================================================
# Analysis
# =============================================================================


@router.post("/analyze")
async def analyze(
    body: AnalyzeRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> Any:
    """Analyze a log without running anything."""
    size = len(body.log_text.encode("utf-8"))
    if size > settings.max_log_bytes:
        return _error(400, "log_too_large", limit=settings.max_log_bytes, size=size)
    report = await asyncio.to_thread(orchestrator.analyze_text, body.log_text)
    return report.to_dict()


# =============================================================================
# Runs
# =============================================================================


@router.post("/snap")
async def snap(body: SnapRequest, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Any:
    """Evaluate, execute, analyze and persist one command run.

    A blocked command answers 403 with the rule that blocked it; the blocked
    run is still persisted and its id returned.
    """
    result = await orchestrator.submit(body.to_run_request())
    if not result.policy.allowed:
        return _error(
            403,
            "policy_violation",
            rule=result.policy.rule,
            reason=result.policy.reason,
            severity=result.policy.severity.value if result.policy.severity else None,
            id=result.id,
        )
    return result.to_dict()


@router.get("/results")
async def list_results(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> dict:
    """List persisted runs, newest first."""
    page = await asyncio.to_thread(orchestrator.store.list, limit=limit, offset=offset)
    return {
        "ok": True,
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "results": [{**item.to_dict(), "href": f"/results/{item.id}"} for item in page.items],
    }


@router.get("/results/latest")
async def latest_result(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Any:
    """Return the newest persisted run."""
    result = await asyncio.to_thread(orchestrator.store.latest)
    if result is None:
        return _not_found("latest")
    return result.to_dict()


@router.get("/results/{run_id}")
async def get_result(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Any:
    """Return one persisted run by id."""
    result = await asyncio.to_thread(orchestrator.store.get, run_id)
    if result is None:
        return _not_found(run_id)
    return result.to_dict()
