"""Liveness (``/api/v1/health``) and readiness (``/ready``) probes.

Liveness always answers 200 and reports the store and the billing
scheduler; readiness answers 503 while the store is unreachable so the
instance is taken out of rotation.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from portal_api import __version__
from portal_api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])
readiness_router = APIRouter(tags=["infrastructure"])


async def _store_reachable(session: SessionDep) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Website store probe failed: %s", exc)
        return False
    return True


def _scheduler_state(request: Request) -> dict[str, Any]:
    scheduler = getattr(request.app.state, "billing_scheduler", None)
    if scheduler is None:
        return {"enabled": False}

    last = scheduler.last_summary
    return {
        "enabled": True,
        "running": scheduler.running,
        "nextRunAt": scheduler.next_run_at.isoformat() if scheduler.next_run_at else None,
        "lastRun": last.to_dict() if last is not None else None,
    }


@router.get("/health")
async def health(request: Request, session: SessionDep) -> dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _store_reachable(session) else "degraded",
        "billingScheduler": _scheduler_state(request),
    }


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    if await _store_reachable(session):
        return JSONResponse({"status": "ready", "version": __version__, "checks": {"db": "ok"}})
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
    )
