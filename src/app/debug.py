"""
Operational Debug Endpoints

Dependency probes and manual control of background jobs. Mounted under
``/debug`` outside production only; in production the jobs run on their
schedule and nothing here is exposed.
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

from app.core.database import async_session_maker
from app.core.scheduler import list_registered_jobs, pause_job, resume_job, trigger_job_manually

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/debug", tags=["Debug"])


@router.get("/dependencies")
async def probe_dependencies(request: Request) -> dict[str, Any]:
    """Round-trip the database and Redis and report each result."""
    report: dict[str, Any] = {}

    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        report["database"] = {"ok": True}
    except Exception as e:
        logger.warning(f"Database probe failed: {e}")
        report["database"] = {"ok": False, "error": str(e)}

    counter_store = getattr(request.app.state, "counter_store", None)
    if counter_store is None or not counter_store.is_available():
        report["redis"] = {"ok": False, "error": "not connected"}
    else:
        try:
            await counter_store.client.ping()
            report["redis"] = {"ok": True}
        except Exception as e:
            logger.warning(f"Redis probe failed: {e}")
            report["redis"] = {"ok": False, "error": str(e)}

    return report


@router.get("/jobs")
async def jobs_overview() -> list[dict[str, Any]]:
    """Registered jobs with next run time and pause state."""
    return list_registered_jobs()


@router.post("/jobs/{job_id}/run")
async def run_job(job_id: str) -> dict[str, Any]:
    """
    Run a job immediately, e.g. ``invites_expire_stale``.

    Raises:
        HTTPException 404: Unknown job id
    """
    try:
        return await trigger_job_manually(job_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.post("/jobs/{job_id}/pause")
async def pause(job_id: str) -> dict[str, Any]:
    return {"job_id": job_id, "paused": pause_job(job_id)}


@router.post("/jobs/{job_id}/resume")
async def resume(job_id: str) -> dict[str, Any]:
    return {"job_id": job_id, "resumed": resume_job(job_id)}
