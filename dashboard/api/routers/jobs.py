"""
Contribution Hub: Jobs Router
================================

Endpoints:
  GET /api/jobs/{kind}/status?portalId=   - Progress snapshot (contribution | mcf)
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from dashboard.api.dependencies import job_runner, portal_id_param
from models.attribution_models import ProgressSnapshot
from scripts.attribution.job_runner import JOB_KINDS, JobRunner

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("/{kind}/status", response_model=ProgressSnapshot)
async def job_status(
    kind: str,
    portal_id: str = Depends(portal_id_param),
    runner: JobRunner = Depends(job_runner),
):
    if kind not in JOB_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown job kind: {kind}")
    return runner.status(portal_id, kind)
