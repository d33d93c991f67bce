"""
Contribution Hub: Contribution Router
========================================
Starts the portal-wide marketing contribution run.

Endpoints:
  POST /api/contribution/run?portalId=   - Start (or observe) a run
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from dashboard.api.dependencies import (
    hubspot_client,
    job_runner,
    portal_id_param,
    source_store,
)
from integrations.hubspot import HubSpotIntegration
from models.attribution_models import ProgressSnapshot
from scripts.attribution.contribution_batch import contribution_job
from scripts.attribution.job_runner import CONTRIBUTION, JobRunner
from scripts.attribution.stores import MarketingSourceStore
from scripts.lib.logger import setup_logger

logger = setup_logger("contribution_router")

router = APIRouter(prefix="/api/contribution", tags=["contribution"])


@router.post("/run", response_model=ProgressSnapshot)
async def run_contribution(
    portal_id: str = Depends(portal_id_param),
    client: HubSpotIntegration = Depends(hubspot_client),
    runner: JobRunner = Depends(job_runner),
    sources: MarketingSourceStore = Depends(source_store),
):
    """Score every contact and write the contribution property back."""
    marketing = sources.selected(portal_id)
    logger.info("Contribution run requested for portal %s (%d sources)", portal_id, len(marketing))
    return runner.start(portal_id, CONTRIBUTION, contribution_job(client, marketing))
