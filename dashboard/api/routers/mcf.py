"""
Contribution Hub: MCF Router
===============================
Multi-channel funnel analysis.

Endpoints:
  POST /api/mcf/run?portalId=                       - Start (or observe) an analysis
  GET  /api/mcf/report?portalId=&conversionType=    - Latest finished report
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.dependencies import (
    hubspot_client,
    job_runner,
    portal_id_param,
    report_store,
    stage_cache,
)
from integrations.hubspot import HubSpotIntegration
from models.attribution_models import MCFReport, McfRunRequest, ProgressSnapshot
from scripts.attribution.conversion_locator import ConversionType
from scripts.attribution.job_runner import MCF, JobRunner
from scripts.attribution.mcf_analysis import run_mcf_analysis
from scripts.attribution.stage_cache import StageCache
from scripts.attribution.stores import ReportStore
from scripts.lib.logger import setup_logger

logger = setup_logger("mcf_router")

router = APIRouter(prefix="/api/mcf", tags=["mcf"])


@router.post("/run", response_model=ProgressSnapshot)
async def run_mcf(
    req: McfRunRequest,
    portal_id: str = Depends(portal_id_param),
    client: HubSpotIntegration = Depends(hubspot_client),
    runner: JobRunner = Depends(job_runner),
    cache: StageCache = Depends(stage_cache),
    reports: ReportStore = Depends(report_store),
):
    """Locate conversions, build paths and store the ranked report."""
    async def work(state, notify):
        report = await run_mcf_analysis(
            client,
            portal_id,
            req.conversion_type,
            req.start_date,
            req.end_date,
            req.threshold_pct,
            lookback_days=req.lookback_days,
            progress=state,
            notify=notify,
            stage_cache=cache,
        )
        reports.save(report)
        state.message = (
            f"{report['totalConversions']} conversions across "
            f"{report['uniquePaths']} paths ({len(report['paths'])} above threshold)."
        )
        return report

    logger.info(
        "MCF run requested for portal %s: %s %s..%s",
        portal_id, req.conversion_type.value, req.start_date, req.end_date,
    )
    return runner.start(portal_id, MCF, work)


@router.get("/report", response_model=MCFReport)
async def get_report(
    portal_id: str = Depends(portal_id_param),
    conversion_type: ConversionType = Query(..., alias="conversionType"),
    reports: ReportStore = Depends(report_store),
):
    """Latest finished report for a portal and conversion type."""
    report = reports.load(portal_id, conversion_type.value)
    if report is None:
        raise HTTPException(status_code=404, detail="No MCF report for this portal and conversion type")
    return report
