"""
Contribution Hub: Shared API Dependencies
============================================
Per-portal HubSpot clients and shared services hung off ``app.state``.
"""
from __future__ import annotations

from fastapi import HTTPException, Query, Request

from integrations.hubspot import HubSpotIntegration
from scripts.attribution.job_runner import JobRunner
from scripts.attribution.stage_cache import StageCache
from scripts.attribution.stores import MarketingSourceStore, ReportStore


def portal_id_param(portal_id: str = Query(..., alias="portalId", min_length=1)) -> str:
    return portal_id


def get_hubspot(app, portal_id: str) -> HubSpotIntegration:
    """Cached client for one portal; 503 if no token is configured for it."""
    clients = app.state.hubspot_clients
    client = clients.get(portal_id)
    if client is None:
        client = HubSpotIntegration.for_portal(portal_id)
        clients[portal_id] = client
    if not client.is_configured:
        raise HTTPException(status_code=503, detail="HubSpot not configured")
    return client


def hubspot_client(request: Request, portal_id: str = Query(..., alias="portalId", min_length=1)) -> HubSpotIntegration:
    return get_hubspot(request.app, portal_id)


def job_runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


def stage_cache(request: Request) -> StageCache:
    return request.app.state.stage_cache


def source_store(request: Request) -> MarketingSourceStore:
    return request.app.state.source_store


def report_store(request: Request) -> ReportStore:
    return request.app.state.report_store
