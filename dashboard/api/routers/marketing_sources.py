"""
Contribution Hub: Marketing Sources Router
=============================================
Per-portal choice of which hs_latest_source values count as marketing.

Endpoints:
  GET  /api/marketing-sources?portalId=   - Available + selected sources
  POST /api/marketing-sources?portalId=   - Save the selection
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from dashboard.api.dependencies import portal_id_param, source_store
from models.attribution_models import MarketingSourcesResponse, MarketingSourcesUpdate
from scripts.attribution.stores import MarketingSourceStore
from scripts.lib.errors import ConfigError

router = APIRouter(prefix="/api/marketing-sources", tags=["settings"])


@router.get("", response_model=MarketingSourcesResponse)
async def get_sources(
    portal_id: str = Depends(portal_id_param),
    store: MarketingSourceStore = Depends(source_store),
):
    return store.get(portal_id)


@router.post("", response_model=MarketingSourcesResponse)
async def save_sources(
    body: MarketingSourcesUpdate,
    portal_id: str = Depends(portal_id_param),
    store: MarketingSourceStore = Depends(source_store),
):
    """Replace the portal's marketing set. Unknown values are rejected."""
    try:
        return store.save(portal_id, body.selected)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
