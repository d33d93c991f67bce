"""
Contribution Hub: Webhook Router
===================================
Receives HubSpot property-change events for hs_latest_source and
recalculates the affected contact's contribution in the background.

Endpoints:
  POST /webhook/hs-latest-source   - One event or a list of events
"""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from dashboard.api.dependencies import get_hubspot
from models.attribution_models import SourceChangeEvent
from scripts.attribution.contribution_batch import ensure_property_exists, process_contact
from scripts.lib.logger import setup_logger

logger = setup_logger("webhook_router")

router = APIRouter(prefix="/webhook", tags=["webhook"])


def parse_events(body: Any) -> List[SourceChangeEvent]:
    """Valid events with both ids; anything else is logged and dropped."""
    raw = body if isinstance(body, list) else [body]
    events = []
    for item in raw:
        try:
            event = SourceChangeEvent.model_validate(item)
        except ValidationError as e:
            logger.warning("Webhook: unreadable event %r: %s", item, e)
            continue
        if not event.portal_id or not event.object_id:
            logger.warning("Webhook event missing portalId or objectId: %r", item)
            continue
        events.append(event)
    return events


async def recalculate(app: FastAPI, events: List[SourceChangeEvent]):
    """Recompute each contact; one failing event does not stop the rest."""
    for event in events:
        portal_id, contact_id = str(event.portal_id), str(event.object_id)
        try:
            client = get_hubspot(app, portal_id)
            await ensure_property_exists(client)
            marketing = app.state.source_store.selected(portal_id)
            result = await process_contact(client, contact_id, marketing)
        except Exception as e:
            logger.error("Webhook: error processing contact %s (portal %s): %s", contact_id, portal_id, e)
            continue
        logger.info(
            "Webhook: updated contact %s -> %.2f%%", contact_id, round(result.percent * 100, 2),
        )


@router.post("/hs-latest-source", response_class=PlainTextResponse)
async def hs_latest_source(request: Request, background: BackgroundTasks):
    """Acknowledge immediately; HubSpot expects a 2xx within 5 seconds."""
    try:
        body: Dict[str, Any] | List[Any] = await request.json()
    except ValueError:
        logger.warning("Webhook: body is not JSON")
        return "OK"
    events = parse_events(body)
    if events:
        background.add_task(recalculate, request.app, events)
    return "OK"
