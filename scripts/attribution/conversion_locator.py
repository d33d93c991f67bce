"""
Conversion locators.

Each locator finds, for one portal and window ``[start_ms, end_ms]``, the
contacts whose *first-ever* conversion of its kind falls inside the window:

  form_submission   contact ``first_conversion_date`` (first-ever by construction)
  meeting_booked    meetings created in the window, minus contacts that
                    already had a meeting before it
  deal_created      same two-phase check over deals
  closed_won_deal   deals that entered a closed-won stage in the window
                    (stage history, or ``closedate`` flagged approximate)

Per-contact lookups are isolated: a failure is logged, recorded in
``failed`` and the contact is skipped. A closed-won deal whose stage
history cannot be read is skipped the same way and recorded in
``failed_deals``, which the MCF report exposes as ``failedDeals``; the job
``failed`` counter stays per contact. Only run-level problems (e.g.
closed-won stages cannot be resolved) propagate.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from scripts.attribution.stage_cache import StageCache
from scripts.lib import config
from scripts.lib.errors import FATAL
from scripts.lib.logger import setup_logger
from scripts.lib.utils import gather_in_batches, parse_ts_ms, safe_float

logger = setup_logger("conversion_locator")


class ConversionType(str, Enum):
    FORM_SUBMISSION = "form_submission"
    MEETING_BOOKED = "meeting_booked"
    DEAL_CREATED = "deal_created"
    CLOSED_WON_DEAL = "closed_won_deal"


@dataclass(frozen=True)
class ConversionEvent:
    """The first qualifying conversion of one contact."""
    entity_id: str
    timestamp: int
    value: float = 0.0
    currency: Optional[str] = None
    approximate: bool = False
    source_id: Optional[str] = None


def _earlier(a: ConversionEvent, b: ConversionEvent) -> bool:
    return (a.timestamp, a.source_id or "") < (b.timestamp, b.source_id or "")


def keep_earliest(events: Iterable[ConversionEvent]) -> List[ConversionEvent]:
    """One event per entity: the earliest, ties broken by source id."""
    best: Dict[str, ConversionEvent] = {}
    for event in events:
        current = best.get(event.entity_id)
        if current is None or _earlier(event, current):
            best[event.entity_id] = event
    return sorted(best.values(), key=lambda e: e.entity_id)


def _prop(obj: dict, key: str, default=None):
    """Safely retrieve a property from a HubSpot object."""
    return (obj.get("properties") or {}).get(key, default)


def _currency(value: Any) -> Optional[str]:
    text = str(value or "").strip().upper()
    return text or None


def _between(prop: str, start_ms: int, end_ms: int) -> Dict[str, Any]:
    return {"propertyName": prop, "operator": "BETWEEN", "value": str(start_ms), "highValue": str(end_ms)}


class ConversionLocator:
    """Common contract: ``await locate(tenant, start_ms, end_ms)``."""

    conversion_type: ConversionType

    def __init__(self, client, *, batch_size: int = None, batch_pause: float = None):
        self.client = client
        self.batch_size = batch_size or config.MCF_BATCH_SIZE
        self.batch_pause = config.MCF_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
        self.failed: List[str] = []
        self.failed_deals: List[str] = []

    async def locate(self, tenant: str, start_ms: int, end_ms: int) -> List[ConversionEvent]:
        raise NotImplementedError

    def _record_failure(self, entity_id: str, exc: Exception):
        logger.warning(
            "%s: skipping %s after lookup failure: %s",
            self.conversion_type.value, entity_id, exc,
        )
        self.failed.append(entity_id)

    async def _drop_earlier(
        self,
        candidates: List[ConversionEvent],
        converted_before,
        start_ms: int,
    ) -> List[ConversionEvent]:
        """
        Keep candidates with no qualifying event before ``start_ms``.

        ``converted_before(contact_id, start_ms)`` returns True when the
        contact converted earlier; it runs per contact in throttled batches.
        """
        async def _check(event: ConversionEvent) -> Optional[ConversionEvent]:
            try:
                if await converted_before(event.entity_id, start_ms):
                    logger.debug(
                        "%s: contact %s converted before the window",
                        self.conversion_type.value, event.entity_id,
                    )
                    return None
                return event
            except Exception as e:
                if getattr(e, "category", None) == FATAL:
                    raise
                self._record_failure(event.entity_id, e)
                return None

        checked = await gather_in_batches(candidates, _check, self.batch_size, self.batch_pause)
        return [e for e in checked if e is not None]


class FormSubmissionLocator(ConversionLocator):
    conversion_type = ConversionType.FORM_SUBMISSION
    date_property = "first_conversion_date"

    async def locate(self, tenant: str, start_ms: int, end_ms: int) -> List[ConversionEvent]:
        contacts = await self.client.search(
            "contacts", [_between(self.date_property, start_ms, end_ms)], [self.date_property]
        )
        events = []
        for contact in contacts:
            ts = parse_ts_ms(_prop(contact, self.date_property))
            if start_ms <= ts <= end_ms:
                events.append(ConversionEvent(entity_id=str(contact["id"]), timestamp=ts))
        events = keep_earliest(events)
        logger.info("form_submission: %d first conversions for portal %s", len(events), tenant)
        return events


class CreatedObjectLocator(ConversionLocator):
    """
    Two-phase locator for objects whose creation is the conversion.

    Phase 1 finds objects created in the window and maps them to contacts.
    Phase 2 drops contacts with any such object created before the window.
    """

    object_type: str
    created_property: str
    value_property: Optional[str] = None
    currency_property: Optional[str] = None

    def _properties(self) -> List[str]:
        return [p for p in (self.created_property, self.value_property, self.currency_property) if p]

    def _event(self, contact_id: str, obj: Dict) -> ConversionEvent:
        return ConversionEvent(
            entity_id=contact_id,
            timestamp=parse_ts_ms(_prop(obj, self.created_property)),
            value=safe_float(_prop(obj, self.value_property)) if self.value_property else 0.0,
            currency=_currency(_prop(obj, self.currency_property)) if self.currency_property else None,
            source_id=str(obj["id"]),
        )

    async def _candidates(self, start_ms: int, end_ms: int) -> List[ConversionEvent]:
        objects = await self.client.search(
            self.object_type, [_between(self.created_property, start_ms, end_ms)], self._properties()
        )
        in_window = {
            str(o["id"]): o for o in objects
            if start_ms <= parse_ts_ms(_prop(o, self.created_property)) <= end_ms
        }
        if not in_window:
            return []
        to_contacts = await self.client.get_associations(self.object_type, "contacts", in_window)
        return keep_earliest(
            self._event(contact_id, in_window[obj_id])
            for obj_id, contact_ids in to_contacts.items()
            if obj_id in in_window
            for contact_id in contact_ids
        )

    async def _has_earlier(self, contact_id: str, start_ms: int) -> bool:
        assoc = await self.client.get_associations("contacts", self.object_type, [contact_id])
        object_ids = assoc.get(contact_id, [])
        if not object_ids:
            return False
        objects = await self.client.batch_read(self.object_type, object_ids, [self.created_property])
        return any(
            0 < parse_ts_ms(_prop(o, self.created_property)) < start_ms for o in objects
        )

    async def locate(self, tenant: str, start_ms: int, end_ms: int) -> List[ConversionEvent]:
        candidates = await self._candidates(start_ms, end_ms)
        events = await self._drop_earlier(candidates, self._has_earlier, start_ms)
        logger.info(
            "%s: %d candidates, %d first-ever, %d failed for portal %s",
            self.conversion_type.value, len(candidates), len(events), len(self.failed), tenant,
        )
        return events


class MeetingBookedLocator(CreatedObjectLocator):
    conversion_type = ConversionType.MEETING_BOOKED
    object_type = "meetings"
    created_property = "hs_createdate"


class DealCreatedLocator(CreatedObjectLocator):
    conversion_type = ConversionType.DEAL_CREATED
    object_type = "deals"
    created_property = "createdate"
    value_property = "amount"
    currency_property = "deal_currency_code"


class ClosedWonDealLocator(ConversionLocator):
    """
    Contacts whose first deal ever to reach a closed-won stage did so in
    the window. A stage is closed-won when it is closed with probability
    1.0. The entry time comes from ``dealstage`` history; without history
    ``closedate`` is used and the event is marked approximate.
    """

    conversion_type = ConversionType.CLOSED_WON_DEAL
    deal_properties = ["dealstage", "closedate", "amount", "deal_currency_code"]

    def __init__(self, client, *, stage_cache: StageCache = None, **kwargs):
        super().__init__(client, **kwargs)
        self.stage_cache = stage_cache or StageCache()

    async def won_at(self, deal: Dict, stages: FrozenSet[str]) -> Tuple[int, bool]:
        """(timestamp the deal first entered a closed-won stage, approximate)."""
        history = await self.client.get_property_history("deals", str(deal["id"]), "dealstage")
        entered = [
            parse_ts_ms(h.get("timestamp"))
            for h in history
            if str(h.get("value", "")).strip() in stages
        ]
        entered = [ts for ts in entered if ts > 0]
        if entered:
            return min(entered), False
        return parse_ts_ms(_prop(deal, "closedate")), True

    async def _won_deals(self, start_ms: int, stages: FrozenSet[str]) -> List[Dict]:
        return await self.client.search(
            "deals",
            [
                {"propertyName": "dealstage", "operator": "IN", "values": sorted(stages)},
                {"propertyName": "hs_lastmodifieddate", "operator": "GTE", "value": str(start_ms)},
            ],
            self.deal_properties,
        )

    async def locate(self, tenant: str, start_ms: int, end_ms: int) -> List[ConversionEvent]:
        stages = await self.stage_cache.closed_won_stages(tenant, self.client.get_deal_pipelines)
        deals = await self._won_deals(start_ms, stages)

        async def _timed(deal: Dict) -> Optional[Tuple[Dict, int, bool]]:
            try:
                ts, approximate = await self.won_at(deal, stages)
            except Exception as e:
                if getattr(e, "category", None) == FATAL:
                    raise
                logger.warning("closed_won_deal: skipping deal %s after lookup failure: %s", deal.get("id"), e)
                self.failed_deals.append(str(deal.get("id")))
                return None
            return (deal, ts, approximate) if start_ms <= ts <= end_ms else None

        timed = [t for t in await gather_in_batches(deals, _timed, self.batch_size, self.batch_pause) if t]
        if not timed:
            logger.info("closed_won_deal: no deals won in window for portal %s", tenant)
            return []

        by_id = {str(deal["id"]): (deal, ts, approx) for deal, ts, approx in timed}
        to_contacts = await self.client.get_associations("deals", "contacts", by_id)
        events = []
        for deal_id, contact_ids in to_contacts.items():
            if deal_id not in by_id:
                continue
            deal, ts, approximate = by_id[deal_id]
            for contact_id in contact_ids:
                events.append(ConversionEvent(
                    entity_id=contact_id,
                    timestamp=ts,
                    value=safe_float(_prop(deal, "amount")),
                    currency=_currency(_prop(deal, "deal_currency_code")),
                    approximate=approximate,
                    source_id=deal_id,
                ))
        candidates = keep_earliest(events)

        async def _won_earlier(contact_id: str, window_start: int) -> bool:
            assoc = await self.client.get_associations("contacts", "deals", [contact_id])
            deal_ids = [d for d in assoc.get(contact_id, []) if d not in by_id]
            if not deal_ids:
                return False
            others = await self.client.batch_read("deals", deal_ids, self.deal_properties)
            for other in others:
                if str(_prop(other, "dealstage", "")) not in stages:
                    continue
                ts, _ = await self.won_at(other, stages)
                if 0 < ts < window_start:
                    return True
            return False

        events = await self._drop_earlier(candidates, _won_earlier, start_ms)
        logger.info(
            "closed_won_deal: %d deals won in window, %d first-ever contacts "
            "(%d approximate), %d contacts and %d deals failed for portal %s",
            len(timed), len(events), sum(1 for e in events if e.approximate),
            len(self.failed), len(self.failed_deals), tenant,
        )
        return events


LOCATORS = {
    ConversionType.FORM_SUBMISSION: FormSubmissionLocator,
    ConversionType.MEETING_BOOKED: MeetingBookedLocator,
    ConversionType.DEAL_CREATED: DealCreatedLocator,
    ConversionType.CLOSED_WON_DEAL: ClosedWonDealLocator,
}


def get_locator(
    conversion_type: ConversionType | str,
    client,
    *,
    stage_cache: StageCache = None,
    **kwargs,
) -> ConversionLocator:
    """Instantiate the locator for a conversion type."""
    kind = ConversionType(conversion_type)
    if kind is ConversionType.CLOSED_WON_DEAL:
        return ClosedWonDealLocator(client, stage_cache=stage_cache, **kwargs)
    return LOCATORS[kind](client, **kwargs)
