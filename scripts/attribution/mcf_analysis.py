"""
Multi-channel funnel analysis.

For every first-ever conversion of one type inside a date window, fetch
the contact's source history, build the path that led up to the
conversion, aggregate paths across contacts and rank them.

Flow:
    locate conversions -> fetch history (throttled batches)
    -> normalise -> build path -> aggregate -> threshold + rank
"""
from __future__ import annotations

from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from scripts.attribution.aggregator import (
    AggregatedPath,
    accumulate,
    all_currencies,
    finalize,
    total_conversions,
)
from scripts.attribution.conversion_locator import ConversionEvent, ConversionType, get_locator
from scripts.attribution.job_runner import JobState
from scripts.attribution.normalizer import for_paths
from scripts.attribution.path_builder import build_path
from scripts.attribution.ranking import rank
from scripts.attribution.stage_cache import StageCache
from scripts.lib import config
from scripts.lib.errors import FATAL, DataError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import day_window_ms, gather_in_batches, now_iso

logger = setup_logger("mcf_analysis")


def validate_window(start_date: date, end_date: date, lookback_days: Optional[int] = None):
    """Reject inverted windows and negative lookbacks before any CRM call."""
    if end_date < start_date:
        raise DataError(
            f"endDate {end_date} is before startDate {start_date}",
            code="INVALID_DATE_RANGE",
        )
    if lookback_days is not None and lookback_days < 0:
        raise DataError("lookbackDays must be >= 0", code="INVALID_LOOKBACK")


async def run_mcf_analysis(
    client,
    tenant: str,
    conversion_type: ConversionType | str,
    start_date: date,
    end_date: date,
    threshold_pct: float = None,
    *,
    lookback_days: Optional[int] = None,
    progress: JobState = None,
    notify: Callable[[], Awaitable[None]] = None,
    stage_cache: StageCache = None,
    source_property: str = None,
    batch_size: int = None,
    batch_pause: float = None,
) -> Dict[str, Any]:
    """
    Build the MCF report for one portal and conversion type.

    Args:
        client: HubSpot client (see ``integrations.hubspot``).
        tenant: Portal id, used for logging and stage caching.
        conversion_type: One of :class:`ConversionType`.
        start_date / end_date: Inclusive UTC day window.
        threshold_pct: Minimum share of conversions a path needs.
        lookback_days: Only history this many days before a conversion
            counts; None means the full journey.
        progress: Job state whose counters are updated as the run goes.
        notify: Awaited after each history batch (progress push).

    Returns:
        MCF report dict (camelCase keys).

    Raises:
        DataError: invalid window.
        StageResolutionError / APIAuthError: run-level failures.
    """
    kind = ConversionType(conversion_type)
    threshold_pct = config.DEFAULT_THRESHOLD_PCT if threshold_pct is None else threshold_pct
    validate_window(start_date, end_date, lookback_days)
    start_ms, end_ms = day_window_ms(start_date, end_date)
    prop = source_property or config.SOURCE_PROPERTY
    batch_size = batch_size or config.MCF_BATCH_SIZE
    batch_pause = config.MCF_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
    progress = progress or JobState(tenant=tenant, kind="mcf")

    logger.info(
        "MCF %s for portal %s: %s..%s threshold=%.2f%% lookback=%s",
        kind.value, tenant, start_date, end_date, threshold_pct, lookback_days,
    )

    locator = get_locator(
        kind, client, stage_cache=stage_cache, batch_size=batch_size, batch_pause=batch_pause,
    )
    events = await locator.locate(tenant, start_ms, end_ms)
    progress.set("converting", len(events))
    if locator.failed:
        progress.incr("failed", len(locator.failed))
    if notify is not None:
        await notify()

    async def _path_for(event: ConversionEvent) -> Optional[List[str]]:
        try:
            history = await client.get_property_history("contacts", event.entity_id, prop)
        except Exception as e:
            if getattr(e, "category", None) == FATAL:
                raise
            logger.warning("History fetch failed for contact %s: %s", event.entity_id, e)
            progress.incr("failed")
            return None
        progress.incr("processed")
        return build_path(for_paths(history), event.timestamp, lookback_days)

    async def _on_batch(done: int):
        logger.debug("MCF %s portal %s: %d/%d histories", kind.value, tenant, done, len(events))
        if notify is not None:
            await notify()

    paths = await gather_in_batches(events, _path_for, batch_size, batch_pause, on_batch=_on_batch)

    bucket: Dict[str, AggregatedPath] = {}
    approximate = 0
    for event, path in zip(events, paths):
        if path is None:
            continue
        accumulate(bucket, event, path)
        if event.approximate:
            approximate += 1

    rows = finalize(bucket)
    total = total_conversions(rows)
    ranked, cutoff = rank(rows, total, threshold_pct)
    currencies = all_currencies(rows)

    report = {
        "portalId": tenant,
        "conversionType": kind.value,
        "startDate": start_date.isoformat(),
        "endDate": end_date.isoformat(),
        "lookbackDays": lookback_days,
        "thresholdPct": threshold_pct,
        "thresholdCount": cutoff,
        "totalContacts": len(events),
        "totalConversions": total,
        "approximateConversions": approximate,
        "failedDeals": len(locator.failed_deals),
        "uniquePaths": len(rows),
        "paths": [row.to_dict() for row in ranked],
        "currencies": currencies,
        "mixedCurrencies": len(currencies) > 1,
        "refreshedAt": now_iso(),
    }
    logger.info(
        "MCF %s for portal %s: %d conversions, %d paths (%d above threshold %d)",
        kind.value, tenant, total, len(rows), len(ranked), cutoff,
    )
    return report
