"""
Marketing contribution batch.

Scores every contact in a portal from its ``hs_latest_source`` history
and writes the result (0-100, two decimals) back to the contact property
``marketing_contribution_percentage``.

Usage:
    async for result in run_contribution_batch(client, portal_id, marketing):
        ...
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from scripts.attribution.contribution_scorer import POLICIES, ContributionScore, score
from scripts.attribution.job_runner import JobState
from scripts.attribution.normalizer import for_contribution
from scripts.lib import config
from scripts.lib.errors import FATAL, APINotFoundError, ConfigError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import gather_in_batches

logger = setup_logger("contribution_batch")

PROPERTY_DEFINITION = {
    "label": "Marketing Contribution Percentage",
    "description": "Percentage of hs_latest_source history changes attributed to marketing sources.",
    "groupName": "contactinformation",
    "type": "number",
    "fieldType": "number",
    "hidden": False,
    "formField": False,
    "displayOrder": -1,
}


@dataclass(frozen=True)
class ContributionResult:
    entity_id: str
    percent: float = 0.0
    total_count: int = 0
    marketing_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def no_history(self) -> bool:
        return self.ok and self.total_count == 0


async def ensure_property_exists(client, property_name: str = None) -> bool:
    """
    Create the contribution property if the portal does not have it yet.

    Returns:
        True if the property was created, False if it already existed.
    """
    name = property_name or config.CONTRIBUTION_PROPERTY
    try:
        await client.get_contact_property(name)
        return False
    except APINotFoundError:
        pass

    await client.create_contact_property({"name": name, **PROPERTY_DEFINITION})
    logger.info("Created contact property %s", name)
    return True


async def process_contact(
    client,
    contact_id: str,
    marketing: Iterable[str],
    policy: str = None,
    *,
    source_property: str = None,
    property_name: str = None,
) -> ContributionResult:
    """Fetch one contact's history, score it and write the value back."""
    source = source_property or config.SOURCE_PROPERTY
    history = await client.get_property_history("contacts", contact_id, source)
    result: ContributionScore = score(
        for_contribution(history), marketing, policy or config.CONTRIBUTION_POLICY
    )
    await client.update_contact(
        contact_id,
        {property_name or config.CONTRIBUTION_PROPERTY: result.property_value},
    )
    logger.debug(
        "Contact %s: %d/%d marketing -> %.2f%%",
        contact_id, result.marketing_count, result.total_count, result.property_value,
    )
    return ContributionResult(
        entity_id=contact_id,
        percent=result.percent,
        total_count=result.total_count,
        marketing_count=result.marketing_count,
    )


async def run_contribution_batch(
    client,
    tenant: str,
    marketing: Iterable[str],
    policy: str = None,
    *,
    progress: JobState = None,
    notify: Callable[[], Awaitable[None]] = None,
    batch_size: int = None,
    batch_pause: float = None,
) -> AsyncIterator[ContributionResult]:
    """
    Score every contact in the portal, one page at a time.

    Per-contact failures are logged, counted and yielded with ``error``
    set; they never stop the batch. Auth failures do.
    """
    marketing = list(marketing)
    policy = policy or config.CONTRIBUTION_POLICY
    if policy not in POLICIES:
        raise ConfigError(f"Unknown contribution policy {policy!r}", config_key="CONTRIBUTION_POLICY")
    batch_size = batch_size or config.MCF_BATCH_SIZE
    batch_pause = config.MCF_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
    progress = progress or JobState(tenant=tenant, kind="contribution")

    async def _one(contact_id: str) -> ContributionResult:
        try:
            result = await process_contact(client, contact_id, marketing, policy)
        except Exception as e:
            if getattr(e, "category", None) == FATAL:
                raise
            logger.error("Failed contact %s: %s", contact_id, e)
            progress.incr("processed")
            progress.incr("failed")
            return ContributionResult(entity_id=contact_id, error=str(e))
        progress.incr("processed")
        progress.incr("skipped_no_history" if result.no_history else "updated")
        return result

    after = None
    while True:
        ids, after = await client.list_contact_ids(after)
        results = await gather_in_batches(ids, _one, batch_size, batch_pause)
        for result in results:
            yield result
        if notify is not None:
            await notify()
        if not after or not ids:
            break


def contribution_job(
    client,
    marketing: Iterable[str],
    policy: str = None,
    *,
    batch_size: int = None,
    batch_pause: float = None,
):
    """Build a JobRunner work function for a full contribution run."""
    async def work(state: JobState, notify) -> Dict[str, Any]:
        state.property_created = await ensure_property_exists(client)
        async for _ in run_contribution_batch(
            client, state.tenant, marketing, policy,
            progress=state, notify=notify,
            batch_size=batch_size, batch_pause=batch_pause,
        ):
            pass
        parts = []
        if state.property_created:
            parts.append("Created property.")
        parts.append(f"Processed {state.processed} contacts.")
        parts.append(f"Updated: {state.updated}.")
        parts.append(f"Zero-history: {state.skipped_no_history}.")
        if state.failed:
            parts.append(f"Failed: {state.failed}.")
        state.message = " ".join(parts)
        return {
            "processed": state.processed,
            "updated": state.updated,
            "skippedNoHistory": state.skipped_no_history,
            "failed": state.failed,
            "propertyCreated": state.property_created,
        }

    return work
