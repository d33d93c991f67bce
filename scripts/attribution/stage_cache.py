"""
Read-through TTL cache for deal pipeline stage metadata.

Pipelines change rarely, so the closed-won stage set is fetched once per
portal and reused until the entry is older than the TTL.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, List

from scripts.lib import config
from scripts.lib.errors import APIError, StageResolutionError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import safe_float

logger = setup_logger("stage_cache")


@dataclass(frozen=True)
class CacheEntry:
    value: FrozenSet[str]
    fetched_at: float

    def is_fresh(self, ttl: float, now: float) -> bool:
        return now - self.fetched_at < ttl


def is_closed_won(stage: Dict) -> bool:
    """Closed AND win probability exactly 1.0."""
    meta = stage.get("metadata") or {}
    is_closed = str(meta.get("isClosed", "")).lower() == "true"
    return is_closed and safe_float(meta.get("probability"), default=-1.0) == 1.0


def closed_won_stage_ids(pipelines: List[Dict]) -> FrozenSet[str]:
    return frozenset(
        str(stage["id"])
        for pipeline in pipelines
        for stage in pipeline.get("stages", [])
        if stage.get("id") and is_closed_won(stage)
    )


class StageCache:
    """Closed-won stage IDs per portal with a TTL."""

    def __init__(self, ttl_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = config.STAGE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def closed_won_stages(
        self,
        tenant: str,
        fetch_pipelines: Callable[[], Awaitable[List[Dict]]],
    ) -> FrozenSet[str]:
        """
        Closed-won stage IDs for ``tenant``, fetching on miss or staleness.

        Raises:
            StageResolutionError: pipelines could not be fetched, or no
                stage qualifies as closed-won.
        """
        entry = self._entries.get(tenant)
        if entry is not None and entry.is_fresh(self.ttl_seconds, self._clock()):
            return entry.value

        lock = self._locks.setdefault(tenant, asyncio.Lock())
        async with lock:
            return await self._refresh(tenant, fetch_pipelines)

    async def _refresh(self, tenant, fetch_pipelines) -> FrozenSet[str]:
        now = self._clock()
        entry = self._entries.get(tenant)
        if entry is not None and entry.is_fresh(self.ttl_seconds, now):
            return entry.value

        try:
            pipelines = await fetch_pipelines()
        except APIError as e:
            raise StageResolutionError(str(e)) from e

        stages = closed_won_stage_ids(pipelines)
        if not stages:
            raise StageResolutionError("no stage is closed with probability 1.0")

        self._entries[tenant] = CacheEntry(value=stages, fetched_at=now)
        logger.info("Cached %d closed-won stages for portal %s", len(stages), tenant)
        return stages
