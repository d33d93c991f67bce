"""
HubSpot Integration
====================

Async HubSpot CRM v3/v4 client used by the attribution jobs:
- Contact paging and search
- Property history (propertiesWithHistory)
- Batch object reads and association lookups
- Deal pipeline / stage metadata
- Contact property bootstrap and write-back

Handles rate limiting (100 req / 10s rolling window) and retries
rate-limit, timeout and 5xx failures with exponential backoff.

Setup:
1. Create a Private App in HubSpot -> Settings -> Integrations -> Private Apps
2. Set HUBSPOT_API_KEY in .env (or HUBSPOT_API_KEY_<portalId> per portal)
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from scripts.lib import config
from scripts.lib.errors import (
    APIAuthError,
    APIError,
    APINotFoundError,
    APIRateLimitError,
    APITimeoutError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger("hubspot")

HUBSPOT_RATE_LIMIT = 100
HUBSPOT_RATE_WINDOW = 10  # seconds
BATCH_READ_LIMIT = 100


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (APIRateLimitError, APITimeoutError, httpx.TransportError)):
        return True
    return isinstance(exc, APIError) and (exc.status_code or 0) >= 500


class HubSpotIntegration:
    """HubSpot CRM connector."""

    def __init__(
        self,
        api_key: str = None,
        *,
        base_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
        max_attempts: int = None,
        retry_wait=None,
    ):
        self.api_key = api_key if api_key is not None else config.HUBSPOT_API_KEY
        self.base_url = (base_url or config.HUBSPOT_BASE_URL).rstrip("/")
        self.max_attempts = max_attempts or config.HUBSPOT_MAX_ATTEMPTS
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._request_timestamps: List[float] = []
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=config.HUBSPOT_TIMEOUT_SECONDS,
            transport=transport,
        )

    @classmethod
    def for_portal(cls, portal_id: str, **kwargs) -> "HubSpotIntegration":
        """Client for one portal: HUBSPOT_API_KEY_<portal> wins over HUBSPOT_API_KEY."""
        key = os.getenv(f"HUBSPOT_API_KEY_{portal_id}") or config.HUBSPOT_API_KEY
        return cls(key, **kwargs)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        """Build authorization headers."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self) -> "HubSpotIntegration":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    # ─── Transport ──────────────────────────────────────────────

    async def _rate_limit_wait(self):
        now = time.monotonic()
        self._request_timestamps = [
            t for t in self._request_timestamps if now - t < HUBSPOT_RATE_WINDOW
        ]
        if len(self._request_timestamps) >= HUBSPOT_RATE_LIMIT:
            sleep_time = HUBSPOT_RATE_WINDOW - (now - self._request_timestamps[0]) + 0.1
            logger.debug("Rate limit approaching, sleeping %.1fs", sleep_time)
            await asyncio.sleep(sleep_time)
        self._request_timestamps.append(time.monotonic())

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        json_body: Optional[Dict] = None,
    ) -> Optional[Dict]:
        await self._rate_limit_wait()
        try:
            resp = await self._client.request(method, path, params=params, json=json_body)
        except httpx.TimeoutException:
            raise APITimeoutError(path, config.HUBSPOT_TIMEOUT_SECONDS)

        logger.debug("%s %s -> %d", method, path, resp.status_code)

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise APIRateLimitError(path, int(retry_after) if retry_after and retry_after.isdigit() else None)
        if resp.status_code in (401, 403):
            raise APIAuthError(path, status_code=resp.status_code)
        if resp.status_code == 404:
            raise APINotFoundError(path)
        if resp.status_code >= 400:
            raise APIError(
                f"HubSpot API {method} {path} returned {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code, url=path,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        json_body: Optional[Dict] = None,
    ) -> Optional[Dict]:
        """Make an authenticated request, retrying transient failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, path, params=params, json_body=json_body)

    # ─── Contacts ───────────────────────────────────────────────

    async def list_contact_ids(
        self, after: Optional[str] = None, limit: int = config.HUBSPOT_PAGE_LIMIT
    ) -> Tuple[List[str], Optional[str]]:
        """One page of contact IDs plus the next cursor (None when done)."""
        params: Dict[str, Any] = {"limit": min(limit, config.HUBSPOT_PAGE_LIMIT)}
        if after:
            params["after"] = after
        data = await self._request("GET", "/crm/v3/objects/contacts", params=params) or {}
        ids = [str(r["id"]) for r in data.get("results", []) if r.get("id")]
        next_after = data.get("paging", {}).get("next", {}).get("after")
        return ids, next_after

    async def iter_contact_ids(self) -> AsyncIterator[str]:
        """Every contact ID in the portal, page by page."""
        after = None
        while True:
            ids, after = await self.list_contact_ids(after)
            for contact_id in ids:
                yield contact_id
            if not after or not ids:
                break

    async def get_property_history(
        self, object_type: str, object_id: str, property_name: str
    ) -> List[Dict[str, Any]]:
        """Raw ``propertiesWithHistory`` entries for one property of one object."""
        data = await self._request(
            "GET",
            f"/crm/v3/objects/{object_type}/{object_id}",
            params={"propertiesWithHistory": property_name},
        ) or {}
        return data.get("propertiesWithHistory", {}).get(property_name) or []

    async def update_contact(self, contact_id: str, properties: Dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            json_body={"properties": properties},
        )

    async def get_contact_property(self, name: str) -> Dict:
        return await self._request("GET", f"/crm/v3/properties/contacts/{name}") or {}

    async def create_contact_property(self, definition: Dict[str, Any]) -> Dict:
        return await self._request(
            "POST", "/crm/v3/properties/contacts", json_body=definition
        ) or {}

    # ─── Search / batch / associations ─────────────────────────

    async def search(
        self,
        object_type: str,
        filters: List[Dict[str, Any]],
        properties: Iterable[str],
    ) -> List[Dict]:
        """All objects matching an AND-ed filter list, following search paging."""
        results: List[Dict] = []
        after = None
        while True:
            body: Dict[str, Any] = {
                "filterGroups": [{"filters": filters}],
                "properties": list(properties),
                "limit": config.HUBSPOT_PAGE_LIMIT,
            }
            if after:
                body["after"] = after
            data = await self._request(
                "POST", f"/crm/v3/objects/{object_type}/search", json_body=body
            ) or {}
            page = data.get("results", [])
            results.extend(page)
            after = data.get("paging", {}).get("next", {}).get("after")
            if not after or not page:
                break
        logger.debug("Search %s matched %d objects", object_type, len(results))
        return results

    async def batch_read(
        self,
        object_type: str,
        object_ids: Iterable[str],
        properties: Iterable[str],
    ) -> List[Dict]:
        ids = list(dict.fromkeys(str(i) for i in object_ids))
        props = list(properties)
        results: List[Dict] = []
        for i in range(0, len(ids), BATCH_READ_LIMIT):
            batch = ids[i:i + BATCH_READ_LIMIT]
            data = await self._request(
                "POST",
                f"/crm/v3/objects/{object_type}/batch/read",
                json_body={"inputs": [{"id": oid} for oid in batch], "properties": props},
            ) or {}
            results.extend(data.get("results", []))
        return results

    async def get_associations(
        self, from_type: str, to_type: str, object_ids: Iterable[str]
    ) -> Dict[str, List[str]]:
        """Map each source ID to its associated target IDs."""
        ids = list(dict.fromkeys(str(i) for i in object_ids))
        associations: Dict[str, List[str]] = {}
        for i in range(0, len(ids), BATCH_READ_LIMIT):
            batch = ids[i:i + BATCH_READ_LIMIT]
            data = await self._request(
                "POST",
                f"/crm/v4/associations/{from_type}/{to_type}/batch/read",
                json_body={"inputs": [{"id": oid} for oid in batch]},
            ) or {}
            for result in data.get("results", []):
                from_id = result.get("from", {}).get("id")
                if from_id:
                    associations[str(from_id)] = [
                        str(t.get("toObjectId")) for t in result.get("to", [])
                    ]
        return associations

    # ─── Pipelines ──────────────────────────────────────────────

    async def get_deal_pipelines(self) -> List[Dict]:
        data = await self._request("GET", "/crm/v3/pipelines/deals") or {}
        return data.get("results", [])

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "HubSpot",
            "configured": self.is_configured,
            "features": ["contacts", "deals", "meetings", "pipelines", "property_history"],
        }
