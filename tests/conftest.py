"""Shared fixtures: an in-memory HubSpot stand-in and history helpers."""

from typing import Dict, List, Optional, Set

import pytest

from scripts.lib.errors import APIError, APINotFoundError

DAY_MS = 86_400_000


def hist(*pairs):
    """History list in HubSpot's shape from (timestamp, value) pairs."""
    return [{"timestamp": str(ts), "value": value} for ts, value in pairs]


def _matches(obj: Dict, flt: Dict) -> bool:
    raw = (obj.get("properties") or {}).get(flt["propertyName"])
    op = flt["operator"]
    if op == "IN":
        return str(raw) in flt["values"]
    if raw in (None, ""):
        return False
    value = float(raw)
    if op == "BETWEEN":
        return float(flt["value"]) <= value <= float(flt["highValue"])
    if op == "GTE":
        return value >= float(flt["value"])
    raise AssertionError(f"unsupported operator {op}")


class FakeHubSpot:
    """Implements the subset of HubSpotIntegration the attribution code calls."""

    is_configured = True

    def __init__(self):
        self.objects: Dict[str, Dict[str, Dict]] = {"contacts": {}, "deals": {}, "meetings": {}}
        self.histories: Dict[tuple, List[Dict]] = {}
        self.associations: Dict[tuple, Dict[str, List[str]]] = {}
        self.pipelines: List[Dict] = []
        self.properties: Set[str] = set()
        self.created_properties: List[Dict] = []
        self.updates: Dict[str, Dict] = {}
        self.failing_history: Dict[str, Exception] = {}
        self.failing_updates: Set[str] = set()
        self.page_size = 100
        self.pipeline_calls = 0

    # ─── Setup helpers ──────────────────────────────────────────

    def add(self, object_type: str, object_id: str, **properties) -> Dict:
        obj = {"id": str(object_id), "properties": {k: str(v) for k, v in properties.items()}}
        self.objects[object_type][str(object_id)] = obj
        return obj

    def associate(self, from_type: str, from_id: str, to_type: str, to_id: str):
        self.associations.setdefault((from_type, to_type), {}).setdefault(str(from_id), []).append(str(to_id))
        self.associations.setdefault((to_type, from_type), {}).setdefault(str(to_id), []).append(str(from_id))

    def set_history(self, object_type: str, object_id: str, prop: str, entries: List[Dict]):
        self.histories[(object_type, str(object_id), prop)] = entries

    # ─── Client interface ───────────────────────────────────────

    async def aclose(self):
        pass

    async def search(self, object_type, filters, properties):
        return [
            o for o in self.objects[object_type].values()
            if all(_matches(o, f) for f in filters)
        ]

    async def batch_read(self, object_type, object_ids, properties):
        return [self.objects[object_type][i] for i in object_ids if i in self.objects[object_type]]

    async def get_associations(self, from_type, to_type, object_ids):
        table = self.associations.get((from_type, to_type), {})
        return {str(i): list(table[str(i)]) for i in object_ids if str(i) in table}

    async def get_property_history(self, object_type, object_id, property_name):
        if object_id in self.failing_history:
            raise self.failing_history[object_id]
        return list(self.histories.get((object_type, str(object_id), property_name), []))

    async def get_deal_pipelines(self):
        self.pipeline_calls += 1
        return self.pipelines

    async def list_contact_ids(self, after: Optional[str] = None, limit: int = 100):
        ids = sorted(self.objects["contacts"], key=int)
        start = int(after or 0)
        page = ids[start:start + self.page_size]
        nxt = start + self.page_size
        return page, (str(nxt) if nxt < len(ids) else None)

    async def update_contact(self, contact_id, properties):
        if contact_id in self.failing_updates:
            raise APIError("HubSpot API PATCH returned 500", status_code=500)
        self.updates.setdefault(contact_id, {}).update(properties)

    async def get_contact_property(self, name):
        if name not in self.properties:
            raise APINotFoundError(f"/crm/v3/properties/contacts/{name}")
        return {"name": name}

    async def create_contact_property(self, definition):
        self.properties.add(definition["name"])
        self.created_properties.append(definition)
        return definition


def won_pipeline():
    return [{
        "id": "default",
        "stages": [
            {"id": "appointmentscheduled", "metadata": {"isClosed": "false", "probability": "0.2"}},
            {"id": "closedwon", "metadata": {"isClosed": "true", "probability": "1.0"}},
            {"id": "closedlost", "metadata": {"isClosed": "true", "probability": "0.0"}},
        ],
    }]


@pytest.fixture
def crm():
    return FakeHubSpot()
