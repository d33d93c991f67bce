"""
Contribution Hub: Pydantic Models
====================================

Request/response models for contribution runs, MCF analysis, job status
and marketing-source settings. Fields are snake_case in Python and
camelCase on the wire.
"""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from scripts.attribution.conversion_locator import ConversionType


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── MCF ────────────────────────────────────────────────────

class McfRunRequest(WireModel):
    """Body of POST /api/mcf/run."""
    conversion_type: ConversionType
    start_date: date
    end_date: date
    threshold_pct: Optional[float] = Field(None, ge=0, le=100)
    lookback_days: Optional[int] = Field(None, ge=0, le=3650)

    @model_validator(mode="after")
    def check_window(self) -> "McfRunRequest":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class PathSummaryModel(WireModel):
    path: List[str]
    key: str
    conversions: int = Field(..., ge=1)
    total_value: float = Field(..., ge=0)
    currencies: List[str] = Field(default_factory=list)
    mixed_currencies: bool = False


class MCFReport(WireModel):
    portal_id: str
    conversion_type: ConversionType
    start_date: date
    end_date: date
    lookback_days: Optional[int] = None
    threshold_pct: float
    threshold_count: int = Field(..., ge=1)
    total_conversions: int
    total_contacts: int
    approximate_conversions: int = 0
    failed_deals: int = 0
    unique_paths: int = 0
    paths: List[PathSummaryModel] = Field(default_factory=list)
    currencies: List[str] = Field(default_factory=list)
    mixed_currencies: bool = False
    refreshed_at: str
    saved_at: Optional[str] = None


# ─── Jobs ───────────────────────────────────────────────────

class ProgressSnapshot(WireModel):
    """Job status as returned by the run and status endpoints."""
    portal_id: str
    kind: str
    status: str = Field(description="idle | running | completed | error")
    running: bool
    processed: int = 0
    converting: int = 0
    updated: int = 0
    failed: int = 0
    skipped_no_history: int = 0
    property_created: bool = False
    message: Optional[str] = None
    error_code: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


# ─── Settings ───────────────────────────────────────────────

class SourceOption(BaseModel):
    value: str
    label: str


class MarketingSourcesUpdate(WireModel):
    """Body of POST /api/marketing-sources."""
    selected: List[str] = Field(default_factory=list)


class MarketingSourcesResponse(WireModel):
    portal_id: str
    available: List[SourceOption]
    selected: List[str]
    is_default: bool


# ─── Webhook ────────────────────────────────────────────────

class SourceChangeEvent(WireModel):
    """One HubSpot property-change webhook event. Extra fields are ignored."""
    portal_id: Optional[int | str] = None
    object_id: Optional[int | str] = None
    property_name: Optional[str] = None
    property_value: Optional[str] = None
