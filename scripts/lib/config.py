"""
Runtime configuration for Contribution Hub.

Values come from the environment (a project-root .env is loaded first) and
from configs/marketing_sources.yaml for the source catalogue.

Usage:
    from scripts.lib import config
    config.SOURCE_PROPERTY              # "hs_latest_source"
    config.load_source_catalog()        # labels + default marketing set
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv

from scripts.lib.errors import ConfigError

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
SOURCES_CONFIG_PATH = PROJECT_ROOT / "configs" / "marketing_sources.yaml"

load_dotenv(PROJECT_ROOT / ".env")


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}", config_key=key)


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}", config_key=key)


# ---------------------------------------------------------------------------
# HubSpot
# ---------------------------------------------------------------------------
HUBSPOT_API_KEY = os.getenv("HUBSPOT_API_KEY", "")
HUBSPOT_BASE_URL = os.getenv("HUBSPOT_BASE_URL", "https://api.hubapi.com")
HUBSPOT_TIMEOUT_SECONDS = _env_float("HUBSPOT_TIMEOUT_SECONDS", 30.0)
HUBSPOT_MAX_ATTEMPTS = _env_int("HUBSPOT_MAX_ATTEMPTS", 3)
HUBSPOT_PAGE_LIMIT = 100

# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------
SOURCE_PROPERTY = os.getenv("SOURCE_PROPERTY", "hs_latest_source")
CONTRIBUTION_PROPERTY = os.getenv(
    "CONTRIBUTION_PROPERTY", "marketing_contribution_percentage"
)
CONTRIBUTION_POLICY = os.getenv("CONTRIBUTION_POLICY", "all_entries")
DEFAULT_THRESHOLD_PCT = _env_float("DEFAULT_THRESHOLD_PCT", 1.0)

# Entities per concurrent batch, and the pause between batches
MCF_BATCH_SIZE = _env_int("MCF_BATCH_SIZE", 10)
MCF_BATCH_PAUSE_SECONDS = _env_float("MCF_BATCH_PAUSE_SECONDS", 1.0)

STAGE_CACHE_TTL_SECONDS = _env_float("STAGE_CACHE_TTL_SECONDS", 3600.0)

DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))


def load_source_catalog(path: Path = None) -> Dict[str, Any]:
    """
    Load the source catalogue from YAML.

    Returns:
        {"sources": [{"value", "label"}, ...], "default_marketing": [values]}
    """
    path = Path(path) if path else SOURCES_CONFIG_PATH
    if not path.exists():
        raise ConfigError(f"Source catalogue not found: {path}", config_key="sources")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    sources: List[Dict[str, str]] = [
        {"value": str(s["value"]).strip().upper(), "label": s.get("label") or s["value"]}
        for s in data.get("sources", [])
    ]
    known = {s["value"] for s in sources}
    default_marketing = [str(v).strip().upper() for v in data.get("default_marketing", [])]
    unknown = [v for v in default_marketing if v not in known]
    if unknown:
        raise ConfigError(
            f"default_marketing lists unknown sources: {', '.join(unknown)}",
            config_key="default_marketing",
        )
    return {"sources": sources, "default_marketing": default_marketing}
