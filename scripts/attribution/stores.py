"""
File-backed stores for per-portal settings and finished MCF reports.

Layout under DATA_DIR:
    marketing_sources.json                 {portalId: [values]}
    mcf_reports/<portal>_<type>.json       latest report per pair
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from scripts.lib import config
from scripts.lib.errors import ConfigError, DataError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import atomic_write_json, now_iso, read_json

logger = setup_logger("stores")

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def _safe(part: str) -> str:
    return _SAFE_NAME.sub("_", str(part))


class MarketingSourceStore:
    """Which ``hs_latest_source`` values count as marketing, per portal."""

    def __init__(self, data_dir: Path = None, catalog: Dict[str, Any] = None):
        self.path = Path(data_dir or config.DATA_DIR) / "marketing_sources.json"
        self.catalog = catalog or config.load_source_catalog()
        self._known = {s["value"] for s in self.catalog["sources"]}

    def get(self, portal_id: str) -> Dict[str, Any]:
        saved = (read_json(self.path) or {}).get(str(portal_id))
        return {
            "portalId": str(portal_id),
            "available": self.catalog["sources"],
            "selected": saved if saved is not None else list(self.catalog["default_marketing"]),
            "isDefault": saved is None,
        }

    def selected(self, portal_id: str) -> List[str]:
        return self.get(portal_id)["selected"]

    def save(self, portal_id: str, values: Iterable[str]) -> Dict[str, Any]:
        """
        Persist the selection for one portal.

        Raises:
            ConfigError: a value is not in the source catalogue.
            DataError: the settings file could not be written.
        """
        cleaned = list(dict.fromkeys(str(v).strip().upper() for v in values if str(v).strip()))
        unknown = [v for v in cleaned if v not in self._known]
        if unknown:
            raise ConfigError(
                f"Unknown marketing sources: {', '.join(unknown)}",
                config_key="marketing_sources",
            )

        data = read_json(self.path) or {}
        data[str(portal_id)] = cleaned
        if not atomic_write_json(data, self.path):
            raise DataError(f"Could not save marketing sources to {self.path}", code="WRITE_FAILED")
        logger.info("Saved %d marketing sources for portal %s", len(cleaned), portal_id)
        return self.get(portal_id)


class ReportStore:
    """Latest MCF report per (portal, conversion type); a new run supersedes the old one."""

    def __init__(self, data_dir: Path = None):
        self.root = Path(data_dir or config.DATA_DIR) / "mcf_reports"

    def path_for(self, portal_id: str, conversion_type: str) -> Path:
        return self.root / f"{_safe(portal_id)}_{_safe(conversion_type)}.json"

    def save(self, report: Dict[str, Any]) -> Path:
        path = self.path_for(report["portalId"], report["conversionType"])
        payload = {**report, "savedAt": now_iso()}
        if not atomic_write_json(payload, path):
            raise DataError(f"Could not write MCF report to {path}", code="WRITE_FAILED")
        logger.info("Saved MCF report %s", path.name)
        return path

    def load(self, portal_id: str, conversion_type: str) -> Optional[Dict[str, Any]]:
        return read_json(self.path_for(portal_id, conversion_type))
