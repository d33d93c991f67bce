"""
Attribute-history normalisation.

Turns the raw ``propertiesWithHistory`` list HubSpot returns for one
property into a time-ordered, cleaned sequence of :class:`HistoryEntry`.

Two modes share the same cleaning rules:

* ``for_paths``: drops entries with a timestamp <= 0 or an empty value
* ``for_contribution``: drops entries with an empty value but keeps
  timestamp-0 entries (the initial value of a contact is still history)

Sorting is stable, so same-millisecond entries keep their API order.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional

from scripts.lib.utils import parse_ts_ms


@dataclass(frozen=True)
class HistoryEntry:
    """One recorded value of a tracked attribute."""
    timestamp: int
    value: str


def normalize_value(raw: Any) -> str:
    """Trim and upper-case a raw history value (None becomes "")."""
    if raw is None:
        return ""
    return str(raw).strip().upper()


def _coerce(raw_entries: Optional[Iterable[Any]]) -> List[HistoryEntry]:
    entries: List[HistoryEntry] = []
    for raw in raw_entries or []:
        if isinstance(raw, HistoryEntry):
            entries.append(HistoryEntry(raw.timestamp, normalize_value(raw.value)))
        elif isinstance(raw, Mapping):
            entries.append(HistoryEntry(
                timestamp=parse_ts_ms(raw.get("timestamp")),
                value=normalize_value(raw.get("value")),
            ))
    return entries


def normalize_history(
    raw_entries: Optional[Iterable[Any]],
    *,
    include_initial: bool = False,
) -> List[HistoryEntry]:
    """
    Build a normalised sequence from raw history records.

    Args:
        raw_entries: Dicts with ``timestamp`` (epoch ms or ISO string) and
            ``value``, or ``HistoryEntry`` objects. Anything else is ignored.
        include_initial: Keep entries whose timestamp is 0/invalid.

    Returns:
        A new list sorted ascending by timestamp; never raises.
    """
    entries = [e for e in _coerce(raw_entries) if e.value]
    if not include_initial:
        entries = [e for e in entries if e.timestamp > 0]
    # list.sort is stable: ties keep original relative order
    entries.sort(key=lambda e: e.timestamp)
    return entries


def for_paths(raw_entries: Optional[Iterable[Any]]) -> List[HistoryEntry]:
    """Sequence used for conversion paths (valid timestamps only)."""
    return normalize_history(raw_entries, include_initial=False)


def for_contribution(raw_entries: Optional[Iterable[Any]]) -> List[HistoryEntry]:
    """Sequence used for contribution scoring (keeps timestamp-0 entries)."""
    return normalize_history(raw_entries, include_initial=True)
