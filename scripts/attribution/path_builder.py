"""
Conversion path construction.

A path is the ordered, run-length collapsed list of source values a
contact had up to (and including) the moment it converted:

    ORGANIC_SEARCH, ORGANIC_SEARCH, DIRECT_TRAFFIC  ->  ORGANIC_SEARCH > DIRECT_TRAFFIC
    ORGANIC_SEARCH, DIRECT_TRAFFIC, ORGANIC_SEARCH  ->  unchanged (A > B > A)
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from scripts.attribution.normalizer import HistoryEntry, normalize_value
from scripts.lib.utils import MS_PER_DAY

UNKNOWN = "UNKNOWN"
PATH_SEPARATOR = ">"


def collapse(tokens: Iterable[str]) -> List[str]:
    """Drop consecutive repeats, keeping the first of each run."""
    collapsed: List[str] = []
    for token in tokens:
        if not collapsed or collapsed[-1] != token:
            collapsed.append(token)
    return collapsed


def build_path(
    sequence: Sequence[HistoryEntry],
    conversion_ts: int,
    lookback_days: Optional[float] = None,
) -> List[str]:
    """
    Build the canonical path for one conversion.

    Args:
        sequence: Normalised, time-sorted history (see ``normalizer.for_paths``).
        conversion_ts: Conversion instant, epoch ms. Entries after it are ignored.
        lookback_days: Optional window; entries older than
            ``conversion_ts - lookback_days`` are ignored. None means the
            full pre-conversion journey.

    Returns:
        Non-empty list of tokens; ``["UNKNOWN"]`` when nothing qualifies.
    """
    lower_bound = 0
    if lookback_days is not None:
        lower_bound = conversion_ts - int(lookback_days * MS_PER_DAY)

    tokens = [
        normalize_value(entry.value)
        for entry in sequence
        if 0 < entry.timestamp <= conversion_ts and entry.timestamp >= lower_bound
    ]
    path = collapse(t for t in tokens if t)
    return path or [UNKNOWN]


def path_key(path: Sequence[str]) -> str:
    """Aggregation key for a path; order matters."""
    return PATH_SEPARATOR.join(path)
