"""
Path aggregation across contacts.

The bucket is a plain dict keyed by path key. The final rows depend only
on the multiset of (path, value, currency) triples that went in. Values
are summed with math.fsum at finalisation and rows come out sorted by key.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set

from scripts.attribution.conversion_locator import ConversionEvent
from scripts.attribution.path_builder import path_key

VALUE_PRECISION = 2


@dataclass
class AggregatedPath:
    path: List[str]
    conversions: int = 0
    values: List[float] = field(default_factory=list)
    currencies: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class PathSummary:
    """Read-only row produced when a run finalises."""
    path: tuple
    key: str
    conversions: int
    total_value: float
    currencies: tuple

    @property
    def mixed_currencies(self) -> bool:
        return len(self.currencies) > 1

    def to_dict(self) -> dict:
        return {
            "path": list(self.path),
            "key": self.key,
            "conversions": self.conversions,
            "totalValue": self.total_value,
            "currencies": list(self.currencies),
            "mixedCurrencies": self.mixed_currencies,
        }


def accumulate(
    bucket: Dict[str, AggregatedPath],
    event: ConversionEvent,
    path: Sequence[str],
) -> AggregatedPath:
    """Add one conversion to the bucket for ``path``."""
    key = path_key(path)
    entry = bucket.get(key)
    if entry is None:
        entry = AggregatedPath(path=list(path))
        bucket[key] = entry
    entry.conversions += 1
    entry.values.append(max(event.value or 0.0, 0.0))
    if event.currency:
        entry.currencies.add(event.currency.upper())
    return entry


def finalize(bucket: Dict[str, AggregatedPath]) -> List[PathSummary]:
    """Freeze the bucket into summary rows, ordered by key."""
    return [
        PathSummary(
            path=tuple(entry.path),
            key=key,
            conversions=entry.conversions,
            total_value=round(math.fsum(entry.values), VALUE_PRECISION),
            currencies=tuple(sorted(entry.currencies)),
        )
        for key, entry in sorted(bucket.items())
    ]


def all_currencies(rows: Sequence[PathSummary]) -> List[str]:
    """Union of currencies seen across rows."""
    seen: Set[str] = set()
    for row in rows:
        seen.update(row.currencies)
    return sorted(seen)


def total_conversions(rows: Sequence[PathSummary]) -> int:
    """Sum of conversions across rows."""
    return sum(row.conversions for row in rows)
