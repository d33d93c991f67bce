"""
Significance threshold and ranking for aggregated paths.
"""
from __future__ import annotations

import math
from typing import List, Sequence, Tuple

from scripts.attribution.aggregator import PathSummary


def threshold_count(total_conversions: int, threshold_pct: float) -> int:
    """
    Minimum conversions a path needs to be reported.

    ``max(1, ceil(total * pct / 100))`` ; 27 conversions at 10% gives 3.
    """
    if threshold_pct < 0:
        raise ValueError("threshold_pct must be >= 0")
    # round() strips float noise such as 27 * 10 / 100 == 2.7000000000000002
    raw = round(total_conversions * threshold_pct / 100, 9)
    return max(1, math.ceil(raw))


def rank(
    rows: Sequence[PathSummary],
    total_conversions: int,
    threshold_pct: float,
) -> Tuple[List[PathSummary], int]:
    """
    Filter rows below the threshold and sort the rest.

    Order: conversions desc, then total value desc; remaining ties keep
    the incoming (key-sorted) order.

    Returns:
        (ranked rows, threshold count)
    """
    cutoff = threshold_count(total_conversions, threshold_pct)
    kept = [row for row in rows if row.conversions >= cutoff]
    kept.sort(key=lambda row: (-row.conversions, -row.total_value))
    return kept, cutoff
