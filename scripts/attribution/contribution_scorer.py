"""
Marketing contribution scoring.

Scores how much of a contact's source history came from marketing
sources. Two counting policies exist and both stay reproducible:

  all_entries       (default) every valid entry counts, including the
                    first recorded value.
  transitions_only  the first entry is a baseline; only later entries
                    (changes) count.

Example, history REFERRALS, OFFLINE, PAID_SEARCH, OFFLINE with
REFERRALS/PAID_SEARCH as marketing:
  all_entries       2 / 4 = 0.5
  transitions_only  1 / 3 = 0.3333
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Sequence

from scripts.attribution.normalizer import HistoryEntry, normalize_value
from scripts.lib.errors import ConfigError

PERCENT_PRECISION = 4

ALL_ENTRIES = "all_entries"
TRANSITIONS_ONLY = "transitions_only"


@dataclass(frozen=True)
class ContributionScore:
    percent: float          # fraction in [0, 1]
    total_count: int
    marketing_count: int

    @property
    def property_value(self) -> float:
        """Value written to the CRM property (0-100, two decimals)."""
        return round(self.percent * 100, 2)


def _counted_all(sequence: Sequence[HistoryEntry]) -> List[HistoryEntry]:
    return list(sequence)


def _counted_transitions(sequence: Sequence[HistoryEntry]) -> List[HistoryEntry]:
    return list(sequence[1:])


POLICIES: Dict[str, Callable[[Sequence[HistoryEntry]], List[HistoryEntry]]] = {
    ALL_ENTRIES: _counted_all,
    TRANSITIONS_ONLY: _counted_transitions,
}


def marketing_set(values: Iterable[str]) -> frozenset:
    """Normalise a configured set of marketing source values."""
    return frozenset(v for v in (normalize_value(x) for x in values) if v)


def score(
    sequence: Sequence[HistoryEntry],
    marketing_sources: Iterable[str],
    policy: str = ALL_ENTRIES,
) -> ContributionScore:
    """
    Compute the marketing contribution for one normalised history.

    Args:
        sequence: Output of ``normalizer.for_contribution``.
        marketing_sources: Values that count as marketing (any casing).
        policy: ``all_entries`` or ``transitions_only``.

    Returns:
        ContributionScore; percent is 0 when nothing is counted.
    """
    try:
        select = POLICIES[policy]
    except KeyError:
        raise ConfigError(
            f"Unknown contribution policy {policy!r}; use one of: {', '.join(sorted(POLICIES))}",
            config_key="CONTRIBUTION_POLICY",
        )

    members = marketing_set(marketing_sources)
    counted = [e for e in select(sequence) if e.value]
    total = len(counted)
    hits = sum(1 for e in counted if normalize_value(e.value) in members)

    percent = round(hits / total, PERCENT_PRECISION) if total else 0.0
    return ContributionScore(percent=percent, total_count=total, marketing_count=hits)
