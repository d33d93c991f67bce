"""Tests for contribution scoring, path aggregation and ranking."""

import itertools

import pytest

from conftest import hist
from scripts.attribution.aggregator import accumulate, all_currencies, finalize, total_conversions
from scripts.attribution.contribution_scorer import (
    ALL_ENTRIES,
    TRANSITIONS_ONLY,
    marketing_set,
    score,
)
from scripts.attribution.conversion_locator import ConversionEvent
from scripts.attribution.normalizer import for_contribution
from scripts.attribution.ranking import rank, threshold_count
from scripts.lib.errors import ConfigError

MARKETING = ["REFERRALS", "PAID_SEARCH", "ORGANIC_SEARCH", "EMAIL_MARKETING"]
EXAMPLE = hist((1, "REFERRALS"), (2, "OFFLINE"), (3, "PAID_SEARCH"), (4, "OFFLINE"))


class TestContributionScorer:
    def test_all_entries_policy(self):
        result = score(for_contribution(EXAMPLE), MARKETING, ALL_ENTRIES)
        assert result.total_count == 4
        assert result.marketing_count == 2
        assert result.percent == 0.5
        assert result.property_value == 50.0

    def test_transitions_only_policy(self):
        result = score(for_contribution(EXAMPLE), MARKETING, TRANSITIONS_ONLY)
        assert result.total_count == 3
        assert result.marketing_count == 1
        assert result.percent == 0.3333
        assert result.property_value == 33.33

    def test_default_policy_is_all_entries(self):
        assert score(for_contribution(EXAMPLE), MARKETING).percent == 0.5

    def test_empty_history_is_zero(self):
        result = score(for_contribution([]), MARKETING)
        assert result.percent == 0
        assert result.total_count == 0
        assert result.property_value == 0

    def test_single_entry_transitions_only_is_zero(self):
        result = score(for_contribution(hist((1, "REFERRALS"))), MARKETING, TRANSITIONS_ONLY)
        assert result.total_count == 0
        assert result.percent == 0

    def test_marketing_set_is_case_insensitive(self):
        result = score(for_contribution(hist((1, "referrals"))), ["Referrals "])
        assert result.percent == 1.0

    def test_rounds_to_four_places(self):
        history = hist((1, "REFERRALS"), (2, "OFFLINE"), (3, "OFFLINE"))
        assert score(for_contribution(history), MARKETING).percent == 0.3333

    def test_unknown_policy_raises(self):
        with pytest.raises(ConfigError):
            score([], MARKETING, "half_of_everything")

    def test_marketing_set_drops_blanks(self):
        assert marketing_set(["a", " ", "", None]) == frozenset({"A"})


def _event(entity, value=0.0, currency=None):
    return ConversionEvent(entity_id=entity, timestamp=1000, value=value, currency=currency)


class TestAggregator:
    def test_two_contacts_two_rows(self):
        bucket = {}
        accumulate(bucket, _event("1"), ["ORGANIC_SEARCH", "DIRECT_TRAFFIC"])
        accumulate(bucket, _event("2"), ["PAID_SEARCH"])
        rows = finalize(bucket)
        assert len(rows) == 2
        assert all(row.conversions == 1 for row in rows)
        assert total_conversions(rows) == 2

    def test_sums_values_and_merges_currencies(self):
        bucket = {}
        accumulate(bucket, _event("1", 100.5, "usd"), ["A"])
        accumulate(bucket, _event("2", 50.25, "EUR"), ["A"])
        accumulate(bucket, _event("3", 10, "USD"), ["A"])
        (row,) = finalize(bucket)
        assert row.conversions == 3
        assert row.total_value == 160.75
        assert row.currencies == ("EUR", "USD")
        assert row.mixed_currencies is True
        assert row.to_dict()["mixedCurrencies"] is True

    def test_negative_values_count_as_zero(self):
        bucket = {}
        accumulate(bucket, _event("1", -20.0), ["A"])
        assert finalize(bucket)[0].total_value == 0

    def test_order_invariant(self):
        pairs = [
            (_event("1", 0.1, "USD"), ["A", "B"]),
            (_event("2", 0.2, "EUR"), ["A", "B"]),
            (_event("3", 0.3), ["B"]),
            (_event("4", 1e16, "USD"), ["A", "B"]),
            (_event("5", 7.0), ["B", "A"]),
        ]
        results = set()
        for perm in itertools.permutations(pairs):
            bucket = {}
            for event, path in perm:
                accumulate(bucket, event, path)
            results.add(tuple(finalize(bucket)))
        assert len(results) == 1

    def test_rows_sorted_by_key(self):
        bucket = {}
        accumulate(bucket, _event("1"), ["Z"])
        accumulate(bucket, _event("2"), ["A"])
        assert [row.key for row in finalize(bucket)] == ["A", "Z"]

    def test_all_currencies(self):
        bucket = {}
        accumulate(bucket, _event("1", 1, "USD"), ["A"])
        accumulate(bucket, _event("2", 1, "GBP"), ["B"])
        accumulate(bucket, _event("3", 1), ["C"])
        assert all_currencies(finalize(bucket)) == ["GBP", "USD"]


class TestThreshold:
    @pytest.mark.parametrize("total,pct,expected", [
        (27, 10, 3),
        (0, 10, 1),
        (100, 0, 1),
        (100, 1, 1),
        (101, 1, 2),
        (1000, 2.5, 25),
    ])
    def test_threshold_count(self, total, pct, expected):
        assert threshold_count(total, pct) == expected

    def test_negative_pct_rejected(self):
        with pytest.raises(ValueError):
            threshold_count(10, -1)


class TestRank:
    def _rows(self, spec):
        bucket = {}
        n = 0
        for path, conversions, value in spec:
            for _ in range(conversions):
                n += 1
                accumulate(bucket, _event(str(n), value / conversions), path)
        return finalize(bucket)

    def test_boundary_at_threshold(self):
        rows = self._rows([(["A"], 3, 0), (["B"], 2, 0), (["C"], 22, 0)])
        ranked, cutoff = rank(rows, 27, 10)
        assert cutoff == 3
        assert [r.key for r in ranked] == ["C", "A"]

    def test_ties_broken_by_value(self):
        rows = self._rows([(["A"], 2, 10), (["B"], 2, 500), (["C"], 5, 1)])
        ranked, _ = rank(rows, 9, 0)
        assert [r.key for r in ranked] == ["C", "B", "A"]

    def test_zero_conversions_keeps_nothing(self):
        ranked, cutoff = rank([], 0, 5)
        assert ranked == []
        assert cutoff == 1
