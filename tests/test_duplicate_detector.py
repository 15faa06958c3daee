"""
Unit tests for duplicate detection.
"""
import datetime as dt

import pytest

from core.exceptions import ConfigurationError
from core.schema import DuplicateDetectionSettings
from services.duplicate_detector import DuplicateDetector


def test_identical_transactions_form_exact_group(transaction_factory):
    detector = DuplicateDetector()
    transactions = [
        transaction_factory("a", "NETFLIX.COM", -15.99, merchant_name="Netflix"),
        transaction_factory("b", "NETFLIX.COM", -15.99, merchant_name="Netflix"),
        transaction_factory("c", "SHELL OIL 5512", -48.20, dt.date(2024, 2, 3)),
    ]
    result = detector.detect_duplicates(transactions)

    assert len(result.duplicate_groups) == 1
    group = result.duplicate_groups[0]
    assert [t.id for t in group.transactions] == ["a", "b"]
    assert group.duplicate_type == "exact"
    assert group.similarity_score == pytest.approx(1.0)
    assert group.id.startswith("dup_")
    assert group.reason == [
        "Identical amounts", "Same transaction date", "Very similar descriptions", "Same merchant",
    ]
    assert result.total_duplicates == 2


def test_exact_group_flagged_unless_auto_removal_enabled(transaction_factory):
    transactions = [transaction_factory("a", "NETFLIX.COM"), transaction_factory("b", "NETFLIX.COM")]

    suggestion = DuplicateDetector().detect_duplicates(transactions).suggestions[0]
    assert suggestion.action == "flag-for-review"
    assert suggestion.reasoning == "High similarity detected, manual review recommended"

    detector = DuplicateDetector(DuplicateDetectionSettings(enable_auto_removal=True))
    suggestion = detector.detect_duplicates(transactions).suggestions[0]
    assert suggestion.action == "auto-remove"


def test_unrelated_transactions_score_low(transaction_factory):
    detector = DuplicateDetector()
    t1 = transaction_factory("a", "NETFLIX.COM", -15.99, dt.date(2024, 1, 1))
    t2 = transaction_factory("b", "PAYROLL DEPOSIT", 2500.0, dt.date(2024, 1, 20))
    assert detector.calculate_similarity(t1, t2) < 0.7
    assert detector.detect_duplicates([t1, t2]).duplicate_groups == []


def test_groups_are_disjoint(transaction_factory):
    """A transaction already grouped is never an anchor or candidate again."""
    transactions = [transaction_factory(str(i), "UBER TRIP", -12.0) for i in range(4)]
    result = DuplicateDetector().detect_duplicates(transactions)
    assert len(result.duplicate_groups) == 1
    assert result.total_duplicates == 4


def test_comparison_window_skips_distant_transactions(transaction_factory):
    """With a window, identical charges a month apart are not compared."""
    transactions = [
        transaction_factory("jan", "GYM MEMBERSHIP", -30.0, dt.date(2024, 1, 5)),
        transaction_factory("feb", "GYM MEMBERSHIP", -30.0, dt.date(2024, 2, 5)),
        transaction_factory("feb-dup", "GYM MEMBERSHIP", -30.0, dt.date(2024, 2, 5)),
    ]
    detector = DuplicateDetector(DuplicateDetectionSettings(comparison_window_days=3))
    result = detector.detect_duplicates(transactions)
    assert [[t.id for t in g.transactions] for g in result.duplicate_groups] == [["feb", "feb-dup"]]


def test_window_still_compares_undated(transaction_factory):
    transactions = [
        transaction_factory("a", "GYM MEMBERSHIP", -30.0, dt.date(2024, 1, 5)),
        transaction_factory("b", "GYM MEMBERSHIP", -30.0, None),
    ]
    detector = DuplicateDetector(DuplicateDetectionSettings(comparison_window_days=3))
    result = detector.detect_duplicates(transactions)
    assert len(result.duplicate_groups) == 1


def test_update_settings():
    detector = DuplicateDetector()
    assert detector.update_settings(comparison_window_days=7).comparison_window_days == 7

    with pytest.raises(ConfigurationError):
        detector.update_settings(possible_match_threshold=0.99)
    with pytest.raises(ConfigurationError):
        detector.update_settings(not_a_setting=True)
    assert detector.get_settings().possible_match_threshold == 0.7
