"""
Unit tests for similarity primitives and text normalization.
"""
import datetime as dt

import pytest

from core.matching import (
    amount_similarity,
    date_similarity,
    description_similarity,
    levenshtein_similarity,
    transaction_similarity,
    word_similarity,
)
from core.normalize import (
    description_stem,
    estimate_tokens,
    format_signed_amount,
    normalize_description,
    transaction_fingerprint,
)


def test_levenshtein_similarity():
    """Test Levenshtein similarity calculation."""
    assert levenshtein_similarity("test", "test") == 1.0
    assert levenshtein_similarity("", "") == 1.0
    assert levenshtein_similarity("abcd", "abce") == pytest.approx(0.75)
    assert levenshtein_similarity("abc", "xyz") == 0.0


def test_word_similarity_ignores_short_words():
    assert word_similarity("pos at starbucks", "starbucks to go") == pytest.approx(0.5)
    assert word_similarity("a b", "c d") == 1.0
    assert word_similarity("starbucks", "an") == 0.0


def test_description_similarity_bands():
    """Identical text beats normalization-equal text."""
    assert description_similarity("UBER *TRIP", "UBER *TRIP") == 1.0
    assert description_similarity("UBER *TRIP", "uber trip") == 0.95
    assert description_similarity("NETFLIX.COM", "SHELL OIL 12345") < 0.5


@pytest.mark.parametrize("days,expected", [
    (0, 1.0), (1, 0.9), (5, 0.6), (20, 0.2), (45, 0.0),
])
def test_date_similarity_bands(days, expected):
    base = dt.date(2024, 5, 1)
    assert date_similarity(base, base + dt.timedelta(days=days)) == expected


def test_date_similarity_missing_date():
    assert date_similarity(None, dt.date(2024, 5, 1)) == 0.0


@pytest.mark.parametrize("a1,a2,expected", [
    (-100.0, -100.0, 1.0),
    (-100.0, -99.5, 0.95),
    (-100.0, -97.0, 0.8),
    (-100.0, -92.0, 0.6),
    (-100.0, -85.0, 0.3),
    (-100.0, -50.0, 0.0),
    (None, -50.0, 0.0),
])
def test_amount_similarity_bands(a1, a2, expected):
    assert amount_similarity(a1, a2) == expected


def test_transaction_similarity_identical(transaction_factory):
    """Identical transactions score (almost exactly) 1.0."""
    t1 = transaction_factory("a", "NETFLIX.COM", -15.99)
    t2 = transaction_factory("b", "NETFLIX.COM", -15.99)
    assert transaction_similarity(t1, t2) == pytest.approx(1.0)


def test_transaction_similarity_unrelated(transaction_factory):
    t1 = transaction_factory("a", "NETFLIX.COM", -15.99, dt.date(2024, 1, 1))
    t2 = transaction_factory("b", "PAYROLL DEPOSIT ACME", 2500.0, dt.date(2024, 3, 1))
    assert transaction_similarity(t1, t2) < 0.3


def test_normalize_description_and_stem():
    assert normalize_description("  AMAZON.COM*AB12  Seattle ") == "amazon com ab12 seattle"
    assert description_stem("NETFLIX.COM 0412 #8841") == "netflix com"


def test_fingerprint_ignores_case_and_spacing(transaction_factory):
    """Cache keys survive cosmetic differences but not amount changes."""
    t1 = transaction_factory("a", "Starbucks  #123", -4.5)
    t2 = transaction_factory("b", "STARBUCKS #123", -4.5)
    t3 = transaction_factory("c", "STARBUCKS #123", -5.5)
    assert transaction_fingerprint(t1) == transaction_fingerprint(t2)
    assert transaction_fingerprint(t1) != transaction_fingerprint(t3)


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_format_signed_amount():
    assert format_signed_amount(-12.5) == "-$12.50"
    assert format_signed_amount(100) == "+$100.00"
    assert format_signed_amount(None) == "unknown"
