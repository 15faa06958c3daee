"""
Fuzzy matching primitives for transaction comparison.
Uses Levenshtein edit distance and word-overlap (Jaccard) similarity for
descriptions, banded proximity scores for dates and amounts.
"""
import datetime as dt
from typing import Optional

import Levenshtein

from core.logger import setup_logger
from core.normalize import normalize_description
from core.schema import DuplicateDetectionSettings, Transaction

logger = setup_logger(__name__)

SIMILARITY_WEIGHTS = {
    "date": 0.2,
    "amount": 0.3,
    "description": 0.4,
    "type": 0.1,
}


def levenshtein_similarity(s1: str, s2: str) -> float:
    """
    Normalized Levenshtein similarity: 1 - distance / max(len).

    Args:
        s1: First string
        s2: Second string

    Returns:
        Similarity score (0.0 to 1.0)
    """
    max_length = max(len(s1), len(s2))
    if max_length == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(s1, s2) / max_length


def word_similarity(s1: str, s2: str) -> float:
    """Jaccard overlap of the words longer than two characters."""
    words1 = {w for w in s1.split(" ") if len(w) > 2}
    words2 = {w for w in s2.split(" ") if len(w) > 2}

    if not words1 and not words2:
        return 1.0
    if not words1 or not words2:
        return 0.0

    return len(words1 & words2) / len(words1 | words2)


def description_similarity(desc1: Optional[str], desc2: Optional[str]) -> float:
    """
    Similarity of two descriptions.
    Identical text scores 1.0, identical after normalization 0.95,
    otherwise the better of Levenshtein and word-overlap similarity.
    """
    desc1 = desc1 or ""
    desc2 = desc2 or ""
    if desc1 == desc2:
        return 1.0

    normalized1 = normalize_description(desc1)
    normalized2 = normalize_description(desc2)
    if normalized1 == normalized2:
        return 0.95

    return max(
        levenshtein_similarity(normalized1, normalized2),
        word_similarity(normalized1, normalized2),
    )


def date_similarity(
    date1: Optional[dt.date],
    date2: Optional[dt.date],
    tolerance_days: int = 1,
) -> float:
    """Banded date proximity: same day 1.0, tolerance 0.9, week 0.6, month 0.2."""
    if date1 is None or date2 is None:
        return 0.0

    days_diff = abs((date1 - date2).days)
    if days_diff == 0:
        return 1.0
    if days_diff <= tolerance_days:
        return 0.9
    if days_diff <= 7:
        return 0.6
    if days_diff <= 30:
        return 0.2
    return 0.0


def amount_similarity(
    amount1: Optional[float],
    amount2: Optional[float],
    tolerance_percent: float = 0.01,
) -> float:
    """Banded amount proximity relative to the larger absolute amount."""
    if amount1 is None or amount2 is None:
        return 0.0
    if amount1 == amount2:
        return 1.0

    percent_diff = abs(amount1 - amount2) / max(abs(amount1), abs(amount2))

    if percent_diff <= tolerance_percent:
        return 0.95
    if percent_diff <= 0.05:
        return 0.8
    if percent_diff <= 0.1:
        return 0.6
    if percent_diff <= 0.2:
        return 0.3
    return 0.0


def transaction_similarity(
    t1: Transaction,
    t2: Transaction,
    settings: Optional[DuplicateDetectionSettings] = None,
) -> float:
    """
    Weighted similarity of two transactions.

    Args:
        t1: First transaction
        t2: Second transaction
        settings: Tolerances for the date and amount bands

    Returns:
        Similarity score (0.0 to 1.0)
    """
    settings = settings or DuplicateDetectionSettings()

    score = (
        date_similarity(t1.date, t2.date, settings.date_tolerance_days) * SIMILARITY_WEIGHTS["date"]
        + amount_similarity(t1.amount, t2.amount, settings.amount_tolerance_percent) * SIMILARITY_WEIGHTS["amount"]
        + description_similarity(t1.description, t2.description) * SIMILARITY_WEIGHTS["description"]
        + (1.0 if t1.type == t2.type else 0.0) * SIMILARITY_WEIGHTS["type"]
    )
    # Float sums of the weights can land a hair above 1.0
    return min(score, 1.0)
