"""
Unit tests for Pydantic schemas.
"""
import pytest
from pydantic import ValidationError

from core.schema import (
    BatchClassificationEntry,
    ConfidenceThresholds,
    DuplicateDetectionSettings,
    Rule,
    RuleCondition,
    SingleClassificationResponse,
    Transaction,
)


def test_transaction_valid():
    """Test valid transaction creation."""
    txn = Transaction(id=7, description="STARBUCKS #123", amount=-4.5, type="debit", date="2024-03-01")
    assert txn.id == "7"
    assert txn.date.isoformat() == "2024-03-01"
    assert txn.category is None
    assert txn.applied_rules == []


def test_transaction_type_must_match_sign():
    """A negative amount cannot be a credit."""
    with pytest.raises(ValidationError):
        Transaction(id="t1", amount=-10.0, type="credit")


def test_transaction_zero_and_missing_amount_accept_any_type():
    Transaction(id="t1", amount=0.0, type="credit")
    Transaction(id="t2", amount=None, type="credit")


def test_transaction_assignment_is_validated():
    """Changing the amount re-checks the sign invariant."""
    txn = Transaction(id="t1", amount=-10.0, type="debit")
    with pytest.raises(ValidationError):
        txn.amount = 10.0


def test_transaction_confidence_range():
    with pytest.raises(ValidationError):
        Transaction(id="t1", extraction_confidence=1.5)


def test_rule_condition_amount_coerces_number():
    cond = RuleCondition(field="amount", operator="greater_than", value="100")
    assert cond.value == 100.0


def test_rule_condition_text_coerces_string():
    cond = RuleCondition(field="description", operator="contains", value=42)
    assert cond.value == "42"


@pytest.mark.parametrize("field,operator,value", [
    ("amount", "contains", 10),
    ("description", "greater_than", "abc"),
    ("amount", "equals", "not-a-number"),
])
def test_rule_condition_rejects_invalid_combinations(field, operator, value):
    """Operators must fit the field they compare."""
    with pytest.raises(ValidationError):
        RuleCondition(field=field, operator=operator, value=value)


def test_rule_requires_conditions():
    with pytest.raises(ValidationError):
        Rule(id="r1", name="Empty", conditions=[], action={"type": "set_category", "value": "Shopping"})


def test_single_response_accepts_string_reasoning():
    """A single reasoning string becomes a one-item list."""
    response = SingleClassificationResponse(category="Shopping", confidence=0.8, reasoning="Store purchase")
    assert response.reasoning == ["Store purchase"]


def test_batch_entry_normalizes_ids_and_pattern_type():
    entry = BatchClassificationEntry(
        id=3,
        category="Shopping",
        subcategory="Online Shopping",
        confidence=0.9,
        related_transactions=[4, "5"],
        pattern_type="none",
    )
    assert entry.id == "3"
    assert entry.related_transactions == ["4", "5"]
    assert entry.pattern_type is None


def test_thresholds_ordering():
    """Targeted review band must not be inverted."""
    with pytest.raises(ValidationError):
        ConfidenceThresholds(targeted_review_min=0.8, targeted_review_max=0.6)


def test_duplicate_settings_band_ordering():
    with pytest.raises(ValidationError):
        DuplicateDetectionSettings(possible_match_threshold=0.9, likely_match_threshold=0.85)


@pytest.mark.parametrize("amount,expected", [
    (40.0, "credit"),
    (-40.0, "debit"),
    (0.0, "debit"),
    (None, "debit"),
])
def test_transaction_type_defaults_to_amount_sign(amount, expected):
    assert Transaction(id="t1", amount=amount).type == expected
