"""
Unit tests for the confidence engine.
"""
import datetime as dt

import pytest

from core.exceptions import ConfigurationError
from core.schema import AccountInfo, ClassificationResult, ExtractionResult, ProcessingConfidenceScores
from services.confidence_engine import (
    ConfidenceEngine,
    account_info_validation_confidence,
    transaction_validation_confidence,
)


def classification(txn_id, confidence, category="Shopping"):
    return ClassificationResult(transaction_id=txn_id, category=category, confidence=confidence, source="pattern")


def test_overall_is_weighted_mean(transaction_factory):
    """Overall confidence is 0.6 * extraction + 0.4 * classification."""
    engine = ConfidenceEngine()
    extraction = ExtractionResult(transactions=[
        transaction_factory("a", extraction_confidence=0.9),
        transaction_factory("b", extraction_confidence=0.9),
    ])
    scores = engine.calculate_confidence_scores(extraction, [classification("a", 0.4), classification("b", 0.6)])
    assert scores.extraction == pytest.approx(0.9)
    assert scores.classification == pytest.approx(0.5)
    assert scores.overall == pytest.approx(0.74)
    assert [item.classification_confidence for item in scores.item_scores] == [0.4, 0.6]


def test_account_info_defaults_to_point_eight(transaction_factory):
    engine = ConfidenceEngine()
    extraction = ExtractionResult(
        transactions=[transaction_factory("a", extraction_confidence=1.0)],
        account_info=AccountInfo(account_number="123"),
    )
    scores = engine.calculate_confidence_scores(extraction, [])
    assert scores.extraction == pytest.approx(0.9)
    assert scores.item_scores[-1].item_type == "account_info"


def test_empty_batch_scores_zero():
    scores = ConfidenceEngine().calculate_confidence_scores(ExtractionResult(), [])
    assert scores.overall == 0.0


@pytest.mark.parametrize("extraction,classification_score,overall,action", [
    (0.97, 0.97, 0.97, "auto-export"),
    (0.97, 0.2, 0.40, "full-review"),
    (0.4, 0.9, 0.6, "full-review"),
    (0.8, 0.8, 0.8, "targeted-review"),
])
def test_recommended_action(extraction, classification_score, overall, action):
    engine = ConfidenceEngine()
    scores = ProcessingConfidenceScores(
        extraction=extraction, classification=classification_score, overall=overall,
    )
    assert engine.determine_recommended_action(scores) == action


def test_uncertain_items(transaction_factory):
    """Low extraction, missing data and weak classifications are all flagged."""
    engine = ConfidenceEngine()
    extraction = ExtractionResult(
        transactions=[
            transaction_factory("a", "CORNER STORE", extraction_confidence=0.3),
            transaction_factory("b", "NO DATE", date=None, extraction_confidence=0.9),
        ],
        account_info=AccountInfo(),
        account_info_confidence=0.4,
    )
    items = engine.identify_uncertain_items(extraction, [classification("a", 0.6), classification("b", 0.95)])
    ids = [item.id for item in items]
    assert ids == ["extraction_a", "validation_b", "classification_a", "account_info_validation"]
    assert items[2].description == "Uncertain category classification for: CORNER STORE"
    assert items[2].suggested_action == "Review suggested category: Shopping"


def test_account_info_without_confidence_is_not_flagged(transaction_factory):
    engine = ConfidenceEngine()
    extraction = ExtractionResult(transactions=[], account_info=AccountInfo())
    assert engine.identify_uncertain_items(extraction, []) == []


def test_evaluate_auto_export(transaction_factory):
    engine = ConfidenceEngine()
    extraction = ExtractionResult(transactions=[transaction_factory("a", extraction_confidence=0.97)])
    decision = engine.evaluate_processing_readiness(extraction, [classification("a", 0.97)])
    assert decision.recommended_action == "auto-export"
    assert decision.can_auto_process is True
    assert decision.requires_review == []
    assert decision.reasoning.startswith("Overall confidence: 97.0%")


def test_evaluate_full_review_reasoning(transaction_factory):
    engine = ConfidenceEngine()
    extraction = ExtractionResult(transactions=[transaction_factory("a", extraction_confidence=0.2)])
    decision = engine.evaluate_processing_readiness(extraction, [classification("a", 0.3)])
    assert decision.recommended_action == "full-review"
    assert decision.can_auto_process is False
    assert "Extraction quality is below acceptable threshold." in decision.reasoning
    assert decision.reasoning.endswith("insufficient for reliable results.")


def test_targeted_review_reasoning_truncates_items(transaction_factory):
    engine = ConfidenceEngine()
    transactions = [transaction_factory(f"t{i}", f"ITEM {i}", extraction_confidence=0.9) for i in range(5)]
    extraction = ExtractionResult(transactions=transactions)
    decision = engine.evaluate_processing_readiness(
        extraction, [classification(t.id, 0.6) for t in transactions],
    )
    assert decision.recommended_action == "targeted-review"
    assert "5 item(s) need attention" in decision.reasoning
    assert decision.reasoning.endswith("and 2 more.")


def test_update_thresholds():
    engine = ConfidenceEngine()
    updated = engine.update_thresholds(auto_processing=0.9)
    assert updated.auto_processing == 0.9
    assert engine.get_thresholds().auto_processing == 0.9


@pytest.mark.parametrize("changes", [
    {"auto_processing": 1.5},
    {"targeted_review_min": 0.9},
    {"unknown_threshold": 0.5},
])
def test_update_thresholds_rejects_invalid(changes):
    engine = ConfidenceEngine()
    with pytest.raises(ConfigurationError):
        engine.update_thresholds(**changes)
    assert engine.get_thresholds().auto_processing == 0.85


def test_validation_confidence_weights(transaction_factory):
    full = transaction_factory(merchant_name="Shop", reference_number="R1")
    assert transaction_validation_confidence(full) == pytest.approx(1.0)
    assert transaction_validation_confidence(transaction_factory(date=None)) == pytest.approx(0.55)
    assert account_info_validation_confidence(AccountInfo(
        account_number="1", statement_start=dt.date(2024, 1, 1), statement_end=dt.date(2024, 1, 31),
    )) == pytest.approx(0.5)
