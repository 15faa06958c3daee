"""
Processing readiness evaluation.
Aggregates extraction and classification confidence into a single
recommendation: auto-export, targeted review or full review.
"""
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ConfigurationError
from core.logger import setup_logger
from core.schema import (
    AccountInfo,
    ClassificationResult,
    ConfidenceThresholds,
    ExtractionResult,
    ItemConfidenceScore,
    ProcessingConfidenceScores,
    ProcessingDecision,
    Transaction,
    UncertainItem,
)

logger = setup_logger(__name__)

EXTRACTION_WEIGHT = 0.6
CLASSIFICATION_WEIGHT = 0.4
DEFAULT_ACCOUNT_INFO_CONFIDENCE = 0.8
MAX_REASONING_ITEMS = 3

# Completeness weights: (points, predicate)
TRANSACTION_FIELD_WEIGHTS = (
    (30, lambda t: t.date is not None),
    (30, lambda t: bool(t.amount)),
    (20, lambda t: bool(t.description and t.description.strip())),
    (10, lambda t: bool(t.merchant_name)),
    (5, lambda t: bool(t.type)),
    (5, lambda t: bool(t.reference_number or t.check_number)),
)

ACCOUNT_FIELD_WEIGHTS = (
    (25, lambda a: bool(a.account_number)),
    (15, lambda a: bool(a.account_type)),
    (25, lambda a: a.statement_start is not None and a.statement_end is not None),
    (15, lambda a: a.opening_balance is not None),
    (15, lambda a: a.closing_balance is not None),
    (5, lambda a: bool(a.customer_name)),
)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _weighted_completeness(item, weights) -> float:
    max_score = sum(points for points, _ in weights)
    score = sum(points for points, present in weights if present(item))
    return score / max_score if max_score else 0.0


def transaction_validation_confidence(transaction: Transaction) -> float:
    """Share of weighted transaction fields that are present."""
    return _weighted_completeness(transaction, TRANSACTION_FIELD_WEIGHTS)


def account_info_validation_confidence(account_info: AccountInfo) -> float:
    """Share of weighted account-info fields that are present."""
    return _weighted_completeness(account_info, ACCOUNT_FIELD_WEIGHTS)


class ConfidenceEngine:
    """Turns per-item confidence into a ProcessingDecision."""

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        self._thresholds = thresholds.model_copy() if thresholds else ConfidenceThresholds()

    def get_thresholds(self) -> ConfidenceThresholds:
        """Return a copy of the current thresholds."""
        return self._thresholds.model_copy()

    def update_thresholds(self, **changes) -> ConfidenceThresholds:
        """
        Update one or more thresholds. Takes effect for the next evaluation.

        Raises:
            ConfigurationError: If a value is out of range or the ordering breaks
        """
        unknown = set(changes) - set(ConfidenceThresholds.model_fields)
        if unknown:
            raise ConfigurationError(
                f"Unknown threshold(s): {', '.join(sorted(unknown))}",
                details={"unknown": sorted(unknown)},
            )
        try:
            updated = ConfidenceThresholds(**{**self._thresholds.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid confidence thresholds",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )
        self._thresholds = updated
        logger.info(f"Confidence thresholds updated: {updated.model_dump()}")
        return self.get_thresholds()

    def calculate_confidence_scores(
        self,
        extraction: ExtractionResult,
        classifications: List[ClassificationResult],
    ) -> ProcessingConfidenceScores:
        """
        Compute per-item and aggregate confidence.

        Args:
            extraction: Extracted transactions and account info
            classifications: Classification results (matched by transaction id)

        Returns:
            ProcessingConfidenceScores with extraction, classification and overall means
        """
        item_scores: List[ItemConfidenceScore] = []
        extraction_values: List[float] = []

        for txn in extraction.transactions:
            extraction_values.append(txn.extraction_confidence)
            item_scores.append(ItemConfidenceScore(
                item_id=txn.id,
                item_type="transaction",
                extraction_confidence=txn.extraction_confidence,
                validation_confidence=transaction_validation_confidence(txn),
            ))

        if extraction.account_info is not None:
            account_confidence = extraction.account_info_confidence
            if account_confidence is None:
                account_confidence = DEFAULT_ACCOUNT_INFO_CONFIDENCE
            extraction_values.append(account_confidence)
            item_scores.append(ItemConfidenceScore(
                item_id="account_info",
                item_type="account_info",
                extraction_confidence=account_confidence,
                validation_confidence=account_info_validation_confidence(extraction.account_info),
            ))

        by_id: Dict[str, ItemConfidenceScore] = {item.item_id: item for item in item_scores}
        for result in classifications:
            item = by_id.get(result.transaction_id)
            if item is not None:
                item.classification_confidence = result.confidence

        extraction_mean = _mean(extraction_values)
        classification_mean = _mean([r.confidence for r in classifications])
        overall = EXTRACTION_WEIGHT * extraction_mean + CLASSIFICATION_WEIGHT * classification_mean

        return ProcessingConfidenceScores(
            extraction=extraction_mean,
            classification=classification_mean,
            overall=min(overall, 1.0),
            item_scores=item_scores,
        )

    def identify_uncertain_items(
        self,
        extraction: ExtractionResult,
        classifications: List[ClassificationResult],
    ) -> List[UncertainItem]:
        """List everything a reviewer should look at, extraction issues first."""
        thresholds = self._thresholds
        items: List[UncertainItem] = []

        for txn in extraction.transactions:
            if txn.extraction_confidence < thresholds.full_review_threshold:
                items.append(UncertainItem(
                    id=f"extraction_{txn.id}",
                    type="extraction",
                    description=f"Low confidence in transaction extraction: {txn.description}",
                    confidence=txn.extraction_confidence,
                    suggested_action="Verify transaction details and amounts",
                    affected_transactions=[txn.id],
                ))

            if txn.date is None or txn.amount is None:
                items.append(UncertainItem(
                    id=f"validation_{txn.id}",
                    type="validation",
                    description=f"Missing critical transaction data: {txn.description}",
                    confidence=0.0,
                    suggested_action="Manually enter missing date or amount",
                    affected_transactions=[txn.id],
                ))

        descriptions = {txn.id: txn.description for txn in extraction.transactions}
        for result in classifications:
            if result.confidence < thresholds.targeted_review_max:
                description = descriptions.get(result.transaction_id) or "Unknown transaction"
                items.append(UncertainItem(
                    id=f"classification_{result.transaction_id}",
                    type="classification",
                    description=f"Uncertain category classification for: {description}",
                    confidence=result.confidence,
                    suggested_action=f"Review suggested category: {result.category}",
                    affected_transactions=[result.transaction_id],
                ))

        account_confidence = extraction.account_info_confidence
        if (
            extraction.account_info is not None
            and account_confidence is not None
            and account_confidence < thresholds.targeted_review_max
        ):
            items.append(UncertainItem(
                id="account_info_validation",
                type="validation",
                description="Account information extraction has low confidence",
                confidence=account_confidence,
                suggested_action="Verify account number, type, and statement period",
            ))

        return items

    def determine_recommended_action(self, scores: ProcessingConfidenceScores) -> str:
        """Auto-export when every aggregate is high, full review when extraction or overall is low."""
        thresholds = self._thresholds
        if (
            scores.extraction >= thresholds.auto_processing
            and scores.classification >= thresholds.auto_processing
            and scores.overall >= thresholds.auto_processing
        ):
            return "auto-export"

        if (
            scores.extraction < thresholds.full_review_threshold
            or scores.overall < thresholds.full_review_threshold
        ):
            return "full-review"

        return "targeted-review"

    def generate_reasoning(
        self,
        scores: ProcessingConfidenceScores,
        uncertain_items: List[UncertainItem],
        action: str,
    ) -> str:
        reasoning = (
            f"Overall confidence: {scores.overall * 100:.1f}% "
            f"(Extraction: {scores.extraction * 100:.1f}%, "
            f"Classification: {scores.classification * 100:.1f}%). "
        )

        if action == "auto-export":
            reasoning += (
                "High confidence in all areas allows for automatic processing. "
                "All transactions have been successfully extracted and classified with high accuracy."
            )
        elif action == "targeted-review":
            reasoning += "Moderate confidence requires targeted review of specific items. "
            if uncertain_items:
                named = ", ".join(item.description for item in uncertain_items[:MAX_REASONING_ITEMS])
                reasoning += f"{len(uncertain_items)} item(s) need attention: {named}"
                if len(uncertain_items) > MAX_REASONING_ITEMS:
                    reasoning += f" and {len(uncertain_items) - MAX_REASONING_ITEMS} more"
                reasoning += "."
        else:
            reasoning += "Low confidence requires comprehensive review before processing. "
            if scores.extraction < self._thresholds.full_review_threshold:
                reasoning += "Extraction quality is below acceptable threshold. "
            if scores.overall < self._thresholds.full_review_threshold:
                reasoning += "Overall processing confidence is insufficient for reliable results."

        return reasoning.strip()

    def evaluate_processing_readiness(
        self,
        extraction: ExtractionResult,
        classifications: List[ClassificationResult],
    ) -> ProcessingDecision:
        """
        Decide how a processed statement should be handled.

        Args:
            extraction: Extracted transactions and account info
            classifications: One classification per transaction

        Returns:
            ProcessingDecision with the recommended action and review items
        """
        scores = self.calculate_confidence_scores(extraction, classifications)
        uncertain_items = self.identify_uncertain_items(extraction, classifications)
        action = self.determine_recommended_action(scores)

        logger.info(
            f"Readiness: {action} (overall {scores.overall:.2f}, "
            f"{len(uncertain_items)} item(s) to review)"
        )

        return ProcessingDecision(
            can_auto_process=action == "auto-export",
            requires_review=uncertain_items,
            recommended_action=action,
            reasoning=self.generate_reasoning(scores, uncertain_items, action),
            overall_confidence=scores.overall,
            extraction_confidence=scores.extraction,
            classification_confidence=scores.classification,
            thresholds=self.get_thresholds(),
        )
