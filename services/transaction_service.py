"""
Transaction classification service.
Wires the cascade, confidence engine, bulk classifier and duplicate
detector together for one processing session.
"""
from typing import List, Optional

from core.config import Settings, get_settings
from core.exceptions import ConfigurationError
from core.logger import setup_logger
from core.schema import (
    BulkAnalysisOptions,
    BulkAnalysisResult,
    ClassificationResult,
    ExtractionResult,
    ProcessingDecision,
    Transaction,
)
from llm.client import LLMClient, get_client
from services.bulk_classifier import BulkClassifier, ProgressCallback
from services.cascade import ClassificationCascade
from services.confidence_engine import ConfidenceEngine
from services.duplicate_detector import DuplicateDetector

logger = setup_logger(__name__)

EXTRACTION_WEIGHT = 0.6
CLASSIFICATION_WEIGHT = 0.4


def get_client_or_none() -> Optional[LLMClient]:
    """Remote classifier client, or None when no API key is configured."""
    try:
        return get_client()
    except ConfigurationError as e:
        logger.warning(f"Remote classifier disabled: {e.message}")
        return None


def apply_classification(transaction: Transaction, result: ClassificationResult) -> Transaction:
    """
    Write a classification onto its transaction.

    Sets category, subcategory and classification confidence, blends the
    overall confidence (60% extraction, 40% classification) and records
    the applied rule id.
    """
    transaction.category = result.category
    transaction.subcategory = result.subcategory
    transaction.classification_confidence = result.confidence
    transaction.confidence = min(
        EXTRACTION_WEIGHT * transaction.extraction_confidence + CLASSIFICATION_WEIGHT * result.confidence,
        1.0,
    )
    if result.applied_rule_id and result.applied_rule_id not in transaction.applied_rules:
        transaction.applied_rules = transaction.applied_rules + [result.applied_rule_id]
    return transaction


class TransactionService:
    """Service for classifying statement transactions and judging export readiness."""

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        settings: Optional[Settings] = None,
        use_remote: bool = True,
    ):
        """
        Initialize transaction service.

        Args:
            client: Remote classifier client (resolved from settings when omitted)
            settings: Application settings
            use_remote: Set False to run without the remote tier
        """
        self.settings = settings or get_settings()
        if client is None and use_remote:
            client = get_client_or_none()

        self.cascade = ClassificationCascade(
            client=client,
            pattern_confidence_floor=self.settings.pattern_confidence_floor,
        )
        self.confidence_engine = ConfidenceEngine()
        self.duplicate_detector = DuplicateDetector()
        self.bulk_classifier = BulkClassifier(self.cascade, client=client, settings=self.settings)

    def classify_transactions(
        self,
        transactions: List[Transaction],
        apply: bool = False,
    ) -> List[ClassificationResult]:
        """
        Classify transactions one at a time through the cascade.

        Args:
            transactions: Transactions to classify
            apply: Write the results onto the transactions

        Returns:
            One ClassificationResult per transaction, in input order
        """
        results = self.cascade.classify_many(transactions)
        if apply:
            for txn, result in zip(transactions, results):
                apply_classification(txn, result)
        logger.info(f"Classified {len(results)} transactions")
        return results

    async def aclassify_transactions(
        self,
        transactions: List[Transaction],
        timeout: Optional[float] = None,
    ) -> List[ClassificationResult]:
        """Async variant of classify_transactions; remote calls run in the executor."""
        results = []
        total = len(transactions)
        for index, txn in enumerate(transactions, start=1):
            results.append(await self.cascade.aclassify(txn, timeout=timeout))
            if index % 10 == 0 or index == total:
                logger.info(f"Progress: {index}/{total} transactions classified")
        return results

    async def analyze_bulk(
        self,
        transactions: List[Transaction],
        all_transactions: Optional[List[Transaction]] = None,
        options: Optional[BulkAnalysisOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BulkAnalysisResult:
        return await self.bulk_classifier.analyze(
            transactions,
            all_transactions=all_transactions,
            options=options,
            progress_callback=progress_callback,
        )

    def evaluate_readiness(
        self,
        extraction: ExtractionResult,
        classifications: Optional[List[ClassificationResult]] = None,
    ) -> ProcessingDecision:
        """
        Evaluate whether a statement can be exported without review.
        Classifies the transactions first when no classifications are given.
        """
        if classifications is None:
            classifications = self.classify_transactions(extraction.transactions)
        return self.confidence_engine.evaluate_processing_readiness(extraction, classifications)
