"""
Validation and repair of bulk classification answers.

validate_batch_response is pure: it never calls the remote classifier and
never mutates its input. repair_batch turns a failed chunk into
per-transaction results using a caller-supplied local classifier.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

from pydantic import ValidationError as PydanticValidationError

from core.categories import is_valid_category, is_valid_pair
from core.logger import setup_logger
from core.schema import (
    BatchClassificationEntry,
    BatchMerchantMappingEntry,
    BatchPatternEntry,
    BulkClassificationResult,
    ClassificationResult,
    Transaction,
)

logger = setup_logger(__name__)


@dataclass
class BatchValidationResult:
    """Outcome of validating one bulk answer."""
    classifications: List[BatchClassificationEntry] = field(default_factory=list)
    patterns: List[BatchPatternEntry] = field(default_factory=list)
    merchant_mappings: List[BatchMerchantMappingEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        """Short human-readable description of the failure."""
        if not self.errors:
            return "valid"
        head = "; ".join(self.errors[:3])
        if len(self.errors) > 3:
            head += f" (and {len(self.errors) - 3} more)"
        return head


def _validate_classifications(
    raw_entries: Any,
    expected_ids: List[str],
    result: BatchValidationResult,
) -> None:
    if not isinstance(raw_entries, list):
        result.errors.append("'classifications' must be a list")
        return

    expected = set(expected_ids)
    seen = set()

    for index, raw in enumerate(raw_entries):
        try:
            entry = BatchClassificationEntry.model_validate(raw)
        except PydanticValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            result.errors.append(f"classification #{index} invalid ({', '.join(fields) or 'shape'})")
            continue

        if entry.id not in expected:
            result.errors.append(f"unexpected transaction id '{entry.id}'")
            continue
        if entry.id in seen:
            result.errors.append(f"duplicate transaction id '{entry.id}'")
            continue
        seen.add(entry.id)

        if not is_valid_category(entry.category):
            result.errors.append(f"unknown category '{entry.category}' for '{entry.id}'")
            continue
        if not is_valid_pair(entry.category, entry.subcategory):
            result.errors.append(
                f"subcategory '{entry.subcategory}' not in '{entry.category}' for '{entry.id}'"
            )
            continue

        result.classifications.append(entry)

    missing = [tid for tid in expected_ids if tid not in seen]
    if missing:
        result.errors.append(f"missing {len(missing)} transaction(s): {', '.join(missing[:5])}")


def _validate_patterns(raw_patterns: Any, expected_ids: List[str], result: BatchValidationResult) -> None:
    if raw_patterns is None:
        return
    if not isinstance(raw_patterns, list):
        result.warnings.append("'detected_patterns' is not a list, ignored")
        return

    expected = set(expected_ids)
    for index, raw in enumerate(raw_patterns):
        try:
            pattern = BatchPatternEntry.model_validate(raw)
        except PydanticValidationError:
            result.warnings.append(f"detected pattern #{index} malformed, dropped")
            continue

        known_ids = [tid for tid in pattern.transaction_ids if tid in expected]
        if len(known_ids) != len(pattern.transaction_ids):
            result.warnings.append(f"detected pattern #{index} references unknown transactions")
        pattern.transaction_ids = known_ids
        result.patterns.append(pattern)


def _validate_mappings(raw_mappings: Any, result: BatchValidationResult) -> None:
    if raw_mappings is None:
        return
    if not isinstance(raw_mappings, list):
        result.warnings.append("'merchant_mappings' is not a list, ignored")
        return

    for index, raw in enumerate(raw_mappings):
        try:
            mapping = BatchMerchantMappingEntry.model_validate(raw)
        except PydanticValidationError:
            result.warnings.append(f"merchant mapping #{index} malformed, dropped")
            continue
        if not is_valid_category(mapping.category):
            result.warnings.append(f"merchant mapping #{index} has unknown category, dropped")
            continue
        result.merchant_mappings.append(mapping)


def validate_batch_response(data: Any, expected_ids: Iterable[str]) -> BatchValidationResult:
    """
    Validate a bulk answer against the transactions that were sent.

    Every expected id must be classified exactly once, no foreign ids may
    appear, each (category, subcategory) pair must exist in the taxonomy
    and confidences must lie in [0, 1]. Malformed optional patterns and
    merchant mappings are dropped with a warning instead of failing.

    Args:
        data: Parsed JSON answer
        expected_ids: Ids of the transactions in the chunk

    Returns:
        BatchValidationResult with the accepted entries, errors and warnings
    """
    expected_ids = [str(tid) for tid in expected_ids]
    result = BatchValidationResult()

    if not isinstance(data, dict):
        result.errors.append("answer is not a JSON object")
        return result
    if "classifications" not in data:
        result.errors.append("answer has no 'classifications' field")
        return result

    _validate_classifications(data["classifications"], expected_ids, result)
    _validate_patterns(data.get("detected_patterns"), expected_ids, result)
    _validate_mappings(data.get("merchant_mappings"), result)

    for warning in result.warnings:
        logger.warning(f"Bulk answer: {warning}")

    return result


def repair_batch(
    transactions: List[Transaction],
    reason: str,
    classify_locally: Callable[[Transaction], ClassificationResult],
    chunk_index: int,
) -> List[BulkClassificationResult]:
    """
    Classify every transaction of a failed chunk individually.

    Args:
        transactions: Transactions of the chunk
        reason: Why the chunk answer was rejected
        classify_locally: Per-transaction classifier that never calls the remote service
        chunk_index: Zero-based chunk index (for the processing notes)

    Returns:
        One BulkClassificationResult per transaction, in input order
    """
    repaired = []
    for txn in transactions:
        single = classify_locally(txn)
        repaired.append(BulkClassificationResult(
            **single.model_dump(),
            processing_notes=[
                f"Processed in chunk {chunk_index + 1}",
                f"Bulk analysis failed, classified individually: {reason}",
            ],
        ))
    return repaired
