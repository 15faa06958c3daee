"""
Fuzzy duplicate detection for statement transactions.
Groups transactions that likely describe the same real-world event
(double imports, overlapping statements) and suggests how to resolve them.
"""
import bisect
import uuid
from typing import List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ConfigurationError
from core.logger import setup_logger
from core.matching import description_similarity, transaction_similarity
from core.schema import (
    DuplicateDetectionResult,
    DuplicateDetectionSettings,
    DuplicateGroup,
    DuplicateResolutionSuggestion,
    Transaction,
)

logger = setup_logger(__name__)


class DuplicateDetector:
    """
    Single-pass duplicate grouping.

    Each transaction not yet grouped becomes an anchor and is compared to
    the later transactions not yet grouped; every candidate scoring at least
    the possible-match threshold joins the anchor's group. Groups are
    therefore disjoint.
    """

    def __init__(self, settings: Optional[DuplicateDetectionSettings] = None):
        self._settings = settings.model_copy() if settings else DuplicateDetectionSettings()

    def get_settings(self) -> DuplicateDetectionSettings:
        """Return a copy of the current settings."""
        return self._settings.model_copy()

    def update_settings(self, **changes) -> DuplicateDetectionSettings:
        """
        Update detection settings.

        Raises:
            ConfigurationError: If a value is invalid or the match bands are out of order
        """
        unknown = set(changes) - set(DuplicateDetectionSettings.model_fields)
        if unknown:
            raise ConfigurationError(
                f"Unknown duplicate setting(s): {', '.join(sorted(unknown))}",
                details={"unknown": sorted(unknown)},
            )
        try:
            updated = DuplicateDetectionSettings(**{**self._settings.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid duplicate detection settings",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )
        self._settings = updated
        logger.info(f"Duplicate detection settings updated: {updated.model_dump()}")
        return self.get_settings()

    def calculate_similarity(self, t1: Transaction, t2: Transaction) -> float:
        """Weighted similarity of two transactions under the current settings."""
        return transaction_similarity(t1, t2, self._settings)

    def _candidate_indices(self, transactions: List[Transaction]):
        """
        Yield (anchor index, candidate indices) pairs.

        Without a comparison window every later transaction is a candidate.
        With one, only later transactions dated within the window are, plus
        every undated transaction.
        """
        window = self._settings.comparison_window_days
        count = len(transactions)

        if window is None:
            for i in range(count):
                yield i, range(i + 1, count)
            return

        dated = sorted(
            (t.date.toordinal(), index)
            for index, t in enumerate(transactions)
            if t.date is not None
        )
        ordinals = [ordinal for ordinal, _ in dated]
        undated = [index for index, t in enumerate(transactions) if t.date is None]

        for i, anchor in enumerate(transactions):
            if anchor.date is None:
                yield i, range(i + 1, count)
                continue
            ordinal = anchor.date.toordinal()
            lo = bisect.bisect_left(ordinals, ordinal - window)
            hi = bisect.bisect_right(ordinals, ordinal + window)
            nearby = {index for _, index in dated[lo:hi] if index > i}
            nearby.update(index for index in undated if index > i)
            yield i, sorted(nearby)

    def detect_duplicates(self, transactions: List[Transaction]) -> DuplicateDetectionResult:
        """
        Find groups of duplicate transactions.

        Args:
            transactions: Transactions in statement order

        Returns:
            DuplicateDetectionResult with groups, total grouped count and suggestions
        """
        settings = self._settings
        if len(transactions) > settings.max_pairwise_transactions:
            logger.warning(
                f"Duplicate detection over {len(transactions)} transactions is quadratic "
                f"(limit {settings.max_pairwise_transactions}); consider comparison_window_days"
            )

        groups: List[DuplicateGroup] = []
        processed: Set[int] = set()

        for i, candidates in self._candidate_indices(transactions):
            if i in processed:
                continue

            anchor = transactions[i]
            similar = [
                j for j in candidates
                if j not in processed
                and self.calculate_similarity(anchor, transactions[j]) >= settings.possible_match_threshold
            ]
            if not similar:
                continue

            members = [anchor] + [transactions[j] for j in similar]
            groups.append(self._create_group(members))
            processed.add(i)
            processed.update(similar)

        suggestions = [self._suggest_resolution(group) for group in groups]
        total = sum(len(group.transactions) for group in groups)

        logger.info(f"Duplicate detection: {len(groups)} group(s), {total} transaction(s) involved")

        return DuplicateDetectionResult(
            duplicate_groups=groups,
            total_duplicates=total,
            suggestions=suggestions,
        )

    def _create_group(self, members: List[Transaction]) -> DuplicateGroup:
        similarities = [
            self.calculate_similarity(members[a], members[b])
            for a in range(len(members) - 1)
            for b in range(a + 1, len(members))
        ]
        average = sum(similarities) / len(similarities)

        if average >= self._settings.exact_match_threshold:
            duplicate_type = "exact"
        elif average >= self._settings.likely_match_threshold:
            duplicate_type = "likely"
        else:
            duplicate_type = "possible"

        return DuplicateGroup(
            id=f"dup_{uuid.uuid4().hex[:12]}",
            transactions=members,
            similarity_score=min(average, 1.0),
            duplicate_type=duplicate_type,
            reason=self._describe_reasons(members),
        )

    def _describe_reasons(self, members: List[Transaction]) -> List[str]:
        first, others = members[0], members[1:]
        reasons = []

        if all(t.amount == first.amount for t in others):
            reasons.append("Identical amounts")

        if first.date is not None and all(t.date == first.date for t in others):
            reasons.append("Same transaction date")

        threshold = self._settings.description_similarity_threshold
        if all(description_similarity(first.description, t.description) > threshold for t in others):
            reasons.append("Very similar descriptions")

        if first.merchant_name and all(t.merchant_name == first.merchant_name for t in others):
            reasons.append("Same merchant")

        if first.reference_number and all(t.reference_number == first.reference_number for t in others):
            reasons.append("Same reference number")

        return reasons

    def _suggest_resolution(self, group: DuplicateGroup) -> DuplicateResolutionSuggestion:
        settings = self._settings
        if (
            settings.enable_auto_removal
            and group.duplicate_type == "exact"
            and group.similarity_score >= settings.auto_removal_confidence_threshold
        ):
            action = "auto-remove"
            reasoning = "Transactions are nearly identical and can be safely auto-removed"
        elif group.duplicate_type in ("exact", "likely"):
            action = "flag-for-review"
            reasoning = "High similarity detected, manual review recommended"
        else:
            action = "flag-for-review"
            reasoning = "Possible duplicates detected, review to confirm"

        return DuplicateResolutionSuggestion(
            group_id=group.id,
            action=action,
            confidence=group.similarity_score,
            reasoning=reasoning,
        )
