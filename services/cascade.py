"""
Multi-tier transaction classification.

Tiers run in a fixed order and the first one that produces a result wins:
cache, user rules, curated merchant patterns, remote classifier,
deterministic fallback. The fallback always produces a result, so every
call returns exactly one ClassificationResult.
"""
import asyncio
from enum import Enum
from typing import Dict, List, Optional

from core.categories import (
    CATEGORY_TAXONOMY,
    DEFAULT_CATEGORY,
    DEFAULT_SUBCATEGORY,
    EXPENSE_KEYWORDS,
    INCOME_KEYWORDS,
    MERCHANT_PATTERNS,
    TRANSFER_KEYWORDS,
    PatternGroup,
)
from core.config import get_settings
from core.exceptions import RemoteServiceError
from core.logger import setup_logger
from core.normalize import transaction_fingerprint
from core.schema import (
    ClassificationResult,
    Rule,
    RuleAction,
    RuleCondition,
    Transaction,
)
from llm.classify import RemoteOutcome, classify_transaction
from llm.client import LLMClient

logger = setup_logger(__name__)

FALLBACK_REASON = "Fallback classification - manual review required"
SUGGESTED_RULE_CONFIDENCE = 0.9


class Tier(str, Enum):
    CACHE = "cache"
    USER_RULES = "user_rule"
    PATTERNS = "pattern"
    REMOTE_AI = "remote_ai"
    FALLBACK = "fallback"


TIER_ORDER = (Tier.CACHE, Tier.USER_RULES, Tier.PATTERNS, Tier.REMOTE_AI, Tier.FALLBACK)


def condition_matches(condition: RuleCondition, transaction: Transaction) -> bool:
    """
    Evaluate one rule condition against a transaction.
    Text comparisons are case-insensitive; a missing field never matches.
    """
    if condition.field == "amount":
        amount = transaction.amount
        if amount is None:
            return False
        if condition.operator == "equals":
            return amount == condition.value
        if condition.operator == "greater_than":
            return amount > condition.value
        if condition.operator == "less_than":
            return amount < condition.value
        return False

    field_value = getattr(transaction, condition.field)
    if not field_value:
        return False
    text = field_value.lower()
    value = str(condition.value).lower()

    if condition.operator == "equals":
        return text == value
    if condition.operator == "contains":
        return value in text
    if condition.operator == "starts_with":
        return text.startswith(value)
    if condition.operator == "ends_with":
        return text.endswith(value)
    return False


def rule_matches(rule: Rule, transaction: Transaction) -> bool:
    """A rule matches when every one of its conditions holds."""
    return all(condition_matches(c, transaction) for c in rule.conditions)


def fallback_classification(transaction: Transaction) -> ClassificationResult:
    """
    Deterministic keyword and sign based classification.
    Never fails; confidence is deliberately low so the result is reviewed.
    """
    description = (transaction.description or "").upper()

    def build(category: str, subcategory: str, confidence: float, detail: str) -> ClassificationResult:
        return ClassificationResult(
            transaction_id=transaction.id,
            category=category,
            subcategory=subcategory,
            confidence=confidence,
            reasoning=[FALLBACK_REASON, detail],
            source="fallback",
        )

    if any(keyword in description for keyword in EXPENSE_KEYWORDS):
        return build(DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY, 0.4, "Expense keyword found in description")
    if any(keyword in description for keyword in INCOME_KEYWORDS):
        return build("Income/Deposit", "Other Income", 0.4, "Income keyword found in description")

    if transaction.amount is None or transaction.amount == 0:
        return build(DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY, 0.1, "No usable amount")

    if transaction.type == "debit":
        return build(DEFAULT_CATEGORY, DEFAULT_SUBCATEGORY, 0.3, "Unrecognized debit")
    if any(keyword in description for keyword in TRANSFER_KEYWORDS):
        return build("Transfer", "Other Transfer", 0.3, "Credit that looks like a transfer or refund")
    return build("Income/Deposit", "Other Income", 0.3, "Unrecognized credit")


class ClassificationCascade:
    """
    Classifies transactions through the ordered tiers.

    The cache and the fallback-mode flag belong to the instance. Once a
    remote call fails the cascade stays in fallback mode (no further
    remote calls) until enable_remote() is called.
    """

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        rules: Optional[List[Rule]] = None,
        patterns: Optional[List[PatternGroup]] = None,
        pattern_confidence_floor: Optional[float] = None,
    ):
        """
        Initialize cascade.

        Args:
            client: Remote classifier client, None to run without the remote tier
            rules: Initial user rules, evaluated in order
            patterns: Merchant pattern table (defaults to the curated table)
            pattern_confidence_floor: Pattern hits must exceed this confidence
        """
        if pattern_confidence_floor is None:
            pattern_confidence_floor = get_settings().pattern_confidence_floor

        self.client = client
        self.patterns = list(patterns) if patterns is not None else list(MERCHANT_PATTERNS)
        self.pattern_confidence_floor = pattern_confidence_floor
        self._rules: List[Rule] = list(rules or [])
        self._cache: Dict[str, ClassificationResult] = {}
        self._fallback_mode = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    @property
    def remote_available(self) -> bool:
        """True when a remote call would be attempted."""
        return self.client is not None and not self._fallback_mode

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def enable_remote(self) -> None:
        """Leave fallback mode so the next classification tries the remote tier again."""
        if self._fallback_mode:
            logger.info("Remote classification re-enabled")
        self._fallback_mode = False

    def clear_cache(self) -> None:
        self._cache.clear()

    def available_categories(self) -> Dict[str, List[str]]:
        """Category taxonomy (category -> subcategories)."""
        return {category: list(subs) for category, subs in CATEGORY_TAXONOMY.items()}

    def get_user_rules(self) -> List[Rule]:
        return [rule.model_copy(deep=True) for rule in self._rules]

    def add_user_rule(self, rule: Rule) -> None:
        """Append a rule (replacing one with the same id) and drop cached results."""
        self._rules = [r for r in self._rules if r.id != rule.id]
        self._rules.append(rule)
        self.clear_cache()
        logger.info(f"Added user rule {rule.id} ({len(self._rules)} rules)")

    def remove_user_rule(self, rule_id: str) -> bool:
        """
        Remove a rule by id.

        Returns:
            True if a rule was removed
        """
        remaining = [r for r in self._rules if r.id != rule_id]
        removed = len(remaining) != len(self._rules)
        self._rules = remaining
        self.clear_cache()
        if removed:
            logger.info(f"Removed user rule {rule_id}")
        return removed

    def set_user_rules(self, rules: List[Rule]) -> None:
        self._rules = list(rules)
        self.clear_cache()

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _from_cache(self, transaction: Transaction, key: str) -> Optional[ClassificationResult]:
        cached = self._cache.get(key)
        if cached is None:
            return None
        result = cached.model_copy(deep=True)
        result.transaction_id = transaction.id
        return result

    def _from_user_rules(self, transaction: Transaction) -> Optional[ClassificationResult]:
        for rule in self._rules:
            if not rule_matches(rule, transaction):
                continue

            result = ClassificationResult(
                transaction_id=transaction.id,
                category=transaction.category or DEFAULT_CATEGORY,
                subcategory=transaction.subcategory,
                confidence=rule.confidence,
                reasoning=[f"Applied user rule: {rule.name}"],
                source="user_rule",
                applied_rule_id=rule.id,
            )
            action = rule.action
            if action.type == "set_category":
                result.category = action.value
                result.subcategory = None
            elif action.type == "set_subcategory":
                result.subcategory = action.value
            elif action.type == "set_merchant_name":
                result.merchant_standardized = action.value
            return result
        return None

    def _from_patterns(self, transaction: Transaction) -> Optional[ClassificationResult]:
        for group in self.patterns:
            matcher = group.first_match(transaction.description)
            if matcher is None:
                continue
            # First matching group decides, even when it falls below the floor
            if group.confidence <= self.pattern_confidence_floor:
                logger.debug(f"Pattern '{matcher.raw}' below confidence floor, skipped")
                return None
            return ClassificationResult(
                transaction_id=transaction.id,
                category=group.category,
                subcategory=group.subcategory,
                confidence=group.confidence,
                reasoning=[f"Matched merchant pattern: {matcher.raw}"],
                suggested_rules=self._suggest_rules(transaction, group.category),
                source="pattern",
            )
        return None

    def _remote_eligible(self, allow_remote: bool) -> bool:
        return allow_remote and self.remote_available

    def _accept_remote(self, transaction: Transaction, outcome: RemoteOutcome) -> Optional[ClassificationResult]:
        if not outcome.ok:
            self._enter_fallback_mode(outcome.error)
            return None

        answer = outcome.result
        return ClassificationResult(
            transaction_id=transaction.id,
            category=answer.category,
            subcategory=answer.subcategory,
            confidence=answer.confidence,
            reasoning=answer.reasoning or ["Classified by remote classifier"],
            suggested_rules=self._suggest_rules(transaction, answer.category),
            source="remote_ai",
        )

    def _enter_fallback_mode(self, error: Optional[Exception]) -> None:
        if not self._fallback_mode:
            logger.warning(f"Remote classifier failed, switching to fallback mode: {error}")
        self._fallback_mode = True

    def _local_tier(self, tier: Tier, transaction: Transaction, key: str) -> Optional[ClassificationResult]:
        if tier is Tier.CACHE:
            return self._from_cache(transaction, key)
        if tier is Tier.USER_RULES:
            return self._from_user_rules(transaction)
        if tier is Tier.PATTERNS:
            return self._from_patterns(transaction)
        if tier is Tier.FALLBACK:
            return fallback_classification(transaction)
        return None

    def _suggest_rules(self, transaction: Transaction, category: str) -> List[Rule]:
        """Suggest a merchant rule so the next statement skips the pattern/remote tiers."""
        merchant = (transaction.merchant_name or "").strip()
        if not merchant:
            return []
        return [Rule(
            id=f"suggested-{transaction_fingerprint(transaction)[:12]}-merchant",
            name=f"Auto-categorize {merchant}",
            conditions=[RuleCondition(field="merchant_name", operator="contains", value=merchant.lower())],
            action=RuleAction(type="set_category", value=category),
            confidence=SUGGESTED_RULE_CONFIDENCE,
        )]

    def _cacheable(self, tier: Tier) -> bool:
        # A fallback answer is only final when there is no remote tier to try later
        if tier is Tier.FALLBACK:
            return self.client is None
        return tier is not Tier.CACHE

    def _finish(self, tier: Tier, key: str, result: ClassificationResult) -> ClassificationResult:
        logger.debug(f"Transaction {result.transaction_id} classified by tier {tier.value}")
        if self._cacheable(tier):
            self._cache[key] = result.model_copy(deep=True)
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def classify(self, transaction: Transaction, allow_remote: bool = True) -> ClassificationResult:
        """
        Classify one transaction.

        Args:
            transaction: Transaction to classify (not modified)
            allow_remote: Set False to skip the remote tier for this call

        Returns:
            ClassificationResult from the first tier that produced one
        """
        key = transaction_fingerprint(transaction)

        for tier in TIER_ORDER:
            if tier is Tier.REMOTE_AI:
                if not self._remote_eligible(allow_remote):
                    continue
                result = self._accept_remote(transaction, classify_transaction(self.client, transaction))
            else:
                result = self._local_tier(tier, transaction, key)

            if result is not None:
                return self._finish(tier, key, result)

        raise RuntimeError("fallback tier produced no result")

    async def aclassify(
        self,
        transaction: Transaction,
        timeout: Optional[float] = None,
        allow_remote: bool = True,
    ) -> ClassificationResult:
        """
        Async variant of classify().

        The remote call runs in the default executor, bounded by timeout.
        Cache and fallback flag are only touched after the call returns, so
        a cancelled call leaves the cascade unchanged.
        """
        key = transaction_fingerprint(transaction)

        for tier in TIER_ORDER:
            if tier is Tier.REMOTE_AI:
                if not self._remote_eligible(allow_remote):
                    continue
                loop = asyncio.get_running_loop()
                try:
                    outcome = await asyncio.wait_for(
                        loop.run_in_executor(None, classify_transaction, self.client, transaction),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    outcome = RemoteOutcome(error=RemoteServiceError(
                        f"Remote classification timed out after {timeout}s",
                        details={"timeout": timeout, "retryable": True},
                    ))
                result = self._accept_remote(transaction, outcome)
            else:
                result = self._local_tier(tier, transaction, key)

            if result is not None:
                return self._finish(tier, key, result)

        raise RuntimeError("fallback tier produced no result")

    def classify_many(self, transactions: List[Transaction], allow_remote: bool = True) -> List[ClassificationResult]:
        """Classify transactions one by one, preserving order."""
        return [self.classify(t, allow_remote=allow_remote) for t in transactions]
