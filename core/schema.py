"""
Pydantic schemas for transactions, rules, classification results,
processing decisions, duplicate groups and bulk analysis.
Also defines the JSON shapes expected from the remote classifier.
"""
import datetime as dt
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]

TransactionType = Literal["debit", "credit"]
RuleField = Literal["merchant_name", "description", "amount", "category"]
RuleOperator = Literal["equals", "contains", "starts_with", "ends_with", "greater_than", "less_than"]
RuleActionType = Literal["set_category", "set_subcategory", "set_merchant_name"]
ClassificationSource = Literal["user_rule", "pattern", "remote_ai", "fallback"]
RecommendedAction = Literal["auto-export", "targeted-review", "full-review"]
DuplicateType = Literal["exact", "likely", "possible"]
PatternType = Literal["recurring", "merchant_variation", "category_pattern", "amount_pattern"]
ProgressStage = Literal["preparing", "analyzing", "processing", "completed", "error"]

TEXT_OPERATORS = {"equals", "contains", "starts_with", "ends_with"}
NUMERIC_OPERATORS = {"equals", "greater_than", "less_than"}


def normalize_id(v):
    """Normalize identifiers to string (LLM may return int)."""
    if v is None:
        return None
    return str(v)


def normalize_reasoning(v):
    """Accept a single reasoning string as a one-item list."""
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


def normalize_id_list(v):
    """Normalize a list of identifiers, tolerating None."""
    if v is None:
        return []
    if isinstance(v, (str, int)):
        v = [v]
    return [str(item) for item in v]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class Transaction(BaseModel):
    """A bank-statement transaction as produced by extraction."""

    model_config = ConfigDict(validate_assignment=True)

    id: Annotated[str, BeforeValidator(normalize_id)]
    date: Optional[dt.date] = None
    description: str = ""
    amount: Optional[float] = None
    type: TransactionType = Field(default=None, validate_default=True)
    balance: Optional[float] = None

    merchant_name: Optional[str] = None
    location: Optional[str] = None
    reference_number: Optional[str] = None
    check_number: Optional[str] = None

    category: Optional[str] = None
    subcategory: Optional[str] = None
    confidence: Confidence = 0.0

    extraction_confidence: Confidence = 0.0
    classification_confidence: Confidence = 0.0
    user_validated: bool = False
    applied_rules: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def derive_type_from_sign(cls, v, info):
        """An omitted type follows the amount sign: positive is a credit, anything else a debit."""
        if v is not None:
            return v
        amount = info.data.get("amount")
        return "credit" if amount is not None and amount > 0 else "debit"

    @model_validator(mode="after")
    def check_type_matches_sign(self):
        """Negative amounts are debits, positive amounts are credits."""
        if self.amount is not None and self.amount != 0:
            expected = "debit" if self.amount < 0 else "credit"
            if self.type != expected:
                raise ValueError(
                    f"Transaction type '{self.type}' disagrees with amount sign ({self.amount})"
                )
        return self


class AccountInfo(BaseModel):
    """Account-level metadata extracted from a statement header."""
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    statement_start: Optional[dt.date] = None
    statement_end: Optional[dt.date] = None
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    customer_name: Optional[str] = None


class ExtractionResult(BaseModel):
    """Output of the (external) extraction stage consumed by the confidence engine."""
    transactions: List[Transaction] = Field(default_factory=list)
    account_info: Optional[AccountInfo] = None
    account_info_confidence: Optional[Confidence] = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class RuleCondition(BaseModel):
    """
    One condition of a user rule.

    Text fields support equals/contains/starts_with/ends_with (case-insensitive);
    amount supports equals/greater_than/less_than. Any other combination is
    rejected at construction time.
    """

    model_config = ConfigDict(frozen=True)

    field: RuleField
    operator: RuleOperator
    value: Union[float, str]

    @model_validator(mode="before")
    @classmethod
    def coerce_value(cls, data):
        """Amount conditions compare numbers, every other field compares text."""
        if not isinstance(data, dict) or "value" not in data:
            return data
        data = dict(data)
        value = data["value"]
        if data.get("field") == "amount":
            if isinstance(value, bool):
                raise ValueError(f"Amount condition needs a numeric value, got {value!r}")
            try:
                data["value"] = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"Amount condition needs a numeric value, got {value!r}")
        elif value is not None:
            data["value"] = str(value)
        return data

    @model_validator(mode="after")
    def check_operator_for_field(self):
        if self.field == "amount" and self.operator not in NUMERIC_OPERATORS:
            raise ValueError(f"Operator '{self.operator}' is not valid for the amount field")
        if self.field != "amount" and self.operator not in TEXT_OPERATORS:
            raise ValueError(f"Operator '{self.operator}' is not valid for text field '{self.field}'")
        return self


class RuleAction(BaseModel):
    """What a matching rule does to the transaction."""
    model_config = ConfigDict(frozen=True)

    type: RuleActionType
    value: str = Field(..., min_length=1)


class Rule(BaseModel):
    """A user-defined classification rule. All conditions must hold."""
    id: str
    name: str
    conditions: List[RuleCondition] = Field(..., min_length=1)
    action: RuleAction
    confidence: Confidence = 1.0
    created_date: dt.datetime = Field(default_factory=dt.datetime.now)


# ---------------------------------------------------------------------------
# Classification results
# ---------------------------------------------------------------------------

class ClassificationResult(BaseModel):
    """Outcome of classifying one transaction."""
    transaction_id: str
    category: str
    subcategory: Optional[str] = None
    confidence: Confidence
    reasoning: List[str] = Field(default_factory=list)
    suggested_rules: List[Rule] = Field(default_factory=list)
    merchant_standardized: Optional[str] = None
    source: ClassificationSource = "fallback"
    applied_rule_id: Optional[str] = None


class BulkClassificationResult(ClassificationResult):
    """Classification produced by bulk analysis, with cross-transaction context."""
    related_transaction_ids: List[str] = Field(default_factory=list)
    pattern_id: Optional[str] = None
    processing_notes: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Confidence engine
# ---------------------------------------------------------------------------

class ConfidenceThresholds(BaseModel):
    """Thresholds driving the processing recommendation."""
    auto_processing: Confidence = 0.85
    targeted_review_min: Confidence = 0.50
    targeted_review_max: Confidence = 0.75
    full_review_threshold: Confidence = 0.50

    @model_validator(mode="after")
    def check_ordering(self):
        if self.auto_processing < self.full_review_threshold:
            raise ValueError("auto_processing must be >= full_review_threshold")
        if self.targeted_review_min > self.targeted_review_max:
            raise ValueError("targeted_review_min must be <= targeted_review_max")
        return self


class UncertainItem(BaseModel):
    """An item the reviewer should look at."""
    id: str
    type: Literal["extraction", "classification", "validation"]
    description: str
    confidence: Confidence
    suggested_action: str
    affected_transactions: Optional[List[str]] = None


class ItemConfidenceScore(BaseModel):
    """Per-item confidence breakdown."""
    item_id: str
    item_type: Literal["transaction", "account_info"]
    extraction_confidence: Confidence
    classification_confidence: Optional[Confidence] = None
    validation_confidence: Confidence


class ProcessingConfidenceScores(BaseModel):
    """Aggregated confidence scores for a batch."""
    extraction: Confidence
    classification: Confidence
    overall: Confidence
    item_scores: List[ItemConfidenceScore] = Field(default_factory=list)


class ProcessingDecision(BaseModel):
    """Recommendation for what to do with a processed statement."""
    can_auto_process: bool
    requires_review: List[UncertainItem] = Field(default_factory=list)
    recommended_action: RecommendedAction
    reasoning: str
    overall_confidence: Confidence
    extraction_confidence: Confidence
    classification_confidence: Confidence
    thresholds: ConfidenceThresholds


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------

class DuplicateDetectionSettings(BaseModel):
    """Tunable parameters for duplicate detection."""
    date_tolerance_days: int = Field(default=1, ge=0)
    amount_tolerance_percent: float = Field(default=0.01, ge=0.0, le=1.0)
    description_similarity_threshold: Confidence = 0.8
    exact_match_threshold: Confidence = 0.98
    likely_match_threshold: Confidence = 0.85
    possible_match_threshold: Confidence = 0.7
    enable_auto_removal: bool = False
    auto_removal_confidence_threshold: Confidence = 0.98
    # Only compare transactions whose dates are at most this many days apart (None = compare all)
    comparison_window_days: Optional[int] = Field(default=None, ge=0)
    max_pairwise_transactions: int = Field(default=5000, ge=1)

    @model_validator(mode="after")
    def check_bands(self):
        if not (self.possible_match_threshold <= self.likely_match_threshold <= self.exact_match_threshold):
            raise ValueError("Match thresholds must satisfy possible <= likely <= exact")
        return self


class DuplicateGroup(BaseModel):
    """Transactions judged to represent the same real-world event."""
    id: str
    transactions: List[Transaction] = Field(..., min_length=2)
    similarity_score: Confidence
    duplicate_type: DuplicateType
    reason: List[str] = Field(default_factory=list)


class DuplicateResolutionSuggestion(BaseModel):
    """What to do about a duplicate group."""
    group_id: str
    action: Literal["auto-remove", "flag-for-review"]
    confidence: Confidence
    reasoning: str


class DuplicateDetectionResult(BaseModel):
    """Result of a duplicate detection pass."""
    duplicate_groups: List[DuplicateGroup] = Field(default_factory=list)
    total_duplicates: int = 0
    suggestions: List[DuplicateResolutionSuggestion] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Bulk analysis
# ---------------------------------------------------------------------------

class DetectedPattern(BaseModel):
    """A cross-transaction pattern (recurring charge, merchant variation...)."""
    id: str
    type: PatternType
    description: str
    transaction_ids: List[str] = Field(default_factory=list)
    confidence: Confidence
    suggested_action: str = ""


class MerchantMapping(BaseModel):
    """Variant merchant spellings mapped to one standardized merchant."""
    original_names: List[str] = Field(..., min_length=1)
    standardized_name: str
    category: str
    confidence: Confidence


class AnalysisContext(BaseModel):
    """Shared context sent with every chunk of a bulk run."""
    high_confidence_transactions: List[Transaction] = Field(default_factory=list)
    recent_patterns: List[DetectedPattern] = Field(default_factory=list)
    merchant_mappings: List[MerchantMapping] = Field(default_factory=list)
    date_range_start: Optional[dt.date] = None
    date_range_end: Optional[dt.date] = None
    total_amount: float = 0.0
    transaction_count: int = 0


class AnalysisChunk(BaseModel):
    """A token-budget-limited slice of a bulk run."""
    transactions: List[Transaction]
    context: AnalysisContext
    chunk_index: int
    total_chunks: int
    estimated_tokens: int


class BulkAnalysisOptions(BaseModel):
    """Options for one bulk analysis run."""
    include_high_confidence_context: bool = True
    max_context_transactions: int = Field(default=20, ge=0)
    exemplar_min_confidence: Confidence = 0.85
    enable_pattern_detection: bool = True
    enable_merchant_standardization: bool = True
    confidence_threshold: Confidence = 0.7
    max_tokens_per_chunk: int = Field(default=12000, ge=1)
    max_transactions_per_chunk: int = Field(default=50, ge=1)
    # Fixed per-transaction token cost; derived from the rendered prompt when None
    tokens_per_transaction: Optional[int] = Field(default=None, ge=1)
    output_tokens_per_transaction: int = Field(default=80, ge=0)
    inter_chunk_delay: float = Field(default=0.1, ge=0.0)


class BulkAnalysisProgress(BaseModel):
    """Progress update emitted during a bulk run."""
    stage: ProgressStage
    progress: float = Field(ge=0.0, le=100.0)
    message: str
    processed_count: int = 0
    total_count: int = 0
    current_chunk: Optional[int] = None
    total_chunks: Optional[int] = None


class ProcessingStats(BaseModel):
    """Telemetry of a bulk run."""
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    tokens_used: int = 0
    processing_time: float = 0.0
    cost: float = 0.0


class BulkAnalysisResult(BaseModel):
    """Consolidated output of a bulk run."""
    processed_transactions: List[BulkClassificationResult] = Field(default_factory=list)
    detected_patterns: List[DetectedPattern] = Field(default_factory=list)
    merchant_mappings: List[MerchantMapping] = Field(default_factory=list)
    overall_confidence: Confidence = 0.0
    confidence_by_category: Dict[str, float] = Field(default_factory=dict)
    suggested_rules: List[Rule] = Field(default_factory=list)
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)


# ---------------------------------------------------------------------------
# Remote classifier response shapes
# ---------------------------------------------------------------------------

class SingleClassificationResponse(BaseModel):
    """JSON the remote classifier must return for a single transaction."""
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    confidence: Confidence
    reasoning: Annotated[List[str], BeforeValidator(normalize_reasoning)] = Field(default_factory=list)


class BatchClassificationEntry(BaseModel):
    """One entry of the `classifications` array of a bulk response."""
    id: Annotated[str, BeforeValidator(normalize_id)]
    category: str = Field(..., min_length=1)
    subcategory: str = Field(..., min_length=1)
    confidence: Confidence
    reasoning: Annotated[List[str], BeforeValidator(normalize_reasoning)] = Field(default_factory=list)
    merchant_standardized: Optional[str] = None
    related_transactions: Annotated[List[str], BeforeValidator(normalize_id_list)] = Field(default_factory=list)
    pattern_type: Optional[str] = None

    @field_validator("pattern_type")
    @classmethod
    def drop_none_pattern(cls, v):
        """'none' means no pattern."""
        if v is None or v.lower() == "none":
            return None
        return v


class BatchPatternEntry(BaseModel):
    """One entry of the optional `detected_patterns` array."""
    type: PatternType
    description: str = "No description provided"
    transaction_ids: Annotated[List[str], BeforeValidator(normalize_id_list)] = Field(default_factory=list)
    confidence: Confidence = 0.5


class BatchMerchantMappingEntry(BaseModel):
    """One entry of the optional `merchant_mappings` array."""
    variations: Annotated[List[str], BeforeValidator(normalize_reasoning)] = Field(..., min_length=1)
    standard_name: str = Field(..., min_length=1)
    category: str
    confidence: Confidence = 0.5
