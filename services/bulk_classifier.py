"""
Context-aware bulk classification.

Large statements are split into chunks that fit the remote model's token
budget. Every chunk carries the same account context (well-classified
exemplars, recurring patterns, merchant mappings) so that classifications
stay consistent across chunks. Chunks that fail remotely or come back
malformed are classified transaction by transaction with the local
cascade tiers, so every input transaction gets exactly one result.
"""
import asyncio
import hashlib
import math
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from core.config import Settings, get_settings
from core.logger import setup_logger
from core.normalize import description_stem, estimate_tokens, format_signed_amount, merchant_key
from core.schema import (
    AnalysisChunk,
    AnalysisContext,
    BulkAnalysisOptions,
    BulkAnalysisProgress,
    BulkAnalysisResult,
    BulkClassificationResult,
    DetectedPattern,
    MerchantMapping,
    ProcessingStats,
    Rule,
    RuleAction,
    RuleCondition,
    Transaction,
)
from llm.classify import classify_chunk
from llm.client import LLMClient
from llm.prompts import build_bulk_system_prompt, build_bulk_user_message, render_transaction_line
from llm.validation import BatchValidationResult, repair_batch, validate_batch_response
from services.cascade import ClassificationCascade

logger = setup_logger(__name__)

ProgressCallback = Callable[[BulkAnalysisProgress], None]

PATTERN_ACTIONS = {
    "recurring": "Consider creating automatic rule for recurring transaction",
    "merchant_variation": "Standardize merchant name variations",
    "category_pattern": "Review category consistency",
    "amount_pattern": "Review transactions sharing this amount pattern",
}

# Context confidence boost
BOOST_APPLIES_BELOW = 0.7
BOOST_SIMILARITY_FLOOR = 0.7
BOOST_SAME_AMOUNT = 0.2
MAX_CONTEXT_BOOST = 0.3

SUGGESTED_RULE_MIN_CONFIDENCE = 0.8


@dataclass
class ChunkResult:
    """Everything one chunk contributed to the run."""
    results: List[BulkClassificationResult] = field(default_factory=list)
    patterns: List[DetectedPattern] = field(default_factory=list)
    merchant_mappings: List[MerchantMapping] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    used_fallback: bool = False


def _significant_words(text: str) -> set:
    return {word for word in text.upper().split() if len(word) > 3}


def context_similarity(desc1: str, desc2: str) -> float:
    """Word overlap of the longer words of two descriptions (0 when both are empty)."""
    words1 = _significant_words(desc1)
    words2 = _significant_words(desc2)
    union = words1 | words2
    return len(words1 & words2) / len(union) if union else 0.0


def _rule_id(prefix: str, key: str) -> str:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"suggested-{prefix}-{digest}"


class BulkClassifier:
    """Runs bulk analysis over a list of transactions."""

    def __init__(
        self,
        cascade: ClassificationCascade,
        client: Optional[LLMClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize bulk classifier.

        Args:
            cascade: Cascade used to classify transactions of failed chunks locally
            client: Remote classifier client, None to classify everything locally
            settings: Application settings (pricing and chunking defaults)
        """
        settings = settings or get_settings()
        self.cascade = cascade
        self.client = client
        self.input_cost_per_million = settings.input_cost_per_million
        self.output_cost_per_million = settings.output_cost_per_million
        self.default_options = BulkAnalysisOptions(
            max_tokens_per_chunk=settings.bulk_max_tokens_per_chunk,
            max_transactions_per_chunk=settings.bulk_max_transactions_per_chunk,
            inter_chunk_delay=settings.bulk_inter_chunk_delay,
        )

    def resolve_options(self, options: Union[BulkAnalysisOptions, Dict, None]) -> BulkAnalysisOptions:
        """Overlay caller options on the settings-derived defaults."""
        if options is None:
            return self.default_options.model_copy()
        if isinstance(options, BulkAnalysisOptions):
            return options
        return BulkAnalysisOptions(**{**self.default_options.model_dump(), **options})

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def prepare_analysis_context(
        self,
        all_transactions: List[Transaction],
        options: BulkAnalysisOptions,
    ) -> AnalysisContext:
        """
        Build the account context shared by every chunk.

        Args:
            all_transactions: Every transaction of the account, classified or not
            options: Run options

        Returns:
            AnalysisContext with exemplars, patterns, merchant mappings and statement totals
        """
        exemplars: List[Transaction] = []
        if options.include_high_confidence_context:
            exemplars = sorted(
                (
                    t for t in all_transactions
                    if t.category and t.confidence >= options.exemplar_min_confidence
                ),
                key=lambda t: t.confidence,
                reverse=True,
            )[:options.max_context_transactions]

        patterns = self._detect_recurring(all_transactions) if options.enable_pattern_detection else []
        mappings = self._group_merchants(all_transactions) if options.enable_merchant_standardization else []

        dates = [t.date for t in all_transactions if t.date is not None]
        amounts = [abs(t.amount) for t in all_transactions if t.amount is not None]

        return AnalysisContext(
            high_confidence_transactions=exemplars,
            recent_patterns=patterns,
            merchant_mappings=mappings,
            date_range_start=min(dates) if dates else None,
            date_range_end=max(dates) if dates else None,
            total_amount=sum(amounts),
            transaction_count=len(all_transactions),
        )

    def _detect_recurring(self, transactions: List[Transaction]) -> List[DetectedPattern]:
        """Same description stem and same absolute amount, seen at least twice."""
        groups: Dict[tuple, List[Transaction]] = defaultdict(list)
        for txn in transactions:
            stem = description_stem(txn.description)
            if stem and txn.amount is not None:
                groups[(stem, round(abs(txn.amount), 2))].append(txn)

        patterns = []
        for (stem, amount), members in groups.items():
            if len(members) < 2:
                continue
            patterns.append(DetectedPattern(
                id=f"context_recurring_{len(patterns)}",
                type="recurring",
                description=f"Recurring '{stem}' for ${amount:.2f} ({len(members)} occurrences)",
                transaction_ids=[t.id for t in members],
                confidence=min(0.5 + 0.1 * len(members), 0.95),
                suggested_action=PATTERN_ACTIONS["recurring"],
            ))
        return patterns

    def _group_merchants(self, transactions: List[Transaction]) -> List[MerchantMapping]:
        """Group classified transactions by normalized merchant name."""
        groups: Dict[str, List[Transaction]] = defaultdict(list)
        for txn in transactions:
            if txn.merchant_name and txn.category:
                key = merchant_key(txn.merchant_name)
                if key:
                    groups[key].append(txn)

        mappings = []
        for members in groups.values():
            if len(members) < 2:
                continue
            names = Counter(t.merchant_name for t in members)
            categories = Counter(t.category for t in members)
            mappings.append(MerchantMapping(
                original_names=sorted(names),
                standardized_name=names.most_common(1)[0][0],
                category=categories.most_common(1)[0][0],
                confidence=sum(t.confidence for t in members) / len(members),
            ))
        return mappings

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def create_chunks(
        self,
        transactions: List[Transaction],
        context: AnalysisContext,
        options: BulkAnalysisOptions,
    ) -> List[AnalysisChunk]:
        """
        Partition transactions into chunks that fit the token budget.

        Transactions are ordered newest first, undated last. The chunk size
        is the number of transactions whose estimated cost fits in
        max_tokens_per_chunk after the shared context, clamped to
        [1, max_transactions_per_chunk].
        """
        if not transactions:
            return []

        ordered = sorted(
            (t for t in transactions if t.date is not None),
            key=lambda t: t.date,
            reverse=True,
        ) + [t for t in transactions if t.date is None]

        context_overhead = (
            estimate_tokens(build_bulk_system_prompt())
            + estimate_tokens(build_bulk_user_message([], context))
        )

        line_tokens = [
            estimate_tokens(render_transaction_line(i + 1, t)) + 1
            for i, t in enumerate(ordered)
        ]
        if options.tokens_per_transaction:
            per_transaction = options.tokens_per_transaction
        else:
            per_transaction = max(line_tokens) + options.output_tokens_per_transaction

        available = options.max_tokens_per_chunk - context_overhead
        chunk_size = max(1, min(available // per_transaction, options.max_transactions_per_chunk))
        total_chunks = math.ceil(len(ordered) / chunk_size)

        logger.debug(
            f"Chunking: overhead {context_overhead} tokens, {per_transaction} tokens/transaction, "
            f"chunk size {chunk_size}"
        )

        chunks = []
        for index, start in enumerate(range(0, len(ordered), chunk_size)):
            members = ordered[start:start + chunk_size]
            estimated = (
                context_overhead
                + sum(line_tokens[start:start + chunk_size])
                + len(members) * options.output_tokens_per_transaction
            )
            chunks.append(AnalysisChunk(
                transactions=members,
                context=context,
                chunk_index=index,
                total_chunks=total_chunks,
                estimated_tokens=estimated,
            ))
        return chunks

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    def process_chunk(self, chunk: AnalysisChunk, options: BulkAnalysisOptions) -> ChunkResult:
        """
        Classify one chunk remotely, falling back to per-transaction local
        classification when the call fails or the answer is invalid.
        """
        if self.client is None:
            return self._repair(chunk, "Remote classifier not configured")

        outcome = classify_chunk(self.client, chunk)
        if not outcome.ok:
            repaired = self._repair(chunk, f"Remote call failed: {outcome.error.message}")
            repaired.input_tokens = outcome.input_tokens
            return repaired

        validation = validate_batch_response(outcome.data, [t.id for t in chunk.transactions])
        if not validation.is_valid:
            logger.warning(
                f"Chunk {chunk.chunk_index + 1}/{chunk.total_chunks} answer rejected: {validation.summary()}"
            )
            repaired = self._repair(chunk, f"Invalid response: {validation.summary()}")
            repaired.input_tokens = outcome.input_tokens
            repaired.output_tokens = outcome.output_tokens
            return repaired

        result = self._convert(chunk, validation, outcome.tokens_used, options)
        result.input_tokens = outcome.input_tokens
        result.output_tokens = outcome.output_tokens
        return result

    def _repair(self, chunk: AnalysisChunk, reason: str) -> ChunkResult:
        results = repair_batch(
            chunk.transactions,
            reason,
            lambda t: self.cascade.classify(t, allow_remote=False),
            chunk.chunk_index,
        )
        return ChunkResult(results=results, used_fallback=True)

    def _convert(
        self,
        chunk: AnalysisChunk,
        validation: BatchValidationResult,
        tokens_used: int,
        options: BulkAnalysisOptions,
    ) -> ChunkResult:
        by_id = {entry.id: entry for entry in validation.classifications}
        results = []
        for txn in chunk.transactions:
            entry = by_id[txn.id]
            results.append(BulkClassificationResult(
                transaction_id=txn.id,
                category=entry.category,
                subcategory=entry.subcategory,
                confidence=entry.confidence,
                reasoning=entry.reasoning or ["No reasoning provided"],
                merchant_standardized=entry.merchant_standardized or None,
                source="remote_ai",
                related_transaction_ids=entry.related_transactions,
                pattern_id=f"{entry.pattern_type}_{entry.id}" if entry.pattern_type else None,
                processing_notes=[
                    f"Processed in chunk {chunk.chunk_index + 1}",
                    f"Tokens used: {tokens_used}",
                ],
            ))

        patterns = []
        if options.enable_pattern_detection:
            patterns = [
                DetectedPattern(
                    id=f"chunk_{chunk.chunk_index}_pattern_{index}",
                    type=p.type,
                    description=p.description,
                    transaction_ids=p.transaction_ids,
                    confidence=p.confidence,
                    suggested_action=PATTERN_ACTIONS[p.type],
                )
                for index, p in enumerate(validation.patterns)
            ]

        mappings = []
        if options.enable_merchant_standardization:
            mappings = [
                MerchantMapping(
                    original_names=m.variations,
                    standardized_name=m.standard_name,
                    category=m.category,
                    confidence=m.confidence,
                )
                for m in validation.merchant_mappings
            ]

        return ChunkResult(
            results=self._enrich(results, chunk.transactions, chunk.context),
            patterns=patterns,
            merchant_mappings=mappings,
        )

    def _enrich(
        self,
        results: List[BulkClassificationResult],
        transactions: List[Transaction],
        context: AnalysisContext,
    ) -> List[BulkClassificationResult]:
        """Add transaction notes, context merchant names and context confidence boosts."""
        by_id = {t.id: t for t in transactions}
        for result in results:
            txn = by_id[result.transaction_id]
            result.processing_notes.append(f"Original amount: {format_signed_amount(txn.amount)}")
            if txn.date is not None:
                result.processing_notes.append(f"Transaction date: {txn.date.isoformat()}")

            if not result.merchant_standardized:
                mapping = self._find_mapping(txn.description, context.merchant_mappings)
                if mapping is not None:
                    result.merchant_standardized = mapping.standardized_name
                    result.processing_notes.append("Applied context-based merchant standardization")

            if result.confidence < BOOST_APPLIES_BELOW:
                boost = self._context_boost(txn, context.high_confidence_transactions)
                if boost > 0:
                    result.confidence = min(result.confidence + boost, 1.0)
                    result.processing_notes.append(f"Confidence boosted by {boost:.2f} based on context")
        return results

    @staticmethod
    def _find_mapping(description: str, mappings: List[MerchantMapping]) -> Optional[MerchantMapping]:
        text = (description or "").upper()
        for mapping in mappings:
            for name in mapping.original_names:
                if name and name.upper() in text:
                    return mapping
        return None

    @staticmethod
    def _context_boost(txn: Transaction, exemplars: List[Transaction]) -> float:
        best = 0.0
        for exemplar in exemplars:
            similarity = context_similarity(txn.description, exemplar.description)
            if similarity <= BOOST_SIMILARITY_FLOOR:
                continue
            same_amount = (
                txn.amount is not None
                and exemplar.amount is not None
                and abs(txn.amount) == abs(exemplar.amount)
            )
            boost = (similarity - BOOST_SIMILARITY_FLOOR) * 0.5 + (BOOST_SAME_AMOUNT if same_amount else 0.0)
            best = max(best, boost)
        return min(best, MAX_CONTEXT_BOOST)

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def consolidate_results(
        self,
        results: List[BulkClassificationResult],
        patterns: List[DetectedPattern],
        mappings: List[MerchantMapping],
        transactions: List[Transaction],
    ) -> BulkAnalysisResult:
        """
        Merge chunk outputs into one result.

        Every discovered merchant mapping is applied to all results whose
        description contains one of its variants, not only to the chunk
        that discovered it.
        """
        descriptions = {t.id: (t.description or "").upper() for t in transactions}
        for result in results:
            description = descriptions.get(result.transaction_id, "")
            for mapping in mappings:
                if any(name and name.upper() in description for name in mapping.original_names):
                    if result.merchant_standardized != mapping.standardized_name:
                        result.merchant_standardized = mapping.standardized_name
                        result.processing_notes.append(
                            f"Merchant standardized to {mapping.standardized_name}"
                        )
                    break

        by_category: Dict[str, List[float]] = defaultdict(list)
        for result in results:
            by_category[result.category].append(result.confidence)
        confidence_by_category = {
            category: sum(values) / len(values) for category, values in by_category.items()
        }
        overall = sum(r.confidence for r in results) / len(results) if results else 0.0

        return BulkAnalysisResult(
            processed_transactions=results,
            detected_patterns=patterns,
            merchant_mappings=mappings,
            overall_confidence=min(overall, 1.0),
            confidence_by_category=confidence_by_category,
            suggested_rules=self._suggest_rules(results, patterns, mappings, transactions),
        )

    def _suggest_rules(
        self,
        results: List[BulkClassificationResult],
        patterns: List[DetectedPattern],
        mappings: List[MerchantMapping],
        transactions: List[Transaction],
    ) -> List[Rule]:
        categories = {r.transaction_id: r.category for r in results}
        by_id = {t.id: t for t in transactions}
        rules: Dict[tuple, Rule] = {}

        def add(text: str, category: str, name: str, confidence: float) -> None:
            text = text.strip().lower()
            if not text or not category:
                return
            key = (text, category)
            if key in rules:
                return
            rules[key] = Rule(
                id=_rule_id("bulk", f"{text}|{category}"),
                name=name,
                conditions=[RuleCondition(field="description", operator="contains", value=text)],
                action=RuleAction(type="set_category", value=category),
                confidence=confidence,
            )

        for pattern in patterns:
            if pattern.type not in ("recurring", "merchant_variation"):
                continue
            if pattern.confidence < SUGGESTED_RULE_MIN_CONFIDENCE:
                continue
            members = [by_id[tid] for tid in pattern.transaction_ids if tid in by_id]
            votes = Counter(categories[t.id] for t in members if t.id in categories)
            if not members or not votes:
                continue
            stem = description_stem(members[0].description)
            add(stem, votes.most_common(1)[0][0], f"Pattern: {pattern.description}", pattern.confidence)

        for mapping in mappings:
            if mapping.confidence < SUGGESTED_RULE_MIN_CONFIDENCE:
                continue
            for name in mapping.original_names:
                add(name, mapping.category, f"Merchant: {mapping.standardized_name}", mapping.confidence)

        return list(rules.values())

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Dollar cost of a run from the configured per-million token prices."""
        return (
            input_tokens * self.input_cost_per_million
            + output_tokens * self.output_cost_per_million
        ) / 1_000_000

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def analyze(
        self,
        transactions: List[Transaction],
        all_transactions: Optional[List[Transaction]] = None,
        options: Union[BulkAnalysisOptions, Dict, None] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BulkAnalysisResult:
        """
        Classify transactions in context-carrying chunks.

        Args:
            transactions: Transactions to classify
            all_transactions: Whole account history used for context (defaults to transactions)
            options: BulkAnalysisOptions or a dict of overrides
            progress_callback: Called with a BulkAnalysisProgress at each stage

        Returns:
            BulkAnalysisResult with exactly one result per input transaction
        """
        options = self.resolve_options(options)
        history = all_transactions if all_transactions is not None else transactions
        total = len(transactions)
        started = time.monotonic()

        def report(stage: str, progress: float, message: str, processed: int = 0, **extra) -> None:
            update = BulkAnalysisProgress(
                stage=stage,
                progress=progress,
                message=message,
                processed_count=processed,
                total_count=total,
                **extra,
            )
            logger.info(f"[{stage}] {message}")
            if progress_callback is not None:
                progress_callback(update)

        report("preparing", 10, "Preparing analysis context...")

        try:
            context = self.prepare_analysis_context(history, options)
            chunks = self.create_chunks(transactions, context, options)

            report("analyzing", 20, f"Processing {len(chunks)} chunks...", total_chunks=len(chunks))

            results: List[BulkClassificationResult] = []
            patterns: List[DetectedPattern] = []
            mappings: List[MerchantMapping] = []
            input_tokens = output_tokens = 0
            fallback_chunks = 0
            loop = asyncio.get_running_loop()

            for i, chunk in enumerate(chunks):
                report(
                    "analyzing",
                    20 + (i / len(chunks)) * 60,
                    f"Analyzing chunk {i + 1} of {len(chunks)}...",
                    processed=len(results),
                    current_chunk=i + 1,
                    total_chunks=len(chunks),
                )

                chunk_result = await loop.run_in_executor(None, self.process_chunk, chunk, options)
                results.extend(chunk_result.results)
                patterns.extend(chunk_result.patterns)
                mappings.extend(chunk_result.merchant_mappings)
                input_tokens += chunk_result.input_tokens
                output_tokens += chunk_result.output_tokens
                fallback_chunks += int(chunk_result.used_fallback)

                if i < len(chunks) - 1 and options.inter_chunk_delay > 0:
                    await asyncio.sleep(options.inter_chunk_delay)

            if fallback_chunks:
                logger.warning(f"{fallback_chunks} of {len(chunks)} chunk(s) classified locally")

            report(
                "processing",
                85,
                "Consolidating results and detecting patterns...",
                processed=len(results),
            )

            consolidated = self.consolidate_results(results, patterns, mappings, transactions)
            successful = sum(1 for r in results if r.confidence > options.confidence_threshold)
            consolidated.processing_stats = ProcessingStats(
                total_processed=len(results),
                successful=successful,
                failed=len(results) - successful,
                tokens_used=input_tokens + output_tokens,
                processing_time=time.monotonic() - started,
                cost=self.calculate_cost(input_tokens, output_tokens),
            )

            report(
                "completed",
                100,
                f"Analysis complete! Processed {len(results)} transactions.",
                processed=len(results),
            )
            return consolidated

        except Exception as e:
            report("error", 0, f"Analysis failed: {e}")
            raise
