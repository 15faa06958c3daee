"""
System and user prompts for remote transaction classification.
Single-transaction prompts feed the cascade's remote tier; bulk prompts
carry shared account context plus one id-tagged line per transaction.
"""
from typing import List

from core.categories import CATEGORY_TAXONOMY, PATTERN_TYPES, render_taxonomy
from core.normalize import format_signed_amount
from core.schema import AnalysisContext, Transaction

# Exemplars rendered into a bulk prompt (the context may hold more)
MAX_PROMPT_EXEMPLARS = 10


def build_single_system_prompt() -> str:
    """
    Build the system prompt for classifying one transaction.

    Returns:
        Complete system prompt string
    """
    return f"""You are an expert financial transaction classifier for bank statements.

Classify the transaction into exactly one category and, when you can, one subcategory of that category.

**CATEGORIES WITH SUBCATEGORIES:**
{render_taxonomy()}

**OUTPUT FORMAT:**
Respond with a single JSON object and nothing else:
{{"category": "category_name", "subcategory": "subcategory_name", "confidence": 0.95, "reasoning": ["explanation"]}}

Rules:
- "category" MUST be one of: {", ".join(CATEGORY_TAXONOMY)}
- "subcategory" MUST belong to the chosen category, or be null
- "confidence" is a number between 0 and 1
"""


def build_single_user_message(transaction: Transaction) -> str:
    """
    Build the user message for one transaction.

    Args:
        transaction: Transaction to classify

    Returns:
        User message string
    """
    lines = [
        "Classify this bank transaction into a category:",
        f"Transaction: {transaction.description}",
        f"Amount: {format_signed_amount(transaction.amount)}",
    ]
    if transaction.merchant_name:
        lines.append(f"Merchant: {transaction.merchant_name}")
    return "\n".join(lines)


def render_transaction_line(index: int, transaction: Transaction) -> str:
    """Render one id-tagged transaction line of a bulk prompt."""
    date_str = transaction.date.isoformat() if transaction.date else "unknown"
    return (
        f"{index}. ID: {transaction.id} | Date: {date_str} | "
        f"Amount: {format_signed_amount(transaction.amount)} | "
        f'Description: "{transaction.description}"'
    )


def render_context(context: AnalysisContext) -> str:
    """Render the shared account context of a bulk run."""
    sections: List[str] = []

    exemplars = context.high_confidence_transactions[:MAX_PROMPT_EXEMPLARS]
    if exemplars:
        lines = [
            f'  "{t.description}" → {t.category} (confidence: {t.confidence:.2f})'
            for t in exemplars
        ]
        sections.append("CONTEXT - Well-classified transactions from this account:\n" + "\n".join(lines))
    else:
        sections.append("CONTEXT - No previously classified transactions are available for this account.")

    if context.recent_patterns:
        lines = [f"  - {p.type}: {p.description}" for p in context.recent_patterns]
        sections.append("KNOWN PATTERNS:\n" + "\n".join(lines))

    if context.merchant_mappings:
        lines = [
            f"  - {', '.join(m.original_names)} → {m.standardized_name} ({m.category})"
            for m in context.merchant_mappings
        ]
        sections.append("KNOWN MERCHANTS:\n" + "\n".join(lines))

    if context.transaction_count:
        start = context.date_range_start.isoformat() if context.date_range_start else "unknown"
        end = context.date_range_end.isoformat() if context.date_range_end else "unknown"
        sections.append(
            f"STATEMENT: {context.transaction_count} transactions from {start} to {end}, "
            f"total volume ${context.total_amount:.2f}"
        )

    return "\n\n".join(sections)


def build_bulk_system_prompt() -> str:
    """
    Build the system prompt for bulk (chunk) classification.

    Returns:
        Complete system prompt string
    """
    return f"""You are an expert financial transaction classifier analyzing a bank statement with full context awareness.

Analyze the transactions collectively, looking for:
- Merchant name variations (e.g., "BIRD* FEE" vs "BIRD FEE LISBON")
- Recurring patterns (same merchant/amount on regular intervals)
- Category consistency (similar merchants should have same category)
- Temporal relationships (transfers followed by purchases)
- Amount patterns indicating subscriptions or services

**AVAILABLE CATEGORIES WITH SUBCATEGORIES:**
{render_taxonomy()}

CRITICAL: Always provide BOTH category AND subcategory for every transaction.
Return exactly one classification per transaction ID, using the IDs exactly as given.

Respond with JSON in this exact format:
{{
  "classifications": [
    {{
      "id": "transaction_id",
      "category": "category_name",
      "subcategory": "specific_subcategory_name",
      "confidence": 0.95,
      "reasoning": ["explanation"],
      "merchant_standardized": "Standardized Merchant Name",
      "related_transactions": ["other_transaction_ids"],
      "pattern_type": "{'|'.join(PATTERN_TYPES)}|none"
    }}
  ],
  "detected_patterns": [
    {{
      "type": "recurring",
      "description": "Pattern description",
      "transaction_ids": ["id1", "id2"],
      "confidence": 0.9
    }}
  ],
  "merchant_mappings": [
    {{
      "variations": ["BIRD* FEE", "BIRD FEE LISBON"],
      "standard_name": "Bird Scooters",
      "category": "Transportation",
      "confidence": 0.95
    }}
  ]
}}
"""


def build_bulk_user_message(transactions: List[Transaction], context: AnalysisContext) -> str:
    """
    Build the user message for one chunk.

    Args:
        transactions: Transactions of the chunk
        context: Shared analysis context

    Returns:
        User message string
    """
    lines = "\n".join(render_transaction_line(i + 1, t) for i, t in enumerate(transactions))
    return (
        f"{render_context(context)}\n\n"
        f"TRANSACTIONS TO CLASSIFY ({len(transactions)}):\n"
        f"{lines}"
    )
