"""
Text normalization helpers shared by the cascade, bulk analysis and
duplicate detection: description/merchant normalization, cache
fingerprints, token estimation and amount formatting.
"""
import hashlib
import math
import re
from typing import Optional

from core.schema import Transaction

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_DIGITS = re.compile(r"\d+")

# Rough estimate used across the pipeline: one token per four characters
CHARS_PER_TOKEN = 4


def normalize_string(text: Optional[str]) -> str:
    """
    Normalize string for matching: lowercase, trim, remove extra spaces.

    Args:
        text: Input string

    Returns:
        Normalized string
    """
    if not text or not isinstance(text, str):
        return ""

    return " ".join(text.lower().strip().split())


def normalize_description(description: Optional[str]) -> str:
    """
    Normalize a transaction description for similarity comparison.
    Punctuation becomes whitespace, whitespace is collapsed.
    """
    if not description:
        return ""
    text = _NON_WORD.sub(" ", description.lower())
    return _WHITESPACE.sub(" ", text).strip()


def description_stem(description: Optional[str]) -> str:
    """
    Description with digits removed, used to recognise recurring charges
    whose reference numbers or dates change every month.
    """
    text = _DIGITS.sub(" ", normalize_description(description))
    return _WHITESPACE.sub(" ", text).strip()


def merchant_key(merchant_name: Optional[str]) -> str:
    """Grouping key for merchant names ("AMAZON.COM #123" and "Amazon.com" share one)."""
    return description_stem(merchant_name)


def transaction_fingerprint(transaction: Transaction) -> str:
    """
    Cache fingerprint of a transaction's classifiable content:
    normalized description, amount and merchant name, plus any category
    already assigned (rules can read it).
    """
    amount = "" if transaction.amount is None else f"{transaction.amount:.2f}"
    key = "|".join([
        normalize_string(transaction.description),
        amount,
        normalize_string(transaction.merchant_name),
        transaction.category or "",
        transaction.subcategory or "",
    ])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a prompt fragment."""
    if not text:
        return 0
    return int(math.ceil(len(text) / CHARS_PER_TOKEN))


def format_signed_amount(amount: Optional[float]) -> str:
    """Render an amount as '-$12.50' / '+$100.00' for prompts."""
    if amount is None:
        return "unknown"
    sign = "-" if amount < 0 else "+"
    return f"{sign}${abs(amount):.2f}"
