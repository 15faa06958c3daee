"""
Category taxonomy and curated merchant patterns.

The taxonomy is the single source of truth for valid category/subcategory
pairs: prompts render it, response validation checks against it.

MERCHANT_PATTERNS is evaluated top to bottom and the first group with a
matching matcher wins. Specific merchants must stay above generic rules.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

CATEGORY_TAXONOMY: Dict[str, List[str]] = {
    "Transportation": [
        "Gas & Fuel", "Public Transit", "Rideshare/Taxi", "Parking",
        "Vehicle Maintenance", "Other Transport",
    ],
    "Transfer": [
        "Account Transfer", "Person-to-Person", "Wire Transfer", "Check Deposit", "Other Transfer",
    ],
    "Business/Software": [
        "Software/SaaS", "Development Tools", "Cloud Services", "Domain/Hosting",
        "Business Apps", "Other Business",
    ],
    "Business/Marketing": [
        "Advertising", "Social Media", "Email Marketing", "Analytics", "Design Tools", "Other Marketing",
    ],
    "Banking/Fees": [
        "Account Fees", "ATM Fees", "Overdraft Fees", "Wire Fees", "Foreign Transaction", "Other Bank Fees",
    ],
    "Food & Dining": [
        "Restaurants", "Fast Food", "Coffee Shops", "Groceries", "Delivery", "Other Food",
    ],
    "Shopping": [
        "Retail", "Online Shopping", "Clothing", "Electronics", "Home & Garden", "Other Shopping",
    ],
    "Recurring/Subscription": [
        "Streaming Services", "Software Subscriptions", "Utilities", "Insurance", "Memberships",
        "Other Recurring",
    ],
    "Income/Deposit": [
        "Salary", "Freelance", "Investment Income", "Refund", "Government Payment", "Other Income",
    ],
    "Healthcare": [
        "Medical", "Dental", "Pharmacy", "Insurance", "Therapy", "Other Healthcare",
    ],
    "Entertainment": [
        "Movies", "Gaming", "Sports", "Hobbies", "Books/Media", "Other Entertainment",
    ],
    "Utilities": [
        "Electric", "Gas", "Water", "Internet", "Phone", "Trash/Recycling", "Other Utilities",
    ],
    "Other": [
        "Uncategorized", "Charity", "Education", "Travel", "Personal Care", "Other",
    ],
}

DEFAULT_CATEGORY = "Other"
DEFAULT_SUBCATEGORY = "Uncategorized"

PATTERN_TYPES = ("recurring", "merchant_variation", "category_pattern", "amount_pattern")

# Deterministic fallback keyword lists (matched against the upper-cased description)
EXPENSE_KEYWORDS = ("PURCHASE", "CHECKCARD", "PAYPAL", "WITHDRAWAL", "ATM", "FEE")
INCOME_KEYWORDS = ("DEPOSIT", "DIRECT DEP", "PAYROLL", "SALARY", "INTEREST PAID")
TRANSFER_KEYWORDS = ("TRANSFER", "ZELLE", "REFUND")


def is_valid_category(category: Optional[str]) -> bool:
    """Check whether a category name belongs to the taxonomy."""
    return bool(category) and category in CATEGORY_TAXONOMY


def is_valid_pair(category: Optional[str], subcategory: Optional[str]) -> bool:
    """Check whether (category, subcategory) is a pair defined by the taxonomy."""
    if not is_valid_category(category) or not subcategory:
        return False
    return subcategory in CATEGORY_TAXONOMY[category]


def default_subcategory(category: str) -> Optional[str]:
    """Return the catch-all subcategory of a category (the one starting with 'Other')."""
    subcategories = CATEGORY_TAXONOMY.get(category, [])
    for sub in subcategories:
        if sub.startswith("Other"):
            return sub
    return subcategories[0] if subcategories else None


def render_taxonomy() -> str:
    """Render the taxonomy as prompt text, one category per line."""
    return "\n".join(
        f"- {category}: {', '.join(subcategories)}"
        for category, subcategories in CATEGORY_TAXONOMY.items()
    )


@dataclass(frozen=True)
class PatternMatcher:
    """
    One matcher of a pattern group.

    Forms:
        "UBER"        plain substring (case-insensitive)
        "BIRD*"       wildcard, '*' matches any run of characters
        "re:^ACH .*"  explicit regular expression
    """

    raw: str
    regex: Optional[re.Pattern] = field(default=None, compare=False)

    @classmethod
    def parse(cls, raw: str) -> "PatternMatcher":
        if raw.startswith("re:"):
            return cls(raw=raw, regex=re.compile(raw[3:], re.IGNORECASE))
        if "*" in raw:
            parts = [re.escape(part) for part in raw.split("*")]
            return cls(raw=raw, regex=re.compile(".*".join(parts), re.IGNORECASE))
        return cls(raw=raw)

    def matches(self, text: str) -> bool:
        if self.regex is not None:
            return self.regex.search(text) is not None
        return self.raw.upper() in text.upper()


@dataclass(frozen=True)
class PatternGroup:
    """An ordered pattern table entry: any matcher hit assigns the category."""

    matchers: Tuple[PatternMatcher, ...]
    category: str
    subcategory: Optional[str]
    confidence: float

    @classmethod
    def build(cls, patterns: List[str], category: str, subcategory: Optional[str], confidence: float) -> "PatternGroup":
        if not is_valid_category(category):
            raise ValueError(f"Unknown category in pattern table: {category}")
        if subcategory is not None and not is_valid_pair(category, subcategory):
            raise ValueError(f"Unknown subcategory '{subcategory}' for category '{category}'")
        return cls(
            matchers=tuple(PatternMatcher.parse(p) for p in patterns),
            category=category,
            subcategory=subcategory,
            confidence=confidence,
        )

    def first_match(self, text: str) -> Optional[PatternMatcher]:
        for matcher in self.matchers:
            if matcher.matches(text):
                return matcher
        return None


MERCHANT_PATTERNS: List[PatternGroup] = [
    # Bank transfers and internal movements
    PatternGroup.build(["ZELLE TRANSFER"], "Transfer", "Person-to-Person", 0.98),
    PatternGroup.build(["ONLINE BANKING TRANSFER"], "Transfer", "Account Transfer", 0.98),
    PatternGroup.build(["PMNT SENT"], "Transfer", "Person-to-Person", 0.95),

    # Recurring card charges
    PatternGroup.build(["RECURRING CKCD"], "Recurring/Subscription", "Other Recurring", 0.85),

    # Banking fees
    PatternGroup.build(
        ["INTERNATIONAL TRANSACTION FEE", "WIRE TRANSFER FEE", "ATM FEE"],
        "Banking/Fees", "Other Bank Fees", 0.98,
    ),

    # Transportation services
    PatternGroup.build(["BIRD*", "BOLT.EU", "UBER", "LYFT"], "Transportation", "Rideshare/Taxi", 0.95),

    # Money transfer services
    PatternGroup.build(["REMITLY", "WESTERN UNION", "MONEYGRAM", "WISE"], "Transfer", "Wire Transfer", 0.95),

    # Software and business services
    PatternGroup.build(["WIX.COM", "GOOGLE", "MICROSOFT", "ADOBE"], "Business/Software", "Software/SaaS", 0.9),
    PatternGroup.build(["HUSHED"], "Business/Software", "Business Apps", 0.9),
    PatternGroup.build(["GCS LEADSALES"], "Business/Marketing", "Advertising", 0.9),

    # Food and dining
    PatternGroup.build(["JACK IN THE BOX", "MCDONALDS"], "Food & Dining", "Fast Food", 0.9),
    PatternGroup.build(["STARBUCKS"], "Food & Dining", "Coffee Shops", 0.9),
]
