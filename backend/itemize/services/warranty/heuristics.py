"""Local warranty heuristics.

Keyword and pattern tables used when no AI lookup result is available,
plus the brand/merchant pattern table used to categorise AI results.
All matching is case-insensitive on whole words (an optional trailing
"s" is allowed, so "drills" matches "drill" but "gasket" does not match
"gas").
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional, Pattern

MIN_VALUE_CENTS = 5_000  # $50
HIGH_VALUE_CENTS = 20_000  # $200
PREMIUM_VALUE_CENTS = 100_000  # $1000

# Durable goods keyword -> warranty category
DURABLE_KEYWORDS = {
    "drill": "tools",
    "saw": "tools",
    "tool": "tools",
    "generator": "tools",
    "compressor": "tools",
    "laptop": "electronics",
    "computer": "electronics",
    "monitor": "electronics",
    "tablet": "electronics",
    "phone": "electronics",
    "camera": "electronics",
    "printer": "electronics",
    "tv": "electronics",
    "television": "electronics",
    "speaker": "electronics",
    "washer": "appliances",
    "dryer": "appliances",
    "fridge": "appliances",
    "refrigerator": "appliances",
    "dishwasher": "appliances",
    "microwave": "appliances",
    "vacuum": "appliances",
}

CONSUMABLE_KEYWORDS = (
    "lumber", "plywood", "2x4", "nail", "screw", "bolt", "adhesive", "glue",
    "paint", "caulk", "tape", "sandpaper", "filter", "fuel", "gas", "diesel",
    "meal", "snack", "coffee",
)

FOOD_KEYWORDS = (
    "poutine", "burger", "pizza", "sandwich", "salad", "soup", "fries",
    "coffee", "latte", "espresso", "cappuccino", "tea", "beer", "wine",
    "cocktail", "appetizer", "entree", "dessert", "meal", "lunch", "dinner",
    "breakfast", "chicken", "steak", "sushi", "taco", "wrap", "pasta",
    "noodle", "wings", "nachos", "shrimp", "lobster", "crab", "smoothie",
    "juice", "soda",
)

# Matched against the merchant name only
FOOD_VENUE_KEYWORDS = (
    "restaurant", "café", "cafe", "bistro", "grill", "bar", "pub", "kitchen",
    "diner", "eatery", "bakery", "pizzeria", "sushi", "starbucks",
    "tim hortons", "mcdonalds", "mcdonald's", "subway", "a&w", "wendy",
    "wendy's", "burger king", "popeyes", "chick-fil-a", "chipotle", "panera",
    "domino", "domino's", "pizza hut", "taco bell", "kfc", "five guys",
    "shake shack", "dairy queen",
)


@dataclass(frozen=True)
class WarrantyPattern:
    key: str
    category: str
    months: int
    merchant: bool
    brand: bool


def _p(key: str, category: str, months: int, context: str) -> WarrantyPattern:
    return WarrantyPattern(key, category, months, context in ("merchant", "both"), context in ("brand", "both"))


WARRANTY_PATTERNS = (
    # Electronics
    _p("best buy", "electronics", 12, "merchant"),
    _p("amazon", "electronics", 12, "merchant"),
    _p("newegg", "electronics", 12, "merchant"),
    _p("micro center", "electronics", 12, "merchant"),
    _p("b&h", "electronics", 12, "merchant"),
    _p("apple", "electronics", 12, "both"),
    _p("samsung", "electronics", 12, "both"),
    _p("sony", "electronics", 12, "both"),
    _p("lg", "electronics", 12, "both"),
    _p("dell", "electronics", 12, "both"),
    _p("hp", "electronics", 12, "both"),
    _p("lenovo", "electronics", 12, "both"),
    _p("asus", "electronics", 12, "brand"),
    _p("acer", "electronics", 12, "brand"),
    _p("microsoft", "electronics", 12, "brand"),
    _p("google", "electronics", 12, "brand"),
    _p("bose", "electronics", 12, "brand"),
    _p("jbl", "electronics", 12, "brand"),
    _p("canon", "electronics", 12, "brand"),
    _p("nikon", "electronics", 12, "brand"),
    _p("gopro", "electronics", 12, "brand"),
    _p("nintendo", "electronics", 12, "brand"),
    _p("garmin", "electronics", 12, "brand"),
    _p("nest", "electronics", 24, "brand"),
    # Appliances
    _p("home depot", "appliances", 12, "merchant"),
    _p("lowe's", "appliances", 12, "merchant"),
    _p("lowes", "appliances", 12, "merchant"),
    _p("sears", "appliances", 12, "merchant"),
    _p("whirlpool", "appliances", 12, "both"),
    _p("maytag", "appliances", 12, "both"),
    _p("kitchenaid", "appliances", 12, "both"),
    _p("frigidaire", "appliances", 12, "brand"),
    _p("bosch", "appliances", 24, "brand"),
    _p("miele", "appliances", 24, "brand"),
    _p("electrolux", "appliances", 12, "brand"),
    _p("kenmore", "appliances", 12, "brand"),
    _p("dyson", "appliances", 24, "brand"),
    _p("shark", "appliances", 24, "brand"),
    _p("irobot", "appliances", 12, "brand"),
    # Tools
    _p("harbor freight", "tools", 12, "merchant"),
    _p("dewalt", "tools", 36, "both"),
    _p("milwaukee", "tools", 60, "both"),
    _p("makita", "tools", 36, "both"),
    _p("craftsman", "tools", 12, "both"),
    _p("snap-on", "tools", 12, "both"),
    _p("stanley", "tools", 12, "both"),
    _p("ryobi", "tools", 36, "brand"),
    _p("ridgid", "tools", 36, "brand"),
    _p("black & decker", "tools", 24, "brand"),
    _p("stihl", "tools", 24, "brand"),
    _p("husqvarna", "tools", 24, "brand"),
    # Furniture
    _p("ikea", "furniture", 12, "both"),
    _p("pottery barn", "furniture", 12, "both"),
    _p("west elm", "furniture", 12, "both"),
    _p("wayfair", "furniture", 12, "merchant"),
    _p("ashley", "furniture", 12, "merchant"),
    _p("herman miller", "furniture", 144, "brand"),
    _p("steelcase", "furniture", 144, "brand"),
    # Clothing
    _p("nike", "clothing", 6, "merchant"),
    _p("adidas", "clothing", 6, "merchant"),
    _p("nordstrom", "clothing", 6, "merchant"),
    # Jewelry
    _p("tiffany", "jewelry", 24, "merchant"),
    _p("kay jewelers", "jewelry", 12, "merchant"),
    _p("zales", "jewelry", 12, "merchant"),
    # Automotive
    _p("autozone", "automotive", 12, "merchant"),
    _p("advance auto", "automotive", 12, "merchant"),
    _p("o'reilly", "automotive", 12, "merchant"),
    _p("napa", "automotive", 12, "merchant"),
    _p("discount tire", "automotive", 12, "merchant"),
    _p("michelin", "automotive", 72, "brand"),
    _p("goodyear", "automotive", 72, "brand"),
)


@lru_cache(maxsize=512)
def _keyword_re(keyword: str) -> Pattern[str]:
    return re.compile(r"(?<![\w])" + re.escape(keyword) + r"s?(?![\w])")


def match_keyword(text: str, keywords: Iterable[str]) -> Optional[str]:
    """Return the first keyword found as a whole word in ``text``."""
    lowered = (text or "").lower()
    if not lowered:
        return None
    for keyword in keywords:
        if _keyword_re(keyword).search(lowered):
            return keyword
    return None


@dataclass(frozen=True)
class PatternMatch:
    category: str
    months: int
    confidence: float


def detect_from_merchant(merchant: Optional[str]) -> Optional[PatternMatch]:
    normalized = (merchant or "").lower().strip()
    if not normalized:
        return None
    candidates = [p for p in WARRANTY_PATTERNS if p.merchant]
    for pattern in candidates:
        if pattern.key == normalized:
            return PatternMatch(pattern.category, pattern.months, 0.8)
    for pattern in candidates:
        if _keyword_re(pattern.key).search(normalized):
            return PatternMatch(pattern.category, pattern.months, 0.8)
    return None


def detect_from_brand(brand: Optional[str]) -> Optional[PatternMatch]:
    normalized = (brand or "").lower().strip()
    if not normalized:
        return None
    candidates = [p for p in WARRANTY_PATTERNS if p.brand]
    for pattern in candidates:
        if pattern.key == normalized:
            return PatternMatch(pattern.category, pattern.months, 0.85)
    for pattern in candidates:
        if _keyword_re(pattern.key).search(normalized):
            return PatternMatch(pattern.category, pattern.months, 0.7)
    return None


def detect_category(brand: Optional[str], merchant: Optional[str]) -> str:
    """Best-effort category for an item: brand, then merchant, else ``other``."""
    match = detect_from_brand(brand) or detect_from_merchant(merchant)
    return match.category if match else "other"


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str
    category: str = "other"
    confidence: Optional[float] = None


def assess_eligibility(
    item_name: str,
    description: Optional[str] = None,
    merchant: Optional[str] = None,
    total_price_cents: Optional[int] = None,
) -> Eligibility:
    """Classify an item as warranty-eligible from local signals.

    Signals in priority order: consumable/food keyword in the item text
    or a food venue merchant; a durable-goods keyword in the item text; a
    merchant known to offer warranties; the price.
    """
    text = f"{item_name or ''} {description or ''}".strip()

    if match_keyword(text, CONSUMABLE_KEYWORDS):
        return Eligibility(False, "consumable")
    if match_keyword(text, FOOD_KEYWORDS) or match_keyword(merchant or "", FOOD_VENUE_KEYWORDS):
        return Eligibility(False, "food_or_dining")

    durable = match_keyword(text, DURABLE_KEYWORDS)
    if durable:
        return Eligibility(True, "durable_keyword", DURABLE_KEYWORDS[durable], 0.6)

    merchant_match = detect_from_merchant(merchant)
    if merchant_match:
        return Eligibility(True, "merchant_signal", merchant_match.category, 0.5)

    price = total_price_cents or 0
    if price >= HIGH_VALUE_CENTS:
        confidence = 0.5 if price >= PREMIUM_VALUE_CENTS else 0.4
        return Eligibility(True, "high_value", detect_category(item_name, None), confidence)
    if price < MIN_VALUE_CENTS:
        return Eligibility(False, "low_value")
    return Eligibility(False, "insufficient_signal")
