"""Tip and total-amount matchers for receipt text.

The amount matchers form a four-tier cascade: an explicit "Grand Total"
pass, an ordered keyword pass, a whole-document currency sweep that ranks
candidates, and an aggressive decimal fallback.
"""

import re
from collections.abc import Sequence
from decimal import Decimal

from .cascade import (
    AmountCandidate,
    FieldMatch,
    MatcherStrategy,
    Priority,
    to_amount,
    within,
)

MAX_AMOUNT = Decimal("10000")
MAX_TIP = Decimal("1000")

_FLAGS = re.IGNORECASE | re.ASCII

_TIP_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"tip[\s:]*\$?\s*(\d+)[.,](\d{2})", _FLAGS),
    re.compile(r"tip[\s:]*\$?\s*(\d+)\.(\d{2})", _FLAGS),
    re.compile(r"gratuity[\s:]*\$?\s*(\d+)[.,](\d{2})", _FLAGS),
    re.compile(r"service[\s:]*\$?\s*(\d+)[.,](\d{2})", _FLAGS),
]

_GRAND_TOTAL_PATTERN = re.compile(r"grand\s*total[\s:]*(\d+)", _FLAGS)
_FIRST_INTEGER = re.compile(r"(\d+)", re.ASCII)

# Keyword pass, highest priority first.
_KEYWORD_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"total[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"amount\s*due[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"balance[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"amount[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"total\s*amount[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"net\s*total[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
    re.compile(r"final\s*amount[\s:]*\$?\s*(\d+)[.,]?(\d{0,2})", _FLAGS),
]

_CURRENCY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\$\s*(\d+)[.,](\d{2})\b", re.ASCII),
    re.compile(r"\b(\d+)[.,](\d{2})\b", re.ASCII),
    re.compile(r"\$\s*(\d+)[.,](\d)\b", re.ASCII),
    re.compile(r"(?<![\d.,])(\d+)(?![.,]?\d)", re.ASCII),
]

_TOTAL_KEYWORDS = re.compile(r"total|grand|final|balance|due", _FLAGS)
_NOISE_KEYWORDS = re.compile(
    r"tax|subtotal|discount|change|item|sold|particulars|qty|rate|amount|sub|dis"
    r"|net|cgst|sgst|thank|visit|service|take|away|counter|boy|no|type|address"
    r"|phone|gst",
    _FLAGS,
)

_LOOSE_DECIMAL = re.compile(r"(\d+)\s*[.,]\s*(\d{2})", re.ASCII)


def match_tip(lines: Sequence[str]) -> FieldMatch | None:
    """Find the first tip, gratuity or service charge in document order."""
    for line in lines:
        for pattern in _TIP_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            value = to_amount(match.group(1), match.group(2))
            if within(value, MAX_TIP):
                return FieldMatch(value, line, pattern.pattern)
    return None


def match_grand_total(lines: Sequence[str]) -> FieldMatch | None:
    """Take the integer that follows "Grand Total" on the first such line."""
    for line in lines:
        match = _GRAND_TOTAL_PATTERN.search(line)
        pattern = _GRAND_TOTAL_PATTERN
        if not match and "grand total" in line.lower():
            match = _FIRST_INTEGER.search(line)
            pattern = _FIRST_INTEGER
        if not match:
            continue
        value = to_amount(match.group(1))
        if within(value, MAX_AMOUNT):
            return FieldMatch(value, line, pattern.pattern)
    return None


def match_total_keywords(lines: Sequence[str]) -> FieldMatch | None:
    """Match total-like keywords line by line, trying patterns in priority order."""
    for line in lines:
        for pattern in _KEYWORD_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            value = to_amount(match.group(1), match.group(2))
            if within(value, MAX_AMOUNT):
                return FieldMatch(value, line, pattern.pattern)
    return None


def collect_currency_candidates(lines: Sequence[str]) -> list[AmountCandidate]:
    """Gather every currency-shaped token outside noise lines.

    Lines mentioning tax, items, discounts and similar are skipped unless
    they also carry a total keyword. Candidates on total lines are ranked
    ``Priority.HIGH``.
    """
    candidates: list[AmountCandidate] = []
    for line in lines:
        is_total_line = _TOTAL_KEYWORDS.search(line) is not None
        if _NOISE_KEYWORDS.search(line) and not is_total_line:
            continue
        priority = Priority.HIGH if is_total_line else Priority.LOW
        for pattern in _CURRENCY_PATTERNS:
            for match in pattern.finditer(line):
                fraction = match.group(2) if pattern.groups > 1 else None
                value = to_amount(match.group(1), fraction)
                if within(value, MAX_AMOUNT):
                    candidates.append(AmountCandidate(value, line, priority))
    return candidates


def match_currency_sweep(lines: Sequence[str]) -> FieldMatch | None:
    """Pick the best-ranked candidate from the whole-document sweep."""
    candidates = collect_currency_candidates(lines)
    if not candidates:
        return None
    best = min(candidates, key=AmountCandidate.sort_key)
    return FieldMatch(best.value, best.source_line, f"currency_sweep:{best.priority.name}")


def match_largest_decimal(lines: Sequence[str]) -> FieldMatch | None:
    """Keep the largest ``digits[.,]dd`` token found anywhere in the text."""
    best: FieldMatch | None = None
    for line in lines:
        for match in _LOOSE_DECIMAL.finditer(line):
            value = to_amount(match.group(1), match.group(2))
            if within(value, MAX_AMOUNT) and (best is None or value > best.value):
                best = FieldMatch(value, line, _LOOSE_DECIMAL.pattern)
    return best


TIP_STRATEGIES: list[MatcherStrategy] = [MatcherStrategy("tip", match_tip)]

AMOUNT_STRATEGIES: list[MatcherStrategy] = [
    MatcherStrategy("grand_total", match_grand_total),
    MatcherStrategy("keyword", match_total_keywords),
    MatcherStrategy("currency_sweep", match_currency_sweep),
    MatcherStrategy("largest_decimal", match_largest_decimal),
]
