"""Merchant-name matchers for the top of a receipt."""

import re
from collections.abc import Sequence

from .cascade import FieldMatch, MatcherStrategy

DEFAULT_ORGANIZATION = "Unknown Business"
HEADER_LINES = 10
MAX_NAME_LENGTH = 50

_DENYLIST = re.compile(
    r"receipt|invoice|bill|tax|total|subtotal|payment|date|time|card|cash"
    r"|address|phone|gst|particulars|qty|rate|amount|sub|dis|net|cgst|sgst"
    r"|grand|thank|visit|service|take|away|counter|boy|no|type|compound|chowk"
    r"|building|bldg|muncipal",
    re.IGNORECASE,
)
_DISALLOWED_CHARS = re.compile(r"[^a-zA-Z0-9\s&'-]")
_LETTER_RUN = re.compile(r"[a-zA-Z]{3,}")
_LONG_LETTER_RUN = re.compile(r"[a-zA-Z]{5,}")
_ALL_CAPS = re.compile(r"[A-Z\s]{3,}")
_CAPS_RUN = re.compile(r"[A-Z]{2,}")
_PRICE = re.compile(r"\d+\s*[.,]\s*\d{2}\b")
_BUSINESS_SUFFIX = re.compile(
    r"\s+(pure veg|non-veg|restaurant|hotel|cafe|bar|grill|kitchen|food|center"
    r"|centre|store|shop|market|plaza|mall|complex|building|bldg|veg|pure)$",
    re.IGNORECASE,
)


def clean_name(raw: str) -> str:
    """Normalize a candidate merchant name.

    Drops characters other than letters, digits, ``&``, ``'``, ``-`` and
    spaces, collapses whitespace, truncates to 50 characters and strips a
    trailing generic business-type word such as "CAFE".
    """
    name = _DISALLOWED_CHARS.sub("", raw).strip()
    name = re.sub(r"\s+", " ", name)
    name = name[:MAX_NAME_LENGTH].rstrip()
    return _BUSINESS_SUFFIX.sub("", name)


def is_boilerplate(line: str) -> bool:
    """Return True for structural receipt lines that never name a merchant."""
    return _DENYLIST.search(line) is not None


def match_header_name(lines: Sequence[str]) -> FieldMatch | None:
    """Pick the first uppercase-looking line in the receipt header."""
    for line in lines[:HEADER_LINES]:
        if not 3 <= len(line) <= 60 or line[0].isdigit() or is_boilerplate(line):
            continue
        if not _LETTER_RUN.search(line):
            continue
        candidate = _DISALLOWED_CHARS.sub("", line).strip()
        if not (_ALL_CAPS.fullmatch(candidate) or _CAPS_RUN.search(candidate)):
            continue
        name = clean_name(candidate)
        if len(name) >= 2:
            return FieldMatch(name, line, "header_caps")
    return None


def match_text_heavy_line(lines: Sequence[str]) -> FieldMatch | None:
    """Fall back to the first wordy line without a price anywhere in the text."""
    for line in lines:
        if not 4 <= len(line) <= MAX_NAME_LENGTH or is_boilerplate(line):
            continue
        if not _LONG_LETTER_RUN.search(line):
            continue
        if _PRICE.search(line):
            continue
        name = clean_name(line)
        if len(name) >= 2:
            return FieldMatch(name, line, "text_heavy")
    return None


ORGANIZATION_STRATEGIES: list[MatcherStrategy] = [
    MatcherStrategy("header", match_header_name),
    MatcherStrategy("text_heavy", match_text_heavy_line),
]
