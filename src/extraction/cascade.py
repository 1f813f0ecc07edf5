"""Ordered matcher strategies and the cascade runner that combines them.

Each matcher is a pure function over the receipt lines returning a
``FieldMatch`` or ``None``. The cascade tries matchers in priority order
and the first hit wins, leaving an ``ExtractionDiagnostic`` behind that
records which tier produced the value.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any

from src.utils.logger import get_logger

logger = get_logger(__name__)

CENTS = Decimal("0.01")


class Priority(IntEnum):
    """Ranking of an amount candidate found by the currency sweep."""

    LOW = 0
    HIGH = 1


@dataclass(frozen=True)
class AmountCandidate:
    """A provisionally matched amount awaiting cascade resolution."""

    value: Decimal
    source_line: str
    priority: Priority = Priority.LOW

    def sort_key(self) -> tuple[int, Decimal]:
        """Key ordering candidates by priority, then value, both descending."""
        return (-int(self.priority), -self.value)


@dataclass(frozen=True)
class FieldMatch:
    """Value produced by a single matcher."""

    value: Any
    source_line: str
    pattern: str


@dataclass(frozen=True)
class ExtractionDiagnostic:
    """Observability record for a field chosen by the cascade."""

    field_name: str
    tier: str
    pattern: str
    source_line: str
    value: str


Matcher = Callable[[Sequence[str]], FieldMatch | None]


@dataclass(frozen=True)
class MatcherStrategy:
    """A named matcher occupying one tier of a cascade."""

    tier: str
    match: Matcher


def split_lines(text: str) -> list[str]:
    """Split raw OCR output into trimmed, non-empty lines in reading order."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def to_amount(whole: str, fraction: str | None = None) -> Decimal:
    """Build a cent-quantized amount from integer and fractional digit groups.

    A single fractional digit is padded with a trailing zero, so
    ``("12", "5")`` becomes ``12.50``. A missing fraction means ``.00``.
    """
    if fraction:
        if len(fraction) == 1:
            fraction += "0"
        value = Decimal(f"{whole}.{fraction}")
    else:
        value = Decimal(whole)
    try:
        return value.quantize(CENTS)
    except InvalidOperation:
        # Too many digits to carry cents; range checks reject it anyway.
        return value


def within(value: Decimal, upper: Decimal) -> bool:
    """Return True if ``value`` lies in the open interval ``(0, upper)``."""
    return Decimal(0) < value < upper


def run_cascade(
    field_name: str,
    strategies: Sequence[MatcherStrategy],
    lines: Sequence[str],
) -> tuple[FieldMatch | None, ExtractionDiagnostic | None]:
    """Try each strategy in order and return the first match.

    Args:
        field_name: Name of the field being resolved, for diagnostics.
        strategies: Matchers in descending priority.
        lines: Receipt lines to search.

    Returns:
        Tuple of (winning match, diagnostic), or ``(None, None)`` when
        no tier produced a value.
    """
    for strategy in strategies:
        match = strategy.match(lines)
        if match is None:
            continue
        diagnostic = ExtractionDiagnostic(
            field_name=field_name,
            tier=strategy.tier,
            pattern=match.pattern,
            source_line=match.source_line,
            value=str(match.value),
        )
        logger.debug(
            "Resolved %s=%s via %s from line %r",
            field_name,
            match.value,
            strategy.tier,
            match.source_line,
        )
        return match, diagnostic

    logger.debug("No tier resolved %s", field_name)
    return None, None
