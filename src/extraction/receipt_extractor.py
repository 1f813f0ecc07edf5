"""Receipt field extraction from raw OCR text.

Reduces noisy recognition output to a merchant name, a total amount and
a tip by running each field through an ordered cascade of matchers.
Extraction is pure and total: text with nothing recognizable yields
``("Unknown Business", 0, 0)`` for a human to correct.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from src.utils.logger import get_logger

from .amounts import AMOUNT_STRATEGIES, MAX_AMOUNT, MAX_TIP, TIP_STRATEGIES
from .cascade import CENTS, ExtractionDiagnostic, MatcherStrategy, run_cascade, split_lines
from .organization import DEFAULT_ORGANIZATION, ORGANIZATION_STRATEGIES

logger = get_logger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class ExtractedReceipt:
    """Structured fields recovered from a receipt."""

    organization: str = DEFAULT_ORGANIZATION
    amount: Decimal = ZERO
    tip: Decimal = ZERO
    diagnostics: tuple[ExtractionDiagnostic, ...] = field(default=(), compare=False)

    @classmethod
    def from_values(
        cls,
        organization: object,
        amount: object,
        tip: object,
    ) -> "ExtractedReceipt":
        """Build a receipt from loosely typed values, e.g. a remote model's JSON.

        Unparseable, negative or out-of-range numbers become zero and an
        empty organization becomes the default name.
        """
        return cls(
            organization=str(organization or "").strip() or DEFAULT_ORGANIZATION,
            amount=_coerce_amount(amount, MAX_AMOUNT),
            tip=_coerce_amount(tip, MAX_TIP),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation of the fields."""
        return {
            "organization": self.organization,
            "amount": float(self.amount),
            "tip": float(self.tip),
        }


def _coerce_amount(raw: object, upper: Decimal) -> Decimal:
    try:
        value = Decimal(str(raw)).quantize(CENTS)
    except ArithmeticError:
        return ZERO
    if not value.is_finite() or value < 0 or value >= upper:
        return ZERO
    return value


class ReceiptFieldExtractor:
    """Cascade-driven extractor for merchant, amount and tip.

    Args:
        organization_strategies: Merchant-name matchers in priority order.
        amount_strategies: Total-amount matchers in priority order.
        tip_strategies: Tip matchers in priority order.
    """

    def __init__(
        self,
        organization_strategies: Sequence[MatcherStrategy] = ORGANIZATION_STRATEGIES,
        amount_strategies: Sequence[MatcherStrategy] = AMOUNT_STRATEGIES,
        tip_strategies: Sequence[MatcherStrategy] = TIP_STRATEGIES,
    ) -> None:
        self.organization_strategies = list(organization_strategies)
        self.amount_strategies = list(amount_strategies)
        self.tip_strategies = list(tip_strategies)

    def extract(self, text: str) -> ExtractedReceipt:
        """Extract receipt fields from raw OCR text.

        Args:
            text: Recognition output, one receipt line per text line.

        Returns:
            Extracted fields with a diagnostic for every resolved field.
        """
        lines = split_lines(text)
        diagnostics: list[ExtractionDiagnostic] = []

        org_match, org_diag = run_cascade("organization", self.organization_strategies, lines)
        tip_match, tip_diag = run_cascade("tip", self.tip_strategies, lines)
        amount_match, amount_diag = run_cascade("amount", self.amount_strategies, lines)

        for diagnostic in (org_diag, tip_diag, amount_diag):
            if diagnostic is not None:
                diagnostics.append(diagnostic)

        receipt = ExtractedReceipt(
            organization=org_match.value if org_match else DEFAULT_ORGANIZATION,
            amount=amount_match.value if amount_match else ZERO,
            tip=tip_match.value if tip_match else ZERO,
            diagnostics=tuple(diagnostics),
        )
        logger.info(
            "Extracted receipt from %d lines: organization=%r amount=%s tip=%s",
            len(lines),
            receipt.organization,
            receipt.amount,
            receipt.tip,
        )
        return receipt


def extract_receipt_fields(text: str) -> ExtractedReceipt:
    """Extract receipt fields using the default matcher cascades."""
    return ReceiptFieldExtractor().extract(text)
