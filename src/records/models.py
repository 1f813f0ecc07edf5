"""Bill records handed to the record store.

A ``BillRecord`` is created exactly once per accepted scan or manual
entry and is never mutated afterwards.
"""

import dataclasses
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from src.extraction.receipt_extractor import ZERO, ExtractedReceipt

OCR_FAILED_ORGANIZATION = "Unknown (OCR Failed)"


class RecordIdFactory:
    """Issue unique, strictly increasing record ids from a millisecond clock.

    Two records created within the same millisecond get consecutive ids.
    """

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = time.time_ns() // 1_000_000
            self._last = max(candidate, self._last + 1)
            return self._last


_default_ids = RecordIdFactory()


@dataclass(frozen=True)
class BillRecord:
    """An accepted expense entry."""

    id: int
    date: datetime
    organization: str
    amount: Decimal
    tip: Decimal = ZERO
    image: bytes | None = None
    raw_text: str | None = None
    confidence: float | None = None
    is_manual: bool = False
    is_ocr_failed: bool = False

    def with_changes(self, **changes: object) -> "BillRecord":
        """Return a copy with some fields replaced, for user corrections."""
        return dataclasses.replace(self, **changes)

    def to_dict(self, include_image: bool = False) -> dict[str, object]:
        """Return a JSON-friendly representation of the record."""
        data: dict[str, object] = {
            "id": self.id,
            "date": self.date.isoformat(),
            "organization": self.organization,
            "amount": float(self.amount),
            "tip": float(self.tip),
            "raw_text": self.raw_text,
            "confidence": self.confidence,
            "is_manual": self.is_manual,
            "is_ocr_failed": self.is_ocr_failed,
        }
        if include_image:
            data["has_image"] = self.image is not None
        return data


def _new_identity(ids: RecordIdFactory | None) -> tuple[int, datetime]:
    return (ids or _default_ids).next_id(), datetime.now(UTC)


def create_scanned_record(
    receipt: ExtractedReceipt,
    image: bytes | None,
    raw_text: str | None = None,
    confidence: float | None = None,
    ids: RecordIdFactory | None = None,
) -> BillRecord:
    """Build a record from a completed scan."""
    record_id, created = _new_identity(ids)
    return BillRecord(
        id=record_id,
        date=created,
        organization=receipt.organization,
        amount=receipt.amount,
        tip=receipt.tip,
        image=image,
        raw_text=raw_text,
        confidence=confidence,
    )


def create_fallback_record(image: bytes, ids: RecordIdFactory | None = None) -> BillRecord:
    """Build the stub record offered when OCR fails after the image was read."""
    record_id, created = _new_identity(ids)
    return BillRecord(
        id=record_id,
        date=created,
        organization=OCR_FAILED_ORGANIZATION,
        amount=ZERO,
        tip=ZERO,
        image=image,
        is_ocr_failed=True,
    )


def _parse_money(raw: str | float | Decimal | None) -> Decimal:
    if raw is None or raw == "":
        return ZERO
    try:
        value = Decimal(str(raw).strip().lstrip("$")).quantize(Decimal("0.01"))
    except InvalidOperation:
        return ZERO
    return value if value.is_finite() and value >= 0 else ZERO


def create_manual_record(
    organization: str,
    amount: str | float | Decimal | None,
    tip: str | float | Decimal | None = None,
    ids: RecordIdFactory | None = None,
) -> BillRecord:
    """Build a record typed in by the user.

    Organization and amount are required; numbers that cannot be parsed
    are stored as zero.

    Raises:
        ValueError: If the organization or amount is missing.
    """
    if not organization or not organization.strip() or amount in (None, ""):
        raise ValueError("Please fill in at least the organization name and amount.")

    record_id, created = _new_identity(ids)
    return BillRecord(
        id=record_id,
        date=created,
        organization=organization.strip(),
        amount=_parse_money(amount),
        tip=_parse_money(tip),
        is_manual=True,
    )


def correct_record(
    record: BillRecord,
    organization: str | None = None,
    amount: str | float | Decimal | None = None,
    tip: str | float | Decimal | None = None,
) -> BillRecord:
    """Apply a user's corrections to a stored record.

    Fields left as ``None`` keep their stored value. A corrected record is
    no longer marked as an OCR failure.

    Raises:
        ValueError: If the corrected organization is blank.
    """
    changes: dict[str, object] = {"is_ocr_failed": False}
    if organization is not None:
        if not organization.strip():
            raise ValueError("Organization name cannot be empty.")
        changes["organization"] = organization.strip()
    if amount is not None:
        changes["amount"] = _parse_money(amount)
    if tip is not None:
        changes["tip"] = _parse_money(tip)
    return record.with_changes(**changes)
