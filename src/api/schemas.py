"""Pydantic request/response schemas for the FastAPI endpoints."""

from pydantic import BaseModel, Field

from src.extraction.receipt_extractor import ExtractedReceipt
from src.records.models import BillRecord


class DiagnosticResponse(BaseModel):
    """Which matcher tier produced an extracted field."""

    field_name: str
    tier: str
    pattern: str
    source_line: str
    value: str


class ReceiptResponse(BaseModel):
    """Extracted receipt fields."""

    organization: str
    amount: float
    tip: float
    diagnostics: list[DiagnosticResponse] = Field(default_factory=list)

    @classmethod
    def from_receipt(cls, receipt: ExtractedReceipt) -> "ReceiptResponse":
        return cls(
            organization=receipt.organization,
            amount=float(receipt.amount),
            tip=float(receipt.tip),
            diagnostics=[
                DiagnosticResponse(**vars(diagnostic)) for diagnostic in receipt.diagnostics
            ],
        )


class BillResponse(BaseModel):
    """A stored or offered bill record, without image bytes."""

    id: int
    date: str
    organization: str
    amount: float
    tip: float
    has_image: bool
    raw_text: str | None = None
    confidence: float | None = None
    is_manual: bool = False
    is_ocr_failed: bool = False

    @classmethod
    def from_record(cls, record: BillRecord) -> "BillResponse":
        return cls(**record.to_dict(include_image=True))


class ScanErrorResponse(BaseModel):
    """Why a scan failed."""

    code: str
    message: str


class ScanResponse(BaseModel):
    """Outcome of a receipt scan."""

    success: bool
    state: str
    receipt: ReceiptResponse | None = None
    record: BillResponse | None = None
    error: ScanErrorResponse | None = None
    fallback_record: BillResponse | None = None
    fallback_accepted: bool = False
    processing_time_ms: float


class ExtractTextRequest(BaseModel):
    """Raw OCR text to run through field extraction."""

    text: str


class ManualBillRequest(BaseModel):
    """User-typed expense."""

    organization: str
    amount: str
    tip: str | None = None


class BillUpdateRequest(BaseModel):
    """Corrections to a stored bill. Omitted fields are left unchanged."""

    organization: str | None = None
    amount: str | None = None
    tip: str | None = None


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
    local_ocr_enabled: bool
