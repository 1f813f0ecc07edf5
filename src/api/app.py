"""FastAPI application for the receipt scanning API.

Provides REST endpoints for scanning receipt images, extracting fields
from raw OCR text, manual bill entry and correction, and health checks.
"""

import shutil
import time
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from src.extraction.receipt_extractor import extract_receipt_fields
from src.pipeline.errors import FileReadError, PipelineBusyError
from src.pipeline.image_source import load_image_source
from src.pipeline.orchestrator import ScanCompleted, ScanPipeline
from src.records.models import correct_record, create_manual_record
from src.records.store import InMemoryRecordStore
from src.utils.config import load_config
from src.utils.logger import get_logger

from .schemas import (
    BillResponse,
    BillUpdateRequest,
    ExtractTextRequest,
    HealthResponse,
    ManualBillRequest,
    ReceiptResponse,
    ScanErrorResponse,
    ScanResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Receipt Scanner API",
    description="Extract merchant, total and tip from receipt photos",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def _get_pipeline() -> ScanPipeline:
    """Return the process-wide scan pipeline."""
    return ScanPipeline(load_config())


@lru_cache(maxsize=1)
def _get_store() -> InMemoryRecordStore:
    """Return the process-wide record store."""
    return InMemoryRecordStore()


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        tesseract_available=shutil.which("tesseract") is not None,
        local_ocr_enabled=_get_pipeline().config.pipeline.use_local_ocr,
    )


@app.post("/scan", response_model=ScanResponse)
async def scan_receipt(
    file: Annotated[UploadFile, File(...)],
    accept_fallback: Annotated[bool, Query()] = False,
) -> ScanResponse:
    """Scan an uploaded receipt image and store the resulting bill.

    Args:
        file: Uploaded receipt image.
        accept_fallback: Store the manual-entry stub if OCR fails.

    Returns:
        The extracted fields and stored record, or the failure with its
        fallback offer.
    """
    start_time = time.time()
    pipeline = _get_pipeline()
    store = _get_store()

    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="Please select an image file (JPG, PNG, GIF, etc.)",
        )

    content = await file.read()
    limits = pipeline.config.pipeline
    try:
        source = load_image_source(
            content,
            file.filename or "upload",
            min_bytes=limits.min_file_bytes,
            max_bytes=limits.max_file_bytes,
        )
        outcome = await pipeline.scan(source)
    except PipelineBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except FileReadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    processing_time = (time.time() - start_time) * 1000

    if isinstance(outcome, ScanCompleted):
        store.add(outcome.record)
        return ScanResponse(
            success=True,
            state=pipeline.state.value,
            receipt=ReceiptResponse.from_receipt(outcome.receipt),
            record=BillResponse.from_record(outcome.record),
            processing_time_ms=processing_time,
        )

    fallback = outcome.fallback_record
    accepted = accept_fallback and fallback is not None
    if accepted:
        store.add(fallback)
    return ScanResponse(
        success=False,
        state=pipeline.state.value,
        error=ScanErrorResponse(code=outcome.reason, message=outcome.message),
        fallback_record=BillResponse.from_record(fallback) if fallback else None,
        fallback_accepted=accepted,
        processing_time_ms=processing_time,
    )


@app.post("/extract-text", response_model=ReceiptResponse)
async def extract_text(request: ExtractTextRequest) -> ReceiptResponse:
    """Run field extraction on already-recognized receipt text."""
    return ReceiptResponse.from_receipt(extract_receipt_fields(request.text))


@app.post("/bills", response_model=BillResponse, status_code=201)
async def add_manual_bill(request: ManualBillRequest) -> BillResponse:
    """Store a manually entered bill."""
    try:
        record = create_manual_record(request.organization, request.amount, request.tip)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    _get_store().add(record)
    return BillResponse.from_record(record)


@app.get("/bills", response_model=list[BillResponse])
async def list_bills() -> list[BillResponse]:
    """List stored bills, newest first."""
    return [BillResponse.from_record(r) for r in _get_store().list_records()]


@app.patch("/bills/{bill_id}", response_model=BillResponse)
async def update_bill(bill_id: int, request: BillUpdateRequest) -> BillResponse:
    """Correct the fields of a stored bill, e.g. an accepted OCR fallback."""
    store = _get_store()
    record = store.get(bill_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Bill {bill_id} not found")
    try:
        updated = correct_record(record, request.organization, request.amount, request.tip)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    store.replace(updated)
    return BillResponse.from_record(updated)


@app.delete("/bills/{bill_id}", status_code=204)
async def delete_bill(bill_id: int) -> None:
    """Delete a stored bill."""
    if not _get_store().delete(bill_id):
        raise HTTPException(status_code=404, detail=f"Bill {bill_id} not found")
