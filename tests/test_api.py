"""Tests for the FastAPI REST endpoints."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.api.app import app
from src.pipeline.errors import EngineUnavailable, PipelineBusyError
from src.pipeline.orchestrator import ScanPipeline
from src.records.models import RecordIdFactory
from src.records.store import InMemoryRecordStore
from src.utils.config import AppConfig


@pytest.fixture
def store() -> InMemoryRecordStore:
    """A fresh record store per test."""
    return InMemoryRecordStore()


@pytest.fixture
def client(store: InMemoryRecordStore) -> Iterator[TestClient]:
    """Create a FastAPI test client bound to a fresh store."""
    with patch("src.api.app._get_store", return_value=store):
        yield TestClient(app)


def _use_pipeline(pipeline):
    return patch("src.api.app._get_pipeline", return_value=pipeline)


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_ok(self, client: TestClient, make_engine) -> None:
        with _use_pipeline(ScanPipeline(engine=make_engine())):
            response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert isinstance(data["tesseract_available"], bool)
        assert data["local_ocr_enabled"] is True


class TestScanEndpoint:
    """Tests for the /scan endpoint."""

    def test_scan_success_stores_record(
        self, client: TestClient, store: InMemoryRecordStore, make_engine, receipt_png: bytes
    ) -> None:
        pipeline = ScanPipeline(engine=make_engine(), ids=RecordIdFactory())
        with _use_pipeline(pipeline):
            response = client.post(
                "/scan", files={"file": ("receipt.png", receipt_png, "image/png")}
            )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["state"] == "done"
        assert data["receipt"]["organization"] == "SRI KRISHNA"
        assert data["receipt"]["amount"] == 70.0
        assert data["receipt"]["tip"] == 5.0
        assert data["record"]["has_image"] is True
        assert "processing_time_ms" in data
        assert len(store) == 1

    def test_scan_response_includes_diagnostics(
        self, client: TestClient, make_engine, receipt_png: bytes
    ) -> None:
        with _use_pipeline(ScanPipeline(engine=make_engine())):
            response = client.post(
                "/scan", files={"file": ("receipt.png", receipt_png, "image/png")}
            )
        tiers = {d["field_name"]: d["tier"] for d in response.json()["receipt"]["diagnostics"]}
        assert tiers["amount"] == "grand_total"
        assert tiers["organization"] == "header"

    def test_scan_failure_offers_fallback(
        self, client: TestClient, store: InMemoryRecordStore, make_engine, receipt_png: bytes
    ) -> None:
        engine = make_engine(error=EngineUnavailable("Tesseract OCR engine is not available"))
        with _use_pipeline(ScanPipeline(engine=engine)):
            response = client.post(
                "/scan", files={"file": ("receipt.png", receipt_png, "image/png")}
            )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["state"] == "failed_offer_manual_fallback"
        assert data["error"]["code"] == "engine_unavailable"
        assert data["fallback_record"]["organization"] == "Unknown (OCR Failed)"
        assert data["fallback_record"]["is_ocr_failed"] is True
        assert data["fallback_accepted"] is False
        assert len(store) == 0

    def test_accepted_fallback_is_stored(
        self, client: TestClient, store: InMemoryRecordStore, make_engine, receipt_png: bytes
    ) -> None:
        engine = make_engine(error=EngineUnavailable("Tesseract OCR engine is not available"))
        with _use_pipeline(ScanPipeline(engine=engine)):
            response = client.post(
                "/scan?accept_fallback=true",
                files={"file": ("receipt.png", receipt_png, "image/png")},
            )
        assert response.json()["fallback_accepted"] is True
        assert store.list_records()[0].is_ocr_failed

    def test_non_image_content_type(self, client: TestClient) -> None:
        response = client.post(
            "/scan", files={"file": ("test.txt", b"plain text", "text/plain")}
        )
        assert response.status_code == 400
        assert "image file" in response.json()["detail"]

    def test_too_small_file_rejected(self, client: TestClient, make_engine) -> None:
        with _use_pipeline(ScanPipeline(engine=make_engine())):
            response = client.post(
                "/scan", files={"file": ("tiny.png", b"\x89PNG", "image/png")}
            )
        assert response.status_code == 400
        assert "too small" in response.json()["detail"]

    def test_busy_pipeline(self, client: TestClient, receipt_png: bytes) -> None:
        pipeline = MagicMock()
        pipeline.config = AppConfig()
        pipeline.scan = AsyncMock(side_effect=PipelineBusyError("A scan is already in progress"))
        with _use_pipeline(pipeline):
            response = client.post(
                "/scan", files={"file": ("receipt.png", receipt_png, "image/png")}
            )
        assert response.status_code == 409


class TestExtractTextEndpoint:
    """Tests for the /extract-text endpoint."""

    def test_extract_text(self, client: TestClient) -> None:
        response = client.post("/extract-text", json={"text": "JOE'S DINER\nTotal $42.50"})
        assert response.status_code == 200
        data = response.json()
        assert data["organization"] == "JOE'S DINER"
        assert data["amount"] == 42.5
        assert data["tip"] == 0.0

    def test_extract_empty_text(self, client: TestClient) -> None:
        data = client.post("/extract-text", json={"text": ""}).json()
        assert data["organization"] == "Unknown Business"
        assert data["amount"] == 0.0
        assert data["diagnostics"] == []


class TestBillsEndpoints:
    """Tests for manual entry, correction and bill listing."""

    def test_add_manual_bill(self, client: TestClient) -> None:
        response = client.post(
            "/bills", json={"organization": "Corner Deli", "amount": "12.50", "tip": "2"}
        )
        assert response.status_code == 201
        data = response.json()
        assert data["is_manual"] is True
        assert data["amount"] == 12.5
        assert data["has_image"] is False

    def test_manual_bill_requires_fields(self, client: TestClient) -> None:
        response = client.post("/bills", json={"organization": "", "amount": "5"})
        assert response.status_code == 422

    def test_list_and_delete(self, client: TestClient) -> None:
        first = client.post("/bills", json={"organization": "A", "amount": "1"}).json()
        client.post("/bills", json={"organization": "B", "amount": "2"})

        listed = client.get("/bills").json()
        assert [b["organization"] for b in listed] == ["B", "A"]

        assert client.delete(f"/bills/{first['id']}").status_code == 204
        assert client.delete(f"/bills/{first['id']}").status_code == 404
        assert len(client.get("/bills").json()) == 1

    def test_correct_accepted_fallback(
        self, client: TestClient, store: InMemoryRecordStore, make_engine, receipt_png: bytes
    ) -> None:
        engine = make_engine(error=EngineUnavailable("Tesseract OCR engine is not available"))
        with _use_pipeline(ScanPipeline(engine=engine)):
            scanned = client.post(
                "/scan?accept_fallback=true",
                files={"file": ("receipt.png", receipt_png, "image/png")},
            ).json()
        bill_id = scanned["fallback_record"]["id"]

        response = client.patch(
            f"/bills/{bill_id}",
            json={"organization": "Corner Deli", "amount": "18.75", "tip": "3"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == bill_id
        assert data["organization"] == "Corner Deli"
        assert data["amount"] == 18.75
        assert data["tip"] == 3.0
        assert data["is_ocr_failed"] is False
        assert data["has_image"] is True
        assert store.get(bill_id).organization == "Corner Deli"
        assert len(store) == 1

    def test_partial_correction(self, client: TestClient) -> None:
        created = client.post("/bills", json={"organization": "Deli", "amount": "5"}).json()
        data = client.patch(f"/bills/{created['id']}", json={"tip": "1.50"}).json()
        assert data["organization"] == "Deli"
        assert data["amount"] == 5.0
        assert data["tip"] == 1.5

    def test_correct_blank_organization(self, client: TestClient) -> None:
        created = client.post("/bills", json={"organization": "Deli", "amount": "5"}).json()
        response = client.patch(f"/bills/{created['id']}", json={"organization": " "})
        assert response.status_code == 422

    def test_correct_unknown_bill(self, client: TestClient) -> None:
        response = client.patch("/bills/12345", json={"organization": "X"})
        assert response.status_code == 404
