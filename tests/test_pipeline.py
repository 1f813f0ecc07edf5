"""Tests for the deadline-bounded scan pipeline."""

import asyncio
from decimal import Decimal

import pytest

from src.extraction.receipt_extractor import ExtractedReceipt
from src.pipeline.errors import (
    EngineUnavailable,
    PipelineBusyError,
    RecognitionFailed,
    RemoteExtractionError,
)
from src.pipeline.image_source import ImageSource
from src.pipeline.orchestrator import (
    PipelineEvent,
    PipelineState,
    ScanCompleted,
    ScanFailed,
    ScanPipeline,
)
from src.records.models import OCR_FAILED_ORGANIZATION, RecordIdFactory
from src.utils.config import AppConfig, PipelineConfig


class FakeVision:
    """Remote extractor double."""

    def __init__(self, receipt: ExtractedReceipt | None = None) -> None:
        self.receipt = receipt or ExtractedReceipt("Cloud Cafe", Decimal("12.40"), Decimal("2.00"))
        self.calls: list[str] = []

    async def extract(self, image: bytes, mime_type: str) -> ExtractedReceipt:
        self.calls.append(mime_type)
        return self.receipt


class BrokenVision:
    """Remote extractor double whose service replies with a malformed body."""

    async def extract(self, image: bytes, mime_type: str) -> ExtractedReceipt:
        raise RemoteExtractionError("Vision API reply has no message")


def _pipeline(engine, **pipeline_options) -> tuple[ScanPipeline, list[PipelineEvent]]:
    config = AppConfig(pipeline=PipelineConfig(**pipeline_options))
    pipeline = ScanPipeline(config, engine=engine, vision=FakeVision(), ids=RecordIdFactory())
    events: list[PipelineEvent] = []
    pipeline.subscribe(events.append)
    return pipeline, events


def _states(events: list[PipelineEvent]) -> list[PipelineState]:
    states: list[PipelineState] = []
    for event in events:
        if not states or states[-1] is not event.state:
            states.append(event.state)
    return states


class TestSuccessfulScan:
    """Tests for the happy path."""

    def test_scan_extracts_fields(self, make_engine, image_source: ImageSource) -> None:
        pipeline, _ = _pipeline(make_engine())
        outcome = asyncio.run(pipeline.scan(image_source))

        assert isinstance(outcome, ScanCompleted)
        assert outcome.ok
        assert outcome.receipt.organization == "SRI KRISHNA"
        assert outcome.receipt.amount == Decimal("70.00")
        assert outcome.receipt.tip == Decimal("5.00")
        assert outcome.confidence == 88.5
        assert outcome.raw_text.startswith("SRI KRISHNA CAFE")

    def test_record_built_from_scan(self, make_engine, image_source: ImageSource) -> None:
        pipeline, _ = _pipeline(make_engine())
        record = asyncio.run(pipeline.scan(image_source)).record

        assert record.organization == "SRI KRISHNA"
        assert record.amount == Decimal("70.00")
        assert record.image == image_source.data
        assert record.confidence == 88.5
        assert not record.is_manual
        assert not record.is_ocr_failed

    def test_state_sequence(self, make_engine, image_source: ImageSource) -> None:
        pipeline, events = _pipeline(make_engine())
        asyncio.run(pipeline.scan(image_source))

        assert _states(events) == [
            PipelineState.READING_FILE,
            PipelineState.NORMALIZING,
            PipelineState.RECOGNIZING,
            PipelineState.EXTRACTING,
            PipelineState.DONE,
        ]
        assert events[-1].progress == 100
        assert pipeline.state is PipelineState.DONE
        assert not pipeline.is_processing

    def test_progress_monotonic_while_recognizing(
        self, make_engine, image_source: ImageSource
    ) -> None:
        pipeline, events = _pipeline(make_engine())
        asyncio.run(pipeline.scan(image_source))

        recognizing = [e for e in events if e.state is PipelineState.RECOGNIZING]
        progress = [e.progress for e in recognizing]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert any(e.initializing for e in recognizing)
        assert not recognizing[-1].initializing

    def test_skip_normalization(self, make_engine, image_source: ImageSource) -> None:
        pipeline, events = _pipeline(make_engine(), skip_normalization=True)
        asyncio.run(pipeline.scan(image_source))
        assert PipelineState.NORMALIZING not in _states(events)

    def test_remote_mode_bypasses_local_ocr(
        self, make_engine, image_source: ImageSource
    ) -> None:
        engine = make_engine()
        pipeline, events = _pipeline(engine, use_local_ocr=False)
        outcome = asyncio.run(pipeline.scan(image_source))

        assert outcome.ok
        assert outcome.receipt.organization == "Cloud Cafe"
        assert outcome.raw_text is None
        assert outcome.confidence is None
        assert engine.calls == 0
        assert pipeline.vision.calls == ["image/png"]
        assert _states(events) == [
            PipelineState.READING_FILE,
            PipelineState.EXTRACTING,
            PipelineState.DONE,
        ]

    def test_unsubscribe(self, make_engine, image_source: ImageSource) -> None:
        pipeline = ScanPipeline(engine=make_engine(), ids=RecordIdFactory())
        events: list[PipelineEvent] = []
        unsubscribe = pipeline.subscribe(events.append)
        unsubscribe()
        asyncio.run(pipeline.scan(image_source))
        assert events == []

    def test_sequential_scans_get_distinct_records(
        self, make_engine, image_source: ImageSource
    ) -> None:
        pipeline, _ = _pipeline(make_engine())

        async def scan_twice():
            first = await pipeline.scan(image_source)
            second = await pipeline.scan(image_source)
            return first, second

        first, second = asyncio.run(scan_twice())
        assert second.record.id > first.record.id


class TestFailedScan:
    """Tests for fatal failures and the manual-entry fallback."""

    def test_engine_unavailable_offers_fallback(
        self, make_engine, image_source: ImageSource
    ) -> None:
        engine = make_engine(error=EngineUnavailable("Tesseract OCR engine is not available"))
        pipeline, events = _pipeline(engine)
        outcome = asyncio.run(pipeline.scan(image_source))

        assert isinstance(outcome, ScanFailed)
        assert not outcome.ok
        assert outcome.reason == "engine_unavailable"
        assert "not available" in outcome.message
        fallback = outcome.fallback_record
        assert fallback.organization == OCR_FAILED_ORGANIZATION
        assert fallback.amount == 0
        assert fallback.tip == 0
        assert fallback.is_ocr_failed
        assert fallback.image == image_source.data
        assert events[-1].state is PipelineState.FAILED
        assert events[-1].progress == 0
        assert not pipeline.is_processing

    def test_recognition_failure(self, make_engine, image_source: ImageSource) -> None:
        pipeline, _ = _pipeline(make_engine(error=RecognitionFailed("bad pixels")))
        outcome = asyncio.run(pipeline.scan(image_source))
        assert outcome.reason == "recognition_failed"
        assert outcome.fallback_record is not None

    def test_remote_extraction_error_offers_fallback(
        self, make_engine, image_source: ImageSource
    ) -> None:
        pipeline, _ = _pipeline(make_engine(), use_local_ocr=False)
        pipeline.vision = BrokenVision()
        outcome = asyncio.run(pipeline.scan(image_source))

        assert isinstance(outcome, ScanFailed)
        assert outcome.reason == "remote_extraction_error"
        assert outcome.fallback_record is not None
        assert not pipeline.is_processing

    def test_undecodable_image_has_no_fallback(self, make_engine) -> None:
        source = ImageSource(data=b"\x00" * 2048, filename="broken.png", mime_type="image/png")
        engine = make_engine()
        pipeline, events = _pipeline(engine)
        outcome = asyncio.run(pipeline.scan(source))

        assert outcome.reason == "file_read_error"
        assert outcome.fallback_record is None
        assert engine.calls == 0
        assert _states(events) == [PipelineState.READING_FILE, PipelineState.FAILED]


class TestDeadline:
    """Tests for the global deadline and abandoned work."""

    def test_timeout_fails_and_discards_late_result(
        self, make_engine, image_source: ImageSource
    ) -> None:
        engine = make_engine(delay=0.5)
        pipeline, events = _pipeline(engine, deadline_s=0.1)

        async def run():
            outcome = await pipeline.scan(image_source)
            orphans_after_timeout = len(pipeline.orphaned_tasks)
            await asyncio.sleep(0.8)
            return outcome, orphans_after_timeout

        outcome, orphans_after_timeout = asyncio.run(run())

        assert outcome.reason == "ocr_timeout"
        assert "timed out" in outcome.message
        assert outcome.fallback_record is not None
        assert orphans_after_timeout == 1
        assert engine.finished
        assert pipeline.orphaned_tasks == set()
        assert pipeline.state is PipelineState.FAILED

        states = _states(events)
        assert states[-2:] == [PipelineState.TIMED_OUT, PipelineState.FAILED]
        assert PipelineState.DONE not in states
        assert PipelineState.EXTRACTING not in states

    def test_new_scan_allowed_after_timeout(
        self, make_engine, image_source: ImageSource
    ) -> None:
        pipeline, _ = _pipeline(make_engine(delay=0.6), deadline_s=0.2)

        async def run():
            first = await pipeline.scan(image_source)
            pipeline.engine = make_engine()
            second = await pipeline.scan(image_source)
            await asyncio.sleep(0.7)
            return first, second

        first, second = asyncio.run(run())
        assert first.reason == "ocr_timeout"
        assert second.ok
        assert second.record.id > first.fallback_record.id


class TestReentrancy:
    """Tests for the single-flight guard."""

    def test_concurrent_scan_rejected(self, make_engine, image_source: ImageSource) -> None:
        pipeline, _ = _pipeline(make_engine(delay=0.1))

        async def run():
            first = asyncio.create_task(pipeline.scan(image_source))
            await asyncio.sleep(0)
            assert pipeline.is_processing
            with pytest.raises(PipelineBusyError):
                await pipeline.scan(image_source)
            return await first

        outcome = asyncio.run(run())
        assert outcome.ok
        assert not pipeline.is_processing
