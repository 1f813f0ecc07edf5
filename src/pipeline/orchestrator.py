"""Receipt scan orchestration.

Composes image decoding, normalization, recognition and field extraction
into one deadline-bounded scan. Every state change is published to
listeners as a ``PipelineEvent``. Failures end in a ``ScanFailed`` outcome
carrying a stub record the caller may accept for manual completion.

State flow: idle, reading_file, normalizing, recognizing, extracting, done.
Any state may end in failed_offer_manual_fallback; reading_file, normalizing
and recognizing pass through timed_out first when the deadline elapses.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from src.extraction.receipt_extractor import ExtractedReceipt, ReceiptFieldExtractor
from src.extraction.vision_client import VisionExtractor
from src.ocr.cancellation import CancellationToken
from src.ocr.tesseract_engine import (
    Phase,
    ProgressEvent,
    RecognitionEngine,
    TesseractEngine,
)
from src.preprocessing.normalizer import ImageNormalizer
from src.records.models import (
    BillRecord,
    RecordIdFactory,
    create_fallback_record,
    create_scanned_record,
)
from src.utils.config import AppConfig
from src.utils.logger import get_logger

from .errors import OcrTimeout, PipelineBusyError, ScanError
from .image_source import ImageSource, decode_image

logger = get_logger(__name__)


class PipelineState(StrEnum):
    """Phases of a single scan."""

    IDLE = "idle"
    READING_FILE = "reading_file"
    NORMALIZING = "normalizing"
    RECOGNIZING = "recognizing"
    EXTRACTING = "extracting"
    DONE = "done"
    TIMED_OUT = "timed_out"
    FAILED = "failed_offer_manual_fallback"


@dataclass(frozen=True)
class PipelineEvent:
    """State change or progress update published to listeners."""

    state: PipelineState
    progress: int = 0
    initializing: bool = False
    message: str | None = None


@dataclass(frozen=True)
class ScanCompleted:
    """Successful scan: extracted fields plus the record ready to store."""

    receipt: ExtractedReceipt
    raw_text: str | None
    confidence: float | None
    record: BillRecord

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ScanFailed:
    """Failed scan, optionally offering a stub record for manual entry."""

    error: ScanError
    fallback_record: BillRecord | None = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def reason(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return str(self.error)


ScanOutcome = ScanCompleted | ScanFailed
PipelineListener = Callable[[PipelineEvent], None]


@dataclass
class _ScanContext:
    """Per-invocation bookkeeping, private to one ``scan`` call."""

    invocation: int
    filename: str
    image_read: bool = False


class ScanPipeline:
    """Deadline-bounded receipt scan pipeline.

    Only one scan may be in flight at a time. When the global deadline
    elapses, the scan is abandoned: its cancellation token is signalled,
    the still-running task is tracked in ``orphaned_tasks`` and whatever
    it eventually produces is discarded.

    Args:
        config: Application configuration.
        engine: Local recognition engine. Defaults to Tesseract.
        normalizer: Image normalizer.
        extractor: Receipt field extractor.
        vision: Remote extractor used when local OCR is disabled.
        ids: Record id source.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        engine: RecognitionEngine | None = None,
        normalizer: ImageNormalizer | None = None,
        extractor: ReceiptFieldExtractor | None = None,
        vision: VisionExtractor | None = None,
        ids: RecordIdFactory | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.engine = engine or TesseractEngine(
            tesseract_cmd=self.config.ocr.tesseract_cmd,
            default_lang=self.config.ocr.default_lang,
            psm=self.config.ocr.psm,
            char_whitelist=self.config.ocr.char_whitelist,
        )
        self.normalizer = normalizer or ImageNormalizer(self.config.normalization)
        self.extractor = extractor or ReceiptFieldExtractor()
        self.vision = vision or VisionExtractor(self.config.vision)
        self.ids = ids or RecordIdFactory()

        self.state = PipelineState.IDLE
        self.progress = 0
        self.initializing = False
        self.orphaned_tasks: set[asyncio.Task] = set()
        self._listeners: list[PipelineListener] = []
        self._busy = False
        self._invocations = 0

    @property
    def is_processing(self) -> bool:
        return self._busy

    def subscribe(self, listener: PipelineListener) -> Callable[[], None]:
        """Register a listener for pipeline events.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def scan(self, source: ImageSource) -> ScanOutcome:
        """Run one receipt scan to completion or failure.

        Args:
            source: Validated image source.

        Returns:
            ``ScanCompleted`` on success, otherwise ``ScanFailed``.

        Raises:
            PipelineBusyError: If another scan is still in flight.
        """
        if self._busy:
            raise PipelineBusyError("A scan is already in progress")

        self._busy = True
        self._invocations += 1
        context = _ScanContext(invocation=self._invocations, filename=source.filename)
        token = CancellationToken()
        deadline = self.config.pipeline.deadline_s
        logger.info("Scan #%d started for %s", context.invocation, source.filename)

        task = asyncio.create_task(self._run(source, token, context))
        try:
            done, _ = await asyncio.wait({task}, timeout=deadline)
            if task in done:
                return task.result()

            token.cancel("deadline exceeded")
            self._orphan(task, context)
            self._publish(PipelineState.TIMED_OUT)
            raise OcrTimeout(
                f"Image processing timed out after {deadline:g}s. "
                "Please try a smaller image or a different format."
            )
        except ScanError as exc:
            return self._fail(exc, source, context)
        except asyncio.CancelledError:
            token.cancel("caller cancelled")
            task.cancel()
            raise
        finally:
            self._busy = False

    async def _run(
        self, source: ImageSource, token: CancellationToken, context: _ScanContext
    ) -> ScanCompleted:
        pipeline_config = self.config.pipeline

        self._enter(PipelineState.READING_FILE, token)
        image = await asyncio.to_thread(decode_image, source.data)
        context.image_read = True

        if not pipeline_config.use_local_ocr:
            self._enter(PipelineState.EXTRACTING, token)
            receipt = await self.vision.extract(source.data, source.mime_type)
            token.raise_if_cancelled()
            return self._complete(source, receipt, None, None)

        if pipeline_config.skip_normalization:
            logger.debug("Skipping image normalization as configured")
        else:
            self._enter(PipelineState.NORMALIZING, token)
            image = await self.normalizer.normalize(image)

        self._enter(PipelineState.RECOGNIZING, token)
        result = await self.engine.recognize(
            image,
            self.config.ocr.default_lang,
            psm=self.config.ocr.psm,
            char_whitelist=self.config.ocr.char_whitelist,
            on_progress=lambda event: self._on_progress(event, token),
            cancel_token=token,
        )
        token.raise_if_cancelled()

        self._enter(PipelineState.EXTRACTING, token)
        receipt = self.extractor.extract(result.text)
        return self._complete(source, receipt, result.text, result.confidence)

    def _complete(
        self,
        source: ImageSource,
        receipt: ExtractedReceipt,
        raw_text: str | None,
        confidence: float | None,
    ) -> ScanCompleted:
        record = create_scanned_record(
            receipt, source.data, raw_text=raw_text, confidence=confidence, ids=self.ids
        )
        self._publish(PipelineState.DONE, progress=100)
        logger.info(
            "Scan of %s done: %s %.2f (tip %.2f)",
            source.filename,
            receipt.organization,
            receipt.amount,
            receipt.tip,
        )
        return ScanCompleted(
            receipt=receipt, raw_text=raw_text, confidence=confidence, record=record
        )

    def _fail(self, exc: ScanError, source: ImageSource, context: _ScanContext) -> ScanFailed:
        fallback = create_fallback_record(source.data, ids=self.ids) if context.image_read else None
        logger.error("Scan #%d of %s failed: %s", context.invocation, source.filename, exc)
        self._publish(PipelineState.FAILED, message=str(exc))
        return ScanFailed(error=exc, fallback_record=fallback)

    def _orphan(self, task: asyncio.Task, context: _ScanContext) -> None:
        self.orphaned_tasks.add(task)

        def discard(finished: asyncio.Task) -> None:
            self.orphaned_tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is None:
                logger.warning(
                    "Discarding late result of abandoned scan #%d (%s)",
                    context.invocation,
                    context.filename,
                )
            else:
                logger.debug("Abandoned scan #%d ended with %r", context.invocation, exc)

        task.add_done_callback(discard)

    def _on_progress(self, event: ProgressEvent, token: CancellationToken) -> None:
        if token.cancelled:
            return
        if event.phase is Phase.INITIALIZING:
            self._publish(PipelineState.RECOGNIZING, initializing=True)
        else:
            self._publish(
                PipelineState.RECOGNIZING, progress=max(self.progress, event.percent or 0)
            )

    def _enter(self, state: PipelineState, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        if state is PipelineState.READING_FILE:
            self.progress = 0
        self._publish(state, progress=self.progress)

    def _publish(
        self,
        state: PipelineState,
        progress: int | None = None,
        initializing: bool = False,
        message: str | None = None,
    ) -> None:
        self.state = state
        self.progress = 0 if state is PipelineState.FAILED else (progress or 0)
        self.initializing = initializing
        event = PipelineEvent(
            state=state,
            progress=self.progress,
            initializing=initializing,
            message=message,
        )
        for listener in list(self._listeners):
            listener(event)
