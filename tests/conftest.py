"""Shared test fixtures for the receipt scanner test suite."""

import asyncio
import io
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from src.ocr.tesseract_engine import Phase, ProgressEvent, RecognitionResult
from src.pipeline.image_source import ImageSource

SAMPLE_RECEIPT_TEXT = "SRI KRISHNA CAFE\nItem A 10.00\nTip: 5.00\nGrand Total: 70\n"


class FakeEngine:
    """Recognition engine double that ignores cancellation like a real OCR call."""

    def __init__(
        self,
        text: str = SAMPLE_RECEIPT_TEXT,
        confidence: float = 88.5,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = 0
        self.finished = False

    async def recognize(
        self,
        image: np.ndarray,
        lang: str | None = None,
        *,
        psm: int | None = None,
        char_whitelist: str | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
        cancel_token: object = None,
    ) -> RecognitionResult:
        self.calls += 1
        notify = on_progress or (lambda event: None)
        notify(ProgressEvent(Phase.INITIALIZING))
        if self.error is not None:
            raise self.error
        notify(ProgressEvent(Phase.RECOGNIZING, 0))
        await asyncio.sleep(self.delay)
        notify(ProgressEvent(Phase.RECOGNIZING, 60))
        notify(ProgressEvent(Phase.RECOGNIZING, 100))
        self.finished = True
        return RecognitionResult(text=self.text, confidence=self.confidence)


def make_png_bytes(height: int = 64, width: int = 64) -> bytes:
    """Encode a noisy RGB image as PNG (noise keeps it above the 1KB minimum)."""
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def make_engine() -> type[FakeEngine]:
    """Return the fake recognition engine class."""
    return FakeEngine


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic RGB receipt-like image."""
    image = np.full((200, 300, 3), 230, dtype=np.uint8)
    image[50:60, 40:260] = 20
    return image


@pytest.fixture
def receipt_png() -> bytes:
    """PNG bytes of a small synthetic image."""
    return make_png_bytes()


@pytest.fixture
def image_source(receipt_png: bytes) -> ImageSource:
    """A validated image source wrapping ``receipt_png``."""
    return ImageSource(data=receipt_png, filename="receipt.png", mime_type="image/png")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"
