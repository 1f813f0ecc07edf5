"""Tesseract recognition engine adapter with progress and cancellation.

Wraps pytesseract behind an async ``recognize`` call that reports an
initialization phase followed by monotonically increasing recognition
progress, and resolves to a single text + confidence result.
"""

import asyncio
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import numpy as np
import pytesseract
from PIL import Image

from src.pipeline.errors import EngineUnavailable, RecognitionFailed
from src.utils.config import DEFAULT_CHAR_WHITELIST
from src.utils.logger import get_logger

from .cancellation import CancellationToken

logger = get_logger(__name__)


class Phase(StrEnum):
    """Stages reported while a recognition call is running."""

    INITIALIZING = "initializing"
    RECOGNIZING = "recognizing"


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification for one recognition call."""

    phase: Phase
    percent: int | None = None


@dataclass(frozen=True)
class RecognitionResult:
    """Text recognized from an image with the engine's 0-100 confidence."""

    text: str
    confidence: float


ProgressCallback = Callable[[ProgressEvent], None]


class RecognitionEngine(Protocol):
    """Contract the scan pipeline requires from a local OCR capability."""

    async def recognize(
        self,
        image: np.ndarray,
        lang: str | None = None,
        *,
        psm: int | None = None,
        char_whitelist: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RecognitionResult: ...


class TesseractEngine:
    """Async wrapper around Tesseract OCR for receipt images.

    The blocking pytesseract calls run in worker threads. The engine
    enforces no deadline of its own; callers bound it and signal
    ``cancel_token`` when they stop waiting.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: Default OCR language code.
        psm: Default Tesseract page segmentation mode.
        char_whitelist: Characters Tesseract may emit. Empty disables
            the restriction.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "eng",
        psm: int = 3,
        char_whitelist: str = DEFAULT_CHAR_WHITELIST,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.psm = psm
        self.char_whitelist = char_whitelist

    def check_available(self) -> str:
        """Return the installed Tesseract version.

        Raises:
            EngineUnavailable: If the executable cannot be found or run.
        """
        try:
            return str(pytesseract.get_tesseract_version())
        except (pytesseract.TesseractNotFoundError, OSError) as exc:
            raise EngineUnavailable(
                "Tesseract OCR engine is not available. Install or reload it, "
                "or switch to the remote vision mode."
            ) from exc

    def build_config(self, psm: int, char_whitelist: str) -> str:
        """Build the Tesseract command-line configuration string."""
        config = f"--psm {psm}"
        if char_whitelist:
            config += " -c " + shlex.quote(f"tessedit_char_whitelist={char_whitelist}")
        return config

    async def recognize(
        self,
        image: np.ndarray,
        lang: str | None = None,
        *,
        psm: int | None = None,
        char_whitelist: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RecognitionResult:
        """Recognize text in an image.

        Args:
            image: Input image as a numpy array.
            lang: OCR language code. Defaults to the engine default.
            psm: Page segmentation mode. Defaults to the engine default.
            char_whitelist: Character whitelist override.
            on_progress: Receives progress events, in order, before the
                call resolves.
            cancel_token: Checked between steps; once cancelled no further
                progress is reported and ``RecognitionCancelled`` is raised.

        Returns:
            Recognized text and mean word confidence on a 0-100 scale.

        Raises:
            EngineUnavailable: If Tesseract cannot be reached.
            RecognitionFailed: If Tesseract errors on the image.
            RecognitionCancelled: If the caller cancelled the call.
        """
        lang = lang or self.default_lang
        whitelist = self.char_whitelist if char_whitelist is None else char_whitelist
        config = self.build_config(psm if psm is not None else self.psm, whitelist)
        token = cancel_token or CancellationToken()

        def report(phase: Phase, percent: int | None = None) -> None:
            token.raise_if_cancelled()
            if on_progress is not None:
                on_progress(ProgressEvent(phase, percent))

        report(Phase.INITIALIZING)
        version = await asyncio.to_thread(self.check_available)
        logger.debug("Using Tesseract %s with config %r", version, config)

        report(Phase.RECOGNIZING, 0)
        try:
            pil_image = Image.fromarray(image)
        except (TypeError, ValueError) as exc:
            raise RecognitionFailed(f"Image cannot be passed to Tesseract: {exc}") from exc
        try:
            text = await asyncio.to_thread(
                pytesseract.image_to_string, pil_image, lang=lang, config=config
            )
            report(Phase.RECOGNIZING, 50)
            data = await asyncio.to_thread(
                pytesseract.image_to_data,
                pil_image,
                lang=lang,
                config=config,
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractError as exc:
            raise RecognitionFailed(f"Tesseract failed to recognize the image: {exc}") from exc

        confidence = mean_word_confidence(data)
        report(Phase.RECOGNIZING, 100)

        logger.info(
            "OCR recognized %d characters with confidence %.1f",
            len(text),
            confidence,
        )
        return RecognitionResult(text=text, confidence=confidence)


def mean_word_confidence(data: dict[str, list]) -> float:
    """Average Tesseract word confidence (0-100), ignoring empty boxes."""
    total = 0.0
    count = 0
    for word, conf in zip(data.get("text", []), data.get("conf", []), strict=False):
        score = float(conf)
        if score > 0 and str(word).strip():
            total += score
            count += 1
    return round(total / count, 2) if count else 0.0
