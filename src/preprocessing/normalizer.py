"""Receipt image normalization ahead of OCR.

Upscales small and medium photographs and applies a mild contrast and
brightness boost so thin receipt print survives recognition. Large images
bypass the step. Normalization is best-effort: any failure or an
exceeded deadline yields the original image.
"""

import asyncio

import cv2
import numpy as np

from src.pipeline.errors import NormalizationFailure
from src.utils.config import NormalizationConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)


def calculate_contrast(image: np.ndarray) -> float:
    """Calculate image contrast as the standard deviation of pixel intensities.

    Args:
        image: Input image (RGB or grayscale).

    Returns:
        Contrast score (higher means more contrast).
    """
    gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY) if image.ndim == 3 else image
    return float(gray.std())


def enhance(image: np.ndarray, contrast: float, brightness: float) -> np.ndarray:
    """Apply a contrast stretch around mid-gray followed by a brightness gain.

    Args:
        image: 8-bit input image.
        contrast: Contrast factor; 1.0 leaves the image unchanged.
        brightness: Brightness factor; 1.0 leaves the image unchanged.

    Returns:
        Enhanced 8-bit image.
    """
    # (x - 128) * c + 128, then * b, folded into one affine transform
    alpha = contrast * brightness
    beta = 128.0 * (1.0 - contrast) * brightness
    return cv2.convertScaleAbs(image, alpha=alpha, beta=beta)


class ImageNormalizer:
    """Rescale and enhance receipt images for better OCR legibility.

    Args:
        config: Normalization settings (size bypass, scale, enhancement
            factors and the default deadline).
    """

    def __init__(self, config: NormalizationConfig | None = None) -> None:
        self.config = config or NormalizationConfig()

    def is_oversized(self, image: np.ndarray) -> bool:
        """Return True if either dimension exceeds the bypass threshold."""
        height, width = image.shape[:2]
        limit = self.config.size_threshold
        return width > limit or height > limit

    def normalize_sync(self, image: np.ndarray) -> np.ndarray:
        """Rescale and enhance an image, blocking the calling thread.

        Raises:
            NormalizationFailure: If the image cannot be processed.
        """
        if image is None or image.size == 0 or image.ndim not in (2, 3):
            raise NormalizationFailure("Image has no pixel dimensions")

        height, width = image.shape[:2]
        scale = self.config.scale
        new_size = (round(width * scale), round(height * scale))
        try:
            resized = cv2.resize(image, new_size, interpolation=cv2.INTER_CUBIC)
            result = enhance(resized, self.config.contrast, self.config.brightness)
        except (cv2.error, TypeError, ValueError) as exc:
            raise NormalizationFailure(str(exc)) from exc

        logger.debug(
            "Normalized %dx%d -> %dx%d, contrast %.1f->%.1f",
            width,
            height,
            new_size[0],
            new_size[1],
            calculate_contrast(image),
            calculate_contrast(result),
        )
        return result

    async def normalize(
        self, image: np.ndarray, deadline: float | None = None
    ) -> np.ndarray:
        """Normalize an image, falling back to the original on any failure.

        Args:
            image: Decoded input image.
            deadline: Seconds allowed for the step. Defaults to the
                configured deadline.

        Returns:
            The normalized copy, or ``image`` itself when it is oversized,
            processing fails, or the deadline elapses.
        """
        if self.is_oversized(image):
            logger.info(
                "Image %dx%d exceeds %dpx, skipping normalization",
                image.shape[1],
                image.shape[0],
                self.config.size_threshold,
            )
            return image

        timeout = self.config.deadline_s if deadline is None else deadline
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.normalize_sync, image), timeout=timeout
            )
        except TimeoutError:
            logger.warning("Normalization exceeded %.1fs, using original image", timeout)
        except NormalizationFailure as exc:
            logger.warning("Normalization failed, using original image: %s", exc)
        return image
