"""Loading, validation and decoding of receipt image sources."""

import io
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from src.utils.logger import get_logger

from .errors import FileReadError, ImageRejectedError

logger = get_logger(__name__)

MIN_IMAGE_BYTES = 1024
MAX_IMAGE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class ImageSource:
    """Raw, validated image bytes awaiting decode."""

    data: bytes
    filename: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def load_image_source(
    source: Path | bytes,
    filename: str | None = None,
    min_bytes: int = MIN_IMAGE_BYTES,
    max_bytes: int = MAX_IMAGE_BYTES,
) -> ImageSource:
    """Read and validate an image before it enters the scan pipeline.

    Args:
        source: Path to an image file, or raw file bytes.
        filename: Display name. Defaults to the path's name.
        min_bytes: Smallest accepted file size.
        max_bytes: Largest accepted file size.

    Returns:
        The validated image source.

    Raises:
        FileReadError: If the file cannot be read.
        ImageRejectedError: If the content is not a supported raster
            image or falls outside the size window.
    """
    if isinstance(source, bytes):
        data = source
        name = filename or "upload"
    else:
        path = Path(source)
        name = filename or path.name
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise FileReadError(f"Error reading file {path}: {exc}") from exc

    if len(data) > max_bytes:
        raise ImageRejectedError(
            f"File size too large ({len(data)} bytes). "
            f"Please select an image smaller than {max_bytes // (1024 * 1024)}MB."
        )
    if len(data) < min_bytes:
        raise ImageRejectedError(
            f"File size too small ({len(data)} bytes). Please select a valid image file."
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageRejectedError(f"{name} is not a supported image file") from exc

    mime_type = Image.MIME.get(image_format or "", "application/octet-stream")
    logger.debug("Accepted %s (%s, %d bytes)", name, mime_type, len(data))
    return ImageSource(data=data, filename=name, mime_type=mime_type)


def decode_image(data: bytes) -> np.ndarray:
    """Decode image bytes into an upright RGB (or grayscale) pixel array.

    Raises:
        FileReadError: If the bytes cannot be decoded to pixels.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            pixels = np.array(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise FileReadError(f"Could not decode image: {exc}") from exc

    if pixels.ndim not in (2, 3) or pixels.size == 0:
        raise FileReadError("Decoded image has no pixel dimensions")
    return pixels
