"""Failure taxonomy for the receipt scan pipeline.

Fatal errors end a scan and lead to a manual-entry fallback offer.
``NormalizationFailure`` is absorbed where it happens and never reaches
the caller.
"""


class ScanError(Exception):
    """Base class for scan pipeline failures."""

    code = "scan_error"


class FileReadError(ScanError):
    """The source image could not be read or decoded."""

    code = "file_read_error"


class ImageRejectedError(FileReadError):
    """The source is not an image or falls outside the accepted size window."""

    code = "image_rejected"


class EngineUnavailable(ScanError):
    """The recognition capability is not installed, loaded or reachable."""

    code = "engine_unavailable"


class RecognitionFailed(ScanError):
    """The recognition engine was reachable but errored on this image."""

    code = "recognition_failed"


class OcrTimeout(ScanError):
    """The global pipeline deadline elapsed before a result was produced."""

    code = "ocr_timeout"


class RemoteExtractionError(ScanError):
    """The remote vision extractor failed or returned an unusable reply."""

    code = "remote_extraction_error"


class PipelineBusyError(ScanError):
    """A scan was requested while another one is still in flight."""

    code = "pipeline_busy"


class NormalizationFailure(Exception):
    """Image normalization failed; the original image is used instead."""
