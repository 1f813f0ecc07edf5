"""Configuration management for the receipt scanning system.

Loads and validates YAML configuration with sensible defaults
for image normalization, OCR, the scan pipeline, and the remote
vision extractor.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CHAR_WHITELIST = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz$.,:-& "
)


class NormalizationConfig(BaseModel):
    """Configuration for the image normalizer."""

    size_threshold: int = 2000
    scale: float = 1.5
    contrast: float = 1.1
    brightness: float = 1.05
    deadline_s: float = 10.0


class OCRConfig(BaseModel):
    """Configuration for the Tesseract recognition engine."""

    tesseract_cmd: str | None = None
    default_lang: str = "eng"
    psm: int = 3
    char_whitelist: str = DEFAULT_CHAR_WHITELIST


class PipelineConfig(BaseModel):
    """Configuration for the scan orchestrator."""

    use_local_ocr: bool = True
    skip_normalization: bool = False
    deadline_s: float = 60.0
    min_file_bytes: int = 1024
    max_file_bytes: int = 10 * 1024 * 1024


class VisionConfig(BaseModel):
    """Configuration for the remote vision extractor."""

    api_key: str | None = None
    api_url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    timeout_s: float = 60.0


class AppConfig(BaseModel):
    """Top-level application configuration."""

    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    The vision API key falls back to the ``OPENAI_API_KEY`` environment
    variable when the file does not set one.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        config = AppConfig(**raw)
    else:
        logger.info("No config file found at %s, using defaults", path)
        config = AppConfig()

    if config.vision.api_key is None and os.environ.get("OPENAI_API_KEY"):
        config.vision.api_key = os.environ["OPENAI_API_KEY"]
    return config
