"""Remote vision-model receipt extraction.

Drop-in alternative to local OCR + cascade extraction: the image is sent
to an OpenAI-compatible chat-completions endpoint that replies with the
receipt fields as JSON.
"""

import asyncio
import base64
import json
import re

import requests

from src.pipeline.errors import EngineUnavailable, RemoteExtractionError
from src.utils.config import VisionConfig
from src.utils.logger import get_logger

from .receipt_extractor import ExtractedReceipt

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You extract fields from receipts. Respond ONLY with compact JSON: "
    '{"organization":"string","amount":number,"tip":number}'
)
USER_PROMPT = (
    "Analyze this bill/receipt image and extract the fields. Respond ONLY with JSON."
)

_CODE_FENCE = re.compile(r"```(?:json)?\n?")


def parse_model_reply(content: str) -> ExtractedReceipt:
    """Parse the model's JSON reply, tolerating Markdown code fences.

    Raises:
        RemoteExtractionError: If the reply is not a JSON object.
    """
    cleaned = _CODE_FENCE.sub("", content).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise RemoteExtractionError(f"Vision model returned invalid JSON: {cleaned[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise RemoteExtractionError("Vision model reply is not a JSON object")
    return ExtractedReceipt.from_values(
        payload.get("organization"),
        payload.get("amount") or 0,
        payload.get("tip") or 0,
    )


class VisionExtractor:
    """Client for a hosted vision model that reads receipts directly.

    Args:
        config: Endpoint, model and credential settings.
        session: Optional HTTP session, mainly for connection reuse.
    """

    def __init__(self, config: VisionConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def build_messages(self, image: bytes, mime_type: str) -> list[dict]:
        encoded = base64.b64encode(image).decode("ascii")
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": USER_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                    },
                ],
            },
        ]

    def extract_sync(self, image: bytes, mime_type: str) -> ExtractedReceipt:
        """Send the image to the vision model and parse its fields.

        Raises:
            EngineUnavailable: If no API key is configured.
            RemoteExtractionError: On transport, API or parsing errors.
        """
        if not self.config.api_key:
            raise EngineUnavailable(
                "No API key configured for the remote vision extractor. "
                "Set OPENAI_API_KEY or switch to local OCR."
            )

        payload = {
            "model": self.config.model,
            "messages": self.build_messages(image, mime_type),
            "temperature": self.config.temperature,
        }
        headers = {"Authorization": f"Bearer {self.config.api_key}"}

        try:
            response = self.session.post(
                self.config.api_url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout_s,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise RemoteExtractionError(f"Vision API request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise RemoteExtractionError("Vision API returned an unexpected response body")

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RemoteExtractionError(message or "Vision API request failed")

        return parse_model_reply(_reply_content(data))

    async def extract(self, image: bytes, mime_type: str) -> ExtractedReceipt:
        return await asyncio.to_thread(self.extract_sync, image, mime_type)


def _reply_content(data: dict) -> str:
    """Return ``choices[0].message.content`` from a chat-completions body.

    Raises:
        RemoteExtractionError: If any level of the reply has the wrong shape.
    """
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise RemoteExtractionError("Vision API reply has no choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise RemoteExtractionError("Vision API reply has no message")
    content = message.get("content")
    if not isinstance(content, str):
        raise RemoteExtractionError("Vision API reply has no text content")
    logger.debug("Vision model replied: %r", content)
    return content
