# ============================================================================
# src/bloodgas_ingestion/clients/vision_client.py
# ============================================================================
"""
Vision Fallback Client

Sends the report image to a vision-capable generateContent endpoint and
returns a raw transcription. Only used when free OCR fails or its text is
rejected by the quality validator.
"""

import base64
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import provider_settings
from ..config.provider_config import ProviderSettings
from ..core.cancellation import CancellationToken
from ..core.enums import DocumentKind
from .base import BaseProviderClient
from .response_adapter import parse_vision_response

VISION_PROMPT = """Extract ALL visible text from this blood gas analyzer report.

INSTRUCTIONS:
- Extract all text exactly as shown; do not summarize or skip anything
- Preserve Georgian text exactly
- Include every numerical value with its unit
- Keep the original line structure, top to bottom, left to right
- No interpretation, only raw text"""


@dataclass
class VisionExtraction:
    text: str
    confidence: float
    finish_reason: Optional[str] = None
    processing_time_ms: float = 0.0
    error_message: Optional[str] = None


class VisionClient(BaseProviderClient):
    """
    Gemini-style vision transcription.

    Config comes from ``provider_settings``; pass a ProviderSettings to
    override.
    """

    provider_name = "vision"

    def __init__(self, settings: Optional[ProviderSettings] = None, **kwargs):
        self.settings = settings or provider_settings
        super().__init__(
            endpoint=self.settings.VISION_ENDPOINT,
            timeout=self.settings.VISION_TIMEOUT,
            **kwargs,
        )
        self.model = self.settings.VISION_MODEL

    def _url(self) -> str:
        url = f"{self._require_endpoint().rstrip('/')}/{self.model}:generateContent"
        if self.settings.VISION_API_KEY:
            url = f"{url}?key={self.settings.VISION_API_KEY}"
        return url

    def build_payload(self, data: bytes, mime_type: str) -> Dict[str, Any]:
        return {
            "contents": [{
                "role": "user",
                "parts": [
                    # Image first, prompt second
                    {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(data).decode("ascii")}},
                    {"text": VISION_PROMPT},
                ],
            }],
            "generationConfig": {
                "temperature": self.settings.VISION_TEMPERATURE,
                "maxOutputTokens": 32768,
                "topP": 0.8,
                "topK": 10,
            },
        }

    async def extract(
        self,
        data: bytes,
        mime_type: str = "image/jpeg",
        document_kind: DocumentKind = DocumentKind.ARTERIAL,
        cancel_token: Optional[CancellationToken] = None,
        correlation_id: Optional[str] = None,
    ) -> VisionExtraction:
        """
        Transcribe a report image.

        Raises:
            TransientProviderError: 429/503/network, after retries
            QuotaExceededError: provider quota used up
            ProviderHTTPError: other HTTP failure
            PipelineCancelledError: cancelled by the caller
        """
        start = time.perf_counter()
        self.logger.info(
            f"Vision extraction for {document_kind.label}: {len(data)} bytes ({mime_type})"
        )

        payload = await self._request(
            self.build_payload(data, mime_type),
            url=self._url(),
            correlation_id=correlation_id,
            cancel_token=cancel_token,
        )
        parsed = parse_vision_response(payload)
        elapsed = (time.perf_counter() - start) * 1000

        if parsed.finish_reason == "MAX_TOKENS":
            self.logger.warning("Vision response truncated (MAX_TOKENS)")

        error_message = None if parsed.text.strip() else "Vision model returned no text"
        self.logger.info(
            f"Vision extraction: {len(parsed.text)} chars, confidence {parsed.confidence:.2f}, "
            f"finish={parsed.finish_reason}, {elapsed:.0f}ms"
        )
        return VisionExtraction(
            text=parsed.text,
            confidence=parsed.confidence if parsed.text.strip() else 0.0,
            finish_reason=parsed.finish_reason,
            processing_time_ms=elapsed,
            error_message=error_message,
        )
