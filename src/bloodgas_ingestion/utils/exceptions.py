# ============================================================================
# src/bloodgas_ingestion/utils/exceptions.py
# ============================================================================
"""
Custom exceptions for the blood-gas ingestion pipeline.

Every error carries a stable ``code`` so the pipeline boundary can hand
callers a ``{code, message}`` pair instead of a raw provider body.
"""

import asyncio
from typing import Any, Dict, Optional


class BloodGasIngestionError(Exception):
    """Base exception for all pipeline errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(BloodGasIngestionError):
    """Invalid or missing configuration (e.g. no endpoint set)."""
    code = "CONFIGURATION_ERROR"


class InputValidationError(BloodGasIngestionError):
    """Input rejected before any network call."""
    code = "VALIDATION_ERROR"


class UnsupportedDocumentError(BloodGasIngestionError):
    """Container type the extractor cannot read."""
    code = "UNSUPPORTED_DOCUMENT"


class ExtractionFailedError(BloodGasIngestionError):
    """Both free OCR and vision extraction failed."""
    code = "EXTRACTION_FAILED"


class ProviderHTTPError(BloodGasIngestionError):
    """Non-retryable HTTP failure from a provider."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, status: Optional[int] = None, body: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.status = status
        self.body = body


class TransientProviderError(ProviderHTTPError):
    """429, 503 or a network failure. Retried with backoff."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, message: str, status: Optional[int] = None, body: str = "", **kwargs):
        super().__init__(message, status=status, body=body, **kwargs)
        if status == 429 and "code" not in kwargs:
            self.code = "RATE_LIMITED"


class QuotaExceededError(ProviderHTTPError):
    """Provider reports the account quota is used up."""
    code = "QUOTA_EXCEEDED"


class InterpretationError(BloodGasIngestionError):
    """Interpretation call failed or returned nothing usable."""
    code = "INTERPRETATION_FAILED"


class PipelineCancelledError(BloodGasIngestionError):
    """The caller cancelled the running operation."""

    code = "CANCELLED"

    def __init__(self, message: str = "Operation cancelled by user", **kwargs):
        super().__init__(message, **kwargs)


class NavigationError(BloodGasIngestionError):
    """Illegal workflow step transition."""
    code = "INVALID_TRANSITION"


class SnapshotError(BloodGasIngestionError):
    """Snapshot could not be read or written."""
    code = "SNAPSHOT_ERROR"


_USER_MESSAGES = {
    "PROVIDER_UNAVAILABLE": "The analysis service is temporarily unavailable. Please try again in a few moments.",
    "RATE_LIMITED": "Too many requests. Please wait a moment before trying again.",
    "QUOTA_EXCEEDED": "The analysis quota has been exceeded. Please try again later.",
    "EXTRACTION_FAILED": "Could not read the report. Please retake the photo with better lighting and focus.",
    "CANCELLED": "The operation was cancelled.",
}


def normalize_error(exc: BaseException) -> Dict[str, Any]:
    """
    Map any exception to a user-facing ``{code, message}`` pair.

    Provider bodies are never passed through; only actionable failures
    get a rewritten message.
    """
    if isinstance(exc, BloodGasIngestionError):
        code = exc.code
        message = _USER_MESSAGES.get(code, exc.message or str(exc))
        return {"code": code, "message": message}

    if isinstance(exc, asyncio.CancelledError):
        return {"code": "CANCELLED", "message": _USER_MESSAGES["CANCELLED"]}

    if isinstance(exc, asyncio.TimeoutError):
        return {"code": "PROVIDER_UNAVAILABLE", "message": _USER_MESSAGES["PROVIDER_UNAVAILABLE"]}

    text = str(exc)
    lowered = text.lower()
    if "503" in text or "unavailable" in lowered:
        return {"code": "PROVIDER_UNAVAILABLE", "message": _USER_MESSAGES["PROVIDER_UNAVAILABLE"]}
    if "429" in text or "rate limit" in lowered:
        return {"code": "RATE_LIMITED", "message": _USER_MESSAGES["RATE_LIMITED"]}
    if "quota" in lowered:
        return {"code": "QUOTA_EXCEEDED", "message": _USER_MESSAGES["QUOTA_EXCEEDED"]}

    return {"code": BloodGasIngestionError.code, "message": text or exc.__class__.__name__}
