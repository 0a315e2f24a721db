# ============================================================================
# src/bloodgas_ingestion/clients/response_adapter.py
# ============================================================================
"""
Typed adapters for provider responses.

Flow-style endpoints answer in several shapes (a bare string, ``text``,
``output``, ``data``/``data.text``, ``message``, ``response``, ``result``).
Each provider gets one function that turns the raw payload into a typed
result; text scrubbing of leaked metadata and temp-file paths lives here
too.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

TEXT_FIELDS = ("text", "output", "data", "message", "response", "result")

ACTION_PLAN_MARKER = "<<BG_ACTION_PLAN>>"

_METADATA_PATTERNS = [
    re.compile(r'^\{"text":"","question":"[^"]*","chatId":"[^"]*"[^}]*\}'),
    re.compile(r'\{"nodeId":"[^"]*","nodeLabel":"[^"]*"[^}]*\}'),
    re.compile(r'\{"agentFlowExecutedData":\[.*?\]\}', re.DOTALL),
    re.compile(r'<<".*?">>'),
    re.compile(r'\[chatflow\]', re.IGNORECASE),
    re.compile(r'\{"executionId":"[^"]*"\}'),
]

_PATH_PATTERNS = [
    re.compile(r"/var/folders/\S+"),
    re.compile(r"/tmp/\S+"),
    re.compile(r"/Users/[^/\s]+/\S*TemporaryItems\S*"),
    re.compile(r"/[A-Za-z0-9_\-]+/TemporaryItems/\S+"),
    re.compile(r"\S*[Tt]emporary\S*/\S+"),
]
_IMAGE_PATH_LINE = re.compile(r"^.*(?:/|\\)\S+\.png\b.*$", re.MULTILINE | re.IGNORECASE)

# Finish reason -> confidence for vision transcriptions
FINISH_REASON_CONFIDENCE = {
    "STOP": 0.95,
    "MAX_TOKENS": 0.8,
    "SAFETY": 0.7,
    "RECITATION": 0.7,
}
DEFAULT_VISION_CONFIDENCE = 0.9


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def extract_text(payload: Any, preferred_fields: Iterable[str] = ()) -> str:
    """
    Best-effort text from a multi-shape payload.

    Falls back to the JSON serialization of the whole payload so callers
    always get something to show.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    if isinstance(payload, dict):
        for key in tuple(preferred_fields) + TEXT_FIELDS:
            value = payload.get(key)
            text = _string(value)
            if text is not None:
                return text
            if key == "data" and isinstance(value, dict):
                nested = _string(value.get("text")) or _string(value.get("data"))
                if nested is not None:
                    return nested

        question = _string(payload.get("question"))
        if question is not None and ACTION_PLAN_MARKER in question:
            return question.split(ACTION_PLAN_MARKER, 1)[1].strip()

    return json.dumps(payload, ensure_ascii=False)


def scrub_metadata(text: str) -> str:
    """Remove flow-engine metadata and escaped newlines/quotes that leak into answers."""
    for pattern in _METADATA_PATTERNS:
        text = pattern.sub("", text)
    return (
        text.replace("\\n\\n", "\n\n")
        .replace("\\n", "\n")
        .replace('\\"', '"')
        .strip()
    )


def scrub_file_paths(text: str) -> str:
    """Remove temporary file paths and lines that only reference image files."""
    text = _IMAGE_PATH_LINE.sub("", text)
    for pattern in _PATH_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def clean_text(text: str) -> str:
    return scrub_file_paths(scrub_metadata(text))


@dataclass
class VisionResponse:
    text: str
    confidence: float
    finish_reason: Optional[str] = None


@dataclass
class InterpretationResponse:
    text: str
    processing_time_ms: Optional[float] = None
    request_id: Optional[str] = None


@dataclass
class ActionPlanResponse:
    plan_text: str


def parse_vision_response(payload: Any) -> VisionResponse:
    """Gemini-style ``candidates[0].content.parts[*].text``."""
    if not isinstance(payload, dict):
        text = payload if isinstance(payload, str) else ""
        return VisionResponse(text=text, confidence=DEFAULT_VISION_CONFIDENCE if text else 0.0)

    candidates = payload.get("candidates") or []
    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    finish_reason = candidate.get("finishReason")

    return VisionResponse(
        text=text,
        confidence=FINISH_REASON_CONFIDENCE.get(finish_reason, DEFAULT_VISION_CONFIDENCE),
        finish_reason=finish_reason,
    )


def parse_interpretation_response(payload: Any) -> InterpretationResponse:
    """
    Interpretation payloads may nest the answer as ``data.data`` or
    ``data``; metadata such as processing time rides alongside.
    """
    processing_time_ms = None
    request_id = None
    body = payload

    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        envelope = payload["data"]
        processing_time_ms = envelope.get("processingTimeMs")
        request_id = envelope.get("requestId")
        nested = envelope.get("data")
        body = nested if nested is not None else envelope

    return InterpretationResponse(
        text=clean_text(extract_text(body)),
        processing_time_ms=processing_time_ms,
        request_id=request_id,
    )


def parse_action_plan_response(payload: Any) -> ActionPlanResponse:
    return ActionPlanResponse(
        plan_text=clean_text(extract_text(payload, preferred_fields=("planText",)))
    )
