# ============================================================================
# src/bloodgas_ingestion/extractors/quality_validator.py
# ============================================================================
"""
Text Quality Validator

Deterministic rule-based score for free OCR output. Decides whether the
text is good enough to interpret or the paid vision fallback should run.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import quality_settings
from ..config.quality_config import QualitySettings
from ..utils.exceptions import InputValidationError

# One hit per pattern, not per occurrence
PARAMETER_PATTERNS = [
    re.compile(r"p[hH]\s*[:\-=]?\s*\d", re.IGNORECASE),                      # pH
    re.compile(r"p[cC][oO]2?\s*[:\-=]?\s*\d", re.IGNORECASE),                # pCO2
    re.compile(r"p[oO]2?\s*[:\-=]?\s*\d", re.IGNORECASE),                    # pO2
    re.compile(r"[hH][cC][oO]3?\s*[:\-=]?\s*\d", re.IGNORECASE),             # HCO3
    re.compile(r"base\s*excess\s*[:\-=]?\s*[\-+]?\d", re.IGNORECASE),        # BE
    re.compile(r"[sS][oO]2?\s*[:\-=]?\s*\d", re.IGNORECASE),                 # SO2
    re.compile(r"[sS]p[oO]2?\s*[:\-=]?\s*\d", re.IGNORECASE),                # SpO2
    re.compile(r"[oO]2?\s*sat\s*[:\-=]?\s*\d", re.IGNORECASE),               # O2 sat
    re.compile(r"\d+\.\d+\s*(mmHg|kPa|%)", re.IGNORECASE),
    re.compile(r"\d+\s*(mmol/L|mEq/L)", re.IGNORECASE),
]

DEVICE_PATTERNS = [
    re.compile(r"radiometer", re.IGNORECASE),
    re.compile(r"abl\s*\d+", re.IGNORECASE),
    re.compile(r"blood\s*gas", re.IGNORECASE),
    re.compile(r"analyzer", re.IGNORECASE),
    re.compile(r"ბლოგაზ"),     # Georgian "blood gas"
    re.compile(r"ანალიზი"),    # Georgian "analysis"
]

NUMERIC_TOKEN = re.compile(r"\d+\.?\d*")
NOISE_CHAR = re.compile(r"[^a-zA-Z0-9\s\u10A0-\u10FF:\-.,=+%]")

_EDITED_PARAMETER = re.compile(r"pH|pco2|po2|hco3|base excess|so2", re.IGNORECASE)
_GARBLED_RUN = re.compile(r"[^\x00-\x7F\u10A0-\u10FF\s]{5,}")
_VERY_LONG_RUN = re.compile(r"\S{50,}")


@dataclass
class QualityAssessment:
    """
    Outcome of scoring one OCR text.

    Attributes:
        quality_score: 0-1, higher is better
        should_escalate: True when the vision fallback should run
        parameter_matches: Number of parameter patterns present
        numeric_tokens: Number of numeric tokens
        noise_ratio: Share of characters outside the expected set
        has_device_keyword: Analyzer/report keyword present
        issues: Human-readable reasons for penalties
    """
    quality_score: float
    should_escalate: bool
    parameter_matches: int = 0
    numeric_tokens: int = 0
    noise_ratio: float = 0.0
    has_device_keyword: bool = False
    issues: List[str] = field(default_factory=list)

    @property
    def is_valid_medical_text(self) -> bool:
        return self.quality_score >= 0.5 and self.parameter_matches >= 2


@dataclass
class EditedTextCheck:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


class TextQualityValidator:
    """
    Scores free OCR text and decides on escalation.

    Example:
        validator = TextQualityValidator()
        assessment = validator.assess("pH 7.35 pCO2 45 mmHg ...")
        if assessment.should_escalate:
            ...  # run vision fallback
    """

    def __init__(self, settings: Optional[QualitySettings] = None):
        self.settings = settings or quality_settings
        self.logger = logging.getLogger(__name__)

    def assess(self, text: str) -> QualityAssessment:
        s = self.settings
        text = text or ""
        stripped = text.strip()
        issues: List[str] = []
        score = 1.0

        if len(stripped) < s.MIN_TEXT_LENGTH:
            issues.append("Text too short for analysis")
            score -= s.SHORT_TEXT_PENALTY

        parameter_matches = sum(1 for pattern in PARAMETER_PATTERNS if pattern.search(text))
        if parameter_matches == 0:
            issues.append("No blood gas parameters detected")
            score -= s.NO_PARAMETER_PENALTY
        elif parameter_matches < s.MIN_PARAMETER_MATCHES:
            issues.append("Few blood gas parameters detected")
            score -= s.FEW_PARAMETER_PENALTY

        numeric_tokens = len(NUMERIC_TOKEN.findall(text))
        if numeric_tokens < s.MIN_NUMERIC_TOKENS:
            issues.append("Insufficient numeric values")
            score -= s.FEW_NUMERIC_PENALTY

        has_device_keyword = any(pattern.search(text) for pattern in DEVICE_PATTERNS)
        if has_device_keyword:
            score += s.DEVICE_KEYWORD_BONUS

        noise_ratio = len(NOISE_CHAR.findall(text)) / len(text) if text else 0.0
        if noise_ratio > s.NOISE_RATIO_PENALTY_THRESHOLD:
            issues.append("High ratio of special characters (possible OCR errors)")
            score -= s.NOISE_PENALTY

        if re.search(r"\S{%d,}" % s.LONG_TOKEN_LENGTH, text):
            issues.append("Detected very long words (possible OCR artifacts)")
            score -= s.LONG_TOKEN_PENALTY

        score = max(0.0, min(1.0, score))

        should_escalate = (
            score < s.ESCALATE_BELOW_SCORE
            or (score < s.WEAK_SCORE and parameter_matches < s.WEAK_SCORE_MIN_PARAMETERS)
            or len(stripped) < s.ESCALATE_BELOW_LENGTH
            or noise_ratio > s.ESCALATE_NOISE_RATIO
        )

        self.logger.debug(
            f"Quality {score:.2f}, {parameter_matches} params, {numeric_tokens} numbers, "
            f"noise {noise_ratio:.2f}, escalate={should_escalate}"
        )

        return QualityAssessment(
            quality_score=score,
            should_escalate=should_escalate,
            parameter_matches=parameter_matches,
            numeric_tokens=numeric_tokens,
            noise_ratio=noise_ratio,
            has_device_keyword=has_device_keyword,
            issues=issues,
        )

    def validate_edited_text(self, text: str) -> EditedTextCheck:
        """Lightweight checks on text the user corrected by hand."""
        issues: List[str] = []
        suggestions: List[str] = []
        text = text or ""

        if len(text.strip()) < self.settings.MIN_EDITED_TEXT_LENGTH:
            issues.append("Text is too short for meaningful analysis")
            suggestions.append("Ensure the image contains clear blood gas values")

        if not _EDITED_PARAMETER.search(text):
            issues.append("No recognizable blood gas parameters found")
            suggestions.append("Verify the text contains blood gas results (pH, pCO2, pO2, HCO3, etc.)")

        if not NUMERIC_TOKEN.search(text):
            issues.append("No numeric values detected")
            suggestions.append("Ensure blood gas values are clearly visible and not obscured")

        if _GARBLED_RUN.search(text):
            issues.append("Text may contain unrecognizable characters")
            suggestions.append("Try taking a clearer image with better lighting")

        if _VERY_LONG_RUN.search(text):
            issues.append("Text contains unusually long continuous strings")
            suggestions.append("Review and edit the text to fix any OCR errors")

        return EditedTextCheck(is_valid=not issues, issues=issues, suggestions=suggestions)

    @staticmethod
    def validate_input_text(text: Optional[str]) -> str:
        """
        Reject empty text before any network call.

        Raises:
            InputValidationError: text is None or whitespace
        """
        if text is None or not text.strip():
            raise InputValidationError("Text cannot be empty")
        return text
