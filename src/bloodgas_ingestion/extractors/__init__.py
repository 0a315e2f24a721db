# ============================================================================
# src/bloodgas_ingestion/extractors/__init__.py
# ============================================================================
"""
Free (local) text extraction and quality gating.
"""

from .text_extractor import TextExtractor, ExtractionResult
from .quality_validator import (
    TextQualityValidator,
    QualityAssessment,
    EditedTextCheck,
)
from .text_cleanup import clean_blood_gas_text, format_text_for_analysis
