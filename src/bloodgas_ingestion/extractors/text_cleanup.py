# ============================================================================
# src/bloodgas_ingestion/extractors/text_cleanup.py
# ============================================================================
"""
OCR post-processing for blood-gas reports.

Repairs the usual zero-for-O confusions (pC02, HC03, ...), normalizes
units, and groups numeric lines under section headers.
"""

import re
from typing import Dict, List

# (pattern, replacement) applied in order
_OCR_FIXES = [
    (re.compile(r"\bpl-l\b", re.IGNORECASE), "pH"),
    (re.compile(r"\bp-?h\s*[:=]?\s*(\d)", re.IGNORECASE), r"pH: \1"),
    (re.compile(r"\bpC02\b", re.IGNORECASE), "pCO2"),
    (re.compile(r"\bp02\b", re.IGNORECASE), "pO2"),
    (re.compile(r"\bHC03\b", re.IGNORECASE), "HCO3"),
    (re.compile(r"\bSp02\b", re.IGNORECASE), "SpO2"),
    (re.compile(r"\bS02\b", re.IGNORECASE), "SO2"),
]

_UNIT_FIXES = [
    (re.compile(r"(\d+\.?\d*)\s*mm\s*Hg", re.IGNORECASE), r"\1 mmHg"),
    (re.compile(r"(\d+\.?\d*)\s*k\s*Pa", re.IGNORECASE), r"\1 kPa"),
    (re.compile(r"(\d+\.?\d*)\s*(?:mmol\s*/\s*L|mEq\s*/\s*L)", re.IGNORECASE), r"\1 mmol/L"),
    (re.compile(r"(\d+\.?\d*)\s*%"), r"\1%"),
    (re.compile(r"(\d+\.?\d*)\s*g\s*/\s*dL", re.IGNORECASE), r"\1 g/dL"),
]

_SECTION_HEADERS = [
    (re.compile(r"blood\s*gas\s*values", re.IGNORECASE), "blood_gas"),
    (re.compile(r"oximetry\s*values|oxygen", re.IGNORECASE), "oxygenation"),
    (re.compile(r"electrolyte\s*values", re.IGNORECASE), "electrolytes"),
]

_SECTION_TITLES = [
    ("blood_gas", "Blood Gas Parameters:"),
    ("oxygenation", "Oxygenation Status:"),
    ("electrolytes", "Electrolyte Values:"),
    ("other", "Additional Parameters:"),
]


def clean_blood_gas_text(text: str) -> str:
    """Fix OCR confusions, normalize units and structure the report."""
    cleaned = text
    for pattern, replacement in _OCR_FIXES + _UNIT_FIXES:
        cleaned = pattern.sub(replacement, cleaned)

    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r"\n\s*\n", "\n", cleaned).strip()

    return group_into_sections(cleaned)


def group_into_sections(text: str) -> str:
    """
    Group lines that carry numbers under section headings.

    Returns the input unchanged when no numeric line is found.
    """
    sections: Dict[str, List[str]] = {key: [] for key, _ in _SECTION_TITLES}
    current = "other"

    for raw_line in text.split("\n"):
        line = re.sub(r"\s+", " ", raw_line).strip()
        if len(line) < 2:
            continue

        header = next((key for pattern, key in _SECTION_HEADERS if pattern.search(line)), None)
        if header:
            current = header
            continue

        if re.search(r"\d", line):
            sections[current].append(line)

    if not any(sections.values()):
        return text

    output = ["Blood Gas Analysis Report", ""]
    for key, title in _SECTION_TITLES:
        if sections[key]:
            output.append(title)
            output.extend(f"- {line}" for line in sections[key])
            output.append("")

    return "\n".join(output).strip()


def format_text_for_analysis(text: str) -> str:
    """Normalize whitespace of user-edited text before it is interpreted."""
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
