# ============================================================================
# src/bloodgas_ingestion/parsing/issue_parser.py
# ============================================================================
"""
Issue Parser

Interpretation responses end with a fenced JSON block listing the
clinical issues found:

    ```json
    [{"issue": "...", "description": "...", "question": "..."}]
    ```

``parse_issues`` pulls that list out and returns the text without it.
It never raises: no block gives an empty list and the text unchanged;
an unusable block gives an empty list and is still stripped. Parsing
the returned text again is a no-op.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from json_repair import repair_json

from ..core.workflow_state import Issue

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```json\s*(?P<body>.*?)\s*```", re.IGNORECASE | re.DOTALL)
_ANY_FENCE = re.compile(r"```\s*\n?(?P<body>\[.*?\])\s*```", re.DOTALL)

_TITLE_KEYS = ("title", "issue", "name")
_DESCRIPTION_KEYS = ("description", "details", "summary")
_QUESTION_KEYS = ("clinicalQuestion", "clinical_question", "question")


@dataclass
class IssueParseResult:
    issues: List[Issue] = field(default_factory=list)
    count: int = 0
    text: str = ""


def _first_string(item: dict, keys) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _load(body: str) -> Optional[Any]:
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        pass

    try:
        repaired = repair_json(body, return_objects=True)
    except (ValueError, TypeError, RecursionError) as e:
        logger.debug(f"json_repair could not recover issue block: {e}")
        return None

    # repair_json returns "" for input it cannot make sense of
    return repaired if isinstance(repaired, (list, dict)) else None


def _to_issues(data: Any) -> List[Issue]:
    if isinstance(data, dict):
        # {"issues": [...]} wrapper, or a single issue object
        data = data.get("issues", [data])
    if not isinstance(data, list):
        return []

    issues = []
    for item in data:
        if not isinstance(item, dict):
            continue
        title = _first_string(item, _TITLE_KEYS)
        if not title:
            continue
        issues.append(Issue(
            title=title,
            description=_first_string(item, _DESCRIPTION_KEYS),
            clinical_question=_first_string(item, _QUESTION_KEYS),
        ))
    return issues


def _strip_block(text: str, match: "re.Match") -> str:
    stripped = text[:match.start()] + text[match.end():]
    return re.sub(r"\n{3,}", "\n\n", stripped).strip()


def parse_issues(text: Optional[str]) -> IssueParseResult:
    """
    Extract the fenced issue list from interpretation text.

    Args:
        text: Interpretation text, possibly ending in a fenced JSON block

    Returns:
        IssueParseResult with the issues and the text minus the block
    """
    if not text:
        return IssueParseResult(text=text or "")

    match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    if match is None:
        return IssueParseResult(text=text)

    data = _load(match.group("body"))
    if data is None:
        logger.warning("Issue block present but not parseable; dropping it")
        return IssueParseResult(text=_strip_block(text, match))

    issues = _to_issues(data)
    logger.debug(f"Parsed {len(issues)} issue(s) from interpretation")
    return IssueParseResult(issues=issues, count=len(issues), text=_strip_block(text, match))
