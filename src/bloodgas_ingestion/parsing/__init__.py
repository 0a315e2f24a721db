# ============================================================================
# src/bloodgas_ingestion/parsing/__init__.py
# ============================================================================

from .issue_parser import IssueParseResult, parse_issues
