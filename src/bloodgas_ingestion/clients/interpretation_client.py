# ============================================================================
# src/bloodgas_ingestion/clients/interpretation_client.py
# ============================================================================
"""
Interpretation Client

Turns extracted report text into clinical interpretation text plus the
list of issues found.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from ..config import provider_settings
from ..config.provider_config import ProviderSettings
from ..core.cancellation import CancellationToken
from ..core.enums import DocumentKind
from ..core.workflow_state import Issue
from ..parsing.issue_parser import parse_issues
from ..utils.exceptions import InterpretationError
from .base import BaseProviderClient
from .response_adapter import parse_interpretation_response


@dataclass
class InterpretationOutput:
    interpretation_text: str
    issues: List[Issue] = field(default_factory=list)
    processing_time_ms: float = 0.0
    request_id: str = ""


class InterpretationClient(BaseProviderClient):

    provider_name = "interpretation"

    def __init__(self, settings: Optional[ProviderSettings] = None, **kwargs):
        self.settings = settings or provider_settings
        super().__init__(
            endpoint=self.settings.INTERPRETATION_ENDPOINT,
            timeout=self.settings.INTERPRETATION_TIMEOUT,
            **kwargs,
        )

    async def interpret(
        self,
        text: str,
        document_kind: DocumentKind = DocumentKind.ARTERIAL,
        case_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> InterpretationOutput:
        """
        Interpret report text.

        Raises:
            InterpretationError: provider answered with no usable text
            ProviderHTTPError / TransientProviderError: HTTP failures
            PipelineCancelledError: cancelled by the caller
        """
        start = time.perf_counter()
        request_id = str(uuid.uuid4())

        payload = {
            "text": text,
            "documentKind": document_kind.value,
            "requestId": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if case_context:
            payload["caseContext"] = case_context

        self.logger.info(f"Requesting {document_kind.label} interpretation [{request_id}]")

        raw = await self._request(payload, correlation_id=request_id, cancel_token=cancel_token)
        response = parse_interpretation_response(raw)
        parsed = parse_issues(response.text)

        if not parsed.text.strip():
            raise InterpretationError("Interpretation service returned an empty response")

        elapsed = (time.perf_counter() - start) * 1000
        self.logger.info(
            f"Interpretation [{request_id}]: {len(parsed.text)} chars, "
            f"{parsed.count} issue(s), {elapsed:.0f}ms"
        )
        return InterpretationOutput(
            interpretation_text=parsed.text,
            issues=parsed.issues,
            processing_time_ms=response.processing_time_ms or elapsed,
            request_id=response.request_id or request_id,
        )
