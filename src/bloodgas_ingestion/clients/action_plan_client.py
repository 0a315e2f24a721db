# ============================================================================
# src/bloodgas_ingestion/clients/action_plan_client.py
# ============================================================================
"""
Action-Plan Client

One request produces the action plan for one issue (or, with no issues,
one comprehensive plan for the whole interpretation).
"""

from typing import Any, Dict, Optional

from ..config import provider_settings
from ..config.provider_config import ProviderSettings
from ..core.cancellation import CancellationToken
from ..core.enums import DocumentKind
from ..core.workflow_state import Issue
from ..utils.exceptions import ProviderHTTPError
from .base import BaseProviderClient
from .response_adapter import ACTION_PLAN_MARKER, parse_action_plan_response


class ActionPlanClient(BaseProviderClient):

    provider_name = "action-plan"

    def __init__(self, settings: Optional[ProviderSettings] = None, **kwargs):
        self.settings = settings or provider_settings
        super().__init__(
            endpoint=self.settings.ACTION_PLAN_ENDPOINT,
            timeout=self.settings.ACTION_PLAN_TIMEOUT,
            **kwargs,
        )

    @staticmethod
    def build_payload(
        issue: Issue,
        document_kind: DocumentKind,
        correlation_id: str,
        case_context: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "issueTitle": issue.title,
            "issueDescription": issue.description,
            "clinicalQuestion": issue.clinical_question,
            "documentKind": document_kind.value,
            "correlationId": correlation_id,
            # Flow endpoints read the prompt from "question"
            "question": (
                f"{ACTION_PLAN_MARKER}\n\nIssue: {issue.title}\n\n"
                f"Description: {issue.description}\n\nQuestion: {issue.clinical_question}"
            ),
        }
        if case_context:
            payload["caseContext"] = case_context
        return payload

    async def generate_plan(
        self,
        issue: Issue,
        document_kind: DocumentKind,
        correlation_id: str,
        case_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Returns:
            Cleaned plan text

        Raises:
            ProviderHTTPError: HTTP failure or empty plan
            PipelineCancelledError: cancelled by the caller
        """
        payload = self.build_payload(issue, document_kind, correlation_id, case_context)
        raw = await self._request(payload, correlation_id=correlation_id, cancel_token=cancel_token)
        plan_text = parse_action_plan_response(raw).plan_text

        if not plan_text.strip():
            raise ProviderHTTPError(f"Empty action plan for '{issue.title}'")
        return plan_text
