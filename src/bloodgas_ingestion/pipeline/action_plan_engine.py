# ============================================================================
# src/bloodgas_ingestion/pipeline/action_plan_engine.py
# ============================================================================
"""
Action-Plan Fan-Out Engine

One concurrent request per issue; each outcome is captured on its own so
a failing request never affects its siblings. With no issues, a single
comprehensive plan is requested for the whole interpretation.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, List, Optional

from ..config import provider_settings
from ..core.cancellation import CancellationToken
from ..core.enums import ActionPlanStatus, DocumentKind
from ..core.workflow_state import PLAN_SEPARATOR, ActionPlanOutcome, ActionPlanResult, Issue
from ..utils.exceptions import PipelineCancelledError, normalize_error

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[int, ActionPlanOutcome], None]

COMPREHENSIVE_TITLE = "Comprehensive Action Plan"
COMPREHENSIVE_QUESTION = (
    "What is the complete, prioritized management plan for the findings in this "
    "blood gas interpretation?"
)


def comprehensive_issue(interpretation_text: str) -> Issue:
    return Issue(
        title=COMPREHENSIVE_TITLE,
        description=interpretation_text,
        clinical_question=COMPREHENSIVE_QUESTION,
    )


def combine_plan_text(outcomes: List[ActionPlanOutcome]) -> str:
    """Successful plans as numbered sections separated by rules."""
    successful = [o for o in outcomes if o.status == ActionPlanStatus.SUCCESS]
    return PLAN_SEPARATOR.join(
        f"## Action Plan {n}: {o.issue.title}\n\n{o.plan_text}"
        for n, o in enumerate(successful, start=1)
    )


class ActionPlanFanOutEngine:
    """
    Concurrent per-issue plan generation.

    Example:
        engine = ActionPlanFanOutEngine(ActionPlanClient())
        result = await engine.generate(issues, DocumentKind.ARTERIAL, interpretation)
        print(result.successful_plans, result.failed_plans)
    """

    def __init__(self, client, max_concurrent: Optional[int] = None):
        self.client = client
        self.max_concurrent = (
            provider_settings.MAX_CONCURRENT_PLANS if max_concurrent is None else max_concurrent
        )
        self.logger = logging.getLogger(__name__)

    def prepare_batch(self, issues: List[Issue], interpretation_text: str) -> ActionPlanResult:
        """
        Pending outcomes for one batch, before any request is sent.

        With no issues, the batch holds a single comprehensive plan request.
        """
        batch_id = uuid.uuid4().hex[:12]
        if not issues:
            self.logger.info(f"[{batch_id}] No issues identified; requesting comprehensive plan")
            issues = [comprehensive_issue(interpretation_text)]

        return ActionPlanResult(
            batch_id=batch_id,
            outcomes=[
                ActionPlanOutcome(issue=issue, correlation_id=f"{batch_id}-issue-{i}")
                for i, issue in enumerate(issues)
            ],
        )

    async def generate(
        self,
        issues: List[Issue],
        document_kind: DocumentKind,
        interpretation_text: str,
        case_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> ActionPlanResult:
        """
        Fan out one request per issue and wait for all of them.

        Returns:
            ActionPlanResult with per-issue outcomes and combined text
        """
        batch = self.prepare_batch(issues, interpretation_text)
        return await self.run_batch(
            batch,
            document_kind,
            case_context=case_context,
            cancel_token=cancel_token,
            on_outcome=on_outcome,
        )

    async def run_batch(
        self,
        batch: ActionPlanResult,
        document_kind: DocumentKind,
        case_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> ActionPlanResult:
        """
        Resolve every pending outcome of ``batch`` in place.

        Outcomes resolved before a cancellation keep their result; the rest
        are finalized as cancelled errors. When the awaiting task itself is
        cancelled, ``batch`` is finalized (combined text included) before
        the CancelledError propagates, so the caller can still keep it.
        """
        start = time.perf_counter()
        outcomes = batch.outcomes
        semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent else None

        def notify(index: int) -> None:
            if on_outcome is not None:
                on_outcome(index, outcomes[index])

        async def run_one(index: int) -> None:
            outcome = outcomes[index]
            started = time.perf_counter()
            try:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                outcome.status = ActionPlanStatus.LOADING
                notify(index)
                outcome.plan_text = await self.client.generate_plan(
                    outcome.issue,
                    document_kind,
                    correlation_id=outcome.correlation_id,
                    case_context=case_context,
                    cancel_token=cancel_token,
                )
                outcome.status = ActionPlanStatus.SUCCESS
            except PipelineCancelledError as e:
                outcome.status = ActionPlanStatus.ERROR
                outcome.error_message = e.message
            except Exception as e:
                # One failed issue never fails the batch
                self.logger.warning(
                    f"[{outcome.correlation_id}] Action plan failed for '{outcome.issue.title}': {e}"
                )
                outcome.status = ActionPlanStatus.ERROR
                outcome.error_message = normalize_error(e)["message"]
            finally:
                outcome.processing_time_ms = (time.perf_counter() - started) * 1000
            notify(index)

        async def bounded(index: int) -> None:
            if semaphore is None:
                await run_one(index)
                return
            async with semaphore:
                await run_one(index)

        self.logger.info(f"[{batch.batch_id}] Generating {len(outcomes)} action plan(s) in parallel")
        try:
            await asyncio.gather(*(bounded(i) for i in range(len(outcomes))))
        except asyncio.CancelledError:
            for outcome in outcomes:
                if not outcome.is_final:
                    outcome.status = ActionPlanStatus.ERROR
                    outcome.error_message = "Cancelled"
            self._finalize(batch, start)
            raise

        self._finalize(batch, start)
        self.logger.info(
            f"[{batch.batch_id}] Action plans: {batch.successful_plans} successful, "
            f"{batch.failed_plans} failed in {batch.processing_time_ms:.0f}ms"
        )
        return batch

    @staticmethod
    def _finalize(batch: ActionPlanResult, start: float) -> None:
        batch.combined_plan_text = combine_plan_text(batch.outcomes)
        batch.processing_time_ms = (time.perf_counter() - start) * 1000
