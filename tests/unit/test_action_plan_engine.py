# ============================================================================
# tests/unit/test_action_plan_engine.py
# ============================================================================
"""
Tests for the concurrent per-issue action-plan engine
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.bloodgas_ingestion.core.cancellation import CancellationToken, run_cancellable
from src.bloodgas_ingestion.core.enums import ActionPlanStatus, DocumentKind
from src.bloodgas_ingestion.core.workflow_state import (
    PLAN_SEPARATOR,
    ActionPlanResult,
    split_combined_plan_text,
)
from src.bloodgas_ingestion.pipeline.action_plan_engine import (
    COMPREHENSIVE_TITLE,
    ActionPlanFanOutEngine,
    combine_plan_text,
)
from src.bloodgas_ingestion.utils.exceptions import ProviderHTTPError, TransientProviderError


def _client(side_effect):
    client = MagicMock()
    client.generate_plan = AsyncMock(side_effect=side_effect)
    return client


class TestFanOut:

    @pytest.mark.asyncio
    async def test_one_request_per_issue(self, fake_action_plan_client, sample_issues):
        engine = ActionPlanFanOutEngine(fake_action_plan_client)
        result = await engine.generate(sample_issues, DocumentKind.ARTERIAL, "interp")

        assert fake_action_plan_client.generate_plan.await_count == 3
        assert result.successful_plans == 3
        assert result.failed_plans == 0
        assert [o.plan_text for o in result.outcomes] == [
            f"Plan for {issue.title}" for issue in sample_issues
        ]

    @pytest.mark.asyncio
    async def test_failure_isolated(self, sample_issues):
        async def generate_plan(issue, document_kind, correlation_id, case_context=None, cancel_token=None):
            if issue.title == "Mild hypoxemia":
                raise ProviderHTTPError("action-plan error (500)", status=500)
            return f"Plan for {issue.title}"

        engine = ActionPlanFanOutEngine(_client(generate_plan))
        result = await engine.generate(sample_issues, DocumentKind.ARTERIAL, "interp")

        assert result.successful_plans == 2
        assert result.failed_plans == 1
        failed = result.outcomes[1]
        assert failed.status == ActionPlanStatus.ERROR
        assert failed.error_message
        assert "Mild hypoxemia" not in result.combined_plan_text
        assert "## Action Plan 2: Lactate" in result.combined_plan_text

    @pytest.mark.asyncio
    async def test_all_failed(self, sample_issues):
        engine = ActionPlanFanOutEngine(_client(TransientProviderError("down", status=503)))
        result = await engine.generate(sample_issues, DocumentKind.ARTERIAL, "interp")

        assert result.all_failed
        assert result.combined_plan_text == ""

    @pytest.mark.asyncio
    async def test_no_issues_requests_one_comprehensive_plan(self, fake_action_plan_client):
        engine = ActionPlanFanOutEngine(fake_action_plan_client)
        result = await engine.generate([], DocumentKind.VENOUS, "Whole interpretation")

        assert fake_action_plan_client.generate_plan.await_count == 1
        issue = fake_action_plan_client.generate_plan.call_args[0][0]
        assert issue.title == COMPREHENSIVE_TITLE
        assert issue.description == "Whole interpretation"
        assert result.successful_plans == 1

    @pytest.mark.asyncio
    async def test_correlation_ids_unique_per_batch(self, fake_action_plan_client, sample_issues):
        engine = ActionPlanFanOutEngine(fake_action_plan_client)
        result = await engine.generate(sample_issues, DocumentKind.ARTERIAL, "interp")

        ids = [o.correlation_id for o in result.outcomes]
        assert ids == [f"{result.batch_id}-issue-{i}" for i in range(3)]
        sent = {c.kwargs["correlation_id"] for c in fake_action_plan_client.generate_plan.call_args_list}
        assert sent == set(ids)

    @pytest.mark.asyncio
    async def test_requests_run_concurrently(self, sample_issues):
        active = 0
        peak = 0

        async def generate_plan(issue, *args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "plan"

        await ActionPlanFanOutEngine(_client(generate_plan), max_concurrent=0).generate(
            sample_issues, DocumentKind.ARTERIAL, "interp"
        )
        assert peak == 3

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, sample_issues):
        active = 0
        peak = 0

        async def generate_plan(issue, *args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "plan"

        await ActionPlanFanOutEngine(_client(generate_plan), max_concurrent=1).generate(
            sample_issues, DocumentKind.ARTERIAL, "interp"
        )
        assert peak == 1

    @pytest.mark.asyncio
    async def test_outcome_callback_sees_loading_then_final(self, fake_action_plan_client, sample_issues):
        seen = []
        engine = ActionPlanFanOutEngine(fake_action_plan_client)
        await engine.generate(
            sample_issues, DocumentKind.ARTERIAL, "interp",
            on_outcome=lambda index, outcome: seen.append((index, outcome.status)),
        )

        for index in range(3):
            statuses = [status for i, status in seen if i == index]
            assert statuses == [ActionPlanStatus.LOADING, ActionPlanStatus.SUCCESS]


class TestCancellation:

    @pytest.mark.asyncio
    async def test_resolved_outcomes_survive_cancel(self, sample_issues):
        token = CancellationToken()

        async def generate_plan(issue, document_kind, correlation_id, case_context=None, cancel_token=None):
            if issue.title == "Respiratory acidosis":
                return "Fast plan"
            return await run_cancellable(asyncio.sleep(10, result="late"), cancel_token)

        engine = ActionPlanFanOutEngine(_client(generate_plan))
        task = asyncio.create_task(
            engine.generate(sample_issues, DocumentKind.ARTERIAL, "interp", cancel_token=token)
        )
        await asyncio.sleep(0.01)
        token.cancel("Stopped by user")
        result = await task

        assert result.outcomes[0].status == ActionPlanStatus.SUCCESS
        assert result.outcomes[0].plan_text == "Fast plan"
        for outcome in result.outcomes[1:]:
            assert outcome.status == ActionPlanStatus.ERROR
            assert outcome.error_message == "Stopped by user"

    @pytest.mark.asyncio
    async def test_task_cancel_finalizes_pending(self, sample_issues):
        outcomes_seen = []

        async def generate_plan(*args, **kwargs):
            await asyncio.sleep(10)

        engine = ActionPlanFanOutEngine(_client(generate_plan))
        task = asyncio.create_task(engine.generate(
            sample_issues, DocumentKind.ARTERIAL, "interp",
            on_outcome=lambda index, outcome: outcomes_seen.append(outcome),
        ))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert all(o.is_final for o in outcomes_seen)


class TestCombinedText:

    @pytest.mark.asyncio
    async def test_split_reverses_combine(self, fake_action_plan_client, sample_issues):
        result = await ActionPlanFanOutEngine(fake_action_plan_client).generate(
            sample_issues, DocumentKind.ARTERIAL, "interp"
        )
        rebuilt = split_combined_plan_text(result.combined_plan_text)

        assert [o.issue.title for o in rebuilt] == [i.title for i in sample_issues]
        assert [o.plan_text for o in rebuilt] == [o.plan_text for o in result.outcomes]
        assert combine_plan_text(rebuilt) == result.combined_plan_text

    def test_format(self):
        assert PLAN_SEPARATOR == "\n\n---\n\n"
        assert split_combined_plan_text("   ") == []

    @pytest.mark.asyncio
    async def test_restores_outcomes_from_combined_text_only(self, fake_action_plan_client, sample_issues):
        result = await ActionPlanFanOutEngine(fake_action_plan_client).generate(
            sample_issues, DocumentKind.ARTERIAL, "interp"
        )
        stored = result.to_dict()
        del stored["outcomes"]

        restored = ActionPlanResult.from_dict(stored)

        assert restored.successful_plans == len(sample_issues)
        assert [o.issue.title for o in restored.outcomes] == [i.title for i in sample_issues]
        assert restored.combined_plan_text == result.combined_plan_text


class TestPreparedBatch:

    @pytest.mark.asyncio
    async def test_task_cancel_finalizes_batch_in_place(self, sample_issues):
        async def plan(issue, *args, **kwargs):
            if issue.title == sample_issues[0].title:
                return "fast plan"
            await asyncio.sleep(10)
            return "slow plan"

        engine = ActionPlanFanOutEngine(_client(plan))
        batch = engine.prepare_batch(sample_issues, "interp")
        assert all(o.status == ActionPlanStatus.PENDING for o in batch.outcomes)

        task = asyncio.create_task(engine.run_batch(batch, DocumentKind.ARTERIAL))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert batch.outcomes[0].status == ActionPlanStatus.SUCCESS
        assert all(o.status == ActionPlanStatus.ERROR for o in batch.outcomes[1:])
        assert "fast plan" in batch.combined_plan_text

    def test_no_issues_prepares_comprehensive_request(self):
        engine = ActionPlanFanOutEngine(_client(["plan"]))
        batch = engine.prepare_batch([], "interp")
        assert [o.issue.title for o in batch.outcomes] == [COMPREHENSIVE_TITLE]
