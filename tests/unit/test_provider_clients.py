# ============================================================================
# tests/unit/test_provider_clients.py
# ============================================================================
"""
Tests for provider clients: payloads, retry policy and error mapping
"""

import asyncio
import base64
from unittest.mock import AsyncMock

import pytest

from src.bloodgas_ingestion.clients.action_plan_client import ActionPlanClient
from src.bloodgas_ingestion.clients.interpretation_client import InterpretationClient
from src.bloodgas_ingestion.clients.retry_policy import get_provider_retry_policy, is_transient_error
from src.bloodgas_ingestion.clients.vision_client import VISION_PROMPT, VisionClient
from src.bloodgas_ingestion.config.provider_config import ProviderSettings
from src.bloodgas_ingestion.core.cancellation import CancellationToken
from src.bloodgas_ingestion.core.enums import DocumentKind
from src.bloodgas_ingestion.core.workflow_state import Issue
from src.bloodgas_ingestion.utils.exceptions import (
    ConfigurationError,
    InterpretationError,
    PipelineCancelledError,
    ProviderHTTPError,
    QuotaExceededError,
    TransientProviderError,
)


@pytest.fixture
def fast_retry():
    """Production schedule without the sleeps"""
    return get_provider_retry_policy(max_retries=2, initial_delay=0)


def _issue():
    return Issue("Hypoxemia", "pO2 58 mmHg", "Increase FiO2?")


class TestRetryPolicy:

    def test_transient_classification(self):
        assert is_transient_error(TransientProviderError("busy", status=503))
        assert not is_transient_error(ProviderHTTPError("bad", status=400))
        assert not is_transient_error(QuotaExceededError("quota", status=400))

    def test_rate_limited_code(self):
        assert TransientProviderError("slow down", status=429).code == "RATE_LIMITED"
        assert TransientProviderError("down", status=503).code == "PROVIDER_UNAVAILABLE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 503])
    async def test_transient_errors_retried(self, provider_settings, fast_retry, status):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(side_effect=[
            TransientProviderError("busy", status=status),
            TransientProviderError("busy", status=status),
            {"text": "Recovered interpretation"},
        ])

        output = await client.interpret("pH 7.35")
        assert output.interpretation_text == "Recovered interpretation"
        assert client._post_json.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, provider_settings, fast_retry):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(side_effect=TransientProviderError("down", status=503))

        with pytest.raises(TransientProviderError):
            await client.interpret("pH 7.35")
        assert client._post_json.await_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ProviderHTTPError("bad request", status=400),
        QuotaExceededError("quota", status=400),
    ])
    async def test_non_transient_not_retried(self, provider_settings, fast_retry, error):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await client.interpret("pH 7.35")
        assert client._post_json.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self, provider_settings, fast_retry):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client.timeout = 0.01

        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        client._post_json = AsyncMock(side_effect=hang)

        with pytest.raises(ProviderHTTPError) as exc_info:
            await client.interpret("pH 7.35")
        assert exc_info.value.code == "PROVIDER_TIMEOUT"
        assert client._post_json.await_count == 1


class TestBaseClient:

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        settings = ProviderSettings(_env_file=None, INTERPRETATION_ENDPOINT=None)
        client = InterpretationClient(settings)
        with pytest.raises(ConfigurationError):
            await client.interpret("pH 7.35")

    @pytest.mark.asyncio
    async def test_cancellation_aborts_request(self, provider_settings, fast_retry):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        client._post_json = AsyncMock(side_effect=hang)
        token = CancellationToken()

        task = asyncio.create_task(client.interpret("pH 7.35", cancel_token=token))
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(PipelineCancelledError):
            await task

    @pytest.mark.asyncio
    async def test_correlation_id_forwarded(self, provider_settings, fast_retry):
        client = ActionPlanClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value={"text": "Plan"})

        await client.generate_plan(_issue(), DocumentKind.ARTERIAL, "batch-issue-0")

        url, payload = client._post_json.call_args[0][:2]
        assert url == "http://plans.test/flow"
        assert client._post_json.call_args.kwargs["correlation_id"] == "batch-issue-0"


class TestVisionClient:

    def test_url_includes_model_and_key(self, provider_settings):
        client = VisionClient(provider_settings)
        assert client._url() == (
            f"http://vision.test/models/{provider_settings.VISION_MODEL}:generateContent?key=test-key"
        )

    def test_payload_image_first(self, provider_settings):
        client = VisionClient(provider_settings)
        payload = client.build_payload(b"\x89PNG", "image/png")

        parts = payload["contents"][0]["parts"]
        assert parts[0]["inline_data"] == {
            "mime_type": "image/png",
            "data": base64.b64encode(b"\x89PNG").decode("ascii"),
        }
        assert parts[1]["text"] == VISION_PROMPT
        assert payload["generationConfig"]["temperature"] == provider_settings.VISION_TEMPERATURE

    @pytest.mark.asyncio
    async def test_extract(self, provider_settings, fast_retry):
        client = VisionClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value={"candidates": [{
            "content": {"parts": [{"text": "pH 7.31"}]},
            "finishReason": "MAX_TOKENS",
        }]})

        result = await client.extract(b"img", "image/jpeg")
        assert result.text == "pH 7.31"
        assert result.confidence == 0.8
        assert result.error_message is None

    @pytest.mark.asyncio
    async def test_extract_empty_text(self, provider_settings, fast_retry):
        client = VisionClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value={"candidates": []})

        result = await client.extract(b"img")
        assert result.confidence == 0.0
        assert result.error_message


class TestInterpretationClient:

    @pytest.mark.asyncio
    async def test_payload_and_issue_parsing(
        self, provider_settings, fast_retry, interpretation_with_issues
    ):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value={"text": interpretation_with_issues})

        output = await client.interpret(
            "pH 7.35", document_kind=DocumentKind.VENOUS, case_context="COPD"
        )

        payload = client._post_json.call_args[0][1]
        assert payload["text"] == "pH 7.35"
        assert payload["documentKind"] == "venous"
        assert payload["caseContext"] == "COPD"
        assert payload["requestId"] == output.request_id

        assert len(output.issues) == 3
        assert output.issues[0].title == "Respiratory acidosis"
        assert "```" not in output.interpretation_text

    @pytest.mark.asyncio
    async def test_case_context_omitted_when_empty(self, provider_settings, fast_retry):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value={"text": "Normal"})

        await client.interpret("pH 7.40")
        assert "caseContext" not in client._post_json.call_args[0][1]

    @pytest.mark.asyncio
    async def test_empty_answer(self, provider_settings, fast_retry):
        client = InterpretationClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value="   ")

        with pytest.raises(InterpretationError):
            await client.interpret("pH 7.40")


class TestActionPlanClient:

    def test_payload(self):
        payload = ActionPlanClient.build_payload(_issue(), DocumentKind.ARTERIAL, "b-issue-1", "ICU")
        assert payload["issueTitle"] == "Hypoxemia"
        assert payload["issueDescription"] == "pO2 58 mmHg"
        assert payload["clinicalQuestion"] == "Increase FiO2?"
        assert payload["correlationId"] == "b-issue-1"
        assert payload["caseContext"] == "ICU"

    @pytest.mark.asyncio
    async def test_empty_plan_is_error(self, provider_settings, fast_retry):
        client = ActionPlanClient(provider_settings, retry_policy=fast_retry)
        client._post_json = AsyncMock(return_value="")

        with pytest.raises(ProviderHTTPError):
            await client.generate_plan(_issue(), DocumentKind.ARTERIAL, "b-issue-0")
