# ============================================================================
# FILE: tests/conftest.py
# ============================================================================
"""
Pytest configuration and shared fixtures for testing.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.bloodgas_ingestion.config.provider_config import ProviderSettings
from src.bloodgas_ingestion.config.workflow_config import WorkflowSettings
from src.bloodgas_ingestion.core.enums import ExtractionMethod
from src.bloodgas_ingestion.core.persistence import InMemorySnapshotStore
from src.bloodgas_ingestion.core.workflow_state import Issue
from src.bloodgas_ingestion.extractors.text_extractor import ExtractionResult
from src.bloodgas_ingestion.clients.interpretation_client import InterpretationOutput
from src.bloodgas_ingestion.clients.vision_client import VisionExtraction


@pytest.fixture
def good_abg_text():
    """Clean OCR of a typical arterial blood gas printout"""
    return """
    RADIOMETER ABL800 FLEX
    Blood Gas Values
    pH 7.35
    pCO2 45 mmHg
    pO2 90 mmHg
    HCO3 24 mmol/L
    Base Excess -1.2 mmol/L
    Oximetry Values
    SO2 97.5 %
    """


@pytest.fixture
def interpretation_with_issues():
    """Interpretation text ending in a fenced issue list"""
    return """The blood gas shows a compensated respiratory acidosis.

```json
[
  {"issue": "Respiratory acidosis", "description": "pCO2 elevated", "question": "Is ventilation adequate?"},
  {"issue": "Mild hypoxemia", "description": "pO2 low-normal", "question": "Should FiO2 be increased?"},
  {"issue": "Lactate", "description": "Borderline lactate", "question": "Is perfusion adequate?"}
]
```"""


@pytest.fixture
def sample_issues():
    return [
        Issue("Respiratory acidosis", "pCO2 elevated", "Is ventilation adequate?"),
        Issue("Mild hypoxemia", "pO2 low-normal", "Should FiO2 be increased?"),
        Issue("Lactate", "Borderline lactate", "Is perfusion adequate?"),
    ]


@pytest.fixture
def workflow_settings():
    """Workflow settings with defaults, isolated from the environment"""
    return WorkflowSettings(_env_file=None)


@pytest.fixture
def provider_settings():
    return ProviderSettings(
        _env_file=None,
        VISION_ENDPOINT="http://vision.test/models",
        VISION_API_KEY="test-key",
        INTERPRETATION_ENDPOINT="http://interpret.test/flow",
        ACTION_PLAN_ENDPOINT="http://plans.test/flow",
    )


class FakeClock:
    """Manually advanced clock for retention tests"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(workflow_settings, clock):
    return InMemorySnapshotStore(settings=workflow_settings, clock=clock)


@pytest.fixture
def fake_extractor(good_abg_text):
    """TextExtractor double returning good free OCR text"""
    extractor = MagicMock()
    extractor.extract.return_value = ExtractionResult(
        success=True,
        text=good_abg_text,
        confidence=0.88,
        method=ExtractionMethod.FREE_OCR,
        engine="tesseract",
        page_count=1,
    )
    return extractor


@pytest.fixture
def fake_vision_client():
    client = MagicMock()
    client.extract = AsyncMock(return_value=VisionExtraction(
        text="pH 7.31 pCO2 52 mmHg pO2 68 mmHg HCO3 26 mmol/L",
        confidence=0.95,
        finish_reason="STOP",
    ))
    client.close = AsyncMock()
    return client


@pytest.fixture
def fake_interpretation_client(sample_issues):
    client = MagicMock()
    client.interpret = AsyncMock(return_value=InterpretationOutput(
        interpretation_text="Compensated respiratory acidosis.",
        issues=list(sample_issues),
        processing_time_ms=120.0,
        request_id="req-1",
    ))
    client.close = AsyncMock()
    return client


@pytest.fixture
def fake_action_plan_client():
    client = MagicMock()

    async def generate_plan(issue, document_kind, correlation_id, case_context=None, cancel_token=None):
        return f"Plan for {issue.title}"

    client.generate_plan = AsyncMock(side_effect=generate_plan)
    client.close = AsyncMock()
    return client
