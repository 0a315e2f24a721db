# ============================================================================
# src/bloodgas_ingestion/core/enums.py
# ============================================================================
"""
Workflow Enums
- Steps (ordered) and processing statuses
- Extraction methods and action-plan outcome statuses
- Document kinds
"""

from enum import Enum


class WorkflowStep(str, Enum):
    UPLOAD = "upload"
    ANALYSIS = "analysis"
    INTERPRETATION = "interpretation"
    ACTION_PLAN = "action_plan"
    COMPLETED = "completed"

    @property
    def index(self) -> int:
        return STEP_ORDER.index(self)


# Navigation depends on this ordering.
STEP_ORDER = (
    WorkflowStep.UPLOAD,
    WorkflowStep.ANALYSIS,
    WorkflowStep.INTERPRETATION,
    WorkflowStep.ACTION_PLAN,
    WorkflowStep.COMPLETED,
)


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    INTERPRETING = "interpreting"
    GENERATING_PLAN = "generating_plan"
    COMPLETED = "completed"
    ERROR = "error"


class ExtractionMethod(str, Enum):
    FREE_OCR = "free-ocr"   # local tesseract / embedded PDF text
    VISION = "vision"       # paid vision model


class ActionPlanStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class DocumentKind(str, Enum):
    ARTERIAL = "arterial"
    VENOUS = "venous"

    @property
    def label(self) -> str:
        return "Arterial Blood Gas" if self is DocumentKind.ARTERIAL else "Venous Blood Gas"
