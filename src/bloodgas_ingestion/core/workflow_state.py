# ============================================================================
# src/bloodgas_ingestion/core/workflow_state.py
# ============================================================================
"""
Workflow Data Model
- WorkflowState: single source of truth for one analysis session
- Phase payloads attached as each phase completes
- Issue / ActionPlanOutcome for the action-plan fan-out

Serialized form uses camelCase keys (sessionId, currentStep, ...), the
layout persisted snapshots have always used.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import re
import uuid

from .enums import (
    ActionPlanStatus,
    DocumentKind,
    ExtractionMethod,
    ProcessingStatus,
    WorkflowStep,
)

# Combined action-plan text: numbered sections separated by horizontal rules
PLAN_SEPARATOR = "\n\n---\n\n"
_PLAN_HEADER = re.compile(r"^## Action Plan (\d+): (.+)$", re.MULTILINE)


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class FileDescriptor:
    """Name, type and size of the uploaded report."""
    name: str
    content_type: Optional[str] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "contentType": self.content_type, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileDescriptor":
        return cls(
            name=data.get("name", ""),
            content_type=data.get("contentType"),
            size=data.get("size"),
        )


@dataclass(frozen=True)
class Issue:
    """One clinical issue decomposed from the interpretation."""
    title: str
    description: str = ""
    clinical_question: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "clinicalQuestion": self.clinical_question,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Issue":
        return cls(
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            clinical_question=str(data.get("clinicalQuestion", "")),
        )


@dataclass
class ExtractionAttempt:
    """One extraction try. Kept in memory for logging only, never persisted."""
    method: ExtractionMethod
    text: str = ""
    confidence: float = 0.0
    quality_score: Optional[float] = None
    should_escalate: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.text.strip())


@dataclass
class AnalysisResult:
    extracted_text: str
    method: ExtractionMethod
    confidence: float
    quality_score: Optional[float] = None
    processing_time_ms: float = 0.0
    request_id: Optional[str] = None
    document_kind: DocumentKind = DocumentKind.ARTERIAL
    edited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extractedText": self.extracted_text,
            "method": self.method.value,
            "confidence": self.confidence,
            "qualityScore": self.quality_score,
            "processingTimeMs": self.processing_time_ms,
            "requestId": self.request_id,
            "documentKind": self.document_kind.value,
            "edited": self.edited,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            extracted_text=data.get("extractedText", ""),
            method=ExtractionMethod(data.get("method", ExtractionMethod.FREE_OCR.value)),
            confidence=float(data.get("confidence", 0.0)),
            quality_score=data.get("qualityScore"),
            processing_time_ms=float(data.get("processingTimeMs", 0.0)),
            request_id=data.get("requestId"),
            document_kind=DocumentKind(data.get("documentKind", DocumentKind.ARTERIAL.value)),
            edited=bool(data.get("edited", False)),
        )


@dataclass
class InterpretationResult:
    interpretation_text: str
    issues: List[Issue] = field(default_factory=list)
    processing_time_ms: float = 0.0
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interpretationText": self.interpretation_text,
            "issues": [issue.to_dict() for issue in self.issues],
            "processingTimeMs": self.processing_time_ms,
            "requestId": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterpretationResult":
        return cls(
            interpretation_text=data.get("interpretationText", ""),
            issues=[Issue.from_dict(item) for item in data.get("issues", [])],
            processing_time_ms=float(data.get("processingTimeMs", 0.0)),
            request_id=data.get("requestId"),
        )


@dataclass
class ActionPlanOutcome:
    """Result of one per-issue request. Finalized once, never retried by the engine."""
    issue: Issue
    status: ActionPlanStatus = ActionPlanStatus.PENDING
    plan_text: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: float = 0.0
    correlation_id: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status in (ActionPlanStatus.SUCCESS, ActionPlanStatus.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue": self.issue.to_dict(),
            "status": self.status.value,
            "planText": self.plan_text,
            "errorMessage": self.error_message,
            "processingTimeMs": self.processing_time_ms,
            "correlationId": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionPlanOutcome":
        return cls(
            issue=Issue.from_dict(data.get("issue", {})),
            status=ActionPlanStatus(data.get("status", ActionPlanStatus.PENDING.value)),
            plan_text=data.get("planText"),
            error_message=data.get("errorMessage"),
            processing_time_ms=float(data.get("processingTimeMs", 0.0)),
            correlation_id=data.get("correlationId"),
        )


def split_combined_plan_text(text: str) -> List[ActionPlanOutcome]:
    """Rebuild successful outcomes from stored combined text."""
    if not text or not text.strip():
        return []

    outcomes = []
    for section in text.split(PLAN_SEPARATOR):
        match = _PLAN_HEADER.search(section)
        if match is None:
            continue
        plan = section[match.end():].strip()
        outcomes.append(ActionPlanOutcome(
            issue=Issue(title=match.group(2).strip()),
            status=ActionPlanStatus.SUCCESS,
            plan_text=plan,
        ))
    return outcomes


@dataclass
class ActionPlanResult:
    batch_id: str
    outcomes: List[ActionPlanOutcome] = field(default_factory=list)
    combined_plan_text: str = ""
    processing_time_ms: float = 0.0

    @property
    def successful_plans(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ActionPlanStatus.SUCCESS)

    @property
    def failed_plans(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ActionPlanStatus.ERROR)

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and self.successful_plans == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "combinedPlanText": self.combined_plan_text,
            "processingTimeMs": self.processing_time_ms,
            "successfulPlans": self.successful_plans,
            "failedPlans": self.failed_plans,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionPlanResult":
        combined = data.get("combinedPlanText", "")
        if "outcomes" in data:
            outcomes = [ActionPlanOutcome.from_dict(o) for o in data["outcomes"]]
        else:
            # Snapshots that kept only the combined text
            outcomes = split_combined_plan_text(combined)
        return cls(
            batch_id=data.get("batchId", ""),
            outcomes=outcomes,
            combined_plan_text=combined,
            processing_time_ms=float(data.get("processingTimeMs", 0.0)),
        )


@dataclass
class WorkflowState:
    """
    State of one analysis session.

    ``current_step`` only moves along STEP_ORDER; the state machine owns
    every mutation. Phase payloads are replaced by newer runs but never
    reset to None within a session.
    """
    session_id: str = field(default_factory=new_session_id)
    current_step: WorkflowStep = WorkflowStep.UPLOAD
    processing_status: ProcessingStatus = ProcessingStatus.IDLE
    progress: int = 0
    can_proceed: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None

    document_kind: DocumentKind = DocumentKind.ARTERIAL
    file_descriptor: Optional[FileDescriptor] = None
    case_context: Optional[str] = None

    analysis_result: Optional[AnalysisResult] = None
    interpretation_result: Optional[InterpretationResult] = None
    action_plan_result: Optional[ActionPlanResult] = None

    @property
    def is_terminal(self) -> bool:
        """Finished sessions stay finished, even while reviewing an earlier step."""
        return (
            self.current_step == WorkflowStep.COMPLETED
            or self.processing_status == ProcessingStatus.COMPLETED
        )

    @property
    def is_recoverable(self) -> bool:
        return (
            self.current_step != WorkflowStep.COMPLETED
            and self.processing_status not in (ProcessingStatus.COMPLETED, ProcessingStatus.ERROR)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "currentStep": self.current_step.value,
            "processingStatus": self.processing_status.value,
            "progress": self.progress,
            "canProceed": self.can_proceed,
            "error": self.error,
            "errorCode": self.error_code,
            "documentKind": self.document_kind.value,
            "fileDescriptor": self.file_descriptor.to_dict() if self.file_descriptor else None,
            "caseContext": self.case_context,
            "analysisResult": self.analysis_result.to_dict() if self.analysis_result else None,
            "interpretationResult": (
                self.interpretation_result.to_dict() if self.interpretation_result else None
            ),
            "actionPlanResult": (
                self.action_plan_result.to_dict() if self.action_plan_result else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowState":
        file_descriptor = data.get("fileDescriptor")
        analysis = data.get("analysisResult")
        interpretation = data.get("interpretationResult")
        action_plan = data.get("actionPlanResult")
        return cls(
            session_id=data["sessionId"],
            current_step=WorkflowStep(data.get("currentStep", WorkflowStep.UPLOAD.value)),
            processing_status=ProcessingStatus(
                data.get("processingStatus", ProcessingStatus.IDLE.value)
            ),
            progress=int(data.get("progress", 0)),
            can_proceed=bool(data.get("canProceed", False)),
            error=data.get("error"),
            error_code=data.get("errorCode"),
            document_kind=DocumentKind(data.get("documentKind", DocumentKind.ARTERIAL.value)),
            file_descriptor=FileDescriptor.from_dict(file_descriptor) if file_descriptor else None,
            case_context=data.get("caseContext"),
            analysis_result=AnalysisResult.from_dict(analysis) if analysis else None,
            interpretation_result=(
                InterpretationResult.from_dict(interpretation) if interpretation else None
            ),
            action_plan_result=ActionPlanResult.from_dict(action_plan) if action_plan else None,
        )
