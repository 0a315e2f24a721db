# ============================================================================
# src/bloodgas_ingestion/pipeline/orchestrator.py
# ============================================================================
"""
Blood-Gas Pipeline Orchestrator

Drives one session through the workflow:

    Upload -> free OCR -> quality gate -> (vision fallback) -> interpretation
           -> issue decomposition -> parallel action plans -> Completed

Phases run strictly in order; only the action-plan fan-out is concurrent.
State lives in a WorkflowStateMachine and is snapshotted after every phase
transition. Errors are recorded on the state as ``{code, message}``.
"""

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import List, Optional, Union

from ..clients.action_plan_client import ActionPlanClient
from ..clients.interpretation_client import InterpretationClient
from ..clients.vision_client import VisionClient
from ..config import workflow_settings
from ..core.autosave import DebouncedSnapshotWriter
from ..core.cancellation import CancellationToken
from ..core.enums import DocumentKind, ExtractionMethod, ProcessingStatus, WorkflowStep
from ..core.persistence import RecoveryInfo, SnapshotStore
from ..core.progress import PhaseProgressAggregator, ProgressCallback, ProgressReporter
from ..core.state_machine import WorkflowStateMachine
from ..core.workflow_state import (
    ActionPlanResult,
    AnalysisResult,
    ExtractionAttempt,
    FileDescriptor,
    InterpretationResult,
    WorkflowState,
)
from ..extractors.quality_validator import TextQualityValidator
from ..extractors.text_cleanup import format_text_for_analysis
from ..extractors.text_extractor import TextExtractor
from ..utils.exceptions import (
    BloodGasIngestionError,
    ExtractionFailedError,
    InputValidationError,
    NavigationError,
    PipelineCancelledError,
    QuotaExceededError,
    TransientProviderError,
    normalize_error,
)
from ..utils.logging import SessionLogAdapter
from .action_plan_engine import ActionPlanFanOutEngine

EXTRACTION_PHASE = "extraction"
INTERPRETATION_PHASE = "interpretation"
ACTION_PLAN_PHASE = "action_plan"

_MAGIC_MIME = (
    (b'%PDF', "application/pdf"),
    (b'\x89PNG', "image/png"),
    (b'\xff\xd8\xff', "image/jpeg"),
    (b'GIF8', "image/gif"),
    (b'BM', "image/bmp"),
)


def guess_mime_type(data: bytes, name: Optional[str] = None, declared: Optional[str] = None) -> str:
    if declared:
        return declared
    for magic, mime in _MAGIC_MIME:
        if data.startswith(magic):
            return mime
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return "image/webp"
    if name:
        guessed, _ = mimetypes.guess_type(name)
        if guessed:
            return guessed
    return "image/jpeg"


class BloodGasPipeline:
    """
    Orchestrates extraction, interpretation and action plans for one session.

    Collaborators are injectable; defaults are built from settings.

    Example:
        pipeline = BloodGasPipeline(store=FileSnapshotStore())
        pipeline.start_session(DocumentKind.ARTERIAL)
        state = await pipeline.analyze(Path("report.jpg"), on_progress=print)
        if state.error is None:
            await pipeline.generate_action_plans()
            pipeline.complete()
    """

    def __init__(
        self,
        extractor: Optional[TextExtractor] = None,
        validator: Optional[TextQualityValidator] = None,
        vision_client: Optional[VisionClient] = None,
        interpretation_client: Optional[InterpretationClient] = None,
        action_plan_client: Optional[ActionPlanClient] = None,
        store: Optional[SnapshotStore] = None,
        machine: Optional[WorkflowStateMachine] = None,
        max_concurrent_plans: Optional[int] = None,
        autosave_delay: Optional[float] = None,
    ):
        self.extractor = extractor or TextExtractor()
        self.validator = validator or TextQualityValidator()
        self.vision_client = vision_client or VisionClient()
        self.interpretation_client = interpretation_client or InterpretationClient()
        self.action_plan_client = action_plan_client or ActionPlanClient()
        self.engine = ActionPlanFanOutEngine(self.action_plan_client, max_concurrent=max_concurrent_plans)

        self.machine = machine or WorkflowStateMachine()
        self.store = store
        self.writer = (
            DebouncedSnapshotWriter(store, self.machine, delay=autosave_delay)
            if store is not None else None
        )
        self._base_logger = logging.getLogger(__name__)

    @property
    def logger(self) -> logging.LoggerAdapter:
        return SessionLogAdapter(self._base_logger, {"session_id": self.machine.state.session_id})

    @property
    def state(self) -> WorkflowState:
        return self.machine.state

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        document_kind: DocumentKind = DocumentKind.ARTERIAL,
        case_context: Optional[str] = None,
    ) -> WorkflowState:
        return self.machine.start(document_kind=document_kind, case_context=case_context)

    def select_file(self, file_descriptor: FileDescriptor) -> None:
        self.machine.mark_file_selected(file_descriptor)

    def remove_file(self) -> None:
        self.machine.mark_file_removed()

    def restart(self) -> WorkflowState:
        """Abandon the current session and start a fresh one."""
        old_session = self.state.session_id
        if self.writer is not None:
            self.writer.discard(old_session)
        state = self.machine.restart()
        self.logger.info(f"Restarted workflow (previous session {old_session})")
        return state

    def complete(self) -> WorkflowState:
        """
        Finish the session and drop its snapshot.

        Raises:
            InputValidationError: no interpretation yet
        """
        self.machine.complete()
        if self.writer is not None:
            self.writer.discard(self.state.session_id)
        return self.state

    def list_recoverable(self) -> List[RecoveryInfo]:
        return self.store.list_recoverable() if self.store is not None else []

    def recover(self, session_id: str) -> Optional[WorkflowState]:
        """Restore a stored session; None if it is gone, stale or from another version."""
        if self.store is None:
            return None
        snapshot = self.store.load(session_id)
        if snapshot is None:
            return None
        self.machine.restore(snapshot.workflow)
        return self.state

    async def close(self) -> None:
        if self.writer is not None:
            self.writer.close()
        await asyncio.gather(
            self.vision_client.close(),
            self.interpretation_client.close(),
            self.action_plan_client.close(),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint(self) -> None:
        if self.writer is not None:
            self.writer.flush()

    def _fail(self, exc: BaseException) -> None:
        error = normalize_error(exc)
        if isinstance(exc, BloodGasIngestionError):
            self.logger.warning(f"{error['code']}: {exc}")
        elif not isinstance(exc, asyncio.CancelledError):
            self.logger.error(f"Unexpected pipeline failure: {exc}", exc_info=exc)
        self.machine.fail(error["message"], code=error["code"])
        self._checkpoint()

    def _new_reporter(self, on_progress: Optional[ProgressCallback]) -> ProgressReporter:
        aggregator = PhaseProgressAggregator({
            EXTRACTION_PHASE: workflow_settings.EXTRACTION_WEIGHT,
            INTERPRETATION_PHASE: workflow_settings.INTERPRETATION_WEIGHT,
        })
        return ProgressReporter(aggregator, on_progress)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        source: Union[str, Path, bytes],
        content_type: Optional[str] = None,
        file_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowState:
        """
        Extract and interpret one report.

        Free OCR runs first; its text goes through the quality gate and the
        paid vision model is only called when the gate escalates or OCR
        fails. Progress: OCR 0-25, vision 25-50, interpretation 50-100.

        Returns:
            The session state; ``state.error`` is set on failure
        """
        if self.state.is_terminal:
            raise NavigationError("Session is completed; restart to analyze another report")

        if isinstance(source, (str, Path)):
            path = Path(source)
            data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
            file_name = file_name or path.name
        else:
            data = bytes(source)

        if self.state.file_descriptor is None or self.state.current_step == WorkflowStep.UPLOAD:
            self.machine.mark_file_selected(FileDescriptor(
                name=file_name or "upload",
                content_type=content_type,
                size=len(data),
            ))

        reporter = self._new_reporter(on_progress)
        try:
            self.machine.navigate_to(WorkflowStep.ANALYSIS)
            self.machine.set_processing_status(ProcessingStatus.ANALYZING)
            self._checkpoint()

            analysis = await self._extract(data, content_type, file_name, reporter, cancel_token)
            self.machine.attach_analysis(analysis)
            self.machine.navigate_to(WorkflowStep.INTERPRETATION, progress=reporter.aggregator.overall)

            await self._interpret(analysis.extracted_text, reporter, cancel_token)
        except asyncio.CancelledError:
            self._fail(PipelineCancelledError())
            raise
        except Exception as e:
            self._fail(e)
        finally:
            reporter.close()

        return self.state

    async def _extract(
        self,
        data: bytes,
        content_type: Optional[str],
        file_name: Optional[str],
        reporter: ProgressReporter,
        cancel_token: Optional[CancellationToken],
    ) -> AnalysisResult:
        start = time.perf_counter()
        kind = self.state.document_kind
        loop = asyncio.get_running_loop()
        ocr_progress = reporter.sub_reporter(EXTRACTION_PHASE, 0.0, 0.5)

        def on_stage(stage: str, fraction: float) -> None:
            # Extractor runs in a worker thread; hop back onto the loop
            loop.call_soon_threadsafe(ocr_progress, f"Free OCR: {stage}", fraction)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        reporter.report(EXTRACTION_PHASE, "Starting free OCR extraction", 0.0)
        free = await loop.run_in_executor(
            None, self.extractor.extract, data, kind, content_type, on_stage
        )
        attempt = ExtractionAttempt(
            method=ExtractionMethod.FREE_OCR,
            text=free.text,
            confidence=free.confidence,
            error=None if free.success else free.error_message,
        )

        if free.success:
            assessment = self.validator.assess(free.text)
            attempt.quality_score = assessment.quality_score
            attempt.should_escalate = assessment.should_escalate
            if not assessment.should_escalate:
                reporter.report(EXTRACTION_PHASE, "Free OCR text accepted", 1.0)
                self.logger.info(
                    f"Free OCR accepted (quality {assessment.quality_score:.2f}, "
                    f"{assessment.parameter_matches} parameters)"
                )
                return AnalysisResult(
                    extracted_text=free.text,
                    method=ExtractionMethod.FREE_OCR,
                    confidence=free.confidence,
                    quality_score=assessment.quality_score,
                    processing_time_ms=(time.perf_counter() - start) * 1000,
                    document_kind=kind,
                )
            self.logger.info(
                f"Free OCR rejected (quality {assessment.quality_score:.2f}): {'; '.join(assessment.issues)}"
            )
        else:
            self.logger.info(f"Free OCR failed: {free.error_message}")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        reporter.report(EXTRACTION_PHASE, "Escalating to AI vision extraction", 0.5)
        try:
            vision = await self.vision_client.extract(
                data,
                mime_type=guess_mime_type(data, file_name, content_type),
                document_kind=kind,
                cancel_token=cancel_token,
            )
        except (PipelineCancelledError, InputValidationError):
            raise
        except BloodGasIngestionError as e:
            if attempt.text.strip():
                # Keep the rejected OCR text; the user can still edit it
                self.logger.warning(f"Vision fallback failed ({e.code}); keeping free OCR text")
                reporter.report(EXTRACTION_PHASE, "Using free OCR text", 1.0)
                return self._free_result(attempt, start, kind)
            if isinstance(e, (QuotaExceededError, TransientProviderError)):
                raise
            raise ExtractionFailedError(
                f"Both extraction methods failed: OCR: {attempt.error}; vision: {e}"
            ) from e

        if not vision.text.strip():
            if attempt.text.strip():
                return self._free_result(attempt, start, kind)
            raise ExtractionFailedError(
                f"Both extraction methods failed: OCR: {attempt.error}; vision: {vision.error_message}"
            )

        reporter.report(EXTRACTION_PHASE, "AI vision extraction complete", 1.0)
        return AnalysisResult(
            extracted_text=vision.text,
            method=ExtractionMethod.VISION,
            confidence=vision.confidence,
            quality_score=self.validator.assess(vision.text).quality_score,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            document_kind=kind,
        )

    @staticmethod
    def _free_result(attempt: ExtractionAttempt, start: float, kind: DocumentKind) -> AnalysisResult:
        return AnalysisResult(
            extracted_text=attempt.text,
            method=ExtractionMethod.FREE_OCR,
            confidence=attempt.confidence,
            quality_score=attempt.quality_score,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            document_kind=kind,
        )

    async def _interpret(
        self,
        text: str,
        reporter: ProgressReporter,
        cancel_token: Optional[CancellationToken],
    ) -> InterpretationResult:
        self.machine.set_processing_status(ProcessingStatus.INTERPRETING)
        self._checkpoint()
        reporter.report(INTERPRETATION_PHASE, "Generating clinical interpretation", 0.1)

        output = await self.interpretation_client.interpret(
            text,
            document_kind=self.state.document_kind,
            case_context=self.state.case_context,
            cancel_token=cancel_token,
        )
        result = InterpretationResult(
            interpretation_text=output.interpretation_text,
            issues=output.issues,
            processing_time_ms=output.processing_time_ms,
            request_id=output.request_id,
        )

        self.machine.attach_interpretation(result)
        self.machine.set_progress(self.machine.canonical_progress(WorkflowStep.INTERPRETATION))
        self.machine.set_processing_status(ProcessingStatus.IDLE)
        self._checkpoint()
        reporter.finish(INTERPRETATION_PHASE, "Interpretation complete")
        return result

    async def reanalyze_with_edited_text(
        self,
        text: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowState:
        """
        Re-run interpretation on user-corrected text, without re-uploading.

        Raises:
            InputValidationError: text is empty (before any network call)
        """
        self.validator.validate_input_text(text)
        if self.state.is_terminal:
            raise NavigationError("Session is completed; restart to analyze another report")
        if self.state.current_step.index < WorkflowStep.ANALYSIS.index:
            raise InputValidationError("Upload and analyze a report before editing its text")

        check = self.validator.validate_edited_text(text)
        if not check.is_valid:
            self.logger.info(f"Edited text warnings: {'; '.join(check.issues)}")

        formatted = format_text_for_analysis(text)
        previous = self.state.analysis_result
        reporter = self._new_reporter(on_progress)
        try:
            self.machine.clear_error()
            self.machine.attach_analysis(AnalysisResult(
                extracted_text=formatted,
                method=previous.method if previous else ExtractionMethod.FREE_OCR,
                confidence=1.0,
                quality_score=self.validator.assess(formatted).quality_score,
                document_kind=self.state.document_kind,
                edited=True,
            ))
            self.machine.set_can_proceed(True)
            self.machine.navigate_to(WorkflowStep.INTERPRETATION, progress=reporter.aggregator.overall)
            reporter.report(EXTRACTION_PHASE, "Using edited text", 1.0)
            await self._interpret(formatted, reporter, cancel_token)
        except asyncio.CancelledError:
            self._fail(PipelineCancelledError())
            raise
        except Exception as e:
            self._fail(e)
        finally:
            reporter.close()

        return self.state

    # ------------------------------------------------------------------
    # Action plans
    # ------------------------------------------------------------------

    async def generate_action_plans(
        self,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[ActionPlanResult]:
        """
        Fan out one action-plan request per identified issue.

        Partial failure still counts as done; only an all-failed batch or a
        cancellation puts the session into the error status. Outcomes that
        resolved before a cancellation are kept.

        Raises:
            InputValidationError: no interpretation yet
            NavigationError: the session is already completed
        """
        if self.state.is_terminal:
            raise NavigationError("Session is completed; restart to generate new action plans")

        interpretation = self.state.interpretation_result
        if interpretation is None:
            raise InputValidationError("Action plans need an interpretation first")

        reporter = ProgressReporter(PhaseProgressAggregator({ACTION_PLAN_PHASE: 1.0}), on_progress)
        finished = 0

        def on_outcome(index: int, outcome) -> None:
            nonlocal finished
            if outcome.is_final:
                finished += 1
                reporter.report(
                    ACTION_PLAN_PHASE,
                    f"Generated {finished} action plan(s)",
                    finished / total,
                )

        issues = list(interpretation.issues)
        total = max(1, len(issues))
        batch = None
        result = None
        try:
            self.machine.clear_error()
            self.machine.navigate_to(WorkflowStep.ACTION_PLAN)
            self.machine.set_processing_status(ProcessingStatus.GENERATING_PLAN)
            self._checkpoint()
            reporter.report(ACTION_PLAN_PHASE, f"Generating action plans (0 of {total})", 0.0)

            batch = self.engine.prepare_batch(issues, interpretation.interpretation_text)
            result = await self.engine.run_batch(
                batch,
                self.state.document_kind,
                case_context=self.state.case_context,
                cancel_token=cancel_token,
                on_outcome=on_outcome,
            )
            self.machine.attach_action_plan(result)

            if cancel_token is not None and cancel_token.cancelled:
                self._fail(PipelineCancelledError(cancel_token.reason))
            elif result.all_failed:
                self._fail(BloodGasIngestionError(
                    "All action plans failed to generate", code="ACTION_PLAN_FAILED"
                ))
            else:
                self.machine.set_processing_status(ProcessingStatus.IDLE)
                self._checkpoint()
                reporter.finish(ACTION_PLAN_PHASE, "Action plans ready")
        except asyncio.CancelledError:
            if batch is not None:
                # Plans resolved before the cancel stay attached
                self.machine.attach_action_plan(batch)
                result = batch
            self._fail(PipelineCancelledError())
            raise
        except Exception as e:
            self._fail(e)
        finally:
            reporter.close()

        return result
