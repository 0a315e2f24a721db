# ============================================================================
# src/bloodgas_ingestion/core/state_machine.py
# ============================================================================
"""
Workflow State Machine

Steps are linear: Upload -> Analysis -> Interpretation -> ActionPlan -> Completed,
with ActionPlan optional (Interpretation may go straight to Completed).

Every step change goes through ``navigate_to``, which is gated by
``can_navigate_to``. Observers are notified after every mutation.
"""

import copy
import logging
from typing import Callable, List, Optional

from ..config import workflow_settings
from ..config.workflow_config import WorkflowSettings
from ..utils.exceptions import InputValidationError, NavigationError
from .enums import DocumentKind, ProcessingStatus, WorkflowStep
from .workflow_state import (
    ActionPlanResult,
    AnalysisResult,
    FileDescriptor,
    InterpretationResult,
    WorkflowState,
)

logger = logging.getLogger(__name__)

StateObserver = Callable[[WorkflowState], None]


def can_navigate_to(current: WorkflowStep, target: WorkflowStep, can_proceed: bool) -> bool:
    """
    Single authorization gate for step changes.

    Backward (or same-step) moves are always allowed. Forward moves need
    ``can_proceed`` and may advance one step, except Interpretation may
    skip the optional ActionPlan step to Completed.
    """
    current_index = current.index
    target_index = target.index

    if target_index <= current_index:
        return True
    if not can_proceed:
        return False
    if target_index == current_index + 1:
        return True
    return current == WorkflowStep.INTERPRETATION and target == WorkflowStep.COMPLETED


class WorkflowStateMachine:
    """
    Owns one WorkflowState and every transition applied to it.

    Progress never decreases within a session; ``restart`` is the only
    way back to zero.
    """

    def __init__(
        self,
        state: Optional[WorkflowState] = None,
        settings: Optional[WorkflowSettings] = None,
    ):
        self.settings = settings or workflow_settings
        self._state = state or WorkflowState()
        self._observers: List[StateObserver] = []
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> WorkflowState:
        return self._state

    def snapshot(self) -> WorkflowState:
        """Detached copy safe to hand to other tasks."""
        return copy.deepcopy(self._state)

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self._state)
            except Exception:
                # A broken observer must not corrupt the transition that already happened
                self.logger.exception("State observer failed")

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def canonical_progress(self, step: WorkflowStep) -> int:
        return {
            WorkflowStep.UPLOAD: self.settings.PROGRESS_UPLOAD,
            WorkflowStep.ANALYSIS: self.settings.PROGRESS_ANALYSIS,
            WorkflowStep.INTERPRETATION: self.settings.PROGRESS_INTERPRETATION,
            WorkflowStep.ACTION_PLAN: self.settings.PROGRESS_ACTION_PLAN,
            WorkflowStep.COMPLETED: self.settings.PROGRESS_COMPLETED,
        }[step]

    def _apply_progress(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        self._state.progress = max(self._state.progress, value)

    def set_progress(self, value: int) -> None:
        self._apply_progress(value)
        self._notify()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _ensure_not_terminal(self, action: str) -> None:
        if self._state.is_terminal:
            raise NavigationError(
                f"Cannot {action}: session {self._state.session_id} is completed; restart to begin a new one"
            )

    def _derive_can_proceed(self, step: WorkflowStep) -> bool:
        state = self._state
        if step == WorkflowStep.UPLOAD:
            return state.file_descriptor is not None
        if step == WorkflowStep.ANALYSIS:
            return state.analysis_result is not None
        if step == WorkflowStep.INTERPRETATION:
            return state.interpretation_result is not None
        if step == WorkflowStep.ACTION_PLAN:
            return state.interpretation_result is not None
        return False

    def start(
        self,
        document_kind: DocumentKind = DocumentKind.ARTERIAL,
        case_context: Optional[str] = None,
    ) -> WorkflowState:
        """Reset to a fresh session at Upload."""
        self._state = WorkflowState(document_kind=document_kind, case_context=case_context)
        self.logger.info(f"Started workflow session {self._state.session_id}")
        self._notify()
        return self._state

    def restart(self) -> WorkflowState:
        """New session id, progress back to zero. Document kind and case context carry over."""
        previous = self._state
        return self.start(document_kind=previous.document_kind, case_context=previous.case_context)

    def restore(self, state: WorkflowState) -> None:
        """Adopt a recovered snapshot wholesale."""
        self._state = state
        self.logger.info(
            f"Restored session {state.session_id} at {state.current_step.value} ({state.progress}%)"
        )
        self._notify()

    def mark_file_selected(self, file_descriptor: FileDescriptor) -> None:
        self._ensure_not_terminal("select a file")
        self._state.file_descriptor = file_descriptor
        self._state.error = None
        self._state.error_code = None
        if self._state.current_step == WorkflowStep.UPLOAD:
            self._state.can_proceed = True
        self._notify()

    def mark_file_removed(self) -> None:
        self._ensure_not_terminal("remove the file")
        self._state.file_descriptor = None
        if self._state.current_step == WorkflowStep.UPLOAD:
            self._state.can_proceed = False
        self._notify()

    def set_can_proceed(self, value: bool) -> None:
        self._state.can_proceed = value
        self._notify()

    def navigate_to(self, target: WorkflowStep, progress: Optional[int] = None) -> None:
        """
        Move to ``target`` if the gate allows it.

        Args:
            target: Step to move to
            progress: Measured percentage; defaults to the step's canonical value.
                      Stored progress never drops below its current value.

        Raises:
            NavigationError: the move is not permitted
        """
        state = self._state
        if not can_navigate_to(state.current_step, target, state.can_proceed):
            raise NavigationError(
                f"Cannot navigate from {state.current_step.value} to {target.value}"
                f" (can_proceed={state.can_proceed})"
            )

        if target != state.current_step:
            self.logger.debug(f"Step {state.current_step.value} -> {target.value}")

        state.current_step = target
        self._apply_progress(self.canonical_progress(target) if progress is None else progress)
        state.can_proceed = self._derive_can_proceed(target)
        self._notify()

    def set_processing_status(self, status: ProcessingStatus) -> None:
        self._ensure_not_terminal("change the processing status")
        if status == ProcessingStatus.ERROR:
            raise ValueError("Use fail() to enter the error status")
        self._state.processing_status = status
        self._state.error = None
        self._state.error_code = None
        self._notify()

    def fail(self, message: str, code: Optional[str] = None) -> None:
        self._state.processing_status = ProcessingStatus.ERROR
        self._state.error = message
        self._state.error_code = code
        self.logger.warning(f"Session {self._state.session_id} failed: {code or 'ERROR'} {message}")
        self._notify()

    def clear_error(self) -> None:
        if self._state.processing_status == ProcessingStatus.ERROR:
            self._state.processing_status = ProcessingStatus.IDLE
        self._state.error = None
        self._state.error_code = None
        self._notify()

    # ------------------------------------------------------------------
    # Phase payloads
    # ------------------------------------------------------------------

    def attach_analysis(self, result: AnalysisResult) -> None:
        self._ensure_not_terminal("attach an analysis")
        self._state.analysis_result = result
        if self._state.current_step == WorkflowStep.ANALYSIS:
            self._state.can_proceed = True
        self._notify()

    def attach_interpretation(self, result: InterpretationResult) -> None:
        self._ensure_not_terminal("attach an interpretation")
        self._state.interpretation_result = result
        if self._state.current_step in (WorkflowStep.INTERPRETATION, WorkflowStep.ACTION_PLAN):
            self._state.can_proceed = True
        self._notify()

    def attach_action_plan(self, result: ActionPlanResult) -> None:
        self._ensure_not_terminal("attach action plans")
        self._state.action_plan_result = result
        self._notify()

    def complete(self) -> None:
        """
        Finish the session. Requires an interpretation; action plans are optional
        and a partially (or fully) failed fan-out does not block completion.
        """
        state = self._state
        if state.current_step == WorkflowStep.COMPLETED:
            return
        if state.interpretation_result is None:
            raise InputValidationError("Cannot complete the workflow without an interpretation")
        if state.current_step.index < WorkflowStep.INTERPRETATION.index:
            raise NavigationError(
                f"Cannot complete from {state.current_step.value}; interpretation step not reached"
            )

        state.can_proceed = self._derive_can_proceed(state.current_step)
        self.navigate_to(WorkflowStep.COMPLETED)
        state.processing_status = ProcessingStatus.COMPLETED
        state.error = None
        state.error_code = None
        self.logger.info(f"Session {state.session_id} completed")
        self._notify()
