# ============================================================================
# src/bloodgas_ingestion/core/__init__.py
# ============================================================================
"""
Workflow core: data model, state machine, progress, cancellation, persistence.
"""

from .enums import (
    WorkflowStep,
    ProcessingStatus,
    ExtractionMethod,
    ActionPlanStatus,
    DocumentKind,
    STEP_ORDER,
)
from .workflow_state import (
    FileDescriptor,
    Issue,
    ExtractionAttempt,
    AnalysisResult,
    InterpretationResult,
    ActionPlanOutcome,
    ActionPlanResult,
    WorkflowState,
    split_combined_plan_text,
)
from .state_machine import WorkflowStateMachine, can_navigate_to
from .progress import PhaseProgressAggregator, ProgressReporter
from .cancellation import CancellationToken, run_cancellable
from .persistence import (
    PersistedSnapshot,
    SnapshotMetadata,
    RecoveryInfo,
    StoreStats,
    SnapshotStore,
    InMemorySnapshotStore,
    FileSnapshotStore,
)
from .autosave import DebouncedSnapshotWriter
