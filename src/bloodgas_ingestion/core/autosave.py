# ============================================================================
# src/bloodgas_ingestion/core/autosave.py
# ============================================================================
"""
Debounced autosave of workflow state into a SnapshotStore.
"""

import asyncio
import copy
import logging
from typing import Callable, Optional

from ..config import workflow_settings
from .enums import ProcessingStatus
from .persistence import SnapshotStore
from .state_machine import WorkflowStateMachine
from .workflow_state import WorkflowState

logger = logging.getLogger(__name__)

# Nothing worth recovering in these statuses
_SKIPPED_STATUSES = (ProcessingStatus.IDLE, ProcessingStatus.COMPLETED)


class DebouncedSnapshotWriter:
    """
    Observes a state machine and writes snapshots after a quiet period.

    Phase transitions call ``flush()`` to write immediately; completion
    calls ``discard()`` so finished sessions leave no snapshot behind.
    Outside a running loop, changes are written through immediately.
    """

    def __init__(
        self,
        store: SnapshotStore,
        machine: WorkflowStateMachine,
        delay: Optional[float] = None,
    ):
        self.store = store
        self.machine = machine
        self.delay = workflow_settings.AUTOSAVE_DEBOUNCE_SECONDS if delay is None else delay
        self._pending: Optional[WorkflowState] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = machine.subscribe(self._on_change)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def _on_change(self, state: WorkflowState) -> None:
        if state.processing_status in _SKIPPED_STATUSES:
            return
        self._pending = copy.deepcopy(state)
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to debounce on; write through
            self._write_pending()
            return
        self._timer = loop.call_later(self.delay, self._write_pending)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _write_pending(self) -> None:
        self._timer = None
        pending, self._pending = self._pending, None
        if pending is None:
            return
        try:
            self.store.save(pending)
        except Exception:
            # Runs on the loop's callback path; a failed autosave must not kill the loop
            logger.exception(f"Autosave failed for session {pending.session_id}")

    def flush(self) -> None:
        """Write the current state now, whatever its status, unless the session is finished."""
        self._cancel_timer()
        self._pending = None
        state = self.machine.state
        if state.is_terminal:
            return
        self.store.save(copy.deepcopy(state))

    def discard(self, session_id: str) -> None:
        """Drop any pending write and delete the stored snapshot."""
        self._cancel_timer()
        if self._pending is not None and self._pending.session_id == session_id:
            self._pending = None
        self.store.delete(session_id)

    def close(self) -> None:
        self._cancel_timer()
        self._pending = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
