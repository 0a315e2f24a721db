# ============================================================================
# tests/unit/test_persistence.py
# ============================================================================
"""
Tests for snapshot persistence, recovery and eviction
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from src.bloodgas_ingestion.config.workflow_config import WorkflowSettings
from src.bloodgas_ingestion.core.autosave import DebouncedSnapshotWriter
from src.bloodgas_ingestion.core.enums import (
    ActionPlanStatus,
    ExtractionMethod,
    ProcessingStatus,
    WorkflowStep,
)
from src.bloodgas_ingestion.core.persistence import FileSnapshotStore, InMemorySnapshotStore
from src.bloodgas_ingestion.core.state_machine import WorkflowStateMachine
from src.bloodgas_ingestion.core.workflow_state import (
    ActionPlanOutcome,
    ActionPlanResult,
    AnalysisResult,
    FileDescriptor,
    InterpretationResult,
    Issue,
    WorkflowState,
)
from src.bloodgas_ingestion.utils.exceptions import SnapshotError

DAY = 86400.0


def _state(step=WorkflowStep.ANALYSIS, status=ProcessingStatus.ANALYZING, progress=25):
    return WorkflowState(
        current_step=step,
        processing_status=status,
        progress=progress,
        file_descriptor=FileDescriptor(name="abg.png", content_type="image/png", size=2048),
    )


def _full_state():
    issue = Issue("Hypoxemia", "pO2 58 mmHg", "Increase FiO2?")
    return WorkflowState(
        current_step=WorkflowStep.ACTION_PLAN,
        processing_status=ProcessingStatus.IDLE,
        progress=90,
        can_proceed=True,
        file_descriptor=FileDescriptor(name="abg.pdf", content_type="application/pdf", size=10),
        case_context="Post-op day 1",
        analysis_result=AnalysisResult(
            extracted_text="pH 7.31",
            method=ExtractionMethod.VISION,
            confidence=0.95,
            quality_score=0.4,
            processing_time_ms=812.5,
            request_id="vision-1",
        ),
        interpretation_result=InterpretationResult(
            interpretation_text="Respiratory acidosis",
            issues=[issue],
            processing_time_ms=300.0,
            request_id="interp-1",
        ),
        action_plan_result=ActionPlanResult(
            batch_id="abc123",
            outcomes=[ActionPlanOutcome(
                issue=issue,
                status=ActionPlanStatus.SUCCESS,
                plan_text="Titrate oxygen",
                processing_time_ms=50.0,
                correlation_id="abc123-issue-0",
            )],
            combined_plan_text="## Action Plan 1: Hypoxemia\n\nTitrate oxygen",
            processing_time_ms=55.0,
        ),
    )


class TestSnapshotStore:

    def test_round_trip(self, memory_store):
        state = _full_state()
        memory_store.save(state)

        snapshot = memory_store.load(state.session_id)
        assert snapshot is not None
        assert snapshot.workflow == state
        assert snapshot.metadata.file_descriptor == state.file_descriptor

    def test_load_missing(self, memory_store):
        assert memory_store.load("no-such-session") is None

    def test_recovery_count_increments_per_load(self, memory_store):
        state = _state()
        memory_store.save(state)

        assert memory_store.load(state.session_id).metadata.recovery_count == 1
        assert memory_store.load(state.session_id).metadata.recovery_count == 2

    def test_save_preserves_recovery_count(self, memory_store):
        state = _state()
        memory_store.save(state)
        memory_store.load(state.session_id)

        state.progress = 40
        snapshot = memory_store.save(state)
        assert snapshot.metadata.recovery_count == 1

    def test_timestamps_strictly_increase(self, memory_store):
        first = memory_store.save(_state())
        second = memory_store.save(_state())
        assert second.timestamp > first.timestamp

    def test_evicts_beyond_max_count(self, memory_store, clock):
        states = []
        for _ in range(7):
            state = _state()
            memory_store.save(state)
            states.append(state)
            clock.advance(1)

        remaining = {info.session_id for info in memory_store.list_recoverable()}
        assert remaining == {s.session_id for s in states[-5:]}

    def test_expired_snapshot_discarded(self, memory_store, clock):
        state = _state()
        memory_store.save(state)

        clock.advance(8 * DAY)
        assert memory_store.load(state.session_id) is None
        assert memory_store.stats().total_snapshots == 0

    def test_snapshot_within_retention_kept(self, memory_store, clock):
        state = _state()
        memory_store.save(state)

        clock.advance(6 * DAY)
        assert memory_store.load(state.session_id) is not None

    def test_list_recoverable_newest_first(self, memory_store, clock):
        older, newer = _state(), _state(progress=50)
        memory_store.save(older)
        clock.advance(10)
        memory_store.save(newer)

        infos = memory_store.list_recoverable()
        assert [i.session_id for i in infos] == [newer.session_id, older.session_id]
        assert infos[0].progress == 50
        assert infos[0].file_name == "abg.png"

    def test_completed_and_failed_sessions_not_recoverable(self, memory_store):
        done = _state(step=WorkflowStep.COMPLETED, status=ProcessingStatus.COMPLETED, progress=100)
        failed = _state(status=ProcessingStatus.ERROR)
        live = _state()
        for state in (done, failed, live):
            memory_store.save(state)

        assert [i.session_id for i in memory_store.list_recoverable()] == [live.session_id]

        stats = memory_store.stats()
        assert stats.total_snapshots == 3
        assert stats.recoverable_snapshots == 1
        assert stats.bytes_used > 0
        assert stats.oldest_timestamp < stats.newest_timestamp

    def test_delete_and_clear(self, memory_store):
        a, b = _state(), _state()
        memory_store.save(a)
        memory_store.save(b)

        memory_store.delete(a.session_id)
        assert memory_store.load(a.session_id) is None
        assert memory_store.clear() == 1
        assert memory_store.stats().total_snapshots == 0

    def test_unreadable_record_discarded(self, memory_store):
        memory_store._write("broken", "{not json")
        assert memory_store.load("broken") is None
        assert memory_store._read("broken") is None


class TestFileSnapshotStore:

    def test_persists_across_instances(self, tmp_path, workflow_settings):
        state = _full_state()
        FileSnapshotStore(tmp_path, settings=workflow_settings).save(state)

        reopened = FileSnapshotStore(tmp_path, settings=workflow_settings)
        snapshot = reopened.load(state.session_id)
        assert snapshot.workflow == state
        assert (tmp_path / f"{state.session_id}.json").exists()

    def test_file_is_camel_case_json(self, tmp_path, workflow_settings):
        state = _state()
        FileSnapshotStore(tmp_path, settings=workflow_settings).save(state)

        data = json.loads((tmp_path / f"{state.session_id}.json").read_text())
        assert data["version"] == "1.0"
        assert data["sessionId"] == state.session_id
        assert data["workflow"]["currentStep"] == "analysis"
        assert data["metadata"]["recoveryCount"] == 0

    def test_version_mismatch_discarded(self, tmp_path, workflow_settings):
        state = _state()
        old = WorkflowSettings(_env_file=None, SNAPSHOT_VERSION="0.9")
        FileSnapshotStore(tmp_path, settings=old).save(state)

        store = FileSnapshotStore(tmp_path, settings=workflow_settings)
        assert store.load(state.session_id) is None
        assert not (tmp_path / f"{state.session_id}.json").exists()

    def test_rejects_unsafe_keys(self, tmp_path, workflow_settings):
        store = FileSnapshotStore(tmp_path, settings=workflow_settings)
        with pytest.raises(SnapshotError):
            store.load("../escape")

    def test_no_temp_files_left(self, tmp_path, workflow_settings):
        store = FileSnapshotStore(tmp_path, settings=workflow_settings)
        store.save(_state())
        assert not list(tmp_path.glob("*.tmp"))


class TestDebouncedSnapshotWriter:

    @pytest.fixture
    def machine(self, workflow_settings):
        return WorkflowStateMachine(settings=workflow_settings)

    def test_idle_changes_not_written(self, memory_store, machine):
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=0)
        machine.mark_file_selected(FileDescriptor(name="abg.jpg"))
        assert memory_store.stats().total_snapshots == 0
        writer.close()

    def test_writes_through_without_loop(self, memory_store, machine):
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=5)
        machine.set_processing_status(ProcessingStatus.ANALYZING)
        assert memory_store.load(machine.state.session_id) is not None
        writer.close()

    @pytest.mark.asyncio
    async def test_debounces_bursts(self, memory_store, machine):
        memory_store.save = MagicMock(wraps=memory_store.save)
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=0.05)

        machine.set_processing_status(ProcessingStatus.ANALYZING)
        machine.set_progress(10)
        machine.set_progress(20)
        assert writer.has_pending
        await asyncio.sleep(0.1)

        assert memory_store.save.call_count == 1
        saved = memory_store.save.call_args[0][0]
        assert saved.progress == 20
        writer.close()

    @pytest.mark.asyncio
    async def test_flush_writes_immediately(self, memory_store, machine):
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=10)
        machine.set_processing_status(ProcessingStatus.ANALYZING)
        writer.flush()

        assert not writer.has_pending
        assert memory_store.load(machine.state.session_id) is not None
        writer.close()

    @pytest.mark.asyncio
    async def test_discard_removes_snapshot(self, memory_store, machine):
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=10)
        machine.set_processing_status(ProcessingStatus.ANALYZING)
        writer.flush()

        writer.discard(machine.state.session_id)
        assert memory_store.load(machine.state.session_id) is None
        writer.close()

    def test_close_stops_observing(self, memory_store, machine):
        writer = DebouncedSnapshotWriter(memory_store, machine, delay=0)
        writer.close()
        machine.set_processing_status(ProcessingStatus.ANALYZING)
        assert memory_store.stats().total_snapshots == 0
