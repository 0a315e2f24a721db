# ============================================================================
# src/bloodgas_ingestion/core/persistence.py
# ============================================================================
"""
Workflow Persistence & Recovery Store

Features:
- One snapshot per session, overwritten on every save
- Version stamp; snapshots from another version are discarded on load
- Retention window and maximum snapshot count, enforced after every save
- Recovery counter incremented on each load
- Per-session locks so eviction never races a save for the same key
- Pluggable medium: in-memory or one JSON file per session

Snapshot policy lives in SnapshotStore; subclasses only implement the
raw key/value primitives.
"""

import json
import logging
import os
import re
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..config import workflow_settings
from ..config.workflow_config import WorkflowSettings
from ..utils.exceptions import SnapshotError
from .workflow_state import FileDescriptor, WorkflowState


@dataclass
class SnapshotMetadata:
    file_descriptor: Optional[FileDescriptor] = None
    recovery_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileDescriptor": self.file_descriptor.to_dict() if self.file_descriptor else None,
            "recoveryCount": self.recovery_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotMetadata":
        descriptor = data.get("fileDescriptor")
        return cls(
            file_descriptor=FileDescriptor.from_dict(descriptor) if descriptor else None,
            recovery_count=int(data.get("recoveryCount", 0)),
        )


@dataclass
class PersistedSnapshot:
    """
    Durable point-in-time copy of a WorkflowState.

    Attributes:
        version: Format version the snapshot was written with
        timestamp: Epoch seconds of the save; strictly increasing per store
        session_id: Key of the snapshot
        workflow: The saved state
        metadata: File descriptor and recovery counter
    """
    version: str
    timestamp: float
    session_id: str
    workflow: WorkflowState
    metadata: SnapshotMetadata = field(default_factory=SnapshotMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "workflow": self.workflow.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedSnapshot":
        return cls(
            version=str(data["version"]),
            timestamp=float(data["timestamp"]),
            session_id=data["sessionId"],
            workflow=WorkflowState.from_dict(data["workflow"]),
            metadata=SnapshotMetadata.from_dict(data.get("metadata") or {}),
        )


@dataclass
class RecoveryInfo:
    """What a recovery prompt needs without loading the full snapshot."""
    session_id: str
    timestamp: float
    current_step: str
    progress: int
    recovery_count: int
    file_name: Optional[str] = None


@dataclass
class StoreStats:
    total_snapshots: int = 0
    recoverable_snapshots: int = 0
    bytes_used: int = 0
    oldest_timestamp: Optional[float] = None
    newest_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_snapshots": self.total_snapshots,
            "recoverable_snapshots": self.recoverable_snapshots,
            "bytes_used": self.bytes_used,
            "oldest_timestamp": self.oldest_timestamp,
            "newest_timestamp": self.newest_timestamp,
        }


class SnapshotStore(ABC):
    """
    Keyed store of PersistedSnapshot records.

    Example:
        store = FileSnapshotStore(Path("data/snapshots"))
        store.save(machine.state)
        for info in store.list_recoverable():
            snapshot = store.load(info.session_id)
    """

    def __init__(
        self,
        settings: Optional[WorkflowSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or workflow_settings
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._key_locks: Dict[str, threading.RLock] = {}
        self._timestamp_lock = threading.Lock()
        self._last_timestamp = 0.0
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Medium primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _read(self, key: str) -> Optional[str]:
        """Raw serialized snapshot, or None if absent."""

    @abstractmethod
    def _write(self, key: str, payload: str) -> None:
        """Replace the record for ``key`` atomically."""

    @abstractmethod
    def _remove(self, key: str) -> None:
        """Delete the record for ``key`` if present."""

    @abstractmethod
    def _keys(self) -> List[str]:
        """All stored keys."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock

    def _next_timestamp(self) -> float:
        # Strictly increasing per store
        with self._timestamp_lock:
            now = self._clock()
            if now <= self._last_timestamp:
                now = self._last_timestamp + 1e-6
            self._last_timestamp = now
            return now

    @property
    def retention_seconds(self) -> float:
        return self.settings.SNAPSHOT_RETENTION_DAYS * 86400.0

    def _is_expired(self, snapshot: PersistedSnapshot) -> bool:
        return self._clock() - snapshot.timestamp > self.retention_seconds

    def _decode(self, key: str, payload: str) -> Optional[PersistedSnapshot]:
        """Parse a stored record; unusable records are removed and reported as absent."""
        try:
            snapshot = PersistedSnapshot.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Discarding unreadable snapshot {key}: {e}")
            self._remove(key)
            return None

        if snapshot.version != self.settings.SNAPSHOT_VERSION:
            self.logger.info(
                f"Discarding snapshot {key}: version {snapshot.version} != {self.settings.SNAPSHOT_VERSION}"
            )
            self._remove(key)
            return None

        if self._is_expired(snapshot):
            self.logger.info(f"Discarding expired snapshot {key}")
            self._remove(key)
            return None

        return snapshot

    def _get(self, key: str) -> Optional[PersistedSnapshot]:
        payload = self._read(key)
        if payload is None:
            return None
        return self._decode(key, payload)

    def _iter_snapshots(self) -> Iterator[tuple]:
        for key in self._keys():
            with self._lock_for(key):
                payload = self._read(key)
                if payload is None:
                    continue
                snapshot = self._decode(key, payload)
            if snapshot is not None:
                yield key, snapshot, len(payload.encode("utf-8"))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(
        self,
        state: WorkflowState,
        file_descriptor: Optional[FileDescriptor] = None,
    ) -> PersistedSnapshot:
        """
        Write (or overwrite) the snapshot for ``state.session_id``.

        The recovery counter of an existing snapshot is preserved. Retention
        and the count limit are enforced afterwards.
        """
        key = state.session_id
        with self._lock_for(key):
            existing = self._get(key)
            metadata = SnapshotMetadata(
                file_descriptor=(
                    file_descriptor
                    or state.file_descriptor
                    or (existing.metadata.file_descriptor if existing else None)
                ),
                recovery_count=existing.metadata.recovery_count if existing else 0,
            )
            snapshot = PersistedSnapshot(
                version=self.settings.SNAPSHOT_VERSION,
                timestamp=self._next_timestamp(),
                session_id=key,
                workflow=state,
                metadata=metadata,
            )
            try:
                self._write(key, json.dumps(snapshot.to_dict()))
            except (OSError, TypeError, ValueError) as e:
                raise SnapshotError(f"Failed to save snapshot {key}: {e}") from e

        self.logger.debug(
            f"Saved snapshot {key} at {state.current_step.value} ({state.progress}%)"
        )
        self.evict()
        return snapshot

    def load(self, session_id: str) -> Optional[PersistedSnapshot]:
        """
        Load a snapshot for recovery, incrementing its recovery counter.

        Returns None for absent, expired or version-mismatched snapshots
        (the latter two are deleted).
        """
        with self._lock_for(session_id):
            snapshot = self._get(session_id)
            if snapshot is None:
                return None

            snapshot.metadata.recovery_count += 1
            try:
                self._write(session_id, json.dumps(snapshot.to_dict()))
            except OSError as e:
                raise SnapshotError(f"Failed to update snapshot {session_id}: {e}") from e

        self.logger.info(
            f"Recovered session {session_id} (recovery #{snapshot.metadata.recovery_count})"
        )
        return snapshot

    def list_recoverable(self) -> List[RecoveryInfo]:
        """Sessions that stopped mid-way, newest first."""
        infos = []
        for _, snapshot, _ in self._iter_snapshots():
            if not snapshot.workflow.is_recoverable:
                continue
            descriptor = snapshot.metadata.file_descriptor or snapshot.workflow.file_descriptor
            infos.append(RecoveryInfo(
                session_id=snapshot.session_id,
                timestamp=snapshot.timestamp,
                current_step=snapshot.workflow.current_step.value,
                progress=snapshot.workflow.progress,
                recovery_count=snapshot.metadata.recovery_count,
                file_name=descriptor.name if descriptor else None,
            ))
        infos.sort(key=lambda info: info.timestamp, reverse=True)
        return infos

    def evict(self) -> int:
        """
        Drop expired snapshots, then the oldest ones beyond MAX_SNAPSHOTS.

        Returns:
            Number of snapshots removed
        """
        before = len(self._keys())
        survivors = sorted(
            ((snapshot.timestamp, key) for key, snapshot, _ in self._iter_snapshots()),
            reverse=True,
        )
        removed = before - len(survivors)

        for seen_timestamp, key in survivors[self.settings.MAX_SNAPSHOTS:]:
            with self._lock_for(key):
                # Re-read under the key lock: a concurrent save makes it the newest, keep it
                current = self._get(key)
                if current is None or current.timestamp != seen_timestamp:
                    continue
                self._remove(key)
                removed += 1

        if removed:
            self.logger.debug(f"Evicted {removed} snapshot(s)")
        return removed

    def delete(self, session_id: str) -> None:
        with self._lock_for(session_id):
            self._remove(session_id)

    def clear(self) -> int:
        keys = self._keys()
        for key in keys:
            self.delete(key)
        self.logger.info(f"Cleared {len(keys)} snapshot(s)")
        return len(keys)

    def stats(self) -> StoreStats:
        stats = StoreStats()
        for _, snapshot, size in self._iter_snapshots():
            stats.total_snapshots += 1
            stats.bytes_used += size
            if snapshot.workflow.is_recoverable:
                stats.recoverable_snapshots += 1
            if stats.oldest_timestamp is None or snapshot.timestamp < stats.oldest_timestamp:
                stats.oldest_timestamp = snapshot.timestamp
            if stats.newest_timestamp is None or snapshot.timestamp > stats.newest_timestamp:
                stats.newest_timestamp = snapshot.timestamp
        return stats


class InMemorySnapshotStore(SnapshotStore):
    """Snapshots held as serialized strings in a dict."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._records: Dict[str, str] = {}
        self._records_lock = threading.Lock()

    def _read(self, key: str) -> Optional[str]:
        with self._records_lock:
            return self._records.get(key)

    def _write(self, key: str, payload: str) -> None:
        with self._records_lock:
            self._records[key] = payload

    def _remove(self, key: str) -> None:
        with self._records_lock:
            self._records.pop(key, None)

    def _keys(self) -> List[str]:
        with self._records_lock:
            return list(self._records)


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+$")


class FileSnapshotStore(SnapshotStore):
    """One ``<session_id>.json`` file per snapshot, replaced atomically."""

    SUFFIX = ".json"

    def __init__(self, directory: Optional[Path] = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if directory is None:
            from ..config import base_settings
            directory = base_settings.SNAPSHOT_DIR
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise SnapshotError(f"Invalid snapshot key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, key: str, payload: str) -> None:
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def _keys(self) -> List[str]:
        return sorted(
            path.stem for path in self.directory.glob(f"*{self.SUFFIX}")
            if _SAFE_KEY.match(path.stem)
        )
