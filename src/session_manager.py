"""
Session store for sub-agent invocation lineages.

Keeps call, depth and refinement counters per session and writes every
change through to disk before acknowledging it. Layout under the root:

    active/{session_id}.json
    completed/{session_id}.json
    refinements/{session_id}__{role}__{fingerprint}.json

The store is a plain object injected into the components that need it.
Mutations are serialized per session id; different sessions never wait
on each other.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from .config import LimitsConfig, StoreConfig
from .errors import (
    CallBudgetExceeded,
    DepthExceeded,
    RefinementBudgetExceeded,
    SessionNotFound,
    SubAgentCannotSpawn,
)
from .session_schema import RefinementLineage, SessionRecord, lineage_key

logger = logging.getLogger(__name__)


def task_fingerprint(task: str, context: str, role: str) -> str:
    """Stable hash identifying the same task asked again by the same role."""
    content = f"{task}|{context}|{role}"
    return hashlib.blake2b(content.encode(), digest_size=8).hexdigest()


def _atomic_write(directory: Path, name: str, model: BaseModel) -> Path:
    """
    Atomically write a pydantic model as JSON.

    Uses write-to-temp-then-rename so a crash mid-write never leaves a
    truncated record behind.
    """
    target_path = directory / name
    fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix="session_", dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(model.model_dump_json(indent=2))
        os.replace(temp_path, target_path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
    return target_path


class SessionStore:
    """
    Durable session bookkeeping with loop and budget protection.

    Example:
        store = SessionStore(Path("/tmp/sessions"))
        root = store.admit()
        child = store.admit(parent_id=root)
        store.record_call(root, "Security Engineer")
    """

    def __init__(
        self,
        root: Path | None = None,
        limits: LimitsConfig | None = None,
        load_existing: bool = True,
    ):
        """
        Initialize the store.

        Args:
            root: Store root directory (default: ~/.secondbrain/sessions)
            limits: Call/depth/parallelism ceilings
            load_existing: Reload persisted active sessions on startup
        """
        self.root = root or StoreConfig().root
        self.limits = limits or LimitsConfig()
        self.active_dir = self.root / "active"
        self.completed_dir = self.root / "completed"
        self.refinements_dir = self.root / "refinements"
        for directory in (self.active_dir, self.completed_dir, self.refinements_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._sessions: dict[str, SessionRecord] = {}
        self._locks: dict[str, threading.RLock] = {}
        # Guards the two dicts above, never held while a record is mutated
        self._registry_lock = threading.Lock()

        if load_existing:
            self._reload()

    @property
    def idle_timeout_seconds(self) -> float:
        return self.limits.session_timeout_minutes * 60.0

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, parent_id: str | None = None) -> str:
        """
        Create a session, optionally as a child of an existing one.

        Args:
            parent_id: Session spawning this one, None for a top-level task

        Returns:
            The new session id

        Raises:
            SessionNotFound: Parent id is unknown
            SubAgentCannotSpawn: Parent is itself a sub-agent session
            DepthExceeded: Child would be deeper than max_depth
            CallBudgetExceeded: Parent has no calls left
        """
        if parent_id is None:
            record = SessionRecord(session_id=self._new_id())
            self._register(record)
            logger.info(f"Admitted top-level session {record.session_id}")
            return record.session_id

        with self._lock_for(parent_id):
            parent = self._require(parent_id)
            if parent.is_sub_agent and not self.limits.sub_agents_can_spawn:
                raise SubAgentCannotSpawn(
                    f"Sub-agent session {parent_id} cannot spawn further sub-agents",
                    session_id=parent_id,
                )
            if parent.current_depth + 1 > self.limits.max_depth:
                raise DepthExceeded(
                    f"Maximum depth {self.limits.max_depth} reached for session {parent_id}",
                    session_id=parent_id,
                    limit=self.limits.max_depth,
                )
            if parent.total_calls >= self.limits.max_total_calls:
                raise CallBudgetExceeded(
                    f"Session {parent_id} has used all {self.limits.max_total_calls} calls",
                    session_id=parent_id,
                    limit=self.limits.max_total_calls,
                )
            updated = parent.model_copy(deep=True)
            updated.touch()
            self._persist(updated)

            child = SessionRecord(
                session_id=self._new_id(),
                is_sub_agent=True,
                current_depth=parent.current_depth + 1,
                parent_session_id=parent_id,
            )
            self._register(child)

        logger.info(
            f"Admitted sub-agent session {child.session_id} "
            f"(parent={parent_id}, depth={child.current_depth})"
        )
        return child.session_id

    def admit_parallel(self, count: int) -> bool:
        """Pure check: can this many agents be dispatched at once."""
        return 0 <= count <= self.limits.max_parallel_agents

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def record_call(self, session_id: str, role: str) -> int:
        """
        Charge one provider invocation to a session.

        Must be called before the invocation is issued.

        Returns:
            The session's new total call count

        Raises:
            SessionNotFound: Unknown session
            CallBudgetExceeded: Session is at its call ceiling (counters unchanged)
        """
        with self._lock_for(session_id):
            record = self._require(session_id)
            if record.total_calls >= self.limits.max_total_calls:
                raise CallBudgetExceeded(
                    f"Session {session_id} has used all {self.limits.max_total_calls} calls",
                    session_id=session_id,
                    limit=self.limits.max_total_calls,
                )
            updated = record.model_copy(deep=True)
            updated.total_calls += 1
            updated.per_role_calls[role] = updated.per_role_calls.get(role, 0) + 1
            updated.touch()
            self._persist(updated)
            return updated.total_calls

    def record_refinement(self, session_id: str, fingerprint: str) -> int:
        """
        Count one refinement attempt for a task.

        Returns:
            The refinement count for this fingerprint after the increment

        Raises:
            SessionNotFound: Unknown session
            RefinementBudgetExceeded: Task already refined max times
        """
        with self._lock_for(session_id):
            record = self._require(session_id)
            current = record.refinement_counts.get(fingerprint, 0)
            ceiling = self.limits.max_refinement_iterations
            if current >= ceiling:
                raise RefinementBudgetExceeded(
                    f"Task {fingerprint} in session {session_id} already refined {current} times",
                    session_id=session_id,
                    limit=ceiling,
                )
            updated = record.model_copy(deep=True)
            updated.refinement_counts[fingerprint] = current + 1
            updated.touch()
            self._persist(updated)
            return current + 1

    def refinement_count(self, session_id: str, fingerprint: str) -> int:
        with self._lock_for(session_id):
            return self._require(session_id).refinement_counts.get(fingerprint, 0)

    def remaining_calls(self, session_id: str) -> int:
        with self._lock_for(session_id):
            record = self._require(session_id)
            return max(0, self.limits.max_total_calls - record.total_calls)

    # ------------------------------------------------------------------
    # Lookup and lifecycle
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> SessionRecord:
        """Snapshot of a session record."""
        with self._lock_for(session_id):
            return self._require(session_id).model_copy(deep=True)

    def exists(self, session_id: str) -> bool:
        with self._registry_lock:
            return session_id in self._sessions

    def list_sessions(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._sessions)

    def complete(self, session_id: str) -> SessionRecord:
        """
        Mark a session finished and move it to completed/.

        Raises:
            SessionNotFound: Unknown session
        """
        with self._lock_for(session_id):
            record = self._require(session_id).model_copy(deep=True)
            record.completed_at = time.time()
            _atomic_write(self.completed_dir, f"{session_id}.json", record)
            self._remove_active(session_id)
        logger.info(f"Completed session {session_id} ({record.total_calls} calls)")
        return record

    def sweep(self, max_idle_seconds: float | None = None) -> list[str]:
        """
        Drop sessions idle longer than max_idle_seconds.

        Args:
            max_idle_seconds: Idle limit (default: session timeout)

        Returns:
            Ids of removed sessions
        """
        limit = self.idle_timeout_seconds if max_idle_seconds is None else max_idle_seconds
        now = time.time()
        removed: list[str] = []
        for session_id in self.list_sessions():
            with self._lock_for(session_id):
                record = self._sessions.get(session_id)
                if record is None or record.idle_seconds(now) <= limit:
                    continue
                self._remove_active(session_id)
                removed.append(session_id)
        if removed:
            logger.info(f"Swept {len(removed)} idle sessions")
        return removed

    # ------------------------------------------------------------------
    # Refinement lineages
    # ------------------------------------------------------------------

    def save_lineage(self, lineage: RefinementLineage) -> Path:
        with self._lock_for(lineage.session_id):
            return _atomic_write(self.refinements_dir, f"{lineage.key}.json", lineage)

    def load_lineage(self, session_id: str, role: str, fingerprint: str) -> RefinementLineage | None:
        path = self.refinements_dir / f"{lineage_key(session_id, role, fingerprint)}.json"
        if not path.exists():
            return None
        try:
            return RefinementLineage.model_validate_json(path.read_text())
        except (ValidationError, OSError) as e:
            logger.warning(f"Ignoring unreadable refinement lineage {path.name}: {e}")
            return None

    def list_lineages(self, session_id: str | None = None) -> list[RefinementLineage]:
        """All persisted lineages, optionally for one session."""
        pattern = f"{session_id}__*.json" if session_id else "*.json"
        lineages: list[RefinementLineage] = []
        for path in sorted(self.refinements_dir.glob(pattern)):
            try:
                lineages.append(RefinementLineage.model_validate_json(path.read_text()))
            except (ValidationError, OSError) as e:
                logger.warning(f"Ignoring unreadable refinement lineage {path.name}: {e}")
        return lineages

    def delete_lineage(self, lineage: RefinementLineage) -> None:
        with self._lock_for(lineage.session_id):
            (self.refinements_dir / f"{lineage.key}.json").unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def session_stats(self, session_id: str) -> dict[str, Any]:
        record = self.get(session_id)
        return {
            "session_id": record.session_id,
            "total_calls": record.total_calls,
            "per_role_calls": dict(record.per_role_calls),
            "total_refinements": record.total_refinements,
            "current_depth": record.current_depth,
            "is_sub_agent": record.is_sub_agent,
            "remaining_calls": max(0, self.limits.max_total_calls - record.total_calls),
            "age_seconds": time.time() - record.created_at,
        }

    def global_stats(self) -> dict[str, Any]:
        with self._registry_lock:
            records = [r.model_copy(deep=True) for r in self._sessions.values()]
        total_calls = sum(r.total_calls for r in records)
        return {
            "active_sessions": len(records),
            "sub_agent_sessions": sum(1 for r in records if r.is_sub_agent),
            "total_calls": total_calls,
            "total_refinements": sum(r.total_refinements for r in records),
            "average_calls_per_session": total_calls / len(records) if records else 0.0,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        return f"session_{uuid.uuid4().hex[:12]}"

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    def _require(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def _register(self, record: SessionRecord) -> None:
        _atomic_write(self.active_dir, f"{record.session_id}.json", record)
        with self._registry_lock:
            self._sessions[record.session_id] = record

    def _persist(self, record: SessionRecord) -> None:
        # Disk first, then memory: readers never see an unacknowledged change
        _atomic_write(self.active_dir, f"{record.session_id}.json", record)
        with self._registry_lock:
            self._sessions[record.session_id] = record

    def _remove_active(self, session_id: str) -> None:
        try:
            (self.active_dir / f"{session_id}.json").unlink()
        except FileNotFoundError:
            pass
        with self._registry_lock:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)

    def _reload(self) -> None:
        now = time.time()
        loaded = dropped = 0
        for path in sorted(self.active_dir.glob("*.json")):
            try:
                record = SessionRecord.model_validate_json(path.read_text())
            except (ValidationError, OSError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            if record.idle_seconds(now) > self.idle_timeout_seconds:
                path.unlink(missing_ok=True)
                dropped += 1
                continue
            self._sessions[record.session_id] = record
            loaded += 1
        if loaded or dropped:
            logger.info(f"Reloaded {loaded} sessions, dropped {dropped} stale")


__all__ = [
    "SessionStore",
    "task_fingerprint",
]
