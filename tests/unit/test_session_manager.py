"""
Unit tests for session_manager module.

Covers admission, call and refinement budgets, persistence and sweeping.
"""

import json
import threading
import time

import pytest

from src.config import LimitsConfig
from src.errors import (
    CallBudgetExceeded,
    DepthExceeded,
    RefinementBudgetExceeded,
    SessionNotFound,
    SubAgentCannotSpawn,
)
from src.session_manager import SessionStore, task_fingerprint
from src.session_schema import QualityTrend, RefinementLineage


class TestAdmission:
    """Tests for SessionStore.admit."""

    def test_admit_top_level(self, store):
        """Top-level sessions start at depth 0 and are not sub-agents."""
        session_id = store.admit()
        record = store.get(session_id)

        assert record.current_depth == 0
        assert record.is_sub_agent is False
        assert record.parent_session_id is None
        assert (store.active_dir / f"{session_id}.json").exists()

    def test_child_depth_is_parent_plus_one(self, store):
        """A child session sits one level below its parent."""
        parent = store.admit()
        child = store.admit(parent_id=parent)
        record = store.get(child)

        assert record.current_depth == 1
        assert record.is_sub_agent is True
        assert record.parent_session_id == parent

    def test_sub_agent_cannot_spawn(self, store):
        """Sub-agent sessions may not admit children by default."""
        parent = store.admit()
        child = store.admit(parent_id=parent)

        with pytest.raises(SubAgentCannotSpawn) as exc_info:
            store.admit(parent_id=child)
        assert exc_info.value.session_id == child

    def test_sub_agent_spawn_allowed_when_configured(self, temp_store_dir):
        """sub_agents_can_spawn lifts the rule but depth still applies."""
        limits = LimitsConfig(max_depth=2, sub_agents_can_spawn=True)
        store = SessionStore(temp_store_dir, limits)
        root = store.admit()
        child = store.admit(parent_id=root)
        grandchild = store.admit(parent_id=child)

        assert store.get(grandchild).current_depth == 2
        with pytest.raises(DepthExceeded) as exc_info:
            store.admit(parent_id=grandchild)
        assert exc_info.value.limit == 2

    def test_admit_unknown_parent(self, store):
        """Unknown parent ids are rejected."""
        with pytest.raises(SessionNotFound):
            store.admit(parent_id="session_missing")

    def test_admit_rejects_exhausted_parent(self, temp_store_dir):
        """A parent with no calls left cannot spawn."""
        store = SessionStore(temp_store_dir, LimitsConfig(max_total_calls=1))
        parent = store.admit()
        store.record_call(parent, "Analyst")

        with pytest.raises(CallBudgetExceeded):
            store.admit(parent_id=parent)

    def test_admit_parallel(self, store, limits):
        """Parallel admission is a pure check against max_parallel_agents."""
        assert store.admit_parallel(limits.max_parallel_agents) is True
        assert store.admit_parallel(limits.max_parallel_agents + 1) is False
        assert store.admit_parallel(0) is True


class TestCallBudget:
    """Tests for record_call and remaining_calls."""

    def test_record_call_counts_per_role(self, store):
        """Calls are counted in total and per role."""
        session_id = store.admit()
        store.record_call(session_id, "Analyst")
        store.record_call(session_id, "Analyst")
        store.record_call(session_id, "Security Engineer")

        record = store.get(session_id)
        assert record.total_calls == 3
        assert record.per_role_calls == {"Analyst": 2, "Security Engineer": 1}
        assert store.remaining_calls(session_id) == 7

    def test_budget_exhaustion_leaves_counters_unchanged(self, temp_store_dir):
        """The call past the ceiling fails and changes nothing."""
        store = SessionStore(temp_store_dir, LimitsConfig(max_total_calls=3))
        session_id = store.admit()
        for _ in range(3):
            store.record_call(session_id, "Analyst")

        with pytest.raises(CallBudgetExceeded):
            store.record_call(session_id, "Analyst")

        record = store.get(session_id)
        assert record.total_calls == 3
        assert record.per_role_calls == {"Analyst": 3}
        assert store.remaining_calls(session_id) == 0

    def test_record_call_unknown_session(self, store):
        """Unknown sessions raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            store.record_call("session_missing", "Analyst")

    def test_concurrent_calls_never_exceed_budget(self, temp_store_dir):
        """Concurrent record_call on one session is linearized."""
        store = SessionStore(temp_store_dir, LimitsConfig(max_total_calls=20))
        session_id = store.admit()
        failures: list[Exception] = []

        def worker():
            for _ in range(10):
                try:
                    store.record_call(session_id, "Analyst")
                except CallBudgetExceeded as e:
                    failures.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get(session_id).total_calls == 20
        assert len(failures) == 20

    def test_get_returns_snapshot(self, store):
        """Mutating a returned record does not touch the store."""
        session_id = store.admit()
        snapshot = store.get(session_id)
        snapshot.total_calls = 99

        assert store.get(session_id).total_calls == 0


class TestRefinementBudget:
    """Tests for record_refinement."""

    def test_refinements_counted_per_fingerprint(self, store):
        """Each task fingerprint has its own counter."""
        session_id = store.admit()
        assert store.record_refinement(session_id, "fp-a") == 1
        assert store.record_refinement(session_id, "fp-a") == 2
        assert store.record_refinement(session_id, "fp-b") == 1

        assert store.refinement_count(session_id, "fp-a") == 2
        assert store.get(session_id).total_refinements == 3

    def test_refinement_ceiling(self, temp_store_dir):
        """The refinement past max_refinement_iterations fails."""
        store = SessionStore(temp_store_dir, LimitsConfig(max_refinement_iterations=2))
        session_id = store.admit()
        store.record_refinement(session_id, "fp")
        store.record_refinement(session_id, "fp")

        with pytest.raises(RefinementBudgetExceeded):
            store.record_refinement(session_id, "fp")
        assert store.refinement_count(session_id, "fp") == 2


class TestPersistence:
    """Tests for write-through persistence, reload and lifecycle."""

    def test_mutations_are_written_through(self, store):
        """The persisted record reflects the latest counters."""
        session_id = store.admit()
        store.record_call(session_id, "Analyst")

        data = json.loads((store.active_dir / f"{session_id}.json").read_text())
        assert data["total_calls"] == 1
        assert data["per_role_calls"] == {"Analyst": 1}

    def test_no_temp_files_left_behind(self, store):
        """Atomic writes clean up their temp files."""
        session_id = store.admit()
        store.record_call(session_id, "Analyst")

        assert list(store.active_dir.glob("*.tmp")) == []

    def test_reload_on_startup(self, temp_store_dir, limits):
        """A new store reloads active sessions from disk."""
        first = SessionStore(temp_store_dir, limits)
        session_id = first.admit()
        first.record_call(session_id, "Analyst")

        second = SessionStore(temp_store_dir, limits)
        assert second.exists(session_id)
        assert second.get(session_id).total_calls == 1

    def test_reload_drops_stale_sessions(self, temp_store_dir, limits):
        """Sessions idle longer than the timeout are dropped on reload."""
        first = SessionStore(temp_store_dir, limits)
        session_id = first.admit()
        path = first.active_dir / f"{session_id}.json"
        data = json.loads(path.read_text())
        data["last_activity"] = time.time() - limits.session_timeout_minutes * 60 - 10
        path.write_text(json.dumps(data))

        second = SessionStore(temp_store_dir, limits)
        assert not second.exists(session_id)
        assert not path.exists()

    def test_reload_skips_corrupt_files(self, temp_store_dir, limits):
        """Unreadable session files are skipped, not fatal."""
        (temp_store_dir / "active").mkdir(parents=True)
        (temp_store_dir / "active" / "broken.json").write_text("{not json")

        store = SessionStore(temp_store_dir, limits)
        assert store.list_sessions() == []

    def test_complete_moves_record(self, store):
        """Completing a session moves it to completed/."""
        session_id = store.admit()
        record = store.complete(session_id)

        assert record.completed_at is not None
        assert not store.exists(session_id)
        assert not (store.active_dir / f"{session_id}.json").exists()
        assert (store.completed_dir / f"{session_id}.json").exists()

    def test_sweep_removes_idle_sessions(self, store):
        """Sweep drops sessions idle longer than the limit."""
        idle = store.admit()
        time.sleep(0.2)
        fresh = store.admit()

        removed = store.sweep(max_idle_seconds=0.1)

        assert removed == [idle]
        assert store.exists(fresh)
        assert not store.exists(idle)


class TestLineagesAndStats:
    """Tests for refinement lineage persistence and statistics."""

    def test_lineage_round_trip(self, store):
        """Saved lineages load back unchanged."""
        lineage = RefinementLineage(
            session_id="session_abc",
            role="Security Engineer",
            fingerprint="f00d",
            attempt_number=2,
            previous_scores=[40, 55],
            quality_trend=QualityTrend.IMPROVING,
        )
        store.save_lineage(lineage)

        loaded = store.load_lineage("session_abc", "Security Engineer", "f00d")
        assert loaded == lineage
        assert [l.key for l in store.list_lineages("session_abc")] == [lineage.key]

    def test_load_missing_lineage(self, store):
        """Missing lineages load as None."""
        assert store.load_lineage("session_abc", "Analyst", "none") is None

    def test_delete_lineage(self, store):
        """Deleted lineages are gone from disk."""
        lineage = RefinementLineage(session_id="session_abc", role="Analyst", fingerprint="f1")
        store.save_lineage(lineage)
        store.delete_lineage(lineage)

        assert store.list_lineages() == []

    def test_session_and_global_stats(self, store):
        """Statistics summarize calls, refinements and depth."""
        root = store.admit()
        child = store.admit(parent_id=root)
        store.record_call(root, "Analyst")
        store.record_call(root, "Analyst")
        store.record_refinement(root, "fp")

        stats = store.session_stats(root)
        assert stats["total_calls"] == 2
        assert stats["total_refinements"] == 1
        assert stats["remaining_calls"] == 8

        overall = store.global_stats()
        assert overall["active_sessions"] == 2
        assert overall["sub_agent_sessions"] == 1
        assert overall["total_calls"] == 2
        assert overall["average_calls_per_session"] == 1.0
        assert store.get(child).total_calls == 0


class TestTaskFingerprint:
    """Tests for task_fingerprint."""

    def test_stable_and_distinct(self):
        """Same inputs hash the same; any change hashes differently."""
        a = task_fingerprint("Review auth", "ctx", "Security Engineer")
        assert a == task_fingerprint("Review auth", "ctx", "Security Engineer")
        assert a != task_fingerprint("Review auth", "ctx", "Analyst")
        assert a != task_fingerprint("Review auth!", "ctx", "Security Engineer")
        assert len(a) == 16
