#!/usr/bin/env python3
"""
Evolution Scheduler Tests

Validates:
1. Session cadence (light every session, full every 5th, reflect every 20th)
2. One run per scope at a time
3. Step isolation: a failing step is reported, later steps still run
4. The interactive path (access, tool events, feedback, forget)
5. End-to-end runs over real storage
"""

import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from memevolve.errors import InvariantViolation, TransientStoreError
from memevolve.models import (
    MaintenanceMode,
    Memory,
    MemoryStatus,
    MemoryType,
    Scope,
)
from memevolve.retrieval_log import LIFECYCLE_EVENT
from memevolve.scheduler import EvolutionScheduler, covered_scopes
from memevolve.text_service import KeywordTextService


class TestCadence:
    @pytest.mark.parametrize("count,mode", [
        (1, MaintenanceMode.LIGHT),
        (4, MaintenanceMode.LIGHT),
        (5, MaintenanceMode.FULL),
        (15, MaintenanceMode.FULL),
        (20, MaintenanceMode.REFLECT),
        (40, MaintenanceMode.REFLECT),
    ])
    def test_mode_for_session(self, scheduler, count, mode):
        assert scheduler.mode_for_session(count) == mode

    def test_session_end_counts_and_runs(self, scheduler, store, now):
        scheduler.on_session_start(Scope.PROJECT)
        reports = [scheduler.on_session_end(Scope.PROJECT, f"s{i}", now) for i in range(5)]

        assert [r.mode for r in reports] == [MaintenanceMode.LIGHT] * 4 + [MaintenanceMode.FULL]
        state = store.get_evolution_state(Scope.PROJECT)
        assert state.session_count == 5
        assert state.last_full_consolidation == now
        assert state.last_reflection is None

    def test_session_start_initializes_once(self, scheduler):
        first = scheduler.on_session_start(Scope.USER)
        second = scheduler.on_session_start(Scope.USER)
        assert first.session_count == second.session_count == 0
        assert second.version == 1

    def test_covered_scopes(self):
        assert covered_scopes(Scope.SESSION) == [Scope.SESSION]
        assert covered_scopes(Scope.USER) == [Scope.SESSION, Scope.PROJECT, Scope.USER]


class TestMaintenanceRuns:
    def test_full_run_step_order(self, scheduler, now):
        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)
        assert report.steps_run == ["lifecycle", "consolidation", "promotion", "graph", "state"]
        assert report.failures == []

    def test_reflect_run_adds_strategy_and_reflection(self, scheduler, store, now):
        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.REFLECT, now=now)
        assert report.steps_run[-3:] == ["strategy", "reflection", "state"]
        assert store.get_evolution_state(Scope.PROJECT).last_reflection == now

    def test_light_run_only_promotes(self, scheduler, now):
        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.LIGHT, now=now)
        assert report.steps_run == ["promotion", "state"]

    def test_report_is_persisted(self, scheduler, store, now):
        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)
        [saved] = store.run_reports(Scope.PROJECT)
        assert saved["id"] == report.id
        assert saved["mode"] == "full"

    def test_held_lock_skips_run(self, scheduler, store, now):
        store.acquire_lock("maintenance:project", "other-process", 60)

        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        assert report.steps_run == []
        assert report.skipped[0]["step"] == "run"
        assert "other-process" in report.skipped[0]["reason"]

    def test_lock_released_after_run(self, scheduler, store, now):
        scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.LIGHT, now=now)
        assert store.lock_holder("maintenance:project") is None
        assert store.lock_holder("maintenance:session") is None

    def test_busy_narrower_scope_skips_run(self, scheduler, store, now):
        store.acquire_lock("maintenance:session", "session-run", 60)

        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        assert report.steps_run == []
        assert "maintenance:session held by session-run" in report.skipped[0]["reason"]
        assert store.lock_holder("maintenance:project") is None

    def test_unexpected_exception_is_recorded(self, scheduler, now):
        with patch.object(scheduler, "_consolidate", side_effect=RuntimeError("bug in a collaborator")):
            report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        assert report.failures[0]["step"] == "consolidation"
        assert "RuntimeError" in report.failures[0]["error"]
        assert report.steps_run == ["lifecycle", "promotion", "graph", "state"]

    def test_unreachable_text_service_keeps_work_queued(self, store, config, make_vector, now, unreachable_text_service):
        scheduler = EvolutionScheduler(store=store, text_service=unreachable_text_service, config=config)
        for i in range(3):
            store.put(Memory(
                f"Deploy {i} hit the redis timeout",
                memory_type=MemoryType.EPISODIC,
                scope=Scope.SESSION,
                embedding=make_vector(1, 0.95, other=2 + i),
                tags=["deploy"],
                created_at=now,
            ))

        report = scheduler.run_maintenance(Scope.SESSION, MaintenanceMode.FULL, now=now)

        assert "consolidation" in report.steps_run
        assert "ConnectionError" in report.failures[0]["error"]
        assert len(store.pending_items()) == 1
        assert store.run_reports(Scope.SESSION)[0]["id"] == report.id

    def test_failing_step_does_not_stop_the_run(self, scheduler, now):
        with patch.object(scheduler, "_lifecycle", side_effect=TransientStoreError("database is locked")):
            report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        assert report.failures[0]["step"] == "lifecycle"
        assert "database is locked" in report.failures[0]["error"]
        assert report.steps_run == ["consolidation", "promotion", "graph", "state"]

    def test_invariant_violation_in_graph_step_is_reported(self, scheduler, now):
        with patch.object(
            scheduler.graph_evolution, "queue_contradictions",
            side_effect=InvariantViolation("edge to nowhere"),
        ):
            report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        assert [f["step"] for f in report.failures] == ["graph"]
        assert "state" in report.steps_run


class TestEndToEnd:
    def test_light_pass_promotes_session_memories(self, scheduler, store, make_vector, now):
        scheduler.config.light_budget_seconds = 60
        for similarity in (1.0, 0.9):
            store.put(Memory(
                "Use the staging bucket for fixtures",
                memory_type=MemoryType.SEMANTIC,
                scope=Scope.SESSION,
                embedding=make_vector(0, similarity),
                importance=0.6,
                access_count=3,
                session_id="s1",
                status=MemoryStatus.ACTIVE,
                created_at=now,
            ))

        report = scheduler.on_session_end(Scope.PROJECT, "s1", now)

        assert (report.promotions, report.merges) == (1, 1)
        [project] = store.find_memories(scope=Scope.PROJECT)
        assert project.access_count == 6

    def test_archived_memory_is_forgotten(self, scheduler, store, make_vector, now):
        memory = store.put(Memory(
            "old build log",
            memory_type=MemoryType.EPISODIC,
            scope=Scope.PROJECT,
            embedding=make_vector(6),
            importance=0.5,
            status=MemoryStatus.ARCHIVED,
            created_at=now - timedelta(days=30),
        ))
        history_before = len(memory.status_history)

        report = scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)

        forgotten = store.get(memory.id)
        assert forgotten.status == MemoryStatus.FORGOTTEN
        assert forgotten.content == ""
        assert forgotten.embedding is None
        assert len(forgotten.status_history) == history_before + 1
        assert report.forgotten == 1
        assert store.find_by_similarity(make_vector(6), 0.5) == []

        events = store.logs_since(now - timedelta(days=1), event_type=LIFECYCLE_EVENT)
        assert [(e.memory_id, e.new_status) for e in events] == [(memory.id, "forgotten")]

    def test_unused_session_memory_is_archived(self, scheduler, store, now):
        memory = store.put(Memory(
            "scratch note", memory_type=MemoryType.WORKING, scope=Scope.SESSION,
            importance=0.4, created_at=now - timedelta(days=2),
        ))
        report = scheduler.run_maintenance(Scope.SESSION, MaintenanceMode.FULL, now=now)
        assert store.get(memory.id).status == MemoryStatus.ARCHIVED
        assert report.archivals == 1

    def test_narrower_scopes_are_covered(self, scheduler, store, now):
        memory = store.put(Memory(
            "scratch note", memory_type=MemoryType.WORKING, scope=Scope.SESSION,
            importance=0.4, created_at=now - timedelta(days=2),
        ))
        scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.FULL, now=now)
        assert store.get(memory.id).status == MemoryStatus.ARCHIVED

    def test_reflect_promotes_reused_project_memory(self, scheduler, store, make_vector, now):
        memory = store.put(Memory(
            "Pin numpy below 2 for the legacy models",
            memory_type=MemoryType.PROCEDURAL,
            scope=Scope.PROJECT,
            embedding=make_vector(7),
            importance=0.8,
            access_count=3,
            status=MemoryStatus.ACTIVE,
            created_at=now,
        ))
        for i in range(3):
            scheduler.record_retrieval("numpy pin", [memory.id], session_id=f"s{i}", results_used=1)

        report = scheduler.run_maintenance(Scope.USER, MaintenanceMode.REFLECT, now=now)

        [user_memory] = store.find_memories(scope=Scope.USER, memory_types=[MemoryType.PROCEDURAL])
        assert user_memory.metadata["promoted_from"] == [memory.id]
        assert report.promotions >= 1
        assert store.get(f"mem_meta_user_{now.strftime('%Y%m%d')}") is not None


class TestInteractivePath:
    def test_access_activates_and_logs(self, scheduler, store, now):
        memory = store.put(Memory("fact", scope=Scope.PROJECT, created_at=now))

        accessed = scheduler.access(memory.id, session_id="s9", now=now)

        assert accessed.status == MemoryStatus.ACTIVE
        assert accessed.access_count == 1
        assert store.get(memory.id).access_count == 1
        assert "s9" in store.sessions_referencing(memory.id)

    def test_access_missing_memory(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.access("mem_nope")

    def test_access_forgotten_memory(self, scheduler, store):
        memory = store.put(Memory("gone"))
        scheduler.forget(memory.id)
        with pytest.raises(InvariantViolation):
            scheduler.access(memory.id)

    def test_forget_clears_content(self, scheduler, store):
        memory = store.put(Memory("secret token location", embedding=[1.0] + [0.0] * 7))
        scheduler.forget(memory.id, reason="user request")

        stored = store.get(memory.id)
        assert stored.status == MemoryStatus.FORGOTTEN
        assert stored.content == ""
        assert stored.status_history[-1].reason == "user request"

    def test_tool_event_becomes_memory_and_graph(self, store, config, now):
        scheduler = EvolutionScheduler(store=store, text_service=KeywordTextService(), config=config)
        memory = scheduler.on_tool_event(
            Scope.PROJECT,
            {"content": "pytest requires python here", "kind": "error", "session_id": "s1"},
            now,
        )

        stored = store.get(memory.id)
        assert stored.tags == ["error"]
        assert stored.metadata["kind"] == "error"
        assert {e.name for e in store.graph.entities()} == {"pytest", "python"}

    def test_tool_event_survives_extraction_failure(self, store, config, failing_text_service):
        scheduler = EvolutionScheduler(store=store, text_service=failing_text_service, config=config)
        memory = scheduler.on_tool_event(Scope.SESSION, {"content": "ran make"})
        assert store.get(memory.id) is not None
        assert store.graph.entities() == []

    def test_tool_event_survives_service_timeout(self, store, config, unreachable_text_service):
        scheduler = EvolutionScheduler(store=store, text_service=unreachable_text_service, config=config)
        memory = scheduler.on_tool_event(Scope.SESSION, {"content": "docker build hung"})
        assert store.get(memory.id) is not None
        assert store.graph.entities() == []

    def test_tool_event_needs_content(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.on_tool_event(Scope.SESSION, {"content": "  "})

    def test_mark_retrieval_useful(self, scheduler, store, now):
        log = scheduler.record_retrieval("cache keys", ["m1"], created_at=now)
        assert scheduler.mark_retrieval_useful("cache keys", False) == log.id
        assert store.logs_since(now - timedelta(days=1))[0].feedback is False
        assert scheduler.mark_retrieval_useful("never searched") is None

    def test_promote_to_user_blocked_while_user_maintenance_runs(self, scheduler, store):
        store.acquire_lock("maintenance:user", "other-process", 60)
        result = scheduler.promote_to_user("mem_any")
        assert not result.eligible

    def test_status(self, scheduler, store, now):
        store.put(Memory("x", scope=Scope.PROJECT))
        scheduler.run_maintenance(Scope.PROJECT, MaintenanceMode.LIGHT, now=now)

        status = scheduler.status()

        assert status["memories"]["project"]["created"] == 1
        assert status["queue_depth"] == 0
        assert len(status["recent_runs"]) == 1
        assert status["graph"]["entity_count"] == 0
