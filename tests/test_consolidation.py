#!/usr/bin/env python3
"""
Consolidation Pipeline Tests

Validates:
1. Session -> project promotion (merge-or-create, discount, idempotence)
2. Project -> user promotion gate (3+ distinct sessions)
3. Episodic groups summarized into one semantic memory
4. Strength-decay items merged into a similar memory
5. Text service failures leave the work queued
"""

import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from memevolve.consolidation import ConsolidationPipeline, PromotionResult, _consolidated_id
from memevolve.errors import InvariantViolation
from memevolve.models import (
    MaintenanceMode,
    Memory,
    MemoryStatus,
    MemoryType,
    QueueReason,
    RetrievalLog,
    RunReport,
    Scope,
)


def _report(scope=Scope.SESSION):
    return RunReport(scope=scope, mode=MaintenanceMode.FULL)


@pytest.fixture
def pipeline(store, config, static_text_service):
    return ConsolidationPipeline(store, static_text_service, config)


def _session_memory(store, now, embedding, importance=0.6, access_count=3, session_id="s1", **kwargs):
    kwargs.setdefault("memory_type", MemoryType.SEMANTIC)
    return store.put(Memory(
        "Run migrations before deploying",
        scope=Scope.SESSION,
        embedding=embedding,
        importance=importance,
        access_count=access_count,
        session_id=session_id,
        status=MemoryStatus.ACTIVE,
        created_at=now,
        **kwargs,
    ))


class TestSessionToProject:
    """Merge-or-create promotion of a session's memories."""

    def test_similar_session_memories_become_one_project_memory(self, store, pipeline, make_vector, now):
        _session_memory(store, now, make_vector(0))
        _session_memory(store, now, make_vector(0, 0.9))

        result = pipeline.promote_session_to_project("s1", now=now)

        project = store.find_memories(scope=Scope.PROJECT)
        assert len(project) == 1
        assert project[0].access_count == 6
        assert len(result.promoted) == 1
        assert len(result.merged) == 1

    def test_new_copy_is_discounted_and_linked(self, store, pipeline, make_vector, now):
        source = _session_memory(store, now, make_vector(2), importance=0.8, access_count=2)

        result = pipeline.promote_session_to_project("s1", now=now)

        copy = store.get(result.promoted[0])
        assert copy.scope == Scope.PROJECT
        assert copy.importance == pytest.approx(0.64)
        assert copy.status == MemoryStatus.ACTIVE
        assert copy.metadata["promoted_from"] == [source.id]
        assert copy.metadata["source_sessions"] == ["s1"]
        assert store.get(source.id).metadata["promoted_to"] == copy.id

    def test_rerun_is_a_no_op(self, store, pipeline, make_vector, now):
        _session_memory(store, now, make_vector(0))
        _session_memory(store, now, make_vector(0, 0.9))
        pipeline.promote_session_to_project("s1", now=now)

        again = pipeline.promote_session_to_project("s1", now=now)

        assert again.promoted == [] and again.merged == []
        project = store.find_memories(scope=Scope.PROJECT)
        assert len(project) == 1
        assert project[0].access_count == 6

    def test_weak_or_unused_memories_stay(self, store, pipeline, make_vector, now):
        _session_memory(store, now, make_vector(0), importance=0.4)
        _session_memory(store, now, make_vector(3), access_count=1)

        result = pipeline.promote_session_to_project("s1", now=now)

        assert result.promoted == []
        assert store.find_memories(scope=Scope.PROJECT) == []

    def test_other_sessions_are_untouched(self, store, pipeline, make_vector, now):
        _session_memory(store, now, make_vector(0), session_id="s2")
        assert pipeline.promote_session_to_project("s1", now=now).promoted == []

    def test_expired_deadline_starts_nothing(self, store, pipeline, make_vector, now):
        _session_memory(store, now, make_vector(0))
        result = pipeline.promote_session_to_project("s1", deadline=time.monotonic() - 1, now=now)
        assert result.timed_out
        assert result.promoted == []

    def test_promotion_without_embedding_uses_provenance(self, store, pipeline, now):
        source = _session_memory(store, now, None)
        first = pipeline.promote_session_to_project("s1", now=now)

        # Simulate a crash after the copy was written but before the source was marked
        source = store.get(source.id)
        del source.metadata["promoted_to"]
        store.put(source)

        second = pipeline.promote_session_to_project("s1", now=now)
        assert second.merged == first.promoted
        assert len(store.find_memories(scope=Scope.PROJECT)) == 1

    def test_archived_near_duplicates_do_not_hide_the_live_target(self, store, pipeline, make_vector, now):
        for i in range(12):
            store.put(Memory(
                f"Old migration note {i}", scope=Scope.PROJECT, status=MemoryStatus.ARCHIVED,
                embedding=make_vector(0, 0.999),
            ))
        live = store.put(Memory(
            "Run migrations first", scope=Scope.PROJECT, status=MemoryStatus.ACTIVE,
            embedding=make_vector(0, 0.9), access_count=1,
        ))
        _session_memory(store, now, make_vector(0))

        result = pipeline.promote_session_to_project("s1", now=now)

        assert result.promoted == []
        assert result.merged == [live.id]
        assert store.get(live.id).access_count == 4


class TestConcurrentPromotion:
    """Two promotion runs racing over the same session."""

    def test_racing_runs_create_one_memory_per_cluster(self, store, config, make_vector, now):
        _session_memory(store, now, make_vector(0))
        _session_memory(store, now, make_vector(0, 0.9))
        _session_memory(store, now, make_vector(4), access_count=2)

        pipelines = [ConsolidationPipeline(store, None, config) for _ in range(2)]
        barrier = threading.Barrier(len(pipelines))
        results, errors = [], []

        def run(pipeline):
            barrier.wait()
            try:
                results.append(pipeline.promote_session_to_project("s1", now=now))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(p,)) for p in pipelines]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        project = store.find_memories(scope=Scope.PROJECT)
        assert len(project) == 2
        assert sorted(m.access_count for m in project) == [2, 6]
        assert sum(len(r.promoted) for r in results) == 2
        assert sum(len(r.merged) for r in results) == 1

    def test_interactive_write_during_promotion_is_merged_into(self, store, pipeline, make_vector, now):
        """A project memory written just before a candidate is processed wins the merge."""
        source = _session_memory(store, now, make_vector(0))
        candidates = store.find_memories(scope=Scope.SESSION)
        interactive = store.put(Memory(
            "Run migrations first", scope=Scope.PROJECT, status=MemoryStatus.ACTIVE,
            embedding=make_vector(0, 0.95), access_count=1,
        ))

        result = PromotionResult()
        pipeline._promote_one(candidates[0], Scope.PROJECT, 0.8, result, now)

        assert result.merged == [interactive.id]
        assert len(store.find_memories(scope=Scope.PROJECT)) == 1
        assert store.get(source.id).metadata["promoted_to"] == interactive.id


class TestProjectToUser:
    """User scope only gets memories reused across projects' sessions."""

    def _project_memory(self, store, make_vector, memory_type=MemoryType.SEMANTIC):
        return store.put(Memory(
            "Prefer uv over pip",
            memory_type=memory_type,
            scope=Scope.PROJECT,
            embedding=make_vector(5),
            importance=0.8,
            access_count=4,
        ))

    def _use_in_sessions(self, store, memory, count):
        for i in range(count):
            store.append_log(RetrievalLog(query="pip or uv", memory_ids=[memory.id], session_id=f"s{i}"))

    def test_two_sessions_is_not_enough(self, store, pipeline, make_vector):
        memory = self._project_memory(store, make_vector)
        self._use_in_sessions(store, memory, 2)

        result = pipeline.promote_project_to_user(memory.id)

        assert not result.eligible
        assert "2 sessions" in result.reason
        assert store.find_memories(scope=Scope.USER) == []

    def test_three_sessions_promotes(self, store, pipeline, make_vector, now):
        memory = self._project_memory(store, make_vector)
        self._use_in_sessions(store, memory, 3)

        result = pipeline.promote_project_to_user(memory.id, now=now)

        assert result.eligible
        user = store.get(result.promoted[0])
        assert user.scope == Scope.USER
        assert user.importance == pytest.approx(0.56)
        assert user.metadata["source_sessions"] == ["s0", "s1", "s2"]
        assert pipeline.promote_project_to_user(memory.id).reason == "already promoted"

    def test_episodic_memories_stay_in_project(self, store, pipeline, make_vector):
        memory = self._project_memory(store, make_vector, MemoryType.EPISODIC)
        self._use_in_sessions(store, memory, 5)
        assert not pipeline.promote_project_to_user(memory.id).eligible

    def test_only_project_memories_qualify(self, store, pipeline):
        memory = store.put(Memory("session fact", scope=Scope.SESSION, memory_type=MemoryType.SEMANTIC))
        result = pipeline.promote_project_to_user(memory.id)
        assert result.reason == "scope is session"

    def test_missing_memory(self, pipeline):
        assert pipeline.promote_project_to_user("mem_nope").reason == "memory not found"

    def test_user_candidates(self, store, pipeline, make_vector):
        memory = self._project_memory(store, make_vector)
        assert pipeline.user_candidates() == []
        self._use_in_sessions(store, memory, 3)
        assert [m.id for m in pipeline.user_candidates()] == [memory.id]


class TestEpisodicConsolidation:
    def _episodes(self, store, make_vector, now, count=3, tag="deploy"):
        return [
            store.put(Memory(
                f"Deploy {i} failed on the redis timeout",
                memory_type=MemoryType.EPISODIC,
                scope=Scope.SESSION,
                embedding=make_vector(1, 0.95, other=2 + i),
                importance=0.4 + i * 0.1,
                tags=[tag],
                created_at=now,
            ))
            for i in range(count)
        ]

    def test_group_becomes_semantic_memory(self, store, pipeline, make_vector, now, static_text_service):
        episodes = self._episodes(store, make_vector, now)
        assert pipeline.enqueue_episodic_groups(Scope.SESSION) == 1

        report = _report()
        pipeline.drain_queue(Scope.SESSION, report, now)

        summary = store.get(_consolidated_id([m.id for m in episodes]))
        assert summary.memory_type == MemoryType.SEMANTIC
        assert summary.content == "Summary of episodes"
        assert summary.importance == pytest.approx(0.6)
        assert summary.tags == ["deploy"]
        assert sorted(summary.metadata["consolidated_from"]) == sorted(m.id for m in episodes)
        for episode in episodes:
            stored = store.get(episode.id)
            assert stored.status == MemoryStatus.CONSOLIDATED
            assert stored.metadata["consolidated_into"] == summary.id
        assert store.pending_items() == []
        assert report.consolidations == 1
        assert len(static_text_service.summarized[0]) == 3

    def test_two_episodes_are_not_a_group(self, store, pipeline, make_vector, now):
        self._episodes(store, make_vector, now, count=2)
        assert pipeline.enqueue_episodic_groups(Scope.SESSION) == 0

    def test_second_run_does_nothing(self, store, pipeline, make_vector, now):
        self._episodes(store, make_vector, now)
        pipeline.enqueue_episodic_groups(Scope.SESSION)
        pipeline.drain_queue(Scope.SESSION, _report(), now)

        assert pipeline.enqueue_episodic_groups(Scope.SESSION) == 0
        assert len(store.find_memories(memory_types=[MemoryType.SEMANTIC])) == 1

    def test_text_service_failure_leaves_item_queued(self, store, config, make_vector, now, failing_text_service):
        pipeline = ConsolidationPipeline(store, failing_text_service, config)
        episodes = self._episodes(store, make_vector, now)
        pipeline.enqueue_episodic_groups(Scope.SESSION)

        report = _report()
        pipeline.drain_queue(Scope.SESSION, report, now)

        items = store.pending_items()
        assert len(items) == 1
        assert items[0].attempts == 1
        assert "summarizer unavailable" in items[0].last_error
        assert report.failures[0]["step"] == "consolidation"
        assert all(store.get(m.id).status == MemoryStatus.CREATED for m in episodes)
        assert store.find_memories(memory_types=[MemoryType.SEMANTIC]) == []

    def test_connection_error_is_an_external_failure(self, store, config, make_vector, now, unreachable_text_service):
        pipeline = ConsolidationPipeline(store, unreachable_text_service, config)
        self._episodes(store, make_vector, now)
        pipeline.enqueue_episodic_groups(Scope.SESSION)

        report = _report()
        pipeline.drain_queue(Scope.SESSION, report, now)

        [item] = store.pending_items()
        assert item.attempts == 1
        assert "ConnectionError" in item.last_error
        assert "ExternalServiceError" in report.failures[0]["error"]

    def test_group_that_shrank_is_deferred(self, store, pipeline, make_vector, now):
        episodes = self._episodes(store, make_vector, now)
        pipeline.enqueue_episodic_groups(Scope.SESSION)
        gone = store.get(episodes[0].id)
        gone.status = MemoryStatus.ARCHIVED
        store.put(gone)

        report = _report()
        pipeline.drain_queue(Scope.SESSION, report, now)

        assert report.skipped[0]["item"] == store.pending_items()[0].id
        assert store.find_memories(memory_types=[MemoryType.SEMANTIC]) == []


class TestStrengthDecay:
    def _active(self, store, embedding, access_count, importance=0.5):
        return store.put(Memory(
            "Cache keys include the tenant id",
            memory_type=MemoryType.SEMANTIC,
            scope=Scope.PROJECT,
            embedding=embedding,
            access_count=access_count,
            importance=importance,
            status=MemoryStatus.ACTIVE,
        ))

    def test_fading_memory_merges_into_similar_one(self, store, pipeline, make_vector, now):
        target = self._active(store, make_vector(0), access_count=4, importance=0.7)
        fading = self._active(store, make_vector(0, 0.9), access_count=2)
        pipeline.enqueue_decay(fading)

        report = _report(Scope.PROJECT)
        pipeline.drain_queue(Scope.PROJECT, report, now)

        merged = store.get(target.id)
        assert merged.access_count == 6
        assert merged.metadata["merged_from"] == [fading.id]
        gone = store.get(fading.id)
        assert gone.status == MemoryStatus.CONSOLIDATED
        assert gone.metadata["consolidated_into"] == target.id
        assert report.merges == 1

    def test_fading_memory_without_partner_is_just_consolidated(self, store, pipeline, make_vector, now):
        fading = self._active(store, make_vector(4), access_count=2)
        pipeline.enqueue_decay(fading)
        pipeline.drain_queue(Scope.PROJECT, _report(Scope.PROJECT), now)
        assert store.get(fading.id).status == MemoryStatus.CONSOLIDATED

    def test_enqueued_once(self, store, pipeline, make_vector):
        fading = self._active(store, make_vector(4), access_count=2)
        assert pipeline.enqueue_decay(fading) is not None
        assert pipeline.enqueue_decay(fading) is None
        assert len(store.pending_items(reason=QueueReason.STRENGTH_DECAY)) == 1


class TestMerge:
    def test_merge_sums_access_and_keeps_max_importance(self, pipeline):
        source = Memory("a", access_count=2, importance=0.9, tags=["x"], session_id="s1")
        target = Memory("b", access_count=3, importance=0.4, tags=["y"])
        pipeline.merge_into(source, target)

        assert target.access_count == 5
        assert target.importance == 0.9
        assert target.tags == ["y", "x"]
        assert target.metadata["source_sessions"] == ["s1"]

    def test_forgotten_memory_cannot_be_merged(self, pipeline):
        source = Memory("", status=MemoryStatus.FORGOTTEN)
        with pytest.raises(InvariantViolation):
            pipeline.merge_into(source, Memory("b"))
