#!/usr/bin/env python3
"""
Retrieval Strategy Adapter Tests

Validates:
- success_rate = helpful / total with more than 5 samples, else 0.5
- delta = (success_rate - 0.5) * 0.1, taken proportionally from the others
- weights stay non-negative and sum to 1
- convergence and reset on a success-rate shift
- bounded scope-weight proposals
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from memevolve.config import EvolutionConfig
from memevolve.models import EvolutionState, Memory, RetrievalStrategy, Scope, StrategyWeights
from memevolve.retrieval_log import RetrievalLogger, classify_query
from memevolve.strategy import StrategyAdapter, StrategyStats, nudge


@pytest.fixture
def adapter(store, config):
    return StrategyAdapter(store, config)


@pytest.fixture
def retrieval_logger(store):
    return RetrievalLogger(store)


def _log(retrieval_logger, now, helpful, count, strategy=RetrievalStrategy.VECTOR,
         query_type="error_debug", memory_ids=None, scope=Scope.PROJECT):
    for i in range(count):
        retrieval_logger.log_retrieval(
            f"query {i}",
            strategy,
            memory_ids or ["mem_x"],
            scope=scope,
            query_type=query_type,
            feedback=helpful,
            created_at=now - timedelta(hours=i + 1),
        )


class TestNudge:
    def test_proportional_shift(self):
        weights = nudge({"vector": 0.5, "keyword": 0.3, "graph": 0.2}, "vector", 0.025)
        assert weights["vector"] == pytest.approx(0.525)
        assert weights["keyword"] == pytest.approx(0.285)
        assert weights["graph"] == pytest.approx(0.19)

    def test_clamped_and_renormalized(self):
        weights = nudge({"vector": 0.9, "keyword": 0.05, "graph": 0.05}, "keyword", -0.2)
        assert weights["keyword"] == 0.0
        assert all(w >= 0 for w in weights.values())
        assert sum(weights.values()) == pytest.approx(1.0)


class TestAdaptation:
    def test_helpful_vector_searches_raise_vector_weight(self, adapter, retrieval_logger, store, now):
        """8 error_debug vector searches, 6 helpful: success rate 0.75, nudge +0.025."""
        _log(retrieval_logger, now, True, 6)
        _log(retrieval_logger, now, False, 2)

        stats = adapter.aggregate(Scope.PROJECT, now)
        entry = stats[(Scope.PROJECT, "error_debug", "vector")]
        assert adapter.success_rate(entry) == pytest.approx(0.75)

        [adaptation] = adapter.adapt(Scope.PROJECT, now)
        assert adaptation.deltas["vector"] == pytest.approx(0.025)

        weights = store.get_strategy_weights(Scope.PROJECT, "error_debug")
        assert weights.vector_weight == pytest.approx(0.525)
        assert weights.keyword_weight == pytest.approx(0.285)
        assert weights.graph_weight == pytest.approx(0.19)
        assert weights.sample_count == 8

    def test_too_few_samples_means_no_change(self, adapter, retrieval_logger, store, now):
        _log(retrieval_logger, now, True, 5)
        adapter.adapt(Scope.PROJECT, now)
        weights = store.get_strategy_weights(Scope.PROJECT, "error_debug")
        assert weights.as_dict() == pytest.approx({"vector": 0.5, "keyword": 0.3, "graph": 0.2})

    def test_success_rate_prior(self, adapter):
        assert adapter.success_rate(StrategyStats(total=5, helpful=5)) == 0.5

    def test_logs_outside_window_are_ignored(self, adapter, retrieval_logger, now):
        _log(retrieval_logger, now - timedelta(days=31), True, 8)
        assert adapter.adapt(Scope.PROJECT, now) == []

    def test_keys_are_independent(self, adapter, retrieval_logger, store, now):
        _log(retrieval_logger, now, True, 8, query_type="error_debug")
        _log(retrieval_logger, now, False, 8, query_type="conceptual", strategy=RetrievalStrategy.GRAPH)
        adapter.adapt(Scope.PROJECT, now)

        assert store.get_strategy_weights(Scope.PROJECT, "error_debug").vector_weight > 0.5
        assert store.get_strategy_weights(Scope.PROJECT, "conceptual").graph_weight < 0.2
        assert store.get_strategy_weights(Scope.USER, "error_debug") is None

    def test_weights_always_sum_to_one(self, adapter, retrieval_logger, store, now):
        _log(retrieval_logger, now, True, 10, strategy=RetrievalStrategy.KEYWORD)
        _log(retrieval_logger, now, False, 10, strategy=RetrievalStrategy.VECTOR)
        for _ in range(10):
            adapter.adapt(Scope.PROJECT, now)
        weights = store.get_strategy_weights(Scope.PROJECT, "error_debug").as_dict()
        assert sum(weights.values()) == pytest.approx(1.0)
        assert all(w >= 0 for w in weights.values())
        assert weights["keyword"] > 0.3


class TestConvergence:
    def test_converges_then_resets_on_shift(self, adapter, retrieval_logger, store, now):
        _log(retrieval_logger, now, True, 3)
        _log(retrieval_logger, now, False, 3)

        for _ in range(3):
            adapter.adapt(Scope.PROJECT, now)
        assert store.get_strategy_weights(Scope.PROJECT, "error_debug").converged

        [skipped] = adapter.adapt(Scope.PROJECT, now)
        assert skipped.skipped == "converged"

        _log(retrieval_logger, now, True, 6)
        [resumed] = adapter.adapt(Scope.PROJECT, now)
        assert resumed.skipped is None
        assert resumed.deltas["vector"] == pytest.approx(0.025)
        assert not store.get_strategy_weights(Scope.PROJECT, "error_debug").converged

    def test_sparse_rounds_do_not_converge(self, adapter, retrieval_logger, store, now):
        """Data arriving a few queries at a time still gets its nudge."""
        _log(retrieval_logger, now, True, 3)
        _log(retrieval_logger, now - timedelta(days=1), False, 1)
        for _ in range(3):
            adapter.adapt(Scope.PROJECT, now)
        assert not store.get_strategy_weights(Scope.PROJECT, "error_debug").converged

        _log(retrieval_logger, now - timedelta(days=2), True, 3)
        _log(retrieval_logger, now - timedelta(days=3), False, 1)
        [adaptation] = adapter.adapt(Scope.PROJECT, now)

        assert adaptation.skipped is None
        weights = store.get_strategy_weights(Scope.PROJECT, "error_debug")
        assert weights.vector_weight == pytest.approx(0.525)
        assert weights.sample_count == 8

    def test_converged_on_prior_resumes_once_informed(self, adapter, retrieval_logger, store, now):
        _log(retrieval_logger, now, True, 3)
        _log(retrieval_logger, now - timedelta(days=1), False, 1)
        weights = StrategyWeights(
            scope=Scope.PROJECT, query_type="error_debug",
            converged=True, stable_rounds=3, sample_count=4, last_success_rate=0.75,
        )
        store.put_strategy_weights(weights, expected_version=0)

        _log(retrieval_logger, now - timedelta(days=2), True, 3)
        _log(retrieval_logger, now - timedelta(days=3), False, 1)
        [adaptation] = adapter.adapt(Scope.PROJECT, now)

        assert adaptation.skipped is None
        assert adaptation.deltas["vector"] == pytest.approx(0.025)


class TestImplicitFeedback:
    def test_used_results_count_as_helpful(self, adapter, retrieval_logger, now):
        retrieval_logger.log_retrieval("q", "vector", ["m1"], results_used=1, created_at=now)
        retrieval_logger.log_retrieval("q", "vector", ["m1"], results_used=0, created_at=now)
        retrieval_logger.log_retrieval("q", "vector", [], created_at=now)

        [entry] = adapter.aggregate(now=now).values()
        assert (entry.total, entry.helpful, entry.unhelpful) == (3, 1, 1)

    def test_can_be_switched_off(self, store, retrieval_logger, now):
        adapter = StrategyAdapter(store, EvolutionConfig(implicit_feedback=False))
        retrieval_logger.log_retrieval("q", "vector", ["m1"], results_used=1, created_at=now)
        [entry] = adapter.aggregate(now=now).values()
        assert entry.helpful == 0

    def test_late_feedback_overrides(self, adapter, retrieval_logger, now):
        log = retrieval_logger.log_retrieval("q", "vector", ["m1"], results_used=1, created_at=now)
        retrieval_logger.mark_useful(log.id, False)
        [entry] = adapter.aggregate(now=now).values()
        assert entry.unhelpful == 1


class TestScopeWeights:
    def _utility_logs(self, store, retrieval_logger, now, useful_session, useless_project):
        session_memory = store.put(Memory("s", scope=Scope.SESSION))
        project_memory = store.put(Memory("p", scope=Scope.PROJECT))
        _log(retrieval_logger, now, True, useful_session, memory_ids=[session_memory.id], query_type="general")
        _log(retrieval_logger, now, False, useless_project, memory_ids=[project_memory.id], query_type="general")

    def test_utility_by_scope(self, adapter, store, retrieval_logger, now):
        self._utility_logs(store, retrieval_logger, now, 3, 1)
        utility = adapter.analyze_scope_utility(now)
        assert utility["session"] == {"retrieved": 3, "useful": 3, "effectiveness": 1.0}
        assert utility["project"]["effectiveness"] == 0.0

    def test_not_enough_data_no_proposals(self, adapter, store, retrieval_logger, now):
        self._utility_logs(store, retrieval_logger, now, 30, 19)
        assert adapter.propose_scope_weights(EvolutionState(scope=Scope.PROJECT), now) == []

    def test_bounded_proposals_applied(self, adapter, store, retrieval_logger, now):
        self._utility_logs(store, retrieval_logger, now, 30, 20)

        proposals = adapter.evolve(Scope.PROJECT, dry_run=False, now=now)

        by_scope = {p.scope: p for p in proposals}
        assert by_scope["session"].proposed == pytest.approx(1.6)
        assert by_scope["project"].proposed == pytest.approx(0.9)
        state = store.get_evolution_state(Scope.PROJECT)
        assert state.scope_weights["session"] == pytest.approx(1.6)
        assert state.scope_weights["user"] == pytest.approx(0.7)

    def test_dry_run_changes_nothing(self, adapter, store, retrieval_logger, now):
        self._utility_logs(store, retrieval_logger, now, 30, 20)
        assert adapter.evolve(Scope.PROJECT, dry_run=True, now=now)
        assert store.get_evolution_state(Scope.PROJECT) is None


class TestQueryClassification:
    @pytest.mark.parametrize("query,expected", [
        ("TypeError traceback in worker", "debugging"),
        ("how to configure the cache", "procedural"),
        ("why does the cache miss", "conceptual"),
        ("tenant ids", "general"),
    ])
    def test_classify(self, query, expected):
        assert classify_query(query) == expected
