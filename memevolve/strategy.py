"""
Retrieval Strategy Adapter - Learn which retrieval mode works for which query.

Each (scope, query_type) key owns a blend of vector/keyword/graph weights.
From the last 30 days of retrieval logs we compute, per strategy, how often
its results helped, and nudge the matching weight:

    success_rate = helpful / total      (only with more than 5 samples, else 0.5)
    delta        = (success_rate - 0.5) * learning_rate

The nudge is added to the observed strategy's weight and taken
proportionally from the others; weights are then clamped at zero and
renormalized to sum to 1.

A key converges once its nudges stay below an epsilon for a few rounds in
a row. A converged key is left alone until its success rate moves by more
than 0.1.

Also here: scope utility analysis and bounded scope-weight proposals.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from memevolve.config import EvolutionConfig
from memevolve.errors import ConcurrentModificationError
from memevolve.log import get_logger
from memevolve.models import (
    DEFAULT_SCOPE_WEIGHTS,
    DEFAULT_STRATEGY_WEIGHTS,
    EvolutionState,
    RetrievalLog,
    Scope,
    StrategyWeights,
)
from memevolve.storage import Storage

logger = get_logger("memevolve.strategy")

CONVERGENCE_RESET_SHIFT = 0.1

# Bounded scope-weight proposals
MIN_DATA_POINTS = 50
MAX_SCOPE_WEIGHT_DELTA = 0.2
MIN_SCOPE_WEIGHT = 0.1
MAX_SCOPE_WEIGHT = 3.0
MIN_MEANINGFUL_CHANGE = 0.02


@dataclass
class StrategyStats:
    """Aggregated outcomes for one (scope, query_type, strategy)."""
    total: int = 0
    helpful: int = 0
    unhelpful: int = 0
    results_used_sum: int = 0
    latency_sum: float = 0.0

    @property
    def mean_results_used(self) -> float:
        return self.results_used_sum / self.total if self.total else 0.0

    @property
    def mean_latency_ms(self) -> float:
        return self.latency_sum / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "helpful": self.helpful,
            "unhelpful": self.unhelpful,
            "mean_results_used": round(self.mean_results_used, 3),
            "mean_latency_ms": round(self.mean_latency_ms, 3),
        }


@dataclass
class Adaptation:
    scope: Scope
    query_type: str
    before: dict
    after: dict
    deltas: dict = field(default_factory=dict)
    converged: bool = False
    skipped: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.value,
            "query_type": self.query_type,
            "before": self.before,
            "after": self.after,
            "deltas": self.deltas,
            "converged": self.converged,
            "skipped": self.skipped,
        }


@dataclass
class ScopeProposal:
    scope: str
    current: float
    proposed: float
    reason: str
    confidence: float

    def to_dict(self) -> dict:
        return {
            "key": f"scope_weights.{self.scope}",
            "current": self.current,
            "proposed": self.proposed,
            "reason": self.reason,
            "confidence": self.confidence,
        }


def nudge(weights: dict, strategy: str, delta: float) -> dict:
    """Shift delta onto one strategy, taken proportionally from the rest."""
    updated = dict(weights)
    others = [s for s in updated if s != strategy]
    others_total = sum(updated[s] for s in others)

    updated[strategy] = updated.get(strategy, 0.0) + delta
    for other in others:
        share = updated[other] / others_total if others_total > 0 else 1.0 / len(others)
        updated[other] -= delta * share

    clamped = {s: max(0.0, w) for s, w in updated.items()}
    total = sum(clamped.values())
    if total <= 0:
        return dict(DEFAULT_STRATEGY_WEIGHTS)
    return {s: w / total for s, w in clamped.items()}


class StrategyAdapter:
    """Turns retrieval logs into updated StrategyWeights."""

    def __init__(self, store: Storage, config: Optional[EvolutionConfig] = None):
        self.store = store
        self.config = config or EvolutionConfig()

    def _outcome(self, log: RetrievalLog) -> Optional[bool]:
        """Helpful, unhelpful, or unknown for one log entry."""
        if log.feedback is not None:
            return log.feedback
        if not self.config.implicit_feedback:
            return None
        if log.results_used > 0:
            return True
        if log.results_count > 0:
            return False
        return None

    def aggregate(self, scope: Optional[Scope] = None, now: Optional[datetime] = None) -> dict:
        """Stats keyed by (scope, query_type, strategy) over the trailing window."""
        now = now or datetime.now()
        since = now - timedelta(days=self.config.adaptation_window_days)
        stats: dict = {}
        for log in self.store.logs_since(since, scope=scope):
            key = (log.scope, log.query_type, log.strategy)
            entry = stats.setdefault(key, StrategyStats())
            entry.total += 1
            entry.results_used_sum += log.results_used
            entry.latency_sum += log.latency_ms
            outcome = self._outcome(log)
            if outcome is True:
                entry.helpful += 1
            elif outcome is False:
                entry.unhelpful += 1
        return stats

    def success_rate(self, stats: StrategyStats) -> float:
        if stats.total > self.config.adaptation_min_samples:
            return stats.helpful / stats.total
        return 0.5

    def adapt(self, scope: Scope, now: Optional[datetime] = None) -> list:
        """Apply one round of weight nudges for every query type of a scope."""
        now = now or datetime.now()
        stats = self.aggregate(scope=scope, now=now)

        by_query_type: dict = {}
        for (_scope, query_type, strategy), entry in stats.items():
            by_query_type.setdefault(query_type, {})[strategy] = entry

        adaptations = []
        for query_type, per_strategy in sorted(by_query_type.items()):
            for attempt in range(3):
                try:
                    adaptations.append(self._adapt_key(scope, query_type, per_strategy, now))
                    break
                except ConcurrentModificationError:
                    if attempt == 2:
                        raise
                    logger.debug(f"Weights for {scope.value}/{query_type} changed underneath, retrying")
        return adaptations

    def _adapt_key(self, scope: Scope, query_type: str, per_strategy: dict, now: datetime) -> Adaptation:
        weights = self.store.get_strategy_weights(scope, query_type)
        if weights is None:
            weights = StrategyWeights(scope=scope, query_type=query_type)
        expected = weights.version

        total = sum(s.total for s in per_strategy.values())
        helpful = sum(s.helpful for s in per_strategy.values())
        overall_rate = helpful / total if total else 0.5
        before = weights.as_dict()
        min_samples = self.config.adaptation_min_samples
        informed = any(s.total > min_samples for s in per_strategy.values())

        if weights.converged:
            shift = abs(overall_rate - (weights.last_success_rate or 0.5))
            crossed = informed and weights.sample_count <= min_samples
            if crossed:
                logger.info(f"{scope.value}/{query_type}: enough samples now, adapting again")
            elif shift <= CONVERGENCE_RESET_SHIFT:
                return Adaptation(scope, query_type, before, before, converged=True, skipped="converged")
            else:
                logger.info(f"{scope.value}/{query_type}: success rate moved {shift:.2f}, adapting again")
            weights.converged = False
            weights.stable_rounds = 0

        current = dict(before)
        deltas = {}
        for strategy, entry in sorted(per_strategy.items()):
            if strategy not in current:
                continue
            delta = (self.success_rate(entry) - 0.5) * self.config.learning_rate
            deltas[strategy] = delta
            if delta:
                current = nudge(current, strategy, delta)

        largest = max((abs(d) for d in deltas.values()), default=0.0)
        # Rounds on the neutral prior say nothing about convergence
        if informed and largest < self.config.convergence_epsilon:
            weights.stable_rounds += 1
        else:
            weights.stable_rounds = 0
        weights.converged = weights.stable_rounds >= self.config.convergence_rounds

        weights.set_weights(current)
        weights.sample_count = total
        weights.last_success_rate = overall_rate
        weights.updated_at = now
        self.store.put_strategy_weights(weights, expected_version=expected)

        if largest:
            logger.info(
                f"{scope.value}/{query_type}: "
                + ", ".join(f"{s} {before[s]:.3f}->{current[s]:.3f}" for s in current)
            )
        return Adaptation(scope, query_type, before, current, deltas, weights.converged)

    # =========================================================================
    # SCOPE UTILITY
    # =========================================================================

    def analyze_scope_utility(self, now: Optional[datetime] = None) -> dict:
        """Per memory scope: memories retrieved, how many in useful retrievals."""
        now = now or datetime.now()
        since = now - timedelta(days=self.config.adaptation_window_days)
        scope_of: dict = {}
        utility: dict = {}

        for log in self.store.logs_since(since):
            useful = self._outcome(log) is True
            for memory_id in log.memory_ids:
                if memory_id not in scope_of:
                    memory = self.store.get(memory_id)
                    scope_of[memory_id] = memory.scope.value if memory else "unknown"
                entry = utility.setdefault(scope_of[memory_id], {"retrieved": 0, "useful": 0})
                entry["retrieved"] += 1
                if useful:
                    entry["useful"] += 1

        for entry in utility.values():
            entry["effectiveness"] = entry["useful"] / entry["retrieved"] if entry["retrieved"] else 0.0
        return utility

    def propose_scope_weights(self, state: EvolutionState, now: Optional[datetime] = None) -> list:
        """Bounded scope-weight changes justified by observed utility."""
        now = now or datetime.now()
        since = now - timedelta(days=self.config.adaptation_window_days)
        if len(self.store.logs_since(since)) < MIN_DATA_POINTS:
            return []

        utility = self.analyze_scope_utility(now)
        with_data = {
            scope: entry for scope, entry in utility.items()
            if entry["retrieved"] > 0 and scope in DEFAULT_SCOPE_WEIGHTS
        }
        if len(with_data) < 2:
            return []

        average = sum(e["effectiveness"] for e in with_data.values()) / len(with_data)
        proposals = []
        for scope, entry in sorted(with_data.items()):
            current = state.scope_weights.get(scope, DEFAULT_SCOPE_WEIGHTS[scope])
            delta = (entry["effectiveness"] - average) * MAX_SCOPE_WEIGHT_DELTA
            delta = max(-MAX_SCOPE_WEIGHT_DELTA, min(MAX_SCOPE_WEIGHT_DELTA, delta))
            proposed = max(MIN_SCOPE_WEIGHT, min(MAX_SCOPE_WEIGHT, current + delta))
            if abs(proposed - current) > MIN_MEANINGFUL_CHANGE:
                proposals.append(ScopeProposal(
                    scope=scope,
                    current=current,
                    proposed=round(proposed, 2),
                    reason=(
                        f"scope {scope!r} effectiveness {entry['effectiveness']:.0%} "
                        f"vs average {average:.0%}"
                    ),
                    confidence=min(1.0, entry["retrieved"] / MIN_DATA_POINTS),
                ))
        return proposals

    def evolve(self, scope: Scope, dry_run: bool = True, now: Optional[datetime] = None) -> list:
        """Propose scope-weight changes; apply them unless dry_run."""
        state = self.store.get_evolution_state(scope) or EvolutionState(scope=scope)
        proposals = self.propose_scope_weights(state, now)
        if proposals and not dry_run:
            for proposal in proposals:
                state.scope_weights[proposal.scope] = proposal.proposed
            self.store.put_evolution_state(state, expected_version=state.version)
            logger.info(f"Applied {len(proposals)} scope-weight changes for {scope.value}")
        return proposals
