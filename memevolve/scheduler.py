"""
Evolution Scheduler - Decides which maintenance runs when.

Sessions are counted per scope. At the end of every session:
- always: light pass (promote the session's memories, tight time budget)
- every 5th session: full pass
- every 20th session: reflect pass

Maintenance modes:
- light:   promotion
- full:    lifecycle -> consolidation -> promotion -> graph evolution
- reflect: full + strategy adaptation + self-reflection

A run over a scope covers that scope and every narrower one. Steps always
run in the order above; a failing step is recorded in the run report and
the next step still runs. Only one run per scope at a time: a run holds
the lock of every scope it covers, each an in-process lock plus a
store-level advisory lock for other processes.

This is also the entry point for the interactive path (access, tool
events, feedback).
"""

import os
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from memevolve.config import EvolutionConfig
from memevolve.consolidation import ConsolidationPipeline, PromotionResult
from memevolve.errors import (
    ConcurrentModificationError,
    EvolutionError,
    ExternalServiceError,
    InvariantViolation,
    TransientStoreError,
)
from memevolve.graph_evolution import GraphEvolution
from memevolve.lifecycle import advance, transition
from memevolve.log import get_logger, set_level
from memevolve.models import (
    EvolutionState,
    MaintenanceMode,
    Memory,
    MemoryStatus,
    MemoryType,
    RetrievalLog,
    RetrievalStrategy,
    RunReport,
    Scope,
)
from memevolve.reflection import ReflectionPass
from memevolve.retrieval_log import RetrievalLogger, save_memory
from memevolve.scoring import strengthen_on_access
from memevolve.storage import MemoryStore, Storage
from memevolve.strategy import StrategyAdapter
from memevolve.text_service import KeywordTextService, TextService

logger = get_logger("memevolve.scheduler")

SCOPE_ORDER = [Scope.SESSION, Scope.PROJECT, Scope.USER]
CAS_RETRIES = 3


def covered_scopes(scope: Scope) -> list:
    """A scope and every narrower one."""
    return SCOPE_ORDER[: SCOPE_ORDER.index(Scope(scope)) + 1]


class EvolutionScheduler:
    """Single entry point for triggering memory evolution.

    Usage:
        scheduler = EvolutionScheduler(config=load_config())
        scheduler.on_session_start(Scope.PROJECT)
        ...
        report = scheduler.on_session_end(Scope.PROJECT, session_id)
    """

    def __init__(
        self,
        store: Optional[Storage] = None,
        text_service: Optional[TextService] = None,
        config: Optional[EvolutionConfig] = None,
    ):
        self.config = config or EvolutionConfig()
        set_level(self.config.log_level)
        self.store = store or MemoryStore(self.config.data_dir)
        self.text_service = text_service or KeywordTextService()

        self.pipeline = ConsolidationPipeline(self.store, self.text_service, self.config)
        self.graph_evolution = GraphEvolution(self.store, self.text_service, self.config)
        self.adapter = StrategyAdapter(self.store, self.config)
        self.reflection = ReflectionPass(self.store, self.pipeline, self.config)
        self.retrieval_logger = RetrievalLogger(self.store)

        self._owner = f"{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._locks_guard = threading.Lock()
        self._locks: dict = {}

    # =========================================================================
    # LOCKING
    # =========================================================================

    def _lock_name(self, scope: Scope) -> str:
        return f"maintenance:{Scope(scope).value}"

    @contextmanager
    def _exclusive(self, scopes: list) -> Iterator[Optional[str]]:
        """Hold the run lock of every scope in scopes.

        Yields None once all are held, otherwise the name of the lock that
        someone else has. Locks are taken narrowest first and never waited on.
        """
        held = []
        blocked = None
        try:
            for scope in sorted({Scope(s) for s in scopes}, key=SCOPE_ORDER.index):
                with self._locks_guard:
                    local = self._locks.setdefault(scope, threading.Lock())
                if not local.acquire(blocking=False):
                    blocked = self._lock_name(scope)
                    break
                held.append((scope, local, False))
                if not self.store.acquire_lock(self._lock_name(scope), self._owner, self.config.lock_ttl_seconds):
                    blocked = self._lock_name(scope)
                    break
                held[-1] = (scope, local, True)
            yield blocked
        finally:
            for scope, local, in_store in reversed(held):
                if in_store:
                    self.store.release_lock(self._lock_name(scope), self._owner)
                local.release()

    # =========================================================================
    # EVOLUTION STATE
    # =========================================================================

    def _update_state(self, scope: Scope, mutate: Callable[[EvolutionState], None]) -> EvolutionState:
        for attempt in range(CAS_RETRIES):
            state = self.store.get_evolution_state(scope) or EvolutionState(scope=scope)
            mutate(state)
            try:
                return self.store.put_evolution_state(state, expected_version=state.version)
            except ConcurrentModificationError:
                if attempt == CAS_RETRIES - 1:
                    raise
        raise AssertionError("unreachable")

    def on_session_start(self, scope: Scope) -> EvolutionState:
        scope = Scope(scope)
        state = self.store.get_evolution_state(scope)
        if state is None:
            state = self._update_state(scope, lambda s: None)
            logger.info(f"Initialized evolution state for {scope.value}")
        return state

    def mode_for_session(self, session_count: int) -> MaintenanceMode:
        if session_count % self.config.reflect_every == 0:
            return MaintenanceMode.REFLECT
        if session_count % self.config.full_every == 0:
            return MaintenanceMode.FULL
        return MaintenanceMode.LIGHT

    def on_session_end(self, scope: Scope, session_id: str, now: Optional[datetime] = None) -> RunReport:
        """Count the session and run the maintenance it is due."""
        scope = Scope(scope)

        def bump(state: EvolutionState):
            state.session_count += 1

        state = self._update_state(scope, bump)
        mode = self.mode_for_session(state.session_count)
        logger.info(f"Session {session_id} ended ({scope.value} #{state.session_count}), running {mode.value}")
        return self.run_maintenance(scope, mode, session_id=session_id, now=now)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def _step(self, name: str, report: RunReport, fn: Callable[[], None]) -> None:
        """Run one step, isolating its failure from the rest of the run."""
        try:
            fn()
            report.steps_run.append(name)
        except TransientStoreError as e:
            report.record_failure(name, e)
            logger.warning(f"Step {name} aborted, will retry next tick: {e}")
        except EvolutionError as e:
            report.record_failure(name, e)
            logger.warning(f"Step {name} failed: {e}")
        except Exception as e:
            # Collaborators raise their own error types; the run still goes on
            report.record_failure(name, e)
            logger.exception(f"Step {name} crashed: {e}")

    def run_maintenance(
        self,
        scope: Scope,
        mode: MaintenanceMode = MaintenanceMode.FULL,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RunReport:
        """Run a maintenance pass and return its report.

        Never raises for per-step failures; they are listed in the report.
        """
        scope = Scope(scope)
        mode = MaintenanceMode(mode)
        now = now or datetime.now()
        report = RunReport(scope=scope, mode=mode, started_at=now)
        scopes = covered_scopes(scope)
        started = time.monotonic()

        try:
            self._run_steps(scope, mode, scopes, session_id, report, now)
        except TransientStoreError as e:
            report.record_failure("run", e)
            logger.warning(f"Maintenance for {scope.value} could not start: {e}")
        except Exception as e:
            report.record_failure("run", e)
            logger.exception(f"Maintenance for {scope.value} aborted: {e}")

        report.finished_at = report.started_at + timedelta(seconds=time.monotonic() - started)
        try:
            self.store.append_run_report(report)
        except TransientStoreError as e:
            logger.error(f"Could not persist run report {report.id}: {e}")

        logger.info(
            f"{mode.value} run on {scope.value}: {report.promotions} promotions, "
            f"{report.merges} merges, {report.consolidations} consolidations, "
            f"{report.archivals} archivals, {report.prunes} prunes, "
            f"{len(report.failures)} failures"
        )
        return report

    def _run_steps(self, scope, mode, scopes, session_id, report: RunReport, now: datetime) -> None:
        with self._exclusive(scopes) as blocked:
            if blocked is not None:
                holder = self.store.lock_holder(blocked)
                report.record_skip("run", f"lock {blocked} held by {holder or 'another run'}")
                logger.info(f"Maintenance for {scope.value} skipped: {blocked} is busy")
            else:
                deadline = None
                if mode == MaintenanceMode.LIGHT:
                    deadline = time.monotonic() + self.config.light_budget_seconds

                if mode in (MaintenanceMode.FULL, MaintenanceMode.REFLECT):
                    self._step("lifecycle", report, lambda: self._lifecycle(scopes, report, now))
                    self._step("consolidation", report, lambda: self._consolidate(scopes, report, now))
                self._step("promotion", report, lambda: self._promote(session_id, report, deadline, now))
                if mode in (MaintenanceMode.FULL, MaintenanceMode.REFLECT):
                    self._step("graph", report, lambda: self._evolve_graph(scopes, report, now))
                if mode == MaintenanceMode.REFLECT:
                    self._step("strategy", report, lambda: self._adapt(scopes, report, now))
                    self._step("reflection", report, lambda: self.reflection.run(scope, report, now))

                self._step("state", report, lambda: self._update_state(scope, self._stamp(mode, now)))

    def _stamp(self, mode: MaintenanceMode, now: datetime) -> Callable[[EvolutionState], None]:
        def stamp(state: EvolutionState):
            if mode in (MaintenanceMode.FULL, MaintenanceMode.REFLECT):
                state.last_full_consolidation = now
            if mode == MaintenanceMode.REFLECT:
                state.last_reflection = now
                state.last_adaptation = now
        return stamp

    def _lifecycle(self, scopes: list, report: RunReport, now: datetime) -> None:
        statuses = [s for s in MemoryStatus if s != MemoryStatus.FORGOTTEN]
        for scope in scopes:
            for memory in self.store.find_memories(scope=scope, statuses=statuses):
                try:
                    changes, enqueue = advance(memory, now, self.config)
                    if changes:
                        save_memory(self.store, memory, changes, expected_version=memory.version)
                        for change in changes:
                            if change.to_status == MemoryStatus.ARCHIVED.value:
                                report.archivals += 1
                            elif change.to_status == MemoryStatus.FORGOTTEN.value:
                                report.forgotten += 1
                    if enqueue is not None:
                        self.pipeline.enqueue_decay(memory)
                except (InvariantViolation, ConcurrentModificationError) as e:
                    report.record_failure("lifecycle", e, memory.id)
                    logger.warning(f"Lifecycle skipped {memory.id}: {e}")

    def _consolidate(self, scopes: list, report: RunReport, now: datetime) -> None:
        for scope in scopes:
            self.pipeline.enqueue_episodic_groups(scope)
            self.pipeline.drain_queue(scope, report, now)

    def _promote(self, session_id: Optional[str], report: RunReport, deadline, now: datetime) -> None:
        if session_id is not None:
            sessions = [session_id]
        else:
            sessions = sorted({
                m.session_id
                for m in self.store.find_memories(scope=Scope.SESSION)
                if m.session_id and not m.metadata.get("promoted_to")
            })

        for sid in sessions:
            result = self.pipeline.promote_session_to_project(sid, deadline=deadline, now=now)
            report.promotions += len(result.promoted)
            report.merges += len(result.merged)
            for failure in result.failures:
                report.failures.append({"step": "promotion", **failure})
            if result.timed_out:
                report.record_skip("promotion", "light pass budget exhausted", sid)
                break

    def _evolve_graph(self, scopes: list, report: RunReport, now: datetime) -> None:
        for scope in scopes:
            report.contradictions += self.graph_evolution.queue_contradictions(scope)
            pruned = self.graph_evolution.prune(scope, now)
            report.prunes += pruned.entities_removed
            report.invalidations += pruned.edges_invalidated

    def _adapt(self, scopes: list, report: RunReport, now: datetime) -> None:
        for scope in scopes:
            for adaptation in self.adapter.adapt(scope, now):
                if adaptation.skipped is None and any(adaptation.deltas.values()):
                    report.adaptations += 1
            self.adapter.evolve(scope, dry_run=False, now=now)

    # =========================================================================
    # INTERACTIVE PATH
    # =========================================================================

    def on_tool_event(self, scope: Scope, event: dict, now: Optional[datetime] = None) -> Memory:
        """Store a tool-use event as a memory and extract it into the graph.

        Event keys: content (required), kind, session_id, memory_type,
        embedding, tags, importance, metadata.
        """
        content = (event.get("content") or "").strip()
        if not content:
            raise ValueError("tool event has no content")
        now = now or datetime.now()

        tags = list(event.get("tags", []))
        if event.get("kind") == "error" and "error" not in tags:
            tags.append("error")

        memory = Memory(
            content=content,
            memory_type=event.get("memory_type", MemoryType.EPISODIC),
            scope=scope,
            embedding=event.get("embedding"),
            importance=event.get("importance", 0.5),
            tags=tags,
            metadata={"kind": event.get("kind", "tool_use"), **event.get("metadata", {})},
            session_id=event.get("session_id"),
            created_at=now,
        )
        save_memory(self.store, memory, expected_version=0)

        try:
            self.graph_evolution.ingest_memory(memory, now)
        except ExternalServiceError as e:
            logger.warning(f"Extraction failed for {memory.id}, graph unchanged: {e}")
        return memory

    def access(self, memory_id: str, session_id: Optional[str] = None, now: Optional[datetime] = None) -> Memory:
        """Record one retrieval of a memory (strengthen, then re-evaluate)."""
        for attempt in range(CAS_RETRIES):
            memory = self.store.get(memory_id)
            if memory is None:
                raise KeyError(memory_id)
            if memory.is_forgotten:
                raise InvariantViolation("cannot access a forgotten memory", memory_id=memory_id)

            moment = now or datetime.now()
            strengthen_on_access(memory, moment)
            changes = []
            if memory.status == MemoryStatus.CREATED:
                changes.append(transition(memory, MemoryStatus.ACTIVE, "first access", moment))
            try:
                save_memory(self.store, memory, changes, expected_version=memory.version)
                break
            except ConcurrentModificationError:
                if attempt == CAS_RETRIES - 1:
                    raise
                logger.debug(f"Retrying access of {memory_id}")

        self.store.append_log(RetrievalLog(
            event_type="access",
            scope=memory.scope,
            memory_id=memory.id,
            memory_ids=[memory.id],
            session_id=session_id,
        ))
        return memory

    def record_retrieval(
        self,
        query: str,
        memory_ids: list,
        strategy: RetrievalStrategy = RetrievalStrategy.VECTOR,
        scope: Scope = Scope.PROJECT,
        **kwargs,
    ) -> RetrievalLog:
        return self.retrieval_logger.log_retrieval(query, strategy, memory_ids, scope=scope, **kwargs)

    def mark_retrieval_useful(self, query: str, was_useful: bool = True, reason: Optional[str] = None) -> Optional[str]:
        """Attach feedback to the latest retrieval for a query. Returns its log id."""
        log = self.store.latest_log_for_query(query)
        if log is None:
            return None
        self.retrieval_logger.mark_useful(log.id, was_useful, reason)
        return log.id

    def promote_to_user(self, memory_id: str, now: Optional[datetime] = None) -> PromotionResult:
        with self._exclusive([Scope.USER]) as blocked:
            if blocked is not None:
                return PromotionResult(eligible=False, reason="user scope is being maintained")
            return self.pipeline.promote_project_to_user(memory_id, now=now)

    def forget(self, memory_id: str, reason: str = "manual", now: Optional[datetime] = None) -> Memory:
        for attempt in range(CAS_RETRIES):
            memory = self.store.get(memory_id)
            if memory is None:
                raise KeyError(memory_id)
            change = transition(memory, MemoryStatus.FORGOTTEN, reason, now)
            try:
                return save_memory(self.store, memory, [change], expected_version=memory.version)
            except ConcurrentModificationError:
                if attempt == CAS_RETRIES - 1:
                    raise
        raise AssertionError("unreachable")

    def status(self) -> dict:
        states = [self.store.get_evolution_state(scope) for scope in SCOPE_ORDER]
        return {
            "memories": self.store.count_memories(),
            "queue_depth": len(self.store.pending_items()),
            "open_contradictions": len(self.store.open_contradictions()),
            "graph": self.store.graph.get_stats(),
            "evolution_state": [s.to_dict() for s in states if s is not None],
            "strategy_weights": [
                {"scope": w.scope.value, "query_type": w.query_type,
                 "converged": w.converged, **w.as_dict()}
                for w in self.store.all_strategy_weights()
            ],
            "recent_runs": self.store.run_reports(limit=5),
        }
