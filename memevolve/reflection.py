"""
Self-reflection pass, run every 20th session.

1. Candidate discovery: project memories reused across enough sessions get
   promoted to user scope.
2. Noise detection: memories nobody ever retrieved, older than two weeks
   and unimportant, are archived.
3. Meta-memory: one semantic memory per scope and day describing the state
   of the memory system (what is stored, what is used, what conflicts).
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from memevolve.config import EvolutionConfig
from memevolve.consolidation import LIVE_STATUSES, ConsolidationPipeline
from memevolve.errors import ConcurrentModificationError, InvariantViolation
from memevolve.lifecycle import transition
from memevolve.log import get_logger
from memevolve.models import Memory, MemoryStatus, MemoryType, RunReport, Scope
from memevolve.retrieval_log import save_memory
from memevolve.scoring import days_since
from memevolve.storage import Storage

logger = get_logger("memevolve.reflection")


class ReflectionPass:
    def __init__(
        self,
        store: Storage,
        pipeline: ConsolidationPipeline,
        config: Optional[EvolutionConfig] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.config = config or EvolutionConfig()

    def run(self, scope: Scope, report: RunReport, now: Optional[datetime] = None) -> Memory:
        now = now or datetime.now()
        if scope != Scope.SESSION:
            self.discover_candidates(report, now)
        self.archive_noise(scope, report, now)
        return self.write_meta_memory(scope, report, now)

    def discover_candidates(self, report: RunReport, now: datetime) -> int:
        promoted = 0
        for memory in self.pipeline.user_candidates():
            result = self.pipeline.promote_project_to_user(memory.id, now=now)
            for failure in result.failures:
                report.failures.append({"step": "reflection", **failure})
            if result.promoted or result.merged:
                promoted += 1
        report.promotions += promoted
        return promoted

    def is_noise(self, memory: Memory, now: datetime) -> bool:
        return (
            memory.access_count == 0
            and memory.importance < self.config.noise_max_importance
            and days_since(memory.created_at, now) > self.config.noise_age_days
        )

    def archive_noise(self, scope: Scope, report: RunReport, now: datetime) -> int:
        archived = 0
        for memory in self.store.find_memories(scope=scope, statuses=LIVE_STATUSES):
            if not self.is_noise(memory, now):
                continue
            try:
                change = transition(memory, MemoryStatus.ARCHIVED, "never retrieved", now)
                save_memory(self.store, memory, [change], expected_version=memory.version)
                archived += 1
            except (InvariantViolation, ConcurrentModificationError) as e:
                report.record_failure("reflection", e, memory.id)
        report.archivals += archived
        return archived

    def write_meta_memory(self, scope: Scope, report: RunReport, now: datetime) -> Memory:
        counts = self.store.count_memories().get(scope.value, {})
        window_start = now - timedelta(days=self.config.adaptation_window_days)
        logs = self.store.logs_since(window_start, scope=scope)
        tags = Counter(
            tag
            for memory in self.store.find_memories(scope=scope, statuses=LIVE_STATUSES)
            for tag in memory.tags
            if tag != "meta"
        )
        contradictions = self.store.open_contradictions(scope=scope)

        lines = [
            f"Memory system reflection for {scope.value} scope on {now.date().isoformat()}.",
            "Status counts: " + (
                ", ".join(f"{status} {count}" for status, count in sorted(counts.items())) or "none"
            ) + ".",
            f"Retrievals in the last {self.config.adaptation_window_days} days: {len(logs)}.",
            "Most common topics: " + (
                ", ".join(tag for tag, _ in tags.most_common(5)) or "none"
            ) + ".",
            f"Open contradictions: {len(contradictions)}.",
            f"This run: {report.promotions} promotions, {report.archivals} archivals.",
        ]

        meta_id = f"mem_meta_{scope.value}_{now.strftime('%Y%m%d')}"
        meta = self.store.get(meta_id)
        if meta is None:
            meta = Memory(
                id=meta_id,
                content="",
                memory_type=MemoryType.SEMANTIC,
                scope=scope,
                importance=0.5,
                tags=["meta"],
                metadata={"generated_by": "reflection"},
                created_at=now,
            )
        meta.content = " ".join(lines)
        meta.updated_at = now
        save_memory(self.store, meta, expected_version=meta.version)
        logger.info(f"Wrote meta-memory {meta_id}")
        return meta
