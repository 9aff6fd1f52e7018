"""
Consolidation Pipeline - Merge, summarize and promote memories.

Three jobs, always in this order within a run:
1. Drain the consolidation queue
   - episodic_to_semantic: 3+ episodes sharing a topic tag become one
     semantic memory (summary from the text service)
   - strength_decay: a fading active memory is merged into a similar one,
     or simply marked consolidated
2. Promote session memories to project scope
3. Promote project memories to user scope (only with reuse across 3+ sessions)

Promotion is merge-or-create. Similarity > 0.85 is the only dedup gate:
a similar memory in the target scope absorbs the candidate, otherwise a new
discounted copy is created. Each candidate runs in its own transaction, so
a run can stop between candidates and be re-run safely.
"""

import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import numpy as np

from memevolve.config import EvolutionConfig
from memevolve.errors import (
    ConcurrentModificationError,
    ExternalServiceError,
    InvariantViolation,
)
from memevolve.lifecycle import transition
from memevolve.log import get_logger
from memevolve.models import (
    ConsolidationQueueItem,
    Memory,
    MemoryStatus,
    MemoryType,
    QueueReason,
    RunReport,
    Scope,
)
from memevolve.retrieval_log import save_memory
from memevolve.storage import Storage
from memevolve.text_service import TextService, service_call

logger = get_logger("memevolve.consolidation")

LIVE_STATUSES = [MemoryStatus.CREATED, MemoryStatus.ACTIVE]
SESSION_PROMOTABLE = [MemoryType.SEMANTIC, MemoryType.PROCEDURAL, MemoryType.EPISODIC]
USER_PROMOTABLE = [MemoryType.SEMANTIC, MemoryType.PROCEDURAL]


@dataclass
class PromotionResult:
    """Outcome of promoting one memory (or a batch of them)."""
    eligible: bool = True
    reason: str = ""
    promoted: list = field(default_factory=list)   # new memory ids
    merged: list = field(default_factory=list)     # target ids that absorbed a candidate
    skipped: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "promoted": list(self.promoted),
            "merged": list(self.merged),
            "skipped": list(self.skipped),
            "failures": list(self.failures),
            "timed_out": self.timed_out,
        }


def _consolidated_id(source_ids: list) -> str:
    digest = hashlib.sha1("|".join(sorted(source_ids)).encode()).hexdigest()[:12]
    return f"mem_{digest}"


def _centroid(vectors: list) -> Optional[list]:
    """Normalized mean of the given vectors (None if there are none)."""
    vectors = [v for v in vectors if v is not None]
    if not vectors:
        return None
    mean = np.mean(np.asarray(vectors, dtype=float), axis=0)
    norm = np.linalg.norm(mean)
    if norm == 0:
        return None
    return (mean / norm).tolist()


class ConsolidationPipeline:
    """Queue draining and scope promotion against a Storage."""

    def __init__(
        self,
        store: Storage,
        text_service: Optional[TextService] = None,
        config: Optional[EvolutionConfig] = None,
    ):
        self.store = store
        self.text_service = text_service
        self.config = config or EvolutionConfig()

    # =========================================================================
    # MERGE PRIMITIVE
    # =========================================================================

    def merge_into(self, source: Memory, target: Memory, now: Optional[datetime] = None) -> Memory:
        """Fold one memory's usage signals into another (target is mutated)."""
        if source.is_forgotten or target.is_forgotten:
            raise InvariantViolation(
                f"cannot merge {source.id} into {target.id}: forgotten memory",
                memory_id=source.id if source.is_forgotten else target.id,
            )
        now = now or datetime.now()
        target.access_count += source.access_count
        target.importance = max(target.importance, source.importance)
        target.updated_at = now

        merged_from = target.metadata.setdefault("merged_from", [])
        if source.id not in merged_from:
            merged_from.append(source.id)
        sessions = set(target.metadata.get("source_sessions", []))
        sessions.update(source.metadata.get("source_sessions", []))
        if source.session_id:
            sessions.add(source.session_id)
        if sessions:
            target.metadata["source_sessions"] = sorted(sessions)
        for tag in source.tags:
            if tag not in target.tags:
                target.tags.append(tag)
        return target

    # =========================================================================
    # QUEUE
    # =========================================================================

    def enqueue_decay(self, memory: Memory) -> Optional[str]:
        """Queue a fading memory for consolidation (once)."""
        if self.store.has_pending(memory.id, QueueReason.STRENGTH_DECAY):
            return None
        return self.store.enqueue(ConsolidationQueueItem(
            reason=QueueReason.STRENGTH_DECAY,
            memory_ids=[memory.id],
            scope=memory.scope,
            priority=1.0 - memory.importance,
        ))

    def enqueue_episodic_groups(self, scope: Scope) -> int:
        """Queue groups of 3+ live episodic memories sharing a tag."""
        episodes = self.store.find_memories(
            scope=scope, statuses=LIVE_STATUSES, memory_types=[MemoryType.EPISODIC],
        )
        by_tag: dict = {}
        for memory in episodes:
            if self.store.has_pending(memory.id, QueueReason.EPISODIC_TO_SEMANTIC):
                continue
            for tag in memory.tags:
                by_tag.setdefault(tag, []).append(memory)

        assigned = set()
        queued = 0
        for tag, members in sorted(by_tag.items(), key=lambda kv: len(kv[1]), reverse=True):
            members = [m for m in members if m.id not in assigned]
            if len(members) < self.config.episodic_group_min:
                continue
            ids = [m.id for m in members]
            assigned.update(ids)
            self.store.enqueue(ConsolidationQueueItem(
                reason=QueueReason.EPISODIC_TO_SEMANTIC,
                memory_ids=ids,
                scope=scope,
                topic=tag,
                priority=min(1.0, len(ids) / 10),
            ))
            queued += 1
            logger.debug(f"Queued {len(ids)} episodes on {tag!r} for consolidation")
        return queued

    def drain_queue(
        self,
        scope: Scope,
        report: RunReport,
        now: Optional[datetime] = None,
    ) -> None:
        """Process every pending queue item of a scope.

        Per-item failures go into the report; the item stays queued.
        TransientStoreError propagates so the caller can abort the step.
        """
        now = now or datetime.now()
        for item in self.store.pending_items(scope=scope):
            try:
                if item.reason == QueueReason.EPISODIC_TO_SEMANTIC:
                    self._consolidate_episodes(item, report, now)
                else:
                    self._consolidate_decayed(item, report, now)
            except ExternalServiceError as e:
                item.attempts += 1
                item.last_error = str(e)
                self.store.update_item(item)
                report.record_failure("consolidation", e, item.id)
                logger.warning(f"Text service failed for {item.id}, left queued: {e}")
            except InvariantViolation as e:
                report.record_failure("consolidation", e, item.id)
                logger.warning(f"Skipped {item.id} ({e.memory_id}): {e}")
            except ConcurrentModificationError as e:
                report.record_failure("consolidation", e, item.id)
                logger.warning(f"Lost a write race on {item.id}, will retry: {e}")

    def _consolidate_episodes(self, item: ConsolidationQueueItem, report: RunReport, now: datetime):
        summary_id = _consolidated_id(item.memory_ids)
        members = [self.store.get(mid) for mid in item.memory_ids]
        live = [
            m for m in members
            if m is not None
            and m.status in LIVE_STATUSES
            and m.memory_type == MemoryType.EPISODIC
        ]

        existing = self.store.get(summary_id)
        if existing is None and len(live) < self.config.episodic_group_min:
            report.record_skip("consolidation", f"only {len(live)} live episodes", item.id)
            return

        if existing is None:
            # Call the text service before writing anything
            summary = None
            if self.text_service is not None:
                with service_call("summarize"):
                    summary = self.text_service.summarize([m.content for m in live])
            if not summary:
                raise ExternalServiceError("no text service available for summarization")

        with self.store.transaction():
            if existing is None:
                existing = Memory(
                    id=summary_id,
                    content=summary,
                    memory_type=MemoryType.SEMANTIC,
                    scope=item.scope,
                    embedding=_centroid([m.embedding for m in live]),
                    importance=max(m.importance for m in live),
                    confidence=max(m.confidence for m in live),
                    tags=[item.topic] if item.topic else [],
                    metadata={
                        "consolidated_from": [m.id for m in live],
                        "consolidated_at": now.isoformat(),
                        "topic": item.topic,
                    },
                    created_at=now,
                )
                save_memory(self.store, existing, expected_version=0)

            for member in live:
                member.metadata["consolidated_into"] = existing.id
                change = transition(member, MemoryStatus.CONSOLIDATED, f"summarized into {existing.id}", now)
                save_memory(self.store, member, [change], expected_version=member.version)
            self.store.remove_item(item.id)

        report.consolidations += 1
        logger.info(f"Consolidated {len(live)} episodes into {existing.id} ({item.topic!r})")

    def _consolidate_decayed(self, item: ConsolidationQueueItem, report: RunReport, now: datetime):
        with self.store.transaction():
            for memory_id in item.memory_ids:
                memory = self.store.get(memory_id)
                if memory is None or memory.status != MemoryStatus.ACTIVE:
                    report.record_skip("consolidation", "no longer active", memory_id)
                    continue

                target = None
                if memory.embedding is not None:
                    for candidate, _sim in self.store.find_by_similarity(
                        memory.embedding,
                        self.config.promotion_similarity,
                        scope=memory.scope,
                        statuses=[MemoryStatus.ACTIVE],
                    ):
                        if candidate.id != memory.id:
                            target = candidate
                            break

                if target is not None:
                    self.merge_into(memory, target, now)
                    save_memory(self.store, target, expected_version=target.version)
                    memory.metadata["consolidated_into"] = target.id
                    report.merges += 1

                change = transition(memory, MemoryStatus.CONSOLIDATED, "strength decay", now)
                save_memory(self.store, memory, [change], expected_version=memory.version)
                report.consolidations += 1
            self.store.remove_item(item.id)

    # =========================================================================
    # PROMOTION
    # =========================================================================

    def _find_promotion_target(self, source: Memory, scope: Scope) -> Optional[Memory]:
        """Existing memory in the target scope that should absorb source."""
        if source.embedding is not None:
            matches = self.store.find_by_similarity(
                source.embedding,
                self.config.promotion_similarity,
                scope=scope,
                statuses=LIVE_STATUSES,
                limit=1,
            )
            return matches[0][0] if matches else None

        # Without an embedding only provenance can identify a previous copy
        for memory in self.store.find_memories(scope=scope, statuses=LIVE_STATUSES):
            if source.id in memory.metadata.get("promoted_from", []):
                return memory
        return None

    def _promote_one(
        self,
        source: Memory,
        scope: Scope,
        discount: float,
        result: PromotionResult,
        now: datetime,
        sessions: Optional[set] = None,
    ) -> None:
        """Merge-or-create for one candidate, atomically."""
        with self.store.transaction():
            fresh = self.store.get(source.id)
            if fresh is None or fresh.is_forgotten or fresh.metadata.get("promoted_to"):
                result.skipped.append(source.id)
                return
            source = fresh

            target = self._find_promotion_target(source, scope)
            if target is not None:
                self.merge_into(source, target, now)
                promoted_from = target.metadata.setdefault("promoted_from", [])
                if source.id not in promoted_from:
                    promoted_from.append(source.id)
                save_memory(self.store, target, expected_version=target.version)
                result.merged.append(target.id)
                logger.debug(f"Merged {source.id} into {scope.value} memory {target.id}")
            else:
                sessions = set(sessions or ())
                sessions.update(source.metadata.get("source_sessions", []))
                if source.session_id:
                    sessions.add(source.session_id)
                target = Memory(
                    content=source.content,
                    memory_type=source.memory_type,
                    scope=scope,
                    embedding=list(source.embedding) if source.embedding is not None else None,
                    importance=source.importance * discount,
                    relevance_score=source.relevance_score,
                    confidence=source.confidence,
                    outcome_impact=source.outcome_impact,
                    user_feedback=source.user_feedback,
                    access_count=source.access_count,
                    tags=list(source.tags),
                    metadata={
                        "promoted_from": [source.id],
                        "promoted_at": now.isoformat(),
                        "source_scope": source.scope.value,
                        "source_sessions": sorted(sessions),
                    },
                    created_at=now,
                )
                changes = []
                if target.access_count > 0:
                    changes.append(transition(target, MemoryStatus.ACTIVE, "promoted with usage", now))
                save_memory(self.store, target, changes, expected_version=0)
                result.promoted.append(target.id)
                logger.debug(f"Promoted {source.id} to new {scope.value} memory {target.id}")

            source.metadata["promoted_to"] = target.id
            save_memory(self.store, source, expected_version=source.version)

    def promote_session_to_project(
        self,
        session_id: str,
        deadline: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PromotionResult:
        """Promote a session's well-used memories to project scope.

        Args:
            session_id: The session whose memories are considered
            deadline: time.monotonic() value after which no new candidate
                is started
        """
        now = now or datetime.now()
        result = PromotionResult()
        candidates = [
            m for m in self.store.find_memories(
                scope=Scope.SESSION,
                session_id=session_id,
                statuses=LIVE_STATUSES,
                memory_types=SESSION_PROMOTABLE,
            )
            if m.importance >= self.config.promotion_min_importance
            and m.access_count >= self.config.promotion_min_access
            and not m.metadata.get("promoted_to")
        ]
        candidates.sort(key=lambda m: m.importance, reverse=True)

        for candidate in candidates[: self.config.promotion_cap]:
            if deadline is not None and time.monotonic() > deadline:
                result.timed_out = True
                break
            try:
                self._promote_one(candidate, Scope.PROJECT, self.config.project_discount, result, now)
            except (InvariantViolation, ConcurrentModificationError) as e:
                result.failures.append({"item": candidate.id, "error": str(e)})
                logger.warning(f"Promotion of {candidate.id} skipped: {e}")

        if result.promoted or result.merged:
            logger.info(
                f"Session {session_id}: promoted {len(result.promoted)}, "
                f"merged {len(result.merged)}"
            )
        return result

    def distinct_sessions(self, memory: Memory) -> set:
        """Sessions that produced or reused a memory."""
        sessions = set(memory.metadata.get("source_sessions", []))
        if memory.session_id:
            sessions.add(memory.session_id)
        sessions.update(self.store.sessions_referencing(memory.id))
        return sessions

    def promote_project_to_user(self, memory_id: str, now: Optional[datetime] = None) -> PromotionResult:
        """Promote a project memory to user scope if it proved reusable."""
        memory = self.store.get(memory_id)
        if memory is None:
            return PromotionResult(eligible=False, reason="memory not found")
        if memory.scope != Scope.PROJECT:
            return PromotionResult(eligible=False, reason=f"scope is {memory.scope.value}")
        if memory.is_forgotten:
            return PromotionResult(eligible=False, reason="memory is forgotten")
        if memory.memory_type not in USER_PROMOTABLE:
            return PromotionResult(eligible=False, reason=f"type {memory.memory_type.value} stays in project")
        if memory.metadata.get("promoted_to"):
            return PromotionResult(eligible=False, reason="already promoted")

        sessions = self.distinct_sessions(memory)
        if len(sessions) < self.config.user_min_sessions:
            return PromotionResult(
                eligible=False,
                reason=f"used in {len(sessions)} sessions, need {self.config.user_min_sessions}",
            )

        result = PromotionResult(reason=f"used in {len(sessions)} sessions")
        self._promote_one(
            memory, Scope.USER, self.config.user_discount, result,
            now or datetime.now(), sessions=sessions,
        )
        return result

    def user_candidates(self) -> list:
        """Project memories that currently pass the user-promotion gate."""
        candidates = []
        for memory in self.store.find_memories(
            scope=Scope.PROJECT,
            statuses=LIVE_STATUSES,
            memory_types=USER_PROMOTABLE,
        ):
            if memory.metadata.get("promoted_to"):
                continue
            if len(self.distinct_sessions(memory)) >= self.config.user_min_sessions:
                candidates.append(memory)
        return candidates
