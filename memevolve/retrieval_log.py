"""
Retrieval Log - What was searched for, what came back, and did it help?

Every retrieval invocation is appended as an immutable log entry. Feedback
that arrives later ("that result was useful") goes into a separate
append-only table keyed by the log id; the latest feedback wins when the
strategy adapter aggregates.

Lifecycle transitions are written to the same log with event_type
"lifecycle_transition" so a memory's journey can be audited alongside the
retrievals that touched it.
"""

import re
from datetime import datetime
from typing import Optional

from memevolve.log import get_logger
from memevolve.models import (
    Memory,
    RetrievalFeedback,
    RetrievalLog,
    RetrievalStrategy,
    Scope,
)
from memevolve.storage import Storage

logger = get_logger("memevolve.retrieval_log")

LIFECYCLE_EVENT = "lifecycle_transition"

QUERY_TYPE_PATTERNS = [
    ("debugging", r"\b(error|exception|traceback|fail(ed|ing|ure)?|bug|crash)\b"),
    ("procedural", r"\b(how (do|to|can)|steps? to|install|set ?up|configure|run)\b"),
    ("conceptual", r"\b(why|what is|what are|explain|difference between)\b"),
]


def classify_query(query: str) -> str:
    """Bucket a query so weights can be learned per kind of question."""
    query_lower = (query or "").lower()
    for query_type, pattern in QUERY_TYPE_PATTERNS:
        if re.search(pattern, query_lower):
            return query_type
    return "general"


class RetrievalLogger:
    """Writes retrieval and lifecycle events to the store."""

    def __init__(self, store: Storage):
        self.store = store

    def log_retrieval(
        self,
        query: str,
        strategy: RetrievalStrategy,
        memory_ids: list,
        scope: Scope = Scope.PROJECT,
        query_type: Optional[str] = None,
        results_used: int = 0,
        feedback: Optional[bool] = None,
        latency_ms: float = 0.0,
        session_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> RetrievalLog:
        """Record one retrieval.

        Args:
            query: What was searched for
            strategy: Which retrieval mode produced the results
            memory_ids: Ids of the memories returned
            query_type: Defaults to classify_query(query)
            results_used: How many results the caller actually used
            feedback: Explicit helpful/unhelpful label if known now
        """
        log = RetrievalLog(
            query=query,
            query_type=query_type or classify_query(query),
            strategy=strategy,
            scope=scope,
            results_count=len(memory_ids),
            results_used=results_used,
            memory_ids=list(memory_ids),
            feedback=feedback,
            latency_ms=latency_ms,
            session_id=session_id,
        )
        if created_at is not None:
            log.created_at = created_at
        self.store.append_log(log)
        return log

    def mark_useful(self, log_id: str, was_useful: bool = True, reason: Optional[str] = None) -> None:
        """Attach feedback to an earlier retrieval without rewriting it."""
        self.store.add_feedback(RetrievalFeedback(
            log_id=log_id, was_useful=was_useful, reason=reason,
        ))
        logger.debug(f"Feedback on {log_id}: useful={was_useful}")

    def mark_query_useful(self, query: str, was_useful: bool = True) -> Optional[str]:
        """Feedback on the most recent retrieval for a query text."""
        log = self.store.latest_log_for_query(query)
        if log is None:
            return None
        self.mark_useful(log.id, was_useful)
        return log.id

    def log_transitions(self, memory: Memory, changes: list) -> None:
        """Append one lifecycle event per status change."""
        for change in changes:
            self.store.append_log(RetrievalLog(
                event_type=LIFECYCLE_EVENT,
                scope=memory.scope,
                memory_id=memory.id,
                session_id=memory.session_id,
                old_status=change.from_status,
                new_status=change.to_status,
                query=change.reason or None,
            ))
            logger.info(
                f"{memory.id}: {change.from_status} -> {change.to_status}"
                + (f" ({change.reason})" if change.reason else "")
            )


def save_memory(
    store: Storage,
    memory: Memory,
    changes: Optional[list] = None,
    expected_version: Optional[int] = None,
) -> Memory:
    """Persist a memory, then run the post-write hooks for its transitions."""
    store.put(memory, expected_version=expected_version)
    if changes:
        RetrievalLogger(store).log_transitions(memory, changes)
    return memory
