"""
Storage Layer - Where memories and the engine's bookkeeping live.

Three parts, like a filing system with an index and a map:
1. SQLite = the filing cabinet (memories, queue, logs, weights, state, locks)
2. ChromaDB = the smart index (finds memories with similar embeddings)
3. KnowledgeGraph = the map (entities and relationships, see graph.py)

The engine only talks to the abstract Storage interface. MemoryStore is the
concrete implementation. Every single-record write is atomic; multi-record
consistency is the engine's job (transaction() groups SQLite writes).
"""

import functools
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import chromadb
from chromadb.config import Settings
from chromadb.errors import ChromaError

from memevolve.errors import ConcurrentModificationError, TransientStoreError
from memevolve.graph import KnowledgeGraph, cosine_similarity
from memevolve.log import get_logger
from memevolve.models import (
    ConsolidationQueueItem,
    ContradictionItem,
    EvolutionState,
    Memory,
    MemoryStatus,
    QueueReason,
    RetrievalFeedback,
    RetrievalLog,
    RunReport,
    Scope,
    StrategyWeights,
    to_iso,
)

logger = get_logger("memevolve.storage")


def _translate_errors(method):
    """Turn backend failures into TransientStoreError."""
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"sqlite: {e}") from e
        except ChromaError as e:
            raise TransientStoreError(f"chromadb: {e}") from e
    return wrapper


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


# =============================================================================
# STORAGE INTERFACE
# =============================================================================

class Storage(ABC):
    """Operations the evolution engine needs from a persistent store."""

    graph: KnowledgeGraph

    # Memories
    @abstractmethod
    def get(self, memory_id: str) -> Optional[Memory]: ...

    @abstractmethod
    def put(self, memory: Memory, expected_version: Optional[int] = None) -> Memory: ...

    @abstractmethod
    def delete(self, memory_id: str) -> bool: ...

    @abstractmethod
    def find_by_similarity(
        self,
        vector: list,
        threshold: float,
        scope: Optional[Scope] = None,
        memory_type=None,
        statuses: Optional[list] = None,
        limit: int = 10,
    ) -> list: ...

    @abstractmethod
    def find_memories(
        self,
        scope: Optional[Scope] = None,
        statuses: Optional[list] = None,
        memory_types: Optional[list] = None,
        tag: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list: ...

    @abstractmethod
    def count_memories(self) -> dict: ...

    # Consolidation queue
    @abstractmethod
    def enqueue(self, item: ConsolidationQueueItem) -> str: ...

    @abstractmethod
    def pending_items(self, reason: Optional[QueueReason] = None, scope: Optional[Scope] = None) -> list: ...

    @abstractmethod
    def has_pending(self, memory_id: str, reason: QueueReason) -> bool: ...

    @abstractmethod
    def update_item(self, item: ConsolidationQueueItem) -> None: ...

    @abstractmethod
    def remove_item(self, item_id: str) -> None: ...

    # Retrieval log
    @abstractmethod
    def append_log(self, log: RetrievalLog) -> str: ...

    @abstractmethod
    def logs_since(self, since: datetime, scope: Optional[Scope] = None, event_type: str = "search") -> list: ...

    @abstractmethod
    def latest_log_for_query(self, query: str) -> Optional[RetrievalLog]: ...

    @abstractmethod
    def add_feedback(self, feedback: RetrievalFeedback) -> None: ...

    @abstractmethod
    def sessions_referencing(self, memory_id: str) -> set: ...

    # Strategy weights / evolution state
    @abstractmethod
    def get_strategy_weights(self, scope: Scope, query_type: str) -> Optional[StrategyWeights]: ...

    @abstractmethod
    def all_strategy_weights(self, scope: Optional[Scope] = None) -> list: ...

    @abstractmethod
    def put_strategy_weights(self, weights: StrategyWeights, expected_version: Optional[int] = None) -> StrategyWeights: ...

    @abstractmethod
    def get_evolution_state(self, scope: Scope) -> Optional[EvolutionState]: ...

    @abstractmethod
    def put_evolution_state(self, state: EvolutionState, expected_version: Optional[int] = None) -> EvolutionState: ...

    # Contradictions / run reports
    @abstractmethod
    def add_contradiction(self, item: ContradictionItem) -> bool: ...

    @abstractmethod
    def open_contradictions(self, scope: Optional[Scope] = None) -> list: ...

    @abstractmethod
    def append_run_report(self, report: RunReport) -> None: ...

    @abstractmethod
    def run_reports(self, scope: Optional[Scope] = None, limit: int = 20) -> list: ...

    # Coordination
    @abstractmethod
    def transaction(self): ...

    @abstractmethod
    def acquire_lock(self, name: str, owner: str, ttl_seconds: float) -> bool: ...

    @abstractmethod
    def release_lock(self, name: str, owner: str) -> None: ...

    @abstractmethod
    def lock_holder(self, name: str) -> Optional[str]: ...


# =============================================================================
# SQLITE + CHROMADB IMPLEMENTATION
# =============================================================================

class MemoryStore(Storage):
    """The main storage system.

    Usage:
        store = MemoryStore(data_dir=Path("/tmp/memevolve"))
        store.put(Memory("Use uv for installs", memory_type="procedural"))
        hits = store.find_by_similarity(vector, threshold=0.85, scope=Scope.PROJECT)
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """Set up the storage.

        Args:
            data_dir: Where to save data. Defaults to ~/.memevolve/data/
        """
        if data_dir is None:
            data_dir = Path.home() / ".memevolve" / "data"
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._tx_depth = 0
        self._pending_index_ops: list = []

        self._init_sqlite()
        self._init_chromadb()
        self.graph = KnowledgeGraph(self.data_dir)

    def _init_sqlite(self):
        """Create the filing cabinet (database tables)."""
        db_path = self.data_dir / "memevolve.db"
        self.db = sqlite3.connect(str(db_path), check_same_thread=False, timeout=5.0)
        self.db.row_factory = sqlite3.Row

        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL DEFAULT '',
                memory_type TEXT NOT NULL,
                scope TEXT NOT NULL,
                embedding TEXT,
                importance REAL DEFAULT 0.5,
                relevance_score REAL DEFAULT 0.5,
                confidence REAL DEFAULT 0.7,
                outcome_impact REAL DEFAULT 0.0,
                user_feedback REAL DEFAULT 0.0,
                access_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_accessed_at TEXT NOT NULL,
                status TEXT NOT NULL,
                status_history TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                metadata TEXT NOT NULL DEFAULT '{}',
                session_id TEXT,
                version INTEGER NOT NULL DEFAULT 1
            );
            CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope);
            CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status);
            CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(memory_type);
            CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id);

            CREATE TABLE IF NOT EXISTS consolidation_queue (
                id TEXT PRIMARY KEY,
                reason TEXT NOT NULL,
                memory_ids TEXT NOT NULL,
                scope TEXT NOT NULL,
                topic TEXT,
                priority REAL DEFAULT 0.5,
                attempts INTEGER DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_cq_reason ON consolidation_queue(reason);

            CREATE TABLE IF NOT EXISTS retrieval_log (
                id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL DEFAULT 'search',
                query TEXT,
                query_type TEXT,
                strategy TEXT,
                scope TEXT,
                results_count INTEGER DEFAULT 0,
                results_used INTEGER DEFAULT 0,
                memory_ids TEXT NOT NULL DEFAULT '[]',
                feedback INTEGER,
                latency_ms REAL DEFAULT 0,
                session_id TEXT,
                memory_id TEXT,
                old_status TEXT,
                new_status TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_rl_time ON retrieval_log(created_at);
            CREATE INDEX IF NOT EXISTS idx_rl_event ON retrieval_log(event_type);

            CREATE TABLE IF NOT EXISTS retrieval_feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                log_id TEXT NOT NULL,
                was_useful INTEGER NOT NULL,
                reason TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_rf_log ON retrieval_feedback(log_id);

            CREATE TABLE IF NOT EXISTS strategy_weights (
                scope TEXT NOT NULL,
                query_type TEXT NOT NULL,
                vector_weight REAL NOT NULL,
                keyword_weight REAL NOT NULL,
                graph_weight REAL NOT NULL,
                sample_count INTEGER DEFAULT 0,
                last_success_rate REAL,
                stable_rounds INTEGER DEFAULT 0,
                converged INTEGER DEFAULT 0,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                PRIMARY KEY (scope, query_type)
            );

            CREATE TABLE IF NOT EXISTS evolution_state (
                scope TEXT PRIMARY KEY,
                session_count INTEGER DEFAULT 0,
                last_full_consolidation TEXT,
                last_reflection TEXT,
                last_adaptation TEXT,
                scope_weights TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS contradictions (
                id TEXT PRIMARY KEY,
                entity_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                edge_ids TEXT NOT NULL,
                relation_types TEXT NOT NULL,
                scope TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reflection_log (
                id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                mode TEXT NOT NULL,
                report TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at REAL NOT NULL
            );
        """)
        self.db.commit()

    def _init_chromadb(self):
        """Create the smart index (vector database)."""
        self.chroma = chromadb.PersistentClient(
            path=str(self.data_dir / "chromadb"),
            settings=Settings(
                anonymized_telemetry=False,
                allow_reset=True,
            ),
        )
        # Embeddings always come from the caller, never from chroma
        self.collection = self.chroma.get_or_create_collection(
            name="memevolve_memories",
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def close(self):
        self.db.close()

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group SQLite writes; the vector index is synced after commit."""
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.db.rollback()
                    self._pending_index_ops.clear()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._commit()

    def _commit(self):
        if self._tx_depth > 0:
            return
        self.db.commit()
        ops, self._pending_index_ops = self._pending_index_ops, []
        for op in ops:
            op()

    # =========================================================================
    # MEMORIES
    # =========================================================================

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            content=row["content"],
            memory_type=row["memory_type"],
            scope=row["scope"],
            embedding=json.loads(row["embedding"]) if row["embedding"] else None,
            importance=row["importance"],
            relevance_score=row["relevance_score"],
            confidence=row["confidence"],
            outcome_impact=row["outcome_impact"],
            user_feedback=row["user_feedback"],
            access_count=row["access_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed_at=row["last_accessed_at"],
            status=row["status"],
            status_history=json.loads(row["status_history"]),
            tags=json.loads(row["tags"]),
            metadata=json.loads(row["metadata"]),
            session_id=row["session_id"],
            version=row["version"],
        )

    @_translate_errors
    def get(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
        return self._row_to_memory(row) if row else None

    @_translate_errors
    def put(self, memory: Memory, expected_version: Optional[int] = None) -> Memory:
        """Insert or update a memory (compare-and-swap when expected_version is given).

        Raises ConcurrentModificationError if the stored version moved.
        """
        values = (
            memory.content,
            memory.memory_type.value,
            memory.scope.value,
            json.dumps(memory.embedding) if memory.embedding is not None else None,
            memory.importance,
            memory.relevance_score,
            memory.confidence,
            memory.outcome_impact,
            memory.user_feedback,
            memory.access_count,
            to_iso(memory.created_at),
            to_iso(memory.updated_at),
            to_iso(memory.last_accessed_at),
            memory.status.value,
            json.dumps([h.to_dict() for h in memory.status_history]),
            json.dumps(list(memory.tags)),
            json.dumps(memory.metadata),
            memory.session_id,
        )

        with self._lock:
            row = self.db.execute(
                "SELECT version FROM memories WHERE id = ?", (memory.id,)
            ).fetchone()
            if row is None:
                if expected_version not in (None, 0):
                    raise ConcurrentModificationError(memory.id, expected_version, None)
                try:
                    self.db.execute(
                        """
                        INSERT INTO memories (
                            content, memory_type, scope, embedding, importance,
                            relevance_score, confidence, outcome_impact, user_feedback,
                            access_count, created_at, updated_at, last_accessed_at,
                            status, status_history, tags, metadata, session_id,
                            id, version
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                        """,
                        values + (memory.id,),
                    )
                except sqlite3.IntegrityError as e:
                    raise ConcurrentModificationError(memory.id, 0, None) from e
                memory.version = 1
            else:
                current = row["version"]
                if expected_version is not None and current != expected_version:
                    raise ConcurrentModificationError(memory.id, expected_version, current)
                cursor = self.db.execute(
                    """
                    UPDATE memories SET
                        content = ?, memory_type = ?, scope = ?, embedding = ?,
                        importance = ?, relevance_score = ?, confidence = ?,
                        outcome_impact = ?, user_feedback = ?, access_count = ?,
                        created_at = ?, updated_at = ?, last_accessed_at = ?,
                        status = ?, status_history = ?, tags = ?, metadata = ?,
                        session_id = ?, version = version + 1
                    WHERE id = ? AND version = ?
                    """,
                    values + (memory.id, current),
                )
                if cursor.rowcount == 0:
                    raise ConcurrentModificationError(memory.id, current, None)
                memory.version = current + 1

            snapshot = (memory.id, memory.content, memory.embedding,
                        memory.scope.value, memory.memory_type.value, memory.status.value)
            self._pending_index_ops.append(lambda: self._sync_index(*snapshot))
            self._commit()
        return memory

    def _sync_index(self, memory_id, content, embedding, scope, memory_type, status):
        """Keep the vector index in line with the filing cabinet."""
        if embedding is None or status == MemoryStatus.FORGOTTEN.value:
            if self.collection.get(ids=[memory_id])["ids"]:
                self.collection.delete(ids=[memory_id])
            return
        self.collection.upsert(
            ids=[memory_id],
            embeddings=[list(embedding)],
            documents=[content or " "],
            metadatas=[{
                "scope": scope,
                "memory_type": memory_type,
                "status": status,
            }],
        )

    @_translate_errors
    def delete(self, memory_id: str) -> bool:
        """Physically delete a memory. Administrative use only."""
        with self._lock:
            cursor = self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                self._pending_index_ops.append(
                    lambda: self._sync_index(memory_id, "", None, "", "", "")
                )
            self._commit()
        return deleted

    @_translate_errors
    def find_by_similarity(
        self,
        vector: list,
        threshold: float,
        scope: Optional[Scope] = None,
        memory_type=None,
        statuses: Optional[list] = None,
        limit: int = 10,
    ) -> list:
        """Memories whose embedding is more similar than threshold.

        ChromaDB narrows the candidates; similarity is then recomputed
        exactly from the stored embedding. Returns (memory, similarity)
        pairs, most similar first.
        """
        total = self.collection.count()
        if total == 0 or vector is None:
            return []

        conditions = []
        if scope is not None:
            conditions.append({"scope": _enum_value(scope)})
        if memory_type is not None:
            conditions.append({"memory_type": _enum_value(memory_type)})
        wanted = sorted({_enum_value(s) for s in statuses}) if statuses else None
        if wanted:
            # Filter in the index so retired near-duplicates can't crowd out live matches
            conditions.append({"status": {"$in": wanted}})
        if len(conditions) > 1:
            where = {"$and": conditions}
        else:
            where = conditions[0] if conditions else None

        results = self.collection.query(
            query_embeddings=[list(vector)],
            n_results=min(total, max(limit * 2, 10)),
            where=where,
            include=["distances"],
        )
        if not results["ids"] or not results["ids"][0]:
            return []

        matches = []
        for memory_id in results["ids"][0]:
            memory = self.get(memory_id)
            if memory is None or memory.embedding is None:
                continue
            if wanted is not None and memory.status.value not in wanted:
                continue
            similarity = cosine_similarity(vector, memory.embedding)
            if similarity > threshold:
                matches.append((memory, similarity))

        matches.sort(key=lambda m: m[1], reverse=True)
        return matches[:limit]

    @_translate_errors
    def find_memories(
        self,
        scope: Optional[Scope] = None,
        statuses: Optional[list] = None,
        memory_types: Optional[list] = None,
        tag: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list:
        query = "SELECT * FROM memories WHERE 1 = 1"
        params: list = []

        if scope is not None:
            query += " AND scope = ?"
            params.append(_enum_value(scope))
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(_enum_value(s) for s in statuses)
        if memory_types:
            query += f" AND memory_type IN ({', '.join('?' for _ in memory_types)})"
            params.extend(_enum_value(t) for t in memory_types)
        if tag is not None:
            query += " AND EXISTS (SELECT 1 FROM json_each(memories.tags) WHERE json_each.value = ?)"
            params.append(tag)
        if session_id is not None:
            query += " AND session_id = ?"
            params.append(session_id)

        query += " ORDER BY importance DESC, created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    @_translate_errors
    def count_memories(self) -> dict:
        """Counts of memories by scope and status."""
        with self._lock:
            rows = self.db.execute(
                "SELECT scope, status, COUNT(*) FROM memories GROUP BY scope, status"
            ).fetchall()
        counts: dict = {}
        for scope, status, count in rows:
            counts.setdefault(scope, {})[status] = count
        return counts

    # =========================================================================
    # CONSOLIDATION QUEUE
    # =========================================================================

    def _row_to_item(self, row: sqlite3.Row) -> ConsolidationQueueItem:
        return ConsolidationQueueItem(
            id=row["id"],
            reason=row["reason"],
            memory_ids=json.loads(row["memory_ids"]),
            scope=row["scope"],
            topic=row["topic"],
            priority=row["priority"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=row["created_at"],
        )

    @_translate_errors
    def enqueue(self, item: ConsolidationQueueItem) -> str:
        with self._lock:
            self.db.execute(
                """
                INSERT OR REPLACE INTO consolidation_queue
                    (id, reason, memory_ids, scope, topic, priority, attempts, last_error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id, item.reason.value, json.dumps(item.memory_ids),
                    item.scope.value, item.topic, item.priority, item.attempts,
                    item.last_error, to_iso(item.created_at),
                ),
            )
            self._commit()
        return item.id

    update_item = enqueue

    @_translate_errors
    def pending_items(self, reason: Optional[QueueReason] = None, scope: Optional[Scope] = None) -> list:
        query = "SELECT * FROM consolidation_queue WHERE 1 = 1"
        params: list = []
        if reason is not None:
            query += " AND reason = ?"
            params.append(_enum_value(reason))
        if scope is not None:
            query += " AND scope = ?"
            params.append(_enum_value(scope))
        query += " ORDER BY priority DESC, created_at ASC"
        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    @_translate_errors
    def has_pending(self, memory_id: str, reason: QueueReason) -> bool:
        with self._lock:
            row = self.db.execute(
                """
                SELECT 1 FROM consolidation_queue, json_each(consolidation_queue.memory_ids)
                WHERE json_each.value = ? AND consolidation_queue.reason = ?
                LIMIT 1
                """,
                (memory_id, _enum_value(reason)),
            ).fetchone()
        return row is not None

    @_translate_errors
    def remove_item(self, item_id: str) -> None:
        with self._lock:
            self.db.execute("DELETE FROM consolidation_queue WHERE id = ?", (item_id,))
            self._commit()

    # =========================================================================
    # RETRIEVAL LOG
    # =========================================================================

    def _row_to_log(self, row: sqlite3.Row) -> RetrievalLog:
        feedback = row["feedback"]
        return RetrievalLog(
            id=row["id"],
            event_type=row["event_type"],
            query=row["query"],
            query_type=row["query_type"] or "general",
            strategy=row["strategy"] or "vector",
            scope=row["scope"] or Scope.PROJECT.value,
            results_count=row["results_count"],
            results_used=row["results_used"],
            memory_ids=json.loads(row["memory_ids"]),
            feedback=None if feedback is None else bool(feedback),
            latency_ms=row["latency_ms"],
            session_id=row["session_id"],
            memory_id=row["memory_id"],
            old_status=row["old_status"],
            new_status=row["new_status"],
            created_at=row["created_at"],
        )

    @_translate_errors
    def append_log(self, log: RetrievalLog) -> str:
        with self._lock:
            self.db.execute(
                """
                INSERT INTO retrieval_log (
                    id, event_type, query, query_type, strategy, scope,
                    results_count, results_used, memory_ids, feedback, latency_ms,
                    session_id, memory_id, old_status, new_status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.id, log.event_type, log.query, log.query_type, log.strategy,
                    log.scope.value, log.results_count, log.results_used,
                    json.dumps(log.memory_ids),
                    None if log.feedback is None else int(log.feedback),
                    log.latency_ms, log.session_id, log.memory_id,
                    log.old_status, log.new_status, to_iso(log.created_at),
                ),
            )
            self._commit()
        return log.id

    @_translate_errors
    def logs_since(self, since: datetime, scope: Optional[Scope] = None, event_type: str = "search") -> list:
        """Log entries newer than since.

        The feedback field carries the most recent feedback row if there is
        one, else the label the log was written with.
        """
        query = """
            SELECT retrieval_log.*, (
                SELECT was_useful FROM retrieval_feedback
                WHERE retrieval_feedback.log_id = retrieval_log.id
                ORDER BY retrieval_feedback.id DESC LIMIT 1
            ) AS late_feedback
            FROM retrieval_log
            WHERE created_at >= ? AND event_type = ?
        """
        params: list = [to_iso(since), event_type]
        if scope is not None:
            query += " AND scope = ?"
            params.append(_enum_value(scope))
        query += " ORDER BY created_at ASC"

        with self._lock:
            rows = self.db.execute(query, params).fetchall()

        logs = []
        for row in rows:
            log = self._row_to_log(row)
            if row["late_feedback"] is not None:
                log.feedback = bool(row["late_feedback"])
            logs.append(log)
        return logs

    @_translate_errors
    def latest_log_for_query(self, query: str) -> Optional[RetrievalLog]:
        with self._lock:
            row = self.db.execute(
                """
                SELECT * FROM retrieval_log
                WHERE query = ? AND event_type = 'search'
                ORDER BY created_at DESC LIMIT 1
                """,
                (query,),
            ).fetchone()
        return self._row_to_log(row) if row else None

    @_translate_errors
    def add_feedback(self, feedback: RetrievalFeedback) -> None:
        with self._lock:
            self.db.execute(
                """
                INSERT INTO retrieval_feedback (log_id, was_useful, reason, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (feedback.log_id, int(feedback.was_useful), feedback.reason,
                 to_iso(feedback.created_at)),
            )
            self._commit()

    @_translate_errors
    def sessions_referencing(self, memory_id: str) -> set:
        """Distinct sessions whose retrievals returned or touched a memory."""
        with self._lock:
            rows = self.db.execute(
                """
                SELECT DISTINCT session_id FROM retrieval_log
                WHERE session_id IS NOT NULL AND (
                    memory_id = ?
                    OR EXISTS (
                        SELECT 1 FROM json_each(retrieval_log.memory_ids)
                        WHERE json_each.value = ?
                    )
                )
                """,
                (memory_id, memory_id),
            ).fetchall()
        return {row[0] for row in rows}

    # =========================================================================
    # STRATEGY WEIGHTS
    # =========================================================================

    def _row_to_weights(self, row: sqlite3.Row) -> StrategyWeights:
        return StrategyWeights(
            scope=row["scope"],
            query_type=row["query_type"],
            vector_weight=row["vector_weight"],
            keyword_weight=row["keyword_weight"],
            graph_weight=row["graph_weight"],
            sample_count=row["sample_count"],
            last_success_rate=row["last_success_rate"],
            stable_rounds=row["stable_rounds"],
            converged=bool(row["converged"]),
            updated_at=row["updated_at"],
            version=row["version"],
        )

    @_translate_errors
    def get_strategy_weights(self, scope: Scope, query_type: str) -> Optional[StrategyWeights]:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM strategy_weights WHERE scope = ? AND query_type = ?",
                (_enum_value(scope), query_type),
            ).fetchone()
        return self._row_to_weights(row) if row else None

    @_translate_errors
    def all_strategy_weights(self, scope: Optional[Scope] = None) -> list:
        query = "SELECT * FROM strategy_weights"
        params: list = []
        if scope is not None:
            query += " WHERE scope = ?"
            params.append(_enum_value(scope))
        with self._lock:
            rows = self.db.execute(query + " ORDER BY scope, query_type", params).fetchall()
        return [self._row_to_weights(row) for row in rows]

    @_translate_errors
    def put_strategy_weights(self, weights: StrategyWeights, expected_version: Optional[int] = None) -> StrategyWeights:
        """Upsert a weights row; never creates a second row for the same key."""
        with self._lock:
            row = self.db.execute(
                "SELECT version FROM strategy_weights WHERE scope = ? AND query_type = ?",
                (weights.scope.value, weights.query_type),
            ).fetchone()
            current = row["version"] if row else None
            if expected_version is not None and (current or 0) != expected_version:
                raise ConcurrentModificationError(
                    f"{weights.scope.value}:{weights.query_type}", expected_version, current
                )
            self.db.execute(
                """
                INSERT INTO strategy_weights (
                    scope, query_type, vector_weight, keyword_weight, graph_weight,
                    sample_count, last_success_rate, stable_rounds, converged,
                    updated_at, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(scope, query_type) DO UPDATE SET
                    vector_weight = excluded.vector_weight,
                    keyword_weight = excluded.keyword_weight,
                    graph_weight = excluded.graph_weight,
                    sample_count = excluded.sample_count,
                    last_success_rate = excluded.last_success_rate,
                    stable_rounds = excluded.stable_rounds,
                    converged = excluded.converged,
                    updated_at = excluded.updated_at,
                    version = strategy_weights.version + 1
                """,
                (
                    weights.scope.value, weights.query_type,
                    weights.vector_weight, weights.keyword_weight, weights.graph_weight,
                    weights.sample_count, weights.last_success_rate,
                    weights.stable_rounds, int(weights.converged),
                    to_iso(weights.updated_at),
                ),
            )
            weights.version = (current or 0) + 1
            self._commit()
        return weights

    # =========================================================================
    # EVOLUTION STATE
    # =========================================================================

    @_translate_errors
    def get_evolution_state(self, scope: Scope) -> Optional[EvolutionState]:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM evolution_state WHERE scope = ?", (_enum_value(scope),)
            ).fetchone()
        if row is None:
            return None
        return EvolutionState(
            scope=row["scope"],
            session_count=row["session_count"],
            last_full_consolidation=row["last_full_consolidation"],
            last_reflection=row["last_reflection"],
            last_adaptation=row["last_adaptation"],
            scope_weights=json.loads(row["scope_weights"]),
            version=row["version"],
        )

    @_translate_errors
    def put_evolution_state(self, state: EvolutionState, expected_version: Optional[int] = None) -> EvolutionState:
        with self._lock:
            row = self.db.execute(
                "SELECT version FROM evolution_state WHERE scope = ?", (state.scope.value,)
            ).fetchone()
            current = row["version"] if row else None
            if expected_version is not None and (current or 0) != expected_version:
                raise ConcurrentModificationError(state.scope.value, expected_version, current)
            self.db.execute(
                """
                INSERT INTO evolution_state (
                    scope, session_count, last_full_consolidation, last_reflection,
                    last_adaptation, scope_weights, version
                ) VALUES (?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(scope) DO UPDATE SET
                    session_count = excluded.session_count,
                    last_full_consolidation = excluded.last_full_consolidation,
                    last_reflection = excluded.last_reflection,
                    last_adaptation = excluded.last_adaptation,
                    scope_weights = excluded.scope_weights,
                    version = evolution_state.version + 1
                """,
                (
                    state.scope.value, state.session_count,
                    to_iso(state.last_full_consolidation), to_iso(state.last_reflection),
                    to_iso(state.last_adaptation), json.dumps(state.scope_weights),
                ),
            )
            state.version = (current or 0) + 1
            self._commit()
        return state

    # =========================================================================
    # CONTRADICTIONS AND RUN REPORTS
    # =========================================================================

    @_translate_errors
    def add_contradiction(self, item: ContradictionItem) -> bool:
        """Queue a contradiction for review. False if already queued."""
        with self._lock:
            cursor = self.db.execute(
                """
                INSERT OR IGNORE INTO contradictions
                    (id, entity_id, target_id, edge_ids, relation_types, scope, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id, item.entity_id, item.target_id,
                    json.dumps(sorted(item.edge_ids)), json.dumps(item.relation_types),
                    item.scope.value, item.status, to_iso(item.created_at),
                ),
            )
            self._commit()
        return cursor.rowcount > 0

    @_translate_errors
    def open_contradictions(self, scope: Optional[Scope] = None) -> list:
        query = "SELECT * FROM contradictions WHERE status = 'open'"
        params: list = []
        if scope is not None:
            query += " AND scope = ?"
            params.append(_enum_value(scope))
        with self._lock:
            rows = self.db.execute(query + " ORDER BY created_at ASC", params).fetchall()
        return [
            ContradictionItem(
                entity_id=row["entity_id"],
                target_id=row["target_id"],
                edge_ids=json.loads(row["edge_ids"]),
                relation_types=json.loads(row["relation_types"]),
                scope=row["scope"],
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    @_translate_errors
    def append_run_report(self, report: RunReport) -> None:
        with self._lock:
            self.db.execute(
                "INSERT OR REPLACE INTO reflection_log (id, scope, mode, report, created_at) VALUES (?, ?, ?, ?, ?)",
                (report.id, report.scope.value, report.mode.value,
                 json.dumps(report.to_dict()), to_iso(report.started_at)),
            )
            self._commit()

    @_translate_errors
    def run_reports(self, scope: Optional[Scope] = None, limit: int = 20) -> list:
        query = "SELECT report FROM reflection_log"
        params: list = []
        if scope is not None:
            query += " WHERE scope = ?"
            params.append(_enum_value(scope))
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [json.loads(row[0]) for row in rows]

    # =========================================================================
    # ADVISORY LOCKS
    # =========================================================================

    @_translate_errors
    def acquire_lock(self, name: str, owner: str, ttl_seconds: float) -> bool:
        """Take (or refresh) a named lock. Expired locks can be stolen."""
        now = time.time()
        with self._lock:
            self.db.execute(
                "DELETE FROM locks WHERE name = ? AND expires_at < ?", (name, now)
            )
            self.db.execute(
                "INSERT OR IGNORE INTO locks (name, owner, expires_at) VALUES (?, ?, ?)",
                (name, owner, now + ttl_seconds),
            )
            row = self.db.execute(
                "SELECT owner FROM locks WHERE name = ?", (name,)
            ).fetchone()
            acquired = row is not None and row["owner"] == owner
            if acquired:
                self.db.execute(
                    "UPDATE locks SET expires_at = ? WHERE name = ?",
                    (now + ttl_seconds, name),
                )
            self._commit()
        return acquired

    @_translate_errors
    def lock_holder(self, name: str) -> Optional[str]:
        with self._lock:
            row = self.db.execute(
                "SELECT owner FROM locks WHERE name = ? AND expires_at >= ?",
                (name, time.time()),
            ).fetchone()
        return row["owner"] if row else None

    @_translate_errors
    def release_lock(self, name: str, owner: str) -> None:
        with self._lock:
            self.db.execute("DELETE FROM locks WHERE name = ? AND owner = ?", (name, owner))
            self._commit()
