"""
Data Model - The records the evolution engine reads and mutates.

Memories are the units of recalled knowledge. Entities and relationships form
the derived knowledge graph. The remaining records (queue items, retrieval
logs, strategy weights, evolution state, run reports) are the engine's own
bookkeeping.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


# =============================================================================
# ENUMS
# =============================================================================

class MemoryType(str, Enum):
    """What kind of knowledge a memory holds."""
    EPISODIC = "episodic"        # something that happened
    SEMANTIC = "semantic"        # a fact or generalisation
    PROCEDURAL = "procedural"    # how to do something
    WORKING = "working"          # scratch context for the current task


class Scope(str, Enum):
    """Hierarchy level of a memory: session < project < user."""
    SESSION = "session"
    PROJECT = "project"
    USER = "user"

    def broader(self) -> Optional["Scope"]:
        """The next scope up the hierarchy, or None at the top."""
        order = [Scope.SESSION, Scope.PROJECT, Scope.USER]
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None


class MemoryStatus(str, Enum):
    """Memory lifecycle status."""
    CREATED = "created"
    ACTIVE = "active"
    CONSOLIDATED = "consolidated"
    ARCHIVED = "archived"
    FORGOTTEN = "forgotten"


# consolidated and archived are siblings: neither may move to the other
STATUS_RANK = {
    MemoryStatus.CREATED: 0,
    MemoryStatus.ACTIVE: 1,
    MemoryStatus.CONSOLIDATED: 2,
    MemoryStatus.ARCHIVED: 2,
    MemoryStatus.FORGOTTEN: 3,
}


class QueueReason(str, Enum):
    """Why a consolidation queue item was created."""
    STRENGTH_DECAY = "strength_decay"
    EPISODIC_TO_SEMANTIC = "episodic_to_semantic"


class RetrievalStrategy(str, Enum):
    """Retrieval modes blended by the strategy weights."""
    VECTOR = "vector"
    KEYWORD = "keyword"
    GRAPH = "graph"


class MaintenanceMode(str, Enum):
    LIGHT = "light"
    FULL = "full"
    REFLECT = "reflect"


class RelationType(str, Enum):
    """Common relationship types produced by extraction.

    Relationship.relation_type is a plain string so extractors may emit
    types outside this list.
    """
    CAUSES = "causes"
    CONTRADICTS = "contradicts"
    USES = "uses"
    REPLACES = "replaces"
    ENABLES = "enables"
    BLOCKS = "blocks"
    REQUIRES = "requires"
    CONFLICTS_WITH = "conflicts_with"
    SUPPORTS = "supports"
    REINFORCES = "reinforces"
    DEPENDS_ON = "depends_on"
    PART_OF = "part_of"
    RELATED_TO = "related_to"


OPPOSED_RELATIONS = {
    frozenset({RelationType.CAUSES.value, RelationType.CONTRADICTS.value}),
    frozenset({RelationType.USES.value, RelationType.REPLACES.value}),
    frozenset({RelationType.ENABLES.value, RelationType.BLOCKS.value}),
    frozenset({RelationType.SUPPORTS.value, RelationType.CONTRADICTS.value}),
    frozenset({RelationType.REINFORCES.value, RelationType.CONTRADICTS.value}),
    frozenset({RelationType.REQUIRES.value, RelationType.CONFLICTS_WITH.value}),
    frozenset({RelationType.DEPENDS_ON.value, RelationType.REPLACES.value}),
}


def are_opposed(relation_a: str, relation_b: str) -> bool:
    """True if two relation types cannot both hold between the same entities."""
    return frozenset({relation_a, relation_b}) in OPPOSED_RELATIONS


# =============================================================================
# HELPERS
# =============================================================================

def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# MEMORIES
# =============================================================================

@dataclass
class StatusChange:
    """One entry of a memory's status history."""
    to_status: str
    at: str
    from_status: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Memory:
    """A unit of recalled knowledge.

    recency and frequency scores are not stored here: they are derived at
    read time by memevolve.scoring.
    """
    content: str
    memory_type: MemoryType = MemoryType.EPISODIC
    scope: Scope = Scope.SESSION
    id: str = field(default_factory=lambda: new_id("mem"))
    embedding: Optional[list] = None
    importance: float = 0.5
    relevance_score: float = 0.5
    confidence: float = 0.7
    outcome_impact: float = 0.0
    user_feedback: float = 0.0
    access_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    status: MemoryStatus = MemoryStatus.CREATED
    status_history: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    session_id: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        self.memory_type = MemoryType(self.memory_type)
        self.scope = Scope(self.scope)
        self.status = MemoryStatus(self.status)
        self.created_at = from_iso(self.created_at)
        self.updated_at = from_iso(self.updated_at) or self.created_at
        self.last_accessed_at = from_iso(self.last_accessed_at) or self.created_at
        self.status_history = [
            h if isinstance(h, StatusChange) else StatusChange(**h)
            for h in self.status_history
        ]
        if not self.status_history:
            self.status_history.append(StatusChange(
                to_status=self.status.value,
                at=self.created_at.isoformat(),
                reason="created",
            ))

    @property
    def is_forgotten(self) -> bool:
        return self.status == MemoryStatus.FORGOTTEN

    def to_dict(self) -> dict:
        data = asdict(self)
        data["memory_type"] = self.memory_type.value
        data["scope"] = self.scope.value
        data["status"] = self.status.value
        data["created_at"] = to_iso(self.created_at)
        data["updated_at"] = to_iso(self.updated_at)
        data["last_accessed_at"] = to_iso(self.last_accessed_at)
        return data


# =============================================================================
# KNOWLEDGE GRAPH
# =============================================================================

@dataclass
class Entity:
    """A named thing extracted from memories."""
    name: str
    entity_type: str = "concept"
    scope: Scope = Scope.PROJECT
    id: str = field(default_factory=lambda: new_id("ent"))
    description: str = ""
    embedding: Optional[list] = None
    mention_count: int = 1
    confidence: float = 0.7
    first_seen: datetime = field(default_factory=datetime.now)
    last_seen: Optional[datetime] = None

    def __post_init__(self):
        self.scope = Scope(self.scope)
        self.first_seen = from_iso(self.first_seen)
        self.last_seen = from_iso(self.last_seen) or self.first_seen

    def to_dict(self) -> dict:
        data = asdict(self)
        data["scope"] = self.scope.value
        data["first_seen"] = to_iso(self.first_seen)
        data["last_seen"] = to_iso(self.last_seen)
        return data


@dataclass
class Relationship:
    """A directed, typed, weighted edge between two entities."""
    source_id: str
    target_id: str
    relation_type: str
    scope: Scope = Scope.PROJECT
    id: str = field(default_factory=lambda: new_id("rel"))
    weight: float = 0.5
    confidence: float = 0.7
    evidence: list = field(default_factory=list)   # supporting memory ids
    valid_from: datetime = field(default_factory=datetime.now)
    invalid_at: Optional[datetime] = None

    def __post_init__(self):
        self.scope = Scope(self.scope)
        if isinstance(self.relation_type, Enum):
            self.relation_type = self.relation_type.value
        self.valid_from = from_iso(self.valid_from)
        self.invalid_at = from_iso(self.invalid_at)

    @property
    def is_valid(self) -> bool:
        return self.invalid_at is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["scope"] = self.scope.value
        data["valid_from"] = to_iso(self.valid_from)
        data["invalid_at"] = to_iso(self.invalid_at)
        return data


@dataclass
class ContradictionItem:
    """Two valid edges between the same entities whose types conflict."""
    entity_id: str
    target_id: str
    edge_ids: list
    relation_types: list
    scope: Scope = Scope.PROJECT
    status: str = "open"
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.scope = Scope(self.scope)
        self.created_at = from_iso(self.created_at)

    @property
    def id(self) -> str:
        # Stable per edge pair so the same conflict is only queued once
        return "contra_" + "_".join(sorted(self.edge_ids))


# =============================================================================
# ENGINE BOOKKEEPING
# =============================================================================

@dataclass
class ConsolidationQueueItem:
    """A pending request to merge, summarize or promote memories."""
    reason: QueueReason
    memory_ids: list
    scope: Scope = Scope.SESSION
    id: str = field(default_factory=lambda: new_id("cq"))
    topic: Optional[str] = None
    priority: float = 0.5
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.reason = QueueReason(self.reason)
        self.scope = Scope(self.scope)
        self.created_at = from_iso(self.created_at)


@dataclass
class RetrievalLog:
    """One retrieval invocation (or lifecycle event). Immutable once written."""
    query: Optional[str] = None
    query_type: str = "general"
    strategy: str = RetrievalStrategy.VECTOR.value
    scope: Scope = Scope.PROJECT
    id: str = field(default_factory=lambda: new_id("rl"))
    event_type: str = "search"
    results_count: int = 0
    results_used: int = 0
    memory_ids: list = field(default_factory=list)
    feedback: Optional[bool] = None
    latency_ms: float = 0.0
    session_id: Optional[str] = None
    memory_id: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.scope = Scope(self.scope)
        if isinstance(self.strategy, Enum):
            self.strategy = self.strategy.value
        self.created_at = from_iso(self.created_at)


@dataclass
class RetrievalFeedback:
    """Feedback attached after the fact to a retrieval log entry."""
    log_id: str
    was_useful: bool
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)


DEFAULT_STRATEGY_WEIGHTS = {
    RetrievalStrategy.VECTOR.value: 0.5,
    RetrievalStrategy.KEYWORD.value: 0.3,
    RetrievalStrategy.GRAPH.value: 0.2,
}


@dataclass
class StrategyWeights:
    """Per (scope, query type) blend of retrieval-mode weights."""
    scope: Scope
    query_type: str
    vector_weight: float = DEFAULT_STRATEGY_WEIGHTS["vector"]
    keyword_weight: float = DEFAULT_STRATEGY_WEIGHTS["keyword"]
    graph_weight: float = DEFAULT_STRATEGY_WEIGHTS["graph"]
    sample_count: int = 0
    last_success_rate: Optional[float] = None
    stable_rounds: int = 0
    converged: bool = False
    updated_at: datetime = field(default_factory=datetime.now)
    version: int = 0

    def __post_init__(self):
        self.scope = Scope(self.scope)
        self.updated_at = from_iso(self.updated_at)

    def as_dict(self) -> dict:
        return {
            RetrievalStrategy.VECTOR.value: self.vector_weight,
            RetrievalStrategy.KEYWORD.value: self.keyword_weight,
            RetrievalStrategy.GRAPH.value: self.graph_weight,
        }

    def set_weights(self, weights: dict) -> None:
        self.vector_weight = weights[RetrievalStrategy.VECTOR.value]
        self.keyword_weight = weights[RetrievalStrategy.KEYWORD.value]
        self.graph_weight = weights[RetrievalStrategy.GRAPH.value]


DEFAULT_SCOPE_WEIGHTS = {
    Scope.SESSION.value: 1.5,
    Scope.PROJECT.value: 1.0,
    Scope.USER.value: 0.7,
}


@dataclass
class EvolutionState:
    """Per-scope counters driving the scheduler's cadence."""
    scope: Scope
    session_count: int = 0
    last_full_consolidation: Optional[datetime] = None
    last_reflection: Optional[datetime] = None
    last_adaptation: Optional[datetime] = None
    scope_weights: dict = field(default_factory=lambda: dict(DEFAULT_SCOPE_WEIGHTS))
    version: int = 0

    def __post_init__(self):
        self.scope = Scope(self.scope)
        self.last_full_consolidation = from_iso(self.last_full_consolidation)
        self.last_reflection = from_iso(self.last_reflection)
        self.last_adaptation = from_iso(self.last_adaptation)

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.value,
            "session_count": self.session_count,
            "last_full_consolidation": to_iso(self.last_full_consolidation),
            "last_reflection": to_iso(self.last_reflection),
            "last_adaptation": to_iso(self.last_adaptation),
            "scope_weights": dict(self.scope_weights),
        }


@dataclass
class RunReport:
    """Outcome of one maintenance run: successes, skips and failures."""
    scope: Scope
    mode: MaintenanceMode
    id: str = field(default_factory=lambda: new_id("run"))
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    merges: int = 0
    promotions: int = 0
    consolidations: int = 0
    prunes: int = 0
    invalidations: int = 0
    archivals: int = 0
    forgotten: int = 0
    contradictions: int = 0
    adaptations: int = 0
    steps_run: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    def __post_init__(self):
        self.scope = Scope(self.scope)
        self.mode = MaintenanceMode(self.mode)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def record_failure(self, step: str, error: Exception, item: Optional[str] = None) -> None:
        self.failures.append({
            "step": step,
            "item": item,
            "error": f"{type(error).__name__}: {error}",
        })

    def record_skip(self, step: str, reason: str, item: Optional[str] = None) -> None:
        self.skipped.append({"step": step, "item": item, "reason": reason})

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope.value,
            "mode": self.mode.value,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "duration_seconds": round(self.duration_seconds, 3),
            "merges": self.merges,
            "promotions": self.promotions,
            "consolidations": self.consolidations,
            "prunes": self.prunes,
            "invalidations": self.invalidations,
            "archivals": self.archivals,
            "forgotten": self.forgotten,
            "contradictions": self.contradictions,
            "adaptations": self.adaptations,
            "steps_run": list(self.steps_run),
            "skipped": list(self.skipped),
            "failures": list(self.failures),
        }
