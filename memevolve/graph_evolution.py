"""
Knowledge Graph Evolution - Keep the entity graph clean as it grows.

Four jobs:
1. Dedup-on-create: a new entity too similar (> 0.88) to an existing one of
   the same scope and type is folded into it instead of being added.
2. Strengthening: new evidence for an existing edge bumps its weight and
   confidence.
3. Contradiction detection: opposed edge types between the same pair of
   entities are queued for review. They are never auto-resolved.
4. Pruning: weak, stale entities are removed (edges first, so no edge ever
   points at a missing node); weak, old edges are soft-invalidated.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from memevolve.config import EvolutionConfig
from memevolve.errors import InvariantViolation
from memevolve.log import get_logger
from memevolve.models import (
    ContradictionItem,
    Entity,
    Memory,
    Relationship,
    Scope,
    are_opposed,
)
from memevolve.storage import Storage
from memevolve.text_service import TextService, service_call

logger = get_logger("memevolve.graph_evolution")


@dataclass
class IngestResult:
    memory_id: str
    entities_created: int = 0
    entities_merged: int = 0
    relationships_created: int = 0
    relationships_strengthened: int = 0
    entity_ids: list = field(default_factory=list)


@dataclass
class PruneResult:
    entities_removed: int = 0
    edges_removed: int = 0
    edges_invalidated: int = 0


class GraphEvolution:
    """Applies the evolution rules to the store's knowledge graph."""

    def __init__(
        self,
        store: Storage,
        text_service: Optional[TextService] = None,
        config: Optional[EvolutionConfig] = None,
    ):
        self.store = store
        self.graph = store.graph
        self.text_service = text_service
        self.config = config or EvolutionConfig()

    # =========================================================================
    # ENTITIES
    # =========================================================================

    def _find_duplicate(self, entity: Entity) -> Optional[Entity]:
        if entity.embedding:
            matches = self.graph.find_similar_entities(
                entity.embedding,
                scope=entity.scope,
                entity_type=entity.entity_type,
                threshold=self.config.entity_similarity,
            )
            if matches:
                return matches[0][0]
            return None

        # No embedding to compare: fall back to an exact name match
        for existing in self.graph.entities(scope=entity.scope, entity_type=entity.entity_type):
            if existing.name.lower() == entity.name.lower():
                return existing
        return None

    def add_entity(
        self,
        name: str,
        entity_type: str = "concept",
        scope: Scope = Scope.PROJECT,
        embedding: Optional[list] = None,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> tuple[Entity, bool]:
        """Create an entity, or fold it into an existing near-duplicate.

        Returns (entity kept in the graph, True if it was a merge).
        """
        now = now or datetime.now()
        candidate = Entity(
            name=name,
            entity_type=entity_type,
            scope=scope,
            embedding=embedding,
            description=description,
            first_seen=now,
            last_seen=now,
        )

        existing = self._find_duplicate(candidate)
        if existing is not None:
            existing.mention_count += 1
            existing.confidence = min(1.0, existing.confidence + 0.05)
            existing.last_seen = now
            if description and not existing.description:
                existing.description = description
            self.graph.put_entity(existing)
            logger.debug(f"Merged entity {name!r} into {existing.id} ({existing.name!r})")
            return existing, True

        self.graph.put_entity(candidate)
        logger.debug(f"Created entity {candidate.id} ({name!r}, {entity_type})")
        return candidate, False

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================

    def add_relationship(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        scope: Scope = Scope.PROJECT,
        evidence: Optional[str] = None,
        confidence: float = 0.7,
        weight: float = 0.5,
        now: Optional[datetime] = None,
    ) -> tuple[Relationship, bool]:
        """Create an edge, or strengthen the valid edge of the same type.

        Returns (relationship, True if an existing edge was strengthened).
        Invalidated edges are never revived: new evidence after
        invalidation starts a fresh edge.
        """
        if not (self.graph.has_entity(source_id) and self.graph.has_entity(target_id)):
            raise InvariantViolation(f"edge {source_id} -> {target_id} references a missing entity")
        relation_type = getattr(relation_type, "value", relation_type)

        existing = self.graph.find_relationship(source_id, target_id, relation_type)
        if existing is not None:
            self.strengthen(existing, evidence)
            return existing, True

        rel = Relationship(
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            scope=scope,
            weight=weight,
            confidence=confidence,
            evidence=[evidence] if evidence else [],
            valid_from=now or datetime.now(),
        )
        self.graph.put_relationship(rel)
        return rel, False

    def strengthen(self, rel: Relationship, evidence: Optional[str] = None) -> Relationship:
        rel.weight = min(1.0, rel.weight + 0.1)
        rel.confidence = min(1.0, rel.confidence + 0.05)
        if evidence and evidence not in rel.evidence:
            rel.evidence.append(evidence)
        self.graph.put_relationship(rel)
        return rel

    # =========================================================================
    # INGESTION
    # =========================================================================

    def ingest_memory(self, memory: Memory, now: Optional[datetime] = None) -> IngestResult:
        """Extract entities and relationships from a memory into the graph.

        Extraction happens before any graph write, so a failing text service
        (ExternalServiceError) leaves the graph untouched.
        """
        if self.text_service is None:
            return IngestResult(memory_id=memory.id)
        if memory.is_forgotten:
            raise InvariantViolation("cannot extract from a forgotten memory", memory_id=memory.id)

        with service_call("extract"):
            extraction = self.text_service.extract(memory.content)
        result = IngestResult(memory_id=memory.id)
        names = {}

        with self.graph.batch():
            for extracted in extraction.entities:
                entity, merged = self.add_entity(
                    extracted.name,
                    entity_type=extracted.entity_type,
                    scope=memory.scope,
                    embedding=extracted.embedding,
                    description=extracted.description,
                    now=now,
                )
                names[extracted.name.lower()] = entity.id
                result.entity_ids.append(entity.id)
                if merged:
                    result.entities_merged += 1
                else:
                    result.entities_created += 1

            for extracted in extraction.relationships:
                source_id = names.get(extracted.source.lower())
                target_id = names.get(extracted.target.lower())
                if source_id is None or target_id is None or source_id == target_id:
                    continue
                _, strengthened = self.add_relationship(
                    source_id,
                    target_id,
                    extracted.relation_type,
                    scope=memory.scope,
                    evidence=memory.id,
                    confidence=extracted.confidence,
                    now=now,
                )
                if strengthened:
                    result.relationships_strengthened += 1
                else:
                    result.relationships_created += 1

        return result

    # =========================================================================
    # CONTRADICTIONS
    # =========================================================================

    def detect_contradictions(self, entity_id: str) -> list:
        """Opposed pairs among an entity's valid outgoing edges to one target."""
        by_target: dict = {}
        for rel in self.graph.relationships(source_id=entity_id):
            by_target.setdefault(rel.target_id, []).append(rel)

        found = []
        for target_id, rels in by_target.items():
            for i, a in enumerate(rels):
                for b in rels[i + 1:]:
                    if are_opposed(a.relation_type, b.relation_type):
                        found.append(ContradictionItem(
                            entity_id=entity_id,
                            target_id=target_id,
                            edge_ids=sorted([a.id, b.id]),
                            relation_types=[a.relation_type, b.relation_type],
                            scope=a.scope,
                        ))
        return found

    def queue_contradictions(self, scope: Optional[Scope] = None) -> int:
        """Scan entities and queue newly found contradictions. Returns new count."""
        queued = 0
        for entity in self.graph.entities(scope=scope):
            for item in self.detect_contradictions(entity.id):
                if self.store.add_contradiction(item):
                    queued += 1
                    logger.warning(
                        f"Contradiction on {entity.name!r}: "
                        f"{item.relation_types[0]} vs {item.relation_types[1]} -> {item.target_id}"
                    )
        return queued

    # =========================================================================
    # PRUNING
    # =========================================================================

    def prune(self, scope: Optional[Scope] = None, now: Optional[datetime] = None) -> PruneResult:
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.config.graph_stale_days)
        result = PruneResult()

        with self.graph.batch():
            for entity in self.graph.entities(scope=scope):
                if (
                    entity.confidence < self.config.entity_prune_confidence
                    and entity.mention_count < self.config.entity_prune_mentions
                    and entity.last_seen < cutoff
                ):
                    result.edges_removed += self.graph.remove_entity(entity.id)
                    result.entities_removed += 1
                    logger.debug(f"Pruned entity {entity.id} ({entity.name!r})")

            for rel in self.graph.relationships():
                if scope is not None and rel.scope != scope:
                    continue
                if (
                    rel.confidence < self.config.edge_invalidate_confidence
                    and rel.valid_from < cutoff
                ):
                    rel.invalid_at = now
                    self.graph.put_relationship(rel)
                    result.edges_invalidated += 1

        return result
