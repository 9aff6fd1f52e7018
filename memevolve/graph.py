"""
Knowledge Graph Layer - Entities and the relationships between them.

Entities are nodes, relationships are edges of a networkx MultiDiGraph keyed
by relationship id, so the same pair of entities can carry several typed
edges at once (which is exactly what contradiction detection looks for).

Edges with invalid_at set are kept for history but skipped by traversal.
The whole graph is persisted to knowledge_graph.json after each change
(or once at the end of a batch()).
"""

import json
import os
from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import Iterator, Optional

import networkx as nx
import numpy as np

from memevolve.log import get_logger
from memevolve.models import Entity, Relationship, Scope

logger = get_logger("memevolve.graph")

_ENTITY_FIELDS = {f.name for f in fields(Entity)}
_RELATIONSHIP_FIELDS = {f.name for f in fields(Relationship)}


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


class KnowledgeGraph:
    """Entity/relationship store backed by networkx."""

    def __init__(self, data_dir: Optional[Path] = None):
        if data_dir is None:
            data_dir = Path.home() / ".memevolve" / "data"
        self.data_dir = Path(data_dir)
        self.graph_path = self.data_dir / "knowledge_graph.json"
        self.graph = self._load_graph()
        self._deferred = 0
        self._dirty = False

    def _load_graph(self) -> nx.MultiDiGraph:
        """Load graph from disk or create new."""
        if self.graph_path.exists():
            try:
                with open(self.graph_path) as f:
                    data = json.load(f)
                return nx.node_link_graph(data, directed=True, multigraph=True, edges="links")
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load {self.graph_path}, starting empty: {e}")
        return nx.MultiDiGraph()

    def save(self):
        """Persist graph to disk (atomic replace)."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = nx.node_link_data(self.graph, edges="links")
        tmp_path = self.graph_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.graph_path)
        self._dirty = False

    @contextmanager
    def batch(self) -> Iterator["KnowledgeGraph"]:
        """Defer persistence until the outermost batch exits."""
        self._deferred += 1
        try:
            yield self
        finally:
            self._deferred -= 1
            if self._deferred == 0 and self._dirty:
                self.save()

    def _changed(self):
        self._dirty = True
        if self._deferred == 0:
            self.save()

    # =========================================================================
    # ENTITIES
    # =========================================================================

    def _entity_from_node(self, node_id: str) -> Entity:
        attrs = self.graph.nodes[node_id]
        data = {k: v for k, v in attrs.items() if k in _ENTITY_FIELDS}
        data["id"] = node_id  # node_link_graph strips "id" from node attrs
        return Entity(**data)

    def has_entity(self, entity_id: str) -> bool:
        return self.graph.has_node(entity_id)

    def put_entity(self, entity: Entity) -> str:
        """Insert or replace an entity node (edges are untouched)."""
        self.graph.add_node(entity.id, node_type="entity", **entity.to_dict())
        self._changed()
        return entity.id

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        if not self.graph.has_node(entity_id):
            return None
        return self._entity_from_node(entity_id)

    def entities(
        self,
        scope: Optional[Scope] = None,
        entity_type: Optional[str] = None,
    ) -> list:
        result = []
        for node_id, attrs in self.graph.nodes(data=True):
            if scope is not None and attrs.get("scope") != Scope(scope).value:
                continue
            if entity_type is not None and attrs.get("entity_type") != entity_type:
                continue
            result.append(self._entity_from_node(node_id))
        return result

    def find_similar_entities(
        self,
        embedding: list,
        scope: Scope,
        entity_type: str,
        threshold: float,
    ) -> list:
        """Same-scope, same-type entities above a similarity threshold.

        Returns (entity, similarity) pairs, most similar first.
        """
        matches = []
        for entity in self.entities(scope=scope, entity_type=entity_type):
            if not entity.embedding:
                continue
            similarity = cosine_similarity(embedding, entity.embedding)
            if similarity > threshold:
                matches.append((entity, similarity))
        matches.sort(key=lambda m: m[1], reverse=True)
        return matches

    def remove_entity(self, entity_id: str) -> int:
        """Delete an entity, removing its edges first. Returns edges removed."""
        if not self.graph.has_node(entity_id):
            return 0
        edges = list(self.graph.in_edges(entity_id, keys=True)) + list(
            self.graph.out_edges(entity_id, keys=True)
        )
        for u, v, key in edges:
            if self.graph.has_edge(u, v, key):
                self.graph.remove_edge(u, v, key)
        self.graph.remove_node(entity_id)
        self._changed()
        return len(edges)

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================

    def _relationship_from_edge(self, key: str, attrs: dict) -> Relationship:
        data = {k: v for k, v in attrs.items() if k in _RELATIONSHIP_FIELDS}
        data["id"] = key
        return Relationship(**data)

    def put_relationship(self, rel: Relationship) -> bool:
        """Insert or replace an edge. Both endpoints must exist."""
        if not (self.graph.has_node(rel.source_id) and self.graph.has_node(rel.target_id)):
            return False
        if self.graph.has_edge(rel.source_id, rel.target_id, rel.id):
            self.graph.remove_edge(rel.source_id, rel.target_id, rel.id)
        self.graph.add_edge(rel.source_id, rel.target_id, key=rel.id, **rel.to_dict())
        self._changed()
        return True

    def relationships(
        self,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        include_invalid: bool = False,
    ) -> list:
        if source_id is not None:
            if not self.graph.has_node(source_id):
                return []
            edges = self.graph.out_edges(source_id, keys=True, data=True)
        elif target_id is not None:
            if not self.graph.has_node(target_id):
                return []
            edges = self.graph.in_edges(target_id, keys=True, data=True)
        else:
            edges = self.graph.edges(keys=True, data=True)

        result = []
        for _u, v, key, attrs in edges:
            if target_id is not None and v != target_id:
                continue
            rel = self._relationship_from_edge(key, attrs)
            if rel.is_valid or include_invalid:
                result.append(rel)
        return result

    def find_relationship(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
    ) -> Optional[Relationship]:
        """The currently-valid edge of a type between two entities, if any."""
        for rel in self.relationships(source_id=source_id, target_id=target_id):
            if rel.relation_type == relation_type:
                return rel
        return None

    def traverse(
        self,
        node_id: str,
        edge_types: Optional[list] = None,
        depth: int = 1,
    ) -> list:
        """Entities reachable over valid outgoing edges within depth hops."""
        if not self.graph.has_node(node_id):
            return []
        wanted = {str(getattr(t, "value", t)) for t in edge_types} if edge_types else None

        seen = {node_id}
        frontier = [node_id]
        for _ in range(depth):
            next_frontier = []
            for current in frontier:
                for _u, v, attrs in self.graph.out_edges(current, data=True):
                    if attrs.get("invalid_at"):
                        continue
                    if wanted and attrs.get("relation_type") not in wanted:
                        continue
                    if v not in seen:
                        seen.add(v)
                        next_frontier.append(v)
            frontier = next_frontier

        seen.discard(node_id)
        return [self._entity_from_node(n) for n in seen]

    def get_stats(self) -> dict:
        valid = invalid = 0
        relation_types = {}
        for _u, _v, attrs in self.graph.edges(data=True):
            if attrs.get("invalid_at"):
                invalid += 1
            else:
                valid += 1
            rtype = attrs.get("relation_type", "unknown")
            relation_types[rtype] = relation_types.get(rtype, 0) + 1

        entity_types = {}
        for _n, attrs in self.graph.nodes(data=True):
            etype = attrs.get("entity_type", "unknown")
            entity_types[etype] = entity_types.get(etype, 0) + 1

        return {
            "entity_count": self.graph.number_of_nodes(),
            "valid_edges": valid,
            "invalid_edges": invalid,
            "entity_types": entity_types,
            "relation_types": relation_types,
        }
