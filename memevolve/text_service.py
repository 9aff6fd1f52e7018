"""
Text Service - Summarization and entity/relationship extraction.

The engine never generates text itself. It asks a TextService, which in
production is usually backed by an LLM. KeywordTextService is the built-in
fallback: an extractive summary plus keyword and pattern extraction, good
enough to keep the graph growing without any external model.

Any failure of the backing service must surface as ExternalServiceError so
the pipeline can leave the work queued and retry later.
"""

import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

from memevolve.errors import EvolutionError, ExternalServiceError
from memevolve.log import get_logger
from memevolve.models import RelationType

logger = get_logger("memevolve.text_service")


@dataclass
class ExtractedEntity:
    name: str
    entity_type: str = "concept"
    description: str = ""
    embedding: Optional[list] = None


@dataclass
class ExtractedRelationship:
    source: str          # entity name
    target: str          # entity name
    relation_type: str
    confidence: float = 0.6


@dataclass
class Extraction:
    entities: list = field(default_factory=list)
    relationships: list = field(default_factory=list)


class TextService(ABC):
    """What the engine needs from a language model."""

    @abstractmethod
    def summarize(self, texts: list) -> str:
        """Merge several related memory texts into one generalisation."""

    @abstractmethod
    def extract(self, text: str) -> Extraction:
        """Pull entities and relationships out of a memory text."""


@contextmanager
def service_call(operation: str):
    """Report any failure of a text service call as ExternalServiceError.

    Backing services raise whatever their SDK raises (ConnectionError,
    TimeoutError, HTTP errors). Engine errors pass through unchanged.
    """
    try:
        yield
    except EvolutionError:
        raise
    except Exception as e:
        raise ExternalServiceError(f"{operation} failed: {type(e).__name__}: {e}") from e


class KeywordTextService(TextService):
    """Model-free text service built on keyword lists and regex patterns.

    Args:
        known_entities: entity_type -> list of names to spot in text
        embedder: optional callable turning an entity name into a vector.
            Without one, entities carry no embedding and are deduplicated
            by name.
    """

    DEFAULT_KNOWN_ENTITIES = {
        "tool": [
            "git", "docker", "pytest", "pip", "uv", "npm", "make",
            "sqlite", "postgres", "redis", "chromadb", "ffmpeg",
        ],
        "language": ["python", "typescript", "javascript", "rust", "go", "bash"],
        "concept": ["cache", "migration", "deployment", "test suite", "ci", "schema"],
    }

    # "<subject> <verb> <object>" with verbs mapped to relation types
    RELATION_VERBS = {
        "causes": RelationType.CAUSES.value,
        "caused": RelationType.CAUSES.value,
        "contradicts": RelationType.CONTRADICTS.value,
        "uses": RelationType.USES.value,
        "replaces": RelationType.REPLACES.value,
        "supersedes": RelationType.REPLACES.value,
        "enables": RelationType.ENABLES.value,
        "blocks": RelationType.BLOCKS.value,
        "prevents": RelationType.BLOCKS.value,
        "requires": RelationType.REQUIRES.value,
        "needs": RelationType.REQUIRES.value,
        "conflicts with": RelationType.CONFLICTS_WITH.value,
        "supports": RelationType.SUPPORTS.value,
        "reinforces": RelationType.REINFORCES.value,
        "depends on": RelationType.DEPENDS_ON.value,
    }

    BLOCKER_PATTERNS = [
        r"blocked by\s+([\w\-. ]+?)(?:[.,;]|$)",
        r"stuck on\s+([\w\-. ]+?)(?:[.,;]|$)",
    ]

    def __init__(
        self,
        known_entities: Optional[dict] = None,
        embedder: Optional[Callable[[str], list]] = None,
        max_summary_sentences: int = 3,
    ):
        self.known_entities = known_entities or self.DEFAULT_KNOWN_ENTITIES
        self.embedder = embedder
        self.max_summary_sentences = max_summary_sentences

        verbs = "|".join(sorted((re.escape(v) for v in self.RELATION_VERBS), key=len, reverse=True))
        self._relation_re = re.compile(
            rf"\b([\w\-.]{{2,40}})\s+({verbs})\s+([\w\-.]{{2,40}})", re.IGNORECASE
        )

    # =========================================================================
    # SUMMARIZATION
    # =========================================================================

    def summarize(self, texts: list) -> str:
        """Extractive summary: the most representative sentences.

        Sentences are scored by how many of the group's frequent words they
        contain; the top ones are kept in their original order.
        """
        texts = [t.strip() for t in texts if t and t.strip()]
        if not texts:
            raise ExternalServiceError("nothing to summarize")

        sentences = []
        for text in texts:
            for sentence in re.split(r"(?<=[.!?])\s+", text):
                sentence = sentence.strip()
                if sentence and sentence not in sentences:
                    sentences.append(sentence)

        counts: dict = {}
        for text in texts:
            for word in set(re.findall(r"[a-z][a-z0-9_\-]{2,}", text.lower())):
                counts[word] = counts.get(word, 0) + 1
        shared = {w for w, c in counts.items() if c > 1}

        def score(sentence: str) -> int:
            words = set(re.findall(r"[a-z][a-z0-9_\-]{2,}", sentence.lower()))
            return len(words & shared)

        ranked = sorted(sentences, key=score, reverse=True)[: self.max_summary_sentences]
        kept = [s for s in sentences if s in ranked]
        return f"Pattern across {len(texts)} episodes: " + " ".join(kept)

    # =========================================================================
    # EXTRACTION
    # =========================================================================

    def _entity(self, name: str, entity_type: str) -> ExtractedEntity:
        embedding = self.embedder(name) if self.embedder else None
        return ExtractedEntity(name=name, entity_type=entity_type, embedding=embedding)

    def extract(self, text: str) -> Extraction:
        if text is None:
            raise ExternalServiceError("no text to extract from")

        text_lower = text.lower()
        found: dict = {}

        # Known entity lists
        for entity_type, names in self.known_entities.items():
            for name in names:
                if re.search(rf"\b{re.escape(name.lower())}\b", text_lower):
                    found.setdefault(name.lower(), self._entity(name.lower(), entity_type))

        # Blockers
        for pattern in self.BLOCKER_PATTERNS:
            for match in re.findall(pattern, text_lower)[:2]:
                name = match.strip()[:50]
                if len(name) > 3:
                    found.setdefault(name, self._entity(name, "blocker"))

        # Subject-verb-object relationships
        relationships = []
        for subject, verb, obj in self._relation_re.findall(text):
            subject, obj = subject.lower().strip("."), obj.lower().strip(".")
            if subject == obj:
                continue
            found.setdefault(subject, self._entity(subject, "concept"))
            found.setdefault(obj, self._entity(obj, "concept"))
            relationships.append(ExtractedRelationship(
                source=subject,
                target=obj,
                relation_type=self.RELATION_VERBS[verb.lower()],
            ))

        logger.debug(f"Extracted {len(found)} entities, {len(relationships)} relationships")
        return Extraction(entities=list(found.values()), relationships=relationships)
