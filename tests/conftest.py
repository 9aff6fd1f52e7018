"""
Shared test fixtures.

Vectors are built on an 8-dimensional orthonormal basis so that the cosine
similarity between any two test memories is known exactly:

    make_vector(0)          -> e0
    make_vector(0, 0.9)     -> 0.9*e0 + sqrt(1-0.81)*e1   (cos to e0 = 0.9)
"""

import math
import shutil
import sys
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from memevolve.config import EvolutionConfig
from memevolve.errors import ExternalServiceError
from memevolve.text_service import Extraction, TextService

DIM = 8


def _make_vector(axis: int, similarity: float = 1.0, other: int | None = None) -> list:
    """Unit vector with the given cosine similarity to basis vector `axis`."""
    if other is None:
        other = (axis + 1) % DIM
    vector = [0.0] * DIM
    vector[axis] = similarity
    vector[other] += math.sqrt(max(0.0, 1.0 - similarity ** 2))
    return vector


class FailingTextService(TextService):
    """Text service that is always down."""

    def __init__(self):
        self.calls = 0

    def summarize(self, texts):
        self.calls += 1
        raise ExternalServiceError("summarizer unavailable")

    def extract(self, text):
        self.calls += 1
        raise ExternalServiceError("extractor unavailable")


class UnreachableTextService(TextService):
    """Text service whose endpoint drops every connection."""

    def summarize(self, texts):
        raise ConnectionError("llm endpoint down")

    def extract(self, text):
        raise TimeoutError("llm endpoint timed out")


class StaticTextService(TextService):
    """Text service returning canned results."""

    def __init__(self, summary: str = "Summary of episodes", extraction: Extraction | None = None):
        self.summary = summary
        self.extraction = extraction or Extraction()
        self.summarized = []

    def summarize(self, texts):
        self.summarized.append(list(texts))
        return self.summary

    def extract(self, text):
        return self.extraction


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def config(temp_data_dir):
    return EvolutionConfig(data_dir=temp_data_dir)


@pytest.fixture
def store(temp_data_dir):
    """Fresh memory store for each test."""
    from memevolve.storage import MemoryStore
    store = MemoryStore(data_dir=temp_data_dir)
    yield store
    store.close()


@pytest.fixture
def scheduler(store, config):
    from memevolve.scheduler import EvolutionScheduler
    return EvolutionScheduler(store=store, text_service=StaticTextService(), config=config)


@pytest.fixture
def make_vector():
    return _make_vector


@pytest.fixture
def now():
    """A fixed clock for deterministic decay."""
    return datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def failing_text_service():
    return FailingTextService()


@pytest.fixture
def unreachable_text_service():
    return UnreachableTextService()


@pytest.fixture
def static_text_service():
    return StaticTextService()
