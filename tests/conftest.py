"""Shared test fixtures and helpers for kgmemory tests."""

import asyncio
import math
import re
import tempfile
from pathlib import Path

import pytest
from qdrant_client import QdrantClient

from kgmemory.embeddings import Embedder
from kgmemory.engine import MemoryEngine
from kgmemory.models import Entity, KnowledgeGraph, Relation
from kgmemory.state import GraphSnapshot
from kgmemory.store import JsonRecordStore
from kgmemory.vectors import QdrantIndex


class HashEmbedder(Embedder):
    """Deterministic bag-of-words embedder.

    Each new word gets the next slot of the vector, so texts that share
    words are closer under cosine distance and unrelated texts score 0
    until the vocabulary outgrows the dimension. No model download needed.
    """

    def __init__(self, dimension: int = 256, model_name: str = "test-hash"):
        self.model_name = model_name
        self._dims = dimension
        self._vocabulary: dict[str, int] = {}
        self.calls: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dims

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self._dims
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            slot = self._vocabulary.setdefault(token, len(self._vocabulary))
            vector[slot % self._dims] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]


# --- Fixtures ---


@pytest.fixture
def temp_memory_dir():
    """Provide a temporary directory for memory storage.

    Yields a Path to a temporary directory that's cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def json_store(temp_memory_dir):
    """Provide an initialized, empty JSON record store."""
    store = JsonRecordStore(temp_memory_dir / "memory.json")
    asyncio.run(store.initialize())
    return store


@pytest.fixture
def qdrant_client():
    """Provide an in-process Qdrant client with no persistence."""
    client = QdrantClient(":memory:")
    yield client
    client.close()


@pytest.fixture
def index(qdrant_client):
    """Provide an initialized similarity index over the in-process client."""
    idx = make_index(qdrant_client)
    asyncio.run(idx.initialize())
    return idx


@pytest.fixture
def engine(json_store, index):
    """Provide a MemoryEngine over a JSON store and an in-process index."""
    return MemoryEngine(json_store, index)


@pytest.fixture
def populated_engine(engine):
    """Provide a MemoryEngine with a small project graph.

    Python --used_by--> Django --depends_on--> PostgreSQL
    Django --related_to--> Flask
    """
    asyncio.run(engine.create_entities([
        {
            "name": "Python",
            "entityType": "language",
            "observations": ["A high-level programming language", "Readable syntax"],
            "metadata": {"domain": "programming", "tags": ["language", "scripting"]},
        },
        {
            "name": "Django",
            "entityType": ["framework", "project"],
            "observations": ["Web framework written in Python"],
            "metadata": {"domain": "web", "tags": ["framework"]},
        },
        {
            "name": "Flask",
            "entityType": "framework",
            "observations": ["Lightweight web microframework"],
            "metadata": {"domain": "web", "tags": ["framework", "micro"]},
        },
        {
            "name": "PostgreSQL",
            "entityType": "database",
            "observations": ["Relational database server"],
            "metadata": {"domain": "storage", "tags": ["database", "sql"]},
        },
    ]))
    asyncio.run(engine.create_relations([
        {"from": "Python", "to": "Django", "relationType": "used_by", "metadata": {"strength": 0.9}},
        {"from": "Django", "to": "PostgreSQL", "relationType": "depends_on", "metadata": {"strength": 0.7}},
        {"from": "Django", "to": "Flask", "relationType": "related_to"},
    ]))
    return engine


# --- Helper Functions (not fixtures) ---


def make_index(client: QdrantClient, embedder: Embedder | None = None, **kwargs) -> QdrantIndex:
    """Build a QdrantIndex for tests.

    Args:
        client: Qdrant client to use
        embedder: Embedding provider; defaults to a 256-dim HashEmbedder
        **kwargs: Extra QdrantIndex arguments

    Returns:
        An uninitialized QdrantIndex with retries that never sleep.
    """
    kwargs.setdefault("collection_name", "test_memory")
    kwargs.setdefault("retry_delay", 0)
    return QdrantIndex(embedder or HashEmbedder(), client=client, **kwargs)


def make_entity(name: str, entity_type="concept", observations=None, **metadata) -> Entity:
    """Helper to create a test entity.

    Args:
        name: Entity name
        entity_type: A type label or a list of labels
        observations: Observation strings
        **metadata: Metadata fields (id, domain, tags, ...)

    Returns:
        An Entity instance for testing.
    """
    return Entity.model_validate({
        "name": name,
        "entityType": entity_type,
        "observations": observations or [],
        "metadata": metadata or None,
    })


def make_relation(source: str, target: str, relation_type: str = "relates_to",
                  strength: float | None = None) -> Relation:
    """Helper to create a test relation.

    Args:
        source: Source entity name
        target: Target entity name
        relation_type: Relation type
        strength: Optional strength in [0, 1]

    Returns:
        A Relation instance for testing.
    """
    metadata = {"strength": strength} if strength is not None else None
    return Relation.model_validate({
        "from": source, "to": target, "relationType": relation_type, "metadata": metadata,
    })


def make_snapshot(names: list[str], edges: list[tuple]) -> GraphSnapshot:
    """Build a snapshot from entity names and (from, to, type[, strength]) edges."""
    entities = [make_entity(name, id=metadata_id(name)) for name in names]
    relations = [make_relation(*edge) for edge in edges]
    return GraphSnapshot(KnowledgeGraph(entities=entities, relations=relations))


def metadata_id(name: str) -> str:
    """Stable fake id for an entity name."""
    return f"id-{name.lower()}"
