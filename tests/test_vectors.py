"""Tests for the Qdrant similarity index."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from qdrant_client import models

from conftest import HashEmbedder, make_entity, make_index, make_relation
from kgmemory.errors import BackendUnavailable, ConfigurationError
from kgmemory.models import Entity, Relation, SearchFilters
from kgmemory.vectors import (
    IndexStatus,
    build_filter,
    clamp_limit,
    entity_to_text,
    parse_payload,
    point_id,
    relation_to_text,
)


# --- Text derivation ---


def test_entity_to_text():
    """Test entity text includes types, observations and metadata."""
    entity = make_entity(
        "Django", ["framework", "project"], ["Web framework", "Batteries included"],
        domain="web", tags=["python", "orm"], content="Django notes",
    )
    assert entity_to_text(entity) == (
        "Django (framework, project): Web framework. Batteries included"
        " Content: Django notes Domain: web Tags: python, orm"
    )


def test_entity_to_text_plain():
    """Test an entity without metadata."""
    assert entity_to_text(make_entity("A", "concept", ["x"])) == "A (concept): x"


def test_relation_to_text():
    """Test relation text with context and evidence."""
    rel = Relation.model_validate({
        "from": "Django", "to": "PostgreSQL", "relationType": "depends_on",
        "metadata": {"context": "production", "evidence": ["settings.py", "requirements"]},
    })
    assert relation_to_text(rel) == (
        "Django depends_on PostgreSQL Context: production Evidence: settings.py. requirements"
    )


# --- Pure helpers ---


def test_point_id_is_stable_64_bit():
    """Test point ids are deterministic unsigned 64-bit integers."""
    assert point_id("Django") == point_id("Django")
    assert point_id("Django") != point_id("Flask")
    assert 0 <= point_id("Django") < 2 ** 64


def test_clamp_limit():
    """Test limits are clamped into [1, 100]."""
    assert clamp_limit(0) == 1
    assert clamp_limit(50) == 50
    assert clamp_limit(1000) == 100


def test_build_filter_empty():
    """Test no filter is built for empty filters."""
    assert build_filter(None) is None
    assert build_filter(SearchFilters()) is None


def test_build_filter_conditions():
    """Test each populated field becomes one must-condition."""
    query_filter = build_filter(SearchFilters.model_validate({
        "entity_types": ["framework"],
        "domains": ["web"],
        "tags": ["python"],
        "date_range": {"start": "2025-01-01T00:00:00Z"},
    }))
    keys = [c.key for c in query_filter.must]
    assert keys == ["entityType", "metadata.domain", "metadata.tags", "metadata.created_at"]
    assert query_filter.must[0].match.any == ["framework"]
    assert query_filter.must[3].range.lte is None


def test_parse_payload():
    """Test payloads are rebuilt by their type discriminator."""
    entity = parse_payload({"type": "entity", "name": "A", "entityType": "concept"})
    relation = parse_payload({"type": "relation", "from": "A", "to": "B", "relationType": "uses"})
    assert isinstance(entity, Entity)
    assert isinstance(relation, Relation)
    assert parse_payload({"type": "entity", "name": "A"}) is None
    assert parse_payload({"type": "other"}) is None
    assert parse_payload(None) is None


# --- Index behavior (in-process Qdrant) ---


def test_initialize_creates_collection(index, qdrant_client):
    """Test initialize creates a cosine collection sized for the embedder."""
    assert index.health.status == IndexStatus.READY
    assert index.health.dimension == 256
    assert index.health.recreated is False
    info = qdrant_client.get_collection("test_memory")
    assert info.config.params.vectors.size == 256


def test_persist_and_search(index):
    """Test the closest entity ranks first."""
    asyncio.run(index.persist_entity(make_entity("Python", "language", ["programming language"])))
    asyncio.run(index.persist_entity(make_entity("PostgreSQL", "database", ["relational database"])))

    results = asyncio.run(index.search_similar("relational database", limit=5))
    assert results[0].name == "PostgreSQL"
    assert asyncio.run(index.count()) == 2


def test_persist_is_upsert(index):
    """Test re-persisting the same entity keeps one point."""
    entity = make_entity("Python", "language", ["v1"], id="E1")
    asyncio.run(index.persist_entity(entity))
    asyncio.run(index.persist_entity(entity.model_copy(update={"observations": ["v2"]})))

    assert asyncio.run(index.count()) == 1
    [result] = asyncio.run(index.search_similar("Python"))
    assert result.observations == ["v2"]


def test_persist_after_gaining_id_replaces_name_point(index):
    """Test an entity first indexed by name keeps one point once it has an id."""
    asyncio.run(index.persist_entity(make_entity("Python", "language", ["v1"])))
    asyncio.run(index.persist_entity(make_entity("Python", "language", ["v2"], id="E1")))

    assert asyncio.run(index.count()) == 1
    [result] = asyncio.run(index.search_similar("Python"))
    assert result.observations == ["v2"]
    assert result.entity_id == "E1"


def test_search_with_type_filter(index):
    """Test entity type filters exclude other records, relations included."""
    asyncio.run(index.persist_entity(make_entity("Django", ["framework", "project"], ["web"])))
    asyncio.run(index.persist_entity(make_entity("Flask", "framework", ["web"])))
    asyncio.run(index.persist_entity(make_entity("PostgreSQL", "database", ["web storage"])))
    asyncio.run(index.persist_relation(make_relation("Django", "Flask", "related_to")))

    results = asyncio.run(index.search_with_filters(
        "web", SearchFilters(entity_types=["framework"]), limit=10
    ))
    assert sorted(r.name for r in results) == ["Django", "Flask"]


def test_search_with_tag_filter(index):
    """Test tag filters match any listed tag."""
    asyncio.run(index.persist_entity(make_entity("A", "concept", ["x"], tags=["red"])))
    asyncio.run(index.persist_entity(make_entity("B", "concept", ["x"], tags=["blue"])))

    results = asyncio.run(index.search_with_filters("x", SearchFilters(tags=["blue", "green"])))
    assert [r.name for r in results] == ["B"]


def test_score_threshold(index):
    """Test results below the threshold are dropped."""
    asyncio.run(index.persist_entity(make_entity("Alpha", "concept", ["alpha beta"])))
    asyncio.run(index.persist_entity(make_entity("Omega", "concept", ["unrelated words"])))

    results = asyncio.run(index.search_similar("Alpha concept alpha beta", score_threshold=0.9))
    assert [r.name for r in results] == ["Alpha"]


def test_delete_entity_by_id_or_name(index):
    """Test deletion removes points keyed by either id or name."""
    asyncio.run(index.persist_entity(make_entity("WithId", "concept", id="E1")))
    asyncio.run(index.persist_entity(make_entity("NoId", "concept")))

    asyncio.run(index.delete_entity("WithId", "E1"))
    asyncio.run(index.delete_entity("NoId"))
    assert asyncio.run(index.count()) == 0


def test_delete_relation(index):
    """Test relation points are removed by their label."""
    rel = make_relation("A", "B", "uses")
    asyncio.run(index.persist_relation(rel))
    asyncio.run(index.delete_relation(rel))
    assert asyncio.run(index.count()) == 0


def test_get_relationships_by_type(index):
    """Test scrolling returns only relations of the requested type."""
    asyncio.run(index.persist_entity(make_entity("A", "uses")))
    asyncio.run(index.persist_relation(make_relation("A", "B", "uses")))
    asyncio.run(index.persist_relation(make_relation("A", "C", "uses")))
    asyncio.run(index.persist_relation(make_relation("B", "C", "blocks")))

    relations = asyncio.run(index.get_relationships_by_type("uses"))
    assert sorted(r.to for r in relations) == ["B", "C"]
    assert all(isinstance(r, Relation) for r in relations)


def test_reset_drops_points(index):
    """Test reset empties the collection but keeps it usable."""
    asyncio.run(index.persist_entity(make_entity("A", "concept")))
    asyncio.run(index.reset())
    assert asyncio.run(index.count()) == 0
    asyncio.run(index.persist_entity(make_entity("B", "concept")))
    assert asyncio.run(index.count()) == 1


def test_dimension_mismatch_recreates(qdrant_client):
    """Test a collection of the wrong size is dropped and recreated."""
    qdrant_client.create_collection(
        "test_memory",
        vectors_config=models.VectorParams(size=8, distance=models.Distance.COSINE),
    )
    small = make_index(qdrant_client, HashEmbedder(dimension=8))
    asyncio.run(small.initialize())
    asyncio.run(small.persist_entity(make_entity("A", "concept")))

    idx = make_index(qdrant_client, HashEmbedder(dimension=64))
    asyncio.run(idx.initialize())

    assert idx.health.recreated is True
    assert qdrant_client.get_collection("test_memory").config.params.vectors.size == 64
    assert asyncio.run(idx.count()) == 0


def test_dimension_mismatch_without_recreate(qdrant_client):
    """Test the destructive recreate can be refused."""
    qdrant_client.create_collection(
        "test_memory",
        vectors_config=models.VectorParams(size=8, distance=models.Distance.COSINE),
    )
    idx = make_index(qdrant_client, recreate_on_mismatch=False)
    with pytest.raises(ConfigurationError):
        asyncio.run(idx.initialize())


def _flaky_client(failures: int) -> MagicMock:
    client = MagicMock()
    client.get_collections.side_effect = [ConnectionError("refused")] * failures + [None]
    client.collection_exists.return_value = True
    client.get_collection.return_value = SimpleNamespace(
        config=SimpleNamespace(params=SimpleNamespace(
            vectors=models.VectorParams(size=256, distance=models.Distance.COSINE)
        ))
    )
    return client


def test_initialize_retries():
    """Test transient connection failures are retried during initialize."""
    client = _flaky_client(failures=2)
    idx = make_index(client, connect_retries=3)
    asyncio.run(idx.initialize())
    assert client.get_collections.call_count == 3
    assert idx.health.status == IndexStatus.READY


def test_initialize_gives_up():
    """Test initialize fails after the configured attempts."""
    client = _flaky_client(failures=5)
    idx = make_index(client, connect_retries=3)
    with pytest.raises(BackendUnavailable):
        asyncio.run(idx.initialize())
    assert client.get_collections.call_count == 3


def test_uninitialized_index_is_unavailable():
    """Test operations before initialize fail with BackendUnavailable."""
    idx = make_index(None)
    with pytest.raises(BackendUnavailable):
        asyncio.run(idx.count())
