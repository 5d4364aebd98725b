"""Canonical record store.

The record store owns the authoritative ``{entities, relations}`` graph.
Two backends share one contract: a whole-file JSON document (default) and
a Neo4j property graph (see ``neo4j_store``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import pydantic

from .errors import BackendUnavailable, EntityNotFound
from .metadata import carry_identity, ensure_entity_metadata, ensure_relation_metadata
from .models import Entity, KnowledgeGraph, Relation

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Contract shared by every canonical backend.

    Entities are keyed by name, relations by ``(from, to, relationType)``;
    adding a record with an existing key replaces it.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Load existing state, or start empty."""

    @abstractmethod
    async def add_entities(self, entities: list[Entity]) -> list[Entity]:
        """Upsert entities by name. Returns the stored records."""

    @abstractmethod
    async def add_relations(self, relations: list[Relation]) -> list[Relation]:
        """Upsert relations.

        Raises:
            EntityNotFound: If any endpoint is missing. Nothing is written.
        """

    @abstractmethod
    async def add_observations(self, name: str, observations: list[str]) -> Entity:
        """Append observations. Raises EntityNotFound for unknown names."""

    @abstractmethod
    async def delete_entities(self, names: list[str]) -> int:
        """Delete entities and every relation touching them.

        Unknown names are ignored. Returns the number of entities removed.
        """

    @abstractmethod
    async def delete_observations(self, name: str, observations: list[str]) -> Entity:
        """Remove every observation equal to any of the given strings."""

    @abstractmethod
    async def delete_relations(self, relations: list[Relation]) -> int:
        """Delete relations by key. Returns the number removed."""

    @abstractmethod
    async def get_graph(self) -> KnowledgeGraph:
        """Return a snapshot of the full graph."""

    async def close(self) -> None:
        """Release backend resources."""


class JsonRecordStore(RecordStore):
    """Whole-file JSON record store.

    Holds the graph in memory and rewrites the file on every mutation.
    Writes go through a temp file and ``os.replace`` so readers never see
    a half-written document. Concurrent writers are last-writer-wins.
    """

    def __init__(self, path: Path):
        """Initialize JSON store.

        Args:
            path: Location of the memory.json document
        """
        self.path = Path(path)
        self._graph = KnowledgeGraph()

    async def initialize(self) -> None:
        self._graph = await asyncio.to_thread(self._load)
        logger.info(
            f"Loaded {len(self._graph.entities)} entities, "
            f"{len(self._graph.relations)} relations from {self.path}"
        )

    def _load(self) -> KnowledgeGraph:
        """Read the document. A missing file is an empty graph."""
        if not self.path.exists():
            return KnowledgeGraph()
        try:
            raw = self.path.read_text(encoding="utf-8")
            if not raw.strip():
                return KnowledgeGraph()
            return KnowledgeGraph.model_validate(json.loads(raw))
        except (OSError, json.JSONDecodeError, pydantic.ValidationError) as e:
            raise BackendUnavailable(f"Cannot read memory file {self.path}: {e}") from e

    def _write(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def _commit(self, graph: KnowledgeGraph) -> None:
        """Persist ``graph`` and make it current only once the file is written."""
        try:
            await asyncio.to_thread(self._write, graph.to_dict())
        except OSError as e:
            raise BackendUnavailable(f"Cannot write memory file {self.path}: {e}") from e
        self._graph = graph

    def _working_copy(self) -> KnowledgeGraph:
        # Records are replaced, never mutated in place, so copying the lists is enough
        return KnowledgeGraph(
            entities=list(self._graph.entities), relations=list(self._graph.relations)
        )

    def _entity_position(self, name: str) -> int | None:
        for i, entity in enumerate(self._graph.entities):
            if entity.name == name:
                return i
        return None

    def _require_entity(self, name: str) -> int:
        position = self._entity_position(name)
        if position is None:
            raise EntityNotFound(name)
        return position

    async def add_entities(self, entities: list[Entity]) -> list[Entity]:
        graph = self._working_copy()
        positions = {e.name: i for i, e in enumerate(graph.entities)}
        stored = []
        for entity in entities:
            position = positions.get(entity.name)
            existing = graph.entities[position] if position is not None else None
            record = ensure_entity_metadata(carry_identity(entity, existing))
            if position is None:
                positions[entity.name] = len(graph.entities)
                graph.entities.append(record)
            else:
                graph.entities[position] = record
            stored.append(record)
        await self._commit(graph)
        return [e.model_copy(deep=True) for e in stored]

    async def add_relations(self, relations: list[Relation]) -> list[Relation]:
        names = {e.name for e in self._graph.entities}
        for relation in relations:
            for endpoint in (relation.from_, relation.to):
                if endpoint not in names:
                    raise EntityNotFound(
                        endpoint,
                        f"Cannot create relation {relation.label}: entity not found: {endpoint}",
                    )

        graph = self._working_copy()
        stored = []
        for relation in relations:
            position = next(
                (i for i, r in enumerate(graph.relations) if r.key == relation.key),
                None,
            )
            existing = graph.relations[position] if position is not None else None
            record = ensure_relation_metadata(carry_identity(relation, existing))
            if position is None:
                graph.relations.append(record)
            else:
                graph.relations[position] = record
            stored.append(record)
        await self._commit(graph)
        return [r.model_copy(deep=True) for r in stored]

    async def _replace_entity(self, position: int, updated: Entity) -> Entity:
        graph = self._working_copy()
        graph.entities[position] = updated
        await self._commit(graph)
        return updated.model_copy(deep=True)

    async def add_observations(self, name: str, observations: list[str]) -> Entity:
        position = self._require_entity(name)
        entity = self._graph.entities[position]
        updated = ensure_entity_metadata(
            entity.model_copy(update={"observations": entity.observations + list(observations)})
        )
        return await self._replace_entity(position, updated)

    async def delete_entities(self, names: list[str]) -> int:
        doomed = set(names)
        entities = [e for e in self._graph.entities if e.name not in doomed]
        removed = len(self._graph.entities) - len(entities)
        if removed:
            relations = [
                r for r in self._graph.relations
                if r.from_ not in doomed and r.to not in doomed
            ]
            await self._commit(KnowledgeGraph(entities=entities, relations=relations))
        return removed

    async def delete_observations(self, name: str, observations: list[str]) -> Entity:
        position = self._require_entity(name)
        entity = self._graph.entities[position]
        doomed = set(observations)
        updated = ensure_entity_metadata(
            entity.model_copy(update={
                "observations": [o for o in entity.observations if o not in doomed]
            })
        )
        return await self._replace_entity(position, updated)

    async def delete_relations(self, relations: list[Relation]) -> int:
        doomed = {r.key for r in relations}
        kept = [r for r in self._graph.relations if r.key not in doomed]
        removed = len(self._graph.relations) - len(kept)
        if removed:
            await self._commit(
                KnowledgeGraph(entities=list(self._graph.entities), relations=kept)
            )
        return removed

    async def get_graph(self) -> KnowledgeGraph:
        return self._graph.model_copy(deep=True)


def create_record_store(settings: Settings) -> RecordStore:
    """Build the configured canonical backend."""
    if settings.persistence_type == "neo4j":
        from .neo4j_store import Neo4jRecordStore

        return Neo4jRecordStore(
            uri=settings.neo4j_uri,
            username=settings.neo4j_username,
            password=settings.neo4j_password,
            database=settings.neo4j_database,
        )
    return JsonRecordStore(settings.memory_file_path)
