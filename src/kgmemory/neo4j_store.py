"""Neo4j-backed record store.

Entities are ``(:Entity)`` nodes that also carry one label per declared
type, so a node typed ``["person", "concept"]`` matches ``(:person)`` and
``(:concept)``. Relations are ``[:RELATES_TO]`` edges whose type lives in
the ``relationType`` property. Metadata is stored as a JSON string.

The synchronous driver is used from worker threads, one managed
transaction per store call.
"""

import asyncio
import json
import logging
from contextlib import contextmanager

from neo4j import GraphDatabase
from neo4j.exceptions import AuthError, ServiceUnavailable, SessionExpired

from .errors import BackendUnavailable, EntityNotFound
from .metadata import carry_identity, ensure_entity_metadata, ensure_relation_metadata
from .models import Entity, EntityMetadata, KnowledgeGraph, Relation, RelationMetadata
from .store import RecordStore

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT entity_name_unique IF NOT EXISTS "
    "FOR (e:Entity) REQUIRE e.name IS UNIQUE",
    "CREATE INDEX entity_types IF NOT EXISTS FOR (e:Entity) ON (e.entityTypes)",
    "CREATE INDEX relation_type IF NOT EXISTS "
    "FOR ()-[r:RELATES_TO]-() ON (r.relationType)",
)

ENTITY_FIELDS = (
    "e.name AS name, e.entityTypes AS types, "
    "e.observations AS observations, e.metadata AS metadata"
)


def _label(value: str) -> str:
    """Backtick-escape a label; labels cannot be query parameters."""
    return "`" + value.replace("`", "``") + "`"


def _load_metadata(raw: str | None, model):
    if not raw:
        return None
    try:
        return model.model_validate(json.loads(raw))
    except ValueError as e:
        logger.warning(f"Ignoring malformed metadata {raw[:80]!r}: {e}")
        return None


def _dump_metadata(metadata) -> str | None:
    if metadata is None:
        return None
    return metadata.model_dump_json(exclude_none=True)


def _record_to_entity(record) -> Entity:
    types = list(record["types"] or []) or ["entity"]
    return Entity(
        name=record["name"],
        entity_type=types[0] if len(types) == 1 else types,
        observations=list(record["observations"] or []),
        metadata=_load_metadata(record["metadata"], EntityMetadata),
    )


def _record_to_relation(record) -> Relation:
    return Relation(
        from_=record["from"],
        to=record["to"],
        relation_type=record["relationType"],
        metadata=_load_metadata(record["metadata"], RelationMetadata),
    )


def _upsert_entities(tx, entities: list[Entity]) -> list[Entity]:
    stored = []
    for entity in entities:
        record = tx.run(
            f"MATCH (e:Entity {{name: $name}}) RETURN {ENTITY_FIELDS}",
            name=entity.name,
        ).single()
        existing = _record_to_entity(record) if record else None
        result = ensure_entity_metadata(carry_identity(entity, existing))

        stale = [
            t for t in (existing.types if existing else [])
            if t not in result.types and t != "Entity"
        ]
        labels = "".join(f":{_label(t)}" for t in result.types)
        remove = ("REMOVE e" + "".join(f":{_label(t)}" for t in stale)) if stale else ""
        tx.run(
            f"MERGE (e:Entity {{name: $name}}) "
            f"SET e{labels}, e.entityTypes = $types, "
            f"e.observations = $observations, e.metadata = $metadata "
            f"{remove}",
            name=result.name,
            types=result.types,
            observations=result.observations,
            metadata=_dump_metadata(result.metadata),
        )
        stored.append(result)
    return stored


def _upsert_relations(tx, relations: list[Relation]) -> list[Relation]:
    names = sorted({n for r in relations for n in (r.from_, r.to)})
    found = {
        row["name"]
        for row in tx.run(
            "MATCH (e:Entity) WHERE e.name IN $names RETURN e.name AS name",
            names=names,
        )
    }
    for relation in relations:
        for endpoint in (relation.from_, relation.to):
            if endpoint not in found:
                # Raising inside the transaction function rolls back the batch
                raise EntityNotFound(
                    endpoint,
                    f"Cannot create relation {relation.label}: entity not found: {endpoint}",
                )

    stored = []
    for relation in relations:
        params = {"from": relation.from_, "to": relation.to, "type": relation.relation_type}
        record = tx.run(
            "MATCH (:Entity {name: $from})-[r:RELATES_TO {relationType: $type}]->"
            "(:Entity {name: $to}) RETURN r.metadata AS metadata",
            **params,
        ).single()
        existing = None
        if record is not None:
            existing = relation.model_copy(update={
                "metadata": _load_metadata(record["metadata"], RelationMetadata)
            })
        result = ensure_relation_metadata(carry_identity(relation, existing))
        tx.run(
            "MATCH (a:Entity {name: $from}), (b:Entity {name: $to}) "
            "MERGE (a)-[r:RELATES_TO {relationType: $type}]->(b) "
            "SET r.metadata = $metadata",
            metadata=_dump_metadata(result.metadata),
            **params,
        )
        stored.append(result)
    return stored


def _rewrite_observations(tx, name: str, transform) -> Entity:
    record = tx.run(
        f"MATCH (e:Entity {{name: $name}}) RETURN {ENTITY_FIELDS}", name=name
    ).single()
    if record is None:
        raise EntityNotFound(name)
    entity = _record_to_entity(record)
    updated = ensure_entity_metadata(
        entity.model_copy(update={"observations": transform(entity.observations)})
    )
    tx.run(
        "MATCH (e:Entity {name: $name}) "
        "SET e.observations = $observations, e.metadata = $metadata",
        name=name,
        observations=updated.observations,
        metadata=_dump_metadata(updated.metadata),
    )
    return updated


def _delete_entities(tx, names: list[str]) -> int:
    record = tx.run(
        "MATCH (e:Entity) WHERE e.name IN $names "
        "WITH e, e.name AS name DETACH DELETE e "
        "RETURN count(name) AS removed",
        names=names,
    ).single()
    return record["removed"] if record else 0


def _delete_relations(tx, relations: list[Relation]) -> int:
    removed = 0
    for relation in relations:
        record = tx.run(
            "MATCH (:Entity {name: $from})-[r:RELATES_TO {relationType: $type}]->"
            "(:Entity {name: $to}) DELETE r RETURN count(*) AS removed",
            {"from": relation.from_, "to": relation.to, "type": relation.relation_type},
        ).single()
        removed += record["removed"] if record else 0
    return removed


def _read_graph(tx) -> KnowledgeGraph:
    entities = [
        _record_to_entity(row)
        for row in tx.run(f"MATCH (e:Entity) RETURN {ENTITY_FIELDS} ORDER BY e.name")
    ]
    relations = [
        _record_to_relation(row)
        for row in tx.run(
            "MATCH (a:Entity)-[r:RELATES_TO]->(b:Entity) "
            "RETURN a.name AS from, b.name AS to, "
            "r.relationType AS relationType, r.metadata AS metadata"
        )
    ]
    return KnowledgeGraph(entities=entities, relations=relations)


class Neo4jRecordStore(RecordStore):
    """Record store backed by a Neo4j database."""

    def __init__(
        self,
        uri: str,
        username: str,
        password: str,
        database: str = "neo4j",
        driver=None,
    ):
        """Initialize Neo4j store.

        Args:
            uri: Bolt/neo4j URI
            username: Database user
            password: Database password
            database: Database name
            driver: Pre-built driver (tests inject one)
        """
        self.uri = uri
        self.database = database
        self._auth = (username, password)
        self._driver = driver

    @contextmanager
    def _session(self):
        session = self._driver.session(database=self.database)
        try:
            yield session
        finally:
            session.close()

    def _write(self, fn, *args):
        with self._session() as session:
            return session.execute_write(fn, *args)

    def _read(self, fn, *args):
        with self._session() as session:
            return session.execute_read(fn, *args)

    async def _call(self, method, fn, *args):
        try:
            return await asyncio.to_thread(method, fn, *args)
        except (ServiceUnavailable, SessionExpired, AuthError) as e:
            raise BackendUnavailable(f"Neo4j unavailable at {self.uri}: {e}") from e

    def _connect(self) -> None:
        if self._driver is None:
            self._driver = GraphDatabase.driver(
                self.uri,
                auth=self._auth,
                max_connection_lifetime=3600,
                max_connection_pool_size=50,
            )
        self._driver.verify_connectivity()
        with self._session() as session:
            for statement in SCHEMA_STATEMENTS:
                session.run(statement)

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self._connect)
        except (ServiceUnavailable, AuthError) as e:
            raise BackendUnavailable(f"Cannot connect to Neo4j at {self.uri}: {e}") from e
        logger.info(f"Connected to Neo4j at {self.uri} (database={self.database})")

    async def add_entities(self, entities: list[Entity]) -> list[Entity]:
        return await self._call(self._write, _upsert_entities, entities)

    async def add_relations(self, relations: list[Relation]) -> list[Relation]:
        return await self._call(self._write, _upsert_relations, relations)

    async def add_observations(self, name: str, observations: list[str]) -> Entity:
        return await self._call(
            self._write, _rewrite_observations, name,
            lambda current: current + list(observations),
        )

    async def delete_entities(self, names: list[str]) -> int:
        return await self._call(self._write, _delete_entities, list(names))

    async def delete_observations(self, name: str, observations: list[str]) -> Entity:
        doomed = set(observations)
        return await self._call(
            self._write, _rewrite_observations, name,
            lambda current: [o for o in current if o not in doomed],
        )

    async def delete_relations(self, relations: list[Relation]) -> int:
        return await self._call(self._write, _delete_relations, relations)

    async def get_graph(self) -> KnowledgeGraph:
        return await self._call(self._read, _read_graph)

    async def close(self) -> None:
        if self._driver is not None:
            await asyncio.to_thread(self._driver.close)
            self._driver = None
