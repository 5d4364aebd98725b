"""Memory engine - coordinates the record store and the similarity index."""

import logging

import pydantic

from .config import Settings
from .constants import (
    DEFAULT_CHAIN_DEPTH,
    DEFAULT_PATH_DEPTH,
    DEFAULT_RELATED_DEPTH,
    DEFAULT_RELATION_STRENGTH,
    DEFAULT_SEARCH_LIMIT,
    DOMAIN_LINK_RELATION,
    HYBRID_OVERSAMPLE_FACTOR,
    MAX_CHAIN_DEPTH,
    MAX_RELATED_DEPTH,
    META_LEARNING_TYPE,
    MIN_CHAIN_DEPTH,
    MIN_RELATED_DEPTH,
    RELATIONSHIP_SCROLL_LIMIT,
)
from .embeddings import create_embedder
from .errors import EntityNotFound, MemoryGraphError, ValidationError
from .metadata import ensure_entity_metadata, ensure_relation_metadata
from .metalearning import build_principle, resolve_principle, track_application
from .models import (
    ApplicationRequest,
    Entity,
    KnowledgeGraph,
    MetaLearningRequest,
    Relation,
    RelationMetadata,
    RelationshipLink,
    SearchFilters,
    utc_now,
)
from .state import GraphSnapshot
from .store import RecordStore, create_record_store
from .traversal import (
    analyze_memory_connections,
    attach_relationship_context,
    find_relationship_chains,
    search_related,
    shortest_path,
)
from .vectors import QdrantIndex, clamp_limit

logger = logging.getLogger(__name__)


def _parse(model, value):
    if value is None or isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


def _parse_all(model, values) -> list:
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"Expected a list of {model.__name__}")
    return [_parse(model, value) for value in values]


def _check_range(name: str, value, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ValidationError(f"{name} must be an integer between {low} and {high}, got {value!r}")


def _check_query(query) -> None:
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("query must be a non-empty string")


class MemoryEngine:
    """Main entry point for memory operations.

    Every mutation runs the same sequence: normalize metadata, write the
    record store, then mirror the stored records into the similarity
    index. There is no rollback; if the index write fails the error
    propagates and the two stores differ until the record is written
    again or ``reindex()`` runs.

    Structural reads use the record store only; similarity reads use the
    index only.
    """

    def __init__(self, store: RecordStore, index: QdrantIndex):
        self.store = store
        self.index = index

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.index.initialize()
        if self.index.health.recreated:
            logger.warning("Similarity index was recreated; run reindex to restore vectors")

    async def close(self) -> None:
        await self.store.close()
        await self.index.close()

    async def _snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(await self.store.get_graph())

    async def _reload_entity(self, name: str) -> Entity:
        entity = (await self.store.get_graph()).get_entity(name)
        if entity is None:
            raise EntityNotFound(name)
        return entity

    # --- Mutations ---

    async def create_entities(self, entities: list) -> list[Entity]:
        """Upsert entities by name and mirror them into the index."""
        now = utc_now()
        normalized = [ensure_entity_metadata(e, now) for e in _parse_all(Entity, entities)]
        stored = await self.store.add_entities(normalized)
        for entity in stored:
            await self.index.persist_entity(entity)
        logger.info(f"Stored {len(stored)} entities")
        return stored

    async def create_relations(self, relations: list) -> list[Relation]:
        """Upsert relations; every endpoint must already exist."""
        now = utc_now()
        normalized = [ensure_relation_metadata(r, now) for r in _parse_all(Relation, relations)]
        stored = await self.store.add_relations(normalized)
        for relation in stored:
            await self.index.persist_relation(relation)
        logger.info(f"Stored {len(stored)} relations")
        return stored

    async def add_observations(self, name: str, contents: list[str]) -> Entity:
        """Append observations, then re-index the whole entity."""
        await self.store.add_observations(name, list(contents))
        entity = await self._reload_entity(name)
        await self.index.persist_entity(entity)
        return entity

    async def delete_observations(self, name: str, observations: list[str]) -> Entity:
        """Remove matching observations, then re-index the whole entity."""
        await self.store.delete_observations(name, list(observations))
        entity = await self._reload_entity(name)
        await self.index.persist_entity(entity)
        return entity

    async def delete_entities(self, names: list[str]) -> int:
        """Delete entities with their relations. Unknown names are ignored."""
        snapshot = await self._snapshot()
        doomed = set(names)
        cascaded = [r for r in snapshot.relations if r.from_ in doomed or r.to in doomed]
        known_ids = {n: e.entity_id for n in doomed if (e := snapshot.get_entity(n))}

        removed = await self.store.delete_entities(list(names))
        for name in doomed:
            await self.index.delete_entity(name, known_ids.get(name))
        for relation in cascaded:
            await self.index.delete_relation(relation)
        logger.info(f"Deleted {removed} entities and {len(cascaded)} relations")
        return removed

    async def delete_relations(self, relations: list) -> int:
        parsed = _parse_all(Relation, relations)
        removed = await self.store.delete_relations(parsed)
        for relation in parsed:
            await self.index.delete_relation(relation)
        return removed

    async def save_memories_with_relationships(
        self, memories: list, relationships: list | None = None
    ) -> dict:
        """Store a batch of entities and the relations between them.

        Relations are checked against existing and incoming entity names
        before anything is written.
        """
        entities = _parse_all(Entity, memories)
        relations = _parse_all(Relation, relationships or [])
        if relations:
            known = {e.name for e in (await self.store.get_graph()).entities}
            known.update(e.name for e in entities)
            for relation in relations:
                for endpoint in (relation.from_, relation.to):
                    if endpoint not in known:
                        raise EntityNotFound(endpoint)

        stored = await self.create_entities(entities)
        created = await self.create_relations(relations) if relations else []
        return {
            "memory_ids": [e.entity_id for e in stored],
            "relationship_ids": [r.label for r in created],
        }

    async def batch_create_relationships(self, relationships: list) -> dict:
        """Create relations whose endpoints are given by stable id or name."""
        links = _parse_all(RelationshipLink, relationships)
        snapshot = await self._snapshot()
        relations = []
        for link in links:
            source = snapshot.resolve(link.source_id)
            if source is None:
                raise EntityNotFound(link.source_id)
            target = snapshot.resolve(link.target_id)
            if target is None:
                raise EntityNotFound(link.target_id)
            relations.append(Relation(
                from_=source.name,
                to=target.name,
                relation_type=link.relation_type,
                metadata=link.metadata,
            ))
        created = await self.create_relations(relations)
        return {"relationship_ids": [r.label for r in created]}

    async def reindex(self) -> dict:
        """Rebuild the similarity index from the record store.

        This is the only reconciliation path; normal writes never repair
        earlier index failures.
        """
        graph = await self.store.get_graph()
        await self.index.reset()
        for entity in graph.entities:
            await self.index.persist_entity(entity)
        for relation in graph.relations:
            await self.index.persist_relation(relation)
        logger.info(
            f"Reindexed {len(graph.entities)} entities and {len(graph.relations)} relations"
        )
        return {"entities": len(graph.entities), "relations": len(graph.relations)}

    # --- Reads ---

    async def read_graph(self) -> KnowledgeGraph:
        return await self.store.get_graph()

    async def search_similar(
        self,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        score_threshold: float | None = None,
    ) -> list[Entity | Relation]:
        _check_query(query)
        return await self.index.search_similar(query, clamp_limit(limit), score_threshold)

    async def search_with_filters(
        self,
        query: str,
        filters: SearchFilters | dict | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        score_threshold: float | None = None,
    ) -> list[Entity | Relation]:
        _check_query(query)
        return await self.index.search_with_filters(
            query, _parse(SearchFilters, filters), clamp_limit(limit), score_threshold
        )

    async def get_relationships_by_type(
        self, relation_type: str, limit: int = RELATIONSHIP_SCROLL_LIMIT
    ) -> list[Relation]:
        if not relation_type:
            raise ValidationError("relation_type must be a non-empty string")
        return await self.index.get_relationships_by_type(relation_type, clamp_limit(limit))

    async def search_related(
        self,
        name: str,
        max_depth: int = DEFAULT_RELATED_DEPTH,
        relation_types: list[str] | None = None,
    ) -> dict:
        _check_range("max_depth", max_depth, MIN_RELATED_DEPTH, MAX_RELATED_DEPTH)
        return search_related(await self._snapshot(), name, max_depth, relation_types)

    async def find_relationship_chains(
        self, start_id: str, max_depth: int = DEFAULT_CHAIN_DEPTH
    ) -> list[dict]:
        _check_range("max_depth", max_depth, MIN_CHAIN_DEPTH, MAX_CHAIN_DEPTH)
        return find_relationship_chains(await self._snapshot(), start_id, max_depth)

    async def analyze_memory_connections(self, memory_id: str) -> dict:
        return analyze_memory_connections(await self._snapshot(), memory_id)

    async def shortest_path(
        self,
        source: str,
        target: str,
        relation_types: list[str] | None = None,
        max_depth: int = DEFAULT_PATH_DEPTH,
    ) -> dict | None:
        _check_range("max_depth", max_depth, MIN_CHAIN_DEPTH, MAX_CHAIN_DEPTH)
        return shortest_path(await self._snapshot(), source, target, relation_types, max_depth)

    async def hybrid_search(
        self,
        query: str,
        relationship_paths: list[str] | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        filters: SearchFilters | dict | None = None,
    ) -> dict:
        """Similarity search plus the relations connecting the matches.

        The index is oversampled so that truncating to ``limit`` still
        leaves room for relationship context among the wider match set.
        """
        _check_query(query)
        limit = clamp_limit(limit)
        results = await self.index.search_with_filters(
            query, _parse(SearchFilters, filters), limit * HYBRID_OVERSAMPLE_FACTOR
        )
        matches = [r for r in results if isinstance(r, Entity)]

        context = []
        if relationship_paths:
            context = attach_relationship_context(
                await self._snapshot(), matches, relationship_paths
            )
        return {
            "memories": matches[:limit],
            "relationship_context": context,
            "total_count": len(matches),
        }

    # --- Meta-learning ---

    async def store_meta_learning(self, request: MetaLearningRequest | dict) -> dict:
        """Store a principle entity, then link it to others in its domain."""
        request = _parse(MetaLearningRequest, request)
        [stored] = await self.create_entities([build_principle(request)])
        links = await self._link_domain_peers(stored)
        return {
            "success": True,
            "principle_name": stored.name,
            "id": stored.entity_id,
            "domain_links": links,
        }

    async def _link_domain_peers(self, principle: Entity) -> list[str]:
        """Best effort: failures are logged and never fail the store."""
        domain = principle.metadata.domain if principle.metadata else None
        if not domain:
            return []
        try:
            graph = await self.store.get_graph()
            peers = [
                e for e in graph.entities
                if e.name != principle.name
                and META_LEARNING_TYPE in e.types
                and e.metadata is not None
                and e.metadata.domain == domain
            ]
            if not peers:
                return []
            created = await self.create_relations([
                Relation(
                    from_=principle.name,
                    to=peer.name,
                    relation_type=DOMAIN_LINK_RELATION,
                    metadata=RelationMetadata(
                        strength=DEFAULT_RELATION_STRENGTH,
                        context=f"Shared domain: {domain}",
                    ),
                )
                for peer in peers
            ])
            return [r.label for r in created]
        except MemoryGraphError as e:
            logger.warning(f"Domain linking for '{principle.name}' failed: {e}")
            return []

    async def track_meta_learning_application(self, request: ApplicationRequest | dict) -> dict:
        """Record one application of a principle and update its metrics.

        The rewritten principle is saved with a full upsert rather than
        add_observations, since the metrics block replaces existing lines
        and ``metadata.metrics`` changes too.
        """
        request = _parse(ApplicationRequest, request)
        principle = resolve_principle(await self.store.get_graph(), request.principle_name)
        updated, metrics = track_application(
            principle,
            request.outcome,
            request.application_context,
            details=request.details,
            lessons_learned=request.lessons_learned,
        )
        await self.create_entities([updated])
        logger.info(
            f"Tracked {request.outcome} application of '{principle.name}' "
            f"(applied={metrics.times_applied:g}, score={metrics.effectiveness_score:.2f})"
        )
        return {
            "success": True,
            "principle_name": principle.name,
            "updated_metrics": metrics.to_summary(),
        }

    async def get_meta_learnings(
        self,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        score_threshold: float | None = None,
    ) -> list[Entity]:
        results = await self.search_with_filters(
            query, SearchFilters(entity_types=[META_LEARNING_TYPE]), limit, score_threshold
        )
        return [r for r in results if isinstance(r, Entity)]


def create_engine(settings: Settings) -> MemoryEngine:
    """Wire a MemoryEngine from settings. Call ``initialize()`` before use."""
    index = QdrantIndex(
        create_embedder(settings),
        collection_name=settings.collection_name,
        url=settings.qdrant_url,
        api_key=settings.qdrant_api_key,
        path=None if settings.qdrant_url else settings.qdrant_location,
        recreate_on_mismatch=settings.recreate_on_mismatch,
        connect_retries=settings.connect_retries,
        retry_delay=settings.connect_retry_delay,
    )
    return MemoryEngine(create_record_store(settings), index)
