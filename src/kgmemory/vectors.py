"""Similarity index backed by Qdrant.

Mirrors entities and relations as embeddings of a descriptive sentence.
The payload of every point is the full record plus a ``type``
discriminator, so search results can be returned without touching the
canonical store.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import pydantic
from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from .constants import (
    CONNECT_RETRIES,
    CONNECT_RETRY_BASE_DELAY,
    MAX_SEARCH_LIMIT,
    MIN_SEARCH_LIMIT,
    RELATIONSHIP_SCROLL_LIMIT,
)
from .embeddings import Embedder
from .errors import BackendUnavailable, ConfigurationError
from .models import Entity, Relation, SearchFilters

logger = logging.getLogger(__name__)

QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException, ConnectionError, TimeoutError)


class IndexStatus(Enum):
    """Status of the similarity index."""

    READY = "ready"
    UNINITIALIZED = "uninitialized"


@dataclass
class IndexHealth:
    """Health status of the similarity index."""

    status: IndexStatus
    collection: str | None = None
    embedding_model: str | None = None
    dimension: int | None = None
    recreated: bool = False


def _stable_hash(text: str) -> str:
    """Deterministic hash for point ids.

    Uses SHA-256 instead of Python's hash() which is randomized
    by default (PYTHONHASHSEED) for security reasons.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def point_id(key: str) -> int:
    """Unsigned 64-bit point id derived from a record key."""
    return int(_stable_hash(key), 16)


def entity_key(entity: Entity) -> str:
    return entity.entity_id or entity.name


def entity_to_text(entity: Entity) -> str:
    """Convert entity to searchable text."""
    text = f"{entity.name} ({', '.join(entity.types)}): {'. '.join(entity.observations)}"
    metadata = entity.metadata
    if metadata is not None:
        if metadata.content:
            text += f" Content: {metadata.content}"
        if metadata.domain:
            text += f" Domain: {metadata.domain}"
        if metadata.tags:
            text += f" Tags: {', '.join(metadata.tags)}"
    return text


def relation_to_text(relation: Relation) -> str:
    """Convert relation to searchable text."""
    text = f"{relation.from_} {relation.relation_type} {relation.to}"
    metadata = relation.metadata
    if metadata is not None:
        if metadata.context:
            text += f" Context: {metadata.context}"
        if metadata.evidence:
            text += f" Evidence: {'. '.join(metadata.evidence)}"
    return text


def clamp_limit(limit: int) -> int:
    return max(MIN_SEARCH_LIMIT, min(MAX_SEARCH_LIMIT, int(limit)))


def build_filter(filters: SearchFilters | None) -> models.Filter | None:
    """Translate search filters into a Qdrant must-filter.

    Each populated field becomes one condition; conditions are AND-ed and
    values inside a field are matched with any-of.
    """
    if filters is None or filters.is_empty:
        return None

    conditions = []
    if filters.entity_types:
        conditions.append(models.FieldCondition(
            key="entityType", match=models.MatchAny(any=filters.entity_types)
        ))
    if filters.domains:
        conditions.append(models.FieldCondition(
            key="metadata.domain", match=models.MatchAny(any=filters.domains)
        ))
    if filters.tags:
        conditions.append(models.FieldCondition(
            key="metadata.tags", match=models.MatchAny(any=filters.tags)
        ))
    if filters.date_range:
        conditions.append(models.FieldCondition(
            key="metadata.created_at",
            range=models.DatetimeRange(
                gte=filters.date_range.start,
                lte=filters.date_range.end,
            ),
        ))
    return models.Filter(must=conditions)


def parse_payload(payload: dict | None) -> Entity | Relation | None:
    """Rebuild a record from a point payload; None if it is malformed."""
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    data = {k: v for k, v in payload.items() if k != "type"}
    try:
        if kind == "entity":
            return Entity.model_validate(data)
        if kind == "relation":
            return Relation.model_validate(data)
    except pydantic.ValidationError as e:
        logger.debug(f"Skipping malformed {kind} payload: {e}")
    return None


class QdrantIndex:
    """Similarity index adapter over a Qdrant collection.

    Connection failures are retried with exponential backoff during
    ``initialize()`` only; afterwards every failure propagates.
    """

    def __init__(
        self,
        embedder: Embedder,
        collection_name: str = "memory",
        client: QdrantClient | None = None,
        url: str | None = None,
        api_key: str | None = None,
        path: Path | None = None,
        recreate_on_mismatch: bool = True,
        connect_retries: int = CONNECT_RETRIES,
        retry_delay: float = CONNECT_RETRY_BASE_DELAY,
    ):
        """Initialize the adapter.

        Args:
            embedder: Embedding provider; fixes the collection's vector size.
            collection_name: Qdrant collection to use.
            client: Pre-built client. If None, one is created from url or path.
            url: Qdrant server URL.
            api_key: Qdrant API key for hosted servers.
            path: On-disk location for embedded mode when no url is given.
            recreate_on_mismatch: Drop and recreate the collection when its
                vector size differs from the embedder's. If False, raise
                ConfigurationError instead.
            connect_retries: Connection attempts during initialize().
            retry_delay: First backoff delay in seconds; doubles per retry.
        """
        self.embedder = embedder
        self.collection_name = collection_name
        self._client = client
        self._url = url
        self._api_key = api_key
        self._path = path
        self.recreate_on_mismatch = recreate_on_mismatch
        self.connect_retries = max(1, connect_retries)
        self.retry_delay = retry_delay
        self.health = IndexHealth(status=IndexStatus.UNINITIALIZED)

    def _create_client(self) -> QdrantClient:
        if self._url:
            return QdrantClient(url=self._url, api_key=self._api_key)
        if self._path is None:
            raise ConfigurationError("Set QDRANT_URL or QDRANT_PATH for the similarity index")
        Path(self._path).mkdir(parents=True, exist_ok=True)
        return QdrantClient(path=str(self._path))

    async def initialize(self) -> None:
        """Connect (with retries) and make sure the collection fits the model."""
        if self._client is None:
            self._client = self._create_client()

        for attempt in range(self.connect_retries):
            try:
                await asyncio.to_thread(self._client.get_collections)
                break
            except QDRANT_ERRORS as e:
                if attempt == self.connect_retries - 1:
                    raise BackendUnavailable(
                        f"Qdrant unreachable after {self.connect_retries} attempts: {e}"
                    ) from e
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"Qdrant connection attempt {attempt + 1} failed, retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

        dimension = self.embedder.dimension
        recreated = await self._call(self._ensure_collection, dimension)
        self.health = IndexHealth(
            status=IndexStatus.READY,
            collection=self.collection_name,
            embedding_model=self.embedder.model_name,
            dimension=dimension,
            recreated=recreated,
        )

    def _create_collection(self, dimension: int) -> None:
        self._client.create_collection(
            collection_name=self.collection_name,
            vectors_config=models.VectorParams(size=dimension, distance=models.Distance.COSINE),
        )

    def _ensure_collection(self, dimension: int) -> bool:
        """Create the collection, or recreate it on a size mismatch.

        Returns True if an existing collection was dropped.
        """
        if not self._client.collection_exists(self.collection_name):
            self._create_collection(dimension)
            logger.info(f"Created collection {self.collection_name} ({dimension} dims)")
            return False

        info = self._client.get_collection(self.collection_name)
        vectors = info.config.params.vectors
        existing = vectors.size if isinstance(vectors, models.VectorParams) else None
        if existing == dimension:
            return False

        if not self.recreate_on_mismatch:
            raise ConfigurationError(
                f"Collection {self.collection_name} has vector size {existing}, "
                f"model {self.embedder.model_name} produces {dimension}. "
                f"Enable QDRANT_RECREATE_ON_MISMATCH to drop and rebuild it."
            )
        logger.warning(
            f"Collection {self.collection_name} vector size {existing} != {dimension} "
            f"for model {self.embedder.model_name}; recreating. All indexed vectors are "
            f"discarded; run reindex to rebuild from the record store."
        )
        self._client.delete_collection(self.collection_name)
        self._create_collection(dimension)
        return True

    async def _call(self, fn, *args, **kwargs):
        if self._client is None:
            raise BackendUnavailable("Similarity index is not initialized")
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except QDRANT_ERRORS as e:
            raise BackendUnavailable(f"Qdrant request failed: {e}") from e

    async def _upsert(self, key: str, text: str, payload: dict) -> None:
        vector = await self.embedder.embed(text)
        point = models.PointStruct(id=point_id(key), vector=vector, payload=payload)
        await self._call(
            self._client.upsert, collection_name=self.collection_name, points=[point]
        )
        logger.debug(f"Indexed {payload['type']} {key}")

    async def persist_entity(self, entity: Entity) -> None:
        await self._upsert(
            entity_key(entity), entity_to_text(entity), {"type": "entity", **entity.to_dict()}
        )
        if entity.entity_id:
            # Records loaded without an id were indexed under their name
            await self._delete_points([entity.name])

    async def persist_relation(self, relation: Relation) -> None:
        await self._upsert(
            relation.label, relation_to_text(relation), {"type": "relation", **relation.to_dict()}
        )

    async def _delete_points(self, keys: list[str]) -> None:
        ids = list(dict.fromkeys(point_id(k) for k in keys))
        await self._call(
            self._client.delete,
            collection_name=self.collection_name,
            points_selector=models.PointIdsList(points=ids),
        )

    async def delete_entity(self, name: str, entity_id: str | None = None) -> None:
        """Remove an entity's point; both id- and name-derived keys are tried."""
        keys = [name] if not entity_id else [entity_id, name]
        await self._delete_points(keys)

    async def delete_relation(self, relation: Relation) -> None:
        await self._delete_points([relation.label])

    async def search_scored(
        self,
        query: str,
        limit: int = 10,
        filters: SearchFilters | None = None,
        score_threshold: float | None = None,
    ) -> list[tuple[Entity | Relation, float]]:
        """Search and return ``(record, score)`` pairs in ranking order."""
        vector = await self.embedder.embed(query)
        response = await self._call(
            self._client.query_points,
            collection_name=self.collection_name,
            query=vector,
            limit=clamp_limit(limit),
            query_filter=build_filter(filters),
            score_threshold=score_threshold,
            with_payload=True,
        )
        results = []
        for point in response.points:
            record = parse_payload(point.payload)
            if record is not None:
                results.append((record, point.score))
        return results

    async def search_similar(
        self, query: str, limit: int = 10, score_threshold: float | None = None
    ) -> list[Entity | Relation]:
        scored = await self.search_scored(query, limit, score_threshold=score_threshold)
        return [record for record, _ in scored]

    async def search_with_filters(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
        score_threshold: float | None = None,
    ) -> list[Entity | Relation]:
        scored = await self.search_scored(query, limit, filters, score_threshold)
        return [record for record, _ in scored]

    async def get_relationships_by_type(
        self, relation_type: str, limit: int = RELATIONSHIP_SCROLL_LIMIT
    ) -> list[Relation]:
        """Enumerate indexed relations of one type."""
        points, _ = await self._call(
            self._client.scroll,
            collection_name=self.collection_name,
            scroll_filter=models.Filter(must=[
                models.FieldCondition(key="type", match=models.MatchValue(value="relation")),
                models.FieldCondition(
                    key="relationType", match=models.MatchValue(value=relation_type)
                ),
            ]),
            limit=limit,
            with_payload=True,
        )
        relations = []
        for point in points:
            record = parse_payload(point.payload)
            if isinstance(record, Relation):
                relations.append(record)
        return relations

    async def count(self) -> int:
        result = await self._call(self._client.count, collection_name=self.collection_name)
        return result.count

    async def reset(self) -> None:
        """Drop every point by recreating the collection."""
        dimension = self.embedder.dimension

        def _recreate():
            if self._client.collection_exists(self.collection_name):
                self._client.delete_collection(self.collection_name)
            self._create_collection(dimension)

        await self._call(_recreate)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
        await self.embedder.close()
