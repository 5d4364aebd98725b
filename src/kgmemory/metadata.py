"""Metadata normalization.

Stamps identity and timestamps onto records before they reach either
store. Pure: returns copies, never touches I/O.
"""

from datetime import datetime

from .models import Entity, EntityMetadata, Relation, RelationMetadata, generate_id, utc_now


def ensure_entity_metadata(entity: Entity, now: datetime | None = None) -> Entity:
    """Return a copy of ``entity`` with id, created_at and a fresh updated_at."""
    now = now or utc_now()
    metadata = entity.metadata.model_copy(deep=True) if entity.metadata else EntityMetadata()
    metadata.id = metadata.id or generate_id()
    metadata.created_at = metadata.created_at or now
    metadata.updated_at = now
    return entity.model_copy(update={"metadata": metadata}, deep=True)


def ensure_relation_metadata(relation: Relation, now: datetime | None = None) -> Relation:
    """Return a copy of ``relation`` with id, created_at and a fresh updated_at."""
    now = now or utc_now()
    metadata = relation.metadata.model_copy(deep=True) if relation.metadata else RelationMetadata()
    metadata.id = metadata.id or generate_id()
    metadata.created_at = metadata.created_at or now
    metadata.updated_at = now
    return relation.model_copy(update={"metadata": metadata}, deep=True)


def carry_identity(incoming, existing):
    """Keep the stored id and created_at when a record is upserted again.

    Works for both entities and relations; the stored values win over
    freshly generated ones.
    """
    if existing is None or existing.metadata is None:
        return incoming
    current = incoming.metadata or type(existing.metadata)()
    metadata = current.model_copy(update={
        "id": existing.metadata.id or current.id,
        "created_at": existing.metadata.created_at or current.created_at,
    })
    return incoming.model_copy(update={"metadata": metadata})
