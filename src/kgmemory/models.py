"""Core data models for the knowledge graph.

Uses Pydantic v2 for validation, ULID for sortable unique IDs.

Wire names follow the persisted JSON layout (``entityType``, ``from``,
``relationType``); Python attributes are snake_case. Dump with
``to_dict()`` to get the wire form.
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ulid import ULID

from .constants import DEFAULT_RELATION_STRENGTH


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Metrics(BaseModel):
    """Effectiveness counters for a meta-learning principle.

    Counters are floats because a partially successful application
    credits half a success and half a failure.
    """

    version: int = 1
    times_applied: float = 0
    times_successful: float = 0
    times_failed: float = 0
    effectiveness_score: float = Field(default=0.0, ge=0.0, le=1.0)
    last_applied: datetime | None = None
    application_log: list[str] = Field(default_factory=list)

    @field_validator("last_applied")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def to_summary(self) -> dict:
        """Return the counters reported back to callers."""
        return {
            "times_applied": self.times_applied,
            "times_successful": self.times_successful,
            "times_failed": self.times_failed,
            "effectiveness_score": self.effectiveness_score,
            "last_applied": self.last_applied.isoformat() if self.last_applied else None,
        }


class EntityMetadata(BaseModel):
    """Identity, timestamps and classification for an entity.

    Unknown keys from older files are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    domain: str | None = None
    tags: list[str] = Field(default_factory=list)
    content: str | None = None
    metrics: Metrics | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        # Tags behave as a set but keep their first-seen order
        return list(dict.fromkeys(value))


class RelationMetadata(BaseModel):
    """Identity, timestamps and provenance for a relation."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    strength: float | None = Field(default=None, ge=0.0, le=1.0)
    context: str | None = None
    evidence: list[str] | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class Entity(BaseModel):
    """A node in the knowledge graph.

    ``entity_type`` is either a single label or a non-empty list of
    labels; use ``types`` to always get the list form.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    entity_type: str | list[str] = Field(alias="entityType")
    observations: list[str] = Field(default_factory=list)
    metadata: EntityMetadata | None = None

    @field_validator("entity_type")
    @classmethod
    def _check_types(cls, value: str | list[str]) -> str | list[str]:
        labels = [value] if isinstance(value, str) else value
        if not labels or any(not label.strip() for label in labels):
            raise ValueError("entityType must be a non-empty string or a non-empty list of strings")
        return value

    @property
    def types(self) -> list[str]:
        """All type labels, in declaration order."""
        if isinstance(self.entity_type, str):
            return [self.entity_type]
        return list(self.entity_type)

    @property
    def entity_id(self) -> str | None:
        return self.metadata.id if self.metadata else None

    def to_dict(self) -> dict:
        """Serialize to the wire/JSON-file form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Relation(BaseModel):
    """A directed, typed edge between two entity names.

    Identity for upsert and delete is ``(from, to, relationType)``.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    relation_type: str = Field(alias="relationType", min_length=1)
    metadata: RelationMetadata | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_, self.to, self.relation_type)

    @property
    def label(self) -> str:
        """``from-relationType-to``, used as the relation's external id."""
        return f"{self.from_}-{self.relation_type}-{self.to}"

    @property
    def strength(self) -> float:
        """Explicit strength, or the default when none was recorded."""
        if self.metadata is None or self.metadata.strength is None:
            return DEFAULT_RELATION_STRENGTH
        return self.metadata.strength

    def other_entity(self, name: str) -> str:
        """Return the entity on the other end of this relation."""
        return self.to if self.from_ == name else self.from_

    def to_dict(self) -> dict:
        """Serialize to the wire/JSON-file form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class KnowledgeGraph(BaseModel):
    """The canonical ``{entities, relations}`` document."""

    entities: list[Entity] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)

    def get_entity(self, name: str) -> Entity | None:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return None

    def to_dict(self) -> dict:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relations": [r.to_dict() for r in self.relations],
        }


class DateRange(BaseModel):
    """Inclusive bounds on ``created_at``. Either side may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start and self.end and self.start > self.end:
            raise ValueError("date_range.start must not be after date_range.end")
        return self


class SearchFilters(BaseModel):
    """Attribute predicates for filtered similarity search.

    Values within a field are OR-ed; fields are AND-ed together.
    """

    entity_types: list[str] | None = None
    domains: list[str] | None = None
    tags: list[str] | None = None
    date_range: DateRange | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.entity_types or self.domains or self.tags or self.date_range)


LearningType = Literal["failure", "success", "optimization", "insight"]
Impact = Literal["low", "medium", "high", "transformative"]
Outcome = Literal["successful", "failed", "partially_successful"]


class MetaLearningRequest(BaseModel):
    """A reusable behavioral lesson to store as a principle entity."""

    principle: str = Field(min_length=1)
    learning_type: LearningType
    trigger_situation: str | None = None
    observed_behavior: str | None = None
    recommended_behavior: str | None = None
    specific_example: str | None = None
    tags: list[str] = Field(default_factory=list)
    domain: str | None = None
    impact: Impact = "medium"
    project_context: str | None = None
    prevention_pattern: str | None = None
    success_metric: str | None = None
    is_general: bool = True


class ApplicationRequest(BaseModel):
    """One application of a stored principle and how it went."""

    principle_name: str = Field(min_length=1)
    application_context: str = Field(min_length=1)
    outcome: Outcome
    details: str | None = None
    lessons_learned: str | None = None


class RelationshipLink(BaseModel):
    """A relation whose endpoints are given by stable id or by name."""

    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    relation_type: str = Field(alias="type", min_length=1)
    metadata: RelationMetadata | None = None
