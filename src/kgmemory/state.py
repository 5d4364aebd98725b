"""Indexed read-only view of a graph snapshot.

Traversal works on one snapshot per call; the indices are built once
when the view is created and never invalidated.
"""

from dataclasses import dataclass, field

from .models import Entity, KnowledgeGraph, Relation


@dataclass
class GraphSnapshot:
    """A knowledge graph with O(1) lookups.

    Indices:
    - _by_name: entity name -> Entity
    - _by_id: metadata id -> Entity
    - _outgoing: entity name -> relations from it
    - _incoming: entity name -> relations to it
    - _incident: entity name -> relations touching it, in graph order
    """

    graph: KnowledgeGraph
    _by_name: dict[str, Entity] = field(default_factory=dict)
    _by_id: dict[str, Entity] = field(default_factory=dict)
    _outgoing: dict[str, list[Relation]] = field(default_factory=dict)
    _incoming: dict[str, list[Relation]] = field(default_factory=dict)
    _incident: dict[str, list[Relation]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._rebuild_indices()

    def _rebuild_indices(self) -> None:
        self._by_name = {e.name: e for e in self.graph.entities}
        self._by_id = {e.entity_id: e for e in self.graph.entities if e.entity_id}
        self._outgoing = {}
        self._incoming = {}
        self._incident = {}
        for rel in self.graph.relations:
            self._outgoing.setdefault(rel.from_, []).append(rel)
            self._incoming.setdefault(rel.to, []).append(rel)
            self._incident.setdefault(rel.from_, []).append(rel)
            if rel.to != rel.from_:
                self._incident.setdefault(rel.to, []).append(rel)

    @property
    def entities(self) -> list[Entity]:
        return self.graph.entities

    @property
    def relations(self) -> list[Relation]:
        return self.graph.relations

    def get_entity(self, name: str) -> Entity | None:
        return self._by_name.get(name)

    def resolve(self, name_or_id: str) -> Entity | None:
        """Look up by stable id first, then by name."""
        return self._by_id.get(name_or_id) or self._by_name.get(name_or_id)

    def get_outgoing_relations(self, name: str) -> list[Relation]:
        return self._outgoing.get(name, [])

    def get_incoming_relations(self, name: str) -> list[Relation]:
        return self._incoming.get(name, [])

    def get_relations_for(self, name: str) -> list[Relation]:
        """All relations touching an entity (either direction)."""
        return self._incident.get(name, [])

    def neighbors(self, name: str) -> set[str]:
        """Distinct entities connected to ``name`` in either direction."""
        return {r.other_entity(name) for r in self.get_relations_for(name)} - {name}
