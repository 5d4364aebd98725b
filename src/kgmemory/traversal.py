"""Graph traversal over a single snapshot.

Every function takes a GraphSnapshot built from one ``get_graph()`` call
and never mutates it, so traversals can run alongside writes and simply
observe the state they were given.
"""

from collections import deque

from .errors import EntityNotFound, ValidationError
from .models import Entity, Relation
from .state import GraphSnapshot


def search_related(
    snapshot: GraphSnapshot,
    start: str,
    max_depth: int,
    relation_types: list[str] | None = None,
) -> dict:
    """Breadth-first discovery of entities around ``start``.

    Relations count in both directions. Each entity is expanded at most
    once, at its shortest depth. Every relation touching an expanded
    entity is reported (if its type is allowed), and its far endpoint is
    included in the entity set even when it lies beyond ``max_depth``.

    Args:
        snapshot: Graph to traverse
        start: Entity name to start from
        max_depth: Maximum hops to expand; 0 returns only the start
        relation_types: Optional allow-list of relation types

    Returns:
        Dict with 'entities', 'relationships' and 'paths'
        ({path: [names], depth}) for every entity reached at depth > 0.
    """
    start_entity = snapshot.get_entity(start)
    if start_entity is None:
        raise EntityNotFound(start)
    if max_depth < 0:
        raise ValidationError(f"max_depth must be >= 0, got {max_depth}")
    if max_depth == 0:
        return {"entities": [start_entity], "relationships": [], "paths": []}

    allowed = set(relation_types) if relation_types else None
    visited = {start}
    discovered = {start}
    relationships: dict[tuple[str, str, str], Relation] = {}
    paths = []

    queue = deque([(start, [start], 0)])
    while queue:
        name, path, depth = queue.popleft()
        for rel in snapshot.get_relations_for(name):
            if allowed is not None and rel.relation_type not in allowed:
                continue
            relationships.setdefault(rel.key, rel)
            other = rel.other_entity(name)
            discovered.add(other)
            if other in visited or depth >= max_depth:
                continue
            visited.add(other)
            next_path = path + [other]
            paths.append({"path": next_path, "depth": depth + 1})
            queue.append((other, next_path, depth + 1))

    return {
        "entities": [e for e in snapshot.entities if e.name in discovered],
        "relationships": list(relationships.values()),
        "paths": paths,
    }


def find_relationship_chains(snapshot: GraphSnapshot, start_id: str, max_depth: int) -> list[dict]:
    """Enumerate outgoing relation chains from an entity.

    Depth-first over an explicit stack. Each frame carries its own
    visited-edge set, so an edge may appear on sibling branches but never
    twice within one chain.

    ``total_strength`` is the average edge strength along the chain
    (missing strengths count as 0.5), so it stays within [0, 1].

    Returns:
        Chains sorted by descending total_strength, each
        {chain: [names], depth, chain_type, total_strength}.
    """
    start = snapshot.resolve(start_id)
    if start is None:
        raise EntityNotFound(start_id)
    if max_depth < 1:
        raise ValidationError(f"max_depth must be >= 1, got {max_depth}")

    chains = []
    # frame: (edge to follow, chain so far, strength sum so far, edges used on this branch)
    stack = [
        (rel, [start.name], 0.0, frozenset())
        for rel in reversed(snapshot.get_outgoing_relations(start.name))
    ]
    while stack:
        rel, path, strength_sum, used = stack.pop()
        if rel.key in used:
            continue
        chain = path + [rel.to]
        depth = len(chain) - 1
        total = strength_sum + rel.strength
        chains.append({
            "chain": chain,
            "depth": depth,
            "chain_type": rel.relation_type,
            "total_strength": total / depth,
        })
        if depth < max_depth:
            branch_used = used | {rel.key}
            stack.extend(
                (nxt, chain, total, branch_used)
                for nxt in reversed(snapshot.get_outgoing_relations(rel.to))
            )

    chains.sort(key=lambda c: c["total_strength"], reverse=True)
    return chains


def _clustering_coefficient(snapshot: GraphSnapshot, neighbors: set[str]) -> float:
    """Fraction of neighbor pairs that are themselves connected."""
    k = len(neighbors)
    if k < 2:
        return 0.0
    links = set()
    for n in neighbors:
        for other in snapshot.neighbors(n) & neighbors:
            links.add(frozenset((n, other)))
    return 2 * len(links) / (k * (k - 1))


def analyze_memory_connections(snapshot: GraphSnapshot, memory_id: str) -> dict:
    """Connection statistics for one entity.

    connection_strength divides the summed relation strengths by the
    number of distinct neighbors, so parallel relations to one neighbor
    raise the numerator only. One cluster is reported per relation type.
    """
    entity = snapshot.resolve(memory_id)
    if entity is None:
        raise EntityNotFound(memory_id)

    name = entity.name
    incident = snapshot.get_relations_for(name)
    neighbors = snapshot.neighbors(name)

    total_strength = sum(r.strength for r in incident)
    connection_strength = total_strength / len(neighbors) if neighbors else 0.0

    by_type: dict[str, list[str]] = {}
    for rel in incident:
        members = by_type.setdefault(rel.relation_type, [])
        other = rel.other_entity(name)
        if other != name and other not in members:
            members.append(other)

    clusters = [
        {
            "cluster_id": f"{relation_type}_cluster",
            "entities": members,
            "strength": len(members) / len(neighbors) if neighbors else 0.0,
        }
        for relation_type, members in by_type.items()
    ]

    return {
        "memory_id": memory_id,
        "entity": name,
        "relationship_types": list(by_type),
        "connection_strength": connection_strength,
        "related_clusters": clusters,
        "degree": {
            "in": len(snapshot.get_incoming_relations(name)),
            "out": len(snapshot.get_outgoing_relations(name)),
            "total": len(incident),
        },
        "clustering_coefficient": _clustering_coefficient(snapshot, neighbors),
    }


def shortest_path(
    snapshot: GraphSnapshot,
    source: str,
    target: str,
    relation_types: list[str] | None = None,
    max_depth: int = 5,
) -> dict | None:
    """Fewest-hop path between two entities, ignoring direction.

    Returns:
        {path: [names], relations: [Relation], length} or None if the
        target is not reachable within max_depth hops.
    """
    for name in (source, target):
        if snapshot.get_entity(name) is None:
            raise EntityNotFound(name)
    if source == target:
        return {"path": [source], "relations": [], "length": 0}

    allowed = set(relation_types) if relation_types else None
    came_from: dict[str, tuple[str, Relation]] = {}
    queue = deque([(source, 0)])
    seen = {source}
    while queue:
        name, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for rel in snapshot.get_relations_for(name):
            if allowed is not None and rel.relation_type not in allowed:
                continue
            other = rel.other_entity(name)
            if other in seen:
                continue
            seen.add(other)
            came_from[other] = (name, rel)
            if other == target:
                return _unwind(came_from, source, target)
            queue.append((other, depth + 1))
    return None


def _unwind(came_from: dict[str, tuple[str, Relation]], source: str, target: str) -> dict:
    path = [target]
    relations = []
    while path[-1] != source:
        previous, rel = came_from[path[-1]]
        relations.append(rel)
        path.append(previous)
    path.reverse()
    relations.reverse()
    return {"path": path, "relations": relations, "length": len(relations)}


def attach_relationship_context(
    snapshot: GraphSnapshot,
    entities: list[Entity],
    relationship_paths: list[str],
) -> list[dict]:
    """Relations of the given types whose endpoints are both in ``entities``.

    Each item carries the matched source and target entities, the relation
    itself and its strength as ``path_relevance``. Sorted by descending
    strength; this is the structural half of hybrid search.
    """
    by_name = {}
    for entity in entities:
        by_name.setdefault(entity.name, entity)
    allowed = set(relationship_paths)
    context = [
        {
            "source": by_name[rel.from_],
            "target": by_name[rel.to],
            "relation": rel,
            "path_relevance": rel.strength,
        }
        for rel in snapshot.relations
        if rel.relation_type in allowed and rel.from_ in by_name and rel.to in by_name
    ]
    context.sort(key=lambda c: c["path_relevance"], reverse=True)
    return context
