"""MCP server for the hybrid memory engine."""

import asyncio
import json
import logging
import sys
import traceback

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import Settings
from .engine import MemoryEngine, create_engine
from .errors import MemoryGraphError

logger = logging.getLogger("kgmemory")

_STRINGS = {"type": "array", "items": {"type": "string"}}

_ENTITY_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Unique entity name"},
        "entityType": {
            "oneOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}, "minItems": 1}],
            "description": "One type label or a list of labels",
        },
        "observations": _STRINGS,
        "metadata": {
            "type": "object",
            "properties": {
                "domain": {"type": "string"},
                "tags": _STRINGS,
                "content": {"type": "string"},
            },
        },
    },
    "required": ["name", "entityType"],
}

_RELATION_SCHEMA = {
    "type": "object",
    "properties": {
        "from": {"type": "string", "description": "Source entity name"},
        "to": {"type": "string", "description": "Target entity name"},
        "relationType": {"type": "string", "description": "Verb phrase, e.g. 'depends_on'"},
        "metadata": {
            "type": "object",
            "properties": {
                "strength": {"type": "number", "minimum": 0, "maximum": 1},
                "context": {"type": "string"},
                "evidence": _STRINGS,
            },
        },
    },
    "required": ["from", "to", "relationType"],
}

_FILTERS_SCHEMA = {
    "type": "object",
    "properties": {
        "entity_types": _STRINGS,
        "domains": _STRINGS,
        "tags": _STRINGS,
        "date_range": {
            "type": "object",
            "properties": {
                "start": {"type": "string", "format": "date-time"},
                "end": {"type": "string", "format": "date-time"},
            },
        },
    },
}

_LIMIT = {"type": "integer", "minimum": 1, "maximum": 100, "default": 10}
_THRESHOLD = {"type": "number", "minimum": 0, "maximum": 1}


def _tool(name: str, description: str, properties: dict, required: list[str] | None = None) -> Tool:
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return Tool(name=name, description=description, inputSchema=schema)


TOOLS = [
    _tool(
        "create_entities",
        "Create or replace entities (matched by name) in the knowledge graph.",
        {"entities": {"type": "array", "items": _ENTITY_SCHEMA}},
        ["entities"],
    ),
    _tool(
        "create_relations",
        "Create or replace relations between existing entities. "
        "Fails without writing anything if an endpoint does not exist.",
        {"relations": {"type": "array", "items": _RELATION_SCHEMA}},
        ["relations"],
    ),
    _tool(
        "add_observations",
        "Append observations to existing entities.",
        {
            "observations": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"entityName": {"type": "string"}, "contents": _STRINGS},
                    "required": ["entityName", "contents"],
                },
            }
        },
        ["observations"],
    ),
    _tool(
        "delete_entities",
        "Delete entities and every relation touching them. Unknown names are ignored.",
        {"entityNames": _STRINGS},
        ["entityNames"],
    ),
    _tool(
        "delete_observations",
        "Remove observations (every exact match) from entities.",
        {
            "deletions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"entityName": {"type": "string"}, "observations": _STRINGS},
                    "required": ["entityName", "observations"],
                },
            }
        },
        ["deletions"],
    ),
    _tool(
        "delete_relations",
        "Delete relations matched by (from, to, relationType).",
        {"relations": {"type": "array", "items": _RELATION_SCHEMA}},
        ["relations"],
    ),
    _tool("read_graph", "Read the entire canonical knowledge graph.", {}),
    _tool(
        "search_similar",
        "Semantic search over entities and relations.",
        {"query": {"type": "string"}, "limit": _LIMIT, "score_threshold": _THRESHOLD},
        ["query"],
    ),
    _tool(
        "search_with_filters",
        "Semantic search restricted by entity types, domains, tags and creation date.",
        {
            "query": {"type": "string"},
            "filters": _FILTERS_SCHEMA,
            "limit": _LIMIT,
            "score_threshold": _THRESHOLD,
        },
        ["query"],
    ),
    _tool(
        "search_related",
        "Find entities within N hops of an entity, following relations in both directions.",
        {
            "entityName": {"type": "string"},
            "maxDepth": {"type": "integer", "minimum": 1, "maximum": 5, "default": 2},
            "relationTypes": _STRINGS,
        },
        ["entityName"],
    ),
    _tool(
        "find_relationship_chains",
        "Enumerate outgoing relation chains from an entity (by id or name), "
        "ranked by average relation strength.",
        {
            "start_memory_id": {"type": "string"},
            "max_depth": {"type": "integer", "minimum": 1, "maximum": 10, "default": 3},
        },
        ["start_memory_id"],
    ),
    _tool(
        "analyze_memory_connections",
        "Connection strength, relation types, clusters and degree for one entity.",
        {"memory_id": {"type": "string"}},
        ["memory_id"],
    ),
    _tool(
        "hybrid_search",
        "Semantic search plus the relations of the given types linking the results.",
        {
            "query": {"type": "string"},
            "relationship_paths": _STRINGS,
            "limit": _LIMIT,
            "filters": _FILTERS_SCHEMA,
        },
        ["query"],
    ),
    _tool(
        "shortest_path",
        "Fewest-hop path between two entities, ignoring relation direction.",
        {
            "from": {"type": "string"},
            "to": {"type": "string"},
            "relationTypes": _STRINGS,
            "maxDepth": {"type": "integer", "minimum": 1, "maximum": 10, "default": 5},
        },
        ["from", "to"],
    ),
    _tool(
        "get_relationships_by_type",
        "List indexed relations of one type.",
        {"relationship_type": {"type": "string"}, "limit": _LIMIT},
        ["relationship_type"],
    ),
    _tool(
        "save_memories_with_relationships",
        "Store a batch of entities and the relations between them.",
        {
            "memories": {"type": "array", "items": _ENTITY_SCHEMA},
            "relationships": {"type": "array", "items": _RELATION_SCHEMA},
        },
        ["memories"],
    ),
    _tool(
        "batch_create_relationships",
        "Create relations whose endpoints are given by stable id or name.",
        {
            "relationships": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "source_id": {"type": "string"},
                        "target_id": {"type": "string"},
                        "type": {"type": "string"},
                        "metadata": {"type": "object"},
                    },
                    "required": ["source_id", "target_id", "type"],
                },
            }
        },
        ["relationships"],
    ),
    _tool(
        "store_meta_learning",
        "Store a reusable behavioral lesson with effectiveness tracking.",
        {
            "principle": {"type": "string"},
            "learning_type": {"type": "string", "enum": ["failure", "success", "optimization", "insight"]},
            "trigger_situation": {"type": "string"},
            "observed_behavior": {"type": "string"},
            "recommended_behavior": {"type": "string"},
            "specific_example": {"type": "string"},
            "tags": _STRINGS,
            "domain": {"type": "string"},
            "impact": {"type": "string", "enum": ["low", "medium", "high", "transformative"]},
            "project_context": {"type": "string"},
            "prevention_pattern": {"type": "string"},
            "success_metric": {"type": "string"},
            "is_general": {"type": "boolean", "default": True},
        },
        ["principle", "learning_type"],
    ),
    _tool(
        "track_meta_learning_application",
        "Record that a stored principle was applied and how it went. "
        "A name ending in '...' matches the unique principle with that prefix.",
        {
            "principle_name": {"type": "string"},
            "application_context": {"type": "string"},
            "outcome": {"type": "string", "enum": ["successful", "failed", "partially_successful"]},
            "details": {"type": "string"},
            "lessons_learned": {"type": "string"},
        },
        ["principle_name", "application_context", "outcome"],
    ),
    _tool(
        "get_meta_learnings",
        "Semantic search over stored meta-learning principles.",
        {"query": {"type": "string"}, "limit": _LIMIT, "score_threshold": _THRESHOLD},
        ["query"],
    ),
    _tool(
        "reindex",
        "Rebuild the similarity index from the canonical graph.",
        {},
    ),
]


def _json_default(value):
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return str(value)


def _text(result) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=_json_default))]


async def dispatch(engine: MemoryEngine, name: str, arguments: dict):
    """Run one tool call against the engine and return its JSON-able result."""
    if name == "create_entities":
        return await engine.create_entities(arguments["entities"])

    elif name == "create_relations":
        return await engine.create_relations(arguments["relations"])

    elif name == "add_observations":
        results = []
        for item in arguments["observations"]:
            entity = await engine.add_observations(item["entityName"], item["contents"])
            results.append({"entityName": entity.name, "addedObservations": item["contents"]})
        return results

    elif name == "delete_entities":
        count = await engine.delete_entities(arguments["entityNames"])
        return {"deleted": count}

    elif name == "delete_observations":
        for item in arguments["deletions"]:
            await engine.delete_observations(item["entityName"], item["observations"])
        return {"success": True}

    elif name == "delete_relations":
        count = await engine.delete_relations(arguments["relations"])
        return {"deleted": count}

    elif name == "read_graph":
        return await engine.read_graph()

    elif name == "search_similar":
        return await engine.search_similar(
            arguments["query"],
            limit=arguments.get("limit", 10),
            score_threshold=arguments.get("score_threshold"),
        )

    elif name == "search_with_filters":
        return await engine.search_with_filters(
            arguments["query"],
            filters=arguments.get("filters"),
            limit=arguments.get("limit", 10),
            score_threshold=arguments.get("score_threshold"),
        )

    elif name == "search_related":
        return await engine.search_related(
            arguments["entityName"],
            max_depth=arguments.get("maxDepth", 2),
            relation_types=arguments.get("relationTypes"),
        )

    elif name == "find_relationship_chains":
        return await engine.find_relationship_chains(
            arguments["start_memory_id"], max_depth=arguments.get("max_depth", 3)
        )

    elif name == "analyze_memory_connections":
        return await engine.analyze_memory_connections(arguments["memory_id"])

    elif name == "hybrid_search":
        return await engine.hybrid_search(
            arguments["query"],
            relationship_paths=arguments.get("relationship_paths"),
            limit=arguments.get("limit", 10),
            filters=arguments.get("filters"),
        )

    elif name == "shortest_path":
        result = await engine.shortest_path(
            arguments["from"],
            arguments["to"],
            relation_types=arguments.get("relationTypes"),
            max_depth=arguments.get("maxDepth", 5),
        )
        return result or {"path": None, "message": "No path found"}

    elif name == "get_relationships_by_type":
        return await engine.get_relationships_by_type(
            arguments["relationship_type"], limit=arguments.get("limit", 100)
        )

    elif name == "save_memories_with_relationships":
        return await engine.save_memories_with_relationships(
            arguments["memories"], arguments.get("relationships")
        )

    elif name == "batch_create_relationships":
        return await engine.batch_create_relationships(arguments["relationships"])

    elif name == "store_meta_learning":
        return await engine.store_meta_learning(arguments)

    elif name == "track_meta_learning_application":
        return await engine.track_meta_learning_application(arguments)

    elif name == "get_meta_learnings":
        return await engine.get_meta_learnings(
            arguments["query"],
            limit=arguments.get("limit", 10),
            score_threshold=arguments.get("score_threshold"),
        )

    elif name == "reindex":
        return await engine.reindex()

    raise KeyError(name)


async def handle_tool_call(engine: MemoryEngine, name: str, arguments: dict | None) -> list[TextContent]:
    """Run a tool call and render the result (or a structured error) as text."""
    arguments = arguments or {}
    try:
        return _text(await dispatch(engine, name, arguments))
    except KeyError as e:
        if e.args and e.args[0] == name:
            return _text({"error": "unknown_tool", "message": f"Unknown tool: {name}"})
        logger.warning(f"Tool {name} missing argument: {e}")
        return _text({"error": "validation_error", "message": f"Missing argument: {e}"})
    except MemoryGraphError as e:
        logger.warning(f"Tool {name} failed: {e}")
        return _text(e.to_dict())
    except Exception as e:
        logger.error(f"Tool {name} failed: {e}")
        logger.error(traceback.format_exc())
        return _text({"error": "internal_error", "message": str(e)})


def create_server(engine: MemoryEngine) -> Server:
    """Build an MCP server bound to one engine instance."""
    server = Server("kgmemory")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available MCP tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Handle tool calls."""
        return await handle_tool_call(engine, name, arguments)

    return server


def _configure_logging(settings: Settings) -> None:
    settings.memory_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(settings.memory_dir / "kgmemory.log"),
            logging.StreamHandler(sys.stderr),
        ],
    )


async def _run_server(settings: Settings) -> None:
    """Run the MCP server."""
    engine = create_engine(settings)
    await engine.initialize()
    graph = await engine.read_graph()
    logger.info(f"Loaded {len(graph.entities)} entities, {len(graph.relations)} relations")
    server = create_server(engine)
    try:
        async with stdio_server() as (read, write):
            await server.run(read, write, server.create_initialization_options())
    finally:
        await engine.close()


def main():
    """Entry point for the MCP server."""
    settings = Settings.from_env()
    _configure_logging(settings)
    logger.info(
        f"kgmemory MCP server starting (persistence={settings.persistence_type}, "
        f"embeddings={settings.embedding_provider}/{settings.resolved_embedding_model})"
    )
    try:
        asyncio.run(_run_server(settings))
    except Exception as e:
        logger.error(f"Server crashed: {e}")
        logger.error(traceback.format_exc())
        raise


if __name__ == "__main__":
    main()
