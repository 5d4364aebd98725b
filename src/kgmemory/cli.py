"""CLI for inspecting and maintaining a kgmemory store.

Structural commands read the record store only, so they work without the
similarity index or an embedding model. ``search`` and ``reindex`` build
the full engine.
"""

import asyncio
import json
from collections import Counter
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import Settings
from .constants import (
    DEFAULT_CHAIN_DEPTH,
    DEFAULT_RELATED_DEPTH,
    DEFAULT_SEARCH_LIMIT,
    MAX_CHAIN_DEPTH,
    MAX_RELATED_DEPTH,
    MIN_CHAIN_DEPTH,
    MIN_RELATED_DEPTH,
)
from .engine import create_engine
from .errors import MemoryGraphError
from .models import Entity
from .state import GraphSnapshot
from .store import create_record_store
from .traversal import analyze_memory_connections, find_relationship_chains, search_related

console = Console()


def _settings(ctx) -> Settings:
    settings = Settings.from_env()
    if ctx.obj.get("memory_dir") is not None:
        settings.memory_dir = ctx.obj["memory_dir"]
    return settings


async def _load_snapshot(settings: Settings) -> GraphSnapshot:
    store = create_record_store(settings)
    await store.initialize()
    try:
        return GraphSnapshot(await store.get_graph())
    finally:
        await store.close()


def _snapshot(ctx) -> GraphSnapshot:
    return asyncio.run(_load_snapshot(_settings(ctx)))


def _print_json(value) -> None:
    console.print_json(json.dumps(value, default=lambda v: v.to_dict() if hasattr(v, "to_dict") else str(v)))


@click.group()
@click.option(
    "--memory-path",
    envvar="MEMORY_PATH",
    type=click.Path(path_type=Path),
    help="Path to memory directory",
)
@click.pass_context
def cli(ctx, memory_path):
    """kgmemory - knowledge graph memory with semantic search."""
    ctx.ensure_object(dict)
    ctx.obj["memory_dir"] = memory_path


@cli.command()
@click.pass_context
def status(ctx):
    """Show entity and relation counts."""
    try:
        settings = _settings(ctx)
        snapshot = asyncio.run(_load_snapshot(settings))
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    console.print(f"Backend: [cyan]{settings.persistence_type}[/cyan]")
    console.print(
        f"Graph state: [bold]{len(snapshot.entities)}[/bold] entities, "
        f"[bold]{len(snapshot.relations)}[/bold] relations"
    )

    types = Counter(t for e in snapshot.entities for t in e.types)
    if types:
        table = Table(title="Entity types")
        table.add_column("Type", style="cyan")
        table.add_column("Count", justify="right")
        for entity_type, count in types.most_common():
            table.add_row(entity_type, str(count))
        console.print(table)


@cli.command()
@click.argument("name")
@click.option(
    "-d",
    "--depth",
    default=DEFAULT_RELATED_DEPTH,
    type=click.IntRange(MIN_RELATED_DEPTH, MAX_RELATED_DEPTH),
    show_default=True,
    help="Max hops",
)
@click.option("-t", "--type", "relation_types", multiple=True, help="Only follow this relation type")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def related(ctx, name, depth, relation_types, as_json):
    """Show entities within DEPTH hops of NAME."""
    try:
        result = search_related(_snapshot(ctx), name, depth, list(relation_types) or None)
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    if as_json:
        _print_json(result)
        return

    console.print(f"[bold]{len(result['entities'])}[/bold] entities around [cyan]{name}[/cyan]")
    for item in result["paths"]:
        console.print(f"  [dim]{item['depth']}[/dim] {' -> '.join(item['path'])}")
    for rel in result["relationships"]:
        console.print(f"  {rel.from_} [yellow]{rel.relation_type}[/yellow] {rel.to}")


@cli.command()
@click.argument("start")
@click.option(
    "-d",
    "--depth",
    default=DEFAULT_CHAIN_DEPTH,
    type=click.IntRange(MIN_CHAIN_DEPTH, MAX_CHAIN_DEPTH),
    show_default=True,
    help="Max chain length",
)
@click.option("-n", "--limit", default=20, show_default=True, help="Chains to show")
@click.pass_context
def chains(ctx, start, depth, limit):
    """Show outgoing relation chains from START (id or name)."""
    try:
        found = find_relationship_chains(_snapshot(ctx), start, depth)
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    if not found:
        console.print(f"[yellow]![/yellow] No outgoing relations from {start}")
        return

    table = Table(title=f"Chains from {start}")
    table.add_column("Strength", justify="right", style="green")
    table.add_column("Type", style="yellow")
    table.add_column("Chain")
    for item in found[:limit]:
        table.add_row(f"{item['total_strength']:.2f}", item["chain_type"], " -> ".join(item["chain"]))
    console.print(table)


@cli.command()
@click.argument("memory_id")
@click.pass_context
def analyze(ctx, memory_id):
    """Show connection statistics for one entity."""
    try:
        result = analyze_memory_connections(_snapshot(ctx), memory_id)
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    degree = result["degree"]
    console.print(f"[bold]{result['entity']}[/bold]")
    console.print(f"  Degree: {degree['total']} (in {degree['in']}, out {degree['out']})")
    console.print(f"  Connection strength: {result['connection_strength']:.2f}")
    console.print(f"  Clustering coefficient: {result['clustering_coefficient']:.2f}")
    for cluster in result["related_clusters"]:
        console.print(
            f"  [yellow]{cluster['cluster_id']}[/yellow] ({cluster['strength']:.2f}): "
            f"{', '.join(cluster['entities'])}"
        )


async def _search(settings: Settings, query: str, limit: int):
    engine = create_engine(settings)
    await engine.initialize()
    try:
        return await engine.search_similar(query, limit=limit)
    finally:
        await engine.close()


@cli.command()
@click.argument("query")
@click.option("-n", "--limit", default=DEFAULT_SEARCH_LIMIT, show_default=True, help="Max results")
@click.pass_context
def search(ctx, query, limit):
    """Semantic search over the similarity index."""
    try:
        results = asyncio.run(_search(_settings(ctx), query, limit))
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    if not results:
        console.print("[dim]No matches[/dim]")
        return
    for record in results:
        if isinstance(record, Entity):
            console.print(f"[cyan]{record.name}[/cyan] ({', '.join(record.types)})")
            for obs in record.observations[:3]:
                console.print(f"  [dim]{obs}[/dim]")
        else:
            console.print(f"{record.from_} [yellow]{record.relation_type}[/yellow] {record.to}")


async def _reindex(settings: Settings) -> dict:
    engine = create_engine(settings)
    await engine.initialize()
    try:
        return await engine.reindex()
    finally:
        await engine.close()


@cli.command()
@click.pass_context
def reindex(ctx):
    """Rebuild the similarity index from the record store."""
    try:
        counts = asyncio.run(_reindex(_settings(ctx)))
    except MemoryGraphError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    console.print(
        f"[green]✓[/green] Reindexed {counts['entities']} entities, {counts['relations']} relations"
    )


if __name__ == "__main__":
    cli()
