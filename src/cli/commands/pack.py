"""Pack CLI commands: create, inspect, edit and maintain `.cqmpack` files."""

import json

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cli.utils import get_config, get_resolver, handle_errors, pack_locator, parse_tags, project_option
from memory import NodeCategory, PackStore, delete_pack
from memory.errors import NotFoundError

console = Console()


def _node_table(nodes, title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Category", width=12)
    table.add_column("Summary")
    table.add_column("Imp", width=5)
    table.add_column("Depth", width=5)
    for n in nodes:
        table.add_row(
            n.id,
            n.category.value,
            (n.summary or n.content)[:80],
            f"{n.importance:.2f}",
            "" if n.depth is None else str(n.depth),
        )
    return table


@click.group()
def pack():
    """Memory packs: portable SQLite knowledge graphs."""
    pass


@pack.command("create")
@click.argument("ref")
@click.option("--name", help="Display name (defaults to file name)")
@click.option("--description", "-d", help="Pack description")
@project_option
@click.pass_context
@handle_errors
def pack_create(ctx, ref: str, name: str | None, description: str | None, project: str):
    """Create an empty pack at DIR/NAME."""
    locator = pack_locator(ref, project)
    with PackStore.create(locator, get_resolver(ctx), name=name, description=description):
        pass
    console.print(f"[green]Created:[/] {locator}")


@pack.command("info")
@click.argument("ref")
@project_option
@click.pass_context
@handle_errors
def pack_info(ctx, ref: str, project: str):
    """Show pack metadata and counts."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        meta = store.get_all_metadata()
        stats = store.get_stats()
        active_jobs = store.get_active_jobs()

    lines = [
        f"[bold]{meta.get('name', locator.name)}[/]",
        meta.get("description") or "[dim]No description[/]",
        "",
        f"Nodes: {stats['total_nodes']}",
        f"Edges: {stats['total_edges']} ({stats['total_relationships']} semantic)",
        f"Tags: {stats['total_tags']}",
        f"Active jobs: {len(active_jobs)}",
        f"Created: {meta.get('created_at', '?')}",
        f"Updated: {meta.get('updated_at', '?')}",
    ]
    for category, count in sorted(stats["category_counts"].items()):
        lines.append(f"  {category}: {count}")
    extra = {k: v for k, v in meta.items() if k not in {"name", "description", "created_at", "updated_at"}}
    for key, value in sorted(extra.items()):
        lines.append(f"[dim]{key}[/] = {value}")
    console.print(Panel("\n".join(lines), title=str(locator)))


@pack.command("list")
@click.argument("directory", required=False, default="")
@project_option
@click.pass_context
@handle_errors
def pack_list(ctx, directory: str, project: str):
    """List packs below DIRECTORY (default: project root)."""
    from library import LibraryService

    packs = LibraryService(get_resolver(ctx)).find_packs_in_directory(project, directory)
    if not packs:
        console.print("[yellow]No packs found.[/]")
        return

    table = Table(title=f"Packs in {project}:{directory or '/'}")
    table.add_column("Path")
    table.add_column("Title")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")
    for p in packs:
        table.add_row(p["relative_path"], p["title"] or "", str(p["nodes"]), str(p["relationships"]))
    console.print(table)


@pack.command("store")
@click.argument("ref")
@click.argument("content", required=False)
@click.option(
    "--category",
    "-c",
    default=NodeCategory.KNOWLEDGE.value,
    type=click.Choice([c.value for c in NodeCategory]),
    help="Node category",
)
@click.option("--importance", "-i", default=0.5, type=float, help="0.0-1.0, clamped")
@click.option("--summary", help="Short summary (tables fall back to the content)")
@click.option("--tags", help="Comma-separated tags")
@project_option
@click.pass_context
@handle_errors
def pack_store(
    ctx, ref: str, content: str | None, category: str, importance: float, summary, tags, project: str
):
    """Store one memory node. Opens editor if no content provided."""
    if not content:
        content = click.edit("")
        if not content:
            console.print("[yellow]No content provided, cancelled.[/]")
            return
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        node = store.store_node(
            content,
            category=category,
            importance=importance,
            summary=summary,
            source_type="manual",
            tags=parse_tags(tags),
        )
    console.print(f"[green]Stored:[/] {node.id}")


@pack.command("show")
@click.argument("ref")
@click.argument("node_id")
@project_option
@click.pass_context
@handle_errors
def pack_show(ctx, ref: str, node_id: str, project: str):
    """Show a node with its tags and relationships."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        node = store.find_node_by_id(node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}")
        relationships = store.get_relationships(node_id)

    console.print(f"ID: {node.id}")
    console.print(f"Category: {node.category.value}")
    console.print(f"Importance: {node.importance:.2f}  Confidence: {node.confidence:.2f}")
    console.print(f"Summary: {node.summary}")
    console.print(f"Tags: {', '.join(node.tags) or '-'}")
    console.print(f"Source: {node.source_type or '-'} {node.source_ref or ''} {node.source_range or ''}")
    console.print(f"Created: {node.created_at}  Updated: {node.updated_at}")
    if not node.is_active:
        console.print(f"[yellow]Inactive[/] (superseded by: {node.superseded_by or 'none'})")
    console.print()
    console.print(node.content)

    if relationships:
        table = Table(title="Relationships")
        table.add_column("Type")
        table.add_column("Source", style="dim")
        table.add_column("Target", style="dim")
        table.add_column("Strength", width=8)
        for r in relationships:
            table.add_row(r.type.value, r.source_id, r.target_id, f"{r.strength:.2f}")
        console.print(table)


@pack.command("search")
@click.argument("ref")
@click.argument("query")
@click.option("--limit", "-n", default=20, help="Max results")
@click.option("--recall", is_flag=True, help="Record access on returned nodes")
@project_option
@click.pass_context
@handle_errors
def pack_search(ctx, ref: str, query: str, limit: int, recall: bool, project: str):
    """Full-text search over node content and summaries."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        nodes = store.recall(query, limit=limit) if recall else store.search(query, limit=limit)

    if not nodes:
        console.print("No matching nodes.")
        return
    console.print(_node_table(nodes, f"Results for '{query}'"))


@pack.command("forget")
@click.argument("ref")
@click.argument("node_id")
@click.option("--reason", help="Recorded in the consolidation log")
@project_option
@click.pass_context
@handle_errors
def pack_forget(ctx, ref: str, node_id: str, reason: str | None, project: str):
    """Soft-delete a node (it leaves the active graph)."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        if not store.forget_node(node_id, reason=reason or "manual_cli"):
            raise NotFoundError(f"Node not found: {node_id}")
    console.print(f"Forgot node {node_id}")


@pack.command("delete-node")
@click.argument("ref")
@click.argument("node_id")
@click.confirmation_option(prompt="Delete this node and everything below it?")
@project_option
@click.pass_context
@handle_errors
def pack_delete_node(ctx, ref: str, node_id: str, project: str):
    """Hard-delete a node and all of its PART_OF descendants."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        deleted = store.delete_node_with_children(node_id)
    if not deleted:
        raise NotFoundError(f"Node not found: {node_id}")
    console.print(f"Deleted {len(deleted)} node(s)")


@pack.command("graph")
@click.argument("ref")
@click.option("--since", help="Only changes after this timestamp (delta mode)")
@click.option("--delta", "as_delta", is_flag=True, help="Delta from the beginning of time")
@project_option
@click.pass_context
@handle_errors
def pack_graph(ctx, ref: str, since: str | None, as_delta: bool, project: str):
    """Print the active graph (or a delta) as JSON."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        if since or as_delta:
            data = store.get_graph_delta(since)
        else:
            data = store.get_graph_data()
    click.echo(json.dumps(data, indent=2))


@pack.command("meta")
@click.argument("ref")
@click.argument("key")
@click.argument("value", required=False)
@project_option
@click.pass_context
@handle_errors
def pack_meta(ctx, ref: str, key: str, value: str | None, project: str):
    """Read a metadata field, or set it when VALUE is given."""
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        if value is None:
            current = store.get_metadata(key)
            if current is None:
                raise NotFoundError(f"Metadata key not set: {key}")
            console.print(current)
            return
        store.set_metadata_field(key, value)
    console.print(f"[green]Set[/] {key}")


@pack.command("decay")
@click.argument("ref")
@click.option("--rate", type=float, help="Importance multiplier")
@click.option("--min-days", type=int, help="Only nodes untouched this long")
@project_option
@click.pass_context
@handle_errors
def pack_decay(ctx, ref: str, rate: float | None, min_days: int | None, project: str):
    """Decay the importance of stale nodes."""
    defaults = get_config(ctx).consolidation
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        count = store.decay_importance(
            rate=defaults.decay_rate if rate is None else rate,
            min_days=defaults.decay_min_days if min_days is None else min_days,
        )
    console.print(f"Decayed {count} node(s)")


@pack.command("prune")
@click.argument("ref")
@click.option("--threshold", type=float, help="Importance below which nodes are pruned")
@click.option("--min-age-days", type=int, help="Only nodes older than this")
@project_option
@click.pass_context
@handle_errors
def pack_prune(ctx, ref: str, threshold: float | None, min_age_days: int | None, project: str):
    """Soft-delete old, unimportant, unaccessed nodes."""
    defaults = get_config(ctx).consolidation
    locator = pack_locator(ref, project)
    with PackStore.open(locator, get_resolver(ctx)) as store:
        pruned = store.prune(
            importance_threshold=defaults.prune_threshold if threshold is None else threshold,
            min_age_days=defaults.prune_min_age_days if min_age_days is None else min_age_days,
        )
    console.print(f"Pruned {len(pruned)} node(s)")


@pack.command("delete")
@click.argument("ref")
@click.confirmation_option(prompt="Delete this pack file? This cannot be undone.")
@project_option
@click.pass_context
@handle_errors
def pack_delete(ctx, ref: str, project: str):
    """Delete a pack file and drop it from every library in the project."""
    from library import LibraryService

    resolver = get_resolver(ctx)
    locator = pack_locator(ref, project)
    delete_pack(locator, resolver)
    updated = LibraryService(resolver).forget_pack(locator)
    console.print(f"Deleted {locator}")
    if updated:
        console.print(f"Removed from {updated} library(ies)")
