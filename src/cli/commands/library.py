"""Library CLI commands: `.cqmlib` manifests that group packs."""

import json

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cli.utils import get_resolver, handle_errors, library_locator, pack_locator, parse_tags, project_option
from library import LibraryService

console = Console()


def _service(ctx) -> LibraryService:
    return LibraryService(get_resolver(ctx))


def _print_library(locator, library):
    stats = library.metadata
    header = [
        f"[bold]{library.name}[/]",
        library.description or "[dim]No description[/]",
        "",
        f"Packs: {len(library.packs)}",
        f"Nodes: {stats.total_nodes}  Relationships: {stats.total_relationships}",
        f"Last sync: {stats.last_sync or 'never'}",
    ]
    console.print(Panel("\n".join(header), title=str(locator)))

    if not library.packs:
        return
    table = Table(title="Packs")
    table.add_column("Path")
    table.add_column("Title")
    table.add_column("Enabled")
    table.add_column("Priority", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")
    for p in sorted(library.packs, key=lambda p: p.priority, reverse=True):
        table.add_row(
            p.relative_path,
            p.title or "",
            "[green]yes[/]" if p.enabled else "[dim]no[/]",
            str(p.priority),
            str(p.nodes),
            str(p.relationships),
        )
    console.print(table)


@click.group()
def library():
    """Libraries: named groups of packs viewed as one graph."""
    pass


@library.command("create")
@click.argument("ref")
@click.option("--name", help="Display name (defaults to file name)")
@click.option("--description", "-d", help="Library description")
@project_option
@click.pass_context
@handle_errors
def library_create(ctx, ref: str, name, description, project: str):
    """Create an empty library manifest at DIR/NAME."""
    locator = library_locator(ref, project)
    _service(ctx).create_library(locator, name=name, description=description)
    console.print(f"[green]Created:[/] {locator}")


@library.command("show")
@click.argument("ref")
@project_option
@click.pass_context
@handle_errors
def library_show(ctx, ref: str, project: str):
    """Sync pack stats and show the library."""
    locator = library_locator(ref, project)
    _print_library(locator, _service(ctx).open_library(locator))


@library.command("add")
@click.argument("ref")
@click.argument("pack_ref")
@click.option("--priority", default=0, help="Higher priority packs come first")
@click.option("--tags", help="Comma-separated tags")
@project_option
@click.pass_context
@handle_errors
def library_add(ctx, ref: str, pack_ref: str, priority: int, tags, project: str):
    """Reference PACK_REF from the library."""
    library_obj = _service(ctx).add_pack_to_library(
        library_locator(ref, project),
        pack_locator(pack_ref, project),
        priority=priority,
        tags=parse_tags(tags),
    )
    console.print(f"[green]Added:[/] {pack_ref} ({len(library_obj.packs)} pack(s) total)")


@library.command("remove")
@click.argument("ref")
@click.argument("pack_ref")
@project_option
@click.pass_context
@handle_errors
def library_remove(ctx, ref: str, pack_ref: str, project: str):
    """Drop the reference to PACK_REF (the pack file is kept)."""
    library_obj = _service(ctx).remove_pack_from_library(
        library_locator(ref, project), pack_locator(pack_ref, project)
    )
    console.print(f"Removed: {pack_ref} ({len(library_obj.packs)} pack(s) left)")


@library.command("enable")
@click.argument("ref")
@click.argument("pack_ref")
@project_option
@click.pass_context
@handle_errors
def library_enable(ctx, ref: str, pack_ref: str, project: str):
    """Include PACK_REF in stats and combined graphs."""
    _service(ctx).set_pack_enabled(library_locator(ref, project), pack_locator(pack_ref, project), True)
    console.print(f"Enabled: {pack_ref}")


@library.command("disable")
@click.argument("ref")
@click.argument("pack_ref")
@project_option
@click.pass_context
@handle_errors
def library_disable(ctx, ref: str, pack_ref: str, project: str):
    """Keep PACK_REF listed but exclude it from stats and graphs."""
    _service(ctx).set_pack_enabled(library_locator(ref, project), pack_locator(pack_ref, project), False)
    console.print(f"Disabled: {pack_ref}")


@library.command("graph")
@click.argument("ref")
@project_option
@click.pass_context
@handle_errors
def library_graph(ctx, ref: str, project: str):
    """Print the combined graph of all enabled packs as JSON."""
    data = _service(ctx).get_library_graph_data(library_locator(ref, project))
    click.echo(json.dumps(data, indent=2))


@library.command("list")
@click.argument("directory", required=False, default="")
@project_option
@click.pass_context
@handle_errors
def library_list(ctx, directory: str, project: str):
    """List libraries below DIRECTORY (default: project root)."""
    libraries = _service(ctx).find_libraries_in_directory(project, directory)
    if not libraries:
        console.print("[yellow]No libraries found.[/]")
        return

    table = Table(title=f"Libraries in {project}:{directory or '/'}")
    table.add_column("Path")
    table.add_column("Name")
    table.add_column("Packs", justify="right")
    table.add_column("Nodes", justify="right")
    for lib in libraries:
        path = f"{lib['path']}/{lib['name']}" if lib["path"] else lib["name"]
        table.add_row(path, lib["title"], str(lib["pack_count"]), str(lib["total_nodes"]))
    console.print(table)


@library.command("delete")
@click.argument("ref")
@click.confirmation_option(prompt="Delete this library manifest? Packs are kept.")
@project_option
@click.pass_context
@handle_errors
def library_delete(ctx, ref: str, project: str):
    """Delete the manifest; referenced packs stay on disk."""
    locator = library_locator(ref, project)
    _service(ctx).delete_library(locator)
    console.print(f"Deleted {locator}")
