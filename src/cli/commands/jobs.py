"""Job CLI commands: queue pack jobs and drive them step by step."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from cli.utils import (
    get_config,
    get_pipeline,
    get_resolver,
    handle_errors,
    pack_locator,
    parse_tags,
    project_option,
)
from memory import PackStore

console = Console()


def _jobs_table(jobs, title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created")
    table.add_column("Error")
    status_styles = {"completed": "green", "failed": "red", "cancelled": "yellow"}
    for j in jobs:
        style = status_styles.get(j.status.value, "cyan")
        table.add_row(
            j.id,
            j.type.value,
            f"[{style}]{j.status.value}[/]",
            f"{j.progress}/{j.total_steps}",
            j.created_at,
            (j.error or "")[:60],
        )
    return table


def _print_report(report):
    job = report.job
    delta = report.delta
    changes = ""
    if delta is not None and not delta.is_empty:
        changes = (
            f" +{len(delta.nodes)} nodes, +{len(delta.edges)} edges,"
            f" -{len(delta.removed_node_ids)} removed"
        )
    console.print(
        f"[dim]{job.id}[/] {job.type.value} {job.status.value} "
        f"{job.progress}/{job.total_steps}{changes}"
    )


@click.group()
def jobs():
    """Queue and process pack jobs (extraction, analysis, consolidation, merge)."""
    pass


@jobs.command("extract")
@click.argument("ref")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", help="Document title (defaults to file name)")
@click.option("--max-depth", type=int, help="Maximum section nesting depth")
@click.option("--tags", help="Comma-separated document tags")
@click.option("--run", "run_now", is_flag=True, help="Process the queue right away")
@project_option
@click.pass_context
@handle_errors
def jobs_extract(ctx, ref: str, source: Path, title, max_depth, tags, run_now: bool, project: str):
    """Queue recursive extraction of SOURCE into the pack."""
    locator = pack_locator(ref, project)
    pipeline = get_pipeline(ctx)
    job = pipeline.start_extraction(
        locator,
        source.read_text(encoding="utf-8"),
        title or source.stem,
        max_depth=max_depth,
        document_tags=parse_tags(tags),
        source_ref=str(source),
    )
    console.print(f"[green]Queued:[/] {job.id} ({job.type.value})")
    if run_now:
        _run(pipeline, locator, max_steps=1000)


@jobs.command("analyze")
@click.argument("ref")
@click.option("--node", "node_ids", multiple=True, help="Node id to analyze (repeatable)")
@project_option
@click.pass_context
@handle_errors
def jobs_analyze(ctx, ref: str, node_ids: tuple, project: str):
    """Queue relationship analysis (default: every active node)."""
    job = get_pipeline(ctx).start_relationship_analysis(
        pack_locator(ref, project), list(node_ids) or None
    )
    console.print(f"[green]Queued:[/] {job.id} ({job.total_steps} nodes)")


@jobs.command("consolidate")
@click.argument("ref")
@project_option
@click.pass_context
@handle_errors
def jobs_consolidate(ctx, ref: str, project: str):
    """Queue a decay-then-prune consolidation using configured thresholds."""
    settings = get_config(ctx).consolidation
    job = get_pipeline(ctx).start_consolidation(
        pack_locator(ref, project),
        decay_rate=settings.decay_rate,
        decay_min_days=settings.decay_min_days,
        prune_threshold=settings.prune_threshold,
        prune_min_age_days=settings.prune_min_age_days,
    )
    console.print(f"[green]Queued:[/] {job.id} ({job.type.value})")


@jobs.command("merge")
@click.argument("ref")
@click.argument("source_ref")
@project_option
@click.pass_context
@handle_errors
def jobs_merge(ctx, ref: str, source_ref: str, project: str):
    """Queue a copy of SOURCE_REF's active graph into REF."""
    job = get_pipeline(ctx).start_merge(pack_locator(ref, project), pack_locator(source_ref, project))
    console.print(f"[green]Queued:[/] {job.id} ({job.type.value})")


@jobs.command("list")
@click.argument("ref")
@click.option("--limit", "-n", default=10, help="Recently finished jobs to show")
@project_option
@click.pass_context
@handle_errors
def jobs_list(ctx, ref: str, limit: int, project: str):
    """Show active and recently finished jobs."""
    with PackStore.open(pack_locator(ref, project), get_resolver(ctx)) as store:
        active = store.get_active_jobs()
        finished = store.get_recently_completed_jobs(limit=limit)

    if not active and not finished:
        console.print("No jobs.")
        return
    if active:
        console.print(_jobs_table(active, "Active jobs"))
    if finished:
        console.print(_jobs_table(finished, "Finished jobs"))


@jobs.command("step")
@click.argument("ref")
@click.option("--json", "as_json", is_flag=True, help="Print the step report as JSON")
@project_option
@click.pass_context
@handle_errors
def jobs_step(ctx, ref: str, as_json: bool, project: str):
    """Advance the oldest pending job by one step."""
    report = get_pipeline(ctx).step_next(pack_locator(ref, project))
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return
    if report.job is None:
        console.print("No jobs to process.")
        return
    _print_report(report)


def _run(pipeline, locator, max_steps: int):
    reports = pipeline.run(locator, max_steps=max_steps, on_step=_print_report)
    if not reports:
        console.print("No jobs to process.")
        return
    console.print(f"Processed {len(reports)} step(s)")


@jobs.command("run")
@click.argument("ref")
@click.option("--max-steps", default=1000, help="Stop after this many steps")
@project_option
@click.pass_context
@handle_errors
def jobs_run(ctx, ref: str, max_steps: int, project: str):
    """Process jobs until the queue is empty."""
    _run(get_pipeline(ctx), pack_locator(ref, project), max_steps)


@jobs.command("cancel")
@click.argument("ref")
@click.argument("job_id")
@project_option
@click.pass_context
@handle_errors
def jobs_cancel(ctx, ref: str, job_id: str, project: str):
    """Cancel a pending or processing job."""
    with PackStore.open(pack_locator(ref, project), get_resolver(ctx)) as store:
        job = store.cancel_job(job_id)
    console.print(f"Cancelled {job.id}")
