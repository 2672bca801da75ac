"""mpack: command line interface for memory packs and libraries."""

import sys
from pathlib import Path

import click
from rich.console import Console

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.commands import jobs, library, pack
from cli.config import load_config_model
from cli.logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(version="0.3.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Config file (default: ./mpack.yaml, then ~/.mpack/config.yaml)",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Override paths.data_dir",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.pass_context
def cli(ctx, config_path: Path | None, data_dir: Path | None, verbose: bool, json_logs: bool):
    """Portable memory graphs: packs, jobs and libraries."""
    try:
        config = load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)
    if data_dir is not None:
        config.paths.data_dir = data_dir.expanduser()

    level = "DEBUG" if verbose else config.logging.level
    setup_logging(
        json_mode=json_logs or config.logging.json_mode,
        level=level,
        log_file=config.paths.log_file,
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


cli.add_command(pack)
cli.add_command(jobs)
cli.add_command(library)


if __name__ == "__main__":
    cli()
