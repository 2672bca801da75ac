"""Shared CLI utilities."""

import sys
from functools import wraps

import click
import structlog
from rich.console import Console

from memory.errors import PackError
from memory.locator import LIBRARY_EXTENSION, PACK_EXTENSION, Locator

console = Console()
logger = structlog.get_logger()


def get_config(ctx: click.Context):
    """EngineConfig loaded by the root group."""
    return ctx.find_root().obj["config"]


def get_resolver(ctx: click.Context):
    from cli.config import get_resolver as resolver_for

    return resolver_for(get_config(ctx))


def get_pipeline(ctx: click.Context):
    """Pipeline built from config; a capability injected into ``ctx.obj`` wins."""
    from cli.config import build_pipeline

    obj = ctx.find_root().obj
    return build_pipeline(obj["config"], capability=obj.get("capability"))


def pack_locator(ref: str, project: str) -> Locator:
    return Locator.parse(ref, project_id=project, extension=PACK_EXTENSION)


def library_locator(ref: str, project: str) -> Locator:
    return Locator.parse(ref, project_id=project, extension=LIBRARY_EXTENSION)


def parse_tags(tags: str | None) -> list[str]:
    return [t.strip() for t in tags.split(",") if t.strip()] if tags else []


def handle_errors(func):
    """Render engine errors as a red message and exit 1."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PackError as e:
            logger.debug("cli.command_failed", error=str(e), error_type=type(e).__name__)
            console.print(f"[red]{type(e).__name__}:[/] {e}")
            sys.exit(1)

    return wrapper


project_option = click.option(
    "--project", "-p", default="default", show_default=True, help="Project id under the data dir"
)
