"""CLI command modules."""

from .jobs import jobs
from .library import library
from .pack import pack

__all__ = [
    "pack",
    "jobs",
    "library",
]
