"""Libraries — JSON manifests that aggregate several memory packs."""

from .models import Library, LibraryStats, PackEntry
from .service import LibraryService

__all__ = ["Library", "LibraryStats", "PackEntry", "LibraryService"]
