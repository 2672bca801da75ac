"""Library aggregation over many packs: manifest I/O, stats sync, combined graphs."""

import hashlib
import os
import tempfile
from pathlib import Path

import structlog
from pydantic import ValidationError as ModelValidationError

from memory.errors import AlreadyExistsError, NotFoundError, PackError, StorageError
from memory.locator import LIBRARY_EXTENSION, PACK_EXTENSION, FileResolver, Locator
from memory.store import PackStore

from .models import Library, PackEntry

logger = structlog.get_logger()


def pack_id_for(entry: PackEntry) -> str:
    """Stable per-library id for a pack: md5 of its project-relative path."""
    return hashlib.md5(entry.relative_path.encode("utf-8")).hexdigest()


class LibraryService:
    """Reads and writes ``.cqmlib`` manifests and keeps their cached stats fresh."""

    def __init__(self, resolver: FileResolver):
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Manifest I/O
    # ------------------------------------------------------------------

    def create_library(self, locator: Locator, name: str | None = None, description: str | None = None) -> Library:
        path = self.resolver.resolve(locator)
        if path.exists():
            raise AlreadyExistsError(f"Library already exists: {locator}")
        library = Library(name=name or Path(locator.name).stem, description=description or "")
        library.recompute_stats()
        self.save_library(locator, library)
        logger.info("library.created", locator=str(locator))
        return library

    def load_library(self, locator: Locator) -> Library:
        path = self.resolver.resolve(locator)
        if not path.is_file():
            raise NotFoundError(f"Library not found: {locator}")
        try:
            return Library.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ModelValidationError) as e:
            raise StorageError(f"Invalid library file: {e}", operation="load_library", locator=locator) from e

    def save_library(self, locator: Locator, library: Library) -> Path:
        """Write the manifest atomically (temp file + rename)."""
        path = self.resolver.resolve(locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = library.model_dump_json(indent=2)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
            ) as f:
                tmp_path = Path(f.name)
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            raise StorageError(str(e), operation="save_library", locator=locator) from e
        return path

    def delete_library(self, locator: Locator):
        path = self.resolver.resolve(locator)
        if not path.is_file():
            raise NotFoundError(f"Library not found: {locator}")
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(str(e), operation="delete_library", locator=locator) from e
        logger.info("library.deleted", locator=str(locator))

    def open_library(self, locator: Locator) -> Library:
        """Load for viewing; always syncs so stale manifests self-heal."""
        return self.sync_pack_stats(locator)

    # ------------------------------------------------------------------
    # Pack references
    # ------------------------------------------------------------------

    def _pack_locator(self, library_locator: Locator, entry: PackEntry) -> Locator:
        return Locator(library_locator.project_id, entry.path, entry.name)

    def add_pack_to_library(
        self,
        library_locator: Locator,
        pack_locator: Locator,
        priority: int = 0,
        tags=(),
    ) -> Library:
        """Reference a pack. Raises AlreadyExistsError if it is already listed."""
        library = self.load_library(library_locator)
        if library.find_pack(pack_locator.path, pack_locator.name):
            raise AlreadyExistsError(f"Pack already in library: {pack_locator.relative_path}")
        if pack_locator.project_id != library_locator.project_id:
            pack_locator = Locator(library_locator.project_id, pack_locator.path, pack_locator.name)

        entry = PackEntry(
            path=pack_locator.path,
            name=pack_locator.name,
            priority=priority,
            tags=[t.strip().lower() for t in tags if t and t.strip()],
        )
        with PackStore.open(pack_locator, self.resolver) as pack:
            self._refresh_entry(entry, pack)
        library.packs.append(entry)
        library.recompute_stats()
        self.save_library(library_locator, library)
        logger.info("library.pack_added", library=str(library_locator), pack=entry.relative_path)
        return library

    def remove_pack_from_library(self, library_locator: Locator, pack_locator: Locator) -> Library:
        """Drop a pack reference. Absent references are a no-op."""
        library = self.load_library(library_locator)
        before = len(library.packs)
        library.packs = [
            p for p in library.packs if not p.matches(pack_locator.path, pack_locator.name)
        ]
        if len(library.packs) != before:
            library.recompute_stats()
            self.save_library(library_locator, library)
            logger.info(
                "library.pack_removed", library=str(library_locator), pack=pack_locator.relative_path
            )
        return library

    def set_pack_enabled(self, library_locator: Locator, pack_locator: Locator, enabled: bool) -> Library:
        library = self.load_library(library_locator)
        entry = library.find_pack(pack_locator.path, pack_locator.name)
        if entry is None:
            raise NotFoundError(f"Pack not in library: {pack_locator.relative_path}")
        entry.enabled = enabled
        library.recompute_stats()
        self.save_library(library_locator, library)
        return library

    @staticmethod
    def _refresh_entry(entry: PackEntry, pack: PackStore):
        stats = pack.get_stats()
        meta = pack.get_all_metadata()
        entry.title = meta.get("name") or entry.title
        entry.description = meta.get("description") or entry.description
        entry.nodes = stats["total_nodes"]
        entry.relationships = stats["total_edges"]
        entry.category_counts = dict(stats["category_counts"])

    def sync_pack_stats(self, library_locator: Locator) -> Library:
        """Refresh per-pack stats, silently dropping packs gone from disk."""
        library = self.load_library(library_locator)
        kept = []
        for entry in library.packs:
            pack_locator = self._pack_locator(library_locator, entry)
            try:
                with PackStore.open(pack_locator, self.resolver) as pack:
                    self._refresh_entry(entry, pack)
            except NotFoundError:
                logger.warning(
                    "library.pack_missing", library=str(library_locator), pack=entry.relative_path
                )
                continue
            except PackError as e:
                # Unreadable but present: keep the reference with its last known stats.
                logger.warning(
                    "library.pack_unreadable",
                    library=str(library_locator),
                    pack=entry.relative_path,
                    error=str(e),
                )
            kept.append(entry)
        library.packs = kept
        library.recompute_stats()
        self.save_library(library_locator, library)
        return library

    # ------------------------------------------------------------------
    # Combined graph
    # ------------------------------------------------------------------

    def get_library_graph_data(self, library_locator: Locator) -> dict:
        """Union of all enabled packs' graphs, each item tagged with its pack."""
        library = self.load_library(library_locator)
        nodes: list[dict] = []
        edges: list[dict] = []
        packs: list[dict] = []

        ordered = sorted(
            (p for p in library.packs if p.enabled), key=lambda p: p.priority, reverse=True
        )
        for entry in ordered:
            pack_id = pack_id_for(entry)
            pack_name = entry.title or entry.name
            try:
                with PackStore.open(self._pack_locator(library_locator, entry), self.resolver) as pack:
                    graph = pack.get_graph_data()
            except PackError as e:
                logger.warning(
                    "library.graph_pack_skipped", pack=entry.relative_path, error=str(e)
                )
                continue
            for node in graph["nodes"]:
                nodes.append({**node, "pack_id": pack_id, "pack_name": pack_name})
            for edge in graph["edges"]:
                edges.append({**edge, "pack_id": pack_id, "pack_name": pack_name})
            packs.append(
                {
                    "pack_id": pack_id,
                    "path": entry.path,
                    "name": entry.name,
                    "title": pack_name,
                    "priority": entry.priority,
                    "nodes": len(graph["nodes"]),
                    "relationships": len(graph["edges"]),
                }
            )

        return {
            "nodes": nodes,
            "edges": edges,
            "packs": packs,
            "stats": {
                "total_nodes": len(nodes),
                "total_relationships": len(edges),
                "pack_count": len(packs),
            },
        }

    # ------------------------------------------------------------------
    # Cross-library maintenance
    # ------------------------------------------------------------------

    def libraries_referencing(self, pack_locator: Locator) -> list[Locator]:
        found = []
        for item in self.find_libraries_in_directory(pack_locator.project_id):
            locator = Locator(pack_locator.project_id, item["path"], item["name"])
            library = self.load_library(locator)
            if library.find_pack(pack_locator.path, pack_locator.name):
                found.append(locator)
        return found

    def sync_library_for_pack(self, pack_locator: Locator) -> int:
        """Re-sync every library in the project that references the pack."""
        libraries = self.libraries_referencing(pack_locator)
        for locator in libraries:
            self.sync_pack_stats(locator)
        return len(libraries)

    def forget_pack(self, pack_locator: Locator) -> int:
        """Remove a (deleted) pack from every library in the project."""
        libraries = self.libraries_referencing(pack_locator)
        for locator in libraries:
            self.remove_pack_from_library(locator, pack_locator)
        return len(libraries)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def find_packs_in_directory(self, project_id: str, directory: str = "") -> list[dict]:
        """Every readable pack below ``directory``; unreadable files are skipped."""
        project_root = self.resolver.project_root(project_id)
        root = self.resolver.resolve_dir(project_id, directory)
        if not root.is_dir():
            return []
        results = []
        for file_path in sorted(root.rglob(f"*{PACK_EXTENSION}")):
            locator = self.resolver.locator_for(project_id, file_path)
            try:
                with PackStore.open(locator, self.resolver) as pack:
                    stats = pack.get_stats()
                    meta = pack.get_all_metadata()
            except PackError as e:
                logger.warning("library.invalid_pack_file", path=str(file_path), error=str(e))
                continue
            stat = file_path.stat()
            results.append(
                {
                    "path": locator.path,
                    "name": locator.name,
                    "relative_path": file_path.relative_to(project_root).as_posix(),
                    "title": meta.get("name"),
                    "description": meta.get("description"),
                    "nodes": stats["total_nodes"],
                    "relationships": stats["total_edges"],
                    "size": stat.st_size,
                    "modified_at": stat.st_mtime,
                }
            )
        return results

    def find_libraries_in_directory(self, project_id: str, directory: str = "") -> list[dict]:
        root = self.resolver.resolve_dir(project_id, directory)
        if not root.is_dir():
            return []
        results = []
        for file_path in sorted(root.rglob(f"*{LIBRARY_EXTENSION}")):
            locator = self.resolver.locator_for(project_id, file_path)
            try:
                library = self.load_library(locator)
            except PackError as e:
                logger.warning("library.invalid_library_file", path=str(file_path), error=str(e))
                continue
            results.append(
                {
                    "path": locator.path,
                    "name": locator.name,
                    "title": library.name,
                    "description": library.description,
                    "pack_count": len(library.packs),
                    "total_nodes": library.metadata.total_nodes,
                    "total_relationships": library.metadata.total_relationships,
                    "last_sync": library.metadata.last_sync,
                }
            )
        return results
