"""Library manifest models (``.cqmlib`` JSON)."""

from pydantic import BaseModel, Field

from memory.models import now_iso

LIBRARY_FORMAT_VERSION = "1.0"


class PackEntry(BaseModel):
    """Reference to one pack inside the library's project."""

    path: str = ""
    name: str
    enabled: bool = True
    priority: int = 0
    tags: list[str] = Field(default_factory=list)
    title: str | None = None
    description: str | None = None
    nodes: int = 0
    relationships: int = 0
    category_counts: dict[str, int] = Field(default_factory=dict)
    added_at: str = Field(default_factory=now_iso)

    @property
    def relative_path(self) -> str:
        directory = self.path.strip("/")
        return f"{directory}/{self.name}" if directory else self.name

    def matches(self, path: str, name: str) -> bool:
        return self.path.strip("/") == path.strip("/") and self.name == name


class LibraryStats(BaseModel):
    """Cached aggregate over enabled packs; refreshed on every sync."""

    total_nodes: int = 0
    total_relationships: int = 0
    category_counts: dict[str, int] = Field(default_factory=dict)
    last_sync: str | None = None


class Library(BaseModel):
    version: str = LIBRARY_FORMAT_VERSION
    name: str
    description: str = ""
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    packs: list[PackEntry] = Field(default_factory=list)
    metadata: LibraryStats = Field(default_factory=LibraryStats)

    def find_pack(self, path: str, name: str) -> PackEntry | None:
        for entry in self.packs:
            if entry.matches(path, name):
                return entry
        return None

    def recompute_stats(self):
        stats = LibraryStats(last_sync=now_iso())
        for entry in self.packs:
            if not entry.enabled:
                continue
            stats.total_nodes += entry.nodes
            stats.total_relationships += entry.relationships
            for category, count in entry.category_counts.items():
                stats.category_counts[category] = stats.category_counts.get(category, 0) + count
        self.metadata = stats
        self.updated_at = stats.last_sync
