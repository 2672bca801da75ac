"""Pack/library addressing: (project, directory, file name) triples."""

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import ValidationError

PACK_EXTENSION = ".cqmpack"
LIBRARY_EXTENSION = ".cqmlib"


@dataclass(frozen=True)
class Locator:
    project_id: str
    path: str
    name: str

    @property
    def relative_path(self) -> str:
        """Directory + name inside the project, e.g. ``packs/notes.cqmpack``."""
        directory = self.path.strip("/")
        return f"{directory}/{self.name}" if directory else self.name

    def with_name(self, name: str) -> "Locator":
        return Locator(self.project_id, self.path, name)

    def to_dict(self) -> dict:
        return {"project_id": self.project_id, "path": self.path, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict) -> "Locator":
        return cls(data.get("project_id", ""), data.get("path", ""), data.get("name", ""))

    @classmethod
    def parse(cls, ref: str, project_id: str = "default", extension: str | None = None) -> "Locator":
        """Build a locator from ``dir/sub/name``; bare names live in the project root."""
        pure = PurePosixPath(ref.strip())
        name = pure.name
        if extension and name and not name.endswith(extension):
            name += extension
        parent = str(pure.parent)
        return cls(project_id, "" if parent == "." else parent, name)

    def __str__(self) -> str:
        return f"{self.project_id}:{self.relative_path}"


class FileResolver:
    """Resolves locators to concrete files under a data directory.

    Locator paths are project-relative; a leading ``/`` means the project
    root. ``resolve`` rejects traversal outside the project.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()

    def project_root(self, project_id: str) -> Path:
        if not project_id or not project_id.strip():
            raise ValidationError("Locator requires a project id")
        if "/" in project_id or project_id.strip() in (".", "..") or "\\" in project_id:
            raise ValidationError(f"Invalid project id: {project_id}")
        return self.base_dir / project_id

    def resolve(self, locator: Locator) -> Path:
        if locator.path is None or not locator.name:
            raise ValidationError("Locator requires both path and name")
        _check_segments(locator.path, "path")
        _check_segments(locator.name, "name")
        if "/" in locator.name or locator.name == ".":
            raise ValidationError(f"Invalid file name: {locator.name}")
        return self.project_root(locator.project_id) / locator.path.strip("/") / locator.name

    def resolve_dir(self, project_id: str, directory: str = "") -> Path:
        _check_segments(directory, "path")
        return self.project_root(project_id) / directory.strip("/")

    def locator_for(self, project_id: str, file_path: Path) -> Locator:
        """Inverse of ``resolve`` for files discovered on disk."""
        rel = PurePosixPath(file_path.relative_to(self.project_root(project_id)).as_posix())
        parent = str(rel.parent)
        return Locator(project_id, "" if parent == "." else parent, rel.name)


def _check_segments(value: str, label: str):
    if ".." in PurePosixPath(value).parts or "\\" in value:
        raise ValidationError(f"Invalid {label}: {value}")
