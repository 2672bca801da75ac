"""Typed job payloads — the resumable cursor each job type persists between steps.

Each cursor serializes with a ``kind`` tag and a ``version``. ``load_payload``
dispatches on the job type and runs any registered migrations, so older
payloads already on disk keep resuming after a format change.
"""

from dataclasses import asdict, dataclass, field
from typing import Callable

from .errors import ValidationError
from .models import JobType

PAYLOAD_VERSION = 2


@dataclass
class PendingBlock:
    title: str
    start_line: int
    end_line: int
    parent_node_id: str
    depth: int
    summary: str = ""
    is_leaf: bool = False
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingBlock":
        return cls(
            title=data.get("title") or "Untitled",
            start_line=int(data.get("start_line", 1)),
            end_line=int(data.get("end_line", 1)),
            parent_node_id=data["parent_node_id"],
            depth=int(data.get("depth", 1)),
            summary=data.get("summary") or "",
            is_leaf=bool(data.get("is_leaf", False)),
            tags=list(data.get("tags") or []),
        )


@dataclass
class ExtractCursor:
    source_id: str
    title: str
    max_depth: int = 3
    document_tags: list[str] = field(default_factory=list)
    source_type: str = "document"
    source_ref: str | None = None
    needs_init: bool = True
    root_node_id: str | None = None
    pending_blocks: list[PendingBlock] = field(default_factory=list)
    processed_blocks: int = 0
    created_node_ids: list[str] = field(default_factory=list)

    kind = JobType.EXTRACT_RECURSIVE

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "version": PAYLOAD_VERSION, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractCursor":
        if not data.get("source_id"):
            raise ValidationError("extract_recursive payload requires source_id")
        return cls(
            source_id=data["source_id"],
            title=data.get("title") or "Untitled",
            max_depth=int(data.get("max_depth", 3)),
            document_tags=list(data.get("document_tags") or []),
            source_type=data.get("source_type") or "document",
            source_ref=data.get("source_ref"),
            needs_init=bool(data.get("needs_init", True)),
            root_node_id=data.get("root_node_id"),
            pending_blocks=[PendingBlock.from_dict(b) for b in data.get("pending_blocks") or []],
            processed_blocks=int(data.get("processed_blocks", 0)),
            created_node_ids=list(data.get("created_node_ids") or []),
        )


@dataclass
class RelationshipCursor:
    node_queue: list[str] = field(default_factory=list)
    processed: int = 0
    relationships_created: int = 0
    max_comparisons: int = 50

    kind = JobType.ANALYZE_RELATIONSHIPS

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "version": PAYLOAD_VERSION, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "RelationshipCursor":
        return cls(
            node_queue=list(data.get("node_queue") or []),
            processed=int(data.get("processed", 0)),
            relationships_created=int(data.get("relationships_created", 0)),
            max_comparisons=int(data.get("max_comparisons", 50)),
        )


@dataclass
class ConsolidateCursor:
    phases: list[str] = field(default_factory=lambda: ["decay", "prune"])
    decay_rate: float = 0.99
    decay_min_days: int = 7
    prune_threshold: float = 0.1
    prune_min_age_days: int = 30
    decayed: int = 0
    pruned: int = 0

    kind = JobType.CONSOLIDATE

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "version": PAYLOAD_VERSION, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "ConsolidateCursor":
        defaults = cls()
        return cls(
            phases=list(data.get("phases", defaults.phases)),
            decay_rate=float(data.get("decay_rate", defaults.decay_rate)),
            decay_min_days=int(data.get("decay_min_days", defaults.decay_min_days)),
            prune_threshold=float(data.get("prune_threshold", defaults.prune_threshold)),
            prune_min_age_days=int(data.get("prune_min_age_days", defaults.prune_min_age_days)),
            decayed=int(data.get("decayed", 0)),
            pruned=int(data.get("pruned", 0)),
        )


@dataclass
class MergeCursor:
    source: dict
    batch_size: int = 25
    offset: int = 0
    phase: str = "nodes"  # nodes | edges
    id_map: dict[str, str] = field(default_factory=dict)
    nodes_merged: int = 0
    relationships_merged: int = 0

    kind = JobType.MERGE

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "version": PAYLOAD_VERSION, **asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "MergeCursor":
        source = data.get("source")
        if not isinstance(source, dict) or not source.get("name"):
            raise ValidationError("merge payload requires a source pack locator")
        return cls(
            source=dict(source),
            batch_size=max(1, int(data.get("batch_size", 25))),
            offset=int(data.get("offset", 0)),
            phase=data.get("phase", "nodes"),
            id_map=dict(data.get("id_map") or {}),
            nodes_merged=int(data.get("nodes_merged", 0)),
            relationships_merged=int(data.get("relationships_merged", 0)),
        )


Cursor = ExtractCursor | RelationshipCursor | ConsolidateCursor | MergeCursor

_CURSORS: dict[JobType, type] = {
    JobType.EXTRACT_RECURSIVE: ExtractCursor,
    JobType.ANALYZE_RELATIONSHIPS: RelationshipCursor,
    JobType.CONSOLIDATE: ConsolidateCursor,
    JobType.MERGE: MergeCursor,
}


def _migrate_v1_extract(data: dict) -> dict:
    """v1 payloads used camelCase keys (``pendingBlocks``, ``parentNodeId``)."""
    data = dict(data)
    if "pendingBlocks" in data:
        data["pending_blocks"] = [
            {
                "title": b.get("title"),
                "summary": b.get("summary"),
                "start_line": b.get("startLine", b.get("start_line", 1)),
                "end_line": b.get("endLine", b.get("end_line", 1)),
                "is_leaf": b.get("isLeaf", b.get("is_leaf", False)),
                "tags": b.get("tags", []),
                "parent_node_id": b.get("parentNodeId", b.get("parent_node_id")),
                "depth": b.get("depth", 1),
            }
            for b in data.pop("pendingBlocks")
        ]
    for old, new in (
        ("maxDepth", "max_depth"),
        ("needsInit", "needs_init"),
        ("rootNodeId", "root_node_id"),
        ("documentTags", "document_tags"),
        ("processedBlocks", "processed_blocks"),
        ("extractedIds", "created_node_ids"),
        ("sourceType", "source_type"),
        ("sourceRef", "source_ref"),
    ):
        if old in data:
            data[new] = data.pop(old)
    return data


def _migrate_v1_relationships(data: dict) -> dict:
    data = dict(data)
    if "memoryIds" in data:
        processed = int(data.pop("processedCount", 0))
        data["node_queue"] = list(data.pop("memoryIds"))[processed:]
        data["processed"] = processed
    return data


# (job type, from version) -> migration to from version + 1
_MIGRATIONS: dict[tuple[JobType, int], Callable[[dict], dict]] = {
    (JobType.EXTRACT_RECURSIVE, 1): _migrate_v1_extract,
    (JobType.ANALYZE_RELATIONSHIPS, 1): _migrate_v1_relationships,
}


def load_payload(job_type: JobType, data: dict | None) -> Cursor:
    """Decode a stored payload into the cursor for ``job_type``."""
    data = dict(data or {})
    kind = data.get("kind")
    if kind is not None and kind != job_type.value:
        raise ValidationError(f"Payload kind {kind!r} does not match job type {job_type.value!r}")

    try:
        version = int(data.get("version", 1))
        if version > PAYLOAD_VERSION:
            raise ValidationError(f"Unsupported payload version {version} for {job_type.value}")
        while version < PAYLOAD_VERSION:
            migrate = _MIGRATIONS.get((job_type, version))
            if migrate:
                data = migrate(data)
            version += 1
        return _CURSORS[job_type].from_dict(data)
    except ValidationError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Malformed {job_type.value} payload: {e!r}") from e
