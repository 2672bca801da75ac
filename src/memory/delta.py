"""Delta synchronization — what changed in a pack since a watermark.

Watermarks are the timestamp strings issued by ``models.now_iso``. A caller
that feeds each response's ``timestamp`` into the next call sees every
structural change exactly once. Access bookkeeping (recall counters) never
moves ``updated_at`` and so never shows up here.
"""

from dataclasses import dataclass, field

from .models import MemoryNode, Relationship, now_iso


@dataclass
class GraphDelta:
    nodes: list[MemoryNode] = field(default_factory=list)
    edges: list[Relationship] = field(default_factory=list)
    removed_node_ids: list[str] = field(default_factory=list)
    timestamp: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.edges or self.removed_node_ids)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "removed_node_ids": list(self.removed_node_ids),
            "timestamp": self.timestamp,
        }


def compute_delta(pack, since: str | None) -> GraphDelta:
    """Nodes changed and edges created strictly after ``since`` (None = everything)."""
    snapshot = now_iso()
    changed = pack.nodes_changed_since(since)
    edges = pack.relationships_created_since(since)

    nodes = [n for n in changed if n.is_active]
    removed = [n.id for n in changed if not n.is_active]

    stamps = [n.updated_at for n in changed] + [e.created_at for e in edges]
    if stamps:
        timestamp = max(stamps)
    else:
        timestamp = since if since is not None else snapshot
    return GraphDelta(nodes=nodes, edges=edges, removed_node_ids=removed, timestamp=timestamp)
