"""Pack store — one self-contained SQLite file per memory graph."""

import functools
import json
import re
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path

import structlog

from db import has_fts5, wal_connect

from .errors import (
    AlreadyExistsError,
    InvariantError,
    NotFoundError,
    PackStateError,
    StorageError,
    ValidationError,
)
from .locator import FileResolver, Locator
from .models import (
    JobStatus,
    JobType,
    MemoryJob,
    MemoryNode,
    NodeCategory,
    Relationship,
    RelationType,
    iso_days_ago,
    new_id,
    normalize_tag,
    now_iso,
)

logger = structlog.get_logger()

PACK_FORMAT_VERSION = "1.0"
_CHUNK = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_nodes (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    summary TEXT,
    category TEXT NOT NULL,
    importance REAL NOT NULL DEFAULT 0.5,
    confidence REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed TEXT,
    access_count INTEGER NOT NULL DEFAULT 0,
    source_type TEXT,
    source_ref TEXT,
    source_range TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    superseded_by TEXT,
    depth INTEGER
);
CREATE TABLE IF NOT EXISTS memory_relationships (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES memory_nodes(id) ON DELETE CASCADE,
    target_id TEXT NOT NULL REFERENCES memory_nodes(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    strength REAL NOT NULL DEFAULT 1.0,
    context TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memory_tags (
    id TEXT PRIMARY KEY,
    memory_id TEXT NOT NULL REFERENCES memory_nodes(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(memory_id, tag)
);
CREATE TABLE IF NOT EXISTS memory_jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    payload TEXT,
    result TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    total_steps INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    step_failures INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);
CREATE TABLE IF NOT EXISTS memory_metadata (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE TABLE IF NOT EXISTS memory_consolidation_log (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    affected_ids TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memory_sources (
    id TEXT PRIMARY KEY,
    title TEXT,
    content TEXT NOT NULL,
    content_type TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_nodes_active ON memory_nodes(is_active);
CREATE INDEX IF NOT EXISTS idx_nodes_category ON memory_nodes(category);
CREATE INDEX IF NOT EXISTS idx_nodes_updated ON memory_nodes(updated_at);
CREATE INDEX IF NOT EXISTS idx_rel_source ON memory_relationships(source_id);
CREATE INDEX IF NOT EXISTS idx_rel_target ON memory_relationships(target_id);
CREATE INDEX IF NOT EXISTS idx_rel_created ON memory_relationships(created_at);
CREATE INDEX IF NOT EXISTS idx_tags_memory ON memory_tags(memory_id);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON memory_tags(tag);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON memory_jobs(status, created_at);
"""

_FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    node_id UNINDEXED,
    content,
    summary,
    tokenize='porter unicode61'
);
CREATE TRIGGER IF NOT EXISTS memory_fts_insert AFTER INSERT ON memory_nodes BEGIN
    INSERT INTO memory_fts(node_id, content, summary) VALUES (NEW.id, NEW.content, NEW.summary);
END;
CREATE TRIGGER IF NOT EXISTS memory_fts_update AFTER UPDATE OF content, summary ON memory_nodes BEGIN
    DELETE FROM memory_fts WHERE node_id = OLD.id;
    INSERT INTO memory_fts(node_id, content, summary) VALUES (NEW.id, NEW.content, NEW.summary);
END;
CREATE TRIGGER IF NOT EXISTS memory_fts_delete AFTER DELETE ON memory_nodes BEGIN
    DELETE FROM memory_fts WHERE node_id = OLD.id;
END;
"""


def _storage_op(func):
    """Fail fast on closed handles and wrap sqlite errors with context."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        self._ensure_open()
        try:
            return func(self, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error(
                "pack.storage_error", operation=func.__name__, path=str(self.path), error=str(e)
            )
            raise StorageError(str(e), operation=func.__name__, locator=self.locator) from e

    return wrapper


def _chunks(items: list, size: int = _CHUNK):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _to_fts5_query(query: str) -> str:
    """Tokens with ``*`` suffix for prefix matching, implicit AND."""
    tokens = re.findall(r"[\w]+", query.lower())
    if not tokens:
        return ""
    return " ".join(f"{t}*" for t in tokens)


class PackStore:
    """Scoped handle on one ``.cqmpack`` file.

    Obtain with :meth:`open` or :meth:`create`, use, then :meth:`close`
    (or use as a context manager). No state survives the handle.
    """

    def __init__(self, path: Path, locator: Locator | None = None, create: bool = False):
        self.path = Path(path)
        self.locator = locator
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0
        self.fts_enabled = False
        try:
            self._conn = wal_connect(self.path, row_factory=True, autocommit=True)
            if create:
                self._init_schema()
            else:
                self._verify_pack()
            self.fts_enabled = self._detect_fts()
        except sqlite3.Error as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise StorageError(
                f"Cannot open pack: {e}", operation="create" if create else "open", locator=locator
            ) from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        locator: Locator,
        resolver: FileResolver,
        name: str | None = None,
        description: str | None = None,
    ) -> "PackStore":
        """Create an empty pack file. Fails if the file already exists."""
        path = resolver.resolve(locator)
        if path.exists():
            raise AlreadyExistsError(f"Pack already exists: {locator}")
        path.parent.mkdir(parents=True, exist_ok=True)
        store = cls(path, locator, create=True)
        now = now_iso()
        defaults = {
            "version": PACK_FORMAT_VERSION,
            "name": name or Path(locator.name).stem,
            "description": description or "",
            "created_at": now,
            "updated_at": now,
        }
        with store.transaction():
            store._conn.executemany(
                "INSERT OR REPLACE INTO memory_metadata (key, value) VALUES (?, ?)",
                list(defaults.items()),
            )
        logger.info("pack.created", locator=str(locator), fts=store.fts_enabled)
        return store

    @classmethod
    def open(cls, locator: Locator, resolver: FileResolver) -> "PackStore":
        path = resolver.resolve(locator)
        if not path.is_file():
            raise NotFoundError(f"Pack not found: {locator}")
        return cls(path, locator)

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _ensure_open(self):
        if self._conn is None:
            raise PackStateError(f"Pack handle is closed: {self.locator or self.path}")

    @contextmanager
    def transaction(self):
        """``BEGIN IMMEDIATE`` … ``COMMIT``; rolls back on any exception.

        Nested calls join the outermost transaction.
        """
        self._ensure_open()
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        conn = self._conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(str(e), operation="begin", locator=self.locator) from e
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StorageError(str(e), operation="commit", locator=self.locator) from e
        finally:
            self._tx_depth = 0

    def _init_schema(self):
        self._conn.executescript(_SCHEMA)
        if has_fts5(self._conn):
            self._conn.executescript(_FTS_SCHEMA)
        else:
            logger.warning("pack.fts_unavailable", path=str(self.path))

    def _verify_pack(self):
        row = self._conn.execute(
            "SELECT value FROM memory_metadata WHERE key = 'version'"
        ).fetchone()
        if row is None:
            raise sqlite3.DatabaseError("missing pack version metadata")

    def _detect_fts(self) -> bool:
        row = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'memory_fts'"
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @_storage_op
    def store_node(
        self,
        content: str,
        category: NodeCategory | str = NodeCategory.KNOWLEDGE,
        importance: float = 0.5,
        summary: str | None = None,
        source_type: str | None = None,
        source_ref: str | None = None,
        tags=(),
        confidence: float = 1.0,
        source_range: str | None = None,
        depth: int | None = None,
    ) -> MemoryNode:
        """Persist a new node and its tags. Importance/confidence are clamped."""
        if content is None or not str(content).strip():
            raise ValidationError("Memory content is required")
        try:
            category = NodeCategory(category)
        except ValueError:
            raise ValidationError(f"Invalid category: {category}")

        node = MemoryNode(
            id=new_id(),
            content=content,
            category=category,
            importance=importance,
            confidence=confidence,
            summary=summary,
            source_type=source_type,
            source_ref=source_ref,
            source_range=source_range,
            depth=depth,
        )
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memory_nodes
                   (id, content, summary, category, importance, confidence, created_at,
                    updated_at, access_count, source_type, source_ref, source_range,
                    is_active, depth)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, 1, ?)""",
                (
                    node.id,
                    node.content,
                    node.summary,
                    node.category.value,
                    node.importance,
                    node.confidence,
                    node.created_at,
                    node.updated_at,
                    node.source_type,
                    node.source_ref,
                    node.source_range,
                    node.depth,
                ),
            )
            node.tags = self._insert_tags(node.id, tags)
        return node

    @_storage_op
    def find_node_by_id(self, node_id: str) -> MemoryNode | None:
        row = self._conn.execute("SELECT * FROM memory_nodes WHERE id = ?", (node_id,)).fetchone()
        if not row:
            return None
        return self._hydrate([row])[0]

    @_storage_op
    def find_nodes_by_ids(self, node_ids: list[str]) -> list[MemoryNode]:
        rows = []
        for chunk in _chunks(list(node_ids)):
            rows.extend(
                self._conn.execute(
                    f"SELECT * FROM memory_nodes WHERE id IN ({_placeholders(len(chunk))})", chunk
                ).fetchall()
            )
        return self._hydrate(rows)

    @_storage_op
    def find_all_nodes(
        self, include_inactive: bool = False, limit: int | None = None, offset: int = 0
    ) -> list[MemoryNode]:
        sql = "SELECT * FROM memory_nodes"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY created_at ASC, rowid ASC LIMIT ? OFFSET ?"
        params = [-1 if limit is None else limit, offset]
        return self._hydrate(self._conn.execute(sql, params).fetchall())

    @_storage_op
    def find_by_category(self, category: NodeCategory | str, limit: int = 50) -> list[MemoryNode]:
        try:
            category = NodeCategory(category)
        except ValueError:
            raise ValidationError(f"Invalid category: {category}")
        rows = self._conn.execute(
            """SELECT * FROM memory_nodes WHERE is_active = 1 AND category = ?
               ORDER BY importance DESC, created_at DESC LIMIT ?""",
            (category.value, limit),
        ).fetchall()
        return self._hydrate(rows)

    @_storage_op
    def search(self, query: str, limit: int = 20) -> list[MemoryNode]:
        """Keyword recall over node content and summary."""
        if self.fts_enabled:
            fts_query = _to_fts5_query(query)
            if not fts_query:
                return []
            try:
                rows = self._conn.execute(
                    """SELECT n.* FROM memory_fts f
                       JOIN memory_nodes n ON n.id = f.node_id
                       WHERE memory_fts MATCH ? AND n.is_active = 1
                       ORDER BY n.importance DESC, bm25(memory_fts) LIMIT ?""",
                    (fts_query, limit),
                ).fetchall()
                return self._hydrate(rows)
            except sqlite3.OperationalError as e:
                logger.warning("pack.fts_search_error", error=str(e))
        return self._like_search(query, limit)

    def _like_search(self, query: str, limit: int) -> list[MemoryNode]:
        tokens = re.findall(r"[\w]+", query.lower())
        if not tokens:
            return []
        clauses = " AND ".join(
            "(lower(content) LIKE ? OR lower(COALESCE(summary, '')) LIKE ?)" for _ in tokens
        )
        params: list = []
        for t in tokens:
            params.extend([f"%{t}%", f"%{t}%"])
        params.append(limit)
        rows = self._conn.execute(
            f"""SELECT * FROM memory_nodes WHERE is_active = 1 AND {clauses}
                ORDER BY importance DESC, created_at DESC LIMIT ?""",
            params,
        ).fetchall()
        return self._hydrate(rows)

    @_storage_op
    def recall(self, query: str, limit: int = 10) -> list[MemoryNode]:
        """Search and record the access on every returned node."""
        nodes = self.search(query, limit)
        if nodes:
            now = now_iso()
            with self.transaction():
                self._conn.executemany(
                    """UPDATE memory_nodes SET access_count = access_count + 1, last_accessed = ?
                       WHERE id = ?""",
                    [(now, n.id) for n in nodes],
                )
            for n in nodes:
                n.access_count += 1
                n.last_accessed = now
        return nodes

    @_storage_op
    def update_node(self, node_id: str, new_content: str, reason: str | None = None) -> MemoryNode:
        """Supersede a node with a derived copy carrying new content."""
        old = self.find_node_by_id(node_id)
        if not old:
            raise NotFoundError(f"Memory node not found: {node_id}")
        with self.transaction():
            new = self.store_node(
                new_content,
                category=old.category,
                importance=old.importance,
                confidence=old.confidence,
                source_type="derived",
                source_ref=old.id,
                tags=old.tags,
                depth=old.depth,
            )
            self._conn.execute(
                """UPDATE memory_nodes SET superseded_by = ?, is_active = 0, updated_at = ?
                   WHERE id = ?""",
                (new.id, now_iso(), old.id),
            )
            self._log_consolidation(
                "update",
                [old.id, new.id],
                {"reason": reason, "old_content": old.content[:100], "new_content": new_content[:100]},
            )
        return new

    @_storage_op
    def forget_node(self, node_id: str, reason: str | None = None) -> bool:
        """Soft-delete: the node stays on disk but leaves every read path."""
        node = self.find_node_by_id(node_id)
        if not node:
            return False
        with self.transaction():
            self._conn.execute(
                "UPDATE memory_nodes SET is_active = 0, updated_at = ? WHERE id = ?",
                (now_iso(), node_id),
            )
            self._log_consolidation(
                "forget", [node_id], {"reason": reason, "content": node.content[:100]}
            )
        return True

    @_storage_op
    def delete_node_with_children(self, node_id: str) -> list[str]:
        """Hard-delete a node plus every node reachable over incoming PART_OF edges.

        Returns the deleted ids, target first. Unknown ids yield ``[]``.
        """
        exists = self._conn.execute(
            "SELECT 1 FROM memory_nodes WHERE id = ?", (node_id,)
        ).fetchone()
        if not exists:
            return []

        children: dict[str, list[str]] = defaultdict(list)
        for row in self._conn.execute(
            "SELECT source_id, target_id FROM memory_relationships WHERE type = ?",
            (RelationType.PART_OF.value,),
        ):
            children[row["target_id"]].append(row["source_id"])

        deleted: list[str] = []
        seen = {node_id}
        stack = [node_id]
        while stack:
            current = stack.pop()
            deleted.append(current)
            for child in children.get(current, ()):
                if child not in seen:
                    seen.add(child)
                    stack.append(child)

        with self.transaction():
            for chunk in _chunks(deleted):
                marks = _placeholders(len(chunk))
                self._conn.execute(f"DELETE FROM memory_tags WHERE memory_id IN ({marks})", chunk)
                self._conn.execute(
                    f"""DELETE FROM memory_relationships
                        WHERE source_id IN ({marks}) OR target_id IN ({marks})""",
                    chunk + chunk,
                )
                self._conn.execute(f"DELETE FROM memory_nodes WHERE id IN ({marks})", chunk)
        logger.info("pack.nodes_deleted", root=node_id, count=len(deleted))
        return deleted

    def _hydrate(self, rows) -> list[MemoryNode]:
        nodes = [self._row_to_node(r) for r in rows]
        if nodes:
            tags = self._tags_for([n.id for n in nodes])
            for n in nodes:
                n.tags = tags.get(n.id, [])
        return nodes

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> MemoryNode:
        return MemoryNode(
            id=row["id"],
            content=row["content"],
            summary=row["summary"],
            category=NodeCategory(row["category"]),
            importance=row["importance"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed=row["last_accessed"],
            access_count=row["access_count"],
            source_type=row["source_type"],
            source_ref=row["source_ref"],
            source_range=row["source_range"],
            is_active=bool(row["is_active"]),
            superseded_by=row["superseded_by"],
            depth=row["depth"],
        )

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    @_storage_op
    def create_relationship(
        self,
        source_id: str,
        target_id: str,
        rel_type: RelationType | str,
        strength: float = 1.0,
        context: str | None = None,
    ) -> Relationship:
        try:
            rel_type = RelationType(rel_type)
        except ValueError:
            raise ValidationError(f"Invalid relationship type: {rel_type}")

        found = {
            row["id"]
            for row in self._conn.execute(
                "SELECT id FROM memory_nodes WHERE id IN (?, ?)", (source_id, target_id)
            )
        }
        missing = {source_id, target_id} - found
        if missing:
            raise InvariantError(f"Relationship endpoint does not exist: {sorted(missing)}")

        rel = Relationship(
            id=new_id(),
            source_id=source_id,
            target_id=target_id,
            type=rel_type,
            strength=strength,
            context=context,
        )
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memory_relationships
                   (id, source_id, target_id, type, strength, context, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (rel.id, rel.source_id, rel.target_id, rel.type.value, rel.strength, rel.context, rel.created_at),
            )
        return rel

    @_storage_op
    def relationship_exists(self, source_id: str, target_id: str, either_direction: bool = True) -> bool:
        sql = "SELECT 1 FROM memory_relationships WHERE (source_id = ? AND target_id = ?)"
        params = [source_id, target_id]
        if either_direction:
            sql += " OR (source_id = ? AND target_id = ?)"
            params += [target_id, source_id]
        return self._conn.execute(sql + " LIMIT 1", params).fetchone() is not None

    @_storage_op
    def get_relationships(self, node_id: str) -> list[Relationship]:
        rows = self._conn.execute(
            """SELECT * FROM memory_relationships WHERE source_id = ? OR target_id = ?
               ORDER BY created_at ASC""",
            (node_id, node_id),
        ).fetchall()
        return [self._row_to_relationship(r) for r in rows]

    @_storage_op
    def find_all_relationships(self, active_only: bool = True) -> list[Relationship]:
        sql = "SELECT r.* FROM memory_relationships r"
        if active_only:
            sql += """ JOIN memory_nodes s ON s.id = r.source_id AND s.is_active = 1
                       JOIN memory_nodes t ON t.id = r.target_id AND t.is_active = 1"""
        sql += " ORDER BY r.created_at ASC"
        return [self._row_to_relationship(r) for r in self._conn.execute(sql).fetchall()]

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> Relationship:
        return Relationship(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            type=RelationType(row["type"]),
            strength=row["strength"],
            context=row["context"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @_storage_op
    def add_tags(self, node_id: str, tags) -> list[str]:
        if not self._conn.execute("SELECT 1 FROM memory_nodes WHERE id = ?", (node_id,)).fetchone():
            raise NotFoundError(f"Memory node not found: {node_id}")
        with self.transaction():
            before = set(self.get_tags(node_id))
            if set(self._insert_tags(node_id, tags)) - before:
                self._conn.execute(
                    "UPDATE memory_nodes SET updated_at = ? WHERE id = ?", (now_iso(), node_id)
                )
        return self.get_tags(node_id)

    @_storage_op
    def get_tags(self, node_id: str) -> list[str]:
        return self._tags_for([node_id]).get(node_id, [])

    @_storage_op
    def get_all_tags(self) -> dict[str, int]:
        rows = self._conn.execute(
            """SELECT t.tag, COUNT(*) AS cnt FROM memory_tags t
               JOIN memory_nodes n ON n.id = t.memory_id AND n.is_active = 1
               GROUP BY t.tag ORDER BY cnt DESC, t.tag ASC"""
        ).fetchall()
        return {r["tag"]: r["cnt"] for r in rows}

    def _insert_tags(self, node_id: str, tags) -> list[str]:
        clean = []
        for tag in tags or ():
            t = normalize_tag(str(tag))
            if t and t not in clean:
                clean.append(t)
        now = now_iso()
        self._conn.executemany(
            "INSERT OR IGNORE INTO memory_tags (id, memory_id, tag, created_at) VALUES (?, ?, ?, ?)",
            [(new_id(), node_id, t, now) for t in clean],
        )
        return clean

    def _tags_for(self, node_ids: list[str]) -> dict[str, list[str]]:
        result: dict[str, list[str]] = defaultdict(list)
        for chunk in _chunks(node_ids):
            for row in self._conn.execute(
                f"""SELECT memory_id, tag FROM memory_tags
                    WHERE memory_id IN ({_placeholders(len(chunk))}) ORDER BY created_at, tag""",
                chunk,
            ):
                result[row["memory_id"]].append(row["tag"])
        return result

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @_storage_op
    def get_all_metadata(self) -> dict[str, str]:
        rows = self._conn.execute("SELECT key, value FROM memory_metadata").fetchall()
        return {r["key"]: r["value"] for r in rows}

    @_storage_op
    def get_metadata(self, key: str, default: str | None = None) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM memory_metadata WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else default

    @_storage_op
    def set_metadata_field(self, key: str, value) -> None:
        """Set one pack attribute; every write also bumps ``updated_at``."""
        if not key or not key.strip():
            raise ValidationError("Metadata key is required")
        if key == "version":
            raise ValidationError("The pack format version is read-only")
        stored = None if value is None else str(value)
        with self.transaction():
            self._conn.executemany(
                "INSERT OR REPLACE INTO memory_metadata (key, value) VALUES (?, ?)",
                [(key, stored), ("updated_at", now_iso())],
            )

    # ------------------------------------------------------------------
    # Graph reads
    # ------------------------------------------------------------------

    @_storage_op
    def get_stats(self) -> dict:
        """Aggregate counts without loading the graph."""
        total_nodes = self._conn.execute(
            "SELECT COUNT(*) FROM memory_nodes WHERE is_active = 1"
        ).fetchone()[0]
        total_edges = self._conn.execute("SELECT COUNT(*) FROM memory_relationships").fetchone()[0]
        total_relationships = self._conn.execute(
            "SELECT COUNT(*) FROM memory_relationships WHERE type != ?",
            (RelationType.PART_OF.value,),
        ).fetchone()[0]
        total_tags = self._conn.execute("SELECT COUNT(DISTINCT tag) FROM memory_tags").fetchone()[0]
        category_counts = {
            r["category"]: r["cnt"]
            for r in self._conn.execute(
                """SELECT category, COUNT(*) AS cnt FROM memory_nodes
                   WHERE is_active = 1 GROUP BY category"""
            )
        }
        return {
            "total_nodes": total_nodes,
            "total_edges": total_edges,
            "total_relationships": total_relationships,
            "total_tags": total_tags,
            "category_counts": category_counts,
        }

    @_storage_op
    def get_graph_data(self) -> dict:
        nodes = self.find_all_nodes()
        edges = self.find_all_relationships(active_only=True)
        return {
            "nodes": [n.to_dict() for n in nodes],
            "edges": [e.to_dict() for e in edges],
            "stats": self.get_stats(),
        }

    def get_graph_delta(self, since: str | None) -> dict:
        from .delta import compute_delta

        return compute_delta(self, since).to_dict()

    @_storage_op
    def nodes_changed_since(self, since: str | None) -> list[MemoryNode]:
        if since is None:
            rows = self._conn.execute(
                "SELECT * FROM memory_nodes ORDER BY updated_at ASC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM memory_nodes WHERE updated_at > ? ORDER BY updated_at ASC", (since,)
            ).fetchall()
        return self._hydrate(rows)

    @_storage_op
    def relationships_created_since(self, since: str | None) -> list[Relationship]:
        if since is None:
            rows = self._conn.execute(
                "SELECT * FROM memory_relationships ORDER BY created_at ASC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM memory_relationships WHERE created_at > ? ORDER BY created_at ASC",
                (since,),
            ).fetchall()
        return [self._row_to_relationship(r) for r in rows]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @_storage_op
    def enqueue_job(self, job_type: JobType | str, payload=None, total_steps: int = 0) -> MemoryJob:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise ValidationError(f"Invalid job type: {job_type}")
        if payload is not None and hasattr(payload, "to_dict"):
            payload = payload.to_dict()
        job = MemoryJob(id=new_id(), type=job_type, payload=payload or {}, total_steps=total_steps)
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memory_jobs
                   (id, type, status, payload, progress, total_steps, step_failures, created_at)
                   VALUES (?, ?, ?, ?, 0, ?, 0, ?)""",
                (
                    job.id,
                    job.type.value,
                    job.status.value,
                    json.dumps(job.payload),
                    job.total_steps,
                    job.created_at,
                ),
            )
        logger.info("pack.job_enqueued", job_id=job.id, type=job.type.value)
        return job

    @_storage_op
    def find_job_by_id(self, job_id: str) -> MemoryJob | None:
        row = self._conn.execute("SELECT * FROM memory_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    @_storage_op
    def get_jobs_to_process(self, limit: int = 10) -> list[MemoryJob]:
        """Pending and processing jobs, oldest first."""
        rows = self._conn.execute(
            """SELECT * FROM memory_jobs WHERE status IN (?, ?)
               ORDER BY created_at ASC, rowid ASC LIMIT ?""",
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value, limit),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def get_active_jobs(self) -> list[MemoryJob]:
        rows = self._conn.execute(
            """SELECT * FROM memory_jobs WHERE status IN (?, ?)
               ORDER BY created_at ASC, rowid ASC""",
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def get_recently_completed_jobs(self, limit: int = 10) -> list[MemoryJob]:
        rows = self._conn.execute(
            """SELECT * FROM memory_jobs WHERE status IN (?, ?, ?)
               ORDER BY completed_at DESC LIMIT ?""",
            (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value, limit),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def update_job(self, job: MemoryJob) -> MemoryJob:
        with self.transaction():
            cur = self._conn.execute(
                """UPDATE memory_jobs SET status = ?, payload = ?, result = ?, progress = ?,
                   total_steps = ?, error = ?, step_failures = ?, started_at = ?, completed_at = ?
                   WHERE id = ?""",
                (
                    job.status.value,
                    json.dumps(job.payload),
                    json.dumps(job.result) if job.result is not None else None,
                    job.progress,
                    job.total_steps,
                    job.error,
                    job.step_failures,
                    job.started_at,
                    job.completed_at,
                    job.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Job not found: {job.id}")
        return job

    @_storage_op
    def cancel_job(self, job_id: str) -> MemoryJob:
        job = self.find_job_by_id(job_id)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")
        job.cancel()
        self.update_job(job)
        logger.info("pack.job_cancelled", job_id=job_id)
        return job

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> MemoryJob:
        return MemoryJob(
            id=row["id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            result=json.loads(row["result"]) if row["result"] else None,
            progress=row["progress"],
            total_steps=row["total_steps"],
            error=row["error"],
            step_failures=row["step_failures"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @_storage_op
    def decay_importance(self, rate: float = 0.99, min_days: int = 7) -> int:
        """Multiply importance by ``rate`` for nodes untouched for ``min_days``."""
        cutoff = iso_days_ago(min_days)
        with self.transaction():
            rows = self._conn.execute(
                """SELECT id FROM memory_nodes WHERE is_active = 1 AND created_at < ?
                   AND (last_accessed IS NULL OR last_accessed < ?)""",
                (cutoff, cutoff),
            ).fetchall()
            ids = [r["id"] for r in rows]
            now = now_iso()
            for chunk in _chunks(ids):
                self._conn.execute(
                    f"""UPDATE memory_nodes SET importance = MAX(0.0, importance * ?), updated_at = ?
                        WHERE id IN ({_placeholders(len(chunk))})""",
                    [rate, now, *chunk],
                )
            if ids:
                self._log_consolidation("decay", ids, {"rate": rate, "min_days": min_days})
        return len(ids)

    @_storage_op
    def prune(self, importance_threshold: float = 0.1, min_age_days: int = 30) -> list[str]:
        """Soft-delete old, unimportant, unaccessed nodes."""
        cutoff = iso_days_ago(min_age_days)
        with self.transaction():
            rows = self._conn.execute(
                """SELECT id FROM memory_nodes WHERE is_active = 1 AND importance < ?
                   AND created_at < ? AND (last_accessed IS NULL OR last_accessed < ?)""",
                (importance_threshold, cutoff, cutoff),
            ).fetchall()
            ids = [r["id"] for r in rows]
            now = now_iso()
            for chunk in _chunks(ids):
                self._conn.execute(
                    f"""UPDATE memory_nodes SET is_active = 0, updated_at = ?
                        WHERE id IN ({_placeholders(len(chunk))})""",
                    [now, *chunk],
                )
            if ids:
                self._log_consolidation(
                    "prune",
                    ids,
                    {"importance_threshold": importance_threshold, "min_age_days": min_age_days},
                )
        return ids

    @_storage_op
    def get_consolidation_log(self, limit: int = 50) -> list[dict]:
        rows = self._conn.execute(
            "SELECT * FROM memory_consolidation_log ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            {
                "id": r["id"],
                "action": r["action"],
                "affected_ids": json.loads(r["affected_ids"]),
                "details": json.loads(r["details"]) if r["details"] else {},
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    def _log_consolidation(self, action: str, affected_ids: list[str], details: dict):
        self._conn.execute(
            """INSERT INTO memory_consolidation_log (id, action, affected_ids, details, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (new_id(), action, json.dumps(affected_ids), json.dumps(details), now_iso()),
        )

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    @_storage_op
    def store_source(self, title: str, content: str, content_type: str = "text/plain") -> str:
        """Keep extraction input inside the pack so job payloads stay small."""
        if not content or not content.strip():
            raise ValidationError("Source content is required")
        source_id = new_id()
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memory_sources (id, title, content, content_type, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (source_id, title, content, content_type, now_iso()),
            )
        return source_id

    @_storage_op
    def get_source(self, source_id: str) -> dict | None:
        row = self._conn.execute(
            "SELECT * FROM memory_sources WHERE id = ?", (source_id,)
        ).fetchone()
        return dict(row) if row else None


def delete_pack(locator: Locator, resolver: FileResolver) -> Path:
    """Remove a pack file and its WAL side files."""
    path = resolver.resolve(locator)
    if not path.is_file():
        raise NotFoundError(f"Pack not found: {locator}")
    try:
        path.unlink()
        for suffix in ("-wal", "-shm"):
            side = path.with_name(path.name + suffix)
            if side.exists():
                side.unlink()
    except OSError as e:
        raise StorageError(str(e), operation="delete_pack", locator=locator) from e
    logger.info("pack.deleted", locator=str(locator))
    return path
