"""Data models for memory packs: nodes, relationships, tags and jobs."""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from .errors import PackStateError

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
SUMMARY_LIMIT = 100

_clock_lock = threading.Lock()
_last_issued: datetime | None = None


def now_iso() -> str:
    """Current UTC time as a sortable string, strictly increasing per process."""
    global _last_issued
    with _clock_lock:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if _last_issued is not None and now <= _last_issued:
            now = _last_issued + timedelta(microseconds=1)
        _last_issued = now
        return now.strftime(TIMESTAMP_FORMAT)


def iso_days_ago(days: float) -> str:
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
    return cutoff.strftime(TIMESTAMP_FORMAT)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


def clamp(value, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


class NodeCategory(str, Enum):
    CONVERSATION = "conversation"
    THOUGHT = "thought"
    KNOWLEDGE = "knowledge"
    FACT = "fact"
    PREFERENCE = "preference"


class RelationType(str, Enum):
    PART_OF = "PART_OF"
    RELATES_TO = "RELATES_TO"
    CONTRADICTS = "CONTRADICTS"
    REINFORCES = "REINFORCES"


class JobType(str, Enum):
    EXTRACT_RECURSIVE = "extract_recursive"
    ANALYZE_RELATIONSHIPS = "analyze_relationships"
    CONSOLIDATE = "consolidate"
    MERGE = "merge"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
ANALYZABLE_TYPES = {RelationType.RELATES_TO, RelationType.REINFORCES, RelationType.CONTRADICTS}


@dataclass
class MemoryNode:
    id: str
    content: str
    category: NodeCategory
    importance: float = 0.5
    confidence: float = 1.0
    summary: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str | None = None
    last_accessed: str | None = None
    access_count: int = 0
    source_type: str | None = None
    source_ref: str | None = None
    source_range: str | None = None
    is_active: bool = True
    superseded_by: str | None = None
    depth: int | None = None
    tags: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.importance = clamp(self.importance)
        self.confidence = clamp(self.confidence)
        if self.updated_at is None:
            self.updated_at = self.created_at
        if not self.summary and len(self.content) > SUMMARY_LIMIT:
            self.summary = self.content[:SUMMARY_LIMIT] + "..."

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "summary": self.summary,
            "category": self.category.value,
            "importance": self.importance,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_accessed": self.last_accessed,
            "access_count": self.access_count,
            "source_type": self.source_type,
            "source_ref": self.source_ref,
            "source_range": self.source_range,
            "is_active": self.is_active,
            "superseded_by": self.superseded_by,
            "depth": self.depth,
            "tags": list(self.tags),
        }


@dataclass
class Relationship:
    id: str
    source_id: str
    target_id: str
    type: RelationType
    strength: float = 1.0
    context: str | None = None
    created_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        self.strength = clamp(self.strength)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source_id,
            "target": self.target_id,
            "type": self.type.value,
            "strength": self.strength,
            "context": self.context,
            "created_at": self.created_at,
        }


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


@dataclass
class MemoryJob:
    """A resumable unit of work bound to one pack.

    All state needed to resume lives in ``payload``; the job never holds an
    execution thread between steps.
    """

    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    payload: dict = field(default_factory=dict)
    result: dict | None = None
    progress: int = 0
    total_steps: int = 0
    error: str | None = None
    step_failures: int = 0
    created_at: str = field(default_factory=now_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _require_open(self, action: str):
        if self.is_terminal:
            raise PackStateError(f"Cannot {action} job {self.id}: already {self.status.value}")

    def start(self):
        self._require_open("start")
        if self.status == JobStatus.PENDING:
            self.status = JobStatus.PROCESSING
            self.started_at = now_iso()

    def increment_progress(self, amount: int = 1):
        self.progress += amount
        if self.total_steps < self.progress:
            self.total_steps = self.progress

    def complete(self, result: dict | None = None):
        self._require_open("complete")
        self.status = JobStatus.COMPLETED
        self.result = result or {}
        self.total_steps = max(self.total_steps, self.progress)
        self.progress = self.total_steps
        self.error = None
        self.completed_at = now_iso()

    def fail(self, error: str):
        self._require_open("fail")
        self.status = JobStatus.FAILED
        self.error = error
        self.completed_at = now_iso()

    def cancel(self):
        self._require_open("cancel")
        self.status = JobStatus.CANCELLED
        self.completed_at = now_iso()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "payload": self.payload,
            "result": self.result,
            "progress": self.progress,
            "total_steps": self.total_steps,
            "error": self.error,
            "step_failures": self.step_failures,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
