"""Portable memory packs — graph store, job pipeline and delta sync."""

from .capability import CompletionCapability, LLMCapability
from .delta import GraphDelta, compute_delta
from .errors import (
    AlreadyExistsError,
    ExternalCapabilityError,
    InvariantError,
    NotFoundError,
    PackError,
    PackStateError,
    StorageError,
    ValidationError,
)
from .locator import LIBRARY_EXTENSION, PACK_EXTENSION, FileResolver, Locator
from .models import (
    JobStatus,
    JobType,
    MemoryJob,
    MemoryNode,
    NodeCategory,
    Relationship,
    RelationType,
)
from .pipeline import JobPipeline, StepReport
from .store import PackStore, delete_pack

__all__ = [
    "PackStore",
    "delete_pack",
    "JobPipeline",
    "StepReport",
    "GraphDelta",
    "compute_delta",
    "CompletionCapability",
    "LLMCapability",
    "Locator",
    "FileResolver",
    "PACK_EXTENSION",
    "LIBRARY_EXTENSION",
    "MemoryNode",
    "Relationship",
    "MemoryJob",
    "NodeCategory",
    "RelationType",
    "JobType",
    "JobStatus",
    "PackError",
    "ValidationError",
    "NotFoundError",
    "AlreadyExistsError",
    "PackStateError",
    "StorageError",
    "ExternalCapabilityError",
    "InvariantError",
]
