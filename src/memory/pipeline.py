"""Job pipeline — advances one pack job by exactly one unit of work per call.

Every step plans first (completion calls, reads) and then applies all of its
writes, including the advanced job cursor, inside one pack transaction. A
crash mid-step therefore leaves the job exactly as it was before the call.
"""

import math
from dataclasses import dataclass

import structlog

from .analyzer import RelationshipAnalyzer
from .capability import CompletionCapability
from .delta import GraphDelta, compute_delta
from .errors import ExternalCapabilityError, NotFoundError, ValidationError
from .extractor import BlockExtractor, ContentBlock, slice_lines
from .locator import FileResolver, Locator
from .models import JobType, MemoryJob, NodeCategory, RelationType, now_iso
from .payloads import (
    ConsolidateCursor,
    ExtractCursor,
    MergeCursor,
    PendingBlock,
    RelationshipCursor,
    load_payload,
)
from .store import PackStore

logger = structlog.get_logger()

PART_OF_CONTEXT = "Child section of parent document/section"


@dataclass
class StepReport:
    """Outcome of one driving-loop iteration."""

    job: MemoryJob | None
    completed: bool
    delta: GraphDelta | None
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "job": self.job.to_dict() if self.job else None,
            "completed": self.completed,
            "delta": self.delta.to_dict() if self.delta else None,
            "has_more": self.has_more,
        }


class JobPipeline:
    """Creates pack jobs and processes them one step at a time."""

    def __init__(
        self,
        resolver: FileResolver,
        capability: CompletionCapability | None = None,
        max_depth: int = 3,
        min_split_lines: int = 30,
        max_comparisons: int = 50,
        analyze_after_extract: bool = True,
        max_step_failures: int = 3,
        merge_batch_size: int = 25,
        max_tokens: int = 4000,
    ):
        self.resolver = resolver
        self.capability = capability
        self.max_depth = max_depth
        self.min_split_lines = min_split_lines
        self.max_comparisons = max_comparisons
        self.analyze_after_extract = analyze_after_extract
        self.max_step_failures = max_step_failures
        self.merge_batch_size = merge_batch_size
        self.max_tokens = max_tokens
        self._handlers = {
            JobType.EXTRACT_RECURSIVE: self._step_extract,
            JobType.ANALYZE_RELATIONSHIPS: self._step_analyze,
            JobType.CONSOLIDATE: self._step_consolidate,
            JobType.MERGE: self._step_merge,
        }

    def _get_capability(self) -> CompletionCapability:
        if self.capability is None:
            from .capability import LLMCapability

            self.capability = LLMCapability(max_tokens=self.max_tokens)
        return self.capability

    @property
    def extractor(self) -> BlockExtractor:
        return BlockExtractor(self._get_capability(), max_tokens=self.max_tokens)

    @property
    def analyzer(self) -> RelationshipAnalyzer:
        return RelationshipAnalyzer(self._get_capability(), max_tokens=self.max_tokens)

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def start_extraction(
        self,
        locator: Locator,
        content: str,
        title: str,
        max_depth: int | None = None,
        document_tags=(),
        source_type: str = "document",
        source_ref: str | None = None,
    ) -> MemoryJob:
        """Queue a recursive extraction. Initialization is deferred to the first step."""
        if not content or not content.strip():
            raise ValidationError("Extraction content is required")
        depth = self.max_depth if max_depth is None else max_depth
        if depth < 1:
            raise ValidationError("max_depth must be at least 1")
        with PackStore.open(locator, self.resolver) as pack:
            with pack.transaction():
                source_id = pack.store_source(title, content)
                cursor = ExtractCursor(
                    source_id=source_id,
                    title=title or "Untitled Document",
                    max_depth=depth,
                    document_tags=list(document_tags),
                    source_type=source_type,
                    source_ref=source_ref,
                )
                job = pack.enqueue_job(JobType.EXTRACT_RECURSIVE, cursor, total_steps=1)
        logger.info("pipeline.extraction_queued", job_id=job.id, title=title, max_depth=depth)
        return job

    def start_relationship_analysis(
        self, locator: Locator, node_ids: list[str] | None = None
    ) -> MemoryJob:
        """Queue relationship analysis over ``node_ids`` (default: every active node)."""
        with PackStore.open(locator, self.resolver) as pack:
            if node_ids is None:
                node_ids = [n.id for n in pack.find_all_nodes()]
            return self._enqueue_analysis(pack, list(node_ids))

    def _enqueue_analysis(self, pack: PackStore, node_ids: list[str]) -> MemoryJob:
        cursor = RelationshipCursor(node_queue=node_ids, max_comparisons=self.max_comparisons)
        return pack.enqueue_job(JobType.ANALYZE_RELATIONSHIPS, cursor, total_steps=len(node_ids))

    def start_consolidation(
        self,
        locator: Locator,
        decay_rate: float = 0.99,
        decay_min_days: int = 7,
        prune_threshold: float = 0.1,
        prune_min_age_days: int = 30,
    ) -> MemoryJob:
        cursor = ConsolidateCursor(
            decay_rate=decay_rate,
            decay_min_days=decay_min_days,
            prune_threshold=prune_threshold,
            prune_min_age_days=prune_min_age_days,
        )
        with PackStore.open(locator, self.resolver) as pack:
            return pack.enqueue_job(JobType.CONSOLIDATE, cursor, total_steps=len(cursor.phases))

    def start_merge(self, locator: Locator, source: Locator) -> MemoryJob:
        """Queue a copy of ``source``'s active graph into the pack at ``locator``."""
        if self.resolver.resolve(source) == self.resolver.resolve(locator):
            raise ValidationError("Cannot merge a pack into itself")
        with PackStore.open(source, self.resolver) as src:
            source_nodes = src.get_stats()["total_nodes"]
        cursor = MergeCursor(source=source.to_dict(), batch_size=self.merge_batch_size)
        estimate = math.ceil(source_nodes / cursor.batch_size) + 1
        with PackStore.open(locator, self.resolver) as pack:
            return pack.enqueue_job(JobType.MERGE, cursor, total_steps=estimate)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def process_step(self, locator: Locator, job_id: str) -> bool:
        """Apply one unit of work to the job. Returns True once the job is terminal.

        Completion-capability failures and malformed input are recorded on the
        job instead of raised. Anything else propagates.
        """
        with PackStore.open(locator, self.resolver) as pack:
            job = pack.find_job_by_id(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if job.is_terminal:
                return True

            log = logger.bind(job_id=job.id, job_type=job.type.value)
            try:
                cursor = load_payload(job.type, job.payload)
                self._handlers[job.type](pack, job, cursor)
            except ExternalCapabilityError as e:
                return self._record_step_failure(pack, job_id, str(e), log)
            except (ValidationError, NotFoundError) as e:
                return self._fail_job(pack, job_id, str(e), log)

            log.info(
                "pipeline.step_applied",
                status=job.status.value,
                progress=job.progress,
                total_steps=job.total_steps,
            )
            return job.is_terminal

    def step_next(self, locator: Locator) -> StepReport:
        """Driving-loop helper: step the oldest job and report what it produced."""
        with PackStore.open(locator, self.resolver) as pack:
            jobs = pack.get_jobs_to_process(limit=1)
        if not jobs:
            return StepReport(job=None, completed=False, delta=None, has_more=False)

        watermark = now_iso()
        completed = self.process_step(locator, jobs[0].id)

        with PackStore.open(locator, self.resolver) as pack:
            delta = compute_delta(pack, watermark)
            job = pack.find_job_by_id(jobs[0].id)
            has_more = bool(pack.get_jobs_to_process(limit=1))
        return StepReport(job=job, completed=completed, delta=delta, has_more=has_more)

    def run(self, locator: Locator, max_steps: int = 1000, on_step=None) -> list[StepReport]:
        """Step until no jobs remain or ``max_steps`` is reached."""
        reports = []
        for _ in range(max_steps):
            report = self.step_next(locator)
            if report.job is None:
                break
            reports.append(report)
            if on_step:
                on_step(report)
            if not report.has_more:
                break
        return reports

    def _record_step_failure(self, pack: PackStore, job_id: str, message: str, log) -> bool:
        job = pack.find_job_by_id(job_id)
        job.start()
        job.step_failures += 1
        job.error = message
        if job.step_failures >= self.max_step_failures:
            job.fail(message)
        pack.update_job(job)
        log.warning(
            "pipeline.step_failed",
            error=message,
            failures=job.step_failures,
            status=job.status.value,
        )
        return job.is_terminal

    def _fail_job(self, pack: PackStore, job_id: str, message: str, log) -> bool:
        job = pack.find_job_by_id(job_id)
        job.start()
        job.fail(message)
        pack.update_job(job)
        log.warning("pipeline.job_failed", error=message)
        return True

    def _save(self, pack: PackStore, job: MemoryJob, cursor):
        job.payload = cursor.to_dict()
        job.step_failures = 0
        job.error = None
        pack.update_job(job)

    # ------------------------------------------------------------------
    # extract_recursive
    # ------------------------------------------------------------------

    def _load_source(self, pack: PackStore, cursor: ExtractCursor) -> str:
        source = pack.get_source(cursor.source_id)
        if not source or not (source.get("content") or "").strip():
            raise ValidationError(f"Extraction source missing or empty: {cursor.source_id}")
        return source["content"]

    def _step_extract(self, pack: PackStore, job: MemoryJob, cursor: ExtractCursor):
        content = self._load_source(pack, cursor)
        if cursor.needs_init:
            self._init_extract(pack, job, cursor, content)
            return
        if not cursor.pending_blocks:
            with pack.transaction():
                job.start()
                self._finish_extract(pack, job, cursor)
            return

        block = cursor.pending_blocks[0]
        block_content = slice_lines(content, block.start_line, block.end_line)
        if not block_content.strip():
            block_content = block.summary or block.title

        extractor = self.extractor
        node_content = (
            extractor.summarize(block_content, block.title)
            or block.summary
            or f"Section: {block.title}"
        )
        sub_blocks: list[ContentBlock] = []
        line_count = block.end_line - block.start_line + 1
        if not block.is_leaf and block.depth < cursor.max_depth and line_count > self.min_split_lines:
            split = extractor.split_blocks(block_content, block.title, start_line=block.start_line)
            if split and len(split.blocks) > 1:
                sub_blocks = split.blocks

        with pack.transaction():
            job.start()
            if pack.find_node_by_id(block.parent_node_id) is None:
                raise NotFoundError(f"Parent node no longer exists: {block.parent_node_id}")
            node = pack.store_node(
                node_content,
                category=NodeCategory.KNOWLEDGE,
                importance=0.8,
                summary=f"Section: {block.title}",
                source_type=cursor.source_type,
                source_ref=cursor.source_ref,
                tags=["document", "section", f"depth-{block.depth}", *block.tags],
                source_range=f"{block.start_line}:{block.end_line}",
                depth=block.depth,
            )
            pack.create_relationship(
                node.id, block.parent_node_id, RelationType.PART_OF, 0.9, PART_OF_CONTEXT
            )

            cursor.pending_blocks.pop(0)
            cursor.pending_blocks.extend(
                self._pending(b, parent_id=node.id, depth=block.depth + 1) for b in sub_blocks
            )
            cursor.processed_blocks += 1
            cursor.created_node_ids.append(node.id)
            job.progress = 1 + cursor.processed_blocks
            job.total_steps = job.progress + len(cursor.pending_blocks)

            if cursor.pending_blocks:
                self._save(pack, job, cursor)
            else:
                self._finish_extract(pack, job, cursor)

    def _init_extract(self, pack: PackStore, job: MemoryJob, cursor: ExtractCursor, content: str):
        extractor = self.extractor
        total_lines = len(content.split("\n"))
        summary = extractor.summarize(content, cursor.title) or f"Document: {cursor.title}"
        split = extractor.split_blocks(content, cursor.title)
        if split:
            blocks = split.blocks
            doc_tags = split.document_tags
        else:
            logger.warning("pipeline.split_fallback", job_id=job.id, title=cursor.title)
            blocks = [
                ContentBlock(
                    title=cursor.title,
                    start_line=1,
                    end_line=total_lines,
                    content=content,
                    summary=content[:100],
                    is_leaf=True,
                )
            ]
            doc_tags = []

        with pack.transaction():
            job.start()
            root = pack.store_node(
                summary,
                category=NodeCategory.KNOWLEDGE,
                importance=0.9,
                summary=f"Document: {cursor.title}",
                source_type="document_summary",
                source_ref=cursor.source_ref,
                tags=["document", "root", "summary", *doc_tags, *cursor.document_tags],
                source_range=f"1:{total_lines}",
                depth=0,
            )
            cursor.needs_init = False
            cursor.root_node_id = root.id
            cursor.created_node_ids = [root.id]
            cursor.pending_blocks = [self._pending(b, parent_id=root.id, depth=1) for b in blocks]
            job.progress = 1
            job.total_steps = 1 + len(cursor.pending_blocks)
            self._save(pack, job, cursor)

    @staticmethod
    def _pending(block: ContentBlock, parent_id: str, depth: int) -> PendingBlock:
        return PendingBlock(
            title=block.title,
            summary=block.summary,
            start_line=block.start_line,
            end_line=block.end_line,
            is_leaf=block.is_leaf,
            tags=list(block.tags),
            parent_node_id=parent_id,
            depth=depth,
        )

    def _finish_extract(self, pack: PackStore, job: MemoryJob, cursor: ExtractCursor):
        total = len(cursor.created_node_ids)
        job.payload = cursor.to_dict()
        job.step_failures = 0
        job.complete(
            {
                "total_memories": total,
                "root_node_id": cursor.root_node_id,
                "message": f"Extraction complete. Created {total} memory nodes.",
            }
        )
        pack.update_job(job)
        if self.analyze_after_extract and total > 1:
            follow_up = self._enqueue_analysis(pack, list(cursor.created_node_ids))
            job.result["analysis_job_id"] = follow_up.id
            pack.update_job(job)

    # ------------------------------------------------------------------
    # analyze_relationships
    # ------------------------------------------------------------------

    def _step_analyze(self, pack: PackStore, job: MemoryJob, cursor: RelationshipCursor):
        proposals = []
        node = None
        if cursor.node_queue:
            node = pack.find_node_by_id(cursor.node_queue[0])
            if node is not None and node.is_active:
                candidates = sorted(
                    (n for n in pack.find_all_nodes() if n.id != node.id),
                    key=lambda n: n.importance,
                    reverse=True,
                )[: cursor.max_comparisons]
                proposals = self.analyzer.analyze(node, candidates)

        with pack.transaction():
            job.start()
            created = 0
            for proposal in proposals:
                target = pack.find_node_by_id(proposal.target_id)
                if target is None or not target.is_active:
                    continue
                if pack.relationship_exists(node.id, proposal.target_id):
                    continue
                pack.create_relationship(
                    node.id, proposal.target_id, proposal.type, proposal.strength, proposal.context
                )
                created += 1

            if cursor.node_queue:
                cursor.node_queue.pop(0)
                cursor.processed += 1
            cursor.relationships_created += created
            job.progress = cursor.processed
            job.total_steps = cursor.processed + len(cursor.node_queue)

            if cursor.node_queue:
                self._save(pack, job, cursor)
            else:
                job.payload = cursor.to_dict()
                job.step_failures = 0
                job.complete(
                    {
                        "nodes_analyzed": cursor.processed,
                        "relationships_created": cursor.relationships_created,
                        "message": (
                            f"Relationship analysis complete. Analyzed {cursor.processed} nodes, "
                            f"created {cursor.relationships_created} relationships."
                        ),
                    }
                )
                pack.update_job(job)

    # ------------------------------------------------------------------
    # consolidate
    # ------------------------------------------------------------------

    def _step_consolidate(self, pack: PackStore, job: MemoryJob, cursor: ConsolidateCursor):
        with pack.transaction():
            job.start()
            if cursor.phases:
                phase = cursor.phases[0]
                if phase == "decay":
                    cursor.decayed += pack.decay_importance(cursor.decay_rate, cursor.decay_min_days)
                elif phase == "prune":
                    cursor.pruned += len(pack.prune(cursor.prune_threshold, cursor.prune_min_age_days))
                else:
                    raise ValidationError(f"Unknown consolidation phase: {phase}")
                cursor.phases.pop(0)
                job.increment_progress()
            job.total_steps = job.progress + len(cursor.phases)

            if cursor.phases:
                self._save(pack, job, cursor)
            else:
                job.payload = cursor.to_dict()
                job.step_failures = 0
                job.complete({"decayed": cursor.decayed, "pruned": cursor.pruned})
                pack.update_job(job)

    # ------------------------------------------------------------------
    # merge
    # ------------------------------------------------------------------

    def _step_merge(self, pack: PackStore, job: MemoryJob, cursor: MergeCursor):
        source = Locator.from_dict(cursor.source)
        if not source.project_id and pack.locator is not None:
            source = Locator(pack.locator.project_id, source.path, source.name)

        with PackStore.open(source, self.resolver) as src:
            if cursor.phase == "nodes":
                batch = src.find_all_nodes(limit=cursor.batch_size, offset=cursor.offset)
                remaining = max(0, src.get_stats()["total_nodes"] - cursor.offset - len(batch))
                edges = []
            else:
                batch = []
                remaining = 0
                edges = src.find_all_relationships(active_only=True)

        with pack.transaction():
            job.start()
            for node in batch:
                copy = pack.store_node(
                    node.content,
                    category=node.category,
                    importance=node.importance,
                    summary=node.summary,
                    source_type=node.source_type,
                    source_ref=node.source_ref,
                    tags=node.tags,
                    confidence=node.confidence,
                    source_range=node.source_range,
                    depth=node.depth,
                )
                cursor.id_map[node.id] = copy.id
            cursor.offset += len(batch)
            cursor.nodes_merged += len(batch)

            for edge in edges:
                src_id = cursor.id_map.get(edge.source_id)
                dst_id = cursor.id_map.get(edge.target_id)
                if src_id and dst_id:
                    pack.create_relationship(src_id, dst_id, edge.type, edge.strength, edge.context)
                    cursor.relationships_merged += 1

            job.increment_progress()
            if cursor.phase == "nodes":
                if len(batch) < cursor.batch_size or remaining == 0:
                    cursor.phase = "edges"
                job.total_steps = job.progress + math.ceil(remaining / cursor.batch_size) + 1
                self._save(pack, job, cursor)
            else:
                job.payload = cursor.to_dict()
                job.step_failures = 0
                job.complete(
                    {
                        "nodes_merged": cursor.nodes_merged,
                        "relationships_merged": cursor.relationships_merged,
                        "source": str(source),
                    }
                )
                pack.update_job(job)
