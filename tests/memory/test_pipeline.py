"""Tests for JobPipeline — one step per call across every job type."""

import json

import pytest

from memory.errors import ExternalCapabilityError, NotFoundError, StorageError, ValidationError
from memory.locator import Locator
from memory.models import JobStatus, JobType, RelationType, iso_days_ago
from memory.pipeline import PART_OF_CONTEXT, JobPipeline
from memory.store import PackStore

TWO_SECTION_DOC = "\n".join(
    [
        "# Intro",
        "Python is a programming language.",
        "It was created by Guido van Rossum.",
        "It emphasizes readability.",
        "",
        "# Details",
        "Python supports several paradigms.",
        "The standard library is large.",
        "Packages are published on PyPI.",
        "Virtual environments isolate dependencies.",
    ]
)

TWO_SECTION_SPLIT = {
    "blocks": [
        {"title": "Intro", "summary": "What Python is", "start_line": 1, "end_line": 5, "is_leaf": True, "tags": ["python"]},
        {"title": "Details", "summary": "Paradigms and packaging", "start_line": 6, "end_line": 10, "is_leaf": True, "tags": ["packaging"]},
    ],
    "document_summary": "Python overview",
    "document_tags": ["programming"],
}


@pytest.fixture
def target(resolver, locator):
    """A created-and-closed pack; tests reopen it as needed."""
    PackStore.create(locator, resolver, name="Target").close()
    return locator


def _pipeline(resolver, capability, **kwargs):
    kwargs.setdefault("analyze_after_extract", False)
    return JobPipeline(resolver, capability=capability, **kwargs)


def _job(resolver, locator, job_id):
    with PackStore.open(locator, resolver) as pack:
        return pack.find_job_by_id(job_id)


def _drain(pipeline, locator, job_id, limit=50):
    """Step one job to completion, recording (status, progress, total) after each step."""
    history = []
    for _ in range(limit):
        done = pipeline.process_step(locator, job_id)
        job = _job(pipeline.resolver, locator, job_id)
        history.append((job.status, job.progress, job.total_steps))
        if done:
            return history
    raise AssertionError("job did not finish")


class TestExtractRecursive:
    def test_two_section_document(self, resolver, target, make_capability):
        cap = make_capability(splits=[TWO_SECTION_SPLIT])
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python", max_depth=2, document_tags=["Lang"])

        history = _drain(pipeline, target, job.id)

        assert [h[0] for h in history] == [JobStatus.PROCESSING, JobStatus.PROCESSING, JobStatus.COMPLETED]
        progress = [h[1] for h in history]
        assert progress == sorted(progress)
        final = _job(resolver, target, job.id)
        assert final.progress == final.total_steps == 3
        assert final.result["total_memories"] == 3
        assert "analysis_job_id" not in final.result

        with PackStore.open(target, resolver) as pack:
            root = pack.find_node_by_id(final.result["root_node_id"])
            assert root.content == "Document: Python\n\nA short summary."
            assert root.depth == 0
            assert root.importance == 0.9
            assert {"document", "root", "summary", "programming", "lang"} <= set(root.tags)

            sections = [n for n in pack.find_all_nodes() if n.id != root.id]
            assert sorted(n.summary for n in sections) == ["Section: Details", "Section: Intro"]
            assert all(n.depth == 1 for n in sections)
            assert {n.source_range for n in sections} == {"1:5", "6:10"}

            edges = pack.find_all_relationships()
            assert len(edges) == 2
            assert all(e.type == RelationType.PART_OF and e.target_id == root.id for e in edges)
            assert all(e.context == PART_OF_CONTEXT and e.strength == 0.9 for e in edges)

    def test_nested_split_respects_depth(self, resolver, target, make_capability):
        content = "\n".join(f"line {i}" for i in range(1, 41))
        outer = {"blocks": [{"title": "Everything", "start_line": 1, "end_line": 40, "is_leaf": False}]}
        inner = {
            "blocks": [
                {"title": "First half", "start_line": 1, "end_line": 20, "is_leaf": True},
                {"title": "Second half", "start_line": 21, "end_line": 40, "is_leaf": True},
            ]
        }
        cap = make_capability(splits=[outer, inner])
        pipeline = _pipeline(resolver, cap, min_split_lines=30)
        job = pipeline.start_extraction(target, content, "Long", max_depth=3)

        _drain(pipeline, target, job.id)

        with PackStore.open(target, resolver) as pack:
            nodes = {n.summary: n for n in pack.find_all_nodes()}
            parent = nodes["Section: Everything"]
            assert parent.depth == 1
            for title in ("First half", "Second half"):
                child = nodes[f"Section: {title}"]
                assert child.depth == 2
                assert pack.relationship_exists(child.id, parent.id, either_direction=False)

    def test_max_depth_stops_recursion(self, resolver, target, make_capability):
        content = "\n".join(f"line {i}" for i in range(1, 41))
        outer = {"blocks": [{"title": "Everything", "start_line": 1, "end_line": 40, "is_leaf": False}]}
        cap = make_capability(splits=[outer])
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, content, "Long", max_depth=1)

        _drain(pipeline, target, job.id)

        assert _job(resolver, target, job.id).result["total_memories"] == 2

    def test_unparseable_split_falls_back_to_single_block(self, resolver, target, make_capability):
        cap = make_capability(splits=["I refuse to answer in JSON"])
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")

        history = _drain(pipeline, target, job.id)

        assert len(history) == 2
        final = _job(resolver, target, job.id)
        assert final.status == JobStatus.COMPLETED
        assert final.result["total_memories"] == 2
        with PackStore.open(target, resolver) as pack:
            leaf = [n for n in pack.find_all_nodes() if n.depth == 1][0]
            assert leaf.source_range == "1:10"

    def test_empty_summary_falls_back_to_title(self, resolver, target, make_capability):
        cap = make_capability(summary="", splits=[TWO_SECTION_SPLIT])
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        pipeline.process_step(target, job.id)

        job = _job(resolver, target, job.id)
        with PackStore.open(target, resolver) as pack:
            root = pack.find_node_by_id(job.payload["root_node_id"])
        assert root.content == "Document: Python"

    def test_queues_analysis_when_enabled(self, resolver, target, make_capability):
        cap = make_capability(splits=[TWO_SECTION_SPLIT])
        pipeline = _pipeline(resolver, cap, analyze_after_extract=True)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")

        _drain(pipeline, target, job.id)

        final = _job(resolver, target, job.id)
        follow_up = _job(resolver, target, final.result["analysis_job_id"])
        assert follow_up.type == JobType.ANALYZE_RELATIONSHIPS
        assert follow_up.status == JobStatus.PENDING
        assert len(follow_up.payload["node_queue"]) == 3

    def test_missing_parent_fails_job(self, resolver, target, make_capability):
        cap = make_capability(splits=[TWO_SECTION_SPLIT])
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        pipeline.process_step(target, job.id)

        with PackStore.open(target, resolver) as pack:
            root_id = pack.find_job_by_id(job.id).payload["root_node_id"]
            pack.delete_node_with_children(root_id)

        assert pipeline.process_step(target, job.id) is True
        failed = _job(resolver, target, job.id)
        assert failed.status == JobStatus.FAILED
        assert "Parent node" in failed.error

    def test_rejects_empty_content(self, resolver, target, make_capability):
        with pytest.raises(ValidationError):
            _pipeline(resolver, make_capability()).start_extraction(target, "   ", "Empty")

    def test_rejects_bad_depth(self, resolver, target, make_capability):
        with pytest.raises(ValidationError):
            _pipeline(resolver, make_capability()).start_extraction(target, "x", "Doc", max_depth=0)


class TestFailurePolicy:
    def test_capability_failures_accumulate_then_fail(self, resolver, target, make_capability):
        cap = make_capability()
        cap.propose.side_effect = ExternalCapabilityError("provider down")
        pipeline = _pipeline(resolver, cap, max_step_failures=3)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")

        assert pipeline.process_step(target, job.id) is False
        first = _job(resolver, target, job.id)
        assert first.status == JobStatus.PROCESSING
        assert first.step_failures == 1
        assert first.error == "provider down"

        assert pipeline.process_step(target, job.id) is False
        assert pipeline.process_step(target, job.id) is True
        assert _job(resolver, target, job.id).status == JobStatus.FAILED

        with PackStore.open(target, resolver) as pack:
            assert pack.get_stats()["total_nodes"] == 0

    def test_success_resets_failure_count(self, resolver, target, make_capability):
        cap = make_capability(splits=[TWO_SECTION_SPLIT])
        router = cap.propose.side_effect
        calls = {"n": 0}

        def flaky(content, instructions, max_tokens=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ExternalCapabilityError("blip")
            return router(content, instructions, max_tokens)

        cap.propose.side_effect = flaky
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")

        pipeline.process_step(target, job.id)
        assert _job(resolver, target, job.id).step_failures == 1
        pipeline.process_step(target, job.id)
        recovered = _job(resolver, target, job.id)
        assert recovered.step_failures == 0
        assert recovered.error is None
        assert recovered.progress == 1

    def test_unknown_job(self, resolver, target, make_capability):
        with pytest.raises(NotFoundError):
            _pipeline(resolver, make_capability()).process_step(target, "missing")

    def test_terminal_job_is_left_alone(self, resolver, target, make_capability):
        cap = make_capability()
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        with PackStore.open(target, resolver) as pack:
            pack.cancel_job(job.id)

        assert pipeline.process_step(target, job.id) is True
        cap.propose.assert_not_called()
        assert _job(resolver, target, job.id).status == JobStatus.CANCELLED

    def test_mismatched_payload_fails_job(self, resolver, target, make_capability):
        with PackStore.open(target, resolver) as pack:
            job = pack.enqueue_job(JobType.CONSOLIDATE, {"kind": "merge", "version": 2})
        assert _pipeline(resolver, make_capability()).process_step(target, job.id) is True
        assert _job(resolver, target, job.id).status == JobStatus.FAILED

    def test_malformed_payload_fails_job(self, resolver, target, make_capability):
        payload = {"kind": "extract_recursive", "version": 2, "source_id": "s", "pending_blocks": [{"title": "x"}]}
        with PackStore.open(target, resolver) as pack:
            job = pack.enqueue_job(JobType.EXTRACT_RECURSIVE, payload)
        assert _pipeline(resolver, make_capability()).process_step(target, job.id) is True
        failed = _job(resolver, target, job.id)
        assert failed.status == JobStatus.FAILED
        assert "Malformed" in failed.error

    def test_storage_error_rolls_back_whole_step(self, resolver, target, make_capability, monkeypatch):
        pipeline = _pipeline(resolver, make_capability(splits=[TWO_SECTION_SPLIT]))
        job = pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        pipeline.process_step(target, job.id)

        with PackStore.open(target, resolver) as pack:
            nodes_before = pack.get_stats()["total_nodes"]
            job_before = pack.find_job_by_id(job.id).to_dict()

        def broken(self, *args, **kwargs):
            raise StorageError("disk full", operation="create_relationship")

        monkeypatch.setattr(PackStore, "create_relationship", broken)
        with pytest.raises(StorageError):
            pipeline.process_step(target, job.id)

        with PackStore.open(target, resolver) as pack:
            assert pack.get_stats()["total_nodes"] == nodes_before
            assert pack.find_job_by_id(job.id).to_dict() == job_before


class TestAnalyzeRelationships:
    def _seed(self, resolver, locator):
        with PackStore.open(locator, resolver) as pack:
            a = pack.store_node("Prefers tea", importance=0.5)
            b = pack.store_node("Prefers coffee", importance=0.9)
            c = pack.store_node("Owns a cat", importance=0.1)
        return a, b, c

    def test_creates_proposed_edges(self, resolver, target, make_capability):
        a, b, c = self._seed(resolver, target)
        analysis = {"relationships": [{"existingMemoryId": b.id, "type": "CONTRADICTS", "strength": 0.9}]}
        pipeline = _pipeline(resolver, make_capability(analysis=analysis))
        job = pipeline.start_relationship_analysis(target, [a.id])

        assert pipeline.process_step(target, job.id) is True

        final = _job(resolver, target, job.id)
        assert final.result["nodes_analyzed"] == 1
        assert final.result["relationships_created"] == 1
        with PackStore.open(target, resolver) as pack:
            rels = pack.get_relationships(a.id)
            assert [(r.target_id, r.type) for r in rels] == [(b.id, RelationType.CONTRADICTS)]

    def test_existing_edge_not_duplicated(self, resolver, target, make_capability):
        a, b, c = self._seed(resolver, target)
        with PackStore.open(target, resolver) as pack:
            pack.create_relationship(b.id, a.id, RelationType.RELATES_TO)
        analysis = {"relationships": [{"existingMemoryId": b.id, "type": "REINFORCES"}]}
        pipeline = _pipeline(resolver, make_capability(analysis=analysis))
        job = pipeline.start_relationship_analysis(target, [a.id])
        pipeline.process_step(target, job.id)

        assert _job(resolver, target, job.id).result["relationships_created"] == 0

    def test_candidates_limited_by_importance(self, resolver, target, make_capability):
        a, b, c = self._seed(resolver, target)
        analysis = {"relationships": [{"existingMemoryId": c.id, "type": "RELATES_TO"}]}
        pipeline = _pipeline(resolver, make_capability(analysis=analysis), max_comparisons=1)
        job = pipeline.start_relationship_analysis(target, [a.id])
        pipeline.process_step(target, job.id)

        assert _job(resolver, target, job.id).result["relationships_created"] == 0

    def test_one_node_per_step(self, resolver, target, make_capability):
        self._seed(resolver, target)
        pipeline = _pipeline(resolver, make_capability())
        job = pipeline.start_relationship_analysis(target)
        assert job.total_steps == 3

        history = _drain(pipeline, target, job.id)

        assert [h[1] for h in history] == [1, 2, 3]
        assert history[-1][0] == JobStatus.COMPLETED

    def test_forgotten_node_is_skipped(self, resolver, target, make_capability):
        a, b, c = self._seed(resolver, target)
        with PackStore.open(target, resolver) as pack:
            pack.forget_node(a.id)
        cap = make_capability()
        pipeline = _pipeline(resolver, cap)
        job = pipeline.start_relationship_analysis(target, [a.id])

        assert pipeline.process_step(target, job.id) is True
        cap.propose.assert_not_called()


class TestConsolidate:
    def test_decay_then_prune(self, resolver, target, make_capability):
        with PackStore.open(target, resolver) as pack:
            weak = pack.store_node("fading", importance=0.5)
            strong = pack.store_node("core", importance=1.0)
            pack._conn.execute("UPDATE memory_nodes SET created_at = ?", (iso_days_ago(40),))

        pipeline = _pipeline(resolver, make_capability())
        job = pipeline.start_consolidation(
            target, decay_rate=0.5, decay_min_days=7, prune_threshold=0.3, prune_min_age_days=30
        )
        history = _drain(pipeline, target, job.id)

        assert len(history) == 2
        final = _job(resolver, target, job.id)
        assert final.result == {"decayed": 2, "pruned": 1}
        with PackStore.open(target, resolver) as pack:
            assert pack.find_node_by_id(weak.id).is_active is False
            assert pack.find_node_by_id(strong.id).importance == pytest.approx(0.5)

    def test_unknown_phase_fails_job(self, resolver, target, make_capability):
        with PackStore.open(target, resolver) as pack:
            job = pack.enqueue_job(JobType.CONSOLIDATE, {"phases": ["explode"]})
        assert _pipeline(resolver, make_capability()).process_step(target, job.id) is True
        assert _job(resolver, target, job.id).status == JobStatus.FAILED


class TestMerge:
    @pytest.fixture
    def source(self, resolver):
        locator = Locator("default", "packs", "source.cqmpack")
        with PackStore.create(locator, resolver) as pack:
            a = pack.store_node("A", tags=["merged"])
            b = pack.store_node("B")
            c = pack.store_node("C")
            gone = pack.store_node("forgotten")
            pack.create_relationship(b.id, a.id, RelationType.PART_OF)
            pack.create_relationship(c.id, a.id, RelationType.RELATES_TO)
            pack.create_relationship(gone.id, a.id, RelationType.RELATES_TO)
            pack.forget_node(gone.id)
        return locator

    def test_copies_active_graph_in_batches(self, resolver, target, source, make_capability):
        pipeline = _pipeline(resolver, make_capability(), merge_batch_size=2)
        job = pipeline.start_merge(target, source)

        history = _drain(pipeline, target, job.id)

        assert len(history) == 3
        final = _job(resolver, target, job.id)
        assert final.result["nodes_merged"] == 3
        assert final.result["relationships_merged"] == 2
        with PackStore.open(target, resolver) as pack:
            nodes = pack.find_all_nodes()
            assert sorted(n.content for n in nodes) == ["A", "B", "C"]
            assert [n.tags for n in nodes if n.content == "A"] == [["merged"]]
            assert pack.get_stats()["total_edges"] == 2
        with PackStore.open(source, resolver) as src:
            source_ids = {n.id for n in src.find_all_nodes()}
        assert not source_ids & {n.id for n in nodes}

    def test_cannot_merge_into_itself(self, resolver, target, make_capability):
        with pytest.raises(ValidationError):
            _pipeline(resolver, make_capability()).start_merge(target, target)

    def test_missing_source(self, resolver, target, make_capability):
        with pytest.raises(NotFoundError):
            _pipeline(resolver, make_capability()).start_merge(
                target, Locator("default", "packs", "ghost.cqmpack")
            )


class TestDrivingLoop:
    def test_step_next_reports_delta(self, resolver, target, make_capability):
        pipeline = _pipeline(resolver, make_capability(splits=[TWO_SECTION_SPLIT]))
        pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")

        report = pipeline.step_next(target)

        assert report.job.status == JobStatus.PROCESSING
        assert report.completed is False
        assert report.has_more is True
        assert len(report.delta.nodes) == 1
        assert report.delta.nodes[0].depth == 0
        json.dumps(report.to_dict())

    def test_step_next_without_jobs(self, resolver, target, make_capability):
        report = _pipeline(resolver, make_capability()).step_next(target)
        assert report.job is None
        assert report.has_more is False

    def test_run_processes_follow_up_jobs(self, resolver, target, make_capability):
        pipeline = _pipeline(
            resolver, make_capability(splits=[TWO_SECTION_SPLIT]), analyze_after_extract=True
        )
        pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        seen = []

        reports = pipeline.run(target, on_step=seen.append)

        assert len(reports) == len(seen) == 6
        assert reports[-1].has_more is False
        with PackStore.open(target, resolver) as pack:
            assert pack.get_active_jobs() == []
            statuses = {j.type: j.status for j in pack.get_recently_completed_jobs()}
        assert statuses == {
            JobType.EXTRACT_RECURSIVE: JobStatus.COMPLETED,
            JobType.ANALYZE_RELATIONSHIPS: JobStatus.COMPLETED,
        }

    def test_run_respects_max_steps(self, resolver, target, make_capability):
        pipeline = _pipeline(resolver, make_capability(splits=[TWO_SECTION_SPLIT]))
        pipeline.start_extraction(target, TWO_SECTION_DOC, "Python")
        assert len(pipeline.run(target, max_steps=1)) == 1
