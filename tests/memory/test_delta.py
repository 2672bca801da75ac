"""Tests for delta synchronization watermarks."""

from memory.delta import compute_delta
from memory.models import RelationType


class TestComputeDelta:
    def test_full_snapshot_when_since_is_none(self, pack):
        a = pack.store_node("A")
        b = pack.store_node("B")
        rel = pack.create_relationship(a.id, b.id, RelationType.RELATES_TO)
        delta = compute_delta(pack, None)
        assert {n.id for n in delta.nodes} == {a.id, b.id}
        assert [e.id for e in delta.edges] == [rel.id]
        assert delta.timestamp == rel.created_at

    def test_empty_pack_returns_snapshot_stamp(self, pack):
        delta = compute_delta(pack, None)
        assert delta.is_empty
        assert delta.timestamp is not None

    def test_no_changes_keeps_watermark(self, pack):
        pack.store_node("A")
        first = compute_delta(pack, None)
        second = compute_delta(pack, first.timestamp)
        assert second.is_empty
        assert second.timestamp == first.timestamp

    def test_chaining_never_duplicates_or_omits(self, pack):
        seen_nodes: list[str] = []
        seen_edges: list[str] = []
        created_nodes = []
        created_edges = []
        watermark = None
        for round_no in range(4):
            for i in range(3):
                created_nodes.append(pack.store_node(f"round {round_no} node {i}").id)
            created_edges.append(
                pack.create_relationship(created_nodes[-1], created_nodes[0], RelationType.RELATES_TO).id
            )
            delta = compute_delta(pack, watermark)
            seen_nodes += [n.id for n in delta.nodes]
            seen_edges += [e.id for e in delta.edges]
            watermark = delta.timestamp
        assert sorted(seen_nodes) == sorted(created_nodes)
        assert len(seen_nodes) == len(set(seen_nodes))
        assert sorted(seen_edges) == sorted(created_edges)

    def test_forgotten_nodes_reported_as_removed(self, pack):
        node = pack.store_node("A")
        watermark = compute_delta(pack, None).timestamp
        pack.forget_node(node.id)
        delta = compute_delta(pack, watermark)
        assert delta.nodes == []
        assert delta.removed_node_ids == [node.id]

    def test_recall_is_not_a_change(self, pack):
        pack.store_node("Python tips")
        watermark = compute_delta(pack, None).timestamp
        pack.recall("python")
        assert compute_delta(pack, watermark).is_empty

    def test_tag_addition_is_a_change(self, pack):
        node = pack.store_node("Python tips", tags=["python"])
        watermark = compute_delta(pack, None).timestamp
        pack.add_tags(node.id, ["snippets"])
        delta = compute_delta(pack, watermark)
        assert [n.id for n in delta.nodes] == [node.id]
        assert "snippets" in delta.nodes[0].tags

    def test_repeated_tag_is_not_a_change(self, pack):
        node = pack.store_node("Python tips", tags=["python"])
        watermark = compute_delta(pack, None).timestamp
        pack.add_tags(node.id, ["Python"])
        assert compute_delta(pack, watermark).is_empty

    def test_supersede_reports_new_and_removed(self, pack):
        old = pack.store_node("v1")
        watermark = compute_delta(pack, None).timestamp
        new = pack.update_node(old.id, "v2")
        delta = compute_delta(pack, watermark)
        assert [n.id for n in delta.nodes] == [new.id]
        assert delta.removed_node_ids == [old.id]

    def test_store_wrapper_returns_dict(self, pack):
        pack.store_node("A")
        data = pack.get_graph_delta(None)
        assert set(data) == {"nodes", "edges", "removed_node_ids", "timestamp"}
        assert data["nodes"][0]["content"] == "A"
