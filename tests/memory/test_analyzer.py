"""Tests for RelationshipAnalyzer response handling."""

import json
from unittest.mock import MagicMock

import pytest

from memory.analyzer import DEFAULT_STRENGTH, RelationshipAnalyzer
from memory.capability import CompletionCapability
from memory.errors import ExternalCapabilityError
from memory.models import MemoryNode, NodeCategory, RelationType


def _node(id, content="text", importance=0.5, tags=None):
    return MemoryNode(id=id, content=content, category=NodeCategory.FACT, importance=importance, tags=tags or [])


@pytest.fixture
def capability():
    return MagicMock(spec=CompletionCapability)


def _respond(capability, relationships):
    capability.propose.return_value = json.dumps({"relationships": relationships, "analysis": "ok"})


class TestAnalyze:
    def test_valid_proposals(self, capability):
        _respond(
            capability,
            [
                {"existingMemoryId": "b", "type": "contradicts", "strength": 0.9, "context": "changed"},
                {"existingMemoryId": "c", "type": "RELATES_TO"},
            ],
        )
        result = RelationshipAnalyzer(capability).analyze(_node("a"), [_node("b"), _node("c")])
        assert [(p.target_id, p.type) for p in result] == [
            ("b", RelationType.CONTRADICTS),
            ("c", RelationType.RELATES_TO),
        ]
        assert result[0].context == "changed"
        assert result[1].strength == DEFAULT_STRENGTH

    def test_filters_invalid_entries(self, capability):
        _respond(
            capability,
            [
                {"existingMemoryId": "a", "type": "RELATES_TO"},
                {"existingMemoryId": "zzz", "type": "RELATES_TO"},
                {"existingMemoryId": "b", "type": "PART_OF"},
                {"existingMemoryId": "b", "type": "LOVES"},
                {"existingMemoryId": "b", "type": "REINFORCES", "strength": 7},
                {"existingMemoryId": "b", "type": "RELATES_TO"},
                "junk",
            ],
        )
        result = RelationshipAnalyzer(capability).analyze(_node("a"), [_node("b")])
        assert len(result) == 1
        assert result[0].type == RelationType.REINFORCES
        assert result[0].strength == 1.0

    def test_non_numeric_strength_defaults(self, capability):
        _respond(capability, [{"existingMemoryId": "b", "type": "RELATES_TO", "strength": "high"}])
        result = RelationshipAnalyzer(capability).analyze(_node("a"), [_node("b")])
        assert result[0].strength == DEFAULT_STRENGTH

    def test_unparseable_yields_empty(self, capability):
        capability.propose.return_value = "no json here"
        assert RelationshipAnalyzer(capability).analyze(_node("a"), [_node("b")]) == []

    def test_no_candidates_skips_call(self, capability):
        assert RelationshipAnalyzer(capability).analyze(_node("a"), [_node("a")]) == []
        capability.propose.assert_not_called()

    def test_prompt_lists_candidates(self, capability):
        _respond(capability, [])
        RelationshipAnalyzer(capability).analyze(
            _node("a", content="new thing", tags=["x"]), [_node("b", content="old thing", tags=["y"])]
        )
        prompt = capability.propose.call_args[0][0]
        assert "- id: a" in prompt
        assert "new thing" in prompt
        assert "- id: b" in prompt
        assert "[tags: y]" in prompt

    def test_capability_failure_propagates(self, capability):
        capability.propose.side_effect = ExternalCapabilityError("down")
        with pytest.raises(ExternalCapabilityError):
            RelationshipAnalyzer(capability).analyze(_node("a"), [_node("b")])
