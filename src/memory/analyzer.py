"""Relationship discovery between a node and the rest of its pack."""

import json
from dataclasses import dataclass

import structlog

from .capability import CompletionCapability
from .extractor import strip_fences
from .models import ANALYZABLE_TYPES, MemoryNode, RelationType, clamp

logger = structlog.get_logger()

DEFAULT_STRENGTH = 0.8

_ANALYZER_SYSTEM = """You find meaningful relationships between a NEW memory and EXISTING memories.

Relationship types (use ONLY these exact values):
- RELATES_TO: clear topical connection that is neither of the others
- REINFORCES: the new memory supports or confirms an existing one
- CONTRADICTS: the new memory conflicts with an existing one (changed preference,
  updated fact, opposite statement). Detecting these matters most.
Do NOT use PART_OF; structural links are handled elsewhere.

Respond as JSON:
{"relationships": [{"existingMemoryId": "<id>", "type": "CONTRADICTS", "strength": 0.9, "context": "<under 100 chars>"}],
 "analysis": "<one sentence>"}

Rules:
- strength between 0.5 (weak) and 1.0 (very strong)
- fewer strong relationships beat many weak ones
- empty relationships array when nothing meaningful connects
- Output ONLY JSON. No preamble."""


@dataclass
class ProposedRelationship:
    target_id: str
    type: RelationType
    strength: float = DEFAULT_STRENGTH
    context: str | None = None


class RelationshipAnalyzer:
    """Asks the completion capability which existing nodes a node relates to."""

    def __init__(self, capability: CompletionCapability, max_tokens: int = 2000):
        self.capability = capability
        self.max_tokens = max_tokens

    def analyze(self, node: MemoryNode, candidates: list[MemoryNode]) -> list[ProposedRelationship]:
        """Proposed edges from ``node`` to members of ``candidates``.

        Invalid types, self-links and ids outside ``candidates`` are dropped.
        ExternalCapabilityError propagates; unparseable output yields ``[]``.
        """
        others = [c for c in candidates if c.id != node.id]
        if not others:
            return []
        response = self.capability.propose(
            self._build_prompt(node, others), _ANALYZER_SYSTEM, max_tokens=self.max_tokens
        )
        return self._parse_response(response, node.id, {c.id for c in others})

    @staticmethod
    def _build_prompt(node: MemoryNode, others: list[MemoryNode]) -> str:
        lines = [
            "NEW memory:",
            f"- id: {node.id}",
            f"- category: {node.category.value}",
            f"- content: {node.content}",
        ]
        if node.tags:
            lines.append(f"- tags: {', '.join(node.tags)}")
        lines += ["", "EXISTING memories:"]
        for other in others:
            text = other.summary or other.content[:300]
            tags = f" [tags: {', '.join(other.tags)}]" if other.tags else ""
            lines.append(
                f"- id: {other.id} | {other.category.value} | importance {other.importance:.2f}"
                f" | {text}{tags}"
            )
        return "\n".join(lines)

    def _parse_response(
        self, response: str, node_id: str, allowed_ids: set[str]
    ) -> list[ProposedRelationship]:
        text = strip_fences(response or "")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("analyzer.parse_failed", node_id=node_id, response=text[:200])
            return []
        if not isinstance(data, dict):
            return []

        proposals = []
        seen = set()
        for item in data.get("relationships") or []:
            if not isinstance(item, dict):
                continue
            target = item.get("existingMemoryId")
            raw_type = str(item.get("type", "")).strip().upper()
            if not target or target == node_id or target not in allowed_ids or target in seen:
                continue
            try:
                rel_type = RelationType(raw_type)
            except ValueError:
                logger.warning("analyzer.invalid_type", node_id=node_id, type=raw_type)
                continue
            if rel_type not in ANALYZABLE_TYPES:
                continue
            strength = item.get("strength", DEFAULT_STRENGTH)
            if not isinstance(strength, (int, float)):
                strength = DEFAULT_STRENGTH
            seen.add(target)
            proposals.append(
                ProposedRelationship(
                    target_id=target,
                    type=rel_type,
                    strength=clamp(strength),
                    context=item.get("context") or None,
                )
            )
        return proposals
