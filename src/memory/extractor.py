"""Document decomposition: summaries and line-ranged content blocks."""

import json
import re
from dataclasses import dataclass, field

import structlog

from .capability import CompletionCapability

logger = structlog.get_logger()

_SUMMARY_SYSTEM = """You summarize documents for a long-term memory store.

Rules:
- Cover the main topics, themes and key points
- Keep concrete facts, names and dates exactly as written
- 100-300 words depending on how dense the document is
- Write in the language of the document
- Never invent details that are not in the text; leave obfuscated values as they are
- Output ONLY the summary text. No headings, no preamble."""

_BLOCK_SYSTEM = """You split content into logical blocks for hierarchical memory extraction.

The content is shown with LINE NUMBERS at the start of every line. Find its natural
structure (headings, chapters, topic shifts, time periods) and return a few larger,
self-contained blocks.

For each block give:
- title: short title for the section
- summary: one line, at most 100 characters
- start_line / end_line: line numbers exactly as shown in the content
- is_leaf: true when the block is small or atomic enough to need no further split
- tags: 2-5 lowercase tags (topics, people, places, concepts), hyphens for multi-word tags

Rules:
- Blocks are contiguous and cover the whole content
- Between 2 and 9 blocks; a single is_leaf block only when the content is atomic
- Never invent details that are not in the text
- Output ONLY a JSON object. No preamble, no markdown fences.

Example output:
{"blocks": [{"title": "Setup", "summary": "Installing the toolchain", "start_line": 1, "end_line": 12, "is_leaf": true, "tags": ["setup", "tooling"]}],
 "document_summary": "Overall summary, at most 200 characters",
 "document_tags": ["main-topic"]}"""


@dataclass
class ContentBlock:
    title: str
    start_line: int
    end_line: int
    content: str
    summary: str = ""
    is_leaf: bool = False
    tags: list[str] = field(default_factory=list)


@dataclass
class BlockSplit:
    blocks: list[ContentBlock]
    document_summary: str = ""
    document_tags: list[str] = field(default_factory=list)


def add_line_numbers(content: str, start_line: int = 1) -> str:
    return "\n".join(
        "%4d: %s" % (start_line + i, line) for i, line in enumerate(content.split("\n"))
    )


def slice_lines(content: str, start_line: int, end_line: int, offset: int = 1) -> str:
    """Lines ``start_line..end_line`` (inclusive, numbered from ``offset``)."""
    lines = content.split("\n")
    return "\n".join(lines[start_line - offset : end_line - offset + 1])


def strip_fences(response: str) -> str:
    text = response.strip()
    match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if match:
        return match.group(1).strip()
    return text


class BlockExtractor:
    """Summarizes documents and splits them into line-ranged blocks."""

    def __init__(self, capability: CompletionCapability, max_tokens: int = 4000):
        self.capability = capability
        self.max_tokens = max_tokens

    def summarize(self, content: str, title: str) -> str | None:
        """Summary prefixed with the document title, or None if the model returned nothing.

        ExternalCapabilityError from the capability propagates.
        """
        prompt = (
            f"Summarize the following document.\n\nDocument title: {title}\n\n---\n\n"
            f"{add_line_numbers(content)}\n\n---"
        )
        text = self.capability.propose(prompt, _SUMMARY_SYSTEM, max_tokens=self.max_tokens)
        if not text or not text.strip():
            logger.warning("extractor.empty_summary", title=title)
            return None
        return f"Document: {title}\n\n{text.strip()}"

    def split_blocks(self, content: str, title: str, start_line: int = 1) -> BlockSplit | None:
        """Ask for a block split; None when the response is unusable."""
        total = len(content.split("\n"))
        prompt = (
            f"Split the following content into logical blocks.\n\nDocument title: {title}\n"
            f"Total lines: {total} (lines {start_line} to {start_line + total - 1})\n\n---\n\n"
            f"{add_line_numbers(content, start_line)}\n\n---"
        )
        response = self.capability.propose(prompt, _BLOCK_SYSTEM, max_tokens=self.max_tokens)
        return self.parse_blocks(response, content, start_line)

    @staticmethod
    def parse_blocks(response: str, content: str, start_line: int = 1) -> BlockSplit | None:
        text = strip_fences(response or "")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("extractor.block_parse_failed", response=text[:200])
            return None
        if not isinstance(data, dict) or not isinstance(data.get("blocks"), list):
            logger.warning("extractor.block_parse_failed", response=text[:200])
            return None

        first = start_line
        last = start_line + len(content.split("\n")) - 1
        blocks = []
        for item in data["blocks"]:
            if not isinstance(item, dict):
                continue
            try:
                begin = max(first, int(item.get("start_line", first)))
                end = min(last, int(item.get("end_line", last)))
            except (TypeError, ValueError):
                continue
            if end < begin:
                continue
            tags = item.get("tags") or []
            blocks.append(
                ContentBlock(
                    title=str(item.get("title") or "Untitled Section"),
                    summary=str(item.get("summary") or ""),
                    start_line=begin,
                    end_line=end,
                    is_leaf=bool(item.get("is_leaf", False)),
                    tags=[str(t) for t in tags if isinstance(t, (str, int))],
                    content=slice_lines(content, begin, end, offset=first),
                )
            )

        if not blocks:
            return None
        doc_tags = data.get("document_tags") or []
        return BlockSplit(
            blocks=blocks,
            document_summary=str(data.get("document_summary") or ""),
            document_tags=[str(t) for t in doc_tags if isinstance(t, (str, int))],
        )
