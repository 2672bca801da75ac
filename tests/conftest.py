"""Shared test fixtures for the memory pack engine."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory.capability import CompletionCapability  # noqa: E402
from memory.locator import FileResolver, Locator  # noqa: E402
from memory.store import PackStore  # noqa: E402


@pytest.fixture
def resolver(tmp_path):
    return FileResolver(tmp_path / "data")


@pytest.fixture
def locator():
    return Locator("default", "packs", "test.cqmpack")


@pytest.fixture
def pack(resolver, locator):
    """Freshly created, open pack; closed after the test."""
    store = PackStore.create(locator, resolver, name="Test Pack", description="fixture pack")
    yield store
    store.close()


@pytest.fixture
def make_capability():
    """Factory for a MagicMock capability that answers by prompt kind.

    ``splits`` is consumed in order for block-split prompts; once exhausted,
    split prompts get ``default_split``. ``analysis`` answers relationship prompts.
    """

    def _make(summary="A short summary.", splits=None, default_split="", analysis='{"relationships": []}'):
        queue = list(splits or [])

        def propose(content, instructions, max_tokens=None):
            if "split content into logical blocks" in instructions:
                if queue:
                    item = queue.pop(0)
                    return item if isinstance(item, str) else json.dumps(item)
                return default_split
            if "find meaningful relationships" in instructions:
                return analysis if isinstance(analysis, str) else json.dumps(analysis)
            return summary

        cap = MagicMock(spec=CompletionCapability)
        cap.propose.side_effect = propose
        return cap

    return _make
