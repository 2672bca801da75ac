"""Tests for Locator parsing and FileResolver path safety."""

import pytest

from memory.errors import ValidationError
from memory.locator import LIBRARY_EXTENSION, PACK_EXTENSION, FileResolver, Locator


class TestLocator:
    def test_parse_nested(self):
        loc = Locator.parse("notes/work/ideas", project_id="p1", extension=PACK_EXTENSION)
        assert loc == Locator("p1", "notes/work", "ideas.cqmpack")
        assert loc.relative_path == "notes/work/ideas.cqmpack"

    def test_parse_bare_name(self):
        loc = Locator.parse("main.cqmlib", extension=LIBRARY_EXTENSION)
        assert loc.path == ""
        assert loc.name == "main.cqmlib"
        assert loc.relative_path == "main.cqmlib"
        assert str(loc) == "default:main.cqmlib"

    def test_dict_roundtrip(self):
        loc = Locator("p", "a/b", "c.cqmpack")
        assert Locator.from_dict(loc.to_dict()) == loc

    def test_with_name(self):
        assert Locator("p", "a", "x").with_name("y") == Locator("p", "a", "y")


class TestFileResolver:
    def test_resolve(self, tmp_path):
        resolver = FileResolver(tmp_path)
        path = resolver.resolve(Locator("proj", "/packs/", "a.cqmpack"))
        assert path == tmp_path / "proj" / "packs" / "a.cqmpack"

    def test_root_path(self, tmp_path):
        resolver = FileResolver(tmp_path)
        assert resolver.resolve(Locator("proj", "", "a.cqmpack")) == tmp_path / "proj" / "a.cqmpack"

    @pytest.mark.parametrize(
        "locator",
        [
            Locator("", "packs", "a.cqmpack"),
            Locator("proj", "packs", ""),
            Locator("proj", "../other", "a.cqmpack"),
            Locator("proj", "packs", ".."),
            Locator("..", "packs", "a.cqmpack"),
            Locator("proj", "packs\\evil", "a.cqmpack"),
            Locator("/etc", "packs", "a.cqmpack"),
            Locator("team/alpha", "packs", "a.cqmpack"),
            Locator(".", "packs", "a.cqmpack"),
            Locator("proj", "packs", "."),
        ],
    )
    def test_rejects_invalid(self, tmp_path, locator):
        with pytest.raises(ValidationError):
            FileResolver(tmp_path).resolve(locator)

    @pytest.mark.parametrize("project_id", ["/tmp/elsewhere", "a/b", "..", "."])
    def test_project_root_stays_under_base_dir(self, tmp_path, project_id):
        with pytest.raises(ValidationError):
            FileResolver(tmp_path).project_root(project_id)

    def test_locator_for_inverts_resolve(self, tmp_path):
        resolver = FileResolver(tmp_path)
        loc = Locator("proj", "deep/dir", "a.cqmpack")
        assert resolver.locator_for("proj", resolver.resolve(loc)) == loc
