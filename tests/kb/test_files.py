"""
Unit tests for vaultkeeper.kb.files
"""

import os

import pytest

from vaultkeeper.errors import ReadError
from vaultkeeper.kb.files import (
    compute_content_hash,
    is_eligible,
    list_files,
    read_file,
    snapshot,
)


@pytest.fixture
def vault(tmp_path):
    (tmp_path / "a.md").write_text("## A\nhello", encoding="utf-8")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.markdown").write_text("## B\nworld", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("not markdown", encoding="utf-8")
    (tmp_path / ".obsidian").mkdir()
    (tmp_path / ".obsidian" / "workspace.md").write_text("hidden", encoding="utf-8")
    (tmp_path / ".trash").mkdir()
    (tmp_path / ".trash" / "old.md").write_text("deleted", encoding="utf-8")
    return tmp_path


class TestListFiles:

    def test_lists_markdown_recursively(self, vault):
        paths = [s.path for s in list_files(str(vault))]
        assert paths == sorted([str(vault / "a.md"), str(vault / "sub" / "b.markdown")])

    def test_snapshots_carry_content_hash(self, vault):
        by_path = {s.path: s for s in list_files(str(vault))}
        snap = by_path[str(vault / "a.md")]
        assert snap.content_hash == compute_content_hash("## A\nhello")
        assert snap.last_modified > 0

    def test_empty_vault(self, tmp_path):
        assert list_files(str(tmp_path)) == []

    def test_unreadable_file_is_listed_with_empty_hash(self, vault):
        (vault / "bad.md").write_bytes(b"\xff\xfe\xfa not utf-8")
        by_path = {s.path: s for s in list_files(str(vault))}
        assert by_path[str(vault / "bad.md")].content_hash == ""


class TestHelpers:

    def test_hash_changes_with_content(self):
        assert compute_content_hash("a") != compute_content_hash("b")
        assert len(compute_content_hash("a")) == 64

    def test_read_file_missing_raises(self, tmp_path):
        with pytest.raises(ReadError):
            read_file(str(tmp_path / "missing.md"))

    def test_snapshot_is_absolute(self, vault, monkeypatch):
        monkeypatch.chdir(vault)
        assert snapshot("a.md").path == str(vault / "a.md")

    def test_is_eligible(self, vault):
        root = str(vault)
        assert is_eligible(os.path.join(root, "a.md"), root)
        assert is_eligible(os.path.join(root, "sub", "new.MD"), root)
        assert not is_eligible(os.path.join(root, "notes.txt"), root)
        assert not is_eligible(os.path.join(root, ".obsidian", "x.md"), root)
        assert not is_eligible(os.path.join(os.path.dirname(root), "outside.md"), root)
