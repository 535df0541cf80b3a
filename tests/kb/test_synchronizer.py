"""
Unit tests for vaultkeeper.kb.synchronizer

Runs real sync passes over a tmp vault with the offline hashing embedding
and an on-disk SQLite table.
"""

from __future__ import annotations

import os

import pytest
from unittest.mock import patch

from vaultkeeper.errors import ConfigurationError, EmbeddingError, ReadError, WriteError
from vaultkeeper.kb.files import read_file as real_read
from vaultkeeper.kb.synchronizer import KnowledgeSynchronizer
from vaultkeeper.kb.vector_table import VectorTable, connect


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def vault(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def table(tmp_path, vault):
    db = connect(str(tmp_path / "vectors.sqlite3"))
    t = VectorTable()
    t.initialize(db, str(vault), "hashing")
    yield t
    db.close()


def _write(vault, rel, text):
    path = vault / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return str(path)


def _sync(table, vault, **kwargs) -> KnowledgeSynchronizer:
    return KnowledgeSynchronizer(table, str(vault), **kwargs)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestPlan:

    def test_new_files_are_added(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        plan = _sync(table, vault).plan()
        assert plan.to_add == [a]
        assert plan.to_remove == [] and plan.unchanged == []

    def test_plan_lists_are_disjoint(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        b = _write(vault, "b.md", "beta")
        sync = _sync(table, vault)
        sync.sync()
        _write(vault, "a.md", "alpha edited")
        os.remove(b)
        c = _write(vault, "c.md", "gamma")

        plan = sync.plan()
        assert plan.to_add == [a, c]
        assert plan.to_remove == [b]
        assert not set(plan.to_add) & set(plan.to_remove)

    def test_touch_without_edit_is_unchanged(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        os.utime(a, (1, 1))
        plan = sync.plan()
        assert plan.unchanged == [a]
        assert plan.is_empty

    def test_missing_vault_raises(self, table, tmp_path):
        with pytest.raises(ConfigurationError):
            _sync(table, tmp_path / "nope").plan()


# ---------------------------------------------------------------------------
# Full sync
# ---------------------------------------------------------------------------

class TestSync:

    def test_completeness(self, table, vault):
        paths = [_write(vault, f"dir{i % 3}/note{i}.md", f"note number {i}") for i in range(7)]
        _write(vault, "readme.txt", "ignored")
        _write(vault, ".obsidian/app.md", "ignored")

        report = _sync(table, vault, batch_size=3).sync()

        assert sorted(table.indexed_files()) == sorted(paths)
        assert report.added == 7
        assert report.entries_written == 7
        assert report.warnings == []

    def test_idempotent(self, table, vault):
        for i in range(4):
            _write(vault, f"n{i}.md", f"content {i}\n\nsecond paragraph {i}")
        sync = _sync(table, vault)
        sync.sync()
        before = {p: [(e.sub_file_start, e.sub_file_end, e.content) for e in table.entries_for(p)]
                  for p in table.indexed_files()}

        report = sync.sync()

        after = {p: [(e.sub_file_start, e.sub_file_end, e.content) for e in table.entries_for(p)]
                 for p in table.indexed_files()}
        assert after == before
        assert report.added == 0 and report.removed == 0
        assert report.unchanged == 4

    def test_idempotent_with_blank_note(self, table, vault):
        a = _write(vault, "a.md", "hello")
        empty = _write(vault, "empty.md", "   \n")
        sync = _sync(table, vault)
        sync.sync()

        plan = sync.plan()
        assert plan.to_add == [] and plan.to_remove == []
        assert plan.unchanged == [a, empty]
        report = sync.sync()
        assert report.added == 0
        assert sync.sync_file(empty) is False

    def test_blank_note_gaining_content_is_added(self, table, vault):
        empty = _write(vault, "empty.md", "")
        sync = _sync(table, vault)
        sync.sync()
        _write(vault, "empty.md", "now with text")
        assert sync.plan().to_add == [empty]

    def test_deleted_file_leaves_no_entries(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        _write(vault, "b.md", "beta")
        sync = _sync(table, vault)
        sync.sync()

        os.remove(a)
        report = sync.sync()

        assert report.removed == 1
        assert a not in table.indexed_files()
        assert all(r.path != a for r in table.search("alpha", 10))

    def test_changed_file_is_replaced(self, table, vault):
        a = _write(vault, "a.md", "first version\n\nwith two paragraphs")
        sync = _sync(table, vault)
        sync.sync()
        _write(vault, "a.md", "second version")

        sync.sync()

        assert [e.content for e in table.entries_for(a)] == ["second version"]

    def test_file_emptied_loses_its_entries(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        _write(vault, "a.md", "   \n")

        sync.sync()

        assert table.entries_for(a) == []

    def test_entries_carry_offsets_and_metadata(self, table, vault):
        text = "## A\nhello\n\n## A2\nmore"
        a = _write(vault, "sub/a.md", text)
        _sync(table, vault).sync()
        for entry in table.entries_for(a):
            assert text[entry.sub_file_start:entry.sub_file_end] == entry.content
            assert entry.metadata["relative_path"] == "sub/a.md"
            assert entry.metadata["file_name"] == "a.md"


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------

class TestProgress:

    @pytest.mark.parametrize("n_files", [0, 1, 5])
    def test_monotonic_and_ends_at_one(self, table, vault, n_files):
        for i in range(n_files):
            _write(vault, f"n{i}.md", f"note {i}")
        values: list[float] = []

        _sync(table, vault, batch_size=2).sync(progress=values.append)

        assert values, "progress must be reported at least once"
        assert values == sorted(values)
        assert values[-1] == 1.0
        assert all(0.0 <= v <= 1.0 for v in values)

    def test_empty_plan_reports_single_completion(self, table, vault):
        _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        values: list[float] = []
        sync.sync(progress=values.append)
        assert values == [1.0]

    def test_removals_count_towards_progress(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        os.remove(a)
        _write(vault, "b.md", "beta")
        values: list[float] = []
        sync.sync(progress=values.append)
        assert values == [0.5, 1.0]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_unreadable_file_is_a_warning(self, table, vault):
        good = _write(vault, "good.md", "fine")
        bad = _write(vault, "bad.md", "broken")
        def _read(path):
            if path == bad:
                raise ReadError(f"Cannot read {path}")
            return real_read(path)

        with patch("vaultkeeper.kb.synchronizer.read_file", side_effect=_read):
            report = _sync(table, vault).sync()

        assert list(table.indexed_files()) == [good]
        assert len(report.warnings) == 1 and bad in report.warnings[0]

    def test_embedding_failure_is_a_warning(self, table, vault):
        _write(vault, "a.md", "alpha")
        values: list[float] = []
        with patch.object(table, "embed_texts", side_effect=EmbeddingError("backend down")):
            report = _sync(table, vault).sync(progress=values.append)
        assert table.count() == 0
        assert len(report.warnings) == 1
        assert values[-1] == 1.0

    def test_write_error_is_fatal(self, table, vault):
        _write(vault, "a.md", "alpha")
        messages: list[str] = []
        with patch.object(table, "upsert", side_effect=WriteError("disk full")):
            with pytest.raises(WriteError):
                _sync(table, vault).sync(on_error=messages.append)
        assert len(messages) == 1
        assert messages[0].startswith("Indexing error: disk full")
        assert "restarting" in messages[0]

    def test_backend_misconfiguration_is_reported(self, table, vault):
        _write(vault, "a.md", "alpha")
        messages: list[str] = []
        with patch.object(table, "embed_texts",
                          side_effect=ConfigurationError("OPENAI_API_KEY is not set.")):
            with pytest.raises(ConfigurationError):
                _sync(table, vault).sync(on_error=messages.append)
        assert len(messages) == 1
        assert messages[0].startswith("Indexing error: OPENAI_API_KEY is not set.")

    def test_missing_backend_package_is_reported(self, table, vault):
        _write(vault, "a.md", "alpha")
        messages: list[str] = []
        with patch.object(table, "embed_texts", side_effect=ImportError("no module openai")):
            with pytest.raises(ImportError):
                _sync(table, vault).sync(on_error=messages.append)
        assert len(messages) == 1 and "no module openai" in messages[0]

    def test_vanished_vault_is_reported(self, table, tmp_path):
        messages: list[str] = []
        with pytest.raises(ConfigurationError):
            _sync(table, tmp_path / "nope").sync(on_error=messages.append)
        assert len(messages) == 1 and "restarting" in messages[0]

    def test_failed_pass_is_retried_next_time(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        with patch.object(table, "upsert", side_effect=WriteError("disk full")):
            with pytest.raises(WriteError):
                sync.sync()
        sync.sync()
        assert list(table.indexed_files()) == [a]


# ---------------------------------------------------------------------------
# Incremental updates
# ---------------------------------------------------------------------------

class TestIncremental:

    def test_sync_file_indexes_new_file(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        assert _sync(table, vault).sync_file(a) is True
        assert list(table.indexed_files()) == [a]

    def test_sync_file_skips_unchanged(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync_file(a)
        assert sync.sync_file(a) is False

    def test_sync_file_ignores_non_markdown(self, table, vault):
        txt = _write(vault, "a.txt", "alpha")
        assert _sync(table, vault).sync_file(txt) is False
        assert table.count() == 0

    def test_sync_file_on_vanished_file_removes_it(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        os.remove(a)
        assert sync.sync_file(a) is True
        assert table.count() == 0

    def test_remove_file(self, table, vault):
        a = _write(vault, "a.md", "alpha")
        sync = _sync(table, vault)
        sync.sync()
        assert sync.remove_file(a) is True
        assert sync.remove_file(a) is False
        assert table.count() == 0
