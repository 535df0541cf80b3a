"""
Unit tests for the SQLite-backed vault vector table.
"""
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from vaultkeeper.errors import ConfigurationError, ConfigurationMismatch, WriteError
from vaultkeeper.kb.embedder import EmbeddingFunction, register_embedding_backend
from vaultkeeper.kb.vector_table import Entry, VectorTable, connect, parse_filter, table_name


class _ConstantEmbedding(EmbeddingFunction):
    """Every text maps to the same vector, so every score ties."""

    name = "constant"

    def embed(self, texts):
        return [[1.0, 0.0, 0.0] for _ in texts]


register_embedding_backend("constant", lambda arg, options: _ConstantEmbedding())


def _entry(path, content, start=0, end=None, **metadata):
    return Entry(path=path, content=content, sub_file_start=start,
                 sub_file_end=len(content) if end is None else end,
                 metadata=metadata, file_hash=f"hash-{path}")


# ---------------------------------------------------------------------------
# Test: VectorTable
# ---------------------------------------------------------------------------

class TestVectorTable(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.vault = os.path.join(self._tmpdir, "notes")
        os.makedirs(self.vault)
        self.db = connect(os.path.join(self._tmpdir, "vectors.sqlite3"))
        self.table = VectorTable()
        self.table.initialize(self.db, self.vault, "hashing")

    def tearDown(self):
        self.db.close()
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def test_initialize_is_idempotent(self):
        self.table.initialize(self.db, self.vault, "hashing")
        self.assertEqual(self.table.count(), 0)

    def test_initialize_with_other_arguments_raises(self):
        with self.assertRaises(ConfigurationMismatch):
            self.table.initialize(self.db, self.vault, "hashing:64")
        with self.assertRaises(ConfigurationMismatch):
            self.table.initialize(self.db, self._tmpdir, "hashing")

    def test_stored_table_with_other_embedding_raises(self):
        other = VectorTable()
        with self.assertRaises(ConfigurationMismatch):
            other.initialize(self.db, self.vault, "hashing:64")

    def test_reopening_stored_table_keeps_entries(self):
        self.table.upsert([_entry("/v/a.md", "sqlite locking")])
        reopened = VectorTable()
        reopened.initialize(self.db, self.vault, "hashing")
        self.assertEqual(reopened.count(), 1)

    def test_unknown_embedding_function(self):
        with self.assertRaises(ConfigurationError):
            VectorTable().initialize(self.db, self.vault, "no-such-backend")

    def test_table_name_is_derived_from_vault(self):
        name = table_name(self.vault)
        self.assertTrue(name.startswith("vault_notes_"))
        self.assertEqual(len(name), len("vault_notes_") + 8)
        self.assertIn(name, self.db.table_names())

    def test_search_empty_table(self):
        self.assertEqual(self.table.search("anything", 5), [])

    def test_upsert_and_search(self):
        self.table.upsert([
            _entry("/v/db.md", "sqlite write ahead logging and locking"),
            _entry("/v/garden.md", "tomatoes need sun and water"),
        ])
        results = self.table.search("sqlite locking", 2)
        self.assertEqual(results[0].path, "/v/db.md")
        self.assertGreater(results[0].score, results[1].score)
        self.assertEqual(len(results[0].vector), 384)

    def test_search_respects_limit(self):
        self.table.upsert([_entry(f"/v/{i}.md", f"note {i}") for i in range(5)])
        self.assertEqual(len(self.table.search("note", 3)), 3)
        self.assertEqual(self.table.search("note", 0), [])

    def test_upsert_replaces_all_rows_of_a_path(self):
        self.table.upsert([
            _entry("/v/a.md", "first part", 0, 10),
            _entry("/v/a.md", "second part", 12, 23),
        ])
        self.assertEqual(self.table.count(), 2)
        self.table.upsert([_entry("/v/a.md", "rewritten")])
        entries = self.table.entries_for("/v/a.md")
        self.assertEqual([e.content for e in entries], ["rewritten"])

    def test_upsert_empty_list(self):
        self.table.upsert([])
        self.assertEqual(self.table.count(), 0)

    def test_failed_upsert_rolls_back(self):
        self.table.upsert([_entry("/v/a.md", "kept")])
        duplicate = [_entry("/v/a.md", "x", 0, 1), _entry("/v/a.md", "y", 0, 1)]
        with self.assertRaises(WriteError):
            self.table.upsert(duplicate)
        self.assertEqual([e.content for e in self.table.entries_for("/v/a.md")], ["kept"])

    def test_delete(self):
        self.table.upsert([_entry("/v/a.md", "alpha"), _entry("/v/b.md", "beta")])
        self.table.delete(["/v/a.md"])
        self.assertEqual(list(self.table.indexed_files()), ["/v/b.md"])
        self.table.delete(["/v/missing.md"])
        self.assertEqual(self.table.count(), 1)

    def test_indexed_files_maps_path_to_hash(self):
        self.table.upsert([_entry("/v/a.md", "alpha"), _entry("/v/b.md", "beta")])
        self.assertEqual(self.table.indexed_files(),
                         {"/v/a.md": "hash-/v/a.md", "/v/b.md": "hash-/v/b.md"})

    def test_info(self):
        self.table.upsert([_entry("/v/a.md", "alpha")])
        info = self.table.info()
        self.assertEqual(info["entry_count"], 1)
        self.assertEqual(info["file_count"], 1)
        self.assertEqual(info["embedding_function"], "hashing")

    def test_upsert_storage_fault_raises_write_error(self):
        import sqlite3
        with patch.object(self.table, "_delete_paths", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(WriteError):
                self.table.upsert([_entry("/v/a.md", "alpha")])

    def test_search_with_filter(self):
        self.table.upsert([
            _entry("/v/daily/2024-01-01.md", "meeting notes", kind="daily"),
            _entry("/v/projects/db.md", "meeting about the database", kind="project"),
        ])
        results = self.table.search("meeting", 5, filter="path LIKE '%/daily/%'")
        self.assertEqual([r.path for r in results], ["/v/daily/2024-01-01.md"])
        results = self.table.search("meeting", 5, filter="kind = 'project'")
        self.assertEqual([r.path for r in results], ["/v/projects/db.md"])


class TestTieOrdering(unittest.TestCase):

    def test_ties_keep_insertion_order(self):
        tmpdir = tempfile.mkdtemp()
        db = connect(os.path.join(tmpdir, "v.sqlite3"))
        try:
            table = VectorTable()
            table.initialize(db, tmpdir, "constant")
            table.upsert([_entry("/v/c.md", "c")])
            table.upsert([_entry("/v/a.md", "a")])
            table.upsert([_entry("/v/b.md", "b")])
            results = table.search("anything", 3)
            self.assertEqual([r.path for r in results], ["/v/c.md", "/v/a.md", "/v/b.md"])
        finally:
            db.close()
            shutil.rmtree(tmpdir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Test: filter expressions
# ---------------------------------------------------------------------------

class TestParseFilter(unittest.TestCase):

    def setUp(self):
        self.entry = _entry("/v/daily/today.md", "it's raining", tag="weather")

    def test_equality_and_inequality(self):
        self.assertTrue(parse_filter("path = '/v/daily/today.md'")(self.entry))
        self.assertFalse(parse_filter("path != '/v/daily/today.md'")(self.entry))
        self.assertTrue(parse_filter("tag != 'work'")(self.entry))

    def test_like(self):
        self.assertTrue(parse_filter("path LIKE '%today%'")(self.entry))
        self.assertTrue(parse_filter("path like '/v/_aily/%'")(self.entry))
        self.assertFalse(parse_filter("path LIKE 'today%'")(self.entry))

    def test_and_combines_clauses(self):
        self.assertTrue(parse_filter("tag = 'weather' AND path LIKE '%.md'")(self.entry))
        self.assertFalse(parse_filter("tag = 'weather' AND path LIKE '%.txt'")(self.entry))

    def test_escaped_quote(self):
        self.assertTrue(parse_filter("content = 'it''s raining'")(self.entry))

    def test_missing_metadata_key(self):
        self.assertFalse(parse_filter("missing = 'x'")(self.entry))
        self.assertTrue(parse_filter("missing != 'x'")(self.entry))

    def test_malformed_filter_raises(self):
        for expr in ["path =", "path = unquoted", "path = 'a' OR path = 'b'", "'a' = path", ""]:
            with self.assertRaises(ConfigurationError, msg=expr):
                parse_filter(expr)
