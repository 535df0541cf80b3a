"""
SQLite-backed vector table for vault entries.

Stores embedding vectors in SQLite and computes cosine similarity
using numpy. No external services required.

One database file (a :class:`VectorDB`) holds one SQL table per vault;
a :class:`VectorTable` is bound to exactly one of them by
:meth:`VectorTable.initialize`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from ..errors import ConfigurationError, ConfigurationMismatch, WriteError
from .embedder import EmbeddingFunction, get_embedding_function

logger = logging.getLogger(__name__)

_CREATE_META = """
CREATE TABLE IF NOT EXISTS vault_tables (
    table_name          TEXT PRIMARY KEY,
    vault_directory     TEXT NOT NULL,
    embedding_function  TEXT NOT NULL,
    created_at          REAL NOT NULL
);
"""

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS "{table}" (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    path            TEXT    NOT NULL,
    content         TEXT    NOT NULL,
    vector          BLOB    NOT NULL,
    sub_file_start  INTEGER NOT NULL,
    sub_file_end    INTEGER NOT NULL,
    time_added      REAL    NOT NULL,
    file_hash       TEXT    NOT NULL DEFAULT '',
    metadata        TEXT    NOT NULL DEFAULT '{{}}',
    UNIQUE (path, sub_file_start, sub_file_end)
);
CREATE INDEX IF NOT EXISTS "idx_{table}_path" ON "{table}"(path);
"""

_SELECT_COLUMNS = (
    "id, path, content, vector, sub_file_start, sub_file_end, "
    "time_added, file_hash, metadata"
)

# SQLite's default limit on bound parameters is 999
_MAX_PARAMS = 500


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class Entry:
    """One indexed chunk of a vault file."""

    path: str
    content: str
    sub_file_start: int
    sub_file_end: int
    vector: Optional[list[float]] = None
    time_added: float = field(default_factory=time.time)
    metadata: dict[str, str] = field(default_factory=dict)
    file_hash: str = ""
    # Cosine similarity, only set on search results
    score: Optional[float] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _slugify(name: str) -> str:
    """Convert *name* to a lowercase alphanumeric slug."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return slug or "vault"


def table_name(vault_directory: str) -> str:
    """
    Derive the SQL table name for *vault_directory*.

    ``"vault_{slugified_directory_name}_{8 hex chars of the path hash}"``;
    the hash keeps two vaults with the same directory name apart.
    """
    abs_dir = os.path.abspath(vault_directory)
    digest = hashlib.sha1(abs_dir.encode("utf-8")).hexdigest()[:8]
    return f"vault_{_slugify(os.path.basename(abs_dir))}_{digest}"


def _vec_to_bytes(vec: list[float]) -> bytes:
    """Serialise a float list to compact bytes via numpy."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float32)
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


# ---------------------------------------------------------------------------
# Filter expressions
# ---------------------------------------------------------------------------

_CLAUSE_RE = re.compile(r"\s*([A-Za-z_][\w.-]*)\s*(!=|=|LIKE\b)\s*'((?:[^']|'')*)'\s*", re.I)
_AND_RE = re.compile(r"AND\b", re.I)


def _like_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.S)


def parse_filter(expr: str) -> Callable[[Entry], bool]:
    """
    Compile a filter string into a predicate over entries.

    Grammar: ``clause (AND clause)*`` where a clause is
    ``field = 'v'``, ``field != 'v'`` or ``field LIKE 'pat%'``.
    ``field`` is ``path``, ``content`` or a metadata key; quotes inside a
    value are doubled (``''``).

    Raises
    ------
    ConfigurationError
        If *expr* does not follow the grammar.
    """
    clauses: list[tuple[str, str, object]] = []
    pos = 0
    while True:
        m = _CLAUSE_RE.match(expr, pos)
        if not m:
            raise ConfigurationError(f"Invalid filter expression: {expr!r}")
        field_name, op, value = m.group(1), m.group(2).upper(), m.group(3).replace("''", "'")
        clauses.append((field_name, op, _like_to_regex(value) if op == "LIKE" else value))
        pos = m.end()
        if pos >= len(expr):
            break
        a = _AND_RE.match(expr, pos)
        if not a:
            raise ConfigurationError(f"Invalid filter expression: {expr!r}")
        pos = a.end()

    def _value(entry: Entry, name: str) -> Optional[str]:
        if name == "path":
            return entry.path
        if name == "content":
            return entry.content
        return entry.metadata.get(name)

    def predicate(entry: Entry) -> bool:
        for name, op, value in clauses:
            actual = _value(entry, name)
            if op == "=":
                ok = actual == value
            elif op == "!=":
                ok = actual != value
            else:
                ok = actual is not None and value.fullmatch(actual) is not None  # type: ignore[union-attr]
            if not ok:
                return False
        return True

    return predicate


# ---------------------------------------------------------------------------
# VectorDB (the connection handle)
# ---------------------------------------------------------------------------

class VectorDB:
    """
    A SQLite database holding the tables of every vault.

    Parameters
    ----------
    db_path:
        Path to the database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        with self.lock:
            conn = self.get_conn()
            conn.executescript(_CREATE_META)
            conn.commit()

    def get_conn(self) -> sqlite3.Connection:
        """Thread-safe lazy connection. Callers must hold :attr:`lock`."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        return self._conn

    def table_names(self) -> list[str]:
        with self.lock:
            rows = self.get_conn().execute(
                "SELECT table_name FROM vault_tables ORDER BY table_name"
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    pass
                self._conn = None


def connect(db_path: str) -> VectorDB:
    """Open (creating if needed) the vector database at *db_path*."""
    return VectorDB(db_path)


# ---------------------------------------------------------------------------
# VectorTable
# ---------------------------------------------------------------------------

class VectorTable:
    """
    Entries of one vault, searchable by embedding similarity.

    Writes and the row snapshot taken by :meth:`search` are serialised on
    the database lock; scoring runs outside it so concurrent searches do
    not block each other for long and never observe a half-written batch.
    """

    def __init__(self) -> None:
        self._db: VectorDB | None = None
        self._vault_directory: str | None = None
        self._embedding_name: str | None = None
        self._embed: EmbeddingFunction | None = None
        self._table: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        connection: VectorDB,
        vault_directory: str,
        embedding_function_name: str,
        **embedding_options,
    ) -> None:
        """
        Bind this table to *vault_directory* inside *connection*.

        Calling again with the same arguments is a no-op.

        Raises
        ------
        ConfigurationMismatch
            If already bound to different arguments, or the stored table
            was built with another embedding function.
        ConfigurationError
            If the embedding function name is unknown.
        """
        vault = os.path.abspath(vault_directory)
        if self._db is not None:
            if (connection is self._db and vault == self._vault_directory
                    and embedding_function_name == self._embedding_name):
                return
            raise ConfigurationMismatch(
                f"Table already initialised for {self._vault_directory} "
                f"({self._embedding_name}); got {vault} ({embedding_function_name})"
            )

        embed = get_embedding_function(embedding_function_name, **embedding_options)
        name = table_name(vault)

        with connection.lock:
            conn = connection.get_conn()
            row = conn.execute(
                "SELECT vault_directory, embedding_function FROM vault_tables "
                "WHERE table_name = ?",
                (name,),
            ).fetchone()
            if row is not None and row[1] != embedding_function_name:
                raise ConfigurationMismatch(
                    f"Table for {vault} was built with embedding function "
                    f"'{row[1]}', not '{embedding_function_name}'. "
                    f"Re-index into a fresh database to switch."
                )
            try:
                conn.executescript(_CREATE_TABLE.format(table=name))
                if row is None:
                    conn.execute(
                        "INSERT INTO vault_tables (table_name, vault_directory, "
                        "embedding_function, created_at) VALUES (?, ?, ?, ?)",
                        (name, vault, embedding_function_name, time.time()),
                    )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError(f"Could not create table for {vault}: {exc}") from exc

        self._db = connection
        self._vault_directory = vault
        self._embedding_name = embedding_function_name
        self._embed = embed
        self._table = name
        logger.info("[VectorTable] Bound %s to table %s (%s)",
                    vault, name, embedding_function_name)

    def _require(self) -> tuple[VectorDB, str, EmbeddingFunction]:
        if self._db is None or self._table is None or self._embed is None:
            raise ConfigurationError("VectorTable used before initialize()")
        return self._db, self._table, self._embed

    @property
    def vault_directory(self) -> str | None:
        return self._vault_directory

    @property
    def embedding_function_name(self) -> str | None:
        return self._embedding_name

    @property
    def max_chunk_tokens(self) -> int:
        """Largest chunk (in estimated tokens) the embedding backend accepts."""
        return self._require()[2].max_tokens

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* with this table's embedding function."""
        return self._require()[2].embed(texts)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, entries: list[Entry]) -> None:
        """
        Write *entries*, replacing every existing row of the paths they cover.

        Entries without a vector are embedded first. The deletes and inserts
        of one call are committed in a single transaction.

        Raises
        ------
        EmbeddingError
            If embedding the missing vectors fails (nothing is written).
        WriteError
            On any storage fault (the transaction is rolled back).
        """
        if not entries:
            return
        db, table, embed = self._require()

        missing = [e for e in entries if e.vector is None]
        if missing:
            vectors = embed.embed([e.content for e in missing])
            for entry, vector in zip(missing, vectors):
                entry.vector = vector

        paths = sorted({e.path for e in entries})
        rows = [
            (
                e.path, e.content, _vec_to_bytes(e.vector or []),
                e.sub_file_start, e.sub_file_end, e.time_added,
                e.file_hash, json.dumps(e.metadata, sort_keys=True),
            )
            for e in entries
        ]
        with db.lock:
            conn = db.get_conn()
            try:
                self._delete_paths(conn, table, paths)
                conn.executemany(
                    f'INSERT INTO "{table}" (path, content, vector, sub_file_start, '
                    "sub_file_end, time_added, file_hash, metadata) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError(f"Failed to write {len(rows)} entries: {exc}") from exc
        logger.debug("[VectorTable] Upserted %d entries for %d file(s)", len(rows), len(paths))

    @staticmethod
    def _delete_paths(conn: sqlite3.Connection, table: str, paths: list[str]) -> int:
        deleted = 0
        for start in range(0, len(paths), _MAX_PARAMS):
            batch = paths[start: start + _MAX_PARAMS]
            placeholders = ",".join("?" for _ in batch)
            cur = conn.execute(
                f'DELETE FROM "{table}" WHERE path IN ({placeholders})', batch,
            )
            deleted += cur.rowcount
        return deleted

    def delete(self, paths: list[str]) -> None:
        """Delete all entries whose path is in *paths*. No-op if none match."""
        if not paths:
            return
        db, table, _ = self._require()
        with db.lock:
            conn = db.get_conn()
            try:
                deleted = self._delete_paths(conn, table, sorted(set(paths)))
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError(f"Failed to delete entries: {exc}") from exc
        logger.debug("[VectorTable] Deleted %d entries for %d path(s)", deleted, len(paths))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch(self, sql: str, params: tuple = ()) -> list[tuple]:
        db, _, _ = self._require()
        with db.lock:
            return db.get_conn().execute(sql, params).fetchall()

    @staticmethod
    def _row_to_entry(row: tuple) -> Entry:
        _, path, content, vec_bytes, start, end, added, file_hash, metadata = row
        try:
            meta = json.loads(metadata)
        except (json.JSONDecodeError, TypeError):
            meta = {}
        return Entry(
            path=path,
            content=content,
            sub_file_start=start,
            sub_file_end=end,
            vector=np.frombuffer(vec_bytes, dtype=np.float32).tolist(),
            time_added=added,
            metadata=meta,
            file_hash=file_hash,
        )

    def search(self, query: str, limit: int, filter: Optional[str] = None) -> list[Entry]:
        """
        Return the *limit* entries nearest to *query*, best first.

        Ties keep insertion order. An empty table yields ``[]``.

        Parameters
        ----------
        query:
            Natural-language query; embedded with the table's function.
        limit:
            Maximum number of entries to return.
        filter:
            Optional filter expression (see :func:`parse_filter`).
        """
        _, table, embed = self._require()
        predicate = parse_filter(filter) if filter else None
        if limit <= 0:
            return []

        rows = self._fetch(f'SELECT {_SELECT_COLUMNS} FROM "{table}" ORDER BY id')
        if not rows:
            return []

        candidates: list[tuple[Entry, np.ndarray]] = []
        for row in rows:
            entry = self._row_to_entry(row)
            if predicate is not None and not predicate(entry):
                continue
            candidates.append((entry, np.frombuffer(row[3], dtype=np.float32)))
        if not candidates:
            return []

        query_arr = np.asarray(embed.embed_one(query), dtype=np.float32)
        usable = [(e, v) for e, v in candidates if v.shape == query_arr.shape]
        if len(usable) != len(candidates):
            logger.warning("[VectorTable] Ignoring %d entries with mismatched dimensions",
                           len(candidates) - len(usable))
        if not usable:
            return []

        matrix = np.stack([v for _, v in usable])
        scores = _cosine_similarity_batch(query_arr, matrix)
        order = np.argsort(-scores, kind="stable")[:limit]

        results: list[Entry] = []
        for idx in order:
            entry = usable[idx][0]
            entry.score = float(scores[idx])
            results.append(entry)
        return results

    def indexed_files(self) -> dict[str, str]:
        """Return ``{path: file_hash}`` for every distinct path in the table."""
        _, table, _ = self._require()
        rows = self._fetch(f'SELECT DISTINCT path, file_hash FROM "{table}" ORDER BY path')
        return {path: file_hash for path, file_hash in rows}

    def entries_for(self, path: str) -> list[Entry]:
        """Return the entries of one file in offset order."""
        _, table, _ = self._require()
        rows = self._fetch(
            f'SELECT {_SELECT_COLUMNS} FROM "{table}" WHERE path = ? ORDER BY sub_file_start',
            (path,),
        )
        return [self._row_to_entry(r) for r in rows]

    def count(self) -> int:
        """Total number of entries."""
        _, table, _ = self._require()
        return self._fetch(f'SELECT COUNT(*) FROM "{table}"')[0][0]

    def info(self) -> dict:
        """
        Return basic info about the table.

        Returns
        -------
        dict
            Keys: ``name``, ``vault_directory``, ``embedding_function``,
            ``entry_count``, ``file_count``.
        """
        _, table, _ = self._require()
        return {
            "name": table,
            "vault_directory": self._vault_directory,
            "embedding_function": self._embedding_name,
            "entry_count": self.count(),
            "file_count": len(self.indexed_files()),
        }
