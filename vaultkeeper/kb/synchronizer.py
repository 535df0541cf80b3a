"""
KnowledgeSynchronizer: keeps a vault's vector table consistent with disk.

Full sync:
  1. List markdown files under the vault (SHA-256 content hash each)
  2. Compare with the ``{path: file_hash}`` map stored in the table
  3. Delete rows of files that no longer exist
  4. Re-chunk, embed and upsert new or changed files, batch by batch

Incremental sync:
  Triggered by the vault watcher; re-indexes or removes a single file.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..errors import ConfigurationError, EmbeddingError, ReadError, VaultkeeperError
from .chunker import chunk_text
from .files import compute_content_hash, is_eligible, list_files, read_file
from .vector_table import Entry, VectorTable

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_EMBED_WORKERS = 4

INDEXING_ERROR_MESSAGE = "Indexing error: {error}. Please try restarting the indexing."

ProgressCallback = Callable[[float], None]
ErrorCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class SyncPlan:
    """What a sync pass will do. The three lists are disjoint."""
    to_add: list[str] = field(default_factory=list)       # new or changed
    to_remove: list[str] = field(default_factory=list)    # indexed, gone from disk
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass
class SyncReport:
    """Summary of one sync pass."""
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    entries_written: int = 0
    warnings: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def as_dict(self) -> dict:
        return {
            "added": self.added,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "entries_written": self.entries_written,
            "warning_count": len(self.warnings),
            "elapsed_seconds": self.elapsed_seconds,
        }


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------

class KnowledgeSynchronizer:
    """
    Brings a :class:`VectorTable` in line with the vault on disk.

    Parameters
    ----------
    table:
        An initialised vector table bound to *vault_directory*.
    vault_directory:
        Root of the markdown vault.
    batch_size:
        Number of files written per ``upsert`` call.
    embed_workers:
        Upper bound on files read, chunked and embedded concurrently.
    """

    def __init__(
        self,
        table: VectorTable,
        vault_directory: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        embed_workers: int = DEFAULT_EMBED_WORKERS,
    ) -> None:
        self.table = table
        self.vault_directory = os.path.abspath(vault_directory)
        self.batch_size = max(1, batch_size)
        self.embed_workers = max(1, embed_workers)
        # Full passes and watcher-driven updates never interleave
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _check_vault(self) -> None:
        if not os.path.isdir(self.vault_directory):
            raise ConfigurationError(f"Vault directory does not exist: {self.vault_directory}")

    def plan(self) -> SyncPlan:
        """
        Compute the :class:`SyncPlan` for the current disk state.

        A file whose content hash equals the stored one is unchanged, so
        touching a file without editing it costs nothing.
        """
        self._check_vault()
        on_disk = {s.path: s.content_hash for s in list_files(self.vault_directory)}
        indexed = self.table.indexed_files()

        plan = SyncPlan()
        for path in sorted(on_disk):
            stored = indexed.get(path)
            current = on_disk[path]
            # Blank notes have no rows, so they never have a stored hash
            if current and (stored == current or (stored is None and self._is_blank(path))):
                plan.unchanged.append(path)
            else:
                plan.to_add.append(path)
        plan.to_remove = sorted(p for p in indexed if p not in on_disk)
        return plan

    def _is_blank(self, path: str) -> bool:
        """True if *path* produces no chunks. Unreadable files are not blank."""
        try:
            content = read_file(path)
        except ReadError:
            return False
        return not chunk_text(content, self.table.max_chunk_tokens)

    # ------------------------------------------------------------------
    # Per-file work
    # ------------------------------------------------------------------

    def _prepare(self, path: str) -> list[Entry]:
        """Read, chunk and embed one file. Runs on a worker thread."""
        content = read_file(path)
        file_hash = compute_content_hash(content)
        chunks = chunk_text(content, self.table.max_chunk_tokens)
        if not chunks:
            return []

        vectors = self.table.embed_texts([c.text for c in chunks])
        if len(vectors) != len(chunks):
            raise EmbeddingError(
                f"Expected {len(chunks)} vectors for {path}, got {len(vectors)}")

        now = time.time()
        rel_path = os.path.relpath(path, self.vault_directory).replace(os.sep, "/")
        metadata = {"file_name": os.path.basename(path), "relative_path": rel_path}
        return [
            Entry(
                path=path,
                content=chunk.text,
                sub_file_start=chunk.start,
                sub_file_end=chunk.end,
                vector=vector,
                time_added=now,
                metadata=dict(metadata),
                file_hash=file_hash,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    def sync(
        self,
        progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> SyncReport:
        """
        Run one full sync pass.

        Parameters
        ----------
        progress:
            Called with the completed fraction after every step. Values
            never decrease and the last call is exactly ``1.0``.
        on_error:
            Called with a user-facing message before a fatal error
            (a :class:`WriteError`, a misconfigured or missing embedding
            backend) propagates.

        Returns
        -------
        SyncReport
            Counts plus the per-file warnings (unreadable files, embedding
            failures) that were skipped.
        """
        with self._lock:
            start_time = time.time()
            try:
                plan = self.plan()
            except ConfigurationError as exc:
                logger.error("[sync] Cannot plan %s: %s", self.vault_directory, exc)
                if on_error is not None:
                    on_error(INDEXING_ERROR_MESSAGE.format(error=exc))
                raise
            report = SyncReport(unchanged=len(plan.unchanged))
            logger.info("[sync] %s: %d to add, %d to remove, %d unchanged",
                        self.vault_directory, len(plan.to_add),
                        len(plan.to_remove), len(plan.unchanged))

            total = len(plan.to_add) + (1 if plan.to_remove else 0)
            completed = 0

            def _report_progress() -> None:
                if progress is not None:
                    progress(completed / total if total else 1.0)

            if total == 0:
                _report_progress()
                report.elapsed_seconds = round(time.time() - start_time, 2)
                return report

            try:
                if plan.to_remove:
                    self.table.delete(plan.to_remove)
                    report.removed = len(plan.to_remove)
                    completed += 1
                    _report_progress()

                with ThreadPoolExecutor(max_workers=self.embed_workers) as pool:
                    for batch_start in range(0, len(plan.to_add), self.batch_size):
                        batch = plan.to_add[batch_start: batch_start + self.batch_size]
                        written = self._sync_batch(pool, batch, report)
                        report.entries_written += written
                        completed += len(batch)
                        _report_progress()
            except (VaultkeeperError, ImportError) as exc:
                logger.error("[sync] Aborting pass: %s", exc)
                if on_error is not None:
                    on_error(INDEXING_ERROR_MESSAGE.format(error=exc))
                raise

            report.elapsed_seconds = round(time.time() - start_time, 2)
            logger.info(
                "[sync] Done in %.2fs: %d added, %d removed, %d entries, %d warning(s)",
                report.elapsed_seconds, report.added, report.removed,
                report.entries_written, len(report.warnings),
            )
            return report

    def _sync_batch(self, pool: ThreadPoolExecutor, batch: list[str],
                    report: SyncReport) -> int:
        futures = [pool.submit(self._prepare, path) for path in batch]

        entries: list[Entry] = []
        emptied: list[str] = []
        for path, future in zip(batch, futures):
            try:
                file_entries = future.result()
            except (ReadError, EmbeddingError) as exc:
                logger.warning("[sync] Skipping %s: %s", path, exc)
                report.warnings.append(f"{path}: {exc}")
                continue
            if file_entries:
                entries.extend(file_entries)
            else:
                emptied.append(path)
            report.added += 1

        # A file edited down to whitespace keeps no rows
        if emptied:
            self.table.delete(emptied)
        self.table.upsert(entries)
        return len(entries)

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------

    def sync_file(self, path: str) -> bool:
        """
        Re-index a single file if its content changed.

        Returns True if the table was modified. A file that has
        disappeared is removed instead. Read and embedding failures are
        logged and reported as ``False``; a :class:`WriteError` propagates.
        """
        abs_path = os.path.abspath(path)
        if not is_eligible(abs_path, self.vault_directory):
            return False
        if not os.path.exists(abs_path):
            return self.remove_file(abs_path)

        with self._lock:
            try:
                current_hash = compute_content_hash(read_file(abs_path))
                stored_hash = self.table.indexed_files().get(abs_path)
                if stored_hash == current_hash:
                    return False
                entries = self._prepare(abs_path)
            except (ReadError, EmbeddingError) as exc:
                logger.warning("[sync] Skipping %s: %s", abs_path, exc)
                return False

            if entries:
                self.table.upsert(entries)
            elif stored_hash is None:
                return False
            else:
                self.table.delete([abs_path])
        logger.info("[sync] Re-indexed %s (%d entries)", abs_path, len(entries))
        return True

    def remove_file(self, path: str) -> bool:
        """Delete every entry of *path*. Returns True if it was indexed."""
        abs_path = os.path.abspath(path)
        with self._lock:
            if abs_path not in self.table.indexed_files():
                return False
            self.table.delete([abs_path])
        logger.info("[sync] Removed %s", abs_path)
        return True
