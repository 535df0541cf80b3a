"""
File watcher for incremental vault updates.

Uses watchdog to monitor the vault and hands every created, modified,
moved or deleted markdown file to the :class:`KnowledgeSynchronizer`.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import VaultkeeperError
from .files import is_eligible

logger = logging.getLogger(__name__)


class VaultFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler that re-syncs single files.

    Editors often write a file several times in a row on save, so changes
    are debounced per path: the sync runs once the path has been quiet for
    *debounce_seconds*. Deletions are applied immediately and cancel any
    pending change for the same path.

    Parameters
    ----------
    synchronizer:
        The :class:`~vaultkeeper.kb.synchronizer.KnowledgeSynchronizer` to call.
    debounce_seconds:
        Quiet period before a changed file is re-indexed. ``0`` processes
        events synchronously.
    """

    def __init__(self, synchronizer, debounce_seconds: float = 0.5) -> None:
        super().__init__()
        self._sync = synchronizer
        self._root = synchronizer.vault_directory
        self._debounce = debounce_seconds
        self._pending: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._schedule_change(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._schedule_change(event.src_path)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(event.src_path)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(event.src_path)
            self._schedule_change(event.dest_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _should_ignore(self, path: str) -> bool:
        return not is_eligible(path, self._root)

    def _cancel_pending(self, abs_path: str) -> None:
        with self._lock:
            timer = self._pending.pop(abs_path, None)
        if timer is not None:
            timer.cancel()

    def _schedule_change(self, path: str) -> None:
        abs_path = os.path.abspath(path)
        if self._should_ignore(abs_path):
            return
        if self._debounce <= 0:
            self._handle_change(abs_path)
            return

        timer = threading.Timer(self._debounce, self._fire, args=(abs_path,))
        timer.daemon = True
        with self._lock:
            previous = self._pending.pop(abs_path, None)
            self._pending[abs_path] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire(self, abs_path: str) -> None:
        with self._lock:
            self._pending.pop(abs_path, None)
        self._handle_change(abs_path)

    def _handle_change(self, abs_path: str) -> None:
        try:
            if self._sync.sync_file(abs_path):
                logger.info("[watcher] Updated: %s", abs_path)
        except VaultkeeperError as exc:
            logger.warning("[watcher] Error processing %s: %s", abs_path, exc)

    def _handle_delete(self, path: str) -> None:
        abs_path = os.path.abspath(path)
        if self._should_ignore(abs_path):
            return
        self._cancel_pending(abs_path)
        try:
            if self._sync.remove_file(abs_path):
                logger.info("[watcher] Deleted: %s", abs_path)
        except VaultkeeperError as exc:
            logger.warning("[watcher] Error removing %s: %s", abs_path, exc)

    def flush(self) -> None:
        """Process every pending change now instead of waiting for its timer."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for abs_path, timer in pending:
            timer.cancel()
            self._handle_change(abs_path)

    def cancel_all(self) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for timer in pending:
            timer.cancel()


class VaultWatcher:
    """
    High-level wrapper around watchdog that monitors a vault directory.

    Usage::

        watcher = VaultWatcher(synchronizer)
        watcher.start_background()
        ...
        watcher.stop()
    """

    def __init__(self, synchronizer, debounce_seconds: float = 0.5) -> None:
        self._root = synchronizer.vault_directory
        self._handler = VaultFileHandler(synchronizer, debounce_seconds=debounce_seconds)
        self._observer: Optional[Observer] = None

    @property
    def handler(self) -> VaultFileHandler:
        return self._handler

    def start_background(self) -> None:
        """Start the watchdog observer thread and return immediately."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self._handler, self._root, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("[watcher] Watching %s", self._root)

    def start(self) -> None:
        """
        Start watching the vault.

        Blocks until :meth:`stop` is called or the process is interrupted.
        """
        self.start_background()
        observer = self._observer
        try:
            while observer is not None and observer.is_alive():
                observer.join(timeout=1)
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        """Stop the observer and drop pending changes."""
        self._handler.cancel_all()
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.info("[watcher] Stopped")
