"""
Vault file access: enumeration, reading and content hashing.

The synchronizer only ever sees the vault through this module, so the
eligibility rules (markdown only, hidden directories skipped) live here.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass

from ..errors import ReadError

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS: frozenset[str] = frozenset({".md", ".markdown"})

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "__pycache__", ".git", ".obsidian", ".trash", ".vaultkeeper",
})


@dataclass(frozen=True)
class FileSnapshot:
    """A markdown file currently on disk. Never persisted."""
    path: str               # absolute path
    content_hash: str
    last_modified: float


def is_markdown(path: str) -> bool:
    """Return True if *path* has a markdown extension."""
    return os.path.splitext(path)[1].lower() in MARKDOWN_EXTENSIONS


def is_eligible(path: str, root: str) -> bool:
    """Return True if *path* is a markdown file under *root* outside skipped dirs."""
    if not is_markdown(path):
        return False
    try:
        rel = os.path.relpath(os.path.abspath(path), os.path.abspath(root))
    except ValueError:
        return False
    if rel.startswith(os.pardir):
        return False
    parts = rel.replace("\\", "/").split("/")[:-1]
    return not any(p in _SKIP_DIRS or p.startswith(".") for p in parts)


def compute_content_hash(text: str) -> str:
    """
    Compute the SHA-256 hex digest of *text* (UTF-8 encoded).

    Parameters
    ----------
    text:
        File content as read by :func:`read_file`.

    Returns
    -------
    str
        64-character hex digest.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def read_file(path: str) -> str:
    """
    Read a vault file as UTF-8 text.

    Raises
    ------
    ReadError
        If the file cannot be opened or decoded.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise ReadError(f"Cannot read {path}: {exc}") from exc


def snapshot(path: str) -> FileSnapshot:
    """Build a :class:`FileSnapshot` for one file (reads it to hash it)."""
    content = read_file(path)
    try:
        mtime = os.path.getmtime(path)
    except OSError:
        mtime = 0.0
    return FileSnapshot(path=os.path.abspath(path),
                        content_hash=compute_content_hash(content),
                        last_modified=mtime)


def list_files(root: str) -> list[FileSnapshot]:
    """
    Walk *root* and return a snapshot of every eligible markdown file.

    Skips hidden and excluded directories. A file that cannot be read gets
    an empty ``content_hash`` so it never matches the indexed hash; the
    synchronizer then retries it and reports the read failure as a warning.

    Returns
    -------
    list[FileSnapshot]
        Sorted by path.
    """
    root = os.path.abspath(root)
    snapshots: list[FileSnapshot] = []

    for dirpath, dirnames, filenames in os.walk(root, topdown=True):
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = [
            d for d in dirnames
            if d not in _SKIP_DIRS and not d.startswith(".")
        ]
        for fname in filenames:
            if not is_markdown(fname):
                continue
            abs_path = os.path.join(dirpath, fname)
            try:
                snapshots.append(snapshot(abs_path))
            except ReadError as exc:
                logger.debug("[files] Unreadable during listing: %s", exc)
                snapshots.append(FileSnapshot(path=abs_path, content_hash="",
                                              last_modified=0.0))

    snapshots.sort(key=lambda s: s.path)
    return snapshots
