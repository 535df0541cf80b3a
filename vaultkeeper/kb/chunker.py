"""
Paragraph-bounded chunking of note content.

Chunks never straddle a paragraph boundary unless a single paragraph is
larger than the budget, in which case it is split on line boundaries and,
as a last resort, hard-split by characters. Every chunk records the
character range it covers in the source text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Approximate chars-per-token ratio used for budget estimates
CHARS_PER_TOKEN = 4

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n")
_LINE_BREAK = re.compile(r"\n")


@dataclass(frozen=True)
class Chunk:
    start: int      # inclusive character offset
    end: int        # exclusive character offset
    text: str


def estimate_tokens(text: str) -> int:
    """Rough token estimate: len(text) // 4."""
    return len(text) // CHARS_PER_TOKEN


def _trim(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _split_spans(text: str, start: int, end: int, pattern: re.Pattern) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    pos = start
    for m in pattern.finditer(text, start, end):
        trimmed = _trim(text, pos, m.start())
        if trimmed:
            spans.append(trimmed)
        pos = m.end()
    trimmed = _trim(text, pos, end)
    if trimmed:
        spans.append(trimmed)
    return spans


def _fit(text: str, span: tuple[int, int], max_chars: int) -> list[tuple[int, int]]:
    start, end = span
    if end - start <= max_chars:
        return [span]
    lines = _split_spans(text, start, end, _LINE_BREAK)
    if len(lines) > 1:
        return _pack(text, lines, max_chars)
    return [(i, min(i + max_chars, end)) for i in range(start, end, max_chars)]


def _pack(text: str, spans: list[tuple[int, int]], max_chars: int) -> list[tuple[int, int]]:
    """Greedily merge consecutive spans while the merged range fits."""
    packed: list[tuple[int, int]] = []
    current: tuple[int, int] | None = None
    for span in spans:
        for piece in _fit(text, span, max_chars):
            if current is not None and piece[1] - current[0] <= max_chars:
                current = (current[0], piece[1])
            else:
                if current is not None:
                    packed.append(current)
                current = piece
    if current is not None:
        packed.append(current)
    return packed


def chunk_text(text: str, max_tokens: int) -> list[Chunk]:
    """
    Split *text* into paragraph-bounded chunks of at most *max_tokens*
    estimated tokens.

    Parameters
    ----------
    text:
        Full file content.
    max_tokens:
        Upper bound per chunk, normally the embedding backend's input limit.

    Returns
    -------
    list[Chunk]
        Ordered, non-overlapping chunks. Empty for whitespace-only text.
    """
    max_chars = max(1, max_tokens) * CHARS_PER_TOKEN
    paragraphs = _split_spans(text, 0, len(text), _PARAGRAPH_BREAK)
    return [Chunk(start=s, end=e, text=text[s:e]) for s, e in _pack(text, paragraphs, max_chars)]
