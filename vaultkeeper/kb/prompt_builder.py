"""
Retrieval prompt builder: packs ranked vault entries into a prompt that
fits a model's context window.

A quarter of the window is kept free for the completion. Entries are added
in rank order until the next one would overflow; the first entry is
truncated rather than dropped so a prompt never loses all its context.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol, Sequence

logger = logging.getLogger(__name__)

RESERVED_COMPLETION_FRACTION = 0.25

_HEADER = "Answer the question below based on the following notes:\n"


class _Candidate(Protocol):
    path: str
    content: str


Tokenizer = Callable[[str], Sequence[int]]


def _render(notes: Iterable[tuple[str, str]], query: str) -> str:
    blocks = "".join(f"### {path}\n{content}\n\n" for path, content in notes)
    return f"{_HEADER}{blocks}Question: {query}"


def _render_compact(context: str, query: str) -> str:
    return f"{context}\n\n{query}"


def _longest_prefix(text: str, render: Callable[[str], str],
                    fits: Callable[[str], bool]) -> int:
    """Binary search for the longest ``text[:n]`` whose rendering fits."""
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if fits(render(text[:mid])):
            lo = mid
        else:
            hi = mid - 1
    return lo


class RetrievalPromptBuilder:
    """
    Build augmented prompts under a token budget.

    Parameters
    ----------
    reserved_fraction:
        Share of the context window left for the model's answer.
    """

    def __init__(self, reserved_fraction: float = RESERVED_COMPLETION_FRACTION) -> None:
        self.reserved_fraction = reserved_fraction

    def input_budget(self, context_length: int) -> int:
        """Tokens available to the prompt for a window of *context_length*."""
        reserved = int(context_length * self.reserved_fraction)
        return max(0, context_length - reserved)

    def build(
        self,
        query: str,
        candidates: Sequence[_Candidate],
        tokenize: Tokenizer,
        context_length: int,
    ) -> str:
        """
        Render *query* and as many *candidates* as fit.

        Parameters
        ----------
        query:
            The user's question.
        candidates:
            Search results, best first. Anything with ``path`` and
            ``content`` attributes.
        tokenize:
            The consuming model's tokenizer; the full prompt is measured
            with it on every check.
        context_length:
            The consuming model's context window in tokens.

        Returns
        -------
        str
            The prompt. Its token count never exceeds the input budget, and
            it is non-empty whenever a candidate exists and the budget is
            positive. Empty when the budget is zero.
        """
        budget = self.input_budget(context_length)
        if budget <= 0:
            logger.warning("[prompt] Context length %d leaves no room for a prompt",
                           context_length)
            return ""

        def fits(text: str) -> bool:
            return len(tokenize(text)) <= budget

        notes: list[tuple[str, str]] = []
        for candidate in candidates:
            trial = notes + [(candidate.path, candidate.content)]
            if not fits(_render(trial, query)):
                break
            notes = trial

        if notes:
            if len(notes) < len(candidates):
                logger.debug("[prompt] Kept %d of %d candidates within %d tokens",
                             len(notes), len(candidates), budget)
            return _render(notes, query)

        if not candidates:
            prompt = _render([], query)
            if fits(prompt):
                return prompt
            n = _longest_prefix(query, lambda q: q, fits)
            return query[:n]

        # The first candidate alone overflows: truncate it
        first = candidates[0]
        n = _longest_prefix(first.content, lambda c: _render([(first.path, c)], query), fits)
        if n > 0:
            logger.debug("[prompt] Truncated %s to %d of %d chars",
                         first.path, n, len(first.content))
            return _render([(first.path, first.content[:n])], query)

        # Not even the frame fits; drop it
        n = _longest_prefix(first.content, lambda c: _render_compact(c, query), fits)
        if n > 0:
            return _render_compact(first.content[:n], query)

        # The query alone overflows: shorten it but keep part of the note
        m = _longest_prefix(query, lambda q: _render_compact(first.content[:1], q), fits)
        if m > 0:
            k = _longest_prefix(first.content, lambda c: _render_compact(c, query[:m]), fits)
            return _render_compact(first.content[:k], query[:m])

        n = _longest_prefix(first.content, lambda c: c, fits)
        if n > 0:
            return first.content[:n]
        n = _longest_prefix(query, lambda q: q, fits)
        return query[:n]


def build_rag_prompt(
    query: str,
    candidates: Sequence[_Candidate],
    tokenize: Tokenizer,
    context_length: int,
) -> str:
    """Shortcut for ``RetrievalPromptBuilder().build(...)``."""
    return RetrievalPromptBuilder().build(query, candidates, tokenize, context_length)
