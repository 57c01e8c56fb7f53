"""
Context assembly for Recollect.

Builds the bounded context handed to a generation provider: the page being
viewed first, then excerpts of related notes in rank order, then as many of
the most recent conversation turns as still fit.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

import structlog

from models import ChatTurn, ContextExcerpt, ContextPayload, ExcerptSource, RankedResult
from normalizer import Normalizer

log = structlog.get_logger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?][\"'\)\]]?(?=\s|$)")
_SENTENCE_SPLIT_RE = re.compile(r"(?:(?<=[.!?])|(?<=[.!?][\"'\)\]]))\s+")


def _sentences(text: str) -> List[str]:
    return [part for part in _SENTENCE_SPLIT_RE.split(text.strip()) if part]


def truncate_text(text: str, limit: int) -> str:
    """Shorten ``text`` to at most ``limit`` characters.

    Cuts after the last sentence end that fits, else at the last whitespace,
    else hard at ``limit``.
    """
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text

    window = text[:limit]
    ends = [match.end() for match in _SENTENCE_END_RE.finditer(window)]
    if ends:
        return window[: ends[-1]].rstrip()

    space = max(window.rfind(" "), window.rfind("\n"))
    if space > 0:
        cut = window[:space].rstrip()
        if cut:
            return cut
    return window


def _whole_sentences(text: str, limit: int) -> str:
    """Longest prefix of whole sentences that fits in ``limit``; may be empty."""
    kept = ""
    for sentence in _sentences(text):
        candidate = f"{kept} {sentence}" if kept else sentence
        if len(candidate) > limit:
            break
        kept = candidate
    return kept


class ContextAssembler:
    """Packs page context, note excerpts and prior turns into a character budget."""

    def __init__(
        self,
        budget_chars: int = 4000,
        separator: str = "\n\n",
        normalizer: Optional[Normalizer] = None,
    ):
        if budget_chars <= 0:
            raise ValueError("budget_chars must be positive")
        self.budget_chars = budget_chars
        self.separator = separator
        self.normalizer = normalizer or Normalizer()

    def build_context(
        self,
        ranked_results: Sequence[RankedResult],
        page_context: Optional[str] = None,
        prior_turns: Optional[Sequence[ChatTurn]] = None,
    ) -> ContextPayload:
        """
        Assemble a context payload whose rendered form fits ``budget_chars``.

        Args:
            ranked_results: Related notes in rank order
            page_context: Text of the page being viewed; always included
            prior_turns: Conversation so far, oldest first

        Returns:
            ContextPayload with one excerpt per included piece
        """
        excerpts: List[ContextExcerpt] = []
        used = 0

        def remaining() -> int:
            # Room left for the next excerpt's text, separator included.
            if not excerpts:
                return self.budget_chars - used
            return self.budget_chars - used - len(self.separator)

        def append(excerpt: ContextExcerpt) -> None:
            nonlocal used
            if excerpts:
                used += len(self.separator)
            used += len(excerpt.text)
            excerpts.append(excerpt)

        if page_context:
            page = self._clean(page_context)
            if page:
                text = truncate_text(page, self.budget_chars)
                append(
                    ContextExcerpt(
                        text=text,
                        source=ExcerptSource.PAGE,
                        truncated=len(text) < len(page),
                    )
                )
            else:
                log.info("page_context_empty", raw_chars=len(page_context))

        for result in ranked_results:
            body = self._clean(result.excerpt)
            if not body:
                continue
            room = remaining()
            truncated = False
            if len(body) > room:
                body = _whole_sentences(body, room)
                truncated = True
                if not body:
                    log.debug(
                        "context_budget_exhausted",
                        note_id=result.note_id,
                        budget=self.budget_chars,
                        used=used,
                    )
                    break
            append(
                ContextExcerpt(
                    text=body,
                    source=ExcerptSource.NOTE,
                    note_id=result.note_id,
                    chunk_index=result.best_chunk_index,
                    score=result.combined_score,
                    truncated=truncated,
                )
            )

        if prior_turns:
            chosen: List[ContextExcerpt] = []
            room = remaining()
            for turn in reversed(prior_turns):
                text = f"{turn.role}: {turn.content.strip()}"
                cost = len(text) + (len(self.separator) if chosen else 0)
                if cost > room:
                    break
                chosen.append(ContextExcerpt(text=text, source=ExcerptSource.TURN))
                room -= cost
            for excerpt in reversed(chosen):
                append(excerpt)

        payload = ContextPayload(
            excerpts=tuple(excerpts),
            budget_chars=self.budget_chars,
            separator=self.separator,
        )
        log.debug(
            "context_assembled",
            excerpts=len(payload.excerpts),
            chars=payload.total_chars,
            budget=self.budget_chars,
        )
        return payload

    def _clean(self, text: str) -> str:
        if not text or not text.strip():
            return ""
        return self.normalizer.clean_text(text).replace("\n", " ")
