"""
Text normalization module for Recollect.

Cleans raw note text and splits it into sentence-aligned chunks that fit a
token budget for embedding.
"""

import html
import re
from typing import List, Set, Tuple

from errors import InvalidInputError
from models import Chunk

_TOKEN_RE = re.compile(r"\w+|[^\w\s]", re.UNICODE)
_WORD_RE = re.compile(r"\w+", re.UNICODE)
_SENTENCE_END_RE = re.compile(r"(?:(?<=[.!?])|(?<=[.!?][\"'\)\]]))\s+")

_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
_BLOCK_TAG_RE = re.compile(r"</?(p|div|br|li|ul|ol|h[1-6]|tr|table|section|article|blockquote|pre)\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_CODE_FENCE_RE = re.compile(r"^[ \t]*(```|~~~).*$", re.MULTILINE)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_HEADING_RE = re.compile(r"^[ \t]{0,3}#{1,6}(?:[ \t]+|$)", re.MULTILINE)
_QUOTE_RE = re.compile(r"^[ \t]*>+[ \t]?", re.MULTILINE)
_BULLET_RE = re.compile(r"^[ \t]*(?:[-*+]|\d+[.)])[ \t]+", re.MULTILINE)
_RULE_RE = re.compile(r"^[ \t]*([-*_])([ \t]*\1){2,}[ \t]*$", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(?<!\w)(\*{1,3}|_{1,3}|~~)(?=\S)(.+?)(?<=\S)\1(?!\w)")
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_SPACES_RE = re.compile(r"[ \t\f\v\u00a0]+")


def count_tokens(text: str) -> int:
    """Approximate token count: word runs plus individual punctuation marks."""
    return len(_TOKEN_RE.findall(text))


class Normalizer:
    """Turns raw note text into an ordered sequence of chunks."""

    def __init__(self, max_tokens: int = 500):
        """
        Initialize the normalizer.

        Args:
            max_tokens: Maximum number of tokens per chunk
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens

    def normalize(self, raw_text: str, note_id: str = "") -> List[Chunk]:
        """
        Clean text and split it into chunks for embedding.

        Args:
            raw_text: The text to normalize
            note_id: Identifier of the note the chunks belong to

        Returns:
            Ordered list of chunks, indexed from 0

        Raises:
            InvalidInputError: if the text is empty or has nothing left after cleaning
        """
        if not isinstance(raw_text, str):
            raise InvalidInputError(
                f"Expected text, got {type(raw_text).__name__}", {"note_id": note_id}
            )
        if not raw_text.strip():
            raise InvalidInputError("Text is empty", {"note_id": note_id})

        cleaned = self.clean_text(raw_text)
        if not _WORD_RE.search(cleaned):
            raise InvalidInputError(
                "No extractable text after cleaning", {"note_id": note_id}
            )

        units = self._sentence_units(cleaned)
        return self._pack(units, note_id)

    def clean_text(self, text: str) -> str:
        """Strip markup and collapse whitespace, keeping line structure and casing."""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = _HTML_COMMENT_RE.sub("", text)
        text = _SCRIPT_STYLE_RE.sub(" ", text)
        text = _BLOCK_TAG_RE.sub("\n", text)
        text = _TAG_RE.sub(" ", text)
        text = html.unescape(text)

        text = _CODE_FENCE_RE.sub("", text)
        text = _RULE_RE.sub("", text)
        text = _IMAGE_RE.sub(r"\1", text)
        text = _LINK_RE.sub(r"\1", text)
        text = _HEADING_RE.sub("", text)
        text = _QUOTE_RE.sub("", text)
        text = _BULLET_RE.sub("", text)
        text = _EMPHASIS_RE.sub(r"\2", text)
        text = _INLINE_CODE_RE.sub(r"\1", text)

        lines = [_SPACES_RE.sub(" ", line).strip() for line in text.split("\n")]
        return "\n".join(line for line in lines if line)

    def comparison_copy(self, text: str) -> str:
        """Lowercased, cleaned copy used only for comparisons."""
        return self.clean_text(text).lower()

    def terms(self, text: str) -> Set[str]:
        """Lowercased word tokens of the cleaned text."""
        return set(_WORD_RE.findall(self.comparison_copy(text)))

    def _sentence_units(self, cleaned: str) -> List[Tuple[str, bool]]:
        """Split cleaned text into sentences.

        Each unit is ``(sentence, starts_line)``; line breaks always end a sentence.
        """
        units: List[Tuple[str, bool]] = []
        for line in cleaned.split("\n"):
            first = True
            for sentence in _SENTENCE_END_RE.split(line):
                sentence = sentence.strip()
                if not sentence:
                    continue
                units.append((sentence, first))
                first = False
        return units

    def _pack(self, units: List[Tuple[str, bool]], note_id: str) -> List[Chunk]:
        chunks: List[Chunk] = []
        current = ""
        current_tokens = 0

        def flush():
            nonlocal current, current_tokens
            if current:
                chunks.append(
                    Chunk(note_id=note_id, index=len(chunks), text=current, token_count=current_tokens)
                )
            current = ""
            current_tokens = 0

        for sentence, starts_line in units:
            tokens = count_tokens(sentence)

            if tokens > self.max_tokens:
                # Last resort: hard-split the oversized sentence at the budget.
                flush()
                for piece in self._hard_split(sentence):
                    chunks.append(
                        Chunk(note_id=note_id, index=len(chunks), text=piece, token_count=count_tokens(piece))
                    )
                continue

            if current and current_tokens + tokens > self.max_tokens:
                flush()

            if current:
                current += ("\n" if starts_line else " ") + sentence
            else:
                current = sentence
            current_tokens += tokens

        flush()
        return chunks

    def _hard_split(self, sentence: str) -> List[str]:
        """Cut a sentence into pieces of at most ``max_tokens`` tokens."""
        spans = [match.span() for match in _TOKEN_RE.finditer(sentence)]
        pieces = []
        for start in range(0, len(spans), self.max_tokens):
            group = spans[start : start + self.max_tokens]
            piece = sentence[group[0][0] : group[-1][1]].strip()
            if piece:
                pieces.append(piece)
        return pieces
