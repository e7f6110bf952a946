"""Text helpers: fixed-window chunking, normalization and tokenization."""

from __future__ import annotations

import hashlib
import re
from typing import Iterator, List

_WHITESPACE = re.compile(r"\s+")


def chunk_text(text: str, *, max_chars: int = 1200, overlap: int = 200) -> Iterator[str]:
    """Split text into overlapping character chunks.

    This coarse chunker keeps things simple while preserving context overlap.
    """
    if not text:
        return

    step = max(max_chars - overlap, 1)
    for start in range(0, len(text), step):
        yield text[start : start + max_chars]
        if start + max_chars >= len(text):
            break


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def content_hash(text: str) -> str:
    """SHA-256 of the whitespace-collapsed text."""
    return hashlib.sha256(collapse_whitespace(text).encode("utf-8")).hexdigest()


def _is_cjk(char: str) -> bool:
    return "一" <= char <= "鿿"


def _cjk_tokens(run: str) -> List[str]:
    tokens: List[str] = []
    for i, char in enumerate(run):
        tokens.append(char)
        if i < len(run) - 1:
            tokens.append(run[i : i + 2])
    return tokens


def tokenize(text: str) -> List[str]:
    """Lowercase lexical tokens.

    ASCII letters/digits form words (single characters are dropped); CJK
    characters emit one token per character plus overlapping bigrams.
    Everything else is a separator.
    """
    if not text:
        return []

    tokens: List[str] = []
    word: List[str] = []
    cjk: List[str] = []

    def flush_word() -> None:
        if len(word) >= 2:
            tokens.append("".join(word))
        word.clear()

    def flush_cjk() -> None:
        if cjk:
            tokens.extend(_cjk_tokens("".join(cjk)))
        cjk.clear()

    for char in text.lower():
        if char.isascii() and char.isalnum():
            flush_cjk()
            word.append(char)
        elif _is_cjk(char):
            flush_word()
            cjk.append(char)
        else:
            flush_word()
            flush_cjk()

    flush_word()
    flush_cjk()
    return tokens


def excerpt(text: str, max_chars: int) -> str:
    text = text.strip()
    if len(text) <= max_chars:
        return text
    cut = text.rfind(" ", 0, max_chars)
    if cut < max_chars // 2:
        cut = max_chars
    return text[:cut].rstrip() + "…"
