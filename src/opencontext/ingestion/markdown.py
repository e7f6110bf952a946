"""Markdown chunking.

Documents are split at ATX heading boundaries, keeping a heading-path stack
so nested sections inherit their ancestors' titles. Oversized sections are
split again at paragraph boundaries with a character overlap. Journal-style
``idea`` documents are split per entry instead.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple

from opencontext.models import HEADING_SEPARATOR, Chunk, DocumentRecord
from opencontext.utils.text import chunk_text, content_hash, tokenize

_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_FENCE = re.compile(r"^\s{0,3}(`{3,}|~{3,})")
_ENTRY_HEADING = re.compile(
    r"^##\s+(\d{4}-\d{2}-\d{2})([T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?\s*$"
)
_ENTRY_ID = re.compile(r"^\s*<!--\s*entry:\s*([\w.-]+)\s*-->\s*$")
_BLANK_LINES = re.compile(r"\n\s*\n")


@dataclass(slots=True)
class Section:
    heading_path: Tuple[str, ...]
    lines: List[str] = field(default_factory=list)
    line_start: int = 1
    entry_id: str | None = None
    entry_date: str | None = None
    entry_created_at: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.lines).strip()

    @property
    def line_end(self) -> int:
        return self.line_start + max(len(self.lines) - 1, 0)


def embedding_input(heading_path: Tuple[str, ...], text: str) -> str:
    """Text sent to the embedding model; its hash decides re-embedding."""
    if heading_path:
        return f"{HEADING_SEPARATOR.join(heading_path)}\n\n{text}"
    return text


def _iter_lines(text: str) -> Iterator[Tuple[int, str, bool]]:
    """Yield ``(line_number, line, in_code_block)``."""
    fence: str | None = None
    for number, line in enumerate(text.splitlines(), start=1):
        match = _FENCE.match(line)
        if match:
            marker = match.group(1)
            if fence is None:
                fence = marker[0] * 3
                yield number, line, True
                continue
            if marker.startswith(fence):
                fence = None
                yield number, line, True
                continue
        yield number, line, fence is not None


def split_sections(text: str) -> List[Section]:
    """Split a Markdown document at heading boundaries."""
    stack: List[Tuple[int, str]] = []
    sections = [Section(heading_path=(), line_start=1)]

    for number, line, in_code in _iter_lines(text):
        match = None if in_code else _HEADING.match(line)
        if match is None:
            sections[-1].lines.append(line)
            continue
        level = len(match.group(1))
        title = match.group(2).strip()
        stack = [(lvl, name) for lvl, name in stack if lvl < level]
        stack.append((level, title))
        sections.append(Section(heading_path=tuple(name for _, name in stack), line_start=number + 1))

    return [section for section in sections if section.text]


def split_entries(text: str) -> List[Section]:
    """Split an idea thread into one section per dated entry."""
    title: Tuple[str, ...] = ()
    preamble = Section(heading_path=(), line_start=1)
    sections: List[Section] = [preamble]
    seen: dict[str, int] = {}

    for number, line, in_code in _iter_lines(text):
        current = sections[-1]
        if not in_code:
            entry = _ENTRY_HEADING.match(line)
            if entry:
                date = entry.group(1)
                created_at = line[2:].strip()
                occurrence = seen.get(created_at, 0)
                seen[created_at] = occurrence + 1
                derived = hashlib.sha1(f"{created_at}#{occurrence}".encode("utf-8")).hexdigest()[:12]
                sections.append(
                    Section(
                        heading_path=title,
                        line_start=number + 1,
                        entry_id=derived,
                        entry_date=date,
                        entry_created_at=created_at,
                    )
                )
                continue
            if current is preamble and not title and not current.text:
                heading = _HEADING.match(line)
                if heading and len(heading.group(1)) == 1:
                    title = (heading.group(2).strip(),)
                    preamble.line_start = number + 1
                    continue
            marker = _ENTRY_ID.match(line)
            if marker and current.entry_id is not None and not current.text:
                current.entry_id = marker.group(1)
                current.line_start = number + 1
                continue
        current.lines.append(line)

    return [section for section in sections if section.text]


def _split_paragraphs(text: str, max_chars: int, overlap: int) -> List[str]:
    """Pack paragraphs into pieces of at most ``max_chars`` characters.

    Every piece after the first starts with the trailing ``overlap``
    characters of the previous one.
    """
    paragraphs: List[str] = []
    for para in _BLANK_LINES.split(text):
        para = para.strip()
        if not para:
            continue
        if len(para) > max_chars:
            paragraphs.extend(piece.strip() for piece in chunk_text(para, max_chars=max_chars, overlap=overlap))
        else:
            paragraphs.append(para)

    pieces: List[str] = []
    current = ""
    for para in paragraphs:
        candidate = f"{current}\n\n{para}" if current else para
        if current and len(candidate) > max_chars:
            pieces.append(current)
            tail = _overlap_tail(current, overlap)
            current = f"{tail}\n\n{para}" if tail else para
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def _overlap_tail(text: str, overlap: int) -> str:
    if overlap <= 0:
        return ""
    if len(text) <= overlap:
        return text
    tail = text[-overlap:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1 :]
    return tail.strip()


class MarkdownChunker:
    """Turns a document's Markdown into an ordered sequence of chunks."""

    def __init__(self, *, max_chars: int = 1200, overlap: int = 200) -> None:
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        if not 0 <= overlap < max_chars:
            raise ValueError("overlap must be >= 0 and smaller than max_chars")
        self.max_chars = max_chars
        self.overlap = overlap

    def chunk(self, document: DocumentRecord, text: str) -> Iterator[Chunk]:
        """Yield chunks lazily; calling again restarts from the beginning."""
        if document.doc_type == "idea":
            sections = split_entries(text)
        else:
            sections = split_sections(text)

        seq = 0
        for section in sections:
            body = section.text
            if len(body) > self.max_chars:
                pieces = _split_paragraphs(body, self.max_chars, self.overlap)
            else:
                pieces = [body]
            for piece in pieces:
                yield Chunk(
                    chunk_id=f"{document.stable_id}:{seq}",
                    stable_id=document.stable_id,
                    seq=seq,
                    heading_path=section.heading_path,
                    text=piece,
                    content_hash=content_hash(embedding_input(section.heading_path, piece)),
                    tokens=tuple(tokenize(f"{piece} {' '.join(section.heading_path)}")),
                    line_start=section.line_start,
                    line_end=section.line_end,
                    entry_id=section.entry_id,
                    entry_date=section.entry_date,
                    entry_created_at=section.entry_created_at,
                )
                seq += 1
