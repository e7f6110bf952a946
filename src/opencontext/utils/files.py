"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterator

IDEAS_DIR = ".ideas"


def _is_hidden(rel: Path) -> bool:
    return any(part.startswith(".") and part != IDEAS_DIR for part in rel.parts)


def iter_markdown_paths(root: Path) -> Iterator[Path]:
    """Yield Markdown files under ``root`` in sorted order.

    Hidden files and directories are skipped, except the ``.ideas`` folder
    that holds journal threads.
    """
    if not root.is_dir():
        return
    for item in sorted(root.rglob("*.md")):
        if item.is_file() and not _is_hidden(item.relative_to(root)):
            yield item


def to_rel_path(root: Path, path: Path) -> str:
    return path.relative_to(root).as_posix()


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()
