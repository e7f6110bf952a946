"""Stable citation links (``oc://doc/<stable_id>``)."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlsplit

SCHEME = "oc"
DOC_HOST = "doc"


@dataclass(slots=True, frozen=True)
class Citation:
    stable_id: str
    fallback_path: str | None = None

    @property
    def url(self) -> str:
        return build_citation(self.stable_id, self.fallback_path)


def build_citation(stable_id: str, fallback_path: str | None = None) -> str:
    """Return the citation URL for a document.

    ``fallback_path`` is only appended when the stable id cannot currently
    be resolved to a path.
    """
    if not stable_id:
        raise ValueError("stable_id is required for a citation")
    url = f"{SCHEME}://{DOC_HOST}/{stable_id}"
    if fallback_path:
        url += "?path=" + quote(fallback_path, safe="/")
    return url


def parse_citation(url: str) -> Citation:
    parts = urlsplit(url)
    stable_id = parts.path.lstrip("/")
    if parts.scheme != SCHEME or parts.netloc != DOC_HOST or not stable_id or "/" in stable_id:
        raise ValueError(f"Not an OpenContext document link: {url!r}")
    paths = parse_qs(parts.query).get("path")
    return Citation(stable_id=stable_id, fallback_path=paths[0] if paths else None)


def markdown_link(label: str, stable_id: str) -> str:
    return f"[{label}]({build_citation(stable_id)})"
