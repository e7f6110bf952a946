"""Error taxonomy shared by the indexer, searcher and their front ends.

Every error carries a stable ``kind`` string so that automated callers
(CLI ``--format json``, the web API, agent tool layers) can branch on it
without parsing messages.
"""

from __future__ import annotations

from typing import Any, Dict


class OpenContextError(Exception):
    """Base class for all OpenContext errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update(self.extra())
        return payload


class ConfigurationError(OpenContextError):
    kind = "configuration"


class IndexNotAvailable(OpenContextError):
    """No committed index generation exists yet."""

    kind = "index_not_available"

    def __init__(self, message: str = "Search index not built. Run 'oc index build' first.") -> None:
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {
            "hint": "Build the index with `oc index build`, or fall back to `oc manifest <folder>`.",
        }


class EmbeddingFailure(OpenContextError):
    """The embedding backend failed after exhausting its retries."""

    kind = "embedding_failure"

    def __init__(self, message: str, *, index: int, attempts: int = 1) -> None:
        super().__init__(message)
        self.index = index
        self.attempts = attempts

    def extra(self) -> Dict[str, Any]:
        return {"index": self.index, "attempts": self.attempts}


class DocumentVanished(OpenContextError):
    """A document disappeared from the content store while it was in use."""

    kind = "document_vanished"

    def __init__(
        self,
        message: str,
        *,
        stable_id: str | None = None,
        rel_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stable_id = stable_id
        self.rel_path = rel_path

    def extra(self) -> Dict[str, Any]:
        return {"stable_id": self.stable_id, "rel_path": self.rel_path}


class ConcurrentBuildRejected(OpenContextError):
    kind = "concurrent_build_rejected"

    def __init__(self, message: str = "An index build is already running.") -> None:
        super().__init__(message)


class BuildCancelled(OpenContextError):
    kind = "build_cancelled"

    def __init__(self, message: str = "Index build cancelled; previous index kept.") -> None:
        super().__init__(message)


class EmbeddingMismatch(OpenContextError):
    """The query embedding does not match the vectors stored in the index."""

    kind = "embedding_mismatch"

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Query embedding has dimension {actual} but the index stores {expected}. "
            "Rebuild with 'oc index build --force'."
        )
        self.expected = expected
        self.actual = actual

    def extra(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual}


def error_payload(exc: Exception) -> Dict[str, Any]:
    """Structured payload for any exception reaching a front end."""
    if isinstance(exc, OpenContextError):
        return exc.to_payload()
    if isinstance(exc, ValueError):
        return {"kind": "invalid_argument", "message": str(exc)}
    return {"kind": "internal", "message": f"{type(exc).__name__}: {exc}"}
