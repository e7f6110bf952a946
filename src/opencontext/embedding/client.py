"""Embedding client: batching, bounded concurrency, retries, order preservation."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Protocol, Sequence

import httpx
import numpy as np

from opencontext.errors import BuildCancelled, ConfigurationError, EmbeddingFailure

DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_API_BASE = "https://api.openai.com/v1"

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(slots=True)
class EmbeddingConfig:
    provider: Literal["openai", "local"] = "openai"
    api_base: str = DEFAULT_API_BASE
    api_key: str | None = None
    model_name: str = DEFAULT_MODEL
    dimensions: int | None = None
    batch_size: int = 64
    concurrency: int = 4
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    device: str | None = None


class TransientEmbeddingError(Exception):
    """A batch failure worth retrying (timeout, 5xx, 429)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class EmbeddingBackend(Protocol):
    model_id: str

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray: ...

    def close(self) -> None: ...


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpEmbeddingBackend:
    """OpenAI-compatible ``POST /embeddings`` backend."""

    def __init__(self, config: EmbeddingConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self.model_id = f"{config.model_name}@{config.dimensions}" if config.dimensions else config.model_name
        self._client = httpx.Client(
            base_url=config.api_base.rstrip("/"),
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not self.config.api_key:
            raise ConfigurationError(
                "API key not configured. Set OPENAI_API_KEY or configure it in ~/.opencontext/config.toml"
            )

        payload: Dict[str, object] = {"model": self.config.model_name, "input": list(texts)}
        if self.config.dimensions:
            payload["dimensions"] = self.config.dimensions

        try:
            resp = self._client.post(
                "/embeddings",
                json=payload,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientEmbeddingError(f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 429:
            raise TransientEmbeddingError(
                "Rate limited (429)", retry_after=_parse_retry_after(resp.headers.get("Retry-After"))
            )
        if resp.status_code >= 500:
            raise TransientEmbeddingError(f"Server error {resp.status_code}")
        resp.raise_for_status()

        data = resp.json().get("data")
        if not isinstance(data, list) or len(data) != len(texts):
            raise ValueError(
                f"Embedding response has {len(data) if isinstance(data, list) else 'no'} items, "
                f"expected {len(texts)}"
            )
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return np.asarray([item["embedding"] for item in ordered], dtype="float32")


def create_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    if config.provider == "openai":
        return HttpEmbeddingBackend(config)
    if config.provider == "local":
        from opencontext.embedding.local import SentenceTransformerBackend

        return SentenceTransformerBackend(config)
    raise ConfigurationError(f"Unknown embedding provider: {config.provider!r}")


class EmbeddingClient:
    """Embeds ordered text lists through a backend, one batch per request.

    Up to ``config.concurrency`` batches are in flight at once. A batch that
    still fails after ``config.max_retries`` retries fails the whole call.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        backend: EmbeddingBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self._backend = backend
        self._sleep = sleep

    @property
    def backend(self) -> EmbeddingBackend:
        if self._backend is None:
            self._backend = create_backend(self.config)
        return self._backend

    @property
    def model_id(self) -> str:
        return self.backend.model_id

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def embed(
        self,
        texts: Sequence[str],
        *,
        on_progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> np.ndarray:
        """Return float32 embeddings, one row per input text, in input order."""
        items = list(texts)
        if not items:
            return np.zeros((0, self.config.dimensions or 0), dtype="float32")

        size = max(self.config.batch_size, 1)
        batches = [(start, items[start : start + size]) for start in range(0, len(items), size)]
        results: Dict[int, np.ndarray] = {}
        failures: List[EmbeddingFailure] = []
        progress_lock = threading.Lock()
        done = 0

        def run(start: int, batch: List[str]) -> np.ndarray:
            nonlocal done
            vectors = self._embed_with_retry(start, batch)
            with progress_lock:
                done += len(batch)
                if on_progress is not None:
                    on_progress(done, len(items))
            return vectors

        pending: Dict[Future, int] = {}
        queue = list(reversed(batches))
        workers = max(min(self.config.concurrency, len(batches)), 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as pool:
            while queue or pending:
                while queue and len(pending) < workers and not failures:
                    if cancel is not None and cancel.is_set():
                        break
                    start, batch = queue.pop()
                    pending[pool.submit(run, start, batch)] = start

                if not pending:
                    break
                finished, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in finished:
                    start = pending.pop(future)
                    try:
                        results[start] = future.result()
                    except EmbeddingFailure as exc:
                        failures.append(exc)
                if failures or (cancel is not None and cancel.is_set()):
                    queue.clear()

        if failures:
            raise min(failures, key=lambda exc: exc.index)
        if len(results) != len(batches):
            raise BuildCancelled("Embedding cancelled before all batches completed.")

        matrix = np.vstack([results[start] for start, _ in batches]).astype("float32", copy=False)
        if matrix.shape[0] != len(items):
            raise EmbeddingFailure(
                f"Embedding backend returned {matrix.shape[0]} vectors for {len(items)} texts",
                index=0,
            )
        return matrix

    def _embed_with_retry(self, start: int, batch: List[str]) -> np.ndarray:
        attempts = 0
        while True:
            attempts += 1
            try:
                vectors = np.asarray(self.backend.embed_batch(batch), dtype="float32")
            except TransientEmbeddingError as exc:
                if attempts > self.config.max_retries:
                    raise EmbeddingFailure(
                        f"Embedding batch at item {start} failed after {attempts} attempts: {exc}",
                        index=start,
                        attempts=attempts,
                    ) from exc
                delay = min(self.config.backoff_base * (2 ** (attempts - 1)), self.config.backoff_max)
                if exc.retry_after is not None:
                    delay = min(max(delay, exc.retry_after), self.config.backoff_max)
                LOGGER.warning(
                    "Embedding batch at item %d failed (%s); retry %d/%d in %.1fs",
                    start,
                    exc,
                    attempts,
                    self.config.max_retries,
                    delay,
                )
                self._sleep(delay)
                continue
            except ConfigurationError:
                raise
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                raise EmbeddingFailure(
                    f"Embedding batch at item {start} failed: {exc}",
                    index=start,
                    attempts=attempts,
                ) from exc

            if vectors.ndim != 2 or vectors.shape[0] != len(batch):
                raise EmbeddingFailure(
                    f"Embedding batch at item {start} returned {vectors.shape[0] if vectors.ndim else 0} "
                    f"vectors for {len(batch)} texts",
                    index=start,
                    attempts=attempts,
                )
            LOGGER.debug("Embedded batch at item %d (%d texts)", start, len(batch))
            return vectors
