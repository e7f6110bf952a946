"""Local embedding backend built on ``sentence-transformers``.

Used when ``[embedding] provider = "local"``: no network, no API key, but the
model is downloaded once and loaded into memory.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from opencontext.embedding.client import EmbeddingConfig

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

logger = logging.getLogger(__name__)


def _detect_device() -> str | None:
    """Pick a torch device, or ``None`` to let sentence-transformers decide."""
    try:
        import torch

        if torch.cuda.is_available():
            logger.debug("CUDA GPU detected: %s", torch.cuda.get_device_name(0))
            return "cuda"
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.debug("Apple MPS GPU detected")
            return "mps"
    except ImportError:
        logger.debug("PyTorch not available for GPU detection")
    return None


class SentenceTransformerBackend:
    """Thin wrapper around `SentenceTransformer` producing normalized vectors."""

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config
        model_name = config.model_name
        if model_name.startswith("text-embedding-"):
            # OpenAI model names are meaningless locally
            model_name = DEFAULT_LOCAL_MODEL
        self.model_id = model_name
        device = config.device or _detect_device()
        self._model = SentenceTransformer(model_name, device=device)
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        logger.info("Loaded local embedding model %s (dim=%d, device=%s)", model_name, self.dimension, device or "auto")

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        embeddings = self._model.encode(
            list(texts),
            batch_size=len(texts),
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return embeddings.astype("float32", copy=False)

    def close(self) -> None:
        return None
