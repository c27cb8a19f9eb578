"""Evidence embedder: one fastembed model per evidence index.

Passages (indexed chunks) and retrieval queries go through the same model;
asymmetric models get their passage/query prefixes via fastembed's
``passage_embed`` / ``query_embed``.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING, Any, Iterable

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from qa_gen.config import VectorConfig

logger = logging.getLogger(__name__)

# Dimensions of the models we ship presets for; anything else is probed once
KNOWN_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2": 384,
    "intfloat/multilingual-e5-large": 1024,
}


class EvidenceEmbedder:
    """Lazily loads a fastembed ``TextEmbedding`` and embeds evidence text."""

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        cache_dir: str = "./data/models",
        batch_size: int = 64,
    ) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.batch_size = batch_size
        self._model: Any = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, vector: VectorConfig) -> EvidenceEmbedder:
        """Build from the ``vector`` section; ``FASTEMBED_CACHE_PATH`` wins over the config."""
        return cls(
            model_name=vector.embedding_model,
            cache_dir=os.environ.get("FASTEMBED_CACHE_PATH", vector.model_cache_dir),
            batch_size=vector.embed_batch_size,
        )

    def _load(self) -> Any:
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is None:
                from fastembed import TextEmbedding

                logger.info("Loading embedding model: %s (cache: %s)", self.model_name, self.cache_dir)
                self._model = TextEmbedding(self.model_name, cache_dir=self.cache_dir)
        return self._model

    @property
    def dimension(self) -> int:
        if self.model_name in KNOWN_DIMENSIONS:
            return KNOWN_DIMENSIONS[self.model_name]
        return len(self.embed_query("dimension probe"))

    def embed_passages(self, texts: list[str]) -> list[NDArray[np.float32]]:
        """Embed evidence chunks for storage, one vector per text."""
        if not texts:
            return []
        model = self._load()
        vectors = _as_arrays(model.passage_embed(texts, batch_size=self.batch_size))
        logger.debug("Embedded %d evidence chunks (dim=%d).", len(vectors), len(vectors[0]))
        return vectors

    def embed_query(self, text: str) -> NDArray[np.float32]:
        return _as_arrays(self._load().query_embed(text))[0]


def _as_arrays(vectors: Iterable[Any]) -> list[NDArray[np.float32]]:
    return [np.asarray(v, dtype=np.float32) for v in vectors]
