"""Tests for the evidence embedder wrapper (no model download)."""

from __future__ import annotations

import numpy as np

from qa_gen.config import VectorConfig
from qa_gen.indexing.embedder import EvidenceEmbedder


class _StubModel:
    def __init__(self) -> None:
        self.passage_calls: list[tuple[list[str], int]] = []

    def passage_embed(self, texts, batch_size=64):
        self.passage_calls.append((list(texts), batch_size))
        for i, _ in enumerate(texts):
            yield [float(i), 1.0]

    def query_embed(self, text):
        yield [0.5, 0.5]


class TestFromConfig:
    def test_uses_vector_section(self, monkeypatch) -> None:
        monkeypatch.delenv("FASTEMBED_CACHE_PATH", raising=False)
        vector = VectorConfig(embedding_model="intfloat/multilingual-e5-large",
                              model_cache_dir="/tmp/models", embed_batch_size=16)
        embedder = EvidenceEmbedder.from_config(vector)
        assert embedder.model_name == "intfloat/multilingual-e5-large"
        assert embedder.cache_dir == "/tmp/models"
        assert embedder.batch_size == 16
        assert embedder.dimension == 1024

    def test_cache_env_overrides_config(self, monkeypatch) -> None:
        monkeypatch.setenv("FASTEMBED_CACHE_PATH", "/opt/fastembed")
        assert EvidenceEmbedder.from_config(VectorConfig()).cache_dir == "/opt/fastembed"


class TestEmbedding:
    def test_passages_and_query(self) -> None:
        embedder = EvidenceEmbedder(batch_size=8)
        model = _StubModel()
        embedder._model = model

        vectors = embedder.embed_passages(["a", "b"])
        assert [v.tolist() for v in vectors] == [[0.0, 1.0], [1.0, 1.0]]
        assert vectors[0].dtype == np.float32
        assert model.passage_calls == [(["a", "b"], 8)]
        assert embedder.embed_query("q").tolist() == [0.5, 0.5]

    def test_empty_passages_skip_model(self) -> None:
        embedder = EvidenceEmbedder()
        assert embedder.embed_passages([]) == []
        assert embedder._model is None

    def test_instances_do_not_share_models(self) -> None:
        first, second = EvidenceEmbedder(), EvidenceEmbedder(model_name="other/model")
        first._model = _StubModel()
        assert second._model is None
