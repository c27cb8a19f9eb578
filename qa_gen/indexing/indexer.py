"""LanceDB evidence index: stores project evidence chunks with embeddings.

Implements the vector-similarity contract the retriever consumes::

    query(text, filter, top_k) -> [{"score": float, "metadata": {...}}]

where ``metadata`` carries the EvidenceChunk fields in camelCase.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pyarrow as pa

from qa_gen.indexing.embedder import EvidenceEmbedder

if TYPE_CHECKING:
    from qa_gen.config import VectorConfig

logger = logging.getLogger(__name__)


def chunk_text(
    text: str,
    chunk_size: int = 800,
    overlap: int = 100,
    min_chars: int = 50,
) -> list[str]:
    """Split *text* into overlapping fixed-size windows.

    Windows whose stripped length is not above ``min_chars`` are dropped.
    """
    if chunk_size <= overlap:
        raise ValueError("chunk_size must be larger than overlap")
    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(text[start:end])
        start += chunk_size - overlap
    return [c for c in chunks if len(c.strip()) > min_chars]


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_filter(project_id: str, category: str | None = None) -> str:
    """Build a LanceDB SQL filter for a project (and optional category)."""
    expr = f"project_id = {_quote(project_id)}"
    if category:
        expr += f" AND category = {_quote(category)}"
    return expr


class EvidenceIndex:
    """Manages the LanceDB vector store for evidence chunks."""

    TABLE_NAME = "evidence_chunks"

    def __init__(
        self,
        db_path: str = "./data/qa_gen_vectors",
        embedder: EvidenceEmbedder | None = None,
        chunk_size: int = 800,
        chunk_overlap: int = 100,
        min_chunk_chars: int = 50,
    ) -> None:
        import lancedb

        if chunk_size <= chunk_overlap:
            raise ValueError("chunk_size must be larger than chunk_overlap")
        self._db_path = db_path
        self._embedder = embedder or EvidenceEmbedder()
        self._dim = self._embedder.dimension
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._min_chunk_chars = min_chunk_chars

        Path(db_path).mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(db_path)
        self._table = self._get_or_create_table()

    @classmethod
    def from_config(cls, vector: VectorConfig) -> EvidenceIndex:
        """Build the index and its embedder from the ``vector`` config section."""
        return cls(
            db_path=vector.db_path,
            embedder=EvidenceEmbedder.from_config(vector),
            chunk_size=vector.chunk_size,
            chunk_overlap=vector.chunk_overlap,
            min_chunk_chars=vector.min_chunk_chars,
        )

    def _get_or_create_table(self) -> Any:
        """Get existing table or create a new one with the correct schema."""
        if self.TABLE_NAME in self._db.table_names():
            table = self._db.open_table(self.TABLE_NAME)
            logger.info(
                "Opened existing table '%s' with %d rows.",
                self.TABLE_NAME,
                table.count_rows(),
            )
            return table

        schema = pa.schema([
            pa.field("chunk_id", pa.utf8()),
            pa.field("text", pa.utf8()),
            pa.field("vector", pa.list_(pa.float32(), self._dim)),
            pa.field("project_id", pa.utf8()),
            pa.field("doc_id", pa.utf8()),
            pa.field("chunk_index", pa.int32()),
            pa.field("filename", pa.utf8()),
            pa.field("category", pa.utf8()),
            pa.field("page_url", pa.utf8()),
        ])

        table = self._db.create_table(self.TABLE_NAME, schema=schema)
        logger.info("Created new table '%s'.", self.TABLE_NAME)
        return table

    def add_document(
        self,
        project_id: str,
        doc_id: str,
        filename: str,
        category: str,
        text: str,
        page_url: str | None = None,
    ) -> int:
        """Chunk, embed and store one document. Existing chunks for ``doc_id`` are replaced.

        Returns:
            Number of chunks stored.
        """
        chunks = chunk_text(text, self._chunk_size, self._chunk_overlap, self._min_chunk_chars)
        self.delete_document(doc_id)
        if not chunks:
            logger.info("No indexable chunks in %s.", filename)
            return 0

        vectors = self._embedder.embed_passages(chunks)
        records = [
            {
                "chunk_id": f"{doc_id}-chunk-{i}",
                "text": chunk,
                "vector": vector.tolist(),
                "project_id": project_id,
                "doc_id": doc_id,
                "chunk_index": i,
                "filename": filename,
                "category": category,
                "page_url": page_url or "",
            }
            for i, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        self._table.add(records)
        logger.info("Added %d chunks for %s (%s).", len(records), filename, category)
        return len(records)

    def delete_document(self, doc_id: str) -> None:
        if self._table.count_rows() == 0:
            return
        self._table.delete(f"doc_id = {_quote(doc_id)}")

    def query(self, text: str, filter: str, top_k: int) -> list[dict[str, Any]]:
        """Cosine-similarity search restricted by ``filter``.

        Returns:
            ``[{"score": float, "metadata": dict}]`` sorted by score descending.
        """
        if top_k <= 0 or self._table.count_rows() == 0:
            return []

        query_vec = self._embedder.embed_query(text)
        results = (
            self._table.search(query_vec.tolist())
            .metric("cosine")
            .where(filter, prefilter=True)
            .limit(top_k)
            .to_arrow()
        )
        return self._arrow_to_matches(results)

    @staticmethod
    def _arrow_to_matches(arrow_table: Any) -> list[dict[str, Any]]:
        """Convert a PyArrow table of search results to match dicts."""
        if arrow_table.num_rows == 0:
            return []

        has_distance = "_distance" in set(arrow_table.column_names)
        rows = arrow_table.to_pylist()
        matches: list[dict[str, Any]] = []
        for row in rows:
            # LanceDB returns cosine distance (lower = better)
            score = 1.0 - float(row["_distance"]) if has_distance else 1.0
            matches.append({
                "score": score,
                "metadata": {
                    "projectId": row["project_id"],
                    "docId": row["doc_id"],
                    "chunkIndex": int(row["chunk_index"]),
                    "filename": row["filename"],
                    "category": row["category"],
                    "text": row["text"],
                    "pageUrl": row.get("page_url") or None,
                },
            })
        matches.sort(key=lambda m: m["score"], reverse=True)
        return matches

    def count_rows(self) -> int:
        return self._table.count_rows()

    def stats(self) -> dict[str, Any]:
        return {
            "total_chunks": self.count_rows(),
            "db_path": self._db_path,
            "embedding_model": self._embedder.model_name,
            "embedding_dim": self._dim,
        }
