"""Evidence retriever: per-category similarity search over the evidence index."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from qa_gen.indexing.indexer import build_filter
from qa_gen.models import EvidenceCategory, EvidenceChunk

logger = logging.getLogger(__name__)


class RetrievalError(Exception):
    """The vector index could not serve a query."""


class VectorIndex(Protocol):
    def query(self, text: str, filter: str, top_k: int) -> list[dict[str, Any]]: ...


@dataclass
class EvidenceSets:
    """Chunk lists for one invocation, one per retrieval slot.

    ``doc`` is an unfiltered project search (any category), ``site`` and
    ``src`` are restricted to site analysis and source code respectively.
    """

    doc: list[EvidenceChunk] = field(default_factory=list)
    site: list[EvidenceChunk] = field(default_factory=list)
    src: list[EvidenceChunk] = field(default_factory=list)

    def in_order(self) -> list[list[EvidenceChunk]]:
        return [self.doc, self.site, self.src]

    @property
    def breakdown(self) -> dict[str, int]:
        return {"doc": len(self.doc), "site": len(self.site), "src": len(self.src)}


class EvidenceRetriever:
    """Queries the vector index and applies per-category score thresholds."""

    def __init__(
        self,
        index: VectorIndex,
        min_score: float = 0.5,
        min_score_source_code: float = 0.35,
    ) -> None:
        self._index = index
        self._min_score = min_score
        self._min_score_source_code = min_score_source_code

    def threshold_for(self, category: str | None) -> float:
        if category == EvidenceCategory.source_code.value:
            return self._min_score_source_code
        return self._min_score

    def _query(self, query: str, project_id: str, top_k: int, category: str | None) -> list[dict[str, Any]]:
        try:
            return self._index.query(query, build_filter(project_id, category), top_k)
        except Exception as exc:
            raise RetrievalError(f"vector query failed ({category or 'all'}): {exc}") from exc

    def retrieve(
        self,
        query: str,
        project_id: str,
        top_k: int,
        category: str | None = None,
    ) -> list[EvidenceChunk]:
        """Return chunks scoring above the category threshold, best first.

        A failed query yields an empty list; the caller proceeds with
        whatever evidence the other categories produced.
        """
        if top_k <= 0:
            return []
        try:
            matches = self._query(query, project_id, top_k, category)
        except RetrievalError as exc:
            logger.warning("Retrieval failed, continuing without evidence: %s", exc)
            return []

        chunks: list[EvidenceChunk] = []
        for match in matches:
            metadata = match.get("metadata")
            if not metadata:
                continue
            chunk = EvidenceChunk.from_metadata(metadata, float(match.get("score", 0.0)))
            # Unfiltered searches mix categories, so judge each chunk by its own
            if chunk.score > self.threshold_for(category or chunk.category):
                chunks.append(chunk)
        chunks.sort(key=lambda c: c.score, reverse=True)
        logger.debug(
            "Retrieved %d/%d chunks (category=%s).",
            len(chunks), len(matches), category or "all",
        )
        return chunks

    async def retrieve_all(
        self,
        query: str,
        project_id: str,
        top_k: dict[str, int],
    ) -> EvidenceSets:
        """Fan out the three category searches in parallel and join them."""
        loop = asyncio.get_running_loop()
        doc, site, src = await asyncio.gather(
            loop.run_in_executor(
                None, self.retrieve, query, project_id, top_k.get("doc", 0), None,
            ),
            loop.run_in_executor(
                None, self.retrieve, query, project_id, top_k.get("site", 0),
                EvidenceCategory.site_analysis.value,
            ),
            loop.run_in_executor(
                None, self.retrieve, query, project_id, top_k.get("src", 0),
                EvidenceCategory.source_code.value,
            ),
        )
        sets = EvidenceSets(doc=doc, site=site, src=src)
        logger.info(
            "Retrieved evidence for project %s: doc=%d site=%d src=%d",
            project_id, len(doc), len(site), len(src),
        )
        return sets


def build_query(base_query: str, target_system: str, focus_titles: list[str] | None = None) -> str:
    """Compose the retrieval query; focus page titles are appended."""
    query = f"{target_system} {base_query}".strip()
    if focus_titles:
        query = f"{query} {' '.join(focus_titles)}"
    return query
