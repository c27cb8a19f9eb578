"""Context assembler: dedup, reference map and bounded prompt sections.

Chunk sets arrive in the fixed order doc → site → source code.  The first
occurrence of a ``(doc_id, chunk_index)`` pair wins, and refIds are handed
out sequentially over the surviving sequence, so the same context always
maps a chunk to the same ``REF-N``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from qa_gen.models import (
    CATEGORY_LABELS,
    EvidenceCategory,
    EvidenceChunk,
    ReferenceMapEntry,
)

logger = logging.getLogger(__name__)

DEFAULT_BUDGETS: dict[str, int] = {
    EvidenceCategory.spec_doc.value: 12000,
    EvidenceCategory.knowledge.value: 6000,
    EvidenceCategory.site_analysis.value: 4000,
    EvidenceCategory.source_code.value: 8000,
}

# Section rendering order inside the prompt
SECTION_ORDER: tuple[str, ...] = (
    EvidenceCategory.spec_doc.value,
    EvidenceCategory.knowledge.value,
    EvidenceCategory.site_analysis.value,
    EvidenceCategory.source_code.value,
)


@dataclass
class AssembledContext:
    ordered_chunks: list[EvidenceChunk] = field(default_factory=list)
    reference_map: list[ReferenceMapEntry] = field(default_factory=list)
    sections: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.ordered_chunks

    def ref_lookup(self) -> dict[str, ReferenceMapEntry]:
        return {entry.ref_id: entry for entry in self.reference_map}


def dedupe_chunks(chunk_sets: list[list[EvidenceChunk]]) -> list[EvidenceChunk]:
    """Concatenate chunk sets, keeping the first occurrence of each key."""
    seen: set[tuple[str, int]] = set()
    ordered: list[EvidenceChunk] = []
    for chunk_set in chunk_sets:
        for chunk in chunk_set:
            if chunk.key in seen:
                continue
            seen.add(chunk.key)
            ordered.append(chunk)
    return ordered


def build_reference_map(
    chunks: list[EvidenceChunk],
    excerpt_chars: int = 200,
) -> list[ReferenceMapEntry]:
    return [
        ReferenceMapEntry(
            ref_id=f"REF-{i}",
            filename=chunk.filename,
            category=chunk.category,
            excerpt=chunk.text[:excerpt_chars],
            page_url=chunk.page_url,
        )
        for i, chunk in enumerate(chunks, start=1)
    ]


def render_sections(
    chunks: list[EvidenceChunk],
    reference_map: list[ReferenceMapEntry],
    budgets: dict[str, int] | None = None,
) -> dict[str, str]:
    """Render one labelled block per category, hard-sliced to its budget."""
    budgets = {**DEFAULT_BUDGETS, **(budgets or {})}
    blocks: dict[str, list[str]] = {}
    for chunk, entry in zip(chunks, reference_map):
        header = f"[{entry.ref_id}] {chunk.filename}"
        if chunk.page_url:
            header += f" ({chunk.page_url})"
        blocks.setdefault(chunk.category, []).append(f"{header}\n{chunk.text}")

    sections: dict[str, str] = {}
    ordered = [c for c in SECTION_ORDER if c in blocks]
    ordered += [c for c in blocks if c not in SECTION_ORDER]
    for category in ordered:
        label = CATEGORY_LABELS.get(category, category)
        body = "\n\n".join(blocks[category])
        limit = budgets.get(category, budgets[EvidenceCategory.knowledge.value])
        sections[category] = f"【{label}】\n{body}"[:limit]
    return sections


def assemble(
    chunk_sets: list[list[EvidenceChunk]],
    budgets: dict[str, int] | None = None,
    excerpt_chars: int = 200,
) -> AssembledContext:
    """Merge chunk sets into one context; see module docstring for ordering."""
    ordered = dedupe_chunks(chunk_sets)
    reference_map = build_reference_map(ordered, excerpt_chars)
    sections = render_sections(ordered, reference_map, budgets)
    logger.debug(
        "Assembled %d chunks (%d before dedup) into %d sections.",
        len(ordered), sum(len(s) for s in chunk_sets), len(sections),
    )
    return AssembledContext(
        ordered_chunks=ordered,
        reference_map=reference_map,
        sections=sections,
    )
