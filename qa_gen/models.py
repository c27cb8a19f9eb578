"""Domain records for the test-case generation pipeline.

Plain dataclasses with ``to_dict`` / ``from_dict`` helpers.  The JSON
shape uses camelCase keys because the same records are served to the
browser and stored as JSON blobs.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    """Return current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ────────────────────────────────────────────────────────


class EvidenceCategory(str, enum.Enum):
    spec_doc = "spec_doc"
    knowledge = "knowledge"
    source_code = "source_code"
    site_analysis = "site_analysis"


# Prompt labels for each evidence category
CATEGORY_LABELS: dict[str, str] = {
    EvidenceCategory.spec_doc.value: "仕様書・設計書",
    EvidenceCategory.knowledge.value: "QAナレッジ",
    EvidenceCategory.source_code.value: "ソースコード",
    EvidenceCategory.site_analysis.value: "サイト構造",
}

UNKNOWN_CATEGORY = "unknown"


class Perspective(str, enum.Enum):
    functional = "機能テスト"
    normal = "正常系"
    abnormal = "異常系"
    boundary = "境界値"
    security = "セキュリティ"
    usability = "操作性"
    performance = "性能"


DEFAULT_PERSPECTIVES: list[str] = [
    Perspective.functional.value,
    Perspective.normal.value,
    Perspective.abnormal.value,
    Perspective.boundary.value,
    Perspective.security.value,
    Perspective.usability.value,
]


class Priority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Automatable(str, enum.Enum):
    YES = "YES"
    NO = "NO"
    CONSIDER = "CONSIDER"


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    error = "error"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.completed, JobStatus.error})


class JobStage(enum.IntEnum):
    retrieval = 0
    prompt_build = 1
    generation = 2
    persistence = 3
    done = 4


class PlanStatus(str, enum.Enum):
    draft = "draft"
    approved = "approved"


# ── Evidence ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class EvidenceChunk:
    """A single retrieved slice of an ingested document."""

    project_id: str
    doc_id: str
    chunk_index: int
    filename: str
    category: str
    text: str
    page_url: str | None = None
    score: float = 0.0

    @property
    def key(self) -> tuple[str, int]:
        return (self.doc_id, self.chunk_index)

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any], score: float = 0.0) -> EvidenceChunk:
        return cls(
            project_id=str(metadata.get("projectId", metadata.get("project_id", ""))),
            doc_id=str(metadata.get("docId", metadata.get("doc_id", ""))),
            chunk_index=int(metadata.get("chunkIndex", metadata.get("chunk_index", 0))),
            filename=str(metadata.get("filename", "")),
            category=str(metadata.get("category", EvidenceCategory.spec_doc.value)),
            text=str(metadata.get("text", "")),
            page_url=metadata.get("pageUrl", metadata.get("page_url")) or None,
            score=score,
        )


@dataclass(frozen=True)
class ReferenceMapEntry:
    ref_id: str
    filename: str
    category: str
    excerpt: str
    page_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "refId": self.ref_id,
            "filename": self.filename,
            "category": self.category,
            "excerpt": self.excerpt,
            "pageUrl": self.page_url,
        }


@dataclass
class SourceRef:
    ref_id: str
    filename: str
    category: str
    excerpt: str
    page_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "refId": self.ref_id,
            "filename": self.filename,
            "category": self.category,
            "excerpt": self.excerpt,
            "pageUrl": self.page_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceRef:
        return cls(
            ref_id=data.get("refId", ""),
            filename=data.get("filename", ""),
            category=data.get("category", UNKNOWN_CATEGORY),
            excerpt=data.get("excerpt", ""),
            page_url=data.get("pageUrl"),
        )


# ── Test items ───────────────────────────────────────────────────


@dataclass
class TestItem:
    """One generated test case."""

    __test__ = False  # not a pytest class

    id: str
    project_id: str
    test_id: str
    category_major: str
    category_minor: str
    perspective: str
    title: str
    precondition: str = ""
    steps: list[str] = field(default_factory=list)
    expected_result: str = ""
    priority: str = Priority.MEDIUM.value
    automatable: str = Automatable.CONSIDER.value
    order_index: int = 0
    is_deleted: bool = False
    source_refs: list[SourceRef] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "testId": self.test_id,
            "categoryMajor": self.category_major,
            "categoryMinor": self.category_minor,
            "testPerspective": self.perspective,
            "testTitle": self.title,
            "precondition": self.precondition,
            "steps": list(self.steps),
            "expectedResult": self.expected_result,
            "priority": self.priority,
            "automatable": self.automatable,
            "orderIndex": self.order_index,
            "isDeleted": self.is_deleted,
            "sourceRefs": (
                [r.to_dict() for r in self.source_refs]
                if self.source_refs is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestItem:
        refs = data.get("sourceRefs")
        return cls(
            id=data["id"],
            project_id=data.get("projectId", ""),
            test_id=data.get("testId", ""),
            category_major=data.get("categoryMajor", ""),
            category_minor=data.get("categoryMinor", ""),
            perspective=data.get("testPerspective", Perspective.functional.value),
            title=data.get("testTitle", ""),
            precondition=data.get("precondition", ""),
            steps=list(data.get("steps") or []),
            expected_result=data.get("expectedResult", ""),
            priority=data.get("priority", Priority.MEDIUM.value),
            automatable=data.get("automatable", Automatable.CONSIDER.value),
            order_index=int(data.get("orderIndex", 0)),
            is_deleted=bool(data.get("isDeleted", False)),
            source_refs=[SourceRef.from_dict(r) for r in refs] if refs is not None else None,
        )


# ── Generation options ───────────────────────────────────────────


@dataclass(frozen=True)
class PerspectiveWeight:
    value: str
    count: int


@dataclass(frozen=True)
class FocusPage:
    url: str
    title: str


@dataclass
class GenerationOptions:
    """Recognized prompt options.

    - ``target_count``: flat number of items to request.
    - ``perspectives``: perspectives the model may use.
    - ``perspective_weights``: per-perspective counts; when given, overrides
      ``target_count`` with their sum and ``perspectives`` with the
      non-zero entries.
    - ``focus_pages``: restricts scope to these pages and extends the
      retrieval query with their titles.
    - ``prompt_override``: replaces the default system prompt.
    - ``planned_titles``: titles proposed by the planning call for this batch.
    """

    target_count: int = 50
    perspectives: list[str] = field(default_factory=lambda: list(DEFAULT_PERSPECTIVES))
    perspective_weights: list[PerspectiveWeight] | None = None
    focus_pages: list[FocusPage] | None = None
    prompt_override: str | None = None
    planned_titles: list[str] | None = None

    @property
    def effective_target_count(self) -> int:
        if self.perspective_weights:
            return sum(max(w.count, 0) for w in self.perspective_weights)
        return self.target_count

    @property
    def effective_perspectives(self) -> list[str]:
        if self.perspective_weights:
            return [w.value for w in self.perspective_weights if w.count > 0]
        return list(self.perspectives)


# ── Job / plan records ───────────────────────────────────────────


@dataclass
class GenerationJob:
    id: str
    project_id: str
    status: str = JobStatus.pending.value
    stage: int = JobStage.retrieval.value
    message: str = ""
    count: int | None = None
    model: str | None = None
    error: str | None = None
    is_partial: bool = False
    breakdown: dict[str, int] | None = None
    # Finished plan batches by index: itemsProduced, aborted, elapsed, model
    batch_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_JOB_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "status": self.status,
            "stage": self.stage,
            "message": self.message,
            "count": self.count,
            "model": self.model,
            "error": self.error,
            "isPartial": self.is_partial,
            "breakdown": self.breakdown,
            "batchResults": self.batch_results,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GenerationJob:
        return cls(
            id=data["id"],
            project_id=data.get("projectId", ""),
            status=data.get("status", JobStatus.pending.value),
            stage=int(data.get("stage", 0)),
            message=data.get("message", ""),
            count=data.get("count"),
            model=data.get("model"),
            error=data.get("error"),
            is_partial=bool(data.get("isPartial", False)),
            breakdown=data.get("breakdown"),
            batch_results=dict(data.get("batchResults") or {}),
            created_at=data.get("createdAt", now_iso()),
            updated_at=data.get("updatedAt", now_iso()),
        )


# Python attribute name ↔ JSON key, for partial patches
JOB_FIELD_KEYS: dict[str, str] = {
    "status": "status",
    "stage": "stage",
    "message": "message",
    "count": "count",
    "model": "model",
    "error": "error",
    "is_partial": "isPartial",
    "breakdown": "breakdown",
    "batch_results": "batchResults",
}


@dataclass
class TestPlanBatch:
    __test__ = False

    batch_id: int
    category: str
    perspective: str
    titles: list[str] = field(default_factory=list)
    count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "category": self.category,
            "perspective": self.perspective,
            "titles": list(self.titles),
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestPlanBatch:
        return cls(
            batch_id=int(data.get("batchId", 0)),
            category=data.get("category", ""),
            perspective=data.get("perspective", Perspective.functional.value),
            titles=list(data.get("titles") or []),
            count=int(data.get("count", 0)),
        )


@dataclass
class TestPlan:
    __test__ = False

    id: str
    project_id: str
    total_items: int
    batch_size: int
    batches: list[TestPlanBatch] = field(default_factory=list)
    status: str = PlanStatus.draft.value
    rag_breakdown: dict[str, int] = field(default_factory=dict)
    ref_map_count: int = 0
    plan_model: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "status": self.status,
            "totalItems": self.total_items,
            "batchSize": self.batch_size,
            "batches": [b.to_dict() for b in self.batches],
            "ragBreakdown": dict(self.rag_breakdown),
            "refMapCount": self.ref_map_count,
            "planModel": self.plan_model,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestPlan:
        return cls(
            id=data["id"],
            project_id=data.get("projectId", ""),
            status=data.get("status", PlanStatus.draft.value),
            total_items=int(data.get("totalItems", 0)),
            batch_size=int(data.get("batchSize", 0)),
            batches=[TestPlanBatch.from_dict(b) for b in data.get("batches") or []],
            rag_breakdown=dict(data.get("ragBreakdown") or {}),
            ref_map_count=int(data.get("refMapCount", 0)),
            plan_model=data.get("planModel"),
            created_at=data.get("createdAt", now_iso()),
            updated_at=data.get("updatedAt", now_iso()),
        )


@dataclass
class Project:
    id: str
    name: str
    target_system: str = ""
    test_item_count: int = 0
    status: str = "setup"
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "targetSystem": self.target_system,
            "testItemCount": self.test_item_count,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
