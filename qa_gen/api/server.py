"""FastAPI server for the qa-gen pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from qa_gen.config import AppConfig, load_config
from qa_gen.generation.orchestrator import GenerationOrchestrator
from qa_gen.generation.parser import ParseError
from qa_gen.jobs.store import InvalidTransition, JobNotFound, JobStore, PlanNotFound
from qa_gen.llm.backend import LLMBackend, TransportError, create_backend
from qa_gen.models import (
    FocusPage,
    GenerationOptions,
    PerspectiveWeight,
    TestItem,
    TestPlan,
    DEFAULT_PERSPECTIVES,
)
from qa_gen.records.store import ProjectNotFound, RecordStore
from qa_gen.retrieval.retriever import EvidenceRetriever, VectorIndex
from qa_gen.review.reviewer import QualityReviewer

logger = logging.getLogger(__name__)

# ── Request / Response models ────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectRequest(_CamelModel):
    name: str = Field(min_length=1, max_length=200)
    target_system: str = ""


class WeightIn(_CamelModel):
    value: str
    count: int = Field(ge=0)


class FocusPageIn(_CamelModel):
    url: str
    title: str = ""


class GenerateRequest(_CamelModel):
    project_id: str
    target_count: int = Field(default=50, ge=1, le=1000)
    perspectives: list[str] | None = None
    perspective_weights: list[WeightIn] | None = None
    focus_pages: list[FocusPageIn] | None = None
    prompt_override: str | None = None

    def to_options(self) -> GenerationOptions:
        return GenerationOptions(
            target_count=self.target_count,
            perspectives=self.perspectives or list(DEFAULT_PERSPECTIVES),
            perspective_weights=(
                [PerspectiveWeight(w.value, w.count) for w in self.perspective_weights]
                if self.perspective_weights else None
            ),
            focus_pages=(
                [FocusPage(p.url, p.title) for p in self.focus_pages]
                if self.focus_pages else None
            ),
            prompt_override=self.prompt_override,
        )


class PlanRequest(GenerateRequest):
    target_count: int = Field(default=100, ge=1, le=1000)
    batch_size: int | None = Field(default=None, ge=1)
    rag_top_k: dict[str, int] | None = None


class PlanUpdateRequest(_CamelModel):
    plan: dict[str, Any]


class CreateJobRequest(_CamelModel):
    project_id: str
    append_mode: bool = False


class BatchRequest(_CamelModel):
    job_id: str
    plan_id: str
    batch_index: int = Field(ge=0)


class CompleteRequest(_CamelModel):
    job_id: str
    project_id: str | None = None
    count: int | None = Field(default=None, ge=0)
    is_partial: bool = False
    append_mode: bool = False


class ReviewRequest(_CamelModel):
    project_id: str
    items: list[dict[str, Any]] | None = None


# ── App factory ──────────────────────────────────────────────────────


def create_app(
    config: AppConfig | None = None,
    index: VectorIndex | None = None,
    backend: LLMBackend | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional AppConfig (loaded from config.yaml if None).
        index: Vector index to search; a LanceDB ``EvidenceIndex`` is
            opened from ``config.vector`` when omitted.
        backend: Completion backend; built from ``config.provider`` when omitted.
    """
    if config is None:
        config = load_config()

    if index is None:
        from qa_gen.indexing.indexer import EvidenceIndex

        index = EvidenceIndex.from_config(config.vector)
    if backend is None:
        backend = create_backend(config.provider)

    jobs = JobStore(
        db_path=config.store.db_path,
        job_ttl_seconds=config.store.job_ttl_seconds,
        plan_ttl_seconds=config.store.plan_ttl_seconds,
    )
    records = RecordStore(db_path=config.store.db_path)
    retriever = EvidenceRetriever(
        index,
        min_score=config.retrieval.min_score,
        min_score_source_code=config.retrieval.min_score_source_code,
    )
    orchestrator = GenerationOrchestrator(config, jobs, records, retriever, backend)
    reviewer = QualityReviewer(
        backend,
        model=config.provider.review_model,
        temperature=config.generation.review_temperature,
        max_tokens=config.generation.review_max_tokens,
        jobs=jobs,
    )

    # ── Lifespan ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        await jobs.init()
        await records.init()
        await jobs.purge_expired()

        yield

        await orchestrator.shutdown()
        await backend.close()

    # ── Build FastAPI app ────────────────────────────────────────────

    app = FastAPI(
        title="QA Gen",
        description="RAG test-case generation jobs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.jobs = jobs
    app.state.records = records
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ────────────────────────────────────────────────

    @app.exception_handler(JobNotFound)
    async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "job expired", "jobId": exc.job_id})

    @app.exception_handler(PlanNotFound)
    @app.exception_handler(ProjectNotFound)
    async def _not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def _conflict(request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransportError)
    async def _upstream(request: Request, exc: TransportError) -> JSONResponse:
        logger.error("Completion service error: %s", exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(ParseError)
    async def _unparseable(request: Request, exc: ParseError) -> JSONResponse:
        logger.error("Unparseable model output: %s", exc.cause)
        return JSONResponse(
            status_code=422, content={"detail": exc.cause, "snippet": exc.snippet},
        )

    # ── Routes ───────────────────────────────────────────────────────

    @app.get("/api/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "model": backend.model,
            "active_jobs": orchestrator.active_tasks,
        }

    @app.post("/api/projects")
    async def create_project(req: ProjectRequest) -> dict:
        project = await records.create_project(req.name, req.target_system)
        return project.to_dict()

    @app.get("/api/projects/{project_id}")
    async def get_project(project_id: str) -> dict:
        project = await records.require_project(project_id)
        return project.to_dict()

    # ── Generation ───────────────────────────────────────────────────

    @app.post("/api/generate/start")
    async def start_generation(req: GenerateRequest) -> dict:
        try:
            started = await orchestrator.start_job(req.project_id, req.to_options())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {
            "jobId": started.job_id,
            "totalBatches": started.total_batches,
            "batchSize": started.batch_size,
        }

    @app.get("/api/generate/status")
    async def generation_status(jobId: str) -> dict:
        job = await orchestrator.get_job_status(jobId)
        return job.to_dict()

    @app.get("/api/generate/stream")
    async def generation_stream(request: Request, jobId: str):
        """SSE stream of job progress.

        Events: ``status`` (on every updatedAt change), ``done`` (terminal
        state reached), ``expired`` (record vanished).
        """
        from sse_starlette.sse import EventSourceResponse, ServerSentEvent

        interval = config.api.status_poll_interval

        async def _stream():
            last_seen: str | None = None
            while True:
                if await request.is_disconnected():
                    return
                job = await jobs.get_job(jobId)
                if job is None:
                    yield ServerSentEvent(data=json.dumps({"jobId": jobId}), event="expired")
                    return
                if job.updated_at != last_seen:
                    last_seen = job.updated_at
                    payload = json.dumps(job.to_dict(), ensure_ascii=False)
                    if job.is_terminal:
                        yield ServerSentEvent(data=payload, event="done")
                        return
                    yield ServerSentEvent(data=payload, event="status")
                await asyncio.sleep(interval)

        return EventSourceResponse(
            _stream(),
            ping=15,
            ping_message_factory=lambda: ServerSentEvent(comment="keepalive"),
            headers={"X-Accel-Buffering": "no"},
        )

    # ── Plans ────────────────────────────────────────────────────────

    @app.post("/api/generate/plan")
    async def create_plan(req: PlanRequest) -> dict:
        try:
            plan = await orchestrator.create_plan(
                req.project_id, req.to_options(), batch_size=req.batch_size, top_k=req.rag_top_k,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"plan": plan.to_dict(), "model": plan.plan_model, "ragBreakdown": plan.rag_breakdown}

    @app.get("/api/generate/plan")
    async def get_plan(projectId: str) -> dict | None:
        plan = await orchestrator.latest_plan(projectId)
        return plan.to_dict() if plan else None

    @app.put("/api/generate/plan")
    async def update_plan(req: PlanUpdateRequest) -> dict:
        if not req.plan.get("id") or not req.plan.get("projectId"):
            raise HTTPException(status_code=400, detail="plan.id and plan.projectId are required")
        plan = await orchestrator.save_plan(TestPlan.from_dict(req.plan))
        return {"ok": True, "plan": plan.to_dict()}

    @app.post("/api/generate/plan/{plan_id}/approve")
    async def approve_plan(plan_id: str) -> dict:
        plan = await orchestrator.approve_plan(plan_id)
        return plan.to_dict()

    # ── Externally driven batches ────────────────────────────────────

    @app.post("/api/generate/jobs")
    async def create_job(req: CreateJobRequest) -> dict:
        job = await orchestrator.create_job(req.project_id, append_mode=req.append_mode)
        return job.to_dict()

    @app.post("/api/generate/batch")
    async def run_batch(req: BatchRequest) -> dict:
        started_at = asyncio.get_running_loop().time()
        try:
            result = await orchestrator.run_batch(
                req.job_id, req.plan_id, req.batch_index, started_at=started_at,
            )
        except IndexError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {
            "itemsProduced": result.items_produced,
            "aborted": result.aborted,
            "elapsed": round(result.elapsed),
            "model": result.model,
        }

    @app.post("/api/generate/complete")
    async def complete(req: CompleteRequest) -> dict:
        job = await orchestrator.get_job_status(req.job_id)
        if req.project_id and req.project_id != job.project_id:
            raise HTTPException(status_code=400, detail="projectId does not match the job")
        done = await orchestrator.complete_job(
            req.job_id,
            count=req.count,
            is_partial=req.is_partial,
            append_mode=req.append_mode,
        )
        return {"ok": True, "job": done.to_dict() if done else None}

    # ── Test items / review ──────────────────────────────────────────

    @app.get("/api/test-items")
    async def list_test_items(projectId: str) -> list[dict]:
        items = await records.list_test_items(projectId)
        return [item.to_dict() for item in items]

    @app.delete("/api/test-items/{item_id}")
    async def delete_test_item(item_id: str) -> dict:
        if not await records.soft_delete_test_item(item_id):
            raise HTTPException(status_code=404, detail="Test item not found")
        return {"ok": True}

    @app.post("/api/review")
    async def review(req: ReviewRequest) -> dict:
        if req.items is not None:
            items = [TestItem.from_dict(i) for i in req.items if i.get("id")]
        else:
            await records.require_project(req.project_id)
            items = await records.list_test_items(req.project_id)
        if not items:
            raise HTTPException(status_code=400, detail="No test items to review")
        result = await reviewer.review(req.project_id, items)
        return result.to_dict()

    @app.get("/api/ai-logs")
    async def ai_logs(projectId: str | None = None, limit: int = 50) -> list[dict]:
        return await jobs.list_ai_logs(projectId, limit=limit)

    return app
