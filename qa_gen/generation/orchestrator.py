"""Job and plan orchestration: the surface the API and CLI call.

Two ways to drive generation:

* ``start_job``: fire-and-continue.  A background asyncio task runs the
  whole request, splitting it into ``ceil(target / batch_size)`` batches.
* ``create_plan`` → ``create_job`` → ``run_batch`` × N → ``complete_job``:
  an external driver re-invokes one bounded batch per call, coordinated
  only through the durable job and plan records.  Finished batches are
  recorded on the job, so re-issuing one returns its earlier result.

Items from finished batches are always kept.  A failure with nothing
produced yet puts the job in ``error``; a failure after some batches
succeeded leaves the items in place and the job is completed as partial.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace

from qa_gen.config import AppConfig
from qa_gen.generation.parser import ParseError, parse_plan_batches
from qa_gen.generation.pipeline import BatchOutcome, GenerationPipeline
from qa_gen.jobs.store import InvalidTransition, JobStore
from qa_gen.llm.backend import LLMBackend, TransportError
from qa_gen.llm.prompts import build_planning_prompts, estimate_tokens
from qa_gen.models import (
    GenerationJob,
    GenerationOptions,
    JobStage,
    JobStatus,
    Project,
    TestPlan,
    new_id,
)
from qa_gen.records.store import RecordStore
from qa_gen.retrieval.retriever import EvidenceRetriever

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 500


def error_text(exc: BaseException) -> str:
    """Short human-readable cause stored on the job record."""
    return f"{type(exc).__name__}: {exc}"[:ERROR_TEXT_LIMIT]


def split_batches(total: int, batch_size: int) -> list[int]:
    """Split *total* items into batch counts of at most *batch_size*."""
    if total <= 0:
        return []
    n = math.ceil(total / batch_size)
    return [min(batch_size, total - i * batch_size) for i in range(n)]


@dataclass
class StartedJob:
    job_id: str
    total_batches: int
    batch_size: int


@dataclass
class BatchResult:
    items_produced: int
    aborted: bool
    elapsed: float
    model: str


class GenerationOrchestrator:
    """Owns the pipeline and the registry of background job tasks."""

    def __init__(
        self,
        config: AppConfig,
        jobs: JobStore,
        records: RecordStore,
        retriever: EvidenceRetriever,
        backend: LLMBackend,
    ) -> None:
        self._config = config
        self._jobs = jobs
        self._records = records
        self._backend = backend
        self._pipeline = GenerationPipeline(config, retriever, backend, jobs, records)
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def _batch_size(self, batch_size: int | None) -> int:
        gen = self._config.generation
        size = batch_size or gen.batch_size
        if not 1 <= size <= gen.max_batch_size:
            raise ValueError(f"batch_size must be within 1..{gen.max_batch_size}")
        return size

    # ── Job lifecycle ────────────────────────────────────────────────

    async def create_job(self, project_id: str, append_mode: bool = False) -> GenerationJob:
        """Create a pending job; without append mode the project's items are cleared."""
        await self._records.require_project(project_id)
        if not append_mode:
            await self._records.clear_test_items(project_id)
        job = GenerationJob(
            id=new_id(),
            project_id=project_id,
            model=self._backend.model,
            message="ジョブを作成しました",
        )
        return await self._jobs.create_job(job)

    async def get_job_status(self, job_id: str) -> GenerationJob:
        """Return the job record.

        Raises:
            JobNotFound: Unknown or expired id (distinct from an errored job).
        """
        return await self._jobs.require_job(job_id)

    async def fail_job(self, job_id: str, exc: BaseException) -> None:
        text = error_text(exc)
        logger.error("[batch][%s] job failed: %s", job_id, text)
        try:
            await self._jobs.patch_job(
                job_id, status=JobStatus.error.value, error=text, message="エラーが発生しました",
            )
        except InvalidTransition as e:
            logger.warning("[batch][%s] could not mark job failed: %s", job_id, e)

    async def complete_job(
        self,
        job_id: str,
        count: int | None = None,
        is_partial: bool = False,
        append_mode: bool = False,
        error: str | None = None,
    ) -> GenerationJob | None:
        """Finish a job and update the project's item count.

        A job that produced nothing and carries a batch error ends in
        ``error``; otherwise it goes through stage 3 to ``completed`` at
        stage 4, flagged partial when any batch failed.

        Raises:
            JobNotFound: Unknown or expired job.
            InvalidTransition: The job already finished; the project count is
                left untouched.
        """
        job = await self._jobs.require_job(job_id)
        if job.is_terminal:
            raise InvalidTransition(f"job {job_id} is already {job.status}")
        if count is None:
            count = job.count or 0
        error = error or job.error

        if count == 0 and error:
            logger.error("[batch][%s] job failed, nothing produced: %s", job_id, error)
            return await self._jobs.patch_job(
                job_id, status=JobStatus.error.value, error=error, message="エラーが発生しました",
            )

        is_partial = is_partial or bool(error)
        await self._jobs.patch_job(job_id, stage=JobStage.persistence, message="テスト項目を保存中...")
        message = f"途中保存（{count}件）" if is_partial else f"完了（{count}件）"
        changes = {
            "status": JobStatus.completed.value,
            "stage": JobStage.done,
            "message": message,
            "count": count,
            "is_partial": is_partial,
        }
        if error:
            changes["error"] = error
        done = await self._jobs.patch_job(job_id, **changes)

        project = await self._records.get_project(job.project_id)
        if project is not None:
            base = project.test_item_count if append_mode else 0
            await self._records.update_project(project.id, base + count)
        logger.info("[batch][%s] %s", job_id, message)
        return done

    # ── Single-shot generation ───────────────────────────────────────

    async def start_job(self, project_id: str, options: GenerationOptions) -> StartedJob:
        """Create a job and run it in a background task; returns immediately."""
        project = await self._records.require_project(project_id)
        batch_size = self._batch_size(None)
        total_batches = len(split_batches(options.effective_target_count, batch_size))
        job = await self.create_job(project_id, append_mode=bool(options.focus_pages))

        task = asyncio.create_task(
            self._run_job(job, project, options, batch_size),
            name=f"generate-{job.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("[batch][%s] started: target=%d batches=%d", job.id,
                    options.effective_target_count, total_batches)
        return StartedJob(job_id=job.id, total_batches=total_batches, batch_size=batch_size)

    def _batch_options(self, options: GenerationOptions, count: int, total_batches: int) -> GenerationOptions:
        if total_batches == 1:
            return options
        # Weighted counts describe the whole request, not one slice of it
        return replace(
            options,
            target_count=count,
            perspectives=options.effective_perspectives,
            perspective_weights=None,
        )

    async def _run_job(
        self,
        job: GenerationJob,
        project: Project,
        options: GenerationOptions,
        batch_size: int,
    ) -> None:
        counts = split_batches(options.effective_target_count, batch_size)
        produced = 0
        aborted = False
        failure: BaseException | None = None
        try:
            counters = await self._records.id_counters(project.id)
            start_index = await self._records.next_order_index(project.id)
            for i, count in enumerate(counts):
                current = await self._jobs.require_job(job.id)
                try:
                    outcome = await self._pipeline.run_batch(
                        current, project, self._batch_options(options, count, len(counts)),
                        batch_num=i + 1,
                        total_batches=len(counts),
                        already=produced,
                        counters=counters,
                        start_index=start_index,
                    )
                except (TransportError, ParseError) as e:
                    failure = e
                    break
                produced += outcome.items_produced
                start_index += outcome.items_produced
                aborted = aborted or outcome.aborted
                await self._jobs.patch_job(job.id, count=produced)

            if failure is not None and produced == 0:
                await self.fail_job(job.id, failure)
                return
            await self.complete_job(
                job.id,
                count=produced,
                is_partial=aborted or failure is not None,
                append_mode=bool(options.focus_pages),
                error=error_text(failure) if failure is not None else None,
            )
        except Exception as e:
            logger.exception("[batch][%s] unexpected failure", job.id)
            await self.fail_job(job.id, e)

    # ── Plans ────────────────────────────────────────────────────────

    async def create_plan(
        self,
        project_id: str,
        options: GenerationOptions,
        batch_size: int | None = None,
        top_k: dict[str, int] | None = None,
    ) -> TestPlan:
        """Run the non-streaming planning call and persist a draft plan.

        Raises:
            TransportError: The planning call failed.
            ParseError: The planning response held no usable array.
        """
        started = time.monotonic()
        project = await self._records.require_project(project_id)
        size = self._batch_size(batch_size)
        top_k = {**self._config.retrieval.plan_top_k, **(top_k or {})}
        prefix = f"[plan][{project_id}]"

        context, sets = await self._pipeline.gather_context(project, options, top_k)
        prompts = build_planning_prompts(project.name, project.target_system, context, options, size)
        gen = self._config.generation
        logger.info("%s planning total=%d batch_size=%d refs=%d", prefix,
                    options.effective_target_count, size, len(context.reference_map))

        completion = await self._backend.complete(
            prompts.system,
            prompts.user,
            temperature=gen.plan_temperature,
            max_tokens=gen.plan_max_tokens,
        )
        batches = parse_plan_batches(completion.text)
        plan = TestPlan(
            id=new_id(),
            project_id=project_id,
            total_items=options.effective_target_count,
            batch_size=size,
            batches=batches,
            rag_breakdown=sets.breakdown,
            ref_map_count=len(context.reference_map),
            plan_model=completion.model,
        )
        await self._jobs.put_plan(plan)
        logger.info("%s plan %s with %d batches", prefix, plan.id, len(batches))

        sys_t, user_t, resp_t = (
            estimate_tokens(prompts.system),
            estimate_tokens(prompts.user),
            estimate_tokens(completion.text),
        )
        usage = completion.usage or {}
        await self._jobs.save_ai_log(project_id, "plan", {
            "projectName": project.name,
            "modelId": completion.model,
            "systemPrompt": prompts.system[:3000],
            "userPrompt": prompts.user[:4000],
            "responseText": completion.text[:2000],
            "outputItemCount": sum(b.count for b in batches),
            "aborted": False,
            "systemTokensEst": sys_t,
            "userTokensEst": user_t,
            "responseTokensEst": resp_t,
            "totalTokensEst": sys_t + user_t + resp_t,
            "promptTokensActual": usage.get("prompt_tokens"),
            "completionTokensActual": usage.get("completion_tokens"),
            "totalTokensActual": usage.get("total_tokens"),
            "ragBreakdown": sets.breakdown,
            "refMapCount": len(context.reference_map),
            "elapsedMs": round((time.monotonic() - started) * 1000),
        })
        return plan

    async def save_plan(self, plan: TestPlan) -> TestPlan:
        """Re-save a user-edited draft plan.

        Raises:
            PlanNotFound: Unknown or expired plan.
            InvalidTransition: The plan was already approved.
        """
        for i, batch in enumerate(plan.batches):
            if batch.titles:
                batch.count = len(batch.titles)
            if not batch.batch_id:
                batch.batch_id = i + 1
        return await self._jobs.update_plan(plan)

    async def approve_plan(self, plan_id: str) -> TestPlan:
        return await self._jobs.approve_plan(plan_id)

    async def latest_plan(self, project_id: str) -> TestPlan | None:
        return await self._jobs.latest_plan(project_id)

    # ── Plan execution ───────────────────────────────────────────────

    async def run_batch(
        self,
        job_id: str,
        plan_id: str,
        batch_index: int,
        started_at: float | None = None,
    ) -> BatchResult:
        """Run one plan batch within a single bounded invocation.

        A batch that already finished for this job is not run again; its
        recorded result is returned.  A failed batch leaves the job running
        with ``error`` set, so the driver can retry it or move on; whether
        the job as a whole failed is decided by ``complete_job``.

        Raises:
            JobNotFound / PlanNotFound / ProjectNotFound: Missing records.
            InvalidTransition: The job is already terminal.
            IndexError: ``batch_index`` is outside the plan.
            TransportError / ParseError: The batch failed.
        """
        if started_at is None:
            started_at = asyncio.get_running_loop().time()
        job = await self._jobs.require_job(job_id)
        if job.is_terminal:
            raise InvalidTransition(f"job {job_id} is already {job.status}")
        plan = await self._jobs.require_plan(plan_id)
        if not 0 <= batch_index < len(plan.batches):
            raise IndexError(f"batch {batch_index} out of range (plan has {len(plan.batches)})")

        key = str(batch_index)
        previous = job.batch_results.get(key)
        if previous is not None and "error" not in previous:
            logger.info("[batch][%s] batch %d already finished, returning recorded result",
                        job_id, batch_index + 1)
            return BatchResult(
                items_produced=previous["itemsProduced"],
                aborted=previous["aborted"],
                elapsed=previous["elapsed"],
                model=previous["model"],
            )

        batch = plan.batches[batch_index]
        project = await self._records.require_project(plan.project_id)
        options = GenerationOptions(
            target_count=batch.count or plan.batch_size,
            perspectives=[batch.perspective],
            planned_titles=batch.titles or None,
        )
        already = job.count or 0
        counters = await self._records.id_counters(project.id)
        start_index = await self._records.next_order_index(project.id)
        try:
            outcome: BatchOutcome = await self._pipeline.run_batch(
                job, project, options,
                batch_num=batch_index + 1,
                total_batches=len(plan.batches),
                already=already,
                counters=counters,
                start_index=start_index,
                extra_terms=[batch.category],
                started_at=started_at,
            )
        except (TransportError, ParseError) as e:
            text = error_text(e)
            logger.error("[batch][%s] batch %d failed, keeping %d items: %s",
                         job_id, batch_index + 1, already, text)
            await self._jobs.patch_job(
                job_id,
                error=text,
                batch_results={**job.batch_results, key: {"error": text}},
                message=f"バッチ {batch_index + 1} でエラー（{already}件保持）",
            )
            raise

        result = BatchResult(
            items_produced=outcome.items_produced,
            aborted=outcome.aborted,
            elapsed=outcome.elapsed,
            model=outcome.model,
        )
        results = {
            **job.batch_results,
            key: {
                "itemsProduced": result.items_produced,
                "aborted": result.aborted,
                "elapsed": result.elapsed,
                "model": result.model,
            },
        }
        failures = [r["error"] for r in results.values() if "error" in r]
        await self._jobs.patch_job(
            job_id,
            count=already + outcome.items_produced,
            batch_results=results,
            error=failures[-1] if failures else None,
        )
        return result

    async def run_plan(self, job_id: str, plan_id: str, append_mode: bool = False) -> GenerationJob | None:
        """Drive every batch of a plan in-process, then complete the job.

        Failed batches are skipped so the remaining ones still run.
        """
        plan = await self.approve_plan(plan_id)
        aborted = False
        for i in range(len(plan.batches)):
            try:
                result = await self.run_batch(job_id, plan_id, i)
            except (TransportError, ParseError):
                continue
            aborted = aborted or result.aborted

        return await self.complete_job(job_id, is_partial=aborted, append_mode=append_mode)

    async def shutdown(self) -> None:
        """Wait for background jobs to finish (used on server shutdown)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
