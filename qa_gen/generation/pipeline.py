"""One bounded generation invocation.

retrieve → assemble → build prompts → stream under the abort deadline →
repair/parse → persist items.  Progress goes to the job record; failures
propagate to the orchestrator, which decides what they mean for the job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from qa_gen.config import AppConfig
from qa_gen.generation.parser import parse_test_items
from qa_gen.generation.streaming import StreamingCompletionDriver
from qa_gen.jobs.store import JobStore
from qa_gen.llm.backend import LLMBackend
from qa_gen.llm.prompts import Prompts, build_generation_prompts, estimate_tokens
from qa_gen.models import GenerationOptions, GenerationJob, JobStage, JobStatus, Project, TestItem
from qa_gen.records.store import RecordStore
from qa_gen.retrieval.context import AssembledContext, assemble
from qa_gen.retrieval.retriever import EvidenceRetriever, EvidenceSets, build_query

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    items: list[TestItem]
    aborted: bool
    model: str
    elapsed: float
    rag_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def items_produced(self) -> int:
        return len(self.items)


def job_breakdown(sets: EvidenceSets) -> dict[str, int]:
    return {
        "documents": len(sets.doc),
        "siteAnalysis": len(sets.site),
        "sourceCode": len(sets.src),
    }


class JobReporter:
    """Writes progress for one job, never moving its stage backwards."""

    def __init__(self, jobs: JobStore, job: GenerationJob) -> None:
        self._jobs = jobs
        self.job_id = job.id
        self.stage = job.stage
        self._pending = job.status == JobStatus.pending.value

    async def update(self, stage: int, message: str, **changes: Any) -> GenerationJob | None:
        stage = max(int(stage), self.stage)
        if self._pending:
            changes.setdefault("status", JobStatus.running.value)
            self._pending = False
        updated = await self._jobs.patch_job(self.job_id, stage=stage, message=message, **changes)
        self.stage = stage
        return updated


class GenerationPipeline:
    """Runs single batches for the orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        retriever: EvidenceRetriever,
        backend: LLMBackend,
        jobs: JobStore,
        records: RecordStore,
    ) -> None:
        self._config = config
        self._retriever = retriever
        self._backend = backend
        self._jobs = jobs
        self._records = records
        gen = config.generation
        self._driver = StreamingCompletionDriver(
            backend,
            abort_after_seconds=gen.abort_after_seconds,
            progress_every_chars=gen.progress_every_chars,
            temperature=gen.temperature,
            max_tokens=gen.max_tokens,
        )

    @property
    def model(self) -> str:
        return self._backend.model

    async def gather_context(
        self,
        project: Project,
        options: GenerationOptions,
        top_k: dict[str, int],
        extra_terms: list[str] | None = None,
    ) -> tuple[AssembledContext, EvidenceSets]:
        """Retrieve all categories in parallel and assemble the prompt context."""
        terms = [p.title for p in options.focus_pages or []] + list(extra_terms or [])
        query = build_query(self._config.retrieval.base_query, project.target_system, terms)
        sets = await self._retriever.retrieve_all(query, project.id, top_k)
        context = assemble(
            sets.in_order(),
            budgets=self._config.context.budgets,
            excerpt_chars=self._config.context.excerpt_chars,
        )
        return context, sets

    async def run_batch(
        self,
        job: GenerationJob,
        project: Project,
        options: GenerationOptions,
        batch_num: int = 1,
        total_batches: int = 1,
        already: int = 0,
        counters: dict[str, int] | None = None,
        start_index: int = 0,
        extra_terms: list[str] | None = None,
        started_at: float | None = None,
    ) -> BatchOutcome:
        """Generate and persist one batch of items.

        Args:
            already: Items produced by earlier batches of this job (for messages).
            counters: Per-category testId counters, advanced in place.
            started_at: Event-loop time the hosting invocation began; the
                abort deadline is measured from it.

        Raises:
            TransportError: The completion call failed.
            ParseError: The response held no recoverable JSON array.
        """
        loop = asyncio.get_running_loop()
        if started_at is None:
            started_at = loop.time()
        deadline = started_at + self._config.generation.abort_after_seconds
        wall_start = time.monotonic()
        prefix = f"[batch][{job.id}] "
        reporter = JobReporter(self._jobs, job)
        progress = f"バッチ {batch_num}/{total_batches} / {already}件生成済"

        logger.info("%sbatch %d/%d target=%d already=%d", prefix, batch_num, total_batches,
                    options.effective_target_count, already)

        # Stage 0: retrieval
        await reporter.update(JobStage.retrieval, f"RAG検索中... ({progress})")
        context, sets = await self.gather_context(
            project, options, self._config.retrieval.batch_top_k, extra_terms,
        )
        logger.info("%sretrieval doc=%d site=%d src=%d refs=%d", prefix,
                    len(sets.doc), len(sets.site), len(sets.src), len(context.reference_map))

        # Stage 1: prompt build
        await reporter.update(
            JobStage.prompt_build,
            f"プロンプト構築中 (Doc:{len(sets.doc)} Site:{len(sets.site)} Code:{len(sets.src)})",
            breakdown=job_breakdown(sets),
        )
        prompts = build_generation_prompts(project.name, project.target_system, context, options)

        # Stage 2: generation
        model = self._backend.model
        await reporter.update(JobStage.generation, f"AI生成中... ({progress})", model=model)
        logger.info("%smodel=%s target=%d", prefix, model, options.effective_target_count)

        async def on_progress(chars: int, elapsed: float) -> None:
            await reporter.update(
                JobStage.generation,
                f"AI生成中... ({progress} / {chars}文字 / {round(elapsed)}秒)",
            )

        result = await self._driver.run(
            prompts.system,
            prompts.user,
            model=model,
            deadline=deadline,
            on_progress=on_progress,
            log_prefix=prefix,
        )

        items = parse_test_items(
            result.content,
            context.reference_map,
            project.id,
            counters=counters,
            start_index=start_index,
        )
        logger.info("%sparsed %d items aborted=%s", prefix, len(items), result.aborted)

        # Stage 3: persistence (earlier batches save while generation continues)
        save_stage = JobStage.persistence if batch_num == total_batches else JobStage.generation
        await reporter.update(save_stage, f"テスト項目を保存中... ({progress})")
        await self._records.save_test_items(items)

        elapsed = time.monotonic() - wall_start
        await self._log_call(
            project, prompts, result.content, len(items), result.aborted,
            sets, len(context.reference_map), elapsed, job_id=job.id, batch_num=batch_num,
        )
        return BatchOutcome(
            items=items,
            aborted=result.aborted,
            model=model,
            elapsed=elapsed,
            rag_breakdown=sets.breakdown,
        )

    async def _log_call(
        self,
        project: Project,
        prompts: Prompts,
        response: str,
        item_count: int,
        aborted: bool,
        sets: EvidenceSets,
        ref_count: int,
        elapsed: float,
        **extra: Any,
    ) -> None:
        sys_t = estimate_tokens(prompts.system)
        user_t = estimate_tokens(prompts.user)
        resp_t = estimate_tokens(response)
        await self._jobs.save_ai_log(project.id, "generation", {
            "projectName": project.name,
            "modelId": self._backend.model,
            "systemPrompt": prompts.system[:3000],
            "userPrompt": prompts.user[:4000],
            "responseText": response[:2000],
            "outputItemCount": item_count,
            "aborted": aborted,
            "systemTokensEst": sys_t,
            "userTokensEst": user_t,
            "responseTokensEst": resp_t,
            "totalTokensEst": sys_t + user_t + resp_t,
            "ragBreakdown": sets.breakdown,
            "refMapCount": ref_count,
            "elapsedMs": round(elapsed * 1000),
            **extra,
        })
