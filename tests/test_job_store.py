"""Tests for the durable job / plan store."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from qa_gen.jobs.store import (
    InvalidTransition,
    JobNotFound,
    JobStore,
    PlanNotFound,
    next_timestamp,
)
from qa_gen.models import GenerationJob, TestPlan, TestPlanBatch


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest_asyncio.fixture
async def store(tmp_path: Path, clock: _Clock) -> JobStore:
    s = JobStore(db_path=str(tmp_path / "jobs.db"), job_ttl_seconds=100, plan_ttl_seconds=1000, clock=clock)
    await s.init()
    return s


def _job(job_id: str = "j1") -> GenerationJob:
    return GenerationJob(id=job_id, project_id="p1", message="created")


def _plan(plan_id: str = "plan1") -> TestPlan:
    return TestPlan(
        id=plan_id,
        project_id="p1",
        total_items=4,
        batch_size=2,
        batches=[
            TestPlanBatch(batch_id=1, category="ログイン", perspective="正常系", count=2),
            TestPlanBatch(batch_id=2, category="検索", perspective="異常系", count=2),
        ],
    )


class TestTimestamps:
    def test_strictly_increasing_even_when_clock_lags(self) -> None:
        future = "2999-01-01T00:00:00+00:00"
        assert next_timestamp(future) > future


class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store: JobStore) -> None:
        await store.create_job(_job())
        job = await store.get_job("j1")
        assert job is not None
        assert job.status == "pending"
        assert job.stage == 0

    @pytest.mark.asyncio
    async def test_patch_advances_and_bumps_updated_at(self, store: JobStore) -> None:
        created = await store.create_job(_job())
        job = await store.patch_job("j1", status="running", stage=1, message="prompt")
        assert job.status == "running"
        assert job.stage == 1
        assert job.updated_at > created.updated_at
        again = await store.patch_job("j1", message="same stage")
        assert again.updated_at > job.updated_at

    @pytest.mark.asyncio
    async def test_full_happy_path(self, store: JobStore) -> None:
        await store.create_job(_job())
        for stage in range(5):
            await store.patch_job("j1", status="running", stage=stage)
        job = await store.patch_job("j1", status="completed", stage=4, count=3)
        assert job.is_terminal
        assert job.count == 3

    @pytest.mark.asyncio
    async def test_stage_cannot_go_back(self, store: JobStore) -> None:
        await store.create_job(_job())
        await store.patch_job("j1", status="running", stage=2)
        with pytest.raises(InvalidTransition):
            await store.patch_job("j1", stage=1)

    @pytest.mark.asyncio
    async def test_completed_requires_stage_four(self, store: JobStore) -> None:
        await store.create_job(_job())
        with pytest.raises(InvalidTransition):
            await store.patch_job("j1", status="completed", stage=2)

    @pytest.mark.asyncio
    async def test_no_return_to_pending(self, store: JobStore) -> None:
        await store.create_job(_job())
        await store.patch_job("j1", status="running")
        with pytest.raises(InvalidTransition):
            await store.patch_job("j1", status="pending")

    @pytest.mark.asyncio
    async def test_error_reachable_from_any_stage(self, store: JobStore) -> None:
        await store.create_job(_job())
        await store.patch_job("j1", status="running", stage=2)
        job = await store.patch_job("j1", status="error", error="boom")
        assert job.status == "error"
        assert job.stage == 2

    @pytest.mark.asyncio
    async def test_terminal_job_rejects_patches(self, store: JobStore) -> None:
        await store.create_job(_job())
        await store.patch_job("j1", status="error", error="boom")
        with pytest.raises(InvalidTransition):
            await store.patch_job("j1", message="late")

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, store: JobStore) -> None:
        await store.create_job(_job())
        with pytest.raises(ValueError):
            await store.patch_job("j1", colour="red")

    @pytest.mark.asyncio
    async def test_patch_missing_job_is_noop(self, store: JobStore) -> None:
        assert await store.patch_job("nope", message="x") is None

    @pytest.mark.asyncio
    async def test_require_missing_job(self, store: JobStore) -> None:
        with pytest.raises(JobNotFound) as exc_info:
            await store.require_job("nope")
        assert exc_info.value.job_id == "nope"


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_job_reads_as_missing(self, store: JobStore, clock: _Clock) -> None:
        await store.create_job(_job())
        clock.now += 101
        assert await store.get_job("j1") is None
        assert await store.patch_job("j1", message="late") is None

    @pytest.mark.asyncio
    async def test_job_ttl_counts_from_creation(self, store: JobStore, clock: _Clock) -> None:
        await store.create_job(_job())
        clock.now += 60
        await store.patch_job("j1", status="running")
        clock.now += 60
        assert await store.get_job("j1") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, store: JobStore, clock: _Clock) -> None:
        await store.create_job(_job("a"))
        await store.put_plan(_plan())
        clock.now += 101
        await store.create_job(_job("b"))
        assert await store.purge_expired() == 1
        clock.now += 1000
        assert await store.purge_expired() == 2


class TestPlans:
    @pytest.mark.asyncio
    async def test_put_and_latest(self, store: JobStore) -> None:
        await store.put_plan(_plan())
        latest = await store.latest_plan("p1")
        assert latest.id == "plan1"
        assert [b.count for b in latest.batches] == [2, 2]
        assert await store.latest_plan("other") is None

    @pytest.mark.asyncio
    async def test_update_draft_keeps_identity(self, store: JobStore) -> None:
        original = await store.put_plan(_plan())
        edited = _plan()
        edited.project_id = "hijacked"
        edited.batches = edited.batches[:1]
        saved = await store.update_plan(edited)
        assert saved.project_id == "p1"
        assert saved.created_at == original.created_at
        assert len((await store.require_plan("plan1")).batches) == 1

    @pytest.mark.asyncio
    async def test_approved_plan_is_frozen(self, store: JobStore) -> None:
        await store.put_plan(_plan())
        approved = await store.approve_plan("plan1")
        assert approved.status == "approved"
        assert (await store.approve_plan("plan1")).status == "approved"
        with pytest.raises(InvalidTransition):
            await store.update_plan(_plan())

    @pytest.mark.asyncio
    async def test_plan_expiry_restarts_on_write(self, store: JobStore, clock: _Clock) -> None:
        await store.put_plan(_plan())
        clock.now += 900
        await store.approve_plan("plan1")
        clock.now += 900
        assert await store.get_plan("plan1") is not None
        clock.now += 200
        with pytest.raises(PlanNotFound):
            await store.require_plan("plan1")


class TestAiLogs:
    @pytest.mark.asyncio
    async def test_save_and_list(self, store: JobStore) -> None:
        await store.save_ai_log("p1", "generation", {"modelId": "m", "createdAt": "2026-01-01T00:00:00+00:00"})
        await store.save_ai_log("p1", "review", {"modelId": "m", "createdAt": "2026-01-02T00:00:00+00:00"})
        await store.save_ai_log("p2", "plan", {"modelId": "m"})
        logs = await store.list_ai_logs("p1")
        assert [entry["type"] for entry in logs] == ["review", "generation"]
        assert all(entry["projectId"] == "p1" for entry in logs)
        assert len(await store.list_ai_logs()) == 3
