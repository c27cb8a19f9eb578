"""SQLite-backed job / plan state store with expiry.

Job and plan records are stored as JSON blobs keyed by id, each with an
``expires_at`` epoch timestamp.  Expired rows read as missing and are
purged lazily, so a client that stops polling never leaks storage.

Job state machine::

    pending → running(stage 0..4) → completed   (only from stage 4)
        \\__________\\_____________→ error       (from anywhere)

``stage`` never decreases and ``updatedAt`` strictly increases on every
patch.  Terminal jobs reject further patches.

Tables:
    jobs   : id, project_id, data, updated_at, expires_at
    plans  : id, project_id, status, data, created_at, updated_at, expires_at
    ai_logs: id, project_id, kind, data, created_at
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from qa_gen.models import (
    JOB_FIELD_KEYS,
    GenerationJob,
    JobStage,
    JobStatus,
    PlanStatus,
    TestPlan,
    new_id,
    now_iso,
)

logger = logging.getLogger(__name__)


class JobNotFound(Exception):
    """The job id is unknown or its record has expired."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"job {job_id} not found (expired?)")


class PlanNotFound(Exception):
    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"plan {plan_id} not found")


class InvalidTransition(Exception):
    """A patch would violate the job state machine."""


def next_timestamp(previous: str | None) -> str:
    """Return an ISO timestamp strictly later than *previous*."""
    now = datetime.now(timezone.utc)
    if previous:
        prev = datetime.fromisoformat(previous)
        if now <= prev:
            now = prev + timedelta(microseconds=1)
    return now.isoformat()


def check_transition(job: GenerationJob, changes: dict[str, Any]) -> None:
    """Raise InvalidTransition if applying *changes* to *job* is not allowed."""
    if job.is_terminal:
        raise InvalidTransition(f"job {job.id} is already {job.status}")

    new_stage = int(changes.get("stage", job.stage))
    if new_stage < job.stage:
        raise InvalidTransition(f"stage cannot go back from {job.stage} to {new_stage}")
    if not JobStage.retrieval <= new_stage <= JobStage.done:
        raise InvalidTransition(f"stage {new_stage} out of range")

    status = changes.get("status")
    if status is None:
        return
    status = JobStatus(status)
    if status is JobStatus.pending and JobStatus(job.status) is not JobStatus.pending:
        raise InvalidTransition(f"job {job.id} cannot return to pending")
    if status is JobStatus.completed and new_stage != JobStage.done:
        raise InvalidTransition(f"job {job.id} cannot complete at stage {new_stage}")


class JobStore:
    """Durable job, plan and AI-call-log records.

    Every call opens its own short-lived connection, so one store can be
    shared by concurrent tasks.
    """

    def __init__(
        self,
        db_path: str = "./data/qa_gen.db",
        job_ttl_seconds: int = 86400,
        plan_ttl_seconds: int = 604800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._job_ttl = job_ttl_seconds
        self._plan_ttl = plan_ttl_seconds
        self._clock = clock

    async def init(self) -> None:
        """Create the tables if they do not exist."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS plans (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS ai_logs (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_plans_project ON plans(project_id, created_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_ai_logs_project ON ai_logs(project_id, created_at)"
            )
            await db.commit()
        logger.info("Job store initialized at %s", self._db_path)

    # ── Jobs ─────────────────────────────────────────────────────────

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO jobs (id, project_id, data, updated_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.project_id,
                    json.dumps(job.to_dict(), ensure_ascii=False),
                    job.updated_at,
                    self._clock() + self._job_ttl,
                ),
            )
            await db.commit()
        logger.debug("Created job %s for project %s", job.id, job.project_id)
        return job

    async def get_job(self, job_id: str) -> GenerationJob | None:
        """Return the job, or None if it never existed or has expired."""
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            row = await (
                await db.execute("SELECT data, expires_at FROM jobs WHERE id = ?", (job_id,))
            ).fetchone()
            if row is None:
                return None
            if row[1] <= self._clock():
                await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                await db.commit()
                logger.info("Job %s expired", job_id)
                return None
        return GenerationJob.from_dict(json.loads(row[0]))

    async def require_job(self, job_id: str) -> GenerationJob:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def patch_job(self, job_id: str, **changes: Any) -> GenerationJob | None:
        """Apply a partial update.

        Returns:
            The updated job, or None when the job no longer exists (no-op).

        Raises:
            InvalidTransition: The change would break the state machine.
        """
        unknown = set(changes) - set(JOB_FIELD_KEYS)
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            row = await (
                await db.execute("SELECT data, expires_at FROM jobs WHERE id = ?", (job_id,))
            ).fetchone()
            if row is None or row[1] <= self._clock():
                await db.rollback()
                logger.debug("Patch skipped, job %s is gone", job_id)
                return None

            job = GenerationJob.from_dict(json.loads(row[0]))
            check_transition(job, changes)
            for attr, value in changes.items():
                if attr == "status" and value is not None:
                    value = JobStatus(value).value
                setattr(job, attr, value)
            job.stage = int(job.stage)
            job.updated_at = next_timestamp(job.updated_at)

            await db.execute(
                "UPDATE jobs SET data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(job.to_dict(), ensure_ascii=False), job.updated_at, job_id),
            )
            await db.commit()
        return job

    async def purge_expired(self) -> int:
        """Delete expired jobs and plans; return the number of rows removed."""
        import aiosqlite

        now = self._clock()
        async with aiosqlite.connect(self._db_path) as db:
            jobs = await db.execute("DELETE FROM jobs WHERE expires_at <= ?", (now,))
            plans = await db.execute("DELETE FROM plans WHERE expires_at <= ?", (now,))
            await db.commit()
            removed = jobs.rowcount + plans.rowcount
        if removed:
            logger.info("Purged %d expired records", removed)
        return removed

    # ── Plans ────────────────────────────────────────────────────────

    async def put_plan(self, plan: TestPlan) -> TestPlan:
        """Insert or replace a plan record (retention restarts on every write)."""
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO plans "
                "(id, project_id, status, data, created_at, updated_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    plan.id,
                    plan.project_id,
                    plan.status,
                    json.dumps(plan.to_dict(), ensure_ascii=False),
                    plan.created_at,
                    plan.updated_at,
                    self._clock() + self._plan_ttl,
                ),
            )
            await db.commit()
        return plan

    async def get_plan(self, plan_id: str) -> TestPlan | None:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            row = await (
                await db.execute(
                    "SELECT data FROM plans WHERE id = ? AND expires_at > ?",
                    (plan_id, self._clock()),
                )
            ).fetchone()
        return TestPlan.from_dict(json.loads(row[0])) if row else None

    async def require_plan(self, plan_id: str) -> TestPlan:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    async def latest_plan(self, project_id: str) -> TestPlan | None:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            row = await (
                await db.execute(
                    "SELECT data FROM plans WHERE project_id = ? AND expires_at > ? "
                    "ORDER BY created_at DESC, updated_at DESC LIMIT 1",
                    (project_id, self._clock()),
                )
            ).fetchone()
        return TestPlan.from_dict(json.loads(row[0])) if row else None

    async def update_plan(self, plan: TestPlan) -> TestPlan:
        """Re-save a user-edited plan; only drafts may change."""
        current = await self.require_plan(plan.id)
        if current.status != PlanStatus.draft.value:
            raise InvalidTransition(f"plan {plan.id} is {current.status}, not editable")
        plan.project_id = current.project_id
        plan.created_at = current.created_at
        plan.status = PlanStatus.draft.value
        plan.updated_at = next_timestamp(current.updated_at)
        return await self.put_plan(plan)

    async def approve_plan(self, plan_id: str) -> TestPlan:
        plan = await self.require_plan(plan_id)
        if plan.status == PlanStatus.approved.value:
            return plan
        plan.status = PlanStatus.approved.value
        plan.updated_at = next_timestamp(plan.updated_at)
        return await self.put_plan(plan)

    # ── AI call log ──────────────────────────────────────────────────

    async def save_ai_log(self, project_id: str, kind: str, record: dict[str, Any]) -> str:
        import aiosqlite

        log_id = record.get("id") or new_id()
        created_at = record.get("createdAt") or now_iso()
        data = {**record, "id": log_id, "projectId": project_id, "type": kind, "createdAt": created_at}
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO ai_logs (id, project_id, kind, data, created_at) VALUES (?, ?, ?, ?, ?)",
                (log_id, project_id, kind, json.dumps(data, ensure_ascii=False), created_at),
            )
            await db.commit()
        return log_id

    async def list_ai_logs(self, project_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        import aiosqlite

        async with aiosqlite.connect(self._db_path) as db:
            if project_id:
                cursor = await db.execute(
                    "SELECT data FROM ai_logs WHERE project_id = ? ORDER BY created_at DESC LIMIT ?",
                    (project_id, limit),
                )
            else:
                cursor = await db.execute(
                    "SELECT data FROM ai_logs ORDER BY created_at DESC LIMIT ?", (limit,),
                )
            rows = await cursor.fetchall()
        return [json.loads(r[0]) for r in rows]
