"""Durable job, plan and AI-call records."""

from qa_gen.jobs.store import InvalidTransition, JobNotFound, JobStore, PlanNotFound

__all__ = ["InvalidTransition", "JobNotFound", "JobStore", "PlanNotFound"]
