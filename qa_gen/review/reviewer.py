"""Second-pass quality review of generated test items.

Scores the item list against four rubrics (ISO/IEC 25010, ISO/IEC/IEEE
29119, OWASP ASVS, ISTQB) and combines them as::

    composite = 0.3·iso25010 + 0.3·iso29119 + 0.2·owasp + 0.2·istqb
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from qa_gen.generation.parser import parse_json_object
from qa_gen.jobs.store import JobStore
from qa_gen.llm.backend import LLMBackend
from qa_gen.llm.prompts import build_review_prompts, estimate_tokens
from qa_gen.models import TestItem, new_id, now_iso

logger = logging.getLogger(__name__)

RUBRIC_WEIGHTS: dict[str, float] = {
    "iso25010": 0.3,
    "iso29119": 0.3,
    "owasp": 0.2,
    "istqb": 0.2,
}


def _score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(score, 0.0), 1.0)


def composite_score(scores: dict[str, float]) -> float:
    return round(sum(w * scores.get(k, 0.0) for k, w in RUBRIC_WEIGHTS.items()), 2)


@dataclass
class ReviewResult:
    id: str
    project_id: str
    review_model: str
    total_items: int
    coverage_score: dict[str, float]
    missing_perspectives: list[str] = field(default_factory=list)
    defect_risk_analysis: str = ""
    improvement_suggestions: list[str] = field(default_factory=list)
    heatmap: list[dict[str, Any]] = field(default_factory=list)
    coverage_missing_areas: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "reviewModel": self.review_model,
            "totalItems": self.total_items,
            "coverageScore": dict(self.coverage_score),
            "missingPerspectives": list(self.missing_perspectives),
            "defectRiskAnalysis": self.defect_risk_analysis,
            "improvementSuggestions": list(self.improvement_suggestions),
            "heatmap": list(self.heatmap),
            "coverageMissingAreas": list(self.coverage_missing_areas),
            "createdAt": self.created_at,
        }


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def build_review_result(
    parsed: dict[str, Any],
    project_id: str,
    model: str,
    total_items: int,
) -> ReviewResult:
    raw_scores = parsed.get("coverageScore") or {}
    if not isinstance(raw_scores, dict):
        raw_scores = {}
    scores = {key: _score(raw_scores.get(key)) for key in RUBRIC_WEIGHTS}
    scores["composite"] = composite_score(scores)
    return ReviewResult(
        id=new_id(),
        project_id=project_id,
        review_model=model,
        total_items=total_items,
        coverage_score=scores,
        missing_perspectives=[str(p) for p in _list(parsed.get("missingPerspectives"))],
        defect_risk_analysis=str(parsed.get("defectRiskAnalysis") or ""),
        improvement_suggestions=[str(s) for s in _list(parsed.get("improvementSuggestions"))],
        heatmap=[h for h in _list(parsed.get("heatmap")) if isinstance(h, dict)],
        coverage_missing_areas=[
            a for a in _list(parsed.get("coverageMissingAreas")) if isinstance(a, dict)
        ],
    )


class QualityReviewer:
    """Runs the review completion and logs the call."""

    def __init__(
        self,
        backend: LLMBackend,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4000,
        jobs: JobStore | None = None,
    ) -> None:
        self._backend = backend
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._jobs = jobs

    async def review(self, project_id: str, items: list[TestItem]) -> ReviewResult:
        """Review *items*.

        Raises:
            TransportError: The review call failed.
            ParseError: The response was not a JSON object.
        """
        started = time.monotonic()
        prompts = build_review_prompts(items)
        completion = await self._backend.complete(
            prompts.system,
            prompts.user,
            model=self._model,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        result = build_review_result(
            parse_json_object(completion.text), project_id, completion.model, len(items),
        )
        logger.info(
            "Reviewed %d items for project %s: composite=%.2f",
            len(items), project_id, result.coverage_score["composite"],
        )

        if self._jobs is not None:
            usage = completion.usage or {}
            await self._jobs.save_ai_log(project_id, "review", {
                "modelId": completion.model,
                "systemPrompt": prompts.system[:3000],
                "userPrompt": prompts.user[:4000],
                "responseText": completion.text[:2000],
                "outputItemCount": len(items),
                "aborted": False,
                "totalTokensEst": sum(
                    estimate_tokens(t) for t in (prompts.system, prompts.user, completion.text)
                ),
                "promptTokensActual": usage.get("prompt_tokens"),
                "completionTokensActual": usage.get("completion_tokens"),
                "totalTokensActual": usage.get("total_tokens"),
                "elapsedMs": round((time.monotonic() - started) * 1000),
            })
        return result
