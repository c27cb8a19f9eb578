"""Tests for the quality reviewer."""

from __future__ import annotations

import json

import pytest

from qa_gen.generation.parser import ParseError
from qa_gen.models import TestItem
from qa_gen.review.reviewer import QualityReviewer, build_review_result, composite_score


def _items(n: int = 3) -> list[TestItem]:
    return [
        TestItem(
            id=str(i), project_id="p1", test_id=f"Lo-{i + 1:03d}", category_major="Login",
            category_minor="正常系", perspective="機能テスト", title=f"ケース {i}",
        )
        for i in range(n)
    ]


_REVIEW = {
    "coverageScore": {"iso25010": 0.8, "iso29119": 0.6, "owasp": 0.5, "istqb": 0.7},
    "missingPerspectives": ["性能"],
    "defectRiskAnalysis": "入力検証が手薄",
    "improvementSuggestions": ["境界値を追加"],
    "heatmap": [{"category": "Login", "riskLevel": "high", "score": 0.7, "reason": "r"}, "junk"],
    "coverageMissingAreas": [],
}


class TestComposite:
    def test_weighted_sum(self) -> None:
        scores = {"iso25010": 0.8, "iso29119": 0.6, "owasp": 0.5, "istqb": 0.7}
        # 0.24 + 0.18 + 0.10 + 0.14
        assert composite_score(scores) == 0.66

    def test_out_of_range_scores_clamped(self) -> None:
        result = build_review_result(
            {"coverageScore": {"iso25010": 3, "iso29119": -1, "owasp": "n/a"}}, "p1", "m", 1,
        )
        assert result.coverage_score["iso25010"] == 1.0
        assert result.coverage_score["iso29119"] == 0.0
        assert result.coverage_score["owasp"] == 0.0
        assert result.coverage_score["composite"] == 0.3


class TestQualityReviewer:
    @pytest.mark.asyncio
    async def test_review_and_log(self, backend, jobs) -> None:
        backend.completions = ["```json\n" + json.dumps(_REVIEW, ensure_ascii=False) + "\n```"]
        reviewer = QualityReviewer(backend, model="review/model", jobs=jobs)

        result = await reviewer.review("p1", _items())

        assert result.coverage_score["composite"] == 0.66
        assert result.total_items == 3
        assert result.review_model == "review/model"
        assert result.missing_perspectives == ["性能"]
        assert len(result.heatmap) == 1
        payload = result.to_dict()
        assert payload["coverageScore"]["composite"] == 0.66
        assert "[Lo-001]" in backend.calls[0]["user"]

        logs = await jobs.list_ai_logs("p1")
        assert logs[0]["type"] == "review"
        assert logs[0]["totalTokensActual"] == 30

    @pytest.mark.asyncio
    async def test_unparseable_review(self, backend) -> None:
        backend.completions = ["評価できません"]
        with pytest.raises(ParseError):
            await QualityReviewer(backend).review("p1", _items())
