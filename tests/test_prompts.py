"""Tests for prompt construction."""

from __future__ import annotations

from qa_gen.llm.prompt_templates import GENERATION_SYSTEM_PROMPT, NO_EVIDENCE_FALLBACK
from qa_gen.llm.prompts import (
    REVIEW_ITEM_LIMIT,
    build_generation_prompts,
    build_planning_prompts,
    build_review_prompts,
    estimate_tokens,
    render_reference_map,
)
from qa_gen.models import (
    EvidenceChunk,
    FocusPage,
    GenerationOptions,
    PerspectiveWeight,
    ReferenceMapEntry,
    TestItem,
)
from qa_gen.retrieval.context import AssembledContext, assemble


def _context() -> AssembledContext:
    chunk = EvidenceChunk(
        project_id="p1", doc_id="d1", chunk_index=0, filename="login.md",
        category="spec_doc", text="ログインはメールアドレスとパスワードで行う。",
    )
    return assemble([[chunk], [], []])


class TestEstimateTokens:
    def test_ascii_quarter(self) -> None:
        assert estimate_tokens("abcdefgh") == 2

    def test_cjk_one_each(self) -> None:
        assert estimate_tokens("テスト") == 3

    def test_mixed_rounds_up(self) -> None:
        assert estimate_tokens("テストab") == 4

    def test_empty(self) -> None:
        assert estimate_tokens("") == 0


class TestReferenceMapRendering:
    def test_lines(self) -> None:
        text = render_reference_map([
            ReferenceMapEntry("REF-1", "login.md", "spec_doc", "x"),
            ReferenceMapEntry("REF-2", "top", "site_analysis", "y", page_url="https://ex.com/"),
        ])
        assert text.splitlines() == [
            "REF-1: login.md（仕様書・設計書）",
            "REF-2: top（サイト構造） https://ex.com/",
        ]

    def test_empty(self) -> None:
        assert render_reference_map([]) == "（なし）"


class TestGenerationPrompts:
    def test_contains_context_and_count(self) -> None:
        prompts = build_generation_prompts("会員サイト", "EC", _context(), GenerationOptions(target_count=30))
        assert prompts.system == GENERATION_SYSTEM_PROMPT
        assert "会員サイト" in prompts.user
        assert "30件" in prompts.user
        assert "[REF-1] login.md" in prompts.user
        assert "REF-1: login.md" in prompts.user
        assert '"sourceRefs"' in prompts.user

    def test_empty_context_uses_fallback(self) -> None:
        prompts = build_generation_prompts("p", "", AssembledContext(), GenerationOptions())
        assert NO_EVIDENCE_FALLBACK in prompts.user

    def test_weights_override_count_and_perspectives(self) -> None:
        options = GenerationOptions(
            target_count=99,
            perspective_weights=[
                PerspectiveWeight("正常系", 5),
                PerspectiveWeight("異常系", 3),
                PerspectiveWeight("性能", 0),
            ],
        )
        prompts = build_generation_prompts("p", "", _context(), options)
        assert "8件" in prompts.user
        assert "正常系: 5件" in prompts.user
        assert "性能: 0件" not in prompts.user
        assert "テスト観点: 正常系、異常系" in prompts.user

    def test_focus_pages_and_planned_titles(self) -> None:
        options = GenerationOptions(
            focus_pages=[FocusPage("https://ex.com/cart", "カート")],
            planned_titles=["商品を追加できる", "数量を変更できる"],
        )
        user = build_generation_prompts("p", "", _context(), options).user
        assert "カート (https://ex.com/cart)" in user
        assert "- 商品を追加できる" in user

    def test_prompt_override_replaces_system(self) -> None:
        options = GenerationOptions(prompt_override="カスタム指示")
        assert build_generation_prompts("p", "", _context(), options).system == "カスタム指示"


class TestPlanningPrompts:
    def test_batch_count(self) -> None:
        prompts = build_planning_prompts("p", "", _context(), GenerationOptions(target_count=120), 50)
        assert "総件数: 120件" in prompts.user
        assert "バッチ数: 3" in prompts.user


class TestReviewPrompts:
    def test_summary_is_capped(self) -> None:
        items = [
            TestItem(
                id=str(i), project_id="p1", test_id=f"Lo-{i:03d}", category_major="Login",
                category_minor="正常系", perspective="機能テスト", title=f"t{i}",
            )
            for i in range(REVIEW_ITEM_LIMIT + 10)
        ]
        user = build_review_prompts(items).user
        assert f"総件数: {REVIEW_ITEM_LIMIT + 10}件" in user
        assert f"[Lo-{REVIEW_ITEM_LIMIT - 1:03d}]" in user
        assert f"[Lo-{REVIEW_ITEM_LIMIT:03d}]" not in user
