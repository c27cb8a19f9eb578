"""Tests for the evidence retriever."""

from __future__ import annotations

import pytest

from qa_gen.retrieval.retriever import EvidenceRetriever, build_query


class TestRetrieve:
    def test_threshold_is_strict(self, fake_index) -> None:
        fake_index.add("p1", "d1", 0, "spec_doc", "above", score=0.51)
        fake_index.add("p1", "d2", 0, "spec_doc", "equal", score=0.5)
        chunks = EvidenceRetriever(fake_index).retrieve("q", "p1", top_k=10)
        assert [c.text for c in chunks] == ["above"]

    def test_source_code_uses_lower_threshold(self, fake_index) -> None:
        fake_index.add("p1", "c1", 0, "source_code", "def login(): ...", score=0.4)
        fake_index.add("p1", "d1", 0, "spec_doc", "prose", score=0.4)
        retriever = EvidenceRetriever(fake_index)
        assert len(retriever.retrieve("q", "p1", 10, category="source_code")) == 1
        # Unfiltered search judges each chunk by its own category
        assert [c.category for c in retriever.retrieve("q", "p1", 10)] == ["source_code"]

    def test_sorted_best_first(self, fake_index) -> None:
        fake_index.add("p1", "d1", 0, "spec_doc", "a", score=0.6)
        fake_index.add("p1", "d2", 0, "spec_doc", "b", score=0.9)
        chunks = EvidenceRetriever(fake_index).retrieve("q", "p1", 10)
        assert [c.score for c in chunks] == [0.9, 0.6]

    def test_project_isolation(self, fake_index) -> None:
        fake_index.add("p1", "d1", 0, "spec_doc", "mine")
        fake_index.add("p2", "d2", 0, "spec_doc", "theirs")
        chunks = EvidenceRetriever(fake_index).retrieve("q", "p1", 10)
        assert [c.project_id for c in chunks] == ["p1"]

    def test_filter_passed_to_index(self, fake_index) -> None:
        EvidenceRetriever(fake_index).retrieve("q", "o'brien", 5, category="site_analysis")
        text, filter_expr, top_k = fake_index.queries[0]
        assert filter_expr == "project_id = 'o''brien' AND category = 'site_analysis'"
        assert top_k == 5

    def test_index_failure_yields_empty(self, fake_index) -> None:
        fake_index.fail = True
        assert EvidenceRetriever(fake_index).retrieve("q", "p1", 10) == []

    def test_zero_top_k_skips_query(self, fake_index) -> None:
        assert EvidenceRetriever(fake_index).retrieve("q", "p1", 0) == []
        assert fake_index.queries == []


class TestRetrieveAll:
    @pytest.mark.asyncio
    async def test_three_slots(self, fake_index) -> None:
        fake_index.add("p1", "d1", 0, "spec_doc", "doc")
        fake_index.add("p1", "s1", 0, "site_analysis", "site")
        fake_index.add("p1", "c1", 0, "source_code", "code")
        sets = await EvidenceRetriever(fake_index).retrieve_all(
            "q", "p1", {"doc": 20, "site": 10, "src": 20},
        )
        assert len(sets.doc) == 3
        assert [c.text for c in sets.site] == ["site"]
        assert [c.text for c in sets.src] == ["code"]
        assert sets.breakdown == {"doc": 3, "site": 1, "src": 1}

    @pytest.mark.asyncio
    async def test_slots_without_top_k_are_empty(self, fake_index) -> None:
        fake_index.add("p1", "d1", 0, "spec_doc", "doc")
        sets = await EvidenceRetriever(fake_index).retrieve_all("q", "p1", {"doc": 5})
        assert len(sets.doc) == 1
        assert sets.site == [] and sets.src == []


def test_build_query_appends_focus_titles() -> None:
    assert build_query("テスト 機能", "EC") == "EC テスト 機能"
    assert build_query("テスト", "", ["カート", "決済"]) == "テスト カート 決済"
