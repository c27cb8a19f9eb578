"""Shared fixtures: in-memory index, scripted completion backend, temp stores."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from qa_gen.config import AppConfig
from qa_gen.jobs.store import JobStore
from qa_gen.llm.backend import Completion, LLMBackend
from qa_gen.records.store import RecordStore


class FakeIndex:
    """Serves canned matches, honouring the project/category filter string."""

    def __init__(self, matches: list[dict[str, Any]] | None = None) -> None:
        self.matches = list(matches or [])
        self.queries: list[tuple[str, str, int]] = []
        self.fail = False

    def add(self, project_id, doc_id, chunk_index, category, text, score=0.9,
            filename="spec.md", page_url=None) -> None:
        self.matches.append({
            "score": score,
            "metadata": {
                "projectId": project_id,
                "docId": doc_id,
                "chunkIndex": chunk_index,
                "filename": filename,
                "category": category,
                "text": text,
                "pageUrl": page_url,
            },
        })

    def query(self, text: str, filter: str, top_k: int) -> list[dict[str, Any]]:
        self.queries.append((text, filter, top_k))
        if self.fail:
            raise RuntimeError("index unavailable")
        out = []
        for m in self.matches:
            meta = m["metadata"]
            if f"project_id = '{meta['projectId']}'" not in filter:
                continue
            if "category = " in filter and f"category = '{meta['category']}'" not in filter:
                continue
            out.append(m)
        return out[:top_k]


class FakeBackend(LLMBackend):
    """Scripted completion backend.

    ``stream_scripts`` holds one entry per streaming call: a list of
    fragments (an Exception among them is raised at that point), or an
    Exception raised before the first fragment.  When ``hang`` is set the
    stream blocks forever after its last fragment.
    """

    def __init__(self, model: str = "fake/model") -> None:
        self.model = model
        self.stream_scripts: list[Any] = []
        self.completions: list[Any] = []
        self.calls: list[dict[str, Any]] = []
        self.hang = False
        self.closed = False

    async def complete(self, system_prompt, user_prompt, model=None, temperature=0.3, max_tokens=8000):
        self.calls.append({"kind": "complete", "system": system_prompt, "user": user_prompt})
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return Completion(
            text=result,
            model=model or self.model,
            usage={"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
        )

    async def complete_stream(self, system_prompt, user_prompt, model=None, temperature=0.4, max_tokens=12000):
        self.calls.append({"kind": "stream", "system": system_prompt, "user": user_prompt})
        script = self.stream_scripts.pop(0) if self.stream_scripts else []
        if isinstance(script, Exception):
            raise script
        for fragment in script:
            if isinstance(fragment, Exception):
                raise fragment
            yield fragment
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.sleep(3600)

    async def close(self) -> None:
        self.closed = True


def item_json(n: int, major: str = "Login", ref: str = "REF-1") -> dict[str, Any]:
    return {
        "categoryMajor": major,
        "categoryMinor": "正常系",
        "testPerspective": "機能テスト",
        "testTitle": f"ケース {n}",
        "precondition": "ログイン画面を表示している",
        "steps": ["IDを入力する", "パスワードを入力する", "ログインを押す"],
        "expectedResult": "トップ画面に遷移する",
        "priority": "HIGH",
        "automatable": "YES",
        "sourceRefs": [{"refId": ref, "relevance": "ログイン仕様"}],
    }


def items_array(count: int, **kwargs: Any) -> str:
    return json.dumps([item_json(i, **kwargs) for i in range(count)], ensure_ascii=False)


def item_fragments(count: int, **kwargs: Any) -> list[str]:
    """An unterminated array streamed one item per fragment."""
    return ["["] + [
        json.dumps(item_json(i, **kwargs), ensure_ascii=False) + "," for i in range(count)
    ]


@pytest.fixture
def fake_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def helpers():
    """Payload builders for scripted model output."""
    class _Helpers:
        item = staticmethod(item_json)
        array = staticmethod(items_array)
        fragments = staticmethod(item_fragments)
    return _Helpers


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.store.db_path = str(tmp_path / "qa_gen.db")
    cfg.vector.db_path = str(tmp_path / "vectors")
    cfg.generation.abort_after_seconds = 0.5
    cfg.generation.invocation_limit_seconds = 5.0
    cfg.api.status_poll_interval = 0.05
    return cfg


@pytest_asyncio.fixture
async def jobs(config: AppConfig) -> JobStore:
    store = JobStore(db_path=config.store.db_path)
    await store.init()
    return store


@pytest_asyncio.fixture
async def records(config: AppConfig) -> RecordStore:
    store = RecordStore(db_path=config.store.db_path)
    await store.init()
    return store
