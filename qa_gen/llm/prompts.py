"""Prompt builders for generation, planning and review calls.

Pure functions: nothing here touches the network or the stores.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from qa_gen.llm import prompt_templates as tpl
from qa_gen.models import (
    CATEGORY_LABELS,
    GenerationOptions,
    Perspective,
    ReferenceMapEntry,
    TestItem,
)
from qa_gen.retrieval.context import AssembledContext

REVIEW_ITEM_LIMIT = 200

_CJK_RE = re.compile(r"[\u3000-\u9fff\uff00-\uffef]")

PERSPECTIVE_ENUM = "/".join(p.value for p in Perspective)


@dataclass(frozen=True)
class Prompts:
    system: str
    user: str


def estimate_tokens(text: str) -> int:
    """Rough token estimate: CJK characters count one each, others a quarter."""
    cjk = len(_CJK_RE.findall(text))
    return math.ceil(cjk + (len(text) - cjk) / 4)


def render_reference_map(reference_map: list[ReferenceMapEntry]) -> str:
    if not reference_map:
        return "（なし）"
    lines = []
    for entry in reference_map:
        label = CATEGORY_LABELS.get(entry.category, entry.category)
        line = f"{entry.ref_id}: {entry.filename}（{label}）"
        if entry.page_url:
            line += f" {entry.page_url}"
        lines.append(line)
    return "\n".join(lines)


def _render_context(context: AssembledContext) -> str:
    if context.is_empty:
        return tpl.NO_EVIDENCE_FALLBACK
    return "\n\n".join(context.sections.values())


def _bullets(values: list[str]) -> str:
    return "\n".join(f"- {v}" for v in values)


def _weights_block(options: GenerationOptions) -> str:
    if not options.perspective_weights:
        return ""
    lines = _bullets([
        f"{w.value}: {w.count}件" for w in options.perspective_weights if w.count > 0
    ])
    return tpl.WEIGHTS_BLOCK.format(lines=lines)


def _focus_block(options: GenerationOptions) -> str:
    if not options.focus_pages:
        return ""
    lines = _bullets([f"{p.title} ({p.url})" for p in options.focus_pages])
    return tpl.FOCUS_BLOCK.format(lines=lines)


def build_generation_prompts(
    project_name: str,
    target_system: str,
    context: AssembledContext,
    options: GenerationOptions,
) -> Prompts:
    """Build the system/user prompt pair for one generation call."""
    titles_block = ""
    if options.planned_titles:
        titles_block = tpl.TITLES_BLOCK.format(lines=_bullets(options.planned_titles))

    user = tpl.GENERATION_USER_PROMPT.format(
        project_name=project_name,
        target_system=target_system,
        perspectives="、".join(options.effective_perspectives),
        target_count=options.effective_target_count,
        weights_block=_weights_block(options),
        focus_block=_focus_block(options),
        titles_block=titles_block,
        context=_render_context(context),
        reference_map=render_reference_map(context.reference_map),
        perspective_enum=PERSPECTIVE_ENUM,
    )
    system = options.prompt_override or tpl.GENERATION_SYSTEM_PROMPT
    return Prompts(system=system, user=user)


def build_planning_prompts(
    project_name: str,
    target_system: str,
    context: AssembledContext,
    options: GenerationOptions,
    batch_size: int,
) -> Prompts:
    """Build the prompt pair for the non-streaming planning call."""
    total = options.effective_target_count
    batch_count = max(1, math.ceil(total / batch_size)) if batch_size > 0 else 1
    user = tpl.PLANNING_USER_PROMPT.format(
        project_name=project_name,
        target_system=target_system,
        perspectives="、".join(options.effective_perspectives),
        total_items=total,
        batch_size=batch_size,
        batch_count=batch_count,
        weights_block=_weights_block(options),
        focus_block=_focus_block(options),
        context=_render_context(context),
        reference_map=render_reference_map(context.reference_map),
        perspective_enum=PERSPECTIVE_ENUM,
    )
    return Prompts(system=tpl.PLANNING_SYSTEM_PROMPT, user=user)


def build_review_prompts(items: list[TestItem]) -> Prompts:
    """Summarize at most the first 200 items for the review call."""
    shown = items[:REVIEW_ITEM_LIMIT]
    summary = "\n".join(
        f"[{t.test_id}] {t.category_major} / {t.category_minor} / {t.perspective}: {t.title}"
        for t in shown
    )
    majors = list(dict.fromkeys(t.category_major for t in items))
    perspectives = list(dict.fromkeys(t.perspective for t in items))
    user = tpl.REVIEW_USER_PROMPT.format(
        total=len(items),
        majors="、".join(majors),
        perspectives="、".join(perspectives),
        shown=len(shown),
        items_summary=summary,
    )
    return Prompts(system=tpl.REVIEW_SYSTEM_PROMPT, user=user)
