"""Repair and parse model output into test items and plan batches.

The repair is deliberately narrow: strip code fences, escape raw control
characters inside string literals, then, if the array does not parse,
cut back to the last ``}`` that yields a valid array.  It recovers
trailing truncation (an aborted stream) and nothing else.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from qa_gen.models import (
    UNKNOWN_CATEGORY,
    Automatable,
    Perspective,
    Priority,
    ReferenceMapEntry,
    SourceRef,
    TestItem,
    TestPlanBatch,
    new_id,
)

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 300

DEFAULT_CATEGORY_MAJOR = "未分類"
DEFAULT_CATEGORY_MINOR = "正常系"

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_STRING_RE = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x1f]")

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}

_PERSPECTIVES = {p.value for p in Perspective}
_PRIORITIES = {p.value for p in Priority}
_AUTOMATABLE = {a.value for a in Automatable}


class ParseError(Exception):
    """No JSON value could be recovered from the model output."""

    def __init__(self, cause: str, content: str) -> None:
        self.cause = cause
        self.snippet = content[:SNIPPET_CHARS]
        super().__init__(f"{cause}: {self.snippet}")


def strip_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw).strip()


def _escape_controls(match: re.Match[str]) -> str:
    return _CONTROL_RE.sub(
        lambda m: _CONTROL_ESCAPES.get(m.group(0), f"\\u{ord(m.group(0)):04x}"),
        match.group(0),
    )


def sanitize_strings(text: str) -> str:
    """Escape raw control characters that appear inside JSON string literals."""
    return _STRING_RE.sub(_escape_controls, text)


def repair_json_array(raw: str) -> list[Any]:
    """Recover a JSON array from *raw*.

    Raises:
        ParseError: There is no ``[`` at all, or no cut point parses.
    """
    text = strip_fences(raw)
    start = text.find("[")
    if start == -1:
        raise ParseError("no JSON array start found", raw)
    text = sanitize_strings(text[start:])

    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(text)
        if isinstance(value, list):
            return value
    except json.JSONDecodeError:
        pass

    # Truncated: cut at the last '}' that closes into a valid array
    cut = text.rfind("}")
    while cut != -1:
        try:
            value = json.loads(text[: cut + 1] + "]")
        except json.JSONDecodeError:
            cut = text.rfind("}", 0, cut)
            continue
        if isinstance(value, list):
            logger.info("Recovered truncated array at offset %d of %d.", cut + 1, len(text))
            return value
        cut = text.rfind("}", 0, cut)

    raise ParseError("could not repair JSON array", raw)


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a single JSON object (review output), tolerating code fences."""
    text = strip_fences(raw)
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ParseError("no JSON object found", raw)
    try:
        value = json.loads(sanitize_strings(text[start : end + 1]))
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON object ({e.msg})", raw) from e
    if not isinstance(value, dict):
        raise ParseError("JSON value is not an object", raw)
    return value


# ── Test items ───────────────────────────────────────────────────────


def id_prefix(category_major: str) -> str:
    return category_major[:2]


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _as_steps(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(s) for s in value if s is not None]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _pick(value: Any, allowed: set[str], default: str, upper: bool = True) -> str:
    text = _as_str(value).upper() if upper else _as_str(value)
    return text if text in allowed else default


def resolve_source_refs(
    raw_refs: Any,
    references: dict[str, ReferenceMapEntry],
) -> list[SourceRef] | None:
    """Resolve cited refIds; misses become ``category="unknown"`` refs."""
    if raw_refs is None:
        return None
    if not isinstance(raw_refs, list):
        raw_refs = [raw_refs]

    resolved: list[SourceRef] = []
    for raw in raw_refs:
        if isinstance(raw, dict):
            ref_id = _as_str(raw.get("refId") or raw.get("ref_id") or raw.get("id"))
            reason = _as_str(raw.get("relevance") or raw.get("reason"))
        else:
            ref_id, reason = _as_str(raw), ""
        if not ref_id and not reason:
            continue

        entry = references.get(ref_id)
        if entry is None:
            logger.debug("Citation miss: %r", ref_id)
            resolved.append(SourceRef(
                ref_id=ref_id,
                filename="",
                category=UNKNOWN_CATEGORY,
                excerpt=reason,
            ))
            continue

        excerpt = entry.excerpt
        if reason:
            excerpt = f"{excerpt}\n根拠: {reason}" if excerpt else reason
        resolved.append(SourceRef(
            ref_id=entry.ref_id,
            filename=entry.filename,
            category=entry.category,
            excerpt=excerpt,
            page_url=entry.page_url,
        ))
    return resolved


def parse_test_items(
    content: str,
    reference_map: list[ReferenceMapEntry],
    project_id: str,
    counters: dict[str, int] | None = None,
    start_index: int = 0,
) -> list[TestItem]:
    """Convert model output into TestItems.

    Args:
        counters: Per-``categoryMajor`` running counters.  Mutated in place
            so consecutive batches keep numbering where the previous left off.
        start_index: ``order_index`` of the first returned item.

    Raises:
        ParseError: No JSON array could be recovered.
    """
    raw_items = repair_json_array(content)
    references = {entry.ref_id: entry for entry in reference_map}
    counters = counters if counters is not None else {}

    items: list[TestItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        major = _as_str(raw.get("categoryMajor"), DEFAULT_CATEGORY_MAJOR)
        counters[major] = counters.get(major, 0) + 1

        items.append(TestItem(
            id=new_id(),
            project_id=project_id,
            test_id=f"{id_prefix(major)}-{counters[major]:03d}",
            category_major=major,
            category_minor=_as_str(raw.get("categoryMinor"), DEFAULT_CATEGORY_MINOR),
            perspective=_pick(
                raw.get("testPerspective", raw.get("perspective")),
                _PERSPECTIVES,
                Perspective.functional.value,
                upper=False,
            ),
            title=_as_str(raw.get("testTitle", raw.get("title"))),
            precondition=_as_str(raw.get("precondition")),
            steps=_as_steps(raw.get("steps")),
            expected_result=_as_str(raw.get("expectedResult")),
            priority=_pick(raw.get("priority"), _PRIORITIES, Priority.MEDIUM.value),
            automatable=_pick(raw.get("automatable"), _AUTOMATABLE, Automatable.CONSIDER.value),
            order_index=start_index + len(items),
            source_refs=resolve_source_refs(raw.get("sourceRefs"), references),
        ))
    return items


# ── Plan batches ─────────────────────────────────────────────────────


def parse_plan_batches(content: str) -> list[TestPlanBatch]:
    """Convert planning output into batches; a batch's count is its title count when titles are given."""
    batches: list[TestPlanBatch] = []
    for i, raw in enumerate(repair_json_array(content)):
        if not isinstance(raw, dict):
            continue
        titles = raw.get("titles")
        titles = [str(t) for t in titles if t] if isinstance(titles, list) else []
        if titles:
            count = len(titles)
        else:
            try:
                count = max(int(raw.get("count") or 0), 0)
            except (TypeError, ValueError):
                count = 0
        batch_id = raw.get("batchId")
        batches.append(TestPlanBatch(
            batch_id=int(batch_id) if isinstance(batch_id, (int, float)) else i + 1,
            category=_as_str(raw.get("category"), DEFAULT_CATEGORY_MAJOR),
            perspective=_as_str(raw.get("perspective"), Perspective.functional.value),
            titles=titles,
            count=count,
        ))
    return batches
