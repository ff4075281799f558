"""Parse structured data out of free-form agent replies.

Kept separate from the code that invokes the agent so every fallback rule
can be tested on plain strings.

Review parsing falls through, in order:

1. a fenced ```json block holding an object with ``qualityScore``;
2. the last bare ``{...}`` object in the text holding ``qualityScore``;
3. a ``quality score: N`` / ``score: N`` phrase;
4. a default score of 5.0 with a "could not parse" summary.
"""

from __future__ import annotations

import json
import re
from typing import Any

from braid.tasks.model import ReviewResult

DEFAULT_SCORE = 5.0
UNPARSED_SUMMARY = "Review completed but could not parse structured result"

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_SCORE_TEXT = re.compile(r"(?:quality\s*score|score)\s*[:=]?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_CONFLICT_MARKER = re.compile(r"^(<{7}|={7}|>{7})(\s|$)", re.MULTILINE)


def clamp_score(value: Any) -> float:
    """Coerce *value* to a 0..10 score with one decimal place."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_SCORE
    if score != score:  # NaN
        return DEFAULT_SCORE
    return round(min(max(score, 0.0), 10.0), 1)


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str):
                if item.strip():
                    out.append(item.strip())
            elif isinstance(item, dict):
                text = item.get("description") or item.get("message") or item.get("text")
                if text:
                    out.append(str(text).strip())
            elif item is not None:
                out.append(str(item))
        return out
    return [str(value)]


def _review_from_obj(obj: dict[str, Any], threshold: float) -> ReviewResult:
    raw_score = obj.get("qualityScore", obj.get("quality_score"))
    score = clamp_score(raw_score)
    return ReviewResult(
        quality_score=score,
        passed=score >= threshold,
        issues=_as_str_list(obj.get("issues")),
        suggestions=_as_str_list(obj.get("suggestions")),
        summary=str(obj.get("summary") or "").strip(),
    )


def _has_score(obj: Any) -> bool:
    return isinstance(obj, dict) and ("qualityScore" in obj or "quality_score" in obj)


def _bare_objects(text: str) -> list[Any]:
    """Every decodable top-level JSON object in *text*, in order."""
    decoder = json.JSONDecoder()
    found: list[Any] = []
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        found.append(obj)
        idx = text.find("{", end)
    return found


def parse_review(text: str, threshold: float) -> ReviewResult:
    """Extract a :class:`ReviewResult` from a review reply.

    ``passed`` is always recomputed from the score and *threshold*, never
    taken from the agent's own verdict.
    """
    text = text or ""

    for block in _FENCED_JSON.findall(text):
        try:
            obj = json.loads(block)
        except json.JSONDecodeError:
            continue
        if _has_score(obj):
            return _review_from_obj(obj, threshold)

    for obj in reversed(_bare_objects(text)):
        if _has_score(obj):
            return _review_from_obj(obj, threshold)

    match = _SCORE_TEXT.search(text)
    score = clamp_score(match.group(1)) if match else DEFAULT_SCORE
    return ReviewResult(
        quality_score=score,
        passed=score >= threshold,
        summary=UNPARSED_SUMMARY,
    )


def strip_code_fence(text: str) -> str:
    """Unwrap a reply that is a single fenced block; otherwise return it trimmed."""
    stripped = (text or "").strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.split("\n")
    lines.pop(0)
    if lines and lines[-1].strip() == "```":
        lines.pop()
    return "\n".join(lines)


def has_conflict_markers(content: str) -> bool:
    """Return ``True`` if *content* still holds git conflict markers."""
    return bool(_CONFLICT_MARKER.search(content or ""))


def resolved_file_content(reply: str, original: str) -> str:
    """Turn a conflict-resolution reply into file content.

    A trailing newline is kept when the conflicted file had one.
    """
    content = strip_code_fence(reply)
    if original.endswith("\n") and not content.endswith("\n"):
        content += "\n"
    return content
