"""Tests for braid.responses: fallback rules of the structured-response parser."""

from __future__ import annotations

import pytest

from braid.responses import (
    DEFAULT_SCORE,
    UNPARSED_SUMMARY,
    clamp_score,
    has_conflict_markers,
    parse_review,
    resolved_file_content,
    strip_code_fence,
)


class TestParseReview:
    def test_fenced_json_block(self):
        text = """Here is my review.

```json
{"qualityScore": 8.7, "issues": ["missing tests"], "suggestions": ["add tests"], "summary": "ok"}
```
"""
        r = parse_review(text, threshold=9.5)
        assert r.quality_score == 8.7
        assert r.passed is False
        assert r.issues == ["missing tests"]
        assert r.suggestions == ["add tests"]
        assert r.summary == "ok"

    def test_fenced_block_wins_over_bare_object(self):
        text = '{"qualityScore": 1}\n```json\n{"qualityScore": 9.8}\n```'
        assert parse_review(text, 9.5).quality_score == 9.8

    def test_last_bare_object_used(self):
        text = 'first {"qualityScore": 3} then {"qualityScore": 9.6, "summary": "good"} done'
        r = parse_review(text, 9.5)
        assert r.quality_score == 9.6
        assert r.passed is True
        assert r.summary == "good"

    def test_bare_objects_without_score_are_ignored(self):
        text = '{"qualityScore": 7} trailing {"other": 1}'
        assert parse_review(text, 9.5).quality_score == 7.0

    def test_invalid_fenced_json_falls_through(self):
        text = "```json\n{not json}\n```\nQuality score: 6.5"
        r = parse_review(text, 9.5)
        assert r.quality_score == 6.5
        assert r.summary == UNPARSED_SUMMARY

    def test_score_phrase(self):
        r = parse_review("Overall score: 9.7 - nice work", 9.5)
        assert r.quality_score == 9.7
        assert r.passed is True

    def test_default_when_nothing_parses(self):
        r = parse_review("I looked at the code and it seems fine.", 9.5)
        assert r.quality_score == DEFAULT_SCORE
        assert r.passed is False
        assert r.summary == UNPARSED_SUMMARY

    def test_empty_text(self):
        assert parse_review("", 9.5).quality_score == DEFAULT_SCORE

    def test_passed_recomputed_from_threshold(self):
        text = '```json\n{"qualityScore": 9.0, "passed": true}\n```'
        assert parse_review(text, 9.5).passed is False
        assert parse_review(text, 9.0).passed is True

    def test_issue_objects_flattened_to_text(self):
        text = '{"qualityScore": 4, "issues": [{"severity": "blocker", "description": "broken import"}, "", null]}'
        assert parse_review(text, 9.5).issues == ["broken import"]

    def test_snake_case_score_key(self):
        assert parse_review('{"quality_score": 9.9}', 9.5).passed is True


class TestClampScore:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (12, 10.0),
            (-3, 0.0),
            (9.66, 9.7),
            ("8.25", 8.2),
            ("n/a", DEFAULT_SCORE),
            (None, DEFAULT_SCORE),
            (float("nan"), DEFAULT_SCORE),
        ],
    )
    def test_clamp(self, raw, expected):
        assert clamp_score(raw) == expected

    def test_out_of_range_score_in_review_is_clamped(self):
        assert parse_review('{"qualityScore": 42}', 9.5).quality_score == 10.0


class TestFileContent:
    def test_strip_code_fence(self):
        assert strip_code_fence("```python\nx = 1\ny = 2\n```") == "x = 1\ny = 2"

    def test_strip_code_fence_leaves_plain_text(self):
        assert strip_code_fence("  x = 1\n") == "x = 1"

    def test_resolved_content_keeps_trailing_newline(self):
        assert resolved_file_content("```\na\n```", "<<<<<<< HEAD\na\n") == "a\n"

    def test_resolved_content_without_trailing_newline(self):
        assert resolved_file_content("a", "a") == "a"


class TestConflictMarkers:
    def test_detects_markers(self):
        text = "<<<<<<< HEAD\nours\n=======\ntheirs\n>>>>>>> feature\n"
        assert has_conflict_markers(text) is True

    def test_marker_must_start_a_line(self):
        assert has_conflict_markers("x = '<<<<<<< not a marker'") is False

    def test_clean_text(self):
        assert has_conflict_markers("def f():\n    return 1\n") is False

    def test_equals_rule_alone_counts(self):
        assert has_conflict_markers("a\n=======\nb") is True
