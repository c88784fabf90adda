"""Tests for field similarity, typo suggestions and correction notes."""

from __future__ import annotations

import pytest

from vizql_harness.core.fields import (
    build_correction_note,
    detect_field_corrections,
    levenshtein,
    score_similarity,
    suggest_similar_fields,
    tokenize,
    typo_suggestions,
)
from vizql_harness.types import ToolCall


def _query_call(*captions: str, call_id: str = "t1") -> ToolCall:
    return ToolCall(
        id=call_id,
        name="query-datasource",
        input={"datasourceLuid": "ds", "query": {"fields": [{"fieldCaption": c} for c in captions]}},
    )


class TestSimilarity:
    @pytest.mark.parametrize("a, b, distance", [
        ("", "", 0), ("abc", "", 3), ("kitten", "sitting", 3), ("sales", "sales", 0),
    ])
    def test_levenshtein(self, a, b, distance):
        assert levenshtein(a, b) == distance

    def test_scores(self):
        assert score_similarity("Sales", " sales ") == 1.0
        assert score_similarity("prof", "Profit") == 0.8
        assert score_similarity("der", "Order Date") == 0.6
        assert score_similarity("Saless", "Sales") == pytest.approx(1 - 1 / 6)

    def test_suggestions_exclude_exact_and_weak(self):
        candidates = ["Sales", "Sales Target", "Region", "Profit"]
        assert suggest_similar_fields("Sale", candidates) == ["Sales", "Sales Target"]
        assert suggest_similar_fields("Sales", ["Sales"]) == []
        assert suggest_similar_fields("", candidates) == []


class TestTypoSuggestions:
    def test_unknown_field(self):
        metadata = {"fields": [{"name": "Sales"}, {"name": "State"}, {"name": "Region"}]}
        lines = typo_suggestions(_query_call("Saless", "State").input, metadata)
        assert lines == ['Field "Saless" not found. Did you mean: Sales?']

    def test_no_metadata(self):
        assert typo_suggestions(_query_call("Saless").input, {}) == []


class TestCorrections:
    def test_tokenize_drops_stop_words_and_short(self):
        assert [t for _, t in tokenize("Show me the profitt for all regions!")] == [
            "show", "profitt", "regions",
        ]

    def test_detects_misspelling(self):
        corrections = detect_field_corrections("total proffit by region", [_query_call("Profit")])
        assert len(corrections) == 1
        assert corrections[0].original_token == "proffit"
        assert corrections[0].field_caption == "Profit"

    def test_literal_mention_is_not_a_correction(self):
        assert detect_field_corrections("top 5 states by sales", [_query_call("State", "Sales")]) == []

    def test_only_query_calls_considered(self):
        call = ToolCall(id="t", name="get-datasource-metadata", input={"datasourceLuid": "ds"})
        assert detect_field_corrections("profitt", [call]) == []

    def test_note(self):
        corrections = detect_field_corrections("proffit by regon", [_query_call("Profit", "Region")])
        note = build_correction_note(corrections)
        assert note.startswith("\n\nNote: Interpreted ")
        assert '"proffit" as "Profit"' in note
        assert '"regon" as "Region"' in note
        assert note.endswith(".")

    def test_no_note(self):
        assert build_correction_note([]) is None
