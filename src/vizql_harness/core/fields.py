"""Field-name similarity: typo suggestions and answer correction notes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from vizql_harness.tools.definitions import QUERY_DATASOURCE
from vizql_harness.types import ToolCall

STOP_WORDS = frozenset({
    "for", "the", "and", "with", "all", "any",
    "are", "was", "were", "has", "have", "had", "can", "may", "not", "but",
    "from", "into", "onto", "over", "under", "this", "that", "these", "those",
})

_WS_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^a-zA-Z0-9\s]+")


# ---------------------------------------------------------------------------
# String similarity
# ---------------------------------------------------------------------------

def normalize_string(text: str) -> str:
    return _WS_RE.sub(" ", text.lower().strip())


def levenshtein(a: str, b: str) -> int:
    """Edit distance between *a* and *b*."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def score_similarity(value: str, candidate: str) -> float:
    """Score in ``[0, 1]``: exact 1.0, prefix 0.8, substring 0.6, else edit ratio."""
    a = normalize_string(value)
    b = normalize_string(candidate)
    if a == b:
        return 1.0
    if b.startswith(a):
        return 0.8
    if a in b:
        return 0.6
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return 1 - levenshtein(a, b) / longest


def suggest_similar_fields(value: str, candidates: Iterable[str], limit: int = 3) -> list[str]:
    """Up to *limit* near-miss candidates for *value*, best first.

    Exact matches are excluded: they are not typos.
    """
    if not isinstance(value, str) or not value.strip():
        return []
    scored = [
        (score_similarity(value, c), c) for c in candidates
        if isinstance(c, str) and c.strip()
    ]
    ranked = sorted(
        (item for item in scored if 0.6 <= item[0] < 1.0),
        key=lambda item: item[0],
        reverse=True,
    )
    return [c for _, c in ranked[:limit]]


def field_captions(tool_input: dict[str, Any]) -> list[str]:
    """``fieldCaption`` values of a ``query-datasource`` input."""
    query = tool_input.get("query")
    if not isinstance(query, dict) or not isinstance(query.get("fields"), list):
        return []
    return [
        f["fieldCaption"] for f in query["fields"]
        if isinstance(f, dict) and isinstance(f.get("fieldCaption"), str)
        and f["fieldCaption"].strip()
    ]


def typo_suggestions(tool_input: dict[str, Any], metadata: dict[str, Any]) -> list[str]:
    """One ``Field "X" not found. Did you mean: ...?`` line per unknown field."""
    available = [
        f["name"] for f in metadata.get("fields") or []
        if isinstance(f, dict) and isinstance(f.get("name"), str) and f["name"].strip()
    ]
    known = {normalize_string(name) for name in available}
    lines: list[str] = []
    for caption in field_captions(tool_input):
        if normalize_string(caption) in known:
            continue
        matches = suggest_similar_fields(caption, available)
        if matches:
            lines.append(f'Field "{caption}" not found. Did you mean: {", ".join(matches)}?')
    return lines


# ---------------------------------------------------------------------------
# Correction notes
# ---------------------------------------------------------------------------

@dataclass
class FieldCorrection:
    original_token: str
    token: str
    field_caption: str
    score: float


def tokenize(text: str) -> list[tuple[str, str]]:
    """``(original, normalized)`` word tokens of length >= 3, minus stop words."""
    tokens: list[tuple[str, str]] = []
    for part in _NON_WORD_RE.split(text or ""):
        for word in part.split():
            normalized = normalize_string(word)
            if len(normalized) >= 3 and normalized not in STOP_WORDS:
                tokens.append((word.strip(), normalized))
    return tokens


def detect_field_corrections(user_text: str, tool_calls: list[ToolCall]) -> list[FieldCorrection]:
    """Find user words the model silently mapped onto differently named fields."""
    if not isinstance(user_text, str) or not user_text.strip():
        return []

    captions: list[str] = []
    for call in tool_calls:
        if call.name == QUERY_DATASOURCE:
            captions.extend(field_captions(call.input))
    if not captions:
        return []

    normalized_text = normalize_string(user_text)
    tokens = tokenize(user_text)
    if not tokens:
        return []

    corrections: list[FieldCorrection] = []
    for caption in captions:
        if normalize_string(caption) in normalized_text:
            continue
        best: FieldCorrection | None = None
        for original, token in tokens:
            score = score_similarity(token, caption)
            threshold = 0.9 if len(token) <= 3 else 0.8
            if score >= threshold and (best is None or score > best.score):
                best = FieldCorrection(original, token, caption, score)
        if best is not None:
            corrections.append(best)

    corrections.sort(key=lambda c: c.score, reverse=True)
    unique: dict[tuple[str, str], FieldCorrection] = {}
    for c in corrections:
        unique.setdefault((c.token, c.field_caption), c)
    return list(unique.values())


def build_correction_note(corrections: list[FieldCorrection]) -> str | None:
    if not corrections:
        return None
    parts = [f'"{c.original_token}" as "{c.field_caption}"' for c in corrections]
    return f"\n\nNote: Interpreted {'; '.join(parts)}."
