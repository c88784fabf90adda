"""Pre-flight clarification heuristics.

A clarifier may short-circuit a run before the first round when the
question cannot be answered without more input.  The time-range checks
are policy: with ``check_time_range=False`` the model is left to infer
temporal scope from datasource metadata.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, Sequence

from vizql_harness.core.history import ConversationState

QUESTION_PREFIX = "I need a bit more information to answer your question:"

_TIME_RANGE_RE = re.compile(
    r"\b(\d+\s*(month|quarter|year|day|week)s?|past\s+\d+|last\s+\d+|since\s+\d{4}|\d{4})\b",
    re.IGNORECASE,
)
_GRANULARITY_RE = re.compile(
    r"\b(daily|monthly|quarterly|yearly|weekly|by\s+(day|month|quarter|year|week))\b",
    re.IGNORECASE,
)
_PRONOUN_RE = re.compile(r"\b(that|it|this|those|these)\b", re.IGNORECASE)
_COMPARE_RE = re.compile(r"\b(compare|comparison|vs|versus|compared to)\b", re.IGNORECASE)
_BASELINE_RE = re.compile(r"\b(to|with|against|between)\b", re.IGNORECASE)
_TREND_RE = re.compile(
    r"\b(trend|over time|over the|historical|past|recent|last|since|during)\b", re.IGNORECASE,
)
_DATA_QUESTION_RE = re.compile(
    r"\b(show|display|list|get|find|what are|which|how many|how much)\b", re.IGNORECASE,
)
_METRIC_WORDS_RE = re.compile(
    r"\b(sales|revenue|profit|quantity|count|total|average|sum)\b"
    r"|\b(field|metric|measure|dimension)\b",
    re.IGNORECASE,
)

_BULLETS = {
    "pronoun_followup_no_metric": "What metric or data would you like me to compare or analyze?",
    "missing_comparison_baseline": (
        "What would you like me to compare this to? "
        "(e.g., 'compare to last year', 'compare to Q1 2024')"
    ),
    "missing_time_range": (
        "What time period would you like to see? "
        "(e.g., 'last month', 'Q1 2024', 'past 6 months')"
    ),
    "missing_time_granularity": (
        "What time granularity would you like? (e.g., daily, monthly, quarterly, yearly)"
    ),
    "missing_datasource_context": (
        "Which datasource would you like me to query? (You can select a datasource "
        "from the dropdown or specify it in your question.)"
    ),
}
_DEFAULT_BULLET = "Could you provide more details about what you're looking for?"


@dataclass
class Clarification:
    needed: bool
    question: str | None = None
    reason: str | None = None


class Clarifier(Protocol):
    def check(self, user_text: str, state: ConversationState | None) -> Clarification:
        ...


def detect_temporal_phrase(text: str) -> str | None:
    """``"time_range"``, ``"time_granularity"`` or *None*."""
    if _TIME_RANGE_RE.search(text):
        return "time_range"
    if _GRANULARITY_RE.search(text):
        return "time_granularity"
    return None


def build_question(reason: str, hint_label: str | None = None, hints: Sequence[str] = ()) -> str:
    question = f"{QUESTION_PREFIX}\n• {_BULLETS.get(reason, _DEFAULT_BULLET)}"
    if hint_label and hints:
        question += f"\n  {hint_label}: {', '.join(hints[:3])}"
    return question


def _ask(reason: str, hint_label: str | None = None, hints: Sequence[str] = ()) -> Clarification:
    return Clarification(True, build_question(reason, hint_label, hints), reason)


class HeuristicClarifier:
    """Pattern-based clarification check.

    Parameters
    ----------
    check_time_range:
        Ask for a missing time range or granularity on trend questions.
    metric_fields, time_fields:
        Optional field names from datasource metadata, used both to detect
        prior metrics and as suggestions in the question.
    """

    def __init__(
        self,
        check_time_range: bool = False,
        metric_fields: Sequence[str] = (),
        time_fields: Sequence[str] = (),
    ) -> None:
        self.check_time_range = check_time_range
        self.metric_fields = list(metric_fields)
        self.time_fields = list(time_fields)

    def check(self, user_text: str, state: ConversationState | None = None) -> Clarification:
        history = state.messages if state is not None else []
        recent = history[-4:]

        if _PRONOUN_RE.search(user_text) or _COMPARE_RE.search(user_text):
            if not self._has_prior_metric(recent):
                return _ask(
                    "pronoun_followup_no_metric",
                    "Available metrics include", self.metric_fields,
                )

        if _COMPARE_RE.search(user_text) and not _BASELINE_RE.search(user_text):
            return _ask("missing_comparison_baseline")

        if self.check_time_range and _TREND_RE.search(user_text):
            temporal = detect_temporal_phrase(user_text)
            if temporal is None:
                return _ask("missing_time_range", "Available time fields include", self.time_fields)
            if temporal != "time_granularity":
                return _ask(
                    "missing_time_granularity", "Available time fields include", self.time_fields,
                )

        has_datasource = state is not None and bool(state.datasource_luid)
        if _DATA_QUESTION_RE.search(user_text) and not has_datasource and not history:
            return _ask("missing_datasource_context")

        return Clarification(False)

    def _has_prior_metric(self, recent: list[dict[str, str]]) -> bool:
        if self.metric_fields:
            metrics = [m.lower() for m in self.metric_fields]
            return any(
                metric in msg["content"].lower() for msg in recent for metric in metrics
            )
        return any(_METRIC_WORDS_RE.search(msg["content"]) for msg in recent)
