"""Orchestration engine: the multi-round tool-calling loop.

    reasoning -> tool calls found -> execute -> reasoning -> ...
    reasoning -> no tool calls -> answer (second stream) -> complete

The engine owns the transcript of one run exclusively.  Rounds and the
tool calls inside a round are strictly sequential.  Tool failures are fed
back to the model as error results; model failures end the run.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Protocol

from vizql_harness.config import DefaultsSpec, EngineSpec
from vizql_harness.core.citations import Citation, extract_citations
from vizql_harness.core.clarification import Clarifier, HeuristicClarifier
from vizql_harness.core.context import ContextProvider, ContextSnapshot
from vizql_harness.core.error_mapping import UserFacingError, log_error, map_error
from vizql_harness.core.fields import build_correction_note, detect_field_corrections
from vizql_harness.core.formatting import (
    summarize_result,
    system_message,
    tool_result_message,
    tool_use_message,
    user_message,
)
from vizql_harness.core.history import ConversationState, ConversationStore
from vizql_harness.errors import (
    HarnessError,
    InvalidInputError,
    ModelGatewayError,
    OrchestrationError,
    RoundBudgetExceeded,
)
from vizql_harness.events.bus import ProgressEmitter
from vizql_harness.llm.accumulator import collect_tool_calls, relay_answer
from vizql_harness.mcp.client import ToolServiceClient
from vizql_harness.tools.definitions import tool_schemas
from vizql_harness.tools.dispatch import ToolDispatcher
from vizql_harness.types import (
    ROLE_ASSISTANT,
    ROLE_USER,
    EventType,
    ProgressEvent,
    ToolCall,
    ToolResult,
    utc_timestamp,
)

_logger = logging.getLogger(__name__)

REASONING_MESSAGE = "LLM is reasoning about the query"
ANSWER_MESSAGE = "LLM is generating answer"
PARTIAL_ANSWER_MESSAGE = "Max iterations reached, attempting to get partial answer"


class StreamingModel(Protocol):
    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        ...


@dataclass
class _Run:
    """Mutable state of one orchestration run."""

    user_text: str
    max_rounds: int
    emitter: ProgressEmitter
    tools: list[dict[str, Any]]
    locked_luid: str | None
    messages: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    snapshot: ContextSnapshot | None = None
    session: ConversationState | None = None


class OrchestrationEngine:
    """Drive model rounds and tool calls until an answer emerges.

    Parameters
    ----------
    model_client:
        Anything with an async-generator ``stream(messages, tools)``.
    tool_client:
        Session-holding tool service client.
    config:
        Round bound, result caps, history window and clarification policy.
    defaults:
        Default datasource used when a run names none.
    context_provider:
        Supplies the system message describing the locked datasource.
    history:
        Conversation store; consulted only when a run has a session id.
    clarifier:
        Pre-flight check that may answer with a question instead.  When
        omitted and ``config.clarify`` is set, a :class:`HeuristicClarifier`
        is used.
    """

    def __init__(
        self,
        model_client: StreamingModel,
        tool_client: ToolServiceClient,
        *,
        config: EngineSpec | None = None,
        defaults: DefaultsSpec | None = None,
        context_provider: ContextProvider | None = None,
        history: ConversationStore | None = None,
        clarifier: Clarifier | None = None,
    ) -> None:
        self._model = model_client
        self._config = config or EngineSpec()
        self._defaults = defaults or DefaultsSpec()
        self._context = context_provider
        self._history = history
        if clarifier is None and self._config.clarify:
            clarifier = HeuristicClarifier(check_time_range=self._config.clarify_time_range)
        self._clarifier = clarifier
        self._dispatcher = ToolDispatcher(
            tool_client,
            max_rows=self._config.max_query_rows,
            max_bytes=self._config.max_result_bytes,
        )

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    async def execute(
        self,
        user_text: str,
        target_resource_id: str | None = None,
        max_rounds: int | None = None,
        progress: ProgressEmitter | None = None,
        *,
        workbook_id: str | None = None,
        view_id: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """Answer *user_text*, pushing progress events into *progress*.

        Returns
        -------
        str
            The final answer (or a clarification question).

        Raises
        ------
        InvalidInputError
            For an empty question or a round bound below 1.
        OrchestrationError
            When no answer can be produced.
        """
        if not isinstance(user_text, str) or not user_text.strip():
            raise InvalidInputError("User message must be a non-empty string")
        rounds = self._config.max_rounds if max_rounds is None else max_rounds
        if isinstance(rounds, bool) or not isinstance(rounds, int) or rounds < 1:
            raise InvalidInputError(f"max_rounds must be an integer >= 1, got {rounds!r}")

        text = user_text.strip()
        target = (target_resource_id or "").strip() or self._defaults.datasource_luid or None
        emitter = progress or ProgressEmitter()
        run = _Run(
            user_text=text,
            max_rounds=rounds,
            emitter=emitter,
            tools=tool_schemas(locked=bool(target)),
            locked_luid=target,
        )

        try:
            return await self._execute(run, workbook_id, view_id, session_id)
        except asyncio.CancelledError:
            _logger.info("Orchestration cancelled; closing progress stream")
            emitter.close()
            raise

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: _Run,
        workbook_id: str | None,
        view_id: str | None,
        session_id: str | None,
    ) -> str:
        if session_id and self._history is not None:
            run.session = self._history.get_or_create(
                session_id,
                datasource_luid=run.locked_luid,
                workbook_id=workbook_id,
                view_id=view_id,
            )

        question = self._clarify(run)
        if question is not None:
            return await self._ask_back(run, question)

        if run.session is not None:
            self._history.add_message(run.session.session_id, ROLE_USER, run.user_text)

        await self._build_transcript(run, workbook_id, view_id)

        for iteration in range(1, run.max_rounds + 1):
            _logger.info("Round %d/%d", iteration, run.max_rounds)
            await self._emit(run, EventType.REASONING_STARTED, {
                "message": REASONING_MESSAGE,
                "timestamp": utc_timestamp(),
                "iteration": iteration,
            })

            tool_calls = await self._discover_tool_calls(run)
            if not tool_calls:
                return await self._answer(run)

            results = await self._execute_tools(run, tool_calls, iteration)
            run.messages.append(tool_use_message(tool_calls))
            run.messages.append(tool_result_message(results))

        budget = RoundBudgetExceeded(run.max_rounds)
        _logger.warning("%s without a final answer; attempting partial answer", budget)
        return await self._answer(run, budget=budget)

    def _clarify(self, run: _Run) -> str | None:
        if self._clarifier is None:
            return None
        state = run.session or ConversationState(session_id="", datasource_luid=run.locked_luid)
        result = self._clarifier.check(run.user_text, state)
        if not result.needed:
            return None
        _logger.info("Clarification needed (%s)", result.reason)
        return result.question

    async def _ask_back(self, run: _Run, question: str) -> str:
        await self._emit(run, EventType.ANSWER_STARTED, {
            "message": ANSWER_MESSAGE,
            "timestamp": utc_timestamp(),
        })
        await self._emit(run, EventType.ANSWER_CHUNK, {
            "text": question,
            "timestamp": utc_timestamp(),
        })
        await self._emit(run, EventType.ANSWER_COMPLETED, {
            "text": question,
            "timestamp": utc_timestamp(),
        })
        self._record(run, question, include_user=True)
        return question

    async def _build_transcript(
        self, run: _Run, workbook_id: str | None, view_id: str | None,
    ) -> None:
        if run.locked_luid and self._context is not None:
            try:
                run.snapshot = await self._context.resolve(run.locked_luid, workbook_id, view_id)
            except HarnessError as e:
                _logger.warning("Context unavailable, continuing without it: %s", e)
            else:
                run.messages.append(system_message(run.snapshot.text))

        if run.session is not None:
            prior = self._history.recent(run.session.session_id, self._config.history_limit)
            if prior and prior[-1]["role"] == ROLE_USER and prior[-1]["content"] == run.user_text:
                prior = prior[:-1]
            run.messages.extend(prior)

        run.messages.append(user_message(run.user_text))

    async def _discover_tool_calls(self, run: _Run) -> list[ToolCall]:
        """First pass of a round: drain the stream for tool calls only."""
        try:
            async with aclosing(self._model.stream(run.messages, run.tools)) as fragments:
                return await collect_tool_calls(fragments)
        except (ModelGatewayError, InvalidInputError) as e:
            raise await self._fail(run, e, "OrchestrationEngine.LLM", "LLM request failed") from e
        except (ValueError, TypeError, KeyError) as e:
            _logger.error("Failed to parse tool calls, treating as none: %s", e)
            return []

    async def _execute_tools(
        self, run: _Run, tool_calls: list[ToolCall], iteration: int,
    ) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in tool_calls:
            await self._emit(run, EventType.TOOL_CALL_STARTED, {
                "tool": call.name,
                "parameters": call.input,
                "timestamp": utc_timestamp(),
                "iteration": iteration,
            }, event_id=call.id)

            result = await self._dispatcher.dispatch(call, run.locked_luid)
            results.append(result)
            run.tool_calls.append(call)
            run.tool_results.append(result)

            await self._emit(run, EventType.TOOL_CALL_COMPLETED, {
                "tool": call.name,
                "result": summarize_result(result),
                "timestamp": utc_timestamp(),
                "iteration": iteration,
            }, event_id=call.id)
        return results

    async def _answer(self, run: _Run, budget: RoundBudgetExceeded | None = None) -> str:
        """Second pass: stream the settled answer to the caller."""
        await self._emit(run, EventType.ANSWER_STARTED, {
            "message": PARTIAL_ANSWER_MESSAGE if budget else ANSWER_MESSAGE,
            "timestamp": utc_timestamp(),
        })

        async def _chunk(text: str) -> None:
            await self._emit(run, EventType.ANSWER_CHUNK, {
                "text": text,
                "timestamp": utc_timestamp(),
            })

        try:
            async with aclosing(self._model.stream(run.messages, run.tools)) as fragments:
                answer = await relay_answer(fragments, _chunk)
        except (ModelGatewayError, InvalidInputError) as e:
            if budget is not None:
                raise await self._fail(
                    run, e, "OrchestrationEngine.MaxIterations",
                    f"{budget} and failed to get answer",
                    event_prefix=f"{budget}.",
                ) from e
            raise await self._fail(run, e, "OrchestrationEngine.Answer", "Failed to get answer") from e

        note = build_correction_note(detect_field_corrections(run.user_text, run.tool_calls))
        if note:
            await _chunk(note)
            answer += note

        data: dict[str, Any] = {"text": answer, "timestamp": utc_timestamp()}
        citations = self._citations(run)
        if citations:
            data["citations"] = [c.to_dict() for c in citations]
        await self._emit(run, EventType.ANSWER_COMPLETED, data)

        self._record(run, answer)
        return answer

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _citations(self, run: _Run) -> list[Citation]:
        snapshot = run.snapshot
        try:
            return extract_citations(
                run.tool_calls,
                run.tool_results,
                datasource_name=snapshot.datasource_name if snapshot else None,
                workbook=snapshot.workbook if snapshot else None,
                view=snapshot.view if snapshot else None,
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            _logger.warning("Citation extraction failed, answering without citations: %s", e)
            return []

    def _record(self, run: _Run, answer: str, include_user: bool = False) -> None:
        if run.session is None or self._history is None:
            return
        sid = run.session.session_id
        if include_user:
            self._history.add_message(sid, ROLE_USER, run.user_text)
        self._history.add_message(sid, ROLE_ASSISTANT, answer)

    async def _fail(
        self,
        run: _Run,
        error: BaseException,
        context: str,
        summary: str,
        event_prefix: str | None = None,
    ) -> OrchestrationError:
        """Report a terminal failure and build the exception to raise."""
        mapped: UserFacingError = map_error(error)
        log_error(mapped, context, error)
        data = mapped.to_event_data()
        if event_prefix:
            data["message"] = f"{event_prefix} {mapped.message}"
        data["timestamp"] = utc_timestamp()
        await self._emit(run, EventType.ERROR, data)
        return OrchestrationError(f"{summary}: {mapped.message}", user_error=mapped)

    @staticmethod
    async def _emit(
        run: _Run,
        event_type: EventType,
        data: dict[str, Any],
        event_id: str | None = None,
    ) -> None:
        await run.emitter.emit(ProgressEvent(type=event_type, data=data, id=event_id))
