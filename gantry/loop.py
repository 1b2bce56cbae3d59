"""The conversation loop: one user message in, one TurnOutcome out.

Each round sends the history to the model, recovers tool calls from the
reply, sorts them by approval policy, runs or confirms them, and appends
the results. ``step`` performs exactly one round and either returns None
(go around again) or the turn's terminal outcome.
"""

import dataclasses
import logging
import time
from collections.abc import Callable

from . import fmt
from .cancel import CancellationToken, iter_with_cancel
from .categorize import categorize
from .confirm import ConfirmationGateway, Decision
from .execute import ToolExecutor
from .extract import extract_tool_calls
from .messages import (
    SessionState,
    ToolCall,
    ToolEvent,
    ToolResult,
    TurnOutcome,
    TurnState,
    assistant_message,
    system_message,
    user_message,
)
from .model import ModelAdapter, classify_error
from .registry import ToolRegistry, format_tools_for_prompt
from .report import ModelAdapterError, ReportCollector, ToolUnsupportedError, TurnCancelled
from .sanitize import sanitize_tool_calls
from .tokens import context_warning, estimate_tokens

logger = logging.getLogger(__name__)

NUDGE_AFTER_TOOLS = "Please provide a summary or response based on the tool results above."
NUDGE_CONTINUE = "Please continue with the task."
EMPTY_RESPONSE_ERROR = (
    "Model returned empty response. The model may be struggling with this "
    "request; try rephrasing it or switching models."
)

CANCELLED_RESULT = "Tool execution was cancelled by the user."
DECLINED_RESULT = "Tool execution was declined by the user."
SKIPPED_RESULT = "Tool execution skipped by user."
SKIPPED_AFTER_DECLINE = "Tool execution skipped: an earlier tool call was declined."


def approval_unavailable_message(name: str) -> str:
    return (
        f"Tool approval required for: {name}. "
        "Confirmation is unavailable in non-interactive mode."
    )


class _Round:
    """Bookkeeping for the tool calls of one assistant message."""

    def __init__(self, state: TurnState, calls: list[ToolCall]):
        self.state = state
        self.calls = calls
        self.answered: set[str] = set()

    def append(self, result: ToolResult) -> None:
        self.state.messages.append(result.to_message())
        self.answered.add(result.tool_call_id)

    def unanswered(self) -> list[ToolCall]:
        return [c for c in self.calls if c.id not in self.answered]


class ConversationLoop:
    def __init__(
        self,
        adapter: ModelAdapter,
        registry: ToolRegistry,
        session: SessionState | None = None,
        gateway: ConfirmationGateway | None = None,
        *,
        system_prompt: str | None = None,
        non_interactive: bool = False,
        native_tools: bool = True,
        max_rounds: int = 100,
        max_nudges: int = 2,
        context_length: int | None = None,
        report: ReportCollector | None = None,
        on_event: Callable[[ToolEvent], None] | None = None,
        on_text: Callable[[str], None] | None = None,
        verbose: bool = False,
    ):
        self.adapter = adapter
        self.registry = registry
        self.session = session or SessionState()
        self.gateway = gateway
        self.system_prompt = system_prompt
        self.non_interactive = non_interactive
        self.native_tools = native_tools
        self.max_rounds = max_rounds
        self.max_nudges = max_nudges
        self.context_length = context_length
        self.report = report
        self.on_event = on_event
        self.on_text = on_text
        self.verbose = verbose
        self.executor = ToolExecutor(registry, on_event=self._tool_event)
        self._round_no = 0

    # -- public entry --------------------------------------------------------

    def run_turn(
        self,
        messages: list[dict],
        user_text: str | None = None,
        token: CancellationToken | None = None,
    ) -> TurnOutcome:
        """Drive one turn to completion. Mutates *messages* by appending only."""
        state = TurnState(
            messages=messages,
            token=token or CancellationToken(),
            retry_without_tools=not self.native_tools,
            non_interactive=self.non_interactive or self.gateway is None,
        )
        if user_text is not None:
            messages.append(user_message(user_text))

        outcome = None
        try:
            while outcome is None:
                outcome = self.step(state)
        finally:
            logger.debug(
                "turn ended: %s after %d rounds",
                outcome.status if outcome else "error",
                state.rounds,
            )
        outcome.rounds = state.rounds
        if self.verbose:
            fmt.completion(state.rounds, outcome.status)
        return outcome

    # -- one round -----------------------------------------------------------

    def step(self, state: TurnState) -> TurnOutcome | None:
        if state.token.cancelled:
            return TurnOutcome("cancelled", answer=state.last_text)
        if state.rounds >= self.max_rounds:
            return TurnOutcome("exhausted", answer=state.last_text)
        state.rounds += 1
        self._round_no = state.rounds

        try:
            text, structured = self._await_model(state)
        except TurnCancelled:
            logger.info("turn cancelled while waiting for the model")
            return TurnOutcome("cancelled", answer=state.last_text)
        except ToolUnsupportedError as e:
            if state.retry_without_tools:
                return TurnOutcome("failed", error=str(e), answer=state.last_text)
            logger.warning("tool calling unsupported, retrying without tools: %s", e)
            state.retry_without_tools = True
            if self.report:
                self.report.record_tool_retry(state.rounds, str(e))
            if self.verbose:
                fmt.retry_without_tools(str(e))
            return None
        except ModelAdapterError as e:
            return TurnOutcome("failed", error=str(e), answer=state.last_text)

        extraction = extract_tool_calls(
            text, structured, known_tools=set(self.registry.all_names())
        )
        calls = self._unique_ids(state, sanitize_tool_calls(extraction.tool_calls))

        if not calls:
            return self._without_calls(state, extraction.content)

        state.consecutive_nudges = 0
        if extraction.content:
            state.last_text = extraction.content
            if self.verbose:
                fmt.assistant_text(extraction.content)
        state.messages.append(assistant_message(extraction.content, calls))

        current = _Round(state, calls)
        try:
            return self._dispatch(state, current)
        except (TurnCancelled, KeyboardInterrupt, EOFError):
            logger.info("turn cancelled during tool handling")
            state.token.cancel("interrupted")
            self._close_round(current, "cancelled", CANCELLED_RESULT)
            return TurnOutcome("cancelled", answer=state.last_text)
        except Exception as e:
            logger.error("tool handling failed: %s", e)
            error = f"tool handling failed: {e}"
            self._close_round(current, "failed", f"error: {error}")
            return TurnOutcome("failed", error=error, answer=state.last_text)

    def _close_round(self, current: _Round, kind: str, content: str) -> None:
        for call in current.unanswered():
            result = ToolResult(call.id, call.name, content)
            current.append(result)
            self._tool_event(ToolEvent(kind, call, result))

    def _unique_ids(self, state: TurnState, calls: list[ToolCall]) -> list[ToolCall]:
        # Some servers reuse ids across responses; results must pair with one call.
        out = []
        for call in calls:
            if call.id in state.executed_ids:
                call = dataclasses.replace(call, id=f"{call.id}_{state.rounds}")
            state.executed_ids.add(call.id)
            out.append(call)
        return out

    def _without_calls(self, state: TurnState, text: str) -> TurnOutcome | None:
        if text.strip():
            state.messages.append(assistant_message(text))
            state.last_text = text
            return TurnOutcome("completed", answer=text)

        if state.consecutive_nudges >= self.max_nudges:
            logger.warning("model kept returning empty responses, giving up")
            return TurnOutcome("failed", error=EMPTY_RESPONSE_ERROR, answer=state.last_text)

        after_tool = bool(state.messages) and state.messages[-1].get("role") == "tool"
        nudge = NUDGE_AFTER_TOOLS if after_tool else NUDGE_CONTINUE
        state.messages.append(user_message(nudge))
        state.consecutive_nudges += 1
        if self.report:
            self.report.record_nudge(state.rounds, after_tool)
        if self.verbose:
            fmt.nudge(nudge)
        return None

    def _dispatch(self, state: TurnState, current: _Round) -> TurnOutcome | None:
        groups = categorize(
            current.calls, self.registry, self.session.mode, self.session.always_allowed
        )

        for rejection in groups.rejected:
            if rejection.kind == "blocked":
                logger.warning("plan mode blocked %s", rejection.call.name)
            current.append(rejection.result)
            self._tool_event(ToolEvent(rejection.kind, rejection.call, rejection.result))

        self.executor.run_batch(groups.execute_now, state.token, current.append)

        pending = groups.needs_confirmation
        if not pending:
            return None

        if state.non_interactive:
            for call in pending:
                result = ToolResult(call.id, call.name, approval_unavailable_message(call.name))
                current.append(result)
                self._tool_event(ToolEvent("unavailable", call, result))
            return TurnOutcome(
                "completed",
                answer=state.last_text,
                needs_approval=[c.name for c in pending],
            )

        for i, call in enumerate(pending):
            decision = self.gateway.request(call, state.token)
            if decision is Decision.ALWAYS_ALLOW:
                self.session.always_allowed.add(call.name)
            if decision in (Decision.APPROVE, Decision.ALWAYS_ALLOW):
                self.executor.run_batch([call], state.token, current.append)
            elif decision is Decision.SKIP:
                result = ToolResult(call.id, call.name, SKIPPED_RESULT)
                current.append(result)
                self._tool_event(ToolEvent("skipped", call, result))
            else:
                result = ToolResult(call.id, call.name, DECLINED_RESULT)
                current.append(result)
                self._tool_event(ToolEvent("declined", call, result))
                for rest in pending[i + 1 :]:
                    skipped = ToolResult(rest.id, rest.name, SKIPPED_AFTER_DECLINE)
                    current.append(skipped)
                    self._tool_event(ToolEvent("skipped", rest, skipped))
                return TurnOutcome("declined", answer=state.last_text)
        return None

    # -- model call ----------------------------------------------------------

    def build_request(self, state: TurnState) -> list[dict]:
        request = list(state.messages)
        system = self.system_prompt
        if request and request[0].get("role") == "system":
            system = request.pop(0)["content"]
        if state.retry_without_tools:
            system = (system or "") + format_tools_for_prompt(self.registry.schemas())
        if system:
            request.insert(0, system_message(system))
        return request

    def _await_model(self, state: TurnState) -> tuple[str, list]:
        request = self.build_request(state)
        tools = None if state.retry_without_tools else (self.registry.schemas() or None)

        token_est = estimate_tokens(request, tools)
        warning = context_warning(token_est, self.context_length)
        if self.verbose:
            fmt.round_header(
                state.rounds, self.max_rounds, token_est, without_tools=state.retry_without_tools
            )
            if warning:
                fmt.warning(warning)
        elif warning:
            logger.warning(warning)

        parts: list[str] = []
        structured: list = []
        finish_reason = None
        t0 = time.monotonic()
        try:
            stream = self.adapter.send(request, tools, state.token)
            for chunk in iter_with_cancel(stream, state.token):
                if chunk.text:
                    parts.append(chunk.text)
                    if self.on_text is not None:
                        self.on_text(chunk.text)
                if chunk.tool_calls:
                    structured.extend(chunk.tool_calls)
                if chunk.final:
                    finish_reason = chunk.finish_reason
        except (TurnCancelled, ModelAdapterError):
            raise
        except Exception as e:
            raise classify_error(e) from e
        finally:
            elapsed = time.monotonic() - t0
            if self.report:
                self.report.record_llm_call(
                    state.rounds,
                    elapsed,
                    token_est,
                    finish_reason or "error",
                    without_tools=state.retry_without_tools,
                )

        if self.verbose:
            fmt.llm_timing(elapsed, finish_reason or "stop")
        return "".join(parts), structured

    # -- notifications -------------------------------------------------------

    def _tool_event(self, event: ToolEvent) -> None:
        if self.report:
            self.report.record_tool_call(
                self._round_no,
                event.call.name,
                event.call.arguments,
                event.kind,
                event.elapsed,
                len(event.result.content),
            )
        if self.verbose:
            fmt.tool_event(event)
        if self.on_event is not None:
            self.on_event(event)
