"""Sequential execution of tool calls against the registry."""

import logging
import time
from collections.abc import Callable

from .cancel import CancellationToken
from .messages import ToolCall, ToolEvent, ToolResult
from .registry import ToolRegistry
from .report import TurnCancelled

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000


def _is_error(content: str) -> bool:
    return content.startswith("error:")


class ToolExecutor:
    """Runs tool calls one at a time and reports each result as it lands.

    Per-call failures (bad arguments, validator rejection, exceptions) become
    ``error: ...`` results and never stop the batch. Cancellation does.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        on_event: Callable[[ToolEvent], None] | None = None,
    ):
        self.registry = registry
        self.on_event = on_event

    def _emit(self, kind: str, call: ToolCall, result: ToolResult, elapsed: float = 0.0):
        if self.on_event is not None:
            self.on_event(ToolEvent(kind, call, result, elapsed))

    def run_one(self, call: ToolCall, token: CancellationToken) -> ToolResult:
        token.raise_if_cancelled()

        tool = self.registry.lookup(call.name)
        if tool is None:
            # The categorizer filters these; a registry change mid-turn can still get here.
            result = ToolResult(call.id, call.name, f"error: unknown tool: {call.name}")
            self._emit("unknown", call, result)
            return result

        if not isinstance(call.arguments, dict):
            shown = repr(call.arguments)[:MAX_ARG_LOG]
            result = ToolResult(
                call.id,
                call.name,
                f"error: invalid JSON in tool arguments: expected an object, got {shown}",
            )
            self._emit("invalid", call, result)
            return result

        check = tool.validate(call.arguments)
        if not check.valid:
            msg = check.error or "invalid arguments"
            if not _is_error(msg):
                msg = f"error: {msg}"
            result = ToolResult(call.id, call.name, msg)
            logger.info("tool %s rejected by validator: %s", call.name, msg)
            self._emit("invalid", call, result)
            return result

        t0 = time.monotonic()
        try:
            content = tool.execute(call.arguments, cancel=token)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.debug("tool %s raised", call.name, exc_info=True)
            content = f"error: {e}"
        elapsed = time.monotonic() - t0

        if token.cancelled:
            logger.info("discarding result of %s: turn was cancelled", call.name)
            token.raise_if_cancelled()

        if not isinstance(content, str):
            content = str(content)
        result = ToolResult(call.id, call.name, content)
        self._emit("failed" if _is_error(content) else "executed", call, result, elapsed)
        return result

    def run_batch(
        self,
        calls: list[ToolCall],
        token: CancellationToken,
        append: Callable[[ToolResult], None],
    ) -> list[ToolResult]:
        """Run *calls* in order, handing each result to *append* immediately."""
        results = []
        for call in calls:
            result = self.run_one(call, token)
            append(result)
            results.append(result)
        return results
