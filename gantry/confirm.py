"""Human approval for tool calls: decisions, gateways and the terminal prompt."""

import enum
import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable

from . import fmt
from .cancel import CancellationToken, Failure, wait_for_reply
from .messages import ToolCall
from .report import TurnCancelled

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    APPROVE = "approve"
    DECLINE = "decline"
    SKIP = "skip"
    ALWAYS_ALLOW = "always"


_ANSWERS = {
    "y": Decision.APPROVE,
    "yes": Decision.APPROVE,
    "n": Decision.DECLINE,
    "no": Decision.DECLINE,
    "s": Decision.SKIP,
    "skip": Decision.SKIP,
    "a": Decision.ALWAYS_ALLOW,
    "always": Decision.ALWAYS_ALLOW,
}


def parse_decision(answer: str) -> Decision:
    try:
        return _ANSWERS[answer.strip().lower()]
    except KeyError:
        raise ValueError(f"unrecognized answer {answer!r}") from None


class ConfirmationGateway(ABC):
    """Asks whether a single tool call may run."""

    @abstractmethod
    def request(self, call: ToolCall, token: CancellationToken) -> Decision:
        """Return the user's decision, or raise TurnCancelled if *token* fires."""


class ChannelGateway(ConfirmationGateway):
    """Runs *responder* on a helper thread and waits for its reply.

    Meant for responders that live outside the terminal (a GUI, a web
    request). The wait polls the turn's token, so cancelling the turn
    resolves a pending request immediately; a late reply is dropped with
    its queue.
    """

    def __init__(self, responder: Callable[[ToolCall], Decision]):
        self.responder = responder

    def request(self, call: ToolCall, token: CancellationToken) -> Decision:
        replies: queue.Queue = queue.Queue(maxsize=1)

        def _ask():
            try:
                replies.put(self.responder(call))
            except BaseException as e:
                replies.put(Failure(e))

        threading.Thread(target=_ask, daemon=True, name="confirm").start()
        decision = wait_for_reply(replies, token)
        logger.debug("confirmation for %s: %s", call.name, decision)
        return decision


class InlineGateway(ConfirmationGateway):
    """Calls *responder* on the turn's own thread.

    Used for terminal prompts, so no reader is left holding stdin once the
    turn ends. Ctrl-C or end of input at the prompt cancels the turn.
    """

    def __init__(self, responder: Callable[[ToolCall], Decision]):
        self.responder = responder

    def request(self, call: ToolCall, token: CancellationToken) -> Decision:
        token.raise_if_cancelled()
        try:
            decision = self.responder(call)
        except (KeyboardInterrupt, EOFError):
            token.cancel("confirmation interrupted")
            raise TurnCancelled("confirmation interrupted") from None
        token.raise_if_cancelled()
        logger.debug("confirmation for %s: %s", call.name, decision)
        return decision


class ScriptedGateway(ConfirmationGateway):
    """Replays a fixed sequence of decisions, then repeats *default*."""

    def __init__(self, decisions: Iterable[Decision], default: Decision = Decision.DECLINE):
        self._decisions = list(decisions)
        self.default = default
        self.requested: list[ToolCall] = []

    def request(self, call: ToolCall, token: CancellationToken) -> Decision:
        token.raise_if_cancelled()
        self.requested.append(call)
        if self._decisions:
            return self._decisions.pop(0)
        return self.default


CONFIRM_PROMPT = "  Run this tool? [y]es / [n]o / [s]kip / [a]lways (y): "


def _read_answer(message: str) -> str:
    from prompt_toolkit import prompt

    return prompt(message)


def console_responder(call: ToolCall) -> Decision:
    """Show the call on stderr and read y/n/s/a from the terminal; empty means yes."""
    fmt.tool_call(call.name, call.arguments_json())
    while True:
        answer = _read_answer(CONFIRM_PROMPT).strip() or "y"
        try:
            return parse_decision(answer)
        except ValueError:
            fmt.warning(f"unrecognized answer {answer!r}; type y, n, s or a")


def console_gateway() -> InlineGateway:
    return InlineGateway(console_responder)
