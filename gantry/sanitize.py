"""Drop unusable tool calls and collapse duplicates."""

import logging

from .messages import ToolCall

logger = logging.getLogger(__name__)


def sanitize_tool_calls(calls: list[ToolCall]) -> list[ToolCall]:
    """Return *calls* without empty ids, blank names, or repeats.

    A call repeats another when it shares its id, or when it has the same
    name and arguments under a different id. The first occurrence wins and
    order is preserved, so sanitizing twice changes nothing.
    """
    seen_ids: set[str] = set()
    seen_sigs: set[str] = set()
    kept: list[ToolCall] = []
    for call in calls:
        if not call.id or not call.name or not call.name.strip():
            logger.debug("dropping tool call with missing id or name: %r", call)
            continue
        if call.id in seen_ids:
            logger.debug("dropping duplicate tool call id %s", call.id)
            continue
        sig = call.signature()
        if sig in seen_sigs:
            logger.debug("dropping repeated tool call %s", sig)
            continue
        seen_ids.add(call.id)
        seen_sigs.add(sig)
        kept.append(call)
    return kept
