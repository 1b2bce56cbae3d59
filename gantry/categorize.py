"""Split tool calls into execute-now, needs-confirmation, and rejected."""

from collections.abc import Collection
from dataclasses import dataclass, field

from .messages import MALFORMED_TOOL_NAME, OperatingMode, ToolCall, ToolResult
from .registry import ToolRegistry


@dataclass
class Rejection:
    call: ToolCall
    result: ToolResult
    kind: str  # malformed | unknown | blocked


@dataclass
class Categorized:
    execute_now: list[ToolCall] = field(default_factory=list)
    needs_confirmation: list[ToolCall] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)


def unknown_tool_message(name: str, available: list[str]) -> str:
    if available:
        return f'Tool "{name}" does not exist. Available tools: {", ".join(available)}'
    return f'Tool "{name}" does not exist and no tools are currently loaded.'


def plan_mode_message(name: str) -> str:
    return (
        f'Tool "{name}" is not allowed in Plan Mode. File modification tools are '
        "restricted in this mode. Switch to Normal Mode or Auto-accept Mode to "
        "execute file modifications."
    )


def categorize(
    calls: list[ToolCall],
    registry: ToolRegistry,
    mode: OperatingMode,
    always_allowed: Collection[str] = (),
) -> Categorized:
    out = Categorized()
    for call in calls:
        if call.name == MALFORMED_TOOL_NAME:
            error = call.arguments.get("error", "") if isinstance(call.arguments, dict) else ""
            out.rejected.append(
                Rejection(call, ToolResult(call.id, call.name, str(error)), "malformed")
            )
            continue

        tool = registry.lookup(call.name)
        if tool is None:
            msg = unknown_tool_message(call.name, registry.all_names())
            out.rejected.append(Rejection(call, ToolResult(call.id, call.name, msg), "unknown"))
            continue

        if mode is OperatingMode.PLAN and tool.mutates_files:
            out.rejected.append(
                Rejection(
                    call,
                    ToolResult(call.id, call.name, plan_mode_message(call.name)),
                    "blocked",
                )
            )
            continue

        if call.name in always_allowed or not tool.needs_approval(call.arguments):
            out.execute_now.append(call)
        elif mode is OperatingMode.AUTO_ACCEPT and not tool.runs_commands:
            out.execute_now.append(call)
        elif not isinstance(call.arguments, dict) or not tool.validate(call.arguments).valid:
            # Invalid input is reported by the executor without asking anyone.
            out.execute_now.append(call)
        else:
            out.needs_confirmation.append(call)
    return out
