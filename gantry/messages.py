"""Conversation records: messages, tool calls, tool results, turn state."""

import enum
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from .cancel import CancellationToken

# Reserved tool name carrying a parse error for malformed tool-call text.
MALFORMED_TOOL_NAME = "__xml_validation_error__"


def new_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _decode_arguments(raw: Any) -> Any:
    """Decode a JSON-string argument payload; anything else is passed through.

    An undecodable string is returned unchanged so the executor can report
    it as invalid input instead of the extractor dropping the call.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    @classmethod
    def from_any(cls, obj: Any) -> "ToolCall":
        """Build a ToolCall from a litellm object, an OpenAI-style dict or a ToolCall.

        Missing ids get a generated ``call_<hex>`` id.
        """
        if isinstance(obj, ToolCall):
            return obj
        if isinstance(obj, dict):
            fn = obj.get("function") or {}
            call_id = obj.get("id")
            name = fn.get("name", obj.get("name"))
            raw = fn.get("arguments", obj.get("arguments"))
        else:
            fn = getattr(obj, "function", None)
            call_id = getattr(obj, "id", None)
            name = getattr(fn, "name", None) if fn is not None else None
            raw = getattr(fn, "arguments", None) if fn is not None else None
        return cls(
            id=call_id or new_call_id(),
            name=name or "",
            arguments=_decode_arguments(raw),
        )

    def arguments_json(self) -> str:
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments)

    def signature(self) -> str:
        """Identity of the call by what it does, ignoring its id."""
        return self.name + ":" + json.dumps(self.arguments, sort_keys=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json()},
        }


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    name: str
    content: str

    def to_message(self) -> dict:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
        }


@dataclass(frozen=True)
class ToolEvent:
    """Display notification for a tool call that was executed or rejected."""

    kind: str
    call: ToolCall
    result: ToolResult
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.kind == "executed"


class OperatingMode(enum.Enum):
    NORMAL = "normal"
    AUTO_ACCEPT = "auto-accept"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: "str | OperatingMode") -> "OperatingMode":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        if key == "autoaccept":
            key = "auto-accept"
        for mode in cls:
            if mode.value == key:
                return mode
        raise ValueError(
            f"unknown mode {value!r} (expected normal, auto-accept or plan)"
        )


@dataclass
class SessionState:
    """Settings that outlive a turn. The loop reads the mode and may grow the allow-set."""

    mode: OperatingMode = OperatingMode.NORMAL
    always_allowed: set[str] = field(default_factory=set)


def system_message(content: str) -> dict:
    return {"role": "system", "content": content}


def user_message(content: str) -> dict:
    return {"role": "user", "content": content}


def assistant_message(content: str, tool_calls: list[ToolCall] | None = None) -> dict:
    msg: dict = {"role": "assistant", "content": content}
    if tool_calls:
        msg["tool_calls"] = [tc.to_dict() for tc in tool_calls]
    return msg


@dataclass
class TurnState:
    """Mutable state for one user message; owned by the conversation loop."""

    messages: list[dict]
    token: CancellationToken
    retry_without_tools: bool = False
    non_interactive: bool = False
    rounds: int = 0
    consecutive_nudges: int = 0
    executed_ids: set[str] = field(default_factory=set)
    last_text: str | None = None


@dataclass
class TurnOutcome:
    """Terminal result of a turn. Produced exactly once per turn."""

    status: str  # completed | cancelled | declined | failed | exhausted
    answer: str | None = None
    error: str | None = None
    rounds: int = 0
    needs_approval: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed" and not self.needs_approval
