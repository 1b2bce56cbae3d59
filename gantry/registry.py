"""Tool descriptors and the registry the conversation loop consults."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaticApproval:
    value: bool


@dataclass(frozen=True)
class PredicateApproval:
    fn: Callable[[Any], bool]


@dataclass(frozen=True)
class Validation:
    valid: bool
    error: str | None = None


def _coerce_validation(raw) -> Validation:
    if isinstance(raw, Validation):
        return raw
    if isinstance(raw, dict):
        return Validation(bool(raw.get("valid")), raw.get("error"))
    if isinstance(raw, tuple):
        return Validation(bool(raw[0]), raw[1] if len(raw) > 1 else None)
    return Validation(bool(raw))


@dataclass(frozen=True)
class ToolDescriptor:
    """Capability record for one tool.

    ``executor`` is called as ``executor(args, cancel=token)`` and returns the
    result text. ``mutates_files`` marks tools that plan mode must block;
    ``runs_commands`` marks tools that still need confirmation in
    auto-accept mode.
    """

    name: str
    executor: Callable[..., str]
    approval: StaticApproval | PredicateApproval = StaticApproval(True)
    validator: Callable[[Any], Any] | None = None
    mutates_files: bool = False
    runs_commands: bool = False
    schema: dict | None = None

    def needs_approval(self, args) -> bool:
        if isinstance(self.approval, StaticApproval):
            return self.approval.value
        try:
            return bool(self.approval.fn(args))
        except Exception:
            logger.debug("approval predicate for %s raised", self.name, exc_info=True)
            return True

    def validate(self, args) -> Validation:
        if self.validator is None:
            return Validation(True)
        try:
            return _coerce_validation(self.validator(args))
        except Exception as e:
            return Validation(False, f"validation failed: {e}")

    def execute(self, args, cancel=None) -> str:
        return self.executor(args, cancel=cancel)


class ToolRegistry:
    """Name -> ToolDescriptor map, passed explicitly into the conversation loop."""

    def __init__(self, descriptors: list[ToolDescriptor] | None = None):
        self._tools: dict[str, ToolDescriptor] = {}
        for d in descriptors or []:
            self.register(d)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            logger.debug("replacing tool %s", descriptor.name)
        self._tools[descriptor.name] = descriptor

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def lookup(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def all_names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [d.schema for d in self._tools.values() if d.schema is not None]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def format_tools_for_prompt(schemas: list[dict]) -> str:
    """Describe tools as XML calling instructions for a system prompt.

    Used when a request goes out without native tool definitions.
    """
    if not schemas:
        return ""

    parts = [
        "\n\n## AVAILABLE TOOLS\n\n",
        "You have access to the following tools. To use a tool, output an XML "
        "block in this exact format:\n\n",
        "```xml\n<tool_name>\n<param1>value1</param1>\n<param2>value2</param2>\n"
        "</tool_name>\n```\n\n",
        "IMPORTANT:\n",
        "- Use the exact tool name as the outer XML tag\n",
        "- Each parameter should be its own XML tag inside\n",
        "- Do NOT use attributes like <function=name> or <parameter=name>\n",
        "- You may call multiple tools in sequence\n\n",
    ]

    for schema in schemas:
        fn = schema.get("function", schema)
        name = fn["name"]
        parts.append(f"### {name}\n\n")
        if fn.get("description"):
            parts.append(f"{fn['description']}\n\n")
        params = fn.get("parameters") or {}
        props = params.get("properties") or {}
        if not props:
            continue
        required = params.get("required") or []
        parts.append("**Parameters:**\n")
        for pname, pschema in props.items():
            req = "(required)" if pname in required else "(optional)"
            ptype = pschema.get("type", "any")
            parts.append(f"- `{pname}` ({ptype}) {req}: {pschema.get('description', '')}\n")
        parts.append("\n**Example:**\n```xml\n")
        parts.append(f"<{name}>\n")
        for pname in required[:2]:
            parts.append(f"<{pname}>value</{pname}>\n")
        parts.append(f"</{name}>\n```\n\n")

    return "".join(parts)
