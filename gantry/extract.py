"""Recover tool calls from a model response.

Structured calls reported by the provider come first. The response text is
then scanned for calls written out as XML-like tags, for whole-message JSON
calls, and for malformed variants of either. A malformed response is
replaced by a single synthetic call carrying the parse error, so the model
sees what went wrong and the broken fragment is never shown as an answer.
"""

import json
import logging
import re
from collections.abc import Collection
from dataclasses import dataclass, field

from .messages import MALFORMED_TOOL_NAME, ToolCall, new_call_id

logger = logging.getLogger(__name__)

_TAG_BLOCK_RE = re.compile(r"<(\w+)>(.*?)</\1>", re.DOTALL)
_OPEN_TAG_RE = re.compile(r"<(\w+)>")
_ATTR_TAG_RE = re.compile(r"</?\w+=")
_WRAPPER_RE = re.compile(r"</?tool_call>")
_FENCE_RE = re.compile(r"```(?:\w+)?\s*\n?([\s\S]*?)\n?```")
_WHOLE_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$")

HTML_TAGS = frozenset(
    "div span p a ul ol li table tr td th thead tbody h1 h2 h3 h4 h5 h6 br hr "
    "strong em code pre blockquote img section article header footer nav "
    "aside".split()
)

MALFORMED_HINT = (
    "Please use the native tool calling format provided by the system. "
    "The tools are already available to you - call them directly using the "
    "function calling interface."
)
JSON_HINT = 'Correct format: {"name": "tool_name", "arguments": {"param": "value"}}'

_MALFORMED_PATTERNS = [
    (
        re.compile(r"\[(?:tool_use|Tool):\s*(\w+)\]", re.IGNORECASE),
        "Invalid syntax: [tool_use: name] or [Tool: name] format is not supported",
    ),
    (
        re.compile(r"<function=(\w+)>"),
        "Invalid syntax: <function=name> is not supported",
    ),
    (
        re.compile(r"<parameter=(\w+)>"),
        "Invalid syntax: <parameter=name> is not supported",
    ),
]

_JSON_CALL_KEYS = {"name", "arguments", "id", "type"}


@dataclass
class Extraction:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    malformed: str | None = None


def _has_nested_tag(body: str) -> bool:
    return _OPEN_TAG_RE.search(body) is not None


def _is_tool_block(
    name: str, full: str, body: str, known_tools: Collection[str] | None
) -> bool:
    if name == "tool_call" or name.lower() in HTML_TAGS:
        return False
    if _ATTR_TAG_RE.search(full):
        return False
    if known_tools is not None and name in known_tools:
        return True
    nested = _has_nested_tag(body)
    if known_tools is not None:
        # Unknown names still count when they clearly look like a call, so
        # the model is told the tool does not exist.
        return nested and "_" in name
    return nested or "_" in name


def _parse_value(raw: str):
    value = raw.strip()
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _parse_parameters(body: str) -> dict:
    params = {}
    for m in _TAG_BLOCK_RE.finditer(body):
        params[m.group(1)] = _parse_value(m.group(2))
    return params


def _find_xml_calls(
    text: str, known_tools: Collection[str] | None
) -> list[tuple[re.Match, ToolCall]]:
    found = []
    for m in _TAG_BLOCK_RE.finditer(text):
        name, body = m.group(1), m.group(2)
        if not _is_tool_block(name, m.group(0), body, known_tools):
            continue
        call = ToolCall(
            id=new_call_id("xml_call"), name=name, arguments=_parse_parameters(body)
        )
        found.append((m, call))
    return found


def _strip_xml_calls(text: str, spans: list[tuple[int, int]]) -> str:
    # Matched spans become a marker so fences that held a call can be dropped whole.
    pieces = []
    last = 0
    marker = "\x00"
    for s, e in sorted(spans):
        pieces.append(text[last:s])
        pieces.append(marker)
        last = e
    pieces.append(text[last:])
    marked = "".join(pieces)

    marked = _FENCE_RE.sub(
        lambda m: "" if marker in m.group(0) else m.group(0), marked
    )
    cleaned = marked.replace(marker, "")
    cleaned = _WRAPPER_RE.sub("", cleaned)
    return tidy_whitespace(cleaned)


def tidy_whitespace(text: str) -> str:
    """Collapse the blank runs and trailing spaces left after removing spans."""
    text = re.sub(r"[ \t]+$", "", text, flags=re.MULTILINE)
    text = re.sub(r"([^ \t\n]) {2,}", r"\1 ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _unterminated_tag(text: str, known_tools: Collection[str] | None) -> str | None:
    for m in _OPEN_TAG_RE.finditer(text):
        name = m.group(1)
        if name == "tool_call" or name.lower() in HTML_TAGS:
            continue
        if known_tools is not None and name not in known_tools:
            continue
        if known_tools is None and "_" not in name:
            continue
        if not _OPEN_TAG_RE.match(text[m.end() :].lstrip()):
            continue
        rest = text[m.end() :]
        close = rest.find(f"</{name}>")
        if close == -1:
            return name
        # a second opening tag before the close means the first call was cut off
        if f"<{name}>" in rest[:close]:
            return name
    return None


def detect_malformed(text: str, known_tools: Collection[str] | None = None) -> str | None:
    """Return the literal error for tool-call syntax that cannot be parsed, or None."""
    for regex, error in _MALFORMED_PATTERNS:
        if regex.search(text):
            return f"{error}\n\n{MALFORMED_HINT}"
    name = _unterminated_tag(text, known_tools)
    if name is not None:
        return (
            f"Invalid syntax: <{name}> tag is not terminated (missing </{name}>). "
            f"The tool call was incomplete or truncated.\n\n{MALFORMED_HINT}"
        )
    return None


def _json_call(text: str) -> tuple[ToolCall | None, str | None]:
    """Interpret a whole response that is a single JSON call object."""
    body = text.strip()
    fenced = _WHOLE_FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1).strip()
    if not (body.startswith("{") and body.endswith("}")):
        return None, None
    try:
        obj = json.loads(body)
    except json.JSONDecodeError:
        logger.debug("response looks like JSON but does not parse")
        return None, None
    if not isinstance(obj, dict) or not obj or not set(obj) <= _JSON_CALL_KEYS:
        return None, None
    if "name" not in obj:
        return None, f'Invalid tool call: missing "name" field\n\n{JSON_HINT}'
    if "arguments" not in obj:
        return None, f'Invalid tool call: missing "arguments" field\n\n{JSON_HINT}'
    if not isinstance(obj["arguments"], dict):
        return None, f'Invalid tool call: "arguments" must be an object\n\n{JSON_HINT}'
    return ToolCall(id=new_call_id(), name=str(obj["name"]), arguments=obj["arguments"]), None


def malformed_call(error: str) -> ToolCall:
    return ToolCall(id=new_call_id("malformed"), name=MALFORMED_TOOL_NAME, arguments={"error": error})


def extract_tool_calls(
    content: str | None,
    structured=None,
    known_tools: Collection[str] | None = None,
) -> Extraction:
    """Merge structured tool calls with calls recovered from *content*.

    *known_tools*, when given, restricts text recovery to registered names
    (plus unknown names that unmistakably look like calls). Without it, tag
    names are judged by shape alone.
    """
    text = content or ""
    calls = [ToolCall.from_any(tc) for tc in structured or []]

    error = detect_malformed(text, known_tools)
    if error is not None:
        logger.info("malformed tool call syntax in response")
        return Extraction(content="", tool_calls=calls + [malformed_call(error)], malformed=error)

    found = _find_xml_calls(_WRAPPER_RE.sub(lambda m: " " * len(m.group(0)), text), known_tools)
    if found:
        calls.extend(call for _, call in found)
        spans = [m.span() for m, _ in found]
        return Extraction(content=_strip_xml_calls(text, spans), tool_calls=calls)

    if not calls:
        call, error = _json_call(text)
        if error is not None:
            return Extraction(content="", tool_calls=[malformed_call(error)], malformed=error)
        if call is not None:
            return Extraction(content="", tool_calls=[call])

    return Extraction(content=text, tool_calls=calls)
