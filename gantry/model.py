"""Streaming model client on top of LiteLLM, and error classification."""

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field

from .cancel import CancellationToken
from .messages import ToolCall, new_call_id
from .report import AgentError, ModelAdapterError, ToolUnsupportedError

logger = logging.getLogger(__name__)

PROVIDERS = ("openai-compatible", "openrouter", "openai", "anthropic", "ollama")
DEFAULT_BASE_URLS = {
    "openai-compatible": "http://127.0.0.1:1234/v1",
    "ollama": "http://127.0.0.1:11434",
}

_BAD_REQUEST_TOOL_RE = re.compile(
    r"tool|function|invalid.?parameter|unexpected.?field|unrecognized", re.IGNORECASE
)
_TOOL_SUPPORT_RES = [
    re.compile(r"\b(?:tool|function)s?\b.*\b(?:not supported|unsupported)\b", re.I),
    re.compile(r"\binvalid (?:tool|function)s?\b", re.I),
    re.compile(r"\b(?:tool|function) parameters? invalid\b", re.I),
]
_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|too many tokens"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)
_STATUS_LINE_RE = re.compile(
    r"(?:Error: )?(\d{3})\s+(?:\d{3}\s+)?(?:Bad Request|[^:]+):\s*(.+)", re.IGNORECASE
)


@dataclass
class StreamChunk:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    final: bool = False
    finish_reason: str | None = None


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    m = _STATUS_LINE_RE.match(str(exc))
    if m:
        return int(m.group(1))
    return None


def is_tool_support_error(exc: BaseException | str) -> bool:
    """Does this error mean the request failed because it carried tools?"""
    msg = str(exc)
    code = _status_code(exc) if isinstance(exc, BaseException) else None
    lowered = msg.lower()
    bad_request = code == 400 or ("400" in msg and "bad request" in lowered)
    if bad_request and _BAD_REQUEST_TOOL_RE.search(msg):
        return True
    if any(r.search(msg) for r in _TOOL_SUPPORT_RES):
        return True
    return "invalid character" in lowered and "after top-level value" in lowered


def _clean_message(exc: BaseException) -> str:
    msg = str(exc)
    body = getattr(exc, "body", None) or getattr(exc, "response_body", None)
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (ValueError, TypeError):
            body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if body.get("message"):
            return str(body["message"])
    m = _STATUS_LINE_RE.match(msg)
    if m:
        return m.group(2).strip()
    return msg


def parse_api_error(exc: BaseException) -> str:
    """Turn a provider exception into a one-line message for the user."""
    code = _status_code(exc)
    msg = _clean_message(exc)
    if code is not None:
        if code == 400:
            if _CONTEXT_OVERFLOW_RE.search(msg):
                return f"Context too large: {msg}"
            return f"Bad request: {msg}"
        if code == 401:
            return "Authentication failed: Invalid API key or credentials"
        if code == 403:
            return "Access forbidden: Check your API permissions"
        if code == 404:
            return "Model not found: The requested model may not exist or is unavailable"
        if code == 429:
            if "usage limit" in msg or "quota" in msg:
                return f"Rate limit: {msg}"
            return "Rate limit exceeded: Too many requests. Please wait and try again"
        if code in (500, 502, 503):
            return f"Server error: {msg}"
        return f"Request failed ({code}): {msg}"

    lowered = msg.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "Request timed out: The model took too long to respond"
    if "connection refused" in lowered or "connect" in lowered:
        return "Connection failed: Unable to reach the model server"
    if _CONTEXT_OVERFLOW_RE.search(msg):
        return f"Context too large: {msg}"
    return re.sub(r"^Error:\s*", "", msg, flags=re.IGNORECASE).split("\n")[0]


def classify_error(exc: BaseException) -> ModelAdapterError:
    """Map a provider exception onto the loop's error kinds."""
    if isinstance(exc, ModelAdapterError):
        return exc
    message = parse_api_error(exc)
    if is_tool_support_error(exc):
        return ToolUnsupportedError(message)
    code = _status_code(exc)
    if code == 429 or code in (500, 502, 503):
        return ModelAdapterError(message, kind="rate_limit")
    if message.startswith("Context too large"):
        return ModelAdapterError(message, kind="context")
    return ModelAdapterError(message)


class ModelAdapter(ABC):
    """Sends the conversation to a model and streams the reply back."""

    @abstractmethod
    def send(
        self,
        messages: list[dict],
        tools: list[dict] | None,
        cancel: CancellationToken | None = None,
    ) -> Iterator[StreamChunk]:
        raise NotImplementedError


def resolve_model(
    provider: str, model: str, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Return the LiteLLM model string and connection kwargs for *provider*."""
    if provider == "openai-compatible":
        return f"openai/{model}", {
            "api_base": base_url or DEFAULT_BASE_URLS[provider],
            "api_key": api_key or "not-needed",
        }
    if provider == "ollama":
        return f"ollama_chat/{model.removeprefix('ollama_chat/')}", {
            "api_base": base_url or DEFAULT_BASE_URLS[provider]
        }
    if provider in ("openrouter", "openai", "anthropic"):
        prefix = f"{provider}/"
        bare = model[len(prefix) :] if model.startswith(prefix + prefix) else model
        model_str = bare if bare.startswith(prefix) else prefix + bare
        kwargs: dict = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return model_str, kwargs
    raise AgentError(f"unknown provider {provider!r}")


class LiteLLMAdapter(ModelAdapter):
    def __init__(
        self,
        model: str,
        *,
        provider: str = "openai-compatible",
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.model = model
        self.provider = provider
        self.model_str, self._conn = resolve_model(provider, model, base_url, api_key)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def send(self, messages, tools, cancel=None):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(model=self.model_str, messages=messages, stream=True, **self._conn)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.max_output_tokens is not None:
            kwargs["max_tokens"] = self.max_output_tokens
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        logger.debug(
            "calling %s with %d messages, %d tools",
            self.model_str,
            len(messages),
            len(tools or []),
        )
        try:
            stream = litellm.completion(**kwargs)
            yield from self._assemble(stream, cancel)
        except ModelAdapterError:
            raise
        except Exception as e:
            raise classify_error(e) from e

    def _assemble(self, stream, cancel) -> Iterator[StreamChunk]:
        partial: dict[int, dict] = {}
        finish_reason = None
        for chunk in stream:
            if cancel is not None and cancel.cancelled:
                break
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.finish_reason:
                finish_reason = choice.finish_reason
            delta = choice.delta
            if delta is None:
                continue
            for tc in getattr(delta, "tool_calls", None) or []:
                slot = partial.setdefault(
                    getattr(tc, "index", 0) or 0, {"id": None, "name": "", "arguments": ""}
                )
                if tc.id:
                    slot["id"] = tc.id
                fn = tc.function
                if fn is not None:
                    if fn.name:
                        slot["name"] += fn.name
                    if fn.arguments:
                        slot["arguments"] += fn.arguments
            if delta.content:
                yield StreamChunk(text=delta.content)

        calls = [
            ToolCall.from_any(
                {
                    "id": slot["id"] or new_call_id(),
                    "function": {"name": slot["name"], "arguments": slot["arguments"]},
                }
            )
            for _, slot in sorted(partial.items())
        ]
        yield StreamChunk(tool_calls=calls, final=True, finish_reason=finish_reason or "stop")
