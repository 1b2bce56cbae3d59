"""Token estimates for the outgoing context."""

import json

import tiktoken

_encoder = tiktoken.get_encoding("cl100k_base")

WARN_THRESHOLD = 0.80
CRITICAL_THRESHOLD = 0.95


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def context_warning(tokens: int, context_length: int | None) -> str | None:
    """Return a warning when *tokens* nears *context_length*, else None."""
    if not context_length:
        return None
    ratio = tokens / context_length
    if ratio >= CRITICAL_THRESHOLD:
        return (
            f"context is {ratio:.0%} full (~{tokens}/{context_length} tokens); "
            "the next response may be cut off. Use /clear to start over."
        )
    if ratio >= WARN_THRESHOLD:
        return f"context is {ratio:.0%} full (~{tokens}/{context_length} tokens)"
    return None
