"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the conversation loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ModelAdapterError(AgentError):
    """A model call failed. ``kind`` is one of: rate_limit, context, generic."""

    def __init__(self, message: str, kind: str = "generic"):
        super().__init__(message)
        self.kind = kind


class ToolUnsupportedError(ModelAdapterError):
    """The model or provider rejected the request because it carried tools."""

    def __init__(self, message: str):
        super().__init__(message, kind="tool_unsupported")


class TurnCancelled(AgentError):
    """The turn's cancellation token fired. Not a failure."""


class ReportCollector:
    """Accumulates events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.nudges = 0
        self.policy_blocks = 0
        self.malformed_calls = 0
        self.tool_retries = 0
        self.max_round_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        token_est: int,
        finish_reason: str,
        *,
        without_tools: bool = False,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        self.events.append(
            {
                "round": round_no,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
                "without_tools": without_tools,
            }
        )

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments,
        outcome: str,
        duration: float,
        result_length: int,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if outcome == "executed":
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        if outcome == "blocked":
            self.policy_blocks += 1
        elif outcome == "malformed":
            self.malformed_calls += 1
        self.events.append(
            {
                "round": round_no,
                "type": "tool_call",
                "name": name,
                "arguments": arguments if isinstance(arguments, dict) else None,
                "outcome": outcome,
                "duration_s": round(duration, 3),
                "result_length": result_length,
            }
        )

    def record_nudge(self, round_no: int, after_tool_result: bool):
        self.nudges += 1
        self.events.append(
            {
                "round": round_no,
                "type": "nudge",
                "after_tool_result": after_tool_result,
            }
        )

    def record_tool_retry(self, round_no: int, error: str):
        self.tool_retries += 1
        self.events.append(
            {"round": round_no, "type": "retry_without_tools", "error": error}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": rounds,
                "tool_calls_total": succeeded + failed,
                "tool_calls_succeeded": succeeded,
                "tool_calls_failed": failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "policy_blocks": self.policy_blocks,
                "malformed_calls": self.malformed_calls,
                "nudges": self.nudges,
                "retries_without_tools": self.tool_retries,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise AgentError("report written before finalize()")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
