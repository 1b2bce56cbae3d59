"""Public library API for gantry: Session class and Result dataclass."""

import os
from dataclasses import dataclass
from pathlib import Path

from .cancel import CancellationToken
from .confirm import ConfirmationGateway
from .loop import ConversationLoop
from .messages import OperatingMode, SessionState, TurnOutcome
from .model import LiteLLMAdapter, ModelAdapter
from .registry import ToolRegistry
from .report import ConfigError, ReportCollector
from .tools import builtin_registry

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def load_system_prompt(system_prompt: str | None, no_system_prompt: bool) -> str | None:
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    status: str
    error: str | None
    needs_approval: list[str]
    messages: list[dict]
    report: dict | None

    @property
    def exhausted(self) -> bool:
        return self.status == "exhausted"


class Session:
    """Programmatic interface to the conversation loop.

    Stores configuration as plain attributes; the adapter, registry and loop
    are built on first use. Call .run() for single-shot questions or .ask()
    for multi-turn conversations. Without a gateway the session is
    non-interactive: calls that need approval are answered with an
    "approval unavailable" result.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "openai-compatible",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_rounds: int = 100,
        max_nudges: int = 2,
        max_output_tokens: int | None = 8192,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        mode: str | OperatingMode = OperatingMode.NORMAL,
        non_interactive: bool = False,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        auto_allow: list[str] | None = None,
        disable_tools: list[str] | None = None,
        disable_tool_models: list[str] | None = None,
        unrestricted: bool = False,
        verbose: bool = False,
        gateway: ConfirmationGateway | None = None,
        adapter: ModelAdapter | None = None,
        registry: ToolRegistry | None = None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_rounds = max_rounds
        self.max_nudges = max_nudges
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.non_interactive = non_interactive
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.disable_tools = disable_tools or []
        self.disable_tool_models = disable_tool_models or []
        self.unrestricted = unrestricted
        self.verbose = verbose
        self.gateway = gateway
        self.state = SessionState(
            mode=OperatingMode.parse(mode), always_allowed=set(auto_allow or [])
        )

        self._adapter = adapter
        self._registry = registry
        self._loop: ConversationLoop | None = None
        self._conv: list[dict] = []

    def _resolve_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        env = API_KEY_ENV.get(self.provider)
        if env is None:
            return None
        key = os.environ.get(env)
        if not key:
            raise ConfigError(f"--api-key or {env} env var required for {self.provider} provider")
        return key

    def build_loop(self, report: ReportCollector | None = None) -> ConversationLoop:
        """Build a ConversationLoop from the current settings.

        Raises ConfigError when no model is set or a required API key is missing.
        """
        if self._adapter is None:
            if not self.model:
                raise ConfigError("--model is required (or set 'model' in config)")
            self._adapter = LiteLLMAdapter(
                self.model,
                provider=self.provider,
                api_key=self._resolve_api_key(),
                base_url=self.base_url,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
            )
        if self._registry is None:
            self._registry = builtin_registry(
                str(Path(self.base_dir).resolve()),
                unrestricted=self.unrestricted,
                disabled=self.disable_tools,
            )
        return ConversationLoop(
            self._adapter,
            self._registry,
            self.state,
            self.gateway,
            system_prompt=load_system_prompt(self.system_prompt, self.no_system_prompt),
            non_interactive=self.non_interactive,
            native_tools=self.model not in self.disable_tool_models,
            max_rounds=self.max_rounds,
            max_nudges=self.max_nudges,
            context_length=self.max_context_tokens,
            report=report,
            verbose=self.verbose,
        )

    @property
    def mode(self) -> OperatingMode:
        return self.state.mode

    @mode.setter
    def mode(self, value: str | OperatingMode) -> None:
        self.state.mode = OperatingMode.parse(value)

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            self._loop = self.build_loop()
        return self._registry

    def _result(self, outcome: TurnOutcome, messages: list[dict], report: dict | None) -> Result:
        return Result(
            answer=outcome.answer,
            status=outcome.status,
            error=outcome.error,
            needs_approval=list(outcome.needs_approval),
            messages=list(messages),
            report=report,
        )

    def run(self, question: str, *, report: bool = False, token: CancellationToken | None = None) -> Result:
        """Answer *question* in a fresh conversation."""
        collector = ReportCollector() if report else None
        loop = self.build_loop(collector)
        messages: list[dict] = []
        outcome = loop.run_turn(messages, question, token)
        report_dict = None
        if collector is not None:
            report_dict = collector.build_report(
                task=question,
                model=self.model or "unknown",
                provider=self.provider,
                settings={"mode": self.state.mode.value, "max_rounds": self.max_rounds},
                outcome=outcome.status,
                answer=outcome.answer,
                exit_code=0 if outcome.ok else 1,
                rounds=outcome.rounds,
                error_message=outcome.error,
            )
        return self._result(outcome, messages, report_dict)

    def ask(self, question: str, token: CancellationToken | None = None) -> Result:
        """Continue the session's conversation with *question*."""
        if self._loop is None:
            self._loop = self.build_loop()
        outcome = self._loop.run_turn(self._conv, question, token)
        return self._result(outcome, self._conv, None)

    def reset(self) -> None:
        """Forget the conversation; mode and the always-allow set are kept."""
        self._conv = []

    @property
    def history(self) -> list[dict]:
        return list(self._conv)
