"""Everything gantry shows the user on stderr, rendered with Rich.

stdout is reserved for final answers so that they can be piped.
"""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

from .messages import ToolEvent

_console = Console(stderr=True)

MAX_PREVIEW = 500


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Swap in a console honouring --color / --no-color."""
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Round structure ---------------------------------------------------------


def round_header(n: int, max_n: int, token_est: int, *, without_tools: bool = False) -> None:
    title = f"Round {n}/{max_n} (~{token_est} tokens)"
    if without_tools:
        title += ", tools in prompt"
    _console.print(Rule(Text(title), style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def completion(rounds: int, status: str) -> None:
    if status == "completed":
        _console.print(Text(f"  ✓ Turn finished: {rounds} rounds", style="bold green"))
    else:
        _console.print(
            Text(f"  Turn finished: {rounds} rounds, status={status}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_rejected(name: str, kind: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ {name} [{kind}] ", style="bold yellow")
    line.append(msg.splitlines()[0] if msg else "", style="yellow")
    _console.print(line)


def tool_event(event: ToolEvent) -> None:
    """Render one executed or rejected tool call."""
    name = event.call.name
    content = event.result.content
    if event.kind == "executed":
        tool_result(name, event.elapsed, content[:MAX_PREVIEW])
    elif event.kind in ("failed", "invalid"):
        tool_error(name, content)
    else:
        tool_rejected(name, event.kind, content)


# -- Recovery ----------------------------------------------------------------


def nudge(text: str) -> None:
    line = Text()
    line.append("  [nudge] ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


def retry_without_tools(reason: str) -> None:
    line = Text()
    line.append("  ↻ Tools unsupported, retrying with tools in the prompt: ", style="yellow")
    line.append(reason, style="dim")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(mode: str) -> None:
    _console.print(
        Text(
            f"Interactive mode ({mode}). Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
