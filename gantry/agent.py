import argparse
import logging
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .cancel import CancellationToken, cancel_on_sigint
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .confirm import console_gateway
from .loop import ConversationLoop
from .messages import OperatingMode, SessionState, TurnOutcome
from .model import PROVIDERS
from .report import AgentError, ConfigError, ReportCollector
from .session import Session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_NEEDS_APPROVAL = 3
EXIT_CANCELLED = 130


def build_parser():
    """Build and return the argument parser.

    Options that config files may set default to _UNSET so
    apply_config_to_args can tell "not given" from "given as the default".
    """
    parser = argparse.ArgumentParser(
        prog="gantry",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A tool-calling coding assistant for local and hosted models.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="Model provider (default: openai-compatible, a local server such as LM Studio).",
    )
    parser.add_argument("--model", type=str, default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-key", type=str, default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument("--base-url", default=_UNSET, help="Server base URL.")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in OperatingMode],
        default=_UNSET,
        help="Approval mode: normal, auto-accept (only shell commands ask), or plan (no file edits).",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        default=_UNSET,
        help="Never ask for confirmation; tools that need it are reported instead of run.",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Maximum model calls per question (default: 100).",
    )
    parser.add_argument(
        "--max-nudges",
        type=int,
        default=_UNSET,
        help="Consecutive empty responses to nudge before giving up (default: 2).",
    )
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens (default: 8192)."
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context size of the model, used for fill warnings.",
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature (default: provider default)."
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument("--system-prompt", type=str, default=_UNSET, help="System prompt to use.")
    prompt_group.add_argument(
        "--no-system-prompt", action="store_true", default=_UNSET, help="Omit the system message entirely."
    )

    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--auto-allow",
        action="append",
        default=None,
        metavar="TOOL",
        help="Run TOOL without asking (repeatable).",
    )
    parser.add_argument(
        "--disable-tool",
        dest="disable_tools",
        action="append",
        default=None,
        metavar="TOOL",
        help="Do not offer TOOL to the model (repeatable).",
    )
    parser.add_argument(
        "--unrestricted",
        action="store_true",
        default=_UNSET,
        help="Let file tools reach outside the base directory.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", default=_UNSET, help="Force ANSI color even when stderr is not a TTY."
    )
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color even when stderr is a TTY."
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=_UNSET,
        help="Level for internal log messages (default: WARNING).",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Write log messages to this file.")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    return parser


def configure_logging(level: str, log_file: str | None = None) -> None:
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(level=getattr(logging, level), handlers=[handler], force=True)
    # litellm is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(max(logging.WARNING, getattr(logging, level)))


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("gantry")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet
    configure_logging(args.log_level.upper(), args.log_file)
    fmt.init(color=args.color, no_color=args.no_color)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    report = ReportCollector() if args.report else None

    def _write_report(outcome: str, answer=None, exit_code=0, rounds=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or "unknown",
            provider=args.provider,
            settings={
                "mode": args.mode,
                "non_interactive": args.non_interactive,
                "max_rounds": args.max_rounds,
                "max_nudges": args.max_nudges,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "auto_allow": sorted(args.auto_allow),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=rounds,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        code = _run_main(args, report, _write_report, parser)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=EXIT_ERROR, error_message=str(e))
        sys.exit(EXIT_ERROR)
    sys.exit(code)


def build_loop(args, parser, report: ReportCollector | None, interactive: bool) -> ConversationLoop:
    if args.max_rounds < 1:
        parser.error("--max-rounds must be at least 1")

    non_interactive = args.non_interactive or not interactive
    session = Session(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_rounds=args.max_rounds,
        max_nudges=args.max_nudges,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        mode=args.mode,
        non_interactive=non_interactive,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        auto_allow=args.auto_allow,
        disable_tools=args.disable_tools,
        disable_tool_models=args.disable_tool_models,
        unrestricted=args.unrestricted,
        verbose=args.verbose,
        gateway=None if non_interactive else console_gateway(),
    )
    try:
        loop = session.build_loop(report)
    except ConfigError as e:
        parser.error(str(e))

    for name in args.auto_allow:
        if name not in loop.registry:
            fmt.warning(f"--auto-allow: unknown tool {name!r}")
    if args.verbose:
        fmt.model_info(
            f"Model {loop.adapter.model_str} via {args.provider}, mode={loop.session.mode.value}"
            + (", non-interactive" if non_interactive else "")
        )
    return loop


def exit_code_for(outcome: TurnOutcome) -> int:
    if outcome.status == "cancelled":
        return EXIT_CANCELLED
    if outcome.status == "exhausted":
        return EXIT_EXHAUSTED
    if outcome.status == "failed":
        return EXIT_ERROR
    if outcome.needs_approval:
        return EXIT_NEEDS_APPROVAL
    return EXIT_OK


def report_outcome(outcome: TurnOutcome) -> None:
    """Print the answer to stdout and any problem to stderr."""
    if outcome.answer is not None and outcome.status in ("completed", "exhausted"):
        print(outcome.answer)
    if outcome.status == "failed":
        fmt.error(outcome.error or "turn failed")
    elif outcome.status == "exhausted":
        fmt.warning("max rounds reached for this question.")
    elif outcome.status == "cancelled":
        fmt.warning("interrupted, question aborted.")
    elif outcome.status == "declined":
        fmt.info("tool call declined; waiting for new instructions.")
    if outcome.needs_approval:
        fmt.warning(
            f"Tool approval required for: {', '.join(outcome.needs_approval)}. "
            "Exiting non-interactive mode."
        )


def _run_main(args, report, _write_report, parser) -> int:
    loop = build_loop(args, parser, report, interactive=args.repl or sys.stdin.isatty())

    if args.repl:
        repl_loop(loop, args, initial=args.question)
        return EXIT_OK

    messages: list[dict] = []
    token = CancellationToken()
    with cancel_on_sigint(token):
        outcome = loop.run_turn(messages, args.question, token)
    report_outcome(outcome)

    code = exit_code_for(outcome)
    _write_report(
        outcome.status,
        answer=outcome.answer,
        exit_code=code,
        rounds=outcome.rounds,
        error_message=outcome.error,
    )
    return code


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                          Show this help message\n"
        "  /clear                         Reset the conversation\n"
        "  /mode [normal|auto-accept|plan]  Show or change the approval mode\n"
        "  /tools                         List available tools\n"
        "  /allowed                       List tools that run without asking\n"
        "  /exit, /quit                   Exit the REPL\n"
        "Press Ctrl-C during a response to cancel it."
    )


def _repl_clear(messages: list) -> None:
    dropped = len(messages)
    messages.clear()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_mode(arg: str, session: SessionState) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"mode: {session.mode.value}")
        return
    try:
        session.mode = OperatingMode.parse(arg)
    except ValueError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"mode set to {session.mode.value}")


def _repl_tools(loop: ConversationLoop) -> None:
    lines = []
    for name in loop.registry.all_names():
        tool = loop.registry.lookup(name)
        tags = []
        if tool.mutates_files:
            tags.append("writes files")
        if tool.runs_commands:
            tags.append("runs commands")
        if name in loop.session.always_allowed:
            tags.append("always allowed")
        lines.append(f"  {name}" + (f" ({', '.join(tags)})" if tags else ""))
    fmt.info("Tools:\n" + "\n".join(lines) if lines else "no tools loaded")


def _run_turn(loop: ConversationLoop, messages: list, line: str) -> None:
    token = CancellationToken()
    with cancel_on_sigint(token):
        outcome = loop.run_turn(messages, line, token)
    report_outcome(outcome)


def repl_loop(loop: ConversationLoop, args, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(args.base_dir) / ".gantry" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(history=FileHistory(str(history_path)), enable_history_search=True)

    messages: list[dict] = []
    if args.verbose:
        fmt.repl_banner(loop.session.mode.value)

    if initial:
        _run_turn(loop, messages, initial)

    while True:
        prompt_text = FormattedText(
            [("bold fg:ansigreen", f"gantry [{loop.session.mode.value}]> ")]
        )
        try:
            print(file=sys.stderr)
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd, _, cmd_arg = line.partition(" ")
        cmd = cmd.lower()
        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            _repl_clear(messages)
        elif cmd == "/mode":
            _repl_mode(cmd_arg, loop.session)
        elif cmd == "/tools":
            _repl_tools(loop)
        elif cmd == "/allowed":
            allowed = sorted(loop.session.always_allowed)
            fmt.info(", ".join(allowed) if allowed else "no tools are always allowed")
        else:
            _run_turn(loop, messages, line)


if __name__ == "__main__":
    main()
