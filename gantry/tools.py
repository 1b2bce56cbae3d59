"""Built-in coding tools and their registry descriptors."""

import fnmatch
import logging
import os
import re
import shlex
import subprocess
import sys
import threading
import time
from pathlib import Path, PurePosixPath, PureWindowsPath

from .registry import PredicateApproval, StaticApproval, ToolDescriptor, ToolRegistry

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_COMMAND_OUTPUT = 10 * 1024  # returned inline to the model
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120
POLL_INTERVAL = 0.1
_KILL_WAIT_TIMEOUT = 5

# Commands that only inspect state and can run without confirmation.
READ_ONLY_COMMANDS = frozenset(
    "ls pwd cat head tail wc grep rg find file stat du df echo which date "
    "uname whoami env".split()
)
_READ_ONLY_GIT = frozenset("status diff log show branch blame".split())
_SHELL_META_RE = re.compile(r"[;&|<>`$()]")


def _schema(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


READ_FILE_SCHEMA = _schema(
    "read_file",
    "Read a text file. Returns lines prefixed with line numbers. "
    "Use offset/limit to page through large files.",
    {
        "path": {"type": "string", "description": "Path to the file to read."},
        "offset": {"type": "integer", "description": "1-based first line. Defaults to 1."},
        "limit": {"type": "integer", "description": "Maximum lines to return. Defaults to 2000."},
    },
    ["path"],
)
WRITE_FILE_SCHEMA = _schema(
    "write_file",
    "Create or overwrite a file with the given content.",
    {
        "path": {"type": "string", "description": "Path of the file to write."},
        "content": {"type": "string", "description": "Full new content of the file."},
    },
    ["path", "content"],
)
EDIT_FILE_SCHEMA = _schema(
    "edit_file",
    "Replace an exact string in an existing file. old_string must occur exactly "
    "once unless replace_all is true.",
    {
        "path": {"type": "string", "description": "Path of the file to edit."},
        "old_string": {"type": "string", "description": "Exact text to replace."},
        "new_string": {"type": "string", "description": "Replacement text."},
        "replace_all": {"type": "boolean", "description": "Replace every occurrence."},
    },
    ["path", "old_string", "new_string"],
)
LIST_FILES_SCHEMA = _schema(
    "list_files",
    "Recursively list files matching a glob pattern, newest first.",
    {
        "pattern": {"type": "string", "description": 'Glob such as "**/*.py".'},
        "path": {"type": "string", "description": "Directory to search. Defaults to the base directory."},
    },
    ["pattern"],
)
GREP_SCHEMA = _schema(
    "grep",
    "Search file contents for a regular expression.",
    {
        "pattern": {"type": "string", "description": "Python regular expression."},
        "path": {"type": "string", "description": "Directory to search. Defaults to the base directory."},
        "include": {"type": "string", "description": 'Filename glob filter, e.g. "*.py".'},
    },
    ["pattern"],
)
EXECUTE_BASH_SCHEMA = _schema(
    "execute_bash",
    "Run a shell command in the base directory and return its combined output.",
    {
        "command": {"type": "string", "description": "The command line to run."},
        "timeout": {"type": "integer", "description": f"Seconds before the command is killed (max {MAX_TIMEOUT})."},
    },
    ["command"],
)


# -- Paths -------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve *file_path* against *base_dir*, refusing paths that escape it.

    Raises:
        ValueError: If the resolved path is outside base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(f"Path {file_path!r} resolves to the filesystem root")
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"error: pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"error: pattern {pattern!r} contains '..', which is not allowed"
    return None


def _glob_match(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatch(rel, pattern):
        return True
    # "**/x" also matches x at the top level
    return pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:])


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            yield Path(dirpath) / filename


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


# -- File tools --------------------------------------------------------------


def read_file(path: str, base_dir: str, offset: int = 1, limit: int = 2000, unrestricted: bool = False) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if resolved.is_dir():
        return f"error: {path} is a directory; use list_files"

    try:
        if _is_binary(resolved):
            return f"error: binary file detected: {path}"
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"
    except OSError as exc:
        return f"error: {exc}"

    lines = text.splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    parts: list[str] = []
    total = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        size = len(numbered.encode("utf-8")) + 1
        if total + size > MAX_OUTPUT_BYTES:
            break
        parts.append(numbered)
        total += size

    result = "\n".join(parts)
    remaining = len(lines) - (start + len(parts))
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(parts) + 1} to continue]"
    return result


def write_file(path: str, content: str, base_dir: str, unrestricted: bool = False) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {path}"


def edit_file(
    path: str,
    old_string: str,
    new_string: str,
    base_dir: str,
    replace_all: bool = False,
    unrestricted: bool = False,
) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.is_file():
        return f"error: file does not exist: {path}"
    if not old_string:
        return "error: old_string must not be empty"

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"error: {exc}"

    count = content.count(old_string)
    if count == 0:
        return f"error: old_string not found in {path}"
    if count > 1 and not replace_all:
        return (
            f"error: old_string occurs {count} times in {path}; "
            "add surrounding context or set replace_all"
        )
    resolved.write_text(
        content.replace(old_string, new_string, -1 if replace_all else 1), encoding="utf-8"
    )
    return f"Edited {path} ({count if replace_all else 1} replacement(s))"


def list_files(pattern: str, base_dir: str, path: str = ".", unrestricted: bool = False) -> str:
    err = _check_pattern(pattern)
    if err:
        return err
    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    base = Path(base_dir).resolve()
    matched = [f for f in _walk_files(root) if _glob_match(f.relative_to(root).as_posix(), pattern)]
    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    lines = []
    for f in matched[:MAX_LIST_RESULTS]:
        try:
            lines.append(str(f.relative_to(base)))
        except ValueError:
            lines.append(str(f))
    result = "\n".join(lines)
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


def grep(
    pattern: str,
    base_dir: str,
    path: str = ".",
    include: str | None = None,
    unrestricted: bool = False,
) -> str:
    if include is not None:
        err = _check_pattern(include)
        if err:
            return err
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"
    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    base = Path(base_dir).resolve()
    matches: list[tuple[Path, int, str]] = []
    for filepath in sorted(_walk_files(root)):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((filepath, line_no, line[:MAX_LINE_LENGTH]))

    if not matches:
        return "No matches found."

    total = len(matches)
    parts = [f"Found {total} matches"]
    current = None
    for filepath, line_no, line in matches[:MAX_GREP_MATCHES]:
        if filepath != current:
            current = filepath
            try:
                rel = str(filepath.relative_to(base))
            except ValueError:
                rel = str(filepath)
            parts.append(f"\n{rel}:")
        parts.append(f"  Line {line_no}: {line}")
    if total > MAX_GREP_MATCHES:
        parts.append(
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return "\n".join(parts)


# -- Shell -------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after kill", proc.pid)


def execute_bash(command: str, base_dir: str, timeout: int = DEFAULT_TIMEOUT, cancel=None) -> str:
    """Run *command* through the shell, killing it on timeout or cancellation."""
    if not Path(base_dir).is_dir():
        return f"error: base directory does not exist: {base_dir}"
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    shell_cmd = ["cmd.exe", "/c", command] if sys.platform == "win32" else ["/bin/sh", "-c", command]
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    chunks: list[bytes] = []

    def _reader():
        try:
            for chunk in iter(lambda: proc.stdout.read(4096), b""):
                chunks.append(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout
    stopped = None
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                stopped = "cancelled"
            elif time.monotonic() >= deadline:
                stopped = "timeout"
            if stopped:
                _kill_process_tree(proc)
                break

    reader.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    if stopped == "cancelled":
        return "error: command cancelled"
    parts = []
    if stopped == "timeout":
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        if len(output.encode("utf-8")) > MAX_COMMAND_OUTPUT:
            output = output.encode("utf-8")[-MAX_COMMAND_OUTPUT:].decode("utf-8", errors="replace")
            parts.append("[output truncated, showing the last 10KB]")
        parts.append(output)
    return "\n".join(parts) if parts else "(no output)"


def is_read_only_command(args) -> bool:
    """True for simple inspection commands that need no confirmation."""
    command = args.get("command", "") if isinstance(args, dict) else ""
    if not command.strip() or _SHELL_META_RE.search(command):
        return False
    try:
        argv = shlex.split(command)
    except ValueError:
        return False
    if argv[0] == "git":
        return len(argv) > 1 and argv[1] in _READ_ONLY_GIT
    return argv[0] in READ_ONLY_COMMANDS


# -- Validators --------------------------------------------------------------


def _require_strings(args: dict, *keys: str) -> dict:
    for key in keys:
        value = args.get(key)
        if not isinstance(value, str):
            return {"valid": False, "error": f"error: {key!r} must be a string"}
    return {"valid": True}


def _validate_path_arg(base_dir: str, unrestricted: bool):
    def _validate(args: dict) -> dict:
        check = _require_strings(args, "path")
        if not check["valid"]:
            return check
        if not args["path"].strip():
            return {"valid": False, "error": "error: path must not be empty"}
        try:
            safe_resolve(args["path"], base_dir, unrestricted)
        except ValueError as exc:
            return {"valid": False, "error": f"error: {exc}"}
        return {"valid": True}

    return _validate


# -- Registry ----------------------------------------------------------------


def builtin_registry(
    base_dir: str,
    *,
    unrestricted: bool = False,
    disabled: tuple[str, ...] | list[str] = (),
) -> ToolRegistry:
    """Registry of the built-in tools rooted at *base_dir*."""
    path_ok = _validate_path_arg(base_dir, unrestricted)

    def _write_validator(args):
        check = path_ok(args)
        return check if not check["valid"] else _require_strings(args, "content")

    def _edit_validator(args):
        check = path_ok(args)
        if not check["valid"]:
            return check
        check = _require_strings(args, "old_string", "new_string")
        if check["valid"] and not args["old_string"]:
            return {"valid": False, "error": "error: old_string must not be empty"}
        return check

    def _bash_validator(args):
        check = _require_strings(args, "command")
        if check["valid"] and not args["command"].strip():
            return {"valid": False, "error": "error: command must not be empty"}
        return check

    descriptors = [
        ToolDescriptor(
            "read_file",
            lambda a, cancel=None: read_file(
                a["path"], base_dir, a.get("offset", 1), a.get("limit", 2000), unrestricted
            ),
            approval=StaticApproval(False),
            validator=path_ok,
            schema=READ_FILE_SCHEMA,
        ),
        ToolDescriptor(
            "list_files",
            lambda a, cancel=None: list_files(
                a["pattern"], base_dir, a.get("path", "."), unrestricted
            ),
            approval=StaticApproval(False),
            validator=lambda a: _require_strings(a, "pattern"),
            schema=LIST_FILES_SCHEMA,
        ),
        ToolDescriptor(
            "grep",
            lambda a, cancel=None: grep(
                a["pattern"], base_dir, a.get("path", "."), a.get("include"), unrestricted
            ),
            approval=StaticApproval(False),
            validator=lambda a: _require_strings(a, "pattern"),
            schema=GREP_SCHEMA,
        ),
        ToolDescriptor(
            "write_file",
            lambda a, cancel=None: write_file(a["path"], a["content"], base_dir, unrestricted),
            approval=StaticApproval(True),
            validator=_write_validator,
            mutates_files=True,
            schema=WRITE_FILE_SCHEMA,
        ),
        ToolDescriptor(
            "edit_file",
            lambda a, cancel=None: edit_file(
                a["path"],
                a["old_string"],
                a["new_string"],
                base_dir,
                bool(a.get("replace_all", False)),
                unrestricted,
            ),
            approval=StaticApproval(True),
            validator=_edit_validator,
            mutates_files=True,
            schema=EDIT_FILE_SCHEMA,
        ),
        ToolDescriptor(
            "execute_bash",
            lambda a, cancel=None: execute_bash(
                a["command"], base_dir, a.get("timeout", DEFAULT_TIMEOUT), cancel=cancel
            ),
            approval=PredicateApproval(lambda a: not is_read_only_command(a)),
            validator=_bash_validator,
            runs_commands=True,
            schema=EXECUTE_BASH_SCHEMA,
        ),
    ]
    return ToolRegistry([d for d in descriptors if d.name not in disabled])
