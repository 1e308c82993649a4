"""
Special commands: the lines of a cell that configure the kernel instead of
being compiled.

  - `%<cmd> {...args...}`: control the environment and configure the kernel.
  - `!<shell commands>`: run a shell command; `!*<shell commands>` runs it in
    the scratch workspace.

`%help` lists the available commands.
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from notebook_go.bus import OutputRecorder
from notebook_go.config import ENV_DIR, Submission
from notebook_go.declarations import DeclKind, ResetMode
from notebook_go.errors import DirectiveError, InputNotAllowedError
from notebook_go.pipeline import StreamDrainer

if TYPE_CHECKING:
    from notebook_go.kernel import NotebookKernel


logger = logging.getLogger(__name__)

SIGILS = ("%", "!")

HELP_MESSAGE = """\
## notebook-go special commands

Go code in a cell is merged with the declarations (imports, types, variables,
constants and functions) of previous cells and run. Statements outside of
declarations become the body of `main()`.

### Execution

- `%%` or `%main [args...]`: the lines that follow are the body of `main()`;
  optional arguments are passed to the program.
- `%args [args...]`: arguments passed to the program of this cell.
- `%test [args...]`: run the cell with `go test`. Only the tests and benchmarks
  defined (or referenced) in the cell run, or all known ones if there are none.
  With no arguments `-test.v` is used.
- `%wasm`: compile the cell to WebAssembly and run it in the browser.
- `%goflags [flags...]`: flags passed to `go build`/`go test`; they persist
  across cells. `%goflags ""` clears them.
- `%autoget` / `%noautoget`: fetch missing packages automatically (default on).
- `%with_inputs` / `%with_password`: the next shell command (`!...`) may prompt
  for input (password input is not echoed).

### Environment

- `%cd [<directory>]`: change (or print) the current directory.
- `%env <NAME> <value>` or `%env <NAME>=<value>`: set an environment variable.
- `%writefile [-a] [<file>]`: write the rest of the cell to a file (`-a` appends).
- `!<shell command>`: run a shell command in the current directory.
- `!*<shell command>`: run a shell command in the scratch workspace.

### Memorized declarations

- `%ls` or `%list`: list memorized declarations.
- `%rm <name>...` or `%remove <name>...`: forget declarations.
- `%reset`: forget all declarations and reset `go.mod`.
- `%reset go.mod`: reset `go.mod` only.

### Modules and tracking

- `%track [<file_or_directory>]`: track a path for auto-completion, or list them.
- `%untrack <file_or_directory>[...]`: stop tracking (a trailing `...` matches a prefix).
- `%goworkfix`: add `replace` rules to `go.mod` for the modules in `go.work`.

### Widgets

- `%widgets`: install the front-end widgets link.
- `%widgets_hb`: check the widgets link with a heartbeat.
"""


class TokenState(Enum):
    NORMAL = "normal"
    IN_QUOTES = "in_quotes"
    ESCAPED = "escaped"


_ESCAPES = {"n": "\n", "t": "\t"}


def split_command(cmd: str) -> list[str]:
    """
    Split a special command into its space separated parts.

    Double quotes group words, so `%args --text "hello world"` gives
    ["%args", "--text", "hello world"]. Inside quotes `\\n` and `\\t` are
    newline and tab, and a backslash makes any other character literal;
    outside quotes a backslash is an ordinary character.
    """
    parts: list[str] = []
    part: list[str] = []
    started = False
    state = TokenState.NORMAL
    for c in cmd:
        if state is TokenState.ESCAPED:
            part.append(_ESCAPES.get(c, c))
            state = TokenState.IN_QUOTES
        elif state is TokenState.IN_QUOTES:
            if c == '"':
                state = TokenState.NORMAL
            elif c == "\\":
                state = TokenState.ESCAPED
            else:
                part.append(c)
        elif c in " \t\n":
            if started:
                parts.append("".join(part))
            part = []
            started = False
        elif c == '"':
            state = TokenState.IN_QUOTES
            started = True  # allows empty arguments
        else:
            part.append(c)
            started = True
    if started:
        parts.append("".join(part))
    return parts


def join_continuation(lines: list[str], start: int) -> tuple[str, list[int]]:
    """Join lines ending in `\\` starting at `start`; the joiner becomes a space."""
    text = ""
    used: list[int] = []
    for index in range(start, len(lines)):
        text += lines[index]
        used.append(index)
        if not text.endswith("\\"):
            break
        text = text[:-1] + " "
    return text, used


def capture_body(lines: list[str], start: int) -> tuple[str, list[int]]:
    """Lines from `start` up to the next special command, verbatim."""
    body = ""
    used: list[int] = []
    for index in range(start, len(lines)):
        if lines[index][:1] in SIGILS:
            break
        body += lines[index] + "\n"
        used.append(index)
    return body, used


@dataclass
class CommandContext:
    """What a special command handler can touch."""
    kernel: "NotebookKernel"
    submission: Submission
    bus: OutputRecorder
    line: int = 0

    def print(self, text: str) -> None:
        self.bus.publish_stream("stdout", text)


Handler = Callable[[CommandContext, list[str]], None]

DIRECTIVES: dict[str, Handler] = {}


def directive(*names: str):
    """Register a handler for one or more `%` command names."""
    def register(func: Handler) -> Handler:
        for name in names:
            DIRECTIVES[name] = func
        return func
    return register


def unknown_directive(ctx: CommandContext, parts: list[str]) -> None:
    ctx.bus.publish_stream("stderr", f'"%{parts[0]}" unknown or not implemented yet.\n')


class Preprocessor:
    """
    Extracts and executes special commands from a cell.

    Returns the remaining lines, with their 1-based line numbers, for the
    program synthesizer.
    """

    def __init__(self, registry: Optional[dict[str, Handler]] = None):
        self.registry = DIRECTIVES if registry is None else registry

    def process(self, ctx: CommandContext) -> list[tuple[int, str]]:
        lines = ctx.submission.lines
        used: set[int] = set()
        for index, line in enumerate(lines):
            if index in used or len(line) < 2 or line[0] not in SIGILS:
                continue
            cmd, joined = join_continuation(lines, index)
            used.update(joined)
            sigil, body = cmd[0], cmd[1:].lstrip(" ")
            if not body.strip():
                continue
            ctx.line = joined[-1] + 1
            if sigil == "!":
                self.run_shell(ctx, body)
                continue
            parts = split_command(body)
            if parts[0] == "writefile":
                content, consumed = capture_body(lines, joined[-1] + 1)
                used.update(consumed)
                self.dispatch(ctx, parts, lambda c, p: write_file(c, p[1:], content))
            else:
                self.dispatch(ctx, parts)
        return [(n + 1, text) for n, text in enumerate(lines) if n not in used]

    def dispatch(self, ctx: CommandContext, parts: list[str],
                 handler: Optional[Handler] = None) -> None:
        handler = handler or self.registry.get(parts[0], unknown_directive)
        try:
            handler(ctx, parts)
        except DirectiveError as e:
            ctx.bus.publish_error("DirectiveError", str(e))

    def run_shell(self, ctx: CommandContext, command: str) -> None:
        cwd = None
        if command.startswith("*"):
            command = command[1:]
            cwd = ctx.kernel.workspace
        sub = ctx.submission
        interactive, password = sub.with_inputs or sub.with_password, sub.with_password
        sub.with_inputs = sub.with_password = False
        kernel = ctx.kernel
        run_shell_command(
            kernel.config.bash, command, ctx.bus,
            cwd=cwd, env=kernel.shell_env(),
            interactive=interactive, password=password,
            wait_ms=kernel.config.input_wait_ms,
            on_start=kernel.track_process,
        )
        # A shell command may have edited go.mod.
        try:
            for path in kernel.manifest.auto_track():
                logger.info("auto-tracking %s", path)
        except DirectiveError as e:
            logger.error("auto-track failed: %s", e)


def run_shell_command(bash: str, command: str, bus: OutputRecorder, cwd=None,
                      env: Optional[dict] = None, interactive: bool = False,
                      password: bool = False, wait_ms: int = 200,
                      on_start: Optional[Callable] = None) -> int:
    """
    Run `command` with bash, streaming its output to the bus.

    If `interactive`, the command gets `wait_ms` to start, after which the
    user is prompted for input lines until it exits.
    """
    proc = subprocess.Popen(
        [bash, "-c", command],
        cwd=None if cwd is None else str(cwd),
        env=env,
        stdin=subprocess.PIPE if interactive else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=0,
        start_new_session=True,
    )
    if on_start is not None:
        on_start(proc)
    drainer = StreamDrainer(bus)
    drainer.start(proc)
    try:
        if interactive:
            _feed_inputs(proc, bus, password, wait_ms)
        returncode = proc.wait()
        drainer.join()
    finally:
        if on_start is not None:
            on_start(None)
    if returncode != 0:
        logger.info("shell command exited with status %d: %s", returncode, command)
    return returncode


def _feed_inputs(proc: subprocess.Popen, bus: OutputRecorder, password: bool,
                 wait_ms: int) -> None:
    try:
        proc.wait(timeout=wait_ms / 1000)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        while proc.poll() is None:
            try:
                reply = bus.request_input("", password)
            except InputNotAllowedError as e:
                bus.publish_error("InputNotAllowedError", str(e))
                return
            if proc.poll() is not None:
                return
            proc.stdin.write(reply.encode("utf-8") + b"\n")
            proc.stdin.flush()
    except (BrokenPipeError, OSError) as e:
        logger.debug("stopped feeding input: %s", e)
    finally:
        try:
            proc.stdin.close()
        except OSError:
            pass


def write_file(ctx: CommandContext, args: list[str], content: str) -> None:
    """`%writefile [-a|--append] [file]`: write the captured body to a file."""
    append = False
    filename = None
    for arg in args:
        if arg in ("-a", "-append", "--append"):
            append = True
        elif arg.startswith("-"):
            raise DirectiveError(f"`%writefile`: unknown flag {arg!r}")
        elif filename is None:
            filename = arg
        else:
            raise DirectiveError("`%writefile [-a] [<file>]`: takes at most one file name")
    if filename is None:
        filename = f"{ctx.kernel.unique_id}.out"
    try:
        with open(os.path.expanduser(filename), "a" if append else "w") as f:
            f.write(content)
    except OSError as e:
        raise DirectiveError(f"`%writefile {filename}` failed: {e}") from e
    ctx.print(f"write to {filename} success\n")


def _quoted(values: list[str]) -> str:
    return "[" + " ".join(json.dumps(v) for v in values) + "]"


# ---------------------------------------------------------------------- #
# Execution configuration
# ---------------------------------------------------------------------- #

@directive("%", "main", "args", "test")
def _args(ctx: CommandContext, parts: list[str]) -> None:
    sub = ctx.submission
    # The last of these commands in a cell sets the arguments, `%%` alone clears them.
    sub.args = parts[1:]
    sub.explicit_args = len(parts) > 1
    if parts[0] == "test":
        sub.test = True
    if parts[0] in ("%", "main"):
        sub.main_from = ctx.line
    logger.debug("program args (%%%s): %r", parts[0], sub.args)


@directive("wasm")
def _wasm(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) > 1:
        raise DirectiveError("`%wasm` takes no extra parameters.")
    ctx.kernel.prepare_wasm(ctx.submission)


@directive("goflags")
def _goflags(ctx: CommandContext, parts: list[str]) -> None:
    config = ctx.kernel.config
    if len(parts) > 1:
        config.build_flags = [p for p in parts[1:] if p]
    ctx.print(f"%goflags={_quoted(config.build_flags)}\n")


@directive("autoget")
def _autoget(ctx: CommandContext, parts: list[str]) -> None:
    ctx.kernel.config.auto_get = True


@directive("noautoget")
def _noautoget(ctx: CommandContext, parts: list[str]) -> None:
    ctx.kernel.config.auto_get = False


@directive("with_inputs")
def _with_inputs(ctx: CommandContext, parts: list[str]) -> None:
    if not ctx.submission.allow_stdin:
        raise DirectiveError(
            "%with_inputs not available in this notebook, it doesn't allow input prompting")
    ctx.submission.with_inputs = True


@directive("with_password")
def _with_password(ctx: CommandContext, parts: list[str]) -> None:
    if not ctx.submission.allow_stdin:
        raise DirectiveError(
            "%with_password not available in this notebook, it doesn't allow input prompting")
    ctx.submission.with_password = True


# ---------------------------------------------------------------------- #
# Environment
# ---------------------------------------------------------------------- #

@directive("env")
def _env(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) == 2:
        key, sep, value = parts[1].partition("=")
        if sep and len(key) > 1:
            parts = [parts[0], key, value]
    if len(parts) != 3:
        raise DirectiveError(
            "`%env <VAR_NAME> <value>` (or `%env <VAR_NAME>=<value>`): it takes 2 arguments, "
            f"the variable name and it's content, but {len(parts) - 1} were given")
    os.environ[parts[1]] = parts[2]
    ctx.print(f"Set: {parts[1]}={json.dumps(parts[2])}\n")


@directive("cd")
def _cd(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) == 1:
        ctx.print(f"Current directory: {json.dumps(os.getcwd())}\n")
        return
    if len(parts) > 2:
        raise DirectiveError(
            f"`%cd [<directory>]`: it takes none or one argument, but {len(parts) - 1} were given")
    try:
        os.chdir(os.path.expanduser(parts[1]))
    except OSError as e:
        raise DirectiveError(f"`%cd {json.dumps(parts[1])}` failed: {e}") from e
    pwd = os.getcwd()
    os.environ[ENV_DIR] = pwd
    ctx.print(f"Changed directory to {json.dumps(pwd)}\n")


@directive("help")
def _help(ctx: CommandContext, parts: list[str]) -> None:
    ctx.bus.publish_markdown(HELP_MESSAGE)


# ---------------------------------------------------------------------- #
# Memorized declarations
# ---------------------------------------------------------------------- #

@directive("reset")
def _reset(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) > 2 or (len(parts) == 2 and parts[1] != "go.mod"):
        raise DirectiveError('%reset only take one optional parameter "go.mod"')
    if len(parts) == 1:
        ctx.kernel.reset_state(ResetMode.FULL)
        ctx.print("State reset: all memorized declarations discarded\n")
    else:
        ctx.kernel.reset_state(ResetMode.MANIFEST_ONLY)
        ctx.print("go.mod reset\n")


_KIND_TITLES = [
    (DeclKind.IMPORT, "Imports"),
    (DeclKind.TYPE, "Types"),
    (DeclKind.VAR, "Variables and constants"),
    (DeclKind.FUNC, "Functions"),
    (DeclKind.INIT, "Init blocks"),
]


@directive("ls", "list")
def _ls(ctx: CommandContext, parts: list[str]) -> None:
    snapshot = ctx.kernel.store.snapshot()
    if not snapshot.all():
        ctx.bus.publish_markdown("No memorized definitions.")
        return
    sections = ["## Memorized Definitions"]
    for kind, title in _KIND_TITLES:
        decls = snapshot.by_kind(kind)
        if not decls:
            continue
        sections.append(f"### {title}")
        for decl in decls:
            name = decl.identifier or f"init (cell {decl.cell_id})"
            if kind is DeclKind.IMPORT and decl.alias:
                name = f"{decl.alias} {decl.identifier}"
            sections.append(f"- `{name}`")
    ctx.bus.publish_markdown("\n".join(sections))


@directive("rm", "remove")
def _rm(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) < 2:
        raise DirectiveError("`%rm <name>...`: no names given")
    removed, missing = ctx.kernel.store.remove(parts[1:])
    lines = []
    for d in removed:
        # Named init-blocks are written as functions, report them as such.
        kind = "func" if d.kind is DeclKind.INIT else d.kind.value
        if d.kind in (DeclKind.TYPE, DeclKind.VAR) and len(d.names) > 1:
            lines.append(f"removed whole {kind} group ({', '.join(d.names)})")
        else:
            lines.append(f"removed {kind} {d.identifier}")
    lines += [f"key {json.dumps(name)} not found in any definition, not removed"
              for name in missing]
    ctx.print("\n".join(lines) + "\n")


# ---------------------------------------------------------------------- #
# Modules and tracked paths
# ---------------------------------------------------------------------- #

def _list_tracked(ctx: CommandContext) -> None:
    tracked = list(ctx.kernel.tracked)
    if not tracked:
        ctx.print("No files or directory being tracked yet\n")
        return
    body = "\n".join(f"- {p}" for p in tracked)
    ctx.print(f"List of files/directories being tracked:\n\n{body}\n")


@directive("track")
def _track(ctx: CommandContext, parts: list[str]) -> None:
    for path in parts[1:]:
        resolved = ctx.kernel.tracked.add(path)
        ctx.print(f"Tracking {json.dumps(str(resolved))}\n")
    if len(parts) == 1:
        _list_tracked(ctx)


@directive("untrack")
def _untrack(ctx: CommandContext, parts: list[str]) -> None:
    if len(parts) < 2:
        raise DirectiveError("`%untrack <file_or_directory>[...]`: no path given")
    for spec in parts[1:]:
        removed = ctx.kernel.tracked.remove(spec)
        if removed:
            ctx.print(f"Untracked {json.dumps(spec)}\n\n")
        else:
            ctx.print(f"{json.dumps(spec)} is not being tracked\n\n")
    _list_tracked(ctx)


@directive("goworkfix")
def _goworkfix(ctx: CommandContext, parts: list[str]) -> None:
    manifest = ctx.kernel.manifest
    for module, directory in manifest.go_work_fix():
        ctx.print(f"Added replace rule for module {json.dumps(module)} "
                  f"to local directory {json.dumps(str(directory))}.\n")
    manifest.auto_track(force=True)


# ---------------------------------------------------------------------- #
# Widgets
# ---------------------------------------------------------------------- #

@directive("widgets")
def _widgets(ctx: CommandContext, parts: list[str]) -> None:
    ctx.kernel.widget_link.install(ctx.bus)


@directive("widgets_hb")
def _widgets_hb(ctx: CommandContext, parts: list[str]) -> None:
    kernel = ctx.kernel
    if kernel.widget_link.send_heartbeat_and_wait(ctx.bus, kernel.config.heartbeat_timeout):
        ctx.bus.publish_html("Heartbeat pong received back.")
    else:
        ctx.bus.publish_html("Timed-out, no heartbeat pong received. "
                             "Try installing front-end websockets with %widgets ?")
