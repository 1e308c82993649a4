"""
ExecutionSession: builds a synthesized program and runs it.

One session lives from the moment a cell's program is written to the scratch
workspace until the child process exits or is cancelled. Standard output,
standard error and the display sideband are drained by three independent
threads, all joined before the session leaves the RUNNING state.
"""

import codecs
import logging
import os
import re
import shutil
import signal
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from notebook_go.bus import OutputRecorder
from notebook_go.config import (
    ENV_DIR, ENV_PIPE, ENV_TMP_DIR, ENV_WASM_DIR, EngineConfig, Submission,
)
from notebook_go.declarations import is_benchmark
from notebook_go.errors import InputNotAllowedError, WorkspaceError
from notebook_go.manifest import Manifest
from notebook_go.sideband import Frame, SidebandChannel, SidebandReader, WidgetLink
from notebook_go.synthesizer import MAIN_FILE, TEST_FILE, SynthesizedProgram
from notebook_go.toolchain import GoToolchain, ToolResult, missing_packages


logger = logging.getLogger(__name__)

ARTIFACT_NAME = "notebook_go_cell"
WASM_NAME = "main.wasm"

_UNUSED_IMPORT_RES = [
    re.compile(r'"([^"]+)" imported (?:as \S+ )?and not used'),
    re.compile(r'imported and not used: "([^"]+)"'),
]


class SessionState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    COMPILING = "compiling"
    COMPILE_FAILED = "compile_failed"
    COMPILED = "compiled"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.PREPARING},
    SessionState.PREPARING: {SessionState.COMPILING, SessionState.CANCELLED},
    SessionState.COMPILING: {SessionState.COMPILE_FAILED, SessionState.COMPILED,
                             SessionState.CANCELLED},
    SessionState.COMPILE_FAILED: {SessionState.IDLE},
    SessionState.COMPILED: {SessionState.SPAWNING, SessionState.COMPLETED,
                            SessionState.CANCELLED},
    SessionState.SPAWNING: {SessionState.RUNNING, SessionState.FAILED, SessionState.CANCELLED},
    SessionState.RUNNING: {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED},
    SessionState.COMPLETED: {SessionState.IDLE},
    SessionState.FAILED: {SessionState.IDLE},
    SessionState.CANCELLED: {SessionState.IDLE},
}


def unused_imports(output: str) -> list[str]:
    found: list[str] = []
    for regex in _UNUSED_IMPORT_RES:
        for m in regex.finditer(output):
            if m.group(1) not in found:
                found.append(m.group(1))
    return found


class StreamDrainer:
    """Copies a process' stdout and stderr to the bus as they are produced."""

    def __init__(self, bus: OutputRecorder):
        self.bus = bus
        self.seen: set[str] = set()
        self._threads: list[threading.Thread] = []

    def _drain(self, stream, name: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = stream.read(65536)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self.seen.add(name)
                    self.bus.publish_stream(name, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self.bus.publish_stream(name, tail)
        except (OSError, ValueError) as e:
            logger.warning("reading %s failed: %s", name, e)
        finally:
            stream.close()

    def start(self, proc: subprocess.Popen) -> None:
        for stream, name in ((proc.stdout, "stdout"), (proc.stderr, "stderr")):
            if stream is None:
                continue
            thread = threading.Thread(target=self._drain, args=(stream, name),
                                      name=f"drain-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def join(self) -> None:
        for thread in self._threads:
            thread.join()
        self._threads.clear()


def kill_process_group(proc: Optional[subprocess.Popen]) -> None:
    if proc is None or proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class ExecutionSession:
    """
    Transient state of one build-and-run.

    Usage: `prepare()`, `compile()`, then `run()` if it compiled; `cancel()`
    may be called from another thread at any point; `close()` always.
    """

    def __init__(self, workspace: Path, program: SynthesizedProgram, submission: Submission,
                 config: EngineConfig, toolchain: GoToolchain, manifest: Manifest,
                 bus: OutputRecorder,
                 resynthesize: Optional[Callable[[frozenset], SynthesizedProgram]] = None,
                 widget_link: Optional[WidgetLink] = None):
        self.workspace = Path(workspace)
        self.program = program
        self.submission = submission
        self.config = config
        self.toolchain = toolchain
        self.manifest = manifest
        self.bus = bus
        self.resynthesize = resynthesize
        self.widget_link = widget_link

        self.state = SessionState.IDLE
        self.artifact: Optional[Path] = None
        self.process: Optional[subprocess.Popen] = None
        self.channel: Optional[SidebandChannel] = None
        self.returncode: Optional[int] = None
        self.build_output = ""
        self.diagnostics: list = []
        self.had_stdout = False
        self.had_stderr = False
        self.had_display = False
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._tool_proc: Optional[subprocess.Popen] = None

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid session transition {self.state.value} -> {new_state.value}")
        logger.debug("session %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def exited(self) -> bool:
        """True if the child ran and exited on its own, whatever its status."""
        return self.returncode is not None and not self.cancelled

    def cancel(self) -> None:
        """Stop the build or kill the child's whole process group."""
        self._cancelled.set()
        with self._lock:
            procs = [self._tool_proc, self.process]
        for proc in procs:
            kill_process_group(proc)

    def _track_tool(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._tool_proc = proc
        if self.cancelled:
            kill_process_group(proc)

    # ------------------------------------------------------------------ #
    # Preparing
    # ------------------------------------------------------------------ #

    def prepare(self) -> None:
        self.transition(SessionState.PREPARING)
        try:
            self.workspace.mkdir(parents=True, exist_ok=True)
            self._write_program()
        except OSError as e:
            raise WorkspaceError(f"cannot write program to {self.workspace}: {e}") from e
        self.manifest.ensure_consistent()

    def _write_program(self) -> None:
        stale = MAIN_FILE if self.program.filename == TEST_FILE else TEST_FILE
        (self.workspace / stale).unlink(missing_ok=True)
        (self.workspace / self.program.filename).write_text(self.program.source)

    # ------------------------------------------------------------------ #
    # Compiling
    # ------------------------------------------------------------------ #

    def _build(self) -> ToolResult:
        flags = list(self.config.build_flags)
        if self.program.is_test:
            self.artifact = self.workspace / f"{ARTIFACT_NAME}.test"
            return self.toolchain.test_build(self.workspace, self.artifact, flags,
                                             on_start=self._track_tool)
        if self.program.is_wasm:
            wasm_dir = self.submission.wasm_dir or (self.workspace / "wasm")
            wasm_dir.mkdir(parents=True, exist_ok=True)
            self.artifact = wasm_dir / WASM_NAME
            env = os.environ.copy()
            env.update({"GOOS": "js", "GOARCH": "wasm"})
            return self.toolchain.build(self.workspace, self.artifact, flags, env=env,
                                        on_start=self._track_tool)
        self.artifact = self.workspace / ARTIFACT_NAME
        return self.toolchain.build(self.workspace, self.artifact, flags,
                                    on_start=self._track_tool)

    def compile(self) -> bool:
        """
        Build the program. Returns True when an artifact was produced.

        Unused memorized imports are pruned and the build retried once. A
        build failing on missing packages triggers a single `go get` and one
        more build when auto-get is enabled.
        """
        self.transition(SessionState.COMPILING)
        result = self._build()

        if not result.ok and not self.cancelled and self.resynthesize is not None:
            unused = unused_imports(result.output)
            if unused:
                logger.info("pruning unused imports %s", unused)
                self.program = self.resynthesize(
                    self.program.excluded_imports | frozenset(unused))
                self._write_program()
                result = self._build()

        if not result.ok and not self.cancelled and self.config.auto_get:
            packages = missing_packages(result.output)
            if packages:
                logger.info("fetching missing packages %s", packages)
                fetched = self.toolchain.get(self.workspace, packages, on_start=self._track_tool)
                if not fetched.ok:
                    self.bus.publish_stream("stderr", fetched.output)
                if not self.cancelled:
                    result = self._build()

        if self.cancelled:
            self.transition(SessionState.CANCELLED)
            return False
        if not result.ok:
            self.build_output = result.output
            self.diagnostics = self.program.translate_diagnostics(result.output)
            self.transition(SessionState.COMPILE_FAILED)
            return False
        self.transition(SessionState.COMPILED)
        return True

    # ------------------------------------------------------------------ #
    # Spawning / Running
    # ------------------------------------------------------------------ #

    def command(self) -> list[str]:
        """Command line used to run the compiled artifact."""
        cmd = [str(self.artifact)]
        if not self.program.is_test or self.submission.explicit_args:
            return cmd + list(self.submission.args)
        cmd.append("-test.v")
        selected = self.program.test_selection
        if not selected:
            if any(is_benchmark(name) for name in self.program.known_tests):
                cmd.append("-test.bench=.")
            return cmd
        tests = [n for n in selected if not is_benchmark(n)]
        benches = [n for n in selected if is_benchmark(n)]
        cmd.append(f"-test.run=^({'|'.join(tests)})$" if tests else "-test.run=^$")
        if benches:
            cmd.append(f"-test.bench=^({'|'.join(benches)})$")
        return cmd

    def child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env[ENV_DIR] = os.getcwd()
        env[ENV_TMP_DIR] = str(self.workspace)
        if self.channel is not None:
            env[ENV_PIPE] = str(self.channel.path)
        return env

    def run(self) -> SessionState:
        """Run the compiled artifact until it exits or is cancelled."""
        if self.program.is_wasm:
            self._stage_wasm()
            self.transition(SessionState.COMPLETED)
            return self.state

        self.transition(SessionState.SPAWNING)
        if self.cancelled:
            self.transition(SessionState.CANCELLED)
            return self.state
        self.channel = SidebandChannel(self.workspace)
        try:
            reader_stream = self.channel.open()
            with self._lock:
                self.process = subprocess.Popen(
                    self.command(),
                    cwd=os.getcwd(),
                    env=self.child_env(),
                    stdin=subprocess.PIPE if self.submission.allow_stdin else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error("failed to start %s: %s", self.artifact, e)
            self.bus.publish_error("SpawnError", str(e))
            self.transition(SessionState.FAILED)
            return self.state

        self.transition(SessionState.RUNNING)
        if self.cancelled:
            kill_process_group(self.process)

        drainer = StreamDrainer(self.bus)
        reader = SidebandReader(reader_stream, self._on_display, self._on_input_request,
                                self._on_heartbeat)
        drainer.start(self.process)
        reader.start()

        returncode = self.process.wait()
        self.channel.release()
        drainer.join()
        reader.join()
        self.had_stdout = "stdout" in drainer.seen
        self.had_stderr = "stderr" in drainer.seen
        self._close_stdin()

        if self.cancelled:
            self.transition(SessionState.CANCELLED)
            return self.state
        self.returncode = returncode
        if returncode != 0:
            self.transition(SessionState.FAILED)
        else:
            self.transition(SessionState.COMPLETED)
        return self.state

    def _stage_wasm(self) -> None:
        wasm_dir = self.artifact.parent
        support = self.toolchain.wasm_exec_js(self.workspace)
        if support is None:
            self.bus.publish_stream("stderr", "wasm_exec.js not found in GOROOT, "
                                              "the program can't be loaded.\n")
        else:
            shutil.copy(support, wasm_dir / "wasm_exec.js")
        url = self.submission.wasm_url
        div_id = self.submission.wasm_div_id or "notebook_go_wasm"
        html = (
            f'<div id="{div_id}"></div>\n'
            f'<script src="{url}/wasm_exec.js"></script>\n'
            "<script>\n"
            "(() => {\n"
            "  const go = new Go();\n"
            f'  go.env = Object.assign({{}}, go.env, {{"{ENV_WASM_DIR}": "{wasm_dir}", '
            f'"NOTEBOOK_GO_WASM_DIV_ID": "{div_id}"}});\n'
            f'  WebAssembly.instantiateStreaming(fetch("{url}/{WASM_NAME}"), go.importObject)\n'
            "    .then((result) => { go.run(result.instance); });\n"
            "})();\n"
            "</script>"
        )
        self.bus.publish_html(html)
        self.had_display = True

    # ------------------------------------------------------------------ #
    # Sideband handlers (called from the reader thread)
    # ------------------------------------------------------------------ #

    def _on_display(self, frame: Frame) -> None:
        self.had_display = True
        self.bus.publish_display({frame.mime_type or "text/plain": frame.payload},
                                 frame.display_id)

    def _on_input_request(self, frame: Frame) -> None:
        if not self.submission.allow_stdin:
            self.bus.publish_error(
                "InputNotAllowedError",
                "program requested input, but this cell doesn't allow input prompting",
            )
            return
        try:
            reply = self.bus.request_input(frame.payload, frame.masked)
        except InputNotAllowedError as e:
            self.bus.publish_error("InputNotAllowedError", str(e))
            self._close_stdin()
            return
        stdin = self.process.stdin if self.process is not None else None
        if stdin is None or stdin.closed:
            return
        try:
            stdin.write(reply.encode("utf-8") + b"\n")
            stdin.flush()
        except (BrokenPipeError, OSError) as e:
            logger.warning("could not deliver input to program: %s", e)

    def _on_heartbeat(self, frame: Frame) -> None:
        logger.debug("heartbeat from program (ack=%s)", frame.ack)
        if frame.ack and self.widget_link is not None:
            self.widget_link.on_comm_message(frame.model_dump(mode="json"))

    def _close_stdin(self) -> None:
        if self.process is not None and self.process.stdin is not None:
            try:
                self.process.stdin.close()
            except OSError:
                pass

    def close(self) -> None:
        """Release the channel and return to IDLE."""
        if self.channel is not None:
            self.channel.close()
            self.channel = None
        if self.state is not SessionState.IDLE and SessionState.IDLE in _ALLOWED_TRANSITIONS[self.state]:
            self.transition(SessionState.IDLE)
