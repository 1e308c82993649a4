"""
NotebookKernel: incremental Go execution engine that keeps declarations
across cells.
"""

import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from notebook_go.bus import MessageBus, OutputRecorder
from notebook_go.config import ENV_DIR, ENV_TMP_DIR, ENV_WASM_DIR, ENV_WASM_URL, EngineConfig, Submission
from notebook_go.declarations import DeclarationStore, ResetMode, StoreSnapshot
from notebook_go.errors import CompileError, MergeConflictError, WorkspaceError
from notebook_go.goparse import ParsedCell, parse_cell
from notebook_go.manifest import Manifest, TrackedPaths
from notebook_go.pipeline import ExecutionSession, SessionState, kill_process_group
from notebook_go.sideband import WidgetLink
from notebook_go.specialcmd import CommandContext, Preprocessor
from notebook_go.synthesizer import Diagnostic, ProgramSynthesizer, SynthesizedProgram
from notebook_go.toolchain import GoToolchain


logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    CANCELLED = "cancelled"


@dataclass
class ExecutionResult:
    """Result of executing a code cell."""
    success: bool
    outputs: list[dict[str, Any]] = field(default_factory=list)
    execution_count: int = 0
    error: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.OK
    diagnostics: list[Diagnostic] = field(default_factory=list)
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "outputs": self.outputs,
            "execution_count": self.execution_count,
            "error": self.error,
            "status": self.status.value,
            "diagnostics": [asdict(d) for d in self.diagnostics],
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        """Create from dictionary."""
        return cls(
            success=data["success"],
            outputs=data["outputs"],
            execution_count=data["execution_count"],
            error=data.get("error"),
            status=ExecutionStatus(data.get("status", "ok")),
            diagnostics=[Diagnostic(**d) for d in data.get("diagnostics", [])],
            exit_code=data.get("exit_code"),
        )


class NotebookKernel:
    """
    Go kernel that maintains declarations across cells.

    Each cell is preprocessed for special commands, merged with the memorized
    declarations into one Go program, built in a scratch workspace and run.
    The declarations of a cell are memorized once its program has run to
    exit, whatever the exit status.
    """

    def __init__(self, config: Optional[EngineConfig] = None, bus: Optional[MessageBus] = None,
                 toolchain: Optional[GoToolchain] = None, workspace: Optional[Path] = None):
        self.config = config or EngineConfig.from_env()
        self.bus = bus or MessageBus()
        self.toolchain = toolchain or GoToolchain(self.config.go_binary)
        self.unique_id = uuid.uuid4().hex[:8]
        self.workspace = Path(workspace) if workspace else self._make_workspace()

        self.store = DeclarationStore()
        self.tracked = TrackedPaths()
        self.manifest = Manifest(self.workspace, self.toolchain,
                                 f"notebook_go_{self.unique_id}", self.tracked)
        self.preprocessor = Preprocessor()
        self.synthesizer = ProgramSynthesizer()
        self.widget_link = WidgetLink()

        self.execution_count = 0
        self._history: list[tuple[int, str, ExecutionResult]] = []
        self._session_lock = threading.Lock()
        self._session: Optional[ExecutionSession] = None
        self._shell_proc = None
        self._manifest_ready = False

    def _make_workspace(self) -> Path:
        root = self.config.scratch_root
        try:
            if root is not None:
                Path(root).mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"notebook_go_{self.unique_id}_",
                                         dir=None if root is None else str(root)))
        except OSError as e:
            raise WorkspaceError(f"cannot create scratch workspace: {e}") from e

    def _ensure_manifest(self) -> None:
        if not self._manifest_ready:
            self.manifest.init()
            self._manifest_ready = True

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute_cell(self, code: str, allow_stdin: bool = False,
                     bus: Optional[MessageBus] = None) -> ExecutionResult:
        """
        Execute one cell and return result with outputs.

        Only one cell runs at a time; a second caller blocks until the
        current one has finished.

        Args:
            code: Cell contents: Go code and special commands
            allow_stdin: Whether the front-end can answer input requests
            bus: Bus for this cell's live output, defaults to the kernel's

        Returns:
            ExecutionResult with outputs and status
        """
        with self._session_lock:
            self.execution_count += 1
            submission = Submission.from_code(code, self.execution_count, allow_stdin)
            recorder = OutputRecorder(bus or self.bus)
            result = self._execute(submission, recorder)
            self._history.append((self.execution_count, code, result))
            return result

    def _result(self, recorder: OutputRecorder, submission: Submission,
                status: ExecutionStatus = ExecutionStatus.OK, error: Optional[str] = None,
                **kwargs) -> ExecutionResult:
        if error is None and status is ExecutionStatus.OK:
            errors = [o for o in recorder.outputs if o.get("type") == "error"]
            if errors:
                error = errors[0].get("evalue")
        return ExecutionResult(
            success=status is ExecutionStatus.OK and error is None,
            outputs=recorder.outputs,
            execution_count=submission.execution_count,
            error=error,
            status=status,
            **kwargs,
        )

    def _execute(self, submission: Submission, recorder: OutputRecorder) -> ExecutionResult:
        self._ensure_manifest()
        ctx = CommandContext(self, submission, recorder)
        code_lines = self.preprocessor.process(ctx)
        if not submission.test and not any(text.strip() for _, text in code_lines):
            return self._result(recorder, submission)

        parsed = parse_cell(code_lines, submission.execution_count, submission.main_from)
        try:
            program = self._synthesize(parsed, submission)
        except MergeConflictError as e:
            recorder.publish_error("MergeConflictError", str(e))
            return self._result(recorder, submission, ExecutionStatus.CONFLICT, str(e))
        except CompileError as e:
            recorder.publish_error(type(e).__name__, str(e))
            return self._result(recorder, submission, ExecutionStatus.COMPILE_ERROR, str(e),
                                diagnostics=e.diagnostics)

        session = ExecutionSession(
            self.workspace, program, submission, self.config, self.toolchain,
            self.manifest, recorder,
            resynthesize=lambda excluded: self._synthesize(parsed, submission, excluded),
            widget_link=self.widget_link,
        )
        self._session = session
        try:
            session.prepare()
            if not session.compile():
                if session.state is SessionState.CANCELLED:
                    return self._cancelled(recorder, submission)
                return self._compile_failed(recorder, submission, session)

            state = session.run()
            if state is SessionState.CANCELLED:
                return self._cancelled(recorder, submission)
            if state is SessionState.COMPLETED or session.exited:
                self.store.merge(parsed.declarations)
            if state is SessionState.FAILED:
                if session.returncode is None:
                    message = f"failed to start {session.artifact}"
                else:
                    message = f"program exited with status {session.returncode}"
                recorder.publish_error("RuntimeError", message)
                return self._result(recorder, submission, ExecutionStatus.RUNTIME_ERROR,
                                    message, exit_code=session.returncode)
            return self._result(recorder, submission, exit_code=session.returncode)
        finally:
            session.close()
            self._session = None

    def _synthesize(self, parsed: ParsedCell, submission: Submission,
                    exclude_imports: frozenset = frozenset()) -> SynthesizedProgram:
        return self.synthesizer.synthesize(
            self.store.snapshot(), parsed, submission.execution_count,
            test=submission.test, wasm=submission.wasm, exclude_imports=exclude_imports,
        )

    def _compile_failed(self, recorder: OutputRecorder, submission: Submission,
                        session: ExecutionSession) -> ExecutionResult:
        error = CompileError(session.diagnostics, session.build_output)
        recorder.publish_error(type(error).__name__, str(error), error.output.splitlines())
        return self._result(recorder, submission, ExecutionStatus.COMPILE_ERROR, str(error),
                            diagnostics=error.diagnostics)

    def _cancelled(self, recorder: OutputRecorder, submission: Submission) -> ExecutionResult:
        recorder.publish_error("KeyboardInterrupt", "execution cancelled")
        return self._result(recorder, submission, ExecutionStatus.CANCELLED, "execution cancelled")

    def interrupt(self) -> None:
        """Cancel the running cell. Safe to call from any thread."""
        session = self._session
        if session is not None:
            session.cancel()
        kill_process_group(self._shell_proc)

    @property
    def busy(self) -> bool:
        return self._session_lock.locked()

    # ------------------------------------------------------------------ #
    # Hooks used by special commands
    # ------------------------------------------------------------------ #

    def track_process(self, proc) -> None:
        """Register the running shell command so `interrupt()` can stop it."""
        self._shell_proc = proc

    def shell_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env[ENV_DIR] = os.getcwd()
        env[ENV_TMP_DIR] = str(self.workspace)
        return env

    def prepare_wasm(self, submission: Submission) -> None:
        """Set up the directory served to the browser for a `%wasm` cell."""
        root = Path(self.config.wasm_root) if self.config.wasm_root else Path(os.getcwd())
        wasm_dir = root / "jupyter_files" / self.unique_id
        try:
            wasm_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"cannot create wasm directory {wasm_dir}: {e}") from e
        url = f"{self.config.wasm_url_prefix.rstrip('/')}/jupyter_files/{self.unique_id}"
        submission.wasm = True
        submission.wasm_dir = wasm_dir
        submission.wasm_url = url
        submission.wasm_div_id = f"notebook_go_wasm_{uuid.uuid4().hex[:8]}"
        os.environ[ENV_WASM_DIR] = str(wasm_dir)
        os.environ[ENV_WASM_URL] = url

    def reset_state(self, mode: ResetMode = ResetMode.FULL) -> None:
        """Forget declarations (full reset only) and reset go.mod."""
        self.store.reset(mode)
        if mode is ResetMode.FULL:
            self.tracked.clear()
        self.manifest.reset()

    # ------------------------------------------------------------------ #
    # State access
    # ------------------------------------------------------------------ #

    def get_state(self) -> StoreSnapshot:
        """Snapshot of memorized declarations, for serialization."""
        return self.store.snapshot()

    def restore_state(self, snapshot: StoreSnapshot):
        """Restore memorized declarations from a previous session."""
        self.store.restore(snapshot)

    def get_history(self) -> list[tuple[int, str, ExecutionResult]]:
        """Get execution history."""
        return self._history.copy()

    def clear_history(self):
        """Clear execution history."""
        self._history.clear()

    def get_defined_names(self) -> list[str]:
        """Identifiers of memorized declarations."""
        return self.store.identifiers()

    def reset(self):
        """Reset the kernel to a clean state."""
        self.store.reset(ResetMode.FULL)
        self.tracked.clear()
        self.execution_count = 0
        self._history.clear()
        if self._manifest_ready:
            self.manifest.reset()

    def shutdown(self):
        """Stop anything running and remove the scratch workspace."""
        self.interrupt()
        shutil.rmtree(self.workspace, ignore_errors=True)
