"""
Exception types raised by notebook-go.

Everything except FatalError subclasses is reported back to the caller as part
of an ExecutionResult; fatal errors propagate out of the kernel.
"""

from typing import Optional


class NotebookGoError(Exception):
    """Base class for all notebook-go errors."""


class MergeConflictError(NotebookGoError):
    """An identifier was redeclared with a different kind of declaration."""

    def __init__(self, identifier: str, existing_kind: str, new_kind: str):
        self.identifier = identifier
        self.existing_kind = existing_kind
        self.new_kind = new_kind
        super().__init__(
            f"{identifier!r} is already declared as {existing_kind}, "
            f"cannot redeclare it as {new_kind}"
        )


class CompileError(NotebookGoError):
    """The synthesized program failed to build."""

    def __init__(self, diagnostics: list, output: str = ""):
        self.diagnostics = diagnostics
        self.output = output
        lines = [str(d) for d in diagnostics] or [output.strip() or "build failed"]
        super().__init__("\n".join(lines))


class DirectiveError(NotebookGoError):
    """Bad arguments given to a special command."""


class SidebandError(NotebookGoError):
    """Corrupt frame or broken sideband channel."""


class InputNotAllowedError(NotebookGoError):
    """Input was requested but the submission does not allow prompting."""


class FatalError(NotebookGoError):
    """Unrecoverable environment failure; the kernel may need a restart."""


class ToolchainNotFoundError(FatalError):
    """The `go` command could not be located."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary
        super().__init__(f"go toolchain not found (looked for {binary or 'go'!r} in PATH)")


class WorkspaceError(FatalError):
    """The scratch workspace could not be created or written."""
