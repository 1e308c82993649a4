"""
notebook-go: incremental compile-and-run engine for a Go notebook kernel.

This package lets Go be used cell by cell:
- Top-level declarations (imports, types, vars, consts, funcs) are memorized
  and carried into every later cell
- Each cell is merged into one synthesized program, built and run
- Compiler errors point back at the cell and line they came from
"""

from notebook_go.bus import MessageBus, RecordingBus
from notebook_go.config import EngineConfig
from notebook_go.declarations import DeclKind, Declaration, DeclarationStore, ResetMode
from notebook_go.kernel import ExecutionResult, ExecutionStatus, NotebookKernel
from notebook_go.notebook import Cell, CellType, Notebook
from notebook_go.session import SessionManager

__version__ = "0.1.0"
__all__ = [
    "MessageBus",
    "RecordingBus",
    "EngineConfig",
    "DeclKind",
    "Declaration",
    "DeclarationStore",
    "ResetMode",
    "NotebookKernel",
    "ExecutionResult",
    "ExecutionStatus",
    "Notebook",
    "Cell",
    "CellType",
    "SessionManager",
]
