"""
Notebook files (.nbgo): Go and markdown cells, plus how the last run of each
code cell ended.

The file is the JSON dump of the `Notebook` model.
"""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from notebook_go.kernel import ExecutionResult


FORMAT_VERSION = "1.0"


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class CellType(str, Enum):
    CODE = "code"
    MARKDOWN = "markdown"


class Cell(BaseModel):
    """A cell; code cells keep the outcome of their last run."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    type: CellType = CellType.CODE
    source: str = ""

    execution_count: Optional[int] = None
    status: Optional[str] = None
    exit_code: Optional[int] = None
    outputs: list[dict[str, Any]] = Field(default_factory=list)
    diagnostics: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def runnable(self) -> bool:
        return self.type is CellType.CODE and bool(self.source.strip())

    @property
    def failed(self) -> bool:
        return self.status not in (None, "ok")

    def record(self, result: "ExecutionResult") -> None:
        """Store the outcome of running this cell."""
        data = result.to_dict()
        self.execution_count = data["execution_count"]
        self.status = data["status"]
        self.exit_code = data["exit_code"]
        self.outputs = data["outputs"]
        self.diagnostics = data["diagnostics"]

    def clear(self) -> None:
        self.execution_count = self.status = self.exit_code = None
        self.outputs = []
        self.diagnostics = []

    def error_lines(self) -> set[int]:
        """Lines of this cell the compiler complained about in its last run."""
        return {
            d["cell_line"] for d in self.diagnostics
            if d.get("cell_id") == self.execution_count and d.get("cell_line")
        }


class Notebook(BaseModel):
    version: str = FORMAT_VERSION
    name: str = "Untitled"
    created: str = Field(default_factory=_now)
    modified: str = Field(default_factory=_now)
    cells: list[Cell] = Field(default_factory=list)

    def add_cell(self, source: str = "", cell_type: CellType = CellType.CODE,
                 **fields) -> Cell:
        cell = Cell(type=cell_type, source=source, **fields)
        self.cells.append(cell)
        return cell

    def code_cells(self) -> list[tuple[int, Cell]]:
        """Cells that would be sent to the kernel, with their position."""
        return [(i, c) for i, c in enumerate(self.cells) if c.runnable]

    def clear_results(self) -> None:
        for cell in self.cells:
            cell.clear()

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.modified = _now()
        path.write_text(self.model_dump_json(indent=2) + "\n")

    @classmethod
    def load(cls, path: Path) -> "Notebook":
        return cls.model_validate_json(Path(path).read_text())
